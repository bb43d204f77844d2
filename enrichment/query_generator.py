"""
Search-query generation and seed URL derivation.

Pure transformations of an IdentitySeed; no network access. The same seed
always yields the same queries in the same order.
"""

from __future__ import annotations
import re
from typing import List, Optional

from enrichment.models import IdentitySeed
from enrichment.url_utils import canonicalize_url, domain_of
from enrichment.errors import InvalidSourceError

MIN_QUERIES = 3
MAX_QUERIES = 8
MAX_QUERY_LENGTH = 200
MIN_QUERY_LENGTH = 4

FREE_MAIL_DOMAINS = frozenset({
    "gmail.com", "googlemail.com", "yahoo.com", "hotmail.com", "outlook.com",
    "live.com", "icloud.com", "me.com", "aol.com", "proton.me", "protonmail.com",
    "gmx.com", "mail.com",
})

# Path segments that are never a handle
_NON_HANDLE_SEGMENTS = frozenset({
    "in", "pub", "company", "u", "user", "users", "people", "profile", "about",
    "home", "status", "orgs", "@",
})

_PAD_SUFFIXES = ("bio", "profile", "interview")


def _meaningful_length(q: str) -> int:
    return len(re.sub(r'["\s]', "", q))


def _clean(s: Optional[str]) -> str:
    return re.sub(r"\s+", " ", (s or "").replace('"', "")).strip()


def handle_from_url(url: str) -> Optional[str]:
    """First path segment that looks like a profile handle."""
    m = re.match(r"^[a-z]+://[^/]+/(.*)$", url.strip(), re.IGNORECASE)
    if not m:
        return None
    for seg in m.group(1).split("/"):
        seg = seg.split("?")[0].split("#")[0].lstrip("@")
        if seg and seg.lower() not in _NON_HANDLE_SEGMENTS and re.match(r"^[A-Za-z0-9_.-]{2,64}$", seg):
            return seg
    return None


def generate_queries(seed: IdentitySeed) -> List[str]:
    """Return 3-8 deduplicated search queries, or [] for a seed with no usable anchor."""
    name = _clean(seed.name)
    company = _clean(seed.company)
    email = _clean(seed.email)
    domain = seed.email_domain if seed.email_domain not in FREE_MAIL_DOMAINS else None

    handles: List[str] = []
    for u in seed.urls:
        h = handle_from_url(u)
        if h and h not in handles:
            handles.append(h)

    candidates: List[str] = []
    if name:
        candidates += [f'"{name}"', f'"{name}" bio', f'"{name}" interview OR keynote']
        if company:
            candidates.append(f'"{name}" {company}')
        elif domain:
            candidates.append(f'"{name}" {domain}')
    if email:
        candidates.append(f'"{email}"')
    for h in handles:
        candidates.append(f'"{h}"')
    if company:
        candidates += [f'"{company}" press release', f'"{company}" funding round']
    elif domain:
        candidates += [f'"{domain}" press release', f'"{domain}" team']

    queries: List[str] = []
    for q in candidates:
        q = q.strip()[:MAX_QUERY_LENGTH].strip()
        if _meaningful_length(q) >= MIN_QUERY_LENGTH and q not in queries:
            queries.append(q)

    if not queries:
        return []

    anchor = queries[0]
    for suffix in _PAD_SUFFIXES:
        if len(queries) >= MIN_QUERIES:
            break
        padded = f"{anchor} {suffix}"[:MAX_QUERY_LENGTH]
        if padded not in queries:
            queries.append(padded)

    return queries[:MAX_QUERIES]


def candidate_urls_from_seed(seed: IdentitySeed, include_email_site: bool = False) -> List[str]:
    """Seed URLs, plus the company website implied by a non-free-mail email
    domain when *include_email_site* is set.

    Malformed URLs are passed through unchanged so the classifier can record
    them as failures.
    """
    urls: List[str] = []
    for u in seed.urls:
        try:
            u = canonicalize_url(u)
        except InvalidSourceError:
            pass
        if u not in urls:
            urls.append(u)

    domain = seed.email_domain
    if include_email_site and domain and domain not in FREE_MAIL_DOMAINS:
        site = f"https://{domain}/"
        try:
            site = canonicalize_url(site)
        except InvalidSourceError:
            return urls
        if not any(domain_of(u) == domain for u in urls if "://" in u) and site not in urls:
            urls.append(site)
    return urls


def declared_domains(seed: IdentitySeed) -> List[str]:
    """Domains the seed declares as the subject's own (first-party)."""
    domains: List[str] = []
    for u in seed.urls:
        d = domain_of(u) if "://" in u else ""
        if d and d not in domains:
            domains.append(d)
    if seed.email_domain and seed.email_domain not in FREE_MAIL_DOMAINS and seed.email_domain not in domains:
        domains.append(seed.email_domain)
    return domains
