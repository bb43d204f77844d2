"""
URL validation and canonicalization for candidate sources.

Canonical form is used for dedup and as the source URL carried on claims:
- only http/https, with a host
- lowercase scheme and host, default ports and fragments dropped
- tracking parameters (utm_*, fbclid, gclid, ...) stripped
- trailing slashes removed where safe
"""

from __future__ import annotations
import re
from typing import Iterable, List
from urllib.parse import urlparse, urlunparse, parse_qs, urlencode

from enrichment.errors import InvalidSourceError

ALLOWED_SCHEMES = frozenset({"http", "https"})

_STRIP_PARAMS = frozenset({
    "utm_source", "utm_medium", "utm_campaign", "utm_content", "utm_term",
    "fbclid", "gclid", "ref", "ref_src", "spm", "mc_cid", "mc_eid",
    "si", "feature", "share", "trk",
})

_HOST_RE = re.compile(r"^[a-z0-9]([a-z0-9-]*[a-z0-9])?(\.[a-z0-9]([a-z0-9-]*[a-z0-9])?)+$")


def canonicalize_url(url: str) -> str:
    """Return the canonical form of *url* or raise InvalidSourceError."""
    raw = (url or "").strip()
    if not raw or any(c.isspace() for c in raw):
        raise InvalidSourceError(url, f"malformed URL: {url!r}")
    try:
        p = urlparse(raw)
        port = p.port
    except ValueError as e:
        raise InvalidSourceError(url, f"malformed URL: {e}") from e

    scheme = (p.scheme or "").lower()
    if scheme not in ALLOWED_SCHEMES:
        raise InvalidSourceError(url, f"unsupported scheme: {scheme or '(none)'}")
    host = (p.hostname or "").lower()
    if not _HOST_RE.match(host):
        raise InvalidSourceError(url, f"invalid host: {host or '(none)'}")

    netloc = host + (f":{port}" if port and port not in (80, 443) else "")
    path = p.path.rstrip("/") or "/"
    qs = parse_qs(p.query, keep_blank_values=False)
    cleaned_qs = {k: v for k, v in qs.items() if k.lower() not in _STRIP_PARAMS}
    query = urlencode(cleaned_qs, doseq=True) if cleaned_qs else ""
    return urlunparse((scheme, netloc, path, "", query, ""))


def domain_of(url: str) -> str:
    """Host of *url* without a leading www."""
    host = (urlparse(url).hostname or "").lower()
    return host[4:] if host.startswith("www.") else host


def domain_matches(host: str, domain: str) -> bool:
    """True when *host* is *domain* or one of its subdomains."""
    host = host.lower()
    domain = domain.lower()
    return host == domain or host.endswith("." + domain)


def matches_any(host: str, domains: Iterable[str]) -> bool:
    return any(domain_matches(host, d) for d in domains)


def dedupe_preserving_order(urls: Iterable[str]) -> List[str]:
    seen = set()
    out: List[str] = []
    for u in urls:
        if u not in seen:
            seen.add(u)
            out.append(u)
    return out
