"""
Source classification: URL -> Source (domain, platform, tier, trust weight).

Trust weights live in one table so the ordering is auditable. Allow-lists
are checked in priority order (official filings, reputable media, press
wires) before the domain heuristics.
"""

from __future__ import annotations
import logging
from typing import Dict, Iterable, List, Optional, Tuple

from enrichment.errors import InvalidSourceError
from enrichment.models import Platform, Source, SourceTier
from enrichment.url_utils import canonicalize_url, domain_of, matches_any

log = logging.getLogger("enrichment.classifier")

# Non-increasing in tier order
TRUST_WEIGHTS: Dict[SourceTier, float] = {
    SourceTier.OFFICIAL_FILING: 1.0,
    SourceTier.REPUTABLE_MEDIA: 0.9,
    SourceTier.PRESS_RELEASE: 0.8,
    SourceTier.FIRST_PARTY: 0.75,
    SourceTier.THIRD_PARTY_OFFICIAL: 0.7,
    SourceTier.SOCIAL: 0.6,
    SourceTier.OTHER: 0.3,
}

TIER_ORDER: Tuple[SourceTier, ...] = tuple(TRUST_WEIGHTS)

OFFICIAL_FILING_DOMAINS = frozenset({
    "sec.gov", "edgar.gov", "europa.eu", "grants.gov", "uspto.gov",
    "companieshouse.gov.uk", "find-and-update.company-information.service.gov.uk",
})

REPUTABLE_MEDIA_DOMAINS = frozenset({
    "forbes.com", "wsj.com", "bloomberg.com", "ft.com", "cnbc.com",
    "reuters.com", "techcrunch.com", "theverge.com", "wired.com",
    "nytimes.com", "economist.com", "fastcompany.com", "inc.com",
    "entrepreneur.com", "businessinsider.com", "axios.com", "apnews.com",
})

PRESS_RELEASE_DOMAINS = frozenset({
    "prnewswire.com", "businesswire.com", "globenewswire.com",
    "accesswire.com", "einpresswire.com", "newswire.com", "marketwatch.com",
})

# Checked in order; first match wins
_ALLOW_LISTS: Tuple[Tuple[frozenset, SourceTier], ...] = (
    (OFFICIAL_FILING_DOMAINS, SourceTier.OFFICIAL_FILING),
    (REPUTABLE_MEDIA_DOMAINS, SourceTier.REPUTABLE_MEDIA),
    (PRESS_RELEASE_DOMAINS, SourceTier.PRESS_RELEASE),
)

PLATFORM_DOMAINS: Dict[str, Platform] = {
    "github.com": Platform.CODE_HOSTING,
    "gitlab.com": Platform.CODE_HOSTING,
    "bitbucket.org": Platform.CODE_HOSTING,
    "codeberg.org": Platform.CODE_HOSTING,
    "twitter.com": Platform.SOCIAL_SHORT_FORM,
    "x.com": Platform.SOCIAL_SHORT_FORM,
    "mastodon.social": Platform.SOCIAL_SHORT_FORM,
    "bsky.app": Platform.SOCIAL_SHORT_FORM,
    "threads.net": Platform.SOCIAL_SHORT_FORM,
    "linkedin.com": Platform.SOCIAL_LONG_FORM,
    "facebook.com": Platform.SOCIAL_LONG_FORM,
    "instagram.com": Platform.SOCIAL_LONG_FORM,
    "medium.com": Platform.SOCIAL_LONG_FORM,
}

_SOCIAL_PLATFORMS = frozenset({
    Platform.CODE_HOSTING, Platform.SOCIAL_SHORT_FORM, Platform.SOCIAL_LONG_FORM,
})

_THIRD_PARTY_OFFICIAL_TLDS = (".edu", ".org")


def detect_platform(domain: str, declared_domains: Iterable[str] = ()) -> Platform:
    for d, platform in PLATFORM_DOMAINS.items():
        if domain == d or domain.endswith("." + d):
            return platform
    if matches_any(domain, declared_domains):
        return Platform.WEBSITE
    return Platform.GENERIC


def classify_tier(domain: str, platform: Platform, declared_domains: Iterable[str] = ()) -> SourceTier:
    for domains, tier in _ALLOW_LISTS:
        if matches_any(domain, domains):
            return tier
    if platform in _SOCIAL_PLATFORMS:
        return SourceTier.SOCIAL
    if domain.endswith(_THIRD_PARTY_OFFICIAL_TLDS):
        return SourceTier.THIRD_PARTY_OFFICIAL
    if matches_any(domain, declared_domains):
        return SourceTier.FIRST_PARTY
    return SourceTier.OTHER


def classify_source(
    url: str,
    declared_domains: Iterable[str] = (),
    seed_declared: bool = False,
) -> Source:
    """Classify *url*. Raises InvalidSourceError for malformed or non-http(s) URLs."""
    canonical = canonicalize_url(url)
    domain = domain_of(canonical)
    declared = [d.lower() for d in declared_domains]
    platform = detect_platform(domain, declared)
    tier = classify_tier(domain, platform, declared)
    return Source(
        url=canonical,
        domain=domain,
        platform=platform,
        tier=tier,
        trust_weight=TRUST_WEIGHTS[tier],
        seed_declared=seed_declared,
    )


def classify_all(
    urls: Iterable[str],
    declared_domains: Iterable[str] = (),
    seed_urls: Iterable[str] = (),
) -> Tuple[List[Source], List[InvalidSourceError]]:
    """Classify every URL, returning (sources, invalid). Duplicates collapse."""
    declared = list(declared_domains)
    seed_set = set()
    for u in seed_urls:
        try:
            seed_set.add(canonicalize_url(u))
        except InvalidSourceError:
            seed_set.add(u)

    sources: List[Source] = []
    invalid: List[InvalidSourceError] = []
    seen = set()
    for url in urls:
        try:
            canonical = canonicalize_url(url)
            src = classify_source(canonical, declared, seed_declared=canonical in seed_set or url in seed_set)
        except InvalidSourceError as e:
            log.info("classify invalid url=%s reason=%s", url, e)
            invalid.append(e)
            continue
        if src.url in seen:
            continue
        seen.add(src.url)
        sources.append(src)
    return sources, invalid


def tier_rank(tier: Optional[SourceTier]) -> int:
    """0 for the most trusted tier."""
    return TIER_ORDER.index(tier) if tier in TRUST_WEIGHTS else len(TIER_ORDER)
