"""
Unit tests for source classification: tiers, trust weights, platforms.
"""

import sys
import os

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import pytest

from enrichment.errors import InvalidSourceError
from enrichment.models import Platform, SourceTier
from enrichment.source_classifier import (
    TIER_ORDER,
    TRUST_WEIGHTS,
    classify_all,
    classify_source,
    tier_rank,
)


class TestTrustTable:
    def test_every_tier_has_a_weight(self):
        assert set(TRUST_WEIGHTS) == set(SourceTier)

    def test_weights_non_increasing_in_tier_order(self):
        weights = [TRUST_WEIGHTS[t] for t in TIER_ORDER]
        assert weights == sorted(weights, reverse=True)
        assert all(0.0 < w <= 1.0 for w in weights)

    def test_tier_rank(self):
        assert tier_rank(SourceTier.OFFICIAL_FILING) == 0
        assert tier_rank(SourceTier.OTHER) == len(TIER_ORDER) - 1


class TestClassifySource:
    @pytest.mark.parametrize("url, tier", [
        ("https://www.sec.gov/cgi-bin/browse-edgar?company=acme", SourceTier.OFFICIAL_FILING),
        ("https://www.forbes.com/profile/jane-doe", SourceTier.REPUTABLE_MEDIA),
        ("https://techcrunch.com/2024/01/02/acme-raises", SourceTier.REPUTABLE_MEDIA),
        ("https://www.prnewswire.com/news-releases/acme", SourceTier.PRESS_RELEASE),
        ("https://github.com/aperson", SourceTier.SOCIAL),
        ("https://x.com/aperson", SourceTier.SOCIAL),
        ("https://cs.stanford.edu/people/jane", SourceTier.THIRD_PARTY_OFFICIAL),
        ("https://www.wikimedia.org/jane", SourceTier.THIRD_PARTY_OFFICIAL),
        ("https://random-blog.net/post", SourceTier.OTHER),
    ])
    def test_tiers(self, url, tier):
        src = classify_source(url)
        assert src.tier == tier
        assert src.trust_weight == TRUST_WEIGHTS[tier]

    def test_declared_domain_is_first_party(self):
        src = classify_source("https://www.acme.io/team", declared_domains=["acme.io"])
        assert src.tier == SourceTier.FIRST_PARTY
        assert src.platform == Platform.WEBSITE
        assert src.domain == "acme.io"

    def test_allow_list_beats_declared_domain(self):
        src = classify_source("https://www.forbes.com/x", declared_domains=["forbes.com"])
        assert src.tier == SourceTier.REPUTABLE_MEDIA

    def test_subdomain_of_allow_listed_domain(self):
        assert classify_source("https://markets.businesswire.com/a").tier == SourceTier.PRESS_RELEASE

    @pytest.mark.parametrize("url, platform", [
        ("https://github.com/a", Platform.CODE_HOSTING),
        ("https://gitlab.com/a", Platform.CODE_HOSTING),
        ("https://twitter.com/a", Platform.SOCIAL_SHORT_FORM),
        ("https://bsky.app/profile/a", Platform.SOCIAL_SHORT_FORM),
        ("https://www.linkedin.com/in/a", Platform.SOCIAL_LONG_FORM),
        ("https://news.example.com/a", Platform.GENERIC),
    ])
    def test_platforms(self, url, platform):
        assert classify_source(url).platform == platform

    def test_url_is_canonicalized(self):
        src = classify_source("https://GitHub.com/aperson/?utm_source=feed")
        assert src.url == "https://github.com/aperson"

    def test_malformed_url_raises(self):
        with pytest.raises(InvalidSourceError):
            classify_source("ftp://files.example.com/x")


class TestClassifyAll:
    def test_invalid_urls_are_collected_not_raised(self):
        sources, invalid = classify_all(
            ["https://github.com/a", "nope://x", "https://github.com/a/"],
            seed_urls=["https://github.com/a"],
        )
        assert [s.url for s in sources] == ["https://github.com/a"]
        assert sources[0].seed_declared is True
        assert len(invalid) == 1 and invalid[0].url == "nope://x"

    def test_discovered_urls_are_not_seed_declared(self):
        sources, _ = classify_all(["https://forbes.com/a"], seed_urls=[])
        assert sources[0].seed_declared is False
