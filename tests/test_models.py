"""
Unit tests for records, configuration, metrics, and the model/search clients.
"""

import sys
import os
import json
import threading
from types import SimpleNamespace

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import httpx
import pytest

from conftest import FakeSearch
from enrichment.config import DEFAULT_RESTRICTED_DOMAINS, EnrichmentConfig
from enrichment.llm import AnthropicLLM, make_llm, parse_json_from_llm
from enrichment.models import (
    CandidateClaim,
    ClaimType,
    EnrichmentRun,
    ExtractedContent,
    IdentitySeed,
    Platform,
    ProfileField,
    Provenance,
    RunStatus,
    SourceTier,
    VerifiedFact,
)
from enrichment.pipeline_metrics import PipelineMetrics
from enrichment.search import PERPLEXITY_URL, PerplexitySearch, discover_urls, make_search


# ──────────────────────────────────────────────────────────────────────────────
# Records
# ──────────────────────────────────────────────────────────────────────────────

class TestProfileField:
    def test_round_trip(self):
        data = {
            "value": ["Python", "Go"],
            "confidence": 0.75,
            "source_urls": ["https://github.com/a"],
            "lastUpdated": "2024-01-01T00:00:00Z",
            "provenance": "enrichment",
        }
        field = ProfileField.from_dict(data)
        assert field.value == ("Python", "Go")
        assert field.provenance == Provenance.ENRICHMENT
        assert field.to_dict() == data

    def test_enrichment_requires_sources(self):
        with pytest.raises(ValueError):
            ProfileField(value="x", confidence=0.9, source_urls=(), last_updated="t",
                         provenance=Provenance.ENRICHMENT)

    def test_user_field_without_sources(self):
        field = ProfileField.from_dict({"value": "x", "provenance": "user"})
        assert field.source_urls == ()
        assert field.last_updated


class TestVerifiedFact:
    def _claim(self, urls):
        return CandidateClaim(claim_id="c", claim_type=ClaimType.AWARD, claim_text="t",
                              evidence_quote="t", source_urls=tuple(urls))

    def test_requires_sources(self):
        with pytest.raises(ValueError):
            VerifiedFact(claim=self._claim([]), confidence=0.5, source_type=SourceTier.OTHER)

    def test_requires_positive_confidence(self):
        with pytest.raises(ValueError):
            VerifiedFact(claim=self._claim(["https://a.com/"]), confidence=0.0, source_type=SourceTier.OTHER)


class TestSeedAndContent:
    def test_seed_urls_primary_first_without_repeats(self):
        seed = IdentitySeed(primary_url="https://a.com/x", additional_urls=(" https://b.com/", "https://a.com/x", ""))
        assert seed.urls == ["https://a.com/x", "https://b.com/"]

    def test_email_domain(self):
        assert IdentitySeed(email="Jane@Acme.IO").email_domain == "acme.io"
        assert IdentitySeed(email="nobody").email_domain is None

    def test_empty_content_not_usable(self):
        content = ExtractedContent.empty("https://a.com/", Platform.GENERIC, "restricted_access")
        assert not content.is_usable
        assert content.notes == ["restricted_access"]


class TestEnrichmentRun:
    def test_lifecycle(self):
        run = EnrichmentRun()
        assert run.status == RunStatus.PENDING
        run.start()
        run.add_failure("https://a.com/", "timeout", "slow")
        run.complete({})
        assert run.status == RunStatus.COMPLETED
        assert run.started_at and run.completed_at
        assert run.to_dict()["failures"] == [
            {"sourceUrl": "https://a.com/", "errorKind": "timeout", "message": "slow"},
        ]

    def test_fail_clears_fields(self):
        run = EnrichmentRun()
        run.start()
        run.fail("run_timeout")
        assert run.status == RunStatus.FAILED
        assert run.error == "run_timeout"
        assert run.profile_fields == {}

    def test_terminal_states_are_final(self):
        run = EnrichmentRun()
        with pytest.raises(RuntimeError):
            run.complete({})
        run.start()
        with pytest.raises(RuntimeError):
            run.start()
        run.complete({})
        with pytest.raises(RuntimeError):
            run.fail("cancelled")

    def test_concurrent_failures_all_recorded(self):
        run = EnrichmentRun()
        run.start()
        threads = [
            threading.Thread(target=lambda i=i: run.add_failure(f"https://s{i}.com/", "blocked"))
            for i in range(20)
        ]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert len(run.failures) == 20


# ──────────────────────────────────────────────────────────────────────────────
# Config
# ──────────────────────────────────────────────────────────────────────────────

class TestConfig:
    def test_defaults(self):
        cfg = EnrichmentConfig.from_env({})
        assert cfg.min_confidence == 0.6
        assert cfg.restricted_domains == DEFAULT_RESTRICTED_DOMAINS
        assert cfg.anthropic_api_key is None
        assert cfg.derive_email_site is False

    def test_overrides(self):
        cfg = EnrichmentConfig.from_env({
            "ENRICH_MIN_CONFIDENCE": "0.8",
            "ENRICH_MAX_WORKERS": "8",
            "ENRICH_SOURCE_TIMEOUT": "3",
            "ENRICH_RETRY_BACKOFF": "1",
            "ENRICH_DERIVE_EMAIL_SITE": "yes",
            "ENRICH_RESTRICTED_DOMAINS": "LinkedIn.com, example.org ,",
            "ANTHROPIC_API_KEY": "sk-test",
        })
        assert cfg.min_confidence == 0.8
        assert cfg.max_workers == 8
        assert cfg.derive_email_site is True
        assert cfg.restricted_domains == ("linkedin.com", "example.org")
        assert cfg.anthropic_api_key == "sk-test"
        assert cfg.source_fetch_budget == 3 * 2 + 1 + 1.0

    def test_restricted_list_can_be_emptied(self):
        assert EnrichmentConfig.from_env({"ENRICH_RESTRICTED_DOMAINS": ""}).restricted_domains == ()


# ──────────────────────────────────────────────────────────────────────────────
# Metrics
# ──────────────────────────────────────────────────────────────────────────────

class TestMetrics:
    def test_stage_timing(self):
        m = PipelineMetrics()
        with m.stage("fetch"):
            pass
        assert "fetch" in m.to_dict()["stage_timings_ms"]

    def test_concurrent_increments(self):
        m = PipelineMetrics()

        def work():
            for _ in range(500):
                m.inc_fetch()

        threads = [threading.Thread(target=work) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert m.fetches == 4000


# ──────────────────────────────────────────────────────────────────────────────
# Model client
# ──────────────────────────────────────────────────────────────────────────────

class TestLLM:
    def test_parse_json_variants(self):
        assert parse_json_from_llm('{"a": 1}') == {"a": 1}
        assert parse_json_from_llm('```json\n{"a": 1}\n```') == {"a": 1}
        assert parse_json_from_llm('Sure! {"a": 1} Hope that helps.') == {"a": 1}
        assert parse_json_from_llm("[1, 2]") == [1, 2]
        assert parse_json_from_llm("nothing here") is None
        assert parse_json_from_llm(None) is None

    def test_anthropic_adapter(self):
        seen = {}

        def create(**kwargs):
            seen.update(kwargs)
            return SimpleNamespace(content=[SimpleNamespace(text='{"ok": '), SimpleNamespace(text="true}")])

        client = SimpleNamespace(messages=SimpleNamespace(create=create))
        llm = AnthropicLLM(api_key="k", model="m", client=client)
        assert llm("prompt", "system", 100) == '{"ok": true}'
        assert seen["system"] == "system"
        assert seen["max_tokens"] == 100
        assert seen["messages"] == [{"role": "user", "content": "prompt"}]

    def test_make_llm_without_key(self):
        assert make_llm(EnrichmentConfig()) is None


# ──────────────────────────────────────────────────────────────────────────────
# Search
# ──────────────────────────────────────────────────────────────────────────────

def _search(handler):
    return PerplexitySearch(api_key="pk", transport=httpx.MockTransport(handler))


class TestSearch:
    def test_citations(self):
        seen = {}

        def handler(request):
            seen["auth"] = request.headers["authorization"]
            seen["body"] = json.loads(request.content)
            return httpx.Response(200, json={"citations": ["https://a.com/x", 7, "https://b.com/"]})

        assert _search(handler).search('"Jane Doe"') == ["https://a.com/x", "https://b.com/"]
        assert seen["auth"] == "Bearer pk"
        assert seen["body"]["messages"][-1]["content"] == '"Jane Doe"'

    @pytest.mark.parametrize("response", [
        httpx.Response(500, text="oops"),
        httpx.Response(200, text="not json"),
        httpx.Response(200, json={"choices": []}),
        httpx.Response(200, json=["https://a.com/"]),
        httpx.Response(200, json={"citations": "https://a.com/"}),
    ])
    def test_failures_yield_nothing(self, response):
        assert _search(lambda request: response).search("q") == []

    def test_transport_error_yields_nothing(self):
        def handler(request):
            raise httpx.ConnectError("down", request=request)

        assert _search(handler).search("q") == []

    def test_discover_dedupes_and_caps(self):
        class Static:
            def search(self, q):
                return ["https://a.com/x?utm_source=s", "https://a.com/x", "bad url", "https://b.com/", "https://c.com/"]

        metrics = PipelineMetrics()
        urls = discover_urls(Static(), ["q1", "q2"], limit=2, metrics=metrics)
        assert urls == ["https://a.com/x", "https://b.com/"]
        assert metrics.search_calls == 1

    def test_discover_stops_when_asked(self):
        search = FakeSearch(["https://a.com/"])
        urls = discover_urls(search, ["q1", "q2", "q3"], limit=5, should_stop=lambda: bool(search.queries))
        assert search.queries == ["q1"]
        assert urls == ["https://a.com/"]

    def test_discover_without_search(self):
        assert discover_urls(None, ["q"], limit=5) == []

    def test_make_search(self):
        assert make_search(EnrichmentConfig()) is None
        assert isinstance(make_search(EnrichmentConfig(perplexity_api_key="pk")), PerplexitySearch)
        assert PERPLEXITY_URL.startswith("https://")
