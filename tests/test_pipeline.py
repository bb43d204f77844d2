"""
End-to-end pipeline scenarios over a mocked web and fake models.
"""

import sys
import os
import itertools
import json
import threading

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import httpx
import pytest

from conftest import FILLER, TIMEOUT, FakeLLM, FakeSearch, article_html, github_html, twitter_html
from enrichment.models import EnrichmentRequest, IdentitySeed, ProfileField, Provenance, RunStatus

GH = "https://github.com/aperson"
GL = "https://gitlab.com/aperson"
X = "https://x.com/aperson"
LI = "https://www.linkedin.com/in/aperson"
MEDIA = "https://techcrunch.com/2024/03/01/acme-ceo"
BLOG = "https://random-blog.net/jane"

GH_PAGE = github_html(bio="Building data tools for analysts")


def request(primary=GH, additional=(), **kw):
    seed_kw = {k: kw.pop(k) for k in ("email", "name", "company") if k in kw}
    seed = IdentitySeed(primary_url=primary, additional_urls=tuple(additional), **seed_kw)
    return EnrichmentRequest(seed=seed, **kw)


def failures_by_url(run):
    return {f.source_url: f.error_kind for f in run.failures}


# ──────────────────────────────────────────────────────────────────────────────
# Happy paths
# ──────────────────────────────────────────────────────────────────────────────

class TestHappyPath:
    def test_github_only_profile(self, make_pipeline):
        pipeline = make_pipeline({GH: GH_PAGE})
        run = pipeline.run(request(email="a@example.com"))

        assert run.status == RunStatus.COMPLETED
        out = run.to_dict()
        assert out["profileFields"] == {
            "bio": {
                "value": "Building data tools for analysts",
                "confidence": 0.6,
                "source_urls": [GH],
                "lastUpdated": out["profileFields"]["bio"]["lastUpdated"],
                "provenance": "enrichment",
            }
        }
        assert out["failures"] == []
        assert list(out["verifiedLinks"]) == ["github.com"]
        assert out["verifiedLinks"]["github.com"]["url"] == GH
        assert out["queries"]
        assert out["metrics"]["fetches"] == 1

    def test_media_beats_blog(self, make_pipeline):
        media_html = article_html("Acme names a new CEO", [
            FILLER, "Jane Doe, CEO of Acme, spoke at the launch event on Tuesday.", FILLER,
        ], published="2024-03-01")
        blog_html = article_html("My notes", [
            FILLER, "I met Jane Doe, CEO of Globex, at a meetup last year.", FILLER,
        ])
        llm = FakeLLM(claims=[
            {"claim_type": "role", "claim_text": "Jane Doe is CEO of Acme",
             "evidence_quote": "Jane Doe, CEO of Acme", "source_urls": [MEDIA], "org": "Acme", "role": "CEO"},
            {"claim_type": "role", "claim_text": "Jane Doe is CEO of Globex",
             "evidence_quote": "Jane Doe, CEO of Globex", "source_urls": [BLOG], "org": "Globex", "role": "CEO"},
        ])
        search = FakeSearch([MEDIA, BLOG])
        pipeline = make_pipeline({GH: GH_PAGE, MEDIA: media_html, BLOG: blog_html},
                                 call_llm=llm, search=search)
        run = pipeline.run(request(name="Jane Doe"))

        assert run.status == RunStatus.COMPLETED
        fields = run.profile_fields
        assert fields["company"].value == "Acme"
        assert fields["company"].source_urls == (MEDIA,)
        assert fields["company"].confidence == 0.9
        assert fields["title"].value == "CEO"
        assert fields["current_role"].value == "CEO at Acme"
        assert "bio" in fields
        assert all("Globex" not in str(f.value) for f in fields.values())
        assert llm.calls == ["extract", "verify"]
        assert search.queries == run.queries
        assert run.metrics["llm_calls"] == 2
        assert "random-blog.net" not in run.verified_links

    def test_minimum_confidence_override(self, make_pipeline):
        run = make_pipeline({GH: GH_PAGE}).run(request(minimum_confidence=0.7))
        assert run.status == RunStatus.COMPLETED
        assert run.profile_fields == {}

    def test_user_field_survives(self, make_pipeline):
        user_bio = ProfileField(value="Hand-written bio", confidence=0.2, source_urls=(),
                                last_updated="2023-01-01T00:00:00Z", provenance=Provenance.USER)
        run = make_pipeline({GH: GH_PAGE}).run(request(existing_fields={"bio": user_bio}))
        assert run.profile_fields["bio"] is user_bio

    def test_rerun_is_idempotent(self, make_pipeline):
        pipeline = make_pipeline({GH: GH_PAGE})
        first = pipeline.run(request())
        second = pipeline.run(request(existing_fields=first.profile_fields))
        assert second.profile_fields == first.profile_fields

    def test_short_profile_naming_cloudflare_is_kept(self, make_pipeline):
        page = github_html(bio="Security engineer at Cloudflare")
        run = make_pipeline({GH: page}).run(request())
        assert run.status == RunStatus.COMPLETED
        assert run.failures == []
        assert run.profile_fields["bio"].value == "Security engineer at Cloudflare"

    def test_language_lists_from_two_hosts_are_unioned(self, make_pipeline):
        pages = {
            GH: github_html(bio="Builder of things", languages=("Python", "Go")),
            GL: github_html(bio="Builder of things", languages=("Rust",)),
        }
        run = make_pipeline(pages).run(request(additional=[GL]))
        assert run.status == RunStatus.COMPLETED
        skills = run.profile_fields["skills"]
        assert skills.value == ("Python", "Go", "Rust")
        assert skills.source_urls == (GH, GL)
        assert skills.confidence == 0.6
        assert run.profile_fields["bio"].source_urls == (GH, GL)

    def test_second_run_uses_fetch_cache(self, make_pipeline):
        calls = []
        pipeline = make_pipeline({GH: GH_PAGE}, calls=calls)
        pipeline.run(request())
        run = pipeline.run(request())
        assert calls == [GH]
        assert run.metrics["cache_hits"] == 1


# ──────────────────────────────────────────────────────────────────────────────
# Per-source failures
# ──────────────────────────────────────────────────────────────────────────────

class TestSourceFailures:
    def test_partial_failure(self, make_pipeline):
        run = make_pipeline({GH: GH_PAGE, X: 503}).run(request(additional=[X]))
        assert run.status == RunStatus.COMPLETED
        assert failures_by_url(run) == {X: "fetch_error"}
        assert "bio" in run.profile_fields

    def test_all_timeouts(self, make_pipeline):
        calls = []
        run = make_pipeline({GH: TIMEOUT, X: TIMEOUT}, calls=calls).run(request(additional=[X]))
        assert run.status == RunStatus.FAILED
        assert run.error == "no_usable_content"
        assert run.profile_fields == {}
        assert failures_by_url(run) == {GH: "timeout", X: "timeout"}
        assert sorted(calls) == sorted([GH, GH, X, X])

    def test_blocked_source(self, make_pipeline):
        run = make_pipeline({GH: GH_PAGE, X: 403}).run(request(additional=[X]))
        assert failures_by_url(run) == {X: "blocked"}

    def test_invalid_source_recorded(self, make_pipeline):
        bad = "ftp://files.example.com/cv.pdf"
        run = make_pipeline({GH: GH_PAGE}).run(request(additional=[bad]))
        assert run.status == RunStatus.COMPLETED
        assert failures_by_url(run) == {bad: "invalid_source"}

    def test_restricted_source_not_fetched(self, make_pipeline):
        calls = []
        run = make_pipeline({GH: GH_PAGE}, calls=calls).run(request(additional=[LI]))
        assert run.status == RunStatus.COMPLETED
        assert not any("linkedin" in c for c in calls)
        assert run.failures == []
        assert list(run.verified_links) == ["github.com"]

    def test_parse_failure_only_source(self, make_pipeline):
        pdf = httpx.Response(200, content=b"%PDF-1.4", headers={"content-type": "application/pdf"})
        run = make_pipeline({GH: pdf}).run(request())
        assert run.status == RunStatus.FAILED
        assert run.error == "no_usable_content"
        assert failures_by_url(run) == {GH: "parse_error"}

    def test_only_invalid_sources(self, make_pipeline):
        run = make_pipeline({}).run(request(primary="not a url"))
        assert run.status == RunStatus.FAILED
        assert run.error == "no_usable_content"
        assert failures_by_url(run) == {"not a url": "invalid_source"}

    def test_source_over_budget_marked_timeout(self, make_pipeline):
        started = threading.Event()
        unblock = threading.Event()

        def slow(request_):
            started.set()
            unblock.wait(5)
            return httpx.Response(200, text=twitter_html(bio="late"), headers={"content-type": "text/html"})

        clock = lambda: 100.0 if started.is_set() else 0.0
        pipeline = make_pipeline({GH: GH_PAGE, X: slow}, clock=clock, max_workers=1, run_timeout=1000.0)
        try:
            run = pipeline.run(request(additional=[X]))
        finally:
            unblock.set()
        assert run.status == RunStatus.COMPLETED
        assert failures_by_url(run) == {X: "timeout"}
        assert run.profile_fields["bio"].source_urls == (GH,)

    def test_queued_source_gets_its_own_budget(self, make_pipeline):
        started = threading.Event()
        unblock = threading.Event()

        def slow(request_):
            started.set()
            unblock.wait(5)
            raise httpx.ReadTimeout("timed out", request=request_)

        def clock():
            # Time jumps once the slow source is in flight, then that source is released
            if started.is_set():
                unblock.set()
                return 100.0
            return 0.0

        pipeline = make_pipeline({X: slow, GH: GH_PAGE}, clock=clock, max_workers=1, run_timeout=1000.0)
        run = pipeline.run(request(primary=X, additional=[GH]))
        assert run.status == RunStatus.COMPLETED
        assert failures_by_url(run) == {X: "timeout"}
        assert run.profile_fields["bio"].source_urls == (GH,)


# ──────────────────────────────────────────────────────────────────────────────
# Run-level failures
# ──────────────────────────────────────────────────────────────────────────────

class TestRunFailures:
    def test_consent_required(self, make_pipeline):
        calls = []
        llm = FakeLLM()
        run = make_pipeline({GH: GH_PAGE}, call_llm=llm, calls=calls).run(
            request(consent_public_sources=False)
        )
        assert run.status == RunStatus.FAILED
        assert run.error == "consent_required"
        assert calls == [] and llm.calls == []

    def test_cancelled_before_start(self, make_pipeline):
        calls = []
        llm = FakeLLM()
        cancel = threading.Event()
        cancel.set()
        run = make_pipeline({GH: GH_PAGE}, call_llm=llm, calls=calls).run(request(), cancel_event=cancel)
        assert run.status == RunStatus.FAILED
        assert run.error == "cancelled"
        assert run.profile_fields == {}
        assert calls == [] and llm.calls == []

    def test_cancelled_during_search(self, make_pipeline):
        cancel = threading.Event()
        calls = []

        class CancellingSearch(FakeSearch):
            def search(self, query):
                cancel.set()
                return super().search(query)

        search = CancellingSearch([MEDIA])
        run = make_pipeline({GH: GH_PAGE}, search=search, calls=calls).run(
            request(name="Jane Doe"), cancel_event=cancel,
        )
        assert run.status == RunStatus.FAILED
        assert run.error == "cancelled"
        assert len(search.queries) == 1
        assert run.metrics["search_calls"] == 1
        assert calls == []

    def test_run_deadline_stops_search(self, make_pipeline):
        now = [0.0]

        class SlowSearch(FakeSearch):
            def search(self, query):
                now[0] += 1000.0
                return super().search(query)

        search = SlowSearch([MEDIA])
        run = make_pipeline({GH: GH_PAGE}, search=search, clock=lambda: now[0]).run(request(name="Jane Doe"))
        assert run.status == RunStatus.FAILED
        assert run.error == "run_timeout"
        assert len(search.queries) == 1

    def test_cancelled_during_fetch(self, make_pipeline):
        cancel = threading.Event()
        llm = FakeLLM()

        def cancelling(request_):
            cancel.set()
            return httpx.Response(200, text=GH_PAGE, headers={"content-type": "text/html"})

        run = make_pipeline({GH: cancelling}, call_llm=llm).run(request(), cancel_event=cancel)
        assert run.status == RunStatus.FAILED
        assert run.error == "cancelled"
        assert llm.calls == []

    def test_run_timeout(self, make_pipeline):
        ticks = itertools.chain([0.0], itertools.repeat(1000.0))
        llm = FakeLLM()
        run = make_pipeline({GH: GH_PAGE}, call_llm=llm, clock=lambda: next(ticks)).run(request())
        assert run.status == RunStatus.FAILED
        assert run.error == "run_timeout"
        assert run.profile_fields == {}
        assert llm.calls == []

    def test_verification_failure_yields_no_model_facts(self, make_pipeline):
        llm = FakeLLM(verify_raw="not json")
        run = make_pipeline({GH: GH_PAGE}, call_llm=llm).run(request())
        assert run.status == RunStatus.COMPLETED
        assert run.profile_fields == {}
        assert run.metrics["model_contract_errors"] == 1

    def test_terminal_record_serializes(self, make_pipeline):
        run = make_pipeline({}).run(request(consent_public_sources=False))
        out = json.loads(json.dumps(run.to_dict()))
        assert out["status"] == "failed"
        assert out["completedAt"]
