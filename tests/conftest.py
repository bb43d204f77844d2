"""Shared fixtures: canned HTML pages, a routing httpx transport, fake models."""

import json
import os
import re
import sys
from typing import Any, Dict, List, Optional

sys.path.insert(0, os.path.join(os.path.dirname(__file__), ".."))

import httpx
import pytest

from enrichment import prompts as P
from enrichment.config import EnrichmentConfig
from enrichment.fetcher import Fetcher
from enrichment.pipeline import EnrichmentPipeline

TIMEOUT = object()
HTML_HEADERS = {"content-type": "text/html; charset=utf-8"}


# ──────────────────────────────────────────────────────────────────────────────
# HTML builders
# ──────────────────────────────────────────────────────────────────────────────

def github_html(bio=None, name=None, handle=None, company=None, location=None,
                languages=(), pinned=()):
    parts = ["<html><head><title>GitHub profile</title></head><body><main>"]
    if name or handle:
        parts.append('<h1 class="vcard-names">')
        if name:
            parts.append(f'<span class="p-name vcard-fullname">{name}</span>')
        if handle:
            parts.append(f'<span class="p-nickname vcard-username">{handle}</span>')
        parts.append("</h1>")
    if bio:
        parts.append(f'<div class="p-note user-profile-bio"><div>{bio}</div></div>')
    if company:
        parts.append(f'<span class="p-org">{company}</span>')
    if location:
        parts.append(f'<span class="p-label">{location}</span>')
    for repo, lang in pinned:
        parts.append(
            f'<div class="pinned-item-list-item"><h3><a href="#">{repo}</a></h3>'
            f'<span itemprop="programmingLanguage">{lang}</span></div>'
        )
    for lang in languages:
        parts.append(f'<span itemprop="programmingLanguage">{lang}</span>')
    parts.append("</main></body></html>")
    return "".join(parts)


def twitter_html(name=None, bio=None, location=None):
    parts = ["<html><head><title>Profile / X</title></head><body>"]
    if name:
        parts.append(f'<div data-testid="UserName"><span>{name}</span></div>')
    if bio:
        parts.append(f'<div data-testid="UserDescription">{bio}</div>')
    if location:
        parts.append(f'<span data-testid="UserLocation">{location}</span>')
    parts.append("</body></html>")
    return "".join(parts)


def article_html(title, paragraphs, published=None, description=None):
    head = [f"<title>{title}</title>"]
    if published:
        head.append(f'<meta property="article:published_time" content="{published}">')
    if description:
        head.append(f'<meta name="description" content="{description}">')
    body = "".join(f"<p>{p}</p>" for p in paragraphs)
    return (
        f"<html><head>{''.join(head)}</head><body>"
        f"<nav>Home | About | Contact</nav>"
        f"<article><h1>{title}</h1>{body}</article>"
        f"<footer>Copyright</footer></body></html>"
    )


FILLER = (
    "The company was founded to help teams ship reliable software faster and has since grown "
    "into a trusted partner for customers across several industries and regions worldwide."
)


# ──────────────────────────────────────────────────────────────────────────────
# Transport
# ──────────────────────────────────────────────────────────────────────────────

def route_transport(routes: Dict[str, Any], calls: Optional[List[str]] = None) -> httpx.MockTransport:
    """MockTransport keyed by full URL.

    A str value is served as HTML; TIMEOUT raises ReadTimeout; an int is a
    bare status code; a callable receives the request.
    """
    def handler(request: httpx.Request) -> httpx.Response:
        url = str(request.url)
        if calls is not None:
            calls.append(url)
        route = routes.get(url)
        if route is None:
            return httpx.Response(404, text="not found", headers=HTML_HEADERS)
        if route is TIMEOUT:
            raise httpx.ReadTimeout("timed out", request=request)
        if isinstance(route, int):
            return httpx.Response(route, text="", headers=HTML_HEADERS)
        if isinstance(route, httpx.Response):
            return route
        if callable(route):
            return route(request)
        return httpx.Response(200, text=route, headers=HTML_HEADERS)

    return httpx.MockTransport(handler)


# ──────────────────────────────────────────────────────────────────────────────
# Fake models
# ──────────────────────────────────────────────────────────────────────────────

class FakeLLM:
    """Answers extraction with canned claims and verification with 'supported'.

    verdict_overrides maps claim_id -> verdict dict; verify_raw replaces the
    whole verification response.
    """

    def __init__(self, claims=None, extraction_raw=None, verify_raw=None, verdict_overrides=None,
                 verify_confidence=None):
        self.claims = claims or []
        self.extraction_raw = extraction_raw
        self.verify_raw = verify_raw
        self.verdict_overrides = verdict_overrides or {}
        self.verify_confidence = verify_confidence
        self.calls: List[str] = []

    def __call__(self, prompt, system, max_tokens):
        if system == P.SYSTEM_CLAIM_EXTRACTION:
            self.calls.append("extract")
            if self.extraction_raw is not None:
                return self.extraction_raw
            return json.dumps({"claims": self.claims})
        self.calls.append("verify")
        if self.verify_raw is not None:
            return self.verify_raw
        ids = re.findall(r'"claim_id": "([^"]+)"', prompt)
        verdicts = []
        for cid in ids:
            v = {"claim_id": cid, "verdict": "supported"}
            if self.verify_confidence is not None:
                v["confidence"] = self.verify_confidence
            v.update(self.verdict_overrides.get(cid, {}))
            verdicts.append(v)
        return json.dumps({"verdicts": verdicts})


class FakeSearch:
    def __init__(self, urls):
        self.urls = list(urls)
        self.queries: List[str] = []

    def search(self, query):
        self.queries.append(query)
        return list(self.urls)


# ──────────────────────────────────────────────────────────────────────────────
# Fixtures
# ──────────────────────────────────────────────────────────────────────────────

@pytest.fixture
def config():
    return EnrichmentConfig(retry_backoff=0.0, source_timeout=2.0, run_timeout=30.0)


@pytest.fixture
def make_fetcher(config):
    def _make(routes, calls=None, cfg=None):
        return Fetcher(cfg or config, transport=route_transport(routes, calls), sleep=lambda s: None)
    return _make


@pytest.fixture
def make_pipeline():
    def _make(routes, call_llm=None, search=None, calls=None, clock=None, **overrides):
        settings = {"retry_backoff": 0.0, "source_timeout": 2.0, "run_timeout": 30.0}
        settings.update(overrides)
        cfg = EnrichmentConfig(**settings)
        fetcher = Fetcher(cfg, transport=route_transport(routes, calls), sleep=lambda s: None)
        kwargs = {"fetcher": fetcher, "call_llm": call_llm, "search": search}
        if clock is not None:
            kwargs["clock"] = clock
        return EnrichmentPipeline(cfg, **kwargs)
    return _make
