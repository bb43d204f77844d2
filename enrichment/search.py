"""
Web search for candidate URL discovery via Perplexity Sonar.

Only the citation URLs are used; the model's answer text is never treated
as evidence. Search is best-effort: a failed query contributes no URLs.
"""

from __future__ import annotations
import logging
from typing import Callable, List, Optional, Sequence

import httpx

from enrichment.config import EnrichmentConfig
from enrichment.errors import InvalidSourceError
from enrichment.pipeline_metrics import PipelineMetrics
from enrichment.url_utils import canonicalize_url

log = logging.getLogger("enrichment.search")

PERPLEXITY_URL = "https://api.perplexity.ai/chat/completions"
SYSTEM_SEARCH = (
    "You are a research assistant. Find public pages about the specified person: "
    "profiles, news coverage, press releases, filings, talks and publications. Cite every source."
)


class PerplexitySearch:
    def __init__(
        self,
        api_key: str,
        model: str = "sonar",
        timeout: float = 30.0,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.api_key = api_key
        self.model = model
        self._client = httpx.Client(timeout=timeout, transport=transport)

    def close(self) -> None:
        self._client.close()

    def search(self, query: str) -> List[str]:
        """Citation URLs for one query. Errors are logged and yield []."""
        try:
            resp = self._client.post(
                PERPLEXITY_URL,
                headers={"Authorization": f"Bearer {self.api_key}", "Content-Type": "application/json"},
                json={
                    "model": self.model,
                    "messages": [
                        {"role": "system", "content": SYSTEM_SEARCH},
                        {"role": "user", "content": query},
                    ],
                },
            )
        except httpx.HTTPError as e:
            log.warning("search error query=%r reason=%s", query, e)
            return []
        if resp.status_code != 200:
            log.warning("search status=%d query=%r", resp.status_code, query)
            return []
        try:
            data = resp.json()
        except ValueError:
            log.warning("search invalid_json query=%r", query)
            return []
        if not isinstance(data, dict):
            log.warning("search unexpected_body type=%s query=%r", type(data).__name__, query)
            return []
        citations = data.get("citations") or []
        if not isinstance(citations, list):
            return []
        return [c for c in citations if isinstance(c, str)]


def discover_urls(
    search: Optional[PerplexitySearch],
    queries: Sequence[str],
    limit: int,
    metrics: Optional[PipelineMetrics] = None,
    should_stop: Optional[Callable[[], bool]] = None,
) -> List[str]:
    """Canonical, de-duplicated citation URLs across *queries*, capped at *limit*.

    *should_stop* is polled before each query; once it returns True no further
    queries are sent and the URLs found so far are returned.
    """
    if search is None or limit <= 0:
        return []
    urls: List[str] = []
    for i, q in enumerate(queries):
        if should_stop is not None and should_stop():
            log.info("search stopped queries_sent=%d urls=%d", i, len(urls))
            return urls
        if metrics:
            metrics.inc_search()
        for raw in search.search(q):
            try:
                url = canonicalize_url(raw)
            except InvalidSourceError:
                continue
            if url not in urls:
                urls.append(url)
            if len(urls) >= limit:
                log.info("search queries=%d urls=%d capped=true", len(queries), len(urls))
                return urls
    log.info("search queries=%d urls=%d", len(queries), len(urls))
    return urls


def make_search(config: EnrichmentConfig) -> Optional[PerplexitySearch]:
    if not config.perplexity_api_key:
        return None
    return PerplexitySearch(api_key=config.perplexity_api_key, timeout=config.source_timeout * 3)
