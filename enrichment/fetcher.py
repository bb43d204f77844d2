"""
HTTP page fetcher.

Plain GET with a declared crawler User-Agent. Status handling:
- 401/403/429, or a bot-wall interstitial -> BlockedError, no retry
- other 4xx -> FetchError, no retry
- 5xx, transport failure or timeout -> one retry after backoff, then
  FetchError / SourceTimeoutError
- non-HTML or empty body -> ParseError

Successful pages are kept in a thread-safe TTL cache keyed by canonical URL.
"""

from __future__ import annotations
import logging
import threading
import time
from dataclasses import dataclass
from typing import Any, Dict, Optional, Tuple

import httpx

from enrichment.config import EnrichmentConfig
from enrichment.content_extractor import is_bot_wall, visible_text
from enrichment.errors import (
    BlockedError,
    FetchError,
    ParseError,
    RunCancelledError,
    SourceTimeoutError,
)
from enrichment.pipeline_metrics import PipelineMetrics
from enrichment.url_utils import canonicalize_url, domain_of, matches_any

log = logging.getLogger("enrichment.fetch")

_BLOCKED_STATUSES = frozenset({401, 403, 429})
_HTML_TYPES = ("text/html", "application/xhtml+xml", "text/plain", "application/xml", "text/xml")


class _TTLCache:
    """Thread-safe in-memory cache with per-key TTL (seconds) and a size cap.

    Writes sweep expired entries once the cap is reached, then evict the
    oldest insertions until there is room.
    """

    def __init__(self, default_ttl: int = 1800, max_entries: int = 256, clock=time.time):
        self._store: Dict[str, Tuple[Any, float]] = {}
        self._lock = threading.Lock()
        self._default_ttl = default_ttl
        self._max_entries = max(1, max_entries)
        self._clock = clock

    def get(self, key: str) -> Optional[Any]:
        with self._lock:
            entry = self._store.get(key)
            if entry is None:
                return None
            value, expires_at = entry
            if self._clock() > expires_at:
                del self._store[key]
                return None
            return value

    def set(self, key: str, value: Any, ttl: Optional[int] = None) -> None:
        with self._lock:
            now = self._clock()
            self._store.pop(key, None)
            if len(self._store) >= self._max_entries:
                for k in [k for k, (_, exp) in self._store.items() if now > exp]:
                    del self._store[k]
            while len(self._store) >= self._max_entries:
                del self._store[next(iter(self._store))]
            self._store[key] = (value, now + (ttl or self._default_ttl))

    def clear(self) -> None:
        with self._lock:
            self._store.clear()

    @property
    def size(self) -> int:
        with self._lock:
            return len(self._store)


@dataclass(frozen=True)
class FetchedPage:
    url: str
    final_url: str
    status_code: int
    content_type: str
    html: str


class Fetcher:
    """Fetches candidate pages. One instance may serve many runs."""

    def __init__(
        self,
        config: EnrichmentConfig,
        client: Optional[httpx.Client] = None,
        transport: Optional[httpx.BaseTransport] = None,
        sleep=time.sleep,
    ):
        self.config = config
        self._client = client or httpx.Client(
            timeout=config.source_timeout,
            follow_redirects=True,
            headers={"User-Agent": config.user_agent, "Accept": "text/html,application/xhtml+xml"},
            transport=transport,
        )
        self._cache = _TTLCache(default_ttl=config.fetch_cache_ttl, max_entries=config.fetch_cache_size)
        self._sleep = sleep

    def close(self) -> None:
        self._client.close()

    def clear_cache(self) -> None:
        self._cache.clear()

    def fetch(
        self,
        url: str,
        metrics: Optional[PipelineMetrics] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> FetchedPage:
        url = canonicalize_url(url)
        if matches_any(domain_of(url), self.config.restricted_domains):
            raise BlockedError(url, f"restricted domain: {domain_of(url)}")

        cached = self._cache.get(url)
        if cached is not None:
            if metrics:
                metrics.inc_cache_hit()
            log.debug("fetch cache_hit url=%s", url)
            return cached
        if metrics:
            metrics.inc_cache_miss()

        try:
            page = self._get(url, metrics, cancel_event)
        except FetchError as e:
            if not e.retryable:
                raise
            log.info("fetch retry url=%s reason=%s backoff=%.2fs", url, e, self.config.retry_backoff)
            if metrics:
                metrics.inc_retry()
            self._sleep(self.config.retry_backoff)
            page = self._get(url, metrics, cancel_event)

        self._cache.set(url, page)
        return page

    def _get(
        self,
        url: str,
        metrics: Optional[PipelineMetrics],
        cancel_event: Optional[threading.Event],
    ) -> FetchedPage:
        if cancel_event is not None and cancel_event.is_set():
            raise RunCancelledError("fetch cancelled")
        if metrics:
            metrics.inc_fetch()

        t0 = time.time()
        try:
            resp = self._client.get(url)
        except httpx.TimeoutException as e:
            raise SourceTimeoutError(url, f"timed out after {self.config.source_timeout}s") from e
        except httpx.HTTPError as e:
            raise FetchError(url, f"transport error: {e}") from e

        elapsed_ms = (time.time() - t0) * 1000
        status = resp.status_code
        log.info("fetch url=%s status=%d ms=%.0f", url, status, elapsed_ms)

        if status in _BLOCKED_STATUSES:
            raise BlockedError(url, f"HTTP {status}", status_code=status)
        if status >= 400:
            raise FetchError(url, f"HTTP {status}", status_code=status)
        if status >= 300:
            raise FetchError(url, f"unfollowed redirect HTTP {status}", status_code=status)

        content_type = resp.headers.get("content-type", "").split(";")[0].strip().lower()
        if content_type and not content_type.startswith(_HTML_TYPES):
            raise ParseError(url, f"non-HTML content type: {content_type}", status_code=status)

        html = resp.text
        if not html.strip():
            raise ParseError(url, "empty body", status_code=status)
        if is_bot_wall(visible_text(html)):
            raise BlockedError(url, "bot wall detected", status_code=status)

        return FetchedPage(
            url=url,
            final_url=str(resp.url),
            status_code=status,
            content_type=content_type,
            html=html,
        )
