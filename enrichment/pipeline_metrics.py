"""
Instrumentation counters and timing utilities for an enrichment run.

Tracks model calls, page fetches, search calls, fetch-cache hits/misses,
claim counts before and after normalization, and per-stage timings.
"""

from __future__ import annotations
import threading
import time
import logging
from contextlib import contextmanager
from typing import Dict, Any

log = logging.getLogger("enrichment.metrics")


class PipelineMetrics:
    """Mutable counter bag passed through a single enrichment run.

    Fetch workers increment counters concurrently, so increments take a lock.
    """

    def __init__(self):
        self.llm_calls: int = 0
        self.fetches: int = 0
        self.fetch_retries: int = 0
        self.search_calls: int = 0
        self.cache_hits: int = 0
        self.cache_misses: int = 0
        self.claims_pre_dedupe: int = 0
        self.claims_post_dedupe: int = 0
        self.facts_verified: int = 0
        self.facts_gated: int = 0
        self.model_contract_errors: int = 0
        self.stage_timings: Dict[str, float] = {}
        self._stage_stack: Dict[str, float] = {}
        self._lock = threading.Lock()
        self._start = time.time()

    def start_stage(self, name: str) -> None:
        self._stage_stack[name] = time.time()

    def end_stage(self, name: str) -> None:
        t0 = self._stage_stack.pop(name, None)
        if t0 is not None:
            self.stage_timings[name] = (time.time() - t0) * 1000

    @contextmanager
    def stage(self, name: str):
        self.start_stage(name)
        try:
            yield
        finally:
            self.end_stage(name)

    def _inc(self, attr: str, n: int) -> None:
        with self._lock:
            setattr(self, attr, getattr(self, attr) + n)

    def inc_llm(self, n: int = 1) -> None:
        self._inc("llm_calls", n)

    def inc_fetch(self, n: int = 1) -> None:
        self._inc("fetches", n)

    def inc_retry(self, n: int = 1) -> None:
        self._inc("fetch_retries", n)

    def inc_search(self, n: int = 1) -> None:
        self._inc("search_calls", n)

    def inc_cache_hit(self) -> None:
        self._inc("cache_hits", 1)

    def inc_cache_miss(self) -> None:
        self._inc("cache_misses", 1)

    def total_elapsed_ms(self) -> float:
        return (time.time() - self._start) * 1000

    def to_dict(self) -> Dict[str, Any]:
        return {
            "llm_calls": self.llm_calls,
            "fetches": self.fetches,
            "fetch_retries": self.fetch_retries,
            "search_calls": self.search_calls,
            "cache_hits": self.cache_hits,
            "cache_misses": self.cache_misses,
            "claims_pre_dedupe": self.claims_pre_dedupe,
            "claims_post_dedupe": self.claims_post_dedupe,
            "facts_verified": self.facts_verified,
            "facts_gated": self.facts_gated,
            "model_contract_errors": self.model_contract_errors,
            "stage_timings_ms": dict(self.stage_timings),
            "total_elapsed_ms": self.total_elapsed_ms(),
        }

    def log_summary(self) -> None:
        d = self.to_dict()
        log.info(
            "pipeline_metrics llm=%d fetches=%d retries=%d search=%d "
            "cache_hits=%d cache_misses=%d claims_pre=%d claims_post=%d "
            "verified=%d gated=%d contract_errors=%d total_ms=%.0f stages=%s",
            d["llm_calls"], d["fetches"], d["fetch_retries"], d["search_calls"],
            d["cache_hits"], d["cache_misses"],
            d["claims_pre_dedupe"], d["claims_post_dedupe"],
            d["facts_verified"], d["facts_gated"], d["model_contract_errors"],
            d["total_elapsed_ms"],
            {k: f"{v:.0f}ms" for k, v in d["stage_timings_ms"].items()},
        )
