"""
Enrichment pipeline orchestration.

One run = one logical task:
  seed -> queries -> candidate URLs -> sources -> (concurrent fetch+extract)
  -> claims -> normalized claims -> verified facts -> gate + merge

Fetches run in a bounded ThreadPoolExecutor and report per-source failures
into the run under its lock. Claim extraction waits for every fetch to
finish or time out. Cancellation and the run deadline are checked between
stages; either one fails the run before any merge is applied.
"""

from __future__ import annotations
import logging
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, ThreadPoolExecutor, wait
from typing import Callable, Dict, List, Optional, Sequence

from enrichment.claim_extractor import ClaimExtractor
from enrichment.config import EnrichmentConfig
from enrichment.errors import (
    ConsentRequiredError,
    NoUsableContentError,
    ParseError,
    RunCancelledError,
    RunTimeoutError,
    SourceError,
)
from enrichment.extractors import PARSE_FAILED_NOTE, RESTRICTED_NOTE, ExtractorRegistry
from enrichment.fetcher import Fetcher
from enrichment.llm import CallLLM
from enrichment.merge import apply_confidence_gate, merge_profile
from enrichment.models import (
    EnrichmentRequest,
    EnrichmentRun,
    ExtractedContent,
    ProfileField,
    Source,
    utc_now_iso,
)
from enrichment.normalizer import normalize_claims
from enrichment.pipeline_metrics import PipelineMetrics
from enrichment.query_generator import candidate_urls_from_seed, declared_domains, generate_queries
from enrichment.search import PerplexitySearch, discover_urls
from enrichment.source_classifier import classify_all
from enrichment.verifier import FactVerifier

log = logging.getLogger("enrichment.pipeline")

_RUN_LEVEL_ERRORS = (ConsentRequiredError, NoUsableContentError, RunTimeoutError, RunCancelledError)
_POLL_INTERVAL = 0.05


class EnrichmentPipeline:
    """All collaborators are injected; nothing is read from module state."""

    def __init__(
        self,
        config: EnrichmentConfig,
        fetcher: Optional[Fetcher] = None,
        call_llm: Optional[CallLLM] = None,
        search: Optional[PerplexitySearch] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.config = config
        self.fetcher = fetcher or Fetcher(config)
        self.registry = ExtractorRegistry(self.fetcher, config)
        self.claim_extractor = ClaimExtractor(call_llm)
        self.verifier = FactVerifier(call_llm)
        self.search = search
        self._clock = clock

    # ------------------------------------------------------------------
    # Public entry point
    # ------------------------------------------------------------------

    def run(self, request: EnrichmentRequest, cancel_event: Optional[threading.Event] = None) -> EnrichmentRun:
        run = EnrichmentRun()
        metrics = PipelineMetrics()
        run.start()
        deadline = self._clock() + self.config.run_timeout
        log.info("run start run_id=%s seed_urls=%d", run.run_id, len(request.seed.urls))
        try:
            if not request.consent_public_sources:
                raise ConsentRequiredError("subject has not consented to public-source enrichment")
            fields = self._execute(request, run, metrics, cancel_event, deadline)
            run.complete(fields)
        except _RUN_LEVEL_ERRORS as e:
            log.warning("run failed run_id=%s kind=%s reason=%s", run.run_id, e.kind, e)
            run.fail(e.kind)
        finally:
            run.metrics = metrics.to_dict()
            metrics.log_summary()
        log.info(
            "run end run_id=%s status=%s fields=%d failures=%d",
            run.run_id, run.status.value, len(run.profile_fields), len(run.failures),
        )
        return run

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    def _checkpoint(self, cancel_event: Optional[threading.Event], deadline: float, stage: str) -> None:
        if cancel_event is not None and cancel_event.is_set():
            raise RunCancelledError(f"cancelled before {stage}")
        if self._clock() > deadline:
            raise RunTimeoutError(f"run exceeded {self.config.run_timeout}s before {stage}")

    def _execute(
        self,
        request: EnrichmentRequest,
        run: EnrichmentRun,
        metrics: PipelineMetrics,
        cancel_event: Optional[threading.Event],
        deadline: float,
    ) -> Dict[str, ProfileField]:
        seed = request.seed

        with metrics.stage("queries"):
            run.queries = generate_queries(seed)
            urls = candidate_urls_from_seed(seed, include_email_site=self.config.derive_email_site)
        self._checkpoint(cancel_event, deadline, "search")

        def _should_stop() -> bool:
            cancelled = cancel_event is not None and cancel_event.is_set()
            return cancelled or self._clock() > deadline

        with metrics.stage("search"):
            found = discover_urls(
                self.search, run.queries, self.config.max_search_urls, metrics, should_stop=_should_stop,
            )
            for u in found:
                if u not in urls:
                    urls.append(u)
        self._checkpoint(cancel_event, deadline, "classify")

        with metrics.stage("classify"):
            sources, invalid = classify_all(urls, declared_domains(seed), seed.urls)
            for err in invalid:
                run.add_failure(err.url, err.kind, str(err))
        if not sources:
            raise NoUsableContentError("no valid candidate sources")

        with metrics.stage("fetch"):
            contents = self._fetch_all(sources, run, metrics, cancel_event, deadline)
        self._checkpoint(cancel_event, deadline, "claim extraction")

        usable = [c for c in contents if c.is_usable]
        if not usable:
            raise NoUsableContentError(f"no usable content from {len(sources)} sources")
        self._record_verified_links(sources, usable, run)
        by_url = {s.url: s for s in sources}

        with metrics.stage("claim_extraction"):
            extraction = self.claim_extractor.extract(usable, by_url, seed, metrics)
        metrics.claims_pre_dedupe = len(extraction.claims)
        metrics.model_contract_errors += len(extraction.contract_errors)
        self._checkpoint(cancel_event, deadline, "normalization")

        with metrics.stage("normalization"):
            claims = normalize_claims(extraction.claims)
        metrics.claims_post_dedupe = len(claims)

        with metrics.stage("verification"):
            verification = self.verifier.verify(claims, by_url, seed, metrics)
        if verification.contract_error is not None:
            metrics.model_contract_errors += 1
        self._checkpoint(cancel_event, deadline, "merge")

        threshold = (
            request.minimum_confidence
            if request.minimum_confidence is not None
            else self.config.min_confidence
        )
        with metrics.stage("merge"):
            metrics.facts_gated = len(apply_confidence_gate(verification.facts, threshold))
            return merge_profile(
                verification.facts,
                existing=request.existing_fields,
                min_confidence=threshold,
                now=utc_now_iso(),
            )

    def _fetch_all(
        self,
        sources: Sequence[Source],
        run: EnrichmentRun,
        metrics: PipelineMetrics,
        cancel_event: Optional[threading.Event],
        deadline: float,
    ) -> List[ExtractedContent]:
        """Fetch and extract every source concurrently, recording per-source failures.

        A source's budget starts when a worker picks it up, so sources queued
        behind slow ones are not charged for the wait. The run deadline still
        bounds the whole stage.
        """
        budget = self.config.source_fetch_budget
        results: Dict[str, ExtractedContent] = {}
        started_at: Dict[str, float] = {}

        def _extract(src: Source) -> Optional[ExtractedContent]:
            if cancel_event is not None and cancel_event.is_set():
                return None
            started_at[src.url] = self._clock()
            return self.registry.for_source(src).extract(src, metrics=metrics, cancel_event=cancel_event)

        pool = ThreadPoolExecutor(max_workers=max(1, min(self.config.max_workers, len(sources))))
        futures: Dict[Future, Source] = {pool.submit(_extract, s): s for s in sources}
        pending = set(futures)
        try:
            while pending:
                if cancel_event is not None and cancel_event.is_set():
                    raise RunCancelledError("cancelled during fetch")
                if self._clock() > deadline:
                    raise RunTimeoutError(f"run exceeded {self.config.run_timeout}s during fetch")
                done, pending = wait(pending, timeout=_POLL_INTERVAL, return_when=FIRST_COMPLETED)
                for fut in done:
                    self._collect(fut, futures[fut], run, results)

                now = self._clock()
                overdue = {
                    f for f in pending
                    if futures[f].url in started_at and now > started_at[futures[f].url] + budget
                }
                for fut in overdue:
                    src = futures[fut]
                    if fut.done():
                        self._collect(fut, src, run, results)
                        continue
                    log.warning("fetch over_budget url=%s budget=%.1fs", src.url, budget)
                    run.add_failure(src.url, "timeout", f"source exceeded {budget:.1f}s fetch budget")
                pending -= overdue
        finally:
            pool.shutdown(wait=False, cancel_futures=True)

        # Preserve source order
        return [results[s.url] for s in sources if s.url in results]

    def _collect(self, fut: Future, src: Source, run: EnrichmentRun, results: Dict[str, ExtractedContent]) -> None:
        try:
            content = fut.result()
        except ParseError as e:
            run.add_failure(src.url, e.kind, str(e))
            results[src.url] = ExtractedContent.empty(src.url, src.platform, PARSE_FAILED_NOTE)
            return
        except SourceError as e:
            log.info("fetch failed url=%s kind=%s reason=%s", src.url, e.kind, e)
            run.add_failure(src.url, e.kind, str(e))
            return
        except RunCancelledError:
            return
        if content is not None:
            results[src.url] = content

    def _record_verified_links(
        self,
        sources: Sequence[Source],
        usable: Sequence[ExtractedContent],
        run: EnrichmentRun,
    ) -> None:
        usable_urls = {c.url for c in usable if RESTRICTED_NOTE not in c.notes}
        verified_at = utc_now_iso()
        for src in sources:
            if src.seed_declared and src.url in usable_urls:
                run.verified_links[src.domain] = {"url": src.url, "verified_at": verified_at}
