"""
Error taxonomy for the enrichment pipeline.

Per-source errors (InvalidSourceError, FetchError, BlockedError, ParseError)
are recovered locally: the source is excluded and recorded in the run's
failure list. ModelContractError empties a single model pass. Only the
run-level errors fail an EnrichmentRun.
"""

from __future__ import annotations
from typing import Optional


class EnrichmentError(Exception):
    """Base class for all pipeline errors."""

    kind = "error"


# ---------------------------------------------------------------------------
# Per-source errors
# ---------------------------------------------------------------------------

class SourceError(EnrichmentError):
    """A single source could not be used. Never fatal to the run."""

    kind = "source_error"

    def __init__(self, url: str, message: str = "", status_code: Optional[int] = None):
        self.url = url
        self.status_code = status_code
        super().__init__(message or f"{self.kind}: {url}")


class InvalidSourceError(SourceError):
    kind = "invalid_source"


class FetchError(SourceError):
    kind = "fetch_error"

    @property
    def retryable(self) -> bool:
        # 5xx and transport failures get one retry; 4xx never do
        return self.status_code is None or self.status_code >= 500


class SourceTimeoutError(FetchError):
    kind = "timeout"


class BlockedError(SourceError):
    """Anti-bot wall or an explicit refusal (401/403/429)."""

    kind = "blocked"


class ParseError(SourceError):
    kind = "parse_error"


# ---------------------------------------------------------------------------
# Model pass errors
# ---------------------------------------------------------------------------

class ModelContractError(EnrichmentError):
    """Model response failed JSON/schema validation. That pass returns nothing."""

    kind = "model_contract"

    def __init__(self, stage: str, message: str = ""):
        self.stage = stage
        super().__init__(message or f"model response for {stage} violated its contract")


# ---------------------------------------------------------------------------
# Run-level errors
# ---------------------------------------------------------------------------

class RunTimeoutError(EnrichmentError):
    kind = "run_timeout"


class RunCancelledError(EnrichmentError):
    kind = "cancelled"


class ConsentRequiredError(EnrichmentError):
    kind = "consent_required"


class NoUsableContentError(EnrichmentError):
    kind = "no_usable_content"
