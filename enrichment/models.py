"""
Data model for the enrichment pipeline.

Records produced by a stage (Source, ExtractedContent, CandidateClaim,
VerifiedFact) are not mutated after the stage returns them. EnrichmentRun is
the only shared mutable record; its failure list is appended under a lock
because fetch workers report into it concurrently.
"""

from __future__ import annotations
import threading
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Mapping, Optional, Tuple


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).replace(microsecond=0).isoformat().replace("+00:00", "Z")


# ---------------------------------------------------------------------------
# Enumerations
# ---------------------------------------------------------------------------

class SourceTier(str, Enum):
    OFFICIAL_FILING = "official_filing"
    REPUTABLE_MEDIA = "reputable_media"
    PRESS_RELEASE = "press_release"
    FIRST_PARTY = "first_party"
    THIRD_PARTY_OFFICIAL = "third_party_official"
    SOCIAL = "social"
    OTHER = "other"


class Platform(str, Enum):
    WEBSITE = "website"
    SOCIAL_SHORT_FORM = "social-short-form"
    SOCIAL_LONG_FORM = "social-long-form"
    CODE_HOSTING = "code-hosting"
    GENERIC = "generic"


class ClaimType(str, Enum):
    ROLE = "role"
    PROJECT = "project"
    INVESTMENT = "investment"
    ROUND = "round"
    METRIC = "metric"
    AWARD = "award"
    PRESS = "press"
    PUBLICATION = "publication"
    PATENT = "patent"
    TALK = "talk"
    GRANT = "grant"
    ACQUISITION = "acquisition"


class Provenance(str, Enum):
    DB = "db"
    ENRICHMENT = "enrichment"
    USER = "user"


class RunStatus(str, Enum):
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"


# Profile attributes a page can state directly. Skills and industries are lists.
PROFILE_ATTRIBUTES: Tuple[str, ...] = (
    "name", "headline", "bio", "company", "title", "location", "skills", "industries",
)
LIST_ATTRIBUTES = frozenset({"skills", "industries"})

MAX_EVIDENCE_QUOTE = 200


# ---------------------------------------------------------------------------
# Inputs
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class IdentitySeed:
    email: Optional[str] = None
    primary_url: Optional[str] = None
    additional_urls: Tuple[str, ...] = ()
    context: Optional[str] = None
    name: Optional[str] = None
    company: Optional[str] = None

    @property
    def urls(self) -> List[str]:
        """Seed URLs, primary first, without repeats."""
        out: List[str] = []
        for u in ([self.primary_url] if self.primary_url else []) + list(self.additional_urls):
            u = (u or "").strip()
            if u and u not in out:
                out.append(u)
        return out

    @property
    def email_domain(self) -> Optional[str]:
        if not self.email or "@" not in self.email:
            return None
        domain = self.email.rsplit("@", 1)[1].strip().lower()
        return domain or None


@dataclass(frozen=True)
class EnrichmentRequest:
    seed: IdentitySeed
    minimum_confidence: Optional[float] = None
    existing_fields: Mapping[str, "ProfileField"] = field(default_factory=dict)
    consent_public_sources: bool = True


# ---------------------------------------------------------------------------
# Stage records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class Source:
    url: str
    domain: str
    platform: Platform
    tier: SourceTier
    trust_weight: float
    seed_declared: bool = False


@dataclass
class ExtractedContent:
    url: str
    platform: Platform
    fields: Dict[str, Any] = field(default_factory=dict)
    text: str = ""
    title: str = ""
    description: str = ""
    headings: List[str] = field(default_factory=list)
    keywords: List[str] = field(default_factory=list)
    technologies: List[str] = field(default_factory=list)
    business_info: Dict[str, Any] = field(default_factory=dict)
    published_at: Optional[str] = None
    notes: List[str] = field(default_factory=list)

    @classmethod
    def empty(cls, url: str, platform: Platform, note: str) -> "ExtractedContent":
        return cls(url=url, platform=platform, notes=[note])

    @property
    def is_usable(self) -> bool:
        return bool(any(self.fields.values()) or self.text.strip())


@dataclass(frozen=True)
class Amount:
    number: float
    currency_code: str

    def to_dict(self) -> Dict[str, Any]:
        return {"number": self.number, "currency_code": self.currency_code}


@dataclass(frozen=True)
class CandidateClaim:
    claim_id: str
    claim_type: ClaimType
    claim_text: str
    evidence_quote: str
    source_urls: Tuple[str, ...]
    org: Optional[str] = None
    role: Optional[str] = None
    location: Optional[str] = None
    date: Optional[str] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    amount: Optional[Amount] = None
    raw_amount: Optional[str] = None
    profile_field: Optional[str] = None
    value: Any = None
    published_at: Optional[str] = None
    origin: str = "model"
    normalization_failed: bool = False
    normalization_notes: Tuple[str, ...] = ()

    def to_dict(self) -> Dict[str, Any]:
        return {
            "claim_id": self.claim_id,
            "claim_type": self.claim_type.value,
            "claim_text": self.claim_text,
            "evidence_quote": self.evidence_quote,
            "source_urls": list(self.source_urls),
            "org": self.org,
            "role": self.role,
            "location": self.location,
            "date": self.date,
            "start_date": self.start_date,
            "end_date": self.end_date,
            "amount": self.amount.to_dict() if self.amount else None,
            "profile_field": self.profile_field,
            "value": list(self.value) if isinstance(self.value, tuple) else self.value,
            "published_at": self.published_at,
        }


@dataclass(frozen=True)
class VerifiedFact:
    claim: CandidateClaim
    confidence: float
    source_type: SourceTier
    conflict: bool = False

    def __post_init__(self):
        if not self.claim.source_urls:
            raise ValueError(f"verified fact {self.claim.claim_id} has no source URLs")
        if not self.confidence > 0:
            raise ValueError(f"verified fact {self.claim.claim_id} has non-positive confidence")

    @property
    def source_urls(self) -> Tuple[str, ...]:
        return self.claim.source_urls

    @property
    def claim_type(self) -> ClaimType:
        return self.claim.claim_type


# ---------------------------------------------------------------------------
# Output records
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ProfileField:
    value: Any
    confidence: float
    source_urls: Tuple[str, ...]
    last_updated: str
    provenance: Provenance

    def __post_init__(self):
        if self.provenance == Provenance.ENRICHMENT and not self.source_urls:
            raise ValueError("enrichment fields must carry at least one source URL")

    def to_dict(self) -> Dict[str, Any]:
        return {
            "value": list(self.value) if isinstance(self.value, tuple) else self.value,
            "confidence": self.confidence,
            "source_urls": list(self.source_urls),
            "lastUpdated": self.last_updated,
            "provenance": self.provenance.value,
        }

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "ProfileField":
        value = data.get("value")
        if isinstance(value, list):
            value = tuple(value)
        return cls(
            value=value,
            confidence=float(data.get("confidence", 0.0)),
            source_urls=tuple(data.get("source_urls") or ()),
            last_updated=data.get("lastUpdated") or utc_now_iso(),
            provenance=Provenance(data.get("provenance", Provenance.DB.value)),
        )


@dataclass(frozen=True)
class SourceFailure:
    source_url: str
    error_kind: str
    message: str = ""

    def to_dict(self) -> Dict[str, str]:
        return {"sourceUrl": self.source_url, "errorKind": self.error_kind, "message": self.message}


@dataclass
class EnrichmentRun:
    """Request/response record for one enrichment. Terminal once completed or failed."""

    run_id: str = field(default_factory=lambda: f"run_{uuid.uuid4().hex[:12]}")
    status: RunStatus = RunStatus.PENDING
    started_at: Optional[str] = None
    completed_at: Optional[str] = None
    profile_fields: Dict[str, ProfileField] = field(default_factory=dict)
    failures: List[SourceFailure] = field(default_factory=list)
    error: Optional[str] = None
    queries: List[str] = field(default_factory=list)
    verified_links: Dict[str, Dict[str, str]] = field(default_factory=dict)
    metrics: Dict[str, Any] = field(default_factory=dict)
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    @property
    def is_terminal(self) -> bool:
        return self.status in (RunStatus.COMPLETED, RunStatus.FAILED)

    def start(self) -> None:
        with self._lock:
            if self.status != RunStatus.PENDING:
                raise RuntimeError(f"run {self.run_id} cannot start from {self.status.value}")
            self.status = RunStatus.RUNNING
            self.started_at = utc_now_iso()

    def add_failure(self, source_url: str, error_kind: str, message: str = "") -> None:
        with self._lock:
            self.failures.append(SourceFailure(source_url, error_kind, message))

    def complete(self, profile_fields: Dict[str, ProfileField]) -> None:
        with self._lock:
            if self.status != RunStatus.RUNNING:
                raise RuntimeError(f"run {self.run_id} cannot complete from {self.status.value}")
            self.profile_fields = dict(profile_fields)
            self.status = RunStatus.COMPLETED
            self.completed_at = utc_now_iso()

    def fail(self, error_kind: str) -> None:
        with self._lock:
            if self.is_terminal:
                raise RuntimeError(f"run {self.run_id} is already {self.status.value}")
            self.profile_fields = {}
            self.error = error_kind
            self.status = RunStatus.FAILED
            self.completed_at = utc_now_iso()

    def to_dict(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "runId": self.run_id,
                "status": self.status.value,
                "startedAt": self.started_at,
                "completedAt": self.completed_at,
                "error": self.error,
                "queries": list(self.queries),
                "profileFields": {k: f.to_dict() for k, f in self.profile_fields.items()},
                "failures": [f.to_dict() for f in self.failures],
                "verifiedLinks": dict(self.verified_links),
                "metrics": dict(self.metrics),
            }
