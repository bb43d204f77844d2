"""
Claim extraction: ExtractedContent + IdentitySeed -> CandidateClaims.

Two passes:
1. Structured pass (deterministic). Every structured field of a page about
   the subject becomes a claim whose evidence quote is the field text itself.
2. Model pass. Page text is sent in batches under the extraction contract;
   each returned entry is validated with pydantic, repaired where safe and
   otherwise rejected. A response of the wrong shape raises
   ModelContractError, which empties that batch only.

Pages not declared by the seed contribute only when they mention the
subject (name, email or profile handle).
"""

from __future__ import annotations
import hashlib
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from pydantic import BaseModel, ValidationError, field_validator

from enrichment import prompts as P
from enrichment.errors import InvalidSourceError, ModelContractError
from enrichment.llm import CallLLM, parse_json_from_llm
from enrichment.models import (
    MAX_EVIDENCE_QUOTE,
    PROFILE_ATTRIBUTES,
    CandidateClaim,
    ClaimType,
    ExtractedContent,
    IdentitySeed,
    Source,
)
from enrichment.pipeline_metrics import PipelineMetrics
from enrichment.query_generator import handle_from_url
from enrichment.url_utils import canonicalize_url

log = logging.getLogger("enrichment.claims")

DEFAULT_BATCH_SIZE = 6


def _claim_id(prefix: str, *parts: str) -> str:
    digest = hashlib.sha256("\x1f".join(parts).encode("utf-8")).hexdigest()[:12]
    return f"{prefix}-{digest}"


def _norm(text: str) -> str:
    return re.sub(r"\s+", " ", text or "").strip()


# ---------------------------------------------------------------------------
# Disambiguation
# ---------------------------------------------------------------------------

def subject_markers(seed: IdentitySeed) -> List[str]:
    """Lowercased strings whose presence ties a page to the subject."""
    markers: List[str] = []
    if seed.name and len(seed.name.strip()) >= 3:
        markers.append(_norm(seed.name).lower())
    if seed.email:
        markers.append(seed.email.strip().lower())
    for u in seed.urls:
        h = handle_from_url(u)
        if h and len(h) >= 3:
            markers.append(h.lower())
    return [m for i, m in enumerate(markers) if m not in markers[:i]]


def _searchable(content: ExtractedContent) -> str:
    parts = [content.url, content.title, content.description, content.text]
    for v in content.fields.values():
        parts.append(" ".join(v) if isinstance(v, (list, tuple)) else str(v or ""))
    return _norm(" ".join(parts)).lower()


def is_about_subject(content: ExtractedContent, source: Optional[Source], seed: IdentitySeed) -> bool:
    if source is not None and source.seed_declared:
        return True
    haystack = _searchable(content)
    return any(m in haystack for m in subject_markers(seed))


# ---------------------------------------------------------------------------
# Structured pass
# ---------------------------------------------------------------------------

def _field_quote(value: Any) -> str:
    if isinstance(value, (list, tuple)):
        return ", ".join(str(v) for v in value)
    return str(value)


def structured_claims(
    contents: Iterable[ExtractedContent],
    sources: Mapping[str, Source],
    seed: IdentitySeed,
) -> List[CandidateClaim]:
    claims: List[CandidateClaim] = []
    for content in contents:
        if not content.fields:
            continue
        source = sources.get(content.url)
        if not is_about_subject(content, source, seed):
            log.info("structured skip url=%s reason=subject_not_mentioned", content.url)
            continue
        for attr in PROFILE_ATTRIBUTES:
            value = content.fields.get(attr)
            if not value:
                continue
            if isinstance(value, list):
                value = tuple(_norm(str(v)) for v in value if _norm(str(v)))
                if not value:
                    continue
            else:
                value = _norm(str(value))
            quote = _field_quote(value)[:MAX_EVIDENCE_QUOTE]
            claims.append(CandidateClaim(
                claim_id=_claim_id("s", content.url, attr),
                claim_type=ClaimType.ROLE,
                claim_text=f"{attr}: {_field_quote(value)}",
                evidence_quote=quote,
                source_urls=(content.url,),
                profile_field=attr,
                value=value,
                published_at=content.published_at,
                origin="structured",
            ))
    return claims


# ---------------------------------------------------------------------------
# Model pass: response schema
# ---------------------------------------------------------------------------

class ModelClaim(BaseModel):
    """One entry of the extraction response."""

    claim_type: str
    claim_text: str
    evidence_quote: str
    source_urls: List[str]
    org: Optional[str] = None
    role: Optional[str] = None
    location: Optional[str] = None
    date: Optional[str] = None
    start_date: Optional[str] = None
    end_date: Optional[str] = None
    amount: Optional[str] = None

    @field_validator("claim_type", mode="before")
    @classmethod
    def _lower_type(cls, v):
        return v.strip().lower() if isinstance(v, str) else v

    @field_validator("claim_text", "evidence_quote")
    @classmethod
    def _non_empty(cls, v: str) -> str:
        v = _norm(v)
        if not v:
            raise ValueError("must be non-empty")
        return v

    @field_validator("amount", mode="before")
    @classmethod
    def _amount_as_text(cls, v):
        if isinstance(v, (int, float)):
            return str(v)
        return v

    @field_validator("org", "role", "location", "date", "start_date", "end_date", "amount")
    @classmethod
    def _blank_to_none(cls, v):
        if v is None:
            return None
        v = _norm(v)
        return v if v and v.lower() not in ("null", "none", "n/a") else None


@dataclass
class ExtractionResult:
    claims: List[CandidateClaim] = field(default_factory=list)
    rejected: int = 0
    contract_errors: List[ModelContractError] = field(default_factory=list)


def _canonical_or_none(url: str) -> Optional[str]:
    try:
        return canonicalize_url(url)
    except InvalidSourceError:
        return None


def _entries(parsed: Any) -> List[Any]:
    if isinstance(parsed, dict) and isinstance(parsed.get("claims"), list):
        return parsed["claims"]
    if isinstance(parsed, list):
        return parsed
    raise ModelContractError("claim_extraction", "response is not {\"claims\": [...]}")


def validate_model_claims(
    raw: str,
    texts_by_url: Mapping[str, str],
    published_by_url: Optional[Mapping[str, Optional[str]]] = None,
) -> Tuple[List[CandidateClaim], int]:
    """Validate one extraction response. Returns (claims, rejected_count).

    Raises ModelContractError when the response is not JSON of the expected shape.
    """
    parsed = parse_json_from_llm(raw)
    if parsed is None:
        raise ModelContractError("claim_extraction", "response is not valid JSON")
    entries = _entries(parsed)

    published_by_url = published_by_url or {}
    valid_types = {t.value for t in ClaimType}
    claims: List[CandidateClaim] = []
    rejected = 0
    for entry in entries:
        if not isinstance(entry, dict):
            rejected += 1
            continue
        try:
            mc = ModelClaim.model_validate(entry)
        except ValidationError as e:
            log.info("claim rejected reason=schema errors=%d", e.error_count())
            rejected += 1
            continue
        if mc.claim_type not in valid_types:
            log.info("claim rejected reason=claim_type value=%s", mc.claim_type)
            rejected += 1
            continue

        quote = mc.evidence_quote[:MAX_EVIDENCE_QUOTE].strip()
        known: List[str] = []
        for u in mc.source_urls:
            cu = _canonical_or_none(u) if isinstance(u, str) else None
            if cu and cu in texts_by_url and cu not in known:
                known.append(cu)
        if not known:
            log.info("claim rejected reason=unknown_sources claim=%s", mc.claim_text[:60])
            rejected += 1
            continue
        # Keep only cited sources whose text actually contains the quote
        supporting = [u for u in known if quote in texts_by_url[u]]
        if not supporting:
            log.info("claim rejected reason=quote_not_found claim=%s", mc.claim_text[:60])
            rejected += 1
            continue

        published = next((published_by_url.get(u) for u in supporting if published_by_url.get(u)), None)
        claims.append(CandidateClaim(
            claim_id=_claim_id("m", mc.claim_type, mc.claim_text, *supporting),
            claim_type=ClaimType(mc.claim_type),
            claim_text=mc.claim_text,
            evidence_quote=quote,
            source_urls=tuple(supporting),
            org=mc.org,
            role=mc.role,
            location=mc.location,
            date=mc.date,
            start_date=mc.start_date,
            end_date=mc.end_date,
            raw_amount=mc.amount,
            published_at=published,
            origin="model",
        ))
    return claims, rejected


# ---------------------------------------------------------------------------
# Extractor
# ---------------------------------------------------------------------------

def _quote_space(content: ExtractedContent) -> str:
    return _norm(" ".join([content.title, content.description, content.text]))


class ClaimExtractor:
    def __init__(self, call_llm: Optional[CallLLM] = None, batch_size: int = DEFAULT_BATCH_SIZE,
                 max_tokens: int = 4000):
        self.call_llm = call_llm
        self.batch_size = max(1, batch_size)
        self.max_tokens = max_tokens

    def extract(
        self,
        contents: Sequence[ExtractedContent],
        sources: Mapping[str, Source],
        seed: IdentitySeed,
        metrics: Optional[PipelineMetrics] = None,
    ) -> ExtractionResult:
        result = ExtractionResult(claims=structured_claims(contents, sources, seed))

        if self.call_llm is None:
            return result

        eligible = [
            c for c in contents
            if c.text.strip() and is_about_subject(c, sources.get(c.url), seed)
        ]
        for i in range(0, len(eligible), self.batch_size):
            batch = eligible[i:i + self.batch_size]
            try:
                claims, rejected = self._run_batch(batch, seed, metrics)
            except ModelContractError as e:
                log.warning("claim_extraction contract_error batch=%d reason=%s", i // self.batch_size, e)
                result.contract_errors.append(e)
                continue
            result.claims.extend(claims)
            result.rejected += rejected

        log.info(
            "claim_extraction structured=%d model=%d rejected=%d contract_errors=%d",
            sum(1 for c in result.claims if c.origin == "structured"),
            sum(1 for c in result.claims if c.origin == "model"),
            result.rejected, len(result.contract_errors),
        )
        return result

    def _run_batch(
        self,
        batch: Sequence[ExtractedContent],
        seed: IdentitySeed,
        metrics: Optional[PipelineMetrics],
    ) -> Tuple[List[CandidateClaim], int]:
        prompt = P.claim_extraction(
            [{"url": c.url, "title": c.title, "text": c.text} for c in batch],
            name=seed.name, company=seed.company, email=seed.email, context=seed.context,
        )
        if metrics:
            metrics.inc_llm()
        try:
            raw = self.call_llm(prompt, P.SYSTEM_CLAIM_EXTRACTION, self.max_tokens)
        except Exception as e:
            raise ModelContractError("claim_extraction", f"model call failed: {e}") from e
        return validate_model_claims(
            raw,
            {c.url: _quote_space(c) for c in batch},
            {c.url: c.published_at for c in batch},
        )
