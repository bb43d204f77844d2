"""
Fact verification: normalized CandidateClaims -> VerifiedFacts.

Deterministic rules run first:
1. a claim with no source URL is rejected
2. a claim whose sources are all `other` tier needs >= 2 distinct domains
3. conflicting variants of the same subject key: higher aggregate trust
   wins, then the more recently published; an unresolved tie drops every
   variant. Different lists for a list attribute never conflict
4. confidence = noisy_or(best tier weight per distinct domain) x conflict
   factor (0.9 when a losing variant existed), rounded to 4 places

When a model is configured, the survivors go to the model in one call. Only
claims marked "supported" survive and a model confidence can only lower the
deterministic value. Any model failure yields zero verified facts.
"""

from __future__ import annotations
import logging
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Literal, Mapping, Optional, Sequence, Tuple

from pydantic import BaseModel, Field, ValidationError

from enrichment import prompts as P
from enrichment.errors import ModelContractError
from enrichment.llm import CallLLM, parse_json_from_llm
from enrichment.models import (
    LIST_ATTRIBUTES,
    CandidateClaim,
    ClaimType,
    IdentitySeed,
    Source,
    SourceTier,
    VerifiedFact,
)
from enrichment.normalizer import fold_value, merge_duplicates
from enrichment.pipeline_metrics import PipelineMetrics
from enrichment.source_classifier import TRUST_WEIGHTS, tier_rank
from enrichment.url_utils import domain_of

log = logging.getLogger("enrichment.verify")

CONFLICT_FACTOR = 0.9
MIN_OTHER_TIER_DOMAINS = 2

# Claim types whose variants are keyed by organization
_ORG_KEYED = frozenset({
    ClaimType.ROLE, ClaimType.ROUND, ClaimType.INVESTMENT, ClaimType.ACQUISITION, ClaimType.GRANT,
})


# ---------------------------------------------------------------------------
# Confidence
# ---------------------------------------------------------------------------

def noisy_or(weights: Iterable[float]) -> float:
    """1 - prod(1 - w). Monotonic in each weight and in the number of weights."""
    miss = 1.0
    for w in weights:
        miss *= (1.0 - w)
    return 1.0 - miss


def _source_for(url: str, sources: Mapping[str, Source]) -> Tuple[str, SourceTier]:
    src = sources.get(url)
    if src is None:
        return domain_of(url), SourceTier.OTHER
    return src.domain, src.tier


def domain_weights(claim: CandidateClaim, sources: Mapping[str, Source]) -> Dict[str, float]:
    """Best tier weight per distinct domain backing *claim*."""
    best: Dict[str, float] = {}
    for url in claim.source_urls:
        domain, tier = _source_for(url, sources)
        best[domain] = max(best.get(domain, 0.0), TRUST_WEIGHTS[tier])
    return best


def aggregate_trust(claim: CandidateClaim, sources: Mapping[str, Source]) -> float:
    return round(noisy_or(domain_weights(claim, sources).values()), 4)


def compute_confidence(claim: CandidateClaim, sources: Mapping[str, Source], conflict: bool = False) -> float:
    factor = CONFLICT_FACTOR if conflict else 1.0
    return round(noisy_or(domain_weights(claim, sources).values()) * factor, 4)


def best_tier(claim: CandidateClaim, sources: Mapping[str, Source]) -> SourceTier:
    tiers = [_source_for(u, sources)[1] for u in claim.source_urls]
    return min(tiers, key=tier_rank) if tiers else SourceTier.OTHER


# ---------------------------------------------------------------------------
# Grouping
# ---------------------------------------------------------------------------

def subject_key(claim: CandidateClaim) -> Tuple[Any, ...]:
    """Claims sharing a subject key assert the same fact and may conflict.

    List attributes never conflict: each distinct list is its own subject and
    merge takes the union.
    """
    if claim.profile_field in LIST_ATTRIBUTES:
        return ("list", claim.profile_field, fold_value(claim.value))
    if claim.profile_field:
        return ("field", claim.profile_field)
    if claim.claim_type in _ORG_KEYED and claim.org:
        return (claim.claim_type.value, fold_value(claim.org))
    return (claim.claim_type.value, fold_value(claim.claim_text))


def variant_key(claim: CandidateClaim) -> Tuple[Any, ...]:
    if claim.profile_field:
        return ("value", fold_value(claim.value))
    return (
        fold_value(claim.role), claim.date, claim.start_date, claim.end_date,
        claim.amount.number if claim.amount else None,
        claim.amount.currency_code if claim.amount else None,
    )


@dataclass
class VerificationResult:
    facts: List[VerifiedFact] = field(default_factory=list)
    rejected: Dict[str, str] = field(default_factory=dict)
    contract_error: Optional[ModelContractError] = None


def _passes_tier_rule(claim: CandidateClaim, sources: Mapping[str, Source]) -> bool:
    tiers = {_source_for(u, sources)[1] for u in claim.source_urls}
    if tiers != {SourceTier.OTHER}:
        return True
    return len(domain_weights(claim, sources)) >= MIN_OTHER_TIER_DOMAINS


def _recency(claim: CandidateClaim) -> str:
    # ISO dates sort lexically; unknown is oldest
    return claim.published_at or ""


def resolve_conflicts(
    claims: Sequence[CandidateClaim],
    sources: Mapping[str, Source],
    rejected: Optional[Dict[str, str]] = None,
) -> List[Tuple[CandidateClaim, bool]]:
    """Return (claim, had_conflict) for every claim that survives conflict resolution."""
    rejected = rejected if rejected is not None else {}
    groups: "OrderedDict[Tuple, OrderedDict[Tuple, List[CandidateClaim]]]" = OrderedDict()
    for c in claims:
        groups.setdefault(subject_key(c), OrderedDict()).setdefault(variant_key(c), []).append(c)

    survivors: List[Tuple[CandidateClaim, bool]] = []
    for key, variants in groups.items():
        merged: List[CandidateClaim] = []
        for members in variants.values():
            m = members[0]
            for other in members[1:]:
                m = merge_duplicates(m, other)
            merged.append(m)

        if len(merged) == 1:
            survivors.append((merged[0], False))
            continue

        ranked = sorted(merged, key=lambda c: (aggregate_trust(c, sources), _recency(c)), reverse=True)
        top, runner = ranked[0], ranked[1]
        if (aggregate_trust(top, sources), _recency(top)) == (aggregate_trust(runner, sources), _recency(runner)):
            log.info("verify conflict_unresolved key=%s variants=%d", key, len(merged))
            for c in merged:
                rejected[c.claim_id] = "unresolved_conflict"
            continue
        for c in ranked[1:]:
            rejected[c.claim_id] = "lost_conflict"
        log.info("verify conflict_resolved key=%s winner=%s losers=%d", key, top.claim_id, len(ranked) - 1)
        survivors.append((top, True))
    return survivors


# ---------------------------------------------------------------------------
# Model verdicts
# ---------------------------------------------------------------------------

class Verdict(BaseModel):
    claim_id: str
    verdict: Literal["supported", "rejected"]
    confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0)
    reason: Optional[str] = None


class VerdictBatch(BaseModel):
    verdicts: List[Verdict]


def parse_verdicts(raw: str) -> Dict[str, Verdict]:
    """Validate a verification response. Raises ModelContractError on any violation."""
    parsed = parse_json_from_llm(raw)
    if parsed is None:
        raise ModelContractError("fact_verification", "response is not valid JSON")
    if isinstance(parsed, list):
        parsed = {"verdicts": parsed}
    try:
        batch = VerdictBatch.model_validate(parsed)
    except ValidationError as e:
        raise ModelContractError("fact_verification", f"schema violation: {e.error_count()} errors") from e
    return {v.claim_id: v for v in batch.verdicts}


# ---------------------------------------------------------------------------
# Verifier
# ---------------------------------------------------------------------------

class FactVerifier:
    def __init__(self, call_llm: Optional[CallLLM] = None, max_tokens: int = 4000):
        self.call_llm = call_llm
        self.max_tokens = max_tokens

    def verify(
        self,
        claims: Sequence[CandidateClaim],
        sources: Mapping[str, Source],
        seed: Optional[IdentitySeed] = None,
        metrics: Optional[PipelineMetrics] = None,
    ) -> VerificationResult:
        result = VerificationResult()

        eligible: List[CandidateClaim] = []
        for c in claims:
            if not c.source_urls:
                result.rejected[c.claim_id] = "no_sources"
            elif not _passes_tier_rule(c, sources):
                result.rejected[c.claim_id] = "low_trust_uncorroborated"
            else:
                eligible.append(c)

        scored: List[Tuple[CandidateClaim, float, bool]] = []
        for claim, conflict in resolve_conflicts(eligible, sources, result.rejected):
            confidence = compute_confidence(claim, sources, conflict)
            if confidence <= 0:
                result.rejected[claim.claim_id] = "zero_confidence"
                continue
            scored.append((claim, confidence, conflict))

        if self.call_llm is not None and scored:
            try:
                verdicts = self._model_verdicts([c for c, _, _ in scored], seed, metrics)
            except ModelContractError as e:
                log.warning("verify contract_error reason=%s claims_dropped=%d", e, len(scored))
                result.contract_error = e
                for c, _, _ in scored:
                    result.rejected[c.claim_id] = "model_failure"
                return result
            kept: List[Tuple[CandidateClaim, float, bool]] = []
            for claim, confidence, conflict in scored:
                v = verdicts.get(claim.claim_id)
                if v is None or v.verdict != "supported":
                    result.rejected[claim.claim_id] = "model_rejected" if v else "model_no_verdict"
                    continue
                if v.confidence is not None:
                    confidence = round(min(confidence, v.confidence), 4)
                if confidence <= 0:
                    result.rejected[claim.claim_id] = "zero_confidence"
                    continue
                kept.append((claim, confidence, conflict))
            scored = kept

        for claim, confidence, conflict in scored:
            result.facts.append(VerifiedFact(
                claim=claim,
                confidence=confidence,
                source_type=best_tier(claim, sources),
                conflict=conflict,
            ))
        if metrics:
            metrics.facts_verified = len(result.facts)
        log.info("verify facts=%d rejected=%d", len(result.facts), len(result.rejected))
        return result

    def _model_verdicts(
        self,
        claims: Sequence[CandidateClaim],
        seed: Optional[IdentitySeed],
        metrics: Optional[PipelineMetrics],
    ) -> Dict[str, Verdict]:
        payload = [
            {k: v for k, v in c.to_dict().items() if v not in (None, [], "")}
            for c in claims
        ]
        prompt = P.fact_verification(
            payload,
            name=seed.name if seed else None,
            company=seed.company if seed else None,
        )
        if metrics:
            metrics.inc_llm()
        try:
            raw = self.call_llm(prompt, P.SYSTEM_FACT_VERIFICATION, self.max_tokens)
        except Exception as e:
            raise ModelContractError("fact_verification", f"model call failed: {e}") from e
        return parse_verdicts(raw)
