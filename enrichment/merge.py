"""
Confidence gate and merge engine: VerifiedFacts + existing ProfileFields ->
profile fields.

Attribute mapping:
- structured facts -> their profile_field
- model role facts -> company (org) and title (role) when current, with a
  combined current_role; ended roles -> past_roles
- every other claim type -> a list field (awards, projects, ...)

Scalar conflicts resolve by best source trust, then recency, then
confidence; an exact tie with different values emits nothing. List fields
carry the ordered union of values, the minimum member confidence and the
union of source URLs.

Existing fields: user provenance is never overwritten; anything else is
replaced only when the new confidence is >= the existing one. A field whose
value, confidence and sources are unchanged keeps its lastUpdated.
"""

from __future__ import annotations
import logging
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from enrichment.models import (
    LIST_ATTRIBUTES,
    ClaimType,
    ProfileField,
    Provenance,
    VerifiedFact,
    utc_now_iso,
)
from enrichment.normalizer import fold_value
from enrichment.source_classifier import TRUST_WEIGHTS

log = logging.getLogger("enrichment.merge")

DEFAULT_MIN_CONFIDENCE = 0.6

LIST_FIELD_BY_TYPE: Dict[ClaimType, str] = {
    ClaimType.PROJECT: "projects",
    ClaimType.INVESTMENT: "investments",
    ClaimType.ROUND: "funding_rounds",
    ClaimType.METRIC: "metrics",
    ClaimType.AWARD: "awards",
    ClaimType.PRESS: "press",
    ClaimType.PUBLICATION: "publications",
    ClaimType.PATENT: "patents",
    ClaimType.TALK: "talks",
    ClaimType.GRANT: "grants",
    ClaimType.ACQUISITION: "acquisitions",
}

_OPEN_ENDED = frozenset({"present", "current", "now", "ongoing", "today"})


# ---------------------------------------------------------------------------
# Gate
# ---------------------------------------------------------------------------

def apply_confidence_gate(facts: Iterable[VerifiedFact], threshold: float = DEFAULT_MIN_CONFIDENCE) -> List[VerifiedFact]:
    """Facts with confidence >= threshold, in input order."""
    return [f for f in facts if f.confidence >= threshold]


# ---------------------------------------------------------------------------
# Attribute mapping
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class _Candidate:
    field: str
    value: Any
    fact: VerifiedFact
    is_list: bool


def _is_current(fact: VerifiedFact) -> bool:
    end = fact.claim.end_date
    return end is None or end.strip().lower() in _OPEN_ENDED


def map_fact(fact: VerifiedFact) -> List[_Candidate]:
    claim = fact.claim
    if claim.profile_field:
        is_list = claim.profile_field in LIST_ATTRIBUTES
        value = tuple(claim.value) if is_list and isinstance(claim.value, (list, tuple)) else claim.value
        return [_Candidate(claim.profile_field, value, fact, is_list)]

    if claim.claim_type == ClaimType.ROLE:
        if not _is_current(fact):
            label = " at ".join(p for p in (claim.role, claim.org) if p) or claim.claim_text
            return [_Candidate("past_roles", (label,), fact, True)]
        out: List[_Candidate] = []
        if claim.org:
            out.append(_Candidate("company", claim.org, fact, False))
        if claim.role:
            out.append(_Candidate("title", claim.role, fact, False))
        if claim.role and claim.org:
            out.append(_Candidate("current_role", f"{claim.role} at {claim.org}", fact, False))
        elif not claim.role and not claim.org:
            out.append(_Candidate("current_role", claim.claim_text, fact, False))
        return out

    list_field = LIST_FIELD_BY_TYPE.get(claim.claim_type)
    if list_field is None:
        return []
    return [_Candidate(list_field, (claim.claim_text,), fact, True)]


# ---------------------------------------------------------------------------
# Field assembly
# ---------------------------------------------------------------------------

def _ordered_union(seqs: Iterable[Iterable[str]]) -> Tuple[str, ...]:
    out: List[str] = []
    for seq in seqs:
        for s in seq:
            if s not in out:
                out.append(s)
    return tuple(out)


def _rank(c: _Candidate) -> Tuple[float, str, float]:
    return (TRUST_WEIGHTS[c.fact.source_type], c.fact.claim.published_at or "", c.fact.confidence)


def _resolve_scalar(name: str, cands: List[_Candidate]) -> Optional[Tuple[Any, float, Tuple[str, ...]]]:
    ranked = sorted(cands, key=_rank, reverse=True)
    top = ranked[0]
    rivals = [c for c in ranked[1:] if fold_value(c.value) != fold_value(top.value)]
    if rivals and _rank(rivals[0]) == _rank(top):
        log.info("merge tie field=%s values=%d", name, len({fold_value(c.value) for c in cands}))
        return None
    agreeing = [c for c in ranked if fold_value(c.value) == fold_value(top.value)]
    confidence = max(c.fact.confidence for c in agreeing)
    sources = _ordered_union(c.fact.source_urls for c in agreeing)
    return top.value, confidence, sources


def _resolve_list(cands: List[_Candidate]) -> Tuple[Tuple[str, ...], float, Tuple[str, ...]]:
    values: List[str] = []
    folded: List[Any] = []
    for c in cands:
        for v in c.value:
            fv = fold_value(v)
            if fv not in folded:
                folded.append(fv)
                values.append(v)
    confidence = min(c.fact.confidence for c in cands)
    sources = _ordered_union(c.fact.source_urls for c in cands)
    return tuple(values), confidence, sources


def build_fields(facts: Iterable[VerifiedFact], now: str) -> Dict[str, ProfileField]:
    """Profile fields derived from *facts* alone, before considering existing fields."""
    by_field: Dict[str, List[_Candidate]] = {}
    for fact in facts:
        for cand in map_fact(fact):
            by_field.setdefault(cand.field, []).append(cand)

    fields: Dict[str, ProfileField] = {}
    for name, cands in by_field.items():
        if any(c.is_list for c in cands):
            value, confidence, sources = _resolve_list([c for c in cands if c.is_list])
        else:
            resolved = _resolve_scalar(name, cands)
            if resolved is None:
                continue
            value, confidence, sources = resolved
        if not sources:
            continue
        fields[name] = ProfileField(
            value=value,
            confidence=confidence,
            source_urls=sources,
            last_updated=now,
            provenance=Provenance.ENRICHMENT,
        )
    return fields


# ---------------------------------------------------------------------------
# Merge
# ---------------------------------------------------------------------------

def _same_content(a: ProfileField, b: ProfileField) -> bool:
    return (
        a.value == b.value
        and a.confidence == b.confidence
        and tuple(a.source_urls) == tuple(b.source_urls)
    )


def merge_fields(
    existing: Mapping[str, ProfileField],
    incoming: Mapping[str, ProfileField],
) -> Dict[str, ProfileField]:
    merged: Dict[str, ProfileField] = dict(existing)
    for name, new in incoming.items():
        old = existing.get(name)
        if old is None:
            merged[name] = new
            continue
        if old.provenance == Provenance.USER:
            log.debug("merge keep field=%s reason=user_provenance", name)
            continue
        if new.confidence < old.confidence:
            log.debug("merge keep field=%s reason=higher_existing_confidence", name)
            continue
        if old.provenance == new.provenance and _same_content(old, new):
            continue
        merged[name] = new
    return merged


def merge_profile(
    facts: Iterable[VerifiedFact],
    existing: Optional[Mapping[str, ProfileField]] = None,
    min_confidence: float = DEFAULT_MIN_CONFIDENCE,
    now: Optional[str] = None,
) -> Dict[str, ProfileField]:
    """Gate, map and merge. Returns a new mapping; *existing* is not modified."""
    existing = existing or {}
    gated = apply_confidence_gate(facts, min_confidence)
    incoming = build_fields(gated, now or utc_now_iso())
    merged = merge_fields(existing, incoming)
    log.info(
        "merge gated=%d incoming=%d existing=%d result=%d",
        len(gated), len(incoming), len(existing), len(merged),
    )
    return merged
