"""
Claim normalization: dates, amounts, near-duplicate collapse.

Pure functions. A date or amount that cannot be parsed keeps its original
string and marks the claim normalization_failed; nothing is dropped here.
"""

from __future__ import annotations
import dataclasses
import re
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Iterable, List, Optional, Tuple

from dateutil import parser as date_parser

from enrichment.models import Amount, CandidateClaim

NEAR_DUP_THRESHOLD = 0.85

# Open-ended range markers, kept verbatim
_OPEN_ENDED = frozenset({"present", "current", "now", "ongoing", "today"})

# Two distinct defaults reveal which components the string actually supplied
_DEFAULT_A = datetime(2000, 1, 1)
_DEFAULT_B = datetime(2001, 2, 2)

# ---------------------------------------------------------------------------
# Dates
# ---------------------------------------------------------------------------

def normalize_date(raw: Optional[str]) -> Optional[str]:
    """ISO YYYY-MM-DD for *raw*, or None if it cannot be parsed.

    Month/year resolves to the first of the month; a bare year to January 1.
    """
    if raw is None:
        return None
    s = raw.strip()
    if not s:
        return None
    if re.fullmatch(r"\d{4}", s):
        return f"{s}-01-01"
    m = re.fullmatch(r"(\d{4})-(\d{1,2})", s)
    if m and 1 <= int(m.group(2)) <= 12:
        return f"{m.group(1)}-{int(m.group(2)):02d}-01"
    try:
        a = date_parser.parse(s, default=_DEFAULT_A)
        b = date_parser.parse(s, default=_DEFAULT_B)
    except (ValueError, OverflowError, TypeError):
        return None
    if a.year != b.year:
        return None
    month = a.month if a.month == b.month else 1
    day = a.day if a.day == b.day else 1
    return f"{a.year:04d}-{month:02d}-{day:02d}"


# ---------------------------------------------------------------------------
# Amounts
# ---------------------------------------------------------------------------

_SYMBOLS = {
    "us$": "USD", "c$": "CAD", "a$": "AUD", "s$": "SGD", "hk$": "HKD",
    "$": "USD", "€": "EUR", "£": "GBP", "¥": "JPY", "₹": "INR",
}
_CODES = frozenset({
    "USD", "EUR", "GBP", "JPY", "CAD", "AUD", "CHF", "CNY", "INR", "SGD", "HKD", "SEK", "NOK", "DKK",
})
_WORDS = {
    "dollar": "USD", "dollars": "USD", "euro": "EUR", "euros": "EUR",
    "pound": "GBP", "pounds": "GBP", "yen": "JPY", "rupees": "INR",
}
_MULTIPLIERS = {
    "k": 10 ** 3, "thousand": 10 ** 3,
    "m": 10 ** 6, "mm": 10 ** 6, "mn": 10 ** 6, "million": 10 ** 6,
    "b": 10 ** 9, "bn": 10 ** 9, "billion": 10 ** 9,
    "t": 10 ** 12, "tn": 10 ** 12, "trillion": 10 ** 12,
}

_SYMBOL_RE = "|".join(re.escape(s) for s in sorted(_SYMBOLS, key=len, reverse=True))
_AMOUNT_RE = re.compile(
    rf"^(?P<prefix>{_SYMBOL_RE}|[A-Za-z]{{3}}\s*)?\s*"
    r"(?P<number>\d{1,3}(?:,\d{3})+(?:\.\d+)?|\d+(?:\.\d+)?)\s*"
    r"(?P<mult>thousand|million|billion|trillion|mm|mn|bn|tn|k|m|b|t)?\.?\s*"
    r"(?P<suffix>[A-Za-z]+)?$",
    re.IGNORECASE,
)


def parse_amount(raw: Optional[str]) -> Optional[Amount]:
    """Parse "$2.5M", "€3 million", "USD 1,200,000" and similar. None if no currency."""
    if not raw:
        return None
    m = _AMOUNT_RE.match(raw.strip())
    if not m:
        return None

    currency = None
    prefix = (m.group("prefix") or "").strip()
    suffix = (m.group("suffix") or "").strip()
    if prefix:
        if prefix.lower() in _SYMBOLS:
            currency = _SYMBOLS[prefix.lower()]
        elif prefix.upper() in _CODES:
            currency = prefix.upper()
        else:
            return None
    if suffix:
        if suffix.upper() in _CODES:
            suffix_currency = suffix.upper()
        elif suffix.lower() in _WORDS:
            suffix_currency = _WORDS[suffix.lower()]
        else:
            return None
        if currency and currency != suffix_currency:
            return None
        currency = suffix_currency
    if currency is None:
        return None

    try:
        number = Decimal(m.group("number").replace(",", ""))
    except InvalidOperation:
        return None
    mult = (m.group("mult") or "").lower()
    if mult:
        number *= _MULTIPLIERS[mult]
    return Amount(number=float(number), currency_code=currency)


# ---------------------------------------------------------------------------
# Per-claim normalization
# ---------------------------------------------------------------------------

def normalize_claim(claim: CandidateClaim) -> CandidateClaim:
    updates: dict = {}
    notes: List[str] = list(claim.normalization_notes)
    failed = claim.normalization_failed

    for attr in ("date", "start_date", "end_date"):
        raw = getattr(claim, attr)
        if raw is None or raw.strip().lower() in _OPEN_ENDED:
            continue
        iso = normalize_date(raw)
        if iso is None:
            failed = True
            notes.append(f"{attr}_unparsed")
        elif iso != raw:
            updates[attr] = iso

    if claim.published_at:
        iso = normalize_date(claim.published_at)
        if iso:
            updates["published_at"] = iso

    if claim.raw_amount and claim.amount is None:
        amount = parse_amount(claim.raw_amount)
        if amount is None:
            failed = True
            notes.append("amount_unparsed")
        else:
            updates["amount"] = amount

    if not updates and failed == claim.normalization_failed:
        return claim
    return dataclasses.replace(
        claim, normalization_failed=failed, normalization_notes=tuple(notes), **updates,
    )


# ---------------------------------------------------------------------------
# Near-duplicate collapse
# ---------------------------------------------------------------------------

def normalize_for_fingerprint(s: str) -> str:
    """Lowercase, strip punctuation, collapse whitespace, normalize numbers."""
    s = s.lower()
    s = re.sub(r"[,](\d{3})", r"\1", s)
    s = re.sub(r"[^\w\s%$.]", " ", s)
    s = re.sub(r"(?<!\d)\.|\.(?!\d)", " ", s)
    s = re.sub(r"\s+", " ", s)
    return s.strip()


def jaccard_tokens(a: str, b: str) -> float:
    sa = set(normalize_for_fingerprint(a).split())
    sb = set(normalize_for_fingerprint(b).split())
    if not sa or not sb:
        return 0.0
    return len(sa & sb) / len(sa | sb)


def fold_value(v: Any) -> Any:
    if v is None:
        return None
    if isinstance(v, (list, tuple)):
        return tuple(fold_value(x) for x in v)
    if isinstance(v, str):
        return normalize_for_fingerprint(v)
    return v


def _compatible(a: Any, b: Any) -> bool:
    """Equal when both present; missing on either side is compatible."""
    if a is None or b is None:
        return True
    return fold_value(a) == fold_value(b)


def _attributes_compatible(a: CandidateClaim, b: CandidateClaim) -> bool:
    return (
        _compatible(a.value, b.value)
        and _compatible(a.org, b.org)
        and _compatible(a.role, b.role)
        and _compatible(a.date, b.date)
        and _compatible(a.start_date, b.start_date)
        and _compatible(a.end_date, b.end_date)
        and _compatible(a.amount, b.amount)
    )


def _overlaps(a: CandidateClaim, b: CandidateClaim) -> bool:
    """Share at least one identifying attribute with equal values."""
    if a.value is not None and b.value is not None:
        return fold_value(a.value) == fold_value(b.value)
    for attr in ("org", "role", "date", "start_date"):
        va, vb = getattr(a, attr), getattr(b, attr)
        if va is not None and vb is not None and fold_value(va) == fold_value(vb):
            return True
    return False


def is_near_duplicate(a: CandidateClaim, b: CandidateClaim, threshold: float = NEAR_DUP_THRESHOLD) -> bool:
    if a.claim_type != b.claim_type or a.profile_field != b.profile_field:
        return False
    if not _attributes_compatible(a, b):
        return False
    return _overlaps(a, b) or jaccard_tokens(a.claim_text, b.claim_text) >= threshold


def _later(a: Optional[str], b: Optional[str]) -> Optional[str]:
    if a and b:
        return max(a, b)
    return a or b


def merge_duplicates(kept: CandidateClaim, dup: CandidateClaim) -> CandidateClaim:
    """Ordered union of sources; the claim with the longer quote supplies the body."""
    urls: List[str] = list(kept.source_urls)
    for u in dup.source_urls:
        if u not in urls:
            urls.append(u)
    base = dup if len(dup.evidence_quote) > len(kept.evidence_quote) else kept
    other = kept if base is dup else dup
    fill = {
        attr: getattr(other, attr)
        for attr in ("org", "role", "location", "date", "start_date", "end_date", "amount", "raw_amount")
        if getattr(base, attr) is None and getattr(other, attr) is not None
    }
    notes = tuple(dict.fromkeys(kept.normalization_notes + dup.normalization_notes))
    return dataclasses.replace(
        base,
        claim_id=kept.claim_id,
        source_urls=tuple(urls),
        published_at=_later(kept.published_at, dup.published_at),
        normalization_failed=kept.normalization_failed or dup.normalization_failed,
        normalization_notes=notes,
        **fill,
    )


def collapse_near_duplicates(
    claims: Iterable[CandidateClaim],
    threshold: float = NEAR_DUP_THRESHOLD,
) -> List[CandidateClaim]:
    """Collapse near-duplicates, preserving first-seen order."""
    kept: List[CandidateClaim] = []
    for c in claims:
        for i, k in enumerate(kept):
            if is_near_duplicate(k, c, threshold):
                kept[i] = merge_duplicates(k, c)
                break
        else:
            kept.append(c)
    return kept


def normalize_claims(claims: Iterable[CandidateClaim]) -> List[CandidateClaim]:
    return collapse_near_duplicates(normalize_claim(c) for c in claims)
