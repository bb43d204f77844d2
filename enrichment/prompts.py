"""
Prompt registry for the two model passes.

System prompts carry the fixed contracts. Template functions build the
user prompt from JSON batches; both passes expect a single JSON object back.
"""

from __future__ import annotations
import json
from typing import Any, Dict, List, Optional

from enrichment.models import ClaimType

CLAIM_TYPES = " | ".join(t.value for t in ClaimType)

# Per-source text budget inside one extraction prompt
MAX_SOURCE_TEXT = 2000


# ---------------------------------------------------------------------------
# System Prompts
# ---------------------------------------------------------------------------

SYSTEM_CLAIM_EXTRACTION = (
    "You are a professional fact harvester. You read public pages about one person and "
    "extract atomic, verifiable claims about that person. Rules: "
    "1. Emit a claim only if at least one of the provided SOURCES supports it; cite those "
    "sources by their exact url in source_urls. "
    "2. evidence_quote must be copied verbatim from the cited source text, at most 200 characters. "
    "3. Never infer, guess or fabricate. If a page is about a different person, ignore it. "
    "4. Give every claim exactly one claim_type. "
    "Return only valid JSON."
)

SYSTEM_FACT_VERIFICATION = (
    "You are a strict fact verifier. For each candidate claim, decide whether its evidence "
    "quote and sources actually support the claim about this person. Mark a claim "
    "\"supported\" only when the quote states it directly. Mark it \"rejected\" when the quote "
    "is off-topic, ambiguous, about someone else, or contradicted. Do not add new claims. "
    "Return only valid JSON."
)


# ---------------------------------------------------------------------------
# Prompt Templates
# ---------------------------------------------------------------------------

def _person_line(name: Optional[str], company: Optional[str], email: Optional[str], context: Optional[str]) -> str:
    parts = [name or "(name unknown)"]
    if company:
        parts.append(f"at {company}")
    if email:
        parts.append(f"<{email}>")
    line = " ".join(parts)
    if context:
        line += f"\nCONTEXT: {context[:500]}"
    return line


def claim_extraction(
    sources: List[Dict[str, Any]],
    name: Optional[str] = None,
    company: Optional[str] = None,
    email: Optional[str] = None,
    context: Optional[str] = None,
) -> str:
    """Extraction prompt over a batch of {url, title, text} sources."""
    batch = [
        {"url": s["url"], "title": s.get("title", ""), "text": (s.get("text") or "")[:MAX_SOURCE_TEXT]}
        for s in sources
    ]
    return f"""PERSON: {_person_line(name, company, email, context)}

SOURCES:
{json.dumps(batch, indent=2, ensure_ascii=False)}

Extract every verifiable claim about PERSON from SOURCES.

Return ONLY a JSON object:
{{
  "claims": [
    {{
      "claim_type": "{CLAIM_TYPES}",
      "claim_text": "one atomic statement",
      "org": "organization or null",
      "role": "job title or null",
      "location": "place or null",
      "date": "date as written, or null",
      "start_date": "date as written, or null",
      "end_date": "date as written, or null",
      "amount": "amount as written, e.g. $2.5M, or null",
      "evidence_quote": "verbatim text from the cited source",
      "source_urls": ["url from SOURCES"]
    }}
  ]
}}

Return {{"claims": []}} if nothing qualifies. No markdown."""


def fact_verification(
    claims: List[Dict[str, Any]],
    name: Optional[str] = None,
    company: Optional[str] = None,
) -> str:
    """Verification prompt over claims that already passed the deterministic rules."""
    return f"""PERSON: {_person_line(name, company, None, None)}

CANDIDATE_CLAIMS:
{json.dumps(claims, indent=2, ensure_ascii=False)}

Return one verdict per claim_id.

Return ONLY a JSON object:
{{
  "verdicts": [
    {{
      "claim_id": "id from CANDIDATE_CLAIMS",
      "verdict": "supported | rejected",
      "confidence": 0.0,
      "reason": "short reason"
    }}
  ]
}}

No markdown."""
