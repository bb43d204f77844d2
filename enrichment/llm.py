"""
Model client seam.

Stages take a plain callable ``call_llm(prompt, system, max_tokens) -> str``
so tests can pass a lambda. AnthropicLLM is the production implementation.
Transport errors propagate to the caller; each stage decides what a failed
call means for its output.
"""

from __future__ import annotations
import json
import logging
import re
from typing import Any, Callable, Optional

from enrichment.config import EnrichmentConfig

log = logging.getLogger("enrichment.llm")

CallLLM = Callable[[str, str, int], str]


class AnthropicLLM:
    """Anthropic Messages API behind the CallLLM signature."""

    def __init__(self, api_key: str, model: str, temperature: float = 0.0, client=None):
        if client is None:
            from anthropic import Anthropic
            client = Anthropic(api_key=api_key)
        self._client = client
        self.model = model
        self.temperature = temperature

    def __call__(self, prompt: str, system: str = "", max_tokens: int = 4000) -> str:
        resp = self._client.messages.create(
            model=self.model,
            max_tokens=max_tokens,
            temperature=self.temperature,
            system=system,
            messages=[{"role": "user", "content": prompt}],
        )
        text = "".join(getattr(block, "text", "") for block in resp.content)
        log.debug("llm model=%s chars=%d", self.model, len(text))
        return text


def make_llm(config: EnrichmentConfig) -> Optional[CallLLM]:
    """AnthropicLLM when a key is configured, else None (deterministic mode)."""
    if not config.anthropic_api_key:
        log.info("llm disabled: no ANTHROPIC_API_KEY")
        return None
    return AnthropicLLM(api_key=config.anthropic_api_key, model=config.model)


def parse_json_from_llm(text: str) -> Any:
    """Extract JSON from a model response, tolerating markdown fences and chatter.

    Returns None when nothing parses.
    """
    if not isinstance(text, str):
        return None
    cleaned = text.strip()
    cleaned = re.sub(r"^```(?:json)?\s*", "", cleaned)
    cleaned = re.sub(r"\s*```$", "", cleaned)
    try:
        return json.loads(cleaned)
    except ValueError:
        pass
    for start_char, end_char in (("{", "}"), ("[", "]")):
        s = cleaned.find(start_char)
        e = cleaned.rfind(end_char)
        if s >= 0 and e > s:
            try:
                return json.loads(cleaned[s:e + 1])
            except ValueError:
                pass
    return None
