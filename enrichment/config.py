"""
Runtime configuration for the enrichment pipeline.

Values come from the process environment, with a project-root .env file
loaded first. Every collaborator receives an EnrichmentConfig explicitly;
nothing reads the environment after construction.
"""

from __future__ import annotations
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping, Optional, Tuple

from dotenv import load_dotenv

_ENV_PATH = Path(__file__).resolve().parents[1] / ".env"

DEFAULT_USER_AGENT = "ProfileEnrichmentBot/1.0 (+https://example.com/bot)"
DEFAULT_RESTRICTED_DOMAINS: Tuple[str, ...] = ("linkedin.com", "facebook.com", "instagram.com")


@dataclass(frozen=True)
class EnrichmentConfig:
    min_confidence: float = 0.6
    max_workers: int = 4
    source_timeout: float = 10.0
    run_timeout: float = 60.0
    retry_backoff: float = 0.5
    max_search_urls: int = 5
    max_text_chars: int = 2000
    fetch_cache_ttl: int = 1800
    fetch_cache_size: int = 256
    derive_email_site: bool = False
    user_agent: str = DEFAULT_USER_AGENT
    restricted_domains: Tuple[str, ...] = field(default=DEFAULT_RESTRICTED_DOMAINS)
    anthropic_api_key: Optional[str] = None
    model: str = "claude-sonnet-4-20250514"
    perplexity_api_key: Optional[str] = None

    @property
    def source_fetch_budget(self) -> float:
        """Upper bound for one source once a worker picks it up: one attempt, one retry, backoff."""
        return self.source_timeout * 2 + self.retry_backoff + 1.0

    @classmethod
    def from_env(cls, env: Optional[Mapping[str, str]] = None) -> "EnrichmentConfig":
        if env is None:
            load_dotenv(dotenv_path=_ENV_PATH, override=False)
            env = os.environ

        restricted = env.get("ENRICH_RESTRICTED_DOMAINS")
        restricted_domains = (
            tuple(d.strip().lower() for d in restricted.split(",") if d.strip())
            if restricted is not None
            else DEFAULT_RESTRICTED_DOMAINS
        )

        return cls(
            min_confidence=float(env.get("ENRICH_MIN_CONFIDENCE", "0.6")),
            max_workers=int(env.get("ENRICH_MAX_WORKERS", "4")),
            source_timeout=float(env.get("ENRICH_SOURCE_TIMEOUT", "10")),
            run_timeout=float(env.get("ENRICH_RUN_TIMEOUT", "60")),
            retry_backoff=float(env.get("ENRICH_RETRY_BACKOFF", "0.5")),
            max_search_urls=int(env.get("ENRICH_MAX_SEARCH_URLS", "5")),
            fetch_cache_ttl=int(env.get("ENRICH_FETCH_CACHE_TTL", "1800")),
            fetch_cache_size=int(env.get("ENRICH_FETCH_CACHE_SIZE", "256")),
            derive_email_site=env.get("ENRICH_DERIVE_EMAIL_SITE", "false").lower() in ("1", "true", "yes"),
            user_agent=env.get("ENRICH_USER_AGENT", DEFAULT_USER_AGENT),
            restricted_domains=restricted_domains,
            anthropic_api_key=env.get("ANTHROPIC_API_KEY") or None,
            model=env.get("DEFAULT_MODEL", "claude-sonnet-4-20250514"),
            perplexity_api_key=env.get("PERPLEXITY_API_KEY") or None,
        )
