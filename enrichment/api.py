"""
HTTP surface for the enrichment pipeline.

POST /enrich runs one enrichment synchronously and returns the EnrichmentRun.
GET /health reports liveness and which optional collaborators are configured.
"""

from __future__ import annotations
import logging
from typing import Any, Dict, List, Literal, Optional

from fastapi import FastAPI, Request
from pydantic import BaseModel, ConfigDict, Field, model_validator

from enrichment import __version__
from enrichment.config import EnrichmentConfig
from enrichment.llm import make_llm
from enrichment.models import EnrichmentRequest, IdentitySeed, ProfileField
from enrichment.pipeline import EnrichmentPipeline
from enrichment.search import make_search

log = logging.getLogger("enrichment.api")


# ---------------------------------------------------------------------------
# Schemas
# ---------------------------------------------------------------------------

class IdentitySeedIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    email: Optional[str] = None
    primary_url: Optional[str] = Field(default=None, alias="primaryUrl")
    additional_urls: List[str] = Field(default_factory=list, alias="additionalUrls")
    context: Optional[str] = None
    name: Optional[str] = None
    company: Optional[str] = None

    def to_seed(self) -> IdentitySeed:
        return IdentitySeed(
            email=self.email,
            primary_url=self.primary_url,
            additional_urls=tuple(self.additional_urls),
            context=self.context,
            name=self.name,
            company=self.company,
        )


class ProfileFieldIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    value: Any = None
    confidence: float = Field(default=0.0, ge=0.0, le=1.0)
    source_urls: List[str] = Field(default_factory=list)
    last_updated: Optional[str] = Field(default=None, alias="lastUpdated")
    provenance: Literal["db", "enrichment", "user"] = "db"

    @model_validator(mode="after")
    def _enrichment_needs_sources(self):
        if self.provenance == "enrichment" and not self.source_urls:
            raise ValueError("enrichment fields must carry at least one source URL")
        return self

    def to_field(self) -> ProfileField:
        return ProfileField.from_dict({
            "value": self.value,
            "confidence": self.confidence,
            "source_urls": self.source_urls,
            "lastUpdated": self.last_updated,
            "provenance": self.provenance,
        })


class EnrichRequestIn(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    identity_seed: IdentitySeedIn = Field(alias="identitySeed")
    minimum_confidence: Optional[float] = Field(default=None, ge=0.0, le=1.0, alias="minimumConfidence")
    existing_profile_fields: Dict[str, ProfileFieldIn] = Field(default_factory=dict, alias="existingProfileFields")
    consent_public_sources: bool = Field(default=True, alias="consentPublicSources")

    def to_request(self) -> EnrichmentRequest:
        return EnrichmentRequest(
            seed=self.identity_seed.to_seed(),
            minimum_confidence=self.minimum_confidence,
            existing_fields={k: v.to_field() for k, v in self.existing_profile_fields.items()},
            consent_public_sources=self.consent_public_sources,
        )


class ProfileFieldOut(BaseModel):
    value: Any
    confidence: float
    source_urls: List[str]
    lastUpdated: str
    provenance: str


class SourceFailureOut(BaseModel):
    sourceUrl: str
    errorKind: str
    message: str = ""


class EnrichmentRunOut(BaseModel):
    runId: str
    status: str
    startedAt: Optional[str] = None
    completedAt: Optional[str] = None
    error: Optional[str] = None
    queries: List[str] = Field(default_factory=list)
    profileFields: Dict[str, ProfileFieldOut] = Field(default_factory=dict)
    failures: List[SourceFailureOut] = Field(default_factory=list)
    verifiedLinks: Dict[str, Dict[str, str]] = Field(default_factory=dict)
    metrics: Dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# App
# ---------------------------------------------------------------------------

def build_pipeline(config: EnrichmentConfig) -> EnrichmentPipeline:
    return EnrichmentPipeline(config, call_llm=make_llm(config), search=make_search(config))


def create_app(pipeline: Optional[EnrichmentPipeline] = None) -> FastAPI:
    app = FastAPI(title="Profile Enrichment", version=__version__)
    app.state.pipeline = pipeline or build_pipeline(EnrichmentConfig.from_env())

    @app.get("/health")
    def health(request: Request) -> Dict[str, Any]:
        p: EnrichmentPipeline = request.app.state.pipeline
        return {
            "ok": True,
            "model": p.verifier.call_llm is not None,
            "search": p.search is not None,
        }

    @app.post("/enrich", response_model=EnrichmentRunOut)
    def enrich(body: EnrichRequestIn, request: Request) -> Dict[str, Any]:
        p: EnrichmentPipeline = request.app.state.pipeline
        run = p.run(body.to_request())
        return run.to_dict()

    return app
