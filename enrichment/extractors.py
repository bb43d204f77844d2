"""
Per-platform extractors: Source -> ExtractedContent.

Each extractor fetches through the shared Fetcher and parses with
BeautifulSoup. Selection is a lookup keyed on platform tag; restricted
domains always resolve to RestrictedExtractor, which never fetches.

Selectors are best-effort. A missing element yields an empty field, not an
error; only a parser crash becomes ParseError.
"""

from __future__ import annotations
import logging
import threading
from typing import Dict, List, Optional, Type

from bs4 import BeautifulSoup

from enrichment import content_extractor as ce
from enrichment.config import EnrichmentConfig
from enrichment.errors import ParseError
from enrichment.fetcher import FetchedPage, Fetcher
from enrichment.models import ExtractedContent, Platform, Source
from enrichment.pipeline_metrics import PipelineMetrics
from enrichment.url_utils import matches_any

log = logging.getLogger("enrichment.extract")

RESTRICTED_NOTE = "restricted_access"
PARSE_FAILED_NOTE = "parse_failed"


class BaseExtractor:
    """Fetch + parse. Subclasses implement parse()."""

    platform: Platform = Platform.GENERIC

    def __init__(self, fetcher: Fetcher, config: EnrichmentConfig):
        self.fetcher = fetcher
        self.config = config

    def extract(
        self,
        source: Source,
        metrics: Optional[PipelineMetrics] = None,
        cancel_event: Optional[threading.Event] = None,
    ) -> ExtractedContent:
        page = self.fetcher.fetch(source.url, metrics=metrics, cancel_event=cancel_event)
        try:
            soup = ce.make_soup(page.html)
            content = self.parse(soup, page, source)
        except ParseError:
            raise
        except Exception as e:
            raise ParseError(source.url, f"parse failed: {e}") from e
        log.info(
            "extract url=%s platform=%s fields=%s text_chars=%d",
            source.url, source.platform.value,
            sorted(k for k, v in content.fields.items() if v), len(content.text),
        )
        return content

    def parse(self, soup: BeautifulSoup, page: FetchedPage, source: Source) -> ExtractedContent:
        raise NotImplementedError

    def _bound(self, text: str) -> str:
        return ce.bound_text(text, self.config.max_text_chars)


# ---------------------------------------------------------------------------
# Website (seed-declared first-party sites)
# ---------------------------------------------------------------------------

class WebsiteExtractor(BaseExtractor):
    platform = Platform.WEBSITE

    def parse(self, soup, page, source):
        title = ce.extract_title(soup)
        description = ce.extract_description(soup)
        headings = ce.extract_headings(soup)
        published_at = ce.extract_published_at(soup)
        body_text = ce.normalize_ws(soup.body.get_text(" ")) if soup.body else ""
        keywords = ce.extract_keywords(soup, body_text)
        technologies = ce.detect_technologies(page.html, body_text)
        text, _ = ce.extract_main_text(page.html, page.url, self.config.max_text_chars)
        business_info = ce.extract_business_info(body_text)

        fields: Dict[str, object] = {}
        site_name = ce.meta_content(soup, property="og:site_name")
        if site_name:
            fields["company"] = site_name
        if business_info.get("industry"):
            fields["industries"] = [business_info["industry"]]

        return ExtractedContent(
            url=source.url,
            platform=self.platform,
            fields=fields,
            text=text,
            title=title,
            description=description,
            headings=headings,
            keywords=keywords,
            technologies=technologies,
            business_info=business_info,
            published_at=published_at,
        )


# ---------------------------------------------------------------------------
# Short-form social (X/Twitter, Mastodon, Bluesky, Threads)
# ---------------------------------------------------------------------------

class ShortFormSocialExtractor(BaseExtractor):
    platform = Platform.SOCIAL_SHORT_FORM

    def parse(self, soup, page, source):
        name = ce.select_text(soup, '[data-testid="UserName"]', ".account__header__tabs__name h1", "h1")
        if not name:
            name = ce.meta_content(soup, property="og:title")
        bio = ce.select_text(soup, '[data-testid="UserDescription"]', ".account__header__content", ".p-note")
        if not bio:
            bio = ce.meta_content(soup, name="description") or ce.meta_content(soup, property="og:description")
        location = ce.select_text(soup, '[data-testid="UserLocation"]', ".p-locality")

        fields = {"name": name, "bio": bio, "location": location}
        return ExtractedContent(
            url=source.url,
            platform=self.platform,
            fields={k: v for k, v in fields.items() if v},
            text=self._bound(" ".join(v for v in (name, bio, location) if v)),
            title=ce.extract_title(soup),
            description=ce.extract_description(soup),
            keywords=ce.keywords_from_bio(bio),
        )


# ---------------------------------------------------------------------------
# Code hosting (GitHub, GitLab, Bitbucket)
# ---------------------------------------------------------------------------

class CodeHostingExtractor(BaseExtractor):
    platform = Platform.CODE_HOSTING

    def parse(self, soup, page, source):
        name = ce.select_text(soup, ".p-name", "h1.vcard-names", ".user-profile-name", "h1")
        handle = ce.select_text(soup, ".p-nickname", ".user-username")
        bio = ce.select_text(soup, ".p-note", ".user-profile-bio", ".profile-user-bio")
        company = ce.select_text(soup, ".p-org", '[itemprop="worksFor"]')
        location = ce.select_text(soup, ".p-label", '[itemprop="homeLocation"]', ".user-location")

        languages: List[str] = []
        for lang in ce.select_all_text(soup, '[itemprop="programmingLanguage"]') + ce.select_all_text(
            soup, ".repository-lang-stats-graph .language-color"
        ):
            if lang not in languages and len(lang) <= 30:
                languages.append(lang)
        projects = ce.select_all_text(soup, ".pinned-item-list-item h3 a", limit=10)
        if not projects:
            projects = ce.select_all_text(soup, ".pinned-item-list-item .repo", limit=10)

        fields: Dict[str, object] = {
            "name": name,
            "bio": bio,
            "company": company.lstrip("@").strip() if company else "",
            "location": location,
            "skills": languages,
            "handle": handle,
        }
        text_parts = [p for p in (name, handle, bio, company, location) if p]
        text_parts += ce.select_all_text(soup, ".pinned-item-list-item p", limit=10)
        return ExtractedContent(
            url=source.url,
            platform=self.platform,
            fields={k: v for k, v in fields.items() if v},
            text=self._bound(" ".join(text_parts)),
            title=ce.extract_title(soup),
            description=ce.extract_description(soup),
            keywords=projects,
            technologies=languages,
        )


# ---------------------------------------------------------------------------
# Generic pages (search results, articles)
# ---------------------------------------------------------------------------

class GenericExtractor(BaseExtractor):
    platform = Platform.GENERIC

    def parse(self, soup, page, source):
        text, extractor = ce.extract_main_text(page.html, page.url, self.config.max_text_chars)
        log.debug("generic url=%s extractor=%s", source.url, extractor)
        return ExtractedContent(
            url=source.url,
            platform=self.platform,
            text=text,
            title=ce.extract_title(soup),
            description=ce.extract_description(soup),
            headings=ce.extract_headings(soup),
            published_at=ce.extract_published_at(soup),
        )


# ---------------------------------------------------------------------------
# Restricted platforms: never fetched
# ---------------------------------------------------------------------------

class RestrictedExtractor(BaseExtractor):
    """Platforms whose terms forbid scraping. Returns a stub without any request."""

    def extract(self, source, metrics=None, cancel_event=None):
        log.info("extract restricted url=%s", source.url)
        return ExtractedContent.empty(source.url, source.platform, RESTRICTED_NOTE)

    def parse(self, soup, page, source):
        return ExtractedContent.empty(source.url, source.platform, RESTRICTED_NOTE)


# ---------------------------------------------------------------------------
# Lookup
# ---------------------------------------------------------------------------

EXTRACTORS: Dict[Platform, Type[BaseExtractor]] = {
    Platform.WEBSITE: WebsiteExtractor,
    Platform.SOCIAL_SHORT_FORM: ShortFormSocialExtractor,
    Platform.SOCIAL_LONG_FORM: GenericExtractor,
    Platform.CODE_HOSTING: CodeHostingExtractor,
    Platform.GENERIC: GenericExtractor,
}


class ExtractorRegistry:
    def __init__(self, fetcher: Fetcher, config: EnrichmentConfig):
        self.config = config
        self._restricted = RestrictedExtractor(fetcher, config)
        self._by_platform = {p: cls(fetcher, config) for p, cls in EXTRACTORS.items()}

    def is_restricted(self, source: Source) -> bool:
        return matches_any(source.domain, self.config.restricted_domains)

    def for_source(self, source: Source) -> BaseExtractor:
        if self.is_restricted(source):
            return self._restricted
        return self._by_platform.get(source.platform, self._by_platform[Platform.GENERIC])
