"""
Page-level content extraction from raw HTML.

Priority chain for main text:
1. trafilatura (best recall for article text)
2. BeautifulSoup main-content selectors with boilerplate removal (fallback)

Also holds the fixed vocabularies the website extractor scores against
(business keywords, technology signatures, industry and service terms)
and bot-wall detection used by the fetcher.
"""

from __future__ import annotations
import re
from collections import Counter
from typing import Any, Dict, List, Optional, Tuple

from bs4 import BeautifulSoup

MAX_TEXT_CHARS = 2000
MAX_HEADINGS = 10
MAX_HEADING_LEN = 100
MAX_KEYWORDS = 10

# ---------------------------------------------------------------------------
# Fixed vocabularies
# ---------------------------------------------------------------------------

BUSINESS_KEYWORDS = frozenset({
    "business", "company", "service", "product", "solution", "consulting",
    "technology", "software", "development", "design", "marketing", "sales",
    "customer", "client", "professional", "expert", "team", "experience",
    "innovative", "quality", "reliable", "trusted", "leading", "industry",
})

TECH_PATTERNS: Tuple[Tuple[str, re.Pattern], ...] = (
    ("React", re.compile(r"\breact(?:\.js|js)?\b", re.I)),
    ("Vue.js", re.compile(r"\bvue(?:\.js)?\b", re.I)),
    ("Angular", re.compile(r"\bangular\b", re.I)),
    ("WordPress", re.compile(r"wp-content|\bwordpress\b", re.I)),
    ("Shopify", re.compile(r"\bshopify\b", re.I)),
    ("Squarespace", re.compile(r"\bsquarespace\b", re.I)),
    ("Wix", re.compile(r"\bwix\.com\b", re.I)),
    ("Bootstrap", re.compile(r"\bbootstrap\b", re.I)),
    ("jQuery", re.compile(r"\bjquery\b", re.I)),
    ("Node.js", re.compile(r"\bnode\.js\b|\bnodejs\b", re.I)),
    ("Python", re.compile(r"\bpython\b|\bdjango\b|\bflask\b", re.I)),
    ("PHP", re.compile(r"\bphp\b", re.I)),
    ("Ruby", re.compile(r"\bruby\b|\brails\b", re.I)),
)

INDUSTRY_KEYWORDS: Tuple[str, ...] = (
    "consulting", "technology", "software", "marketing", "design",
    "finance", "healthcare", "education", "retail", "manufacturing",
    "real estate", "legal", "nonprofit", "media", "entertainment",
)

SERVICE_KEYWORDS: Tuple[str, ...] = (
    "services", "consulting", "development", "design", "marketing",
    "support", "solutions", "products", "offerings",
)

_MAIN_SELECTORS = ("main", ".main-content", ".content", "article", ".post-content", ".page-content")
_STRIP_SELECTORS = "script, style, noscript, nav, header, footer, aside, .navigation, .menu"

_DATE_META = (
    ("property", "article:published_time"),
    ("name", "date"),
    ("name", "pubdate"),
    ("name", "publish-date"),
    ("itemprop", "datePublished"),
)

# ---------------------------------------------------------------------------
# Soup helpers
# ---------------------------------------------------------------------------

def make_soup(html: str) -> BeautifulSoup:
    return BeautifulSoup(html, "html.parser")


def normalize_ws(text: str) -> str:
    return re.sub(r"\s+", " ", text or "").strip()


def bound_text(text: str, max_chars: int = MAX_TEXT_CHARS) -> str:
    return normalize_ws(text)[:max_chars]


def select_text(soup: BeautifulSoup, *selectors: str) -> str:
    """Text of the first element matching any selector, or ''."""
    for sel in selectors:
        el = soup.select_one(sel)
        if el is not None:
            text = normalize_ws(el.get_text(" "))
            if text:
                return text
    return ""


def select_all_text(soup: BeautifulSoup, selector: str, limit: int = 20) -> List[str]:
    out: List[str] = []
    for el in soup.select(selector):
        text = normalize_ws(el.get_text(" "))
        if text and text not in out:
            out.append(text)
        if len(out) >= limit:
            break
    return out


def meta_content(soup: BeautifulSoup, **attrs: str) -> str:
    el = soup.find("meta", attrs=attrs)
    if el is None:
        return ""
    return normalize_ws(el.get("content") or "")


def extract_title(soup: BeautifulSoup) -> str:
    if soup.title and soup.title.string:
        return normalize_ws(soup.title.string)[:300]
    return meta_content(soup, property="og:title")[:300]


def extract_description(soup: BeautifulSoup) -> str:
    desc = meta_content(soup, name="description") or meta_content(soup, property="og:description")
    if desc:
        return desc
    p = soup.find("p")
    return normalize_ws(p.get_text(" "))[:200] if p else ""


def extract_headings(soup: BeautifulSoup) -> List[str]:
    headings: List[str] = []
    for el in soup.find_all(["h1", "h2", "h3"]):
        text = normalize_ws(el.get_text(" "))
        if text and len(text) < MAX_HEADING_LEN:
            headings.append(text)
        if len(headings) >= MAX_HEADINGS:
            break
    return headings


def extract_published_at(soup: BeautifulSoup) -> Optional[str]:
    """Publication date string declared by the page, unparsed."""
    for attr, value in _DATE_META:
        content = meta_content(soup, **{attr: value})
        if content:
            return content
    t = soup.find("time", attrs={"datetime": True})
    if t is not None:
        return normalize_ws(t.get("datetime"))
    return None


# ---------------------------------------------------------------------------
# Main text
# ---------------------------------------------------------------------------

def _raw_main_text(html: str) -> str:
    """BeautifulSoup fallback: main-content selectors, else the whole body."""
    soup = make_soup(html)
    for el in soup.select(_STRIP_SELECTORS):
        el.decompose()
    text = select_text(soup, *_MAIN_SELECTORS)
    if not text and soup.body is not None:
        text = normalize_ws(soup.body.get_text(" "))
    return text


def extract_main_text(html: str, url: str = "", max_chars: int = MAX_TEXT_CHARS) -> Tuple[str, str]:
    """Return (text, extractor_used) with text whitespace-normalized and bounded."""
    text = ""
    extractor = "raw"
    try:
        import trafilatura
        result = trafilatura.extract(
            html,
            include_comments=False,
            include_tables=False,
            favor_recall=True,
            url=url or None,
        )
        if result and len(result.split()) >= 30:
            text = result
            extractor = "trafilatura"
    except Exception:
        text = ""

    if not text:
        text = _raw_main_text(html)
        extractor = "raw"
    return bound_text(text, max_chars), extractor


# ---------------------------------------------------------------------------
# Keyword / technology / business heuristics
# ---------------------------------------------------------------------------

def extract_keywords(soup: BeautifulSoup, body_text: str) -> List[str]:
    """Meta keywords followed by the top business-vocabulary words by frequency."""
    keywords: List[str] = []
    meta = meta_content(soup, name="keywords")
    if meta:
        keywords += [k.strip() for k in meta.split(",") if k.strip()]

    words = re.findall(r"\b[a-z]{4,}\b", body_text.lower())
    counts = Counter(w for w in words if w in BUSINESS_KEYWORDS)
    # Ties keep first-seen order
    top = [w for w, _ in sorted(counts.items(), key=lambda kv: -kv[1])[:MAX_KEYWORDS]]

    out: List[str] = []
    for k in keywords + top:
        if k not in out:
            out.append(k)
    return out


def detect_technologies(html: str, body_text: str = "") -> List[str]:
    return [name for name, pattern in TECH_PATTERNS if pattern.search(html) or pattern.search(body_text)]


def extract_business_info(body_text: str) -> Dict[str, Any]:
    content = body_text.lower()
    info: Dict[str, Any] = {}
    for industry in INDUSTRY_KEYWORDS:
        if re.search(rf"\b{re.escape(industry)}\b", content):
            info["industry"] = industry
            break

    services: List[str] = []
    for keyword in SERVICE_KEYWORDS:
        for m in re.findall(rf"\b{keyword}\b[^.]{{0,80}}", content)[:3]:
            m = m.strip()
            if m and m not in services:
                services.append(m)
    if services:
        info["services"] = services
    return info


def keywords_from_bio(bio: str, limit: int = MAX_KEYWORDS) -> List[str]:
    """Hashtags, mentions and business-vocabulary words from a short bio."""
    out: List[str] = []
    for tag in re.findall(r"[#@]([A-Za-z0-9_]{2,40})", bio or ""):
        if tag not in out:
            out.append(tag)
    for w in re.findall(r"\b[a-z]{4,}\b", (bio or "").lower()):
        if w in BUSINESS_KEYWORDS and w not in out:
            out.append(w)
    return out[:limit]


# ---------------------------------------------------------------------------
# Bot-wall detection
# ---------------------------------------------------------------------------

# Phrases that only appear on interstitials themselves
_INTERSTITIAL_MARKERS = (
    "just a moment", "checking your browser", "cf-browser-verification",
    "are you a robot", "enable javascript", "verify you are human",
)
# Words a real page may also contain (an employer, a bio)
_BOT_SIGNALS = (
    "captcha", "cloudflare", "access denied", "ray id",
    "please verify", "bot protection", "security check", "ddos protection",
)


def is_bot_wall(text: str) -> bool:
    """Detect anti-bot interstitials from the visible page text.

    At least one interstitial marker is always required. Short pages need
    one more marker or signal; long pages need two more.
    """
    lower = text.lower()
    markers = sum(1 for s in _INTERSTITIAL_MARKERS if s in lower)
    if markers == 0:
        return False
    hits = markers + sum(1 for s in _BOT_SIGNALS if s in lower)
    if len(text.split()) < 100:
        return hits >= 2
    return hits >= 3


def visible_text(html: str) -> str:
    soup = make_soup(html)
    for el in soup.select("script, style, noscript"):
        el.decompose()
    return normalize_ws(soup.get_text(" "))
