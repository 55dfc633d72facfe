"""Default content analysis for crawled pages.

ContentAnalyzer turns sanitized HTML into a ProcessedContent: page metadata,
structured data, main text, word statistics, a heuristic quality score, media
references and outbound links. The page pipeline treats any analyzer as an
opaque function; if it raises, fallback_processed_content() stands in.
"""

import copy
import json
import logging
import math
import re
from collections import Counter
from collections.abc import Awaitable, Callable
from dataclasses import asdict, dataclass, field
from typing import Any, cast
from urllib.parse import urljoin, urlparse

from lxml.html import HtmlElement

from sift.markup import meta_content, parse_document
from sift.urls import normalize_url

logger = logging.getLogger(__name__)

WORDS_PER_MINUTE = 200

MAIN_CONTENT_SELECTORS = [
    "article",
    "[role='main']",
    ".content",
    ".post-content",
    ".entry-content",
    ".article-content",
    "main",
    "#content",
    "#main",
    ".main-content",
]

BOILERPLATE_SELECTORS = (
    "nav, header, footer, aside, .sidebar, .menu, .navigation, script, style, "
    ".ads, .advertisement"
)

STOP_WORDS = frozenset(
    """
    the and for are but not you all any can had her was one our out day get has him his how
    its may new now old see two way who boy did man men put say she too use that with have
    this will your from they know want been good much some time very when come here just like
    long make many more only over such take than them well were what which while about after
    again also because before being between both could does doing down during each few into
    most other same should their there these those through under until where whom why would
    """.split()
)

MEDIA_CONTENT_TYPE = re.compile(r"image|video|audio|application/(pdf|zip)", re.I)


@dataclass
class MediaInfo:
    type: str
    url: str
    alt: str = ""
    title: str = ""


@dataclass
class ExtractedLink:
    """An outbound link found on a page."""

    url: str
    text: str = ""
    title: str = ""
    domain: str = ""
    is_internal: bool = False


@dataclass
class ContentAnalysis:
    word_count: int = 0
    reading_time: int = 0
    language: str = "unknown"
    keywords: list[dict[str, Any]] = field(default_factory=list)
    sentiment: str = "neutral"
    readability_score: int = 0
    quality_score: int = 0
    quality_factors: dict[str, Any] = field(default_factory=dict)
    quality_issues: list[str] = field(default_factory=list)


@dataclass
class ProcessedContent:
    """Result of analyzing one page."""

    url: str
    content_type: str
    main_content: str = ""
    extracted_data: dict[str, Any] = field(default_factory=dict)
    metadata: dict[str, str] = field(default_factory=dict)
    analysis: ContentAnalysis = field(default_factory=ContentAnalysis)
    media: list[MediaInfo] = field(default_factory=list)
    links: list[ExtractedLink] = field(default_factory=list)
    errors: list[dict[str, str]] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)


Analyzer = Callable[[str, str, str], ProcessedContent | Awaitable[ProcessedContent]]


def fallback_processed_content(url: str, content_type: str, error: Exception) -> ProcessedContent:
    """Empty analysis substituted when the analyzer raises."""
    return ProcessedContent(
        url=url,
        content_type=content_type,
        analysis=ContentAnalysis(quality_issues=["Processing failed"]),
        errors=[{"type": "processor_error", "message": str(error)}],
    )


def is_media_content_type(content_type: str) -> bool:
    return bool(MEDIA_CONTENT_TYPE.search(content_type or ""))


def _clean_text(text: str | None) -> str:
    return " ".join((text or "").split())


def _count_syllables(word: str) -> int:
    word = re.sub(r"[^a-z]", "", word.lower())
    if len(word) <= 3:
        return 1
    word = re.sub(r"(?:[^laeiouy]es|ed|[^laeiouy]e)$", "", word)
    word = re.sub(r"^y", "", word)
    return len(re.findall(r"[aeiouy]{1,2}", word)) or 1


class ContentAnalyzer:
    """lxml-based analyzer for HTML pages.

    Callable as analyzer(html, url, content_type).
    """

    def __init__(self, max_keywords: int = 10) -> None:
        self.max_keywords = max_keywords

    def __call__(self, html: str, url: str, content_type: str) -> ProcessedContent:
        return self.analyze(html, url, content_type)

    def analyze(self, html: str, url: str, content_type: str) -> ProcessedContent:
        """Analyze a page.

        Args:
            html: Sanitized page content
            url: Page URL (base for relative links)
            content_type: Response content type

        Returns:
            ProcessedContent (text-only analysis for non-HTML content)
        """
        result = ProcessedContent(url=url, content_type=content_type)

        if "html" not in (content_type or "").lower():
            if content_type and "json" in content_type.lower():
                result.extracted_data["json"] = self._describe_json(html)
            text = _clean_text(html)
            result.main_content = text
            result.analysis = self._analyze_text(text)
            return result

        doc = parse_document(html)
        if doc is None:
            result.analysis = self._analyze_text("")
            return result

        result.metadata = self._extract_metadata(doc)
        result.extracted_data = self._extract_structured_data(doc)
        result.main_content = self._extract_main_content(doc)
        result.media = self._extract_media(doc, url)
        result.links = self._extract_links(doc, url)

        analysis = self._analyze_text(result.main_content)
        language = (doc.get("lang") or "").strip().lower()
        if language:
            analysis.language = language.split("-")[0]
        score, factors, issues = self._assess_quality(doc, result.main_content)
        analysis.quality_score = score
        analysis.quality_factors = factors
        analysis.quality_issues = issues
        result.analysis = analysis
        return result

    def _extract_metadata(self, doc: HtmlElement) -> dict[str, str]:
        def first_attr(selector: str, attr: str) -> str:
            for el in doc.cssselect(selector):
                value = _clean_text(el.get(attr))
                if value:
                    return value
            return ""

        def first_text(selector: str) -> str:
            for el in doc.cssselect(selector):
                value = _clean_text(el.text_content())
                if value:
                    return value
            return ""

        charset = first_attr("meta[charset]", "charset")
        return {
            "title": first_text("title") or meta_content(doc, "og:title") or first_text("h1"),
            "description": meta_content(doc, "description") or meta_content(doc, "og:description"),
            "author": meta_content(doc, "author") or meta_content(doc, "article:author"),
            "publish_date": meta_content(doc, "article:published_time")
            or first_attr("time[datetime]", "datetime"),
            "modified_date": meta_content(doc, "article:modified_time"),
            "canonical": first_attr("link[rel='canonical']", "href"),
            "robots": meta_content(doc, "robots"),
            "viewport": meta_content(doc, "viewport"),
            "charset": charset,
            "generator": meta_content(doc, "generator"),
        }

    def _extract_structured_data(self, doc: HtmlElement) -> dict[str, Any]:
        data: dict[str, Any] = {"json_ld": [], "open_graph": {}, "twitter_cards": {}}
        # Sanitization drops <script>, so JSON-LD only survives on unsanitized input
        for el in doc.cssselect("script[type='application/ld+json']"):
            try:
                data["json_ld"].append(json.loads(el.text_content() or ""))
            except ValueError as e:
                logger.debug(f"Skipping malformed JSON-LD: {e}")
        for el in doc.xpath("//meta[@property or @name]"):
            key = (el.get("property") or el.get("name") or "").strip()
            content = _clean_text(el.get("content"))
            if not content:
                continue
            if key.startswith("og:"):
                data["open_graph"][key[3:]] = content
            elif key.startswith("twitter:"):
                data["twitter_cards"][key[8:]] = content
        return data

    def _extract_main_content(self, doc: HtmlElement) -> str:
        for selector in MAIN_CONTENT_SELECTORS:
            elements = doc.cssselect(selector)
            if elements:
                text = _clean_text(elements[0].text_content())
                if len(text) > 100:
                    return text

        bodies = doc.cssselect("body")
        if not bodies:
            return _clean_text(doc.text_content())
        body = cast(HtmlElement, copy.deepcopy(bodies[0]))
        for el in body.cssselect(BOILERPLATE_SELECTORS):
            el.drop_tree()
        return _clean_text(body.text_content())

    def _extract_media(self, doc: HtmlElement, base_url: str) -> list[MediaInfo]:
        media: list[MediaInfo] = []
        for el in doc.cssselect("img[src]"):
            media.append(
                MediaInfo(
                    type="image",
                    url=urljoin(base_url, el.get("src", "")),
                    alt=el.get("alt") or "",
                    title=el.get("title") or "",
                )
            )
        for kind in ("video", "audio"):
            for el in doc.cssselect(f"{kind}[src], {kind} source[src]"):
                media.append(MediaInfo(type=kind, url=urljoin(base_url, el.get("src", ""))))
        return media

    def _extract_links(self, doc: HtmlElement, base_url: str) -> list[ExtractedLink]:
        base_host = (urlparse(base_url).hostname or "").lower()
        links: list[ExtractedLink] = []
        seen: set[str] = set()
        for el in doc.cssselect("a[href]"):
            href = (el.get("href") or "").strip()
            if not href or href.startswith(("#", "javascript:", "mailto:", "tel:", "data:")):
                continue
            try:
                url = normalize_url(href, base=base_url)
            except ValueError:
                continue
            if url in seen:
                continue
            seen.add(url)
            host = (urlparse(url).hostname or "").lower()
            links.append(
                ExtractedLink(
                    url=url,
                    text=_clean_text(el.text_content()),
                    title=el.get("title") or "",
                    domain=host,
                    is_internal=host == base_host,
                )
            )
        return links

    def _analyze_text(self, text: str) -> ContentAnalysis:
        words = text.split()
        word_count = len(words)

        frequencies: Counter[str] = Counter()
        for word in words:
            token = re.sub(r"[^a-z0-9]", "", word.lower())
            if len(token) > 2 and token not in STOP_WORDS:
                frequencies[token] += 1
        keywords = [
            {"word": word, "count": count}
            for word, count in frequencies.most_common(self.max_keywords)
        ]

        sentences = [s for s in re.split(r"[.!?]+", text) if s.strip()]
        words_per_sentence = word_count / len(sentences) if sentences else 0.0
        syllables = sum(_count_syllables(w) for w in words)
        syllables_per_word = syllables / word_count if word_count else 0.0
        readability = 206.835 - 1.015 * words_per_sentence - 84.6 * syllables_per_word
        readability = max(0.0, min(100.0, readability)) if word_count else 0.0

        return ContentAnalysis(
            word_count=word_count,
            reading_time=math.ceil(word_count / WORDS_PER_MINUTE),
            keywords=keywords,
            readability_score=round(readability),
        )

    def _assess_quality(
        self, doc: HtmlElement, main_content: str
    ) -> tuple[int, dict[str, Any], list[str]]:
        """Heuristic 0-100 score starting from a baseline of 50."""
        factors: dict[str, Any] = {}
        issues: list[str] = []
        score = 50

        titles = doc.cssselect("title")
        title = _clean_text(titles[0].text_content()) if titles else ""
        factors["has_title"] = bool(title)
        if not title:
            issues.append("Missing page title")
            score -= 10
        elif len(title) < 10:
            issues.append("Title too short")
            score -= 5

        description = meta_content(doc, "description")
        factors["has_description"] = bool(description)
        if not description:
            issues.append("Missing meta description")
            score -= 10
        elif len(description) < 50:
            issues.append("Meta description too short")
            score -= 5

        factors["content_length"] = len(main_content)
        if len(main_content) < 300:
            issues.append("Content too thin")
            score -= 15
        elif len(main_content) > 1000:
            score += 10

        headings = len(doc.cssselect("h1, h2, h3"))
        factors["has_headings"] = headings > 0
        if headings:
            score += min(10, headings * 2)
        else:
            issues.append("No headings found")
            score -= 5

        images = doc.cssselect("img")
        factors["has_images"] = bool(images)
        if images:
            score += 5
            with_alt = sum(1 for img in images if img.get("alt") is not None)
            factors["images_with_alt"] = with_alt
            if with_alt < len(images):
                issues.append("Some images missing alt attributes")

        links = len(doc.cssselect("a[href]"))
        factors["has_links"] = links > 0
        if links:
            score += 5

        return max(0, min(100, score)), factors, issues

    @staticmethod
    def _describe_json(text: str) -> dict[str, Any]:
        try:
            data = json.loads(text)
        except ValueError as e:
            return {"error": str(e)}
        if isinstance(data, dict):
            return {"structure": "object", "keys": list(data)[:50]}
        if isinstance(data, list):
            return {"structure": "array", "length": len(data)}
        return {"structure": type(data).__name__}
