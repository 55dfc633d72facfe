"""HTML sanitization and metadata helpers built on lxml."""

import logging
import re
from dataclasses import dataclass
from typing import cast

from lxml import etree
from lxml import html as lxml_html
from lxml.html import HtmlElement, defs
from lxml_html_clean import Cleaner

logger = logging.getLogger(__name__)

XML_DECLARATION = re.compile(r"^\s*<\?xml[^>]*\?>", re.I)

LOWER = "translate({}, 'ABCDEFGHIJKLMNOPQRSTUVWXYZ', 'abcdefghijklmnopqrstuvwxyz')"

SAFE_ATTRS = frozenset(defs.safe_attrs) | {
    "class",
    "id",
    "style",
    "content",
    "property",
    "http-equiv",
    "itemprop",
    "srcset",
    "poster",
}

_cleaner = Cleaner(
    scripts=True,
    javascript=True,
    comments=True,
    processing_instructions=True,
    style=False,
    inline_style=False,
    links=False,
    meta=False,
    page_structure=False,
    embedded=False,
    frames=True,
    forms=False,
    annoying_tags=False,
    remove_unknown_tags=False,
    safe_attrs_only=True,
    safe_attrs=SAFE_ATTRS,
)


@dataclass(frozen=True)
class PageMetadata:
    title: str
    description: str


def parse_document(html: str) -> HtmlElement | None:
    """Parse HTML into an lxml document, or None if it is empty or unparseable."""
    if not html or not html.strip():
        return None
    try:
        return cast(HtmlElement, lxml_html.document_fromstring(XML_DECLARATION.sub("", html)))
    except (etree.ParserError, ValueError) as e:
        logger.debug(f"Failed to parse HTML: {e}")
        return None


def sanitize_html(html: str) -> str:
    """Strip scripts, event handlers, comments and unsafe attributes.

    Page structure, meta tags, images and media elements are kept so the
    content analysis can still read them.

    Examples:
        >>> sanitize_html('<p onclick="x()">Hi<script>alert(1)</script></p>')
        '<p>Hi</p>'
    """
    if not html or not html.strip():
        return ""
    try:
        return cast(str, _cleaner.clean_html(XML_DECLARATION.sub("", html)))
    except (etree.ParserError, ValueError) as e:
        logger.warning(f"HTML sanitization failed, dropping markup: {e}")
        return ""


def _first(doc: HtmlElement, expr: str) -> str:
    values = doc.xpath(expr)
    for value in values:
        text = value if isinstance(value, str) else value.text_content()
        text = " ".join(text.split())
        if text:
            return text
    return ""


def meta_content(doc: HtmlElement, key: str) -> str:
    """Content of the first <meta name=key> or <meta property=key>, case-insensitive."""
    key = key.lower()
    return _first(
        doc,
        f"//meta[{LOWER.format('@name')}='{key}' or {LOWER.format('@property')}='{key}']"
        "/@content",
    )


def extract_metadata(html: str) -> PageMetadata:
    """Read the title and description from a document.

    The description comes from <meta name="description">, then og:description.
    """
    doc = parse_document(html)
    if doc is None:
        return PageMetadata(title="", description="")
    title = _first(doc, "//title")
    description = meta_content(doc, "description") or meta_content(doc, "og:description")
    return PageMetadata(title=title, description=description)
