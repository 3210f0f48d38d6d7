"""Heuristic extraction of title, body text and metadata from raw HTML.

Every field is resolved by walking an ordered list of strategies and taking
the first non-empty answer. Missing fields degrade to an empty string or
``None``; extraction never raises on odd markup.
"""

import logging
import re
from dataclasses import dataclass
from typing import Callable, List, Optional, Sequence

from bs4 import BeautifulSoup, Tag
from soupsieve import SelectorSyntaxError

from indexer.models import DocumentMetadata, SourceSelectors

logger = logging.getLogger(__name__)

Strategy = Callable[[BeautifulSoup], Optional[str]]

# Raised by soupsieve for selectors it cannot parse or does not support
SELECTOR_ERRORS = (SelectorSyntaxError, NotImplementedError, ValueError)

CONTENT_CANDIDATES = [
    "main",
    "article",
    ".content, .post-content, .entry-content, .article-content",
    ".main-content, .page-content",
    ".text-content, .body-content",
    "#content, #main",
    ".container .row .col",
    "body",
]

NOISE_SELECTOR = (
    "script, style, nav, header, footer, .nav, .header, .footer, .sidebar, "
    ".ad, .advertisement, .ads, .comments, .comment, .social-share, .share, "
    ".related, .recommended"
)

NAVIGATION_KEYWORDS = [
    "home", "about", "contact", "privacy", "terms", "login", "sign up",
    "subscribe", "newsletter", "follow us", "share", "like", "comment",
    "copyright", "all rights reserved", "powered by", "designed by",
]

AUTHOR_SELECTORS = [
    ".author, .byline, .writer",
    '[rel="author"]',
    ".post-author, .article-author",
    'meta[name="author"]',
    'meta[property="article:author"]',
]

DATE_SELECTORS = [
    ".date, .published, .time",
    "time[datetime]",
    ".post-date, .article-date",
    'meta[property="article:published_time"]',
    'meta[name="publish_date"]',
]

TAG_SELECTORS = [
    ".tags .tag, .categories .category",
    ".post-tags .tag, .article-tags .tag",
    'meta[name="keywords"]',
    'meta[property="article:tag"]',
]

MIN_HEADING_LENGTH = 3
MIN_PARAGRAPH_LENGTH = 20
SUBSTANTIAL_CONTENT_LENGTH = 100
SUMMARY_THRESHOLD = 500


@dataclass
class ExtractedPage:
    title: str
    content: str
    metadata: DocumentMetadata


def normalize_whitespace(text: str) -> str:
    """Tabs to spaces, collapse runs of spaces, collapse blank lines."""
    text = text.replace("\r\n", "\n").replace("\r", "\n").replace("\t", " ")
    text = re.sub(r"[^\S\n]+", " ", text)
    text = re.sub(r" *\n *", "\n", text)
    text = re.sub(r"\n{3,}", "\n\n", text)
    return text.strip()


def _element_value(element: Tag, attributes: Sequence[str] = ()) -> str:
    value = element.get_text().strip()
    if value:
        return value
    for attr in attributes:
        attr_value = element.get(attr)
        if attr_value and str(attr_value).strip():
            return str(attr_value).strip()
    return ""


def first_value(selector: str, attributes: Sequence[str] = ()) -> Strategy:
    """Strategy returning the first non-empty text (or attribute) matched by ``selector``."""
    def strategy(soup: BeautifulSoup) -> Optional[str]:
        for element in soup.select(selector):
            value = _element_value(element, attributes)
            if value:
                return value
        return None
    return strategy


def run_strategies(soup: BeautifulSoup, strategies: Sequence[Strategy]) -> Optional[str]:
    for strategy in strategies:
        try:
            value = strategy(soup)
        except SELECTOR_ERRORS as e:
            logger.debug(f"Extraction strategy skipped: {e}")
            continue
        if value:
            return value
    return None


TITLE_STRATEGIES: List[Strategy] = [
    first_value("title"),
    first_value("h1"),
    first_value(".title, .headline, .post-title, .article-title"),
    first_value('meta[property="og:title"]', ("content",)),
    first_value('meta[name="twitter:title"]', ("content",)),
]

AUTHOR_STRATEGIES: List[Strategy] = [first_value(s, ("content",)) for s in AUTHOR_SELECTORS]

DATE_STRATEGIES: List[Strategy] = [first_value(s, ("datetime", "content")) for s in DATE_SELECTORS]


def is_navigation_or_footer(text: str) -> bool:
    lowered = text.lower()
    return any(keyword in lowered for keyword in NAVIGATION_KEYWORDS)


def structured_text(elements: List[Tag]) -> str:
    """Assemble the SECTIONS/CONTENT block for a set of container elements.

    Noise substructures are removed from the tree as a side effect.
    """
    for element in elements:
        for noise in element.select(NOISE_SELECTOR):
            noise.extract()

    headings: List[str] = []
    paragraphs: List[str] = []
    for element in elements:
        for heading in element.select("h1, h2, h3, h4, h5, h6"):
            text = heading.get_text().strip()
            if len(text) > MIN_HEADING_LENGTH:
                headings.append(text)
        for block in element.select("p, li, div"):
            text = block.get_text().strip()
            if len(text) > MIN_PARAGRAPH_LENGTH and not is_navigation_or_footer(text):
                paragraphs.append(text)

    out = ""
    if headings:
        out += "SECTIONS:\n" + "".join(f"• {h}\n" for h in headings) + "\n"
    if paragraphs:
        out += "CONTENT:\n" + "".join(f"{i}. {p}\n\n" for i, p in enumerate(paragraphs, start=1))

    if not out.strip():
        out = " ".join(element.get_text() for element in elements).strip()

    return normalize_whitespace(out)


def extract_content(soup: BeautifulSoup, selector: Optional[str] = None) -> str:
    if selector:
        try:
            return structured_text(soup.select(selector))
        except SELECTOR_ERRORS as e:
            logger.warning(f"Invalid content selector {selector!r}: {e}")
            return ""

    content = ""
    for candidate in CONTENT_CANDIDATES:
        elements = soup.select(candidate)
        if not elements:
            continue
        content = structured_text(elements)
        if len(content) > SUBSTANTIAL_CONTENT_LENGTH:
            break
    return content


def extract_tags(soup: BeautifulSoup, selector: Optional[str] = None) -> Optional[List[str]]:
    for tag_selector in ([selector] if selector else TAG_SELECTORS):
        try:
            elements = soup.select(tag_selector)
        except SELECTOR_ERRORS as e:
            logger.debug(f"Tag selector skipped: {e}")
            continue
        tags: List[str] = []
        for element in elements:
            text = element.get_text().strip()
            if text:
                tags.append(text)
            elif element.get("content"):
                tags.extend(part.strip() for part in element["content"].split(","))
        tags = [t for t in tags if t]
        if tags:
            return tags
    return None


def generate_summary(content: str) -> str:
    """First three sentences of ``content`` longer than 10 characters."""
    sentences = [s.strip() for s in re.split(r"[.!?]+", content) if len(s.strip()) > 10]
    return ". ".join(sentences[:3]) + "."


def extract(raw_html: str, selectors: Optional[SourceSelectors] = None) -> ExtractedPage:
    """Turn raw markup into title, cleaned body text and metadata."""
    selectors = selectors or SourceSelectors()

    # Metadata is read before content extraction mutates the tree
    soup = BeautifulSoup(raw_html or "", "html.parser")

    title_strategies = [first_value(selectors.title)] if selectors.title else TITLE_STRATEGIES
    title = run_strategies(soup, title_strategies) or ""

    author_strategies = [first_value(selectors.author, ("content",))] if selectors.author else AUTHOR_STRATEGIES
    author = run_strategies(soup, author_strategies)

    date_strategies = [first_value(selectors.date, ("datetime", "content"))] if selectors.date else DATE_STRATEGIES
    published_date = run_strategies(soup, date_strategies)

    tags = extract_tags(soup, selectors.tags)

    content = extract_content(soup, selectors.content)
    summary = generate_summary(content) if len(content) > SUMMARY_THRESHOLD else None

    return ExtractedPage(
        title=normalize_whitespace(title),
        content=content,
        metadata=DocumentMetadata(
            author=author,
            published_date=published_date,
            tags=tags,
            summary=summary,
        ),
    )
