"""Same-origin link discovery.

Anchors are resolved against the origin of the page they were found on.
Only links on that origin survive, minus a fixed set of non-content URLs
(static assets, in-page anchors, script/mail/phone schemes, login/admin/feed
style endpoints and anything under ``/api/``).
"""

import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, Iterable, List, Optional, Set, Tuple
from urllib.parse import urljoin, urlsplit, urlunsplit

from bs4 import BeautifulSoup

logger = logging.getLogger(__name__)

EXCLUDED_HREF_PREFIXES = ("#", "javascript:", "mailto:", "tel:")

EXCLUDED_URL_PATTERNS = [
    re.compile(r"\.(pdf|doc|docx|xls|xlsx|ppt|pptx|zip|rar|jpg|jpeg|png|gif|svg|ico|css|js)$", re.IGNORECASE),
    re.compile(r"/login$"),
    re.compile(r"/logout$"),
    re.compile(r"/admin$"),
    re.compile(r"/api/"),
    re.compile(r"/search$"),
    re.compile(r"/feed$"),
    re.compile(r"/rss$"),
    re.compile(r"/sitemap$"),
    re.compile(r"/robots\.txt$"),
]


class LinkKind(str, Enum):
    INTERNAL = "internal"
    EXTERNAL = "external"
    EXCLUDED = "excluded"
    INVALID = "invalid"


@dataclass
class LinkReport:
    """Per-page breakdown of anchors, for debugging discovery."""
    total_links: int = 0
    internal_links: List[str] = field(default_factory=list)
    external_links: List[str] = field(default_factory=list)
    excluded_links: List[str] = field(default_factory=list)
    errors: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, object]:
        return {
            "totalLinks": self.total_links,
            "internalLinks": self.internal_links,
            "externalLinks": self.external_links,
            "excludedLinks": self.excluded_links,
            "errors": self.errors,
        }


def origin_of(url: str) -> str:
    parts = urlsplit(url)
    return urlunsplit((parts.scheme, parts.netloc, "/", "", ""))


def _same_origin(url: str, origin: str) -> bool:
    a, b = urlsplit(url), urlsplit(origin)
    return (a.scheme.lower(), a.netloc.lower()) == (b.scheme.lower(), b.netloc.lower())


def is_excluded(href: str, absolute_url: str) -> bool:
    """True for hrefs that never point at crawlable content."""
    stripped = href.strip().lower()
    if stripped.startswith(EXCLUDED_HREF_PREFIXES):
        return True
    path = urlsplit(absolute_url).path
    return any(pattern.search(path) for pattern in EXCLUDED_URL_PATTERNS)


def classify(href: str, origin: str) -> Tuple[LinkKind, Optional[str]]:
    """Resolve ``href`` against ``origin`` and decide what it is.

    Returns the kind and the absolute URL (fragment removed), or ``None``
    for the URL when the href cannot be parsed.
    """
    href = href.strip()
    if not href:
        return LinkKind.INVALID, None
    try:
        absolute = urljoin(origin, href)
        parts = urlsplit(absolute)
        # Accessing the port validates it
        parts.port
    except ValueError:
        return LinkKind.INVALID, None

    absolute = urlunsplit((parts.scheme, parts.netloc, parts.path or "/", parts.query, ""))
    if is_excluded(href, absolute):
        return LinkKind.EXCLUDED, absolute
    if parts.scheme not in ("http", "https") or not _same_origin(absolute, origin):
        return LinkKind.EXTERNAL, absolute
    return LinkKind.INTERNAL, absolute


def _anchors(raw_html: str) -> Iterable[Tuple[str, str]]:
    soup = BeautifulSoup(raw_html or "", "html.parser")
    for anchor in soup.select("a[href]"):
        yield anchor.get("href", ""), anchor.get_text().strip()


def discover(source_url: str, raw_html: str) -> Set[str]:
    """Return the set of same-origin content URLs linked from ``raw_html``."""
    try:
        origin = origin_of(source_url)
    except ValueError:
        logger.warning(f"Cannot discover links for invalid source URL {source_url}")
        return set()

    found: Set[str] = set()
    for href, text in _anchors(raw_html):
        kind, absolute = classify(href, origin)
        if kind is LinkKind.INTERNAL:
            found.add(absolute)
            logger.debug(f"Internal link: {absolute} ({text})")
        elif kind is LinkKind.INVALID:
            logger.debug(f"Invalid URL skipped: {href}")
        else:
            logger.debug(f"{kind.value.capitalize()} link: {absolute} ({text})")

    logger.info(f"Extracted {len(found)} internal links from {source_url}")
    return found


def build_link_report(source_url: str, raw_html: str) -> LinkReport:
    """Classify every anchor on a page as internal/external/excluded/invalid."""
    report = LinkReport()
    origin = origin_of(source_url)
    for href, text in _anchors(raw_html):
        report.total_links += 1
        kind, absolute = classify(href, origin)
        if kind is LinkKind.INTERNAL:
            report.internal_links.append(f"{absolute} ({text})")
        elif kind is LinkKind.EXTERNAL:
            report.external_links.append(f"{absolute} ({text})")
        elif kind is LinkKind.EXCLUDED:
            report.excluded_links.append(f"{absolute} ({text})")
        else:
            report.errors.append(f"Invalid URL: {href}")
    return report
