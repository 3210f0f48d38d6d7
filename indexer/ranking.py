"""Relevance scoring shared by every search stage.

Scores are an internal ordering key only; ``rank`` returns the documents
themselves, never the score.
"""

import re
from datetime import datetime, timezone
from enum import Enum
from typing import Iterable, List, Optional

from .models import Document, DocumentType


class SearchStage(str, Enum):
    EXACT = "exact"
    SEMANTIC = "semantic"
    FUZZY = "fuzzy"
    TITLE = "title"
    GENERATIVE = "generative"
    RECENCY = "recency"
    NONE = "none"


STAGE_BASE_SCORES = {
    SearchStage.EXACT: 100,
    SearchStage.SEMANTIC: 80,
    SearchStage.TITLE: 70,
    SearchStage.FUZZY: 50,
}

TITLE_TERM_SCORE = 30
TITLE_FULL_QUERY_BONUS = 20
CONTENT_OCCURRENCE_SCORE = 5
CONTENT_TERM_CAP = 25
RECENCY_WINDOW_DAYS = 20
URL_TERM_SCORE = 10
TYPE_BONUS = {DocumentType.NEWS: 5, DocumentType.PRIVATE: 3}

MAX_KEY_TERMS = 8
MAX_PHRASES = 3
MAX_FUZZY_WORDS = 5
DEFAULT_LIMIT = 10

STOP_WORDS = frozenset("""
the a an and or but in on at to for of with by is are was were be been being
have has had do does did will would could should may might can this that these
those i you he she it we they me him her us them what when where why how who
which whose whom get got getting want wanted need needed like liked see saw
seen look looked find found search searched show showed tell told say said know
knew think thought make made take took come came go went gone here there now
then today yesterday tomorrow good bad big small new old first last next
previous some any all every each many much few several very really quite just
only even still also too as well so because since while during before after
until from into through above below up down out off over under again further
once
""".split())


def extract_key_terms(query: str) -> List[str]:
    """Up to 8 distinct non-stop-words longer than 2 chars, longest first.

    Ties keep the order in which the words first occur in the query.
    """
    cleaned = re.sub(r"[^\w\s]", " ", query.lower())
    words = [w for w in cleaned.split() if len(w) > 2 and w not in STOP_WORDS]
    unique = list(dict.fromkeys(words))
    unique.sort(key=lambda w: (-len(w), cleaned.find(w)))
    return unique[:MAX_KEY_TERMS]


def extract_phrases(query: str) -> List[str]:
    """First three contiguous 2-4 word windows longer than 3 characters."""
    words = query.split()
    phrases = []
    for i in range(len(words) - 1):
        for size in range(2, 5):
            if i + size > len(words):
                break
            phrase = " ".join(words[i:i + size])
            if len(phrase) > 3:
                phrases.append(phrase)
    return phrases[:MAX_PHRASES]


def fuzzy_words(query: str) -> List[str]:
    return [w for w in query.lower().split() if len(w) > 2][:MAX_FUZZY_WORDS]


def prefix_of(word: str) -> str:
    """Word minus its last character, but never shorter than 3 characters."""
    return word[:max(3, len(word) - 1)]


def _age_in_days(timestamp: datetime, now: datetime) -> float:
    if timestamp.tzinfo is None:
        timestamp = timestamp.replace(tzinfo=timezone.utc)
    return (now - timestamp).total_seconds() / 86400


def score_document(document: Document, query: str, stage: SearchStage,
                   key_terms: Optional[List[str]] = None,
                   now: Optional[datetime] = None) -> float:
    terms = extract_key_terms(query) if key_terms is None else key_terms
    now = now or datetime.now(timezone.utc)
    query_lower = query.lower()
    title = (document.title or "").lower()
    content = (document.content or "").lower()
    url = (document.url or "").lower()

    score = float(STAGE_BASE_SCORES.get(SearchStage(stage), 0))

    for term in terms:
        if term in title:
            score += TITLE_TERM_SCORE
            if query_lower in title:
                score += TITLE_FULL_QUERY_BONUS

    for term in terms:
        score += min(content.count(term) * CONTENT_OCCURRENCE_SCORE, CONTENT_TERM_CAP)

    score += max(0.0, RECENCY_WINDOW_DAYS - _age_in_days(document.timestamp, now))

    score += TYPE_BONUS.get(DocumentType(document.type), 0)

    for term in terms:
        if term in url:
            score += URL_TERM_SCORE

    return score


def rank(documents: Iterable[Document], query: str, stage: SearchStage,
         limit: int = DEFAULT_LIMIT, now: Optional[datetime] = None) -> List[Document]:
    """Order candidates by descending score and keep the top ``limit``."""
    candidates = list(documents)
    if not candidates:
        return []
    terms = extract_key_terms(query)
    now = now or datetime.now(timezone.utc)
    scored = [(score_document(doc, query, stage, terms, now), doc) for doc in candidates]
    scored.sort(key=lambda pair: pair[0], reverse=True)
    return [doc for _, doc in scored[:limit]]
