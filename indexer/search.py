"""Layered search over the document store.

Stages run in order (exact phrase, semantic/keyword, fuzzy, title-only) and
the first one yielding candidates wins. Each stage ranks its own
candidates with the shared ranker. When every stage comes back empty a
broader retry without the type filter runs once, and after that the
optional generative fallback gets a small recent sample of the corpus.
"""

import logging
import time
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Protocol, Sequence

from observability.prometheus_metrics import record_error, record_search_metrics

from .models import Document, DocumentType
from .query import Contains, DocumentFilter, all_of, any_of
from .ranking import (
    SearchStage,
    extract_key_terms,
    extract_phrases,
    fuzzy_words,
    prefix_of,
    rank,
)
from .sqlite_adapter import SQLiteAdapter

logger = logging.getLogger(__name__)

STAGE_LIMIT = 10
SEMANTIC_LIMIT = 15
MIN_TEXT_SEARCH_RESULTS = 3
FALLBACK_SAMPLE_SIZE = 20
FALLBACK_DEFAULT_PICKS = 3
CONTEXT_CONTENT_CHARS = 1000

NEWS_KEYWORDS = [
    "nowiny", "news", "nachrichten", "aktualności", "aktualnosci", "novinky",
    "novosti", "latest", "recent", "update", "breaking", "headlines",
    "schlagzeilen",
]

PRIVATE_KEYWORDS = [
    "private", "privat", "internal", "intern", "confidential", "vertraulich",
    "restricted", "zugangsbeschränkt", "login", "authenticated", "protected",
]


class GenerativeRanker(Protocol):
    async def rank(self, query: str, candidates: Sequence[Document]) -> List[str]:
        ...


@dataclass
class SearchOutcome:
    documents: List[Document]
    stage: SearchStage
    broadened: bool = False


@dataclass
class SearchPage:
    results: List[Document]
    total: int
    stage: Optional[SearchStage]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "results": [doc.public_dict() for doc in self.results],
            "count": len(self.results),
            "total": self.total,
            "stage": self.stage.value if self.stage else None,
        }


def _dedupe(documents: Sequence[Document]) -> List[Document]:
    seen = set()
    unique = []
    for doc in documents:
        key = doc.id if doc.id is not None else doc.url
        if key not in seen:
            seen.add(key)
            unique.append(doc)
    return unique


class SearchEngine:
    """Four-stage search with broader retry and generative last resort."""

    def __init__(self, store: SQLiteAdapter, fallback: Optional[GenerativeRanker] = None):
        self.store = store
        self.fallback = fallback

    async def exact_phrase_stage(self, query: str, doc_filter: DocumentFilter) -> List[Document]:
        phrases = extract_phrases(query)
        if not phrases:
            return []
        match = all_of([Contains(phrase) for phrase in phrases])
        results = await self.store.find_documents(doc_filter.with_match(match), limit=STAGE_LIMIT)
        return rank(results, query, SearchStage.EXACT)

    async def semantic_stage(self, query: str, doc_filter: DocumentFilter) -> List[Document]:
        terms = extract_key_terms(query)
        if not terms:
            return []
        results = await self.store.text_search(terms, doc_filter, limit=SEMANTIC_LIMIT)
        if len(results) < MIN_TEXT_SEARCH_RESULTS:
            logger.debug("Text search returned few results, using substring match")
            match = any_of([Contains(term) for term in terms])
            substring_results = await self.store.find_documents(
                doc_filter.with_match(match), limit=SEMANTIC_LIMIT
            )
            results = substring_results or results
        return rank(results, query, SearchStage.SEMANTIC)

    async def fuzzy_stage(self, query: str, doc_filter: DocumentFilter) -> List[Document]:
        words = fuzzy_words(query)
        if not words:
            return []
        strategies = [
            all_of([Contains(word) for word in words]),
            any_of([Contains(word) for word in words]),
            any_of([Contains(prefix_of(word)) for word in words]),
        ]
        candidates: List[Document] = []
        for match in strategies:
            candidates.extend(
                await self.store.find_documents(doc_filter.with_match(match), limit=STAGE_LIMIT)
            )
        return rank(_dedupe(candidates), query, SearchStage.FUZZY)

    async def title_stage(self, query: str, doc_filter: DocumentFilter) -> List[Document]:
        terms = extract_key_terms(query)
        if not terms:
            return []
        match = any_of([Contains(term, fields=("title",)) for term in terms])
        results = await self.store.find_documents(doc_filter.with_match(match), limit=STAGE_LIMIT)
        return rank(results, query, SearchStage.TITLE)

    async def run_stages(self, query: str, doc_filter: DocumentFilter) -> SearchOutcome:
        """Run the four stages in order, stopping at the first non-empty one."""
        stages = [
            (SearchStage.EXACT, self.exact_phrase_stage),
            (SearchStage.SEMANTIC, self.semantic_stage),
            (SearchStage.FUZZY, self.fuzzy_stage),
            (SearchStage.TITLE, self.title_stage),
        ]
        for stage, run in stages:
            try:
                results = await run(query, doc_filter)
            except Exception as e:
                logger.error(f"Error in {stage.value} search: {e}")
                record_error(type(e).__name__, "search")
                continue
            if results:
                logger.info(f"Found {len(results)} results with {stage.value} search")
                return SearchOutcome(results, stage)
        return SearchOutcome([], SearchStage.NONE)

    async def generative_fallback(self, query: str, doc_filter: DocumentFilter) -> SearchOutcome:
        """Let the generative ranker pick from the most recent documents.

        Without a configured ranker, and on provider failures, the first
        three documents by recency are returned instead.
        """
        sample = await self.store.find_documents(doc_filter.with_match(None), limit=FALLBACK_SAMPLE_SIZE)
        if not sample:
            logger.info("No data available for generative search")
            return SearchOutcome([], SearchStage.NONE)

        if self.fallback is None:
            logger.info("No generative fallback configured, using most recent documents")
            return SearchOutcome(sample[:FALLBACK_DEFAULT_PICKS], SearchStage.RECENCY)

        logger.info(f"Using generative fallback to analyze {len(sample)} documents")
        try:
            picked_ids = await self.fallback.rank(query, sample)
        except Exception as e:
            logger.warning(f"Generative fallback failed, using most recent documents: {e}")
            record_error(type(e).__name__, "fallback")
            return SearchOutcome(sample[:FALLBACK_DEFAULT_PICKS], SearchStage.RECENCY)

        wanted = set(picked_ids)
        picked = [doc for doc in sample if str(doc.id) in wanted]
        return SearchOutcome(picked, SearchStage.GENERATIVE if picked else SearchStage.NONE)

    async def search(self, query: str, doc_type: Optional[DocumentType] = None) -> SearchOutcome:
        """Ranked documents (at most 10) relevant to ``query``."""
        start = time.time()
        logger.info(f'Searching for relevant data for query: "{query}"')
        doc_filter = DocumentFilter(is_active=True, type=DocumentType(doc_type) if doc_type else None)

        outcome = await self.run_stages(query, doc_filter)

        if not outcome.documents and doc_filter.type is not None:
            logger.info("No results found, trying broader search...")
            outcome = await self.run_stages(query, doc_filter.without_type())
            outcome.broadened = True

        if not outcome.documents:
            try:
                outcome = await self.generative_fallback(query, doc_filter)
            except Exception as e:
                logger.error(f"Error in generative search: {e}")
                outcome = SearchOutcome([], SearchStage.NONE)

        record_search_metrics(outcome.stage.value, time.time() - start)
        return outcome

    async def search_page(self, query: str, doc_type: Optional[DocumentType] = None,
                          page: int = 1, limit: int = 10) -> SearchPage:
        """Paginated search; an empty query lists active documents newest first."""
        page = max(1, page)
        offset = (page - 1) * limit
        if not query or not query.strip():
            doc_filter = DocumentFilter(is_active=True, type=DocumentType(doc_type) if doc_type else None)
            documents = await self.store.find_documents(doc_filter, limit=limit, skip=offset)
            total = await self.store.count_documents(doc_filter)
            return SearchPage(documents, total, None)

        outcome = await self.search(query, doc_type)
        return SearchPage(outcome.documents[offset:offset + limit], len(outcome.documents), outcome.stage)


def generate_context(documents: Sequence[Document]) -> str:
    """Render retrieved documents as a prompt context block."""
    if not documents:
        return ""

    blocks = []
    for doc in documents:
        content = doc.content[:CONTEXT_CONTENT_CHARS]
        if len(doc.content) > CONTEXT_CONTENT_CHARS:
            content += "..."
        blocks.append(
            f"\nSource: {doc.url}\nTitle: {doc.title}\nType: {DocumentType(doc.type).value}\n"
            f"Content: {content}\nLast Updated: {doc.timestamp.isoformat()}\n---"
        )
    context = "\n".join(blocks)
    return (
        f"Recent information from your data sources:\n{context}\n\n"
        "Please use this information to answer the user's question. If the information "
        "is not relevant, you can ignore it and use your general knowledge."
    )


def is_news_query(message: str) -> bool:
    lowered = message.lower()
    return any(keyword in lowered for keyword in NEWS_KEYWORDS)


def is_private_query(message: str) -> bool:
    lowered = message.lower()
    return any(keyword in lowered for keyword in PRIVATE_KEYWORDS)
