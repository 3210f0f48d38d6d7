"""Generative last-resort ranking over a small recent sample of the corpus."""

import logging
from typing import List, Optional, Sequence

from openai import AsyncOpenAI, OpenAIError

from pipelines.errors import FallbackProviderError

from .models import Document

logger = logging.getLogger(__name__)

SUMMARY_CONTENT_CHARS = 500
MAX_PICKS = 3


def build_prompt(query: str, documents: Sequence[Document]) -> str:
    summaries = "\n".join(
        f"\nID: {doc.id}\nTitle: {doc.title}\nType: {doc.type.value}\n"
        f"Content: {doc.content[:SUMMARY_CONTENT_CHARS]}\n---"
        for doc in documents
    )
    return (
        f'\nGiven this query: "{query}"\n\n'
        f"And these data sources:\n{summaries}\n\n"
        f"Please return ONLY the IDs of the {MAX_PICKS} most relevant data sources "
        "for the query, separated by commas. \n"
        'If none are relevant, return "none".\n\n'
        'Response format: id1,id2,id3 or "none"\n'
    )


def parse_answer(answer: Optional[str]) -> List[str]:
    """Split the model's comma-separated ids; ``none`` or empty means no picks."""
    text = (answer or "").strip().strip('"').strip()
    if not text or text.lower() == "none":
        return []
    return [part.strip().strip('"') for part in text.split(",") if part.strip()][:MAX_PICKS]


class OpenAIFallback:
    """Asks a chat model to name the most relevant document ids."""

    def __init__(self, api_key: str, model: str = "gpt-4o-mini", max_tokens: int = 50,
                 client: Optional[AsyncOpenAI] = None):
        self._client = client or AsyncOpenAI(api_key=api_key)
        self.model = model
        self.max_tokens = max_tokens

    async def rank(self, query: str, candidates: Sequence[Document]) -> List[str]:
        """Return up to three document ids chosen from ``candidates``.

        Raises:
            FallbackProviderError: the provider call failed.
        """
        if not candidates:
            return []
        try:
            response = await self._client.chat.completions.create(
                model=self.model,
                messages=[{"role": "user", "content": build_prompt(query, candidates)}],
                max_tokens=self.max_tokens,
            )
        except OpenAIError as e:
            raise FallbackProviderError(f"Generative fallback failed: {e}") from e

        if not response.choices:
            raise FallbackProviderError("Generative fallback returned no choices")
        answer = response.choices[0].message.content
        logger.debug(f"Generative fallback answered {answer!r}")
        return parse_answer(answer)

    async def close(self):
        """Release the provider client's connection pool."""
        await self._client.close()
