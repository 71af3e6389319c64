"""
Document retrieval tool exposed to the agent.

Provides:
- RetrievedPassage: One passage handed to the model
- RetrievalTool: Filtered, de-duplicated search over a PassageIndex
- IsoContextRetrieverInput: Arguments of the retriever tool call
- ISO_CONTEXT_RETRIEVER_SCHEMA: Tool schema bound to the chat model
"""

from dataclasses import dataclass
from typing import List

from langchain_core.utils.function_calling import convert_to_openai_tool
from pydantic import BaseModel, ConfigDict, Field

from iso_assistant.config import (
    RETRIEVER_FETCH_K,
    RETRIEVER_K,
    RETRIEVER_MIN_SIMILARITY,
    RETRIEVER_TOOL_NAME,
)
from iso_assistant.errors import ToolError
from iso_assistant.logging_config import get_logger
from iso_assistant.vector_store import PassageIndex, passage_source

logger = get_logger(__name__)


@dataclass(frozen=True)
class RetrievedPassage:
    source_url: str
    text: str
    content_type: str
    score: float


class RetrievalTool:
    """
    Searches the corpus for passages relevant to a query.

    Results are best first, never below the similarity floor and never
    contain two passages from the same source url.
    """

    def __init__(
        self,
        index: PassageIndex,
        fetch_k: int = RETRIEVER_FETCH_K,
        min_similarity: float = RETRIEVER_MIN_SIMILARITY,
    ) -> None:
        self.index = index
        self.fetch_k = fetch_k
        self.min_similarity = min_similarity

    async def search(self, query: str, k: int = RETRIEVER_K) -> List[RetrievedPassage]:
        """
        Args:
            query: Free-text search query
            k: Maximum passages to return (>= 1)

        Returns:
            Up to k passages, highest score first. Empty when nothing clears the floor.

        Raises:
            ValueError: k < 1
            ToolError: The index failed
        """
        if k < 1:
            raise ValueError(f"k must be >= 1, got {k}")

        try:
            candidates = await self.index.similarity_search_with_score(query, max(k, self.fetch_k))
        except Exception as e:
            logger.warning("retrieval_index_failed", query=query, error=str(e))
            raise ToolError(f"Passage index unavailable: {e}") from e

        passages = []
        for doc, score in candidates:
            if score < self.min_similarity:
                continue
            source_url = passage_source(doc.metadata)
            if not source_url:
                continue
            passages.append(RetrievedPassage(
                source_url=source_url,
                text=doc.page_content,
                content_type=doc.metadata.get("content_type", "text"),
                score=score,
            ))

        # sorted() is stable, so equal scores keep index order
        passages = sorted(passages, key=lambda p: p.score, reverse=True)

        seen = set()
        unique: List[RetrievedPassage] = []
        for passage in passages:
            if passage.source_url in seen:
                continue
            seen.add(passage.source_url)
            unique.append(passage)

        logger.info(
            "retrieval_complete",
            query=query,
            candidates=len(candidates),
            returned=min(len(unique), k),
        )
        return unique[:k]


def format_passages(passages: List[RetrievedPassage]) -> str:
    """Render passages for a ToolMessage, one block per source."""
    blocks = []
    for i, passage in enumerate(passages, 1):
        blocks.append(
            f"[{i}] Source: {passage.source_url}\n"
            f"Type: {passage.content_type}\n"
            f"{passage.text}"
        )
    return "\n\n".join(blocks)


class IsoContextRetrieverInput(BaseModel):
    """Searches and returns excerpts from the ISO NE Corpus."""

    model_config = ConfigDict(title=RETRIEVER_TOOL_NAME, str_strip_whitespace=True)

    query: str = Field(min_length=1, description="Search terms for the ISO New England corpus")


# Bound to the chat model; searches themselves run through RetrievalTool
ISO_CONTEXT_RETRIEVER_SCHEMA = convert_to_openai_tool(IsoContextRetrieverInput)
