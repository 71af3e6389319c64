"""
PostgreSQL/pgvector passage index for the ISO New England corpus.

Provides:
- PassageIndex: Minimal interface the retrieval tool searches
- PgVectorPassageIndex: Cosine similarity search over document_chunks
- InMemoryPassageIndex: Process-local index for development without a database
"""

from typing import List, Optional, Protocol, Tuple

from langchain_core.documents import Document
from langchain_core.embeddings import Embeddings
from langchain_core.vectorstores import InMemoryVectorStore

from iso_assistant.database import Database
from iso_assistant.logging_config import get_logger

logger = get_logger(__name__)


class PassageIndex(Protocol):
    async def similarity_search_with_score(
        self, query: str, k: int
    ) -> List[Tuple[Document, float]]:
        ...


def format_embedding(embedding: List[float]) -> str:
    """Render an embedding as a pgvector literal."""
    return "[" + ",".join(str(float(e)) for e in embedding) + "]"


class PgVectorPassageIndex:
    """
    Vector similarity search over ingested document chunks.

    Scores are cosine similarity (1 - cosine distance), higher is better.
    Equal scores keep insertion order (document, then chunk index).

    Attributes:
        embeddings: Embeddings model used for query vectors (OllamaEmbeddings)
        collection_id: Collection the ingestion pipeline filled
        database: Shared Database whose pool serves the queries
    """

    def __init__(
        self,
        embeddings: Embeddings,
        collection_id: str,
        database: Database,
    ) -> None:
        self.embeddings = embeddings
        self.collection_id = collection_id
        self.database = database

    async def similarity_search_with_score(
        self, query: str, k: int
    ) -> List[Tuple[Document, float]]:
        """
        Return up to k chunks most similar to the query.

        Raises:
            Exception: Embedding or database failures propagate to the caller
        """
        query_embedding: List[float] = await self.embeddings.aembed_query(query)
        embedding_str = format_embedding(query_embedding)

        async with self.database.connection() as conn:
            cur = await conn.execute(
                """
                SELECT
                    dc.content,
                    d.metadata,
                    1 - (dc.embedding <=> %s::vector) AS similarity
                FROM document_chunks dc
                JOIN documents d ON dc.document_id = d.id
                WHERE d.collection_id = %s
                ORDER BY dc.embedding <=> %s::vector, d.created_at, dc.chunk_index
                LIMIT %s
                """,
                (embedding_str, self.collection_id, embedding_str, k),
            )
            rows = await cur.fetchall()

        results: List[Tuple[Document, float]] = []
        for row in rows:
            doc = Document(page_content=row["content"], metadata=row["metadata"] or {})
            results.append((doc, float(row["similarity"])))

        logger.debug("vector_search_complete", candidates=len(results), k=k)
        return results


def passage_source(metadata: dict) -> Optional[str]:
    """Source url of an ingested chunk (ingestion writes `url` or `source`)."""
    return metadata.get("url") or metadata.get("source")


class InMemoryPassageIndex:
    """
    Passage index backed by LangChain's InMemoryVectorStore.

    Used with STORAGE_BACKEND=memory; starts empty until documents are added.
    """

    def __init__(self, embeddings: Embeddings) -> None:
        self.store = InMemoryVectorStore(embeddings)

    async def add_documents(self, documents: List[Document]) -> List[str]:
        return await self.store.aadd_documents(documents)

    async def similarity_search_with_score(
        self, query: str, k: int
    ) -> List[Tuple[Document, float]]:
        if not self.store.store:
            return []
        return await self.store.asimilarity_search_with_score(query, k=k)
