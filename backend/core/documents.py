"""Qdrant-backed document chunk store.

The CMS indexing hooks own the collection contents; this module only reads.
Each point is one chunk of an article or book with payload
`{chunk_id, document_id, title, slug, type, chunk_index, content}`.
Degrades to "no sources" when Qdrant is unreachable.
"""

import os

import structlog
from qdrant_client import QdrantClient
from qdrant_client.http import models

from backend.api.events import Source

logger = structlog.get_logger(__name__)

EXCERPT_CHARS = 200
VECTOR_SIZE = 3072


class DocumentStoreError(Exception):
    pass


class DocumentStore:
    """Wraps QdrantClient with collection setup and graceful degradation."""

    def __init__(self):
        self._url = os.environ.get("QDRANT_URL")
        self._api_key = os.environ.get("QDRANT_API_KEY")
        self.collection = os.environ.get("DOCUMENTS_COLLECTION", "document_chunks")
        self._client = None

        if not self._url:
            logger.warning("documents.no_url")
            return

        try:
            self._client = QdrantClient(url=self._url, api_key=self._api_key, timeout=10)
            self._ensure_collection()
            logger.info("documents.connected", collection=self.collection)
        except Exception as e:
            logger.error("documents.init_failed", error=str(e))
            self._client = None

    def _ensure_collection(self):
        """Create the chunk collection and its payload indexes if missing."""
        if self._client.collection_exists(self.collection):
            return

        logger.info("documents.create_collection", name=self.collection)
        self._client.create_collection(
            collection_name=self.collection,
            vectors_config=models.VectorParams(size=VECTOR_SIZE, distance=models.Distance.COSINE),
        )
        for field_name in ("document_id", "chunk_id"):
            self._client.create_payload_index(
                collection_name=self.collection,
                field_name=field_name,
                field_schema=models.PayloadSchemaType.KEYWORD,
            )

    def is_healthy(self) -> bool:
        return self._client is not None

    def search_chunks(
        self,
        embedding: list[float],
        limit: int = 5,
        document_ids: list[str] | None = None,
    ) -> list[Source]:
        """Top-k chunks for a query vector, optionally restricted to some documents.

        Args:
            embedding: Query vector.
            limit: Maximum number of chunks.
            document_ids: If given, only chunks of these documents are considered.

        Returns:
            Sources ordered by relevance, empty when the store is unavailable.
        """
        if not self._client:
            return []

        query_filter = None
        if document_ids:
            query_filter = models.Filter(
                must=[
                    models.FieldCondition(
                        key="document_id",
                        match=models.MatchAny(any=[str(d) for d in document_ids]),
                    )
                ]
            )

        try:
            response = self._client.query_points(
                collection_name=self.collection,
                query=embedding,
                limit=limit,
                query_filter=query_filter,
            )
            points = response.points if response else []
            return [_point_to_source(p.id, p.score, p.payload or {}) for p in points]

        except Exception as e:
            logger.error("documents.search_err", error=str(e))
            return []

    def get_chunk_content(self, chunk_id: str) -> str | None:
        """Full text of one chunk, for lazy hydration of a source.

        Raises:
            DocumentStoreError: If the store is unavailable or the lookup fails.
        """
        if not self._client:
            raise DocumentStoreError("Document store is not configured.")

        try:
            points, _ = self._client.scroll(
                collection_name=self.collection,
                scroll_filter=models.Filter(
                    must=[models.FieldCondition(key="chunk_id", match=models.MatchValue(value=chunk_id))]
                ),
                limit=1,
                with_payload=True,
            )
        except Exception as e:
            logger.error("documents.chunk_err", chunk_id=chunk_id, error=str(e))
            raise DocumentStoreError(f"Chunk lookup failed: {e}")

        if not points:
            return None
        return (points[0].payload or {}).get("content", "")


def _point_to_source(point_id, score: float, payload: dict) -> Source:
    content = payload.get("content", "")
    return Source(
        id=str(payload.get("chunk_id", point_id)),
        title=payload.get("title", ""),
        slug=payload.get("slug", ""),
        type=payload.get("type", "article"),
        chunk_index=payload.get("chunk_index", 0),
        relevance_score=score,
        content=content,
        excerpt=content[:EXCERPT_CHARS] if content else None,
    )
