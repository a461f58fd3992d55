"""Vector index capability backed by a Chroma server."""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from typing import Any, Protocol
from urllib.parse import urlsplit

from .errors import RetrievalUnavailable
from .models import IndexHit

logger = logging.getLogger(__name__)


class VectorIndex(Protocol):
    async def upsert(self, id: str, vector: Sequence[float], payload: dict[str, Any]) -> None: ...

    async def query(self, vector: Sequence[float], top_k: int) -> list[IndexHit]: ...

    async def delete_document(self, document_id: str) -> None: ...


def _clean_payload(raw: dict[str, Any] | None) -> dict[str, Any]:
    allowed_types = (str, int, float, bool)
    cleaned: dict[str, Any] = {}
    if not raw:
        return cleaned
    for key, value in raw.items():
        if isinstance(value, allowed_types):
            cleaned[key] = value
    return cleaned


class ChromaVectorIndex:
    """Stores span vectors by id, with the owning document id in the payload.

    The collection uses cosine space, so relevance is ``1 - distance``.
    """

    def __init__(self, address: str, collection_name: str = "document_chunks", client: Any | None = None) -> None:
        self.address = address
        self.collection_name = collection_name
        self._client = client
        self._collection: Any | None = None

    def _get_collection(self) -> Any:
        if self._collection is not None:
            return self._collection
        if self._client is None:
            import chromadb

            parts = urlsplit(self.address if "://" in self.address else f"http://{self.address}")
            self._client = chromadb.HttpClient(
                host=parts.hostname or "localhost",
                port=parts.port or 8000,
                ssl=parts.scheme == "https",
            )
        self._collection = self._client.get_or_create_collection(
            name=self.collection_name,
            metadata={"hnsw:space": "cosine"},
        )
        return self._collection

    async def _call(self, operation: str, fn: Any, *args: Any, **kwargs: Any) -> Any:
        def run() -> Any:
            return fn(self._get_collection(), *args, **kwargs)

        try:
            return await asyncio.to_thread(run)
        except Exception as exc:  # noqa: BLE001 - capability boundary
            logger.warning("Vector index %s at %s failed: %s", operation, self.address, exc)
            raise RetrievalUnavailable(f"vector index {operation} failed: {exc}") from exc

    async def upsert(self, id: str, vector: Sequence[float], payload: dict[str, Any]) -> None:
        await self._call(
            "upsert",
            lambda collection: collection.upsert(
                ids=[id],
                embeddings=[list(vector)],
                metadatas=[_clean_payload(payload)],
            ),
        )

    async def query(self, vector: Sequence[float], top_k: int) -> list[IndexHit]:
        response = await self._call(
            "query",
            lambda collection: collection.query(
                query_embeddings=[list(vector)],
                n_results=top_k,
                include=["metadatas", "distances"],
            ),
        )
        ids = (response.get("ids") or [[]])[0]
        distances = (response.get("distances") or [[]])[0]
        metadatas = (response.get("metadatas") or [[]])[0] or [{}] * len(ids)
        return [
            IndexHit(id=hit_id, score=1.0 - float(distance), payload=dict(metadata or {}))
            for hit_id, distance, metadata in zip(ids, distances, metadatas, strict=True)
        ]

    async def delete_document(self, document_id: str) -> None:
        await self._call("delete", lambda collection: collection.delete(where={"document_id": document_id}))
