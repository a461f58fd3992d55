"""Similarity retrieval that resolves index hits against the document store."""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Literal

from .errors import NotFound, RetrievalUnavailable
from .models import EmbeddingVector, IndexHit, RetrievedChunk, StoredDocument
from .observability import SOFT_MISSES, traced_span
from .store import ContextStore
from .vector_index import VectorIndex

logger = logging.getLogger(__name__)

TieBreak = Literal["recency", "document_id"]


@dataclass(slots=True)
class RetrievalReport:
    accepted: list[RetrievedChunk] = field(default_factory=list)
    rejected: list[RetrievedChunk] = field(default_factory=list)
    missing: list[str] = field(default_factory=list)


def ranking_key(tie_break: TieBreak):
    """Sort key: descending score, then the configured tie-break."""

    if tie_break == "recency":
        return lambda chunk: (-chunk.score, -chunk.stored_sequence, chunk.chunk_id)
    return lambda chunk: (-chunk.score, chunk.document_id, chunk.chunk_id)


class RetrievalCoordinator:
    """Queries the vector index and hydrates hits from the context store.

    The index holds span ids and offsets only; the store is the source of
    truth for text. Hits whose document was deleted, or re-written since
    the span was indexed, are dropped as soft misses.
    """

    def __init__(self, index: VectorIndex | None, store: ContextStore, tie_break: TieBreak = "recency") -> None:
        self.index = index
        self.store = store
        self.tie_break = tie_break

    @property
    def available(self) -> bool:
        return self.index is not None

    async def retrieve(self, vector: EmbeddingVector, top_k: int, min_score: float) -> list[RetrievedChunk]:
        report = await self.inspect(vector, top_k, min_score)
        return report.accepted

    async def inspect(self, vector: EmbeddingVector, top_k: int, min_score: float) -> RetrievalReport:
        if self.index is None:
            raise RetrievalUnavailable("no vector index configured")
        if top_k <= 0:
            return RetrievalReport()

        with traced_span("retrieval", top_k=top_k):
            hits = await self.index.query(vector.as_list(), top_k)
            resolved = await asyncio.gather(*(self._resolve(hit) for hit in hits))

        report = RetrievalReport()
        for hit, chunk in zip(hits, resolved, strict=True):
            if chunk is None:
                report.missing.append(hit.id)
            elif chunk.score < min_score:
                report.rejected.append(chunk)
            else:
                report.accepted.append(chunk)

        key = ranking_key(self.tie_break)
        report.accepted.sort(key=key)
        report.rejected.sort(key=key)
        del report.accepted[top_k:]
        if report.missing:
            SOFT_MISSES.inc(len(report.missing))
            logger.info("Dropped %d index hits with no matching stored document", len(report.missing))
        return report

    async def _resolve(self, hit: IndexHit) -> RetrievedChunk | None:
        document_id = str(hit.payload.get("document_id") or hit.id)
        try:
            document = await self.store.get(document_id)
        except NotFound:
            logger.debug("Index references missing document %s", document_id)
            return None
        if not _span_is_current(hit, document):
            logger.debug("Index entry %s is stale for document %s", hit.id, document_id)
            return None

        start = int(hit.payload.get("start", 0))
        end = int(hit.payload.get("end", len(document.text)))
        metadata = {**document.metadata, "start": start, "end": end, "revision": document.revision}
        return RetrievedChunk(
            document_id=document_id,
            chunk_id=hit.id,
            text=document.text[start:end],
            score=hit.score,
            metadata=metadata,
            stored_sequence=document.sequence,
        )


def _span_is_current(hit: IndexHit, document: StoredDocument) -> bool:
    indexed_revision = hit.payload.get("revision")
    if indexed_revision is not None and int(indexed_revision) != document.revision:
        return False
    end = hit.payload.get("end")
    return end is None or int(end) <= len(document.text)
