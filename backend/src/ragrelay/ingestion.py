"""Document ingestion: store the text, split it into spans, index the spans."""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from langchain_text_splitters import RecursiveCharacterTextSplitter

from .embeddings import EmbeddingResolver
from .errors import RetrievalUnavailable
from .models import StoredDocument
from .store import ContextStore
from .vector_index import VectorIndex

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Span:
    chunk_id: str
    start: int
    end: int


@dataclass(slots=True)
class IngestResult:
    document: StoredDocument
    spans: list[Span]
    indexed: bool


class IngestionPipeline:
    """Writes documents to the store first, then their span vectors to the index.

    The store is written before the index so the index never points at text
    that was not durably stored. Re-ingesting a document bumps its revision,
    which makes spans left over from the previous revision stale.
    """

    def __init__(
        self,
        store: ContextStore,
        resolver: EmbeddingResolver,
        index: VectorIndex | None,
        chunk_size: int = 600,
        chunk_overlap: int = 120,
    ) -> None:
        self.store = store
        self.resolver = resolver
        self.index = index
        self.splitter = RecursiveCharacterTextSplitter(
            chunk_size=chunk_size,
            chunk_overlap=chunk_overlap,
            separators=["\n\n", "\n", ". ", " "],
            add_start_index=True,
        )

    def split(self, document_id: str, text: str) -> list[Span]:
        """Split text into spans addressed by character offsets."""

        spans: list[Span] = []
        for idx, doc in enumerate(self.splitter.create_documents([text])):
            start = int(doc.metadata.get("start_index", -1))
            if start < 0:
                start = text.find(doc.page_content)
            if start < 0:
                continue
            spans.append(Span(chunk_id=f"{document_id}:{idx}", start=start, end=start + len(doc.page_content)))
        return spans

    async def ingest(self, document_id: str, text: str, metadata: dict[str, Any] | None = None) -> IngestResult:
        document = await self.store.put(document_id, text, metadata)
        spans = self.split(document_id, text)
        if self.index is None:
            logger.info("Stored %s without indexing; no vector index configured", document_id)
            return IngestResult(document=document, spans=spans, indexed=False)

        await self.index.delete_document(document_id)
        for span in spans:
            vector = await self.resolver.resolve(text[span.start : span.end])
            payload = {
                "document_id": document_id,
                "start": span.start,
                "end": span.end,
                "revision": document.revision,
                "model_id": vector.model_id,
            }
            await self.index.upsert(span.chunk_id, vector.as_list(), payload)
        logger.info("Indexed %d spans for document %s (revision %d)", len(spans), document_id, document.revision)
        return IngestResult(document=document, spans=spans, indexed=True)

    async def delete(self, document_id: str) -> None:
        await self.store.delete(document_id)
        if self.index is None:
            return
        try:
            await self.index.delete_document(document_id)
        except RetrievalUnavailable as exc:
            # Leftover spans resolve to NotFound and are dropped at query time.
            logger.warning("Could not remove index entries for %s: %s", document_id, exc)
