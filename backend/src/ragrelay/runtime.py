"""Builds the long-lived services from settings."""
from __future__ import annotations

import logging
from dataclasses import dataclass

from .config import AppSettings
from .embeddings import EmbeddingResolver
from .graph import RequestOrchestrator
from .ingestion import IngestionPipeline
from .llm import InferenceDispatcher
from .prompt import PromptAssembler
from .retrieval import RetrievalCoordinator
from .store import ContextStore, KeyValueStore
from .vector_index import ChromaVectorIndex, VectorIndex

logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Runtime:
    store: ContextStore
    resolver: EmbeddingResolver
    index: VectorIndex | None
    dispatcher: InferenceDispatcher
    orchestrator: RequestOrchestrator
    ingestion: IngestionPipeline

    async def aclose(self) -> None:
        await self.dispatcher.aclose()
        self.store.kv.close()


def build_runtime(
    settings: AppSettings,
    *,
    store: ContextStore | None = None,
    resolver: EmbeddingResolver | None = None,
    index: VectorIndex | None = None,
    dispatcher: InferenceDispatcher | None = None,
) -> Runtime:
    """Wire the pipeline; missing embedding configuration fails here, not per request."""

    store = store or ContextStore(KeyValueStore(settings.paths.database_path))
    resolver = resolver or EmbeddingResolver.from_settings(settings)
    resolver.validate()
    if index is None and settings.index.address:
        index = ChromaVectorIndex(settings.index.address, settings.index.collection)
    if index is None:
        logger.warning("No vector index configured; queries will run without retrieved context")
    dispatcher = dispatcher or InferenceDispatcher.from_settings(settings)

    orchestrator = RequestOrchestrator(
        resolver,
        RetrievalCoordinator(index, store, tie_break=settings.rag.tie_break),
        PromptAssembler(),
        dispatcher,
        top_k=settings.rag.top_k,
        min_score=settings.rag.min_score,
        prompt_budget=settings.rag.prompt_budget_chars,
        timeout=settings.request.timeout_seconds,
    )
    ingestion = IngestionPipeline(
        store,
        resolver,
        index,
        chunk_size=settings.rag.chunk_size_chars,
        chunk_overlap=settings.rag.chunk_overlap_chars,
    )
    return Runtime(
        store=store,
        resolver=resolver,
        index=index,
        dispatcher=dispatcher,
        orchestrator=orchestrator,
        ingestion=ingestion,
    )
