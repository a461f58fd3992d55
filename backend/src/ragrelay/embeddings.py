"""Embedding resolution over a local model or a remote embedding service."""
from __future__ import annotations

import asyncio
import logging
from collections.abc import Sequence
from pathlib import Path
from typing import Protocol

from langchain_core.embeddings import Embeddings

from .cache import EmbeddingCache, cache_key
from .config import AppSettings
from .errors import EmbeddingTimeout, EmbeddingUnavailable, RagError
from .models import EmbeddingVector
from .observability import traced_span

logger = logging.getLogger(__name__)


class EmbeddingCapability(Protocol):
    name: str
    model_id: str

    async def embed(self, text: str) -> Sequence[float]: ...


class LangChainEmbeddingCapability:
    """Adapts any LangChain ``Embeddings`` implementation to the resolver."""

    def __init__(self, name: str, model_id: str, embedder: Embeddings) -> None:
        self.name = name
        self.model_id = model_id
        self.embedder = embedder

    async def embed(self, text: str) -> Sequence[float]:
        return await self.embedder.aembed_query(text)


def load_local_capability(model_path: Path) -> LangChainEmbeddingCapability:
    from langchain_community.embeddings import HuggingFaceEmbeddings

    if not model_path.exists():
        raise EmbeddingUnavailable(f"local embedding model not found at {model_path}")
    embedder = HuggingFaceEmbeddings(
        model_name=str(model_path),
        encode_kwargs={"normalize_embeddings": True},
    )
    logger.info("Loaded local embedding model from %s", model_path)
    return LangChainEmbeddingCapability("local", f"local:{model_path.name}", embedder)


def load_remote_capability(settings: AppSettings) -> LangChainEmbeddingCapability:
    model = settings.model
    if model.embed_provider == "openai":
        from langchain_openai import OpenAIEmbeddings

        kwargs = {"model": model.embed_model}
        if model.embed_base_url or model.openai_api_base:
            kwargs["base_url"] = model.embed_base_url or model.openai_api_base
        embedder: Embeddings = OpenAIEmbeddings(**kwargs)
    else:
        from langchain_ollama import OllamaEmbeddings

        embedder = OllamaEmbeddings(model=model.embed_model, base_url=model.embed_base_url)
    logger.info("Using remote %s embeddings model %s", model.embed_provider, model.embed_model)
    return LangChainEmbeddingCapability("remote", f"{model.embed_provider}:{model.embed_model}", embedder)


def build_capabilities(settings: AppSettings) -> list[EmbeddingCapability]:
    """Local model first (when configured), then the remote service."""

    capabilities: list[EmbeddingCapability] = []
    if settings.model.embedder_path is not None:
        capabilities.append(load_local_capability(settings.model.embedder_path))
    if settings.model.embed_base_url:
        capabilities.append(load_remote_capability(settings))
    return capabilities


class EmbeddingResolver:
    """Resolves text to a validated vector, consulting the shared cache first."""

    def __init__(
        self,
        capabilities: Sequence[EmbeddingCapability],
        cache: EmbeddingCache,
        timeout: float,
        dimension: int | None = None,
    ) -> None:
        self.capabilities = list(capabilities)
        self.cache = cache
        self.timeout = timeout
        self.expected_dimension = dimension
        self._pinned_dimensions: dict[str, int] = {}

    @classmethod
    def from_settings(cls, settings: AppSettings) -> EmbeddingResolver:
        resolver = cls(
            capabilities=build_capabilities(settings),
            cache=EmbeddingCache(settings.cache.embedding_capacity),
            timeout=settings.cache.embedding_timeout_seconds,
            dimension=settings.model.embedding_dimension,
        )
        resolver.validate()
        return resolver

    def validate(self) -> None:
        if not self.capabilities:
            raise EmbeddingUnavailable(
                "no embedding capability configured; set model.embedder_path or model.embed_base_url"
            )

    def select(self, model_hint: str | None = None) -> EmbeddingCapability:
        self.validate()
        if model_hint:
            for capability in self.capabilities:
                if model_hint in (capability.name, capability.model_id):
                    return capability
            logger.debug("Unknown embedding model hint %s; using default", model_hint)
        return self.capabilities[0]

    async def resolve(self, text: str, model_hint: str | None = None) -> EmbeddingVector:
        capability = self.select(model_hint)
        key = cache_key(text, capability.model_id)
        try:
            return await asyncio.wait_for(
                self.cache.get_or_load(key, lambda: self._compute(capability, text)),
                self.timeout,
            )
        except asyncio.TimeoutError as exc:
            raise EmbeddingTimeout(
                f"embedding with {capability.model_id} exceeded {self.timeout:.1f}s"
            ) from exc

    async def _compute(self, capability: EmbeddingCapability, text: str) -> EmbeddingVector:
        with traced_span("embedding"):
            try:
                raw = await capability.embed(text)
            except RagError:
                raise
            except Exception as exc:  # noqa: BLE001 - capability boundary
                raise EmbeddingUnavailable(f"{capability.model_id} failed: {exc}") from exc
        vector = EmbeddingVector(values=tuple(float(value) for value in raw), model_id=capability.model_id)
        self._check_dimension(vector)
        return vector

    def _check_dimension(self, vector: EmbeddingVector) -> None:
        if vector.dimension == 0:
            raise EmbeddingUnavailable(f"{vector.model_id} returned an empty vector")
        expected = self.expected_dimension or self._pinned_dimensions.setdefault(vector.model_id, vector.dimension)
        if vector.dimension != expected:
            raise EmbeddingUnavailable(
                f"{vector.model_id} returned dimension {vector.dimension}, expected {expected}"
            )
