"""FastAPI server exposing streaming queries, search and document endpoints."""
from __future__ import annotations

import json
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import asdict
from typing import Any

from fastapi import FastAPI, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse, Response, StreamingResponse
from prometheus_client import CONTENT_TYPE_LATEST, generate_latest
from pydantic import BaseModel, Field
from starlette.background import BackgroundTask

from .config import settings
from .errors import RagError
from .graph import RequestStream
from .models import Query, RetrievedChunk, TokenChunk
from .observability import logger
from .runtime import Runtime, build_runtime


class QueryRequest(BaseModel):
    question: str = Field(..., min_length=1, description="User question")
    request_id: str | None = Field(default=None)
    top_k: int | None = Field(default=None, ge=1)
    min_score: float | None = Field(default=None)
    max_tokens: int | None = Field(default=None, ge=1)
    model_hint: str | None = Field(default=None, description="Embedding capability name or model id")

    def to_query(self) -> Query:
        extra = {"request_id": self.request_id} if self.request_id else {}
        return Query(
            text=self.question,
            top_k=self.top_k,
            min_score=self.min_score,
            max_tokens=self.max_tokens,
            model_hint=self.model_hint,
            **extra,
        )


class DocumentRequest(BaseModel):
    document_id: str = Field(..., min_length=1)
    text: str
    metadata: dict[str, Any] = Field(default_factory=dict)


class ChunkResponse(BaseModel):
    document_id: str
    chunk_id: str
    text: str
    score: float
    metadata: dict[str, Any]


class SearchResponse(BaseModel):
    chunks: list[ChunkResponse]


def _chunk_payload(chunk: RetrievedChunk) -> dict[str, Any]:
    payload = asdict(chunk)
    payload.pop("stored_sequence", None)
    return payload


def _event(kind: str, **fields: Any) -> bytes:
    return (json.dumps({"type": kind, **fields}, ensure_ascii=False) + "\n").encode("utf-8")


async def stream_events(stream: RequestStream, first: TokenChunk | None) -> AsyncIterator[bytes]:
    """NDJSON events: one context event, token events, then done or error."""

    try:
        yield _event(
            "context",
            request_id=stream.request_id,
            degraded=stream.degraded,
            chunks=[_chunk_payload(chunk) for chunk in stream.context],
        )
        if first is not None:
            yield _event("token", text=first.text, sequence=first.sequence)
            async for token in stream:
                yield _event("token", text=token.text, sequence=token.sequence)
        stats = stream.session.stats if stream.session else {}
        yield _event("done", request_id=stream.request_id, stats=stats)
    except RagError as exc:
        yield _event("error", request_id=stream.request_id, **exc.to_dict())
    finally:
        await stream.aclose()


def stream_response(stream: RequestStream, first: TokenChunk | None) -> StreamingResponse:
    # The body may never be iterated if the client leaves early; closing twice is harmless.
    return StreamingResponse(
        stream_events(stream, first),
        media_type="application/x-ndjson",
        background=BackgroundTask(stream.aclose),
    )


def create_app(runtime: Runtime | None = None) -> FastAPI:
    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        owned = app.state.runtime is None
        if owned:
            app.state.runtime = build_runtime(settings)
        logger.info("ragrelay ready (vector index: %s)", app.state.runtime.index is not None)
        yield
        if owned:
            await app.state.runtime.aclose()
            app.state.runtime = None

    app = FastAPI(title="ragrelay", version="0.1.0", lifespan=lifespan)
    app.state.runtime = runtime
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.server.cors_origins,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    @app.exception_handler(RagError)
    async def rag_error_handler(request: Request, exc: RagError) -> JSONResponse:
        logger.warning("%s %s failed: %s", request.method, request.url.path, exc.message)
        return JSONResponse(status_code=exc.status_code, content=exc.to_dict())

    def current(request: Request) -> Runtime:
        return request.app.state.runtime

    @app.get("/health")
    def health(request: Request) -> dict:
        runtime = current(request)
        return {
            "status": "ok",
            "vector_index": runtime.index is not None,
            "embedding_models": [capability.model_id for capability in runtime.resolver.capabilities],
        }

    @app.post("/query")
    async def query(payload: QueryRequest, request: Request) -> StreamingResponse:
        stream = current(request).orchestrator.handle(payload.to_query())
        # Failures before the first token still get a proper HTTP status.
        try:
            first = await stream.__anext__()
        except StopAsyncIteration:
            first = None
        return stream_response(stream, first)

    @app.post("/search", response_model=SearchResponse)
    async def search(payload: QueryRequest, request: Request) -> SearchResponse:
        chunks = await current(request).orchestrator.search(payload.to_query())
        return SearchResponse(chunks=[ChunkResponse(**_chunk_payload(chunk)) for chunk in chunks])

    @app.post("/documents", status_code=201)
    async def put_document(payload: DocumentRequest, request: Request) -> dict:
        result = await current(request).ingestion.ingest(payload.document_id, payload.text, payload.metadata)
        return {
            "document_id": result.document.document_id,
            "revision": result.document.revision,
            "chunks": len(result.spans),
            "indexed": result.indexed,
        }

    @app.get("/documents/{document_id}")
    async def get_document(document_id: str, request: Request) -> dict:
        document = await current(request).store.get(document_id)
        return {
            "document_id": document.document_id,
            "text": document.text,
            "metadata": document.metadata,
            "revision": document.revision,
            "stored_at": document.stored_at.isoformat(),
        }

    @app.delete("/documents/{document_id}", status_code=204)
    async def delete_document(document_id: str, request: Request) -> Response:
        await current(request).ingestion.delete(document_id)
        return Response(status_code=204)

    if settings.observability.enable_prometheus:

        @app.get("/metrics")
        def metrics() -> Response:
            return Response(generate_latest(), media_type=CONTENT_TYPE_LATEST)

    return app


app = create_app()

__all__ = ["app", "create_app", "stream_response"]
