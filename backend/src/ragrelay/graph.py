"""Request orchestration: a LangGraph for context building, then streaming."""
from __future__ import annotations

import asyncio
import logging
from collections.abc import AsyncIterator, Awaitable
from typing import Any, TypedDict, TypeVar

from langgraph.graph import END, START, StateGraph

from .embeddings import EmbeddingResolver
from .errors import DEGRADABLE_ERRORS, Cancelled, RagError, RequestTimeout
from .llm import InferenceDispatcher, InferenceSession
from .models import (
    AssembledPrompt,
    Degraded,
    EmbeddingVector,
    Fatal,
    Ok,
    Query,
    RetrievedChunk,
    StageResult,
    TokenChunk,
)
from .observability import record_degraded, record_failure, traced_span
from .prompt import PromptAssembler
from .retrieval import RetrievalCoordinator

logger = logging.getLogger(__name__)

T = TypeVar("T")


class GraphState(TypedDict, total=False):
    query: Query
    deadline: float
    embedding: StageResult
    retrieval: StageResult
    prompt: AssembledPrompt
    degraded: list[str]


def _remaining(deadline: float) -> float:
    return deadline - asyncio.get_running_loop().time()


async def run_stage(stage: str, work: Awaitable[T], deadline: float) -> StageResult:
    """Run one stage under the request deadline and classify its outcome."""

    remaining = _remaining(deadline)
    if remaining <= 0:
        if asyncio.iscoroutine(work):
            work.close()
        return Fatal(RequestTimeout(f"deadline passed before {stage}"))
    try:
        with traced_span(stage):
            value = await asyncio.wait_for(work, remaining)
    except asyncio.TimeoutError:
        return Fatal(RequestTimeout(f"deadline passed during {stage}"))
    except DEGRADABLE_ERRORS as exc:
        return Degraded(reason=f"{stage}: {exc.message}", error=exc)
    except RagError as exc:
        return Fatal(exc)
    return Ok(value)


def next_after(result: StageResult, on_ok: str) -> str:
    """Routing is total over stage results: continue, skip context, or stop."""

    match result:
        case Ok():
            return on_ok
        case Degraded():
            return "assemble"
        case Fatal():
            return END
    raise TypeError(f"unexpected stage result {result!r}")


class RequestStream:
    """Async iterator over one request's tokens plus what was learned on the way.

    ``degraded`` lists stages that failed open, ``context`` the chunks that
    made it into the prompt. Closing the stream cancels the inference
    session.
    """

    def __init__(self, orchestrator: RequestOrchestrator, query: Query) -> None:
        self.orchestrator = orchestrator
        self.query = query
        self.request_id = query.request_id
        self.degraded: list[str] = []
        self.context: list[RetrievedChunk] = []
        self.prompt: AssembledPrompt | None = None
        self.session: InferenceSession | None = None
        self._iterator: AsyncIterator[TokenChunk] | None = None

    def __aiter__(self) -> AsyncIterator[TokenChunk]:
        if self._iterator is None:
            self._iterator = self._run()
        return self._iterator

    async def __anext__(self) -> TokenChunk:
        return await self.__aiter__().__anext__()

    async def aclose(self) -> None:
        if self._iterator is not None:
            await self._iterator.aclose()
        elif self.session is not None:
            await self.session.aclose()

    async def _run(self) -> AsyncIterator[TokenChunk]:
        orchestrator = self.orchestrator
        deadline = asyncio.get_running_loop().time() + orchestrator.timeout
        try:
            state = await orchestrator.prepare(self.query, deadline)
        except asyncio.CancelledError:
            record_failure(Cancelled.kind)
            raise
        self.degraded = state.get("degraded", [])
        retrieval = state.get("retrieval")
        if isinstance(retrieval, Ok):
            self.context = list(retrieval.value)
        for result in (state.get("embedding"), retrieval):
            if isinstance(result, Fatal):
                record_failure(result.error.kind)
                raise result.error

        self.prompt = state["prompt"]
        self.session = orchestrator.dispatcher.dispatch(self.prompt, deadline, self.query.max_tokens)
        try:
            async for token in self.session:
                yield token
        except RagError as exc:
            record_failure(exc.kind)
            logger.warning("Request %s failed: %s", self.request_id, exc.message)
            raise
        finally:
            await self.session.aclose()


class RequestOrchestrator:
    """Sequences embedding, retrieval, prompt assembly and inference.

    Embedding and retrieval fail open: the request continues with no
    context. Only inference failures and the request deadline are fatal.
    """

    def __init__(
        self,
        resolver: EmbeddingResolver,
        retriever: RetrievalCoordinator,
        assembler: PromptAssembler,
        dispatcher: InferenceDispatcher,
        *,
        top_k: int = 3,
        min_score: float = 0.5,
        prompt_budget: int = 6000,
        timeout: float = 120.0,
    ) -> None:
        self.resolver = resolver
        self.retriever = retriever
        self.assembler = assembler
        self.dispatcher = dispatcher
        self.top_k = top_k
        self.min_score = min_score
        self.prompt_budget = prompt_budget
        self.timeout = timeout
        self.graph = self.build_graph().compile()

    def build_graph(self) -> StateGraph:
        graph = StateGraph(GraphState)
        graph.add_node("embed", self._embed_node)
        graph.add_node("retrieve", self._retrieve_node)
        graph.add_node("assemble", self._assemble_node)
        graph.add_edge(START, "embed")
        graph.add_conditional_edges("embed", lambda state: next_after(state["embedding"], "retrieve"))
        graph.add_conditional_edges("retrieve", lambda state: next_after(state["retrieval"], "assemble"))
        graph.add_edge("assemble", END)
        return graph

    def handle(self, query: Query) -> RequestStream:
        return RequestStream(self, query)

    async def prepare(self, query: Query, deadline: float) -> dict[str, Any]:
        """Run the context-building graph up to (and including) the prompt."""

        state: GraphState = {"query": query, "deadline": deadline, "degraded": []}
        return await self.graph.ainvoke(state)

    async def search(self, query: Query) -> list[RetrievedChunk]:
        """Embed and retrieve only; failures are raised rather than absorbed."""

        deadline = asyncio.get_running_loop().time() + self.timeout
        embedding = await run_stage("embedding", self.resolver.resolve(query.text, query.model_hint), deadline)
        vector = _unwrap(embedding)
        retrieval = await run_stage(
            "retrieval",
            self.retriever.retrieve(vector, query.top_k or self.top_k, self._min_score(query)),
            deadline,
        )
        return _unwrap(retrieval)

    def _min_score(self, query: Query) -> float:
        return self.min_score if query.min_score is None else query.min_score

    def _degrade(self, state: GraphState, stage: str, result: StageResult) -> list[str]:
        degraded = list(state.get("degraded", []))
        if isinstance(result, Degraded):
            kind = result.error.kind if result.error else "unknown"
            record_degraded(stage, kind)
            logger.warning("Request %s continuing without context: %s", state["query"].request_id, result.reason)
            degraded.append(result.reason)
        return degraded

    async def _embed_node(self, state: GraphState) -> GraphState:
        query = state["query"]
        result = await run_stage("embedding", self.resolver.resolve(query.text, query.model_hint), state["deadline"])
        return {"embedding": result, "degraded": self._degrade(state, "embedding", result)}

    async def _retrieve_node(self, state: GraphState) -> GraphState:
        query = state["query"]
        vector: EmbeddingVector = state["embedding"].value
        result = await run_stage(
            "retrieval",
            self.retriever.retrieve(vector, query.top_k or self.top_k, self._min_score(query)),
            state["deadline"],
        )
        return {"retrieval": result, "degraded": self._degrade(state, "retrieval", result)}

    async def _assemble_node(self, state: GraphState) -> GraphState:
        retrieval = state.get("retrieval")
        chunks = retrieval.value if isinstance(retrieval, Ok) else []
        prompt = self.assembler.assemble(state["query"], chunks, self.prompt_budget)
        return {"prompt": prompt}


def _unwrap(result: StageResult) -> Any:
    match result:
        case Ok(value=value):
            return value
        case Degraded(error=error) if error is not None:
            raise error
        case Degraded(reason=reason):
            raise RagError(reason)
        case Fatal(error=error):
            raise error
    raise TypeError(f"unexpected stage result {result!r}")
