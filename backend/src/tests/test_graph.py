import asyncio

import httpx
import pytest
from langgraph.graph import END

from ragrelay.errors import RequestTimeout, RetrievalUnavailable, RunnerStalled, RunnerUnreachable
from ragrelay.graph import next_after, run_stage
from ragrelay.llm import SessionState
from ragrelay.models import Degraded, Fatal, Ok, Query
from ragrelay.store import ContextStore

from .fakes import PARIS, QUESTION, FakeEmbedding, FakeIndex, FakeRunner, make_orchestrator


async def _seed_paris(store: ContextStore, index: FakeIndex) -> None:
    document = await store.put("d1", PARIS)
    await index.upsert("d1:0", [1.0, 0.0], {"document_id": "d1", "start": 0, "end": len(PARIS), "revision": document.revision})


async def _collect(stream) -> str:
    return "".join([chunk.text async for chunk in stream])


@pytest.mark.asyncio
async def test_capital_of_france_end_to_end(store, paris_index, paris_embedding):
    await _seed_paris(store, paris_index)
    runner = FakeRunner()
    orchestrator = make_orchestrator(store, paris_index, runner, paris_embedding)

    stream = orchestrator.handle(Query(QUESTION))
    answer = await _collect(stream)

    assert answer == "Paris is the capital."
    assert stream.degraded == []
    assert [chunk.document_id for chunk in stream.context] == ["d1"]
    assert stream.context[0].score == pytest.approx(0.92)
    rendered = runner.requests[0]["prompt"]
    assert rendered.index(PARIS) < rendered.index(QUESTION)
    assert stream.session.state is SessionState.COMPLETED


@pytest.mark.asyncio
async def test_missing_index_still_answers(store):
    runner = FakeRunner()
    orchestrator = make_orchestrator(store, None, runner)

    stream = orchestrator.handle(Query(QUESTION))
    answer = await _collect(stream)

    assert answer == "Paris is the capital."
    assert len(stream.degraded) == 1 and stream.degraded[0].startswith("retrieval")
    assert stream.context == []
    assert stream.prompt.context_segments == ()


@pytest.mark.asyncio
async def test_embedding_failure_skips_retrieval(store, paris_index):
    await _seed_paris(store, paris_index)
    orchestrator = make_orchestrator(
        store, paris_index, FakeRunner(), FakeEmbedding(error=ConnectionError("embedder down"))
    )

    stream = orchestrator.handle(Query(QUESTION))
    answer = await _collect(stream)

    assert answer == "Paris is the capital."
    assert stream.degraded[0].startswith("embedding")
    assert paris_index.queries == 0


@pytest.mark.asyncio
async def test_failing_index_degrades(store):
    stream = make_orchestrator(store, FakeIndex(fail=True), FakeRunner()).handle(Query(QUESTION))

    assert await _collect(stream) == "Paris is the capital."
    assert stream.degraded[0].startswith("retrieval")


@pytest.mark.asyncio
async def test_stalled_runner_fails_request(store, paris_index):
    orchestrator = make_orchestrator(store, paris_index, FakeRunner(stall_after=1), inactivity_timeout=0.1)
    stream = orchestrator.handle(Query(QUESTION))
    received: list[str] = []

    with pytest.raises(RunnerStalled):
        async for chunk in stream:
            received.append(chunk.text)

    assert received == ["Paris"]
    assert stream.session.state is SessionState.FAILED


@pytest.mark.asyncio
async def test_unreachable_runner_is_fatal(store, paris_index):
    orchestrator = make_orchestrator(store, paris_index, FakeRunner(connect_failures=10))

    with pytest.raises(RunnerUnreachable):
        await _collect(orchestrator.handle(Query(QUESTION)))


@pytest.mark.asyncio
@pytest.mark.parametrize("error", [httpx.RemoteProtocolError, httpx.ReadError, httpx.WriteError])
async def test_runner_dropping_connections_is_a_typed_failure(store, paris_index, error):
    orchestrator = make_orchestrator(store, paris_index, FakeRunner(connect_failures=10, connect_error=error))
    stream = orchestrator.handle(Query(QUESTION))

    with pytest.raises(RunnerUnreachable):
        await _collect(stream)
    assert stream.session.state is SessionState.FAILED


@pytest.mark.asyncio
async def test_request_deadline_covers_embedding(store, paris_index):
    runner = FakeRunner()
    orchestrator = make_orchestrator(store, paris_index, runner, FakeEmbedding(delay=0.5), timeout=0.05)

    with pytest.raises(RequestTimeout):
        await _collect(orchestrator.handle(Query(QUESTION)))
    assert runner.requests == []


@pytest.mark.asyncio
async def test_cancelled_request_can_be_rerun(store, paris_index, paris_embedding):
    await _seed_paris(store, paris_index)
    runner = FakeRunner(frame_delay=0.01)
    orchestrator = make_orchestrator(store, paris_index, runner, paris_embedding)

    first = orchestrator.handle(Query(QUESTION))
    partial = [(await first.__anext__()).text, (await first.__anext__()).text]
    await first.aclose()

    second = orchestrator.handle(Query(QUESTION))
    answer = await _collect(second)

    assert partial == ["Paris", " is"]
    assert first.session.state is SessionState.CANCELLED
    assert answer == "Paris is the capital."
    assert len(runner.requests) == 2
    assert paris_embedding.calls == [QUESTION]


@pytest.mark.asyncio
async def test_query_overrides_retrieval_settings(store, paris_index, paris_embedding):
    await _seed_paris(store, paris_index)
    orchestrator = make_orchestrator(store, paris_index, FakeRunner(), paris_embedding)

    stream = orchestrator.handle(Query(QUESTION, min_score=0.95))
    await _collect(stream)

    assert stream.context == []
    assert stream.degraded == []


@pytest.mark.asyncio
async def test_search_returns_ranked_chunks(store, paris_index, paris_embedding):
    await _seed_paris(store, paris_index)
    orchestrator = make_orchestrator(store, paris_index, FakeRunner(), paris_embedding)

    chunks = await orchestrator.search(Query(QUESTION))

    assert [chunk.text for chunk in chunks] == [PARIS]


@pytest.mark.asyncio
async def test_search_raises_instead_of_degrading(store):
    orchestrator = make_orchestrator(store, None, FakeRunner())

    with pytest.raises(RetrievalUnavailable):
        await orchestrator.search(Query(QUESTION))


@pytest.mark.asyncio
async def test_run_stage_classifies_outcomes():
    deadline = asyncio.get_running_loop().time() + 1.0

    async def value():
        return 42

    async def degradable():
        raise RetrievalUnavailable("down")

    async def fatal():
        raise RunnerUnreachable("gone")

    assert await run_stage("s", value(), deadline) == Ok(42)
    assert isinstance(await run_stage("s", degradable(), deadline), Degraded)
    assert isinstance(await run_stage("s", fatal(), deadline), Fatal)


def test_next_after_routes_every_result():
    assert next_after(Ok(1), "retrieve") == "retrieve"
    assert next_after(Degraded("down"), "retrieve") == "assemble"
    assert next_after(Fatal(RunnerUnreachable("x")), "retrieve") == END
