from ragrelay.models import Query, RetrievedChunk
from ragrelay.prompt import PROMPT_TEMPLATE_VERSION, SYSTEM_INSTRUCTION, PromptAssembler

from .fakes import PARIS, QUESTION


def _chunk(document_id: str, text: str, score: float) -> RetrievedChunk:
    return RetrievedChunk(document_id=document_id, chunk_id=f"{document_id}:0", text=text, score=score, metadata={})


def test_segments_ordered_instruction_context_query():
    prompt = PromptAssembler().assemble(Query(QUESTION), [_chunk("d1", PARIS, 0.92)], budget=2000)

    assert [segment.role for segment in prompt.segments] == ["system", "context", "user"]
    rendered = prompt.render()
    assert rendered.index(PARIS) < rendered.index(QUESTION)
    assert rendered.startswith(SYSTEM_INSTRUCTION)
    assert prompt.template_version == PROMPT_TEMPLATE_VERSION


def test_rendered_prompt_stays_within_budget():
    chunks = [_chunk(f"d{i}", "x" * 200, 0.9 - i * 0.05) for i in range(10)]
    prompt = PromptAssembler().assemble(Query(QUESTION), chunks, budget=1000)

    assert prompt.size <= 1000
    assert 0 < len(prompt.context_segments) < 10


def test_highest_scores_kept_first():
    chunks = [_chunk("low", "low text", 0.55), _chunk("high", "high text", 0.95), _chunk("mid", "mid text", 0.7)]
    prompt = PromptAssembler().assemble(Query(QUESTION), chunks, budget=2000)

    assert [segment.text.split("\n", 1)[1] for segment in prompt.context_segments] == [
        "high text",
        "mid text",
        "low text",
    ]


def test_stops_at_first_chunk_that_does_not_fit():
    assembler = PromptAssembler(system_instruction="sys")
    chunks = [_chunk("a", "a" * 50, 0.9), _chunk("b", "b" * 500, 0.8), _chunk("c", "c" * 5, 0.7)]
    prompt = assembler.assemble(Query(QUESTION), chunks, budget=200)

    assert [segment.text for segment in prompt.context_segments] == ["Context [a]:\n" + "a" * 50]


def test_query_survives_budget_smaller_than_itself():
    prompt = PromptAssembler().assemble(Query(QUESTION), [_chunk("d1", PARIS, 0.92)], budget=10)

    assert [segment.role for segment in prompt.segments] == ["user"]
    assert QUESTION in prompt.render()


def test_no_chunks_still_has_query():
    prompt = PromptAssembler().assemble(Query(QUESTION), [], budget=2000)

    assert prompt.context_segments == ()
    assert prompt.render().endswith(QUESTION)


def test_assembly_is_deterministic():
    chunks = [_chunk("d1", PARIS, 0.92), _chunk("d2", "Lyon is in France", 0.6)]
    assembler = PromptAssembler()

    first = assembler.assemble(Query(QUESTION, request_id="a"), chunks, budget=500)
    second = assembler.assemble(Query(QUESTION, request_id="b"), list(reversed(chunks)), budget=500)

    assert first.render() == second.render()


def test_context_outranks_system_instruction():
    chunk = _chunk("d1", PARIS, 0.92)
    fits_without_instruction = len("Question: " + QUESTION) + len("\n\nContext [d1]:\n" + PARIS)
    budget = fits_without_instruction + len(SYSTEM_INSTRUCTION)

    prompt = PromptAssembler().assemble(Query(QUESTION), [chunk], budget=budget)

    assert [segment.role for segment in prompt.segments] == ["context", "user"]
    assert prompt.size <= budget
    assert PARIS in prompt.render()
