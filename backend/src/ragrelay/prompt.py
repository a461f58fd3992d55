"""Budgeted prompt assembly from retrieved context and the user query."""
from __future__ import annotations

import logging
from collections.abc import Sequence

from langchain_core.prompts import PromptTemplate

from .models import AssembledPrompt, PromptSegment, Query, RetrievedChunk

logger = logging.getLogger(__name__)

# Bump whenever segment order or any template below changes.
PROMPT_TEMPLATE_VERSION = "2"

SYSTEM_INSTRUCTION = (
    "You are a retrieval-grounded assistant. Answer using the context passages when they are relevant "
    "and say so when they do not contain the answer."
)
CONTEXT_TEMPLATE = PromptTemplate.from_template("Context [{document_id}]:\n{text}")
QUESTION_TEMPLATE = PromptTemplate.from_template("Question: {question}")
SEPARATOR = "\n\n"


class PromptAssembler:
    """Merges chunks and the query into a prompt that fits a character budget.

    The query is counted first and always kept whole. Chunks follow in
    descending score order until the first one that would overflow; the
    system instruction is added only if it still fits afterwards. Segments
    are emitted as: instruction, chunks, query.
    """

    def __init__(self, system_instruction: str = SYSTEM_INSTRUCTION, separator: str = SEPARATOR) -> None:
        self.system_instruction = system_instruction
        self.separator = separator

    def assemble(self, query: Query, chunks: Sequence[RetrievedChunk], budget: int) -> AssembledPrompt:
        question = PromptSegment("user", QUESTION_TEMPLATE.format(question=query.text))
        used = len(question.text)

        context: list[PromptSegment] = []
        for chunk in sorted(chunks, key=lambda item: item.score, reverse=True):
            segment = PromptSegment(
                "context",
                CONTEXT_TEMPLATE.format(document_id=chunk.document_id, text=chunk.text),
            )
            cost = len(self.separator) + len(segment.text)
            if used + cost > budget:
                break
            context.append(segment)
            used += cost

        system: PromptSegment | None = None
        if used + len(self.separator) + len(self.system_instruction) <= budget:
            system = PromptSegment("system", self.system_instruction)
            used += len(self.separator) + len(system.text)

        if len(context) < len(chunks):
            logger.debug(
                "Prompt budget %d kept %d of %d chunks for request %s",
                budget,
                len(context),
                len(chunks),
                query.request_id,
            )

        segments = ([system] if system else []) + context + [question]
        return AssembledPrompt(
            segments=tuple(segments),
            budget=budget,
            template_version=PROMPT_TEMPLATE_VERSION,
            separator=self.separator,
        )
