"""Error taxonomy shared by every stage of the request pipeline."""
from __future__ import annotations


class RagError(Exception):
    """Base class for reported (never fatal-to-process) failures."""

    kind: str = "rag_error"
    retryable: bool = False
    status_code: int = 500

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.kind.replace("_", " "))
        self.message = message or self.kind.replace("_", " ")

    def to_dict(self) -> dict[str, object]:
        return {"kind": self.kind, "message": self.message, "retryable": self.retryable}


class EmbeddingUnavailable(RagError):
    kind = "embedding_unavailable"
    retryable = True
    status_code = 503


class EmbeddingTimeout(RagError):
    kind = "embedding_timeout"
    status_code = 504


class RetrievalUnavailable(RagError):
    kind = "retrieval_unavailable"
    retryable = True
    status_code = 503


class StoreUnavailable(RagError):
    kind = "store_unavailable"
    retryable = True
    status_code = 503


class NotFound(RagError):
    kind = "not_found"
    status_code = 404


class RunnerUnreachable(RagError):
    kind = "runner_unreachable"
    retryable = True
    status_code = 502


class RunnerStalled(RagError):
    kind = "runner_stalled"
    retryable = True
    status_code = 504


class RunnerProtocolError(RagError):
    kind = "runner_protocol_error"
    status_code = 502


class RequestTimeout(RagError):
    kind = "request_timeout"
    status_code = 504


class Cancelled(RagError):
    kind = "cancelled"
    status_code = 499


# Failures the orchestrator absorbs by continuing without retrieved context.
DEGRADABLE_ERRORS: tuple[type[RagError], ...] = (
    EmbeddingUnavailable,
    EmbeddingTimeout,
    RetrievalUnavailable,
    StoreUnavailable,
)
