"""Streaming client for the remote LLM runner (Ollama-compatible HTTP API)."""
from __future__ import annotations

import asyncio
import json
import logging
from collections.abc import AsyncIterator
from enum import Enum
from typing import Any

import httpx

from .config import AppSettings
from .errors import RagError, RequestTimeout, RunnerProtocolError, RunnerStalled, RunnerUnreachable
from .models import AssembledPrompt, TokenChunk
from .observability import CONNECT_RETRIES, STREAMED_TOKENS

logger = logging.getLogger(__name__)

# Failures before any byte of the response arrived; safe to retry.
CONNECTION_ERRORS: tuple[type[Exception], ...] = (
    httpx.ConnectError,
    httpx.ConnectTimeout,
    httpx.PoolTimeout,
    httpx.RemoteProtocolError,
    httpx.ReadError,
    httpx.WriteError,
)


class SessionState(str, Enum):
    CONNECTING = "connecting"
    STREAMING = "streaming"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class InferenceSession:
    """One prompt, one connection, one pass over the token stream.

    Iterate with ``async for``. Closing the iterator (or cancelling the task
    consuming it) closes the HTTP response and moves the session to
    ``CANCELLED``. A session cannot be iterated twice.
    """

    def __init__(
        self,
        dispatcher: InferenceDispatcher,
        prompt: AssembledPrompt,
        deadline: float | None,
        max_tokens: int | None = None,
    ) -> None:
        self.dispatcher = dispatcher
        self.prompt = prompt
        self.deadline = deadline
        self.max_tokens = max_tokens
        self.state = SessionState.CONNECTING
        self.error: RagError | None = None
        self.attempts = 0
        self.emitted = 0
        self.stats: dict[str, Any] = {}
        self._stream: AsyncIterator[TokenChunk] | None = None

    def __aiter__(self) -> AsyncIterator[TokenChunk]:
        if self._stream is not None:
            raise RuntimeError("inference sessions cannot be restarted")
        self._stream = self._run()
        return self._stream

    async def aclose(self) -> None:
        if self._stream is None:
            if self.state is SessionState.CONNECTING:
                self.state = SessionState.CANCELLED
            return
        await self._stream.aclose()
        if not self.finished:
            self.state = SessionState.CANCELLED

    @property
    def finished(self) -> bool:
        return self.state in (SessionState.COMPLETED, SessionState.FAILED, SessionState.CANCELLED)

    def _remaining(self) -> float | None:
        if self.deadline is None:
            return None
        return self.deadline - asyncio.get_running_loop().time()

    def _fail(self, error: RagError) -> RagError:
        self.state = SessionState.FAILED
        self.error = error
        return error

    async def _run(self) -> AsyncIterator[TokenChunk]:
        slot_held = False
        response: httpx.Response | None = None
        try:
            await self._acquire_slot()
            slot_held = True
            response = await self._connect()
            self.state = SessionState.STREAMING
            async for token in self._read(response):
                yield token
            self.state = SessionState.COMPLETED
            logger.debug("Inference session completed after %d chunks", self.emitted)
        except (asyncio.CancelledError, GeneratorExit):
            if not self.finished:
                self.state = SessionState.CANCELLED
                logger.info("Inference session cancelled after %d chunks", self.emitted)
            raise
        except RagError as exc:
            if self.state is not SessionState.FAILED:
                self._fail(exc)
            raise
        finally:
            if response is not None:
                await response.aclose()
            if slot_held:
                self.dispatcher.slots.release()

    async def _acquire_slot(self) -> None:
        remaining = self._remaining()
        try:
            await asyncio.wait_for(self.dispatcher.slots.acquire(), remaining)
        except asyncio.TimeoutError as exc:
            raise self._fail(RequestTimeout("deadline passed while waiting for a runner slot")) from exc

    async def _connect(self) -> httpx.Response:
        dispatcher = self.dispatcher
        payload = dispatcher.build_payload(self.prompt, self.max_tokens)
        last_error: Exception | None = None
        for attempt in range(dispatcher.max_attempts):
            self.attempts = attempt + 1
            request = dispatcher.client.build_request("POST", "/api/generate", json=payload)
            try:
                response = await dispatcher.client.send(request, stream=True)
            except CONNECTION_ERRORS as exc:
                last_error = exc
                logger.warning(
                    "LLM runner connect attempt %d/%d failed: %s", attempt + 1, dispatcher.max_attempts, exc
                )
                if attempt + 1 >= dispatcher.max_attempts:
                    break
                delay = dispatcher.backoff(attempt)
                remaining = self._remaining()
                if remaining is not None and remaining <= delay:
                    raise self._fail(RequestTimeout("deadline passed while reconnecting to the runner")) from exc
                CONNECT_RETRIES.inc()
                await asyncio.sleep(delay)
                continue
            except httpx.TransportError as exc:
                raise self._fail(RunnerUnreachable(f"runner at {dispatcher.base_url} failed: {exc}")) from exc

            if response.status_code >= 400:
                body = (await response.aread()).decode("utf-8", errors="replace")
                await response.aclose()
                raise self._fail(RunnerProtocolError(f"runner answered {response.status_code}: {body[:200]}"))
            return response

        raise self._fail(
            RunnerUnreachable(
                f"runner at {dispatcher.base_url} unreachable after {dispatcher.max_attempts} attempts: {last_error}"
            )
        )

    async def _read(self, response: httpx.Response) -> AsyncIterator[TokenChunk]:
        lines = response.aiter_lines()
        inactivity = self.dispatcher.inactivity_timeout
        while True:
            remaining = self._remaining()
            wait = inactivity if remaining is None else min(inactivity, max(remaining, 0.0))
            try:
                line = await asyncio.wait_for(anext(lines), wait)
            except StopAsyncIteration:
                raise self._fail(RunnerProtocolError("runner closed the stream without a done frame")) from None
            except asyncio.TimeoutError as exc:
                if remaining is not None and remaining <= inactivity:
                    raise self._fail(RequestTimeout("deadline passed while streaming")) from exc
                raise self._fail(RunnerStalled(f"no output from runner for {inactivity:.1f}s")) from exc
            except httpx.TransportError as exc:
                raise self._fail(RunnerUnreachable(f"connection to runner lost mid-stream: {exc}")) from exc

            if not line.strip():
                continue
            try:
                frame = json.loads(line)
            except json.JSONDecodeError as exc:
                raise self._fail(RunnerProtocolError(f"malformed frame from runner: {line[:200]!r}")) from exc
            if not isinstance(frame, dict):
                raise self._fail(RunnerProtocolError(f"unexpected frame from runner: {line[:200]!r}"))
            if frame.get("error"):
                raise self._fail(RunnerProtocolError(str(frame["error"])))

            text = frame.get("response") or ""
            if text:
                chunk = TokenChunk(text=text, sequence=self.emitted)
                self.emitted += 1
                STREAMED_TOKENS.inc()
                yield chunk
            if frame.get("done"):
                self.stats = {key: value for key, value in frame.items() if key not in ("response", "context")}
                return


class InferenceDispatcher:
    """Opens inference sessions against the runner at ``host:port``.

    Connection establishment is retried with exponential backoff; a stream
    that already opened is never retried. ``max_concurrent_sessions`` bounds
    in-flight sessions; extra dispatches wait for a slot.
    """

    def __init__(
        self,
        base_url: str,
        model: str,
        *,
        max_attempts: int = 4,
        backoff_base: float = 0.25,
        backoff_max: float = 4.0,
        connect_timeout: float = 5.0,
        inactivity_timeout: float = 30.0,
        max_concurrent_sessions: int = 16,
        options: dict[str, Any] | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.base_url = base_url
        self.model = model
        self.max_attempts = max_attempts
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.inactivity_timeout = inactivity_timeout
        self.options = options or {}
        self.slots = asyncio.Semaphore(max_concurrent_sessions)
        self.client = httpx.AsyncClient(
            base_url=base_url,
            timeout=httpx.Timeout(None, connect=connect_timeout),
            transport=transport,
        )

    @classmethod
    def from_settings(cls, settings: AppSettings, transport: httpx.AsyncBaseTransport | None = None) -> InferenceDispatcher:
        runner = settings.runner
        return cls(
            settings.llm_base_url,
            settings.model.llm_model,
            max_attempts=runner.max_connect_attempts,
            backoff_base=runner.backoff_base_seconds,
            backoff_max=runner.backoff_max_seconds,
            connect_timeout=runner.connect_timeout_seconds,
            inactivity_timeout=runner.inactivity_timeout_seconds,
            max_concurrent_sessions=runner.max_concurrent_sessions,
            options={
                "temperature": settings.model.temperature,
                "num_predict": settings.model.max_output_tokens,
            },
            transport=transport,
        )

    def backoff(self, attempt: int) -> float:
        return min(self.backoff_base * (2**attempt), self.backoff_max)

    def build_payload(self, prompt: AssembledPrompt, max_tokens: int | None = None) -> dict[str, Any]:
        options = dict(self.options)
        if max_tokens is not None:
            options["num_predict"] = max_tokens
        return {"model": self.model, "prompt": prompt.render(), "stream": True, "options": options}

    def dispatch(
        self, prompt: AssembledPrompt, deadline: float | None = None, max_tokens: int | None = None
    ) -> InferenceSession:
        return InferenceSession(self, prompt, deadline, max_tokens)

    async def aclose(self) -> None:
        await self.client.aclose()
