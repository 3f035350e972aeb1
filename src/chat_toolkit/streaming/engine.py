"""
Streaming engine: one token-source call at a time, folded into message updates.

The engine never holds the message list itself. The owning strategy passes in
'update_message' / 'remove_message' callables that change its sequence and
notify the UI synchronously, so every chunk is visible before the next one is
processed.

Each call to 'stream' opens a new run with its own generation number. Token
callbacks are bound to that run and are ignored once the run has left the
STREAMING state, which is what lets 'stop' win against a finish or error event
that was already on its way:

    IDLE -> STREAMING -> FINISHED | CANCELLED | FAILED

Error classification: abort errors (see 'is_abort_error'), and any error that
arrives after the run was cancelled, end the run as CANCELLED and are not
raised. Everything else removes the placeholder message and is re-raised to
the strategy. An error reported through 'on_error' ends the run at once: the
placeholder is removed, the source is asked to stop and the error is raised
back into the source so its call unwinds.
"""

import asyncio
import time
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from loguru import logger

from chat_toolkit.conversation.data_models.citation import WebSearchCitation
from chat_toolkit.conversation.data_models.message import MessageMetadata
from chat_toolkit.exceptions import is_abort_error
from chat_toolkit.llms.base import ChatStreamRequest, StreamCallbacks, StreamTokenUsage, TokenSource


class StreamState(StrEnum):
    IDLE = "idle"
    STREAMING = "streaming"
    FINISHED = "finished"
    CANCELLED = "cancelled"
    FAILED = "failed"


@dataclass
class StreamRun:
    """Book-keeping for a single streaming call."""

    generation: int
    message_id: str
    state: StreamState = StreamState.STREAMING
    content: str = ""
    reasoning: str = ""
    error: BaseException | None = None
    started_at: float = field(default_factory=time.monotonic)


class StreamingEngine:
    def __init__(
        self,
        token_source: TokenSource,
        *,
        update_message: Callable[..., None],
        remove_message: Callable[[str], None],
        on_streaming_state_change: Callable[[bool], None],
        stopped_finish_reason: str = "stop",
    ) -> None:
        self.token_source = token_source
        self._update_message = update_message
        self._remove_message = remove_message
        self._on_streaming_state_change = on_streaming_state_change
        self.stopped_finish_reason = stopped_finish_reason
        self._generation = 0
        self._active: StreamRun | None = None
        self._last: StreamRun | None = None

    @property
    def state(self) -> StreamState:
        if self._active is not None:
            return self._active.state
        return StreamState.IDLE

    @property
    def last_state(self) -> StreamState:
        """Terminal state of the most recent run, IDLE if nothing has run yet."""
        return self._last.state if self._last is not None else StreamState.IDLE

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def is_streaming(self) -> bool:
        return self._active is not None

    @property
    def message_id(self) -> str | None:
        return self._active.message_id if self._active is not None else None

    async def stream(
        self,
        message_id: str,
        build_request: Callable[[], Awaitable[ChatStreamRequest]],
    ) -> StreamState:
        """
        Stream into 'message_id' and return the terminal state of the run.

        'build_request' is awaited after the run has started, so failures while
        resolving credentials or history are handled like transport failures.
        Raises the underlying error when the run FAILED.
        """
        if self._active is not None:
            raise RuntimeError(f"Message {self._active.message_id} is still streaming")

        self._generation += 1
        run = StreamRun(generation=self._generation, message_id=message_id)
        self._active = run
        self._last = run
        logger.debug(f"Stream #{run.generation} started for message {message_id}")
        self._on_streaming_state_change(True)

        try:
            request = await build_request()
            if run.state is not StreamState.STREAMING:
                return run.state
            await self.token_source.stream_chat(request, self._callbacks(run))
        except asyncio.CancelledError as exc:
            task = asyncio.current_task()
            if task is not None and task.cancelling():
                self._cancel(run)
                raise
            return self._handle_error(run, exc)
        except Exception as exc:
            return self._handle_error(run, exc)

        if run.error is not None:
            return self._handle_error(run, run.error)
        if run.state is StreamState.STREAMING:
            logger.debug(f"Stream #{run.generation} ended without a finish event")
            self._finish(run, "stop", None)
        return run.state

    def stop(self) -> str | None:
        """
        Abort the active run and mark its message as stopped right away.

        Returns the id of the stopped message, or None when nothing was
        streaming.
        """
        run = self._active
        if run is None:
            return None
        self._stop_source(run)
        self._cancel(run)
        return run.message_id

    def _stop_source(self, run: StreamRun) -> None:
        try:
            self.token_source.stop_streaming()
        except Exception as exc:
            logger.warning(f"Token source failed to stop stream #{run.generation}: {exc!r}")

    def _callbacks(self, run: StreamRun) -> StreamCallbacks:
        def on_content(chunk: str) -> None:
            if self._accepts(run):
                run.content += chunk
                self._update_message(run.message_id, content=run.content)

        def on_reasoning(chunk: str) -> None:
            if self._accepts(run):
                run.reasoning += chunk
                self._update_message(run.message_id, reasoning=run.reasoning)

        def on_citations(citations: list[WebSearchCitation]) -> None:
            if self._accepts(run):
                self._update_message(run.message_id, citations=list(citations))

        def on_finish(finish_reason: str, usage: StreamTokenUsage | None = None) -> None:
            if self._accepts(run):
                self._finish(run, finish_reason, usage)
            else:
                logger.debug(f"Ignoring late finish ({finish_reason}) for stream #{run.generation}")

        def on_error(error: BaseException) -> None:
            if not self._accepts(run):
                logger.debug(f"Ignoring late error for stream #{run.generation}: {error!r}")
                return
            if is_abort_error(error):
                self._cancel(run)
                return
            run.error = error
            self._fail(run)
            self._stop_source(run)
            raise error

        return StreamCallbacks(
            on_content=on_content,
            on_reasoning=on_reasoning,
            on_citations=on_citations,
            on_finish=on_finish,
            on_error=on_error,
        )

    def _accepts(self, run: StreamRun) -> bool:
        return run is self._active and run.state is StreamState.STREAMING

    def _release(self, run: StreamRun, state: StreamState) -> bool:
        """Move 'run' to a terminal state. Returns True when it was the active run."""
        was_active = run is self._active
        run.state = state
        if was_active:
            self._active = None
        return was_active

    def _finish(self, run: StreamRun, finish_reason: str, usage: StreamTokenUsage | None) -> None:
        metadata: dict[str, Any] = {
            "finish_reason": finish_reason,
            "duration": round((time.monotonic() - run.started_at) * 1000),
        }
        if usage is not None:
            metadata["token_count"] = usage.output_tokens
            metadata["reasoning_token_count"] = usage.reasoning_tokens
        self._release(run, StreamState.FINISHED)
        self._update_message(run.message_id, metadata=MessageMetadata(**metadata))
        self._on_streaming_state_change(False)
        logger.debug(f"Stream #{run.generation} finished: {finish_reason}")

    def _cancel(self, run: StreamRun) -> None:
        if run.state is not StreamState.STREAMING:
            return
        self._release(run, StreamState.CANCELLED)
        self._update_message(
            run.message_id,
            metadata=MessageMetadata(finish_reason=self.stopped_finish_reason, stopped=True),
        )
        self._on_streaming_state_change(False)
        logger.debug(f"Stream #{run.generation} cancelled")

    def _fail(self, run: StreamRun) -> None:
        was_streaming = run.state is StreamState.STREAMING
        self._release(run, StreamState.FAILED)
        self._remove_message(run.message_id)
        if was_streaming:
            self._on_streaming_state_change(False)
        logger.debug(f"Stream #{run.generation} failed")

    def _handle_error(self, run: StreamRun, error: BaseException) -> StreamState:
        if run.error is not None:
            raise run.error
        if run.state is StreamState.CANCELLED or is_abort_error(error):
            self._cancel(run)
            logger.info(f"Generation for message {run.message_id} stopped by user")
            return StreamState.CANCELLED

        run.error = error
        self._fail(run)
        raise error
