"""
Callback token source backed by an 'LLM' async generator.

'LLMTokenSource' consumes 'LLM.generate_stream' inside a dedicated task and
fans every chunk out to 'StreamCallbacks'. Stopping cancels that task; the
pending 'stream_chat' call then raises 'StreamAbortedError', which the
streaming engine recognises as a user stop rather than a failure.

The LLM is built per request by 'llm_factory', which receives the whole
'ChatStreamRequest' so it can choose a backend by provider and use the
decrypted key from 'request.credentials'.
"""

import asyncio
from collections.abc import Callable

from loguru import logger

from chat_toolkit.exceptions import StreamAbortedError
from chat_toolkit.llms.base import LLM, ChatStreamRequest, StreamCallbacks, StreamTokenUsage, TokenSource


class LLMTokenSource(TokenSource):
    """
    Adapter from the async-generator 'LLM' interface to the callback contract.

    Only one call may be active at a time. Backend exceptions are reported
    through 'callbacks.on_error' instead of being raised, so the caller sees
    provider failures and aborts through different channels. An error that
    'on_error' raises back ends the call with that error.
    """

    def __init__(self, llm_factory: Callable[[ChatStreamRequest], LLM]) -> None:
        self.llm_factory = llm_factory
        self._task: asyncio.Task[None] | None = None

    async def stream_chat(self, request: ChatStreamRequest, callbacks: StreamCallbacks) -> None:
        if self._task is not None and not self._task.done():
            raise RuntimeError("A stream is already active on this token source")

        llm = self.llm_factory(request)
        task = asyncio.create_task(self._consume(llm, request, callbacks))
        self._task = task
        try:
            await task
        except asyncio.CancelledError:
            current = asyncio.current_task()
            if current is not None and current.cancelling():
                task.cancel()
                raise
            raise StreamAbortedError() from None
        finally:
            if self._task is task:
                self._task = None

    def stop_streaming(self) -> None:
        if self._task is not None and not self._task.done():
            logger.debug("Cancelling active LLM stream")
            self._task.cancel()

    @staticmethod
    async def _consume(llm: LLM, request: ChatStreamRequest, callbacks: StreamCallbacks) -> None:
        finish_reason: str | None = None
        usage: StreamTokenUsage | None = None
        try:
            async for chunk in llm.generate_stream(request.messages, request.options):
                if chunk.reasoning:
                    callbacks.on_reasoning(chunk.reasoning)
                if chunk.content:
                    callbacks.on_content(chunk.content)
                if chunk.citations is not None:
                    callbacks.on_citations(chunk.citations)
                if chunk.finish_reason:
                    finish_reason = chunk.finish_reason
                if chunk.usage:
                    usage = chunk.usage
        except Exception as exc:
            logger.debug(f"LLM stream for {request.provider}/{request.model} failed: {exc!r}")
            callbacks.on_error(exc)
            return
        callbacks.on_finish(finish_reason or "stop", usage)
