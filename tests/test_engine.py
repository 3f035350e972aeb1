"""Tests for StreamingEngine state transitions and stop/finish/error races."""

import asyncio
from unittest.mock import MagicMock

import pytest

from chat_toolkit.conversation.data_models.message import MessageMetadata
from chat_toolkit.conversation.store import create_assistant_message, remove_message, update_message
from chat_toolkit.exceptions import StreamAbortedError
from chat_toolkit.llms.base import ChatStreamRequest, LLMMessage, StreamTokenUsage, TokenSource
from chat_toolkit.streaming.engine import StreamingEngine, StreamState

from .conftest import ScriptedTokenSource, hello_script, make_citation


class Harness:
    """Owns a message list the way a strategy does and records notifications."""

    def __init__(self, source):
        self.placeholder = create_assistant_message("gpt-4o", "openai")
        self.messages = [self.placeholder]
        self.snapshots = []
        self.streaming_changes = MagicMock()
        self.engine = StreamingEngine(
            source,
            update_message=self.update,
            remove_message=self.remove,
            on_streaming_state_change=self.streaming_changes,
        )

    def update(self, message_id, **fields):
        self.messages = update_message(self.messages, message_id, **fields)
        self.snapshots.append(self.messages[0].content)

    def remove(self, message_id):
        self.messages = remove_message(self.messages, message_id)

    @property
    def message(self):
        return self.messages[0]

    async def stream(self):
        return await self.engine.stream(self.placeholder.id, build_request)


class SwallowingTokenSource(TokenSource):
    """Reports an error, ignores what 'on_error' raises and keeps streaming until stopped."""

    def __init__(self):
        self.stop_calls = 0
        self.waiting = asyncio.Event()
        self._stopped = asyncio.Event()

    async def stream_chat(self, request, callbacks):
        callbacks.on_content("Hel")
        try:
            callbacks.on_error(RuntimeError("quota exceeded"))
        except RuntimeError:
            pass
        callbacks.on_content("lo")
        self.waiting.set()
        await asyncio.sleep(0)
        await self._stopped.wait()

    def stop_streaming(self):
        self.stop_calls += 1
        self._stopped.set()


class FailingStopTokenSource(ScriptedTokenSource):
    def stop_streaming(self):
        super().stop_streaming()
        raise ConnectionError("transport already closed")


async def build_request():
    return ChatStreamRequest(messages=[LLMMessage(content="Hello")], model="gpt-4o", provider="openai")


class TestStreamLifecycle:
    @pytest.mark.asyncio
    async def test_successful_stream(self):
        harness = Harness(ScriptedTokenSource(hello_script()))

        state = await harness.stream()

        assert state is StreamState.FINISHED
        assert harness.engine.state is StreamState.IDLE
        assert harness.engine.last_state is StreamState.FINISHED
        assert harness.message.content == "Hi there!"
        assert harness.message.finish_reason == "stop"
        assert harness.message.metadata.token_count == 3
        assert harness.message.metadata.duration >= 0
        assert not harness.message.is_stopped
        assert harness.snapshots[:2] == ["Hi", "Hi there!"]
        assert [c.args[0] for c in harness.streaming_changes.call_args_list] == [True, False]

    @pytest.mark.asyncio
    async def test_reasoning_and_citations(self):
        citations = [make_citation()]
        source = ScriptedTokenSource(
            [("reasoning", "Let me "), ("reasoning", "think"), ("citations", citations), ("finish", "stop")]
        )
        harness = Harness(source)

        await harness.stream()

        assert harness.message.reasoning == "Let me think"
        assert harness.message.citations == citations

    @pytest.mark.asyncio
    async def test_reasoning_token_usage_recorded(self):
        usage = StreamTokenUsage(output_tokens=10, reasoning_tokens=4)
        harness = Harness(ScriptedTokenSource([("content", "x"), ("finish", ("length", usage))]))

        await harness.stream()

        assert harness.message.metadata.finish_reason == "length"
        assert harness.message.metadata.reasoning_token_count == 4

    @pytest.mark.asyncio
    async def test_missing_finish_event_finalizes_with_stop(self):
        harness = Harness(ScriptedTokenSource([("content", "partial")]))

        assert await harness.stream() is StreamState.FINISHED
        assert harness.message.finish_reason == "stop"

    @pytest.mark.asyncio
    async def test_generation_counter_increments(self):
        source = ScriptedTokenSource(hello_script())
        harness = Harness(source)
        await harness.stream()
        await harness.engine.stream(harness.placeholder.id, build_request)
        assert harness.engine.generation == 2

    @pytest.mark.asyncio
    async def test_rejects_second_concurrent_stream(self):
        source = ScriptedTokenSource([("wait", None)])
        harness = Harness(source)
        task = asyncio.create_task(harness.stream())
        await source.waiting.wait()

        with pytest.raises(RuntimeError):
            await harness.stream()

        harness.engine.stop()
        assert await task is StreamState.CANCELLED


class TestStop:
    @pytest.mark.asyncio
    async def test_stop_marks_message_immediately(self):
        source = ScriptedTokenSource([("content", "Hel"), ("wait", None), ("content", "lo")])
        harness = Harness(source)
        task = asyncio.create_task(harness.stream())
        await source.waiting.wait()

        assert harness.engine.state is StreamState.STREAMING
        assert harness.engine.stop() == harness.placeholder.id

        assert harness.message.metadata == MessageMetadata(finish_reason="stop", stopped=True)
        assert not harness.engine.is_streaming
        assert await task is StreamState.CANCELLED
        assert harness.message.content == "Hel"
        assert source.stop_calls == 1

    @pytest.mark.asyncio
    async def test_stop_wins_against_late_finish(self):
        source = ScriptedTokenSource(
            [("content", "Hel"), ("wait", None), ("content", "lo"), ("finish", "length")],
            raise_on_abort=False,
        )
        harness = Harness(source)
        task = asyncio.create_task(harness.stream())
        await source.waiting.wait()
        harness.engine.stop()

        assert await task is StreamState.CANCELLED
        assert harness.message.content == "Hel"
        assert harness.message.finish_reason == "stop"
        assert harness.message.is_stopped
        assert [c.args[0] for c in harness.streaming_changes.call_args_list] == [True, False]

    @pytest.mark.asyncio
    async def test_error_after_stop_is_not_a_failure(self):
        source = ScriptedTokenSource(
            [("content", "Hel"), ("wait", None), ("raise", ConnectionError("socket closed"))],
            raise_on_abort=False,
        )
        harness = Harness(source)
        task = asyncio.create_task(harness.stream())
        await source.waiting.wait()
        harness.engine.stop()

        assert await task is StreamState.CANCELLED
        assert harness.messages == [harness.message]
        assert harness.message.is_stopped

    @pytest.mark.asyncio
    async def test_stop_survives_failing_transport(self):
        source = FailingStopTokenSource([("content", "Hel"), ("wait", None)])
        harness = Harness(source)
        task = asyncio.create_task(harness.stream())
        await source.waiting.wait()

        assert harness.engine.stop() == harness.placeholder.id

        assert harness.message.is_stopped
        assert not harness.engine.is_streaming
        assert await task is StreamState.CANCELLED

    @pytest.mark.asyncio
    async def test_stop_when_idle(self):
        harness = Harness(ScriptedTokenSource())
        assert harness.engine.stop() is None
        assert harness.message.finish_reason == "streaming"

    @pytest.mark.asyncio
    async def test_abort_error_without_stop_counts_as_cancelled(self):
        harness = Harness(ScriptedTokenSource([("content", "x"), ("raise", RuntimeError("StoppedByUser"))]))

        assert await harness.stream() is StreamState.CANCELLED
        assert harness.message.is_stopped


class TestErrors:
    @pytest.mark.asyncio
    async def test_transport_error_removes_placeholder_and_raises(self):
        harness = Harness(ScriptedTokenSource([("content", "Hi"), ("raise", ConnectionError("down"))]))

        with pytest.raises(ConnectionError):
            await harness.stream()

        assert harness.messages == []
        assert harness.engine.last_state is StreamState.FAILED
        assert [c.args[0] for c in harness.streaming_changes.call_args_list] == [True, False]

    @pytest.mark.asyncio
    async def test_reported_error_removes_placeholder_and_raises(self):
        harness = Harness(ScriptedTokenSource([("error", ValueError("bad request"))]))

        with pytest.raises(ValueError):
            await harness.stream()

        assert harness.messages == []

    @pytest.mark.asyncio
    async def test_error_event_ends_run_at_once(self):
        failure = RuntimeError("quota exceeded")
        source = ScriptedTokenSource([("content", "Hel"), ("error", failure), ("content", "lo"), ("wait", None)])
        harness = Harness(source)

        with pytest.raises(RuntimeError) as excinfo:
            await harness.stream()

        assert excinfo.value is failure
        assert harness.messages == []
        assert harness.snapshots == ["Hel"]
        assert harness.engine.last_state is StreamState.FAILED
        assert source.stop_calls == 1
        assert not source.waiting.is_set()
        assert [c.args[0] for c in harness.streaming_changes.call_args_list] == [True, False]

    @pytest.mark.asyncio
    async def test_error_event_ends_run_when_source_keeps_going(self):
        source = SwallowingTokenSource()
        harness = Harness(source)
        task = asyncio.create_task(harness.stream())
        await source.waiting.wait()

        assert not harness.engine.is_streaming
        assert harness.messages == []
        assert harness.snapshots == ["Hel"]
        assert source.stop_calls == 1

        with pytest.raises(RuntimeError, match="quota exceeded"):
            await task

    @pytest.mark.asyncio
    async def test_aborting_error_event_counts_as_cancelled(self):
        harness = Harness(ScriptedTokenSource([("content", "Hel"), ("error", StreamAbortedError())]))

        assert await harness.stream() is StreamState.CANCELLED
        assert harness.message.is_stopped
        assert harness.message.content == "Hel"

    @pytest.mark.asyncio
    async def test_build_request_failure(self):
        harness = Harness(ScriptedTokenSource(hello_script()))

        async def failing_request():
            raise KeyError("credentials")

        with pytest.raises(KeyError):
            await harness.engine.stream(harness.placeholder.id, failing_request)

        assert harness.messages == []
        assert not harness.engine.is_streaming

    @pytest.mark.asyncio
    async def test_outer_cancellation_marks_stopped_and_propagates(self):
        source = ScriptedTokenSource([("content", "Hel"), ("wait", None)])
        harness = Harness(source)
        task = asyncio.create_task(harness.stream())
        await source.waiting.wait()
        task.cancel()

        with pytest.raises(asyncio.CancelledError):
            await task

        assert harness.message.is_stopped
        assert not harness.engine.is_streaming
