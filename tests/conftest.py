"""
Shared fixtures and fakes for the chat toolkit test suite.

No test talks to a real model provider. 'ScriptedTokenSource' replays a list
of steps through the stream callbacks and can pause on a 'wait' step so a test
can stop the generation (or inspect intermediate state) while a stream is open.
"""

import asyncio
from unittest.mock import AsyncMock, MagicMock

import pytest

from chat_toolkit.config.settings import ChatSettings
from chat_toolkit.conversation.data_models.citation import WebSearchCitation
from chat_toolkit.conversation.data_models.message import ChatMessage, MessageMetadata
from chat_toolkit.exceptions import StreamAbortedError
from chat_toolkit.llms.base import (
    ChatStreamRequest,
    LLMMessage,
    Roles,
    SelectedModel,
    StreamCallbacks,
    StreamTokenUsage,
    TokenSource,
)
from chat_toolkit.strategies.local import LocalChatStrategy

# ---------------------------------------------------------------------------
# Token source fake
# ---------------------------------------------------------------------------


class ScriptedTokenSource(TokenSource):
    """
    Replays 'script' for every 'stream_chat' call.

    Steps are '(kind, value)' tuples:
      - ("content", str) / ("reasoning", str) / ("citations", list)
      - ("finish", reason) or ("finish", (reason, usage))
      - ("error", exc)   report through callbacks.on_error
      - ("raise", exc)   raise from stream_chat
      - ("wait", None)   block until 'release' or 'stop_streaming'

    After a 'wait' ends because of a stop, the source raises
    'StreamAbortedError' when 'raise_on_abort' is set, otherwise it keeps
    replaying the rest of the script (a late event racing the stop).
    """

    def __init__(self, script=None, raise_on_abort=True):
        self.script = list(script or [])
        self.raise_on_abort = raise_on_abort
        self.requests: list[ChatStreamRequest] = []
        self.stop_calls = 0
        self.aborted = False
        self.waiting = asyncio.Event()
        self._release = asyncio.Event()

    def release(self):
        self._release.set()

    async def stream_chat(self, request: ChatStreamRequest, callbacks: StreamCallbacks) -> None:
        self.requests.append(request)
        self.aborted = False
        for kind, value in self.script:
            if kind == "content":
                callbacks.on_content(value)
            elif kind == "reasoning":
                callbacks.on_reasoning(value)
            elif kind == "citations":
                callbacks.on_citations(value)
            elif kind == "finish":
                reason, usage = value if isinstance(value, tuple) else (value, None)
                callbacks.on_finish(reason, usage)
            elif kind == "error":
                callbacks.on_error(value)
            elif kind == "raise":
                raise value
            elif kind == "wait":
                self.waiting.set()
                await self._release.wait()
                self._release.clear()
                if self.aborted and self.raise_on_abort:
                    raise StreamAbortedError()

    def stop_streaming(self) -> None:
        self.stop_calls += 1
        self.aborted = True
        self._release.set()


def hello_script():
    usage = StreamTokenUsage(input_tokens=12, output_tokens=3, total_tokens=15)
    return [("content", "Hi"), ("content", " there!"), ("finish", ("stop", usage))]


# ---------------------------------------------------------------------------
# Message factories
# ---------------------------------------------------------------------------


def make_message(message_id, role=Roles.USER, content="", created_at=1000, **fields):
    return ChatMessage(id=message_id, role=role, content=content, created_at=created_at, **fields)


def make_citation(url="https://example.com", title="Example"):
    return WebSearchCitation(url=url, title=title)


def finished_metadata(reason="stop"):
    return MessageMetadata(finish_reason=reason)


# ---------------------------------------------------------------------------
# Fixtures
# ---------------------------------------------------------------------------


@pytest.fixture
def settings():
    return ChatSettings(default_system_prompt="You are running on {model}.", log_level="DEBUG")


@pytest.fixture
def selected_model():
    return SelectedModel(model_id="gpt-4o", provider="openai")


@pytest.fixture
def token_source():
    return ScriptedTokenSource(hello_script())


@pytest.fixture
def collaborators(selected_model):
    """Callables a chat view would hand to LocalChatStrategy, as mocks."""
    calls = MagicMock()
    calls.get_selected_model.return_value = selected_model
    calls.get_can_send_message.return_value = True
    calls.get_decrypted_api_key = AsyncMock(return_value="sk-test")
    calls.get_persona = AsyncMock(return_value=None)
    calls.save_conversation = AsyncMock(return_value="conv_1")
    return calls


@pytest.fixture
def make_strategy(collaborators, settings):
    def factory(token_source, **overrides):
        kwargs = dict(
            get_selected_model=collaborators.get_selected_model,
            get_can_send_message=collaborators.get_can_send_message,
            get_decrypted_api_key=collaborators.get_decrypted_api_key,
            get_persona=collaborators.get_persona,
            save_conversation=collaborators.save_conversation,
            user_id="user_1",
            set_is_thinking=collaborators.set_is_thinking,
            on_messages_change=collaborators.on_messages_change,
            on_streaming_state_change=collaborators.on_streaming_state_change,
            on_error=collaborators.on_error,
            on_conversation_create=collaborators.on_conversation_create,
            settings=settings,
        )
        kwargs.update(overrides)
        return LocalChatStrategy(token_source, **kwargs)

    return factory


@pytest.fixture
def strategy(make_strategy, token_source):
    return make_strategy(token_source)


def reported_errors(collaborators):
    return [call.args[0] for call in collaborators.on_error.call_args_list]


def sent_roles(request: ChatStreamRequest):
    return [message.role for message in request.messages]


def system_message(content):
    return LLMMessage(role=Roles.SYSTEM, content=content)
