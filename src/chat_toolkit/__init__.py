"""
Chat message streaming and strategy engine.

A chat view binds to one 'ChatStrategy':

    from chat_toolkit import LocalChatStrategy, ServerChatStrategy

'LocalChatStrategy' streams from a 'TokenSource' into an in-memory message
list and can promote the session to durable storage once.
'ServerChatStrategy' forwards the same operations to backend actions.
"""

from chat_toolkit.conversation.conversion import (
    convert_server_message,
    convert_server_messages,
    extract_messages_array,
    find_streaming_message,
    is_message_streaming,
    streaming_flags,
)
from chat_toolkit.conversation.data_models.attachment import Attachment
from chat_toolkit.conversation.data_models.citation import WebSearchCitation
from chat_toolkit.conversation.data_models.message import ChatMessage, MessageMetadata, PrivateMessagePayload
from chat_toolkit.exceptions import ChatError, is_abort_error
from chat_toolkit.llms.base import LLM, ReasoningConfig, Roles, SelectedModel, TokenSource
from chat_toolkit.llms.token_source import LLMTokenSource
from chat_toolkit.strategies.base import ChatStrategy
from chat_toolkit.strategies.local import LocalChatStrategy
from chat_toolkit.strategies.server import ModelOptions, ServerChatActions, ServerChatStrategy
from chat_toolkit.streaming.engine import StreamingEngine, StreamState

__all__ = [
    "LLM",
    "Attachment",
    "ChatError",
    "ChatMessage",
    "ChatStrategy",
    "LLMTokenSource",
    "LocalChatStrategy",
    "MessageMetadata",
    "ModelOptions",
    "PrivateMessagePayload",
    "ReasoningConfig",
    "Roles",
    "SelectedModel",
    "ServerChatActions",
    "ServerChatStrategy",
    "StreamState",
    "StreamingEngine",
    "TokenSource",
    "WebSearchCitation",
    "convert_server_message",
    "convert_server_messages",
    "extract_messages_array",
    "find_streaming_message",
    "is_abort_error",
    "is_message_streaming",
    "streaming_flags",
]
