"""
Chat strategy interface.

A 'ChatStrategy' is the single object a chat view talks to. The view reads
'get_messages' and the streaming flags and calls the operations below without
knowing whether messages live in memory ('LocalChatStrategy') or in the
backend ('ServerChatStrategy').

Soft failures (limit reached, message not found, wrong retry target) are
delivered to 'on_error' and the call returns normally. Only errors that block
the whole flow are raised.
"""

from abc import ABC, abstractmethod
from collections.abc import Callable, Sequence

from loguru import logger

from chat_toolkit.conversation.data_models.attachment import Attachment
from chat_toolkit.conversation.data_models.message import ChatMessage
from chat_toolkit.exceptions import ChatError
from chat_toolkit.llms.base import ReasoningConfig


class ChatStrategy(ABC):
    def __init__(self, on_error: Callable[[Exception], None] | None = None) -> None:
        self.on_error = on_error

    @abstractmethod
    async def send_message(
        self,
        content: str,
        attachments: Sequence[Attachment] | None = None,
        persona_id: str | None = None,
        reasoning_config: ReasoningConfig | None = None,
        persona_prompt: str | None = None,
    ) -> None:
        pass

    @abstractmethod
    async def retry_user_message(self, message_id: str) -> None:
        pass

    @abstractmethod
    async def retry_assistant_message(self, message_id: str) -> None:
        pass

    @abstractmethod
    def stop_generation(self) -> None:
        pass

    @abstractmethod
    async def delete_message(self, message_id: str) -> None:
        pass

    @abstractmethod
    async def edit_message(self, message_id: str, content: str) -> None:
        pass

    @abstractmethod
    async def save_private_conversation(self) -> str | None:
        """Promote the current conversation to durable storage and return its id."""
        pass

    @abstractmethod
    def get_messages(self) -> list[ChatMessage]:
        pass

    @abstractmethod
    def is_streaming(self) -> bool:
        pass

    @abstractmethod
    def is_loading(self) -> bool:
        pass

    @abstractmethod
    def has_streaming_content(self) -> bool:
        pass

    def cleanup(self) -> None:
        """Release view-bound resources. Active streams are left to complete."""
        pass

    def _report(self, error: Exception, title: str | None = None) -> None:
        heading = title or (error.title if isinstance(error, ChatError) else "Chat error")
        if isinstance(error, ChatError):
            logger.warning(f"{heading}: {error}")
        else:
            logger.error(f"{heading}: {type(error).__name__}: {error}")
        if self.on_error is not None:
            self.on_error(error)
