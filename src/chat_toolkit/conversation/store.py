"""
Pure operations over an ordered message sequence.

Every function returns a new list and leaves its input untouched. Messages
themselves are frozen, so a list returned here is a complete snapshot that can
be handed to the UI and diffed against the next one.
"""

from collections.abc import Sequence

from chat_toolkit.conversation.data_models.attachment import Attachment
from chat_toolkit.conversation.data_models.message import STREAMING_FINISH_REASON, ChatMessage, MessageMetadata
from chat_toolkit.llms.base import Roles
from chat_toolkit.utils.database import generate_uid
from chat_toolkit.utils.time import get_current_timestamp


def add_message(messages: Sequence[ChatMessage], message: ChatMessage) -> list[ChatMessage]:
    return [*messages, message]


def update_message(messages: Sequence[ChatMessage], message_id: str, **fields) -> list[ChatMessage]:
    """Merge 'fields' into the message with 'message_id'. Unknown ids leave the sequence unchanged."""
    if "id" in fields:
        raise ValueError("Message ids cannot be changed")
    return [message.model_copy(update=fields) if message.id == message_id else message for message in messages]


def remove_message(messages: Sequence[ChatMessage], message_id: str) -> list[ChatMessage]:
    return [message for message in messages if message.id != message_id]


def find_message_index(messages: Sequence[ChatMessage], message_id: str) -> int | None:
    return next((i for i, message in enumerate(messages) if message.id == message_id), None)


def find_message(messages: Sequence[ChatMessage], message_id: str) -> ChatMessage | None:
    index = find_message_index(messages, message_id)
    return messages[index] if index is not None else None


def next_timestamp(messages: Sequence[ChatMessage]) -> int:
    """Current time, clamped so it never sorts before the last message."""
    now = get_current_timestamp()
    return max(now, messages[-1].created_at) if messages else now


def create_user_message(
    content: str,
    attachments: Sequence[Attachment] | None = None,
    previous: Sequence[ChatMessage] = (),
) -> ChatMessage:
    return ChatMessage(
        id=generate_uid(),
        role=Roles.USER,
        content=content,
        attachments=list(attachments) if attachments else None,
        created_at=next_timestamp(previous),
    )


def create_assistant_message(model: str, provider: str, previous: Sequence[ChatMessage] = ()) -> ChatMessage:
    """Empty assistant placeholder, marked as streaming until its stream ends."""
    return ChatMessage(
        id=generate_uid(),
        role=Roles.ASSISTANT,
        content="",
        model=model,
        provider=provider,
        metadata=MessageMetadata(finish_reason=STREAMING_FINISH_REASON),
        created_at=next_timestamp(previous),
    )
