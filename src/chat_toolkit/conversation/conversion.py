"""
Mapping between durable message records and 'ChatMessage', plus the
streaming-state predicates.

Durable records arrive from the backend subscription as plain mappings with
camelCase keys and the backend's own '_id' / '_creationTime' fields, either as
a list or wrapped in a paginated envelope ('{"page": [...], ...}').

Whether a response is still streaming cannot be read off a single field of a
durable record. It is inferred from the role, the record 'status' and the
presence of a terminal 'finishReason' or 'stopped' flag in its metadata. Keep
that inference here so every consumer agrees on it.
"""

from collections.abc import Mapping
from typing import Any

from loguru import logger
from pydantic import BaseModel, ValidationError

from chat_toolkit.conversation.data_models.message import STREAMING_FINISH_REASON, ChatMessage, MessageMetadata
from chat_toolkit.llms.base import Roles

TERMINAL_STATUSES = frozenset({"done", "completed", "error"})


class StreamingMessageInfo(BaseModel):
    id: str
    is_streaming: bool = True


def is_message_metadata(value: Any) -> bool:
    """True for values that can be read as message metadata: None or a mapping."""
    return value is None or isinstance(value, Mapping)


def _parse_metadata(value: Any) -> MessageMetadata | None:
    if value is None:
        return None
    if not is_message_metadata(value):
        logger.debug(f"Dropping message metadata of unexpected type {type(value).__name__}")
        return None
    try:
        return MessageMetadata.model_validate(value)
    except ValidationError as exc:
        logger.debug(f"Dropping malformed message metadata: {exc.error_count()} validation error(s)")
        return None


def convert_server_message(doc: Mapping[str, Any]) -> ChatMessage:
    created_at = doc.get("createdAt")
    if created_at is None:
        created_at = doc["_creationTime"]
    return ChatMessage(
        id=str(doc["_id"]),
        role=doc["role"],
        content=doc.get("content") or "",
        status=doc.get("status"),
        reasoning=doc.get("reasoning"),
        model=doc.get("model"),
        provider=doc.get("provider"),
        parent_id=doc.get("parentId"),
        is_main_branch=doc.get("isMainBranch") is not False,
        source_conversation_id=doc.get("sourceConversationId"),
        use_web_search=doc.get("useWebSearch"),
        attachments=doc.get("attachments"),
        citations=doc.get("citations"),
        metadata=_parse_metadata(doc.get("metadata")),
        created_at=int(created_at),
    )


def extract_messages_array(raw: Any) -> list[Any]:
    """Normalise a plain list or a paginated envelope to a list. Anything else yields []."""
    if isinstance(raw, (list, tuple)):
        return list(raw)
    if isinstance(raw, Mapping) and isinstance(raw.get("page"), (list, tuple)):
        return list(raw["page"])
    return []


def convert_server_messages(raw: Any) -> list[ChatMessage]:
    return [convert_server_message(doc) for doc in extract_messages_array(raw)]


def is_message_streaming(message: ChatMessage | Mapping[str, Any], is_generating: bool | None = None) -> bool:
    """
    Decide whether 'message' is an assistant response still being generated.

    For an in-memory 'ChatMessage' the caller supplies 'is_generating', since
    the message alone cannot tell a live stream from an abandoned one. For a
    durable record the record status must be in progress and its metadata must
    carry neither a terminal finish reason nor the stopped flag.
    """
    if isinstance(message, ChatMessage):
        if message.role != Roles.ASSISTANT or not is_generating or message.is_stopped:
            return False
        return message.finish_reason in (None, STREAMING_FINISH_REASON)

    if not isinstance(message, Mapping) or message.get("role") != Roles.ASSISTANT:
        return False
    status = message.get("status")
    if status is None or status in TERMINAL_STATUSES:
        return False
    metadata = message.get("metadata")
    if isinstance(metadata, Mapping):
        if metadata.get("stopped"):
            return False
        if metadata.get("finishReason") not in (None, STREAMING_FINISH_REASON):
            return False
    return True


def find_streaming_message(raw: Any) -> StreamingMessageInfo | None:
    for doc in extract_messages_array(raw):
        if is_message_streaming(doc):
            return StreamingMessageInfo(id=str(doc["_id"]))
    return None


def streaming_flags(raw: Any) -> tuple[bool, bool]:
    """Return '(is_streaming, has_streaming_content)' for a durable message collection."""
    for doc in extract_messages_array(raw):
        if is_message_streaming(doc):
            return True, bool(doc.get("content") or doc.get("reasoning"))
    return False, False
