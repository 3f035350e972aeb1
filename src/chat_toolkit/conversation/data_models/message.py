"""
Chat message data model.

'ChatMessage' is the in-memory record the UI renders in both chat modes. In
local mode the strategy creates and mutates it while tokens arrive; in server
mode it is produced from durable records by
'chat_toolkit.conversation.conversion'.

Messages form a tree via 'parent_id'; 'is_main_branch' marks the displayed
alternative among siblings. This package only carries those fields through,
branch selection belongs to the UI.

'metadata.finish_reason' doubles as the streaming marker: a placeholder is
created with the 'streaming' sentinel and receives its terminal reason when
the provider finishes or the user stops it.
"""

from typing import Literal

from pydantic import ConfigDict
from pydantic.alias_generators import to_camel

from chat_toolkit.conversation.data_models.attachment import Attachment
from chat_toolkit.conversation.data_models.base import WireModel
from chat_toolkit.conversation.data_models.citation import WebSearchCitation
from chat_toolkit.llms.base import Roles

STREAMING_FINISH_REASON = "streaming"


class MessageMetadata(WireModel):
    """Generation bookkeeping attached to a message. Unknown keys are kept as-is."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True, extra="allow")

    finish_reason: str | None = None
    stopped: bool | None = None
    token_count: int | None = None
    reasoning_token_count: int | None = None
    duration: float | None = None
    thinking_duration_ms: float | None = None
    search_query: str | None = None
    search_feature: str | None = None
    search_category: str | None = None
    search_mode: Literal["instant", "fast", "auto", "deep"] | None = None
    status: Literal["pending", "error"] | None = None


class ChatMessage(WireModel):
    """A single turn in a conversation."""

    id: str
    role: Roles
    content: str = ""
    reasoning: str | None = None
    model: str | None = None
    provider: str | None = None
    parent_id: str | None = None
    is_main_branch: bool = True
    status: str | None = None
    source_conversation_id: str | None = None
    use_web_search: bool | None = None
    attachments: list[Attachment] | None = None
    citations: list[WebSearchCitation] | None = None
    metadata: MessageMetadata | None = None
    created_at: int

    @property
    def finish_reason(self) -> str | None:
        return self.metadata.finish_reason if self.metadata else None

    @property
    def is_stopped(self) -> bool:
        return bool(self.metadata and self.metadata.stopped)


class PrivateMessagePayload(WireModel):
    """Serialized form of a local message submitted when a private chat is saved."""

    role: Roles
    content: str
    created_at: int
    model: str | None = None
    provider: str | None = None
    reasoning: str | None = None
    attachments: list[Attachment] | None = None
    citations: list[WebSearchCitation] | None = None
    metadata: MessageMetadata | None = None

    @classmethod
    def from_chat_message(cls, message: ChatMessage) -> "PrivateMessagePayload":
        return cls(
            role=message.role,
            content=message.content,
            created_at=message.created_at,
            model=message.model,
            provider=message.provider,
            reasoning=message.reasoning,
            attachments=message.attachments,
            citations=message.citations,
            metadata=message.metadata,
        )
