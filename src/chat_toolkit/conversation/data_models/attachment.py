"""
Attachment references.

Uploading and text extraction happen before a message reaches the strategy;
here an attachment is only a resolved reference that travels with its user
message to the model and to durable storage. Attachments never change after
the message is created.
"""

from typing import Literal

from chat_toolkit.conversation.data_models.base import WireModel

AttachmentType = Literal["image", "pdf", "text", "audio", "video"]


class Attachment(WireModel):
    """A file attached to a user message."""

    type: AttachmentType
    url: str
    name: str = ""
    size: float = 0
    content: str | None = None
    thumbnail: str | None = None
    storage_id: str | None = None
    mime_type: str | None = None
