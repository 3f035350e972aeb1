"""
Error taxonomy for chat strategies.

Every error carries a short user-facing 'title' (the toast heading a UI shows)
and uses its message as the description. Strategies raise only the errors that
block a whole flow ('NoModelSelectedError', 'NotAuthenticatedError'); the
others are reported through the strategy's 'on_error' sink and the call
returns normally.

'is_abort_error' separates user-initiated cancellation from genuine transport
failures. An abort is an expected outcome of 'stop_generation' and is never
reported.
"""

import asyncio

__all__ = [
    "ChatError",
    "GenerationInProgressError",
    "InvalidRetryTargetError",
    "MessageLimitReachedError",
    "MessageNotFoundError",
    "MissingCredentialsError",
    "NoMessagesToSaveError",
    "NoModelSelectedError",
    "NotAuthenticatedError",
    "PersistenceError",
    "StreamAbortedError",
    "is_abort_error",
]

STOPPED_BY_USER = "StoppedByUser"


class ChatError(RuntimeError):
    """Base class for all chat strategy errors."""

    default_title = "Chat error"

    def __init__(self, description: str, title: str | None = None) -> None:
        super().__init__(description)
        self.description = description
        self.title = title or self.default_title


class MessageLimitReachedError(ChatError):
    default_title = "Cannot send message"

    def __init__(self, title: str | None = None) -> None:
        super().__init__("Message limit reached. Please sign in to continue chatting.", title)


class NoModelSelectedError(ChatError):
    default_title = "Cannot send message"

    def __init__(self, action: str = "send messages", title: str | None = None) -> None:
        super().__init__(f"No model selected. Please select a model in the model picker to {action}.", title)


class GenerationInProgressError(ChatError):
    default_title = "Cannot send message"

    def __init__(self, title: str | None = None) -> None:
        super().__init__("A response is already being generated. Stop it or wait for it to finish.", title)


class MessageNotFoundError(ChatError):
    default_title = "Cannot retry message"

    def __init__(self, message_id: str, title: str | None = None) -> None:
        super().__init__("Message not found", title)
        self.message_id = message_id


class InvalidRetryTargetError(ChatError):
    default_title = "Cannot retry message"


class MissingCredentialsError(ChatError):
    default_title = "Failed to send message"

    def __init__(self, provider: str) -> None:
        super().__init__(f"No valid API key found for {provider}")
        self.provider = provider


class NotAuthenticatedError(ChatError):
    default_title = "Cannot save conversation"

    def __init__(self) -> None:
        super().__init__("Cannot save: User not authenticated")


class NoMessagesToSaveError(ChatError):
    default_title = "No messages to save"

    def __init__(self) -> None:
        super().__init__("Start a private conversation first")


class PersistenceError(ChatError):
    default_title = "Failed to save conversation"


class StreamAbortedError(ChatError):
    """Raised by a token source whose stream was stopped on request."""

    default_title = "Generation stopped"

    def __init__(self, description: str = STOPPED_BY_USER) -> None:
        super().__init__(description)


def is_abort_error(error: BaseException) -> bool:
    """Return True when 'error' signals a user-initiated stop rather than a failure."""
    if isinstance(error, (StreamAbortedError, asyncio.CancelledError)):
        return True
    if type(error).__name__ == "AbortError" or getattr(error, "name", None) == "AbortError":
        return True
    message = str(error)
    return message == STOPPED_BY_USER or "AbortError" in message
