"""
Server-backed chat strategy.

In server mode the backend owns the conversation: it stores messages, runs
the model and streams tokens into durable records that every client sees
through its subscription. This strategy only forwards user actions to the
backend callables in 'ServerChatActions'. It holds no message state, so
'get_messages' is always empty and the streaming flags come from the caller,
typically derived with 'chat_toolkit.conversation.conversion.streaming_flags'
over the subscribed records.
"""

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Any

from loguru import logger
from pydantic import BaseModel

from chat_toolkit.conversation.data_models.attachment import Attachment
from chat_toolkit.conversation.data_models.message import ChatMessage
from chat_toolkit.exceptions import ChatError
from chat_toolkit.llms.base import ReasoningConfig
from chat_toolkit.strategies.base import ChatStrategy


class ModelOptions(BaseModel):
    """Generation settings forwarded with every server-side send or retry."""

    model: str | None = None
    provider: str | None = None
    reasoning_config: ReasoningConfig | None = None
    temperature: float | None = None
    max_tokens: int | None = None
    top_p: float | None = None
    frequency_penalty: float | None = None
    presence_penalty: float | None = None
    web_search_max_results: int | None = None


@dataclass(frozen=True)
class ServerChatActions:
    """Backend mutations and actions the strategy forwards to. All are awaited with keyword arguments."""

    send_message: Callable[..., Awaitable[Any]]
    stop_generation: Callable[..., Awaitable[Any]]
    delete_message: Callable[..., Awaitable[Any]]
    edit_message: Callable[..., Awaitable[Any]]
    retry_from_message: Callable[..., Awaitable[Any]] | None = None


class ServerChatStrategy(ChatStrategy):
    def __init__(
        self,
        conversation_id: str,
        actions: ServerChatActions,
        *,
        model_options: ModelOptions | None = None,
        get_is_streaming: Callable[[], bool] | None = None,
        get_is_loading: Callable[[], bool] | None = None,
        get_has_streaming_content: Callable[[], bool] | None = None,
        on_error: Callable[[Exception], None] | None = None,
    ) -> None:
        super().__init__(on_error)
        self.conversation_id = conversation_id
        self.actions = actions
        self.model_options = model_options or ModelOptions()
        self.get_is_streaming = get_is_streaming
        self.get_is_loading = get_is_loading
        self.get_has_streaming_content = get_has_streaming_content
        self._pending: set[asyncio.Task[Any]] = set()

    async def _forward(self, name: str, action: Callable[..., Awaitable[Any]], **kwargs: Any) -> Any:
        try:
            return await action(**kwargs)
        except Exception as error:
            self._report(error, title=f"Failed to {name}")
            raise

    def _generation_options(self, reasoning_config: ReasoningConfig | None = None) -> dict[str, Any]:
        options = self.model_options.model_dump(exclude={"reasoning_config"}, exclude_none=True)
        options["reasoning_config"] = reasoning_config or self.model_options.reasoning_config
        return options

    async def send_message(
        self,
        content: str,
        attachments: Sequence[Attachment] | None = None,
        persona_id: str | None = None,
        reasoning_config: ReasoningConfig | None = None,
        persona_prompt: str | None = None,
    ) -> None:
        if not content.strip() and not attachments:
            return
        logger.info(f"Forwarding message to conversation {self.conversation_id}")
        await self._forward(
            "send message",
            self.actions.send_message,
            conversation_id=self.conversation_id,
            content=content,
            attachments=list(attachments) if attachments else None,
            persona_id=persona_id,
            persona_prompt=persona_prompt,
            **self._generation_options(reasoning_config),
        )

    async def _retry(self, message_id: str) -> None:
        if self.actions.retry_from_message is None:
            self._report(ChatError("Retry is not available for this conversation", title="Cannot retry message"))
            return
        await self._forward(
            "retry message",
            self.actions.retry_from_message,
            conversation_id=self.conversation_id,
            message_id=message_id,
            **self._generation_options(),
        )

    async def retry_user_message(self, message_id: str) -> None:
        await self._retry(message_id)

    async def retry_assistant_message(self, message_id: str) -> None:
        await self._retry(message_id)

    def stop_generation(self) -> None:
        """
        Ask the backend to stop. Failures go to 'on_error'.

        Inside a running event loop the request runs in the background (see
        'wait_pending'). Without one it runs to completion before returning.
        """

        async def stop() -> None:
            await self.actions.stop_generation(conversation_id=self.conversation_id)

        logger.info(f"Requesting stop for conversation {self.conversation_id}")
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            try:
                asyncio.run(stop())
            except Exception as error:
                self._report(error, title="Failed to stop generation")
            return
        task = loop.create_task(stop())
        self._pending.add(task)
        task.add_done_callback(self._on_stop_done)

    def _on_stop_done(self, task: asyncio.Task[Any]) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if isinstance(error, Exception):
            self._report(error, title="Failed to stop generation")

    async def delete_message(self, message_id: str) -> None:
        await self._forward("delete message", self.actions.delete_message, message_id=message_id)

    async def edit_message(self, message_id: str, content: str) -> None:
        """Replace the message content; the backend regenerates the reply with the model options."""
        await self._forward(
            "edit message",
            self.actions.edit_message,
            message_id=message_id,
            content=content,
            **self._generation_options(),
        )

    async def save_private_conversation(self) -> str | None:
        raise ChatError("Server conversations are already saved", title="Cannot save conversation")

    def get_messages(self) -> list[ChatMessage]:
        return []

    def is_streaming(self) -> bool:
        return bool(self.get_is_streaming and self.get_is_streaming())

    def is_loading(self) -> bool:
        return bool(self.get_is_loading and self.get_is_loading())

    def has_streaming_content(self) -> bool:
        return bool(self.get_has_streaming_content and self.get_has_streaming_content())

    async def wait_pending(self) -> None:
        """Wait for background stop requests issued by 'stop_generation'."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)
