"""
Local (private) chat strategy.

Messages live only in this object. Sending appends the user message and an
empty assistant placeholder, then streams the model's answer into the
placeholder through 'StreamingEngine'. Nothing is persisted until
'save_private_conversation' hands the whole session to the backend in one
call, after which the in-memory sequence is cleared.

Per instance the flow is

    Idle -> Sending -> Streaming -> Finished | Cancelled | Failed -> Idle

and only one generation may be in flight: a send or retry issued while one is
active is rejected with 'GenerationInProgressError'.
"""

from collections.abc import Awaitable, Callable, Sequence

from loguru import logger

from chat_toolkit.config.settings import ChatSettings, get_settings
from chat_toolkit.conversation.data_models.attachment import Attachment
from chat_toolkit.conversation.data_models.message import ChatMessage, PrivateMessagePayload
from chat_toolkit.conversation.store import (
    add_message,
    create_assistant_message,
    create_user_message,
    find_message,
    find_message_index,
    remove_message,
    update_message,
)
from chat_toolkit.exceptions import (
    GenerationInProgressError,
    InvalidRetryTargetError,
    MessageLimitReachedError,
    MessageNotFoundError,
    MissingCredentialsError,
    NoMessagesToSaveError,
    NoModelSelectedError,
    NotAuthenticatedError,
    PersistenceError,
)
from chat_toolkit.llms.base import (
    ChatStreamRequest,
    LLMMessage,
    ReasoningConfig,
    Roles,
    SelectedModel,
    StreamOptions,
    TokenSource,
)
from chat_toolkit.strategies.base import ChatStrategy
from chat_toolkit.streaming.engine import StreamingEngine

SEND_TITLE = "Cannot send message"
RETRY_TITLE = "Cannot retry message"


class LocalChatStrategy(ChatStrategy):
    """
    In-memory chat strategy that streams directly from a 'TokenSource'.

    Attributes:
        token_source: Streaming client used for every generation.
        user_id: Authenticated user, required to save the conversation.
        initial_persona_id: Persona recorded on the saved conversation.
        settings: Runtime settings (system prompt, stop finish reason).
    """

    def __init__(
        self,
        token_source: TokenSource,
        *,
        get_selected_model: Callable[[], SelectedModel | None],
        get_can_send_message: Callable[[], bool],
        get_decrypted_api_key: Callable[[str], Awaitable[str | None]],
        get_persona: Callable[[str], Awaitable[str | None]] | None = None,
        save_conversation: Callable[..., Awaitable[str | None]] | None = None,
        user_id: str | None = None,
        initial_persona_id: str | None = None,
        set_is_thinking: Callable[[bool], None] | None = None,
        on_messages_change: Callable[[list[ChatMessage]], None] | None = None,
        on_streaming_state_change: Callable[[bool], None] | None = None,
        on_error: Callable[[Exception], None] | None = None,
        on_conversation_create: Callable[[str], None] | None = None,
        settings: ChatSettings | None = None,
    ) -> None:
        super().__init__(on_error)
        self.token_source = token_source
        self.get_selected_model = get_selected_model
        self.get_can_send_message = get_can_send_message
        self.get_decrypted_api_key = get_decrypted_api_key
        self.get_persona = get_persona
        self.save_conversation = save_conversation
        self.user_id = user_id
        self.initial_persona_id = initial_persona_id
        self.set_is_thinking = set_is_thinking
        self.on_messages_change = on_messages_change
        self.on_streaming_state_change = on_streaming_state_change
        self.on_conversation_create = on_conversation_create
        self.settings = settings or get_settings()

        self._messages: list[ChatMessage] = []
        self._is_generating = False
        self.engine = StreamingEngine(
            token_source,
            update_message=self._apply_update,
            remove_message=self._apply_remove,
            on_streaming_state_change=self._notify_streaming_state_changed,
            stopped_finish_reason=self.settings.stopped_finish_reason,
        )

    # Notifications

    def _notify_messages_changed(self) -> None:
        if self.on_messages_change is not None:
            self.on_messages_change(list(self._messages))

    def _notify_streaming_state_changed(self, is_streaming: bool) -> None:
        if self.on_streaming_state_change is not None:
            self.on_streaming_state_change(is_streaming)

    def _apply_update(self, message_id: str, **fields) -> None:
        self._messages = update_message(self._messages, message_id, **fields)
        self._notify_messages_changed()

    def _apply_remove(self, message_id: str) -> None:
        self._messages = remove_message(self._messages, message_id)
        self._notify_messages_changed()

    def _append(self, message: ChatMessage) -> None:
        self._messages = add_message(self._messages, message)
        self._notify_messages_changed()

    def _set_thinking(self, value: bool) -> None:
        if self.set_is_thinking is not None:
            self.set_is_thinking(value)

    # Sending

    def _is_busy(self) -> bool:
        return self._is_generating or self.engine.is_streaming

    def _check_can_generate(self, title: str, action: str) -> SelectedModel | None:
        """
        Run the gates shared by sending and retrying.

        Returns the selected model, or None after reporting a soft failure.
        Raises 'NoModelSelectedError' when no model is selected.
        """
        if self._is_busy():
            self._report(GenerationInProgressError(title=title))
            return None

        selected_model = self.get_selected_model()
        if not self.get_can_send_message():
            self._report(MessageLimitReachedError(title=title))
            return None
        if selected_model is None:
            error = NoModelSelectedError(action, title=title)
            logger.warning(f"{title}: {error}")
            raise error
        return selected_model

    async def _resolve_persona_prompt(self, persona_id: str | None) -> str | None:
        if not persona_id or self.get_persona is None:
            return None
        try:
            return await self.get_persona(persona_id) or None
        except Exception as exc:
            logger.warning(f"Could not resolve persona {persona_id}, sending without it: {exc}")
            return None

    def _history(self, placeholder_id: str, model_id: str, persona_prompt: str | None = None) -> list[LLMMessage]:
        """
        Conversation sent to the model for the placeholder 'placeholder_id'.

        Context entries, the placeholder and empty assistant messages are left
        out. The default system prompt comes first, preceded by the persona
        prompt when there is one.
        """
        history = [
            LLMMessage(role=message.role, content=message.content, attachments=message.attachments)
            for message in self._messages
            if message.role != Roles.CONTEXT
            and message.id != placeholder_id
            and (message.role != Roles.ASSISTANT or message.content)
        ]
        system = [LLMMessage(role=Roles.SYSTEM, content=self.settings.system_prompt_for(model_id))]
        if persona_prompt:
            system.insert(0, LLMMessage(role=Roles.SYSTEM, content=persona_prompt))
        return [*system, *history]

    async def _generate(
        self,
        placeholder: ChatMessage,
        selected_model: SelectedModel,
        options: StreamOptions,
        failure_title: str,
        persona_prompt: str | None = None,
    ) -> None:
        provider = selected_model.provider

        async def build_request() -> ChatStreamRequest:
            api_key = await self.get_decrypted_api_key(provider)
            if not api_key:
                raise MissingCredentialsError(provider)
            return ChatStreamRequest(
                messages=self._history(placeholder.id, selected_model.model_id, persona_prompt),
                model=selected_model.model_id,
                provider=provider,
                credentials={provider: api_key},
                options=options,
            )

        try:
            await self.engine.stream(placeholder.id, build_request)
        except Exception as error:
            self._report(error, title=failure_title)

    async def send_message(
        self,
        content: str,
        attachments: Sequence[Attachment] | None = None,
        persona_id: str | None = None,
        reasoning_config: ReasoningConfig | None = None,
        persona_prompt: str | None = None,
    ) -> None:
        await self._send(content, attachments, persona_id, reasoning_config, persona_prompt)

    async def _send(
        self,
        content: str,
        attachments: Sequence[Attachment] | None,
        persona_id: str | None,
        reasoning_config: ReasoningConfig | None,
        persona_prompt: str | None,
    ) -> None:
        if not content.strip() and not attachments:
            return

        selected_model = self._check_can_generate(SEND_TITLE, "send messages")
        if selected_model is None:
            return

        self._is_generating = True
        self._set_thinking(True)
        try:
            persona_prompt = persona_prompt or await self._resolve_persona_prompt(persona_id)

            self._append(create_user_message(content, attachments, self._messages))
            placeholder = create_assistant_message(selected_model.model_id, selected_model.provider, self._messages)
            self._append(placeholder)
            logger.info(f"Sending message with {selected_model.provider}/{selected_model.model_id}")

            options = StreamOptions(
                reasoning_config=reasoning_config if reasoning_config and reasoning_config.enabled else None
            )
            await self._generate(placeholder, selected_model, options, "Failed to send message", persona_prompt)
        finally:
            self._is_generating = False
            self._set_thinking(False)

    def stop_generation(self) -> None:
        message_id = self.engine.stop()
        if message_id is not None:
            logger.info(f"Stopped generation of message {message_id}")

    # Retrying

    def _locate_retry_target(self, message_id: str, role: Roles) -> int | None:
        index = find_message_index(self._messages, message_id)
        if index is None:
            self._report(MessageNotFoundError(message_id))
            return None
        if self._messages[index].role != role:
            self._report(InvalidRetryTargetError(f"Can only retry {role} messages"))
            return None
        return index

    async def retry_user_message(self, message_id: str) -> None:
        """
        Drop the user message and everything after it, then send it again.

        Persona and reasoning settings are not stored on messages, so the
        retried message is sent without them.
        """
        index = self._locate_retry_target(message_id, Roles.USER)
        if index is None:
            return
        if self._is_busy():
            self._report(GenerationInProgressError(title=RETRY_TITLE))
            return

        target = self._messages[index]
        self._messages = self._messages[:index]
        self._notify_messages_changed()
        await self._send(target.content, target.attachments, None, None, None)

    async def retry_assistant_message(self, message_id: str) -> None:
        """Replace the assistant message (and everything after it) with a fresh response."""
        index = self._locate_retry_target(message_id, Roles.ASSISTANT)
        if index is None:
            return
        if index == 0:
            self._report(InvalidRetryTargetError("No previous user message found"))
            return
        if self._messages[index - 1].role != Roles.USER:
            self._report(InvalidRetryTargetError("Previous message is not a user message"))
            return
        if self._is_busy():
            self._report(GenerationInProgressError(title=RETRY_TITLE))
            return

        self._messages = self._messages[:index]
        self._notify_messages_changed()

        selected_model = self._check_can_generate(RETRY_TITLE, "retry messages")
        if selected_model is None:
            return

        self._is_generating = True
        self._set_thinking(True)
        try:
            placeholder = create_assistant_message(selected_model.model_id, selected_model.provider, self._messages)
            self._append(placeholder)
            logger.info(f"Retrying response with {selected_model.provider}/{selected_model.model_id}")
            await self._generate(placeholder, selected_model, StreamOptions(), "Failed to retry message")
        finally:
            self._is_generating = False
            self._set_thinking(False)

    # Editing

    async def delete_message(self, message_id: str) -> None:
        self._apply_remove(message_id)

    async def edit_message(self, message_id: str, content: str) -> None:
        self._apply_update(message_id, content=content)

    # Promotion

    async def save_private_conversation(self) -> str | None:
        """
        Save every in-memory message as a new durable conversation.

        This is a single all-or-nothing call. If it fails the messages stay in
        memory and the caller may try again.
        """
        if not self.user_id or self.save_conversation is None:
            raise NotAuthenticatedError()
        if not self._messages:
            self._report(NoMessagesToSaveError())
            return None
        if self._is_busy():
            self._report(GenerationInProgressError(title="Cannot save conversation"))
            return None

        payload = [PrivateMessagePayload.from_chat_message(message).to_wire() for message in self._messages]
        logger.info(f"Saving private conversation with {len(payload)} messages")
        try:
            conversation_id = await self.save_conversation(
                user_id=self.user_id,
                messages=payload,
                persona_id=self.initial_persona_id,
            )
        except Exception as exc:
            logger.error(f"Failed to save private conversation: {exc}")
            raise
        if not conversation_id:
            logger.error("Failed to save private conversation: backend returned no conversation id")
            raise PersistenceError("Failed to create conversation")

        logger.info(f"Private conversation saved as {conversation_id}")
        self._messages = []
        self._notify_messages_changed()
        if self.on_conversation_create is not None:
            self.on_conversation_create(conversation_id)
        return conversation_id

    # State

    def get_messages(self) -> list[ChatMessage]:
        return list(self._messages)

    def is_streaming(self) -> bool:
        return self.engine.is_streaming

    def is_loading(self) -> bool:
        return self._is_generating

    def has_streaming_content(self) -> bool:
        message_id = self.engine.message_id
        message = find_message(self._messages, message_id) if message_id else None
        return bool(message and (message.content or message.reasoning))
