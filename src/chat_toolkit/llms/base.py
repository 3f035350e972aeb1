"""
Core LLM abstractions and the token-source contract.

Strategies never talk to a provider SDK directly. They hand a
'ChatStreamRequest' to a 'TokenSource', which reports progress through
'StreamCallbacks': content tokens, reasoning tokens, citation sets, and a
finish reason, or an error. 'stop_streaming' asks the source to abort the
active call.

'LLM' is the async-generator flavour of a backend ('generate_stream' yields
'LLMChunk' objects). 'chat_toolkit.llms.token_source.LLMTokenSource' adapts
any 'LLM' to the callback contract, so a backend only has to implement one
generator to be usable by the local chat strategy.
"""

from abc import ABC, abstractmethod
from collections.abc import AsyncGenerator, Callable
from dataclasses import dataclass
from enum import StrEnum
from typing import Literal

from pydantic import BaseModel, ConfigDict, Field

from chat_toolkit.conversation.data_models.attachment import Attachment
from chat_toolkit.conversation.data_models.citation import WebSearchCitation


class Roles(StrEnum):
    """Conversation roles. 'CONTEXT' entries are UI-only and never sent to a model."""

    SYSTEM = "system"
    USER = "user"
    ASSISTANT = "assistant"
    CONTEXT = "context"


class ReasoningConfig(BaseModel):
    enabled: bool = False
    effort: Literal["low", "medium", "high"] | None = None
    max_tokens: int | None = None


class SelectedModel(BaseModel):
    """The model currently chosen in the model picker."""

    model_config = ConfigDict(protected_namespaces=())

    model_id: str
    provider: str


class LLMMessage(BaseModel):
    """A single message of the history sent to a model."""

    role: Roles = Roles.USER
    content: str = ""
    attachments: list[Attachment] | None = None


class StreamOptions(BaseModel):
    temperature: float | None = None
    max_tokens: int | None = None
    top_p: float | None = None
    reasoning_config: ReasoningConfig | None = None


class StreamTokenUsage(BaseModel):
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    reasoning_tokens: int | None = None
    cached_input_tokens: int | None = None


class ChatStreamRequest(BaseModel):
    """
    Everything a token source needs for one streaming call.

    'credentials' maps provider name to its decrypted API key. Only the entry
    for 'provider' is populated by the local strategy.
    """

    messages: list[LLMMessage]
    model: str
    provider: str
    credentials: dict[str, str] = Field(default_factory=dict)
    options: StreamOptions = Field(default_factory=StreamOptions)


@dataclass(frozen=True)
class StreamCallbacks:
    """
    Progress sinks for one streaming call.

    Callbacks are invoked synchronously and in arrival order; each one must be
    fully handled before the next chunk is processed. 'on_error' may raise the
    reported error back; a source should let it propagate out of its call.
    """

    on_content: Callable[[str], None]
    on_reasoning: Callable[[str], None]
    on_citations: Callable[[list[WebSearchCitation]], None]
    on_finish: Callable[[str, StreamTokenUsage | None], None]
    on_error: Callable[[BaseException], None]


class TokenSource(ABC):
    """Abstract streaming client consumed by the streaming engine."""

    @abstractmethod
    async def stream_chat(self, request: ChatStreamRequest, callbacks: StreamCallbacks) -> None:
        """Run one streaming call, reporting progress through 'callbacks'.

        Returns once the provider has finished or failed. An aborted call may
        either raise an abort error or return after reporting nothing further.
        """
        pass

    @abstractmethod
    def stop_streaming(self) -> None:
        """Ask the active call to abort. Must be a no-op when nothing is streaming."""
        pass


class LLMChunk(BaseModel):
    """A partial response yielded by 'LLM.generate_stream'."""

    content: str = ""
    reasoning: str = ""
    citations: list[WebSearchCitation] | None = None
    finish_reason: str | None = None
    usage: StreamTokenUsage | None = None


class LLM(ABC):
    """
    Abstract base class for language model backends.

    Concrete implementations adapt a specific API client to a common
    interface. Only 'generate_stream' is required; 'generate' collects the
    stream into a single message.
    """

    @abstractmethod
    def generate_stream(
        self, conversation: list[LLMMessage], options: StreamOptions | None = None
    ) -> AsyncGenerator[LLMChunk, None]:
        """Yield response chunks as they arrive from the model."""
        pass

    async def generate(self, conversation: list[LLMMessage], options: StreamOptions | None = None) -> LLMMessage:
        """Return a single complete response for the given conversation."""
        content = ""
        async for chunk in self.generate_stream(conversation, options):
            content += chunk.content
        return LLMMessage(role=Roles.ASSISTANT, content=content)
