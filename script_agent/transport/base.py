"""Transport base class and the values transports exchange with the orchestrator."""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from enum import Enum

from script_agent.callbacks import ChatCallback, NullCallback
from script_agent.exceptions import TransportError
from script_agent.scripts import ScriptBlockExtractor
from script_agent.types import (
    AssembledMessage,
    CancellationToken,
    ContentBlockDelta,
    ContentBlockStart,
    Message,
    StreamEvent,
    TokenUsage,
    ToolUseBlock,
)


class OutcomeStatus(str, Enum):
    OK = "ok"
    CANCELLED = "cancelled"
    FAILED = "failed"
    TIMEOUT = "timeout"


@dataclass
class TransportOutcome:
    """Result of one ``Transport.send`` exchange."""

    status: OutcomeStatus = OutcomeStatus.OK
    message: AssembledMessage | None = None
    text: str = ""
    error: str = ""
    usage: TokenUsage = field(default_factory=TokenUsage)
    cost: float | None = None  # reported by the subprocess CLI only
    num_turns: int = 0
    session_id: str = ""

    @property
    def ok(self) -> bool:
        return self.status == OutcomeStatus.OK

    @property
    def cancelled(self) -> bool:
        return self.status == OutcomeStatus.CANCELLED

    @property
    def has_content(self) -> bool:
        if self.text.strip():
            return True
        return self.message is not None and bool(self.message.content)

    @classmethod
    def failed(cls, error: str) -> "TransportOutcome":
        return cls(status=OutcomeStatus.FAILED, error=error)

    @classmethod
    def timed_out(cls, error: str) -> "TransportOutcome":
        return cls(status=OutcomeStatus.TIMEOUT, error=error)

    @classmethod
    def cancelled_outcome(cls) -> "TransportOutcome":
        return cls(status=OutcomeStatus.CANCELLED)


@dataclass
class Conversation:
    """One logical conversation owned by the orchestrator.

    ``messages`` is the transcript sent on every direct request;
    ``resume_session_id`` is the CLI session to resume. The conversation is
    bound to the transport kind that first used it.
    """

    messages: list[Message] = field(default_factory=list)
    resume_session_id: str = ""
    transport_kind: str = ""

    def bind(self, kind: str) -> None:
        if not self.transport_kind:
            self.transport_kind = kind
        elif self.transport_kind != kind:
            raise TransportError(
                f"Conversation belongs to the {self.transport_kind} transport, not {kind}"
            )

    def append(self, message: Message) -> None:
        self.messages.append(message)

    def clear(self) -> None:
        self.messages = []
        self.resume_session_id = ""
        self.transport_kind = ""


class Transport(ABC):
    """Abstract base class for model transports."""

    kind: str = ""

    def __init__(
        self,
        cancel_token: CancellationToken | None = None,
        callback: ChatCallback | None = None,
    ):
        self.cancel_token = cancel_token or CancellationToken()
        self.callback = callback or NullCallback()
        self.system_prompt = ""
        self.last_error = ""

    @abstractmethod
    async def connect(self) -> bool:
        pass

    @abstractmethod
    def is_connected(self) -> bool:
        pass

    @abstractmethod
    async def send(self, input: str, conversation: Conversation) -> TransportOutcome:
        """Run one exchange.

        ``conversation.messages`` must already end with the user turn for
        ``input``; subprocess transports send ``input`` alone.
        """

    @abstractmethod
    def cancel(self) -> None:
        """Abort an in-flight exchange. Idempotent."""

    @abstractmethod
    async def disconnect(self) -> None:
        pass

    def reset_conversation(self) -> None:
        """Drop any conversation state held outside the :class:`Conversation`."""


class TextRelay:
    """Forward streamed text to the callback with script blocks held back."""

    def __init__(self, callback: ChatCallback, extractor: ScriptBlockExtractor | None = None):
        self.callback = callback
        self.extractor = extractor or ScriptBlockExtractor()
        self.text = ""
        self._emitted = 0
        self._first = True

    def on_event(self, event: StreamEvent) -> None:
        if isinstance(event, ContentBlockStart) and isinstance(event.block, ToolUseBlock):
            self.callback.on_tool_use(event.block.name, "")
        elif isinstance(event, ContentBlockDelta) and event.delta_type == "text_delta":
            self.push(event.payload)

    def push(self, delta: str) -> None:
        if not delta:
            return
        if self._first:
            self.callback.on_thinking_done()
            self._first = False
        self.text += delta
        visible = self.extractor.visible_prefix(self.text)
        if len(visible) > self._emitted:
            self.callback.on_text(visible[self._emitted:])
            self._emitted = len(visible)

    def flush(self) -> None:
        """Emit text held back as a possible partial tag once the stream is over."""
        visible = self.extractor.strip_blocks(self.text)
        cut = visible.find(f"<{self.extractor.tag}>")
        if cut >= 0:
            visible = visible[:cut]
        if len(visible) > self._emitted:
            self.callback.on_text(visible[self._emitted:])
            self._emitted = len(visible)
