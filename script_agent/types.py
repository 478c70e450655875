"""Core data types shared by the decoder, transports and orchestrator."""

import os
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Awaitable, Callable, Union


# Content blocks


@dataclass
class TextBlock:
    """Plain assistant or user text."""

    text: str = ""


@dataclass
class ToolUseBlock:
    """The model asking for a tool invocation."""

    id: str = ""
    name: str = ""
    input: Any = field(default_factory=dict)  # parsed JSON, or the raw string if unparseable


@dataclass
class ToolResultBlock:
    """Response to a tool invocation."""

    tool_use_id: str = ""
    content: str = ""
    is_error: bool = False


@dataclass
class ThinkingBlock:
    """Reasoning trace (extended thinking)."""

    thinking: str = ""


ContentBlock = Union[TextBlock, ToolUseBlock, ToolResultBlock, ThinkingBlock]


def content_block_from_dict(data: dict[str, Any]) -> ContentBlock | None:
    """Parse a wire content block; unknown types yield ``None``."""
    block_type = data.get("type", "")
    if block_type == "text":
        return TextBlock(text=str(data.get("text", "")))
    if block_type == "tool_use":
        return ToolUseBlock(
            id=str(data.get("id", "")),
            name=str(data.get("name", "")),
            input=data.get("input", {}),
        )
    if block_type == "tool_result":
        content = data.get("content", "")
        if not isinstance(content, str):
            # Structured result content: keep the text parts only.
            parts = content if isinstance(content, list) else []
            content = "".join(
                str(part.get("text", "")) for part in parts if isinstance(part, dict)
            )
        return ToolResultBlock(
            tool_use_id=str(data.get("tool_use_id", "")),
            content=content,
            is_error=bool(data.get("is_error", False)),
        )
    if block_type == "thinking":
        return ThinkingBlock(thinking=str(data.get("thinking", "")))
    return None


def content_block_to_dict(block: ContentBlock) -> dict[str, Any]:
    """Serialize a content block to its wire shape."""
    if isinstance(block, TextBlock):
        return {"type": "text", "text": block.text}
    if isinstance(block, ToolUseBlock):
        return {"type": "tool_use", "id": block.id, "name": block.name, "input": block.input}
    if isinstance(block, ToolResultBlock):
        data: dict[str, Any] = {
            "type": "tool_result",
            "tool_use_id": block.tool_use_id,
            "content": block.content,
        }
        if block.is_error:
            data["is_error"] = True
        return data
    if isinstance(block, ThinkingBlock):
        return {"type": "thinking", "thinking": block.thinking}
    raise TypeError(f"Unknown content block: {block!r}")


def join_text(blocks: "tuple[ContentBlock, ...] | list[ContentBlock]") -> str:
    """Concatenate all text blocks, newline separated."""
    return "\n".join(block.text for block in blocks if isinstance(block, TextBlock))


# Messages


class Role(str, Enum):
    USER = "user"
    ASSISTANT = "assistant"


@dataclass(frozen=True)
class Message:
    """A message in a conversation transcript. Immutable once built."""

    role: Role
    content: tuple[ContentBlock, ...] = ()

    @classmethod
    def text_message(cls, role: Role, text: str) -> "Message":
        return cls(role=role, content=(TextBlock(text=text),))

    @classmethod
    def user(cls, text: str) -> "Message":
        return cls.text_message(Role.USER, text)

    @classmethod
    def assistant(cls, blocks: "list[ContentBlock] | tuple[ContentBlock, ...]") -> "Message":
        return cls(role=Role.ASSISTANT, content=tuple(blocks))

    @classmethod
    def tool_result(cls, tool_use_id: str, result: str, is_error: bool = False) -> "Message":
        return cls(
            role=Role.USER,
            content=(ToolResultBlock(tool_use_id=tool_use_id, content=result, is_error=is_error),),
        )

    def text(self) -> str:
        return join_text(self.content)

    def tool_uses(self) -> list[ToolUseBlock]:
        return [block for block in self.content if isinstance(block, ToolUseBlock)]

    def has_tool_use(self) -> bool:
        return bool(self.tool_uses())

    def to_api(self) -> dict[str, Any]:
        return {
            "role": self.role.value,
            "content": [content_block_to_dict(block) for block in self.content],
        }


# Token usage


@dataclass
class TokenUsage:
    """Token counters for one exchange or an accumulated run."""

    input_tokens: int = 0
    output_tokens: int = 0
    cache_read_tokens: int = 0
    cache_creation_tokens: int = 0

    @property
    def total_tokens(self) -> int:
        return self.input_tokens + self.output_tokens

    def __add__(self, other: "TokenUsage") -> "TokenUsage":
        return TokenUsage(
            input_tokens=self.input_tokens + other.input_tokens,
            output_tokens=self.output_tokens + other.output_tokens,
            cache_read_tokens=self.cache_read_tokens + other.cache_read_tokens,
            cache_creation_tokens=self.cache_creation_tokens + other.cache_creation_tokens,
        )

    def __iadd__(self, other: "TokenUsage") -> "TokenUsage":
        self.input_tokens += other.input_tokens
        self.output_tokens += other.output_tokens
        self.cache_read_tokens += other.cache_read_tokens
        self.cache_creation_tokens += other.cache_creation_tokens
        return self

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "TokenUsage":
        data = data or {}
        return cls(
            input_tokens=int(data.get("input_tokens") or 0),
            output_tokens=int(data.get("output_tokens") or 0),
            cache_read_tokens=int(data.get("cache_read_input_tokens") or 0),
            cache_creation_tokens=int(data.get("cache_creation_input_tokens") or 0),
        )

    def to_dict(self) -> dict[str, int]:
        return {
            "input_tokens": self.input_tokens,
            "output_tokens": self.output_tokens,
            "cache_read_input_tokens": self.cache_read_tokens,
            "cache_creation_input_tokens": self.cache_creation_tokens,
        }


# Stream events


class StopReason(str, Enum):
    END_TURN = "end_turn"
    MAX_TOKENS = "max_tokens"
    TOOL_USE = "tool_use"
    STOP_SEQUENCE = "stop_sequence"

    @classmethod
    def parse(cls, value: str | None) -> "StopReason":
        try:
            return cls(value or "")
        except ValueError:
            return cls.END_TURN


@dataclass
class MessageStart:
    message_id: str = ""
    model: str = ""
    usage: TokenUsage | None = None


@dataclass
class ContentBlockStart:
    index: int = 0
    block: ContentBlock | None = None


@dataclass
class ContentBlockDelta:
    index: int = 0
    delta_type: str = ""  # "text_delta", "input_json_delta", "thinking_delta"
    payload: str = ""


@dataclass
class ContentBlockStop:
    index: int = 0


@dataclass
class MessageDelta:
    stop_reason: StopReason | None = None
    usage: TokenUsage | None = None


@dataclass
class MessageStop:
    pass


@dataclass
class Ping:
    pass


@dataclass
class StreamError:
    message: str = "Unknown streaming error"


StreamEvent = Union[
    MessageStart,
    ContentBlockStart,
    ContentBlockDelta,
    ContentBlockStop,
    MessageDelta,
    MessageStop,
    Ping,
    StreamError,
]


@dataclass
class AssembledMessage:
    """Final message produced by the stream decoder."""

    id: str = ""
    model: str = ""
    stop_reason: StopReason | None = None
    content: list[ContentBlock] = field(default_factory=list)
    usage: TokenUsage = field(default_factory=TokenUsage)

    def text(self) -> str:
        return join_text(self.content)

    def to_message(self) -> Message:
        return Message.assistant(self.content)


# Script execution


@dataclass
class ScriptBlock:
    """An embedded script and the raw text that preceded it."""

    code: str = ""
    preceding_text: str = ""


@dataclass
class ScriptResult:
    """Result of executing a script in the host environment."""

    success: bool = False
    output: str = ""
    error: str = ""
    execution_time_ms: float = 0.0

    @classmethod
    def success_result(cls, output: str) -> "ScriptResult":
        return cls(success=True, output=output)

    @classmethod
    def error_result(cls, error: str) -> "ScriptResult":
        return cls(success=False, error=error)


ScriptExecutorFn = Callable[[str], "ScriptResult | Awaitable[ScriptResult]"]


# Orchestrator state and results


class ChatState(str, Enum):
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    IDLE = "idle"
    PROCESSING = "processing"
    CANCELLED = "cancelled"


@dataclass
class ProcessResult:
    """Outcome of one ``process`` call, the only thing callers receive."""

    success: bool = False
    response: str = ""
    turns_used: int = 0
    cost: float | None = None
    error: str | None = None
    cancelled: bool = False


class AuthType(str, Enum):
    NONE = "none"
    SYSTEM = "system"
    OAUTH = "oauth"
    API_KEY = "api_key"

    @classmethod
    def parse(cls, value: str | None) -> "AuthType":
        try:
            return cls((value or "").strip().lower())
        except ValueError:
            return cls.NONE


@dataclass
class AuthCredentials:
    """Credentials supplied by the caller."""

    type: AuthType = AuthType.NONE
    api_key: str = ""
    api_base_url: str = ""

    def is_configured(self) -> bool:
        if self.type == AuthType.NONE:
            return False
        if self.type == AuthType.SYSTEM:
            return True
        return bool(self.api_key)

    def requires_key(self) -> bool:
        return self.type in (AuthType.OAUTH, AuthType.API_KEY)

    def resolve_api_key(self) -> str:
        """Return the explicit key, falling back to the environment."""
        if self.api_key:
            return self.api_key
        return os.environ.get("ANTHROPIC_API_KEY") or os.environ.get("CLAUDE_API_KEY") or ""


class CancellationToken:
    """Thread-safe cooperative cancellation flag."""

    def __init__(self) -> None:
        self._event = threading.Event()

    def cancel(self) -> None:
        self._event.set()

    def reset(self) -> None:
        self._event.clear()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()
