"""Incremental decoder for streamed message events (SSE or NDJSON)."""

import json
from typing import Any, Callable

from script_agent.logging import get_logger
from script_agent.types import (
    AssembledMessage,
    ContentBlock,
    ContentBlockDelta,
    ContentBlockStart,
    ContentBlockStop,
    MessageDelta,
    MessageStart,
    MessageStop,
    Ping,
    StopReason,
    StreamError,
    StreamEvent,
    TextBlock,
    ThinkingBlock,
    TokenUsage,
    ToolUseBlock,
    content_block_from_dict,
)

log = get_logger(__name__)

STREAM_END_SENTINEL = "[DONE]"

EventCallback = Callable[[StreamEvent], None]


def parse_stream_event(data: dict[str, Any]) -> StreamEvent | None:
    """Classify one decoded JSON object by its announced stage.

    Returns ``None`` for stages this decoder does not know about.
    """
    stage = data.get("type", "")

    if stage == "message_start":
        message = data.get("message") or {}
        usage = message.get("usage")
        return MessageStart(
            message_id=str(message.get("id", "")),
            model=str(message.get("model", "")),
            usage=TokenUsage.from_dict(usage) if isinstance(usage, dict) else None,
        )

    if stage == "content_block_start":
        raw_block = data.get("content_block")
        block = content_block_from_dict(raw_block) if isinstance(raw_block, dict) else None
        return ContentBlockStart(index=int(data.get("index", 0)), block=block)

    if stage == "content_block_delta":
        delta = data.get("delta") or {}
        delta_type = str(delta.get("type", ""))
        if delta_type == "text_delta":
            payload = delta.get("text", "")
        elif delta_type == "input_json_delta":
            payload = delta.get("partial_json", "")
        elif delta_type == "thinking_delta":
            payload = delta.get("thinking", "")
        else:
            payload = ""
        return ContentBlockDelta(
            index=int(data.get("index", 0)),
            delta_type=delta_type,
            payload=str(payload or ""),
        )

    if stage == "content_block_stop":
        return ContentBlockStop(index=int(data.get("index", 0)))

    if stage == "message_delta":
        delta = data.get("delta") or {}
        stop_reason = delta.get("stop_reason")
        usage = data.get("usage")
        return MessageDelta(
            stop_reason=StopReason.parse(stop_reason) if stop_reason else None,
            usage=TokenUsage.from_dict(usage) if isinstance(usage, dict) else None,
        )

    if stage == "message_stop":
        return MessageStop()

    if stage == "ping":
        return Ping()

    if stage == "error":
        error = data.get("error")
        if isinstance(error, dict):
            return StreamError(message=str(error.get("message") or "Unknown error"))
        return StreamError(message=str(error or "Unknown error"))

    return None


class StreamDecoder:
    """Assemble streamed events into a complete message.

    ``feed`` accepts chunks of any size, including chunks that split a line.
    Lines are decoded independently; a malformed line is dropped and only
    shows up as missing data. One decoder serves one exchange; call
    ``reset`` to reuse it.
    """

    def __init__(self, on_event: EventCallback | None = None):
        self._on_event = on_event
        self._buffer = b""
        self._response: AssembledMessage | None = None
        self._blocks: list[ContentBlock] = []
        self._partial_json: list[str] = []
        self._complete = False
        self._error: str | None = None
        self.malformed_lines = 0
        self.events_seen = 0

    # -- input ------------------------------------------------------------

    def feed(self, data: bytes | str) -> None:
        """Consume a chunk and process every complete line in the buffer."""
        if isinstance(data, str):
            data = data.encode("utf-8")
        self._buffer += data
        while True:
            newline = self._buffer.find(b"\n")
            if newline < 0:
                break
            raw = self._buffer[:newline]
            self._buffer = self._buffer[newline + 1:]
            self._process_line(raw)

    def finish(self) -> None:
        """Flush a trailing line that never got its terminator."""
        if self._buffer:
            raw, self._buffer = self._buffer, b""
            self._process_line(raw)

    def feed_json(self, data: dict[str, Any]) -> StreamEvent | None:
        """Apply an already-parsed event object.

        An object whose fields have the wrong shape is dropped like an
        unparseable line.
        """
        try:
            event = parse_stream_event(data)
        except (TypeError, ValueError, AttributeError) as e:
            self.malformed_lines += 1
            log.debug("Dropped malformed stream event", stage=str(data.get("type", "")), error=str(e))
            return None
        if event is None:
            return None
        self.events_seen += 1
        self._apply(event)
        if self._on_event is not None:
            self._on_event(event)
        return event

    def reset(self) -> None:
        self._buffer = b""
        self._response = None
        self._blocks = []
        self._partial_json = []
        self._complete = False
        self._error = None
        self.malformed_lines = 0
        self.events_seen = 0

    # -- output -----------------------------------------------------------

    @property
    def response(self) -> AssembledMessage | None:
        return self._response

    @property
    def is_complete(self) -> bool:
        return self._complete

    @property
    def has_error(self) -> bool:
        return self._error is not None

    @property
    def error(self) -> str:
        return self._error or ""

    def snapshot_blocks(self) -> list[ContentBlock]:
        """Blocks assembled so far, for callers that stop before MessageStop."""
        return list(self._blocks)

    # -- internals --------------------------------------------------------

    def _process_line(self, raw: bytes) -> None:
        line = raw.decode("utf-8", errors="replace")
        if line.endswith("\r"):
            line = line[:-1]
        if not line.strip():
            return
        if line.startswith("event:") or line.startswith(":"):
            return
        if line.startswith("data:"):
            data = line[5:].lstrip(" \t")
        else:
            data = line.strip()
        if not data or data == STREAM_END_SENTINEL:
            return

        try:
            parsed = json.loads(data)
        except json.JSONDecodeError:
            self.malformed_lines += 1
            log.debug("Dropped malformed stream line", length=len(data))
            return
        if not isinstance(parsed, dict):
            self.malformed_lines += 1
            return
        self.feed_json(parsed)

    def _ensure_response(self) -> AssembledMessage:
        if self._response is None:
            self._response = AssembledMessage()
        return self._response

    def _ensure_index(self, index: int) -> None:
        while len(self._blocks) <= index:
            self._blocks.append(TextBlock(text=""))
            self._partial_json.append("")

    def _apply(self, event: StreamEvent) -> None:
        if isinstance(event, MessageStart):
            response = self._ensure_response()
            response.id = event.message_id
            response.model = event.model
            response.content = []
            if event.usage is not None:
                response.usage = event.usage

        elif isinstance(event, ContentBlockStart):
            if event.index < 0:
                return
            self._ensure_index(event.index)
            if event.block is not None:
                self._blocks[event.index] = event.block

        elif isinstance(event, ContentBlockDelta):
            idx = event.index
            if idx < 0 or idx >= len(self._blocks):
                return
            block = self._blocks[idx]
            if event.delta_type == "text_delta":
                if isinstance(block, TextBlock):
                    block.text += event.payload
            elif event.delta_type == "thinking_delta":
                if isinstance(block, ThinkingBlock):
                    block.thinking += event.payload
            elif event.delta_type == "input_json_delta":
                self._partial_json[idx] += event.payload

        elif isinstance(event, ContentBlockStop):
            idx = event.index
            if idx < 0 or idx >= len(self._blocks):
                return
            block = self._blocks[idx]
            fragment = self._partial_json[idx]
            if isinstance(block, ToolUseBlock) and fragment:
                try:
                    block.input = json.loads(fragment)
                except json.JSONDecodeError:
                    # Keep the raw fragment; there is no typed fallback.
                    block.input = fragment

        elif isinstance(event, MessageDelta):
            response = self._ensure_response()
            if event.stop_reason is not None:
                response.stop_reason = event.stop_reason
            if event.usage is not None:
                _merge_usage(response.usage, event.usage)

        elif isinstance(event, MessageStop):
            response = self._ensure_response()
            response.content = list(self._blocks)
            self._complete = True

        elif isinstance(event, StreamError):
            self._error = event.message
            log.warning("Stream reported an error", error=event.message)


def _merge_usage(current: TokenUsage, update: TokenUsage) -> None:
    """Counters reported in a message delta replace the earlier values."""
    if update.input_tokens:
        current.input_tokens = update.input_tokens
    if update.output_tokens:
        current.output_tokens = update.output_tokens
    if update.cache_read_tokens:
        current.cache_read_tokens = update.cache_read_tokens
    if update.cache_creation_tokens:
        current.cache_creation_tokens = update.cache_creation_tokens
