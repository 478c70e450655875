"""Direct transport: streaming HTTPS calls to the Messages API."""

import asyncio
from typing import Any

import httpx

from script_agent.callbacks import ChatCallback
from script_agent.config import DEFAULT_API_BASE, DEFAULT_MODEL, Config
from script_agent.logging import get_logger
from script_agent.scripts import DEFAULT_SCRIPT_TAG, ScriptBlockExtractor
from script_agent.streaming import StreamDecoder
from script_agent.transport.base import (
    Conversation,
    OutcomeStatus,
    TextRelay,
    Transport,
    TransportOutcome,
)
from script_agent.types import (
    AuthCredentials,
    CancellationToken,
    Message,
    TextBlock,
    ThinkingBlock,
    content_block_to_dict,
)

log = get_logger(__name__)

ANTHROPIC_VERSION = "2023-06-01"
MESSAGES_PATH = "/v1/messages"
ERROR_BODY_EXCERPT = 500
TEST_PROMPT = "Say 'Hello!' and nothing else."


def script_tool_definition() -> dict[str, Any]:
    """Tool definition advertising script execution to the model."""
    return {
        "name": DEFAULT_SCRIPT_TAG,
        "description": (
            "Execute Python code in the host's scripting environment.\n\n"
            "The code has access to the host APIs. Use this tool to analyze "
            "code and data, navigate the database, query cross-references "
            "and extract strings and constants.\n\n"
            "The output will be captured and returned. Print results you want to see."
        ),
        "input_schema": {
            "type": "object",
            "properties": {
                "code": {
                    "type": "string",
                    "description": "Python code to execute",
                },
            },
            "required": ["code"],
        },
    }


def default_tools() -> list[dict[str, Any]]:
    return [script_tool_definition()]


def message_to_request(message: Message) -> dict[str, Any] | None:
    """Wire shape of a transcript message, or ``None`` if nothing is sendable.

    Thinking blocks carry no signature here and empty text blocks are
    rejected by the API, so both are left out.
    """
    blocks = [
        content_block_to_dict(block)
        for block in message.content
        if not isinstance(block, ThinkingBlock)
        and not (isinstance(block, TextBlock) and not block.text)
    ]
    if not blocks:
        return None
    return {"role": message.role.value, "content": blocks}


class DirectTransport(Transport):
    """One streaming POST per exchange, decoded by :class:`StreamDecoder`."""

    kind = "direct"

    def __init__(
        self,
        api_key: str,
        model: str = DEFAULT_MODEL,
        base_url: str = DEFAULT_API_BASE,
        max_tokens: int = 8192,
        temperature: float | None = None,
        thinking: bool = False,
        thinking_budget: int = 10000,
        connect_timeout: float = 30.0,
        read_timeout: float = 30.0,
        exchange_timeout: float = 600.0,
        cancel_token: CancellationToken | None = None,
        callback: ChatCallback | None = None,
        http_transport: httpx.AsyncBaseTransport | None = None,
    ):
        """Initialize the direct transport.

        Args:
            api_key: API key sent as ``x-api-key``
            model: Model name
            base_url: API base URL
            max_tokens: Max tokens to generate per exchange
            temperature: Optional sampling temperature
            thinking: Enable extended thinking
            thinking_budget: Token budget for extended thinking
            connect_timeout: Seconds to establish the connection
            read_timeout: Seconds to wait for the next chunk
            exchange_timeout: Seconds for a whole exchange
            cancel_token: Shared cancellation token
            callback: Observer for streamed text and tool names
            http_transport: Optional httpx transport (tests use ``MockTransport``)
        """
        super().__init__(cancel_token=cancel_token, callback=callback)
        self.api_key = api_key
        self.model = model
        self.base_url = (base_url or DEFAULT_API_BASE).rstrip("/")
        self.max_tokens = max_tokens
        self.temperature = temperature
        self.thinking = thinking
        self.thinking_budget = thinking_budget
        self.connect_timeout = connect_timeout
        self.read_timeout = read_timeout
        self.exchange_timeout = exchange_timeout
        self.tools = default_tools()
        self._http_transport = http_transport
        self._extractor = ScriptBlockExtractor()
        self._active_task: asyncio.Task[TransportOutcome] | None = None
        self.client: httpx.AsyncClient | None = None

    @classmethod
    def from_config(
        cls,
        config: Config,
        credentials: AuthCredentials | None = None,
        cancel_token: CancellationToken | None = None,
        callback: ChatCallback | None = None,
    ) -> "DirectTransport":
        credentials = credentials or AuthCredentials()
        api_key = credentials.api_key or config.model.api_key or credentials.resolve_api_key()
        return cls(
            api_key=api_key,
            model=config.model.model,
            base_url=credentials.api_base_url or config.model.base_url,
            max_tokens=config.model.max_tokens,
            temperature=config.model.temperature,
            thinking=config.model.thinking,
            thinking_budget=config.model.thinking_budget,
            connect_timeout=config.transport.connect_timeout,
            read_timeout=config.transport.read_timeout,
            exchange_timeout=config.transport.exchange_timeout,
            cancel_token=cancel_token,
            callback=callback,
        )

    # -- lifecycle --------------------------------------------------------

    async def connect(self) -> bool:
        if not self.api_key:
            self.last_error = (
                "No API key configured. Checked: config, ANTHROPIC_API_KEY, CLAUDE_API_KEY"
            )
            return False
        if self.client is None:
            self.client = httpx.AsyncClient(
                timeout=httpx.Timeout(
                    self.read_timeout,
                    connect=self.connect_timeout,
                ),
                follow_redirects=True,
                transport=self._http_transport,
            )
        return True

    def is_connected(self) -> bool:
        return self.client is not None

    async def disconnect(self) -> None:
        if self.client is not None:
            await self.client.aclose()
            self.client = None

    def cancel(self) -> None:
        self.cancel_token.cancel()
        task = self._active_task
        if task is not None and not task.done():
            task.get_loop().call_soon_threadsafe(task.cancel)

    # -- requests ---------------------------------------------------------

    def _headers(self) -> dict[str, str]:
        return {
            "x-api-key": self.api_key,
            "anthropic-version": ANTHROPIC_VERSION,
            "content-type": "application/json",
        }

    def build_request(self, conversation: Conversation, stream: bool = True) -> dict[str, Any]:
        messages = [
            wire
            for wire in (message_to_request(message) for message in conversation.messages)
            if wire is not None
        ]
        body: dict[str, Any] = {
            "model": self.model,
            "messages": messages,
            "max_tokens": self.max_tokens,
            "stream": stream,
        }
        if self.system_prompt:
            body["system"] = self.system_prompt
        if self.tools:
            body["tools"] = self.tools
        if self.temperature is not None:
            body["temperature"] = self.temperature
        if self.thinking:
            body["thinking"] = {"type": "enabled", "budget_tokens": self.thinking_budget}
        return body

    async def test_connection(self) -> tuple[bool, str]:
        """Send a tiny non-streaming request to verify credentials."""
        if not await self.connect():
            return False, self.last_error
        assert self.client is not None

        body = {
            "model": self.model,
            "max_tokens": 100,
            "stream": False,
            "messages": [{"role": "user", "content": TEST_PROMPT}],
        }
        try:
            response = await self.client.post(
                f"{self.base_url}{MESSAGES_PATH}", json=body, headers=self._headers()
            )
        except httpx.HTTPError as e:
            return False, f"Failed to connect: {e}"

        if not response.is_success:
            return False, f"API error {response.status_code}: {response.text[:ERROR_BODY_EXCERPT]}"
        try:
            data = response.json()
        except ValueError:
            return False, "API returned a non-JSON response"
        text = "".join(
            str(block.get("text", ""))
            for block in data.get("content", [])
            if isinstance(block, dict) and block.get("type") == "text"
        )
        return True, f"Connected: {text}"

    async def send(self, input: str, conversation: Conversation) -> TransportOutcome:
        if self.client is None:
            return TransportOutcome.failed("Not connected")
        conversation.bind(self.kind)
        if self.cancel_token.cancelled:
            return TransportOutcome.cancelled_outcome()

        task = asyncio.ensure_future(self._exchange(conversation))
        self._active_task = task
        try:
            return await asyncio.wait_for(task, timeout=self.exchange_timeout)
        except asyncio.TimeoutError:
            log.warning("Exchange timed out", timeout=self.exchange_timeout)
            return TransportOutcome.timed_out(
                f"Request timed out after {self.exchange_timeout:g}s"
            )
        except asyncio.CancelledError:
            if task.cancelled() and self.cancel_token.cancelled:
                return TransportOutcome.cancelled_outcome()
            raise
        finally:
            self._active_task = None

    async def _exchange(self, conversation: Conversation) -> TransportOutcome:
        assert self.client is not None
        relay = TextRelay(self.callback, self._extractor)
        decoder = StreamDecoder(on_event=relay.on_event)
        body = self.build_request(conversation)
        url = f"{self.base_url}{MESSAGES_PATH}"

        try:
            async with self.client.stream("POST", url, json=body, headers=self._headers()) as response:
                if not response.is_success:
                    error_text = (await response.aread()).decode("utf-8", errors="replace")
                    log.error(
                        "API request failed",
                        status_code=response.status_code,
                        body=error_text[:ERROR_BODY_EXCERPT],
                    )
                    return TransportOutcome.failed(
                        f"API error {response.status_code}: {error_text[:ERROR_BODY_EXCERPT]}"
                    )
                async for chunk in response.aiter_bytes():
                    if not self._on_chunk(decoder, chunk):
                        # Leaving the context closes the stream.
                        return TransportOutcome.cancelled_outcome()
        except httpx.TimeoutException as e:
            return TransportOutcome.timed_out(f"Request timed out: {e}")
        except httpx.HTTPError as e:
            log.error("HTTP transfer failed", error=str(e))
            return TransportOutcome.failed(f"HTTP error: {e}")

        decoder.finish()
        if self.cancel_token.cancelled:
            return TransportOutcome.cancelled_outcome()
        if decoder.has_error:
            return TransportOutcome.failed(decoder.error)

        message = decoder.response
        if not decoder.is_complete or message is None:
            return TransportOutcome.failed("Stream ended before the message was complete")
        if not message.content:
            return TransportOutcome.failed("Stream produced no content")

        relay.flush()
        return TransportOutcome(
            status=OutcomeStatus.OK,
            message=message,
            text=message.text(),
            usage=message.usage,
            num_turns=1,
        )

    def _on_chunk(self, decoder: StreamDecoder, chunk: bytes) -> bool:
        """Per-chunk data callback; ``False`` aborts the transfer."""
        if self.cancel_token.cancelled:
            return False
        decoder.feed(chunk)
        return True
