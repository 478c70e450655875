import asyncio
from pathlib import Path
from typing import Any, Callable

import pytest

from script_agent.callbacks import CollectorCallback
from script_agent.config import Config
from script_agent.orchestrator import Orchestrator
from script_agent.transport import Conversation, Transport, TransportOutcome
from script_agent.types import Message, TokenUsage


class ScriptedTransport(Transport):
    """Replays canned replies and records what it was sent."""

    def __init__(self, replies: list[Any], kind: str = "direct", session_id: str = ""):
        super().__init__()
        self.kind = kind
        self.replies = list(replies)
        self.session_id = session_id
        self.inputs: list[str] = []
        self.transcripts: list[list[Message]] = []
        self.connected = False
        self.connect_result = True
        self.gate: asyncio.Event | None = None
        self.sending = asyncio.Event()

    async def connect(self) -> bool:
        self.connected = self.connect_result
        if not self.connect_result:
            self.last_error = "connection refused"
        return self.connect_result

    def is_connected(self) -> bool:
        return self.connected

    async def send(self, input: str, conversation: Conversation) -> TransportOutcome:
        conversation.bind(self.kind)
        self.inputs.append(input)
        self.transcripts.append(list(conversation.messages))
        self.sending.set()
        if self.gate is not None:
            await self.gate.wait()
        if self.cancel_token.cancelled:
            return TransportOutcome.cancelled_outcome()

        reply = self.replies.pop(0)
        if isinstance(reply, Exception):
            raise reply
        if isinstance(reply, TransportOutcome):
            outcome = reply
        else:
            outcome = TransportOutcome(
                text=reply,
                usage=TokenUsage(input_tokens=10, output_tokens=5),
                num_turns=1,
                session_id=self.session_id,
                cost=0.01 if self.kind == "subprocess" else None,
            )
        if outcome.session_id:
            conversation.resume_session_id = outcome.session_id
        return outcome

    def cancel(self) -> None:
        self.cancel_token.cancel()

    async def disconnect(self) -> None:
        self.connected = False


@pytest.fixture
def config(tmp_path: Path) -> Config:
    cfg = Config()
    cfg.model.model = "claude-sonnet-4-20250514"
    cfg.history.base_dir = str(tmp_path / "history")
    cfg.agent.max_turns = 10
    return cfg


@pytest.fixture
def build(config: Config) -> Callable[..., Orchestrator]:
    """Orchestrator factory whose transport factory hands out ``transport``."""

    def _build(transport: Transport, **kwargs: Any) -> Orchestrator:
        def factory(kind, cfg, credentials=None, cancel_token=None, callback=None):
            transport.cancel_token = cancel_token
            transport.callback = callback
            return transport

        kwargs.setdefault("callback", CollectorCallback())
        return Orchestrator(config=config, transport_factory=factory, **kwargs)

    return _build


@pytest.fixture
def scripted() -> type[ScriptedTransport]:
    return ScriptedTransport
