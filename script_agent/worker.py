"""Single-consumer command queue that owns one orchestrator."""

import asyncio
from dataclasses import dataclass
from enum import Enum
from typing import Any

from script_agent.logging import get_logger
from script_agent.orchestrator import Orchestrator
from script_agent.types import AuthCredentials, ProcessResult

log = get_logger(__name__)


class CommandKind(str, Enum):
    CONNECT = "connect"
    SEND = "send"
    CANCEL = "cancel"
    NEW_SESSION = "new_session"
    DISCONNECT = "disconnect"
    QUIT = "quit"


class WorkerStoppedError(RuntimeError):
    """Raised when a command is submitted to a worker that is not running."""

    def __init__(self) -> None:
        super().__init__("Agent worker is not running")


@dataclass
class QueueEntry:
    kind: CommandKind
    payload: Any
    future: asyncio.Future[object]
    enqueued_at_ms: int


class AgentWorker:
    """Run every orchestrator command on one asyncio task, in submission order.

    At most one turn loop is in flight. ``request_cancel`` bypasses the
    queue so a running loop sees the cancellation at its next check.
    """

    def __init__(self, orchestrator: Orchestrator, warn_after_ms: int = 2_000):
        self.orchestrator = orchestrator
        self.warn_after_ms = max(0, int(warn_after_ms))
        self._queue: asyncio.Queue[QueueEntry] = asyncio.Queue()
        self._task: asyncio.Task[None] | None = None
        self._current: CommandKind | None = None

    # -- lifecycle --------------------------------------------------------

    def start(self) -> None:
        if self.is_running():
            return
        self._task = asyncio.create_task(self._run(), name="agent-worker")

    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def busy(self) -> bool:
        return self._current is not None

    def pending(self) -> int:
        return self._queue.qsize()

    async def stop(self) -> None:
        """Disconnect, drain the queue and wait for the worker task to exit."""
        if not self.is_running():
            return
        self.orchestrator.cancel()
        await self._submit(CommandKind.QUIT)
        assert self._task is not None
        await self._task
        self._task = None

    # -- commands ---------------------------------------------------------

    async def connect(
        self,
        credentials: AuthCredentials | None = None,
        kind: str | None = None,
    ) -> bool:
        return bool(await self._submit(CommandKind.CONNECT, (credentials, kind)))

    async def send(self, text: str) -> ProcessResult:
        result = await self._submit(CommandKind.SEND, text)
        assert isinstance(result, ProcessResult)
        return result

    async def new_session(self) -> str:
        return str(await self._submit(CommandKind.NEW_SESSION))

    async def disconnect(self) -> None:
        await self._submit(CommandKind.DISCONNECT)

    async def cancel(self) -> None:
        """Cancel and wait until the worker has reached this point in the queue."""
        self.request_cancel()
        await self._submit(CommandKind.CANCEL)

    def request_cancel(self) -> None:
        """Set the cancellation token now. Safe to call from any thread."""
        self.orchestrator.cancel()

    async def _submit(self, kind: CommandKind, payload: Any = None) -> object:
        if not self.is_running():
            raise WorkerStoppedError()
        loop = asyncio.get_running_loop()
        future: asyncio.Future[object] = loop.create_future()
        await self._queue.put(
            QueueEntry(
                kind=kind,
                payload=payload,
                future=future,
                enqueued_at_ms=int(loop.time() * 1000),
            )
        )
        return await future

    # -- consumer ---------------------------------------------------------

    async def _run(self) -> None:
        loop = asyncio.get_running_loop()
        while True:
            entry = await self._queue.get()
            waited_ms = int(loop.time() * 1000) - entry.enqueued_at_ms
            if waited_ms >= self.warn_after_ms:
                log.warning(
                    "worker wait exceeded",
                    command=entry.kind.value,
                    waited_ms=waited_ms,
                    queued_ahead=self._queue.qsize(),
                )

            if entry.future.cancelled():
                continue

            self._current = entry.kind
            try:
                result = await self._dispatch(entry)
            except Exception as e:
                log.error("worker command failed", command=entry.kind.value, error=str(e))
                if not entry.future.done():
                    entry.future.set_exception(e)
            else:
                if not entry.future.done():
                    entry.future.set_result(result)
            finally:
                self._current = None

            if entry.kind == CommandKind.QUIT:
                self._reject_pending()
                return

    async def _dispatch(self, entry: QueueEntry) -> object:
        orchestrator = self.orchestrator
        if entry.kind == CommandKind.CONNECT:
            credentials, kind = entry.payload
            return await orchestrator.connect(credentials, kind)
        if entry.kind == CommandKind.SEND:
            return await orchestrator.process(str(entry.payload))
        if entry.kind == CommandKind.CANCEL:
            return orchestrator.state
        if entry.kind == CommandKind.NEW_SESSION:
            return orchestrator.start_new_session()
        if entry.kind in (CommandKind.DISCONNECT, CommandKind.QUIT):
            await orchestrator.disconnect()
            return None
        raise ValueError(f"Unknown worker command: {entry.kind}")

    def _reject_pending(self) -> None:
        while not self._queue.empty():
            entry = self._queue.get_nowait()
            if not entry.future.done():
                entry.future.set_exception(WorkerStoppedError())
