"""Subprocess transport: drive the agent CLI over line-delimited JSON pipes."""

import asyncio
import json
import os
import shutil
import signal
from pathlib import Path
from typing import Any, Callable

from script_agent.callbacks import ChatCallback, NullCallback
from script_agent.config import Config
from script_agent.logging import get_logger
from script_agent.scripts import strip_blocks
from script_agent.streaming import StreamDecoder
from script_agent.transport.base import (
    Conversation,
    OutcomeStatus,
    TextRelay,
    Transport,
    TransportOutcome,
)
from script_agent.types import (
    AssembledMessage,
    CancellationToken,
    ContentBlock,
    TextBlock,
    TokenUsage,
    ToolUseBlock,
)

log = get_logger(__name__)

CLI_NAME = "claude"
CLI_ENTRYPOINT = "sdk-py"
CLI_INSTALL_HINT = "Install with: npm install -g @anthropic-ai/claude-code"
DEFAULT_SESSION_ID = "default"
READ_CHUNK_SIZE = 4096
TEST_PROMPT = "Say exactly: Hello from Script Agent"

READ_LINE = "line"
READ_EOF = "eof"
READ_TIMEOUT = "timeout"
READ_CANCELLED = "cancelled"

StderrCallback = Callable[[str], None]


def well_known_cli_locations(home: Path | None = None) -> list[Path]:
    home = home or Path.home()
    return [
        home / ".local" / "bin" / CLI_NAME,
        Path("/usr/local/bin") / CLI_NAME,
        home / ".npm-global" / "bin" / CLI_NAME,
        home / "node_modules" / ".bin" / CLI_NAME,
        home / ".yarn" / "bin" / CLI_NAME,
        home / ".claude" / "local" / CLI_NAME,
    ]


def find_cli(configured: str = "") -> str:
    """Locate the agent CLI: configured path, install locations, then PATH."""
    if configured:
        path = Path(configured).expanduser()
        if path.is_file() and os.access(path, os.X_OK):
            return str(path)
        log.warning("Configured CLI path is not executable", cli_path=configured)

    for path in well_known_cli_locations():
        if path.is_file() and os.access(path, os.X_OK):
            return str(path)

    return shutil.which(CLI_NAME) or ""


def build_command(
    cli_path: str,
    *,
    permission_mode: str = "bypassPermissions",
    max_turns: int = 20,
    model: str = "",
    system_prompt: str = "",
    allowed_tools: list[str] | None = None,
    resume_session_id: str = "",
) -> list[str]:
    cmd = [
        cli_path,
        "--output-format",
        "stream-json",
        "--input-format",
        "stream-json",
        "--verbose",
        "--permission-mode",
        permission_mode,
        "--max-turns",
        str(max_turns),
    ]
    if model:
        cmd.extend(["--model", model])
    if system_prompt:
        cmd.extend(["--append-system-prompt", system_prompt])
    if allowed_tools:
        cmd.extend(["--allowedTools", ",".join(allowed_tools)])
    if resume_session_id:
        cmd.extend(["--resume", resume_session_id])
    # Ignore user/project settings files.
    cmd.extend(["--setting-sources", ""])
    return cmd


def user_turn_line(content: str, session_id: str = "") -> bytes:
    """One outbound user turn, newline terminated."""
    payload = {
        "type": "user",
        "message": {"role": "user", "content": content},
        "parent_tool_use_id": None,
        "session_id": session_id or DEFAULT_SESSION_ID,
    }
    return (json.dumps(payload) + "\n").encode("utf-8")


def _number(value: Any, kind: Callable[[Any], Any]) -> Any:
    if value is None:
        return None
    try:
        return kind(value)
    except (TypeError, ValueError):
        return None


class LineReader:
    """Read lines from a stream with poll-timeout-then-flush semantics."""

    def __init__(self, stream: asyncio.StreamReader, poll_interval: float = 0.1):
        self.stream = stream
        self.poll_interval = poll_interval
        self._buffer = b""
        self._eof = False

    async def read_line(
        self,
        idle_timeout: float,
        cancel_token: CancellationToken,
    ) -> tuple[str | None, str]:
        """Return ``(line, status)``.

        On idle timeout or EOF a non-empty partial buffer is returned as a
        final line before the timeout/EOF status is reported.
        """
        loop = asyncio.get_running_loop()
        started = loop.time()
        while True:
            newline = self._buffer.find(b"\n")
            if newline >= 0:
                raw = self._buffer[:newline]
                self._buffer = self._buffer[newline + 1:]
                return raw.decode("utf-8", errors="replace"), READ_LINE

            if cancel_token.cancelled:
                return None, READ_CANCELLED

            if self._eof or loop.time() - started > idle_timeout:
                if self._buffer:
                    raw, self._buffer = self._buffer, b""
                    return raw.decode("utf-8", errors="replace"), READ_LINE
                return None, READ_EOF if self._eof else READ_TIMEOUT

            try:
                chunk = await asyncio.wait_for(
                    self.stream.read(READ_CHUNK_SIZE), timeout=self.poll_interval
                )
            except asyncio.TimeoutError:
                continue
            if not chunk:
                self._eof = True
                continue
            self._buffer += chunk


class _Exchange:
    """Accumulates what one exchange's inbound lines report."""

    def __init__(self, callback: ChatCallback):
        self.callback = callback
        self.relay = TextRelay(callback)
        self.decoder = StreamDecoder(on_event=self._on_stream_event)
        self.blocks: list[ContentBlock] = []
        self.text = ""
        self.error = ""
        self.session_id = ""
        self.cost: float | None = None
        self.num_turns = 0
        self.usage = TokenUsage()
        self.finished = False
        self.malformed_lines = 0
        self._streamed_text = False

    def _on_stream_event(self, event: Any) -> None:
        self._streamed_text = True
        self.relay.on_event(event)

    def handle_line(self, line: str) -> None:
        line = line.strip()
        if not line:
            return
        try:
            data = json.loads(line)
        except json.JSONDecodeError:
            if "Error:" in line:
                self.error = line
            return
        if not isinstance(data, dict):
            return
        try:
            self._dispatch(data)
        except (TypeError, ValueError, AttributeError) as e:
            self.malformed_lines += 1
            log.debug("Dropped malformed CLI line", line_type=str(data.get("type", "")), error=str(e))

    def _dispatch(self, data: dict[str, Any]) -> None:
        line_type = data.get("type", "")
        if line_type == "assistant":
            self._handle_assistant(data)
        elif line_type == "result":
            self._handle_result(data)
        elif line_type == "system" and data.get("subtype") == "error":
            inner = data.get("data") or {}
            self.error = str(inner.get("message") or "System error")
        elif line_type == "stream_event":
            event = data.get("event")
            if isinstance(event, dict):
                self.decoder.feed_json(event)

    def _handle_assistant(self, data: dict[str, Any]) -> None:
        message = data.get("message") or {}
        for block in message.get("content") or []:
            if not isinstance(block, dict):
                continue
            block_type = block.get("type", "")
            if block_type == "text":
                text = str(block.get("text", ""))
                self.text += text
                self.blocks.append(TextBlock(text=text))
                if not self._streamed_text:
                    self.relay.push(text)
            elif block_type == "tool_use":
                name = str(block.get("name", ""))
                self.blocks.append(
                    ToolUseBlock(id=str(block.get("id", "")), name=name, input=block.get("input", {}))
                )
                if not self._streamed_text:
                    self.callback.on_tool_use(name, "")
        if data.get("session_id"):
            self.session_id = str(data["session_id"])

    def _handle_result(self, data: dict[str, Any]) -> None:
        self.finished = True
        if data.get("is_error"):
            self.error = str(data.get("result") or "Unknown error")
        # Bad counters are skipped; the line still ends the exchange.
        self.cost = _number(data.get("total_cost_usd"), float)
        self.num_turns = _number(data.get("num_turns"), int) or 1
        if data.get("session_id"):
            self.session_id = str(data["session_id"])
        usage = data.get("usage")
        if isinstance(usage, dict):
            try:
                self.usage = TokenUsage.from_dict(usage)
            except (TypeError, ValueError):
                log.debug("Ignored malformed usage in CLI result", usage=str(usage)[:200])

    def outcome(self, status: OutcomeStatus = OutcomeStatus.OK) -> TransportOutcome:
        message = AssembledMessage(content=list(self.blocks), usage=self.usage)
        return TransportOutcome(
            status=status,
            message=message,
            text=self.text,
            error=self.error,
            usage=self.usage,
            cost=self.cost,
            num_turns=self.num_turns,
            session_id=self.session_id,
        )


class SubprocessTransport(Transport):
    """Long-lived CLI child process speaking stream-json on stdin/stdout."""

    kind = "subprocess"

    def __init__(
        self,
        cli_path: str = "",
        model: str = "",
        permission_mode: str = "bypassPermissions",
        max_turns: int = 20,
        allowed_tools: list[str] | None = None,
        cwd: str = "",
        read_timeout: float = 30.0,
        exchange_timeout: float = 600.0,
        poll_interval: float = 0.1,
        terminate_grace: float = 5.0,
        cancel_token: CancellationToken | None = None,
        callback: ChatCallback | None = None,
        on_stderr: StderrCallback | None = None,
    ):
        super().__init__(cancel_token=cancel_token, callback=callback)
        self.cli_path = cli_path
        self.model = model
        self.permission_mode = permission_mode
        self.max_turns = max_turns
        self.allowed_tools = list(allowed_tools or [])
        self.cwd = cwd
        self.read_timeout = read_timeout
        self.exchange_timeout = exchange_timeout
        self.poll_interval = poll_interval
        self.terminate_grace = terminate_grace
        self.on_stderr = on_stderr
        self.process: asyncio.subprocess.Process | None = None
        self._reader: LineReader | None = None
        self._stderr_task: asyncio.Task[None] | None = None
        self._connected = False
        self._restart_pending = False

    @classmethod
    def from_config(
        cls,
        config: Config,
        cancel_token: CancellationToken | None = None,
        callback: ChatCallback | None = None,
        on_stderr: StderrCallback | None = None,
    ) -> "SubprocessTransport":
        return cls(
            cli_path=config.transport.cli_path,
            model=config.model.model,
            permission_mode=config.transport.permission_mode,
            max_turns=config.transport.cli_max_turns,
            allowed_tools=config.transport.allowed_tools,
            cwd=config.agent.project_dir,
            read_timeout=config.transport.read_timeout,
            exchange_timeout=config.transport.exchange_timeout,
            poll_interval=config.transport.poll_interval,
            terminate_grace=config.transport.terminate_grace,
            cancel_token=cancel_token,
            callback=callback,
            on_stderr=on_stderr,
        )

    # -- lifecycle --------------------------------------------------------

    async def connect(self) -> bool:
        if self._connected:
            return True
        self.cli_path = find_cli(self.cli_path)
        if not self.cli_path:
            self.last_error = f"CLI not found. {CLI_INSTALL_HINT}"
            return False
        if not await self._spawn():
            return False
        self._connected = True
        return True

    async def _spawn(self, resume_session_id: str = "") -> bool:
        cmd = build_command(
            self.cli_path,
            permission_mode=self.permission_mode,
            max_turns=self.max_turns,
            model=self.model,
            system_prompt=self.system_prompt,
            allowed_tools=self.allowed_tools,
            resume_session_id=resume_session_id,
        )
        env = os.environ.copy()
        env["CLAUDE_CODE_ENTRYPOINT"] = CLI_ENTRYPOINT

        try:
            self.process = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.PIPE,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                env=env,
                cwd=self.cwd or None,
            )
        except OSError as e:
            self.last_error = f"Failed to spawn CLI process: {e}"
            log.error("Failed to spawn CLI", cli_path=self.cli_path, error=str(e))
            self.process = None
            return False

        assert self.process.stdout is not None
        self._reader = LineReader(self.process.stdout, self.poll_interval)
        self._stderr_task = asyncio.create_task(self._drain_stderr(self.process))
        log.info("Spawned CLI process", pid=self.process.pid, resume=bool(resume_session_id))
        return True

    def is_connected(self) -> bool:
        return self._connected

    def _process_alive(self) -> bool:
        return self.process is not None and self.process.returncode is None

    async def _drain_stderr(self, process: asyncio.subprocess.Process) -> None:
        """Read stderr until EOF; an unread pipe can block the child."""
        assert process.stderr is not None
        async for raw in process.stderr:
            line = raw.decode("utf-8", errors="replace").rstrip("\r\n")
            if not line:
                continue
            log.debug("CLI stderr", line=line)
            if self.on_stderr is not None:
                self.on_stderr(line)

    def cancel(self) -> None:
        self.cancel_token.cancel()
        if self._process_alive():
            assert self.process is not None
            try:
                self.process.send_signal(signal.SIGINT)
            except ProcessLookupError:
                pass

    def reset_conversation(self) -> None:
        """The running child remembers the old conversation; replace it on the next send."""
        self._restart_pending = self.process is not None

    async def disconnect(self) -> None:
        self._connected = False
        self._restart_pending = False
        await self._stop_process()

    async def _stop_process(self) -> None:
        process, self.process = self.process, None
        if process is None:
            return

        if process.stdin is not None and not process.stdin.is_closing():
            process.stdin.close()
        if process.returncode is None:
            try:
                process.terminate()
                await asyncio.wait_for(process.wait(), timeout=self.terminate_grace)
            except asyncio.TimeoutError:
                log.warning("CLI did not exit after terminate, killing", pid=process.pid)
                process.kill()
                await process.wait()
            except ProcessLookupError:
                pass

        if self._stderr_task is not None:
            await self._stderr_task
            self._stderr_task = None
        self._reader = None

    # -- exchanges --------------------------------------------------------

    async def send(self, input: str, conversation: Conversation) -> TransportOutcome:
        if not self._connected:
            return TransportOutcome.failed("Not connected")
        conversation.bind(self.kind)
        if self.cancel_token.cancelled:
            return TransportOutcome.cancelled_outcome()

        if self._restart_pending or not self._process_alive():
            # Child exited, was stopped after a cancel, or belongs to a
            # conversation that was reset. Resumes only when an id is known.
            self._restart_pending = False
            await self._stop_process()
            if not await self._spawn(conversation.resume_session_id):
                return TransportOutcome.failed(self.last_error)

        assert self.process is not None and self.process.stdin is not None
        try:
            self.process.stdin.write(user_turn_line(input, conversation.resume_session_id))
            await self.process.stdin.drain()
        except (BrokenPipeError, ConnectionResetError) as e:
            log.error("Failed to write to CLI", error=str(e))
            return TransportOutcome.failed(f"Failed to write to CLI: {e}")

        outcome = await self._receive()
        if outcome.session_id:
            conversation.resume_session_id = outcome.session_id
        if outcome.cancelled:
            # Whatever the interrupted child still prints belongs to the
            # aborted exchange; start fresh on the next send.
            await self._stop_process()
        return outcome

    async def _receive(self) -> TransportOutcome:
        assert self._reader is not None
        exchange = _Exchange(self.callback)
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.exchange_timeout

        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                log.warning("CLI exchange timed out", timeout=self.exchange_timeout)
                outcome = exchange.outcome(OutcomeStatus.TIMEOUT)
                outcome.error = f"CLI exchange timed out after {self.exchange_timeout:g}s"
                return outcome

            line, status = await self._reader.read_line(
                min(self.read_timeout, remaining), self.cancel_token
            )
            if status == READ_LINE:
                exchange.handle_line(line or "")
                if exchange.finished:
                    break
                continue
            if status == READ_CANCELLED:
                return exchange.outcome(OutcomeStatus.CANCELLED)
            if status == READ_TIMEOUT:
                if loop.time() >= deadline:
                    continue
                outcome = exchange.outcome(OutcomeStatus.TIMEOUT)
                outcome.error = f"No output from CLI for {self.read_timeout:g}s"
                return outcome
            # EOF
            if not exchange.error and not exchange.text:
                exchange.error = "CLI exited without a result"
            break

        exchange.relay.flush()
        if exchange.error:
            return exchange.outcome(OutcomeStatus.FAILED)
        return exchange.outcome(OutcomeStatus.OK)


async def check_cli_connection(cli_path: str = "", timeout: float = 60.0) -> tuple[bool, str]:
    """One-shot ``--print`` query verifying the CLI is installed and authenticated."""
    path = find_cli(cli_path)
    if not path:
        return False, f"CLI not found. {CLI_INSTALL_HINT}"

    cmd = [
        path,
        "--print",
        "--output-format",
        "stream-json",
        "--verbose",
        "--permission-mode",
        "bypassPermissions",
        "--setting-sources",
        "",
        "--max-turns",
        "1",
        "--",
        TEST_PROMPT,
    ]
    env = os.environ.copy()
    env["CLAUDE_CODE_ENTRYPOINT"] = CLI_ENTRYPOINT
    try:
        process = await asyncio.create_subprocess_exec(
            *cmd,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.STDOUT,
            env=env,
        )
    except OSError as e:
        return False, f"Failed to execute CLI: {e}"

    try:
        stdout, _ = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        return False, f"CLI did not answer within {timeout:g}s"

    exchange = _Exchange(NullCallback())
    for line in stdout.decode("utf-8", errors="replace").splitlines():
        exchange.handle_line(line)

    if exchange.error:
        return False, exchange.error
    if exchange.text.strip():
        return True, f"Connected: {strip_blocks(exchange.text).strip()}"
    if process.returncode:
        return False, f"CLI exited with error code {process.returncode}"
    return False, "No response from the CLI"