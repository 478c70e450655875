"""Agent loop: drive turns, run embedded scripts and feed their output back."""

import asyncio
import inspect
from pathlib import Path
from typing import Any, Callable

from script_agent.callbacks import ChatCallback, NullCallback
from script_agent.config import Config, get_config
from script_agent.exceptions import ConfigurationError, SessionError
from script_agent.history import SCRIPT_TOOL_NAME, HistoryLog
from script_agent.instructions import load_default_system_prompt
from script_agent.logging import get_logger
from script_agent.scripts import ScriptBlockExtractor, build_feedback_message
from script_agent.transport import (
    Conversation,
    Transport,
    TransportOutcome,
    create_transport,
    select_transport_kind,
)
from script_agent.types import (
    AuthCredentials,
    CancellationToken,
    ChatState,
    Message,
    ProcessResult,
    Role,
    ScriptExecutorFn,
    ScriptResult,
    TextBlock,
    ThinkingBlock,
    TokenUsage,
    ToolResultBlock,
    ToolUseBlock,
)
from script_agent.usage import UsageAccumulator

log = get_logger(__name__)

TransportFactory = Callable[..., Transport]

NOT_CONNECTED_ERROR = "Not connected"
BUSY_ERROR = "A message is already being processed"
NO_RESPONSE_ERROR = "No response from the model"
NO_SESSION_ERROR = (
    "The CLI did not report a session id, so script results cannot be sent back"
)


def _is_async_callable(fn: Any) -> bool:
    if inspect.iscoroutinefunction(fn):
        return True
    return inspect.iscoroutinefunction(getattr(fn, "__call__", None))


class Orchestrator:
    """Owns one conversation and runs the turn loop for it.

    Not safe for concurrent ``process`` calls; :class:`AgentWorker`
    serializes requests onto a single task.
    """

    def __init__(
        self,
        callback: ChatCallback | None = None,
        script_executor: ScriptExecutorFn | None = None,
        history: HistoryLog | None = None,
        config: Config | None = None,
        transport_factory: TransportFactory | None = None,
        max_turns: int | None = None,
    ):
        """Initialize the orchestrator.

        Args:
            callback: Observer for progress and output
            script_executor: Callable running one script, sync or async
            history: Optional session log
            config: Configuration (defaults to the global one)
            transport_factory: ``create_transport``-compatible factory
            max_turns: Override of ``agent.max_turns``
        """
        self.config = config or get_config()
        self.callback = callback or NullCallback()
        self.script_executor = script_executor
        self.history = history
        self.max_turns = max(1, int(max_turns or self.config.agent.max_turns))
        self.cancel_token = CancellationToken()
        self.transport: Transport | None = None
        self.conversation = Conversation()
        self.usage = UsageAccumulator(self.config.model.model)
        self.system_prompt = ""
        self._state = ChatState.DISCONNECTED
        self._extractor = ScriptBlockExtractor()
        self._transport_factory = transport_factory or create_transport

    # -- connection -------------------------------------------------------

    @property
    def state(self) -> ChatState:
        return self._state

    def is_connected(self) -> bool:
        return (
            self._state != ChatState.DISCONNECTED
            and self.transport is not None
            and self.transport.is_connected()
        )

    async def connect(
        self,
        credentials: AuthCredentials | None = None,
        kind: str | None = None,
    ) -> bool:
        """Select and connect a transport.

        Args:
            credentials: Caller-supplied credentials
            kind: Force ``"direct"`` or ``"subprocess"`` instead of the configured mode
        """
        credentials = credentials or AuthCredentials()
        self._state = ChatState.CONNECTING
        self.cancel_token.reset()

        if self.transport is not None:
            await self.transport.disconnect()
            self.transport = None

        try:
            kind = kind or select_transport_kind(self.config, credentials)
            transport = self._transport_factory(
                kind,
                self.config,
                credentials=credentials,
                cancel_token=self.cancel_token,
                callback=self.callback,
            )
        except ConfigurationError as e:
            self._state = ChatState.DISCONNECTED
            self.callback.on_error(str(e))
            return False

        transport.system_prompt = self.system_prompt
        if not await transport.connect():
            error = transport.last_error or f"Failed to connect the {kind} transport"
            log.warning("Connection failed", transport=kind, error=error)
            self._state = ChatState.DISCONNECTED
            self.callback.on_error(error)
            return False

        if self.conversation.transport_kind and self.conversation.transport_kind != transport.kind:
            # Resume ids and transcripts do not carry across transport kinds.
            self.conversation.clear()
        self.transport = transport
        self._state = ChatState.IDLE
        log.info("Connected", transport=transport.kind, model=self.config.model.model)
        return True

    async def disconnect(self) -> None:
        if self.transport is not None:
            self.transport.cancel()
            await self.transport.disconnect()
            self.transport = None
        self._state = ChatState.DISCONNECTED

    def cancel(self) -> None:
        """Request cancellation of the running loop. Safe from any thread."""
        self.cancel_token.cancel()
        if self.transport is not None:
            self.transport.cancel()
        if self._state == ChatState.PROCESSING:
            self._state = ChatState.CANCELLED

    def is_cancelled(self) -> bool:
        return self.cancel_token.cancelled

    # -- conversation -----------------------------------------------------

    @property
    def total_usage(self) -> TokenUsage:
        return self.usage.total

    @property
    def message_count(self) -> int:
        return len(self.conversation.messages)

    def set_system_prompt(self, prompt: str) -> None:
        self.system_prompt = prompt
        if self.transport is not None:
            self.transport.system_prompt = prompt

    def load_system_prompt(self, project_dir: Path | str, inside_host: bool = False) -> str:
        prompt = load_default_system_prompt(project_dir, inside_host)
        self.set_system_prompt(prompt)
        return prompt

    def clear_conversation(self) -> None:
        self.conversation.clear()
        if self.transport is not None:
            self.transport.reset_conversation()

    def start_new_session(self) -> str:
        """Forget the transcript and resume id and open a new history session."""
        self.clear_conversation()
        if self.history is None:
            return ""
        return self.history.create_session()

    # -- turn loop --------------------------------------------------------

    async def process(self, user_input: str) -> ProcessResult:
        """Run the agent loop for one user message. Never raises."""
        if not self.is_connected():
            return ProcessResult(error=NOT_CONNECTED_ERROR)
        if self._state in (ChatState.PROCESSING, ChatState.CANCELLED):
            return ProcessResult(error=BUSY_ERROR)

        self.cancel_token.reset()
        self._state = ChatState.PROCESSING
        try:
            return await self._run_turns(user_input)
        except Exception as e:
            log.error("Agent loop failed", error=str(e), exc_info=True)
            self.callback.on_error(str(e))
            return ProcessResult(error=f"Unexpected error: {e}")
        finally:
            if self._state in (ChatState.PROCESSING, ChatState.CANCELLED):
                self._state = ChatState.IDLE

    async def _run_turns(self, user_input: str) -> ProcessResult:
        transport = self.transport
        assert transport is not None
        is_subprocess = transport.kind == "subprocess"

        self.conversation.append(Message.user(user_input))
        self._record("user message", lambda history: history.append_user_message(user_input))

        run_usage = UsageAccumulator(self.config.model.model)
        responses: list[str] = []
        turns = 0
        current_input = user_input

        for turn in range(1, self.max_turns + 1):
            if self.cancel_token.cancelled:
                return self._cancelled_result(turns, responses, run_usage, is_subprocess)

            self.callback.on_turn_start(turn, self.max_turns)
            self.callback.on_thinking()

            outcome = await transport.send(current_input, self.conversation)
            run_usage.add(outcome.usage, outcome.cost)
            self.usage.add(outcome.usage, outcome.cost)
            if outcome.cancelled:
                return self._cancelled_result(turns, responses, run_usage, is_subprocess)
            if not outcome.ok or not outcome.has_content:
                error = outcome.error or (
                    NO_RESPONSE_ERROR if outcome.ok else f"Transport {outcome.status.value}"
                )
                log.warning("Turn failed", turn=turn, status=outcome.status.value, error=error)
                self.callback.on_error(error)
                return ProcessResult(
                    error=error,
                    response=self._final_response(responses),
                    turns_used=turns,
                    cost=self._cost(run_usage, is_subprocess),
                )

            turns += 1
            assistant = self._record_assistant(outcome)
            responses.append(outcome.text)

            codes = self._extractor.extract_blocks(outcome.text).codes
            native_calls = [] if is_subprocess else self._native_script_calls(assistant)
            if not codes and not native_calls:
                break

            if is_subprocess and not self.conversation.resume_session_id:
                # Unresolved product question; fail the turn and keep the session usable.
                log.warning("Script block without a CLI session id", turn=turn)
                self.callback.on_error(NO_SESSION_ERROR)
                return ProcessResult(
                    error=NO_SESSION_ERROR,
                    response=self._final_response(responses),
                    turns_used=turns,
                    cost=self._cost(run_usage, is_subprocess),
                )

            outputs = [await self._run_script(code) for code in codes]
            tool_results: list[ToolResultBlock] = []
            for call in native_calls:
                output, is_error = await self._run_native_call(call)
                tool_results.append(
                    ToolResultBlock(tool_use_id=call.id, content=output, is_error=is_error)
                )

            current_input = build_feedback_message(outputs) if outputs else ""
            self.conversation.append(self._feedback_message(current_input, tool_results))
        else:
            log.info("Turn budget exhausted", max_turns=self.max_turns)

        cost = self._cost(run_usage, is_subprocess)
        self.callback.on_result(turns, cost)
        return ProcessResult(
            success=True,
            response=self._final_response(responses),
            turns_used=turns,
            cost=cost,
        )

    def _record_assistant(self, outcome: TransportOutcome) -> Message:
        message = outcome.message
        if message is not None and message.content:
            assistant = message.to_message()
        else:
            assistant = Message.assistant([TextBlock(text=outcome.text)])
        self.conversation.append(assistant)

        for block in assistant.content:
            if isinstance(block, ThinkingBlock) and block.thinking:
                self._record("thinking", lambda history, text=block.thinking: history.append_thinking(text))
        model = (message.model if message is not None else "") or self.config.model.model
        self._record(
            "assistant message",
            lambda history: history.append_assistant_message(outcome.text, model, outcome.usage),
        )
        return assistant

    @staticmethod
    def _native_script_calls(message: Message) -> list[ToolUseBlock]:
        return [block for block in message.tool_uses() if block.name == SCRIPT_TOOL_NAME]

    @staticmethod
    def _feedback_message(feedback: str, tool_results: list[ToolResultBlock]) -> Message:
        if not tool_results:
            return Message.user(feedback)
        blocks: list[Any] = list(tool_results)
        if feedback:
            blocks.append(TextBlock(text=feedback))
        return Message(role=Role.USER, content=tuple(blocks))

    async def _execute(self, code: str) -> ScriptResult:
        executor = self.script_executor
        if executor is None:
            return ScriptResult.error_result("No script executor configured")
        try:
            if _is_async_callable(executor):
                result = await executor(code)
            else:
                result = await asyncio.to_thread(executor, code)
                if inspect.isawaitable(result):
                    result = await result
        except Exception as e:
            # Executor failures become feedback for the model.
            log.error("Script executor raised", error=str(e), exc_info=True)
            return ScriptResult.error_result(str(e))
        if not isinstance(result, ScriptResult):
            return ScriptResult.error_result(f"Executor returned {type(result).__name__}")
        return result

    async def _run_script(self, code: str) -> str:
        """Execute one tagged script; returns the text fed back to the model."""
        self.callback.on_script_code(code)
        result = await self._execute(code)
        if result.success:
            feedback = result.output
            self.callback.on_script_output(result.output)
        else:
            feedback = f"Error: {result.error}"
            self.callback.on_error(result.error)
        self._record(
            "script execution",
            lambda history: history.append_script_execution(
                code, feedback, is_error=not result.success
            ),
        )
        return feedback

    async def _run_native_call(self, call: ToolUseBlock) -> tuple[str, bool]:
        code = call.input.get("code", "") if isinstance(call.input, dict) else str(call.input)
        self.callback.on_tool_use(call.name, code)
        self.callback.on_script_code(code)
        result = await self._execute(str(code))
        if result.success:
            output, is_error = result.output, False
            self.callback.on_script_output(result.output)
        else:
            output, is_error = f"Error: {result.error}", True
            self.callback.on_error(result.error)

        def write(history: HistoryLog) -> None:
            history.append_tool_use(call.name, call.input, call.id)
            history.append_tool_result(call.id, output, is_error)

        self._record("tool call", write)
        return output, is_error

    def _cancelled_result(
        self,
        turns: int,
        responses: list[str],
        run_usage: UsageAccumulator,
        is_subprocess: bool,
    ) -> ProcessResult:
        log.info("Processing cancelled", turns_used=turns)
        return ProcessResult(
            success=True,
            cancelled=True,
            response=self._final_response(responses),
            turns_used=turns,
            cost=self._cost(run_usage, is_subprocess),
        )

    def _final_response(self, responses: list[str]) -> str:
        return self._extractor.strip_blocks("\n\n".join(responses)).strip()

    @staticmethod
    def _cost(run_usage: UsageAccumulator, is_subprocess: bool) -> float:
        if is_subprocess:
            return run_usage.reported_cost
        return run_usage.estimate_cost()

    def _record(self, what: str, write: Callable[[HistoryLog], Any]) -> None:
        """Append to the history log; the log is advisory, failures only warn."""
        if self.history is None or not self.config.history.enabled:
            return
        try:
            write(self.history)
        except (OSError, SessionError) as e:
            log.warning("Failed to record history", record=what, error=str(e))
