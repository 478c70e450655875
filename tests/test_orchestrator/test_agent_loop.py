from pathlib import Path

import pytest

from script_agent.callbacks import CollectorCallback
from script_agent.history import HistoryLog
from script_agent.orchestrator import BUSY_ERROR, NO_RESPONSE_ERROR, NO_SESSION_ERROR, NOT_CONNECTED_ERROR
from script_agent.transport import TransportOutcome
from script_agent.types import (
    AssembledMessage,
    ChatState,
    Role,
    ScriptResult,
    TextBlock,
    TokenUsage,
    ToolResultBlock,
    ToolUseBlock,
)
from script_agent.usage import estimate_cost

SCRIPT_REPLY = "Checking.\n<idascript>print(1)</idascript>"


def feedback(*outputs: str) -> str:
    return "Script execution results:\n\n" + "".join(f"```\n{out}\n```\n\n" for out in outputs)


class RecordingExecutor:
    def __init__(self, *outputs: str):
        self.outputs = list(outputs)
        self.codes: list[str] = []

    def __call__(self, code: str) -> ScriptResult:
        self.codes.append(code)
        return ScriptResult.success_result(self.outputs.pop(0))


@pytest.mark.asyncio
async def test_reply_without_scripts_completes_in_one_turn(build, scripted):
    transport = scripted(["Just an answer."])
    executor = RecordingExecutor()
    collector = CollectorCallback()
    orchestrator = build(transport, script_executor=executor, callback=collector)
    assert await orchestrator.connect(kind="direct")

    result = await orchestrator.process("hello")

    assert result.success
    assert result.turns_used == 1
    assert result.response == "Just an answer."
    assert result.error is None
    assert transport.inputs == ["hello"]
    assert executor.codes == []
    assert collector.turn_starts == [1]
    assert collector.turns == 1
    assert orchestrator.state == ChatState.IDLE


@pytest.mark.asyncio
async def test_single_script_takes_two_turns_and_feeds_output_back(build, scripted):
    transport = scripted([SCRIPT_REPLY, "The answer is 1."])
    executor = RecordingExecutor("1")
    collector = CollectorCallback()
    orchestrator = build(transport, script_executor=executor, callback=collector)
    await orchestrator.connect(kind="direct")

    result = await orchestrator.process("what is one?")

    assert result.success
    assert result.turns_used == 2
    assert executor.codes == ["print(1)"]
    assert transport.inputs == ["what is one?", feedback("1")]
    assert result.response == "Checking.\n\n\nThe answer is 1."
    assert collector.script_codes == ["print(1)"]
    assert collector.script_outputs == "1\n"
    assert collector.turn_starts == [1, 2]

    # user, assistant, feedback, assistant
    assert orchestrator.message_count == 4
    second_transcript = transport.transcripts[1]
    assert second_transcript[-1].role == Role.USER
    assert second_transcript[-1].text() == feedback("1")


@pytest.mark.asyncio
async def test_several_scripts_fold_into_one_feedback_message(build, scripted):
    transport = scripted(["<idascript>a()</idascript> and <idascript>b()</idascript>", "ok"])
    executor = RecordingExecutor("A", "B")
    orchestrator = build(transport, script_executor=executor)
    await orchestrator.connect(kind="direct")

    result = await orchestrator.process("go")

    assert executor.codes == ["a()", "b()"]
    assert transport.inputs[1] == feedback("A", "B")
    assert result.turns_used == 2


@pytest.mark.asyncio
async def test_turn_budget_stops_the_loop(build, scripted):
    transport = scripted([SCRIPT_REPLY, "never sent"])
    executor = RecordingExecutor("1")
    orchestrator = build(transport, script_executor=executor, max_turns=1)
    await orchestrator.connect(kind="direct")

    result = await orchestrator.process("go")

    assert result.success
    assert result.turns_used == 1
    assert len(transport.inputs) == 1


@pytest.mark.asyncio
async def test_cancel_between_turns_prevents_next_turn(build, scripted):
    transport = scripted([SCRIPT_REPLY, "never sent"])
    orchestrator = None

    def cancelling_executor(code: str) -> ScriptResult:
        assert orchestrator is not None
        orchestrator.cancel()
        return ScriptResult.success_result("1")

    collector = CollectorCallback()
    orchestrator = build(transport, script_executor=cancelling_executor, callback=collector)
    await orchestrator.connect(kind="direct")

    result = await orchestrator.process("go")

    assert result.cancelled
    assert result.success
    assert result.turns_used == 1
    assert result.response == "Checking."
    assert len(transport.inputs) == 1
    assert collector.turns == 0
    assert orchestrator.state == ChatState.IDLE


@pytest.mark.asyncio
async def test_next_process_call_resets_cancellation(build, scripted):
    transport = scripted(["first", "second"])
    orchestrator = build(transport)
    await orchestrator.connect(kind="direct")
    orchestrator.cancel()
    assert orchestrator.is_cancelled()

    result = await orchestrator.process("go")

    assert result.success
    assert not result.cancelled
    assert result.response == "first"


@pytest.mark.asyncio
async def test_executor_exception_becomes_feedback(build, scripted):
    transport = scripted([SCRIPT_REPLY, "recovered"])

    def broken(code: str) -> ScriptResult:
        raise RuntimeError("boom")

    collector = CollectorCallback()
    orchestrator = build(transport, script_executor=broken, callback=collector)
    await orchestrator.connect(kind="direct")

    result = await orchestrator.process("go")

    assert result.success
    assert result.turns_used == 2
    assert transport.inputs[1] == feedback("Error: boom")
    assert "boom" in collector.errors


@pytest.mark.asyncio
async def test_executor_error_result_becomes_feedback(build, scripted):
    transport = scripted([SCRIPT_REPLY, "ok"])

    async def failing(code: str) -> ScriptResult:
        return ScriptResult.error_result("NameError: name 'x' is not defined")

    orchestrator = build(transport, script_executor=failing)
    await orchestrator.connect(kind="direct")

    await orchestrator.process("go")

    assert transport.inputs[1] == feedback("Error: NameError: name 'x' is not defined")


@pytest.mark.asyncio
async def test_missing_executor_is_reported_to_the_model(build, scripted):
    transport = scripted([SCRIPT_REPLY, "ok"])
    orchestrator = build(transport)
    await orchestrator.connect(kind="direct")

    await orchestrator.process("go")

    assert transport.inputs[1] == feedback("Error: No script executor configured")


@pytest.mark.asyncio
async def test_transport_failure_aborts_with_error(build, scripted):
    transport = scripted([SCRIPT_REPLY, TransportOutcome.failed("API error 529: overloaded")])
    collector = CollectorCallback()
    orchestrator = build(transport, script_executor=RecordingExecutor("1"), callback=collector)
    await orchestrator.connect(kind="direct")

    result = await orchestrator.process("go")

    assert not result.success
    assert result.error == "API error 529: overloaded"
    assert result.turns_used == 1
    assert result.response == "Checking."
    assert "overloaded" in collector.errors
    assert orchestrator.state == ChatState.IDLE


@pytest.mark.asyncio
async def test_timeout_outcome_aborts_with_error(build, scripted):
    transport = scripted([TransportOutcome.timed_out("Request timed out after 600s")])
    orchestrator = build(transport)
    await orchestrator.connect(kind="direct")

    result = await orchestrator.process("go")

    assert not result.success
    assert result.error == "Request timed out after 600s"


@pytest.mark.asyncio
async def test_empty_reply_is_an_error(build, scripted):
    transport = scripted([TransportOutcome(text="   ")])
    orchestrator = build(transport)
    await orchestrator.connect(kind="direct")

    result = await orchestrator.process("go")

    assert not result.success
    assert result.error == NO_RESPONSE_ERROR


@pytest.mark.asyncio
async def test_process_refuses_when_not_connected(build, scripted):
    orchestrator = build(scripted([]))

    result = await orchestrator.process("hello")

    assert not result.success
    assert result.error == NOT_CONNECTED_ERROR


@pytest.mark.asyncio
async def test_process_refuses_while_busy(build, scripted):
    transport = scripted(["x"])
    orchestrator = build(transport)
    await orchestrator.connect(kind="direct")
    orchestrator._state = ChatState.PROCESSING

    result = await orchestrator.process("hello")

    assert result.error == BUSY_ERROR
    assert transport.inputs == []


@pytest.mark.asyncio
async def test_unexpected_exception_becomes_error_result(build, scripted):
    transport = scripted([ValueError("kaboom")])
    orchestrator = build(transport)
    await orchestrator.connect(kind="direct")

    result = await orchestrator.process("go")

    assert not result.success
    assert result.error == "Unexpected error: kaboom"
    assert orchestrator.state == ChatState.IDLE


@pytest.mark.asyncio
async def test_subprocess_script_without_session_id_fails_recoverably(build, scripted):
    transport = scripted([SCRIPT_REPLY, "next"], kind="subprocess", session_id="")
    executor = RecordingExecutor("1")
    orchestrator = build(transport, script_executor=executor)
    await orchestrator.connect(kind="subprocess")

    result = await orchestrator.process("go")

    assert not result.success
    assert result.error == NO_SESSION_ERROR
    assert result.turns_used == 1
    assert executor.codes == []
    assert orchestrator.state == ChatState.IDLE

    # The session stays usable.
    follow_up = await orchestrator.process("again")
    assert follow_up.success


@pytest.mark.asyncio
async def test_subprocess_cost_is_the_sum_of_reported_costs(build, scripted):
    transport = scripted([SCRIPT_REPLY, "done"], kind="subprocess", session_id="sess-1")
    collector = CollectorCallback()
    orchestrator = build(transport, script_executor=RecordingExecutor("1"), callback=collector)
    await orchestrator.connect(kind="subprocess")

    result = await orchestrator.process("go")

    assert result.success
    assert result.turns_used == 2
    assert result.cost == pytest.approx(0.02)
    assert collector.cost == pytest.approx(0.02)
    assert orchestrator.conversation.resume_session_id == "sess-1"


@pytest.mark.asyncio
async def test_direct_cost_is_estimated_from_usage(build, scripted, config):
    transport = scripted([SCRIPT_REPLY, "done"])
    orchestrator = build(transport, script_executor=RecordingExecutor("1"))
    await orchestrator.connect(kind="direct")

    result = await orchestrator.process("go")

    expected = estimate_cost(config.model.model, TokenUsage(input_tokens=20, output_tokens=10))
    assert result.cost == pytest.approx(expected)
    assert orchestrator.total_usage == TokenUsage(input_tokens=20, output_tokens=10)


@pytest.mark.asyncio
async def test_native_script_tool_call_is_answered_with_tool_result(build, scripted):
    tool_call = ToolUseBlock(id="toolu_1", name="idascript", input={"code": "print(2)"})
    first = TransportOutcome(
        message=AssembledMessage(content=[TextBlock(text="Running."), tool_call]),
        text="Running.",
        usage=TokenUsage(input_tokens=1, output_tokens=1),
    )
    transport = scripted([first, "Got 2."])
    executor = RecordingExecutor("2")
    collector = CollectorCallback()
    orchestrator = build(transport, script_executor=executor, callback=collector)
    await orchestrator.connect(kind="direct")

    result = await orchestrator.process("go")

    assert result.success
    assert result.turns_used == 2
    assert executor.codes == ["print(2)"]
    assert collector.tool_uses == ["idascript"]
    assert transport.inputs[1] == ""
    answer = transport.transcripts[1][-1]
    assert answer.role == Role.USER
    assert answer.content == (ToolResultBlock(tool_use_id="toolu_1", content="2", is_error=False),)


@pytest.mark.asyncio
async def test_history_records_every_step_in_a_parent_chain(build, scripted, tmp_path: Path):
    history = HistoryLog("project.bin", tmp_path)
    transport = scripted([SCRIPT_REPLY, "done"])
    orchestrator = build(transport, script_executor=RecordingExecutor("1"), history=history)
    await orchestrator.connect(kind="direct")
    session_id = orchestrator.start_new_session()

    await orchestrator.process("go")

    records = history.load_session(session_id)
    assert [r.type for r in records] == ["user", "assistant", "tool_use", "tool_result", "assistant"]
    assert records[0].parent_uuid == ""
    for previous, record in zip(records, records[1:]):
        assert record.parent_uuid == previous.uuid
    assert records[0].content == "go"
    assert records[1].model == "claude-sonnet-4-20250514"
    assert records[1].usage == TokenUsage(input_tokens=10, output_tokens=5)
    assert records[2].message["toolInput"] == {"code": "print(1)"}
    assert records[3].content == "1"
    assert records[3].tool_use_id == records[2].tool_use_id


@pytest.mark.asyncio
async def test_history_failures_do_not_break_the_loop(build, scripted, tmp_path: Path, monkeypatch):
    history = HistoryLog("owner", tmp_path)

    def broken_append(*args, **kwargs):
        raise OSError("disk full")

    monkeypatch.setattr(history, "append", broken_append)
    transport = scripted(["fine"])
    orchestrator = build(transport, history=history)
    await orchestrator.connect(kind="direct")

    result = await orchestrator.process("go")

    assert result.success
    assert result.response == "fine"


@pytest.mark.asyncio
async def test_failed_connect_reports_error(build, scripted):
    transport = scripted([])
    transport.connect_result = False
    collector = CollectorCallback()
    orchestrator = build(transport, callback=collector)

    assert await orchestrator.connect(kind="direct") is False
    assert orchestrator.state == ChatState.DISCONNECTED
    assert not orchestrator.is_connected()
    assert "connection refused" in collector.errors


@pytest.mark.asyncio
async def test_system_prompt_is_handed_to_the_transport(build, scripted, tmp_path: Path):
    (tmp_path / "PROMPT.md").write_text("Be precise.", encoding="utf-8")
    (tmp_path / "USAGE.md").write_text("Use print().", encoding="utf-8")
    transport = scripted([])
    orchestrator = build(transport)
    orchestrator.load_system_prompt(tmp_path)

    await orchestrator.connect(kind="direct")

    assert transport.system_prompt.startswith("Be precise.\n\n")
    assert transport.system_prompt.endswith("Use print().")


@pytest.mark.asyncio
async def test_new_session_forgets_the_transcript(build, scripted, tmp_path: Path):
    history = HistoryLog("owner", tmp_path)
    transport = scripted(["one", "two"], kind="subprocess", session_id="sess-1")
    orchestrator = build(transport, history=history)
    await orchestrator.connect(kind="subprocess")
    await orchestrator.process("first")
    assert orchestrator.conversation.resume_session_id == "sess-1"

    session_id = orchestrator.start_new_session()

    assert session_id == history.current_session_id
    assert orchestrator.message_count == 0
    assert orchestrator.conversation.resume_session_id == ""


@pytest.mark.asyncio
async def test_disconnect_releases_the_transport(build, scripted):
    transport = scripted([])
    orchestrator = build(transport)
    await orchestrator.connect(kind="direct")

    await orchestrator.disconnect()

    assert orchestrator.state == ChatState.DISCONNECTED
    assert not transport.connected
    assert orchestrator.transport is None
