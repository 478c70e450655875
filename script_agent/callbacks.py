"""Observer interface for progress reported by the orchestrator."""

from abc import ABC, abstractmethod


class ChatCallback(ABC):
    """Receives chat output events.

    Implementations own presentation (terminal lines, host widgets). Every
    method is invoked from the orchestrator's worker.
    """

    @abstractmethod
    def on_turn_start(self, turn: int, max_turns: int) -> None:
        pass

    @abstractmethod
    def on_thinking(self) -> None:
        pass

    @abstractmethod
    def on_thinking_done(self) -> None:
        pass

    @abstractmethod
    def on_tool_use(self, tool_name: str, details: str) -> None:
        pass

    @abstractmethod
    def on_text(self, text: str) -> None:
        """Assistant text with script blocks removed."""

    @abstractmethod
    def on_script_code(self, code: str) -> None:
        pass

    @abstractmethod
    def on_script_output(self, output: str) -> None:
        pass

    @abstractmethod
    def on_error(self, error: str) -> None:
        pass

    @abstractmethod
    def on_result(self, num_turns: int, cost: float | None) -> None:
        pass


class NullCallback(ChatCallback):
    """Discard everything."""

    def on_turn_start(self, turn: int, max_turns: int) -> None:
        pass

    def on_thinking(self) -> None:
        pass

    def on_thinking_done(self) -> None:
        pass

    def on_tool_use(self, tool_name: str, details: str) -> None:
        pass

    def on_text(self, text: str) -> None:
        pass

    def on_script_code(self, code: str) -> None:
        pass

    def on_script_output(self, output: str) -> None:
        pass

    def on_error(self, error: str) -> None:
        pass

    def on_result(self, num_turns: int, cost: float | None) -> None:
        pass


class CollectorCallback(ChatCallback):
    """Collect output into strings; handy for tests and one-shot runs."""

    def __init__(self) -> None:
        self.clear()

    def clear(self) -> None:
        self.text = ""
        self.errors = ""
        self.script_codes: list[str] = []
        self.script_outputs = ""
        self.tool_uses: list[str] = []
        self.turn_starts: list[int] = []
        self.turns = 0
        self.cost: float | None = None

    def on_turn_start(self, turn: int, max_turns: int) -> None:
        self.turn_starts.append(turn)

    def on_thinking(self) -> None:
        pass

    def on_thinking_done(self) -> None:
        pass

    def on_tool_use(self, tool_name: str, details: str) -> None:
        self.tool_uses.append(tool_name)

    def on_text(self, text: str) -> None:
        self.text += text

    def on_script_code(self, code: str) -> None:
        self.script_codes.append(code)

    def on_script_output(self, output: str) -> None:
        self.script_outputs += output + "\n"

    def on_error(self, error: str) -> None:
        self.errors += error + "\n"

    def on_result(self, num_turns: int, cost: float | None) -> None:
        self.turns = num_turns
        self.cost = cost
