"""Append-only JSONL session history with UUID parent chaining.

Layout::

    <base_dir>/sessions/<base64url(owner_id)>/<session_id>.jsonl

Each line is one record ``{"uuid", "parentUuid", "type", "timestamp", ...}``.
The log is advisory: lines are appended without an fsync, and readers skip
anything they cannot parse.
"""

import base64
import binascii
import json
import re
import time
import uuid
from dataclasses import dataclass, field
from itertools import islice
from pathlib import Path
from typing import Any

from script_agent.config import get_config
from script_agent.exceptions import SessionError
from script_agent.logging import get_logger
from script_agent.types import TokenUsage

log = get_logger(__name__)

SESSIONS_DIR_NAME = "sessions"
SESSION_FILE_SUFFIX = ".jsonl"
SCRIPT_TOOL_NAME = "idascript"
FIRST_MESSAGE_MAX_CHARS = 100
SUMMARY_SCAN_LINES = 3

_SESSION_ID_RE = re.compile(r"^[A-Za-z0-9_\-]+$")
_RESERVED_KEYS = ("type", "uuid", "parentUuid", "timestamp")


def timestamp_ms() -> int:
    """Current unix time in milliseconds."""
    return int(time.time() * 1000)


def encode_owner(owner_id: str) -> str:
    """Reversible, filesystem-safe directory name for an owner identity."""
    encoded = base64.urlsafe_b64encode(owner_id.encode("utf-8")).decode("ascii")
    return encoded.rstrip("=")


def decode_owner(name: str) -> str:
    """Inverse of :func:`encode_owner`."""
    padded = name + "=" * (-len(name) % 4)
    try:
        return base64.urlsafe_b64decode(padded.encode("ascii")).decode("utf-8")
    except (binascii.Error, UnicodeError) as e:
        raise SessionError(f"Not an encoded owner directory: {name}") from e


def truncate_first_message(text: str, max_chars: int = FIRST_MESSAGE_MAX_CHARS) -> str:
    if len(text) <= max_chars:
        return text
    return text[: max_chars - 3] + "..."


@dataclass
class HistoryMessage:
    """A record loaded from a session file."""

    uuid: str
    parent_uuid: str
    type: str
    timestamp: int
    message: dict[str, Any] = field(default_factory=dict)
    model: str | None = None
    usage: TokenUsage | None = None
    tool_use_id: str | None = None
    is_error: bool | None = None

    @property
    def content(self) -> Any:
        """The type-specific payload text, where the record has one."""
        if self.type in ("user", "assistant"):
            inner = self.message.get("message")
            if isinstance(inner, dict):
                return inner.get("content")
            return None
        if self.type == "thinking":
            return self.message.get("thinking")
        return self.message.get("content")

    @classmethod
    def from_record(cls, record: dict[str, Any]) -> "HistoryMessage":
        usage = record.get("usage")
        is_error = record.get("isError")
        return cls(
            uuid=str(record.get("uuid", "")),
            parent_uuid=str(record.get("parentUuid", "")),
            type=str(record.get("type", "")),
            timestamp=int(record.get("timestamp") or 0),
            message=record,
            model=record.get("model"),
            usage=TokenUsage.from_dict(usage) if isinstance(usage, dict) else None,
            tool_use_id=record.get("toolUseId"),
            is_error=bool(is_error) if is_error is not None else None,
        )


@dataclass
class SessionInfo:
    """Cheap summary of a session file."""

    session_id: str
    file_path: str
    timestamp: int = 0
    first_message: str = ""


class HistoryLog:
    """Per-owner session store.

    Single writer: one process appends to a given session at a time.
    """

    def __init__(self, owner_id: str, base_dir: Path | str | None = None):
        """Initialize the log for an owner identity.

        Args:
            owner_id: Identity the sessions belong to (e.g. the analyzed file path)
            base_dir: Optional override of the configured history directory
        """
        if base_dir is None:
            base_dir = get_config().resolved_history_dir()
        self.base_dir = Path(base_dir).expanduser()
        self.owner_id = ""
        self.sessions_dir = self.base_dir / SESSIONS_DIR_NAME
        self._current_session_id = ""
        self._last_uuid: dict[str, str] = {}
        self.start_session(owner_id)

    # -- sessions ---------------------------------------------------------

    def start_session(self, owner_id: str) -> Path:
        """Select (creating if needed) the directory for ``owner_id``."""
        self.owner_id = owner_id
        self.sessions_dir = self.base_dir / SESSIONS_DIR_NAME / encode_owner(owner_id)
        self.sessions_dir.mkdir(parents=True, exist_ok=True)
        self._current_session_id = ""
        self._last_uuid.clear()
        return self.sessions_dir

    def create_session(self) -> str:
        """Mint a session id, create its empty file and make it current."""
        session_id = str(uuid.uuid4())
        self.session_path(session_id).touch()
        self._current_session_id = session_id
        self._last_uuid[session_id] = ""
        log.info("Created history session", session_id=session_id, owner=self.owner_id)
        return session_id

    def use_session(self, session_id: str) -> None:
        """Continue appending to an existing session."""
        self.session_path(session_id)
        self._current_session_id = session_id

    @property
    def current_session_id(self) -> str:
        return self._current_session_id

    def session_path(self, session_id: str) -> Path:
        if not _SESSION_ID_RE.match(session_id or ""):
            raise SessionError(f"Invalid session id: {session_id!r}")
        return self.sessions_dir / f"{session_id}{SESSION_FILE_SUFFIX}"

    def current_session_path(self) -> Path | None:
        if not self._current_session_id:
            return None
        return self.session_path(self._current_session_id)

    def delete_session(self, session_id: str) -> bool:
        path = self.session_path(session_id)
        if not path.exists():
            return False
        path.unlink()
        self._last_uuid.pop(session_id, None)
        if self._current_session_id == session_id:
            self._current_session_id = ""
        return True

    # -- writing ----------------------------------------------------------

    def append(self, session_id: str, type: str, payload: dict[str, Any] | None = None) -> str:
        """Append one record and return its uuid."""
        path = self.session_path(session_id)
        if session_id not in self._last_uuid:
            self._last_uuid[session_id] = self._tail_uuid(path)

        record_uuid = str(uuid.uuid4())
        record: dict[str, Any] = {
            key: value for key, value in (payload or {}).items() if key not in _RESERVED_KEYS
        }
        record["type"] = type
        record["uuid"] = record_uuid
        record["parentUuid"] = self._last_uuid[session_id]
        record["timestamp"] = timestamp_ms()

        with open(path, "a", encoding="utf-8") as f:
            f.write(json.dumps(record, ensure_ascii=False) + "\n")

        self._last_uuid[session_id] = record_uuid
        return record_uuid

    def _ensure_current(self) -> str:
        if not self._current_session_id:
            self.create_session()
        return self._current_session_id

    def append_user_message(self, content: str) -> str:
        return self.append(
            self._ensure_current(),
            "user",
            {"message": {"role": "user", "content": content}},
        )

    def append_assistant_message(
        self,
        content: str,
        model: str = "",
        usage: TokenUsage | None = None,
    ) -> str:
        payload: dict[str, Any] = {"message": {"role": "assistant", "content": content}}
        if model:
            payload["model"] = model
        if usage is not None:
            payload["usage"] = {
                "input_tokens": usage.input_tokens,
                "output_tokens": usage.output_tokens,
            }
        return self.append(self._ensure_current(), "assistant", payload)

    def append_tool_use(self, tool_name: str, tool_input: Any, tool_use_id: str = "") -> str:
        return self.append(
            self._ensure_current(),
            "tool_use",
            {
                "toolUseId": tool_use_id or str(uuid.uuid4()),
                "toolName": tool_name,
                "toolInput": tool_input,
            },
        )

    def append_tool_result(self, tool_use_id: str, content: str, is_error: bool = False) -> str:
        return self.append(
            self._ensure_current(),
            "tool_result",
            {"toolUseId": tool_use_id, "content": content, "isError": is_error},
        )

    def append_thinking(self, thinking: str) -> str:
        return self.append(self._ensure_current(), "thinking", {"thinking": thinking})

    def append_system_message(self, content: str, level: str = "info", subtype: str = "") -> str:
        payload: dict[str, Any] = {"content": content, "level": level}
        if subtype:
            payload["subtype"] = subtype
        return self.append(self._ensure_current(), "system", payload)

    def append_script_execution(self, code: str, output: str, is_error: bool = False) -> str:
        """Record a script run as a tool use / tool result pair."""
        tool_use_id = str(uuid.uuid4())
        self.append_tool_use(SCRIPT_TOOL_NAME, {"code": code}, tool_use_id)
        return self.append_tool_result(tool_use_id, output, is_error)

    # -- reading ----------------------------------------------------------

    def load_session(self, session_id: str) -> list[HistoryMessage]:
        """All parseable records of a session, in file order."""
        path = self.session_path(session_id)
        if not path.exists():
            return []

        messages: list[HistoryMessage] = []
        with open(path, encoding="utf-8", errors="replace") as f:
            for line in f:
                record = _parse_line(line)
                if record is not None:
                    messages.append(HistoryMessage.from_record(record))
        return messages

    def list_sessions(self) -> list[SessionInfo]:
        """Summaries of every session, newest first.

        Only the first few lines of each file are read.
        """
        sessions: list[SessionInfo] = []
        if not self.sessions_dir.exists():
            return sessions

        for path in self.sessions_dir.glob(f"*{SESSION_FILE_SUFFIX}"):
            info = SessionInfo(session_id=path.stem, file_path=str(path))
            with open(path, encoding="utf-8", errors="replace") as f:
                for index, line in enumerate(islice(f, SUMMARY_SCAN_LINES)):
                    record = _parse_line(line)
                    if record is None:
                        continue
                    if index == 0:
                        info.timestamp = int(record.get("timestamp") or 0)
                    if record.get("type") == "user" and not info.first_message:
                        content = (record.get("message") or {}).get("content")
                        if isinstance(content, str):
                            info.first_message = truncate_first_message(content)
            if not info.timestamp:
                info.timestamp = int(path.stat().st_mtime * 1000)
            sessions.append(info)

        sessions.sort(key=lambda item: item.timestamp, reverse=True)
        return sessions

    def get_all_user_messages(self) -> list[str]:
        """User message contents across all sessions, oldest session first."""
        messages: list[str] = []
        for info in sorted(self.list_sessions(), key=lambda item: item.timestamp):
            for record in self.load_session(info.session_id):
                if record.type == "user" and isinstance(record.content, str):
                    messages.append(record.content)
        return messages

    @staticmethod
    def _tail_uuid(path: Path) -> str:
        """uuid of the last parseable record, or "" for a new/empty file."""
        if not path.exists():
            return ""
        with open(path, encoding="utf-8", errors="replace") as f:
            lines = f.readlines()
        for line in reversed(lines):
            record = _parse_line(line)
            if record is not None and record.get("uuid"):
                return str(record["uuid"])
        return ""


def _parse_line(line: str) -> dict[str, Any] | None:
    line = line.strip()
    if not line:
        return None
    try:
        record = json.loads(line)
    except json.JSONDecodeError:
        return None
    return record if isinstance(record, dict) else None
