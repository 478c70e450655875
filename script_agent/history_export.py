"""Session history export and rendering utilities."""

from __future__ import annotations

import html
import json
from datetime import datetime, timezone
from pathlib import Path

from script_agent.history import HistoryLog, HistoryMessage
from script_agent.exceptions import SessionNotFoundError

EXPORT_MODES = ("chat", "scripts", "html", "all")
CHAT_TYPES = ("user", "assistant", "system")


def format_timestamp(timestamp_ms: int) -> str:
    if not timestamp_ms:
        return "-"
    moment = datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)
    return moment.isoformat(timespec="seconds").replace("+00:00", "Z")


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat(timespec="seconds").replace("+00:00", "Z")


def truncate_history_text(text: str, max_chars: int = 8000) -> str:
    cleaned = str(text or "")
    if len(cleaned) <= max_chars:
        return cleaned
    return cleaned[:max_chars].rstrip() + "... [truncated]"


def _content_text(message: HistoryMessage) -> str:
    content = message.content
    if content is None:
        return ""
    if isinstance(content, str):
        return content
    return json.dumps(content, ensure_ascii=False)


def render_chat_markdown(session_id: str, owner_id: str, messages: list[HistoryMessage]) -> str:
    chat_messages = [msg for msg in messages if msg.type in CHAT_TYPES]
    lines = [
        "# Session Chat Export",
        f"- Exported at (UTC): {_now_iso()}",
        f"- Session ID: {session_id}",
        f"- Owner: {owner_id}",
        f"- Messages: {len(chat_messages)}",
        "",
    ]
    if not chat_messages:
        lines.append("(no chat messages found)")
        lines.append("")
        return "\n".join(lines)

    for idx, msg in enumerate(chat_messages, start=1):
        header = f"## {idx}. {msg.type} timestamp={format_timestamp(msg.timestamp)}"
        if msg.model:
            header += f" model={msg.model}"
        lines.append(header)
        content = truncate_history_text(_content_text(msg))
        lines.append(content if content else "(empty)")
        lines.append("")
    return "\n".join(lines)


def collect_script_runs(messages: list[HistoryMessage]) -> list[dict[str, object]]:
    """Pair tool uses with their results by tool use id, in log order."""
    runs: list[dict[str, object]] = []
    by_id: dict[str, dict[str, object]] = {}
    for msg in messages:
        if msg.type == "tool_use":
            tool_input = msg.message.get("toolInput")
            code = tool_input.get("code", "") if isinstance(tool_input, dict) else tool_input
            run: dict[str, object] = {
                "tool": str(msg.message.get("toolName") or "tool"),
                "code": str(code or ""),
                "timestamp": msg.timestamp,
                "output": None,
                "is_error": False,
            }
            runs.append(run)
            if msg.tool_use_id:
                by_id[msg.tool_use_id] = run
        elif msg.type == "tool_result" and msg.tool_use_id in by_id:
            run = by_id[msg.tool_use_id]
            run["output"] = _content_text(msg)
            run["is_error"] = bool(msg.is_error)
    return runs


def render_scripts_markdown(session_id: str, owner_id: str, messages: list[HistoryMessage]) -> str:
    runs = collect_script_runs(messages)
    lines = [
        "# Session Script Export",
        f"- Exported at (UTC): {_now_iso()}",
        f"- Session ID: {session_id}",
        f"- Owner: {owner_id}",
        f"- Script runs: {len(runs)}",
        "",
    ]
    if not runs:
        lines.append("(no script runs found)")
        lines.append("")
        return "\n".join(lines)

    for idx, run in enumerate(runs, start=1):
        status = "error" if run["is_error"] else "ok"
        lines.append(
            f"## {idx}. tool={run['tool']} status={status} "
            f"timestamp={format_timestamp(int(run['timestamp'] or 0))}"
        )
        lines.append("```python")
        lines.append(str(run["code"]))
        lines.append("```")
        output = run["output"]
        lines.append("```")
        lines.append(truncate_history_text(str(output)) if output is not None else "(no result)")
        lines.append("```")
        lines.append("")
    return "\n".join(lines)


def render_chat_html(session_id: str, owner_id: str, messages: list[HistoryMessage]) -> str:
    """Minimal standalone HTML transcript; every value is escaped."""
    parts = [
        "<!DOCTYPE html>",
        "<html><head><meta charset=\"utf-8\">",
        f"<title>Session {html.escape(session_id)}</title>",
        "<style>",
        "body{font-family:sans-serif;max-width:60em;margin:2em auto}",
        ".msg{border-left:3px solid #999;margin:1em 0;padding:.2em 1em}",
        ".user{border-color:#36c}.assistant{border-color:#3a3}",
        ".tool_use,.tool_result{border-color:#c93}.error{border-color:#c33}",
        "pre{white-space:pre-wrap;background:#f6f6f6;padding:.5em}",
        "</style></head><body>",
        f"<h1>Session {html.escape(session_id)}</h1>",
        f"<p>Owner: {html.escape(owner_id)}</p>",
    ]
    for msg in messages:
        css = msg.type + (" error" if msg.is_error else "")
        if msg.type == "tool_use":
            tool_input = msg.message.get("toolInput")
            body = tool_input.get("code", "") if isinstance(tool_input, dict) else tool_input
        else:
            body = _content_text(msg)
        parts.append(f"<div class=\"msg {html.escape(css)}\">")
        parts.append(
            f"<p><b>{html.escape(msg.type)}</b> "
            f"<small>{html.escape(format_timestamp(msg.timestamp))}</small></p>"
        )
        parts.append(f"<pre>{html.escape(str(body or ''))}</pre>")
        parts.append("</div>")
    parts.append("</body></html>")
    return "\n".join(parts)


def export_session(
    history: HistoryLog,
    session_id: str,
    output_dir: Path,
    mode: str = "all",
) -> list[Path]:
    """Export one session to files. Returns list of written paths."""
    mode_key = (mode or "all").strip().lower()
    if mode_key not in EXPORT_MODES:
        mode_key = "all"

    if not history.session_path(session_id).exists():
        raise SessionNotFoundError(session_id)
    messages = history.load_session(session_id)
    owner_id = history.owner_id

    export_root = Path(output_dir).expanduser().resolve()
    export_root.mkdir(parents=True, exist_ok=True)
    stamp = datetime.now().strftime("%Y%m%d-%H%M%S")
    written: list[Path] = []

    if mode_key in ("chat", "all"):
        chat_path = export_root / f"chat-{session_id}-{stamp}.md"
        chat_path.write_text(
            render_chat_markdown(session_id, owner_id, messages) + "\n",
            encoding="utf-8",
        )
        written.append(chat_path)

    if mode_key in ("scripts", "all"):
        scripts_path = export_root / f"scripts-{session_id}-{stamp}.md"
        scripts_path.write_text(
            render_scripts_markdown(session_id, owner_id, messages) + "\n",
            encoding="utf-8",
        )
        written.append(scripts_path)

    if mode_key in ("html", "all"):
        html_path = export_root / f"chat-{session_id}-{stamp}.html"
        html_path.write_text(
            render_chat_html(session_id, owner_id, messages) + "\n",
            encoding="utf-8",
        )
        written.append(html_path)

    return written
