"""Extract embedded ``<idascript>`` blocks from assistant text."""

import re

from script_agent.types import ScriptBlock

DEFAULT_SCRIPT_TAG = "idascript"


class ExtractedScripts(list[ScriptBlock]):
    """Ordered script blocks plus the text that follows the last one."""

    def __init__(self, blocks: list[ScriptBlock] | None = None, trailing_text: str = ""):
        super().__init__(blocks or [])
        self.trailing_text = trailing_text

    @property
    def codes(self) -> list[str]:
        """Non-empty scripts in order."""
        return [block.code for block in self if block.code]

    def reconstruct(self) -> str:
        """Original text with the tag markers removed (code trimmed)."""
        parts: list[str] = []
        for block in self:
            parts.append(block.preceding_text)
            parts.append(block.code)
        parts.append(self.trailing_text)
        return "".join(parts)


class ScriptBlockExtractor:
    """Find ``<tag>...</tag>`` spans. Tags do not nest; the first close wins."""

    def __init__(self, tag: str = DEFAULT_SCRIPT_TAG):
        if not re.fullmatch(r"[A-Za-z][A-Za-z0-9_\-]*", tag or ""):
            raise ValueError(f"Invalid script tag name: {tag!r}")
        self.tag = tag
        self._block_re = re.compile(rf"<{tag}>(.*?)</{tag}>", re.DOTALL)

    def extract_blocks(self, text: str) -> ExtractedScripts:
        """Split text into (code, preceding text) segments."""
        text = text or ""
        blocks: list[ScriptBlock] = []
        last_end = 0
        for match in self._block_re.finditer(text):
            blocks.append(
                ScriptBlock(
                    code=match.group(1).strip(),
                    preceding_text=text[last_end:match.start()],
                )
            )
            last_end = match.end()
        if not blocks:
            return ExtractedScripts([], trailing_text="")
        return ExtractedScripts(blocks, trailing_text=text[last_end:])

    def has_blocks(self, text: str) -> bool:
        return bool(self._block_re.search(text or ""))

    def strip_blocks(self, text: str) -> str:
        """Remove every tagged span, leaving all other characters untouched."""
        return self._block_re.sub("", text or "")

    def strip_markers(self, text: str) -> str:
        """Drop stray opening/closing markers, e.g. from a partial streamed delta."""
        return re.sub(rf"</?{self.tag}>", "", text or "")

    def visible_prefix(self, text: str) -> str:
        """Text safe to show while streaming.

        Complete blocks are removed and output stops at an unclosed opening
        tag (or a partial one at the very end). The result only ever grows
        as ``text`` grows.
        """
        stripped = self.strip_blocks(text)
        open_tag = f"<{self.tag}>"
        cut = stripped.find(open_tag)
        if cut >= 0:
            return stripped[:cut]
        for size in range(min(len(open_tag) - 1, len(stripped)), 0, -1):
            if stripped.endswith(open_tag[:size]):
                return stripped[:-size]
        return stripped


_default_extractor = ScriptBlockExtractor()


def extract_blocks(text: str) -> ExtractedScripts:
    return _default_extractor.extract_blocks(text)


def has_blocks(text: str) -> bool:
    return _default_extractor.has_blocks(text)


def strip_blocks(text: str) -> str:
    return _default_extractor.strip_blocks(text)


def build_feedback_message(outputs: list[str]) -> str:
    """Fold per-script outputs into the synthetic input for the next turn."""
    combined = "Script execution results:\n\n"
    for output in outputs:
        combined += f"```\n{output}\n```\n\n"
    return combined
