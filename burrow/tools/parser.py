"""Wire grammar for tool directives embedded in model output.

A directive looks like ``<tool>NAME|key1=value1|key2=value2</tool>``. Unknown
names and directives missing a required key are dropped without affecting
the other directives in the same text.
"""

import re
from typing import Mapping

from burrow.logging import get_logger
from burrow.tools.registry import TOOL_SPECS, ToolCall, ToolSpec

log = get_logger(__name__)

OPEN_MARKER = "<tool>"
CLOSE_MARKER = "</tool>"
_DIRECTIVE_RE = re.compile(r"<tool>(.*?)</tool>", re.DOTALL)


class ToolCallParser:
    """Extract tool calls from text and produce the display text without them."""

    def __init__(self, specs: Mapping[str, ToolSpec] | None = None):
        self.specs: Mapping[str, ToolSpec] = specs if specs is not None else TOOL_SPECS

    def parse(self, text: str) -> list[ToolCall]:
        """Return valid tool calls in left-to-right order of appearance."""
        calls: list[ToolCall] = []
        if not text:
            return calls
        for match in _DIRECTIVE_RE.finditer(text):
            call = self._parse_directive(match.group(1))
            if call is not None:
                calls.append(call)
        return calls

    def _parse_directive(self, body: str) -> ToolCall | None:
        # A directive restarted mid-emission ("<tool>cre<tool>create_file|...")
        # is read from its last opening marker.
        body = body.rsplit(OPEN_MARKER, 1)[-1].strip()
        name, *pairs = body.split("|")
        name = name.strip()

        spec = self.specs.get(name)
        if spec is None:
            log.debug("Dropping directive with unknown tool", tool=name)
            return None

        parameters: dict[str, str] = {}
        for pair in pairs:
            key, sep, value = pair.partition("=")
            key = key.strip()
            if not sep or not key:
                continue
            parameters[key] = value.strip()

        missing = spec.missing(parameters)
        if missing:
            log.debug("Dropping directive with missing parameters", tool=name, missing=missing)
            return None
        return ToolCall(name=name, parameters=parameters)

    @staticmethod
    def strip(text: str) -> str:
        """Remove every directive span and surrounding whitespace."""
        stripped = text or ""
        while True:
            reduced = _DIRECTIVE_RE.sub("", stripped)
            if reduced == stripped:
                break
            stripped = reduced
        return stripped.strip()

    @staticmethod
    def has_unterminated_directive(text: str) -> bool:
        """True while an opening marker has no matching closing marker."""
        text = text or ""
        return text.count(OPEN_MARKER) > text.count(CLOSE_MARKER)

    @classmethod
    def display_prefix(cls, text: str) -> str:
        """Portion of an in-flight stream that is safe to show.

        Complete directives are removed; anything from an unterminated
        opening marker (or a partial one at the very end) onward is held
        back. The result only grows as more fragments arrive.
        """
        text = _DIRECTIVE_RE.sub("", text or "")
        open_idx = text.find(OPEN_MARKER)
        if open_idx >= 0:
            text = text[:open_idx]
        for size in range(len(OPEN_MARKER) - 1, 0, -1):
            if text.endswith(OPEN_MARKER[:size]):
                text = text[:-size]
                break
        return text.lstrip()


_default_parser = ToolCallParser()


def parse(text: str) -> list[ToolCall]:
    return _default_parser.parse(text)


def strip(text: str) -> str:
    return ToolCallParser.strip(text)


def has_unterminated_directive(text: str) -> bool:
    return ToolCallParser.has_unterminated_directive(text)


def display_prefix(text: str) -> str:
    return ToolCallParser.display_prefix(text)
