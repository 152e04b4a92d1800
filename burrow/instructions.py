"""Load and render instruction templates (the system prompt) from disk.

Supports a two-layer override system:
  1. Personal overrides in ``~/.burrow/instructions/`` (highest priority)
  2. Package defaults in ``burrow/prompts/``
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Mapping

from burrow.tools.registry import ToolSpec

_PERSONAL_DIR = Path("~/.burrow/instructions").expanduser()
SYSTEM_PROMPT_TEMPLATE = "system_prompt.md"


class _SafeFormatDict(dict[str, str]):
    """Leave unknown placeholders untouched instead of raising KeyError."""

    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


class InstructionLoader:
    """Read and render instruction templates with personal-override support."""

    def __init__(
        self,
        base_dir: Path | str | None = None,
        personal_dir: Path | str | None = None,
    ):
        self.base_dir = self._resolve_base_dir(base_dir)
        self.personal_dir: Path = (
            Path(personal_dir).expanduser().resolve()
            if personal_dir is not None
            else _PERSONAL_DIR.resolve()
        )
        self._cache: dict[str, str] = {}

    @staticmethod
    def _resolve_base_dir(base_dir: Path | str | None) -> Path:
        if base_dir is not None:
            return Path(base_dir).expanduser().resolve()
        env_dir = os.getenv("BURROW_INSTRUCTIONS_DIR")
        if env_dir:
            return Path(env_dir).expanduser().resolve()
        return (Path(__file__).resolve().parent / "prompts").resolve()

    def _path(self, name: str) -> Path:
        """Return the effective file path, preferring the personal override."""
        personal = self.personal_dir / name
        if personal.is_file():
            return personal
        return self.base_dir / name

    def load(self, name: str) -> str:
        """Load instruction template content by filename."""
        cached = self._cache.get(name)
        if cached is not None:
            return cached

        path = self._path(name)
        if not path.is_file():
            raise FileNotFoundError(f"Instruction template not found: {path}")
        content = path.read_text(encoding="utf-8").strip()
        self._cache[name] = content
        return content

    def render(self, name: str, **variables: object) -> str:
        """Render template with simple ``str.format`` placeholder substitution."""
        template = self.load(name)
        values: Mapping[str, str] = {k: str(v) for k, v in variables.items()}
        return template.format_map(_SafeFormatDict(values))

    def system_prompt(self, specs: Mapping[str, ToolSpec]) -> str:
        """Render the system prompt listing the given tool kinds."""
        tool_list = "\n".join(f"- {spec.usage}: {spec.description}" for spec in specs.values())
        return self.render(SYSTEM_PROMPT_TEMPLATE, tool_list=tool_list)
