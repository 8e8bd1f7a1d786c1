"""Prompt templates: system prompt, one block per chat mode, open-entity context.

Lookup order for every template name:
  1. ``personal_dir`` (default ``~/.verifolio-chat/instructions/``)
  2. ``base_dir`` (``VERIFOLIO_CHAT_INSTRUCTIONS_DIR``, else the ``templates/`` shipped with the package)
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Mapping

PERSONAL_DIR = Path("~/.verifolio-chat/instructions")
BUNDLED_DIR = Path(__file__).resolve().parent / "templates"

SYSTEM_TEMPLATE = "system_prompt.md"
CONTEXT_TEMPLATE = "context_section.md"
MODE_TEMPLATES: Mapping[str, str] = {
    "plan": "mode_plan.md",
    "auto": "mode_auto.md",
    "ask-first": "mode_ask_first.md",
}


class _KeepMissing(dict):
    def __missing__(self, key: str) -> str:
        return "{" + key + "}"


def _default_base_dir() -> Path:
    env_dir = os.getenv("VERIFOLIO_CHAT_INSTRUCTIONS_DIR")
    return Path(env_dir) if env_dir else BUNDLED_DIR


class InstructionLoader:
    """Reads templates once per process and fills their ``{placeholders}``."""

    def __init__(
        self,
        base_dir: Path | str | None = None,
        personal_dir: Path | str | None = None,
    ):
        base = Path(base_dir) if base_dir is not None else _default_base_dir()
        personal = Path(personal_dir) if personal_dir is not None else PERSONAL_DIR
        self.search_path: tuple[Path, ...] = (
            personal.expanduser().resolve(),
            base.expanduser().resolve(),
        )
        self._templates: dict[str, str] = {}

    def load(self, name: str) -> str:
        if name in self._templates:
            return self._templates[name]
        for directory in self.search_path:
            candidate = directory / name
            if candidate.is_file():
                text = candidate.read_text(encoding="utf-8").strip()
                self._templates[name] = text
                return text
        raise FileNotFoundError(f"Instruction template {name!r} not found in {', '.join(map(str, self.search_path))}")

    def render(self, template_name: str, /, **variables: object) -> str:
        """Fill placeholders; names without a value are left as written."""
        values = _KeepMissing({key: str(value) for key, value in variables.items()})
        return self.load(template_name).format_map(values)

    def mode_instructions(self, mode: str, /, **variables: object) -> str:
        """Mode block for ``plan``/``auto``/``ask-first``; empty for anything else."""
        template_name = MODE_TEMPLATES.get(mode)
        return self.render(template_name, **variables) if template_name else ""
