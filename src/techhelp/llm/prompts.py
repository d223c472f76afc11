"""Prompt templates: one Jinja2 file per model call, shipped as package data."""

from __future__ import annotations

from functools import lru_cache
from pathlib import Path

from jinja2 import Environment, FileSystemLoader

TEMPLATE_DIR = Path(__file__).resolve().parent.parent / "templates"
SUFFIX = ".j2"


@lru_cache(maxsize=1)
def _environment() -> Environment:
    # Prompts are plain text, never HTML
    return Environment(
        loader=FileSystemLoader(str(TEMPLATE_DIR)),
        autoescape=False,
        trim_blocks=True,
        lstrip_blocks=True,
        keep_trailing_newline=False,
    )


def template_names() -> list[str]:
    return sorted(p.name for p in TEMPLATE_DIR.glob(f"*{SUFFIX}"))


def render(template_name: str, **context: object) -> str:
    """Render a prompt and strip surrounding whitespace.

    ``template_name`` may be given with or without the ``.j2`` suffix.
    """
    if not template_name.endswith(SUFFIX):
        template_name += SUFFIX
    return _environment().get_template(template_name).render(**context).strip()
