"""Locate work unit ids inside ``## `` sections of markdown documents."""

from __future__ import annotations

import re

DONE_SECTION = "done"
IN_PROGRESS_SECTION = "in progress"

_WU_ID_IN_TEXT = re.compile(r"(?<![\w-])(WU-\d+)(?!\d)")
_LEADING_SYMBOLS = re.compile(r"^[^a-z0-9]+")


def _section_name(line: str) -> str | None:
    if not line.startswith("## "):
        return None
    name = _LEADING_SYMBOLS.sub("", line[3:].strip().lower())
    return name.replace("-", " ").replace("_", " ")


def _mentions(line: str, wu_id: str) -> bool:
    return wu_id in _WU_ID_IN_TEXT.findall(line)


def section_ids(text: str, section: str) -> frozenset[str]:
    """Work unit ids mentioned under every heading whose name starts with ``section``."""
    ids: set[str] = set()
    inside = False
    for line in text.splitlines():
        name = _section_name(line)
        if name is not None:
            inside = name.startswith(section)
            continue
        if inside:
            ids.update(_WU_ID_IN_TEXT.findall(line))
    return frozenset(ids)


def remove_from_section(text: str, wu_id: str, section: str) -> tuple[str, bool]:
    """Drop lines mentioning ``wu_id`` under ``section``. Returns (new text, changed)."""
    kept: list[str] = []
    inside = False
    changed = False
    for line in text.splitlines(keepends=True):
        name = _section_name(line)
        if name is not None:
            inside = name.startswith(section)
        elif inside and _mentions(line, wu_id):
            changed = True
            continue
        kept.append(line)
    return "".join(kept), changed
