"""Per-unit YAML descriptors and completion stamps.

Only the fields the coordination core relies on are interpreted here: id,
status, lane, title and worktree_path. Everything else is carried through
untouched.
"""

from __future__ import annotations

from datetime import date
from pathlib import Path

import yaml

from laneledger.constants import STAMP_SUFFIX, WU_ID_PATTERN
from laneledger.core.state.store import atomic_write_text
from laneledger.paths import ProjectPaths


def read_descriptor(paths: ProjectPaths, wu_id: str) -> dict[str, object] | None:
    """Read ``<wu_dir>/<id>.yaml``; None when missing or not a mapping."""
    path = paths.descriptor_file(wu_id)
    if not path.exists():
        return None
    raw = yaml.safe_load(path.read_text(encoding="utf-8"))
    if not isinstance(raw, dict):
        return None
    return raw


def write_descriptor(paths: ProjectPaths, wu_id: str, data: dict[str, object]) -> Path:
    path = paths.descriptor_file(wu_id)
    atomic_write_text(path, yaml.dump(data, default_flow_style=False, allow_unicode=True, sort_keys=False))
    return path


def mark_descriptor_done(paths: ProjectPaths, wu_id: str, completed_at: str) -> Path | None:
    """Set status done on an existing descriptor. Returns the path written, or None if absent."""
    data = read_descriptor(paths, wu_id)
    if data is None:
        return None
    data["status"] = "done"
    data["locked"] = True
    data["completed_at"] = completed_at
    data["completed"] = completed_at[:10]
    return write_descriptor(paths, wu_id, data)


def stamp_text(wu_id: str, title: str, completed_on: date) -> str:
    return f"WU {wu_id} - {title}\nCompleted: {completed_on.isoformat()}\n"


def write_stamp(paths: ProjectPaths, wu_id: str, title: str, completed_on: date) -> Path | None:
    """Create the completion stamp; an existing stamp is left untouched (returns None)."""
    path = paths.stamp_file(wu_id)
    if path.exists():
        return None
    atomic_write_text(path, stamp_text(wu_id, title, completed_on))
    return path


def stamped_ids(paths: ProjectPaths) -> frozenset[str]:
    if not paths.stamps_path.exists():
        return frozenset()
    ids = set()
    for stamp in paths.stamps_path.glob(f"*{STAMP_SUFFIX}"):
        wu_id = stamp.name[: -len(STAMP_SUFFIX)]
        if WU_ID_PATTERN.match(wu_id):
            ids.add(wu_id)
    return frozenset(ids)
