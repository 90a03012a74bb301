"""Per-lane mutual exclusion through exclusive lock-file creation.

A lock exists exactly when its file exists. Files are written completely to a
private temp path and hard-linked into place, so creation is atomic and no
reader ever sees a half-written record. Locks are advisory: cooperating
tooling honours them, nothing at the OS level enforces them.
"""

from __future__ import annotations

import json
import os
import socket
import uuid
from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Callable, Literal

import structlog

from laneledger.config.schema import LockPolicy
from laneledger.constants import DEFAULT_STALE_LOCK_THRESHOLD_HOURS, LOCK_SUFFIX
from laneledger.paths import to_kebab

logger = structlog.get_logger(__name__)

ClockFn = Callable[[], datetime]
PolicyResolver = Callable[[str], LockPolicy]
ProcessAliveFn = Callable[[int], bool]

LockAcquireStatus = Literal["acquired", "already_held", "skipped"]


class LockHeldError(RuntimeError):
    """Raised when a lane is locked by a different work unit."""

    def __init__(self, lane: str, wu_id: str, holder: LaneLock | None) -> None:
        if holder is not None:
            message = (
                f"Lane '{lane}' is locked by {holder.wu_id} (since {holder.acquired_at}, pid {holder.pid} "
                f"on {holder.hostname}); {wu_id} cannot claim it. Finish or release {holder.wu_id} first, "
                "or run audited_unlock if that holder is gone."
            )
        else:
            message = f"Lane '{lane}' lock is contended; {wu_id} could not acquire it. Retry shortly."
        super().__init__(message)
        self.lane = lane
        self.wu_id = wu_id
        self.holder = holder


@dataclass(frozen=True)
class LaneLock:
    """Persisted lock record for one lane."""

    lane: str
    wu_id: str
    acquired_at: str
    pid: int
    hostname: str
    agent_session: str | None = None


@dataclass(frozen=True)
class LockAcquireResult:
    status: LockAcquireStatus
    lock: LaneLock | None
    replaced_stale: LaneLock | None = None

    @property
    def skipped(self) -> bool:
        return self.status == "skipped"


@dataclass(frozen=True)
class LockReleaseResult:
    """Release outcome; ``not_found`` means there was nothing to release."""

    released: bool
    not_found: bool = False
    error: str | None = None


@dataclass(frozen=True)
class LockStatus:
    locked: bool
    lock: LaneLock | None
    stale_reason: str | None

    @property
    def stale(self) -> bool:
        return self.stale_reason is not None


def releases_lock_on(policy: LockPolicy, event_type: str) -> bool:
    """Whether a lane lock is dropped after ``event_type`` commits under ``policy``."""
    if policy == "none":
        return False
    if event_type in ("complete", "release"):
        return True
    return policy == "active" and event_type == "block"


def acquires_lock_on(policy: LockPolicy, event_type: str) -> bool:
    """Whether ``event_type`` needs the lane lock before it commits under ``policy``."""
    if policy == "none":
        return False
    if event_type in ("create", "claim"):
        return True
    return policy == "active" and event_type == "unblock"


def _process_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except ProcessLookupError:
        return False
    except PermissionError:
        return True
    return True


def _lock_to_json(lock: LaneLock) -> str:
    payload = {
        "lane": lock.lane,
        "wuId": lock.wu_id,
        "acquiredAt": lock.acquired_at,
        "pid": lock.pid,
        "hostname": lock.hostname,
        "agentSession": lock.agent_session,
    }
    return json.dumps(payload, ensure_ascii=True, sort_keys=True) + "\n"


def _lock_from_json(raw: str) -> LaneLock | None:
    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        return None
    if not isinstance(payload, dict):
        return None
    lane = payload.get("lane")
    wu_id = payload.get("wuId")
    acquired_at = payload.get("acquiredAt")
    pid = payload.get("pid")
    hostname = payload.get("hostname")
    agent_session = payload.get("agentSession")
    if not (isinstance(lane, str) and isinstance(wu_id, str) and isinstance(acquired_at, str)):
        return None
    if not isinstance(pid, int) or not isinstance(hostname, str):
        return None
    return LaneLock(
        lane=lane,
        wu_id=wu_id,
        acquired_at=acquired_at,
        pid=pid,
        hostname=hostname,
        agent_session=agent_session if isinstance(agent_session, str) else None,
    )


class LaneLockManager:
    """Acquire, inspect and release lane locks under one locks directory."""

    def __init__(
        self,
        locks_dir: Path,
        *,
        policy_resolver: PolicyResolver | None = None,
        stale_threshold_seconds: float = DEFAULT_STALE_LOCK_THRESHOLD_HOURS * 3600,
        clock: ClockFn | None = None,
        process_alive: ProcessAliveFn | None = None,
        hostname: str | None = None,
        pid: int | None = None,
        max_attempts: int = 3,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be >= 1")
        self._locks_dir = locks_dir
        self._policy_resolver = policy_resolver
        self._stale_threshold_seconds = stale_threshold_seconds
        self._clock = clock or (lambda: datetime.now(tz=UTC))
        self._process_alive = process_alive or _process_alive
        self._hostname = hostname or socket.gethostname()
        self._pid = pid if pid is not None else os.getpid()
        self._max_attempts = max_attempts

    @property
    def locks_dir(self) -> Path:
        return self._locks_dir

    def lock_path(self, lane: str) -> Path:
        return self._locks_dir / f"{to_kebab(lane)}{LOCK_SUFFIX}"

    def policy_for(self, lane: str) -> LockPolicy:
        if self._policy_resolver is None:
            return "active"
        return self._policy_resolver(lane)

    def acquire(self, lane: str, wu_id: str, *, agent_session: str | None = None) -> LockAcquireResult:
        """Take the lane lock for ``wu_id`` or raise LockHeldError.

        Re-acquiring a lock already held by ``wu_id`` succeeds. Stale locks are
        taken over with a warning.
        """
        if self.policy_for(lane) == "none":
            logger.debug("Lane %s has lock policy 'none'; skipping lock for %s", lane, wu_id)
            return LockAcquireResult(status="skipped", lock=None)

        path = self.lock_path(lane)
        path.parent.mkdir(parents=True, exist_ok=True)
        candidate = LaneLock(
            lane=lane,
            wu_id=wu_id,
            acquired_at=self._clock().astimezone(UTC).isoformat(timespec="seconds"),
            pid=self._pid,
            hostname=self._hostname,
            agent_session=agent_session,
        )

        replaced: LaneLock | None = None
        holder: LaneLock | None = None
        for _attempt in range(self._max_attempts):
            if self._try_create(path, candidate):
                logger.info("Acquired lane lock %s for %s", lane, wu_id)
                return LockAcquireResult(status="acquired", lock=candidate, replaced_stale=replaced)

            raw = self._read_raw(path)
            if raw is None:
                continue
            holder = _lock_from_json(raw)
            if holder is not None and holder.wu_id == wu_id:
                return LockAcquireResult(status="already_held", lock=holder)

            reason = "unreadable lock record" if holder is None else self.stale_reason(holder)
            if reason is None:
                raise LockHeldError(lane, wu_id, holder)
            if self._take_over(path, raw):
                logger.warning(
                    "Taking over stale lane lock %s held by %s: %s",
                    lane,
                    holder.wu_id if holder is not None else "unknown",
                    reason,
                )
                replaced = holder

        raise LockHeldError(lane, wu_id, holder)

    def release(self, lane: str, *, wu_id: str | None = None, force: bool = False) -> LockReleaseResult:
        """Remove the lane lock if held by ``wu_id`` (or unconditionally with ``force``).

        Never raises; failures are reported in the result.
        """
        path = self.lock_path(lane)
        try:
            raw = self._read_raw(path)
        except OSError as exc:
            logger.warning("Failed to read lane lock %s: %s", lane, exc)
            return LockReleaseResult(released=False, error=str(exc))
        if raw is None:
            return LockReleaseResult(released=True, not_found=True)

        if not force:
            holder = _lock_from_json(raw)
            if wu_id is None:
                return LockReleaseResult(released=False, error="wu_id is required unless force=True")
            if holder is None or holder.wu_id != wu_id:
                owner = holder.wu_id if holder is not None else "an unreadable record"
                return LockReleaseResult(
                    released=False, error=f"Lane '{lane}' lock is held by {owner}, not {wu_id}"
                )

        return self._unlink(lane, path)

    def read(self, lane: str) -> LaneLock | None:
        raw = self._read_raw(self.lock_path(lane))
        return _lock_from_json(raw) if raw is not None else None

    def check(self, lane: str) -> LockStatus:
        raw = self._read_raw(self.lock_path(lane))
        if raw is None:
            return LockStatus(locked=False, lock=None, stale_reason=None)
        lock = _lock_from_json(raw)
        if lock is None:
            return LockStatus(locked=True, lock=None, stale_reason="unreadable lock record")
        return LockStatus(locked=True, lock=lock, stale_reason=self.stale_reason(lock))

    def stale_reason(self, lock: LaneLock) -> str | None:
        """Why ``lock`` can be taken over, or None while its holder is still live."""
        try:
            acquired = datetime.fromisoformat(lock.acquired_at.replace("Z", "+00:00"))
        except ValueError:
            return f"invalid acquiredAt {lock.acquired_at!r}"
        if acquired.tzinfo is None:
            acquired = acquired.replace(tzinfo=UTC)
        age_seconds = (self._clock() - acquired).total_seconds()
        if age_seconds > self._stale_threshold_seconds:
            return f"acquired {age_seconds / 3600:.1f}h ago (threshold {self._stale_threshold_seconds / 3600:.1f}h)"
        if lock.hostname == self._hostname and not self._process_alive(lock.pid):
            return f"holder process {lock.pid} is not running"
        return None

    def all_locks(self) -> dict[str, LaneLock]:
        """Every readable lock, keyed by lane name."""
        if not self._locks_dir.exists():
            return {}
        locks: dict[str, LaneLock] = {}
        for path in sorted(self._locks_dir.glob(f"*{LOCK_SUFFIX}")):
            raw = self._read_raw(path)
            if raw is None:
                continue
            lock = _lock_from_json(raw)
            if lock is None:
                logger.warning("Skipping unreadable lock file %s", path)
                continue
            locks[lock.lane] = lock
        return locks

    def force_remove_stale(self, lane: str) -> LockReleaseResult:
        status = self.check(lane)
        if not status.locked:
            return LockReleaseResult(released=True, not_found=True)
        if not status.stale:
            holder = status.lock.wu_id if status.lock is not None else "unknown"
            return LockReleaseResult(released=False, error=f"Lane '{lane}' lock held by {holder} is not stale")
        logger.warning("Removing stale lane lock %s: %s", lane, status.stale_reason)
        return self._unlink(lane, self.lock_path(lane))

    def audited_unlock(self, lane: str, *, reason: str, force: bool = False) -> LockReleaseResult:
        """Operator unlock with a recorded reason; active locks additionally need ``force``."""
        if not reason.strip():
            raise ValueError("audited_unlock requires a non-empty reason")
        status = self.check(lane)
        if not status.locked:
            return LockReleaseResult(released=True, not_found=True)
        holder = status.lock.wu_id if status.lock is not None else "unknown"
        if not status.stale and not force:
            return LockReleaseResult(
                released=False,
                error=f"Lane '{lane}' lock held by {holder} is active; pass force=True to remove it",
            )
        logger.warning("Audited unlock of lane %s (held by %s): %s", lane, holder, reason)
        return self._unlink(lane, self.lock_path(lane))

    def _try_create(self, path: Path, lock: LaneLock) -> bool:
        temp_path = path.with_name(f".{path.name}.{self._pid}.{uuid.uuid4().hex}.tmp")
        try:
            with temp_path.open("w", encoding="utf-8") as file_handle:
                file_handle.write(_lock_to_json(lock))
                file_handle.flush()
                os.fsync(file_handle.fileno())
            try:
                os.link(temp_path, path)
            except FileExistsError:
                return False
            return True
        finally:
            temp_path.unlink(missing_ok=True)

    def _take_over(self, path: Path, expected_raw: str) -> bool:
        """Move the stale record aside; restore it if someone replaced it in between."""
        tombstone = path.with_name(f".{path.name}.stale.{uuid.uuid4().hex}")
        try:
            os.rename(path, tombstone)
        except FileNotFoundError:
            return True
        moved = tombstone.read_text(encoding="utf-8", errors="replace")
        if moved == expected_raw:
            tombstone.unlink(missing_ok=True)
            return True
        try:
            os.link(tombstone, path)
        except FileExistsError:
            displaced = _lock_from_json(moved)
            logger.error(
                "Lane lock %s changed hands during stale takeover; %s lost the lock it had acquired",
                path,
                displaced.wu_id if displaced is not None else "an unreadable record",
            )
        tombstone.unlink(missing_ok=True)
        return False

    def _read_raw(self, path: Path) -> str | None:
        try:
            return path.read_text(encoding="utf-8", errors="replace")
        except FileNotFoundError:
            return None

    def _unlink(self, lane: str, path: Path) -> LockReleaseResult:
        try:
            path.unlink()
        except FileNotFoundError:
            return LockReleaseResult(released=True, not_found=True)
        except OSError as exc:
            logger.warning("Failed to release lane lock %s: %s", lane, exc)
            return LockReleaseResult(released=False, error=str(exc))
        logger.info("Released lane lock %s", lane)
        return LockReleaseResult(released=True)
