"""Work unit commands: projection check, lane lock, atomic publish, lock release."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import UTC, datetime
from pathlib import Path
from typing import Callable, Mapping

import structlog

from laneledger.config.schema import ProjectConfig
from laneledger.core.descriptors import mark_descriptor_done, write_stamp
from laneledger.core.lane_lock import (
    LaneLockManager,
    LockAcquireResult,
    LockReleaseResult,
    acquires_lock_on,
    releases_lock_on,
)
from laneledger.core.micro_worktree import MicroWorktreeResult, MicroWorktreeTransactor, StagedChanges
from laneledger.core.state.events import WorkUnitEvent, WorkUnitEventType, parse_timestamp
from laneledger.core.state.indexer import StateIndexer
from laneledger.core.state.store import WorkUnitStateStore, atomic_write_text
from laneledger.core.state_machine import TransitionError
from laneledger.paths import ProjectPaths

logger = structlog.get_logger(__name__)

# Produces derived documents (status, backlog, ...) as {relative path: content}.
DocumentRenderer = Callable[[StateIndexer, ProjectPaths], Mapping[str, str]]
ClockFn = Callable[[], datetime]


@dataclass(frozen=True)
class LifecycleResult:
    event: WorkUnitEvent
    transaction: MicroWorktreeResult
    lock: LockAcquireResult | None = None
    lock_release: LockReleaseResult | None = None


class WorkUnitLifecycle:
    """Run work unit transitions against one project checkout.

    Each command checks the transition against the local projection, takes the
    lane lock when the lane's policy requires it, then appends the event inside
    a micro-worktree where the transition is checked again against the freshly
    fetched log. Lock release afterwards is best effort.

    With ``push_only`` the checkout is left alone, so the local projection used
    for the first check lags the shared branch until the caller pulls.
    """

    def __init__(
        self,
        project_root: Path,
        *,
        config: ProjectConfig | None = None,
        transactor: MicroWorktreeTransactor | None = None,
        lock_manager: LaneLockManager | None = None,
        renderer: DocumentRenderer | None = None,
        clock: ClockFn | None = None,
        push_only: bool = False,
    ) -> None:
        self._config = config or ProjectConfig()
        self._paths = self._config.paths(project_root)
        self._transactor = transactor or MicroWorktreeTransactor(project_root, git_config=self._config.git)
        self._locks = lock_manager or LaneLockManager(
            self._paths.locks_path,
            policy_resolver=self._config.lock_policy_for,
            stale_threshold_seconds=self._config.locks.stale_threshold_seconds,
        )
        self._renderer = renderer
        self._clock = clock or (lambda: datetime.now(tz=UTC))
        self._push_only = push_only

    @property
    def paths(self) -> ProjectPaths:
        return self._paths

    def load_store(self, root: Path | None = None) -> WorkUnitStateStore:
        paths = self._paths if root is None else self._paths.rebased(root)
        store = WorkUnitStateStore(paths.state_path)
        store.load()
        return store

    def create(self, wu_id: str, lane: str, title: str, *, agent_session: str | None = None) -> LifecycleResult:
        fields = {"lane": lane, "title": title}
        return self._transition("create", wu_id, lane=lane, agent_session=agent_session, fields=fields)

    def claim(self, wu_id: str, lane: str, title: str, *, agent_session: str | None = None) -> LifecycleResult:
        fields = {"lane": lane, "title": title}
        return self._transition("claim", wu_id, lane=lane, agent_session=agent_session, fields=fields)

    def block(self, wu_id: str, reason: str) -> LifecycleResult:
        return self._transition("block", wu_id, fields={"reason": reason})

    def unblock(self, wu_id: str, reason: str | None = None, *, agent_session: str | None = None) -> LifecycleResult:
        return self._transition("unblock", wu_id, agent_session=agent_session, fields={"reason": reason})

    def release(self, wu_id: str, reason: str) -> LifecycleResult:
        return self._transition("release", wu_id, fields={"reason": reason})

    def complete(self, wu_id: str, reason: str | None = None) -> LifecycleResult:
        return self._transition("complete", wu_id, fields={"reason": reason})

    def checkpoint(
        self,
        wu_id: str,
        note: str,
        *,
        session_id: str | None = None,
        progress: str | None = None,
        next_steps: str | None = None,
    ) -> LifecycleResult:
        fields = {"note": note, "session_id": session_id, "progress": progress, "next_steps": next_steps}
        return self._transition("checkpoint", wu_id, fields=fields)

    def delegate(self, wu_id: str, parent_wu_id: str, delegation_id: str) -> LifecycleResult:
        return self._transition(
            "delegation", wu_id, fields={"parent_wu_id": parent_wu_id, "delegation_id": delegation_id}
        )

    def _transition(
        self,
        event_type: WorkUnitEventType,
        wu_id: str,
        *,
        fields: Mapping[str, str | None],
        lane: str | None = None,
        agent_session: str | None = None,
    ) -> LifecycleResult:
        store = self.load_store()
        store.prepare_event(event_type, wu_id, **fields)
        state = store.get_state(wu_id)
        resolved_lane = lane or (state.lane if state is not None else None)

        policy = self._config.lock_policy_for(resolved_lane) if resolved_lane is not None else "none"
        lock: LockAcquireResult | None = None
        if resolved_lane is not None and acquires_lock_on(policy, event_type):
            lock = self._locks.acquire(resolved_lane, wu_id, agent_session=agent_session)

        published: list[WorkUnitEvent] = []

        def execute(worktree_path: Path) -> StagedChanges:
            event, files = self._apply_in_worktree(worktree_path, event_type, wu_id, fields)
            published[:] = [event]
            return StagedChanges(commit_message=f"wu({wu_id.lower()}): {event_type}", files=files)

        try:
            transaction = self._transactor.run(f"wu-{event_type}", wu_id, execute, push_only=self._push_only)
        except BaseException:
            if resolved_lane is not None and lock is not None and lock.status == "acquired":
                self._release_lock(resolved_lane, wu_id)
            raise

        lock_release: LockReleaseResult | None = None
        if resolved_lane is not None and releases_lock_on(policy, event_type):
            lock_release = self._release_lock(resolved_lane, wu_id)

        logger.info("%s %s committed (%s)", event_type, wu_id, transaction.commit_sha or "no changes")
        return LifecycleResult(event=published[0], transaction=transaction, lock=lock, lock_release=lock_release)

    def _apply_in_worktree(
        self, worktree_path: Path, event_type: WorkUnitEventType, wu_id: str, fields: Mapping[str, str | None]
    ) -> tuple[WorkUnitEvent, list[str]]:
        """Append the event (plus stamp and rendered documents) and list the files to stage."""
        paths = self._paths.rebased(worktree_path)
        store = self.load_store(worktree_path)
        timestamp = self._clock().astimezone(UTC).isoformat(timespec="milliseconds").replace("+00:00", "Z")
        try:
            event = store.prepare_event(event_type, wu_id, timestamp=timestamp, **fields)
        except TransitionError:
            logger.warning("%s for %s no longer applies on the shared branch tip", event_type, wu_id)
            raise
        store.append_event(event)
        files = [paths.relative(store.events_path)]

        if event_type == "complete":
            state = store.get_state(wu_id)
            title = state.title if state is not None else wu_id
            stamp = write_stamp(paths, wu_id, title, parse_timestamp(timestamp).date())
            if stamp is not None:
                files.append(paths.relative(stamp))
            descriptor = mark_descriptor_done(paths, wu_id, timestamp)
            if descriptor is not None:
                files.append(paths.relative(descriptor))

        if self._renderer is not None:
            for relative_path, content in self._renderer(store.indexer, paths).items():
                atomic_write_text(worktree_path / relative_path, content)
                files.append(relative_path)
        return event, files

    def _release_lock(self, lane: str, wu_id: str) -> LockReleaseResult:
        result = self._locks.release(lane, wu_id=wu_id)
        if not result.released:
            logger.warning("Could not release lane lock %s for %s: %s", lane, wu_id, result.error)
        return result
