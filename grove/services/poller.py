"""Background status polling for active worktrees.

Each worktree id is either idle or has exactly one poll in flight. Triggers
that arrive while a poll runs are folded into a single follow-up poll, so git
never runs twice at once against the same working tree.
"""

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from dataclasses import dataclass
from enum import Enum
from pathlib import Path

from grove.config import default_worker_count
from grove.constants import PERSISTENT_FAILURE_THRESHOLD, POLL_INTERVAL_S
from grove.errors import GitCommandError, NotFoundError, PathGoneError
from grove.models import WorktreeStatus
from grove.services import events
from grove.services.events import EventBus
from grove.services.git import GitRunner
from grove.services.locks import KeyedLocks
from grove.services.store import WorktreeStore

logger = logging.getLogger(__name__)


def compute_status(runner: GitRunner, worktree_path: Path | str) -> WorktreeStatus:
    snapshot = runner.status(worktree_path)
    conflicted = snapshot.unmerged or runner.operation_in_progress(worktree_path)
    return WorktreeStatus(
        dirty=snapshot.dirty,
        ahead=snapshot.ahead,
        behind=snapshot.behind,
        conflicted=conflicted,
        current_branch=snapshot.head,
    )


class PollState(Enum):
    IDLE = "idle"
    POLLING = "polling"


@dataclass
class _Slot:
    state: PollState = PollState.IDLE
    pending: bool = False
    started: int = 0
    completed: int = 0
    last_result: WorktreeStatus | None = None


def _drop_queued(slot: _Slot) -> None:
    """Release waiters of a poll that was cancelled before it ran."""
    if slot.pending:
        # waiters that asked for the follow-up poll
        slot.started += 1
    slot.state = PollState.IDLE
    slot.pending = False
    slot.completed = slot.started
    slot.last_result = None


class StatusPoller:
    def __init__(
        self,
        store: WorktreeStore,
        runner: GitRunner,
        bus: EventBus | None = None,
        locks: KeyedLocks | None = None,
        interval_s: float = POLL_INTERVAL_S,
        max_workers: int | None = None,
        failure_threshold: int = PERSISTENT_FAILURE_THRESHOLD,
    ) -> None:
        self.store = store
        self.runner = runner
        self.bus = bus or EventBus()
        self.locks = locks or KeyedLocks()
        self.interval_s = interval_s
        self.max_workers = max_workers or default_worker_count()
        self.failure_threshold = failure_threshold
        self._cond = threading.Condition()
        self._slots: dict[str, _Slot] = {}
        self._failures: dict[str, int] = {}
        self._executor: ThreadPoolExecutor | None = None
        self._futures: dict[str, Future] = {}

    # -- lifecycle ---------------------------------------------------------

    def start(self) -> None:
        if self._executor is None:
            self._executor = ThreadPoolExecutor(max_workers=self.max_workers, thread_name_prefix="grove-poll")

    def stop(self, wait: bool = True) -> None:
        """Shut the pool down. Queued polls are dropped and their slots go back to idle."""
        executor, self._executor = self._executor, None
        if executor is None:
            return
        executor.shutdown(wait=wait, cancel_futures=True)
        with self._cond:
            for worktree_id, future in list(self._futures.items()):
                if future.cancelled():
                    _drop_queued(self._slots[worktree_id])
                    del self._futures[worktree_id]
            self._cond.notify_all()

    def state(self, worktree_id: str) -> PollState:
        with self._cond:
            slot = self._slots.get(worktree_id)
            return slot.state if slot else PollState.IDLE

    # -- triggers ----------------------------------------------------------

    def tick(self) -> int:
        """Trigger a poll for every active worktree in every known project."""
        count = 0
        for project_id in self.store.projects():
            try:
                records = self.store.list_active(project_id)
            except Exception:
                logger.debug("Cannot list worktrees for polling", extra={"project_id": project_id}, exc_info=True)
                continue
            for record in records:
                self.trigger(record.id)
                count += 1
        return count

    def trigger(self, worktree_id: str) -> int:
        """Request a poll. Returns the poll sequence number that will satisfy it."""
        with self._cond:
            slot = self._slots.setdefault(worktree_id, _Slot())
            target = slot.started + 1
            if slot.state is PollState.POLLING:
                slot.pending = True
                return target
            slot.state = PollState.POLLING
            slot.started += 1
        if self._executor is None:
            self.start()
        try:
            future = self._executor.submit(self._run, worktree_id)
        except RuntimeError:
            # executor shut down between the check and the submit
            with self._cond:
                slot.state = PollState.IDLE
                slot.started -= 1
                self._cond.notify_all()
            raise
        with self._cond:
            if future.cancelled():
                # stop() ran before the future was recorded
                _drop_queued(slot)
                self._cond.notify_all()
            elif not future.done():
                self._futures[worktree_id] = future
        return target

    def poll_now(self, worktree_id: str, timeout: float | None = None) -> WorktreeStatus | None:
        """Trigger a poll and wait for a poll started after this call to finish."""
        target = self.trigger(worktree_id)
        with self._cond:
            done = self._cond.wait_for(
                lambda: self._slots.get(worktree_id) is None or self._slots[worktree_id].completed >= target,
                timeout,
            )
            slot = self._slots.get(worktree_id)
            if not done or slot is None:
                return None
            return slot.last_result

    def forget(self, worktree_id: str) -> None:
        with self._cond:
            slot = self._slots.get(worktree_id)
            if slot is not None and slot.state is PollState.IDLE:
                del self._slots[worktree_id]
            self._failures.pop(worktree_id, None)
            self._cond.notify_all()

    # -- worker ------------------------------------------------------------

    def _run(self, worktree_id: str) -> None:
        while True:
            result = None
            try:
                result = self.poll_once(worktree_id)
            except Exception:
                logger.warning("Unexpected poll failure", extra={"worktree_id": worktree_id}, exc_info=True)
            with self._cond:
                slot = self._slots[worktree_id]
                slot.completed += 1
                slot.last_result = result
                if slot.pending:
                    slot.pending = False
                    slot.started += 1
                    self._cond.notify_all()
                    continue
                slot.state = PollState.IDLE
                self._futures.pop(worktree_id, None)
                self._cond.notify_all()
                return

    def poll_once(self, worktree_id: str) -> WorktreeStatus | None:
        """Run one poll synchronously and persist its result."""
        polled_at = time.time_ns()
        with self.locks.hold(worktree_id):
            try:
                record = self.store.get_active(worktree_id)
            except NotFoundError:
                return None
            if record.archive_pending:
                return None
            try:
                status = compute_status(self.runner, record.worktree_path)
            except PathGoneError:
                if not record.is_stale:
                    self.store.mark_stale(worktree_id)
                    logger.warning(
                        "Worktree directory is gone, flagging as stale",
                        extra={"worktree_id": worktree_id, "path": record.worktree_path},
                    )
                    self.bus.publish(events.WORKTREE_STALE, worktree_id, path=record.worktree_path)
                return None
            except GitCommandError as e:
                self._record_failure(worktree_id, e)
                return None

            self._failures.pop(worktree_id, None)
            applied = self.store.update_status(worktree_id, status, polled_at)

        if not applied:
            logger.debug("Discarded stale poll result", extra={"worktree_id": worktree_id})
            return status
        if status.current_branch and status.current_branch != record.branch_name:
            logger.warning(
                "Worktree has a different branch checked out",
                extra={"worktree_id": worktree_id, "expected": record.branch_name, "actual": status.current_branch},
            )
        if status != record.status or record.is_stale:
            self.bus.publish(events.STATUS_CHANGED, worktree_id, status=status.model_dump())
        return status

    def _record_failure(self, worktree_id: str, error: GitCommandError) -> None:
        count = self._failures.get(worktree_id, 0) + 1
        self._failures[worktree_id] = count
        if count >= self.failure_threshold:
            logger.warning(
                "Status polling keeps failing",
                extra={"worktree_id": worktree_id, "failures": count, "error": str(error)},
            )
            if count == self.failure_threshold:
                self.bus.publish(events.POLL_FAILING, worktree_id, failures=count, error=str(error))
        else:
            logger.debug("Transient status poll failure", extra={"worktree_id": worktree_id}, exc_info=True)

    def failure_count(self, worktree_id: str) -> int:
        return self._failures.get(worktree_id, 0)
