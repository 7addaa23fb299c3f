"""Wires the services together and owns the background scheduler."""

import logging
from pathlib import Path

from grove.config import ResolvedConfig, load_config
from grove.services.archive import ArchiveManager
from grove.services.events import EventBus
from grove.services.git import GitRunner
from grove.services.locks import KeyedLocks
from grove.services.poller import StatusPoller
from grove.services.scheduler import Scheduler
from grove.services.store import WorktreeStore
from grove.services.worktree import WorktreeService

logger = logging.getLogger(__name__)


class WorktreeManager:
    """One instance per process. Services share the store, locks and event bus."""

    def __init__(
        self,
        config: ResolvedConfig | None = None,
        store: WorktreeStore | None = None,
        runner: GitRunner | None = None,
        bus: EventBus | None = None,
    ) -> None:
        self.config = config or load_config()
        self.store = store or WorktreeStore(self.config.state_dir)
        self.runner = runner or GitRunner(
            self.config.status_timeout_s, self.config.mutate_timeout_s, remote=self.config.remote
        )
        self.bus = bus or EventBus()
        self.locks = KeyedLocks()
        self.poller = StatusPoller(
            self.store,
            self.runner,
            bus=self.bus,
            locks=self.locks,
            interval_s=self.config.poll_interval_s,
            max_workers=self.config.max_workers,
            failure_threshold=self.config.persistent_failure_threshold,
        )
        self.worktrees = WorktreeService(self.store, self.runner, bus=self.bus, locks=self.locks, poller=self.poller)
        self.archives = ArchiveManager(
            self.store,
            self.runner,
            bus=self.bus,
            locks=self.locks,
            retention_days=self.config.retention_days,
        )
        self.scheduler = Scheduler()

    @classmethod
    def for_project(cls, project_path: Path | str) -> "WorktreeManager":
        return cls(load_config(project_path))

    def start(self) -> None:
        """Recover interrupted archives, then start polling and the retention sweep."""
        if self.scheduler.running:
            return
        recovered = self.archives.recover()
        if recovered:
            logger.warning("Recovered interrupted archives", extra={"worktree_ids": recovered})
        self.poller.start()
        self.scheduler.add_job("status-poll", self.config.poll_interval_s, self._poll_tick)
        self.scheduler.add_job("archive-sweep", self.config.sweep_interval_s, self._sweep)
        self.scheduler.start()
        logger.info(
            "Worktree manager started",
            extra={"poll_interval_s": self.config.poll_interval_s, "workers": self.config.max_workers},
        )

    def stop(self) -> None:
        self.scheduler.stop()
        self.poller.stop()
        logger.info("Worktree manager stopped")

    def _poll_tick(self) -> None:
        self.poller.tick()

    def _sweep(self) -> None:
        self.archives.sweep_expired()

    def __enter__(self) -> "WorktreeManager":
        self.start()
        return self

    def __exit__(self, *exc_info) -> None:
        self.stop()
