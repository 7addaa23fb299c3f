import threading
import time
from unittest.mock import MagicMock

import pytest

from grove.errors import GitCommandError, PathGoneError
from grove.models import WorktreeStatus
from grove.services import events
from grove.services.events import EventBus
from grove.services.git import GitRunner, StatusSnapshot
from grove.services.poller import PollState, StatusPoller, compute_status

DIRTY = StatusSnapshot(head="feature", upstream="origin/feature", ahead=1, behind=2, dirty=True, unmerged=False)


@pytest.fixture()
def runner():
    runner = MagicMock(spec=GitRunner())
    runner.status.return_value = DIRTY
    runner.operation_in_progress.return_value = False
    return runner


@pytest.fixture()
def bus_events():
    bus = EventBus()
    seen = []
    bus.subscribe(seen.append)
    return bus, seen


@pytest.fixture()
def poller(store, runner, bus_events):
    poller = StatusPoller(store, runner, bus=bus_events[0], max_workers=2, failure_threshold=2)
    yield poller
    poller.stop()


def _wait_idle(poller, worktree_id, timeout=5.0):
    deadline = time.monotonic() + timeout
    while poller.state(worktree_id) is not PollState.IDLE:
        assert time.monotonic() < deadline, "poll never finished"
        time.sleep(0.01)


class TestComputeStatus:
    def test_maps_snapshot(self, runner):
        status = compute_status(runner, "/wt")
        assert status == WorktreeStatus(dirty=True, ahead=1, behind=2, conflicted=False, current_branch="feature")

    def test_operation_in_progress_is_conflicted(self, runner):
        runner.operation_in_progress.return_value = True
        assert compute_status(runner, "/wt").conflicted is True


class TestPollOnce:
    def test_persists_status_and_publishes_change(self, poller, store, make_record, bus_events):
        record = store.add_active(make_record("feature"))
        status = poller.poll_once(record.id)

        assert status.dirty is True
        assert store.get_active(record.id).status == status
        assert [e.name for e in bus_events[1]] == [events.STATUS_CHANGED]

    def test_unchanged_status_publishes_nothing(self, poller, store, make_record, bus_events):
        record = store.add_active(make_record("feature"))
        poller.poll_once(record.id)
        poller.poll_once(record.id)
        assert [e.name for e in bus_events[1]] == [events.STATUS_CHANGED]

    def test_missing_directory_flags_stale_once(self, poller, store, runner, make_record, bus_events):
        record = store.add_active(make_record())
        runner.status.side_effect = PathGoneError("gone")

        assert poller.poll_once(record.id) is None
        assert poller.poll_once(record.id) is None

        assert store.get_active(record.id).is_stale is True
        assert [e.name for e in bus_events[1]] == [events.WORKTREE_STALE]

    def test_older_result_is_discarded(self, poller, store, make_record):
        record = store.add_active(make_record())
        newer = WorktreeStatus(current_branch="newer")
        store.update_status(record.id, newer, polled_at=time.time_ns() + 10**12)

        poller.poll_once(record.id)

        assert store.get_active(record.id).status == newer

    def test_persistent_failures_are_reported_once(self, poller, store, runner, make_record, bus_events):
        record = store.add_active(make_record())
        runner.status.side_effect = GitCommandError("status", 128, "fatal: index locked")

        for _ in range(3):
            assert poller.poll_once(record.id) is None

        assert poller.failure_count(record.id) == 3
        assert [e.name for e in bus_events[1]] == [events.POLL_FAILING]

        runner.status.side_effect = None
        poller.poll_once(record.id)
        assert poller.failure_count(record.id) == 0

    def test_skips_record_being_archived(self, poller, store, runner, make_record):
        record = store.add_active(make_record(archive_pending="/tmp/archive"))
        assert poller.poll_once(record.id) is None
        runner.status.assert_not_called()

    def test_unknown_id(self, poller):
        assert poller.poll_once("missing") is None


class TestScheduling:
    def test_poll_now_waits_for_fresh_result(self, poller, store, make_record):
        record = store.add_active(make_record("feature"))
        status = poller.poll_now(record.id, timeout=5)
        assert status is not None
        assert status.behind == 2
        assert poller.state(record.id) is PollState.IDLE

    def test_triggers_during_poll_coalesce(self, poller, store, runner, make_record):
        record = store.add_active(make_record())
        started = threading.Event()
        release = threading.Event()
        calls = []

        def slow_status(path):
            calls.append(path)
            started.set()
            release.wait(5)
            return DIRTY

        runner.status.side_effect = slow_status

        poller.trigger(record.id)
        assert started.wait(5)
        assert poller.state(record.id) is PollState.POLLING
        for _ in range(5):
            poller.trigger(record.id)
        release.set()
        _wait_idle(poller, record.id)

        assert len(calls) == 2

    def test_tick_triggers_every_active_worktree(self, poller, store, runner, make_record):
        records = [store.add_active(make_record(f"b{i}")) for i in range(3)]
        assert poller.tick() == 3
        for record in records:
            _wait_idle(poller, record.id)
        assert runner.status.call_count == 3

    def test_forget_drops_idle_slot(self, poller, store, make_record):
        record = store.add_active(make_record())
        poller.poll_now(record.id, timeout=5)
        poller.forget(record.id)
        assert poller.state(record.id) is PollState.IDLE
        assert record.id not in poller._slots

    def test_stop_releases_queued_polls_and_restart_polls_again(self, store, runner, make_record, bus_events):
        poller = StatusPoller(store, runner, bus=bus_events[0], max_workers=1)
        blocked = store.add_active(make_record("blocked"))
        queued = store.add_active(make_record("queued"))
        started = threading.Event()
        release = threading.Event()

        def status(path):
            if path == blocked.worktree_path:
                started.set()
                release.wait(5)
            return DIRTY

        runner.status.side_effect = status
        waited = []
        try:
            poller.trigger(blocked.id)
            assert started.wait(5)
            poller.trigger(queued.id)
            waiter = threading.Thread(target=lambda: waited.append(poller.poll_now(queued.id)), daemon=True)
            waiter.start()
            deadline = time.monotonic() + 5
            while not poller._slots[queued.id].pending:
                assert time.monotonic() < deadline
                time.sleep(0.01)

            poller.stop(wait=False)

            waiter.join(5)
            assert not waiter.is_alive()
            assert waited == [None]
            assert poller.state(queued.id) is PollState.IDLE

            release.set()
            poller.start()
            status = poller.poll_now(queued.id, timeout=5)
            assert status is not None
            assert store.get_active(queued.id).status.dirty is True
        finally:
            release.set()
            poller.stop()
