import threading

from grove.services.events import EventBus
from grove.services.scheduler import Scheduler


class FakeClock:
    def __init__(self):
        self.now = 100.0

    def __call__(self):
        return self.now


class TestScheduler:
    def test_run_pending_respects_intervals(self):
        clock = FakeClock()
        scheduler = Scheduler(clock=clock)
        calls = []
        scheduler.add_job("poll", 10, lambda: calls.append("poll"))
        scheduler.add_job("sweep", 60, lambda: calls.append("sweep"), run_immediately=False)

        assert scheduler.run_pending() == 1
        assert calls == ["poll"]

        clock.now += 5
        assert scheduler.run_pending() == 0

        clock.now += 5
        scheduler.run_pending()
        assert calls == ["poll", "poll"]

        clock.now += 60
        scheduler.run_pending()
        assert calls[-2:] == ["poll", "sweep"]

    def test_adding_job_with_same_name_replaces_it(self):
        scheduler = Scheduler(clock=FakeClock())
        calls = []
        scheduler.add_job("poll", 10, lambda: calls.append("old"))
        scheduler.add_job("poll", 10, lambda: calls.append("new"))

        assert scheduler.run_pending() == 1
        assert calls == ["new"]

    def test_failing_job_does_not_stop_others(self):
        scheduler = Scheduler(clock=FakeClock())
        calls = []

        def boom():
            raise RuntimeError("boom")

        scheduler.add_job("boom", 1, boom)
        scheduler.add_job("ok", 1, lambda: calls.append(1))
        assert scheduler.run_pending() == 2
        assert calls == [1]

    def test_background_thread_runs_and_stops(self):
        scheduler = Scheduler()
        ran = threading.Event()
        scheduler.add_job("once", 3600, ran.set)
        scheduler.start()
        try:
            assert ran.wait(5)
            assert scheduler.running
        finally:
            scheduler.stop()
        assert not scheduler.running


class TestEventBus:
    def test_publish_reaches_subscribers(self):
        bus = EventBus()
        seen = []
        bus.subscribe(seen.append)
        event = bus.publish("worktree:created", "wt-1", branch="feature")
        assert seen == [event]
        assert event.payload == {"branch": "feature"}

    def test_unsubscribe(self):
        bus = EventBus()
        seen = []
        unsubscribe = bus.subscribe(seen.append)
        unsubscribe()
        bus.publish("worktree:created", "wt-1")
        assert seen == []

    def test_failing_listener_is_isolated(self):
        bus = EventBus()
        seen = []

        def bad(_event):
            raise ValueError("listener bug")

        bus.subscribe(bad)
        bus.subscribe(seen.append)
        bus.publish("worktree:deleted", "wt-1")
        assert len(seen) == 1
