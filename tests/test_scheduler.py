import logging

import pytest

from scheduler import RepeatingTask, Scheduler


def test_run_due_fires_in_time_order(scheduler: Scheduler, clock) -> None:
    fired = []
    scheduler.call_later(0.5, lambda: fired.append("b"), "b")
    scheduler.call_later(0.1, lambda: fired.append("a"), "a")
    scheduler.call_later(2.0, lambda: fired.append("c"), "c")

    assert scheduler.run_due(1.0) == 2
    assert fired == ["a", "b"]
    assert scheduler.pending == 1

    clock.advance(2.0)
    assert scheduler.run_due() == 1
    assert fired == ["a", "b", "c"]


def test_cancelled_handle_never_fires(scheduler: Scheduler) -> None:
    fired = []
    handle = scheduler.call_later(0.0, lambda: fired.append(1))
    handle.cancel()

    assert scheduler.pending == 0
    assert scheduler.run_due(1.0) == 0
    assert fired == []


def test_cancel_all(scheduler: Scheduler) -> None:
    for delay in (0.0, 1.0, 2.0):
        scheduler.call_later(delay, lambda: None)
    scheduler.cancel_all()
    assert scheduler.pending == 0
    assert scheduler.run_due(10.0) == 0


def test_failing_callback_is_logged_and_others_run(scheduler: Scheduler, caplog) -> None:
    fired = []

    def boom():
        raise RuntimeError("boom")

    scheduler.call_later(0.0, boom, "boom")
    scheduler.call_later(0.0, lambda: fired.append("ok"))

    with caplog.at_level(logging.ERROR, logger="cabin_audio.scheduler"):
        assert scheduler.run_due(0.0) == 2

    assert fired == ["ok"]
    assert "boom" in caplog.text


def test_callbacks_added_while_running_wait(scheduler: Scheduler) -> None:
    fired = []

    def first():
        fired.append("first")
        scheduler.call_later(0.0, lambda: fired.append("second"))

    scheduler.call_later(0.0, first)
    scheduler.run_due(0.0)
    assert fired == ["first"]
    scheduler.run_due(0.0)
    assert fired == ["first", "second"]


class TestRepeatingTask:
    def test_delay_is_read_after_every_fire(self, scheduler: Scheduler, clock) -> None:
        period = {"value": 1.0}
        fires = []
        task = RepeatingTask(scheduler, lambda: fires.append(clock()), lambda: period["value"])
        task.start()

        scheduler.run_due()
        assert task.handle.when == 1.0

        period["value"] = 0.25
        clock.advance(1.0)
        scheduler.run_due()
        assert task.handle.when == 1.25
        assert fires == [0.0, 1.0]
        assert scheduler.pending == 1

    def test_cancel_stops_the_chain(self, scheduler: Scheduler) -> None:
        fires = []
        task = RepeatingTask(scheduler, lambda: fires.append(1), lambda: 0.5)
        task.start()
        scheduler.run_due(0.0)
        task.cancel()

        assert not task.active
        assert scheduler.pending == 0
        assert scheduler.run_due(5.0) == 0
        assert fires == [1]

    def test_failing_fire_still_reschedules(self, scheduler: Scheduler, caplog) -> None:
        def fire():
            raise ValueError("bad tick")

        task = RepeatingTask(scheduler, fire, lambda: 0.5, name="flaky")
        task.start()
        with caplog.at_level(logging.ERROR, logger="cabin_audio.scheduler"):
            scheduler.run_due(0.0)

        assert task.active
        assert scheduler.pending == 1
        assert "flaky" in caplog.text


def test_live_driver_starts_and_stops() -> None:
    scheduler = Scheduler(interval=0.001)
    scheduler.start()
    try:
        assert scheduler.running
    finally:
        scheduler.stop()
    assert not scheduler.running


class TestFixedRateTask:
    def test_late_firings_do_not_drift(self, scheduler: Scheduler, clock) -> None:
        task = RepeatingTask(scheduler, lambda: None, lambda: 1.0, fixed_rate=True)
        task.start()

        due = []
        for _ in range(5):
            clock.now = task.handle.when + 0.3
            scheduler.run_due()
            due.append(task.handle.when)
        assert due == [1.0, 2.0, 3.0, 4.0, 5.0]

    def test_relative_task_accumulates_lateness(self, scheduler: Scheduler, clock) -> None:
        task = RepeatingTask(scheduler, lambda: None, lambda: 1.0)
        task.start()
        clock.now = 0.3
        scheduler.run_due()
        assert task.handle.when == pytest.approx(1.3)

    def test_skips_firings_missed_by_more_than_a_period(self, scheduler: Scheduler,
                                                         clock) -> None:
        fires = []
        task = RepeatingTask(scheduler, lambda: fires.append(clock()), lambda: 1.0,
                             fixed_rate=True)
        task.start()
        scheduler.run_due()

        clock.now = 5.5
        scheduler.run_due()
        assert fires == [0.0, 5.5]
        assert task.handle.when == 5.5
