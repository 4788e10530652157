"""Tests for the tick-driven Scheduler."""

import threading
from datetime import datetime, timedelta, timezone
from unittest.mock import MagicMock

import pytest

from conftest import NOW
from search_scheduler.jobs import DuplicateJobError, HistoryStore, JobNotFoundError
from search_scheduler.scheduler import Scheduler


@pytest.fixture
def scheduler():
    s = Scheduler(tick_interval_ms=50, max_workers=4)
    yield s
    s.stop(wait=True)


def _tick(scheduler, now):
    """Tick and wait for every launched run to finish."""
    futures = scheduler.tick(now)
    return [f.result(timeout=5) for f in futures]


def _add(scheduler, job_id="A", work=None, on_expire=None, **overrides):
    fields = dict(
        start_date=NOW - timedelta(hours=2),
        end_date=NOW + timedelta(hours=10),
        frequency_hours=1,
        work=work or (lambda: None),
        on_expire=on_expire or (lambda: None),
    )
    fields.update(overrides)
    return scheduler.add_job(job_id, **fields)


def test_immediate_job_runs_then_follows_cadence(scheduler):
    work = MagicMock()
    _add(scheduler, work=work, immediate=True)

    assert _tick(scheduler, NOW) == [True]
    assert work.call_count == 1

    assert _tick(scheduler, NOW + timedelta(minutes=59)) == []
    assert work.call_count == 1

    assert _tick(scheduler, NOW + timedelta(minutes=61)) == [True]
    assert work.call_count == 2
    assert scheduler.get_next_run("A") == NOW + timedelta(minutes=121)


def test_already_expired_job_only_expires(scheduler):
    work = MagicMock()
    on_expire = MagicMock()
    _add(scheduler, "B", work=work, on_expire=on_expire,
         end_date=NOW - timedelta(seconds=1), immediate=True)

    _tick(scheduler, NOW)
    _tick(scheduler, NOW + timedelta(hours=1))

    on_expire.assert_called_once_with()
    work.assert_not_called()
    assert not scheduler.has_job("B")


def test_job_expires_on_boundary_tick_without_firing(scheduler):
    work = MagicMock()
    on_expire = MagicMock()
    _add(scheduler, work=work, on_expire=on_expire, end_date=NOW)

    _tick(scheduler, NOW)

    on_expire.assert_called_once_with()
    work.assert_not_called()


def test_job_does_not_run_before_window(scheduler):
    work = MagicMock()
    _add(scheduler, work=work, start_date=NOW + timedelta(hours=1))

    assert _tick(scheduler, NOW) == []
    assert _tick(scheduler, NOW + timedelta(hours=1)) == [True]
    work.assert_called_once_with()


def test_failed_run_still_advances_next_run(scheduler):
    work = MagicMock(side_effect=RuntimeError("api down"))
    _add(scheduler, work=work, immediate=True)

    assert _tick(scheduler, NOW) == [False]
    assert scheduler.get_next_run("A") == NOW + timedelta(hours=1)
    assert _tick(scheduler, NOW + timedelta(minutes=30)) == []
    assert _tick(scheduler, NOW + timedelta(hours=1)) == [False]
    assert work.call_count == 2


def test_failure_in_one_job_does_not_affect_others(scheduler):
    good = MagicMock()
    _add(scheduler, "bad", work=MagicMock(side_effect=ValueError("boom")), immediate=True)
    _add(scheduler, "good", work=good, immediate=True)

    assert sorted(_tick(scheduler, NOW)) == [False, True]
    good.assert_called_once_with()


def test_in_flight_job_is_not_fired_again(scheduler):
    release = threading.Event()
    started = threading.Event()
    calls = []

    def work():
        calls.append(1)
        started.set()
        release.wait(5)

    _add(scheduler, work=work, immediate=True)
    first = scheduler.tick(NOW)
    assert started.wait(5)
    assert scheduler.in_flight("A")

    assert scheduler.tick(NOW + timedelta(hours=2)) == []

    release.set()
    assert first[0].result(timeout=5) is True
    assert _tick(scheduler, NOW + timedelta(hours=2)) == [True]
    assert len(calls) == 2


def test_runs_of_one_job_never_overlap(scheduler):
    lock = threading.Lock()
    active = [0]
    peak = [0]

    def work():
        with lock:
            active[0] += 1
            peak[0] = max(peak[0], active[0])
        threading.Event().wait(0.01)
        with lock:
            active[0] -= 1

    _add(scheduler, work=work, frequency_hours=0.01, immediate=True)
    futures = []
    for minute in range(50):
        futures.extend(scheduler.tick(NOW + timedelta(minutes=minute)))
    for f in futures:
        f.result(timeout=5)

    assert futures
    assert peak[0] == 1


def test_duplicate_job_id_is_rejected(scheduler):
    _add(scheduler)
    with pytest.raises(DuplicateJobError):
        _add(scheduler)


def test_remove_job_twice(scheduler):
    _add(scheduler)
    scheduler.remove_job("A")

    with pytest.raises(JobNotFoundError):
        scheduler.remove_job("A")
    with pytest.raises(JobNotFoundError):
        scheduler.get_next_run("A")


def test_removed_job_stops_firing(scheduler):
    work = MagicMock()
    _add(scheduler, work=work, immediate=True)
    _tick(scheduler, NOW)
    scheduler.remove_job("A")

    assert _tick(scheduler, NOW + timedelta(hours=5)) == []
    assert work.call_count == 1


def test_expiry_callback_failure_still_removes_job(scheduler):
    on_expire = MagicMock(side_effect=RuntimeError("db down"))
    _add(scheduler, on_expire=on_expire, end_date=NOW - timedelta(minutes=1))

    _tick(scheduler, NOW)
    _tick(scheduler, NOW + timedelta(minutes=1))

    on_expire.assert_called_once_with()
    assert scheduler.get_jobs() == []


def test_stop_lets_in_flight_work_finish(scheduler):
    release = threading.Event()
    started = threading.Event()
    work = MagicMock(side_effect=lambda: (started.set(), release.wait(5)))
    _add(scheduler, work=work, immediate=True)

    futures = scheduler.tick(NOW)
    assert started.wait(5)
    scheduler.stop()

    assert scheduler.tick(NOW + timedelta(hours=3)) == []
    release.set()
    assert futures[0].result(timeout=5) is True
    assert work.call_count == 1
    assert not scheduler.running

    scheduler.stop()


def test_coroutine_work_is_awaited(scheduler):
    calls = []

    async def work():
        calls.append("ran")

    _add(scheduler, work=work, immediate=True)
    assert _tick(scheduler, NOW) == [True]
    assert calls == ["ran"]


def test_history_records_success_and_failure(tmp_path):
    history = HistoryStore(tmp_path / "history.json")
    scheduler = Scheduler(tick_interval_ms=50, history=history)
    try:
        _add(scheduler, "ok", immediate=True)
        _add(scheduler, "bad", work=MagicMock(side_effect=RuntimeError("nope")), immediate=True)
        _tick(scheduler, NOW)
    finally:
        scheduler.stop(wait=True)

    failed = history.get_history(status='failed')
    assert [r['job_id'] for r in failed] == ['bad']
    assert failed[0]['error'] == 'nope'
    assert [r['job_id'] for r in history.get_history(status='success')] == ['ok']


def test_timer_drives_ticks():
    fired = threading.Event()
    scheduler = Scheduler(tick_interval_ms=50)
    try:
        _add(scheduler, work=fired.set, immediate=True,
             start_date=NOW.replace(year=2000), end_date=NOW.replace(year=2999))
        scheduler.start()
        assert scheduler.running
        assert fired.wait(5)
    finally:
        scheduler.stop(wait=True)

    assert not scheduler.running
    with pytest.raises(RuntimeError):
        scheduler.start()


def test_get_jobs_reports_state(scheduler):
    _add(scheduler, immediate=True)
    _tick(scheduler, NOW)

    (info,) = scheduler.get_jobs()
    assert info['id'] == "A"
    assert info['state'] == "active"
    assert info['runs'] == 1
    assert info['in_flight'] is False
    assert scheduler.wait_idle(timeout=1)


def test_timezone_aware_job_runs_alongside_naive_one(scheduler):
    local_now = datetime.now()
    utc_now = datetime.now(timezone.utc)
    naive_work = MagicMock()
    aware_work = MagicMock()
    scheduler.add_job("naive", local_now - timedelta(hours=1), local_now + timedelta(hours=1),
                      1, naive_work, lambda: None)
    job = scheduler.add_job("aware", utc_now - timedelta(hours=1), utc_now + timedelta(hours=1),
                            1, aware_work, lambda: None)

    assert job.start_date.tzinfo is None
    assert job.end_date.tzinfo is None
    assert [f.result(timeout=5) for f in scheduler.tick()] == [True, True]
    naive_work.assert_called_once_with()
    aware_work.assert_called_once_with()


def test_job_that_cannot_be_evaluated_is_skipped(scheduler):
    good = MagicMock()
    _add(scheduler, "good", work=good)
    broken = _add(scheduler, "broken")
    broken.is_expired = MagicMock(side_effect=TypeError("bad timestamp"))
    broken.is_due = MagicMock(side_effect=TypeError("bad timestamp"))

    assert _tick(scheduler, NOW) == [True]
    good.assert_called_once_with()
    assert scheduler.has_job("broken")


def test_get_job_returns_registered_instance(scheduler):
    job = _add(scheduler)

    assert scheduler.get_job("A") is job
    scheduler.remove_job("A")
    with pytest.raises(JobNotFoundError):
        scheduler.get_job("A")
