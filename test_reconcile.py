"""Tests for reconciliation between the search store and the scheduler."""

from datetime import timedelta
from unittest.mock import MagicMock

import pytest

from conftest import NOW, make_search
from models import SearchResult
from search_scheduler.jobs import JobExecutionError, JobNotFoundError
from search_scheduler.reconcile import ReconcileCommand, ReconciliationState, SearchReconciler
from search_scheduler.scheduler import Scheduler
from search_scheduler.store import SearchStore


@pytest.fixture
def store(tmp_path):
    return SearchStore(tmp_path / "searches.json")


@pytest.fixture
def scheduler():
    s = Scheduler(tick_interval_ms=50)
    yield s
    s.stop(wait=True)


def _tick(scheduler, now):
    return [f.result(timeout=5) for f in scheduler.tick(now)]


def _mock_scheduler():
    return MagicMock(spec=Scheduler)


def test_refresh_adds_only_new_searches(store):
    for search_id in ("A", "B", "C"):
        store.add_search(make_search(search_id))
    scheduler = _mock_scheduler()
    state = ReconciliationState(searches=[make_search("A"), make_search("B")])
    reconciler = SearchReconciler(scheduler, store, MagicMock(), state=state)

    assert reconciler.dispatch(ReconcileCommand.REFRESH)

    scheduler.add_job.assert_called_once()
    args, kwargs = scheduler.add_job.call_args
    assert args[0] == "C"
    assert kwargs['immediate'] is True
    scheduler.remove_job.assert_not_called()
    assert sorted(state.ids()) == ["A", "B", "C"]


def test_refresh_removes_disabled_searches(store):
    store.add_search(make_search("A"))
    store.add_search(make_search("B", enabled=False))
    scheduler = _mock_scheduler()
    state = ReconciliationState(searches=[make_search("A"), make_search("B")])
    reconciler = SearchReconciler(scheduler, store, MagicMock(), state=state)

    assert reconciler.dispatch("refresh")

    scheduler.remove_job.assert_called_once_with("B")
    scheduler.add_job.assert_not_called()
    assert state.ids() == ["A"]
    assert not store.get_search("B").enabled


def test_add_and_remove_commands_are_one_directional(store):
    store.add_search(make_search("A", enabled=False))
    store.add_search(make_search("C"))
    scheduler = _mock_scheduler()
    state = ReconciliationState(searches=[make_search("A")])
    reconciler = SearchReconciler(scheduler, store, MagicMock(), state=state)

    reconciler.dispatch(ReconcileCommand.ADD)
    scheduler.remove_job.assert_not_called()
    assert scheduler.add_job.call_count == 1

    scheduler.reset_mock()
    reconciler.dispatch(ReconcileCommand.REMOVE)
    scheduler.add_job.assert_not_called()
    scheduler.remove_job.assert_called_once_with("A")


def test_missing_job_does_not_abort_removal_pass(store):
    store.add_search(make_search("A", enabled=False))
    store.add_search(make_search("B", enabled=False))
    scheduler = _mock_scheduler()
    scheduler.remove_job.side_effect = [JobNotFoundError("A"), None]
    state = ReconciliationState(searches=[make_search("A"), make_search("B")])
    reconciler = SearchReconciler(scheduler, store, MagicMock(), state=state)

    assert reconciler.dispatch(ReconcileCommand.REMOVE)

    assert scheduler.remove_job.call_count == 2
    assert state.ids() == []


def test_store_failure_skips_pass():
    store = MagicMock(spec=SearchStore)
    store.get_new_searches.side_effect = OSError("disk gone")
    scheduler = _mock_scheduler()
    state = ReconciliationState(searches=[make_search("A")])
    reconciler = SearchReconciler(scheduler, store, MagicMock(), state=state)

    assert reconciler.dispatch(ReconcileCommand.REFRESH) is False

    scheduler.add_job.assert_not_called()
    scheduler.remove_job.assert_not_called()
    assert state.ids() == ["A"]


def test_load_resumes_future_next_run(store):
    store.add_search(make_search("resume", next_run=NOW + timedelta(minutes=20)))
    store.add_search(make_search("stale", next_run=NOW - timedelta(minutes=20)))
    store.add_search(make_search("never"))
    store.add_search(make_search("off", enabled=False))
    scheduler = _mock_scheduler()
    reconciler = SearchReconciler(scheduler, store, MagicMock(), clock=lambda: NOW)

    assert reconciler.load() == 3

    calls = {c.args[0]: c.kwargs for c in scheduler.add_job.call_args_list}
    assert calls["resume"]['immediate'] is False
    assert calls["resume"]['next_run'] == NOW + timedelta(minutes=20)
    assert calls["stale"]['immediate'] is True
    assert calls["never"]['immediate'] is True
    assert "off" not in calls


def test_run_records_stats(store, scheduler):
    store.add_search(make_search("A"))
    handler = MagicMock()
    reconciler = SearchReconciler(scheduler, store, handler, clock=lambda: NOW)
    reconciler.load()

    assert _tick(scheduler, NOW) == [True]

    handler.assert_called_once()
    assert handler.call_args.args[0].id == "A"
    stored = store.get_search("A")
    assert stored.next_run == NOW + timedelta(hours=1)
    assert stored.last_duration_ms is not None


def test_failed_run_does_not_record_stats(store, scheduler):
    store.add_search(make_search("A"))
    reconciler = SearchReconciler(
        scheduler, store, MagicMock(side_effect=RuntimeError("api")), clock=lambda: NOW
    )
    reconciler.load()

    assert _tick(scheduler, NOW) == [False]
    assert store.get_search("A").last_run is None
    assert scheduler.get_next_run("A") == NOW + timedelta(hours=1)


def test_result_discarded_when_removed_mid_run(scheduler):
    store = MagicMock(spec=SearchStore)
    store.get_enabled_searches.return_value = [make_search("A")]
    reconciler = SearchReconciler(
        scheduler, store, lambda search: scheduler.remove_job(search.id), clock=lambda: NOW
    )
    reconciler.load()

    assert _tick(scheduler, NOW) == [True]
    store.set_run_stats.assert_not_called()


def test_expired_search_is_disabled(store, scheduler):
    store.add_search(make_search("A", end_date=NOW - timedelta(seconds=1)))
    handler = MagicMock()
    reconciler = SearchReconciler(scheduler, store, handler, clock=lambda: NOW)
    reconciler.load()

    _tick(scheduler, NOW)

    handler.assert_not_called()
    assert not store.get_search("A").enabled
    assert reconciler.state.ids() == []
    assert not scheduler.has_job("A")


def test_reconcilers_do_not_share_state(store):
    store.add_search(make_search("A"))
    first = SearchReconciler(_mock_scheduler(), store, MagicMock())
    second = SearchReconciler(_mock_scheduler(), store, MagicMock())

    first.refresh()

    assert first.state.ids() == ["A"]
    assert second.state.ids() == []


def test_run_stores_search_result(store, scheduler):
    store.add_search(make_search("A"))
    result = SearchResult(
        search_id="A", data=[{'id': 1}, {'id': 2}], meta={'count': 2},
        duration_ms=120, fetched_at=NOW
    )
    reconciler = SearchReconciler(scheduler, store, lambda search: result, clock=lambda: NOW)
    reconciler.load()

    assert _tick(scheduler, NOW) == [True]

    (stored,) = store.get_search_results("A")
    assert stored['result_count'] == 2
    assert stored['meta'] == {'count': 2}
    assert store.get_search("A").last_run is not None


def test_result_discarded_when_rescheduled_mid_run(scheduler):
    store = MagicMock(spec=SearchStore)
    store.get_enabled_searches.return_value = [make_search("A")]

    def reschedule(search):
        scheduler.remove_job(search.id)
        scheduler.add_job(search.id, search.start_date, search.end_date, search.frequency,
                          lambda: None, lambda: None)

    reconciler = SearchReconciler(scheduler, store, reschedule, clock=lambda: NOW)
    reconciler.load()

    assert _tick(scheduler, NOW) == [True]
    store.set_run_stats.assert_not_called()
    store.add_search_result.assert_not_called()


def test_handler_failure_is_reported_as_job_error(store):
    reconciler = SearchReconciler(
        _mock_scheduler(), store, MagicMock(side_effect=RuntimeError("api down"))
    )

    with pytest.raises(JobExecutionError) as excinfo:
        reconciler._run_search(make_search("A"))

    assert excinfo.value.job_id == "A"
    assert isinstance(excinfo.value.cause, RuntimeError)


def test_expiry_clears_mirror_when_store_write_fails(scheduler):
    store = MagicMock(spec=SearchStore)
    store.get_enabled_searches.return_value = [make_search("A", end_date=NOW - timedelta(seconds=1))]
    store.disable_search.side_effect = OSError("read-only file system")
    reconciler = SearchReconciler(scheduler, store, MagicMock(), clock=lambda: NOW)
    reconciler.load()

    _tick(scheduler, NOW)

    assert not scheduler.has_job("A")
    assert reconciler.state.ids() == []
