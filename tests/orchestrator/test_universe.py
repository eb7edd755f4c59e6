"""Tests for background universe selection."""

from __future__ import annotations

from concurrent.futures import Executor, Future
from datetime import datetime, timedelta, timezone

from tradeflow.orchestrator.models import UniverseChange
from tradeflow.orchestrator.universe import BackgroundUniverseSelection

NOW = datetime(2024, 1, 10, 16, 0, tzinfo=timezone.utc)


class _DeferredExecutor(Executor):
    """Holds submitted work until :meth:`run_all`, so tests control completion."""

    def __init__(self) -> None:
        self._queue: list[tuple[Future, object, tuple]] = []

    def submit(self, fn, /, *args, **kwargs):
        future: Future = Future()
        self._queue.append((future, fn, args))
        return future

    def run_all(self) -> None:
        for future, fn, args in self._queue:
            try:
                future.set_result(fn(*args))
            except Exception as exc:
                future.set_exception(exc)
        self._queue.clear()


class TestBackgroundUniverseSelection:
    def test_poll_before_completion_is_none(self):
        executor = _DeferredExecutor()
        selection = BackgroundUniverseSelection(lambda now: ["A"], executor=executor)
        assert selection.submit(NOW)
        assert selection.is_running
        assert selection.poll(set()) is None

    def test_poll_returns_diff(self):
        executor = _DeferredExecutor()
        selection = BackgroundUniverseSelection(lambda now: ["A", "B"], executor=executor)
        selection.submit(NOW)
        executor.run_all()

        change = selection.poll({"B", "C"})
        assert change == UniverseChange(added=frozenset({"A"}), removed=frozenset({"C"}))
        assert selection.poll({"A", "B"}) is None

    def test_one_in_flight(self):
        executor = _DeferredExecutor()
        selection = BackgroundUniverseSelection(lambda now: [], executor=executor)
        assert selection.submit(NOW)
        assert not selection.submit(NOW + timedelta(minutes=1))
        assert selection.last_requested_at == NOW

    def test_selection_receives_request_time(self):
        seen: list[datetime] = []
        executor = _DeferredExecutor()
        selection = BackgroundUniverseSelection(
            lambda now: seen.append(now) or [], executor=executor,
        )
        selection.submit(NOW)
        executor.run_all()
        assert seen == [NOW]

    def test_failure_yields_no_change(self):
        def broken(now: datetime) -> list[str]:
            raise RuntimeError("feed down")

        executor = _DeferredExecutor()
        selection = BackgroundUniverseSelection(broken, executor=executor)
        selection.submit(NOW)
        executor.run_all()
        assert selection.poll({"A"}) is None
        # Can be retried afterwards
        assert selection.submit(NOW + timedelta(minutes=1))

    def test_maybe_submit_respects_refresh(self):
        executor = _DeferredExecutor()
        selection = BackgroundUniverseSelection(
            lambda now: [], refresh=timedelta(hours=1), executor=executor,
        )
        assert selection.maybe_submit(NOW)
        executor.run_all()
        selection.poll(set())

        assert not selection.maybe_submit(NOW + timedelta(minutes=30))
        assert selection.maybe_submit(NOW + timedelta(hours=1))

    def test_no_refresh_never_auto_submits(self):
        selection = BackgroundUniverseSelection(lambda now: [], executor=_DeferredExecutor())
        assert not selection.maybe_submit(NOW)

    def test_owned_thread_pool(self):
        selection = BackgroundUniverseSelection(lambda now: ["A"])
        selection.submit(NOW)
        selection.shutdown(wait=True)
        assert selection.poll(set()) == UniverseChange(added=frozenset({"A"}))
