"""Background universe selection, applied only between timesteps."""

from __future__ import annotations

from collections.abc import Callable, Iterable
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from datetime import datetime, timedelta

import structlog

from tradeflow.orchestrator.models import UniverseChange

logger = structlog.get_logger(__name__)

UniverseSelectFn = Callable[[datetime], Iterable[str]]


class BackgroundUniverseSelection:
    """Runs a universe selection function off the main loop.

    The selection function receives nothing but the instant it was asked
    about.  It must not read account, price, or signal state: its idea of
    "now" can lag the main loop by the time it takes to finish.

    Results surface only through :meth:`poll`, which the coordinator calls
    at its synchronization point between timesteps.  At most one selection
    is in flight.
    """

    def __init__(
        self,
        select_fn: UniverseSelectFn,
        *,
        refresh: timedelta | None = None,
        executor: Executor | None = None,
    ) -> None:
        self.select_fn = select_fn
        self.refresh = refresh
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=1, thread_name_prefix="universe-selection",
        )
        self._pending: Future[frozenset[str]] | None = None
        self._requested_at: datetime | None = None

    @property
    def is_running(self) -> bool:
        return self._pending is not None and not self._pending.done()

    @property
    def last_requested_at(self) -> datetime | None:
        return self._requested_at

    def submit(self, now: datetime) -> bool:
        """Start a selection for ``now``.  False if one is still pending."""
        if self._pending is not None:
            return False
        self._requested_at = now
        self._pending = self._executor.submit(self._select, now)
        logger.debug("universe_selection_submitted", as_of=now.isoformat())
        return True

    def maybe_submit(self, now: datetime) -> bool:
        """Submit when ``refresh`` has elapsed since the last request."""
        if self.refresh is None:
            return False
        if self._requested_at is not None and now < self._requested_at + self.refresh:
            return False
        return self.submit(now)

    def poll(self, current: Iterable[str]) -> UniverseChange | None:
        """Collect a finished selection as a change against ``current``.

        Returns ``None`` while nothing has finished.  A failed selection is
        logged and yields no change.
        """
        future = self._pending
        if future is None or not future.done():
            return None
        self._pending = None

        try:
            selected = future.result()
        except Exception as exc:
            logger.warning(
                "universe_selection_failed",
                as_of=self._requested_at.isoformat() if self._requested_at else None,
                error_type=type(exc).__name__,
                error_message=str(exc),
            )
            return None

        change = UniverseChange.diff(current, selected)
        logger.info(
            "universe_selection_complete",
            selected=len(selected),
            added=len(change.added),
            removed=len(change.removed),
        )
        return change

    def shutdown(self, wait: bool = True) -> None:
        if self._owns_executor:
            self._executor.shutdown(wait=wait)

    def _select(self, now: datetime) -> frozenset[str]:
        return frozenset(self.select_fn(now))
