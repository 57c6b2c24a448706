from __future__ import annotations

from datetime import date
import threading
from typing import Callable, Generic, Optional, TypeVar

import structlog

from ledger.aggregation import LedgerSummary, build_summary
from ledger.rate_store import UPDATED_AT_KEY, SettingsStore, load_rate_snapshot
from ledger.store import ChangeEvent, LedgerStore

T = TypeVar("T")

logger = structlog.get_logger(__name__)


class ReloadSequencer(Generic[T]):
    """Keeps only the result of the most recently started reload.

    ``begin`` hands out increasing tokens; ``commit`` accepts a result only if
    no newer reload has started since, so a slow stale read cannot overwrite
    a fresher one.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._issued = 0
        self._result: Optional[T] = None

    def begin(self) -> int:
        with self._lock:
            self._issued += 1
            return self._issued

    def commit(self, token: int, result: T) -> bool:
        with self._lock:
            if token != self._issued:
                logger.info("stale_reload_discarded", token=token, latest=self._issued)
                return False
            self._result = result
            return True

    @property
    def latest(self) -> Optional[T]:
        with self._lock:
            return self._result


class LiveSummary:
    """Ledger summary recomputed from a full read whenever the data changes."""

    def __init__(
        self,
        store: LedgerStore,
        settings: SettingsStore,
        clock: Callable[[], date] = date.today,
    ) -> None:
        self._store = store
        self._settings = settings
        self._clock = clock
        self._sequencer: ReloadSequencer[LedgerSummary] = ReloadSequencer()
        self._unsubscribe: Optional[Callable[[], None]] = None

    def start(self) -> None:
        if self._unsubscribe is None:
            self._unsubscribe = self._store.subscribe(self._on_change)
        self.reload()

    def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None

    def reload(self) -> LedgerSummary:
        token = self._sequencer.begin()
        transactions = self._store.list_transactions()
        names = self._store.entity_names()
        rates = load_rate_snapshot(self._settings)
        summary = build_summary(transactions, rates, names, self._clock())
        self._sequencer.commit(token, summary)
        return summary

    def current(self) -> LedgerSummary:
        # The day rolls over without any write, so month and due windows are rebuilt when stale.
        summary = self._sequencer.latest
        if summary is None or summary.as_of != self._clock():
            return self.reload()
        return summary

    def _on_change(self, event: ChangeEvent) -> None:
        # A rate save writes several keys; the timestamp is written last.
        if event.table == "settings" and event.row_id != UPDATED_AT_KEY:
            return
        self.reload()
