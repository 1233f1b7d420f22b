from __future__ import annotations

import threading
from typing import Callable, List

from .state import StateStore

FIRST_LAUNCH_BONUS = 1


class CreditsLedger:
    """Non-negative credit balance backed by the state store.

    Construct one per process and hand it to every session that spends
    credits. The first construction on a fresh install grants
    ``FIRST_LAUNCH_BONUS``; later constructions restore the persisted balance.
    """

    def __init__(self, store: StateStore, *, first_launch_bonus: int = FIRST_LAUNCH_BONUS) -> None:
        self._store = store
        self._lock = threading.Lock()
        self._listeners: List[Callable[[int], None]] = []
        with self._lock:
            if not store.has_launched_before():
                store.record_first_launch(max(0, int(first_launch_bonus)))
            self._balance = store.remaining_credits()

    @property
    def balance(self) -> int:
        return self._balance

    def subscribe(self, callback: Callable[[int], None]) -> None:
        self._listeners.append(callback)

    def _commit(self, new_balance: int) -> None:
        self._store.set_remaining_credits(new_balance)
        self._balance = new_balance

    def _notify(self, balance: int) -> None:
        for cb in list(self._listeners):
            cb(balance)

    def debit(self) -> bool:
        with self._lock:
            if self._balance <= 0:
                return False
            self._commit(self._balance - 1)
            balance = self._balance
        self._notify(balance)
        return True

    def credit(self, amount: int) -> int:
        if isinstance(amount, bool) or int(amount) != amount or int(amount) <= 0:
            raise ValueError(f"credit amount must be a positive integer, got {amount!r}")
        with self._lock:
            self._commit(self._balance + int(amount))
            balance = self._balance
        self._notify(balance)
        return balance

    def refund(self) -> int:
        """Return one credit spent on a run that produced nothing."""
        return self.credit(1)
