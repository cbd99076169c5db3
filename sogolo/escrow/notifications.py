"""
Change notifications for escrow transactions.

Notifications refresh user interfaces; they are never needed for
correctness. A notifier that raises is logged by the engine and the
operation still succeeds.
"""

import logging
import threading
from typing import Callable, Dict, List, Optional, Protocol

from sogolo.escrow.models import Transaction

logger = logging.getLogger(__name__)

ChangeCallback = Callable[[Transaction, Optional[str]], None]


class ChangeNotifier(Protocol):
    """Protocol for pushing committed changes to subscribers."""

    def publish(self, transaction: Transaction, previous_status: Optional[str]) -> None:
        """Announce the updated row. ``previous_status`` is None for a new transaction."""
        ...


class InMemoryChangeFeed:
    """Process-local change feed.

    Subscribers register for one transaction id, or for every transaction by
    passing None. Callbacks run synchronously on the publishing thread.
    """

    def __init__(self):
        self._subscribers: Dict[Optional[str], List[ChangeCallback]] = {}
        self._lock = threading.Lock()

    def subscribe(
        self, callback: ChangeCallback, transaction_id: Optional[str] = None
    ) -> Callable[[], None]:
        """Register a callback. Returns a function that removes it."""
        with self._lock:
            self._subscribers.setdefault(transaction_id, []).append(callback)

        def unsubscribe() -> None:
            with self._lock:
                callbacks = self._subscribers.get(transaction_id, [])
                if callback in callbacks:
                    callbacks.remove(callback)

        return unsubscribe

    def publish(self, transaction: Transaction, previous_status: Optional[str]) -> None:
        with self._lock:
            callbacks = list(self._subscribers.get(transaction.id, []))
            callbacks += self._subscribers.get(None, [])
        for callback in callbacks:
            try:
                callback(transaction, previous_status)
            except Exception as e:
                # One failing subscriber must not starve the rest
                logger.warning(
                    f"Change subscriber failed | transaction={transaction.id} | error={e}"
                )

    def subscriber_count(self, transaction_id: Optional[str] = None) -> int:
        return len(self._subscribers.get(transaction_id, []))
