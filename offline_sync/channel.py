"""
Observer channel for sync state.

Subscribers get the current snapshot on registration and every update
afterwards. Within one pass the reported ``completed`` count never goes
backwards, whatever order the engine emits in.
"""

import logging
import threading
from dataclasses import replace
from typing import Callable

from .models import Listener, SyncState, SyncStatus

logger = logging.getLogger(__name__)


class SyncStateChannel:
    """Fan-out of SyncState snapshots to registered listeners."""

    def __init__(self):
        self._listeners: dict[int, Listener] = {}
        self._next_token = 0
        self._state = SyncState()
        self._lock = threading.Lock()

    @property
    def state(self) -> SyncState:
        """Most recent snapshot."""
        return self._state

    def subscribe(self, listener: Listener) -> Callable[[], None]:
        """
        Register a listener.

        Returns:
            A callable that cancels the registration. Calling it twice is harmless.
        """
        with self._lock:
            token = self._next_token
            self._next_token += 1
            self._listeners[token] = listener
            current = self._state

        self._deliver(listener, current)

        def unsubscribe() -> None:
            with self._lock:
                self._listeners.pop(token, None)

        return unsubscribe

    def begin_pass(self, total: int) -> None:
        """Announce a new pass; progress restarts from zero."""
        self._publish(SyncState(status=SyncStatus.SYNCING, completed=0, total=total), new_pass=True)

    def progress(self, completed: int, total: int) -> None:
        self._publish(SyncState(status=SyncStatus.SYNCING, completed=completed, total=total))

    def finish(self, state: SyncState) -> None:
        self._publish(state)

    def _publish(self, state: SyncState, new_pass: bool = False) -> None:
        with self._lock:
            if not new_pass and self._state.status == SyncStatus.SYNCING:
                state = replace(state, completed=max(state.completed, self._state.completed))
            self._state = state
            listeners = list(self._listeners.values())

        for listener in listeners:
            self._deliver(listener, state)

    @staticmethod
    def _deliver(listener: Listener, state: SyncState) -> None:
        try:
            listener(state)
        except Exception:
            logger.exception("Sync state listener raised")
