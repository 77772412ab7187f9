"""Publish-on-write broadcast of SyncState snapshots to observers."""
import logging
import queue
import threading
from typing import Iterator, List, Optional

from sync_engine.models import SyncState

logger = logging.getLogger(__name__)


class StateSubscription:
    """
    Read-only, ordered stream of SyncState snapshots for one observer.

    Usage::

        with engine.observe_state() as states:
            for state in states:
                render(state)
    """

    def __init__(self, broadcaster: 'StateBroadcaster'):
        self._broadcaster = broadcaster
        self._queue: 'queue.Queue[Optional[SyncState]]' = queue.Queue()
        self.closed = False

    def _push(self, state: Optional[SyncState]) -> None:
        self._queue.put(state)

    def get(self, timeout: Optional[float] = None) -> Optional[SyncState]:
        """
        Return the next snapshot.

        Args:
            timeout: Seconds to wait; None blocks until a snapshot arrives

        Returns:
            SyncState, or None once the subscription is closed

        Raises:
            queue.Empty: If timeout elapses with nothing published
        """
        return self._queue.get(timeout=timeout)

    def drain(self) -> List[SyncState]:
        """Return every snapshot already delivered, without blocking."""
        states = []
        while True:
            try:
                state = self._queue.get_nowait()
            except queue.Empty:
                return states
            if state is not None:
                states.append(state)

    def close(self) -> None:
        if not self.closed:
            self.closed = True
            self._broadcaster.unsubscribe(self)
            self._queue.put(None)

    def __iter__(self) -> Iterator[SyncState]:
        while True:
            state = self._queue.get()
            if state is None:
                return
            yield state

    def __enter__(self) -> 'StateSubscription':
        return self

    def __exit__(self, *exc_info) -> None:
        self.close()


class StateBroadcaster:
    """Single-writer, multi-reader notification channel for SyncState."""

    def __init__(self, initial: SyncState):
        self._lock = threading.Lock()
        self._current = initial
        self._subscribers: List[StateSubscription] = []

    @property
    def current(self) -> SyncState:
        return self._current

    def publish(self, state: SyncState) -> None:
        """Record state as current and push it to every subscriber."""
        with self._lock:
            self._current = state
            for subscriber in self._subscribers:
                subscriber._push(state)
        logger.debug(f"Published sync state {state.status.value}")

    def subscribe(self) -> StateSubscription:
        """Open a subscription; the current snapshot is delivered first."""
        subscription = StateSubscription(self)
        with self._lock:
            subscription._push(self._current)
            self._subscribers.append(subscription)
        return subscription

    def unsubscribe(self, subscription: StateSubscription) -> None:
        with self._lock:
            if subscription in self._subscribers:
                self._subscribers.remove(subscription)

    def close(self) -> None:
        """Close every subscription, ending their iterators."""
        with self._lock:
            subscribers = list(self._subscribers)
        for subscription in subscribers:
            subscription.close()
