"""Latest-snapshot holder and event fan-out."""

import queue
import threading
from typing import Iterator, List, Optional

from .models import ConnectionSnapshot, Event
from ..logging_utility import logger

_CLOSED = object()


class Subscription:
    """One consumer's view of the event stream.

    Iterating blocks until the next event and stops once the publisher or the
    subscription is closed. ``get(timeout)`` lets a consumer wake up
    periodically, e.g. to notice that its client went away.
    """

    def __init__(self, publisher: "SnapshotPublisher", buffer: int):
        self._publisher = publisher
        self._queue: queue.Queue = queue.Queue(maxsize=buffer)
        self.closed = False

    def get(self, timeout: Optional[float] = None) -> Optional[Event]:
        """Next event, or None on timeout or once closed."""
        if self.closed:
            return None
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is _CLOSED:
            self.close()
            return None
        return item

    def __iter__(self) -> Iterator[Event]:
        try:
            while True:
                event = self.get()
                if event is None:
                    return
                yield event
        finally:
            self.close()

    def close(self) -> None:
        """Unregister; a reader blocked in get() wakes up."""
        if self.closed:
            return
        self.closed = True
        self._publisher._unsubscribe(self._queue)
        self._publisher._offer(self._queue, _CLOSED)


class SnapshotPublisher:
    """Holds the latest snapshot for any number of readers.

    Snapshots are immutable, so publishing is a reference swap: ``latest()``
    never takes a lock and always sees either the previous or the new value.
    The lock only orders writers and the subscriber list.
    """

    def __init__(self, initial: Optional[ConnectionSnapshot] = None, subscriber_buffer: int = 200):
        self._snapshot = initial or ConnectionSnapshot()
        self._subscriber_buffer = subscriber_buffer
        self._subscribers: List[queue.Queue] = []
        self._lock = threading.Lock()
        self._closed = False

    def latest(self) -> ConnectionSnapshot:
        return self._snapshot

    def publish(self, snapshot: ConnectionSnapshot) -> None:
        with self._lock:
            current = self._snapshot
            if snapshot.sequence <= current.sequence:
                raise ValueError(
                    f"Snapshot sequence {snapshot.sequence} does not follow {current.sequence}"
                )
            self._snapshot = snapshot
            fresh = [e for e in snapshot.events if e.sequence > current.last_event_sequence]
            for subscriber in self._subscribers:
                for event in fresh:
                    self._offer(subscriber, event)

    @staticmethod
    def _offer(subscriber: queue.Queue, item) -> None:
        while True:
            try:
                subscriber.put_nowait(item)
                return
            except queue.Full:
                # Slow consumer: drop its oldest undelivered event
                try:
                    subscriber.get_nowait()
                except queue.Empty:
                    pass

    def subscribe(self) -> Subscription:
        """
        Events published from now on, in order.

        Events a slow consumer has not picked up are dropped oldest first
        once its buffer is full.
        """
        subscription = Subscription(self, self._subscriber_buffer)
        with self._lock:
            if self._closed:
                subscription.closed = True
                return subscription
            self._subscribers.append(subscription._queue)
        return subscription

    def _unsubscribe(self, subscriber: queue.Queue) -> None:
        with self._lock:
            if subscriber in self._subscribers:
                self._subscribers.remove(subscriber)

    @property
    def subscriber_count(self) -> int:
        return len(self._subscribers)

    def close(self) -> None:
        with self._lock:
            if self._closed:
                return
            self._closed = True
            subscribers = list(self._subscribers)
        for subscriber in subscribers:
            self._offer(subscriber, _CLOSED)
        logger.info(f"Publisher closed, released {len(subscribers)} subscriber(s)")
