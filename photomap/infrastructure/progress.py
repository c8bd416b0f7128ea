"""In-process progress fan-out and rate limiting."""

from __future__ import annotations

from collections.abc import Callable
import queue
import threading
import time

from photomap.core.services.interfaces import Progress, ProgressEvent, is_terminal

_CLOSED = object()


class ProgressSubscription:
    """Iterator over the events of one channel; ends after a terminal event."""

    def __init__(self, channel: ProgressChannel) -> None:
        self._channel = channel
        self._queue: queue.Queue = queue.Queue()
        self._done = False

    def _deliver(self, event: ProgressEvent) -> None:
        self._queue.put(event)

    @property
    def done(self) -> bool:
        return self._done

    def get(self, timeout: float | None = None) -> ProgressEvent | None:
        """Next event, or None on timeout and once the stream has ended."""
        if self._done:
            return None
        try:
            item = self._queue.get(timeout=timeout)
        except queue.Empty:
            return None
        if item is _CLOSED:
            self._done = True
            return None
        if is_terminal(item):
            self._done = True
        return item

    def close(self) -> None:
        """Stop receiving events; a blocked iterator ends."""
        self._channel.unsubscribe(self)
        self._queue.put(_CLOSED)

    def __iter__(self) -> ProgressSubscription:
        return self

    def __next__(self) -> ProgressEvent:
        event = self.get()
        if event is None:
            raise StopIteration
        return event


class ProgressChannel:
    """Publishes progress events to every current subscriber.

    Events published after a terminal event are still delivered, but
    subscriptions stop iterating at the first terminal event they see.
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._subscribers: list[ProgressSubscription] = []

    def subscribe(self) -> ProgressSubscription:
        subscription = ProgressSubscription(self)
        with self._lock:
            self._subscribers.append(subscription)
        return subscription

    def unsubscribe(self, subscription: ProgressSubscription) -> None:
        with self._lock:
            if subscription in self._subscribers:
                self._subscribers.remove(subscription)

    def publish(self, event: ProgressEvent) -> None:
        with self._lock:
            subscribers = list(self._subscribers)
            if is_terminal(event):
                self._subscribers.clear()
        for subscription in subscribers:
            subscription._deliver(event)  # pylint: disable=protected-access

    def __call__(self, event: ProgressEvent) -> None:
        self.publish(event)


class ProgressThrottle:
    """Turns per-file counts into a bounded stream of monotonic `Progress` events.

    An event is produced once `every` files have completed since the last one,
    or `interval` seconds have passed, and always for the last file.
    """

    def __init__(
        self,
        total: int,
        every: int = 100,
        interval: float = 0.5,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._total = total
        self._every = max(1, every)
        self._interval = interval
        self._clock = clock
        self._last_count = 0
        self._last_time = clock()
        self._emitted = False

    def update(self, processed: int) -> Progress | None:
        if processed <= self._last_count:
            return None
        now = self._clock()
        due = (
            processed - self._last_count >= self._every
            or now - self._last_time >= self._interval
            or processed >= self._total
        )
        if not due:
            return None
        return self._emit(processed, now)

    def finish(self, processed: int) -> Progress | None:
        """Final event if the last count has not been reported yet."""
        if self._emitted and processed <= self._last_count:
            return None
        return self._emit(max(processed, self._last_count), self._clock())

    def _emit(self, processed: int, now: float) -> Progress:
        self._last_count = processed
        self._last_time = now
        self._emitted = True
        return Progress(processed=processed, total=self._total)
