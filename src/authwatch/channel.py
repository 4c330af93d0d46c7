"""Bounded FIFO event channel between the log source and the daemon loop.

A full channel blocks the sender; that is the only back-pressure in the
pipeline and it pushes back into the subprocess's own pipe buffer. Closing
is sticky: once the receiver has drained everything sent before ``close``,
every further ``receive`` raises ChannelClosed.
"""

import queue
import threading
import time
from typing import Iterator

from authwatch.schema import Event

_CLOSED = object()


class ChannelClosed(Exception):
    """The sending side has finished and all events were received."""


class EventChannel:
    """Single-producer, single-consumer bounded event queue."""

    def __init__(self, capacity: int = 100, poll_interval: float = 0.5):
        if capacity < 1:
            raise ValueError(f"Channel capacity must be positive, got {capacity}")
        self.capacity = capacity
        self.poll_interval = poll_interval
        self._queue: queue.Queue = queue.Queue(maxsize=capacity)
        self._closed = threading.Event()
        self._drained = False

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def qsize(self) -> int:
        return self._queue.qsize()

    def send(self, event: Event, stop_event: threading.Event | None = None) -> bool:
        """Send an event, blocking while the channel is full.

        Args:
            event: Event to enqueue.
            stop_event: When set, a blocked send gives up.

        Returns:
            True if the event was enqueued, False if the stop event fired first.

        Raises:
            ChannelClosed: If the channel was already closed.
        """
        while True:
            if self._closed.is_set():
                raise ChannelClosed("send on closed channel")
            if stop_event is not None and stop_event.is_set():
                return False
            try:
                self._queue.put(event, timeout=self.poll_interval)
                return True
            except queue.Full:
                continue

    def close(self) -> None:
        """Mark the channel closed. Events already queued stay receivable."""
        if self._closed.is_set():
            return
        self._closed.set()
        try:
            self._queue.put_nowait(_CLOSED)
        except queue.Full:
            # Receiver notices the closed flag once it has drained the queue
            pass

    def receive(self, timeout: float | None = None) -> Event:
        """Receive the next event in send order.

        Args:
            timeout: Seconds to wait, or None to wait until an event arrives
                or the channel is closed.

        Returns:
            The next Event.

        Raises:
            queue.Empty: If the timeout elapsed with nothing to receive.
            ChannelClosed: If the channel is closed and drained.
        """
        deadline = None if timeout is None else time.monotonic() + timeout

        while True:
            if self._drained:
                raise ChannelClosed("channel closed")

            wait = self.poll_interval
            if deadline is not None:
                wait = max(0.0, min(wait, deadline - time.monotonic()))

            try:
                item = self._queue.get(timeout=wait)
            except queue.Empty:
                if self._closed.is_set() and self._queue.empty():
                    self._drained = True
                    raise ChannelClosed("channel closed")
                if deadline is not None and time.monotonic() >= deadline:
                    raise
                continue

            if item is _CLOSED:
                self._drained = True
                raise ChannelClosed("channel closed")
            return item

    def __iter__(self) -> Iterator[Event]:
        while True:
            try:
                yield self.receive()
            except ChannelClosed:
                return
