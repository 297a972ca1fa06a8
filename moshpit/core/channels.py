"""Capacity-1 channels, select, cancellation tokens, and background operations.

Pipeline stages run on dedicated threads and talk through Channels. A Channel wraps a
bounded queue.Queue (capacity 1 by default), so a slow consumer stalls its producer.
Each channel is closed exactly once by its producer; receivers observe closure after
draining any queued item.
"""

import logging
import queue
import threading
from typing import Any, Callable, Generic, Iterator, Sequence, TypeVar

from moshpit.core.errors import OperationCancelled

_log = logging.getLogger(__name__)

T = TypeVar("T")

POLL_INTERVAL = 0.05

CLOSED: Any = object()
"""Returned by select() for a channel that is closed and drained."""


class ChannelClosed(Exception):
    """Raised when sending on a closed channel or receiving from a closed, drained channel."""


class CancelToken:
    """
    Cooperative cancellation signal.

    A child token is cancelled when it or any of its ancestors is cancelled, so an
    operation can stop its own helpers without cancelling the caller.
    """

    def __init__(self, parent: "CancelToken | None" = None) -> None:
        self._event = threading.Event()
        self._parent = parent

    def cancel(self) -> None:
        self._event.set()

    @property
    def cancelled(self) -> bool:
        if self._event.is_set():
            return True
        return self._parent is not None and self._parent.cancelled

    def child(self) -> "CancelToken":
        return CancelToken(parent=self)

    def raise_if_cancelled(self) -> None:
        if self.cancelled:
            raise OperationCancelled()


class Channel(Generic[T]):
    """Bounded single-consumer channel. Sends block while the channel is full."""

    def __init__(self, name: str = "", *, capacity: int = 1) -> None:
        if capacity < 1:
            raise ValueError("channel capacity must be at least 1")
        self.name = name
        self._queue: queue.Queue[T] = queue.Queue(maxsize=capacity)
        self._closed = threading.Event()
        self._waiters: set[threading.Event] = set()
        self._lock = threading.Lock()

    def __repr__(self) -> str:
        state = "closed" if self._closed.is_set() else "open"
        return f"Channel({self.name!r}, {state})"

    @property
    def closed(self) -> bool:
        return self._closed.is_set()

    def _add_waiter(self, waiter: threading.Event) -> None:
        with self._lock:
            self._waiters.add(waiter)

    def _remove_waiter(self, waiter: threading.Event) -> None:
        with self._lock:
            self._waiters.discard(waiter)

    def _notify(self) -> None:
        with self._lock:
            waiters = list(self._waiters)
        for waiter in waiters:
            waiter.set()

    def send(self, item: T, cancel: CancelToken | None = None) -> None:
        """Block until the item is queued. Raises OperationCancelled if cancel fires while blocked."""
        if self._closed.is_set():
            raise ChannelClosed(f"send on closed channel {self.name!r}")
        while True:
            if cancel is not None and cancel.cancelled:
                raise OperationCancelled()
            try:
                self._queue.put(item, timeout=POLL_INTERVAL)
            except queue.Full:
                continue
            self._notify()
            return

    def close(self) -> None:
        """Mark the channel closed. Items already queued can still be received."""
        self._closed.set()
        self._notify()

    def poll(self) -> tuple[bool, T | None]:
        """
        Non-blocking receive. Returns (True, item) or (False, None) when nothing is queued.
        Raises ChannelClosed when the channel is closed and drained.
        """
        # Read the closed flag first: once set, every send has already been queued.
        closed = self._closed.is_set()
        try:
            return True, self._queue.get_nowait()
        except queue.Empty:
            if closed:
                raise ChannelClosed(self.name) from None
            return False, None

    def receive(self, cancel: CancelToken | None = None) -> T:
        """Block until an item is available. Raises ChannelClosed once closed and drained."""
        _, item = select([self], cancel=cancel)
        if item is CLOSED:
            raise ChannelClosed(self.name)
        return item

    def __iter__(self) -> Iterator[T]:
        while True:
            try:
                yield self.receive()
            except ChannelClosed:
                return


def select(
    channels: Sequence[Channel[Any]],
    *,
    cancel: CancelToken | None = None,
) -> tuple[Channel[Any], Any]:
    """
    Wait until one of the channels has an item or is closed.

    Returns (channel, item), or (channel, CLOSED) for a closed and drained channel.
    Channels are polled in rotating order so no source starves the others.
    Raises OperationCancelled if cancel fires while waiting.
    """
    if not channels:
        raise ValueError("select() needs at least one channel")
    waiter = threading.Event()
    for ch in channels:
        ch._add_waiter(waiter)
    start = 0
    try:
        while True:
            waiter.clear()
            n = len(channels)
            for offset in range(n):
                ch = channels[(start + offset) % n]
                try:
                    ready, item = ch.poll()
                except ChannelClosed:
                    return ch, CLOSED
                if ready:
                    return ch, item
            start = (start + 1) % n
            if cancel is not None and cancel.cancelled:
                raise OperationCancelled()
            waiter.wait(POLL_INTERVAL)
    finally:
        for ch in channels:
            ch._remove_waiter(waiter)


class Operation:
    """
    A long-running task on its own daemon thread.

    The target receives the operation's CancelToken and sends results on the output
    channels it was given. When the target returns or raises, the terminal error (if
    any) is put on `errors`, then every output channel and finally `errors` itself are
    closed. Closure of `errors` without an item means success.
    """

    def __init__(
        self,
        name: str,
        target: Callable[[CancelToken], None],
        outputs: Sequence[Channel[Any]] = (),
        *,
        cancel: CancelToken | None = None,
    ) -> None:
        self.name = name
        self.token = cancel.child() if cancel is not None else CancelToken()
        self.errors: Channel[BaseException] = Channel(f"{name}.errors")
        self._target = target
        self._outputs = list(outputs)
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)

    def start(self) -> "Operation":
        self._thread.start()
        return self

    def _run(self) -> None:
        try:
            self._target(self.token)
        except Exception as e:
            _log.debug("%s failed: %s", self.name, e)
            self.errors.send(e)
        finally:
            for ch in self._outputs:
                ch.close()
            self.errors.close()

    def cancel(self) -> None:
        self.token.cancel()

    def _pump(self) -> Iterator[tuple[Channel[Any], Any]]:
        pending: list[Channel[Any]] = [*self._outputs, self.errors]
        while pending:
            ch, item = select(pending)
            if item is CLOSED:
                pending.remove(ch)
                continue
            yield ch, item
        self._thread.join()

    def events(self) -> Iterator[tuple[Channel[Any], Any]]:
        """
        Yield (channel, item) for every output item until the operation finishes.
        Raises the terminal error after all output channels have been drained.
        """
        error: BaseException | None = None
        for ch, item in self._pump():
            if ch is self.errors:
                error = item
                continue
            yield ch, item
        if error is not None:
            raise error

    def wait(self) -> None:
        """Discard outputs and block until done, raising the terminal error if any."""
        for _ in self.events():
            pass

    def abandon(self) -> None:
        """Cancel and drain without raising; used when the caller is already failing."""
        self.cancel()
        for ch, item in self._pump():
            if ch is self.errors and not isinstance(item, OperationCancelled):
                _log.debug("%s error after abandon: %s", self.name, item)
