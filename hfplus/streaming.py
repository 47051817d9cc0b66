"""Background reception: a reader thread feeding a bounded queue and a consumer."""

from __future__ import annotations

import threading
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass

import numpy as np

from .protocol import (
    ENDPOINT_IN,
    RAW_BUFFER_COUNT,
    USB_ENDPOINT_DIR_IN,
    AirspyHFError,
)
from .transport import UsbHandle


@dataclass
class SampleBlock:
    """One block of converted samples handed to the user's callback."""

    samples: np.ndarray
    dropped_samples: int = 0

    @property
    def sample_count(self) -> int:
        return int(self.samples.shape[0])


class SampleQueue:
    """A bounded FIFO of raw buffers that counts the buffers it had to drop.

    Each stored buffer carries the number of buffers dropped just before it.
    """

    def __init__(self, capacity: int = RAW_BUFFER_COUNT) -> None:
        if capacity < 1:
            raise ValueError(f"capacity must be at least 1, got {capacity}")
        self._capacity = capacity
        self._items: deque[tuple[bytes, int]] = deque()
        self._dropped = 0
        self._closed = False
        self._cond = threading.Condition()

    def __len__(self) -> int:
        with self._cond:
            return len(self._items)

    @property
    def closed(self) -> bool:
        with self._cond:
            return self._closed

    @property
    def pending_dropped(self) -> int:
        """Buffers dropped since the last one that was stored."""
        with self._cond:
            return self._dropped

    def put(self, buffer: bytes) -> bool:
        """Store a buffer; return False if it was dropped because the queue is full."""
        with self._cond:
            if self._closed:
                return False
            if len(self._items) >= self._capacity:
                self._dropped += 1
                return False
            self._items.append((buffer, self._dropped))
            self._dropped = 0
            self._cond.notify()
            return True

    def get(self, timeout: float | None = None) -> tuple[bytes, int] | None:
        """Take the oldest buffer and its dropped count.

        Returns None on timeout or once the queue is closed, even if buffers
        are still waiting.
        """
        with self._cond:
            ready = self._cond.wait_for(
                lambda: self._closed or bool(self._items), timeout
            )
            if not ready or self._closed:
                return None
            return self._items.popleft()

    def close(self) -> None:
        """Wake every waiting consumer; later gets return None."""
        with self._cond:
            self._closed = True
            self._cond.notify_all()

    def reset(self) -> None:
        """Empty the queue, clear the dropped count and reopen it."""
        with self._cond:
            self._items.clear()
            self._dropped = 0
            self._closed = False


class StreamWorker:
    """Reads bulk buffers from the device and hands processed blocks to a callback.

    ``process(raw, dropped_buffers)`` turns a raw buffer into a
    :class:`SampleBlock`; ``callback(block)`` returns a true value to stop.
    """

    READ_TIMEOUT = 0.5

    def __init__(
        self,
        handle: UsbHandle,
        buffer_size: int,
        process: Callable[[bytes, int], SampleBlock],
        callback: Callable[[SampleBlock], object],
    ) -> None:
        if buffer_size < 1:
            raise ValueError(f"buffer size must be positive, got {buffer_size}")
        self._handle = handle
        self._buffer_size = buffer_size
        self._process = process
        self._callback = callback
        self._queue = SampleQueue(RAW_BUFFER_COUNT)
        self._streaming = threading.Event()
        self._stop_requested = threading.Event()
        self._threads: list[threading.Thread] = []
        self._error: BaseException | None = None

    @property
    def error(self) -> BaseException | None:
        """The exception that ended the last run, if any."""
        return self._error

    def is_running(self) -> bool:
        """True while streaming and no stop has been requested."""
        return self._streaming.is_set() and not self._stop_requested.is_set()

    def start(self) -> None:
        """Start the reader and consumer threads."""
        if self._streaming.is_set() or self._stop_requested.is_set():
            raise AirspyHFError("streaming is already active")
        self._join_threads()
        self._error = None
        self._queue.reset()
        self._streaming.set()
        self._threads = [
            threading.Thread(target=self._consume, name="hfplus-consumer", daemon=True),
            threading.Thread(target=self._transfer, name="hfplus-transfer", daemon=True),
        ]
        for thread in self._threads:
            thread.start()

    def stop(self) -> None:
        """Stop streaming and wait for the threads to finish."""
        self._stop_requested.set()
        self._streaming.clear()
        self._queue.close()
        self._join_threads()
        self._stop_requested.clear()

    def _join_threads(self) -> None:
        current = threading.current_thread()
        for thread in self._threads:
            if thread is not current:
                thread.join()
        self._threads = [t for t in self._threads if t is current]

    def _finish(self, error: BaseException | None = None) -> None:
        if error is not None and self._error is None:
            self._error = error
        self._streaming.clear()
        self._queue.close()

    def _transfer(self) -> None:
        endpoint = USB_ENDPOINT_DIR_IN | ENDPOINT_IN
        error: BaseException | None = None
        try:
            while self.is_running():
                try:
                    data = self._handle.read_bulk(
                        endpoint, self._buffer_size, self.READ_TIMEOUT
                    )
                except TimeoutError:
                    continue
                if not self.is_running():
                    break
                if len(data) != self._buffer_size:
                    break
                self._queue.put(bytes(data))
        except AirspyHFError as exc:
            error = exc
        finally:
            self._finish(error)

    def _consume(self) -> None:
        error: BaseException | None = None
        try:
            while self.is_running():
                item = self._queue.get(self.READ_TIMEOUT)
                if item is None:
                    continue
                raw, dropped = item
                block = self._process(raw, dropped)
                if self._callback(block):
                    break
        except Exception as exc:
            error = exc
        finally:
            self._finish(error)