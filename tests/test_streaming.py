import struct
import threading
import time

import numpy as np
import pytest

from hfplus.dsp import convert_samples
from hfplus.protocol import AirspyHFError
from hfplus.streaming import SampleBlock, SampleQueue, StreamWorker
from hfplus.transport import UsbHandle

BUFFER_SIZE = 8


class FakeHandle(UsbHandle):
    def __init__(self, buffers=(), error=None):
        self._buffers = list(buffers)
        self._error = error
        self._lock = threading.Lock()
        self.endpoints = []

    def control_in(self, request, value, index, length):
        return bytes(length)

    def control_out(self, request, value, index, data):
        return len(data)

    def read_bulk(self, endpoint, length, timeout):
        with self._lock:
            self.endpoints.append(endpoint)
            if self._buffers:
                return self._buffers.pop(0)
        if self._error is not None:
            raise self._error
        time.sleep(0.01)
        raise TimeoutError

    def clear_halt(self, endpoint):
        pass

    def get_string_descriptor(self, index):
        return ""

    def set_configuration(self, configuration):
        pass

    def claim_interface(self, interface):
        pass

    def set_alt_setting(self, interface, alt_setting):
        pass

    def close(self):
        pass


def _process(raw, dropped):
    samples = convert_samples(raw, 1.0)
    return SampleBlock(samples, dropped * samples.shape[0])


def _wait_until(predicate, timeout=5.0):
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.005)
    return predicate()


def _buffer(*values):
    return struct.pack(f"<{len(values)}h", *values)


def test_queue_is_fifo():
    queue = SampleQueue(4)
    assert queue.put(b"a")
    assert queue.put(b"b")
    assert queue.get(0) == (b"a", 0)
    assert queue.get(0) == (b"b", 0)
    assert queue.get(0.01) is None


def test_queue_counts_dropped_buffers():
    queue = SampleQueue(2)
    assert queue.put(b"a") and queue.put(b"b")
    assert not queue.put(b"c")
    assert not queue.put(b"d")
    assert queue.pending_dropped == 2
    assert queue.get(0) == (b"a", 0)
    assert queue.put(b"e")
    assert queue.pending_dropped == 0
    assert queue.get(0) == (b"b", 0)
    assert queue.get(0) == (b"e", 2)


def test_queue_close_and_reset():
    queue = SampleQueue(2)
    queue.put(b"a")
    queue.close()
    assert queue.closed
    assert queue.get(0) is None
    assert not queue.put(b"b")
    queue.reset()
    assert not queue.closed
    assert len(queue) == 0
    assert queue.put(b"c")
    assert queue.get(0) == (b"c", 0)


def test_queue_close_wakes_waiter():
    queue = SampleQueue(1)
    results = []
    waiter = threading.Thread(target=lambda: results.append(queue.get(None)))
    waiter.start()
    time.sleep(0.02)
    queue.close()
    waiter.join(2)
    assert not waiter.is_alive()
    assert results == [None]
    assert queue.closed is True
    assert queue.get(0) is None


def test_queue_rejects_zero_capacity():
    with pytest.raises(ValueError):
        SampleQueue(0)


def test_worker_delivers_blocks_in_order():
    buffers = [_buffer(i, -i, 2 * i, 3 * i) for i in range(1, 4)]
    handle = FakeHandle(buffers)
    received = []
    done = threading.Event()

    def callback(block):
        received.append(block)
        if len(received) == 3:
            done.set()
        return 0

    worker = StreamWorker(handle, BUFFER_SIZE, _process, callback)
    worker.start()
    assert done.wait(5)
    worker.stop()
    assert not worker.is_running()
    expected = [convert_samples(b, 1.0) for b in buffers]
    assert all(np.array_equal(r.samples, e) for r, e in zip(received, expected))
    assert [r.sample_count for r in received] == [2, 2, 2]
    assert set(handle.endpoints) == {0x81}


def test_callback_returning_true_stops_stream():
    handle = FakeHandle([_buffer(1, 2, 3, 4)] * 5)
    received = []
    worker = StreamWorker(handle, BUFFER_SIZE, _process, lambda b: received.append(b) or 1)
    worker.start()
    assert _wait_until(lambda: not worker.is_running())
    worker.stop()
    assert len(received) == 1


def test_short_read_ends_stream():
    handle = FakeHandle([b"\x00" * 4])
    received = []
    worker = StreamWorker(handle, BUFFER_SIZE, _process, received.append)
    worker.start()
    assert _wait_until(lambda: not worker.is_running())
    worker.stop()
    assert received == []


def test_read_error_ends_stream_and_is_recorded():
    failure = AirspyHFError("bus gone")
    worker = StreamWorker(FakeHandle(error=failure), BUFFER_SIZE, _process, lambda b: 0)
    worker.start()
    assert _wait_until(lambda: not worker.is_running())
    worker.stop()
    assert worker.error is failure


def test_callback_exception_is_recorded():
    def callback(block):
        raise RuntimeError("boom")

    worker = StreamWorker(FakeHandle([_buffer(0, 0, 0, 0)]), BUFFER_SIZE, _process, callback)
    worker.start()
    assert _wait_until(lambda: not worker.is_running())
    worker.stop()
    assert worker.is_running() is False
    assert isinstance(worker.error, RuntimeError)
    assert str(worker.error) == "boom"


def test_start_twice_raises_and_restart_after_stop():
    worker = StreamWorker(FakeHandle(), BUFFER_SIZE, _process, lambda b: 0)
    worker.start()
    assert worker.is_running()
    with pytest.raises(AirspyHFError):
        worker.start()
    worker.stop()
    assert not worker.is_running()
    worker.start()
    assert worker.is_running()
    worker.stop()
    assert not worker.is_running()


def test_worker_rejects_bad_buffer_size():
    with pytest.raises(ValueError):
        StreamWorker(FakeHandle(), 0, _process, lambda b: 0)