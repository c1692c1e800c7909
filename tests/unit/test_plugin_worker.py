"""Tests for the per-plugin home worker."""

import threading
import time
from concurrent.futures import CancelledError

import pytest

from warden.core.worker import (
    CallbackQueueFullError,
    PluginWorker,
    WorkerError,
    WorkerStoppedError,
    marshal,
)


@pytest.fixture
def worker():
    w = PluginWorker("test-plugin", max_queue=8)
    w.start()
    yield w
    w.stop()


def test_call_runs_on_worker_thread(worker):
    caller = threading.get_ident()
    ident = worker.call(threading.get_ident, timeout=5)

    assert ident != caller
    assert worker.call(lambda: threading.current_thread().name, timeout=5) == "warden-worker-test-plugin"


def test_submit_returns_future(worker):
    future = worker.submit(lambda a, b=0: a + b, 2, b=3)
    assert future.result(timeout=5) == 5


def test_callbacks_run_in_enqueue_order(worker):
    results = []
    futures = [worker.submit(results.append, i) for i in range(8)]
    for future in futures:
        future.result(timeout=5)

    assert results == list(range(8))


def test_failing_callback_does_not_kill_worker(worker):
    def boom():
        raise RuntimeError("plugin bug")

    future = worker.submit(boom)
    with pytest.raises(RuntimeError, match="plugin bug"):
        future.result(timeout=5)

    assert worker.call(lambda: "still alive", timeout=5) == "still alive"


def test_full_queue_raises_without_blocking():
    worker = PluginWorker("busy", max_queue=2)
    worker.start()
    gate = threading.Event()
    started = threading.Event()

    def block():
        started.set()
        gate.wait(5)

    try:
        worker.submit(block)
        assert started.wait(5)
        worker.submit(lambda: None)
        worker.submit(lambda: None)

        with pytest.raises(CallbackQueueFullError) as exc_info:
            worker.submit(lambda: None)
        assert exc_info.value.capacity == 2
        assert isinstance(exc_info.value, WorkerError)
    finally:
        gate.set()
        worker.stop()


def test_submit_before_start_raises():
    worker = PluginWorker("idle")
    with pytest.raises(WorkerStoppedError):
        worker.submit(lambda: None)


def test_stop_discards_pending():
    worker = PluginWorker("stopping", max_queue=4)
    worker.start()
    gate = threading.Event()
    started = threading.Event()
    ran = []

    def block():
        started.set()
        gate.wait(5)

    worker.submit(block)
    assert started.wait(5)
    pending = [worker.submit(ran.append, i) for i in range(3)]

    stopper = threading.Thread(target=worker.stop)
    stopper.start()
    # stop() refuses new work before it waits for the running callback
    for _ in range(100):
        if not worker.is_running:
            break
        threading.Event().wait(0.01)
    assert worker.is_running is False

    gate.set()
    stopper.join(5)

    assert ran == []
    for future in pending:
        assert future.cancelled()
        with pytest.raises(CancelledError):
            future.result()

    with pytest.raises(WorkerStoppedError):
        worker.submit(lambda: None)


def test_stop_without_discard_drains_queue():
    worker = PluginWorker("draining", max_queue=4)
    worker.start()
    ran = []
    gate = threading.Event()
    worker.submit(gate.wait, 5)
    for i in range(3):
        worker.submit(ran.append, i)

    gate.set()
    assert worker.stop(discard=False, timeout=5) == 0
    assert ran == [0, 1, 2]


def test_stop_from_worker_thread_with_full_queue_returns():
    worker = PluginWorker("self-stop", max_queue=1)
    worker.start()
    ran = []
    returned = threading.Event()
    queued = threading.Event()

    def stop_self():
        queued.wait(5)
        worker.stop(discard=False)
        returned.set()

    worker.submit(stop_self)
    worker.submit(ran.append, "queued")
    queued.set()

    assert returned.wait(5)
    # The queued callback still runs, then the thread exits
    deadline = time.monotonic() + 5
    while ran != ["queued"] and time.monotonic() < deadline:
        time.sleep(0.01)
    assert ran == ["queued"]
    assert not worker.is_running


def test_restart_after_stop():
    worker = PluginWorker("restart")
    worker.start()
    worker.stop()
    worker.start()
    try:
        assert worker.call(lambda: 42, timeout=5) == 42
    finally:
        worker.stop()


def test_call_from_worker_thread_runs_inline(worker):
    def outer():
        return worker.call(lambda: "inner")

    assert worker.call(outer, timeout=5) == "inner"
    assert worker.in_worker_thread() is False


def test_marshal_wraps_callback(worker):
    seen = []

    def on_save(path):
        seen.append((path, threading.current_thread().name))
        return path

    handler = marshal(worker, on_save)
    assert handler.__name__ == "on_save"

    done = threading.Event()

    def fire():
        handler("/tmp/a.txt").result(timeout=5)
        done.set()

    threading.Thread(target=fire).start()
    assert done.wait(5)
    assert seen == [("/tmp/a.txt", "warden-worker-test-plugin")]


def test_many_producers_keep_per_producer_order():
    worker = PluginWorker("ordering", max_queue=10_000)
    worker.start()
    seen: list[tuple[int, int]] = []
    active = 0
    overlap = []

    def record(producer, seq):
        nonlocal active
        active += 1
        if active > 1:
            overlap.append((producer, seq))
        seen.append((producer, seq))
        active -= 1

    def produce(producer):
        for seq in range(200):
            worker.submit(record, producer, seq)

    threads = [threading.Thread(target=produce, args=(p,)) for p in range(5)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()
    worker.call(lambda: None, timeout=10)
    worker.stop()

    assert overlap == []
    assert len(seen) == 1000
    for producer in range(5):
        assert [seq for p, seq in seen if p == producer] == list(range(200))


def test_invalid_queue_size():
    with pytest.raises(ValueError):
        PluginWorker("bad", max_queue=0)


def test_context_manager():
    with PluginWorker("ctx") as worker:
        assert worker.is_running
    assert worker.is_running is False
