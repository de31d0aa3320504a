import threading
from typing import Iterator, List

import numpy as np
import pytest

from stridegrad import WorkerPool


def fill(start: int, end: int, out: np.ndarray, value: float) -> None:
    for i in range(start, end):
        out[i] = value + i


def record(start: int, end: int, seen: List[int], lock: threading.Lock) -> None:
    with lock:
        seen.extend(range(start, end))


def explode(start: int, end: int) -> None:
    raise ZeroDivisionError(f"chunk {start}:{end}")


KERNELS = {"fill": fill, "record": record, "explode": explode}


@pytest.fixture
def pool() -> Iterator[WorkerPool]:
    p = WorkerPool(3, KERNELS)
    yield p
    p.terminate()


def test_parallel_for_fills_every_slot(pool: WorkerPool) -> None:
    out = np.zeros(1000)
    pool.parallel_for(out.size, "fill", (out, 0.5))
    np.testing.assert_array_equal(out, np.arange(1000) + 0.5)


def test_chunks_cover_range_once(pool: WorkerPool) -> None:
    seen: List[int] = []
    pool.parallel_for(10, "record", (seen, threading.Lock()))
    assert sorted(seen) == list(range(10))


def test_size_smaller_than_worker_count(pool: WorkerPool) -> None:
    out = np.zeros(2)
    pool.parallel_for(2, "fill", (out, 1.0))
    np.testing.assert_array_equal(out, [1.0, 2.0])

    seen: List[int] = []
    pool.parallel_for(0, "record", (seen, threading.Lock()))
    assert seen == []


def test_pool_is_reused(pool: WorkerPool) -> None:
    threads = set(pool._threads)
    for value in range(5):
        out = np.zeros(64)
        pool.parallel_for(out.size, "fill", (out, float(value)))
        assert out[63] == 63.0 + value
    assert set(pool._threads) == threads
    assert all(t.is_alive() for t in threads)


def test_worker_error_is_reraised(pool: WorkerPool) -> None:
    with pytest.raises(ZeroDivisionError):
        pool.parallel_for(9, "explode", ())
    # The pool stays usable after a failed call.
    out = np.zeros(9)
    pool.parallel_for(out.size, "fill", (out, 0.0))
    np.testing.assert_array_equal(out, np.arange(9.0))


def test_unknown_kernel_is_reraised(pool: WorkerPool) -> None:
    with pytest.raises(KeyError):
        pool.parallel_for(6, "missing", ())


def test_terminate() -> None:
    p = WorkerPool(2, KERNELS)
    assert p.alive
    p.terminate()
    assert not p.alive
    assert not any(t.is_alive() for t in p._threads)
    with pytest.raises(RuntimeError):
        p.parallel_for(4, "fill", (np.zeros(4), 0.0))
    # A second terminate is a no-op.
    p.terminate()


def test_needs_a_worker() -> None:
    with pytest.raises(ValueError):
        WorkerPool(0, KERNELS)
