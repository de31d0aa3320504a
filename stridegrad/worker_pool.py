"""Persistent fork-join thread pool for the parallel kernels.

Workers never receive code. A task names a kernel by ``(kind, op)`` and the
worker looks the compiled kernel up in the table it was built with, then runs
it over its slice of the output ordinal range. The kernels are numba
``nogil`` functions, so the threads execute truly in parallel against the
caller's numpy buffers.
"""

import logging
import math
import queue
import threading
from typing import Any, Callable, Hashable, List, Mapping, Optional, Sequence, Tuple

import numpy as np

logger = logging.getLogger(__name__)

Task = Tuple[Hashable, int, int, Sequence[Any]]


class WorkerPool:
    """
    Fixed set of live worker threads sharing one barrier buffer.

    Args:
        num_workers: number of threads to start.
        kernels: table from ``(kind, op)`` key to a chunk kernel with signature
            ``kernel(start, end, *args)``.
    """

    def __init__(
        self, num_workers: int, kernels: Mapping[Hashable, Callable[..., None]]
    ) -> None:
        if num_workers < 1:
            raise ValueError(f"WorkerPool needs at least one worker, got {num_workers}")
        self.num_workers = num_workers
        self._kernels = kernels
        # One flag per worker: 0 while its chunk is running, 1 once done.
        self._sync = np.ones(num_workers, dtype=np.int32)
        self._done = threading.Condition()
        self._call_lock = threading.Lock()
        self._errors: List[BaseException] = []
        self._queues: List["queue.SimpleQueue[Optional[Task]]"] = [
            queue.SimpleQueue() for _ in range(num_workers)
        ]
        self._threads = [
            threading.Thread(
                target=self._run,
                args=(worker_id,),
                name=f"stridegrad-worker-{worker_id}",
                daemon=True,
            )
            for worker_id in range(num_workers)
        ]
        for thread in self._threads:
            thread.start()
        self._alive = True
        logger.debug("Started worker pool with %d threads", num_workers)

    @property
    def alive(self) -> bool:
        return self._alive

    def _run(self, worker_id: int) -> None:
        tasks = self._queues[worker_id]
        while True:
            task = tasks.get()
            if task is None:
                return
            key, start, end, args = task
            try:
                self._kernels[key](start, end, *args)
            except Exception as e:
                with self._done:
                    self._errors.append(e)
            finally:
                with self._done:
                    self._sync[worker_id] = 1
                    self._done.notify_all()

    def parallel_for(self, size: int, key: Hashable, args: Sequence[Any]) -> None:
        """
        Split ``[0, size)`` into one contiguous chunk per worker, run kernel
        ``key`` on every chunk and block until all workers are done.

        Raises:
            RuntimeError: if the pool has been terminated.
            Exception: the first error raised by any worker.
        """
        if not self._alive:
            raise RuntimeError("WorkerPool has been terminated")
        chunk = math.ceil(size / self.num_workers)
        with self._call_lock:
            with self._done:
                self._errors.clear()
                self._sync[:] = 0
            for worker_id in range(self.num_workers):
                start = worker_id * chunk
                end = min(start + chunk, size)
                if start >= size:
                    with self._done:
                        self._sync[worker_id] = 1
                    continue
                self._queues[worker_id].put((key, start, end, args))

            with self._done:
                self._done.wait_for(lambda: bool(self._sync.all()))
                errors = list(self._errors)
            if errors:
                raise errors[0]

    def terminate(self) -> None:
        "Stop and join every worker thread."
        if not self._alive:
            return
        self._alive = False
        for tasks in self._queues:
            tasks.put(None)
        for thread in self._threads:
            thread.join()
        logger.debug("Stopped worker pool with %d threads", self.num_workers)
