"""Execution resources shared by the parallel and GPU backends.

An `ExecutionContext` owns the worker pool and the GPU device (with its kernel
cache). Both are built lazily on first use and released by `shutdown()`. When
either cannot be acquired the failure is logged once and the backend falls
back to single-threaded execution or to the naive kernels.
"""

from __future__ import annotations

import logging
import os
from typing import TYPE_CHECKING, Any, Optional

from .worker_pool import WorkerPool

if TYPE_CHECKING:
    from .cuda_ops import GpuDevice
    from .tensor_ops import TensorBackend

logger = logging.getLogger(__name__)

ENV_DISABLE_PARALLEL = "STRIDEGRAD_DISABLE_PARALLEL"
ENV_NUM_WORKERS = "STRIDEGRAD_NUM_WORKERS"
ENV_DISABLE_GPU = "STRIDEGRAD_DISABLE_GPU"


def _default_workers() -> int:
    value = os.getenv(ENV_NUM_WORKERS)
    if value:
        return int(value)
    return os.cpu_count() or 1


class ExecutionContext:
    """
    Owner of the worker pool and the GPU device.

    Args:
        num_workers: worker thread count, defaults to `STRIDEGRAD_NUM_WORKERS`
            or the CPU count.
        parallel: enable the worker pool, defaults to on unless
            `STRIDEGRAD_DISABLE_PARALLEL` is set.
        gpu: enable the GPU device, defaults to on unless
            `STRIDEGRAD_DISABLE_GPU` is set.
    """

    def __init__(
        self,
        num_workers: Optional[int] = None,
        parallel: Optional[bool] = None,
        gpu: Optional[bool] = None,
    ):
        self.num_workers = num_workers if num_workers is not None else _default_workers()
        self.parallel = parallel if parallel is not None else not os.getenv(ENV_DISABLE_PARALLEL)
        self.use_gpu = gpu if gpu is not None else not os.getenv(ENV_DISABLE_GPU)
        self._pool: Optional[WorkerPool] = None
        self._pool_failed = False
        self._gpu: Optional[GpuDevice] = None
        self._gpu_failed = False
        self._fast_backend: Optional[TensorBackend] = None
        self._cuda_backend: Optional[TensorBackend] = None

    @property
    def pool(self) -> Optional[WorkerPool]:
        "The worker pool, or None when parallel execution is off or unavailable."
        if self._pool is not None:
            return self._pool
        if not self.parallel or self._pool_failed or self.num_workers < 2:
            return None
        from .fast_ops import KERNELS

        try:
            self._pool = WorkerPool(self.num_workers, KERNELS)
        except (RuntimeError, ValueError, OSError) as e:
            logger.warning("Worker pool unavailable, running single-threaded: %s", e)
            self._pool_failed = True
        return self._pool

    @property
    def gpu(self) -> Optional[GpuDevice]:
        "The GPU device, or None when the GPU is off or unavailable."
        if self._gpu is not None:
            return self._gpu
        if not self.use_gpu or self._gpu_failed:
            return None
        try:
            from .cuda_ops import GpuDevice

            self._gpu = GpuDevice()
        except Exception as e:
            # numba raises several unrelated types when no driver is present.
            logger.warning("GPU unavailable, using the naive backend: %s", e)
            self._gpu_failed = True
        return self._gpu

    @property
    def fast_backend(self) -> TensorBackend:
        "Tensor backend running the worker-parallel kernels of this context."
        if self._fast_backend is None:
            from .fast_ops import FastOps
            from .tensor_ops import TensorBackend

            self._fast_backend = TensorBackend(FastOps(self))
        return self._fast_backend

    @property
    def cuda_backend(self) -> TensorBackend:
        "Tensor backend running the GPU kernels of this context."
        if self._cuda_backend is None:
            from .cuda_ops import CudaOps
            from .tensor_ops import TensorBackend

            self._cuda_backend = TensorBackend(CudaOps(self))
        return self._cuda_backend

    def shutdown(self) -> None:
        "Stop the worker threads and release the device. Resources rebuild on next use."
        if self._pool is not None:
            self._pool.terminate()
            self._pool = None
        if self._gpu is not None:
            self._gpu.close()
            self._gpu = None
        self._pool_failed = False
        self._gpu_failed = False

    def __enter__(self) -> ExecutionContext:
        return self

    def __exit__(self, *exc: Any) -> None:
        self.shutdown()

    def __repr__(self) -> str:
        return (
            f"ExecutionContext(num_workers={self.num_workers}, "
            f"parallel={self.parallel}, gpu={self.use_gpu})"
        )
