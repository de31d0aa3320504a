import logging

import numpy as np
import pytest

import stridegrad
from stridegrad import ExecutionContext, tensor
from stridegrad import context as context_module
from stridegrad.context import ENV_DISABLE_GPU, ENV_DISABLE_PARALLEL, ENV_NUM_WORKERS


def test_env_configuration(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv(ENV_NUM_WORKERS, "3")
    monkeypatch.setenv(ENV_DISABLE_PARALLEL, "1")
    monkeypatch.setenv(ENV_DISABLE_GPU, "1")
    ctx = ExecutionContext()
    assert ctx.num_workers == 3
    assert not ctx.parallel
    assert not ctx.use_gpu
    assert ctx.pool is None
    assert ctx.gpu is None
    assert repr(ctx) == "ExecutionContext(num_workers=3, parallel=False, gpu=False)"


def test_arguments_override_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv(ENV_DISABLE_PARALLEL, "1")
    ctx = ExecutionContext(num_workers=2, parallel=True, gpu=False)
    assert ctx.parallel
    pool = ctx.pool
    assert pool is not None and pool.num_workers == 2
    ctx.shutdown()


def test_defaults_without_env(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.delenv(ENV_NUM_WORKERS, raising=False)
    monkeypatch.delenv(ENV_DISABLE_PARALLEL, raising=False)
    monkeypatch.delenv(ENV_DISABLE_GPU, raising=False)
    ctx = ExecutionContext()
    assert ctx.num_workers >= 1
    assert ctx.parallel
    assert ctx.use_gpu


def test_single_worker_has_no_pool() -> None:
    ctx = ExecutionContext(num_workers=1, parallel=True, gpu=False)
    assert ctx.pool is None


def test_pool_is_lazy_and_shared(context: ExecutionContext) -> None:
    assert context._pool is None
    pool = context.pool
    assert pool is not None
    assert context.pool is pool
    assert context.fast_backend is context.fast_backend


def test_shutdown_and_rebuild(context: ExecutionContext) -> None:
    pool = context.pool
    assert pool is not None
    context.shutdown()
    assert not pool.alive
    assert context._pool is None

    rebuilt = context.pool
    assert rebuilt is not None and rebuilt is not pool
    assert rebuilt.alive


def test_context_manager() -> None:
    with ExecutionContext(num_workers=2, parallel=True, gpu=False) as ctx:
        pool = ctx.pool
        assert pool is not None
    assert not pool.alive


def test_pool_failure_degrades(monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture) -> None:
    calls = []

    def broken(*args: object) -> None:
        calls.append(args)
        raise RuntimeError("can't start new thread")

    monkeypatch.setattr(context_module, "WorkerPool", broken)
    ctx = ExecutionContext(num_workers=4, parallel=True, gpu=False)
    with caplog.at_level(logging.WARNING, logger="stridegrad.context"):
        assert ctx.pool is None
        assert ctx.pool is None
    assert len(calls) == 1
    assert "Worker pool unavailable" in caplog.text

    # Kernels still run, single-threaded.
    t = tensor([float(i) for i in range(5000)], backend=ctx.fast_backend)
    assert (t + 1.0).sum().item() == sum(range(1, 5001))
    assert ctx._pool is None


def test_gpu_failure_degrades(monkeypatch: pytest.MonkeyPatch, caplog: pytest.LogCaptureFixture) -> None:
    class NoDevice:
        def __init__(self) -> None:
            raise RuntimeError("No CUDA device available")

    monkeypatch.setattr(stridegrad.cuda_ops, "GpuDevice", NoDevice)
    ctx = ExecutionContext(num_workers=1, gpu=True)
    with caplog.at_level(logging.WARNING, logger="stridegrad.context"):
        assert ctx.gpu is None
    assert "GPU unavailable" in caplog.text
    assert ctx._gpu_failed


def test_cuda_backend_falls_back_without_gpu() -> None:
    ctx = ExecutionContext(num_workers=1, parallel=False, gpu=False)
    backend = ctx.cuda_backend
    assert backend.cuda
    a = tensor([[1.0, -2.0, 3.0], [0.5, 4.0, -1.0]], backend=backend)
    b = tensor([[2.0], [1.0], [0.0]], backend=backend)

    out = ((a.relu() + 1.0) * a).sum(1)
    np.testing.assert_allclose(out.to_numpy(), [[12.0], [19.75]])
    np.testing.assert_allclose((a @ b).to_numpy(), [[0.0], [5.0]])

    a.sum().backward()
    assert a.grad is not None
    np.testing.assert_allclose(a.grad.to_numpy(), np.ones((2, 3)))
