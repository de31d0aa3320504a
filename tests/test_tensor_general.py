from typing import Callable, Tuple

import numpy as np
import pytest

import stridegrad
from stridegrad import ExecutionContext, Tensor, TensorBackend, UnsupportedOperation, tensor_from_storage
from stridegrad.fast_ops import PARALLEL_THRESHOLD, FastOps

# Output sizes on either side of the parallel threshold.
BELOW = (63, 65)
ABOVE = (17, 241)

UNARY: Tuple[Tuple[str, Callable[[Tensor], Tensor]], ...] = (
    ("neg", lambda t: -t),
    ("exp", lambda t: t.exp()),
    ("sigmoid", lambda t: t.sigmoid()),
    ("relu", lambda t: t.relu()),
    ("log", lambda t: (t + 10.0).log()),
    ("inv", lambda t: (t + 10.0).inv()),
)

BINARY: Tuple[Tuple[str, Callable[[Tensor, Tensor], Tensor]], ...] = (
    ("add", lambda a, b: a + b),
    ("mul", lambda a, b: a * b),
    ("lt", lambda a, b: a < b),
    ("eq", lambda a, b: a == b),
    ("is_close", lambda a, b: a.is_close(b)),
)


def make(values: np.ndarray, backend: TensorBackend) -> Tensor:
    return tensor_from_storage(values.ravel().copy(), values.shape, backend=backend)


def data(shape: Tuple[int, ...], seed: int = 0) -> np.ndarray:
    rng = np.random.default_rng(seed)
    return rng.uniform(-3.0, 3.0, size=shape)


def test_threshold_sizes() -> None:
    assert BELOW[0] * BELOW[1] == PARALLEL_THRESHOLD - 1
    assert ABOVE[0] * ABOVE[1] == PARALLEL_THRESHOLD + 1


@pytest.mark.parametrize("fn", UNARY, ids=[f[0] for f in UNARY])
@pytest.mark.parametrize("shape", [BELOW, ABOVE], ids=["below", "above"])
def test_map_parity(fn, shape, fast_backend: TensorBackend) -> None:
    _, f = fn
    values = data(shape)
    expected = f(make(values, stridegrad.SimpleBackend)).to_numpy()
    got = f(make(values, fast_backend)).to_numpy()
    np.testing.assert_allclose(got, expected, rtol=1e-12)


@pytest.mark.parametrize("fn", BINARY, ids=[f[0] for f in BINARY])
@pytest.mark.parametrize("shape", [BELOW, ABOVE], ids=["below", "above"])
def test_zip_broadcast_parity(fn, shape, fast_backend: TensorBackend) -> None:
    _, f = fn
    a = data(shape, seed=1)
    b = data(shape[1:], seed=2)
    expected = f(make(a, stridegrad.SimpleBackend), make(b, stridegrad.SimpleBackend))
    got = f(make(a, fast_backend), make(b, fast_backend))
    assert got.shape == shape
    np.testing.assert_allclose(got.to_numpy(), expected.to_numpy(), rtol=1e-12)


def test_map_on_permuted_input(fast_backend: TensorBackend) -> None:
    values = data((241, 17))
    expected = make(values, stridegrad.SimpleBackend).permute(1, 0).exp()
    got = make(values, fast_backend).permute(1, 0).exp()
    np.testing.assert_allclose(got.to_numpy(), expected.to_numpy(), rtol=1e-12)
    np.testing.assert_allclose(got.to_numpy(), np.exp(values.T), rtol=1e-12)


@pytest.mark.parametrize("dim", [0, 1])
def test_reduce_parity_on_permuted_input(dim: int, fast_backend: TensorBackend) -> None:
    values = data((PARALLEL_THRESHOLD + 1, 3))
    simple = make(values, stridegrad.SimpleBackend).permute(1, 0)
    fast = make(values, fast_backend).permute(1, 0)
    assert fast.shape == (3, PARALLEL_THRESHOLD + 1)

    for reduce in (lambda t: t.sum(dim), lambda t: t.all(dim), lambda t: t.mean(dim)):
        expected = reduce(simple).to_numpy()
        got = reduce(fast).to_numpy()
        np.testing.assert_allclose(got, expected, rtol=1e-12)
    np.testing.assert_allclose(
        fast.sum(dim).to_numpy(), values.T.sum(axis=dim, keepdims=True), rtol=1e-9, atol=1e-9
    )


def test_matmul_parity(fast_backend: TensorBackend) -> None:
    a = data((17, 5), seed=3)
    b = data((5, 241), seed=4)
    expected = make(a, stridegrad.SimpleBackend) @ make(b, stridegrad.SimpleBackend)
    got = make(a, fast_backend) @ make(b, fast_backend)
    assert got.shape == ABOVE
    np.testing.assert_allclose(got.to_numpy(), expected.to_numpy(), rtol=1e-12)
    np.testing.assert_allclose(got.to_numpy(), a @ b, rtol=1e-9, atol=1e-9)


def test_batched_matmul_parity(fast_backend: TensorBackend) -> None:
    a = data((3, 40, 6), seed=5)
    b = data((6, 50), seed=6)
    got = make(a, fast_backend) @ make(b, fast_backend)
    assert got.shape == (3, 40, 50)
    np.testing.assert_allclose(got.to_numpy(), a @ b, rtol=1e-9, atol=1e-9)


def test_pool_only_above_threshold(context: ExecutionContext) -> None:
    backend = context.fast_backend
    make(data(BELOW), backend).exp()
    assert context._pool is None

    make(data(ABOVE), backend).exp()
    assert context._pool is not None
    assert context._pool.alive


def test_grad_parity_above_threshold(fast_backend: TensorBackend) -> None:
    a_vals = data(ABOVE, seed=7)
    b_vals = data(ABOVE[1:], seed=8)
    grads = []
    for backend in (stridegrad.SimpleBackend, fast_backend):
        a = make(a_vals, backend)
        b = make(b_vals, backend)
        (a * b).sigmoid().sum().backward()
        assert a.grad is not None and b.grad is not None
        grads.append((a.grad.to_numpy(), b.grad.to_numpy()))
    np.testing.assert_allclose(grads[1][0], grads[0][0], rtol=1e-12)
    np.testing.assert_allclose(grads[1][1], grads[0][1], rtol=1e-9, atol=1e-12)


def test_single_threaded_context_matches() -> None:
    values = data(ABOVE)
    with ExecutionContext(num_workers=4, parallel=False, gpu=False) as ctx:
        got = make(values, ctx.fast_backend).relu().sum(1)
        assert ctx._pool is None
    expected = make(values, stridegrad.SimpleBackend).relu().sum(1)
    np.testing.assert_allclose(got.to_numpy(), expected.to_numpy(), rtol=1e-12)


def test_unknown_function_is_rejected(context: ExecutionContext) -> None:
    ops = FastOps(context)
    with pytest.raises(UnsupportedOperation):
        ops.map(lambda x: x * 2.0)
    with pytest.raises(UnsupportedOperation):
        ops.zip(lambda x, y: x - y)
    with pytest.raises(UnsupportedOperation):
        ops.reduce(min)


def test_strided_storage_runs_on_pool(context: ExecutionContext) -> None:
    buffer = data((2 * (PARALLEL_THRESHOLD + 1),), seed=9)
    storage = buffer[::2]
    t = tensor_from_storage(storage, ABOVE, backend=context.fast_backend)
    out = t.exp()
    assert context._pool is not None
    np.testing.assert_allclose(out.to_numpy(), np.exp(storage).reshape(ABOVE), rtol=1e-12)
    # Inputs are read, never written.
    np.testing.assert_array_equal(buffer[::2], storage)
