# type: ignore
"""numba.cuda kernels and the GPU tensor backend."""

import logging
from typing import Any, Callable, Dict, Optional, Tuple, TypeVar

import numba
import numpy as np
from numba import cuda
from numba.cuda import jit as _jit

from . import operators
from .operators import UnsupportedOperation
from .tensor_data import (
    MAX_DIMS,
    Shape,
    Storage,
    Strides,
    TensorData,
    broadcast_index,
    index_to_position,
    shape_broadcast,
    to_index,
)
from .tensor import Tensor
from .tensor_ops import (
    MapProto,
    SimpleOps,
    TensorOps,
    batched,
    batched_operands,
    reduce_shape,
)


logger = logging.getLogger(__name__)

FakeCUDAKernel = Any

Fn = TypeVar("Fn")


def device_jit(fn: Fn, **kwargs: Dict[str, Any]) -> Fn:
    "Compile `fn` as a CUDA device function callable from kernels."
    return _jit(device=True, **kwargs)(fn)  # type: ignore


def jit(fn: Callable, **kwargs: Dict[str, Any]) -> FakeCUDAKernel:
    "Compile `fn` as a launchable CUDA kernel."
    return _jit(**kwargs)(fn)  # type: ignore


to_index = device_jit(to_index)
index_to_position = device_jit(index_to_position)
broadcast_index = device_jit(broadcast_index)

THREADS_PER_BLOCK = 256
BLOCK_DIM = 16

# Closed registry of the operations this backend can compile, by name.
GPU_UNARY_OPS: Dict[str, Callable[[float], float]] = {
    "id": operators.id,
    "neg": operators.neg,
    "sigmoid": operators.sigmoid,
    "relu": operators.relu,
    "exp": operators.exp,
    "log": operators.log,
    "inv": operators.inv,
    "not_zero": operators.not_zero,
}

GPU_BINARY_OPS: Dict[str, Callable[[float, float], float]] = {
    "add": operators.add,
    "mul": operators.mul,
    "max": operators.max,
    "lt": operators.lt,
    "eq": operators.eq,
    "is_close": operators.is_close,
    "log_back": operators.log_back,
    "inv_back": operators.inv_back,
    "relu_back": operators.relu_back,
}

REDUCE_IDENTITY: Dict[str, float] = {
    "add": 0.0,
    "mul": 1.0,
    "max": -1.0e38,
}


def resolve_unary_op(fn: Callable[[float], float]) -> str:
    for name, op in GPU_UNARY_OPS.items():
        if op is fn:
            return name
    raise UnsupportedOperation(f"Unknown GPU unary op: {getattr(fn, '__name__', fn)}")


def resolve_binary_op(fn: Callable[[float, float], float]) -> str:
    for name, op in GPU_BINARY_OPS.items():
        if op is fn:
            return name
    raise UnsupportedOperation(f"Unknown GPU binary op: {getattr(fn, '__name__', fn)}")


class GpuDevice:
    """
    CUDA device handle plus a cache of compiled kernels.

    Kernels are keyed by template name and op name, so each (template, op)
    pair is compiled at most once for the lifetime of the device.

    Raises:
        RuntimeError: if no CUDA device is available.
    """

    def __init__(self) -> None:
        if not cuda.is_available():
            raise RuntimeError("No CUDA device available")
        self.device = cuda.get_current_device()
        self._kernels: Dict[Tuple[str, str], FakeCUDAKernel] = {}

    def kernel(self, template: str, op_name: str = "") -> FakeCUDAKernel:
        key = (template, op_name)
        kernel = self._kernels.get(key)
        if kernel is None:
            logger.debug("Building %s kernel for op %r", template, op_name)
            kernel = _TEMPLATES[template](op_name)
            self._kernels[key] = kernel
        return kernel

    @property
    def cached_kernels(self) -> int:
        return len(self._kernels)

    @staticmethod
    def upload(storage: Storage) -> Any:
        "Copy host storage to the device as float32."
        return cuda.to_device(np.ascontiguousarray(storage, dtype=np.float32))

    @staticmethod
    def metadata(data: TensorData) -> Tuple[Any, Any]:
        "Read-only device buffers holding the shape and strides of `data`."
        return cuda.to_device(data._shape), cuda.to_device(data._strides)

    @staticmethod
    def readback(device_storage: Any, out: TensorData) -> None:
        "Copy a float32 device result back into float64 host storage."
        out._storage[:] = device_storage.copy_to_host()

    def close(self) -> None:
        self._kernels.clear()
        cuda.close()


class CudaOps(TensorOps):
    """
    GPU backend.

    Only functions from `GPU_UNARY_OPS` / `GPU_BINARY_OPS` can be run. When the
    execution context has no device, every call is served by `SimpleOps`.
    """

    cuda = True

    def __init__(self, context: Any) -> None:
        self.context = context
        self._fallback = SimpleOps()

    def map(self, fn: Callable[[float], float]) -> MapProto:
        """See `tensor_ops.py`"""
        name = resolve_unary_op(fn)
        fallback = self._fallback.map(fn)

        def ret(a: Tensor, out: Optional[Tensor] = None) -> Tensor:
            gpu = self.context.gpu
            if gpu is None:
                return fallback(a, out)
            if out is None:
                out = a.zeros(a.shape)

            threadsperblock = THREADS_PER_BLOCK
            blockspergrid = (out.size + THREADS_PER_BLOCK - 1) // THREADS_PER_BLOCK
            out_dev = gpu.upload(out._tensor._storage)
            in_dev = gpu.upload(a._tensor._storage)
            if _aligned(out._tensor, a._tensor):
                f = gpu.kernel("map_aligned", name)
                f[blockspergrid, threadsperblock](out_dev, out.size, in_dev)
            else:
                f = gpu.kernel("map_broadcast", name)
                f[blockspergrid, threadsperblock](
                    out_dev,
                    *gpu.metadata(out._tensor),
                    out.size,
                    in_dev,
                    *gpu.metadata(a._tensor),
                )
            gpu.readback(out_dev, out._tensor)
            return out

        return ret

    def zip(self, fn: Callable[[float, float], float]) -> Callable[[Tensor, Tensor], Tensor]:
        """See `tensor_ops.py`"""
        name = resolve_binary_op(fn)
        fallback = self._fallback.zip(fn)

        def ret(a: Tensor, b: Tensor) -> Tensor:
            gpu = self.context.gpu
            if gpu is None:
                return fallback(a, b)
            c_shape = shape_broadcast(a.shape, b.shape)
            out = a.zeros(c_shape)
            threadsperblock = THREADS_PER_BLOCK
            blockspergrid = (out.size + (threadsperblock - 1)) // threadsperblock
            out_dev = gpu.upload(out._tensor._storage)
            a_dev = gpu.upload(a._tensor._storage)
            b_dev = gpu.upload(b._tensor._storage)
            if _aligned(out._tensor, a._tensor, b._tensor):
                f = gpu.kernel("zip_aligned", name)
                f[blockspergrid, threadsperblock](out_dev, out.size, a_dev, b_dev)
            else:
                f = gpu.kernel("zip_broadcast", name)
                f[blockspergrid, threadsperblock](  # type: ignore
                    out_dev,
                    *gpu.metadata(out._tensor),
                    out.size,
                    a_dev,
                    *gpu.metadata(a._tensor),
                    b_dev,
                    *gpu.metadata(b._tensor),
                )
            gpu.readback(out_dev, out._tensor)
            return out

        return ret

    def reduce(self, fn: Callable[[float, float], float]) -> Callable[[Tensor, int], Tensor]:
        """
        GPU reduce of one dimension.

        One block per output cell folds the reduced dimension with a
        shared-memory tree, starting every thread from the identity of `fn`.

        Args:
            fn: Binary reduction function, one of the keys of `REDUCE_IDENTITY`

        Returns:
            Reducer taking a tensor and the dimension to fold
        """
        name = resolve_binary_op(fn)
        if name not in REDUCE_IDENTITY:
            raise UnsupportedOperation(f"No reduce identity for GPU op: {name}")
        start = REDUCE_IDENTITY[name]
        fallback = self._fallback.reduce(fn)

        def ret(a: Tensor, dim: int) -> Tensor:
            gpu = self.context.gpu
            if gpu is None:
                return fallback(a, dim)
            out = a.zeros(reduce_shape(a.shape, dim))
            out_dev = gpu.upload(out._tensor._storage)
            a_dev = gpu.upload(a._tensor._storage)

            threadsperblock = THREADS_PER_BLOCK
            blockspergrid = out.size
            f = gpu.kernel("reduce", name)
            f[blockspergrid, threadsperblock](  # type: ignore
                out_dev,
                *gpu.metadata(out._tensor),
                out.size,
                a_dev,
                *gpu.metadata(a._tensor),
                dim,
                start,
            )
            gpu.readback(out_dev, out._tensor)
            return out

        return ret

    def matrix_multiply(self, a: Tensor, b: Tensor) -> Tensor:
        "Tiled batched matmul, see `FastOps.matrix_multiply` for the shape rules."
        gpu = self.context.gpu
        if gpu is None:
            return self._fallback.matrix_multiply(a, b)

        out_shape, a_data, b_data = batched_operands(a, b)
        out = a.zeros(out_shape)
        out_data = batched(out._tensor)

        # Grid is (column tiles, row tiles, batch).
        blockspergrid = (
            (out_data.shape[2] + (BLOCK_DIM - 1)) // BLOCK_DIM,
            (out_data.shape[1] + (BLOCK_DIM - 1)) // BLOCK_DIM,
            out_data.shape[0],
        )
        threadsperblock = (BLOCK_DIM, BLOCK_DIM, 1)

        out_dev = gpu.upload(out_data._storage)
        f = gpu.kernel("matmul")
        f[blockspergrid, threadsperblock](
            out_dev,
            *gpu.metadata(out_data),
            out.size,
            gpu.upload(a_data._storage),
            *gpu.metadata(a_data),
            gpu.upload(b_data._storage),
            *gpu.metadata(b_data),
        )
        gpu.readback(out_dev, out_data)
        return out


def _aligned(out: TensorData, *inputs: TensorData) -> bool:
    return all(t.shape == out.shape and t.strides == out.strides for t in inputs)



def tensor_map(
    fn: Callable[[float], float],
) -> Callable[[Storage, Shape, Strides, Storage, Shape, Strides], None]:
    """
    CUDA higher-order tensor map function. ::

      fn_map = tensor_map(fn)
      fn_map(out, ... )

    Args:
        fn: function mappings floats-to-floats to apply.

    Returns:
        Tensor map function.
    """

    def _map(
        out: Storage,
        out_shape: Shape,
        out_strides: Strides,
        out_size: int,
        in_storage: Storage,
        in_shape: Shape,
        in_strides: Strides,
    ) -> None:
        out_index = cuda.local.array(MAX_DIMS, numba.int32)
        in_index = cuda.local.array(MAX_DIMS, numba.int32)
        i = cuda.blockIdx.x * cuda.blockDim.x + cuda.threadIdx.x
        if i < out_size:
            to_index(i, out_shape, out_index)
            broadcast_index(out_index, out_shape, in_shape, in_index)
            o = index_to_position(out_index, out_strides)
            j = index_to_position(in_index, in_strides)
            out[o] = fn(in_storage[j])

    return cuda.jit()(_map)  # type: ignore


def tensor_map_aligned(fn: Callable[[float], float]) -> FakeCUDAKernel:
    "CUDA map for operands with identical shape and strides; no index decoding."

    def _map(out: Storage, size: int, in_storage: Storage) -> None:
        i = cuda.blockIdx.x * cuda.blockDim.x + cuda.threadIdx.x
        if i < size:
            out[i] = fn(in_storage[i])

    return cuda.jit()(_map)  # type: ignore


def tensor_zip(
    fn: Callable[[float, float], float],
) -> Callable[
    [Storage, Shape, Strides, Storage, Shape, Strides, Storage, Shape, Strides], None
]:
    """
    CUDA higher-order tensor zipWith (or map2) function ::

      fn_zip = tensor_zip(fn)
      fn_zip(out, ...)

    Args:
        fn: function mappings two floats to float to apply.

    Returns:
        Tensor zip function.
    """

    def _zip(
        out: Storage,
        out_shape: Shape,
        out_strides: Strides,
        out_size: int,
        a_storage: Storage,
        a_shape: Shape,
        a_strides: Strides,
        b_storage: Storage,
        b_shape: Shape,
        b_strides: Strides,
    ) -> None:
        out_index = cuda.local.array(MAX_DIMS, numba.int32)
        a_index = cuda.local.array(MAX_DIMS, numba.int32)
        b_index = cuda.local.array(MAX_DIMS, numba.int32)
        i = cuda.blockIdx.x * cuda.blockDim.x + cuda.threadIdx.x
        if i < out_size:
            to_index(i, out_shape, out_index)
            broadcast_index(out_index, out_shape, a_shape, a_index)
            broadcast_index(out_index, out_shape, b_shape, b_index)
            o = index_to_position(out_index, out_strides)
            j = index_to_position(a_index, a_strides)
            k = index_to_position(b_index, b_strides)
            out[o] = fn(a_storage[j], b_storage[k])

    return cuda.jit()(_zip)  # type: ignore


def tensor_zip_aligned(fn: Callable[[float, float], float]) -> FakeCUDAKernel:
    "CUDA zip for operands with identical shape and strides; no index decoding."

    def _zip(out: Storage, size: int, a_storage: Storage, b_storage: Storage) -> None:
        i = cuda.blockIdx.x * cuda.blockDim.x + cuda.threadIdx.x
        if i < size:
            out[i] = fn(a_storage[i], b_storage[i])

    return cuda.jit()(_zip)  # type: ignore


def _sum_practice(out: Storage, a: Storage, size: int) -> None:
    """
    Sum each block of `THREADS_PER_BLOCK` values of `a` into one cell of `out`
    with a shared-memory tree.
    """
    cache = cuda.shared.array(THREADS_PER_BLOCK, numba.float32)
    i = cuda.blockIdx.x * cuda.blockDim.x + cuda.threadIdx.x
    pos = cuda.threadIdx.x

    if i < size:
        cache[pos] = a[i]
    else:
        cache[pos] = 0.0
    cuda.syncthreads()

    stride = THREADS_PER_BLOCK // 2
    while stride > 0:
        if pos < stride:
            cache[pos] += cache[pos + stride]
        cuda.syncthreads()
        stride //= 2

    if pos == 0:
        out[cuda.blockIdx.x] = cache[0]


jit_sum_practice = cuda.jit()(_sum_practice)


def sum_practice(a: Tensor, gpu: Optional[GpuDevice] = None) -> TensorData:
    """
    Block-wise partial sums of a 1-D tensor.

    Args:
        a: 1-D input tensor
        gpu: device to run on, defaults to the tensor backend's context device

    Returns:
        One partial sum per block of `THREADS_PER_BLOCK` input values

    """
    (size,) = a.shape
    if gpu is None:
        context = getattr(a.backend.ops, "context", None)
        gpu = context.gpu if context is not None else None
    if gpu is None:
        raise RuntimeError("sum_practice needs a CUDA device")
    blockspergrid = (size + THREADS_PER_BLOCK - 1) // THREADS_PER_BLOCK
    out = TensorData.zeros((blockspergrid,))
    out_dev = gpu.upload(out._storage)
    f = gpu.kernel("sum_practice")
    f[blockspergrid, THREADS_PER_BLOCK](
        out_dev, gpu.upload(a.contiguous()._tensor._storage), size
    )
    gpu.readback(out_dev, out)
    return out


def tensor_reduce(
    fn: Callable[[float, float], float],
) -> Callable[[Storage, Shape, Strides, Storage, Shape, Strides, int], None]:
    """
    CUDA higher-order tensor reduce function.

    Args:
        fn: reduction function maps two floats to float.

    Returns:
        Tensor reduce function.
    """

    def _reduce(
        out: Storage,
        out_shape: Shape,
        out_strides: Strides,
        out_size: int,
        a_storage: Storage,
        a_shape: Shape,
        a_strides: Strides,
        reduce_dim: int,
        reduce_value: float,
    ) -> None:
        cache = cuda.shared.array(THREADS_PER_BLOCK, numba.float32)
        out_index = cuda.local.array(MAX_DIMS, numba.int32)
        pos = cuda.threadIdx.x
        out_pos = cuda.blockIdx.x
        if out_pos >= out_size:
            return

        to_index(out_pos, out_shape, out_index)
        o = index_to_position(out_index, out_strides)
        out_index[reduce_dim] = 0
        base = index_to_position(out_index, a_strides)
        step = a_strides[reduce_dim]

        acc = numba.float32(reduce_value)
        for j in range(pos, a_shape[reduce_dim], THREADS_PER_BLOCK):
            acc = fn(acc, a_storage[base + j * step])
        cache[pos] = acc
        cuda.syncthreads()

        stride = THREADS_PER_BLOCK // 2
        while stride > 0:
            if pos < stride:
                cache[pos] = fn(cache[pos], cache[pos + stride])
            cuda.syncthreads()
            stride //= 2

        if pos == 0:
            out[o] = cache[0]

    return jit(_reduce)  # type: ignore


def _tensor_matrix_multiply(
    out: Storage,
    out_shape: Shape,
    out_strides: Strides,
    out_size: int,
    a_storage: Storage,
    a_shape: Shape,
    a_strides: Strides,
    b_storage: Storage,
    b_shape: Shape,
    b_strides: Strides,
) -> None:
    """
    CUDA tensor matrix multiply function.

    Operands are batched 3-D views. Each block computes one `BLOCK_DIM`
    square tile of one batch, staging tiles of `a` and `b` in shared memory.
    """
    block_a = cuda.shared.array((BLOCK_DIM, BLOCK_DIM), numba.float32)
    block_b = cuda.shared.array((BLOCK_DIM, BLOCK_DIM), numba.float32)

    batch = cuda.blockIdx.z
    tx = cuda.threadIdx.x
    ty = cuda.threadIdx.y
    row = cuda.blockIdx.y * BLOCK_DIM + ty
    col = cuda.blockIdx.x * BLOCK_DIM + tx

    # Size-1 batch dimensions broadcast against the output batch.
    a_base = batch * a_strides[0] if a_shape[0] > 1 else 0
    b_base = batch * b_strides[0] if b_shape[0] > 1 else 0
    rows = out_shape[1]
    cols = out_shape[2]
    inner = a_shape[2]

    acc = numba.float32(0.0)
    for t in range(0, inner, BLOCK_DIM):
        a_col = t + tx
        if row < rows and a_col < inner:
            block_a[ty, tx] = a_storage[a_base + row * a_strides[1] + a_col * a_strides[2]]
        else:
            block_a[ty, tx] = 0.0

        b_row = t + ty
        if b_row < inner and col < cols:
            block_b[ty, tx] = b_storage[b_base + b_row * b_strides[1] + col * b_strides[2]]
        else:
            block_b[ty, tx] = 0.0
        cuda.syncthreads()

        for k in range(BLOCK_DIM):
            acc += block_a[ty, k] * block_b[k, tx]
        cuda.syncthreads()

    if row < rows and col < cols:
        out[batch * out_strides[0] + row * out_strides[1] + col * out_strides[2]] = acc


_TEMPLATES: Dict[str, Callable[[str], FakeCUDAKernel]] = {
    "map_aligned": lambda name: tensor_map_aligned(device_jit(GPU_UNARY_OPS[name])),
    "map_broadcast": lambda name: tensor_map(device_jit(GPU_UNARY_OPS[name])),
    "zip_aligned": lambda name: tensor_zip_aligned(device_jit(GPU_BINARY_OPS[name])),
    "zip_broadcast": lambda name: tensor_zip(device_jit(GPU_BINARY_OPS[name])),
    "reduce": lambda name: tensor_reduce(device_jit(GPU_BINARY_OPS[name])),
    "matmul": lambda name: jit(_tensor_matrix_multiply),
    "sum_practice": lambda name: jit_sum_practice,
}
