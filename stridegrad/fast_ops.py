from __future__ import annotations

from enum import IntEnum
from typing import TYPE_CHECKING, Any, Callable, Dict, Optional, Sequence, Tuple

import numpy as np
from numba import njit

from . import operators
from .operators import BINARY_FUNCTIONS, UNARY_FUNCTIONS
from .tensor_data import (
    MAX_DIMS,
    TensorData,
    jit_broadcast_index,
    jit_index_to_position,
    jit_to_index,
    shape_broadcast,
)
from .tensor_ops import MapProto, TensorOps, batched, batched_operands, reduce_shape

if TYPE_CHECKING:
    from .context import ExecutionContext
    from .tensor import Tensor
    from .tensor_data import Shape, Storage, Strides

# Output size at which a kernel call is split across the worker pool.
PARALLEL_THRESHOLD = 4096


class Kernel(IntEnum):
    MAP = 0
    ZIP = 1
    REDUCE = 2
    MATMUL = 3


class FastOps(TensorOps):
    """
    Worker-parallel backend.

    Every verb resolves its function to a registry id up front; the id, not
    the function, is what reaches the worker threads.
    """

    def __init__(self, context: ExecutionContext):
        self.context = context

    def map(self, fn: Callable[[float], float]) -> MapProto:
        "See `tensor_ops.py`"
        op = operators.unary_op(fn)

        def ret(a: Tensor, out: Optional[Tensor] = None) -> Tensor:
            if out is None:
                out = a.zeros(a.shape)
            aligned = _aligned(out._tensor, a._tensor)
            self._launch(Kernel.MAP, op, out.size, (*out.tuple(), *a.tuple(), aligned))
            return out

        return ret

    def zip(
        self, fn: Callable[[float, float], float]
    ) -> Callable[[Tensor, Tensor], Tensor]:
        "See `tensor_ops.py`"
        op = operators.binary_op(fn)

        def ret(a: Tensor, b: Tensor) -> Tensor:
            c_shape = shape_broadcast(a.shape, b.shape) if a.shape != b.shape else a.shape
            out = a.zeros(c_shape)
            aligned = _aligned(out._tensor, a._tensor, b._tensor)
            args = (*out.tuple(), *a.tuple(), *b.tuple(), aligned)
            self._launch(Kernel.ZIP, op, out.size, args)
            return out

        return ret

    def reduce(
        self, fn: Callable[[float, float], float]
    ) -> Callable[[Tensor, int], Tensor]:
        "See `tensor_ops.py`"
        op = operators.binary_op(fn)

        def ret(a: Tensor, dim: int) -> Tensor:
            out = a.zeros(reduce_shape(a.shape, dim))
            self._launch(Kernel.REDUCE, op, out.size, (*out.tuple(), *a.tuple(), dim))
            return out

        return ret

    def matrix_multiply(self, a: Tensor, b: Tensor) -> Tensor:
        """
        Batched tensor matrix multiply ::

            for n:
              for i:
                for j:
                  for k:
                    out[n, i, j] += a[n, i, k] * b[n, k, j]

        Both arguments must be 2-D or 3-D; 2-D arguments are treated as a
        batch of one and a 2-D @ 2-D product returns a 2-D tensor.
        """
        out_shape, a_data, b_data = batched_operands(a, b)
        out = a.zeros(out_shape)
        self._launch(
            Kernel.MATMUL,
            0,
            out.size,
            (*batched(out._tensor).tuple(), *a_data.tuple(), *b_data.tuple()),
        )
        return out

    def _launch(self, kind: Kernel, op: int, size: int, args: Sequence[Any]) -> None:
        # Tensor storage is always a host numpy buffer that every worker thread
        # can write, so the output size alone picks the parallel path.
        pool = self.context.pool if size >= PARALLEL_THRESHOLD else None
        if pool is not None:
            pool.parallel_for(size, (kind, op), args)
        else:
            KERNELS[kind, op](0, size, *args)


def _aligned(out: TensorData, *inputs: TensorData) -> bool:
    return all(t.shape == out.shape and t.strides == out.strides for t in inputs)


# Chunk kernels.
#
# Each kernel runs the sequential reference algorithm of `tensor_ops` over the
# output ordinals `[start, end)`, so a call split across workers writes exactly
# the same values as one run over `[0, size)`.


def _chunk_map(fn: Callable[[float], float]) -> Callable[..., None]:
    fn = njit(inline="always")(fn)

    def _map(
        start: int,
        end: int,
        out: Storage,
        out_shape: Shape,
        out_strides: Strides,
        in_storage: Storage,
        in_shape: Shape,
        in_strides: Strides,
        aligned: bool,
    ) -> None:
        if aligned:
            for i in range(start, end):
                out[i] = fn(in_storage[i])
            return
        out_index = np.zeros(MAX_DIMS, np.int32)
        in_index = np.zeros(MAX_DIMS, np.int32)
        for i in range(start, end):
            jit_to_index(i, out_shape, out_index)
            jit_broadcast_index(out_index, out_shape, in_shape, in_index)
            o = jit_index_to_position(out_index, out_strides)
            j = jit_index_to_position(in_index, in_strides)
            out[o] = fn(in_storage[j])

    return njit(nogil=True)(_map)


def _chunk_zip(fn: Callable[[float, float], float]) -> Callable[..., None]:
    fn = njit(inline="always")(fn)

    def _zip(
        start: int,
        end: int,
        out: Storage,
        out_shape: Shape,
        out_strides: Strides,
        a_storage: Storage,
        a_shape: Shape,
        a_strides: Strides,
        b_storage: Storage,
        b_shape: Shape,
        b_strides: Strides,
        aligned: bool,
    ) -> None:
        if aligned:
            for i in range(start, end):
                out[i] = fn(a_storage[i], b_storage[i])
            return
        out_index = np.zeros(MAX_DIMS, np.int32)
        a_index = np.zeros(MAX_DIMS, np.int32)
        b_index = np.zeros(MAX_DIMS, np.int32)
        for i in range(start, end):
            jit_to_index(i, out_shape, out_index)
            jit_broadcast_index(out_index, out_shape, a_shape, a_index)
            jit_broadcast_index(out_index, out_shape, b_shape, b_index)
            o = jit_index_to_position(out_index, out_strides)
            j = jit_index_to_position(a_index, a_strides)
            k = jit_index_to_position(b_index, b_strides)
            out[o] = fn(a_storage[j], b_storage[k])

    return njit(nogil=True)(_zip)


def _chunk_reduce(fn: Callable[[float, float], float]) -> Callable[..., None]:
    fn = njit(inline="always")(fn)

    def _reduce(
        start: int,
        end: int,
        out: Storage,
        out_shape: Shape,
        out_strides: Strides,
        a_storage: Storage,
        a_shape: Shape,
        a_strides: Strides,
        reduce_dim: int,
    ) -> None:
        out_index = np.zeros(MAX_DIMS, np.int32)
        reduce_size = a_shape[reduce_dim]
        reduce_stride = a_strides[reduce_dim]
        for i in range(start, end):
            jit_to_index(i, out_shape, out_index)
            o = jit_index_to_position(out_index, out_strides)
            out_index[reduce_dim] = 0
            j = jit_index_to_position(out_index, a_strides)
            acc = a_storage[j]
            for _ in range(1, reduce_size):
                j += reduce_stride
                acc = fn(acc, a_storage[j])
            out[o] = acc

    return njit(nogil=True)(_reduce)


def _matmul_chunk(
    start: int,
    end: int,
    out: Storage,
    out_shape: Shape,
    out_strides: Strides,
    a_storage: Storage,
    a_shape: Shape,
    a_strides: Strides,
    b_storage: Storage,
    b_shape: Shape,
    b_strides: Strides,
) -> None:
    a_batch_stride = a_strides[0] if a_shape[0] > 1 else 0
    b_batch_stride = b_strides[0] if b_shape[0] > 1 else 0
    rows = out_shape[1]
    cols = out_shape[2]
    inner = a_shape[2]
    for ordinal in range(start, end):
        n = ordinal // (rows * cols)
        rem = ordinal % (rows * cols)
        i = rem // cols
        j = rem % cols
        a_pos = n * a_batch_stride + i * a_strides[1]
        b_pos = n * b_batch_stride + j * b_strides[2]
        acc = 0.0
        for _ in range(inner):
            acc += a_storage[a_pos] * b_storage[b_pos]
            a_pos += a_strides[2]
            b_pos += b_strides[1]
        out[n * out_strides[0] + i * out_strides[1] + j * out_strides[2]] = acc


def _build_kernels() -> Dict[Tuple[Kernel, int], Callable[..., None]]:
    kernels: Dict[Tuple[Kernel, int], Callable[..., None]] = {}
    for uop, ufn in UNARY_FUNCTIONS.items():
        kernels[Kernel.MAP, uop] = _chunk_map(ufn)
    for bop, bfn in BINARY_FUNCTIONS.items():
        kernels[Kernel.ZIP, bop] = _chunk_zip(bfn)
        kernels[Kernel.REDUCE, bop] = _chunk_reduce(bfn)
    kernels[Kernel.MATMUL, 0] = njit(nogil=True)(_matmul_chunk)
    return kernels


# Fixed table shared by the caller and the worker threads.
KERNELS = _build_kernels()
