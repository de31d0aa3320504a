from __future__ import annotations

from typing import TYPE_CHECKING, Callable, Optional, Tuple

from typing_extensions import Protocol

from . import operators
from .tensor_data import (
    IndexingError,
    MAX_DIMS,
    TensorData,
    broadcast_index,
    index_to_position,
    shape_broadcast,
    to_index,
)

if TYPE_CHECKING:
    from .tensor import Tensor
    from .tensor_data import Index, Shape, Storage, Strides, UserShape


class MapProto(Protocol):
    def __call__(self, x: Tensor, out: Optional[Tensor] = ..., /) -> Tensor:
        ...


class TensorOps:
    """
    One execution strategy for the four kernel verbs.

    Implementations hold whatever execution resources they need (see
    `ExecutionContext`) and must agree numerically with `SimpleOps`.
    """

    cuda = False

    def map(self, fn: Callable[[float], float]) -> MapProto:
        raise NotImplementedError(f"{type(self).__name__} does not implement map")

    def zip(
        self, fn: Callable[[float, float], float]
    ) -> Callable[[Tensor, Tensor], Tensor]:
        raise NotImplementedError(f"{type(self).__name__} does not implement zip")

    def reduce(self, fn: Callable[[float, float], float]) -> Callable[[Tensor, int], Tensor]:
        raise NotImplementedError(f"{type(self).__name__} does not implement reduce")

    def matrix_multiply(self, a: Tensor, b: Tensor) -> Tensor:
        raise NotImplementedError(f"{type(self).__name__} does not implement matrix_multiply")


class TensorBackend:
    def __init__(self, ops: TensorOps):
        """
        Dynamically construct a tensor backend based on a `tensor_ops` object
        that implements map, zip, and reduce higher-order functions.

        Args:
            ops : tensor operations object see `tensor_ops.py`


        Returns :
            A collection of tensor functions

        """
        self.ops = ops

        # Maps
        self.neg_map = ops.map(operators.neg)
        self.sigmoid_map = ops.map(operators.sigmoid)
        self.relu_map = ops.map(operators.relu)
        self.log_map = ops.map(operators.log)
        self.exp_map = ops.map(operators.exp)
        self.id_map = ops.map(operators.id)
        self.inv_map = ops.map(operators.inv)
        self.not_zero_map = ops.map(operators.not_zero)

        # Zips
        self.add_zip = ops.zip(operators.add)
        self.mul_zip = ops.zip(operators.mul)
        self.lt_zip = ops.zip(operators.lt)
        self.eq_zip = ops.zip(operators.eq)
        self.is_close_zip = ops.zip(operators.is_close)
        self.relu_back_zip = ops.zip(operators.relu_back)
        self.log_back_zip = ops.zip(operators.log_back)
        self.inv_back_zip = ops.zip(operators.inv_back)

        # Reduce
        self.add_reduce = ops.reduce(operators.add)
        self.mul_reduce = ops.reduce(operators.mul)
        self.matrix_multiply = ops.matrix_multiply
        self.cuda = ops.cuda

    def __repr__(self) -> str:
        return f"TensorBackend({type(self.ops).__name__})"


class SimpleOps(TensorOps):
    def map(self, fn: Callable[[float], float]) -> MapProto:
        """
        Higher-order tensor map function ::

          fn_map = map(fn)
          fn_map(a, out)
          out

        Simple version::

            for i:
                for j:
                    out[i, j] = fn(a[i, j])

        Broadcasted version (`a` might be smaller than `out`) ::

            for i:
                for j:
                    out[i, j] = fn(a[i, 0])

        Args:
            fn : function from float-to-float to apply.

        Returns:
            new tensor data
        """

        f = tensor_map(fn)

        def ret(a: Tensor, out: Optional[Tensor] = None) -> Tensor:
            if out is None:
                out = a.zeros(a.shape)
            f(*out.tuple(), *a.tuple())
            return out

        return ret

    def zip(
        self, fn: Callable[[float, float], float]
    ) -> Callable[["Tensor", "Tensor"], "Tensor"]:
        """
        Higher-order tensor zip function ::

          fn_zip = zip(fn)
          out = fn_zip(a, b)

        Simple version ::

            for i:
                for j:
                    out[i, j] = fn(a[i, j], b[i, j])

        Broadcasted version (`a` and `b` might be smaller than `out`) ::

            for i:
                for j:
                    out[i, j] = fn(a[i, 0], b[0, j])

        Args:
            fn : function from two floats-to-float to apply

        Returns:
            :class:`TensorData` : new tensor data
        """

        f = tensor_zip(fn)

        def ret(a: "Tensor", b: "Tensor") -> "Tensor":
            if a.shape != b.shape:
                c_shape = shape_broadcast(a.shape, b.shape)
            else:
                c_shape = a.shape
            out = a.zeros(c_shape)
            f(*out.tuple(), *a.tuple(), *b.tuple())
            return out

        return ret

    def reduce(
        self, fn: Callable[[float, float], float]
    ) -> Callable[["Tensor", int], "Tensor"]:
        """
        Higher-order tensor reduce function. ::

          fn_reduce = reduce(fn)
          out = fn_reduce(a, dim)

        Simple version ::

            for j:
                out[1, j] = a[0, j]
                for i in 1..n:
                    out[1, j] = fn(out[1, j], a[i, j])


        Args:
            fn : function from two floats-to-float to apply

        Returns:
            :class:`TensorData` : new tensor
        """
        f = tensor_reduce(fn)

        def ret(a: "Tensor", dim: int) -> "Tensor":
            out = a.zeros(reduce_shape(a.shape, dim))
            f(*out.tuple(), *a.tuple(), dim)
            return out

        return ret

    def matrix_multiply(self, a: "Tensor", b: "Tensor") -> "Tensor":
        out_shape, a_data, b_data = batched_operands(a, b)
        out = a.zeros(out_shape)
        tensor_matrix_multiply(*batched(out._tensor).tuple(), *a_data.tuple(), *b_data.tuple())
        return out


def reduce_shape(shape: UserShape, dim: int) -> Tuple[int, ...]:
    "Output shape of a reduction of `shape` along `dim` (kept as size 1)."
    if dim < 0 or dim >= len(shape):
        raise IndexingError(f"Invalid dimension {dim} for tensor with {len(shape)} dimensions.")
    out_shape = list(shape)
    out_shape[dim] = 1
    return tuple(out_shape)


def batched(data: TensorData) -> TensorData:
    "View 2-D data as a batch of one; 3-D data is returned as is."
    if data.dims == 2:
        return TensorData(data._storage, (1, *data.shape), (0, *data.strides))
    return data


def batched_operands(a: "Tensor", b: "Tensor") -> Tuple[UserShape, TensorData, TensorData]:
    """
    Validate a batched matrix multiply and lift both operands to 3-D.

    Returns:
        The user-facing output shape (2-D when both inputs are 2-D) and the
        3-D views of `a` and `b`.

    Raises:
        IndexingError : on unsupported rank or mismatched inner dimension
    """
    for t in (a, b):
        if t.dims not in (2, 3):
            raise IndexingError(f"Matrix multiply needs 2-D or 3-D operands, got {t.shape}.")
    if a.shape[-1] != b.shape[-2]:
        raise IndexingError(
            f"Matrix multiply inner dimensions differ: {a.shape} @ {b.shape}."
        )
    a_data = batched(a._tensor)
    b_data = batched(b._tensor)
    batch = shape_broadcast(a_data.shape[:-2], b_data.shape[:-2])
    out_shape = (*batch, a.shape[-2], b.shape[-1])
    if a.dims == 2 and b.dims == 2:
        out_shape = out_shape[1:]
    return out_shape, a_data, b_data


# Implementations.


def tensor_map(
    fn: Callable[[float], float]
) -> Callable[[Storage, Shape, Strides, Storage, Shape, Strides], None]:
    """
    Low-level implementation of tensor map between
    tensors with *possibly different strides*.

    Simple version:

    * Fill in the `out` array by applying `fn` to each
      value of `in_storage` assuming `out_shape` and `in_shape`
      are the same size.

    Broadcasted version:

    * Fill in the `out` array by applying `fn` to each
      value of `in_storage` assuming `out_shape` and `in_shape`
      broadcast. (`in_shape` must be smaller than `out_shape`).

    Args:
        fn: function from float-to-float to apply

    Returns:
        Tensor map function.
    """

    def _map(
        out: Storage,
        out_shape: Shape,
        out_strides: Strides,
        in_storage: Storage,
        in_shape: Shape,
        in_strides: Strides,
    ) -> None:
        out_index: Index = [0] * MAX_DIMS
        in_index: Index = [0] * MAX_DIMS
        size = int(operators.prod(out_shape))
        for i in range(size):
            to_index(i, out_shape, out_index)
            broadcast_index(out_index, out_shape, in_shape, in_index)
            x = in_storage[index_to_position(in_index, in_strides)]
            out[index_to_position(out_index, out_strides)] = fn(x)

    return _map


def tensor_zip(
    fn: Callable[[float, float], float]
) -> Callable[
    [Storage, Shape, Strides, Storage, Shape, Strides, Storage, Shape, Strides], None
]:
    """
    Low-level implementation of tensor zip between
    tensors with *possibly different strides*.

    Args:
        fn: function mapping two floats to float to apply

    Returns:
        Tensor zip function.
    """

    def _zip(
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
        out_index: Index = [0] * MAX_DIMS
        a_index: Index = [0] * MAX_DIMS
        b_index: Index = [0] * MAX_DIMS
        size = int(operators.prod(out_shape))
        for i in range(size):
            to_index(i, out_shape, out_index)
            broadcast_index(out_index, out_shape, a_shape, a_index)
            broadcast_index(out_index, out_shape, b_shape, b_index)
            a = a_storage[index_to_position(a_index, a_strides)]
            b = b_storage[index_to_position(b_index, b_strides)]
            out[index_to_position(out_index, out_strides)] = fn(a, b)

    return _zip


def tensor_reduce(
    fn: Callable[[float, float], float]
) -> Callable[[Storage, Shape, Strides, Storage, Shape, Strides, int], None]:
    """
    Low-level implementation of tensor reduce.

    * `out_shape` will be the same as `a_shape`
       except with `reduce_dim` turned to size `1`
    * the fold starts from the first element along `reduce_dim` and
      proceeds in increasing index order

    Args:
        fn: reduction function mapping two floats to float

    Returns:
        Tensor reduce function.
    """

    def _reduce(
        out: Storage,
        out_shape: Shape,
        out_strides: Strides,
        a_storage: Storage,
        a_shape: Shape,
        a_strides: Strides,
        reduce_dim: int,
    ) -> None:
        out_index: Index = [0] * MAX_DIMS
        reduce_size = a_shape[reduce_dim]
        reduce_stride = a_strides[reduce_dim]
        size = int(operators.prod(out_shape))
        for i in range(size):
            to_index(i, out_shape, out_index)
            o = index_to_position(out_index, out_strides)
            out_index[reduce_dim] = 0
            j = index_to_position(out_index, a_strides)
            acc = a_storage[j]
            for _ in range(1, reduce_size):
                j += reduce_stride
                acc = fn(acc, a_storage[j])
            out[o] = acc

    return _reduce


def tensor_matrix_multiply(
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
    """
    Reference batched matrix multiply over 3-D operands.

    A batch dimension of size 1 in either operand is broadcast. Each output
    cell accumulates the dot product in increasing `k` order from 0.0.
    """
    a_batch_stride = a_strides[0] if a_shape[0] > 1 else 0
    b_batch_stride = b_strides[0] if b_shape[0] > 1 else 0
    batch, rows, cols = out_shape[0], out_shape[1], out_shape[2]
    inner = a_shape[2]
    for n in range(batch):
        for i in range(rows):
            for j in range(cols):
                a_pos = n * a_batch_stride + i * a_strides[1]
                b_pos = n * b_batch_stride + j * b_strides[2]
                acc = 0.0
                for _ in range(inner):
                    acc += a_storage[a_pos] * b_storage[b_pos]
                    a_pos += a_strides[2]
                    b_pos += b_strides[1]
                out[n * out_strides[0] + i * out_strides[1] + j * out_strides[2]] = acc


SimpleBackend = TensorBackend(SimpleOps())
