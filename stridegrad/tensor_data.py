from __future__ import annotations

import random
from typing import Iterable, Optional, Sequence, Tuple, Union

import numba
import numpy as np
import numpy.typing as npt
from numpy import array, float64
from typing_extensions import TypeAlias

from .operators import prod

MAX_DIMS = 32


class IndexingError(RuntimeError):
    "Exception raised for indexing errors."
    pass


Storage: TypeAlias = npt.NDArray[np.float64]
OutIndex: TypeAlias = npt.NDArray[np.int32]
Index: TypeAlias = npt.NDArray[np.int32]
Shape: TypeAlias = npt.NDArray[np.int32]
Strides: TypeAlias = npt.NDArray[np.int32]

UserIndex: TypeAlias = Sequence[int]
UserShape: TypeAlias = Sequence[int]
UserStrides: TypeAlias = Sequence[int]


def index_to_position(index: Index, strides: Strides) -> int:
    """
    Converts a multidimensional tensor `index` into a single-dimensional position in
    storage based on strides.

    Only the first `len(strides)` entries of `index` are read, so `index` may be a
    larger scratch buffer.

    Args:
        index : index tuple of ints
        strides : tensor strides

    Returns:
        Position in storage
    """
    position = 0
    for i, s in enumerate(strides):
        position += s * index[i]
    return position


def to_index(ordinal: int, shape: Shape, out_index: OutIndex) -> None:
    """
    Convert an `ordinal` to an index in the `shape`.
    Should ensure that enumerating position 0 ... size of a
    tensor produces every index exactly once. It
    may not be the inverse of `index_to_position`.

    Args:
        ordinal: ordinal position to convert.
        shape : tensor shape.
        out_index : return index corresponding to position.
    """
    cur = ordinal
    for i in range(len(shape) - 1, -1, -1):
        sh = shape[i]
        out_index[i] = int(cur % sh)
        cur = cur // sh


def broadcast_index(
    big_index: Index, big_shape: Shape, shape: Shape, out_index: OutIndex
) -> None:
    """
    Convert a `big_index` into `big_shape` to a smaller `out_index`
    into `shape` following broadcasting rules. In this case
    it may be larger or with more dimensions than the `shape`
    given. Additional dimensions may need to be mapped to 0 or
    removed.

    Args:
        big_index : multidimensional index of bigger tensor
        big_shape : tensor shape of bigger tensor
        shape : tensor shape of smaller tensor
        out_index : multidimensional index of smaller tensor

    Returns:
        None
    """
    offset = len(big_shape) - len(shape)
    for i, s in enumerate(shape):
        if s > 1:
            out_index[i] = big_index[i + offset]
        else:
            out_index[i] = 0


def shape_broadcast(shape1: UserShape, shape2: UserShape) -> UserShape:
    """
    Broadcast two shapes to create a new union shape.

    Args:
        shape1 : first shape
        shape2 : second shape

    Returns:
        broadcasted shape

    Raises:
        IndexingError : if cannot broadcast
    """
    a, b = shape1, shape2
    m = max(len(a), len(b))
    c_rev = [0] * m
    a_rev = list(reversed(a))
    b_rev = list(reversed(b))
    for i in range(m):
        if i >= len(a):
            c_rev[i] = b_rev[i]
        elif i >= len(b):
            c_rev[i] = a_rev[i]
        else:
            c_rev[i] = max(a_rev[i], b_rev[i])
            if a_rev[i] != c_rev[i] and a_rev[i] != 1:
                raise IndexingError(f"Broadcast failure {a} {b}")
            if b_rev[i] != c_rev[i] and b_rev[i] != 1:
                raise IndexingError(f"Broadcast failure {a} {b}")
    return tuple(reversed(c_rev))


def strides_from_shape(shape: UserShape) -> UserShape:
    "Canonical row-major strides for `shape`."
    layout = [1]
    offset = 1
    for s in reversed(shape):
        layout.append(s * offset)
        offset = s * offset
    return tuple(reversed(layout[:-1]))


class TensorData:
    _storage: Storage
    _strides: Strides
    _shape: Shape
    strides: UserStrides
    shape: UserShape
    dims: int

    def __init__(
        self,
        storage: Union[Sequence[float], Storage],
        shape: UserShape,
        strides: Optional[UserStrides] = None,
    ):
        if isinstance(storage, np.ndarray):
            self._storage = storage
        else:
            self._storage = array(storage, dtype=float64)

        if strides is None:
            strides = strides_from_shape(shape)

        if not isinstance(strides, tuple):
            raise IndexingError("Strides must be tuple")
        if not isinstance(shape, tuple):
            raise IndexingError("Shape must be tuple")
        if len(strides) != len(shape):
            raise IndexingError(f"Len of strides {strides} must match {shape}.")
        if len(shape) > MAX_DIMS:
            raise IndexingError(f"Tensors support at most {MAX_DIMS} dimensions.")
        self._strides = array(strides, dtype=np.int32)
        self._shape = array(shape, dtype=np.int32)
        self.strides = strides
        self.dims = len(strides)
        self.size = int(prod(shape))
        self.shape = shape
        if len(self._storage) < self.size:
            raise IndexingError(
                f"Storage of length {len(self._storage)} is too small for shape {shape}."
            )

    @classmethod
    def zeros(cls, shape: UserShape) -> TensorData:
        "Fresh contiguous tensor data filled with zeros."
        shape = tuple(int(s) for s in shape)
        return cls(np.zeros(int(prod(shape)), dtype=float64), shape)

    def is_contiguous(self) -> bool:
        """
        Check that the layout is contiguous, i.e. outer dimensions have bigger strides than inner dimensions.

        Returns:
            bool : True if contiguous
        """
        return tuple(self.strides) == strides_from_shape(self.shape)

    @staticmethod
    def shape_broadcast(shape_a: UserShape, shape_b: UserShape) -> UserShape:
        return shape_broadcast(shape_a, shape_b)

    def index(self, index: Union[int, UserIndex]) -> int:
        if isinstance(index, int):
            aindex: Index = array([index])
        else:
            aindex = array(index)

        # Check for errors
        if aindex.shape[0] != len(self.shape):
            raise IndexingError(f"Index {aindex} must be size of {self.shape}.")
        for i, ind in enumerate(aindex):
            if ind >= self.shape[i]:
                raise IndexingError(f"Index {aindex} out of range {self.shape}.")
            if ind < 0:
                raise IndexingError(f"Negative indexing for {aindex} not supported.")

        # Call fast indexing.
        return int(index_to_position(aindex, self._strides))

    def indices(self) -> Iterable[UserIndex]:
        lshape: Shape = array(self.shape)
        out_index: Index = array(self.shape)
        for i in range(self.size):
            to_index(i, lshape, out_index)
            yield tuple(int(x) for x in out_index)

    def sample(self) -> UserIndex:
        return tuple((random.randint(0, s - 1) for s in self.shape))

    def get(self, key: UserIndex) -> float:
        x: float = self._storage[self.index(key)]
        return x

    def set(self, key: UserIndex, val: float) -> None:
        self._storage[self.index(key)] = val

    def tuple(self) -> Tuple[Storage, Shape, Strides]:
        return (self._storage, self._shape, self._strides)

    def permute(self, *order: int) -> TensorData:
        """
        Permute the dimensions of the tensor.

        Args:
            *order: a permutation of the dimensions

        Returns:
            New `TensorData` with the same storage and a new dimension order.

        Raises:
            IndexingError : if `order` is not a permutation of `range(dims)`
        """
        if len(order) != self.dims:
            raise IndexingError(
                f"Permutation length ({len(order)}) must match number of dimensions ({self.dims})."
            )
        seen = set()
        for d in order:
            if d < 0 or d >= self.dims:
                raise IndexingError(f"Invalid dimension index: {d}")
            if d in seen:
                raise IndexingError(f"Duplicate dimension in permutation: {d}")
            seen.add(d)

        return TensorData(
            self._storage,
            tuple(self.shape[o] for o in order),
            tuple(self.strides[o] for o in order),
        )

    def view(self, *shape: int) -> TensorData:
        """
        Reinterpret contiguous storage with a new shape.

        Raises:
            IndexingError : if the data is not contiguous or the sizes differ
        """
        if not self.is_contiguous():
            raise IndexingError(
                f"Cannot view non-contiguous data of shape {self.shape}, call contiguous() first."
            )
        shape = tuple(int(s) for s in shape)
        if int(prod(shape)) != self.size:
            raise IndexingError(f"Cannot view size {self.size} as shape {shape}.")
        return TensorData(self._storage, shape)

    def contiguous(self) -> TensorData:
        "Same data in canonical row-major layout; `self` if already contiguous."
        if self.is_contiguous():
            return self
        out = TensorData.zeros(self.shape)
        out_storage = out._storage
        position = 0
        for index in self.indices():
            out_storage[position] = self.get(index)
            position += 1
        return out

    def to_string(self) -> str:
        s = ""
        for index in self.indices():
            l = ""
            for i in range(len(index) - 1, -1, -1):
                if index[i] == 0:
                    l = "\n%s[" % ("\t" * i) + l
                else:
                    break
            s += l
            v = self.get(index)
            s += f"{v:3.2f}"
            l = ""
            for i in range(len(index) - 1, -1, -1):
                if index[i] == self.shape[i] - 1:
                    l += "]"
                else:
                    break
            if l:
                s += l
            else:
                s += " "
        return s

    def __repr__(self) -> str:
        return f"TensorData(shape={self.shape}, strides={self.strides})"


# Compiled index helpers shared by the parallel kernels.
jit_index_to_position = numba.njit(inline="always")(index_to_position)
jit_to_index = numba.njit(inline="always")(to_index)
jit_broadcast_index = numba.njit(inline="always")(broadcast_index)
