"""
Implementation of the core Tensor object for autodifferentiation.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Iterable, List, Optional, Sequence, Tuple, Union

import numpy as np

from . import operators
from .autodiff import Context, Variable, backpropagate, next_unique_id
from .tensor_data import TensorData
from .tensor_functions import TENSOR_RULES, Op
from .tensor_ops import SimpleBackend, TensorBackend

if TYPE_CHECKING:
    import numpy.typing as npt

    from .tensor_data import Shape, Storage, Strides, UserIndex, UserShape, UserStrides

TensorLike = Union[float, int, "Tensor"]


@dataclass
class History:
    """
    `History` stores the operation kind, its saved context and the inputs
    that were used to construct the current Variable.
    """

    last_fn: Op
    ctx: Context
    inputs: Sequence[Tensor] = ()


class Tensor:
    """
    Tensor is a generalization of Scalar in that it is a Variable that
    handles multidimensional arrays.
    """

    backend: TensorBackend
    history: Optional[History]
    grad: Optional[Tensor]
    _tensor: TensorData
    unique_id: int
    name: str

    def __init__(
        self,
        v: TensorData,
        back: Optional[History] = None,
        name: Optional[str] = None,
        backend: Optional[TensorBackend] = None,
    ):
        self.unique_id = next_unique_id()
        self._tensor = v
        self.history = back
        self.grad = None
        self.backend = backend if backend is not None else SimpleBackend
        if name is not None:
            self.name = name
        else:
            self.name = str(self.unique_id)

        self.f = self.backend

    @staticmethod
    def apply(op: Op, *vals: Any) -> Tensor:
        """
        Run the forward rule of `op` on `vals` and record the history.

        Leading `Tensor` arguments are the graph inputs; any remaining
        arguments (dimensions, orders, shapes) are passed to the forward rule
        as plain parameters.
        """
        split = 0
        while split < len(vals) and isinstance(vals[split], Tensor):
            split += 1
        inputs: List[Tensor] = list(vals[:split])
        params = vals[split:]

        ctx = Context()
        c = TENSOR_RULES[op].forward(ctx, *inputs, *params)
        return Tensor(c._tensor, History(op, ctx, inputs), backend=c.backend)

    def to_numpy(self) -> npt.NDArray[np.float64]:
        """
        Returns:
             Converted to numpy array
        """
        data = self._tensor.contiguous()
        return np.array(data._storage[: data.size]).reshape(self.shape)

    def tolist(self) -> Any:
        "Values as nested python lists."
        return self.to_numpy().tolist()

    # Properties
    @property
    def shape(self) -> UserShape:
        """
        Returns:
             shape of the tensor
        """
        return self._tensor.shape

    @property
    def size(self) -> int:
        """
        Returns:
             int : size of the tensor
        """
        return self._tensor.size

    @property
    def dims(self) -> int:
        """
        Returns:
             int : dimensionality of the tensor
        """
        return self._tensor.dims

    def _ensure_tensor(self, b: TensorLike) -> Tensor:
        "Turns a python number into a tensor with the same backend."
        if isinstance(b, (int, float, np.number)):
            c = Tensor.make([b], (1,), backend=self.backend)
        else:
            b._type_(self.backend)
            c = b
        return c

    # Functions
    def neg(self) -> Tensor:
        return Tensor.apply(Op.NEG, self)

    def add(self, b: TensorLike) -> Tensor:
        return Tensor.apply(Op.ADD, self, self._ensure_tensor(b))

    def sub(self, b: TensorLike) -> Tensor:
        return Tensor.apply(Op.ADD, self, -self._ensure_tensor(b))

    def mul(self, b: TensorLike) -> Tensor:
        return Tensor.apply(Op.MUL, self, self._ensure_tensor(b))

    def div(self, b: TensorLike) -> Tensor:
        return Tensor.apply(Op.MUL, self, Tensor.apply(Op.INV, self._ensure_tensor(b)))

    def lt(self, b: TensorLike) -> Tensor:
        return Tensor.apply(Op.LT, self, self._ensure_tensor(b))

    def eq(self, b: TensorLike) -> Tensor:
        return Tensor.apply(Op.EQ, self, self._ensure_tensor(b))

    def gt(self, b: TensorLike) -> Tensor:
        return Tensor.apply(Op.LT, self._ensure_tensor(b), self)

    def matmul(self, b: Tensor) -> Tensor:
        return Tensor.apply(Op.MATMUL, self, b)

    def __add__(self, b: TensorLike) -> Tensor:
        return self.add(b)

    def __sub__(self, b: TensorLike) -> Tensor:
        return self.sub(b)

    def __mul__(self, b: TensorLike) -> Tensor:
        return self.mul(b)

    def __truediv__(self, b: TensorLike) -> Tensor:
        return self.div(b)

    def __rsub__(self, b: TensorLike) -> Tensor:
        return self._ensure_tensor(b).sub(self)

    def __rtruediv__(self, b: TensorLike) -> Tensor:
        return self._ensure_tensor(b).div(self)

    def __matmul__(self, b: Tensor) -> Tensor:
        return self.matmul(b)

    def __lt__(self, b: TensorLike) -> Tensor:
        return self.lt(b)

    def __eq__(self, b: TensorLike) -> Tensor:  # type: ignore[override]
        return self.eq(b)

    def __gt__(self, b: TensorLike) -> Tensor:
        return self.gt(b)

    def __neg__(self) -> Tensor:
        return self.neg()

    def __radd__(self, b: TensorLike) -> Tensor:
        return self + b

    def __rmul__(self, b: TensorLike) -> Tensor:
        return self * b

    def __hash__(self) -> int:
        return hash(self.unique_id)

    def all(self, dim: Optional[int] = None) -> Tensor:
        if dim is None:
            return Tensor.apply(Op.ALL, self.contiguous().view(self.size), 0)
        return Tensor.apply(Op.ALL, self, dim)

    def is_close(self, y: TensorLike) -> Tensor:
        return Tensor.apply(Op.IS_CLOSE, self, self._ensure_tensor(y))

    def sigmoid(self) -> Tensor:
        return Tensor.apply(Op.SIGMOID, self)

    def relu(self) -> Tensor:
        return Tensor.apply(Op.RELU, self)

    def log(self) -> Tensor:
        return Tensor.apply(Op.LOG, self)

    def exp(self) -> Tensor:
        return Tensor.apply(Op.EXP, self)

    def inv(self) -> Tensor:
        return Tensor.apply(Op.INV, self)

    def item(self) -> float:
        if self.size != 1:
            raise ValueError(
                f"item() needs a tensor with exactly one element, got shape {self.shape}."
            )
        return float(self._tensor.get(tuple(0 for _ in range(self.dims))))

    def sum(self, dim: Optional[int] = None) -> Tensor:
        "Compute the sum over dimension `dim`"
        if dim is None:
            return Tensor.apply(Op.SUM, self.contiguous().view(self.size), 0)
        return Tensor.apply(Op.SUM, self, dim)

    def mean(self, dim: Optional[int] = None) -> Tensor:
        "Compute the mean over dimension `dim`"
        if dim is None:
            return self.sum() * (1.0 / self.size)
        out = self.sum(dim)
        return out * (1.0 / self.shape[dim])

    def permute(self, *order: int) -> Tensor:
        "Permute tensor dimensions to *order"
        return Tensor.apply(Op.PERMUTE, self, tuple(int(o) for o in order))

    def view(self, *shape: int) -> Tensor:
        "Change the shape of the tensor to a new shape with the same size"
        return Tensor.apply(Op.VIEW, self, tuple(int(s) for s in shape))

    def contiguous(self) -> Tensor:
        "Return a contiguous tensor with the same data"
        return Tensor.apply(Op.COPY, self)

    def __repr__(self) -> str:
        return self._tensor.to_string()

    def __getitem__(self, key: Union[int, UserIndex]) -> float:
        key2 = (key,) if isinstance(key, int) else key
        return self._tensor.get(key2)

    def __setitem__(self, key: Union[int, UserIndex], val: float) -> None:
        key2 = (key,) if isinstance(key, int) else key
        self._tensor.set(key2, val)

    def get(self, key: UserIndex) -> float:
        return self[key]

    def set(self, key: UserIndex, val: float) -> None:
        self[key] = val

    # Internal methods used for autodiff.
    def _type_(self, backend: TensorBackend) -> None:
        self.backend = backend
        self.f = backend

    def _new(self, tensor_data: TensorData) -> Tensor:
        return Tensor(tensor_data, backend=self.backend)

    @staticmethod
    def make(
        storage: Union[Storage, List[float]],
        shape: UserShape,
        strides: Optional[UserStrides] = None,
        backend: Optional[TensorBackend] = None,
    ) -> Tensor:
        "Create a new tensor from data"
        return Tensor(TensorData(storage, shape, strides), backend=backend)

    def expand(self, other: Tensor) -> Tensor:
        """
        Method used to allow for backprop over broadcasting.
        This method is called when the output of `backward`
        is a different size than the input of `forward`.


        Parameters:
            other : backward tensor (must broadcast with self)

        Returns:
            Expanded version of `other` with the right derivatives

        """

        # Case 1: Both the same shape.
        if self.shape == other.shape:
            return other

        # Case 2: Backward is a smaller than self. Broadcast up.
        true_shape = TensorData.shape_broadcast(self.shape, other.shape)
        buf = self.zeros(true_shape)
        self.backend.id_map(other, buf)
        if self.shape == true_shape:
            return buf

        # Case 3: Still different, reduce extra dims.
        out = buf
        orig_shape = [1] * (len(out.shape) - len(self.shape)) + list(self.shape)
        for dim, shape in enumerate(out.shape):
            if orig_shape[dim] == 1 and shape != 1:
                out = self.backend.add_reduce(out, dim)
        assert out.size == self.size, f"{out.shape} {self.shape}"
        return Tensor.make(out._tensor._storage, self.shape, backend=self.backend)

    def zeros(self, shape: Optional[UserShape] = None) -> Tensor:
        def zero(shape: UserShape) -> Tensor:
            return Tensor.make(
                np.zeros(int(operators.prod(shape)), dtype=np.float64),
                tuple(shape),
                backend=self.backend,
            )

        if shape is None:
            out = zero(self.shape)
        else:
            out = zero(shape)
        out._type_(self.backend)
        return out

    def tuple(self) -> Tuple[Storage, Shape, Strides]:
        return self._tensor.tuple()

    def detach(self) -> Tensor:
        "Same data, no history."
        return Tensor(self._tensor, backend=self.backend)

    # Variable elements for backprop

    def accumulate_derivative(self, x: Any) -> None:
        """
        Add `x` to the derivative accumulated on this variable.
        Should only be called during autodifferentiation on leaf variables.

        Args:
            x : value to be accumulated
        """
        if not self.is_leaf():
            raise RuntimeError("Only leaf variables can accumulate derivatives.")
        if self.grad is None:
            self.grad = x
        else:
            self.grad = self.backend.add_zip(self.grad, x)

    def sum_derivatives(self, a: Tensor, b: Tensor) -> Tensor:
        return self.backend.add_zip(a, b)

    def is_leaf(self) -> bool:
        "True if this variable was created by the user (no `history`)"
        return self.history is None

    def is_constant(self) -> bool:
        return self.history is None

    @property
    def parents(self) -> Iterable[Variable]:
        if self.history is None:
            return []
        return self.history.inputs

    def chain_rule(self, d_output: Any) -> Iterable[Tuple[Variable, Any]]:
        h = self.history
        if h is None:
            raise RuntimeError(f"Cannot call chain_rule on leaf tensor {self.name}.")

        x = TENSOR_RULES[h.last_fn].backward(h.ctx, d_output)
        assert len(x) == len(h.inputs), f"Bad Function {h.last_fn!r}"
        return [(inp, inp.expand(d_in)) for inp, d_in in zip(h.inputs, x)]

    def backward(self, grad_output: Optional[Tensor] = None) -> None:
        if grad_output is None:
            grad_output = Tensor.make(
                np.ones(self.size, dtype=np.float64), self.shape, backend=self.backend
            )
        else:
            grad_output = self.expand(grad_output)
        backpropagate(self, grad_output)

    def zero_grad_(self) -> None:
        """
        Reset the derivative on this variable.
        """
        self.grad = None
