from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Iterable, Optional, Sequence, Tuple, Union

import numpy as np

from . import scalar_functions
from .autodiff import Context, Variable, backpropagate, central_difference, next_unique_id
from .scalar_functions import ScalarOp

ScalarLike = Union[float, int, "Scalar"]


@dataclass
class ScalarHistory:
    """
    `ScalarHistory` stores the operation that was
    used to construct the current Variable.

    Attributes:
        last_fn : The last operation kind that was called.
        ctx : The context for that operation.
        inputs : The inputs that were given to the forward rule.

    """

    last_fn: ScalarOp
    ctx: Context
    inputs: Sequence[Scalar] = ()


class Scalar:
    """
    A reimplementation of scalar values for autodifferentiation
    tracking. Scalar Variables behave as close as possible to standard
    Python numbers while also tracking the operations that led to the
    number's creation. They can only be manipulated through
    the rules in `scalar_functions`.
    """

    history: Optional[ScalarHistory]
    derivative: Optional[float]
    data: float
    unique_id: int
    name: str

    def __init__(
        self,
        v: float,
        back: Optional[ScalarHistory] = None,
        name: Optional[str] = None,
    ):
        self.unique_id = next_unique_id()
        self.data = float(v)
        self.history = back
        self.derivative = None
        if name is not None:
            self.name = name
        else:
            self.name = str(self.unique_id)

    @staticmethod
    def apply(op: ScalarOp, *vals: ScalarLike) -> Scalar:
        "Run the forward rule of `op` and record the history on the result."
        scalars = [v if isinstance(v, Scalar) else Scalar(v) for v in vals]
        ctx = Context()
        c = scalar_functions.forward(op, ctx, *(s.data for s in scalars))
        return Scalar(c, ScalarHistory(op, ctx, scalars))

    def __repr__(self) -> str:
        return f"Scalar({self.data})"

    def __hash__(self) -> int:
        return hash(self.unique_id)

    def __mul__(self, b: ScalarLike) -> Scalar:
        return Scalar.apply(ScalarOp.MUL, self, b)

    def __truediv__(self, b: ScalarLike) -> Scalar:
        return Scalar.apply(ScalarOp.MUL, self, Scalar.apply(ScalarOp.INV, b))

    def __rtruediv__(self, b: ScalarLike) -> Scalar:
        return Scalar.apply(ScalarOp.MUL, b, Scalar.apply(ScalarOp.INV, self))

    def __add__(self, b: ScalarLike) -> Scalar:
        return Scalar.apply(ScalarOp.ADD, self, b)

    def __bool__(self) -> bool:
        return bool(self.data)

    def __lt__(self, b: ScalarLike) -> Scalar:
        return Scalar.apply(ScalarOp.LT, self, b)

    def __gt__(self, b: ScalarLike) -> Scalar:
        return Scalar.apply(ScalarOp.LT, b, self)

    def __eq__(self, b: ScalarLike) -> Scalar:  # type: ignore[override]
        return Scalar.apply(ScalarOp.EQ, self, b)

    def __sub__(self, b: ScalarLike) -> Scalar:
        return Scalar.apply(ScalarOp.ADD, self, Scalar.apply(ScalarOp.NEG, b))

    def __rsub__(self, b: ScalarLike) -> Scalar:
        return Scalar.apply(ScalarOp.ADD, b, Scalar.apply(ScalarOp.NEG, self))

    def __neg__(self) -> Scalar:
        return Scalar.apply(ScalarOp.NEG, self)

    def __radd__(self, b: ScalarLike) -> Scalar:
        return self + b

    def __rmul__(self, b: ScalarLike) -> Scalar:
        return self * b

    def log(self) -> Scalar:
        return Scalar.apply(ScalarOp.LOG, self)

    def exp(self) -> Scalar:
        return Scalar.apply(ScalarOp.EXP, self)

    def sigmoid(self) -> Scalar:
        return Scalar.apply(ScalarOp.SIGMOID, self)

    def relu(self) -> Scalar:
        return Scalar.apply(ScalarOp.RELU, self)

    # Variable elements for backprop

    def accumulate_derivative(self, x: Any) -> None:
        """
        Add `x` to the derivative accumulated on this variable.
        Should only be called during autodifferentiation on leaf variables.

        Args:
            x: value to be accumulated
        """
        if not self.is_leaf():
            raise RuntimeError("Only leaf variables can accumulate derivatives.")
        if self.derivative is None:
            self.derivative = 0.0
        self.derivative += x

    def sum_derivatives(self, a: float, b: float) -> float:
        return a + b

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
            raise RuntimeError(f"Cannot call chain_rule on leaf {self!r}.")
        grads = scalar_functions.backward(h.last_fn, h.ctx, d_output)
        return list(zip(h.inputs, grads))

    def backward(self, d_output: Optional[float] = None) -> None:
        """
        Calls autodiff to fill in the derivatives for the history of this object.

        Args:
            d_output (number, opt): starting derivative to backpropagate through the model
                                   (typically left out, and assumed to be 1.0).
        """
        if d_output is None:
            d_output = 1.0
        backpropagate(self, d_output)

    def zero_grad_(self) -> None:
        self.derivative = None


def derivative_check(f: Any, *scalars: Scalar) -> None:
    """
    Checks that autodiff works on a python function.
    Asserts False if derivative is incorrect.

    Parameters:
        f : function from n-scalars to 1-scalar.
        *scalars  : n input scalar values.
    """
    out = f(*scalars)
    out.backward()

    err_msg = """
Derivative check at arguments f(%s) and received derivative f'=%f for argument %d,
but was expecting derivative f'=%f from central difference."""
    for i, x in enumerate(scalars):
        check = central_difference(f, *scalars, arg=i)
        assert x.derivative is not None
        np.testing.assert_allclose(
            x.derivative,
            check.data,
            1e-2,
            1e-2,
            err_msg=err_msg
            % (str([x.data for x in scalars]), x.derivative, i, check.data),
        )
