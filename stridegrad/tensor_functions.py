"""
Implementation of the autodifferentiation Functions for Tensor.

Each operation kind in `Op` carries a `(forward, backward)` pair in
`TENSOR_RULES`; `Tensor.apply` selects the pair by kind.
"""

from __future__ import annotations

import random
from dataclasses import dataclass
from enum import IntEnum
from typing import TYPE_CHECKING, Any, Callable, Dict, List, Tuple

import numpy as np

import stridegrad

from . import operators
from .autodiff import Context
from .tensor_data import IndexingError
from .tensor_ops import SimpleBackend, TensorBackend

if TYPE_CHECKING:
    from .tensor import Tensor
    from .tensor_data import Storage, UserIndex, UserShape, UserStrides


class Op(IntEnum):
    NEG = 0
    INV = 1
    ADD = 2
    MUL = 3
    SIGMOID = 4
    RELU = 5
    LOG = 6
    EXP = 7
    SUM = 8
    ALL = 9
    LT = 10
    EQ = 11
    IS_CLOSE = 12
    PERMUTE = 13
    VIEW = 14
    COPY = 15
    MATMUL = 16


@dataclass(frozen=True)
class TensorRule:
    forward: Callable[..., Tensor]
    backward: Callable[[Context, Tensor], Tuple[Tensor, ...]]


def _neg_forward(ctx: Context, t1: Tensor) -> Tensor:
    return t1.f.neg_map(t1)


def _neg_backward(ctx: Context, grad_output: Tensor) -> Tuple[Tensor, ...]:
    return (grad_output.f.neg_map(grad_output),)


def _inv_forward(ctx: Context, t1: Tensor) -> Tensor:
    ctx.save_for_backward(t1)
    return t1.f.inv_map(t1)


def _inv_backward(ctx: Context, grad_output: Tensor) -> Tuple[Tensor, ...]:
    (t1,) = ctx.saved_values
    return (grad_output.f.inv_back_zip(t1, grad_output),)


def _add_forward(ctx: Context, t1: Tensor, t2: Tensor) -> Tensor:
    return t1.f.add_zip(t1, t2)


def _add_backward(ctx: Context, grad_output: Tensor) -> Tuple[Tensor, ...]:
    return grad_output, grad_output


def _mul_forward(ctx: Context, a: Tensor, b: Tensor) -> Tensor:
    ctx.save_for_backward(a, b)
    return a.f.mul_zip(a, b)


def _mul_backward(ctx: Context, grad_output: Tensor) -> Tuple[Tensor, ...]:
    a, b = ctx.saved_values
    return (
        grad_output.f.mul_zip(b, grad_output),
        grad_output.f.mul_zip(a, grad_output),
    )


def _sigmoid_forward(ctx: Context, t1: Tensor) -> Tensor:
    out = t1.f.sigmoid_map(t1)
    ctx.save_for_backward(out)
    return out


def _sigmoid_backward(ctx: Context, grad_output: Tensor) -> Tuple[Tensor, ...]:
    (out,) = ctx.saved_values
    f = grad_output.f
    one_minus = f.add_zip(_constant(1.0, out), f.neg_map(out))
    return (f.mul_zip(grad_output, f.mul_zip(out, one_minus)),)


def _relu_forward(ctx: Context, t1: Tensor) -> Tensor:
    ctx.save_for_backward(t1)
    return t1.f.relu_map(t1)


def _relu_backward(ctx: Context, grad_output: Tensor) -> Tuple[Tensor, ...]:
    (t1,) = ctx.saved_values
    return (grad_output.f.relu_back_zip(t1, grad_output),)


def _log_forward(ctx: Context, t1: Tensor) -> Tensor:
    ctx.save_for_backward(t1)
    return t1.f.log_map(t1)


def _log_backward(ctx: Context, grad_output: Tensor) -> Tuple[Tensor, ...]:
    (t1,) = ctx.saved_values
    return (grad_output.f.log_back_zip(t1, grad_output),)


def _exp_forward(ctx: Context, t1: Tensor) -> Tensor:
    out = t1.f.exp_map(t1)
    ctx.save_for_backward(out)
    return out


def _exp_backward(ctx: Context, grad_output: Tensor) -> Tuple[Tensor, ...]:
    (out,) = ctx.saved_values
    return (grad_output.f.mul_zip(out, grad_output),)


def _sum_forward(ctx: Context, a: Tensor, dim: int) -> Tensor:
    ctx.save_for_backward(a.shape)
    return a.f.add_reduce(a, dim)


def _sum_backward(ctx: Context, grad_output: Tensor) -> Tuple[Tensor, ...]:
    (shape,) = ctx.saved_values
    out = grad_output.zeros(shape)
    grad_output.f.id_map(grad_output, out)
    return (out,)


def _all_forward(ctx: Context, a: Tensor, dim: int) -> Tensor:
    ctx.save_for_backward(a.shape)
    return a.f.not_zero_map(a.f.mul_reduce(a, dim))


def _lt_forward(ctx: Context, a: Tensor, b: Tensor) -> Tensor:
    ctx.save_for_backward(a.shape, b.shape)
    return a.f.lt_zip(a, b)


def _eq_forward(ctx: Context, a: Tensor, b: Tensor) -> Tensor:
    ctx.save_for_backward(a.shape, b.shape)
    return a.f.eq_zip(a, b)


def _is_close_forward(ctx: Context, a: Tensor, b: Tensor) -> Tensor:
    ctx.save_for_backward(a.shape, b.shape)
    return a.f.is_close_zip(a, b)


def _zero_backward(ctx: Context, grad_output: Tensor) -> Tuple[Tensor, ...]:
    return tuple(grad_output.zeros(shape) for shape in ctx.saved_values)


def _permute_forward(ctx: Context, a: Tensor, order: Tuple[int, ...]) -> Tensor:
    ctx.save_for_backward(order)
    return a._new(a._tensor.permute(*order))


def _permute_backward(ctx: Context, grad_output: Tensor) -> Tuple[Tensor, ...]:
    (order,) = ctx.saved_values
    inverse = [0] * len(order)
    for i, o in enumerate(order):
        inverse[o] = i
    return (grad_output._new(grad_output._tensor.permute(*inverse)),)


def _view_forward(ctx: Context, a: Tensor, shape: Tuple[int, ...]) -> Tensor:
    ctx.save_for_backward(a.shape)
    return a._new(a._tensor.view(*shape))


def _view_backward(ctx: Context, grad_output: Tensor) -> Tuple[Tensor, ...]:
    (original,) = ctx.saved_values
    grad = _contiguous(grad_output)
    return (grad._new(grad._tensor.view(*original)),)


def _copy_forward(ctx: Context, a: Tensor) -> Tensor:
    return a.f.id_map(a)


def _copy_backward(ctx: Context, grad_output: Tensor) -> Tuple[Tensor, ...]:
    return (grad_output,)


def _matmul_forward(ctx: Context, t1: Tensor, t2: Tensor) -> Tensor:
    ctx.save_for_backward(t1, t2)
    return t1.f.matrix_multiply(t1, t2)


def _matmul_backward(ctx: Context, grad_output: Tensor) -> Tuple[Tensor, ...]:
    t1, t2 = ctx.saved_values
    f = grad_output.f
    return (
        f.matrix_multiply(grad_output, _transpose(t2)),
        f.matrix_multiply(_transpose(t1), grad_output),
    )


def _transpose(a: Tensor) -> Tensor:
    order = list(range(a.dims))
    order[-2], order[-1] = order[-1], order[-2]
    return a._new(a._tensor.permute(*order))


def _contiguous(a: Tensor) -> Tensor:
    if a._tensor.is_contiguous():
        return a
    return a.f.id_map(a)


def _constant(value: float, like: Tensor) -> Tensor:
    return stridegrad.Tensor.make([value], (1,), backend=like.backend)


TENSOR_RULES: Dict[Op, TensorRule] = {
    Op.NEG: TensorRule(_neg_forward, _neg_backward),
    Op.INV: TensorRule(_inv_forward, _inv_backward),
    Op.ADD: TensorRule(_add_forward, _add_backward),
    Op.MUL: TensorRule(_mul_forward, _mul_backward),
    Op.SIGMOID: TensorRule(_sigmoid_forward, _sigmoid_backward),
    Op.RELU: TensorRule(_relu_forward, _relu_backward),
    Op.LOG: TensorRule(_log_forward, _log_backward),
    Op.EXP: TensorRule(_exp_forward, _exp_backward),
    Op.SUM: TensorRule(_sum_forward, _sum_backward),
    Op.ALL: TensorRule(_all_forward, _zero_backward),
    Op.LT: TensorRule(_lt_forward, _zero_backward),
    Op.EQ: TensorRule(_eq_forward, _zero_backward),
    Op.IS_CLOSE: TensorRule(_is_close_forward, _zero_backward),
    Op.PERMUTE: TensorRule(_permute_forward, _permute_backward),
    Op.VIEW: TensorRule(_view_forward, _view_backward),
    Op.COPY: TensorRule(_copy_forward, _copy_backward),
    Op.MATMUL: TensorRule(_matmul_forward, _matmul_backward),
}


# Helpers for Constructing tensors
def zeros(shape: UserShape, backend: TensorBackend = SimpleBackend) -> Tensor:
    """
    Produce a zero tensor of size `shape`.

    Args:
        shape : shape of tensor
        backend : tensor backend

    Returns:
        new tensor
    """
    return stridegrad.Tensor.make(
        np.zeros(int(operators.prod(shape)), dtype=np.float64), tuple(shape), backend=backend
    )


def ones(shape: UserShape, backend: TensorBackend = SimpleBackend) -> Tensor:
    "Produce a tensor of size `shape` filled with 1.0."
    return stridegrad.Tensor.make(
        np.ones(int(operators.prod(shape)), dtype=np.float64), tuple(shape), backend=backend
    )


def rand(shape: UserShape, backend: TensorBackend = SimpleBackend) -> Tensor:
    """
    Produce a random tensor of size `shape`.

    Args:
        shape : shape of tensor
        backend : tensor backend

    Returns:
        :class:`Tensor` : new tensor
    """
    vals = [random.random() for _ in range(int(operators.prod(shape)))]
    return stridegrad.Tensor.make(vals, tuple(shape), backend=backend)


def tensor_from_storage(
    storage: Storage,
    shape: UserShape,
    strides: UserStrides = None,
    backend: TensorBackend = SimpleBackend,
) -> Tensor:
    "Wrap existing flat storage without copying it."
    return stridegrad.Tensor.make(
        storage, tuple(shape), None if strides is None else tuple(strides), backend=backend
    )


def _flatten(ls: Any, out: List[float]) -> None:
    if isinstance(ls, (list, tuple)):
        for x in ls:
            _flatten(x, out)
    else:
        out.append(float(ls))


def _shape(ls: Any) -> List[int]:
    if isinstance(ls, (list, tuple)):
        return [len(ls)] + _shape(ls[0]) if len(ls) > 0 else [0]
    return []


def tensor(ls: Any, shape: UserShape = None, backend: TensorBackend = SimpleBackend) -> Tensor:
    """
    Produce a tensor with data and shape from ls

    Args:
        ls: nested python list, or a single number
        shape: optional shape, `ls` is flattened and reinterpreted as `shape`
        backend : tensor backend

    Returns:
        :class:`Tensor` : new tensor

    Raises:
        IndexingError : if the number of values does not match the shape
    """
    cur: List[float] = []
    _flatten(ls, cur)
    if shape is None:
        shape = _shape(ls) or [1]
    shape = tuple(int(s) for s in shape)
    if int(operators.prod(shape)) != len(cur):
        raise IndexingError(f"Shape {shape} does not match {len(cur)} values.")
    return stridegrad.Tensor.make(cur, shape, backend=backend)


# Gradient check for tensors


def grad_central_difference(
    f: Any, *vals: Tensor, arg: int = 0, epsilon: float = 1e-6, ind: UserIndex
) -> float:
    x = vals[arg]
    up = zeros(x.shape, backend=x.backend)
    up[ind] = epsilon
    vals1 = [x if j != arg else x + up for j, x in enumerate(vals)]
    vals2 = [x if j != arg else x - up for j, x in enumerate(vals)]
    delta: Tensor = f(*vals1).sum() - f(*vals2).sum()

    return delta[0] / (2.0 * epsilon)


def grad_check(f: Any, *vals: Tensor) -> None:
    for x in vals:
        x.zero_grad_()
    random.seed(10)
    out = f(*vals)
    out.sum().backward()
    err_msg = """

Gradient check error for function %s.

Input %s

Received derivative %f for argument %d and index %s,
but was expecting derivative %f from central difference.

"""

    for i, x in enumerate(vals):
        ind = x._tensor.sample()
        check = grad_central_difference(f, *vals, arg=i, ind=ind)
        assert x.grad is not None
        np.testing.assert_allclose(
            x.grad[ind],
            check,
            1e-2,
            1e-2,
            err_msg=err_msg % (f, vals, x.grad[ind], i, ind, check),
        )
