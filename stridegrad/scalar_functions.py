"""Forward and backward rules for every scalar operation.

Operations are a closed enum; `SCALAR_RULES` maps each kind to its
`(forward, backward)` pair. `Scalar.apply` looks the pair up by kind.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import IntEnum
from typing import Callable, Dict, Tuple

from . import operators
from .autodiff import Context


class ScalarOp(IntEnum):
    ADD = 0
    MUL = 1
    INV = 2
    NEG = 3
    SIGMOID = 4
    RELU = 5
    LOG = 6
    EXP = 7
    LT = 8
    EQ = 9


@dataclass(frozen=True)
class ScalarRule:
    forward: Callable[..., float]
    backward: Callable[[Context, float], Tuple[float, ...]]


def _add_forward(ctx: Context, a: float, b: float) -> float:
    return operators.add(a, b)


def _add_backward(ctx: Context, d_output: float) -> Tuple[float, ...]:
    return d_output, d_output


def _log_forward(ctx: Context, a: float) -> float:
    ctx.save_for_backward(a)
    return operators.log(a)


def _log_backward(ctx: Context, d_output: float) -> Tuple[float, ...]:
    (a,) = ctx.saved_values
    return (operators.log_back(a, d_output),)


def _mul_forward(ctx: Context, a: float, b: float) -> float:
    ctx.save_for_backward(a, b)
    return operators.mul(a, b)


def _mul_backward(ctx: Context, d_output: float) -> Tuple[float, ...]:
    a, b = ctx.saved_values
    return d_output * b, d_output * a


def _inv_forward(ctx: Context, a: float) -> float:
    ctx.save_for_backward(a)
    return operators.inv(a)


def _inv_backward(ctx: Context, d_output: float) -> Tuple[float, ...]:
    (a,) = ctx.saved_values
    return (operators.inv_back(a, d_output),)


def _neg_forward(ctx: Context, a: float) -> float:
    return operators.neg(a)


def _neg_backward(ctx: Context, d_output: float) -> Tuple[float, ...]:
    return (operators.neg(d_output),)


def _sigmoid_forward(ctx: Context, a: float) -> float:
    out = operators.sigmoid(a)
    ctx.save_for_backward(out)
    return out


def _sigmoid_backward(ctx: Context, d_output: float) -> Tuple[float, ...]:
    (out,) = ctx.saved_values
    return (d_output * out * (1.0 - out),)


def _relu_forward(ctx: Context, a: float) -> float:
    ctx.save_for_backward(a)
    return operators.relu(a)


def _relu_backward(ctx: Context, d_output: float) -> Tuple[float, ...]:
    (a,) = ctx.saved_values
    return (operators.relu_back(a, d_output),)


def _exp_forward(ctx: Context, a: float) -> float:
    out = operators.exp(a)
    ctx.save_for_backward(out)
    return out


def _exp_backward(ctx: Context, d_output: float) -> Tuple[float, ...]:
    (out,) = ctx.saved_values
    return (d_output * out,)


def _lt_forward(ctx: Context, a: float, b: float) -> float:
    return operators.lt(a, b)


def _eq_forward(ctx: Context, a: float, b: float) -> float:
    return operators.eq(a, b)


def _compare_backward(ctx: Context, d_output: float) -> Tuple[float, ...]:
    return 0.0, 0.0


SCALAR_RULES: Dict[ScalarOp, ScalarRule] = {
    ScalarOp.ADD: ScalarRule(_add_forward, _add_backward),
    ScalarOp.MUL: ScalarRule(_mul_forward, _mul_backward),
    ScalarOp.INV: ScalarRule(_inv_forward, _inv_backward),
    ScalarOp.NEG: ScalarRule(_neg_forward, _neg_backward),
    ScalarOp.SIGMOID: ScalarRule(_sigmoid_forward, _sigmoid_backward),
    ScalarOp.RELU: ScalarRule(_relu_forward, _relu_backward),
    ScalarOp.LOG: ScalarRule(_log_forward, _log_backward),
    ScalarOp.EXP: ScalarRule(_exp_forward, _exp_backward),
    ScalarOp.LT: ScalarRule(_lt_forward, _compare_backward),
    ScalarOp.EQ: ScalarRule(_eq_forward, _compare_backward),
}


def forward(op: ScalarOp, ctx: Context, *values: float) -> float:
    return float(SCALAR_RULES[op].forward(ctx, *values))


def backward(op: ScalarOp, ctx: Context, d_output: float) -> Tuple[float, ...]:
    return tuple(SCALAR_RULES[op].backward(ctx, d_output))
