"""Collection of the core mathematical operators used throughout the code base.

Every function here is plain float math so it can be compiled by numba both
for the CPU chunk kernels and as a CUDA device function.
"""

import math
from enum import IntEnum
from typing import Callable, Dict, Iterable, List

EPS = 1e-12


class UnsupportedOperation(ValueError):
    """Raised when a kernel is asked to run a function outside the closed op registry."""


def mul(x: float, y: float) -> float:
    "$f(x, y) = x * y$"
    return x * y


def id(x: float) -> float:
    "$f(x) = x$"
    return x


def add(x: float, y: float) -> float:
    "$f(x, y) = x + y$"
    return x + y


def neg(x: float) -> float:
    "$f(x) = -x$"
    return -x


def lt(x: float, y: float) -> float:
    "$f(x) =$ 1.0 if x is less than y else 0.0"
    return 1.0 if x < y else 0.0


def eq(x: float, y: float) -> float:
    "$f(x) =$ 1.0 if x is equal to y else 0.0"
    return 1.0 if x == y else 0.0


def max(x: float, y: float) -> float:
    "$f(x) =$ x if x is greater than y else y"
    return x if x > y else y


def is_close(x: float, y: float) -> float:
    "$f(x) = |x - y| < 1e-2$"
    return 1.0 if abs(x - y) < 1e-2 else 0.0


def sigmoid(x: float) -> float:
    r"""
    $f(x) =  \frac{1.0}{(1.0 + e^{-x})}$

    Computed as $\frac{e^x}{(1.0 + e^{x})}$ for negative inputs so that
    neither branch overflows.
    """
    if x >= 0.0:
        return 1.0 / (1.0 + math.exp(-x))
    ex = math.exp(x)
    return ex / (1.0 + ex)


def relu(x: float) -> float:
    "$f(x) =$ x if x is greater than 0, else 0"
    return x if x > 0.0 else 0.0


def log(x: float) -> float:
    "$f(x) = log(x)$, clamped below at `EPS`"
    return math.log(x if x > EPS else EPS)


def exp(x: float) -> float:
    "$f(x) = e^{x}$"
    return math.exp(x)


def log_back(x: float, d: float) -> float:
    r"If $f = log$ as above, compute $d \times f'(x)$"
    return d / (x if x > EPS else EPS)


def inv(x: float) -> float:
    "$f(x) = 1/x$"
    return 1.0 / x


def inv_back(x: float, d: float) -> float:
    r"If $f(x) = 1/x$ compute $d \times f'(x)$"
    return -d / (x * x)


def relu_back(x: float, d: float) -> float:
    r"If $f = relu$ compute $d \times f'(x)$"
    return d if x > 0.0 else 0.0


def not_zero(x: float) -> float:
    "$f(x) =$ 1.0 if x is non-zero else 0.0"
    return 1.0 if x != 0.0 else 0.0


# Closed operation registry.
#
# The parallel and GPU backends only run functions listed here: a kernel is
# selected by op id inside the worker (or compiled per op name for the GPU),
# so arbitrary host callables are rejected with `UnsupportedOperation`.


class UnaryOp(IntEnum):
    ID = 0
    NEG = 1
    SIGMOID = 2
    RELU = 3
    LOG = 4
    EXP = 5
    INV = 6
    NOT_ZERO = 7


class BinaryOp(IntEnum):
    ADD = 0
    MUL = 1
    LT = 2
    EQ = 3
    MAX = 4
    IS_CLOSE = 5
    LOG_BACK = 6
    INV_BACK = 7
    RELU_BACK = 8


UNARY_FUNCTIONS: Dict[UnaryOp, Callable[[float], float]] = {
    UnaryOp.ID: id,
    UnaryOp.NEG: neg,
    UnaryOp.SIGMOID: sigmoid,
    UnaryOp.RELU: relu,
    UnaryOp.LOG: log,
    UnaryOp.EXP: exp,
    UnaryOp.INV: inv,
    UnaryOp.NOT_ZERO: not_zero,
}

BINARY_FUNCTIONS: Dict[BinaryOp, Callable[[float, float], float]] = {
    BinaryOp.ADD: add,
    BinaryOp.MUL: mul,
    BinaryOp.LT: lt,
    BinaryOp.EQ: eq,
    BinaryOp.MAX: max,
    BinaryOp.IS_CLOSE: is_close,
    BinaryOp.LOG_BACK: log_back,
    BinaryOp.INV_BACK: inv_back,
    BinaryOp.RELU_BACK: relu_back,
}

_UNARY_BY_FN = {fn: op for op, fn in UNARY_FUNCTIONS.items()}
_BINARY_BY_FN = {fn: op for op, fn in BINARY_FUNCTIONS.items()}


def unary_op(fn: Callable[[float], float]) -> UnaryOp:
    """Look up the registry id of a unary operator function."""
    try:
        return _UNARY_BY_FN[fn]
    except KeyError:
        raise UnsupportedOperation(
            f"Unknown unary op: {getattr(fn, '__name__', repr(fn))}"
        ) from None


def binary_op(fn: Callable[[float, float], float]) -> BinaryOp:
    """Look up the registry id of a binary operator function."""
    try:
        return _BINARY_BY_FN[fn]
    except KeyError:
        raise UnsupportedOperation(
            f"Unknown binary op: {getattr(fn, '__name__', repr(fn))}"
        ) from None


# Small practice library of elementary higher-order functions.


def map(fn: Callable[[float], float]) -> Callable[[Iterable[float]], List[float]]:
    """
    Higher-order map.

    Args:
        fn: Function from one value to one value.

    Returns:
        A function that takes a list, applies `fn` to each element, and returns a
         new list
    """

    def _map(ls: Iterable[float]) -> List[float]:
        return [fn(x) for x in ls]

    return _map


def neg_list(ls: Iterable[float]) -> List[float]:
    "Use `map` and `neg` to negate each element in `ls`"
    return map(neg)(ls)


def zipWith(
    fn: Callable[[float, float], float]
) -> Callable[[Iterable[float], Iterable[float]], List[float]]:
    """
    Higher-order zipwith (or map2).

    Args:
        fn: combine two values

    Returns:
        Function that takes two equally sized lists `ls1` and `ls2`, produce a new list by
         applying fn(x, y) on each pair of elements.
    """

    def _zip(ls1: Iterable[float], ls2: Iterable[float]) -> List[float]:
        return [fn(x, y) for x, y in zip(ls1, ls2)]

    return _zip


def add_lists(ls1: Iterable[float], ls2: Iterable[float]) -> List[float]:
    "Add the elements of `ls1` and `ls2` using `zipWith` and `add`"
    return zipWith(add)(ls1, ls2)


def reduce(
    fn: Callable[[float, float], float], start: float
) -> Callable[[Iterable[float]], float]:
    r"""
    Higher-order reduce.

    Args:
        fn: combine two values
        start: start value $x_0$

    Returns:
        Function that takes a list `ls` of elements
         $x_1 \ldots x_n$ and computes the reduction :math:`fn(x_3, fn(x_2,
         fn(x_1, x_0)))`
    """

    def _reduce(ls: Iterable[float]) -> float:
        val = start
        for x in ls:
            val = fn(val, x)
        return val

    return _reduce


def sum(ls: Iterable[float]) -> float:
    "Sum up a list using `reduce` and `add`."
    return reduce(add, 0.0)(ls)


def prod(ls: Iterable[float]) -> float:
    "Product of a list using `reduce` and `mul`."
    return reduce(mul, 1.0)(ls)
