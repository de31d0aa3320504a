import math

import pytest

from stridegrad import operators
from stridegrad.operators import (
    BINARY_FUNCTIONS,
    UNARY_FUNCTIONS,
    BinaryOp,
    UnaryOp,
    UnsupportedOperation,
    add,
    add_lists,
    binary_op,
    eq,
    exp,
    id,
    inv,
    inv_back,
    is_close,
    log,
    log_back,
    lt,
    max,
    mul,
    neg,
    neg_list,
    not_zero,
    prod,
    relu,
    relu_back,
    sigmoid,
    unary_op,
)

VALUES = [-100.0, -3.5, -1.0, -0.25, 0.0, 0.25, 1.0, 3.5, 100.0]


@pytest.mark.parametrize("x", VALUES)
@pytest.mark.parametrize("y", VALUES)
def test_same_as_python(x: float, y: float) -> None:
    assert mul(x, y) == pytest.approx(x * y)
    assert add(x, y) == pytest.approx(x + y)
    assert neg(x) == pytest.approx(-x)
    assert max(x, y) == pytest.approx(x if x > y else y)
    assert id(x) == x
    if abs(x) > 1e-5:
        assert inv(x) == pytest.approx(1.0 / x)


@pytest.mark.parametrize("x", VALUES)
def test_relu(x: float) -> None:
    if x > 0:
        assert relu(x) == x
    else:
        assert relu(x) == 0.0
    assert relu_back(x, 2.0) == (2.0 if x > 0 else 0.0)


@pytest.mark.parametrize("x", VALUES)
@pytest.mark.parametrize("y", VALUES)
def test_comparisons(x: float, y: float) -> None:
    assert lt(x, y) == (1.0 if x < y else 0.0)
    assert eq(x, y) == (1.0 if x == y else 0.0)
    assert lt(x, y) + lt(y, x) + eq(x, y) == 1.0
    assert is_close(x, x) == 1.0
    assert is_close(x, x + 1.0) == 0.0


@pytest.mark.parametrize("x", VALUES)
def test_sigmoid(x: float) -> None:
    s = sigmoid(x)
    assert 0.0 <= s <= 1.0
    assert 1.0 - s == pytest.approx(sigmoid(-x))
    assert sigmoid(x + 1.0) >= s


def test_sigmoid_extremes() -> None:
    assert sigmoid(0.0) == 0.5
    assert sigmoid(-1000.0) == pytest.approx(0.0)
    assert sigmoid(1000.0) == pytest.approx(1.0)


def test_log_exp() -> None:
    assert log(math.e) == pytest.approx(1.0)
    assert exp(0.0) == 1.0
    assert log(exp(2.5)) == pytest.approx(2.5)
    # Non-positive inputs are clamped instead of raising.
    assert log(0.0) == pytest.approx(math.log(operators.EPS))
    assert log(-5.0) == pytest.approx(math.log(operators.EPS))


@pytest.mark.parametrize("x", [0.5, 1.0, 4.0])
def test_backward_helpers(x: float) -> None:
    d = 3.0
    assert log_back(x, d) == pytest.approx(d / x)
    assert inv_back(x, d) == pytest.approx(-d / (x * x))


def test_not_zero() -> None:
    assert not_zero(0.0) == 0.0
    assert not_zero(-2.0) == 1.0
    assert not_zero(1e-9) == 1.0


def test_registry_round_trip() -> None:
    for op, fn in UNARY_FUNCTIONS.items():
        assert unary_op(fn) is op
    for op, fn in BINARY_FUNCTIONS.items():
        assert binary_op(fn) is op
    assert unary_op(operators.sigmoid) is UnaryOp.SIGMOID
    assert binary_op(operators.relu_back) is BinaryOp.RELU_BACK


def test_registry_rejects_unknown_functions() -> None:
    with pytest.raises(UnsupportedOperation):
        unary_op(lambda x: x * 2.0)
    with pytest.raises(UnsupportedOperation):
        binary_op(lambda x, y: x - y)
    # A unary function is not a binary op.
    with pytest.raises(UnsupportedOperation):
        binary_op(operators.neg)
    assert issubclass(UnsupportedOperation, ValueError)


def test_higher_order() -> None:
    assert neg_list([1.0, -2.0]) == [-1.0, 2.0]
    assert add_lists([1.0, 2.0], [3.0, 4.0]) == [4.0, 6.0]
    assert operators.sum([1.0, 2.0, 3.5]) == pytest.approx(6.5)
    assert operators.sum([]) == 0.0
    assert prod([2.0, 3.0, 4.0]) == pytest.approx(24.0)
    assert prod([]) == 1.0
    assert operators.reduce(max, -1e9)([3.0, 9.0, 1.0]) == 9.0
