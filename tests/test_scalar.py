from typing import Callable, Tuple

import pytest

from stridegrad import MathTestVariable, Scalar, derivative_check, operators

one_arg, two_arg, _ = MathTestVariable._comp_testing()

SMALL = [-3.0, -0.5, 0.7, 2.5]
PAIRS = [(0.7, 2.5), (-3.0, -0.5), (2.5, 0.7), (1.3, -2.1)]


def test_scalar_construction() -> None:
    x = Scalar(2)
    assert x.data == 2.0
    assert x.is_leaf()
    assert x.derivative is None
    assert repr(x) == "Scalar(2.0)"
    named = Scalar(1.0, name="w")
    assert named.name == "w"


def test_scalar_history() -> None:
    x = Scalar(2.0)
    y = x + 3.0
    assert not y.is_leaf()
    assert y.history is not None
    assert [p.data for p in y.parents] == [2.0, 3.0]


def test_scalar_comparisons() -> None:
    a = Scalar(1.0)
    b = Scalar(2.0)
    assert (a < b).data == 1.0
    assert (a > b).data == 0.0
    assert (a == 1.0).data == 1.0
    assert bool(a < b)
    assert (b - a).data == 1.0
    assert (b / 4).data == 0.5
    assert (4 / b).data == 2.0


@pytest.mark.parametrize("fn", one_arg, ids=[f[0] for f in one_arg])
@pytest.mark.parametrize("t1", SMALL)
def test_one_args(fn: Tuple[str, Callable[[float], float], Callable[[Scalar], Scalar]], t1: float) -> None:
    name, base_fn, scalar_fn = fn
    assert scalar_fn(Scalar(t1)).data == pytest.approx(base_fn(t1))


@pytest.mark.parametrize("fn", two_arg, ids=[f[0] for f in two_arg])
@pytest.mark.parametrize("ts", PAIRS)
def test_two_args(
    fn: Tuple[str, Callable[[float, float], float], Callable[[Scalar, Scalar], Scalar]],
    ts: Tuple[float, float],
) -> None:
    name, base_fn, scalar_fn = fn
    t1, t2 = ts
    assert scalar_fn(Scalar(t1), Scalar(t2)).data == pytest.approx(base_fn(t1, t2))


@pytest.mark.parametrize("fn", one_arg, ids=[f[0] for f in one_arg])
@pytest.mark.parametrize("t1", SMALL)
def test_one_derivative(fn: Tuple[str, Callable, Callable], t1: float) -> None:
    name, _, scalar_fn = fn
    derivative_check(scalar_fn, Scalar(t1))


@pytest.mark.parametrize("fn", two_arg, ids=[f[0] for f in two_arg])
@pytest.mark.parametrize("ts", PAIRS)
def test_two_derivative(fn: Tuple[str, Callable, Callable], ts: Tuple[float, float]) -> None:
    name, _, scalar_fn = fn
    derivative_check(scalar_fn, Scalar(ts[0]), Scalar(ts[1]))


@pytest.mark.parametrize("x", SMALL)
def test_unary_derivatives(x: float) -> None:
    a = Scalar(x)
    a.sigmoid().backward()
    s = operators.sigmoid(x)
    assert a.derivative == pytest.approx(s * (1 - s))

    b = Scalar(x)
    b.exp().backward()
    assert b.derivative == pytest.approx(operators.exp(x))

    c = Scalar(x)
    c.relu().backward()
    assert c.derivative == (1.0 if x > 0 else 0.0)


def test_log_derivative() -> None:
    x = Scalar(4.0)
    x.log().backward()
    assert x.derivative == pytest.approx(0.25)


def test_comparison_derivatives_are_zero() -> None:
    a = Scalar(1.0)
    b = Scalar(2.0)
    out = (a < b) + (a == b)
    out.backward()
    assert a.derivative == 0.0
    assert b.derivative == 0.0
