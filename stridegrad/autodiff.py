from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Tuple

from typing_extensions import Protocol


def central_difference(f: Any, *vals: Any, arg: int = 0, epsilon: float = 1e-6) -> Any:
    r"""
    Computes an approximation to the derivative of `f` with respect to one arg.

    See :doc:`derivative` or https://en.wikipedia.org/wiki/Finite_difference for more details.

    Args:
        f : arbitrary function from n-scalar args to one value
        *vals : n-float values $x_0 \ldots x_{n-1}$
        arg : the number $i$ of the arg to compute the derivative
        epsilon : a small constant

    Returns:
        An approximation of $f'_i(x_0, \ldots, x_{n-1})$
    """
    vals_plus = list(vals)
    vals_minus = list(vals)
    vals_plus[arg] = vals_plus[arg] + epsilon
    vals_minus[arg] = vals_minus[arg] - epsilon
    return (f(*vals_plus) - f(*vals_minus)) / (2.0 * epsilon)


variable_count = 1


def next_unique_id() -> int:
    "Process-wide counter shared by every graph node."
    global variable_count
    variable_count += 1
    return variable_count


class Variable(Protocol):
    def accumulate_derivative(self, x: Any) -> None:
        pass

    @property
    def unique_id(self) -> int:
        pass

    def is_leaf(self) -> bool:
        pass

    @property
    def parents(self) -> Iterable["Variable"]:
        pass

    def chain_rule(self, d_output: Any) -> Iterable[Tuple["Variable", Any]]:
        pass

    def sum_derivatives(self, a: Any, b: Any) -> Any:
        pass


def topological_sort(variable: Variable) -> List[Variable]:
    """
    Computes the topological order of the computation graph.

    Nodes are visited depth first and memoised by `unique_id`; every node is
    emitted after all of its inputs, then the order is reversed.

    Args:
        variable: The right-most variable

    Returns:
        Variables in order starting from the right.
    """
    order: List[Variable] = []
    visited = set()
    # Iterative post-order so deep graphs do not hit the recursion limit.
    stack: List[Tuple[Variable, bool]] = [(variable, False)]
    while stack:
        node, expanded = stack.pop()
        if expanded:
            order.append(node)
            continue
        if node.unique_id in visited:
            continue
        visited.add(node.unique_id)
        stack.append((node, True))
        for parent in reversed(list(node.parents)):
            if parent.unique_id not in visited:
                stack.append((parent, False))
    order.reverse()
    return order


def backpropagate(variable: Variable, deriv: Any) -> None:
    """
    Runs backpropagation on the computation graph in order to
    compute derivatives for the leaf nodes.

    Pending gradients live in an arena indexed by each node's position in the
    topological order. Leaves add their total into their gradient slot.

    Args:
        variable: Right-most variable
        deriv  : Its derivative that we want to propagate backward to the leaves.

    No return. Results are written to each leaf through `accumulate_derivative`.
    """
    order = topological_sort(variable)
    position: Dict[int, int] = {node.unique_id: i for i, node in enumerate(order)}
    pending: List[Optional[Any]] = [None] * len(order)
    pending[0] = deriv

    for i, node in enumerate(order):
        d = pending[i]
        if d is None:
            continue
        pending[i] = None
        if node.is_leaf():
            node.accumulate_derivative(d)
            continue
        for parent, grad in node.chain_rule(d):
            j = position[parent.unique_id]
            if pending[j] is None:
                pending[j] = grad
            else:
                pending[j] = parent.sum_derivatives(pending[j], grad)


@dataclass
class Context:
    """
    Context class is used by `Function` to store information during the forward pass.
    """

    saved_values: Tuple[Any, ...] = field(default_factory=tuple)

    def save_for_backward(self, *values: Any) -> None:
        "Store the given `values` if they need to be used during backpropagation."
        self.saved_values = values

    @property
    def saved_tensors(self) -> Tuple[Any, ...]:
        return self.saved_values
