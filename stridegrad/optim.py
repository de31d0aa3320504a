from typing import Sequence

from .module import Parameter
from .scalar import Scalar
from .tensor import Tensor


class Optimizer:
    def __init__(self, parameters: Sequence[Parameter]):
        self.parameters = parameters


class SGD(Optimizer):
    """
    Plain gradient descent over a list of parameters.

    Tensor parameters are replaced by fresh leaves holding
    `value - lr * grad`, so no history carries over between steps. Scalar
    parameters are updated in place.
    """

    def __init__(self, parameters: Sequence[Parameter], lr: float = 1.0):
        super().__init__(parameters)
        self.lr = lr

    def zero_grad(self) -> None:
        for p in self.parameters:
            if p.value is None:
                continue
            if hasattr(p.value, "derivative"):
                if p.value.derivative is not None:
                    p.value.derivative = None
            if hasattr(p.value, "grad"):
                if p.value.grad is not None:
                    p.value.grad = None

    def step(self) -> None:
        for p in self.parameters:
            if p.value is None:
                continue
            if isinstance(p.value, Tensor):
                grad = p.value.grad
                if grad is not None:
                    value = p.value.to_numpy()
                    update = value - self.lr * grad.to_numpy()
                    p.update(
                        Tensor.make(
                            update.reshape(-1), p.value.shape, backend=p.value.backend
                        )
                    )
            elif isinstance(p.value, Scalar):
                if p.value.derivative is not None:
                    p.value.data = p.value.data - self.lr * p.value.derivative
