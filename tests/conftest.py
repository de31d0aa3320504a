from typing import Iterator

import pytest

import stridegrad
from stridegrad import ExecutionContext, TensorBackend


@pytest.fixture
def context() -> Iterator[ExecutionContext]:
    ctx = ExecutionContext(num_workers=4, parallel=True, gpu=False)
    yield ctx
    ctx.shutdown()


@pytest.fixture
def fast_backend(context: ExecutionContext) -> TensorBackend:
    return context.fast_backend


@pytest.fixture(params=["simple", "fast"])
def backend(request: pytest.FixtureRequest) -> Iterator[TensorBackend]:
    if request.param == "simple":
        yield stridegrad.SimpleBackend
        return
    ctx = ExecutionContext(num_workers=4, parallel=True, gpu=False)
    yield ctx.fast_backend
    ctx.shutdown()
