"""stridegrad is a small reverse-mode autodiff engine over scalars and strided tensors.

Tensors run on one of three interchangeable backends: the naive reference
kernels (`SimpleBackend`), worker-parallel numba kernels and numba CUDA
kernels. The parallel and GPU backends take their threads and device from an
`ExecutionContext`.
"""

from .testing import MathTest, MathTestVariable  # type: ignore # noqa: F401,F403
from .operators import UnsupportedOperation  # noqa: F401,F403
from .tensor_data import *  # noqa: F401,F403
from .tensor_ops import *  # noqa: F401,F403
from .worker_pool import *  # noqa: F401,F403
from .fast_ops import *  # noqa: F401,F403
from .context import *  # noqa: F401,F403
from .autodiff import *  # noqa: F401,F403
from .scalar_functions import *  # noqa: F401,F403
from .scalar import *  # noqa: F401,F403
from .tensor import *  # noqa: F401,F403
from .tensor_functions import *  # noqa: F401,F403
from .module import *  # noqa: F401,F403
from .optim import *  # noqa: F401,F403
from .datasets import *  # noqa: F401,F403
from . import fast_ops, cuda_ops  # noqa: F401,F403
