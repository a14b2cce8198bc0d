import builtins
from typing import Tuple, Union

import numpy as np


### Types

TensorLike = np.ndarray
Number = Union[builtins.int, builtins.float]
Index = Union[int, slice, Tuple[int, ...], TensorLike]


### Constants

_S = slice(None)
