"""Type aliases for numpy arrays and numeric types used by the registration package."""
from typing import Any, Mapping, Union

import numpy as np
import numpy.typing as npt

# Array type aliases
NumArray = npt.NDArray[Any]
FloatArray = npt.NDArray[np.float64]
IntArray = npt.NDArray[np.int64]

# Numeric type aliases
Int = Union[int, np.integer]

# tile id -> pixel buffer, (Y, X) or (C, Y, X)
PixelTable = Mapping[int, NumArray]
