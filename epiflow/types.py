# This file is part of epiflow, a toolkit for amortized inference in epidemic models.
# epiflow is licensed under the Apache License Version 2.0, see
# <https://www.apache.org/licenses/>.

from typing import Callable, Tuple, Union

import numpy as np
import torch

Array = Union[np.ndarray, torch.Tensor]
Shape = Union[torch.Size, Tuple[int, ...]]

# Called with `(epoch, test_loss)` every time the held-out batch is evaluated.
BatchCallback = Callable[[int, float], None]

__all__ = [
    "Array",
    "BatchCallback",
    "Shape",
]
