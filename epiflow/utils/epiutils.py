# This file is part of epiflow, a toolkit for amortized inference in epidemic models.
# epiflow is licensed under the Apache License Version 2.0, see
# <https://www.apache.org/licenses/>.

import random
import warnings
from typing import Optional, Tuple

import numpy as np
import torch
from torch import Tensor

from epiflow.neural_nets.transforms import StandardizingBlock
from epiflow.utils.errors import NumericalDegeneracyError


def seed_all_backends(seed: Optional[int] = None) -> None:
    """Sets all python, numpy and pytorch seeds."""

    if seed is None:
        seed = int(torch.randint(1_000_000, size=(1,)))

    random.seed(seed)
    np.random.seed(seed)
    torch.manual_seed(seed)
    torch.cuda.manual_seed(seed)
    torch.backends.cudnn.deterministic = True  # type: ignore
    torch.backends.cudnn.benchmark = False  # type: ignore


def z_score_parser(z_score_flag: Optional[str]) -> Tuple[bool, bool]:
    """Parses string z-score flag into booleans.

    Converts string flag into booleans denoting whether to z-score or not, and whether
    data dimensions are structured or independent.

    Args:
        z_score_flag: str flag for z-scoring method stating whether the data
            dimensions are "structured" or "independent", or does not require z-scoring
            ("none" or None).

    Returns:
        Flag for whether or not to z-score, and whether data is structured
    """
    if (z_score_flag is None) or (z_score_flag == "none"):
        z_score_bool, structured_data = False, False
    elif (z_score_flag == "independent") or (z_score_flag == "structured"):
        z_score_bool = True
        structured_data = z_score_flag == "structured"
    else:
        raise ValueError(
            "Invalid z-scoring option. Use 'none', 'independent', or 'structured'."
        )

    return z_score_bool, structured_data


def finite_rows(batch_t: Tensor) -> Tensor:
    """Return a boolean mask of the rows of `batch_t` without NaN or Inf entries."""
    batch_t = batch_t.reshape(batch_t.shape[0], -1)
    return torch.isfinite(batch_t).all(dim=1)


def standardizing_block(
    batch_t: Tensor, structured_dims: bool = False, min_std: float = 1e-14
) -> StandardizingBlock:
    """Builds a fixed invertible block that z-scores its inputs.

    Args:
        batch_t: Batched tensor from which mean and std deviation (across
            first dimension) are computed.
        structured_dims: Whether data dimensions are structured, which requires
            computing a single mean and std for all dimensions, or independent
            (default), which z-scores dimensions independently.
        min_std: Minimum value of the standard deviation to use when z-scoring to
            avoid division by zero.

    Returns:
        Invertible block for z-scoring.
    """

    is_valid_t = finite_rows(batch_t)
    if not is_valid_t.all():
        warnings.warn(
            f"Found {int((~is_valid_t).sum())} non-finite rows in the batch used "
            "for z-scoring. They are ignored for computing mean and std.",
            stacklevel=2,
        )
    valid_t = batch_t[is_valid_t]
    if len(valid_t) < 2:
        # A std cannot be estimated from less than two rows, fall back to identity.
        t_mean = torch.zeros(batch_t.shape[1:])
        t_std = torch.ones(batch_t.shape[1:])
    elif structured_dims:
        # Structured data so compute a single mean over all dimensions.
        t_mean = torch.mean(valid_t).expand(batch_t.shape[1:])
        sample_std = torch.std(valid_t, dim=1)
        sample_std[sample_std < min_std] = min_std
        t_std = torch.mean(sample_std).expand(batch_t.shape[1:])
    else:
        t_mean = torch.mean(valid_t, dim=0)
        t_std = torch.std(valid_t, dim=0)
        t_std[t_std < min_std] = min_std

    return StandardizingBlock(mean=t_mean.clone(), std=t_std.clone())


def assert_all_finite(quantity: Tensor, description: str) -> None:
    """Raise a `NumericalDegeneracyError` if `quantity` contains NaN or Inf.

    Args:
        quantity: Tensor to check.
        description: Where the value came from, used in the error message, e.g.
            "training loss at epoch 3, step 2".
    """
    if not torch.isfinite(quantity).all():
        num_bad = int((~torch.isfinite(quantity)).sum())
        raise NumericalDegeneracyError(
            f"Encountered {num_bad} non-finite value(s) in the {description}."
        )
