# This file is part of epiflow, a toolkit for amortized inference in epidemic models.
# epiflow is licensed under the Apache License Version 2.0, see
# <https://www.apache.org/licenses/>.

"""Utility functions for input/output."""

import logging
import os
from pathlib import Path
from typing import Union

import torch
from torch import nn

from epiflow.__version__ import __version__

logger = logging.getLogger(__name__)


def get_log_root():
    return os.path.join(os.getcwd(), "epiflow-logs")


def save_state(estimator: nn.Module, path: Union[str, Path]) -> None:
    """Persist the weights (and buffers) of a trained estimator.

    Everything that defines the estimator's outputs, including the fixed
    permutations and the standardizing statistics, is part of the state dict, so
    loading it into an estimator of the same architecture reproduces its outputs
    exactly.

    Args:
        estimator: The estimator, e.g. a `ConditionalFlow`.
        path: File to write to.
    """
    path = Path(path)
    path.parent.mkdir(parents=True, exist_ok=True)
    torch.save(
        {
            "epiflow_version": __version__,
            "class_name": estimator.__class__.__name__,
            "state_dict": estimator.state_dict(),
        },
        path,
    )
    logger.debug("Saved %s state to %s.", estimator.__class__.__name__, path)


def load_state(
    estimator: nn.Module, path: Union[str, Path], map_location: str = "cpu"
) -> nn.Module:
    """Load weights written by `save_state` into an estimator of the same
    architecture.

    Args:
        estimator: Freshly built estimator; its parameters are overwritten.
        path: File written by `save_state`.
        map_location: Device to map the stored tensors to.

    Returns:
        The estimator, in eval mode.
    """
    checkpoint = torch.load(path, map_location=map_location, weights_only=True)
    if checkpoint["class_name"] != estimator.__class__.__name__:
        raise ValueError(
            f"Checkpoint at {path} holds a {checkpoint['class_name']}, it cannot be "
            f"loaded into a {estimator.__class__.__name__}."
        )
    if checkpoint["epiflow_version"] != __version__:
        logger.warning(
            "Checkpoint was written by epiflow %s, loading it with %s.",
            checkpoint["epiflow_version"],
            __version__,
        )
    estimator.load_state_dict(checkpoint["state_dict"])
    estimator.eval()
    return estimator
