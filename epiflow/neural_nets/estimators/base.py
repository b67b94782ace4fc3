# This file is part of epiflow, a toolkit for amortized inference in epidemic models.
# epiflow is licensed under the Apache License Version 2.0, see
# <https://www.apache.org/licenses/>.

from abc import ABC, abstractmethod
from typing import Tuple

import torch
from torch import Tensor, nn

from epiflow.types import Shape
from epiflow.utils.errors import ShapeMismatchError


class ConditionalDensityEstimator(nn.Module, ABC):
    r"""Trainable density $q(\theta | x)$ over reparameterized epidemic parameters
    $\theta$, conditioned on observations $x$.

    The training loop only needs `loss`, the posterior only needs `log_prob` and
    `sample`. Parameters are batched as `(sample_dim, batch_dim, *input_shape)`,
    observations as `(batch_dim, *condition_shape)`.
    """

    def __init__(
        self, net: nn.Module, input_shape: Shape, condition_shape: Shape
    ) -> None:
        """
        Args:
            net: The network that carries the trainable weights.
            input_shape: Event shape of the parameters, `(n_params,)`.
            condition_shape: Event shape of one observation, e.g. `(T,)` for case
                counts or `(1 + T,)` with a prepended query time.
        """
        super().__init__()
        self.net = net
        self._input_shape = torch.Size(input_shape)
        self._condition_shape = torch.Size(condition_shape)

    @property
    def input_shape(self) -> torch.Size:
        return self._input_shape

    @property
    def condition_shape(self) -> torch.Size:
        return self._condition_shape

    @abstractmethod
    def loss(self, input: Tensor, condition: Tensor) -> Tensor:
        """Per-example training loss of shape `(batch_dim,)`."""

    @abstractmethod
    def log_prob(self, input: Tensor, condition: Tensor) -> Tensor:
        """Log density of shape `(sample_dim, batch_dim)`."""

    @abstractmethod
    def sample(self, sample_shape: Shape, condition: Tensor) -> Tensor:
        """Samples of shape `(*sample_shape, batch_dim, *input_shape)`."""

    def _check_input_shape(self, input: Tensor) -> None:
        _check_trailing_shape(input, self.input_shape, "parameters")

    def _check_condition_shape(self, condition: Tensor) -> None:
        _check_trailing_shape(condition, self.condition_shape, "observations")


def _check_trailing_shape(
    values: Tensor, event_shape: Tuple[int, ...], name: str
) -> None:
    """Raise unless the last dimensions of `values` equal `event_shape`."""
    num_event_dims = len(event_shape)
    trailing = values.shape[values.dim() - num_event_dims :]
    if values.dim() < num_event_dims or trailing != event_shape:
        raise ShapeMismatchError(
            f"Expected {name} with trailing shape {tuple(event_shape)}, got "
            f"{tuple(values.shape)}."
        )
