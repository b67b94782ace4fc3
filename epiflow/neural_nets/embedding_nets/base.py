# This file is part of epiflow, a toolkit for amortized inference in epidemic models.
# epiflow is licensed under the Apache License Version 2.0, see
# <https://www.apache.org/licenses/>.

from abc import ABC, abstractmethod
from typing import Optional, Tuple

import torch
from torch import Tensor, nn

from epiflow.utils.errors import InvalidConditioningError


class SequenceSummarizer(nn.Module, ABC):
    r"""Maps observed case-count sequences to fixed-size summary vectors.

    Summarizers consume the conditioning tensor produced by the simulators. With
    `uses_query_time=False` it has shape `(batch_dim, num_timepoints)`; with
    `uses_query_time=True` the query time is prepended, i.e. the shape is
    `(batch_dim, 1 + num_timepoints)` and column 0 holds $t$.

    Query times are 1-indexed and inclusive: $t$ means that observations
    $1, \dots, t$ are known. Query times outside $[1, T]$ or with a fractional part
    are rejected with an `InvalidConditioningError`.
    """

    def __init__(self, num_timepoints: int, output_dim: int, uses_query_time: bool):
        super().__init__()
        if num_timepoints < 1:
            raise ValueError(f"`num_timepoints` must be >= 1, got {num_timepoints}.")
        self.num_timepoints = num_timepoints
        self.output_dim = output_dim
        self.uses_query_time = uses_query_time

    @property
    def condition_shape(self) -> Tuple[int]:
        """Event shape of the conditioning tensor passed to `forward`."""
        return (self.num_timepoints + int(self.uses_query_time),)

    def forward(self, x: Tensor) -> Tensor:
        """Summarize a conditioning tensor.

        Args:
            x: Conditioning of shape `(batch_dim, *condition_shape)`.

        Returns:
            Summary of shape `(batch_dim, output_dim)`.
        """
        if x.dim() != 2 or x.shape[1] != self.condition_shape[0]:
            raise InvalidConditioningError(
                f"{self.__class__.__name__} expects conditioning of shape "
                f"(batch_dim, {self.condition_shape[0]}), got {tuple(x.shape)}."
            )
        if self.uses_query_time:
            return self.summarize(x[:, 1:], query_time=x[:, 0])
        return self.summarize(x)

    @abstractmethod
    def summarize(
        self, sequence: Tensor, query_time: Optional[Tensor] = None
    ) -> Tensor:
        """Return the summary of `sequence`, shape `(batch_dim, output_dim)`.

        Args:
            sequence: Observations of shape `(batch_dim, num_timepoints)`.
            query_time: Optional per-example query times of shape `(batch_dim,)`.
        """

    def _check_sequence(self, sequence: Tensor) -> None:
        if sequence.dim() != 2 or sequence.shape[1] != self.num_timepoints:
            raise InvalidConditioningError(
                f"Expected a sequence of shape (batch_dim, {self.num_timepoints}), "
                f"got {tuple(sequence.shape)}."
            )

    def _check_query_time(self, query_time: Tensor, batch_size: int) -> Tensor:
        """Validate query times and return them as a long tensor of shape
        `(batch_dim,)`."""
        query_time = torch.as_tensor(query_time).reshape(-1)
        if query_time.numel() == 1 and batch_size > 1:
            query_time = query_time.expand(batch_size)
        if query_time.numel() != batch_size:
            raise InvalidConditioningError(
                f"Got {query_time.numel()} query times for {batch_size} sequences."
            )
        if torch.is_floating_point(query_time):
            if not torch.isfinite(query_time).all() or (
                query_time != torch.round(query_time)
            ).any():
                raise InvalidConditioningError(
                    "Query times must be whole numbers of time steps."
                )
        query_time = query_time.long()
        out_of_bounds = (query_time < 1) | (query_time > self.num_timepoints)
        if out_of_bounds.any():
            raise InvalidConditioningError(
                f"Query times must lie in [1, {self.num_timepoints}], got "
                f"{query_time[out_of_bounds].tolist()}."
            )
        return query_time
