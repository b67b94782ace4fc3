# This file is part of epiflow, a toolkit for amortized inference in epidemic models.
# epiflow is licensed under the Apache License Version 2.0, see
# <https://www.apache.org/licenses/>.

from typing import Tuple

import torch
from pyknos.nflows.distributions import Distribution
from torch import Tensor, nn

from epiflow.neural_nets.estimators.base import ConditionalDensityEstimator
from epiflow.neural_nets.transforms import CompositeBlock
from epiflow.types import Shape
from epiflow.utils.errors import ShapeMismatchError


class ConditionalFlow(ConditionalDensityEstimator):
    r"""Conditional normalizing flow $q(\theta | x)$ with a learned summarizer.

    The conditioning $x$ is compressed by the `embedding_net` into a summary $c$.
    The `transform` maps parameters to the latent space of the base distribution,
    $z = f(\theta; c)$, so that

    $\log q(\theta|x) = \log p_z(f(\theta; c)) + \log |\det \partial f / \partial
    \theta|$.

    Sampling pushes base draws through the inverse transform. The summary of every
    conditioning entry is computed once and shared by all of its samples.
    """

    def __init__(
        self,
        transform: CompositeBlock,
        distribution: Distribution,
        embedding_net: nn.Module,
        input_shape: torch.Size,
        condition_shape: torch.Size,
    ) -> None:
        """
        Args:
            transform: Composition of coupling, permutation and standardizing blocks.
            distribution: Base distribution with `log_prob(inputs)` and
                `sample(num_samples)`, e.g. a standard normal.
            embedding_net: Summarizer from conditioning to the transform's context.
            input_shape: Event shape of the parameters, `(n_params,)`.
            condition_shape: Event shape of the conditioning.
        """
        super().__init__(transform, input_shape, condition_shape)
        self._embedding_net = embedding_net
        self._distribution = distribution
        self.net: CompositeBlock

    @property
    def embedding_net(self) -> nn.Module:
        r"""Return the embedding network."""
        return self._embedding_net

    @property
    def transform(self) -> CompositeBlock:
        return self.net

    @property
    def distribution(self) -> Distribution:
        return self._distribution

    def summarize(self, condition: Tensor) -> Tensor:
        """Return the summary of a batch of conditions, `(batch_dim, summary_dim)`."""
        self._check_condition_shape(condition)
        condition = condition.reshape(-1, *self.condition_shape)
        summary = self._embedding_net(condition)
        return summary.reshape(condition.shape[0], -1)

    def forward(self, input: Tensor, condition: Tensor) -> Tuple[Tensor, Tensor]:
        r"""Map parameters to the latent space.

        Args:
            input: Parameters of shape `(batch_dim, *input_shape)`.
            condition: Conditions of shape `(batch_dim, *condition_shape)`.

        Returns:
            Latent values of shape `(batch_dim, *input_shape)` and the
            log-determinant of the forward map, shape `(batch_dim,)`.
        """
        self._check_input_shape(input)
        summary = self.summarize(condition)
        if summary.shape[0] != input.shape[0]:
            raise ShapeMismatchError(
                f"Batch shape of condition {summary.shape[0]} and input "
                f"{input.shape[0]} do not match."
            )
        return self.net(input.reshape(input.shape[0], -1), summary)

    def inverse(self, latent: Tensor, condition: Tensor) -> Tensor:
        r"""Map latent values back to parameter space, the inverse of `forward`."""
        self._check_input_shape(latent)
        summary = self.summarize(condition)
        if summary.shape[0] != latent.shape[0]:
            raise ShapeMismatchError(
                f"Batch shape of condition {summary.shape[0]} and latent "
                f"{latent.shape[0]} do not match."
            )
        target, _ = self.net.inverse(latent.reshape(latent.shape[0], -1), summary)
        return target.reshape(latent.shape)

    def log_prob(self, input: Tensor, condition: Tensor) -> Tensor:
        r"""Return the log probabilities of the inputs given a condition or multiple
        i.e. batched conditions.

        Args:
            input: Inputs to evaluate the log probability on. Of shape
                `(sample_dim, batch_dim, *event_shape)`.
            condition: Conditions of shape `(batch_dim, *condition_shape)`.

        Raises:
            ShapeMismatchError: If `input_batch_dim != condition_batch_dim`.

        Returns:
            Sample-wise log probabilities, shape `(input_sample_dim, input_batch_dim)`.
        """
        self._check_input_shape(input)
        input_sample_dim = input.shape[0]
        input_batch_dim = input.shape[1]
        summary = self.summarize(condition)

        if summary.shape[0] != input_batch_dim:
            raise ShapeMismatchError(
                f"Batch shape of condition {summary.shape[0]} and input "
                f"{input_batch_dim} do not match."
            )

        # Single batch dimension for the blocks, sample-major like the input.
        input = input.reshape(input_sample_dim * input_batch_dim, -1)
        summary = summary.repeat(input_sample_dim, 1)

        latent, logabsdet = self.net(input, summary)
        log_probs = self._distribution.log_prob(latent) + logabsdet
        return log_probs.reshape(input_sample_dim, input_batch_dim)

    def loss(self, input: Tensor, condition: Tensor) -> Tensor:
        r"""Return the negative log-probability for training the density estimator.

        Args:
            input: Inputs of shape `(batch_dim, *input_event_shape)`.
            condition: Conditions of shape `(batch_dim, *condition_event_shape)`.

        Returns:
            Negative log-probability of shape `(batch_dim,)`.
        """
        return -self.log_prob(input.unsqueeze(0), condition)[0]

    def _sample_with_logabsdet(
        self, sample_shape: Shape, condition: Tensor
    ) -> Tuple[Tensor, Tensor, Tensor]:
        num_samples = torch.Size(sample_shape).numel()
        summary = self.summarize(condition)
        condition_batch_dim = summary.shape[0]

        noise = self._distribution.sample(num_samples * condition_batch_dim)
        summary = summary.repeat(num_samples, 1)
        samples, logabsdet = self.net.inverse(noise, summary)
        return samples, noise, logabsdet

    def sample(self, sample_shape: Shape, condition: Tensor) -> Tensor:
        r"""Return samples from the density estimator.

        Args:
            sample_shape: Shape of the samples to return.
            condition: Conditions of shape `(batch_dim, *condition_shape)`.

        Returns:
            Samples of shape `(*sample_shape, condition_batch_dim, *input_shape)`.
        """
        samples, _, _ = self._sample_with_logabsdet(sample_shape, condition)
        return samples.reshape(*sample_shape, -1, *self.input_shape)

    def sample_and_log_prob(
        self, sample_shape: Shape, condition: Tensor
    ) -> Tuple[Tensor, Tensor]:
        r"""Return samples and their density from the density estimator.

        Args:
            sample_shape: Shape of the samples to return.
            condition: Conditions of shape `(batch_dim, *condition_shape)`.

        Returns:
            Samples of shape `(*sample_shape, condition_batch_dim, *input_shape)`
            and associated log probs of shape `(*sample_shape, condition_batch_dim)`.
        """
        samples, noise, logabsdet = self._sample_with_logabsdet(
            sample_shape, condition
        )
        # The inverse log-determinant enters with a negative sign.
        log_probs = self._distribution.log_prob(noise) - logabsdet
        return (
            samples.reshape(*sample_shape, -1, *self.input_shape),
            log_probs.reshape(*sample_shape, -1),
        )
