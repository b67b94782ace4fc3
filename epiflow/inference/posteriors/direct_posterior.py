# This file is part of epiflow, a toolkit for amortized inference in epidemic models.
# epiflow is licensed under the Apache License Version 2.0, see
# <https://www.apache.org/licenses/>.

from contextlib import contextmanager
from typing import Iterator, Optional

import torch
from torch import Tensor
from tqdm.auto import tqdm

from epiflow.neural_nets.estimators.base import ConditionalDensityEstimator
from epiflow.types import Array, Shape
from epiflow.utils.errors import NumericalDegeneracyError, ShapeMismatchError
from epiflow.utils.reparam import Reparameterization
from epiflow.utils.torchutils import ensure_batched, process_device


class DirectPosterior:
    r"""Posterior $p(\theta|x_o)$ with `log_prob()` and `sample()` methods, backed
    by a trained conditional flow.<br/><br/>
    The flow models the reparameterized (unconstrained) parameters. This class maps
    its samples back to natural space with the inverse reparameterization, and
    evaluates densities in natural space including the Jacobian of that map.<br/><br/>
    The posterior only reads the weights of the estimator and restores its
    train/eval mode after every call. Passing a `device` moves the estimator there.
    Do not train the same estimator while sampling from it; `NPE.build_posterior()`
    hands out a copy.
    """

    def __init__(
        self,
        posterior_estimator: ConditionalDensityEstimator,
        reparam: Optional[Reparameterization] = None,
        max_sampling_batch_size: int = 10_000,
        device: Optional[str] = None,
    ):
        """
        Args:
            posterior_estimator: The trained neural posterior.
            reparam: Map between natural and unconstrained parameters. `None` if the
                estimator models natural-space parameters directly.
            max_sampling_batch_size: Maximum number of draws pushed through the flow
                at once.
            device: Device for sampling, e.g., "cpu", "cuda" or "cuda:0". If None,
                the device of the estimator's parameters is used.
        """
        input_numel = posterior_estimator.input_shape.numel()
        if reparam is not None and reparam.num_params != input_numel:
            raise ShapeMismatchError(
                f"Reparameterization of {reparam.num_params} parameters does not "
                f"match the estimator's {input_numel} parameters."
            )
        if device is None:
            device = str(next(posterior_estimator.parameters()).device)
        self._device = process_device(device)

        self.posterior_estimator = posterior_estimator.to(self._device)
        self.reparam = reparam
        self.max_sampling_batch_size = max_sampling_batch_size
        self._x: Optional[Tensor] = None

        self._purpose = """It samples the posterior network and maps the samples back
            to the natural parameter space."""

    @property
    def default_x(self) -> Optional[Tensor]:
        """Return default x used by `.sample(), .log_prob` as conditioning context."""
        return self._x

    def set_default_x(self, x: Array) -> "DirectPosterior":
        r"""Set new default x for `.sample(), .log_prob` to use as conditioning context.

        This is a pure convenience to avoid having to repeatedly specify `x` in calls to
        `.sample()` and `.log_prob()` - only $\theta$ needs to be passed.

        NOTE: this method is chainable, i.e. will return the DirectPosterior object so
        that calls like `posterior.set_default_x(my_x).sample((100,))` are possible.

        Args:
            x: The default observation to set for the posterior $p(\theta|x)$.
        Returns:
            `DirectPosterior` that will use a default `x` when not explicitly passed.
        """
        self._x = self._process_x(x)
        return self

    def _process_x(self, x: Array) -> Tensor:
        x = torch.as_tensor(x, dtype=torch.float32, device=self._device)
        condition_shape = self.posterior_estimator.condition_shape
        if x.shape == condition_shape:
            x = x.unsqueeze(0)
        if x.shape[1:] != condition_shape:
            raise ShapeMismatchError(
                f"Observation of shape {tuple(x.shape)} does not match the "
                f"estimator's condition shape {tuple(condition_shape)}."
            )
        return x

    def _x_else_default_x(self, x: Optional[Array]) -> Tensor:
        if x is not None:
            return self._process_x(x)
        elif self.default_x is None:
            raise ValueError(
                "Context `x` needed when a default has not been set."
                "If you'd like to have a default, use the `.set_default_x()` method."
            )
        else:
            return self.default_x

    def sample(
        self,
        sample_shape: Shape = torch.Size(),
        x: Optional[Array] = None,
        max_sampling_batch_size: Optional[int] = None,
        show_progress_bars: bool = True,
    ) -> Tensor:
        r"""Return samples from posterior distribution $p(\theta|x)$ in natural space.

        Args:
            sample_shape: Desired shape of samples that are drawn from posterior. If
                sample_shape is multidimensional we simply draw `sample_shape.numel()`
                samples and then reshape into the desired shape.
            x: A single observation. Defaults to `default_x`.
            max_sampling_batch_size: Overrides the maximum number of draws per chunk.
            show_progress_bars: Whether to show sampling progress monitor.

        Returns:
            Samples of shape `(*sample_shape, n_params)`.
        """
        x = self._x_else_default_x(x)
        if x.shape[0] > 1:
            raise ValueError(
                ".sample() supports only `batchsize == 1`. If you intend "
                "to sample multiple observations, use `.sample_batched()`."
            )
        samples = self.sample_batched(
            sample_shape,
            x,
            max_sampling_batch_size=max_sampling_batch_size,
            show_progress_bars=show_progress_bars,
        )
        return samples.squeeze(-2)  # Remove batch dimension.

    def sample_batched(
        self,
        sample_shape: Shape,
        x: Array,
        max_sampling_batch_size: Optional[int] = None,
        show_progress_bars: bool = True,
    ) -> Tensor:
        r"""Given a batch of observations [x_1, ..., x_B] this function samples from
        posteriors $p(\theta|x_1)$, ... ,$p(\theta|x_B)$, in a batched (i.e. vectorized)
        manner.

        The summary of every observation is computed once per chunk of draws.

        Args:
            sample_shape: Desired shape of samples that are drawn from the posterior
                given every observation.
            x: A batch of observations, of shape `(batch_dim, *condition_shape)`.
            max_sampling_batch_size: Overrides the maximum number of draws per chunk.
            show_progress_bars: Whether to show sampling progress monitor.

        Returns:
            Samples from the posteriors of shape `(*sample_shape, B, n_params)` in
            natural space.

        Raises:
            NumericalDegeneracyError: If any sample is NaN or Inf.
        """
        num_samples = torch.Size(sample_shape).numel()
        if num_samples < 1:
            raise ValueError(f"Need at least one sample, got shape {sample_shape}.")
        x = self._process_x(x)
        num_xs = x.shape[0]

        max_sampling_batch_size = (
            self.max_sampling_batch_size
            if max_sampling_batch_size is None
            else max_sampling_batch_size
        )
        # Number of draws per observation and chunk.
        chunk_size = max(1, max_sampling_batch_size // num_xs)

        chunks = []
        with self._evaluating(), tqdm(
            total=num_samples,
            disable=not show_progress_bars,
            desc=f"Drawing {num_samples} posterior samples for {num_xs} observations",
        ) as pbar:
            num_remaining = num_samples
            while num_remaining > 0:
                num_chunk = min(chunk_size, num_remaining)
                chunks.append(self.posterior_estimator.sample((num_chunk,), x))
                num_remaining -= num_chunk
                pbar.update(num_chunk)

        samples = torch.cat(chunks, dim=0)
        samples = samples.reshape(num_samples, num_xs, -1)
        if self.reparam is not None:
            samples = self.reparam.inverse(samples)

        finite = torch.isfinite(samples).all(dim=-1).all(dim=0)
        if not finite.all():
            bad_rows = torch.nonzero(~finite).reshape(-1).tolist()
            raise NumericalDegeneracyError(
                f"Posterior samples contain NaN or Inf for the observations at "
                f"indices {bad_rows}."
            )
        return samples.reshape(*sample_shape, num_xs, samples.shape[-1])

    def log_prob(
        self,
        theta: Tensor,
        x: Optional[Array] = None,
    ) -> Tensor:
        r"""Returns the log-probability of the posterior $p(\theta|x)$ in natural
        space.

        The density of the flow over the reparameterized values $z$ is corrected by
        the Jacobian of the reparameterization,
        $\log p(\theta|x) = \log q(z|x) - \log |\det \partial\theta / \partial z|$.

        Args:
            theta: Parameters $\theta$ in natural space, `(batch_dim, n_params)`.
            x: A single observation. Defaults to `default_x`.

        Returns:
            `(len(θ),)`-shaped log posterior probability $\log p(\theta|x)$ for θ in
            the support of the reparameterization, -∞ (corresponding to 0
            probability) outside.
        """
        x = self._x_else_default_x(x)
        if x.shape[0] > 1:
            raise ValueError(
                ".log_prob() supports only `batchsize == 1`. Evaluate the "
                "observations one at a time."
            )
        theta = ensure_batched(torch.as_tensor(theta, dtype=torch.float32)).to(
            self._device
        )

        if self.reparam is None:
            unconstrained = theta
            log_abs_det = torch.zeros(len(theta), device=self._device)
        else:
            unconstrained = self.reparam.forward(theta)
            log_abs_det = self.reparam.log_abs_det_jacobian(unconstrained)

        with self._evaluating():
            flow_log_prob = self.posterior_estimator.log_prob(
                unconstrained.unsqueeze(1), x
            )[:, 0]
        log_prob = flow_log_prob - log_abs_det
        if self.reparam is not None:
            in_support = self._in_support(theta)
            log_prob = torch.where(
                in_support, log_prob, torch.full_like(log_prob, -float("inf"))
            )
        return log_prob

    @contextmanager
    def _evaluating(self) -> Iterator[None]:
        """Run the estimator in eval mode without gradients, then restore its mode."""
        was_training = self.posterior_estimator.training
        self.posterior_estimator.eval()
        try:
            with torch.no_grad():
                yield
        finally:
            self.posterior_estimator.train(was_training)

    def _in_support(self, theta: Tensor) -> Tensor:
        assert self.reparam is not None
        kinds = self.reparam.kinds
        positive = torch.tensor([k == "log" for k in kinds], device=theta.device)
        unit = torch.tensor([k == "logit" for k in kinds], device=theta.device)
        ok = torch.isfinite(theta)
        ok = ok & (~positive | (theta > 0))
        ok = ok & (~unit | ((theta > 0) & (theta < 1)))
        return ok.all(dim=-1)

    def __repr__(self):
        return (
            f"{self.__class__.__name__}(posterior_estimator="
            f"{self.posterior_estimator.__class__.__name__}, reparam={self.reparam})"
        )

    def __str__(self):
        desc = (
            f"Posterior conditional density p(θ|x) of type {self.__class__.__name__}. "
            f"{self._purpose}"
        )

        return desc


def sample_posterior(
    flow: ConditionalDensityEstimator,
    n_samples: int,
    conditioning: Array,
    reparam: Optional[Reparameterization] = None,
    max_sampling_batch_size: int = 10_000,
    show_progress_bars: bool = False,
) -> Tensor:
    """Draw posterior samples in natural space from a trained flow.

    Args:
        flow: Trained estimator. Its weights, device and train/eval mode are left
            as they were.
        n_samples: Number of samples per conditioning entry.
        conditioning: A single conditioning entry of shape `condition_shape`, or a
            batch of `k` entries of shape `(k, *condition_shape)`.
        reparam: Inverse-reparameterization applied to the flow's output.
        max_sampling_batch_size: Maximum number of draws pushed through the flow at
            once.
        show_progress_bars: Whether to show sampling progress monitor.

    Returns:
        Samples of shape `(n_samples, n_params)` for a single conditioning entry and
        `(n_samples, k, n_params)` for a batch.
    """
    conditioning = torch.as_tensor(conditioning, dtype=torch.float32)
    posterior = DirectPosterior(
        flow, reparam=reparam, max_sampling_batch_size=max_sampling_batch_size
    )
    if conditioning.shape == flow.condition_shape:
        return posterior.sample(
            (n_samples,), conditioning, show_progress_bars=show_progress_bars
        )
    return posterior.sample_batched(
        (n_samples,), conditioning, show_progress_bars=show_progress_bars
    )
