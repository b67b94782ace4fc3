# This file is part of epiflow, a toolkit for amortized inference in epidemic models.
# epiflow is licensed under the Apache License Version 2.0, see
# <https://www.apache.org/licenses/>.

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Callable, Optional, Sequence, Tuple

import torch
from torch import Tensor
from torch.distributions import Distribution

from epiflow.simulators.simutils import simulate_in_batches
from epiflow.utils.errors import ShapeMismatchError
from epiflow.utils.reparam import Reparameterization


@dataclass
class Batch:
    """Simulated training examples.

    Attributes:
        target: Reparameterized parameters, `(batch_dim, n_params)`.
        conditioning: Observations the posterior is conditioned on,
            `(batch_dim, *condition_shape)`.
        latent: Optional compartment trajectories, not consumed by the flow.
    """

    target: Tensor
    conditioning: Tensor
    latent: Optional[Tensor] = None

    def __post_init__(self):
        if self.target.dim() != 2:
            raise ShapeMismatchError(
                f"Targets must have shape (batch_dim, n_params), got "
                f"{tuple(self.target.shape)}."
            )
        sizes = {len(self.target), len(self.conditioning)}
        if self.latent is not None:
            sizes.add(len(self.latent))
        if len(sizes) != 1:
            raise ShapeMismatchError(
                f"Batch entries have inconsistent batch sizes {sorted(sizes)}."
            )

    def __len__(self) -> int:
        return len(self.target)

    def to(self, device: str) -> "Batch":
        return Batch(
            self.target.to(device),
            self.conditioning.to(device),
            None if self.latent is None else self.latent.to(device),
        )


class BatchGenerator(ABC):
    """Pull-based source of freshly simulated batches."""

    @abstractmethod
    def next_batch(self, size: int) -> Batch:
        """Simulate and return a new batch of `size` examples."""

    @property
    @abstractmethod
    def num_params(self) -> int:
        """Dimensionality of the targets."""


class EpidemicSimulator(BatchGenerator):
    r"""Base class of the epidemic simulators.

    A simulator draws parameters from its `prior`, runs the transition model with
    `simulate` and reparameterizes the natural-space targets with `reparam`, so
    that the targets of a `Batch` live on the full real line.

    Subclasses implement `simulate(theta) -> (natural_target, conditioning,
    latent)`.
    """

    #: Names of the target dimensions in natural space.
    param_names: Tuple[str, ...] = ()

    def __init__(
        self,
        prior: Distribution,
        reparam: Reparameterization,
        num_workers: int = 1,
        sim_batch_size: Optional[int] = None,
        show_progress_bars: bool = False,
    ):
        """
        Args:
            prior: Distribution over the simulator's input parameters.
            reparam: Map from natural to unconstrained targets.
            num_workers: Number of joblib workers used to simulate a batch.
            sim_batch_size: Simulations per worker call, `None` for all at once.
            show_progress_bars: Whether to show a progress bar while simulating.
        """
        if reparam.num_params != len(self.param_names):
            raise ShapeMismatchError(
                f"{self.__class__.__name__} has {len(self.param_names)} targets, but "
                f"the reparameterization expects {reparam.num_params}."
            )
        self.prior = prior
        self.reparam = reparam
        self.num_workers = num_workers
        self.sim_batch_size = sim_batch_size
        self.show_progress_bars = show_progress_bars

    @property
    def num_params(self) -> int:
        return self.reparam.num_params

    @abstractmethod
    def simulate(self, theta: Tensor) -> Tuple[Tensor, Tensor, Optional[Tensor]]:
        """Run the transition model for a batch of prior draws.

        Args:
            theta: Prior draws of shape `(batch_dim, prior_dim)`.

        Returns:
            Natural-space targets `(batch_dim, n_params)`, conditioning and optional
            latent trajectories.
        """

    def __call__(self, theta: Tensor) -> Tuple[Tensor, Tensor, Optional[Tensor]]:
        return self.simulate(theta)

    def next_batch(self, size: int) -> Batch:
        theta = self.prior.sample((size,))
        # Worker processes do not share the torch generator of the main process.
        seed = None
        if self.num_workers != 1:
            seed = int(torch.randint(2**31 - 1, (1,)))
        target, conditioning, latent = simulate_in_batches(
            self,
            theta,
            sim_batch_size=self.sim_batch_size,
            num_workers=self.num_workers,
            seed=seed,
            show_progress_bars=self.show_progress_bars,
        )
        return Batch(self.reparam.forward(target), conditioning, latent)


class SimpleBatchGenerator(BatchGenerator):
    """Batch generator from a prior and a simulator callable `theta -> x`.

    Example:
    ```
    prior = BoxUniform(-torch.ones(2), torch.ones(2))
    simulator = lambda theta: theta + 0.1 * torch.randn_like(theta)
    generator = SimpleBatchGenerator(prior, simulator)
    batch = generator.next_batch(64)
    ```
    """

    def __init__(
        self,
        prior: Distribution,
        simulator: Callable[[Tensor], Tensor],
        reparam: Optional[Reparameterization] = None,
    ):
        self.prior = prior
        self.simulator = simulator
        self.reparam = reparam

    @property
    def num_params(self) -> int:
        return int(torch.Size(self.prior.event_shape).numel())

    def next_batch(self, size: int) -> Batch:
        theta = self.prior.sample((size,))
        x = self.simulator(theta)
        target = theta if self.reparam is None else self.reparam.forward(theta)
        return Batch(target, x)


def split_prior_bounds(
    bounds: Sequence[Tuple[float, float]],
) -> Tuple[Tensor, Tensor]:
    """Split `[(low, high), ...]` into tensors of lower and upper bounds."""
    low, high = zip(*bounds)
    low_t, high_t = torch.tensor(low), torch.tensor(high)
    if (low_t >= high_t).any():
        raise ValueError("Every lower prior bound must be below its upper bound.")
    return low_t, high_t
