# This file is part of epiflow, a toolkit for amortized inference in epidemic models.
# epiflow is licensed under the Apache License Version 2.0, see
# <https://www.apache.org/licenses/>.

import logging
from typing import Optional, Sequence, Tuple

import numpy as np
import torch
from scipy.integrate import solve_ivp
from torch import Tensor

from epiflow.simulators.base import EpidemicSimulator, split_prior_bounds
from epiflow.utils.errors import NumericalDegeneracyError
from epiflow.utils.reparam import Reparameterization
from epiflow.utils.torchutils import BoxUniform

logger = logging.getLogger(__name__)


def _sir_rhs(t: float, y: np.ndarray, beta: np.ndarray, gamma: np.ndarray):
    # State is stacked as [s_1..s_B, i_1..i_B, r_1..r_B].
    s, i, _ = y.reshape(3, -1)
    infection = beta * s * i
    recovery = gamma * i
    return np.concatenate([-infection, infection - recovery, recovery])


class SIRSimulator(EpidemicSimulator):
    r"""Deterministic SIR model observed through Poisson-distributed case counts.

    Prior draws are $(R_0, D, \alpha)$ with $\beta = R_0 / D$ and $\gamma = 1 / D$.
    The compartment proportions follow

    $\dot s = -\beta s i, \quad \dot i = \beta s i - \gamma i, \quad \dot r = \gamma i$

    and the cases reported on day $k$ are Poisson with mean $\alpha N (s_{k-1} -
    s_k)$. Targets are $(\mathrm{logit}\,\alpha, \log\beta, \log\gamma)$, the
    conditioning is the sequence of the $T$ daily case counts.
    """

    param_names = ("alpha", "beta", "gamma")

    def __init__(
        self,
        population: int = 1000,
        initial_infected: int = 1,
        num_timepoints: int = 60,
        prior_bounds: Sequence[Tuple[float, float]] = (
            (1.0, 4.0),
            (2.0, 14.0),
            (0.1, 0.9),
        ),
        num_workers: int = 1,
        sim_batch_size: Optional[int] = None,
        show_progress_bars: bool = False,
    ):
        r"""
        Args:
            population: Population size $N$.
            initial_infected: Number of infected individuals on day 0.
            num_timepoints: Number of observed days $T$.
            prior_bounds: Uniform prior bounds of $R_0$, $D$ and $\alpha$.
            num_workers: Number of joblib workers used to simulate a batch.
            sim_batch_size: Simulations per worker call, `None` for all at once.
            show_progress_bars: Whether to show a progress bar while simulating.
        """
        if not 0 < initial_infected <= population:
            raise ValueError(
                f"Need 0 < initial_infected <= population, got {initial_infected} "
                f"and {population}."
            )
        low, high = split_prior_bounds(prior_bounds)
        if len(low) != 3:
            raise ValueError("SIRSimulator needs prior bounds for (R0, D, alpha).")
        super().__init__(
            BoxUniform(low, high),
            Reparameterization(["logit", "log", "log"]),
            num_workers=num_workers,
            sim_batch_size=sim_batch_size,
            show_progress_bars=show_progress_bars,
        )
        self.population = population
        self.initial_infected = initial_infected
        self.num_timepoints = num_timepoints

    @property
    def condition_shape(self) -> Tuple[int]:
        return (self.num_timepoints,)

    def trajectories(self, beta: Tensor, gamma: Tensor) -> Tensor:
        """Solve the SIR equations for a batch of rates.

        Returns:
            Proportions of shape `(batch_dim, num_timepoints + 1, 3)`, day 0 first.
        """
        batch_size = len(beta)
        i0 = self.initial_infected / self.population
        y0 = np.concatenate(
            [
                np.full(batch_size, 1.0 - i0),
                np.full(batch_size, i0),
                np.zeros(batch_size),
            ]
        )
        solution = solve_ivp(
            _sir_rhs,
            (0.0, float(self.num_timepoints)),
            y0,
            t_eval=np.arange(self.num_timepoints + 1, dtype=float),
            args=(beta.double().numpy(), gamma.double().numpy()),
            rtol=1e-6,
            atol=1e-9,
        )
        if not solution.success:
            raise NumericalDegeneracyError(
                f"SIR integration failed: {solution.message}"
            )
        states = solution.y.reshape(3, batch_size, self.num_timepoints + 1)
        return torch.as_tensor(states, dtype=torch.float32).permute(1, 2, 0)

    def simulate(self, theta: Tensor) -> Tuple[Tensor, Tensor, Optional[Tensor]]:
        r0, duration, alpha = theta.unbind(-1)
        beta, gamma = r0 / duration, 1.0 / duration

        states = self.trajectories(beta, gamma)
        susceptible = states[..., 0]
        new_infections = self.population * (susceptible[:, :-1] - susceptible[:, 1:])
        # The solver may overshoot by a rounding error once s has converged.
        new_infections = new_infections.clamp(min=0.0)
        cases = torch.poisson(alpha.unsqueeze(-1) * new_infections)

        target = torch.stack([alpha, beta, gamma], dim=-1)
        logger.debug("Simulated %d SIR trajectories.", len(theta))
        return target, cases, None
