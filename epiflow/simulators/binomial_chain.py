# This file is part of epiflow, a toolkit for amortized inference in epidemic models.
# epiflow is licensed under the Apache License Version 2.0, see
# <https://www.apache.org/licenses/>.

import logging
from typing import Optional, Sequence, Tuple, Union

import torch
from torch import Tensor
from torch.distributions import Binomial

from epiflow.simulators.base import EpidemicSimulator, split_prior_bounds
from epiflow.utils.errors import InvalidConditioningError, ShapeMismatchError
from epiflow.utils.reparam import Reparameterization
from epiflow.utils.torchutils import BoxUniform

logger = logging.getLogger(__name__)


class BinomialChainSimulator(EpidemicSimulator):
    r"""Stochastic SIR chain binomial model with a query time.

    Prior draws are $(R_0, D, \alpha, \epsilon)$ with $\beta = R_0 / D$ and
    $\gamma = 1 / D$. On every day, with compartment counts $S, I, R$,

    - new infections $\sim \mathrm{Bin}(S, 1 - \exp(-(\beta I / N + \epsilon)))$,
    - recoveries $\sim \mathrm{Bin}(I, 1 - \exp(-\gamma))$,
    - reported cases $\sim \mathrm{Bin}(\text{new infections}, \alpha)$,

    where $\epsilon$ is the rate of infections imported from outside the
    population. Every example gets a query time $t \sim U\{1, \dots, T\}$. Targets
    are the rates together with the compartment proportions after day $t$:
    $(\mathrm{logit}\,\alpha, \log\beta, \log\gamma, \log\epsilon,
    \mathrm{logit}\,S_t, \mathrm{logit}\,I_t)$. The conditioning is $t$ prepended to
    the $T$ daily case counts, the latent trajectories hold the S, I, R proportions
    for days $0, \dots, T$.
    """

    param_names = ("alpha", "beta", "gamma", "epsilon", "S_t", "I_t")

    def __init__(
        self,
        population: int = 1000,
        initial_infected: int = 5,
        num_timepoints: int = 60,
        prior_bounds: Sequence[Tuple[float, float]] = (
            (1.0, 4.0),
            (2.0, 14.0),
            (0.1, 0.9),
            (1e-4, 1e-2),
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
            prior_bounds: Uniform prior bounds of $R_0$, $D$, $\alpha$, $\epsilon$.
            num_workers: Number of joblib workers used to simulate a batch.
            sim_batch_size: Simulations per worker call, `None` for all at once.
            show_progress_bars: Whether to show a progress bar while simulating.
        """
        if not 0 <= initial_infected <= population:
            raise ValueError(
                f"Need 0 <= initial_infected <= population, got {initial_infected} "
                f"and {population}."
            )
        low, high = split_prior_bounds(prior_bounds)
        if len(low) != 4:
            raise ValueError(
                "BinomialChainSimulator needs prior bounds for (R0, D, alpha, epsilon)."
            )
        super().__init__(
            BoxUniform(low, high),
            Reparameterization(["logit", "log", "log", "log", "logit", "logit"]),
            num_workers=num_workers,
            sim_batch_size=sim_batch_size,
            show_progress_bars=show_progress_bars,
        )
        self.population = population
        self.initial_infected = initial_infected
        self.num_timepoints = num_timepoints

    @property
    def condition_shape(self) -> Tuple[int]:
        return (1 + self.num_timepoints,)

    def _step(
        self,
        compartments: Tensor,
        alpha: Tensor,
        beta: Tensor,
        gamma: Tensor,
        epsilon: Tensor,
    ) -> Tuple[Tensor, Tensor]:
        """Advance counts `(batch_dim, 3)` by one day, return them and the cases."""
        susceptible, infected, recovered = compartments.unbind(-1)
        infection_prob = 1.0 - torch.exp(
            -(beta * infected / self.population + epsilon)
        )
        recovery_prob = 1.0 - torch.exp(-gamma).expand_as(infected)

        new_infections = Binomial(susceptible, infection_prob).sample()
        recoveries = Binomial(infected, recovery_prob).sample()
        cases = Binomial(new_infections, alpha.expand_as(new_infections)).sample()

        compartments = torch.stack(
            [
                susceptible - new_infections,
                infected + new_infections - recoveries,
                recovered + recoveries,
            ],
            dim=-1,
        )
        return compartments, cases

    def _run(
        self, compartments: Tensor, rates: Tensor, num_days: int
    ) -> Tuple[Tensor, Tensor]:
        """Run the chain, return counts `(batch_dim, num_days + 1, 3)` and cases
        `(batch_dim, num_days)`."""
        alpha, beta, gamma, epsilon = rates.unbind(-1)
        states, cases = [compartments], []
        for _ in range(num_days):
            compartments, daily_cases = self._step(
                compartments, alpha, beta, gamma, epsilon
            )
            states.append(compartments)
            cases.append(daily_cases)
        cases_t = (
            torch.stack(cases, dim=1)
            if cases
            else compartments.new_zeros(len(compartments), 0)
        )
        return torch.stack(states, dim=1), cases_t

    def simulate(self, theta: Tensor) -> Tuple[Tensor, Tensor, Optional[Tensor]]:
        r0, duration, alpha, epsilon = theta.unbind(-1)
        beta, gamma = r0 / duration, 1.0 / duration
        batch_size = len(theta)

        initial = torch.tensor(
            [self.population - self.initial_infected, self.initial_infected, 0.0]
        )
        counts, cases = self._run(
            initial.expand(batch_size, 3).clone(),
            torch.stack([alpha, beta, gamma, epsilon], dim=-1),
            self.num_timepoints,
        )
        latent = counts / self.population

        # 1-indexed query times, state after day t sits at index t.
        query_time = torch.randint(1, self.num_timepoints + 1, (batch_size,))
        state_at_query = latent[torch.arange(batch_size), query_time]
        target = torch.stack(
            [alpha, beta, gamma, epsilon, state_at_query[:, 0], state_at_query[:, 1]],
            dim=-1,
        )
        conditioning = torch.cat([query_time.unsqueeze(-1).float(), cases], dim=-1)
        logger.debug("Simulated %d binomial chains.", batch_size)
        return target, conditioning, latent

    def forecast(
        self,
        natural_samples: Tensor,
        query_time: Union[int, Tensor],
        horizon: Optional[int] = None,
    ) -> Tensor:
        """Simulate future case counts from posterior draws.

        Each draw provides the rates and the compartment proportions after day
        `query_time`; the chain is run forward from there.

        Args:
            natural_samples: Posterior draws in natural space, shape
                `(*batch_shape, 6)`, e.g. the output of a posterior's `sample`.
            query_time: Day the draws refer to, in `[1, num_timepoints]`.
            horizon: Number of days to forecast. Defaults to the remaining days
                `num_timepoints - query_time`.

        Returns:
            Forecast case counts of shape `(*batch_shape, horizon)`.
        """
        if natural_samples.shape[-1] != len(self.param_names):
            raise ShapeMismatchError(
                f"Expected draws of {len(self.param_names)} parameters, got "
                f"{natural_samples.shape[-1]}."
            )
        query_time = int(query_time)
        if not 1 <= query_time <= self.num_timepoints:
            raise InvalidConditioningError(
                f"Query time must lie in [1, {self.num_timepoints}], got {query_time}."
            )
        if horizon is None:
            horizon = self.num_timepoints - query_time
        if horizon < 0:
            raise ValueError(f"`horizon` must be non-negative, got {horizon}.")

        batch_shape = natural_samples.shape[:-1]
        draws = natural_samples.reshape(-1, natural_samples.shape[-1]).float()
        susceptible = torch.round(draws[:, 4] * self.population)
        infected = torch.round(draws[:, 5] * self.population)
        # Rounding may push S + I above N.
        infected = torch.minimum(infected, self.population - susceptible)
        recovered = self.population - susceptible - infected
        compartments = torch.stack([susceptible, infected, recovered], dim=-1)

        _, cases = self._run(compartments, draws[:, :4], horizon)
        return cases.reshape(*batch_shape, horizon)
