# This file is part of epiflow, a toolkit for amortized inference in epidemic models.
# epiflow is licensed under the Apache License Version 2.0, see
# <https://www.apache.org/licenses/>.

from __future__ import annotations

import pytest
import torch

from epiflow.simulators import (
    Batch,
    BinomialChainSimulator,
    SimpleBatchGenerator,
    SIRSimulator,
    simulate_in_batches,
)
from epiflow.utils import BoxUniform
from epiflow.utils.errors import InvalidConditioningError, ShapeMismatchError


def noisy_simulator(theta):
    return theta + torch.randn_like(theta)


def simulator_with_latent(theta):
    return 2 * theta, theta.sum(-1, keepdim=True), None


def test_sir_data_contract():
    simulator = SIRSimulator(num_timepoints=30)
    batch = simulator.next_batch(16)

    assert batch.target.shape == (16, 3)
    assert batch.conditioning.shape == (16, 30)
    assert batch.latent is None
    assert torch.isfinite(batch.target).all()
    assert (batch.conditioning >= 0).all()
    assert torch.equal(batch.conditioning, batch.conditioning.round())

    natural = simulator.reparam.inverse(batch.target)
    alpha, beta, gamma = natural.unbind(-1)
    # Default prior: R0 in [1, 4], D in [2, 14], alpha in [0.1, 0.9].
    assert ((alpha > 0.1 - 1e-4) & (alpha < 0.9 + 1e-4)).all()
    assert ((beta / gamma > 1.0 - 1e-3) & (beta / gamma < 4.0 + 1e-3)).all()
    assert ((1 / gamma > 2.0 - 1e-3) & (1 / gamma < 14.0 + 1e-3)).all()


def test_sir_trajectories_conserve_population():
    simulator = SIRSimulator(num_timepoints=25)
    states = simulator.trajectories(torch.tensor([0.5, 0.2]), torch.tensor([0.2, 0.1]))

    assert states.shape == (2, 26, 3)
    assert torch.allclose(states.sum(-1), torch.ones(2, 26), atol=1e-4)
    # Susceptibles never increase.
    assert (states[:, 1:, 0] <= states[:, :-1, 0] + 1e-6).all()


def test_binomial_chain_data_contract():
    num_timepoints = 40
    simulator = BinomialChainSimulator(num_timepoints=num_timepoints)
    theta = simulator.prior.sample((32,))
    target, conditioning, latent = simulator.simulate(theta)

    assert target.shape == (32, 6)
    assert conditioning.shape == (32, 1 + num_timepoints)
    assert latent.shape == (32, num_timepoints + 1, 3)

    query_time = conditioning[:, 0].long()
    assert ((query_time >= 1) & (query_time <= num_timepoints)).all()
    assert torch.equal(conditioning[:, 0], conditioning[:, 0].round())
    cases = conditioning[:, 1:]
    assert (cases >= 0).all()
    assert torch.equal(cases, cases.round())

    assert torch.allclose(latent.sum(-1), torch.ones(32, num_timepoints + 1))
    state_at_query = latent[torch.arange(32), query_time]
    assert torch.allclose(target[:, 4], state_at_query[:, 0], atol=1e-4)
    assert torch.allclose(target[:, 5], state_at_query[:, 1], atol=1e-4)


def test_binomial_chain_batches_are_reparameterized():
    simulator = BinomialChainSimulator(num_timepoints=20)
    batch = simulator.next_batch(64)

    assert batch.target.shape == (64, 6)
    assert torch.isfinite(batch.target).all()
    natural = simulator.reparam.inverse(batch.target)
    assert ((natural[:, 4:] >= 0) & (natural[:, 4:] <= 1)).all()


def test_forecast_shapes_and_validation():
    simulator = BinomialChainSimulator(num_timepoints=30)
    draws = torch.tensor([[0.5, 0.3, 0.1, 1e-3, 0.8, 0.05]]).expand(10, 6)

    assert simulator.forecast(draws, query_time=10).shape == (10, 20)
    assert simulator.forecast(draws.reshape(2, 5, 6), 25, horizon=7).shape == (
        2,
        5,
        7,
    )
    assert simulator.forecast(draws, 30).shape == (10, 0)

    with pytest.raises(InvalidConditioningError):
        simulator.forecast(draws, query_time=0)
    with pytest.raises(InvalidConditioningError):
        simulator.forecast(draws, query_time=31)
    with pytest.raises(ShapeMismatchError):
        simulator.forecast(draws[:, :3], query_time=5)


@pytest.mark.parametrize("sim_batch_size", (None, 3, 100))
def test_simulate_in_batches(sim_batch_size):
    theta = torch.randn(10, 2)
    x = simulate_in_batches(
        noisy_simulator, theta, sim_batch_size=sim_batch_size, show_progress_bars=False
    )
    assert x.shape == (10, 2)

    outputs = simulate_in_batches(
        simulator_with_latent, theta, sim_batch_size=sim_batch_size
    )
    assert torch.equal(outputs[0], 2 * theta)
    assert outputs[1].shape == (10, 1)
    assert outputs[2] is None


def test_seeded_simulations_do_not_depend_on_num_workers():
    theta = torch.zeros(12, 2)
    sequential = simulate_in_batches(
        noisy_simulator, theta, sim_batch_size=4, num_workers=1, seed=3
    )
    parallel = simulate_in_batches(
        noisy_simulator, theta, sim_batch_size=4, num_workers=2, seed=3
    )
    assert torch.equal(sequential, parallel)


def test_simulate_empty_batch_raises():
    with pytest.raises(ValueError):
        simulate_in_batches(noisy_simulator, torch.zeros(0, 2))


def test_batch_validation():
    Batch(torch.zeros(4, 2), torch.zeros(4, 7), torch.zeros(4, 8, 3))
    with pytest.raises(ShapeMismatchError):
        Batch(torch.zeros(4), torch.zeros(4, 7))
    with pytest.raises(ShapeMismatchError):
        Batch(torch.zeros(4, 2), torch.zeros(5, 7))
    with pytest.raises(ShapeMismatchError):
        Batch(torch.zeros(4, 2), torch.zeros(4, 7), torch.zeros(3, 8, 3))


def test_simple_batch_generator():
    prior = BoxUniform(-torch.ones(3), torch.ones(3))
    generator = SimpleBatchGenerator(prior, noisy_simulator)
    batch = generator.next_batch(20)

    assert generator.num_params == 3
    assert batch.target.shape == (20, 3)
    assert batch.conditioning.shape == (20, 3)


def test_invalid_simulator_arguments():
    with pytest.raises(ValueError):
        SIRSimulator(initial_infected=0)
    with pytest.raises(ValueError):
        SIRSimulator(prior_bounds=((1.0, 4.0), (2.0, 14.0)))
    with pytest.raises(ValueError):
        BinomialChainSimulator(prior_bounds=((4.0, 1.0), (2, 14), (0.1, 0.9), (0, 1)))


def test_simulator_sources_compile_without_escape_warnings():
    import warnings
    from pathlib import Path

    import epiflow.simulators

    package_dir = Path(epiflow.simulators.__file__).parent
    with warnings.catch_warnings():
        warnings.simplefilter("error")
        for path in package_dir.glob("*.py"):
            compile(path.read_text(), str(path), "exec")

    assert "\\alpha" in SIRSimulator.__init__.__doc__
    assert "\\epsilon" in BinomialChainSimulator.__init__.__doc__
