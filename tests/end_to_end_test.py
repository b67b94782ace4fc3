# This file is part of epiflow, a toolkit for amortized inference in epidemic models.
# epiflow is licensed under the Apache License Version 2.0, see
# <https://www.apache.org/licenses/>.

from __future__ import annotations

import pytest
import torch

from epiflow import NPE, posterior_nn, sample_posterior
from epiflow.neural_nets import ConvSummaryNet, RecurrentSummaryNet
from epiflow.simulators import BinomialChainSimulator, SIRSimulator


@pytest.mark.slow
def test_sir_training_improves_held_out_loss(summary_writer):
    num_timepoints = 20
    simulator = SIRSimulator(num_timepoints=num_timepoints)
    density_estimator = posterior_nn(
        embedding_net=ConvSummaryNet(num_timepoints, output_dim=16),
        hidden_features=64,
        num_transforms=4,
    )
    inference = NPE(
        simulator,
        density_estimator=density_estimator,
        summary_writer=summary_writer,
        show_progress_bars=False,
    )

    test_losses = []
    inference.train(
        num_epochs=512,
        training_batch_size=256,
        simulations_per_epoch=512,
        learning_rate=1e-3,
        min_learning_rate=1e-5,
        num_test_simulations=1024,
        evaluate_every=64,
        callback=lambda epoch, loss: test_losses.append(loss),
    )

    assert len(test_losses) == 9
    assert all(torch.isfinite(torch.tensor(test_losses)))
    # The held-out loss decreases at every checkpoint.
    for previous, current in zip(test_losses, test_losses[1:]):
        assert current < previous
    assert inference.optimizer.param_groups[0]["lr"] == pytest.approx(1e-5, rel=1e-3)

    posterior = inference.build_posterior()
    x_o = simulator.next_batch(4).conditioning
    samples = posterior.sample_batched((500,), x_o, show_progress_bars=False)
    assert samples.shape == (500, 4, 3)
    assert torch.isfinite(samples).all()


@pytest.mark.slow
def test_binomial_chain_with_query_time(summary_writer):
    num_timepoints = 25
    simulator = BinomialChainSimulator(num_timepoints=num_timepoints)
    inference = NPE(
        simulator,
        density_estimator=posterior_nn(
            embedding_net=RecurrentSummaryNet(num_timepoints, output_dim=16),
            num_transforms=4,
        ),
        summary_writer=summary_writer,
        show_progress_bars=False,
    )
    flow = inference.train(
        num_epochs=50,
        training_batch_size=64,
        num_test_simulations=256,
        evaluate_every=25,
    )
    assert all(torch.isfinite(torch.tensor(inference.summary["test_loss"])))

    x_o = simulator.next_batch(1).conditioning[0]
    samples = sample_posterior(flow, 200, x_o, reparam=simulator.reparam)
    assert samples.shape == (200, 6)
    forecast = simulator.forecast(samples, query_time=int(x_o[0]))
    assert forecast.shape == (200, num_timepoints - int(x_o[0]))
