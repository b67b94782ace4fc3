# This file is part of epiflow, a toolkit for amortized inference in epidemic models.
# epiflow is licensed under the Apache License Version 2.0, see
# <https://www.apache.org/licenses/>.

from __future__ import annotations

import pytest
import torch
from torch import nn

from epiflow.inference import DirectPosterior, sample_posterior
from epiflow.neural_nets import ConvSummaryNet, RecurrentSummaryNet
from epiflow.neural_nets.net_builders import build_realnvp
from epiflow.neural_nets.transforms import AffineCouplingBlock
from epiflow.utils.errors import NumericalDegeneracyError, ShapeMismatchError
from epiflow.utils.reparam import Reparameterization

NUM_TIMEPOINTS = 20


def _sir_like_flow(recurrent: bool = False):
    reparam = Reparameterization(["logit", "log", "log"])
    natural = torch.stack(
        [
            torch.rand(100) * 0.8 + 0.1,
            torch.rand(100) + 0.1,
            torch.rand(100) * 0.5 + 0.05,
        ],
        dim=-1,
    )
    counts = torch.poisson(10.0 * torch.ones(100, NUM_TIMEPOINTS))
    if recurrent:
        query_time = torch.randint(1, NUM_TIMEPOINTS + 1, (100, 1)).float()
        x = torch.cat([query_time, counts], dim=-1)
        embedding_net: nn.Module = RecurrentSummaryNet(NUM_TIMEPOINTS, output_dim=8)
    else:
        x = counts
        embedding_net = ConvSummaryNet(NUM_TIMEPOINTS, output_dim=8)
    flow = build_realnvp(reparam.forward(natural), x, embedding_net=embedding_net)
    return flow, reparam, x


@pytest.mark.parametrize("recurrent", (False, True))
@pytest.mark.parametrize("num_xs", (1, 5))
def test_sampler_shape_contract(recurrent, num_xs):
    flow, reparam, x = _sir_like_flow(recurrent)

    samples = sample_posterior(flow, 256, x[:num_xs], reparam=reparam)

    assert samples.shape == (256, num_xs, 3)
    assert torch.isfinite(samples).all()
    # Natural space: a proportion and two positive rates.
    assert ((samples[..., 0] > 0) & (samples[..., 0] < 1)).all()
    assert (samples[..., 1:] > 0).all()


def test_sampler_single_conditioning_entry():
    flow, reparam, x = _sir_like_flow()
    samples = sample_posterior(flow, 64, x[0], reparam=reparam)

    assert samples.shape == (64, 3)


def test_chunked_sampling_matches_shape_and_leaves_flow_unchanged():
    flow, reparam, x = _sir_like_flow()
    weights_before = {k: v.clone() for k, v in flow.state_dict().items()}
    posterior = DirectPosterior(flow, reparam=reparam, max_sampling_batch_size=30)

    samples = posterior.sample_batched((100,), x[:3], show_progress_bars=False)

    assert samples.shape == (100, 3, 3)
    for key, value in flow.state_dict().items():
        assert torch.equal(value, weights_before[key])


def test_default_x_and_log_prob():
    flow, reparam, x = _sir_like_flow()
    posterior = DirectPosterior(flow, reparam=reparam).set_default_x(x[0])

    samples = posterior.sample((50,), show_progress_bars=False)
    log_probs = posterior.log_prob(samples)
    assert samples.shape == (50, 3)
    assert log_probs.shape == (50,)
    assert torch.isfinite(log_probs).all()

    # Natural-space density: flow density minus the log-Jacobian of the inverse map.
    unconstrained = reparam.forward(samples)
    with torch.no_grad():
        flow_log_probs = flow.log_prob(unconstrained.unsqueeze(1), x[:1])[:, 0]
    expected = flow_log_probs - reparam.log_abs_det_jacobian(unconstrained)
    assert torch.allclose(log_probs, expected, atol=1e-4)

    outside = torch.tensor([[1.5, 0.3, 0.2], [0.5, -0.3, 0.2]])
    assert torch.isinf(posterior.log_prob(outside)).all()


def test_sampling_without_x_raises():
    flow, reparam, _ = _sir_like_flow()
    posterior = DirectPosterior(flow, reparam=reparam)
    with pytest.raises(ValueError):
        posterior.sample((10,))


def test_sampler_rejects_mismatched_inputs():
    flow, reparam, x = _sir_like_flow()
    with pytest.raises(ShapeMismatchError):
        DirectPosterior(flow, reparam=Reparameterization(["log", "log"]))
    with pytest.raises(ShapeMismatchError):
        sample_posterior(flow, 10, torch.zeros(2, NUM_TIMEPOINTS + 1), reparam=reparam)


def test_degenerate_samples_raise():
    flow, reparam, x = _sir_like_flow()
    for module in flow.modules():
        if isinstance(module, AffineCouplingBlock):
            nn.init.constant_(module.conditioner.final_layer.bias, float("nan"))

    with pytest.raises(NumericalDegeneracyError, match=r"indices \[0, 1\]"):
        sample_posterior(flow, 10, x[:2], reparam=reparam)


@pytest.mark.parametrize("training", (True, False))
def test_sampling_keeps_train_mode_of_flow(training):
    flow, reparam, x = _sir_like_flow()
    flow.train(training)

    sample_posterior(flow, 20, x[:2], reparam=reparam)
    assert flow.training == training

    posterior = DirectPosterior(flow, reparam=reparam)
    samples = posterior.sample((5,), x[0], show_progress_bars=False)
    posterior.log_prob(samples, x[0])
    assert flow.training == training
    assert all(module.training == training for module in flow.modules())
