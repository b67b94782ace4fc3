# This file is part of epiflow, a toolkit for amortized inference in epidemic models.
# epiflow is licensed under the Apache License Version 2.0, see
# <https://www.apache.org/licenses/>.

import pytest
import torch

from epiflow.utils.errors import ShapeMismatchError
from epiflow.utils.metrics import c2st, marginal_mean_error
from epiflow.utils.reparam import Reparameterization


def _rate_and_proportion_samples(num_samples, shift=0.0):
    """Log-normal rates and logit-normal proportions, like posteriors over
    (alpha, gamma)."""
    unconstrained = torch.randn(num_samples, 2) * 0.3 + shift
    return Reparameterization(["logit", "log"]).inverse(unconstrained)


@pytest.mark.parametrize("classifier", ("rf", "mlp"))
def test_c2st_same_distribution(classifier):
    samples = torch.randn(1000, 2)
    reference_samples = torch.randn(1000, 2)

    score = c2st(samples, reference_samples, classifier=classifier)

    assert torch.allclose(score, torch.tensor(0.5, dtype=score.dtype), atol=0.1)


def test_c2st_different_distributions():
    samples = torch.randn(1000, 2)
    reference_samples = torch.randn(1000, 2) + 5.0

    assert c2st(samples, reference_samples) > 0.9


def test_c2st_in_unconstrained_space():
    reparam = Reparameterization(["logit", "log"])
    samples = _rate_and_proportion_samples(1000)
    reference_samples = _rate_and_proportion_samples(1000)
    shifted_samples = _rate_and_proportion_samples(1000, shift=2.0)

    same = c2st(samples, reference_samples, reparam=reparam)
    different = c2st(shifted_samples, reference_samples, reparam=reparam)

    assert torch.allclose(same, torch.tensor(0.5, dtype=same.dtype), atol=0.1)
    assert different > 0.9


def test_marginal_mean_error():
    reference = torch.randn(5000, 3) * torch.tensor([1.0, 2.0, 0.5])
    shifted = reference + torch.tensor([0.0, 2.0, 0.5])

    error = marginal_mean_error(shifted, reference)

    assert error.shape == (3,)
    assert torch.allclose(error, torch.tensor([0.0, 1.0, 1.0]), atol=0.05)


def test_marginal_mean_error_in_unconstrained_space():
    reparam = Reparameterization(["logit", "log"])
    reference = _rate_and_proportion_samples(5000)
    shifted = reparam.inverse(reparam.forward(reference) + torch.tensor([0.3, 0.0]))

    error = marginal_mean_error(shifted, reference, reparam=reparam)

    assert torch.allclose(error, torch.tensor([1.0, 0.0]), atol=0.05)


def test_mismatched_sample_sets_raise():
    with pytest.raises(ShapeMismatchError):
        c2st(torch.randn(100, 2), torch.randn(100, 3))
    with pytest.raises(ShapeMismatchError):
        marginal_mean_error(torch.randn(100), torch.randn(100))
