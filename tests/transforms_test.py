# This file is part of epiflow, a toolkit for amortized inference in epidemic models.
# epiflow is licensed under the Apache License Version 2.0, see
# <https://www.apache.org/licenses/>.

from __future__ import annotations

import pytest
import torch
from torch import nn

from epiflow.neural_nets.net_builders import build_realnvp
from epiflow.neural_nets.transforms import (
    AffineCouplingBlock,
    CompositeBlock,
    PermutationBlock,
    RandomPermutation,
    ReversePermutation,
    StandardizingBlock,
)
from epiflow.utils.errors import ShapeMismatchError
from epiflow.utils.torchutils import create_mid_split_binary_mask


def _perturb_conditioners(module: nn.Module, std: float = 0.1) -> None:
    """Coupling blocks start as the identity, give them a non-trivial map."""
    for block in module.modules():
        if isinstance(block, AffineCouplingBlock):
            nn.init.normal_(block.conditioner.final_layer.weight, std=std)
            nn.init.normal_(block.conditioner.final_layer.bias, std=std)


class ConstantScaleNet(nn.Module):
    """Conditioner that predicts a fixed raw log-scale and shift."""

    def __init__(self, in_features: int, out_features: int, scale: float, shift: float):
        super().__init__()
        self.out_features = out_features
        self.scale = scale
        self.shift = shift

    def forward(self, inputs, context=None):
        half = self.out_features // 2
        params = inputs.new_empty(inputs.shape[0], self.out_features)
        params[:, :half] = self.scale
        params[:, half:] = self.shift
        return params


@pytest.mark.parametrize("features", (2, 3, 6))
@pytest.mark.parametrize("context_features", (None, 5))
@pytest.mark.parametrize("mask_type", ("alternating", "mid_split"))
def test_coupling_block_invertibility(features, context_features, mask_type):
    mask = None
    if mask_type == "mid_split":
        mask = create_mid_split_binary_mask(features)
    block = AffineCouplingBlock(features, context_features=context_features, mask=mask)
    _perturb_conditioners(block)

    inputs = torch.randn(50, features)
    context = None if context_features is None else torch.randn(50, context_features)
    latent, logabsdet = block(inputs, context)
    reconstructed, inverse_logabsdet = block.inverse(latent, context)

    assert latent.shape == inputs.shape
    assert logabsdet.shape == (50,)
    assert torch.allclose(reconstructed, inputs, atol=1e-5)
    assert torch.allclose(inverse_logabsdet, -logabsdet, atol=1e-5)


def test_coupling_block_starts_as_identity():
    block = AffineCouplingBlock(4, context_features=3)
    inputs = torch.randn(10, 4)
    outputs, logabsdet = block(inputs, torch.randn(10, 3))

    assert torch.equal(outputs, inputs)
    assert torch.equal(logabsdet, torch.zeros(10))


@pytest.mark.parametrize("scale", (-0.7, 0.0, 1.3))
def test_coupling_block_logdet_of_constant_scale(scale):
    features = 5
    block = AffineCouplingBlock(
        features,
        scale_limit=None,
        transform_net_create_fn=lambda i, o: ConstantScaleNet(i, o, scale, 0.5),
    )
    inputs = torch.randn(20, features)
    outputs, logabsdet = block(inputs)

    # Alternating mask with even=True transforms features 0, 2, 4.
    transformed = torch.tensor([0, 2, 4])
    expected = torch.full((20,), 3 * scale)
    assert torch.allclose(logabsdet, expected)
    expected_outputs = inputs[:, transformed] * torch.exp(torch.tensor(scale)) + 0.5
    assert torch.allclose(outputs[:, transformed], expected_outputs)
    assert torch.equal(outputs[:, [1, 3]], inputs[:, [1, 3]])


def test_coupling_block_soft_clamp_bounds_log_scale():
    block = AffineCouplingBlock(
        4,
        scale_limit=2.0,
        transform_net_create_fn=lambda i, o: ConstantScaleNet(i, o, 100.0, 0.0),
    )
    _, logabsdet = block(torch.randn(3, 4))

    # Two transformed features, each log-scale saturates at 2.
    assert torch.all(logabsdet <= 4.0)
    saturated = 4.0 * torch.tanh(torch.tensor(50.0))
    assert torch.allclose(logabsdet, saturated.expand(3))


def test_coupling_block_logdet_matches_autograd():
    features, context_features = 4, 3
    block = AffineCouplingBlock(features, context_features=context_features)
    _perturb_conditioners(block, std=0.3)
    inputs = torch.randn(1, features)
    context = torch.randn(1, context_features)

    jacobian = torch.autograd.functional.jacobian(
        lambda x: block(x.unsqueeze(0), context)[0][0], inputs[0]
    )
    _, logabsdet = block(inputs, context)

    assert torch.allclose(
        logabsdet[0], torch.slogdet(jacobian).logabsdet, atol=1e-5
    )


@pytest.mark.parametrize(
    "permutation_block", (RandomPermutation(6), ReversePermutation(6))
)
def test_permutation_is_volume_preserving(permutation_block):
    inputs = torch.randn(30, 6)
    outputs, logabsdet = permutation_block(inputs)
    reconstructed, inverse_logabsdet = permutation_block.inverse(outputs)

    assert torch.equal(logabsdet, torch.zeros(30))
    assert torch.equal(inverse_logabsdet, torch.zeros(30))
    assert torch.equal(reconstructed, inputs)
    assert torch.equal(outputs.sort(dim=1).values, inputs.sort(dim=1).values)


def test_reverse_permutation_order():
    outputs, _ = ReversePermutation(3)(torch.tensor([[1.0, 2.0, 3.0]]))
    assert torch.equal(outputs, torch.tensor([[3.0, 2.0, 1.0]]))


def test_invalid_permutation():
    with pytest.raises(ValueError):
        PermutationBlock(torch.tensor([0, 0, 2]))


def test_standardizing_block():
    mean, std = torch.tensor([1.0, -2.0]), torch.tensor([0.5, 4.0])
    block = StandardizingBlock(mean, std)
    inputs = torch.randn(10, 2)
    outputs, logabsdet = block(inputs)
    reconstructed, _ = block.inverse(outputs)

    assert torch.allclose(outputs, (inputs - mean) / std)
    assert torch.allclose(logabsdet, -torch.log(std).sum().expand(10))
    assert torch.allclose(reconstructed, inputs, atol=1e-6)


@pytest.mark.parametrize("num_transforms", (1, 5))
@pytest.mark.parametrize("permutation", ("random", "reverse", None))
def test_composite_invertibility_and_logdet(num_transforms, permutation):
    theta = torch.randn(100, 3) * 2.0 + 1.0
    x = torch.randn(100, 4)
    flow = build_realnvp(
        theta, x, num_transforms=num_transforms, permutation=permutation
    )
    _perturb_conditioners(flow)
    composite = flow.transform

    context = torch.randn(40, 4)
    inputs = torch.randn(40, 3)
    latent, logabsdet = composite(inputs, context)
    reconstructed, _ = composite.inverse(latent, context)
    assert torch.allclose(reconstructed, inputs, atol=1e-5)

    # Chain rule: the total log-determinant is the sum over the blocks.
    outputs, summed = inputs, torch.zeros(40)
    for block in composite:
        outputs, block_logabsdet = block(outputs, context)
        summed = summed + block_logabsdet
    assert torch.allclose(logabsdet, summed, atol=1e-6)


def test_composite_inverse_runs_blocks_in_reverse():
    first = StandardizingBlock(torch.zeros(2), torch.tensor([2.0, 2.0]))
    second = ReversePermutation(2)
    composite = CompositeBlock([first, second])

    outputs, _ = composite(torch.tensor([[2.0, 4.0]]))
    assert torch.equal(outputs, torch.tensor([[2.0, 1.0]]))
    reconstructed, _ = composite.inverse(outputs)
    assert torch.equal(reconstructed, torch.tensor([[2.0, 4.0]]))


def test_shape_errors():
    with pytest.raises(ShapeMismatchError):
        AffineCouplingBlock(1)
    with pytest.raises(ShapeMismatchError):
        AffineCouplingBlock(3, mask=torch.ones(3))
    with pytest.raises(ShapeMismatchError):
        AffineCouplingBlock(3, mask=torch.ones(4))

    block = AffineCouplingBlock(3, context_features=2)
    with pytest.raises(ShapeMismatchError):
        block(torch.randn(5, 4), torch.randn(5, 2))
    with pytest.raises(ShapeMismatchError):
        block(torch.randn(5, 3))
    with pytest.raises(ShapeMismatchError):
        block(torch.randn(5, 3), torch.randn(5, 7))
    with pytest.raises(ShapeMismatchError):
        CompositeBlock([ReversePermutation(2), ReversePermutation(3)])
