# This file is part of epiflow, a toolkit for amortized inference in epidemic models.
# epiflow is licensed under the Apache License Version 2.0, see
# <https://www.apache.org/licenses/>.

import pytest
import torch
from torch import nn

from epiflow.neural_nets import RecurrentSummaryNet
from epiflow.neural_nets.net_builders import build_realnvp
from epiflow.neural_nets.transforms import AffineCouplingBlock
from epiflow.utils.io import load_state, save_state


def _build(theta, x):
    return build_realnvp(
        theta, x, embedding_net=RecurrentSummaryNet(10, output_dim=6), num_transforms=3
    )


def test_save_and_load_round_trip(tmp_path):
    theta = torch.randn(50, 4) * 3.0
    counts = torch.poisson(4.0 * torch.ones(50, 10))
    x = torch.cat([torch.randint(1, 11, (50, 1)).float(), counts], dim=-1)

    flow = _build(theta, x)
    for module in flow.modules():
        if isinstance(module, AffineCouplingBlock):
            nn.init.normal_(module.conditioner.final_layer.weight, std=0.2)
    flow.eval()
    save_state(flow, tmp_path / "nested" / "flow.pt")

    # A fresh build has other random permutations and z-scoring statistics, all of
    # which are restored from the file.
    restored = load_state(
        _build(torch.randn(50, 4), x), tmp_path / "nested" / "flow.pt"
    )

    with torch.no_grad():
        assert torch.equal(
            flow.log_prob(theta[:8].unsqueeze(0), x[:8]),
            restored.log_prob(theta[:8].unsqueeze(0), x[:8]),
        )
        latent = torch.randn(8, 4)
        assert torch.equal(flow.inverse(latent, x[:8]), restored.inverse(latent, x[:8]))


def test_load_into_other_class_raises(tmp_path):
    x = torch.cat([torch.ones(20, 1), torch.zeros(20, 10)], dim=-1)
    flow = _build(torch.randn(20, 4), x)
    save_state(flow, tmp_path / "flow.pt")

    with pytest.raises(ValueError):
        load_state(nn.Linear(2, 2), tmp_path / "flow.pt")
