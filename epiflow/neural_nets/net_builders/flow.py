# This file is part of epiflow, a toolkit for amortized inference in epidemic models.
# epiflow is licensed under the Apache License Version 2.0, see
# <https://www.apache.org/licenses/>.

from typing import List, Optional
from warnings import warn

import torch
from pyknos.nflows import distributions as distributions_
from torch import Tensor, nn, relu

from epiflow.neural_nets.estimators import ConditionalFlow
from epiflow.neural_nets.transforms import (
    AffineCouplingBlock,
    CompositeBlock,
    InvertibleBlock,
    RandomPermutation,
    ReversePermutation,
)
from epiflow.utils.epiutils import standardizing_block, z_score_parser
from epiflow.utils.errors import ShapeMismatchError
from epiflow.utils.torchutils import (
    create_alternating_binary_mask,
    create_mid_split_binary_mask,
)


def get_numel(batch_input: Tensor, embedding_net: Optional[nn.Module] = None) -> int:
    """
    Return number of elements of a single embedded input.

    Args:
        batch_input: Batch of inputs.
        embedding_net: Optional embedding network.

    Returns:
        Number of elements after optional embedding.
    """
    if embedding_net is None:
        embedding_net = nn.Identity()

    # Make sure the embedding_net is on the same device as the data.
    with torch.no_grad():
        return embedding_net.to(batch_input.device)(batch_input[:1]).numel()


def build_realnvp(
    batch_x: Tensor,
    batch_y: Tensor,
    z_score_x: Optional[str] = "independent",
    hidden_features: int = 50,
    num_transforms: int = 5,
    embedding_net: nn.Module = nn.Identity(),
    num_blocks: int = 2,
    scale_limit: Optional[float] = 3.0,
    mask_type: str = "alternating",
    permutation: Optional[str] = "random",
    dropout_probability: float = 0.0,
    use_batch_norm: bool = False,
    **kwargs,
) -> ConditionalFlow:
    """Builds a RealNVP-style conditional flow q(x|y) from affine coupling blocks
    and fixed permutations.

    Args:
        batch_x: Batch of xs (the parameters), used to infer dimensionality and
            (optional) z-scoring.
        batch_y: Batch of ys (the conditioning), used to infer the summary size.
        z_score_x: Whether to z-score xs passing into the network, can be one of:
            - `none`, or None: do not z-score.
            - `independent`: z-score each dimension independently.
            - `structured`: use a single mean and std for all dimensions.
        hidden_features: Number of hidden features of the coupling conditioners.
        num_transforms: Number of coupling blocks.
        embedding_net: Summarizer for y, e.g. a `ConvSummaryNet` or
            `RecurrentSummaryNet`.
        num_blocks: Number of residual blocks of each coupling conditioner.
        scale_limit: Soft bound on the log-scales of the coupling blocks, None for
            unbounded log-scales.
        mask_type: How coupling blocks split the parameters, "alternating" or
            "mid_split". The split flips from one coupling block to the next.
        permutation: Fixed permutation between coupling blocks, "random",
            "reverse" or None.
        dropout_probability: Dropout probability of the conditioners.
        use_batch_norm: Whether to use batch norm in the conditioners.
        kwargs: Additional arguments that are passed by the build function but are
            not relevant for this flow and are therefore ignored.

    Returns:
        Conditional flow.
    """
    if batch_x.dim() != 2:
        raise ShapeMismatchError(
            f"Parameters must have shape (batch_dim, n_params), got "
            f"{tuple(batch_x.shape)}."
        )
    x_numel = batch_x.shape[1]
    y_numel = get_numel(batch_y, embedding_net=embedding_net)
    if x_numel < 2:
        raise ShapeMismatchError(
            "Coupling flows need at least two parameters, got one. Add a nuisance "
            "parameter or use a different density estimator."
        )
    summary_dim = getattr(embedding_net, "output_dim", y_numel)
    if summary_dim != y_numel:
        raise ShapeMismatchError(
            f"Embedding net declares output_dim={summary_dim}, but returns "
            f"{y_numel} features."
        )

    def mask_in_layer(i: int) -> Tensor:
        if mask_type == "alternating":
            return create_alternating_binary_mask(x_numel, even=(i % 2 == 0))
        elif mask_type == "mid_split":
            return create_mid_split_binary_mask(x_numel, first_half=(i % 2 == 0))
        raise ValueError(f"Unknown mask_type {mask_type}.")

    def permutation_block() -> Optional[InvertibleBlock]:
        if permutation == "random":
            return RandomPermutation(x_numel)
        elif permutation == "reverse":
            return ReversePermutation(x_numel)
        elif permutation is None or permutation == "none":
            return None
        raise ValueError(f"Unknown permutation {permutation}.")

    transform_list: List[InvertibleBlock] = []
    for i in range(num_transforms):
        transform_list.append(
            AffineCouplingBlock(
                features=x_numel,
                context_features=y_numel,
                mask=mask_in_layer(i),
                hidden_features=hidden_features,
                num_blocks=num_blocks,
                scale_limit=scale_limit,
                activation=relu,
                dropout_probability=dropout_probability,
                use_batch_norm=use_batch_norm,
            )
        )
        # No permutation after the last coupling block.
        block = permutation_block() if i < num_transforms - 1 else None
        if block is not None:
            transform_list.append(block)

    if num_transforms == 1:
        warn(
            "With a single coupling block, half of the parameters are never "
            "transformed conditioned on the others.",
            stacklevel=2,
        )

    z_score_x_bool, structured_x = z_score_parser(z_score_x)
    if z_score_x_bool:
        transform_list = [standardizing_block(batch_x, structured_x)] + transform_list

    distribution = get_base_dist(x_numel, **kwargs)
    return ConditionalFlow(
        CompositeBlock(transform_list),
        distribution,
        embedding_net,
        input_shape=batch_x[0].shape,
        condition_shape=batch_y[0].shape,
    )


def get_base_dist(
    num_dims: int, dtype: torch.dtype = torch.float32, **kwargs
) -> distributions_.Distribution:
    """Returns the base distribution for a flow with given float dtype."""

    base = distributions_.StandardNormal((num_dims,))
    base._log_z = base._log_z.to(dtype)
    return base
