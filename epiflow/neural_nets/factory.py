# This file is part of epiflow, a toolkit for amortized inference in epidemic models.
# epiflow is licensed under the Apache License Version 2.0, see
# <https://www.apache.org/licenses/>.

from typing import Any, Callable, Optional

from torch import nn

from epiflow.neural_nets.net_builders.flow import build_realnvp
from epiflow.utils.torchutils import check_net_device

model_builders = {
    "realnvp": build_realnvp,
}

embedding_net_warn_msg = """The passed embedding net will be moved to cpu for
                        constructing the net building function."""


def posterior_nn(
    model: str = "realnvp",
    z_score_theta: Optional[str] = "independent",
    hidden_features: int = 50,
    num_transforms: int = 5,
    embedding_net: nn.Module = nn.Identity(),
    **kwargs: Any,
) -> Callable:
    r"""
    Returns a function that builds a conditional flow for learning the posterior.

    The returned function is to be passed to `NPE` as `density_estimator`. It is
    called with a batch of (unconstrained) parameters and a batch of conditioning
    tensors, which are used to infer the dimensionalities and the z-scoring
    statistics.

    Args:
        model: The type of density estimator that will be created. One of
            [`realnvp`].
        z_score_theta: Whether to z-score parameters $\theta$ before passing them into
            the flow, can take one of the following:
            - `none`, or None: do not z-score.
            - `independent`: z-score each dimension independently.
            - `structured`: compute a single mean and std over all dimensions.
        hidden_features: Number of hidden features of the coupling conditioners.
        num_transforms: Number of coupling blocks.
        embedding_net: Summarizer for the conditioning, e.g. a `ConvSummaryNet` or a
            `RecurrentSummaryNet`.
        kwargs: additional custom arguments passed to downstream build functions,
            e.g. `scale_limit`, `mask_type` or `permutation`.
    """

    kwargs = dict(
        z_score_x=z_score_theta,
        hidden_features=hidden_features,
        num_transforms=num_transforms,
        embedding_net=check_net_device(embedding_net, "cpu", embedding_net_warn_msg),
        **kwargs,
    )

    def build_fn(batch_theta, batch_x):
        if model not in model_builders:
            raise NotImplementedError(f"Model {model} in not implemented")

        # batch_x are the modelled variables, batch_y the conditioned variables of
        # the builder. Here these are the parameters and the case counts.
        return model_builders[model](batch_x=batch_theta, batch_y=batch_x, **kwargs)

    return build_fn
