# This file is part of epiflow, a toolkit for amortized inference in epidemic models.
# epiflow is licensed under the Apache License Version 2.0, see
# <https://www.apache.org/licenses/>.

r"""Invertible, context-conditioned building blocks of the conditional flow.

Every block maps a batch of vectors `(batch_dim, features)` and returns the
transformed batch together with the log absolute determinant of the Jacobian of
the map that was applied, shape `(batch_dim,)`. `forward` runs in the direction
parameters $\to$ latent (used for density evaluation during training), `inverse`
runs latent $\to$ parameters (used for sampling) and returns the log-determinant of
the inverse map, i.e. the negative of the forward one.
"""

from abc import ABC, abstractmethod
from typing import Callable, Iterable, Optional, Tuple, Union

import torch
from pyknos.nflows.nn import nets
from torch import Tensor, nn, relu

from epiflow.utils.errors import ShapeMismatchError
from epiflow.utils.torchutils import create_alternating_binary_mask


class InvertibleBlock(nn.Module, ABC):
    """Base class of all blocks of a conditional flow."""

    def __init__(self, features: int):
        super().__init__()
        self.features = features

    @abstractmethod
    def forward(
        self, inputs: Tensor, context: Optional[Tensor] = None
    ) -> Tuple[Tensor, Tensor]:
        """Return `(outputs, logabsdet)` of the forward map."""

    @abstractmethod
    def inverse(
        self, inputs: Tensor, context: Optional[Tensor] = None
    ) -> Tuple[Tensor, Tensor]:
        """Return `(outputs, logabsdet)` of the inverse map."""

    def _check_inputs(self, inputs: Tensor) -> None:
        if inputs.dim() != 2 or inputs.shape[1] != self.features:
            raise ShapeMismatchError(
                f"{self.__class__.__name__} expects inputs of shape "
                f"(batch_dim, {self.features}), got {tuple(inputs.shape)}."
            )


class AffineCouplingBlock(InvertibleBlock):
    r"""Affine coupling block conditioned on an external summary.

    The features are split by `mask`: entries with `mask > 0` form the transformed
    partition $x_b$, all others the identity partition $x_a$. A conditioner network
    reads $x_a$ and the summary $c$ and predicts a log-scale $s$ and a shift $t$:

    $y_a = x_a, \quad y_b = x_b \exp(s(x_a, c)) + t(x_a, c)$

    with $\log |\det J| = \sum s(x_a, c)$. The raw log-scale is soft-clamped to
    `[-scale_limit, scale_limit]` through `scale_limit * tanh(raw / scale_limit)`.
    """

    def __init__(
        self,
        features: int,
        context_features: Optional[int] = None,
        mask: Optional[Tensor] = None,
        hidden_features: int = 50,
        num_blocks: int = 2,
        scale_limit: Optional[float] = 3.0,
        activation: Callable = relu,
        dropout_probability: float = 0.0,
        use_batch_norm: bool = False,
        transform_net_create_fn: Optional[Callable[[int, int], nn.Module]] = None,
    ):
        """
        Args:
            features: Number of parameters the block acts on.
            context_features: Size of the summary vector, `None` for an
                unconditional block.
            mask: Binary mask of shape `(features,)`, entries `> 0` are transformed.
                Defaults to an alternating mask.
            hidden_features: Hidden units of the residual conditioner.
            num_blocks: Residual blocks of the conditioner.
            scale_limit: Bound of the soft clamp on the log-scale. `None` disables
                the clamp.
            activation: Activation of the conditioner.
            dropout_probability: Dropout of the conditioner.
            use_batch_norm: Whether the conditioner uses batch norm.
            transform_net_create_fn: Optional factory `(in_features, out_features)
                -> module` replacing the residual conditioner. The module is called
                as `net(inputs, context)`.
        """
        super().__init__(features)
        if features < 2:
            raise ShapeMismatchError(
                "A coupling block needs at least two features to split, got "
                f"{features}."
            )
        if mask is None:
            mask = create_alternating_binary_mask(features, even=True)
        mask = torch.as_tensor(mask)
        if mask.dim() != 1 or mask.numel() != features:
            raise ShapeMismatchError(
                f"Mask must have shape ({features},), got {tuple(mask.shape)}."
            )

        features_vector = torch.arange(features)
        self.register_buffer("identity_features", features_vector[mask <= 0])
        self.register_buffer("transform_features", features_vector[mask > 0])
        self.num_identity_features = len(self.identity_features)
        self.num_transform_features = len(self.transform_features)
        if self.num_identity_features == 0 or self.num_transform_features == 0:
            raise ShapeMismatchError(
                "Mask must split the features into two non-empty partitions."
            )

        self.context_features = context_features or None
        self.scale_limit = scale_limit

        out_features = 2 * self.num_transform_features
        if transform_net_create_fn is None:
            self.conditioner = nets.ResidualNet(
                in_features=self.num_identity_features,
                out_features=out_features,
                hidden_features=hidden_features,
                context_features=self.context_features,
                num_blocks=num_blocks,
                activation=activation,
                dropout_probability=dropout_probability,
                use_batch_norm=use_batch_norm,
            )
            # Start as the identity map.
            nn.init.zeros_(self.conditioner.final_layer.weight)
            nn.init.zeros_(self.conditioner.final_layer.bias)
        else:
            self.conditioner = transform_net_create_fn(
                self.num_identity_features, out_features
            )

    def _check_context(self, inputs: Tensor, context: Optional[Tensor]) -> None:
        if self.context_features is None:
            return
        if context is None:
            raise ShapeMismatchError(
                "This coupling block is conditional, but no summary was passed."
            )
        if context.dim() != 2 or context.shape[1] != self.context_features:
            raise ShapeMismatchError(
                f"Expected a summary of shape (batch_dim, {self.context_features}), "
                f"got {tuple(context.shape)}."
            )
        if context.shape[0] != inputs.shape[0]:
            raise ShapeMismatchError(
                f"Batch size of inputs ({inputs.shape[0]}) and summary "
                f"({context.shape[0]}) do not match."
            )

    def _scale_and_shift(
        self, identity_split: Tensor, context: Optional[Tensor]
    ) -> Tuple[Tensor, Tensor]:
        params = self.conditioner(identity_split, context)
        raw_scale = params[:, : self.num_transform_features]
        shift = params[:, self.num_transform_features :]
        if self.scale_limit is None:
            log_scale = raw_scale
        else:
            log_scale = self.scale_limit * torch.tanh(raw_scale / self.scale_limit)
        return log_scale, shift

    def forward(
        self, inputs: Tensor, context: Optional[Tensor] = None
    ) -> Tuple[Tensor, Tensor]:
        self._check_inputs(inputs)
        self._check_context(inputs, context)

        identity_split = inputs[:, self.identity_features]
        transform_split = inputs[:, self.transform_features]
        log_scale, shift = self._scale_and_shift(identity_split, context)

        outputs = torch.empty_like(inputs)
        outputs[:, self.identity_features] = identity_split
        outputs[:, self.transform_features] = transform_split * torch.exp(
            log_scale
        ) + shift
        return outputs, log_scale.sum(dim=-1)

    def inverse(
        self, inputs: Tensor, context: Optional[Tensor] = None
    ) -> Tuple[Tensor, Tensor]:
        self._check_inputs(inputs)
        self._check_context(inputs, context)

        identity_split = inputs[:, self.identity_features]
        transform_split = inputs[:, self.transform_features]
        log_scale, shift = self._scale_and_shift(identity_split, context)

        outputs = torch.empty_like(inputs)
        outputs[:, self.identity_features] = identity_split
        outputs[:, self.transform_features] = (transform_split - shift) * torch.exp(
            -log_scale
        )
        return outputs, -log_scale.sum(dim=-1)


class PermutationBlock(InvertibleBlock):
    """Fixed reordering of the features. Volume preserving, its log-determinant is
    zero for every input."""

    def __init__(self, permutation: Tensor):
        permutation = torch.as_tensor(permutation, dtype=torch.long)
        if permutation.dim() != 1:
            raise ShapeMismatchError("Permutation must be a 1D tensor.")
        features = permutation.numel()
        if not torch.equal(torch.sort(permutation).values, torch.arange(features)):
            raise ValueError(f"{permutation.tolist()} is not a permutation.")
        super().__init__(features)
        self.register_buffer("_permutation", permutation)
        self.register_buffer("_inverse_permutation", torch.argsort(permutation))

    @property
    def permutation(self) -> Tensor:
        return self._permutation

    def _permute(self, inputs: Tensor, permutation: Tensor) -> Tuple[Tensor, Tensor]:
        self._check_inputs(inputs)
        outputs = inputs[:, permutation]
        logabsdet = inputs.new_zeros(inputs.shape[0])
        return outputs, logabsdet

    def forward(
        self, inputs: Tensor, context: Optional[Tensor] = None
    ) -> Tuple[Tensor, Tensor]:
        return self._permute(inputs, self._permutation)

    def inverse(
        self, inputs: Tensor, context: Optional[Tensor] = None
    ) -> Tuple[Tensor, Tensor]:
        return self._permute(inputs, self._inverse_permutation)


class RandomPermutation(PermutationBlock):
    """Permutes features with a random (but fixed after construction) order."""

    def __init__(self, features: int):
        super().__init__(torch.randperm(features))


class ReversePermutation(PermutationBlock):
    """Reverses the order of the features."""

    def __init__(self, features: int):
        super().__init__(torch.arange(features - 1, -1, -1))


class StandardizingBlock(InvertibleBlock):
    """Fixed affine z-scoring `(x - mean) / std` of the parameters."""

    def __init__(self, mean: Union[Tensor, float], std: Union[Tensor, float]):
        mean, std = map(torch.as_tensor, (mean, std))
        if mean.shape != std.shape or mean.dim() != 1:
            raise ShapeMismatchError("`mean` and `std` must be 1D of equal shape.")
        super().__init__(mean.numel())
        self.register_buffer("_mean", mean.float())
        self.register_buffer("_std", std.float())

    def _logabsdet(self, inputs: Tensor) -> Tensor:
        return (-torch.log(self._std).sum()).expand(inputs.shape[0])

    def forward(
        self, inputs: Tensor, context: Optional[Tensor] = None
    ) -> Tuple[Tensor, Tensor]:
        self._check_inputs(inputs)
        return (inputs - self._mean) / self._std, self._logabsdet(inputs)

    def inverse(
        self, inputs: Tensor, context: Optional[Tensor] = None
    ) -> Tuple[Tensor, Tensor]:
        self._check_inputs(inputs)
        return inputs * self._std + self._mean, -self._logabsdet(inputs)


class CompositeBlock(InvertibleBlock):
    """Ordered composition of blocks.

    `forward` applies the blocks first to last and `inverse` last to first; the
    log-determinants of the blocks add up.
    """

    def __init__(self, blocks: Iterable[InvertibleBlock]):
        blocks = list(blocks)
        if not blocks:
            raise ValueError("A composite block needs at least one block.")
        features = {block.features for block in blocks}
        if len(features) != 1:
            raise ShapeMismatchError(
                f"All blocks must act on the same number of features, got {features}."
            )
        super().__init__(features.pop())
        self._blocks = nn.ModuleList(blocks)

    def __len__(self) -> int:
        return len(self._blocks)

    def __iter__(self):
        return iter(self._blocks)

    def forward(
        self, inputs: Tensor, context: Optional[Tensor] = None
    ) -> Tuple[Tensor, Tensor]:
        self._check_inputs(inputs)
        outputs = inputs
        total_logabsdet = inputs.new_zeros(inputs.shape[0])
        for block in self._blocks:
            outputs, logabsdet = block(outputs, context)
            total_logabsdet = total_logabsdet + logabsdet
        return outputs, total_logabsdet

    def inverse(
        self, inputs: Tensor, context: Optional[Tensor] = None
    ) -> Tuple[Tensor, Tensor]:
        self._check_inputs(inputs)
        outputs = inputs
        total_logabsdet = inputs.new_zeros(inputs.shape[0])
        for block in reversed(self._blocks):
            outputs, logabsdet = block.inverse(outputs, context)
            total_logabsdet = total_logabsdet + logabsdet
        return outputs, total_logabsdet
