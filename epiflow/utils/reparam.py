# This file is part of epiflow, a toolkit for amortized inference in epidemic models.
# epiflow is licensed under the Apache License Version 2.0, see
# <https://www.apache.org/licenses/>.

from typing import Sequence, Tuple

import torch
from torch import Tensor
from torch.distributions import transforms as torch_tf

LOGIT_EPS = 1e-5

_TRANSFORMS = {
    "log": torch_tf.ExpTransform,
    "logit": torch_tf.SigmoidTransform,
    "identity": lambda: torch_tf.identity_transform,
}


class Reparameterization:
    r"""Fixed element-wise map between natural and unconstrained parameters.

    Every dimension is either a rate (`"log"`, natural domain $(0, \infty)$), a
    proportion (`"logit"`, natural domain $(0, 1)$) or already unconstrained
    (`"identity"`). `forward` maps natural values onto the real line, `inverse`
    maps flow outputs back to the natural domain.

    Proportions are clamped to `[eps, 1 - eps]` before the logit so that boundary
    values such as an extinct compartment stay finite.

    Example:
    ```
    reparam = Reparameterization(["logit", "log", "log"])
    theta = torch.tensor([[0.37, 2.5, 0.2]])
    assert torch.allclose(reparam.inverse(reparam.forward(theta)), theta)
    ```
    """

    def __init__(self, kinds: Sequence[str], eps: float = LOGIT_EPS):
        unknown = [k for k in kinds if k not in _TRANSFORMS]
        if unknown:
            raise ValueError(
                f"Unknown reparameterization(s) {unknown}, use one of "
                f"{list(_TRANSFORMS)}."
            )
        if not 0.0 < eps < 0.5:
            raise ValueError(f"`eps` must lie in (0, 0.5), got {eps}.")

        self._kinds = tuple(kinds)
        self._eps = eps
        # Maps unconstrained -> natural, one transform per dimension.
        self._transform = torch_tf.CatTransform(
            [_TRANSFORMS[k]() for k in self._kinds],
            dim=-1,
            lengths=[1] * len(self._kinds),
        )
        self._logit_mask = torch.tensor([k == "logit" for k in self._kinds])

    @property
    def kinds(self) -> Tuple[str, ...]:
        return self._kinds

    @property
    def num_params(self) -> int:
        return len(self._kinds)

    def _check_dims(self, values: Tensor) -> None:
        if values.shape[-1] != self.num_params:
            raise ValueError(
                f"Expected {self.num_params} parameters in the last dimension, got "
                f"{values.shape[-1]}."
            )

    def forward(self, natural: Tensor) -> Tensor:
        """Map natural-space parameters to unconstrained space (log / logit)."""
        self._check_dims(natural)
        mask = self._logit_mask.to(natural.device)
        clamped = torch.where(
            mask, natural.clamp(self._eps, 1.0 - self._eps), natural
        )
        return self._transform.inv(clamped)

    def inverse(self, unconstrained: Tensor) -> Tensor:
        """Map unconstrained parameters back to natural space (exp / expit)."""
        self._check_dims(unconstrained)
        return self._transform(unconstrained)

    def log_abs_det_jacobian(self, unconstrained: Tensor) -> Tensor:
        r"""Return $\log |\det \partial \theta / \partial z|$ of the inverse map,
        summed over the parameter dimension."""
        natural = self.inverse(unconstrained)
        return self._transform.log_abs_det_jacobian(unconstrained, natural).sum(-1)

    def __repr__(self) -> str:
        return f"Reparameterization(kinds={list(self._kinds)}, eps={self._eps})"
