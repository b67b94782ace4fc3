# This file is part of epiflow, a toolkit for amortized inference in epidemic models.
# epiflow is licensed under the Apache License Version 2.0, see
# <https://www.apache.org/licenses/>.

"""Distributional comparisons between flow posterior samples and reference samples,
e.g. draws from an MCMC reference engine for the same observation and prior."""

from typing import Any, Callable, Dict, Optional, Tuple, Union

import numpy as np
import torch
from sklearn.ensemble import RandomForestClassifier
from sklearn.model_selection import StratifiedKFold, cross_val_score
from sklearn.neural_network import MLPClassifier
from torch import Tensor

from epiflow.utils.errors import ShapeMismatchError
from epiflow.utils.reparam import Reparameterization


def _to_comparison_space(
    samples: Tensor,
    reference_samples: Tensor,
    reparam: Optional[Reparameterization],
) -> Tuple[Tensor, Tensor]:
    """Check both sample sets and map them to the space they are compared in."""
    samples = torch.as_tensor(samples, dtype=torch.float32)
    reference_samples = torch.as_tensor(reference_samples, dtype=torch.float32)
    if samples.dim() != 2 or reference_samples.dim() != 2:
        raise ShapeMismatchError(
            "Samples must have shape (num_samples, n_params), got "
            f"{tuple(samples.shape)} and {tuple(reference_samples.shape)}."
        )
    if samples.shape[1] != reference_samples.shape[1]:
        raise ShapeMismatchError(
            f"Posterior samples have {samples.shape[1]} parameters, the reference "
            f"samples {reference_samples.shape[1]}."
        )
    if reparam is not None:
        samples = reparam.forward(samples)
        reference_samples = reparam.forward(reference_samples)
    return samples, reference_samples


def c2st(
    samples: Tensor,
    reference_samples: Tensor,
    reparam: Optional[Reparameterization] = None,
    seed: int = 1,
    n_folds: int = 5,
    metric: str = "accuracy",
    classifier: Union[str, Callable] = "rf",
    classifier_kwargs: Optional[Dict[str, Any]] = None,
) -> Tensor:
    r"""Classifier two-sample test between flow posterior samples and reference
    posterior samples for the same observation.

    A classifier is trained to tell the two sets apart; the returned score is its
    cross-validated accuracy. 0.5 means the flow posterior cannot be told apart
    from the reference, 1.0 means the two are disjoint.

    Posterior samples of rates and proportions are skewed and bounded. With
    `reparam`, both sets are compared in the unconstrained space the flow is
    trained in, where they are closer to Gaussian. Both sets are then z-scored
    with the mean and std of the reference samples.

    Args:
        samples: Flow posterior samples in natural space, `(num_samples, n_params)`,
            e.g. the output of `DirectPosterior.sample`.
        reference_samples: Reference samples in natural space,
            `(num_reference, n_params)`.
        reparam: Map from natural to unconstrained parameters, applied to both sets.
        seed: Seed of the classifier and of the cross-validation folds.
        n_folds: Number of cross-validation folds.
        metric: sklearn scoring name passed to `cross_val_score`.
        classifier: "rf" (random forest), "mlp" (multi-layer perceptron) or a
            sklearn compatible classifier class.
        classifier_kwargs: Keyword arguments for the classifier.

    Returns:
        Mean score over the folds, a scalar tensor.
    """
    samples, reference_samples = _to_comparison_space(
        samples, reference_samples, reparam
    )

    if classifier == "rf":
        clf_class = RandomForestClassifier
        clf_kwargs = classifier_kwargs or {}
    elif classifier == "mlp":
        num_params = samples.shape[1]
        clf_class = MLPClassifier
        clf_kwargs = classifier_kwargs or {
            "hidden_layer_sizes": (10 * num_params, 10 * num_params),
            "max_iter": 1000,
            "early_stopping": True,
            "n_iter_no_change": 50,
        }
    else:
        clf_class = classifier
        clf_kwargs = classifier_kwargs or {}

    ref_mean = reference_samples.mean(dim=0)
    ref_std = reference_samples.std(dim=0)
    # Parameters that the reference pins to a single value are only centered.
    ref_std[ref_std < 1e-14] = 1.0

    features = torch.cat([samples, reference_samples], dim=0)
    features = ((features - ref_mean) / ref_std).cpu().numpy()
    labels = np.concatenate(
        [np.zeros(len(samples)), np.ones(len(reference_samples))]
    )

    folds = StratifiedKFold(n_splits=n_folds, shuffle=True, random_state=seed)
    scores = cross_val_score(
        clf_class(random_state=seed, **clf_kwargs),
        features,
        labels,
        cv=folds,
        scoring=metric,
    )
    return torch.as_tensor(scores).mean()


def marginal_mean_error(
    samples: Tensor,
    reference_samples: Tensor,
    reparam: Optional[Reparameterization] = None,
) -> Tensor:
    """Per-parameter absolute difference of posterior means, in units of the
    reference posterior standard deviation.

    Args:
        samples: Flow posterior samples in natural space, `(num_samples, n_params)`.
        reference_samples: Reference samples in natural space,
            `(num_reference, n_params)`.
        reparam: Map from natural to unconstrained parameters, applied to both sets
            before comparing.

    Returns:
        Tensor of shape `(n_params,)`.
    """
    samples, reference_samples = _to_comparison_space(
        samples, reference_samples, reparam
    )
    ref_std = reference_samples.std(dim=0)
    ref_std[ref_std < 1e-14] = 1.0
    return (samples.mean(dim=0) - reference_samples.mean(dim=0)).abs() / ref_std
