# This file is part of epiflow, a toolkit for amortized inference in epidemic models.
# epiflow is licensed under the Apache License Version 2.0, see
# <https://www.apache.org/licenses/>.
# flake8: noqa

from epiflow.utils.epiutils import (
    assert_all_finite,
    seed_all_backends,
    standardizing_block,
    z_score_parser,
)
from epiflow.utils.errors import (
    InvalidConditioningError,
    NumericalDegeneracyError,
    ShapeMismatchError,
)
from epiflow.utils.io import get_log_root, load_state, save_state
from epiflow.utils.metrics import c2st, marginal_mean_error
from epiflow.utils.reparam import LOGIT_EPS, Reparameterization
from epiflow.utils.torchutils import BoxUniform, process_device
