# This file is part of epiflow, a toolkit for amortized inference in epidemic models.
# epiflow is licensed under the Apache License Version 2.0, see
# <https://www.apache.org/licenses/>.

from epiflow.__version__ import __version__
from epiflow.inference import NPE, DirectPosterior, sample_posterior, train
from epiflow.neural_nets import posterior_nn
from epiflow.utils import BoxUniform, Reparameterization

__all__ = [
    "BoxUniform",
    "DirectPosterior",
    "NPE",
    "Reparameterization",
    "__version__",
    "posterior_nn",
    "sample_posterior",
    "train",
]
