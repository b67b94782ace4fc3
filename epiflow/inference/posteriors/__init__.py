# This file is part of epiflow, a toolkit for amortized inference in epidemic models.
# epiflow is licensed under the Apache License Version 2.0, see
# <https://www.apache.org/licenses/>.

from epiflow.inference.posteriors.direct_posterior import (
    DirectPosterior,
    sample_posterior,
)

__all__ = ["DirectPosterior", "sample_posterior"]
