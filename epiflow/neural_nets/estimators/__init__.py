# This file is part of epiflow, a toolkit for amortized inference in epidemic models.
# epiflow is licensed under the Apache License Version 2.0, see
# <https://www.apache.org/licenses/>.

from epiflow.neural_nets.estimators.base import ConditionalDensityEstimator
from epiflow.neural_nets.estimators.flow import ConditionalFlow

__all__ = ["ConditionalDensityEstimator", "ConditionalFlow"]
