# This file is part of epiflow, a toolkit for amortized inference in epidemic models.
# epiflow is licensed under the Apache License Version 2.0, see
# <https://www.apache.org/licenses/>.

from epiflow.inference.posteriors import DirectPosterior, sample_posterior
from epiflow.inference.trainers import NPE, NeuralInference, TrainConfig, train

__all__ = [
    "DirectPosterior",
    "NPE",
    "NeuralInference",
    "TrainConfig",
    "sample_posterior",
    "train",
]
