# This file is part of epiflow, a toolkit for amortized inference in epidemic models.
# epiflow is licensed under the Apache License Version 2.0, see
# <https://www.apache.org/licenses/>.

from epiflow.inference.trainers._contracts import TrainConfig
from epiflow.inference.trainers.base import NeuralInference
from epiflow.inference.trainers.npe import NPE, train

__all__ = ["NPE", "NeuralInference", "TrainConfig", "train"]
