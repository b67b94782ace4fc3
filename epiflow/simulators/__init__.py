# This file is part of epiflow, a toolkit for amortized inference in epidemic models.
# epiflow is licensed under the Apache License Version 2.0, see
# <https://www.apache.org/licenses/>.

from epiflow.simulators.base import (
    Batch,
    BatchGenerator,
    EpidemicSimulator,
    SimpleBatchGenerator,
)
from epiflow.simulators.binomial_chain import BinomialChainSimulator
from epiflow.simulators.simutils import simulate_in_batches
from epiflow.simulators.sir import SIRSimulator

__all__ = [
    "Batch",
    "BatchGenerator",
    "BinomialChainSimulator",
    "EpidemicSimulator",
    "SIRSimulator",
    "SimpleBatchGenerator",
    "simulate_in_batches",
]
