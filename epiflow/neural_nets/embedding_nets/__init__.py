# This file is part of epiflow, a toolkit for amortized inference in epidemic models.
# epiflow is licensed under the Apache License Version 2.0, see
# <https://www.apache.org/licenses/>.

from epiflow.neural_nets.embedding_nets.base import SequenceSummarizer
from epiflow.neural_nets.embedding_nets.cnn import ConvSummaryNet, causal_conv1d
from epiflow.neural_nets.embedding_nets.fully_connected import FCEmbedding
from epiflow.neural_nets.embedding_nets.recurrent import RecurrentSummaryNet

__all__ = [
    "ConvSummaryNet",
    "FCEmbedding",
    "RecurrentSummaryNet",
    "SequenceSummarizer",
    "causal_conv1d",
]
