# This file is part of epiflow, a toolkit for amortized inference in epidemic models.
# epiflow is licensed under the Apache License Version 2.0, see
# <https://www.apache.org/licenses/>.

from epiflow.neural_nets.embedding_nets import (
    ConvSummaryNet,
    FCEmbedding,
    RecurrentSummaryNet,
    SequenceSummarizer,
)
from epiflow.neural_nets.estimators import ConditionalFlow
from epiflow.neural_nets.factory import posterior_nn
from epiflow.neural_nets.net_builders import build_realnvp
from epiflow.neural_nets.transforms import (
    AffineCouplingBlock,
    CompositeBlock,
    InvertibleBlock,
    PermutationBlock,
    RandomPermutation,
    ReversePermutation,
    StandardizingBlock,
)

__all__ = [
    "AffineCouplingBlock",
    "CompositeBlock",
    "ConditionalFlow",
    "ConvSummaryNet",
    "FCEmbedding",
    "InvertibleBlock",
    "PermutationBlock",
    "RandomPermutation",
    "RecurrentSummaryNet",
    "ReversePermutation",
    "SequenceSummarizer",
    "StandardizingBlock",
    "build_realnvp",
    "posterior_nn",
]
