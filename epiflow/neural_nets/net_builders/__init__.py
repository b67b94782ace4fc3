# This file is part of epiflow, a toolkit for amortized inference in epidemic models.
# epiflow is licensed under the Apache License Version 2.0, see
# <https://www.apache.org/licenses/>.

from epiflow.neural_nets.net_builders.flow import build_realnvp, get_base_dist

__all__ = ["build_realnvp", "get_base_dist"]
