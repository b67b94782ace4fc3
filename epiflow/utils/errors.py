# This file is part of epiflow, a toolkit for amortized inference in epidemic models.
# epiflow is licensed under the Apache License Version 2.0, see
# <https://www.apache.org/licenses/>.

"""Errors raised at the boundaries of summarizers, flows, training and sampling."""


class InvalidConditioningError(ValueError):
    """Conditioning data that a summarizer cannot consume.

    Raised for query times outside `[1, num_timepoints]`, non-integer query times,
    and sequences whose length differs from the summarizer's expected length.
    """


class ShapeMismatchError(ValueError):
    """Target, conditioning or summary dimensionality that does not match the
    configured shapes of an estimator or transform."""


class NumericalDegeneracyError(RuntimeError):
    """NaN or Inf in a loss, a log-determinant or sampled output."""
