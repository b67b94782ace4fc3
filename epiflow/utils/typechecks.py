# This file is part of epiflow, a toolkit for amortized inference in epidemic models.
# epiflow is licensed under the Apache License Version 2.0, see
# <https://www.apache.org/licenses/>.

"""Functions that check types."""

from typing import Any, Callable, Optional


def is_bool(x):
    return isinstance(x, bool)


def is_int(x):
    # `True` is an int in Python, but never a valid count.
    return isinstance(x, int) and not isinstance(x, bool)


def is_positive_int(x):
    return is_int(x) and x > 0


def is_float(x):
    return isinstance(x, (int, float)) and not isinstance(x, bool)


def is_positive_float(x):
    return is_float(x) and x > 0


def validate_bool(value: Any, name: str) -> None:
    if not is_bool(value):
        raise TypeError(f"`{name}` must be a bool, got {type(value).__name__}.")


def validate_positive_int(value: Any, name: str) -> None:
    if not is_positive_int(value):
        raise ValueError(f"`{name}` must be a positive int, got {value!r}.")


def validate_positive_float(value: Any, name: str) -> None:
    if not is_positive_float(value):
        raise ValueError(f"`{name}` must be a positive number, got {value!r}.")


def validate_optional(
    value: Any, name: str, validator: Callable[[Any, str], None]
) -> None:
    """Run `validator` on `value` unless it is None."""
    if value is not None:
        validator(value, name)


def validate_callable(value: Optional[Any], name: str) -> None:
    if not callable(value):
        raise TypeError(f"`{name}` must be callable, got {type(value).__name__}.")
