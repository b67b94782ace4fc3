# This file is part of epiflow, a toolkit for amortized inference in epidemic models.
# epiflow is licensed under the Apache License Version 2.0, see
# <https://www.apache.org/licenses/>.

from dataclasses import dataclass
from pathlib import Path
from typing import Optional, Union

from epiflow.utils.typechecks import (
    validate_bool,
    validate_optional,
    validate_positive_float,
    validate_positive_int,
)


@dataclass
class TrainConfig:
    """Configuration for the online training loop.

    Every step draws a fresh batch of `training_batch_size` simulations. An epoch is
    `simulations_per_epoch // training_batch_size` steps (at least one). The
    held-out test batch of `num_test_simulations` is simulated once and evaluated
    before the first update, every `evaluate_every` epochs and after the last epoch.
    With `min_learning_rate`, the learning rate is cosine-annealed from
    `learning_rate` to `min_learning_rate` over the `num_epochs` of the call.
    """

    # Data & optimization
    num_epochs: int
    training_batch_size: int
    learning_rate: float

    # Loop controls
    num_test_simulations: int
    evaluate_every: int

    # Lifecycle
    resume_training: bool

    # UX
    show_train_summary: bool

    simulations_per_epoch: Optional[int] = None

    # Regularization / safety
    clip_max_norm: Optional[float] = None
    min_learning_rate: Optional[float] = None

    checkpoint_path: Optional[Union[str, Path]] = None

    def __post_init__(self):
        validate_positive_int(self.num_epochs, "num_epochs")
        validate_positive_int(self.training_batch_size, "training_batch_size")
        validate_positive_float(self.learning_rate, "learning_rate")
        validate_positive_int(self.num_test_simulations, "num_test_simulations")
        validate_positive_int(self.evaluate_every, "evaluate_every")
        validate_bool(self.resume_training, "resume_training")
        validate_bool(self.show_train_summary, "show_train_summary")
        validate_optional(
            self.simulations_per_epoch, "simulations_per_epoch", validate_positive_int
        )
        validate_optional(self.clip_max_norm, "clip_max_norm", validate_positive_float)
        validate_optional(
            self.min_learning_rate, "min_learning_rate", validate_positive_float
        )
        if (
            self.min_learning_rate is not None
            and self.min_learning_rate > self.learning_rate
        ):
            raise ValueError(
                f"`min_learning_rate` ({self.min_learning_rate}) must not exceed "
                f"`learning_rate` ({self.learning_rate})."
            )

    @property
    def steps_per_epoch(self) -> int:
        if self.simulations_per_epoch is None:
            return 1
        return max(1, self.simulations_per_epoch // self.training_batch_size)
