# This file is part of epiflow, a toolkit for amortized inference in epidemic models.
# epiflow is licensed under the Apache License Version 2.0, see
# <https://www.apache.org/licenses/>.

import pytest

from epiflow.inference.trainers._contracts import TrainConfig


def _config(**kwargs):
    defaults = dict(
        num_epochs=10,
        training_batch_size=64,
        learning_rate=5e-4,
        num_test_simulations=128,
        evaluate_every=2,
        resume_training=False,
        show_train_summary=False,
    )
    defaults.update(kwargs)
    return TrainConfig(**defaults)


@pytest.mark.parametrize(
    "simulations_per_epoch, expected_steps",
    ((None, 1), (64, 1), (10, 1), (640, 10), (700, 10)),
)
def test_steps_per_epoch(simulations_per_epoch, expected_steps):
    config = _config(simulations_per_epoch=simulations_per_epoch)
    assert config.steps_per_epoch == expected_steps


@pytest.mark.parametrize(
    "kwargs",
    (
        dict(num_epochs=0),
        dict(num_epochs=2.5),
        dict(training_batch_size=-1),
        dict(training_batch_size=True),
        dict(learning_rate=0.0),
        dict(learning_rate=float("nan")),
        dict(num_test_simulations=0),
        dict(evaluate_every=0),
        dict(simulations_per_epoch=0),
        dict(clip_max_norm=-1.0),
        dict(min_learning_rate=0.0),
        dict(learning_rate=1e-4, min_learning_rate=1e-3),
    ),
)
def test_invalid_values_raise(kwargs):
    with pytest.raises(ValueError):
        _config(**kwargs)


def test_flags_must_be_bools():
    with pytest.raises(TypeError):
        _config(resume_training=1)
    with pytest.raises(TypeError):
        _config(show_train_summary="yes")


def test_optional_fields_accept_none_and_valid_values():
    config = _config(simulations_per_epoch=None, clip_max_norm=None)
    assert config.min_learning_rate is None

    config = _config(clip_max_norm=5, min_learning_rate=5e-4)
    assert config.clip_max_norm == 5
    assert config.min_learning_rate == config.learning_rate
