# This file is part of epiflow, a toolkit for amortized inference in epidemic models.
# epiflow is licensed under the Apache License Version 2.0, see
# <https://www.apache.org/licenses/>.

from copy import deepcopy
from pathlib import Path
from typing import Any, Callable, Dict, Optional, Union

from torch import Tensor
from torch.utils.tensorboard.writer import SummaryWriter

from epiflow.inference.posteriors.direct_posterior import DirectPosterior
from epiflow.inference.trainers._contracts import TrainConfig
from epiflow.inference.trainers.base import NeuralInference
from epiflow.neural_nets.estimators import ConditionalDensityEstimator
from epiflow.neural_nets.factory import posterior_nn
from epiflow.simulators.base import Batch, BatchGenerator
from epiflow.types import BatchCallback
from epiflow.utils.errors import ShapeMismatchError
from epiflow.utils.reparam import Reparameterization
from epiflow.utils.typechecks import validate_callable, validate_optional


class NPE(NeuralInference):
    def __init__(
        self,
        batch_generator: BatchGenerator,
        density_estimator: Union[
            str, Callable, ConditionalDensityEstimator
        ] = "realnvp",
        device: str = "cpu",
        logging_level: Union[int, str] = "WARNING",
        summary_writer: Optional[SummaryWriter] = None,
        show_progress_bars: bool = True,
    ):
        r"""Amortized neural posterior estimation trained on freshly simulated
        batches.

        The conditional flow is trained by maximum likelihood on
        `(target, conditioning)` pairs from `batch_generator`, which minimizes the
        forward KL divergence between the true posterior and the flow.

        Args:
            batch_generator: Source of simulated batches, called once per step.
            density_estimator: If it is a string, use a pre-configured network of the
                provided type (one of `realnvp`). Alternatively, a function that
                builds a custom neural network, e.g. returned by `posterior_nn`, can
                be provided. The function will be called with the held-out batch
                (targets, conditioning), which can thus be used for shape inference
                and z-scoring. A ready-built `ConditionalDensityEstimator` is trained
                as is.

        See docstring of `NeuralInference` class for all other arguments.
        """

        super().__init__(
            batch_generator=batch_generator,
            device=device,
            logging_level=logging_level,
            summary_writer=summary_writer,
            show_progress_bars=show_progress_bars,
        )

        # As detailed in the docstring, `density_estimator` is either a string, a
        # callable or an estimator. The function creating the neural network is
        # attached to `_build_neural_net`. It will be called in the first call to
        # `train` and receive the held-out batch.
        self._build_neural_net: Optional[Callable] = None
        if isinstance(density_estimator, str):
            self._build_neural_net = posterior_nn(model=density_estimator)
        elif isinstance(density_estimator, ConditionalDensityEstimator):
            self._neural_net = density_estimator
        elif callable(density_estimator):
            self._build_neural_net = density_estimator
        else:
            raise TypeError(
                "`density_estimator` must be a string, a build function or a "
                f"`ConditionalDensityEstimator`, got {type(density_estimator)}."
            )

    def train(
        self,
        num_epochs: int = 100,
        training_batch_size: int = 64,
        learning_rate: float = 5e-4,
        min_learning_rate: Optional[float] = None,
        simulations_per_epoch: Optional[int] = None,
        num_test_simulations: int = 256,
        evaluate_every: int = 10,
        clip_max_norm: Optional[float] = 5.0,
        callback: Optional[BatchCallback] = None,
        resume_training: bool = False,
        show_train_summary: bool = False,
        checkpoint_path: Optional[Union[str, Path]] = None,
    ) -> ConditionalDensityEstimator:
        r"""Return density estimator that approximates the distribution $p(\theta|x)$.

        Args:
            num_epochs: Number of epochs to train for.
            training_batch_size: Number of fresh simulations per optimizer step.
            learning_rate: Learning rate for Adam optimizer.
            min_learning_rate: If given, the learning rate is cosine-annealed from
                `learning_rate` to this value over the `num_epochs` of this call.
            simulations_per_epoch: Simulations that make up an epoch. An epoch has
                `simulations_per_epoch // training_batch_size` steps (at least one).
                Defaults to a single step per epoch.
            num_test_simulations: Size of the held-out batch. It is simulated in the
                first call to `train` and reused afterwards.
            evaluate_every: Evaluate the held-out loss every that many epochs. It is
                also evaluated before the first and after the last epoch.
            clip_max_norm: Value at which to clip the total gradient norm in order to
                prevent exploding gradients. Use None for no clipping.
            callback: Called as `callback(epoch, test_loss)` after every evaluation.
            resume_training: If `True`, the optimizer and the epoch count are
                restored from the last time `.train()` was called.
            show_train_summary: Whether to print the number of epochs and held-out
                loss after the training.
            checkpoint_path: If given, the estimator's state is saved there after
                every evaluation.

        Returns:
            Density estimator that approximates the distribution $p(\theta|x)$. It is
            the estimator owned by this object, trained in place.

        Raises:
            NumericalDegeneracyError: If a training or held-out loss is NaN or Inf.
        """

        train_config = TrainConfig(
            num_epochs=num_epochs,
            training_batch_size=training_batch_size,
            learning_rate=learning_rate,
            min_learning_rate=min_learning_rate,
            simulations_per_epoch=simulations_per_epoch,
            num_test_simulations=num_test_simulations,
            evaluate_every=evaluate_every,
            clip_max_norm=clip_max_norm,
            resume_training=resume_training,
            show_train_summary=show_train_summary,
            checkpoint_path=checkpoint_path,
        )
        validate_optional(callback, "callback", validate_callable)

        test_batch = self._simulate_test_batch(train_config.num_test_simulations)
        self._initialize_neural_network(test_batch)

        return self._run_training_loop(train_config, callback=callback)

    def _initialize_neural_network(self, batch: Batch) -> None:
        if self._neural_net is None:
            assert self._build_neural_net is not None, (
                "The estimator cannot be rebuilt after pickling."
            )
            self._neural_net = self._build_neural_net(
                batch.target.cpu(), batch.conditioning.cpu()
            )

        input_shape = self._neural_net.input_shape
        condition_shape = self._neural_net.condition_shape
        if batch.target.shape[1:] != input_shape:
            raise ShapeMismatchError(
                f"Simulated targets of shape {tuple(batch.target.shape[1:])} do not "
                f"match the estimator's input shape {tuple(input_shape)}."
            )
        if batch.conditioning.shape[1:] != condition_shape:
            raise ShapeMismatchError(
                f"Simulated conditioning of shape "
                f"{tuple(batch.conditioning.shape[1:])} does not match the "
                f"estimator's condition shape {tuple(condition_shape)}."
            )

    def _loss(self, batch: Batch) -> Tensor:
        assert self._neural_net is not None
        return self._neural_net.loss(batch.target, batch.conditioning)

    def build_posterior(
        self,
        density_estimator: Optional[ConditionalDensityEstimator] = None,
        reparam: Optional[Reparameterization] = None,
        direct_sampling_parameters: Optional[Dict[str, Any]] = None,
    ) -> DirectPosterior:
        r"""Build posterior from the neural density estimator.

        Args:
            density_estimator: The density estimator that the posterior is based on.
                If `None`, use the latest neural density estimator that was trained.
            reparam: Inverse map from the flow's output to natural parameters. If
                `None`, the batch generator's `reparam` is used, if it has one.
            direct_sampling_parameters: Additional kwargs passed to
                `DirectPosterior`.

        Returns:
            Posterior $p(\theta|x)$ with `.sample()` and `.log_prob()` methods. It
            holds a copy of the estimator, so further training does not change it.
        """
        if density_estimator is None:
            if self._neural_net is None:
                raise ValueError(
                    "No density estimator available. Call `.train()` first or pass "
                    "`density_estimator`."
                )
            density_estimator = self._neural_net
        if reparam is None:
            reparam = getattr(self._batch_generator, "reparam", None)

        self._posterior = DirectPosterior(
            posterior_estimator=deepcopy(density_estimator),
            reparam=reparam,
            device=self._device,
            **(direct_sampling_parameters or {}),
        )
        return self._posterior


def train(
    flow: ConditionalDensityEstimator,
    batch_generator: BatchGenerator,
    num_epochs: int,
    batch_size: int,
    learning_rate: float,
    callback: Optional[BatchCallback] = None,
    device: str = "cpu",
    summary_writer: Optional[SummaryWriter] = None,
    show_progress_bars: bool = False,
    **train_kwargs,
) -> ConditionalDensityEstimator:
    """Train `flow` by maximum likelihood on batches from `batch_generator`.

    Args:
        flow: Estimator to train. Its weights are updated in place.
        batch_generator: Source of freshly simulated batches.
        num_epochs: Number of epochs.
        batch_size: Simulations per optimizer step.
        learning_rate: Learning rate for Adam optimizer.
        callback: Called as `callback(epoch, test_loss)` after every evaluation.
        device: Training device.
        summary_writer: TensorBoard writer, defaults to one under `epiflow-logs`.
        show_progress_bars: Whether to print the training progress.
        train_kwargs: Further arguments of `NPE.train`, e.g. `evaluate_every`,
            `num_test_simulations`, `simulations_per_epoch` or `min_learning_rate`.

    Returns:
        The trained `flow` (the same object that was passed).
    """
    inference = NPE(
        batch_generator,
        density_estimator=flow,
        device=device,
        summary_writer=summary_writer,
        show_progress_bars=show_progress_bars,
    )
    return inference.train(
        num_epochs=num_epochs,
        training_batch_size=batch_size,
        learning_rate=learning_rate,
        callback=callback,
        **train_kwargs,
    )
