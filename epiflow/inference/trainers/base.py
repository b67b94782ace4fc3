# This file is part of epiflow, a toolkit for amortized inference in epidemic models.
# epiflow is licensed under the Apache License Version 2.0, see
# <https://www.apache.org/licenses/>.

import logging
import time
from abc import ABC, abstractmethod
from datetime import datetime
from pathlib import Path
from typing import Dict, Optional, Union
from warnings import warn

import torch
from torch import Tensor
from torch.nn.utils.clip_grad import clip_grad_norm_
from torch.optim.adam import Adam
from torch.optim.lr_scheduler import CosineAnnealingLR
from torch.utils.tensorboard.writer import SummaryWriter

from epiflow.inference.trainers._contracts import TrainConfig
from epiflow.neural_nets.estimators import ConditionalDensityEstimator
from epiflow.simulators.base import Batch, BatchGenerator
from epiflow.types import BatchCallback
from epiflow.utils.epiutils import assert_all_finite
from epiflow.utils.io import get_log_root, save_state
from epiflow.utils.torchutils import process_device

logger = logging.getLogger(__name__)


class NeuralInference(ABC):
    """Abstract base class for amortized inference methods trained online, i.e. on
    freshly simulated batches."""

    def __init__(
        self,
        batch_generator: BatchGenerator,
        device: str = "cpu",
        logging_level: Union[int, str] = "WARNING",
        summary_writer: Optional[SummaryWriter] = None,
        show_progress_bars: bool = True,
    ):
        r"""Base class for inference methods.

        Args:
            batch_generator: Source of simulated `(target, conditioning)` batches,
                e.g. a `SIRSimulator`. It is called once per training step.
            device: torch device on which to train the neural net and on which to
                perform all posterior operations, e.g. gpu or cpu.
            logging_level: Minimum severity of messages to log. One of the strings
               "INFO", "WARNING", "DEBUG", "ERROR" and "CRITICAL".
            summary_writer: A `SummaryWriter` to control, among others, log
                file location (default is `<current working directory>/epiflow-logs`.)
            show_progress_bars: Whether to show the training progress.
        """

        self._device = process_device(device)
        logging.getLogger("epiflow").setLevel(logging_level)

        self._batch_generator = batch_generator
        self._neural_net: Optional[ConditionalDensityEstimator] = None
        self._posterior = None
        self._test_batch: Optional[Batch] = None

        self._show_progress_bars = show_progress_bars

        self._round = 0
        self.epoch = 0
        self._test_loss = float("Inf")
        self._best_test_loss = float("Inf")
        self._num_written_test_losses = 0

        self._summary_writer = (
            self._default_summary_writer() if summary_writer is None else summary_writer
        )

        # Logging during training (by SummaryWriter).
        self._summary = dict(
            epochs_trained=[],
            best_test_loss=[],
            test_loss=[],
            evaluation_epochs=[],
            training_loss=[],
            epoch_durations_sec=[],
        )

    @property
    def summary(self):
        return self._summary

    @property
    def test_batch(self) -> Optional[Batch]:
        """The held-out batch, simulated once on the first call to `train`."""
        return self._test_batch

    @abstractmethod
    def train(self, *args, **kwargs) -> ConditionalDensityEstimator:
        pass

    @abstractmethod
    def _loss(self, batch: Batch) -> Tensor:
        """Return the per-example losses of a batch, shape `(batch_dim,)`."""

    def _simulate_test_batch(self, num_simulations: int) -> Batch:
        if self._test_batch is None:
            self._test_batch = self._batch_generator.next_batch(num_simulations).to(
                self._device
            )
            logger.info("Simulated held-out batch of %d examples.", num_simulations)
        elif len(self._test_batch) != num_simulations:
            warn(
                f"Keeping the held-out batch of {len(self._test_batch)} examples "
                f"simulated in the first call to `train`, `num_test_simulations="
                f"{num_simulations}` is ignored.",
                stacklevel=3,
            )
        return self._test_batch

    def _run_training_loop(
        self,
        train_config: TrainConfig,
        callback: Optional[BatchCallback] = None,
    ) -> ConditionalDensityEstimator:
        """
        Run the main training loop: epochs of steps on fresh batches, interleaved
        with evaluations on the held-out batch.

        Args:
            train_config: TrainConfig dataclass configuration for the training loop.
            callback: Called as `callback(epoch, test_loss)` after every evaluation.

        Returns:
            The trained estimator. This is the estimator object owned by the
            inference object, its weights are updated in place.
        """

        assert self._neural_net is not None
        assert self._test_batch is not None

        # Move entire net to device for training.
        self._neural_net.to(self._device)

        if not train_config.resume_training or not hasattr(self, "optimizer"):
            self.optimizer = Adam(
                list(self._neural_net.parameters()),
                lr=train_config.learning_rate,
            )
            self.epoch = 0
            self._best_test_loss = float("Inf")

        # Every call starts from its own learning rate, also when resuming.
        for group in self.optimizer.param_groups:
            group["lr"] = train_config.learning_rate
            group["initial_lr"] = train_config.learning_rate
        scheduler = None
        if train_config.min_learning_rate is not None:
            scheduler = CosineAnnealingLR(
                self.optimizer,
                T_max=train_config.num_epochs,
                eta_min=train_config.min_learning_rate,
            )

        start_epoch = self.epoch
        final_epoch = start_epoch + train_config.num_epochs

        if start_epoch == 0:
            self._evaluate(callback, train_config.checkpoint_path)

        while self.epoch < final_epoch:
            # Train for a single epoch.
            self._neural_net.train()
            epoch_start_time = time.time()
            train_loss = self._train_epoch(
                train_config.steps_per_epoch,
                train_config.training_batch_size,
                train_config.clip_max_norm,
            )
            self.epoch += 1
            self._summarize_epoch(train_loss, epoch_start_time)
            if scheduler is not None:
                scheduler.step()

            if (
                self.epoch % train_config.evaluate_every == 0
                or self.epoch == final_epoch
            ):
                self._evaluate(callback, train_config.checkpoint_path)

            self._maybe_show_progress(self._show_progress_bars, self.epoch)

        # Update summary.
        self._summary["epochs_trained"].append(self.epoch - start_epoch)
        self._summary["best_test_loss"].append(self._best_test_loss)

        # Update TensorBoard and summary dict.
        self._summarize(round_=self._round)
        self._round += 1

        # Update description for progress bar.
        if train_config.show_train_summary:
            print(self._describe_round(self._round - 1, self._summary))

        # Avoid keeping the gradients in the resulting network, which can
        # cause memory leakage when benchmarking.
        self._neural_net.zero_grad(set_to_none=True)
        self._neural_net.eval()

        return self._neural_net

    def _train_epoch(
        self,
        num_steps: int,
        batch_size: int,
        clip_max_norm: Optional[float],
    ) -> float:
        """
        Perform a single training epoch, each step on a freshly simulated batch.

        The loss of every step is checked before the optimizer update, so that a
        degenerate step never alters the weights.

        Args:
            num_steps: Number of optimizer steps in the epoch.
            batch_size: Number of simulations per step.
            clip_max_norm: Value at which to clip the total gradient norm in order to
                prevent exploding gradients. Use None for no clipping.

        Returns:
            The average training loss over all samples in the epoch.

        Raises:
            NumericalDegeneracyError: If the loss of a step is NaN or Inf.
        """

        assert self._neural_net is not None

        train_loss_sum = 0.0
        for step in range(num_steps):
            batch = self._batch_generator.next_batch(batch_size).to(self._device)

            self.optimizer.zero_grad()
            train_losses = self._loss(batch)
            train_loss = torch.mean(train_losses)
            assert_all_finite(
                train_loss.detach(),
                f"training loss at epoch {self.epoch + 1}, step {step + 1}",
            )
            train_loss_sum += train_losses.sum().item()

            train_loss.backward()
            if clip_max_norm is not None:
                clip_grad_norm_(
                    self._neural_net.parameters(),
                    max_norm=clip_max_norm,
                )
            self.optimizer.step()

        return train_loss_sum / (num_steps * batch_size)

    def _evaluate(
        self,
        callback: Optional[BatchCallback],
        checkpoint_path: Optional[Union[str, Path]],
    ) -> float:
        """Evaluate the mean loss on the held-out batch, record it, report it to the
        callback and optionally write a checkpoint.

        Raises:
            NumericalDegeneracyError: If the held-out loss is NaN or Inf.
        """

        assert self._neural_net is not None
        assert self._test_batch is not None

        self._neural_net.eval()
        with torch.no_grad():
            test_loss_t = torch.mean(self._loss(self._test_batch))
        assert_all_finite(test_loss_t, f"held-out loss at epoch {self.epoch}")
        self._test_loss = test_loss_t.item()
        self._best_test_loss = min(self._best_test_loss, self._test_loss)

        self._summary["test_loss"].append(self._test_loss)
        self._summary["evaluation_epochs"].append(self.epoch)
        logger.info("Epoch %d: held-out loss %.4f.", self.epoch, self._test_loss)

        if checkpoint_path is not None:
            save_state(self._neural_net, checkpoint_path)
        if callback is not None:
            callback(self.epoch, self._test_loss)
        return self._test_loss

    def _summarize_epoch(self, train_loss: float, epoch_start_time: float) -> None:
        """Record training loss and duration of the epoch in `self._summary`."""

        self._summary["training_loss"].append(train_loss)
        self._summary["epoch_durations_sec"].append(time.time() - epoch_start_time)

    def _default_summary_writer(self) -> SummaryWriter:
        """Return summary writer logging to method-specific directory."""

        method = self.__class__.__name__
        logdir = Path(
            get_log_root(), method, datetime.now().isoformat().replace(":", "_")
        )
        return SummaryWriter(logdir)

    def _summarize(
        self,
        round_: int,
    ) -> None:
        """Update the summary_writer with statistics of a call to `train`.

        During training several performance statistics are added to the summary, e.g.,
        using `self._summary['key'].append(value)`. This function writes these values
        into summary writer object.

        Args:
            round_: index of the call to `train`.

        Scalar tags:
            - epochs_trained:
                number of epochs trained
            - best_test_loss:
                best held-out loss (for each call).
            - test_loss:
                held-out loss at every evaluation, indexed by epoch.
            - training_loss
                training loss for every epoch.
            - epoch_durations_sec
                epoch duration for every epoch.
        """

        # Add most recent training stats to summary writer.
        self._summary_writer.add_scalar(
            tag="epochs_trained",
            scalar_value=self._summary["epochs_trained"][-1],
            global_step=round_ + 1,
        )

        self._summary_writer.add_scalar(
            tag="best_test_loss",
            scalar_value=self._summary["best_test_loss"][-1],
            global_step=round_ + 1,
        )

        # Add test loss for every evaluation that was not written yet.
        new_evaluations = zip(
            self._summary["evaluation_epochs"][self._num_written_test_losses :],
            self._summary["test_loss"][self._num_written_test_losses :],
        )
        for epoch, tlp in new_evaluations:
            self._summary_writer.add_scalar(
                tag="test_loss",
                scalar_value=tlp,
                global_step=epoch,
            )
        self._num_written_test_losses = len(self._summary["test_loss"])

        # Offset with all previous epochs.
        offset = sum(self._summary["epochs_trained"][:-1])
        for i, tlp in enumerate(self._summary["training_loss"][offset:]):
            self._summary_writer.add_scalar(
                tag="training_loss",
                scalar_value=tlp,
                global_step=offset + i + 1,
            )

        for i, eds in enumerate(self._summary["epoch_durations_sec"][offset:]):
            self._summary_writer.add_scalar(
                tag="epoch_durations_sec",
                scalar_value=eds,
                global_step=offset + i + 1,
            )

        self._summary_writer.flush()

    @staticmethod
    def _describe_round(round_: int, summary: Dict[str, list]) -> str:
        epochs = summary["epochs_trained"][-1]
        best_test_loss = summary["best_test_loss"][-1]
        last_test_loss = summary["test_loss"][-1]

        description = f"""
        -------------------------
        ||||| TRAINING {round_ + 1} STATS |||||:
        -------------------------
        Epochs trained: {epochs}
        Final held-out loss: {last_test_loss:.4f}
        Best held-out loss: {best_test_loss:.4f}
        -------------------------
        """

        return description

    @staticmethod
    def _maybe_show_progress(show: bool, epoch: int) -> None:
        if show:
            # end="\r" deletes the print statement when a new one appears.
            # https://stackoverflow.com/questions/3419984/.
            print("\r", f"Training neural network. Epochs trained: {epoch}", end="")

    def __getstate__(self) -> Dict:
        """Returns the state of the object that is supposed to be pickled.

        Attributes that can not be serialized are set to `None`.

        Returns:
            Dictionary containing the state.
        """
        warn(
            "When the inference object is pickled, the behaviour of the loaded object "
            "changes in the following two ways: "
            "1) The estimator cannot be rebuilt, continue training with "
            "`.train(..., resume_training=True)`. "
            "2) When the loaded object calls the `.train()` method, it generates a new "
            "tensorboard summary writer (instead of appending to the current one).",
            stacklevel=2,
        )
        dict_to_save = {}
        unpicklable_attributes = ["_summary_writer", "_build_neural_net"]
        for key in self.__dict__:
            if key in unpicklable_attributes:
                dict_to_save[key] = None
            else:
                dict_to_save[key] = self.__dict__[key]
        return dict_to_save

    def __setstate__(self, state_dict: Dict):
        """Sets the state when being loaded from pickle.

        Also creates a new summary writer (because the previous one was set to `None`
        during serializing, see `__get_state__()`).

        Args:
            state_dict: State to be restored.
        """
        state_dict["_summary_writer"] = self._default_summary_writer()
        self.__dict__ = state_dict
