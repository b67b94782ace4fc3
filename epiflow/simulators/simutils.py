# This file is part of epiflow, a toolkit for amortized inference in epidemic models.
# epiflow is licensed under the Apache License Version 2.0, see
# <https://www.apache.org/licenses/>.


import contextlib
from typing import Callable, Optional, Sequence, Tuple, Union

import joblib
import torch
from joblib import Parallel, delayed
from torch import Tensor
from tqdm.auto import tqdm

SimulationOutput = Union[Tensor, Tuple[Optional[Tensor], ...]]


def simulate_in_batches(
    simulator: Callable,
    theta: Tensor,
    sim_batch_size: Optional[int] = 1,
    num_workers: int = 1,
    seed: Optional[int] = None,
    show_progress_bars: bool = True,
) -> SimulationOutput:
    r"""
    Return simulations $x$ for parameters $\theta$ conducted batchwise.

    Parameters are batched with size `sim_batch_size` (`None` simulates the entire
    theta at once). Multiprocessing is used when `num_workers > 1`.

    The simulator may return a single tensor or a tuple of tensors (e.g. targets,
    conditioning and latent trajectories); tuple entries are concatenated
    separately and `None` entries stay `None`.

    Args:
        simulator: Simulator callable (a function or a class with `__call__`).
        theta: All parameters $\theta$ sampled from the prior.
        sim_batch_size: Number of simulations per batch. When using multiple
            workers, increasing this batch size can further speed up simulations
            by reducing overhead.
        num_workers: Number of workers for multiprocessing.
        seed: Seed for the batches. Batch `i` is simulated after seeding torch with
            `seed + i`, which makes results independent of `num_workers`.
        show_progress_bars: Whether to show a progress bar during simulation.

    Returns:
        Simulations $x$ in the format returned by `simulator`.
    """

    num_sims, *_ = theta.shape

    if num_sims == 0:
        raise ValueError("Cannot simulate an empty batch of parameters.")
    elif sim_batch_size is not None and sim_batch_size < num_sims:
        batches = torch.split(theta, sim_batch_size, dim=0)
        batch_seeds = [None if seed is None else seed + i for i in range(len(batches))]

        if num_workers != 1:
            # Parallelize the sequence of batches across workers.
            # We use the solution proposed here: https://stackoverflow.com/a/61689175
            # to update the pbar only after the workers finished a task.
            with tqdm_joblib(
                tqdm(
                    batches,
                    disable=not show_progress_bars,
                    desc=f"Running {num_sims} simulations in {len(batches)} batches.",
                    total=len(batches),
                )
            ):
                simulation_outputs = Parallel(n_jobs=num_workers)(
                    delayed(_seeded_call)(simulator, batch, batch_seed)
                    for batch, batch_seed in zip(batches, batch_seeds)
                )
        else:
            pbar = tqdm(
                total=num_sims,
                disable=not show_progress_bars,
                desc=f"Running {num_sims} simulations.",
            )

            with pbar:
                simulation_outputs = []
                for batch, batch_seed in zip(batches, batch_seeds):
                    simulation_outputs.append(
                        _seeded_call(simulator, batch, batch_seed)
                    )
                    pbar.update(len(batch))

        x = _concatenate(simulation_outputs)
    else:
        x = _seeded_call(simulator, theta, seed)

    return x


def _seeded_call(
    simulator: Callable, theta: Tensor, seed: Optional[int]
) -> SimulationOutput:
    if seed is not None:
        torch.manual_seed(seed)
    return simulator(theta)


def _concatenate(outputs: Sequence[SimulationOutput]) -> SimulationOutput:
    if isinstance(outputs[0], Tensor):
        return torch.cat(outputs, dim=0)  # type: ignore
    concatenated = []
    for parts in zip(*outputs):
        if parts[0] is None:
            concatenated.append(None)
        else:
            concatenated.append(torch.cat(parts, dim=0))
    return tuple(concatenated)


@contextlib.contextmanager
def tqdm_joblib(tqdm_object):
    """Context manager to patch joblib to report into tqdm progress bar given as
    argument

    This wrapped context manager obtains the number of finished tasks from the tqdm
    print function and uses it to update the pbar, as suggested in
    https://stackoverflow.com/a/61689175.
    """

    def tqdm_print_progress(self):
        if self.n_completed_tasks > tqdm_object.n:
            n_completed = self.n_completed_tasks - tqdm_object.n
            tqdm_object.update(n=n_completed)

    original_print_progress = joblib.parallel.Parallel.print_progress
    joblib.parallel.Parallel.print_progress = tqdm_print_progress

    try:
        yield tqdm_object
    finally:
        joblib.parallel.Parallel.print_progress = original_print_progress
        tqdm_object.close()
