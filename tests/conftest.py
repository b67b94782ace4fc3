# This file is part of epiflow, a toolkit for amortized inference in epidemic models.
# epiflow is licensed under the Apache License Version 2.0, see
# <https://www.apache.org/licenses/>.

import pytest
import torch
from torch.utils.tensorboard.writer import SummaryWriter

from epiflow.utils.epiutils import seed_all_backends

# Seed for `set_seed` fixture. Change to random state of all seeded tests.
seed = 1


# Use seed automatically for every test function.
@pytest.fixture(autouse=True)
def set_seed():
    seed_all_backends(seed)


@pytest.fixture(scope="session", autouse=True)
def set_default_tensor_type():
    torch.set_default_dtype(torch.float32)


@pytest.fixture
def summary_writer(tmp_path):
    """Summary writer logging into a temporary directory."""
    writer = SummaryWriter(tmp_path / "epiflow-logs")
    yield writer
    writer.close()


def pytest_addoption(parser):
    parser.addoption(
        "--slow",
        action="store_true",
        default=False,
        help="Run slow end-to-end tests.",
    )


def pytest_configure(config):
    config.addinivalue_line("markers", "slow: long-running end-to-end tests")
    config.addinivalue_line("markers", "gpu: tests that need a cuda device")


def pytest_collection_modifyitems(config, items):
    """Skip slow tests unless `--slow` is passed and GPU tests without devices."""
    if not config.getoption("--slow"):
        skip_slow = pytest.mark.skip(reason="Slow tests disabled, use --slow")
        for item in items:
            if "slow" in item.keywords:
                item.add_marker(skip_slow)

    if not torch.cuda.is_available():
        skip_gpu = pytest.mark.skip(reason="No devices available")
        for item in items:
            if "gpu" in item.keywords:
                item.add_marker(skip_gpu)
