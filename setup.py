#!/usr/bin/env python
# -*- coding: utf-8 -*-
#
# This file is part of epiflow, a toolkit for amortized inference in epidemic models.
# epiflow is licensed under the Apache License Version 2.0, see
# <https://www.apache.org/licenses/>.

import io
import os

from setuptools import find_packages, setup

# Package meta-data.
NAME = "epiflow"
DESCRIPTION = "Amortized simulation-based inference for epidemic models."
KEYWORDS = "bayesian epidemiology simulation-based-inference normalizing-flows PyTorch"
URL = "https://github.com/epiflow/epiflow"
EMAIL = "epiflow@users.noreply.github.com"
AUTHOR = "epiflow developers"
REQUIRES_PYTHON = ">=3.9.0"

REQUIRED = [
    "joblib>=1.0.0",
    "numpy",
    "pyknos>=0.16.0",
    "scikit-learn",
    "scipy",
    "tensorboard",
    "torch>=1.13.0",
    "tqdm",
]

EXTRAS = {
    "dev": [
        "black",
        "flake8",
        "isort",
        "pytest",
        "pyright",
    ],
}

here = os.path.abspath(os.path.dirname(__file__))

# Import the README and use it as the long-description.
try:
    with io.open(os.path.join(here, "README.md"), encoding="utf-8") as f:
        long_description = "\n" + f.read()
except FileNotFoundError:
    long_description = DESCRIPTION

# Load the package's __version__.py module as a dictionary.
about = {}
project_slug = NAME.lower().replace("-", "_").replace(" ", "_")
with open(os.path.join(here, project_slug, "__version__.py")) as f:
    exec(f.read(), about)


setup(
    name=NAME,
    version=about["__version__"],
    description=DESCRIPTION,
    keywords=KEYWORDS,
    long_description=long_description,
    long_description_content_type="text/markdown",
    author=AUTHOR,
    author_email=EMAIL,
    python_requires=REQUIRES_PYTHON,
    url=URL,
    packages=find_packages(exclude=["tests", "*.tests", "*.tests.*", "tests.*"]),
    install_requires=REQUIRED,
    extras_require=EXTRAS,
    include_package_data=True,
    license="Apache License 2.0",
    classifiers=[
        # Full list: https://pypi.python.org/pypi?%3Aaction=list_classifiers
        "Development Status :: 3 - Alpha",
        "License :: OSI Approved :: Apache Software License",
        "Intended Audience :: Science/Research",
        "Topic :: Scientific/Engineering",
        "Topic :: Scientific/Engineering :: Artificial Intelligence",
        "Topic :: Scientific/Engineering :: Medical Science Apps.",
        "Programming Language :: Python",
        "Programming Language :: Python :: 3",
    ],
)
