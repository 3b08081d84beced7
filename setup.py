# Copyright Contributors to the Pyro project.
# SPDX-License-Identifier: Apache-2.0

import os
import sys

from setuptools import find_packages, setup

PROJECT_PATH = os.path.dirname(os.path.abspath(__file__))
_jax_version_constraints = ">=0.4.25"
_jaxlib_version_constraints = ">=0.4.25"

# Find version
for line in open(os.path.join(PROJECT_PATH, "countcast", "version.py")):
    if line.startswith("__version__ = "):
        version = line.strip().split()[2][1:-1]

# READ README.md for long description on PyPi.
try:
    long_description = open("README.md", encoding="utf-8").read()
except Exception as e:
    sys.stderr.write("Failed to read README.md:\n  {}\n".format(e))
    sys.stderr.flush()
    long_description = ""

setup(
    name="countcast",
    version=version,
    description="Bayesian forecasting of daily counts with NUTS on JAX",
    packages=find_packages(include=["countcast", "countcast.*"]),
    install_requires=[
        f"jax{_jax_version_constraints}",
        f"jaxlib{_jaxlib_version_constraints}",
        "numpy",
        "tqdm",
    ],
    extras_require={
        "test": [
            "pytest>=4.1",
            "scipy>=1.9",
        ],
        "cpu": f"jax[cpu]{_jax_version_constraints}",
    },
    python_requires=">=3.9",
    long_description=long_description,
    long_description_content_type="text/markdown",
    keywords="bayesian forecasting count data hamiltonian monte carlo",
    license="Apache License 2.0",
    classifiers=[
        "Intended Audience :: Developers",
        "Intended Audience :: Science/Research",
        "License :: OSI Approved :: Apache Software License",
        "Operating System :: POSIX :: Linux",
        "Operating System :: MacOS :: MacOS X",
        "Programming Language :: Python :: 3.9",
        "Programming Language :: Python :: 3.10",
        "Programming Language :: Python :: 3.11",
    ],
)
