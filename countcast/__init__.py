# Copyright Contributors to the Pyro project.
# SPDX-License-Identifier: Apache-2.0

from countcast import diagnostics, exceptions, infer
from countcast.data import Dataset, ForecastPoint, ForecastPoints
from countcast.model import ModelSpec
from countcast.util import enable_x64, set_platform, set_rng_seed
from countcast.version import __version__

set_platform("cpu")


__all__ = [
    "__version__",
    "diagnostics",
    "enable_x64",
    "exceptions",
    "infer",
    "set_platform",
    "set_rng_seed",
    "Dataset",
    "ForecastPoint",
    "ForecastPoints",
    "ModelSpec",
]
