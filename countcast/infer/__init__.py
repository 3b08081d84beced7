# Copyright Contributors to the Pyro project.
# SPDX-License-Identifier: Apache-2.0

from countcast.infer.hmc import NUTS, hmc
from countcast.infer.mcmc import MCMC, ChainResult, ChainRunner, Draw
from countcast.infer.predictive import (
    ForecastSummary,
    PosteriorPredictive,
    summarize,
)

__all__ = [
    "hmc",
    "summarize",
    "ChainResult",
    "ChainRunner",
    "Draw",
    "ForecastSummary",
    "MCMC",
    "NUTS",
    "PosteriorPredictive",
]
