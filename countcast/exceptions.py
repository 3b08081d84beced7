# Copyright Contributors to the Pyro project.
# SPDX-License-Identifier: Apache-2.0

__all__ = [
    "ChainFailureWarning",
    "CountOverflowWarning",
    "ConfigurationError",
    "ConvergenceWarning",
]


class ConfigurationError(ValueError):
    """
    Raised before any chain starts when the data set, the forecast design or the
    sampler settings are inconsistent.
    """

    pass


class ConvergenceWarning(UserWarning):
    """
    Emitted when R-hat or the effective sample size of some parameter is outside
    healthy bounds. Samples are still returned.
    """

    pass


class ChainFailureWarning(UserWarning):
    """
    Emitted when a single chain raised during sampling. The remaining chains are
    unaffected and the failure is kept on the chain result.
    """

    pass


class CountOverflowWarning(UserWarning):
    """
    Emitted when forecast rates were capped below
    :data:`~countcast.model.MAX_LOG_RATE` so that the simulated counts fit the
    integer type in use (``int32`` unless 64 bit mode is enabled).
    """

    pass
