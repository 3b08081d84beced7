# Copyright Contributors to the Pyro project.
# SPDX-License-Identifier: Apache-2.0

import inspect
import os
import random

import numpy as np

import jax


def set_rng_seed(rng_seed):
    """
    Seeds the Python and NumPy global random number generators. JAX sampling
    is driven by explicit keys and is not affected.

    :param int rng_seed: seed value.
    """
    random.seed(rng_seed)
    np.random.seed(rng_seed)


def enable_x64(use_x64=True):
    """
    Makes JAX default to 64 bit floats and ints. With ``use_x64=False`` the
    ``JAX_ENABLE_X64`` environment variable decides.

    Without 64 bit mode, forecasts are drawn as ``int32`` counts, see
    :class:`~countcast.infer.predictive.PosteriorPredictive`.
    """
    if not use_x64:
        use_x64 = os.getenv("JAX_ENABLE_X64", "0").lower() in ("1", "true")
    jax.config.update("jax_enable_x64", bool(use_x64))


def set_platform(platform=None):
    """
    Selects the JAX backend. Only effective before the first computation.

    :param str platform: 'cpu', 'gpu' or 'tpu'. Defaults to the
        ``JAX_PLATFORM_NAME`` environment variable, else 'cpu'.
    """
    if platform is None:
        platform = os.getenv("JAX_PLATFORM_NAME", "cpu")
    jax.config.update("jax_platform_name", platform)


def is_prng_key(key):
    """Whether ``key`` is a single raw ``uint32[2]`` or typed JAX random key."""
    dtype = getattr(key, "dtype", None)
    if dtype is None:
        return False
    if jax.dtypes.issubdtype(dtype, jax.dtypes.prng_key):
        return key.shape == ()
    return key.shape == (2,) and dtype == np.uint32


def find_stack_level():
    """
    Number of frames from this call up to the first caller outside the
    countcast package, for ``warnings.warn(..., stacklevel=...)``.
    """
    pkg_dir = os.path.dirname(os.path.abspath(__file__))
    level = 0
    frame = inspect.currentframe()
    while frame is not None and os.path.abspath(frame.f_code.co_filename).startswith(
        pkg_dir
    ):
        frame = frame.f_back
        level += 1
    return level
