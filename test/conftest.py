# Copyright Contributors to the Pyro project.
# SPDX-License-Identifier: Apache-2.0

from jax import config

from countcast.util import set_rng_seed

config.update("jax_platform_name", "cpu")  # noqa: E702
# finite difference checks need double precision
config.update("jax_enable_x64", True)


def pytest_runtest_setup(item):
    set_rng_seed(0)
