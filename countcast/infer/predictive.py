# Copyright Contributors to the Pyro project.
# SPDX-License-Identifier: Apache-2.0

from collections import namedtuple
from functools import partial
import warnings

import numpy as np

from jax import random, vmap
import jax.numpy as jnp

from countcast.data import ForecastPoints
from countcast.exceptions import ConfigurationError, CountOverflowWarning
from countcast.model import MAX_LOG_RATE, ModelSpec
from countcast.util import find_stack_level

__all__ = [
    "ForecastSummary",
    "PosteriorPredictive",
    "max_log_rate",
    "summarize",
]

ForecastSummary = namedtuple(
    "ForecastSummary", ["mean", "std", "median", "lower", "upper"]
)
"""
Per forecast point statistics of the predictive draws, each an array of shape
``(num_points,)``:

 - **mean**, **std**, **median** - moments of the draws.
 - **lower**, **upper** - empirical quantiles at ``(1 - prob) / 2`` and
   ``(1 + prob) / 2``.
"""


def max_log_rate(dtype=None):
    """
    Largest log rate used for forecasting with counts of integer type `dtype`.
    This is :data:`~countcast.model.MAX_LOG_RATE`, lowered where needed so that
    the Poisson rate stays at half the largest representable count.

    :param dtype: integer dtype of the draws. Defaults to JAX's default
        integer, ``int32`` unless 64 bit mode is enabled.
    """
    dtype = jnp.result_type(int) if dtype is None else dtype
    return min(MAX_LOG_RATE, float(np.log(np.iinfo(dtype).max / 2)))


def _flatten_event(x, batch_ndims):
    batch_shape = x.shape[:batch_ndims]
    return jnp.reshape(x, batch_shape + (int(np.prod(x.shape[batch_ndims:])),))


def _pack_samples(model, posterior_samples, batch_ndims):
    if not isinstance(posterior_samples, dict):
        z = jnp.asarray(posterior_samples)
    else:
        missing = [k for k in model.latent_names if k not in posterior_samples]
        if missing:
            raise ConfigurationError(
                "Posterior samples are missing the sites {}.".format(missing)
            )
        z = jnp.concatenate(
            [
                _flatten_event(jnp.asarray(posterior_samples[k]), batch_ndims)
                for k in model.latent_names
            ],
            axis=-1,
        )
    if z.ndim != batch_ndims + 1 or z.shape[-1] != model.param_size:
        raise ConfigurationError(
            "Expected posterior samples of shape batch_shape + ({},) with {} batch"
            " dimensions, got {}.".format(model.param_size, batch_ndims, z.shape)
        )
    return z


class PosteriorPredictive(object):
    """
    Posterior predictive distribution of future daily counts. For every posterior
    draw and every forecast point, the log rate is computed with the fixed zero
    baseline effect, capped at :func:`max_log_rate`, and one Poisson count of
    JAX's default integer type is drawn.

    With 64 bit mode enabled the cap is :data:`~countcast.model.MAX_LOG_RATE`.
    Otherwise counts are ``int32`` and the cap is ``log(2**30)``, about 20.8;
    a :class:`~countcast.exceptions.CountOverflowWarning` is emitted when it
    applies.

    :param ModelSpec model: the model the samples were drawn from.
    :param posterior_samples: either the dict returned by
        :meth:`MCMC.get_samples <countcast.infer.mcmc.MCMC.get_samples>` or an array
        of flat latent vectors.
    :param int batch_ndims: the number of batch dimensions in posterior samples.
        Use 1 for samples with shape ``(num_samples x ...)`` and 2 for samples
        grouped by chain, ``(num_chains x num_samples x ...)``. In the latter case
        every chain gets its own key.

    **Example**

    .. doctest::

        >>> from jax import random
        >>> from countcast.data import Dataset
        >>> from countcast.infer import MCMC, NUTS, PosteriorPredictive
        >>> from countcast.model import ModelSpec
        >>> data = Dataset.from_series([3, 5, 4, 6, 2, 7, 9] * 8, "2024-01-01", num_harmonics=1)
        >>> model = ModelSpec(data)
        >>> mcmc = MCMC(NUTS(model), num_warmup=100, num_samples=100, progress_bar=False)
        >>> mcmc.run(random.PRNGKey(0))
        >>> predictive = PosteriorPredictive(model, mcmc.get_samples())
        >>> predictions = predictive(random.PRNGKey(1), data.forecast_points(14))
        >>> predictions["y"].shape
        (100, 14)
    """

    def __init__(self, model, posterior_samples, *, batch_ndims=1):
        if not isinstance(model, ModelSpec):
            raise ConfigurationError(
                "`model` must be a `countcast.model.ModelSpec`, got {}.".format(
                    type(model)
                )
            )
        if batch_ndims not in (1, 2):
            raise ConfigurationError("`batch_ndims` must be 1 or 2.")
        self.model = model
        self.batch_ndims = batch_ndims
        self._z = _pack_samples(model, posterior_samples, batch_ndims)

    @property
    def num_samples(self):
        return int(np.prod(self._z.shape[:-1]))

    def _check_points(self, forecast_points):
        if not isinstance(forecast_points, ForecastPoints):
            forecast_points = ForecastPoints.from_points(
                forecast_points, num_categories=self.model.num_categories
            )
        if forecast_points.fourier.shape[1] != 2 * self.model.num_harmonics:
            raise ConfigurationError(
                "Forecast points carry {} Fourier columns but the model has {}.".format(
                    forecast_points.fourier.shape[1], 2 * self.model.num_harmonics
                )
            )
        if forecast_points.dow.max() > self.model.num_categories:
            raise ConfigurationError(
                "Forecast day-of-week categories must lie in [1, {}].".format(
                    self.model.num_categories
                )
            )
        return forecast_points

    def log_rate(self, forecast_points):
        """
        Capped log rate of every posterior draw at every forecast point, with shape
        ``batch_shape + (num_points,)``.
        """
        forecast_points = self._check_points(forecast_points)
        eta = self.model.log_rate(
            self._z, forecast_points.dow, forecast_points.t, forecast_points.fourier
        )
        cap = max_log_rate()
        if cap < MAX_LOG_RATE and bool(jnp.any(eta > cap)):
            warnings.warn(
                "Forecast log rates above {:.2f} were capped so that {} counts do not"
                " overflow. Call `countcast.enable_x64()` to allow larger"
                " counts.".format(cap, jnp.dtype(jnp.result_type(int)).name),
                CountOverflowWarning,
                stacklevel=find_stack_level(),
            )
        return jnp.minimum(eta, cap)

    def __call__(self, rng_key, forecast_points):
        """
        Returns a dict with the Poisson rate and one simulated count per posterior
        draw and forecast point.

        :param jax.random.PRNGKey rng_key: random key to draw samples.
        :param forecast_points: a :class:`~countcast.data.ForecastPoints` batch or a
            sequence of :data:`~countcast.data.ForecastPoint`.
        :return: dict with keys ``rate`` and ``y``, each of shape
            ``batch_shape + (num_points,)``.
        """
        rate = jnp.exp(self.log_rate(forecast_points))
        poisson = partial(random.poisson, dtype=jnp.result_type(int))
        if self.batch_ndims == 2:
            rng_keys = random.split(rng_key, rate.shape[0])
            y = vmap(poisson)(rng_keys, rate)
        else:
            y = poisson(rng_key, rate)
        return {"rate": rate, "y": y}


def summarize(predictions, prob=0.95, site="y"):
    """
    Summarizes predictive draws per forecast point.

    :param predictions: the dict returned by :class:`PosteriorPredictive`, or an
        array whose last dimension indexes the forecast points.
    :param float prob: the probability mass between the reported quantiles.
    :param str site: the entry of `predictions` to summarize. Defaults to ``"y"``.
    :rtype: ForecastSummary
    """
    if not 0 < prob < 1:
        raise ConfigurationError("`prob` must lie in (0, 1), got {}.".format(prob))
    if isinstance(predictions, dict):
        predictions = predictions[site]
    x = np.asarray(predictions, dtype=float)
    x = x.reshape((-1, x.shape[-1]))
    lower, upper = np.quantile(x, [(1 - prob) / 2, (1 + prob) / 2], axis=0)
    return ForecastSummary(
        x.mean(axis=0),
        x.std(axis=0, ddof=1) if x.shape[0] > 1 else np.zeros(x.shape[-1]),
        np.median(x, axis=0),
        lower,
        upper,
    )
