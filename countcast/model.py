# Copyright Contributors to the Pyro project.
# SPDX-License-Identifier: Apache-2.0

r"""
Poisson regression for daily counts with a day-of-week effect, a linear trend and
annual Fourier seasonality:

.. math::

    y_n \sim \mathrm{Poisson}(\lambda_n), \quad
    \log \lambda_n = \alpha + \beta_{d_n} + \delta t_n + \gamma^\top f_n,

with priors :math:`\alpha \sim N(0, 5)`, :math:`\beta_{2:K} \sim N(0, 2)`,
:math:`\delta \sim N(0, 2)`, :math:`\gamma \sim N(0, 1)` and the baseline
category effect :math:`\beta_1 = 0`.

The latent vector ``z`` is flat, laid out as
``[alpha, beta_raw (K - 1), delta, gamma (2S)]``.
"""

from jax import ops, random
import jax.numpy as jnp
from jax.scipy.special import gammaln

from countcast.data import Dataset
from countcast.exceptions import ConfigurationError

__all__ = [
    "MAX_LOG_RATE",
    "ModelSpec",
]

# log rates are capped before exponentiating so that gradients stay finite
MAX_LOG_RATE = 30.0


def full_day_of_week_effects(beta_raw):
    """
    Rebuilds the ``K`` day-of-week effects from the ``K - 1`` free ones by
    prepending the baseline effect, fixed at zero.
    """
    zero = jnp.zeros(jnp.shape(beta_raw)[:-1] + (1,), dtype=jnp.result_type(beta_raw))
    return jnp.concatenate([zero, beta_raw], axis=-1)


def log_rate(params, dow_idx, t, fourier):
    """
    Computes the (uncapped) log Poisson rate for a batch of time points.

    :param dict params: unpacked parameters, see :meth:`ModelSpec.unpack`. Leading
        batch dimensions are allowed.
    :param dow_idx: 0-based day-of-week indices.
    :param t: scaled time index.
    :param fourier: Fourier rows with shape ``(num_points, 2S)``.
    :return: log rates with shape ``batch_shape + (num_points,)``.
    """
    alpha = params["alpha"][..., None]
    beta = jnp.take(params["beta"], dow_idx, axis=-1)
    delta = params["delta"][..., None]
    return alpha + beta + delta * t + jnp.matmul(params["gamma"], fourier.T)


class ModelSpec(object):
    """
    Holds the observed data and exposes the log posterior density of the count
    model together with its closed-form gradient.

    :param Dataset data: the observations.
    :param float alpha_scale: prior scale of the intercept. Defaults to 5.
    :param float beta_scale: prior scale of each free day-of-week effect. Defaults to 2.
    :param float delta_scale: prior scale of the trend coefficient. Defaults to 2.
    :param float gamma_scale: prior scale of each Fourier coefficient. Defaults to 1.

    **Example**

    .. doctest::

        >>> from jax import random
        >>> from countcast.data import Dataset
        >>> from countcast.model import ModelSpec
        >>> data = Dataset.from_series([3, 5, 4, 6, 2, 7, 9], "2024-01-01", num_harmonics=1)
        >>> model = ModelSpec(data)
        >>> model.param_size
        10
        >>> z = model.init_params(random.PRNGKey(0))
        >>> pe, pe_grad = model.potential_and_grad(z)
    """

    site_names = ("alpha", "beta", "delta", "gamma")
    # the free parameters, i.e. without the fixed baseline effect
    latent_names = ("alpha", "beta_raw", "delta", "gamma")

    def __init__(
        self, data, alpha_scale=5.0, beta_scale=2.0, delta_scale=2.0, gamma_scale=1.0
    ):
        if not isinstance(data, Dataset):
            raise ConfigurationError(
                "`data` must be a `countcast.data.Dataset`, got {}.".format(type(data))
            )
        for name, scale in (
            ("alpha_scale", alpha_scale),
            ("beta_scale", beta_scale),
            ("delta_scale", delta_scale),
            ("gamma_scale", gamma_scale),
        ):
            if not scale > 0:
                raise ConfigurationError("`{}` must be positive.".format(name))
        self.data = data
        self.num_categories = data.num_categories
        self.num_harmonics = data.num_harmonics
        self.prior_scales = {
            "alpha": float(alpha_scale),
            "beta": float(beta_scale),
            "delta": float(delta_scale),
            "gamma": float(gamma_scale),
        }
        dtype = jnp.result_type(float)
        self._y = jnp.asarray(data.counts, dtype=dtype)
        self._dow_idx = jnp.asarray(data.dow - 1, dtype=jnp.int32)
        self._t = jnp.asarray(data.t, dtype=dtype)
        self._fourier = jnp.asarray(data.fourier, dtype=dtype)
        self._log_factorial = jnp.sum(gammaln(self._y + 1))

    @property
    def param_size(self):
        return self.num_categories + 1 + 2 * self.num_harmonics

    @property
    def param_names(self):
        """
        Labels of the entries of the flat latent vector.
        """
        K, S2 = self.num_categories, 2 * self.num_harmonics
        return (
            ["alpha"]
            + ["beta_raw[{}]".format(k) for k in range(K - 1)]
            + ["delta"]
            + ["gamma[{}]".format(j) for j in range(S2)]
        )

    def unpack(self, z):
        """
        Splits a (possibly batched) latent vector into named parameters. The
        returned ``beta`` has all ``K`` entries, the first one being zero.

        :param z: array with shape ``batch_shape + (param_size,)``.
        :rtype: dict
        """
        K = self.num_categories
        z = jnp.asarray(z)
        beta_raw = z[..., 1:K]
        return {
            "alpha": z[..., 0],
            "beta": full_day_of_week_effects(beta_raw),
            "beta_raw": beta_raw,
            "delta": z[..., K],
            "gamma": z[..., K + 1 :],
        }

    def pack(self, alpha, beta_raw, delta, gamma):
        """
        Inverse of :meth:`unpack` for a single parameter vector.
        """
        beta_raw = jnp.reshape(jnp.asarray(beta_raw), (-1,))
        gamma = jnp.reshape(jnp.asarray(gamma), (-1,))
        if beta_raw.shape[0] != self.num_categories - 1:
            raise ConfigurationError(
                "Expected {} free day-of-week effects but got {}.".format(
                    self.num_categories - 1, beta_raw.shape[0]
                )
            )
        if gamma.shape[0] != 2 * self.num_harmonics:
            raise ConfigurationError(
                "Expected {} Fourier coefficients but got {}.".format(
                    2 * self.num_harmonics, gamma.shape[0]
                )
            )
        dtype = jnp.result_type(float)
        return jnp.concatenate(
            [
                jnp.reshape(jnp.asarray(alpha, dtype=dtype), (1,)),
                beta_raw.astype(dtype),
                jnp.reshape(jnp.asarray(delta, dtype=dtype), (1,)),
                gamma.astype(dtype),
            ]
        )

    def init_params(self, rng_key, radius=0.5):
        """
        Draws an initial latent vector uniformly from ``(-radius, radius)``.

        :param jax.random.PRNGKey rng_key: random key.
        :param float radius: half-width of the initialization box.
        """
        return random.uniform(
            rng_key, (self.param_size,), minval=-radius, maxval=radius
        )

    def log_rate(self, z, dow, t, fourier):
        """
        Log Poisson rate at arbitrary time points for one or more latent vectors.

        :param z: latent vector(s), shape ``batch_shape + (param_size,)``.
        :param dow: 1-based day-of-week categories.
        :param t: scaled time index.
        :param fourier: Fourier rows, shape ``(num_points, 2S)``.
        """
        dtype = jnp.result_type(float)
        dow_idx = jnp.asarray(dow, dtype=jnp.int32) - 1
        return log_rate(
            self.unpack(z),
            dow_idx,
            jnp.asarray(t, dtype=dtype),
            jnp.asarray(fourier, dtype=dtype),
        )

    def _observed_log_rate(self, params):
        eta = log_rate(params, self._dow_idx, self._t, self._fourier)
        return jnp.minimum(eta, MAX_LOG_RATE)

    def _log_prior(self, params):
        scales = self.prior_scales
        return -0.5 * (
            (params["alpha"] / scales["alpha"]) ** 2
            + jnp.sum((params["beta_raw"] / scales["beta"]) ** 2, axis=-1)
            + (params["delta"] / scales["delta"]) ** 2
            + jnp.sum((params["gamma"] / scales["gamma"]) ** 2, axis=-1)
        )

    def log_likelihood(self, z):
        """
        Pointwise Poisson log mass of the observations.

        :param z: latent vector(s), shape ``batch_shape + (param_size,)``.
        :return: array with shape ``batch_shape + (N,)``.
        """
        eta = self._observed_log_rate(self.unpack(z))
        return self._y * eta - jnp.exp(eta) - gammaln(self._y + 1)

    def log_density(self, z):
        """
        Log posterior density of ``z``, up to the Gaussian normalizing constants.
        """
        return self.log_density_and_grad(z)[0]

    def grad_log_density(self, z):
        return self.log_density_and_grad(z)[1]

    def log_density_and_grad(self, z):
        """
        Returns the log posterior density at a single latent vector ``z`` and its
        analytic gradient with respect to ``z``.
        """
        z = jnp.asarray(z)
        params = self.unpack(z)
        scales = self.prior_scales
        raw_eta = log_rate(params, self._dow_idx, self._t, self._fourier)
        eta = jnp.minimum(raw_eta, MAX_LOG_RATE)
        rate = jnp.exp(eta)
        log_lik = jnp.sum(self._y * eta - rate) - self._log_factorial
        log_density = log_lik + self._log_prior(params)

        # capped points do not depend on z
        residual = jnp.where(raw_eta < MAX_LOG_RATE, self._y - rate, 0.0)
        alpha_grad = jnp.sum(residual) - params["alpha"] / scales["alpha"] ** 2
        # the baseline category carries no free parameter
        beta_grad = (
            ops.segment_sum(residual, self._dow_idx, num_segments=self.num_categories)[
                1:
            ]
            - params["beta_raw"] / scales["beta"] ** 2
        )
        delta_grad = jnp.dot(residual, self._t) - params["delta"] / scales["delta"] ** 2
        gamma_grad = (
            jnp.matmul(self._fourier.T, residual)
            - params["gamma"] / scales["gamma"] ** 2
        )
        grad = jnp.concatenate(
            [
                jnp.reshape(alpha_grad, (1,)),
                beta_grad,
                jnp.reshape(delta_grad, (1,)),
                gamma_grad,
            ]
        )
        return log_density, grad

    def potential_energy(self, z):
        return -self.log_density(z)

    def potential_and_grad(self, z):
        """
        Potential energy ``-log_density(z)`` and its gradient, the form consumed
        by the integrator.
        """
        log_density, grad = self.log_density_and_grad(z)
        return -log_density, -grad

    @property
    def potential_fn(self):
        """
        A callable computing the potential energy which carries its analytic
        gradient, so the integrator never differentiates it.
        """

        def potential_fn(z):
            return self.potential_energy(z)

        potential_fn._value_and_grad = self.potential_and_grad
        return potential_fn
