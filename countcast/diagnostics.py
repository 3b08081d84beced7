# Copyright Contributors to the Pyro project.
# SPDX-License-Identifier: Apache-2.0

"""
Convergence diagnostics for posterior draws: split R-hat, effective sample size,
highest posterior density intervals, summary tables and a convergence check
that reports per-parameter health instead of raising.
"""

from collections import OrderedDict, namedtuple
from itertools import product
import warnings

import numpy as np

from jax import device_get

from countcast.exceptions import ConvergenceWarning
from countcast.util import find_stack_level

__all__ = [
    "ConvergenceReport",
    "ParamDiagnostic",
    "autocorrelation",
    "autocovariance",
    "check_convergence",
    "effective_sample_size",
    "gelman_rubin",
    "hpdi",
    "split_gelman_rubin",
    "print_summary",
    "summary",
]

ParamDiagnostic = namedtuple("ParamDiagnostic", ["name", "r_hat", "n_eff", "status"])
"""
Health of a single scalar parameter. ``status`` is one of ``"ok"``,
``"high_r_hat"``, ``"low_ess"`` or ``"constant"`` (a parameter that never moves,
such as the fixed baseline day-of-week effect).
"""

ConvergenceReport = namedtuple(
    "ConvergenceReport",
    ["params", "converged", "succeeded_chains", "failed_chains", "chain_status"],
)
"""
Result of :func:`check_convergence`:

 - **params** - list of :data:`ParamDiagnostic`, one per scalar parameter.
 - **converged** - whether every non-constant parameter is healthy.
 - **succeeded_chains** - ids of the chains that ran to completion.
 - **failed_chains** - ids of the chains that did not complete.
 - **chain_status** - mapping from chain id to its status.
"""


def _compute_chain_variance_stats(x):
    # x has shape C x N x sample_shape
    num_draws = x.shape[1]
    var_within = x.var(axis=1, ddof=1).mean(axis=0)
    var_estimator = var_within * (num_draws - 1) / num_draws
    if x.shape[0] > 1:
        var_between = x.mean(axis=1).var(axis=0, ddof=1)
        var_estimator = var_estimator + var_between
    else:
        var_within = var_estimator
    return var_within, var_estimator


def gelman_rubin(x):
    """
    Computes R-hat over chains of samples ``x``, where the first dimension of
    ``x`` is chain dimension and the second dimension of ``x`` is draw dimension.
    It is required that ``x.shape[0] >= 2`` and ``x.shape[1] >= 2``.

    :param numpy.ndarray x: the input array.
    :return: R-hat of ``x``.
    :rtype: numpy.ndarray
    """
    assert x.ndim >= 2
    assert x.shape[0] >= 2
    assert x.shape[1] >= 2
    var_within, var_estimator = _compute_chain_variance_stats(x)
    with np.errstate(invalid="ignore", divide="ignore"):
        rhat = np.sqrt(var_estimator / var_within)
    return rhat


def split_gelman_rubin(x):
    """
    Computes split R-hat over chains of samples ``x``: every chain is cut into
    two halves which are then treated as separate chains. The first dimension
    of ``x`` is chain dimension and the second dimension of ``x`` is draw
    dimension. It is required that ``x.shape[1] >= 4``.

    :param numpy.ndarray x: the input array.
    :return: split R-hat of ``x``.
    :rtype: numpy.ndarray
    """
    assert x.ndim >= 2
    assert x.shape[1] >= 4

    half = x.shape[1] // 2
    halves = np.concatenate([x[:, :half], x[:, -half:]], axis=0)
    return gelman_rubin(halves)


def _fft_next_fast_len(target):
    # smallest number >= target whose only prime factors are 2, 3 and 5,
    # as scipy.fftpack.next_fast_len
    if target <= 2:
        return target
    while True:
        m = target
        for p in (2, 3, 5):
            while m % p == 0:
                m //= p
        if m == 1:
            return target
        target += 1


def autocorrelation(x, axis=0):
    """
    Computes the autocorrelation of samples at dimension ``axis``.

    :param numpy.ndarray x: the input array.
    :param int axis: the dimension to calculate autocorrelation.
    :return: autocorrelation of ``x``.
    :rtype: numpy.ndarray
    """
    # Ref: https://en.wikipedia.org/wiki/Autocorrelation#Efficient_computation
    # Adapted from Stan implementation
    # https://github.com/stan-dev/math/blob/develop/stan/math/prim/mat/fun/autocorrelation.hpp
    N = x.shape[axis]
    M2 = 2 * _fft_next_fast_len(N)

    x = np.swapaxes(x, axis, -1)
    centered_signal = x - x.mean(axis=-1, keepdims=True)

    freqvec = np.fft.rfft(centered_signal, n=M2, axis=-1)
    # power spectrum, freqvec x freqvec*
    freqvec_gram = freqvec * np.conjugate(freqvec)
    autocorr = np.fft.irfft(freqvec_gram, n=M2, axis=-1)

    # truncate, normalize by the number of terms of each lag, then by lag 0
    autocorr = autocorr[..., :N] / np.arange(N, 0.0, -1)
    with np.errstate(invalid="ignore", divide="ignore"):
        autocorr = autocorr / autocorr[..., :1]
    return np.swapaxes(autocorr, axis, -1)


def autocovariance(x, axis=0):
    """
    Computes the autocovariance of samples at dimension ``axis``.

    :param numpy.ndarray x: the input array.
    :param int axis: the dimension to calculate autocovariance.
    :return: autocovariance of ``x``.
    :rtype: numpy.ndarray
    """
    return autocorrelation(x, axis) * x.var(axis=axis, keepdims=True)


def effective_sample_size(x):
    """
    Computes effective sample size of input ``x``, where the first dimension of
    ``x`` is chain dimension and the second dimension of ``x`` is draw dimension.

    The multi-chain autocorrelation estimate is summed over lag pairs and
    truncated by Geyer's initial positive monotone sequence, i.e. the sum stops
    at the first pair of consecutive autocorrelations whose sum is negative.

    **References:**

    1. *Introduction to Markov Chain Monte Carlo*,
       Charles J. Geyer
    2. *Stan Reference Manual version 2.18*,
       Stan Development Team

    :param numpy.ndarray x: the input array.
    :return: effective sample size of ``x``.
    :rtype: numpy.ndarray
    """
    x = device_get(x)
    assert x.ndim >= 2
    assert x.shape[1] >= 2

    # autocovariance of each chain at lag k
    gamma_k_c = autocovariance(x, axis=1)

    # combined autocorrelation at lag k (from Stan reference)
    var_within, var_estimator = _compute_chain_variance_stats(x)
    rho_k = 1.0 - (var_within - gamma_k_c.mean(axis=0)) / var_estimator
    rho_k[0] = 1.0

    # initial positive sequence (formula 1.18 in [1])
    Rho_k = rho_k[:-1:2, ...] + rho_k[1::2, ...]

    # initial monotone (decreasing) sequence
    Rho_k = np.concatenate(
        [
            Rho_k[:1],
            np.minimum.accumulate(np.clip(Rho_k[1:, ...], 0, None), axis=0),
        ],
        axis=0,
    )

    tau = -1.0 + 2.0 * Rho_k.sum(axis=0)
    return np.prod(x.shape[:2]) / tau


def hpdi(x, prob=0.90, axis=0):
    """
    Computes "highest posterior density interval" (HPDI) which is the narrowest
    interval with probability mass ``prob``.

    :param numpy.ndarray x: the input array.
    :param float prob: the probability mass of samples within the interval.
    :param int axis: the dimension to calculate hpdi.
    :return: quantiles of ``x`` at ``(1 - prob) / 2`` and
        ``(1 + prob) / 2``.
    :rtype: numpy.ndarray
    """
    x = np.swapaxes(x, axis, 0)
    sorted_x = np.sort(x, axis=0)
    mass = x.shape[0]
    index_length = int(prob * mass)
    intervals_length = sorted_x[index_length:] - sorted_x[: (mass - index_length)]
    index_start = intervals_length.argmin(axis=0)
    index_end = index_start + index_length
    hpd_left = np.take_along_axis(sorted_x, index_start[None, ...], axis=0)
    hpd_right = np.take_along_axis(sorted_x, index_end[None, ...], axis=0)
    return np.concatenate(
        [np.swapaxes(hpd_left, axis, 0), np.swapaxes(hpd_right, axis, 0)], axis=axis
    )


def _as_grouped_dict(samples, group_by_chain):
    if not isinstance(samples, dict):
        samples = {"z": samples}
    samples = {k: np.asarray(device_get(v)) for k, v in samples.items()}
    if not group_by_chain:
        samples = {k: v[None, ...] for k, v in samples.items()}
    return samples


def summary(samples, prob=0.90, group_by_chain=True):
    """
    Returns a summary table displaying diagnostics of ``samples`` from the
    posterior. The diagnostics displayed are mean, standard deviation, median,
    the 90% Credibility Interval :func:`~countcast.diagnostics.hpdi`,
    :func:`~countcast.diagnostics.effective_sample_size`, and
    :func:`~countcast.diagnostics.split_gelman_rubin`.

    :param samples: a collection of input samples with left most dimension is chain
        dimension and second to left most dimension is draw dimension.
    :type samples: dict or numpy.ndarray
    :param float prob: the probability mass of samples within the HPDI interval.
    :param bool group_by_chain: If True, each variable in `samples` will be treated
        as having shape `num_chains x num_samples x sample_shape`. Otherwise, the
        corresponding shape will be `num_samples x sample_shape` (i.e. without
        chain dimension).
    """
    samples = _as_grouped_dict(samples, group_by_chain)
    hpd_lower = "{:.1f}%".format(50 * (1 - prob))
    hpd_upper = "{:.1f}%".format(50 * (1 + prob))

    summary_dict = {}
    for name, value in samples.items():
        value_flat = np.reshape(value, (-1,) + value.shape[2:])
        hpd = hpdi(value_flat, prob=prob)
        summary_dict[name] = OrderedDict(
            [
                ("mean", value_flat.mean(axis=0)),
                ("std", value_flat.std(axis=0, ddof=1)),
                ("median", np.median(value_flat, axis=0)),
                (hpd_lower, hpd[0]),
                (hpd_upper, hpd[1]),
                ("n_eff", effective_sample_size(value)),
                ("r_hat", split_gelman_rubin(value)),
            ]
        )
    return summary_dict


def print_summary(samples, prob=0.90, group_by_chain=True):
    """
    Prints the table computed by :func:`summary`, one row per scalar parameter.

    :param samples: a collection of input samples with left most dimension is chain
        dimension and second to left most dimension is draw dimension.
    :type samples: dict or numpy.ndarray
    :param float prob: the probability mass of samples within the HPDI interval.
    :param bool group_by_chain: If True, each variable in `samples` will be treated
        as having shape `num_chains x num_samples x sample_shape`. Otherwise, the
        corresponding shape will be `num_samples x sample_shape`.
    """
    samples = _as_grouped_dict(samples, group_by_chain)
    summary_dict = summary(samples, prob, group_by_chain=True)

    row_names = [
        name + "".join("[{}]".format(n - 1) for n in value.shape[2:])
        for name, value in samples.items()
    ]
    max_len = max(max(map(len, row_names)), 10)
    name_format = "{:>" + str(max_len) + "}"
    header_format = name_format + " {:>9}" * 7
    columns = [""] + list(list(summary_dict.values())[0].keys())

    print()
    print(header_format.format(*columns))

    row_format = name_format + " {:>9.2f}" * 7
    for name, stats_dict in summary_dict.items():
        shape = stats_dict["mean"].shape
        for idx in product(*map(range, shape)):
            idx_str = "[{}]".format(",".join(map(str, idx))) if idx else ""
            print(
                row_format.format(
                    name + idx_str, *[np.asarray(v)[idx] for v in stats_dict.values()]
                )
            )
    print()


def _param_status(r_hat, n_eff, is_constant, r_hat_threshold, min_ess):
    if is_constant:
        return "constant"
    if not r_hat <= r_hat_threshold:
        return "high_r_hat"
    if not n_eff >= min_ess:
        return "low_ess"
    return "ok"


def check_convergence(
    samples, r_hat_threshold=1.01, min_ess_per_chain=100, chain_status=None
):
    """
    Computes split R-hat and effective sample size of every scalar parameter
    and tags each one with a health status. This is advisory: nothing is
    raised for unhealthy parameters, a
    :class:`~countcast.exceptions.ConvergenceWarning` is emitted instead.

    :param dict samples: grouped samples, each of shape
        ``num_chains x num_samples x sample_shape``, e.g. from
        :meth:`MCMC.get_samples(group_by_chain=True) <countcast.infer.mcmc.MCMC.get_samples>`.
    :param float r_hat_threshold: largest acceptable split R-hat. Defaults to 1.01.
    :param int min_ess_per_chain: smallest acceptable effective sample size per
        chain. Defaults to 100.
    :param dict chain_status: optional mapping from chain id to status as
        reported by :data:`~countcast.infer.mcmc.ChainResult`.
    :rtype: ConvergenceReport
    """
    samples = _as_grouped_dict(samples, True)
    num_chains, num_draws = next(iter(samples.values())).shape[:2]
    if num_draws < 4:
        raise ValueError(
            "At least 4 draws per chain are required, got {}.".format(num_draws)
        )
    min_ess = min_ess_per_chain * num_chains

    params = []
    for name, value in samples.items():
        # constant parameters give 0 / 0
        with np.errstate(invalid="ignore", divide="ignore"):
            r_hat = split_gelman_rubin(value)
            n_eff = effective_sample_size(value)
        spread = np.ptp(np.reshape(value, (-1,) + value.shape[2:]), axis=0)
        for idx in product(*map(range, value.shape[2:])):
            idx_str = "[{}]".format(",".join(map(str, idx))) if idx else ""
            params.append(
                ParamDiagnostic(
                    name + idx_str,
                    float(r_hat[idx]),
                    float(n_eff[idx]),
                    _param_status(
                        r_hat[idx],
                        n_eff[idx],
                        spread[idx] == 0,
                        r_hat_threshold,
                        min_ess,
                    ),
                )
            )

    if chain_status is None:
        chain_status = {i: "completed" for i in range(num_chains)}
    succeeded = [i for i, s in chain_status.items() if s == "completed"]
    failed = [i for i, s in chain_status.items() if s != "completed"]
    unhealthy = [p for p in params if p.status not in ("ok", "constant")]
    report = ConvergenceReport(
        params, len(unhealthy) == 0, succeeded, failed, dict(chain_status)
    )

    if unhealthy:
        details = ", ".join(
            "{} (r_hat={:.3f}, n_eff={:.0f})".format(p.name, p.r_hat, p.n_eff)
            for p in unhealthy
        )
        warnings.warn(
            "{} of {} parameters did not pass the convergence check"
            " (r_hat <= {}, n_eff >= {}): {}".format(
                len(unhealthy), len(params), r_hat_threshold, min_ess, details
            ),
            ConvergenceWarning,
            stacklevel=find_stack_level(),
        )
    return report
