# Copyright Contributors to the Pyro project.
# SPDX-License-Identifier: Apache-2.0

import numpy as np
from numpy.testing import assert_allclose
import pytest
from scipy.fftpack import next_fast_len

from countcast.diagnostics import (
    _fft_next_fast_len,
    autocorrelation,
    autocovariance,
    check_convergence,
    effective_sample_size,
    gelman_rubin,
    hpdi,
    print_summary,
    split_gelman_rubin,
    summary,
)
from countcast.exceptions import ConvergenceWarning


@pytest.mark.parametrize(
    "statistics, input_shape, output_shape",
    [
        (autocorrelation, (10,), (10,)),
        (autocorrelation, (10, 3), (10, 3)),
        (autocovariance, (10,), (10,)),
        (autocovariance, (10, 3), (10, 3)),
        (hpdi, (10,), (2,)),
        (hpdi, (10, 3), (2, 3)),
        (gelman_rubin, (4, 10), ()),
        (gelman_rubin, (4, 10, 3), (3,)),
        (split_gelman_rubin, (4, 10), ()),
        (split_gelman_rubin, (4, 10, 3), (3,)),
        (effective_sample_size, (4, 10), ()),
        (effective_sample_size, (4, 10, 3), (3,)),
    ],
)
def test_shape(statistics, input_shape, output_shape):
    x = np.random.normal(size=input_shape)
    y = statistics(x)
    assert y.shape == output_shape

    # batched statistics agree with the per-column ones
    if x.shape[-1] == 3:
        for i in range(3):
            assert_allclose(statistics(x[..., i]), y[..., i])


@pytest.mark.parametrize("target", [433, 124, 25, 300, 1, 3, 7])
def test_fft_next_fast_len(target):
    assert _fft_next_fast_len(target) == next_fast_len(target)


def test_hpdi():
    x = np.random.normal(size=20000)
    assert_allclose(hpdi(x, prob=0.8), np.quantile(x, [0.1, 0.9]), atol=0.01)

    x = np.random.exponential(size=20000)
    assert_allclose(hpdi(x, prob=0.2), np.array([0.0, 0.22]), atol=0.01)


def test_autocorrelation():
    x = np.arange(10.0)
    actual = autocorrelation(x)
    expected = np.array([1, 0.78, 0.52, 0.21, -0.13, -0.52, -0.94, -1.4, -1.91, -2.45])
    assert_allclose(actual, expected, atol=0.01)


def test_autocovariance():
    x = np.arange(10.0)
    actual = autocovariance(x)
    expected = np.array(
        [8.25, 6.42, 4.25, 1.75, -1.08, -4.25, -7.75, -11.58, -15.75, -20.25]
    )
    assert_allclose(actual, expected, atol=0.01)


def test_gelman_rubin():
    x = np.empty((2, 10))
    x[0, :] = np.arange(10.0)
    x[1, :] = np.arange(10.0) + 1

    r_hat = gelman_rubin(x)
    assert_allclose(r_hat, 0.98, atol=0.01)


def test_split_gelman_rubin_agree_with_gelman_rubin():
    x = np.random.normal(size=(2, 10))
    r_hat1 = gelman_rubin(x.reshape(2, 2, 5).reshape(4, 5))
    r_hat2 = split_gelman_rubin(x)
    assert_allclose(r_hat1, r_hat2)


def test_split_gelman_rubin_matched_chains():
    x = np.random.normal(size=(4, 2000))
    assert_allclose(split_gelman_rubin(x), 1.0, atol=0.01)


def test_split_gelman_rubin_detects_shifted_chain():
    x = np.random.normal(size=(4, 1000))
    x[0] += 3.0
    assert split_gelman_rubin(x) > 1.1


def test_effective_sample_size():
    x = np.arange(1000.0).reshape(100, 10)
    assert_allclose(effective_sample_size(x), 52.64, atol=0.01)


def test_effective_sample_size_independent_draws():
    x = np.random.normal(size=(4, 1000))
    assert_allclose(effective_sample_size(x), 4000, rtol=0.3)


def test_summary():
    samples = {"a": np.random.normal(size=(2, 100)), "b": np.random.normal(size=(2, 100, 3))}
    stats = summary(samples, prob=0.9)
    assert list(stats["a"].keys()) == [
        "mean",
        "std",
        "median",
        "5.0%",
        "95.0%",
        "n_eff",
        "r_hat",
    ]
    assert stats["b"]["mean"].shape == (3,)

    flat = summary({"a": samples["a"].reshape(-1)}, group_by_chain=False)
    assert_allclose(flat["a"]["mean"], stats["a"]["mean"])


def test_print_summary(capsys):
    samples = {"alpha": np.random.normal(size=(2, 100)), "gamma": np.random.normal(size=(2, 100, 2))}
    print_summary(samples)
    out = capsys.readouterr().out
    for row in ["alpha", "gamma[0]", "gamma[1]", "n_eff", "r_hat"]:
        assert row in out


def test_check_convergence_healthy():
    samples = {"alpha": np.random.normal(size=(4, 500)), "gamma": np.random.normal(size=(4, 500, 2))}
    report = check_convergence(samples, min_ess_per_chain=100)
    assert report.converged
    assert [p.name for p in report.params] == ["alpha", "gamma[0]", "gamma[1]"]
    assert all(p.status == "ok" for p in report.params)
    assert report.succeeded_chains == [0, 1, 2, 3]
    assert report.failed_chains == []


def test_check_convergence_unhealthy():
    x = np.random.normal(size=(4, 500))
    x[1] += 5.0
    # a slowly mixing random walk
    walk = np.cumsum(np.random.normal(size=(4, 500)), axis=1)
    with pytest.warns(ConvergenceWarning, match="did not pass"):
        report = check_convergence({"shifted": x, "walk": walk})
    statuses = {p.name: p.status for p in report.params}
    assert statuses["shifted"] == "high_r_hat"
    assert statuses["walk"] in ("high_r_hat", "low_ess")
    assert not report.converged


def test_check_convergence_constant_parameter():
    samples = {"beta": np.concatenate([np.zeros((2, 400, 1)), np.random.normal(size=(2, 400, 1))], axis=-1)}
    report = check_convergence(samples, min_ess_per_chain=50)
    assert [p.status for p in report.params] == ["constant", "ok"]
    assert report.converged


def test_check_convergence_single_chain():
    report = check_convergence({"a": np.random.normal(size=(1, 1000))})
    assert report.params[0].status == "ok"


def test_check_convergence_chain_status():
    report = check_convergence(
        {"a": np.random.normal(size=(2, 400))},
        chain_status={0: "completed", 1: "failed", 2: "completed"},
    )
    assert report.succeeded_chains == [0, 2]
    assert report.failed_chains == [1]
    assert report.chain_status[1] == "failed"


def test_check_convergence_too_few_draws():
    with pytest.raises(ValueError):
        check_convergence({"a": np.random.normal(size=(2, 3))})
