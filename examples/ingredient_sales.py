# Copyright Contributors to the Pyro project.
# SPDX-License-Identifier: Apache-2.0

"""
Ingredient Sales Forecast
=========================

This example forecasts the daily consumption of an ingredient at a restaurant.
Daily counts are modelled as Poisson with a log rate made of an intercept, a
day-of-week effect (Monday is the baseline), a linear trend and an annual
seasonality expressed with Fourier features:

    log rate = alpha + beta[day of week] + delta * t + gamma . fourier(t)

The posterior is sampled with several independent NUTS chains running in
parallel threads. After checking split R-hat and effective sample sizes, we
simulate the next weeks of demand from the posterior predictive distribution
and report, per day, the median and a 90% interval of the forecast.

Since no public data set ships with the package, a synthetic series is drawn
from known parameters, which also lets us compare them with their posterior
means.

**References:**

    1. Hoffman, M. D. and Gelman, A. (2014), "The No-U-turn sampler: Adaptively setting
       path lengths in Hamiltonian Monte Carlo", (https://arxiv.org/abs/1111.4246)
    2. Stan Development Team, "Stan Reference Manual", section on convergence
       diagnostics and effective sample size.
"""

import argparse

import numpy as np

import jax.random as random

import countcast
from countcast.data import Dataset
from countcast.infer import MCMC, NUTS, PosteriorPredictive, summarize
from countcast.model import ModelSpec

WEEKDAYS = ["Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"]


def simulate(rng_key, num_days, start_date, num_harmonics):
    """
    Draws a synthetic daily series with a weekend peak, a mild upward trend and
    an annual cycle.
    """
    # Tue..Sun effects relative to Monday
    beta_raw = np.array([-0.1, 0.0, 0.2, 0.6, 0.8, 0.4])
    gamma = np.zeros(2 * num_harmonics)
    if num_harmonics > 0:
        gamma[:2] = [0.3, -0.2]
    true_params = {"alpha": 2.5, "beta_raw": beta_raw, "delta": 0.3, "gamma": gamma}
    # the covariates do not depend on the counts, build them on a dummy series
    design = Dataset.from_series(
        np.zeros(num_days, dtype=int), start_date, num_harmonics=num_harmonics
    )
    model = ModelSpec(design)
    z = model.pack(**true_params)
    rate = np.exp(model.log_rate(z, design.dow, design.t, design.fourier))
    counts = np.asarray(random.poisson(rng_key, rate))
    return Dataset.from_series(counts, start_date, num_harmonics=num_harmonics), true_params


def run_inference(model, rng_key, args):
    kernel = NUTS(
        model,
        target_accept_prob=args.target_accept_prob,
        max_tree_depth=args.max_tree_depth,
        dense_mass=args.dense_mass,
    )
    mcmc = MCMC(
        kernel,
        num_warmup=args.num_warmup,
        num_samples=args.num_samples,
        num_chains=args.num_chains,
        progress_bar=not args.disable_progbar,
        timeout=args.timeout,
    )
    mcmc.run(rng_key)
    mcmc.print_summary()
    report = mcmc.diagnostics()
    print(
        "Converged: {}, completed chains: {}, failed chains: {}".format(
            report.converged, report.succeeded_chains, report.failed_chains
        )
    )
    return mcmc.get_samples()


def print_forecast(data, forecast_points, summary):
    columns = ["", "Day", "Median", "Lower", "Upper", "Mean"]
    header_format = "{:>12} {:>5} {:>8} {:>8} {:>8} {:>8}"
    row_format = "{:>12} {:>5} {:>8.0f} {:>8.0f} {:>8.0f} {:>8.2f}"
    days = data.time_origin + np.rint(forecast_points.t * data.time_scale).astype(int)
    print("\n", "=" * 20 + " FORECAST " + "=" * 20, "\n")
    print(header_format.format(*columns))
    for i in range(forecast_points.num_points):
        print(
            row_format.format(
                str(days[i]),
                WEEKDAYS[forecast_points.dow[i] - 1],
                summary.median[i],
                summary.lower[i],
                summary.upper[i],
                summary.mean[i],
            )
        )


def main(args):
    rng_key_data, rng_key_mcmc, rng_key_predict = random.split(random.PRNGKey(0), 3)
    data, true_params = simulate(
        rng_key_data, args.num_days, args.start_date, args.num_harmonics
    )
    model = ModelSpec(data)
    samples = run_inference(model, rng_key_mcmc, args)

    print("\nTrue vs posterior mean:")
    for name, value in true_params.items():
        print(
            "{:>10}: true={} posterior={}".format(
                name,
                np.round(value, 2),
                np.round(samples[name].mean(axis=0), 2),
            )
        )

    forecast_points = data.forecast_points(args.horizon)
    predictions = PosteriorPredictive(model, samples)(rng_key_predict, forecast_points)
    print_forecast(data, forecast_points, summarize(predictions, prob=0.9))


if __name__ == "__main__":
    assert countcast.__version__.startswith("0.1.0")
    parser = argparse.ArgumentParser(description="Ingredient sales forecast")
    parser.add_argument("-n", "--num-samples", nargs="?", default=1000, type=int)
    parser.add_argument("--num-warmup", nargs="?", default=1000, type=int)
    parser.add_argument("--num-chains", nargs="?", default=4, type=int)
    parser.add_argument("--num-days", nargs="?", default=2 * 365, type=int)
    parser.add_argument("--num-harmonics", nargs="?", default=3, type=int)
    parser.add_argument("--start-date", default="2022-01-03", type=str)
    parser.add_argument("--horizon", nargs="?", default=14, type=int)
    parser.add_argument("--target-accept-prob", nargs="?", default=0.8, type=float)
    parser.add_argument("--max-tree-depth", nargs="?", default=10, type=int)
    parser.add_argument("--dense-mass", action="store_true", default=False)
    parser.add_argument(
        "--timeout", default=None, type=float, help="wall-clock budget per chain"
    )
    parser.add_argument(
        "-dp",
        "--disable-progbar",
        action="store_true",
        default=False,
        help="whether to disable progress bar",
    )
    parser.add_argument("--x64", action="store_true", help="use 64 bit precision")
    args = parser.parse_args()

    countcast.enable_x64(args.x64)

    main(args)
