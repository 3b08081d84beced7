# Copyright Contributors to the Pyro project.
# SPDX-License-Identifier: Apache-2.0

from abc import ABC, abstractmethod
from collections import namedtuple
from concurrent.futures import ThreadPoolExecutor
import copy
import os
import threading
import time
import warnings

import numpy as np
from tqdm.auto import tqdm as tqdm_auto

from jax import device_get, jit, random
import jax.numpy as jnp

from countcast.diagnostics import check_convergence, print_summary
from countcast.exceptions import ChainFailureWarning, ConfigurationError
from countcast.util import find_stack_level, is_prng_key

__all__ = [
    "ChainResult",
    "ChainRunner",
    "Draw",
    "MCMCKernel",
    "MCMC",
]

COMPLETED = "completed"
CANCELLED = "cancelled"
TIMED_OUT = "timed_out"
FAILED = "failed"

Draw = namedtuple(
    "Draw", ["z", "log_density", "num_steps", "diverging", "accept_prob", "step_size"]
)
"""
A single post-warmup draw of a chain:

 - **z** - flat latent vector.
 - **log_density** - log posterior density at ``z``.
 - **num_steps** - number of leapfrog steps of the trajectory.
 - **diverging** - whether the trajectory diverged. Diverging draws are kept.
 - **accept_prob** - average acceptance probability of the trajectory.
 - **step_size** - integrator step size used by the trajectory.
"""

ChainResult = namedtuple(
    "ChainResult", ["chain_id", "status", "draws", "last_state", "error", "elapsed"]
)
"""
Outcome of running a single chain:

 - **chain_id** - index of the chain.
 - **status** - one of ``"completed"``, ``"cancelled"``, ``"timed_out"`` or ``"failed"``.
 - **draws** - tuple of :data:`Draw`, possibly empty for an aborted chain.
 - **last_state** - last :data:`~countcast.infer.hmc.HMCState` of the chain, or
   ``None`` if the chain failed.
 - **error** - the exception raised by a failed chain, ``None`` otherwise.
 - **elapsed** - wall-clock time spent in the chain, in seconds.
"""


class MCMCKernel(ABC):
    """
    Defines the interface for the Markov transition kernel that is
    used for :class:`~countcast.infer.mcmc.MCMC` inference.
    """

    @abstractmethod
    def init(self, rng_key, num_warmup, init_params=None):
        """
        Initialize the `MCMCKernel` and return an initial state to begin sampling
        from.

        :param random.PRNGKey rng_key: Random number generator key to initialize
            the kernel.
        :param int num_warmup: Number of warmup steps. This can be useful
            when doing adaptation during warmup.
        :param init_params: Initial parameters to begin sampling.
        :return: The initial state representing the state of the kernel.
        """
        raise NotImplementedError

    @abstractmethod
    def sample(self, state):
        """
        Given the current `state`, return the next `state` using the given
        transition kernel.

        :param state: the current state. For NUTS, this is given
            by :data:`~countcast.infer.hmc.HMCState`.
        :return: Next `state`.
        """
        raise NotImplementedError

    @property
    def sample_field(self):
        """
        The attribute of the `state` object passed to :meth:`sample` that denotes
        the MCMC sample.
        """
        raise NotImplementedError

    def get_diagnostics_str(self, state):
        """
        Given the current `state`, returns the diagnostics string to
        be added to progress bar for diagnostics purpose.
        """
        return ""

    def clone(self):
        """
        Returns an independent copy of this kernel, to be owned by a single chain.
        """
        return copy.copy(self)

    def _check_init_params(self, init_params):
        """
        Validates user provided initial parameters before any chain starts.
        """
        return init_params


def _get_progbar_desc_str(chain_id, num_warmup, i):
    phase = "warmup" if i < num_warmup else "sample"
    return "chain {} {}".format(chain_id, phase)


def _to_draw(state):
    z, potential_energy, num_steps, diverging, accept_prob, step_size = device_get(
        (
            state.z,
            state.potential_energy,
            state.num_steps,
            state.diverging,
            state.accept_prob,
            state.adapt_state.step_size,
        )
    )
    return Draw(
        np.asarray(z),
        -float(potential_energy),
        int(num_steps),
        bool(diverging),
        float(accept_prob),
        float(step_size),
    )


class ChainRunner(object):
    """
    Drives a single chain through `num_warmup` adaptation iterations followed by
    `num_samples` sampling iterations, storing one :data:`Draw` per sampling
    iteration. The runner owns a private clone of the kernel, so several
    runners can execute concurrently.

    Cancellation and the wall-clock budget are checked at iteration boundaries
    only; an iteration in progress always finishes.

    :param MCMCKernel kernel: the transition kernel, e.g. :class:`~countcast.infer.hmc.NUTS`.
    :param int num_warmup: Number of warmup steps.
    :param int num_samples: Number of samples to draw.
    :param int chain_id: index of the chain, used for reporting.
    :param threading.Event cancel_event: when set, the chain stops at the next
        iteration boundary with status ``"cancelled"``.
    :param float timeout: wall-clock budget of the chain in seconds. When it is
        exhausted the chain stops with status ``"timed_out"``.
    :param bool keep_partial: whether an aborted chain keeps the draws collected
        so far. Defaults to ``True``.
    :param bool progress_bar: whether to display a progress bar for this chain.
    """

    def __init__(
        self,
        kernel,
        num_warmup,
        num_samples,
        chain_id=0,
        cancel_event=None,
        timeout=None,
        keep_partial=True,
        progress_bar=False,
    ):
        self.kernel = kernel
        self.num_warmup = num_warmup
        self.num_samples = num_samples
        self.chain_id = chain_id
        self.cancel_event = cancel_event
        self.timeout = timeout
        self.keep_partial = keep_partial
        self.progress_bar = progress_bar

    def _stop_status(self, start_time):
        if self.cancel_event is not None and self.cancel_event.is_set():
            return CANCELLED
        if self.timeout is not None and time.monotonic() - start_time > self.timeout:
            return TIMED_OUT
        return None

    def run(self, rng_key, init_params=None):
        """
        Runs the chain to completion, cancellation, timeout or failure.

        :param jax.random.PRNGKey rng_key: the key of this chain.
        :param init_params: initial latent vector. If ``None``, the kernel draws one.
        :rtype: ChainResult
        """
        start_time = time.monotonic()
        kernel = self.kernel.clone()
        draws = []
        state = None
        try:
            state = kernel.init(rng_key, self.num_warmup, init_params)
            sample_fn = jit(kernel.sample)
            status = COMPLETED
            with tqdm_auto(
                range(self.num_warmup + self.num_samples),
                position=self.chain_id,
                disable=not self.progress_bar,
            ) as t:
                for i in t:
                    stop_status = self._stop_status(start_time)
                    if stop_status is not None:
                        status = stop_status
                        break
                    state = sample_fn(state)
                    if i >= self.num_warmup:
                        draws.append(_to_draw(state))
                    if self.progress_bar:
                        t.set_description(
                            _get_progbar_desc_str(self.chain_id, self.num_warmup, i),
                            refresh=False,
                        )
                        t.set_postfix_str(
                            kernel.get_diagnostics_str(state), refresh=False
                        )
        except Exception as e:
            return ChainResult(
                self.chain_id, FAILED, (), None, e, time.monotonic() - start_time
            )
        if status != COMPLETED and not self.keep_partial:
            draws = []
        return ChainResult(
            self.chain_id,
            status,
            tuple(draws),
            state,
            None,
            time.monotonic() - start_time,
        )


class MCMC(object):
    """
    Runs several independent Markov chains and collects their draws.

    Each chain is driven by its own :class:`ChainRunner` with a private kernel,
    PRNG key and draw store. The :class:`~countcast.data.Dataset` held by the
    model is read-only and shared by all chains. Results are gathered only once
    every chain has finished.

    :param MCMCKernel sampler: an instance of :class:`~countcast.infer.mcmc.MCMCKernel` that
        determines the sampler for running MCMC. Currently, only
        :class:`~countcast.infer.hmc.NUTS` is available.
    :param int num_warmup: Number of warmup steps.
    :param int num_samples: Number of samples to generate from the Markov chain.
    :param int num_chains: Number of MCMC chains to run.
    :param str chain_method: One of 'parallel' (default) or 'sequential'. The method
        'parallel' runs one thread per chain, 'sequential' draws the chains one
        after the other.
    :param bool progress_bar: Whether to enable progress bar updates. Defaults to
        ``True``.
    :param float timeout: optional wall-clock budget, in seconds, of each chain.
    :param bool keep_partial: whether cancelled or timed out chains keep the draws
        collected before they stopped. Defaults to ``True``.

    **Example**

    .. doctest::

        >>> from jax import random
        >>> from countcast.data import Dataset
        >>> from countcast.infer import MCMC, NUTS
        >>> from countcast.model import ModelSpec
        >>> data = Dataset.from_series([3, 5, 4, 6, 2, 7, 9] * 8, "2024-01-01", num_harmonics=1)
        >>> mcmc = MCMC(NUTS(ModelSpec(data)), num_warmup=100, num_samples=100, progress_bar=False)
        >>> mcmc.run(random.PRNGKey(0))
        >>> samples = mcmc.get_samples()
        >>> samples["alpha"].shape
        (100,)
    """

    def __init__(
        self,
        sampler,
        *,
        num_warmup,
        num_samples,
        num_chains=1,
        chain_method="parallel",
        progress_bar=True,
        timeout=None,
        keep_partial=True,
    ):
        for name, value in (
            ("num_warmup", num_warmup),
            ("num_samples", num_samples),
            ("num_chains", num_chains),
        ):
            if not isinstance(value, (int, np.integer)) or value < 1:
                raise ConfigurationError(
                    "`{}` must be a positive integer, got {}.".format(name, value)
                )
        if chain_method not in ["parallel", "sequential"]:
            raise ConfigurationError(
                "Only supporting the following methods to draw chains:"
                ' "sequential" or "parallel"'
            )
        if timeout is not None and not timeout >= 0:
            raise ConfigurationError("`timeout` must be a non-negative number.")
        self.sampler = sampler
        self._sample_field = sampler.sample_field
        self.num_warmup = int(num_warmup)
        self.num_samples = int(num_samples)
        self.num_chains = int(num_chains)
        self.chain_method = chain_method
        self.progress_bar = progress_bar
        if "CI" in os.environ or "PYTEST_XDIST_WORKER" in os.environ:
            self.progress_bar = False
        self.timeout = timeout
        self.keep_partial = keep_partial
        self._cancel_event = threading.Event()
        self._chain_results = None

    def _get_rng_keys(self, rng_key):
        if is_prng_key(rng_key):
            if self.num_chains == 1:
                return [rng_key]
            return list(random.split(rng_key, self.num_chains))
        rng_keys = list(rng_key)
        if len(rng_keys) != self.num_chains or not all(
            is_prng_key(k) for k in rng_keys
        ):
            raise ConfigurationError(
                "`rng_key` must be a single PRNG key or a batch of `num_chains`={}"
                " keys.".format(self.num_chains)
            )
        return rng_keys

    def _get_init_params(self, init_params):
        if init_params is None:
            self.sampler._check_init_params(None)
            return [None] * self.num_chains
        init_params = jnp.asarray(init_params, dtype=jnp.result_type(float))
        if self.num_chains == 1 and init_params.ndim == 1:
            init_params = init_params[None]
        if init_params.ndim != 2 or init_params.shape[0] != self.num_chains:
            raise ConfigurationError(
                "`init_params` must have the same leading dimension as `num_chains`."
            )
        for row in init_params:
            self.sampler._check_init_params(row)
        return list(init_params)

    def _completed(self):
        if self._chain_results is None:
            raise RuntimeError("`run` must be called before accessing the draws.")
        completed = [r for r in self._chain_results if r.status == COMPLETED]
        if not completed:
            raise RuntimeError("No chain ran to completion.")
        return completed

    def cancel(self):
        """
        Requests all running chains to stop at their next iteration boundary.
        Safe to call from any thread. A request made before :meth:`run` starts
        applies to that run, whose chains then stop before their first
        iteration. The request is cleared when :meth:`run` returns.
        """
        self._cancel_event.set()

    @property
    def chain_results(self):
        """
        List of :data:`ChainResult`, one per chain, in chain order.
        """
        return self._chain_results

    @property
    def last_state(self):
        """
        The final state of each chain (``None`` for failed chains).
        """
        if self._chain_results is None:
            return None
        return [r.last_state for r in self._chain_results]

    def run(self, rng_key, init_params=None):
        """
        Run the MCMC samplers and collect samples.

        :param random.PRNGKey rng_key: Random number generator key to be used for the sampling.
            For multi-chains, a batch of `num_chains` keys can be supplied. If `rng_key`
            does not have batch_size, it will be split in to a batch of `num_chains` keys.
        :param init_params: Initial parameters to begin sampling. For multiple
            chains this must have `num_chains` as its leading dimension.
        :raises ConfigurationError: if the keys or the initial parameters are malformed.
        :raises RuntimeError: if every chain failed.
        """
        rng_keys = self._get_rng_keys(rng_key)
        init_params = self._get_init_params(init_params)
        runners = [
            ChainRunner(
                self.sampler,
                self.num_warmup,
                self.num_samples,
                chain_id=chain_id,
                cancel_event=self._cancel_event,
                timeout=self.timeout,
                keep_partial=self.keep_partial,
                progress_bar=self.progress_bar,
            )
            for chain_id in range(self.num_chains)
        ]
        try:
            if self.chain_method == "parallel" and self.num_chains > 1:
                with ThreadPoolExecutor(max_workers=self.num_chains) as executor:
                    futures = [
                        executor.submit(runner.run, key, init)
                        for runner, key, init in zip(runners, rng_keys, init_params)
                    ]
                    results = [future.result() for future in futures]
            else:
                results = [
                    runner.run(key, init)
                    for runner, key, init in zip(runners, rng_keys, init_params)
                ]
        finally:
            # a cancellation applies to one run only
            self._cancel_event.clear()
        self._chain_results = results

        failed = [r for r in results if r.status == FAILED]
        for r in failed:
            warnings.warn(
                "Chain {} failed with {}: {}".format(
                    r.chain_id, type(r.error).__name__, r.error
                ),
                ChainFailureWarning,
                stacklevel=find_stack_level(),
            )
        if len(failed) == len(results):
            raise RuntimeError(
                "All {} chains failed.".format(len(results))
            ) from failed[0].error

    def _stack(self, results):
        # num_chains x num_samples x latent_size
        return np.stack([np.stack([d.z for d in r.draws]) for r in results])

    def _unpack(self, z):
        model = getattr(self.sampler, "model", None)
        if model is None:
            return {self._sample_field: z}
        return {k: np.asarray(v) for k, v in model.unpack(z).items()}

    def get_samples(self, group_by_chain=False):
        """
        Get samples of the completed chains.

        :param bool group_by_chain: Whether to preserve the chain dimension. If True,
            all samples will have the number of completed chains as the size of their
            leading dimension.
        :return: dict keyed by parameter name (``alpha``, ``beta``, ``beta_raw``,
            ``delta``, ``gamma``); ``{"z": ...}`` for a kernel built from a
            `potential_fn`.
        """
        z = self._stack(self._completed())
        if not group_by_chain:
            z = z.reshape((-1,) + z.shape[2:])
        return self._unpack(z)

    def get_extra_fields(self, group_by_chain=False):
        """
        Get the per-draw diagnostics of the completed chains.

        :param bool group_by_chain: Whether to preserve the chain dimension.
        :return: dict with keys ``log_density``, ``num_steps``, ``diverging``,
            ``accept_prob`` and ``step_size``.
        """
        completed = self._completed()
        fields = {}
        for name in Draw._fields[1:]:
            value = np.array([[getattr(d, name) for d in r.draws] for r in completed])
            fields[name] = value if group_by_chain else value.reshape(-1)
        return fields

    def get_draws(self, chain_id):
        """
        Returns the tuple of :data:`Draw` stored by chain `chain_id`, whatever
        its status.
        """
        if self._chain_results is None:
            raise RuntimeError("`run` must be called before accessing the draws.")
        return self._chain_results[chain_id].draws

    def _latent_samples(self):
        samples = self.get_samples(group_by_chain=True)
        names = getattr(getattr(self.sampler, "model", None), "latent_names", None)
        if names is None:
            return samples
        return {k: samples[k] for k in names}

    def print_summary(self, prob=0.9):
        """
        Print the statistics of posterior samples collected during running this MCMC instance.

        :param float prob: the probability mass of samples within the credible interval.
        """
        print_summary(self._latent_samples(), prob=prob)
        extra_fields = self.get_extra_fields()
        print("Number of divergences: {}".format(np.sum(extra_fields["diverging"])))

    def diagnostics(self, r_hat_threshold=1.01, min_ess_per_chain=100):
        """
        Computes split R-hat and effective sample sizes over the completed chains
        and reports which chains succeeded. Emits a
        :class:`~countcast.exceptions.ConvergenceWarning` when unhealthy.

        :rtype: ~countcast.diagnostics.ConvergenceReport
        """
        return check_convergence(
            self._latent_samples(),
            r_hat_threshold=r_hat_threshold,
            min_ess_per_chain=min_ess_per_chain,
            chain_status={r.chain_id: r.status for r in self._chain_results},
        )
