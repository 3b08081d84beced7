# Copyright Contributors to the Pyro project.
# SPDX-License-Identifier: Apache-2.0

from collections import namedtuple
import copy
from functools import partial

from jax import device_put, lax, random
import jax.numpy as jnp

from countcast.exceptions import ConfigurationError
from countcast.infer.hmc_util import (
    IntegratorState,
    build_tree,
    draw_momentum,
    find_reasonable_step_size,
    kinetic_energy,
    velocity_verlet,
    warmup_adapter,
)
from countcast.infer.mcmc import MCMCKernel
from countcast.model import ModelSpec

HMCState = namedtuple(
    "HMCState",
    [
        "i",
        "z",
        "z_grad",
        "potential_energy",
        "energy",
        "num_steps",
        "accept_prob",
        "mean_accept_prob",
        "diverging",
        "adapt_state",
        "rng_key",
    ],
)
"""
A :func:`~collections.namedtuple` consisting of the following fields:

 - **i** - iteration, counted across warmup and sampling.
 - **z** - flat array of latent parameters.
 - **z_grad** - gradient of the potential energy at ``z``.
 - **potential_energy** - potential energy at ``z``.
 - **energy** - Hamiltonian of the selected point of the last trajectory.
 - **num_steps** - number of leapfrog steps of the last trajectory.
 - **accept_prob** - mean acceptance statistic over the leaves of the last
   trajectory.
 - **mean_accept_prob** - running mean of ``accept_prob``, restarted when
   warmup ends.
 - **diverging** - whether the last trajectory diverged.
 - **adapt_state** - a :data:`~countcast.infer.hmc_util.HMCAdaptState` with
   the step size and mass matrix used by the next iteration.
 - **rng_key** - random key for the next iteration.
"""


def hmc(potential_and_grad, max_delta_energy=1000.0):
    r"""
    Functional NUTS sampler over a flat parameter vector.

    **References:**

    1. *MCMC Using Hamiltonian Dynamics*,
       Radford M. Neal
    2. *The No-U-turn sampler: adaptively setting path lengths in Hamiltonian Monte Carlo*,
       Matthew D. Hoffman, and Andrew Gelman.
    3. *A Conceptual Introduction to Hamiltonian Monte Carlo`*,
       Michael Betancourt

    :param potential_and_grad: callable mapping ``z`` to the pair
        ``(potential_energy, grad)``, e.g.
        :meth:`~countcast.model.ModelSpec.potential_and_grad`.
    :param float max_delta_energy: energy error above which a trajectory is
        flagged as diverging. Defaults to 1000.
    :return: a pair of callables ``(init_kernel, sample_kernel)``.

    .. warning::
        Prefer the :class:`~countcast.infer.hmc.NUTS` kernel driven by
        :class:`~countcast.infer.mcmc.MCMC`.

    **Example**

    .. doctest::

        >>> import jax.numpy as jnp
        >>> from countcast.infer.hmc import hmc

        >>> def potential_and_grad(z):
        ...     return 0.5 * jnp.sum((z - 1.0) ** 2), z - 1.0
        >>>
        >>> init_kernel, sample_kernel = hmc(potential_and_grad)
        >>> hmc_state = init_kernel(jnp.zeros(3), num_warmup=300)
        >>> for _ in range(500):
        ...     hmc_state = sample_kernel(hmc_state)
    """
    vv_init, vv_update = velocity_verlet(potential_and_grad)
    wa_update = None
    wa_steps = None
    tree_depth = None

    def init_kernel(
        init_params,
        num_warmup,
        *,
        step_size=1.0,
        inverse_mass_matrix=None,
        adapt_step_size=True,
        adapt_mass_matrix=True,
        dense_mass=False,
        target_accept_prob=0.8,
        max_tree_depth=10,
        find_heuristic_step_size=False,
        regularize_mass_matrix=True,
        rng_key=None,
    ):
        """
        Initializes the sampler at ``init_params``. The keyword arguments are
        those of :class:`~countcast.infer.hmc.NUTS`.

        :param init_params: flat array of initial parameters.
        :param int num_warmup: number of adaptation iterations.
        :param jax.random.PRNGKey rng_key: defaults to ``jax.random.PRNGKey(0)``.
        :return: the initial :data:`HMCState`.
        """
        nonlocal wa_update, wa_steps, tree_depth
        wa_steps = num_warmup
        tree_depth = max_tree_depth
        rng_key = random.PRNGKey(0) if rng_key is None else rng_key
        z = jnp.asarray(init_params, dtype=jnp.result_type(float))
        step_size = lax.convert_element_type(step_size, jnp.result_type(float))

        wa_init, wa_update = warmup_adapter(
            num_warmup,
            find_reasonable_step_size=(
                partial(find_reasonable_step_size, vv_update)
                if find_heuristic_step_size
                else None
            ),
            adapt_step_size=adapt_step_size,
            adapt_mass_matrix=adapt_mass_matrix,
            dense_mass=dense_mass,
            target_accept_prob=target_accept_prob,
            regularize_mass_matrix=regularize_mass_matrix,
        )
        rng_key, key_wa, key_momentum = random.split(rng_key, 3)
        z_info = vv_init(z)
        wa_state = wa_init(z_info, key_wa, step_size, inverse_mass_matrix)
        r = draw_momentum(key_momentum, wa_state.mass_matrix_sqrt)
        zero_int = jnp.array(0, dtype=jnp.result_type(int))
        hmc_state = HMCState(
            zero_int,
            z_info.z,
            z_info.z_grad,
            z_info.potential_energy,
            z_info.potential_energy + kinetic_energy(wa_state.inverse_mass_matrix, r),
            zero_int,
            jnp.zeros(()),
            jnp.zeros(()),
            jnp.array(False),
            wa_state,
            rng_key,
        )
        return device_put(hmc_state)

    def sample_kernel(hmc_state):
        """
        Draws one NUTS transition from ``hmc_state``, adapting while
        ``hmc_state.i < num_warmup``.

        :param HMCState hmc_state: current state.
        :return: the next :data:`HMCState`.
        """
        rng_key, key_momentum, key_tree = random.split(hmc_state.rng_key, 3)
        adapt_state = hmc_state.adapt_state
        r = draw_momentum(key_momentum, adapt_state.mass_matrix_sqrt)
        tree = build_tree(
            vv_update,
            IntegratorState(
                hmc_state.z, r, hmc_state.potential_energy, hmc_state.z_grad
            ),
            adapt_state.inverse_mass_matrix,
            adapt_state.step_size,
            key_tree,
            max_delta_energy=max_delta_energy,
            max_tree_depth=tree_depth,
        )
        accept_prob = tree.sum_accept_probs / tree.num_proposals
        in_warmup = hmc_state.i < wa_steps
        adapt_state = lax.cond(
            in_warmup,
            lambda s: wa_update(hmc_state.i, accept_prob, tree.proposal, s),
            lambda s: s,
            adapt_state,
        )

        itr = hmc_state.i + 1
        n = jnp.where(in_warmup, itr, itr - wa_steps)
        mean_accept_prob = (
            hmc_state.mean_accept_prob + (accept_prob - hmc_state.mean_accept_prob) / n
        )
        return HMCState(
            itr,
            tree.proposal.z,
            tree.proposal.z_grad,
            tree.proposal.potential_energy,
            tree.proposal_energy,
            tree.num_proposals,
            accept_prob,
            mean_accept_prob,
            tree.diverging,
            adapt_state,
            rng_key,
        )

    return init_kernel, sample_kernel


class NUTS(MCMCKernel):
    """
    No-U-Turn sampler with windowed step size and mass matrix adaptation.

    **References:**

    1. *The No-U-turn sampler: adaptively setting path lengths in Hamiltonian Monte Carlo*,
       Matthew D. Hoffman, and Andrew Gelman.
    2. *A Conceptual Introduction to Hamiltonian Monte Carlo`*,
       Michael Betancourt

    :param ModelSpec model: the count model to sample from. Its analytic
        gradient drives the integrator.
    :param potential_fn: alternatively, a callable computing the potential
        energy of a flat parameter array. It must carry its gradient as a
        ``_value_and_grad`` attribute returning ``(potential_energy, grad)``,
        as :attr:`ModelSpec.potential_fn <countcast.model.ModelSpec.potential_fn>`
        does. Exactly one of `model` or `potential_fn` must be given.
    :param float step_size: initial leapfrog step size. Defaults to 1.
    :param inverse_mass_matrix: initial inverse mass matrix, a vector or a
        matrix. Defaults to the identity.
    :param bool adapt_step_size: adapt the step size by dual averaging during
        warmup.
    :param bool adapt_mass_matrix: estimate the inverse mass matrix from the
        slow warmup windows.
    :param bool dense_mass: use a dense rather than a diagonal mass matrix.
    :param float target_accept_prob: acceptance statistic targeted by step size
        adaptation. Higher values give smaller steps. Defaults to 0.8.
    :param int max_tree_depth: maximum number of trajectory doublings, i.e. at
        most ``2**max_tree_depth`` leapfrog steps per iteration. Defaults to 10.
    :param bool find_heuristic_step_size: search for a reasonable step size at
        the start of warmup and after every mass matrix update.
    :param bool regularize_mass_matrix: shrink the estimated covariance towards
        a small multiple of the identity. Defaults to True.
    :param float max_delta_energy: energy error above which a trajectory is
        flagged as diverging. Defaults to 1000.
    """

    def __init__(
        self,
        model=None,
        potential_fn=None,
        step_size=1.0,
        inverse_mass_matrix=None,
        adapt_step_size=True,
        adapt_mass_matrix=True,
        dense_mass=False,
        target_accept_prob=0.8,
        max_tree_depth=10,
        find_heuristic_step_size=False,
        regularize_mass_matrix=True,
        max_delta_energy=1000.0,
    ):
        if not (model is None) ^ (potential_fn is None):
            raise ConfigurationError(
                "Only one of `model` or `potential_fn` must be specified."
            )
        if model is not None and not isinstance(model, ModelSpec):
            raise ConfigurationError(
                "`model` must be a `countcast.model.ModelSpec`, got {}.".format(
                    type(model)
                )
            )
        if potential_fn is not None and not callable(
            getattr(potential_fn, "_value_and_grad", None)
        ):
            raise ConfigurationError(
                "`potential_fn` must carry its gradient as a `_value_and_grad`"
                " attribute returning `(potential_energy, grad)`."
            )
        if not 0 < target_accept_prob < 1:
            raise ConfigurationError(
                "`target_accept_prob` must lie in (0, 1), got {}.".format(
                    target_accept_prob
                )
            )
        if (
            not isinstance(max_tree_depth, int)
            or isinstance(max_tree_depth, bool)
            or max_tree_depth < 1
        ):
            raise ConfigurationError(
                "`max_tree_depth` must be a positive integer, got {}.".format(
                    max_tree_depth
                )
            )
        if not step_size > 0:
            raise ConfigurationError("`step_size` must be positive.")
        if not isinstance(dense_mass, bool):
            raise ConfigurationError("`dense_mass` must be a boolean.")
        self._model = model
        self._potential_fn = model.potential_fn if model is not None else potential_fn
        self._step_size = float(step_size)
        self._inverse_mass_matrix = inverse_mass_matrix
        self._adapt_step_size = adapt_step_size
        self._adapt_mass_matrix = adapt_mass_matrix
        self._dense_mass = dense_mass
        self._target_accept_prob = target_accept_prob
        self._max_tree_depth = max_tree_depth
        self._find_heuristic_step_size = find_heuristic_step_size
        self._regularize_mass_matrix = regularize_mass_matrix
        self._max_delta_energy = max_delta_energy
        # Set on first call to init
        self._init_fn = None
        self._sample_fn = None

    @property
    def model(self):
        return self._model

    @property
    def sample_field(self):
        return "z"

    def get_diagnostics_str(self, state):
        return "{} steps of size {:.2e}. acc. prob={:.2f}".format(
            state.num_steps, state.adapt_state.step_size, state.mean_accept_prob
        )

    def clone(self):
        """
        Returns a copy of this kernel with its own, not yet initialized,
        sampler closures.
        """
        kernel = copy.copy(self)
        kernel._init_fn = None
        kernel._sample_fn = None
        return kernel

    def _check_init_params(self, init_params):
        if init_params is None:
            if self._model is None:
                raise ConfigurationError(
                    "Valid value of `init_params` must be provided with `potential_fn`."
                )
            return None
        init_params = jnp.asarray(init_params)
        if self._model is not None:
            expected_shape = (self._model.param_size,)
        else:
            expected_shape = jnp.shape(init_params)[-1:]
        if init_params.ndim != 1 or init_params.shape != expected_shape:
            raise ConfigurationError(
                "`init_params` must be a flat array of shape {}, got shape {}.".format(
                    expected_shape, init_params.shape
                )
            )
        return init_params

    def init(self, rng_key, num_warmup, init_params=None):
        rng_key, rng_key_init_model = random.split(rng_key)
        init_params = self._check_init_params(init_params)
        if init_params is None:
            init_params = self._model.init_params(rng_key_init_model)

        if self._init_fn is None:
            self._init_fn, self._sample_fn = hmc(
                self._potential_fn._value_and_grad,
                max_delta_energy=self._max_delta_energy,
            )

        return self._init_fn(
            init_params,
            num_warmup=num_warmup,
            step_size=self._step_size,
            inverse_mass_matrix=self._inverse_mass_matrix,
            adapt_step_size=self._adapt_step_size,
            adapt_mass_matrix=self._adapt_mass_matrix,
            dense_mass=self._dense_mass,
            target_accept_prob=self._target_accept_prob,
            max_tree_depth=self._max_tree_depth,
            find_heuristic_step_size=self._find_heuristic_step_size,
            regularize_mass_matrix=self._regularize_mass_matrix,
            rng_key=rng_key,
        )

    def sample(self, state):
        """
        Runs one NUTS transition from ``state``.

        :param HMCState state: current state.
        :return: the next :data:`HMCState`.
        """
        return self._sample_fn(state)
