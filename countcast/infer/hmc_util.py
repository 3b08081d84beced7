# Copyright Contributors to the Pyro project.
# SPDX-License-Identifier: Apache-2.0

"""
Building blocks of the No-U-Turn sampler for a flat latent vector ``z``.

Everything here is a pure function or an ``(init_fn, update_fn)`` pair over
namedtuple states, so the pieces compose under :func:`jax.jit`. The potential
enters only through ``potential_and_grad(z) -> (potential_energy, grad)``; no
automatic differentiation happens in the sampler.
"""

from collections import namedtuple

from jax import lax, random, vmap
import jax.numpy as jnp
from jax.scipy.special import expit
from jax.tree_util import tree_map

from countcast.exceptions import ConfigurationError

AdaptWindow = namedtuple("AdaptWindow", ["start", "end"])
IntegratorState = namedtuple(
    "IntegratorState", ["z", "r", "potential_energy", "z_grad"], defaults=(None,) * 3
)
DualAveragingState = namedtuple(
    "DualAveragingState",
    ["log_step_size", "log_step_size_avg", "grad_avg", "t", "prox_center"],
)
WelfordState = namedtuple("WelfordState", ["mean", "m2", "n"])
HMCAdaptState = namedtuple(
    "HMCAdaptState",
    [
        "step_size",
        "inverse_mass_matrix",
        "mass_matrix_sqrt",
        "ss_state",
        "mm_state",
        "window_idx",
        "rng_key",
    ],
)
"""
Warmup adaptation state.

 - **step_size** - step size used by the next transition.
 - **inverse_mass_matrix** - vector (diagonal) or matrix (dense) ``M^-1``.
 - **mass_matrix_sqrt** - factor ``L`` with ``L L^T = M``, used to draw momenta.
 - **ss_state** - :data:`DualAveragingState` of the step size adapter.
 - **mm_state** - :data:`WelfordState` collecting the current slow window.
 - **window_idx** - index of the current adaptation window.
 - **rng_key** - key for the step size heuristic.
"""
TreeInfo = namedtuple(
    "TreeInfo",
    [
        "left",
        "right",
        "proposal",
        "proposal_energy",
        "depth",
        "log_weight",
        "r_sum",
        "turning",
        "diverging",
        "sum_accept_probs",
        "num_proposals",
    ],
)
"""
A trajectory built by :func:`build_tree`.

 - **left**, **right** - :data:`IntegratorState` at the two ends.
 - **proposal** - :data:`IntegratorState` of the sampled point.
 - **proposal_energy** - Hamiltonian at the proposal.
 - **depth** - number of doublings.
 - **log_weight** - log of the summed ``exp(-H)`` of all leaves relative to
   the starting point.
 - **r_sum** - sum of the momenta of all leaves.
 - **turning**, **diverging** - why the trajectory stopped growing.
 - **sum_accept_probs** - sum of ``min(1, exp(-delta H))`` over the leaves,
   the statistic the step size adapter consumes.
 - **num_proposals** - number of leaves.
"""


def _int(x):
    return jnp.asarray(x, dtype=jnp.result_type(int))


def velocity(inverse_mass_matrix, r):
    """``M^-1 r`` for a diagonal (1-D) or dense (2-D) inverse mass matrix."""
    if inverse_mass_matrix.ndim == 2:
        return jnp.matmul(inverse_mass_matrix, r)
    return inverse_mass_matrix * r


def kinetic_energy(inverse_mass_matrix, r):
    return 0.5 * jnp.dot(r, velocity(inverse_mass_matrix, r))


def draw_momentum(rng_key, mass_matrix_sqrt):
    """Draws ``r ~ N(0, M)`` given the factor ``L`` of ``M = L L^T``."""
    eps = random.normal(rng_key, jnp.shape(mass_matrix_sqrt)[:1])
    if mass_matrix_sqrt.ndim == 2:
        return jnp.matmul(mass_matrix_sqrt, eps)
    return mass_matrix_sqrt * eps


def mass_matrix_sqrt(inverse_mass_matrix):
    """Lower triangular ``L`` with ``L L^T = M`` (elementwise for a diagonal)."""
    if inverse_mass_matrix.ndim == 2:
        return jnp.linalg.cholesky(jnp.linalg.inv(inverse_mass_matrix))
    return jnp.sqrt(jnp.reciprocal(inverse_mass_matrix))


def initialize_inverse_mass_matrix(size, inverse_mass_matrix=None, dense_mass=False):
    """
    Returns the starting ``M^-1``: identity by default, otherwise the given
    value converted to the diagonal or dense layout.

    :raises ConfigurationError: if the given value does not match ``size``.
    """
    if inverse_mass_matrix is None:
        return jnp.identity(size) if dense_mass else jnp.ones(size)
    inverse_mass_matrix = jnp.asarray(inverse_mass_matrix, dtype=jnp.result_type(float))
    if inverse_mass_matrix.ndim not in (1, 2) or inverse_mass_matrix.shape[-1] != size:
        raise ConfigurationError(
            "`inverse_mass_matrix` of shape {} does not match {} latent parameters.".format(
                inverse_mass_matrix.shape, size
            )
        )
    if dense_mass and inverse_mass_matrix.ndim == 1:
        return jnp.diag(inverse_mass_matrix)
    if not dense_mass and inverse_mass_matrix.ndim == 2:
        return jnp.diagonal(inverse_mass_matrix)
    return inverse_mass_matrix


def velocity_verlet(potential_and_grad):
    r"""
    Leapfrog integrator for the Hamiltonian
    :math:`H(z, r) = U(z) + \frac{1}{2} r^T M^{-1} r`.

    :param potential_and_grad: callable returning ``(U(z), grad U(z))``.
    :return: a pair ``(init_fn, update_fn)``. ``init_fn(z, r)`` evaluates the
        potential at ``z`` and returns an :data:`IntegratorState`.
        ``update_fn(step_size, inverse_mass_matrix, state)`` takes one step;
        a negative ``step_size`` integrates backwards in time.
    """

    def init_fn(z, r=None):
        potential_energy, z_grad = potential_and_grad(z)
        return IntegratorState(z, r, potential_energy, z_grad)

    def update_fn(step_size, inverse_mass_matrix, state):
        z, r, _, z_grad = state
        r = r - 0.5 * step_size * z_grad
        z = z + step_size * velocity(inverse_mass_matrix, r)
        potential_energy, z_grad = potential_and_grad(z)
        r = r - 0.5 * step_size * z_grad
        return IntegratorState(z, r, potential_energy, z_grad)

    return init_fn, update_fn


def find_reasonable_step_size(
    vv_update,
    step_size,
    inverse_mass_matrix,
    mass_matrix_sqrt,
    z_info,
    rng_key,
    target_accept_prob=0.8,
):
    """
    Doubles or halves ``step_size`` until the acceptance probability of a
    single leapfrog step from ``z_info`` crosses ``target_accept_prob``
    (Algorithm 4 of [1]). A fresh momentum is drawn at every trial.

    **References:**

    1. *The No-U-Turn Sampler: Adaptively Setting Path Lengths in Hamiltonian
       Monte Carlo*, Matthew D. Hoffman, Andrew Gelman
    """
    log_target = jnp.log(target_accept_prob)
    finfo = jnp.finfo(jnp.result_type(step_size, float))

    def _log_accept_prob(step_size, key):
        r = draw_momentum(key, mass_matrix_sqrt)
        start = z_info._replace(r=r)
        end = vv_update(step_size, inverse_mass_matrix, start)
        energy_start = start.potential_energy + kinetic_energy(inverse_mass_matrix, r)
        energy_end = end.potential_energy + kinetic_energy(inverse_mass_matrix, end.r)
        return energy_start - energy_end

    def cond_fn(state):
        step_size, last_direction, direction, _ = state
        representable = jnp.where(
            direction > 0, step_size < finfo.max, step_size > finfo.tiny
        )
        return representable & ((last_direction == 0) | (direction == last_direction))

    def body_fn(state):
        step_size, _, direction, key = state
        key, key_momentum = random.split(key)
        step_size = step_size * 2.0**direction
        # NaN compares False, so a blown-up step halves
        accepted = _log_accept_prob(step_size, key_momentum) > log_target
        return step_size, direction, jnp.where(accepted, 1, -1), key

    step_size = jnp.asarray(step_size, dtype=finfo.dtype)
    step_size, *_ = lax.while_loop(cond_fn, body_fn, (step_size, 0, 0, rng_key))
    return step_size


def dual_averaging(t0=10, kappa=0.75, gamma=0.05):
    """
    Nesterov dual averaging as used in [1] to tune the log step size.
    ``update_fn(g, state)`` moves the iterate against ``g``, the difference
    between the target and the observed acceptance probability.

    :param int t0: iteration offset damping the first updates.
    :param float kappa: decay exponent of the iterate average.
    :param float gamma: shrinkage towards ``prox_center``.
    :return: a pair ``(init_fn, update_fn)``.

    **References:**

    1. *The No-U-Turn Sampler: Adaptively Setting Path Lengths in Hamiltonian
       Monte Carlo*, Matthew D. Hoffman, Andrew Gelman
    """

    def init_fn(prox_center=0.0):
        zero = jnp.zeros(())
        prox_center = jnp.asarray(prox_center, dtype=zero.dtype)
        return DualAveragingState(zero, zero, zero, _int(0), prox_center)

    def update_fn(g, state):
        _, log_step_size_avg, grad_avg, t, prox_center = state
        t = t + 1
        eta = 1.0 / (t + t0)
        grad_avg = (1 - eta) * grad_avg + eta * g
        log_step_size = prox_center - jnp.sqrt(t) / gamma * grad_avg
        weight = t ** (-kappa)
        log_step_size_avg = (1 - weight) * log_step_size_avg + weight * log_step_size
        return DualAveragingState(
            log_step_size, log_step_size_avg, grad_avg, t, prox_center
        )

    return init_fn, update_fn


def welford_covariance(diagonal=True):
    """
    Streaming variance (``diagonal=True``) or covariance estimate of the
    samples seen in one adaptation window.

    :return: a triple ``(init_fn, update_fn, final_fn)``.
        ``final_fn(state, regularize=False)`` returns the estimate; with
        ``regularize=True`` it is shrunk towards ``1e-3 * I`` with weight
        ``5 / (n + 5)``.
    """

    def init_fn(size):
        m2 = jnp.zeros(size) if diagonal else jnp.zeros((size, size))
        return WelfordState(jnp.zeros(size), m2, _int(0))

    def update_fn(sample, state):
        mean, m2, n = state
        n = n + 1
        delta_pre = sample - mean
        mean = mean + delta_pre / n
        delta_post = sample - mean
        if diagonal:
            m2 = m2 + delta_pre * delta_post
        else:
            m2 = m2 + jnp.outer(delta_post, delta_pre)
        return WelfordState(mean, m2, n)

    def final_fn(state, regularize=False):
        mean, m2, n = state
        cov = m2 / (n - 1)
        if regularize:
            shrinkage = 1e-3 * (5.0 / (n + 5.0))
            cov = cov * (n / (n + 5.0))
            cov = cov + (shrinkage if diagonal else shrinkage * jnp.identity(mean.shape[0]))
        return cov

    return init_fn, update_fn, final_fn


def build_adaptation_schedule(num_steps):
    """
    Splits warmup into a fast initial window, slow windows of doubling size
    and a fast terminal window (75 / 25 / 50 iterations, or 15% / 75% / 10%
    of a short warmup). The mass matrix is estimated in the slow windows.
    Fewer than 20 steps give a single fast window.

    :param int num_steps: number of warmup iterations.
    :return: list of :data:`AdaptWindow` with inclusive bounds.
    """
    if num_steps < 20:
        return [AdaptWindow(0, num_steps - 1)]

    init_buffer, base_window, term_buffer = 75, 25, 50
    if init_buffer + base_window + term_buffer > num_steps:
        init_buffer = int(0.15 * num_steps)
        term_buffer = int(0.1 * num_steps)
        base_window = num_steps - init_buffer - term_buffer

    slow_end = num_steps - term_buffer
    windows = [AdaptWindow(0, init_buffer - 1)]
    start, size = init_buffer, base_window
    while start < slow_end:
        # a window followed by less than twice its size takes the rest
        if start + 3 * size > slow_end:
            size = slow_end - start
        windows.append(AdaptWindow(start, start + size - 1))
        start, size = start + size, 2 * size
    windows.append(AdaptWindow(slow_end, num_steps - 1))
    return windows


def warmup_adapter(
    num_warmup,
    find_reasonable_step_size=None,
    adapt_step_size=True,
    adapt_mass_matrix=True,
    dense_mass=False,
    target_accept_prob=0.8,
    regularize_mass_matrix=True,
):
    """
    Windowed adaptation of the step size and the mass matrix.

    The step size follows :func:`dual_averaging` on every warmup iteration and
    is fixed to the averaged value at the last one. Latent samples of a slow
    window feed :func:`welford_covariance`; at the window end the estimate
    becomes the new inverse mass matrix and step size adaptation restarts
    around ten times the current step size.

    :param int num_warmup: number of warmup iterations.
    :param find_reasonable_step_size: optional callable
        ``(step_size, inverse_mass_matrix, mass_matrix_sqrt, z_info, rng_key)``
        returning a starting step size, run at initialization and after every
        mass matrix update.
    :return: a pair ``(init_fn, update_fn)``.
        ``init_fn(z_info, rng_key, step_size=1.0, inverse_mass_matrix=None)``
        returns a :data:`HMCAdaptState`.
        ``update_fn(t, accept_prob, z_info, state)`` folds in iteration ``t``.
    """
    windows = build_adaptation_schedule(num_warmup)
    num_windows = len(windows)
    window_ends = jnp.array([w.end for w in windows])
    ss_init, ss_update = dual_averaging()
    mm_init, mm_update, mm_final = welford_covariance(diagonal=not dense_mass)

    def _restart_step_size(step_size, inverse_mass_matrix, sqrt, z_info, rng_key):
        if find_reasonable_step_size is not None:
            step_size = find_reasonable_step_size(
                step_size, inverse_mass_matrix, sqrt, z_info, rng_key
            )
        return step_size, ss_init(jnp.log(10.0 * step_size))

    def init_fn(z_info, rng_key, step_size=1.0, inverse_mass_matrix=None):
        size = jnp.shape(z_info.z)[0]
        inverse_mass_matrix = initialize_inverse_mass_matrix(
            size, inverse_mass_matrix, dense_mass
        )
        sqrt = mass_matrix_sqrt(inverse_mass_matrix)
        rng_key, key_ss = random.split(rng_key)
        step_size = jnp.asarray(step_size, dtype=jnp.result_type(float))
        if adapt_step_size:
            step_size, ss_state = _restart_step_size(
                step_size, inverse_mass_matrix, sqrt, z_info, key_ss
            )
        else:
            ss_state = ss_init(jnp.log(10.0 * step_size))
        return HMCAdaptState(
            step_size,
            inverse_mass_matrix,
            sqrt,
            ss_state,
            mm_init(size),
            _int(0),
            rng_key,
        )

    def _end_slow_window(z_info, key_ss, state):
        inverse_mass_matrix = state.inverse_mass_matrix
        sqrt = state.mass_matrix_sqrt
        mm_state = state.mm_state
        if adapt_mass_matrix:
            inverse_mass_matrix = mm_final(mm_state, regularize=regularize_mass_matrix)
            sqrt = mass_matrix_sqrt(inverse_mass_matrix)
            mm_state = mm_init(inverse_mass_matrix.shape[-1])
        step_size, ss_state = state.step_size, state.ss_state
        if adapt_step_size:
            step_size, ss_state = _restart_step_size(
                step_size, inverse_mass_matrix, sqrt, z_info, key_ss
            )
        return state._replace(
            step_size=step_size,
            inverse_mass_matrix=inverse_mass_matrix,
            mass_matrix_sqrt=sqrt,
            ss_state=ss_state,
            mm_state=mm_state,
        )

    def update_fn(t, accept_prob, z_info, state):
        rng_key, key_ss = random.split(state.rng_key)
        step_size, ss_state = state.step_size, state.ss_state
        if adapt_step_size:
            ss_state = ss_update(target_accept_prob - accept_prob, ss_state)
            log_step_size = jnp.where(
                t == num_warmup - 1, ss_state.log_step_size_avg, ss_state.log_step_size
            )
            finfo = jnp.finfo(jnp.result_type(log_step_size))
            step_size = jnp.clip(jnp.exp(log_step_size), finfo.tiny, finfo.max)

        window_idx = state.window_idx
        in_slow_window = (window_idx > 0) & (window_idx < num_windows - 1)
        mm_state = state.mm_state
        if adapt_mass_matrix:
            mm_state = lax.cond(
                in_slow_window, lambda s: mm_update(z_info.z, s), lambda s: s, mm_state
            )

        at_window_end = t == window_ends[window_idx]
        state = HMCAdaptState(
            step_size,
            state.inverse_mass_matrix,
            state.mass_matrix_sqrt,
            ss_state,
            mm_state,
            jnp.where(at_window_end, window_idx + 1, window_idx),
            rng_key,
        )
        return lax.cond(
            at_window_end & in_slow_window,
            lambda s: _end_slow_window(z_info, key_ss, s),
            lambda s: s,
            state,
        )

    return init_fn, update_fn


def _is_turning(inverse_mass_matrix, r_left, r_right, r_sum):
    # generalized no-U-turn criterion on the momentum sum between the ends
    r_sum = r_sum - (r_left + r_right) / 2
    turning_left = jnp.dot(velocity(inverse_mass_matrix, r_left), r_sum) <= 0
    turning_right = jnp.dot(velocity(inverse_mass_matrix, r_right), r_sum) <= 0
    return turning_left | turning_right


def _leaf_idx_to_ckpt_idxs(n):
    """
    Checkpoint range ``(idx_min, idx_max)`` to test for a U-turn after leaf
    ``n`` of a subtree. Even leaves are stored at ``idx_max``, the number of
    set bits of ``n >> 1``; a leaf closes one balanced subtree per trailing
    one bit of ``n``.
    """
    n = _int(n)
    idx_max = lax.population_count(n >> 1)
    num_subtrees = lax.population_count(n ^ (n + 1)) - 1
    return idx_max - num_subtrees + 1, idx_max


def _is_iterative_turning(
    inverse_mass_matrix, r, r_sum, r_ckpts, r_sum_ckpts, idx_min, idx_max
):
    """
    Whether any balanced subtree ending at the newest leaf makes a U-turn.
    Checkpoint ``i`` holds the momentum and running momentum sum at the first
    leaf of such a subtree.
    """
    subtree_r_sum = r_sum - r_sum_ckpts + r_ckpts
    turning = vmap(lambda r_left, s: _is_turning(inverse_mass_matrix, r_left, r, s))(
        r_ckpts, subtree_r_sum
    )
    idx = jnp.arange(r_ckpts.shape[0])
    return jnp.any(turning & (idx >= idx_min) & (idx <= idx_max))


def build_tree(
    vv_update,
    vv_state,
    inverse_mass_matrix,
    step_size,
    rng_key,
    max_delta_energy=1000.0,
    max_tree_depth=10,
):
    """
    Builds a NUTS trajectory from ``vv_state`` by repeated doubling in random
    directions, until a U-turn, a divergence or ``max_tree_depth`` doublings.
    Subtrees are grown leaf by leaf with momentum checkpoints so that memory
    stays linear in the depth ([1], [2]). Within a subtree the proposal is
    resampled uniformly by weight; between subtrees the new half is preferred
    ([2]).

    A leaf diverges when its energy exceeds the starting energy by more than
    ``max_delta_energy``. NaN energies and non-finite gradients count as an
    infinite energy error.

    :param vv_update: ``update_fn`` of :func:`velocity_verlet`.
    :param IntegratorState vv_state: starting point with its momentum.
    :return: a :data:`TreeInfo`.

    **References:**

    1. *The No-U-Turn Sampler: Adaptively Setting Path Lengths in Hamiltonian
       Monte Carlo*, Matthew D. Hoffman, Andrew Gelman
    2. *A Conceptual Introduction to Hamiltonian Monte Carlo*, Michael Betancourt
    """
    energy_start = vv_state.potential_energy + kinetic_energy(
        inverse_mass_matrix, vv_state.r
    )

    def select(pred, on_true, on_false):
        return tree_map(lambda a, b: jnp.where(pred, a, b), on_true, on_false)

    def leaf(state, going_right):
        state = vv_update(
            jnp.where(going_right, step_size, -step_size), inverse_mass_matrix, state
        )
        energy = state.potential_energy + kinetic_energy(inverse_mass_matrix, state.r)
        delta_energy = energy - energy_start
        blown_up = jnp.isnan(delta_energy) | ~jnp.all(jnp.isfinite(state.z_grad))
        delta_energy = jnp.where(blown_up, jnp.inf, delta_energy)
        return TreeInfo(
            state,
            state,
            state,
            energy,
            _int(0),
            -delta_energy,
            state.r,
            jnp.array(False),
            delta_energy > max_delta_energy,
            jnp.minimum(jnp.exp(-delta_energy), 1.0),
            _int(1),
        )

    def merge(tree, new_tree, going_right, rng_key, biased):
        left = select(going_right, tree.left, new_tree.left)
        right = select(going_right, new_tree.right, tree.right)
        r_sum = tree.r_sum + new_tree.r_sum
        log_weight_diff = new_tree.log_weight - tree.log_weight
        if biased:
            accept_prob = jnp.where(
                new_tree.turning | new_tree.diverging,
                0.0,
                jnp.minimum(jnp.exp(log_weight_diff), 1.0),
            )
            turning = new_tree.turning | _is_turning(
                inverse_mass_matrix, left.r, right.r, r_sum
            )
        else:
            accept_prob = expit(log_weight_diff)
            turning = tree.turning
        take_new = random.bernoulli(rng_key, accept_prob)
        return TreeInfo(
            left,
            right,
            select(take_new, new_tree.proposal, tree.proposal),
            jnp.where(take_new, new_tree.proposal_energy, tree.proposal_energy),
            tree.depth + 1,
            jnp.logaddexp(tree.log_weight, new_tree.log_weight),
            r_sum,
            turning,
            new_tree.diverging,
            tree.sum_accept_probs + new_tree.sum_accept_probs,
            tree.num_proposals + new_tree.num_proposals,
        )

    def subtree(tree, going_right, rng_key):
        # 2**depth leaves next to the edge of `tree` in the chosen direction
        num_leaves = 2**tree.depth
        size = jnp.shape(vv_state.z)[0]
        r_ckpts = jnp.zeros((max_tree_depth, size))

        def cond_fn(state):
            sub, turning, *_ = state
            return (sub.num_proposals < num_leaves) & ~turning & ~sub.diverging

        def body_fn(state):
            sub, _, r_ckpts, r_sum_ckpts, rng_key = state
            rng_key, key_transition = random.split(rng_key)
            edge = select(going_right, sub.right, sub.left)
            new_leaf = leaf(edge, going_right)
            leaf_idx = sub.num_proposals
            sub = lax.cond(
                leaf_idx == 0,
                lambda _: new_leaf,
                lambda _: merge(sub, new_leaf, going_right, key_transition, biased=False),
                None,
            )
            idx_min, idx_max = _leaf_idx_to_ckpt_idxs(leaf_idx)
            r_ckpts, r_sum_ckpts = lax.cond(
                leaf_idx % 2 == 0,
                lambda c: (c[0].at[idx_max].set(new_leaf.r_sum), c[1].at[idx_max].set(sub.r_sum)),
                lambda c: c,
                (r_ckpts, r_sum_ckpts),
            )
            turning = _is_iterative_turning(
                inverse_mass_matrix,
                new_leaf.r_sum,
                sub.r_sum,
                r_ckpts,
                r_sum_ckpts,
                idx_min,
                idx_max,
            )
            return sub, turning, r_ckpts, r_sum_ckpts, rng_key

        sub = tree._replace(num_proposals=_int(0))
        sub, turning, *_ = lax.while_loop(
            cond_fn, body_fn, (sub, jnp.array(False), r_ckpts, r_ckpts, rng_key)
        )
        return sub._replace(depth=tree.depth, turning=turning)

    def cond_fn(state):
        tree, _ = state
        return (tree.depth < max_tree_depth) & ~tree.turning & ~tree.diverging

    def body_fn(state):
        tree, rng_key = state
        rng_key, key_direction, key_subtree, key_transition = random.split(rng_key, 4)
        going_right = random.bernoulli(key_direction)
        new_tree = subtree(tree, going_right, key_subtree)
        return merge(tree, new_tree, going_right, key_transition, biased=True), rng_key

    zero = jnp.zeros((), dtype=jnp.result_type(energy_start))
    tree = TreeInfo(
        vv_state,
        vv_state,
        vv_state,
        energy_start,
        _int(0),
        zero,
        vv_state.r,
        jnp.array(False),
        jnp.array(False),
        zero,
        _int(0),
    )
    tree, _ = lax.while_loop(cond_fn, body_fn, (tree, rng_key))
    return tree
