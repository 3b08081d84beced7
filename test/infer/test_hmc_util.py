# Copyright Contributors to the Pyro project.
# SPDX-License-Identifier: Apache-2.0

from collections import namedtuple
from contextlib import nullcontext
import logging
import os

import numpy as np
from numpy.testing import assert_allclose
import pytest

from jax import device_put, disable_jit, grad, jit, lax, random, vmap
import jax.numpy as jnp

from countcast.data import Dataset
from countcast.exceptions import ConfigurationError
from countcast.infer.hmc_util import (
    AdaptWindow,
    IntegratorState,
    _is_iterative_turning,
    _leaf_idx_to_ckpt_idxs,
    build_adaptation_schedule,
    build_tree,
    draw_momentum,
    dual_averaging,
    find_reasonable_step_size,
    kinetic_energy,
    mass_matrix_sqrt,
    velocity_verlet,
    warmup_adapter,
    welford_covariance,
)
from countcast.model import ModelSpec

logger = logging.getLogger(__name__)


def _harmonic_potential_and_grad(q):
    return 0.5 * jnp.sum(q**2), q


@pytest.mark.parametrize("jitted", [True, False])
def test_dual_averaging(jitted):
    def optimize(f):
        da_init, da_update = dual_averaging(gamma=0.5)
        da_state = da_init()
        for i in range(10):
            g = grad(f)(da_state.log_step_size)
            da_state = da_update(g, da_state)
        return da_state.log_step_size_avg

    f = lambda x: (x + 1) ** 2  # noqa: E731
    fn = jit(optimize, static_argnums=(0,)) if jitted else optimize
    x_opt = fn(f)

    assert_allclose(x_opt, -1.0, atol=1e-3)


@pytest.mark.parametrize("jitted", [True, False])
@pytest.mark.parametrize("diagonal", [True, False])
@pytest.mark.parametrize("regularize", [True, False])
def test_welford_covariance(jitted, diagonal, regularize):
    with nullcontext() if jitted else disable_jit():
        np.random.seed(0)
        loc = np.random.randn(3)
        a = np.random.randn(3, 3)
        target_cov = np.matmul(a, a.T)
        x = np.random.multivariate_normal(loc, target_cov, size=(2000,))
        x = device_put(x)

        @jit
        def get_cov(x):
            wc_init, wc_update, wc_final = welford_covariance(diagonal=diagonal)
            wc_state = wc_init(3)
            wc_state = lax.fori_loop(
                0, 2000, lambda i, val: wc_update(x[i], val), wc_state
            )
            return wc_final(wc_state, regularize=regularize)

        cov = get_cov(x)

    if diagonal:
        assert_allclose(cov, jnp.diagonal(target_cov), rtol=0.06)
    else:
        assert_allclose(cov, target_cov, rtol=0.06)


@pytest.mark.parametrize("dense", [False, True])
def test_mass_matrix_sqrt(dense):
    a = np.array([[2.0, 0.3, 0.0], [0.3, 1.0, -0.2], [0.0, -0.2, 0.5]])
    inverse_mass_matrix = jnp.array(a if dense else np.diag(a))
    sqrt = mass_matrix_sqrt(inverse_mass_matrix)
    if dense:
        assert_allclose(jnp.matmul(sqrt, sqrt.T), np.linalg.inv(a), rtol=1e-6)
        assert_allclose(sqrt, np.tril(sqrt))
    else:
        assert_allclose(sqrt**2, 1 / np.diag(a), rtol=1e-6)

    # momenta are drawn with covariance M
    r = vmap(lambda k: draw_momentum(k, sqrt))(random.split(random.PRNGKey(0), 20000))
    expected = np.linalg.inv(a) if dense else np.diag(1 / np.diag(a))
    assert_allclose(np.cov(np.asarray(r).T), expected, atol=0.1)
    # and the kinetic energy of such momenta has mean dim / 2
    energies = vmap(lambda x: kinetic_energy(inverse_mass_matrix, x))(r)
    assert_allclose(energies.mean(), 1.5, rtol=0.05)


########################################
# velocity_verlet Test
########################################

TEST_EXAMPLES = []
EXAMPLE_IDS = []

ModelArgs = namedtuple(
    "model_args",
    ["step_size", "num_steps", "q_i", "p_i", "q_f", "p_f", "m_inv", "prec"],
)
Example = namedtuple("test_case", ["model", "args"])


def register_model(init_args):
    """
    Register the model along with each of the model arguments
    as test examples.
    """

    def register_fn(model):
        for args in init_args:
            test_example = Example(model, args)
            TEST_EXAMPLES.append(test_example)
            EXAMPLE_IDS.append(model.__name__)

    return register_fn


@register_model(
    [
        ModelArgs(
            step_size=0.01,
            num_steps=100,
            q_i=np.array([0.0]),
            p_i=np.array([1.0]),
            q_f=np.array([np.sin(1.0)]),
            p_f=np.array([np.cos(1.0)]),
            m_inv=np.array([1.0]),
            prec=1e-4,
        )
    ]
)
class HarmonicOscillator(object):
    potential_and_grad = staticmethod(_harmonic_potential_and_grad)


@register_model(
    [
        ModelArgs(
            step_size=0.01,
            num_steps=628,
            q_i=np.array([1.0, 0.0]),
            p_i=np.array([0.0, 1.0]),
            q_f=np.array([1.0, 0.0]),
            p_f=np.array([0.0, 1.0]),
            m_inv=np.array([1.0, 1.0]),
            prec=5.0e-3,
        )
    ]
)
class CircularPlanetaryMotion(object):
    @staticmethod
    def potential_and_grad(q):
        norm = jnp.sqrt(jnp.sum(q**2))
        return -1.0 / norm, q / norm**3


@register_model(
    [
        ModelArgs(
            step_size=0.1,
            num_steps=1810,
            q_i=np.array([0.02]),
            p_i=np.array([0.0]),
            q_f=np.array([-0.02]),
            p_f=np.array([0.0]),
            m_inv=np.array([1.0]),
            prec=1.0e-4,
        )
    ]
)
class QuarticOscillator(object):
    @staticmethod
    def potential_and_grad(q):
        return 0.25 * jnp.sum(q**4), q**3


@pytest.mark.parametrize("jitted", [True, False])
@pytest.mark.parametrize("example", TEST_EXAMPLES, ids=EXAMPLE_IDS)
def test_velocity_verlet(jitted, example):
    def get_final_state(model, step_size, num_steps, q_i, p_i):
        vv_init, vv_update = velocity_verlet(model.potential_and_grad)
        vv_state = vv_init(q_i, p_i)
        q_f, p_f, _, _ = lax.fori_loop(
            0, num_steps, lambda i, val: vv_update(step_size, args.m_inv, val), vv_state
        )
        return (q_f, p_f)

    def energy(model, q, p):
        return model.potential_and_grad(q)[0] + kinetic_energy(args.m_inv, p)

    model, args = example
    fn = jit(get_final_state, static_argnums=(0, 2)) if jitted else get_final_state
    q_f, p_f = fn(model, args.step_size, args.num_steps, args.q_i, args.p_i)

    logger.info("Test trajectory:")
    logger.info("initial q: {}".format(args.q_i))
    logger.info("final q: {}".format(q_f))
    assert_allclose(q_f, args.q_f, atol=args.prec)
    assert_allclose(p_f, args.p_f, atol=args.prec)

    logger.info("Test energy conservation:")
    energy_initial = energy(model, args.q_i, args.p_i)
    energy_final = energy(model, q_f, p_f)
    logger.info("initial energy: {}".format(energy_initial))
    logger.info("final energy: {}".format(energy_final))
    assert_allclose(energy_initial, energy_final, atol=1e-5)

    logger.info("Test time reversibility:")
    q_i, p_i = get_final_state(model, args.step_size, args.num_steps, q_f, -p_f)
    assert_allclose(q_i, args.q_i, atol=1e-4)
    assert_allclose(-p_i, args.p_i, atol=1e-4)


def _count_model():
    counts = np.random.poisson(8.0, size=35)
    return ModelSpec(Dataset.from_series(counts, "2024-01-01", num_harmonics=1))


def test_velocity_verlet_count_model_reversible():
    model = _count_model()
    vv_init, vv_update = velocity_verlet(model.potential_and_grad)
    m_inv = jnp.ones(model.param_size)
    z = model.init_params(random.PRNGKey(0), radius=0.1)
    r = random.normal(random.PRNGKey(1), (model.param_size,))
    state = vv_init(z, r)
    energy_initial = state.potential_energy + kinetic_energy(m_inv, r)

    state_f = lax.fori_loop(0, 20, lambda i, val: vv_update(0.005, m_inv, val), state)
    energy_final = state_f.potential_energy + kinetic_energy(m_inv, state_f.r)
    assert_allclose(energy_final, energy_initial, atol=0.1)

    state_b = lax.fori_loop(
        0, 20, lambda i, val: vv_update(-0.005, m_inv, val), state_f
    )
    assert_allclose(state_b.z, z, atol=1e-8)
    assert_allclose(state_b.r, r, atol=1e-8)


def test_velocity_verlet_one_gradient_per_step():
    calls = []

    def potential_and_grad(z):
        calls.append(z)
        return 0.5 * jnp.sum(z**2), z

    vv_init, vv_update = velocity_verlet(potential_and_grad)
    state = vv_update(0.1, jnp.ones(2), vv_init(jnp.ones(2), jnp.zeros(2)))
    assert len(calls) == 2
    assert_allclose(state.z_grad, state.z)


@pytest.mark.parametrize("jitted", [True, False])
@pytest.mark.parametrize("init_step_size", [0.01, 100.0])
def test_find_reasonable_step_size(jitted, init_step_size):
    vv_init, vv_update = velocity_verlet(_harmonic_potential_and_grad)
    z_info = vv_init(jnp.zeros(1))
    m_inv = jnp.ones(1)

    fn = (
        jit(find_reasonable_step_size, static_argnums=(0,))
        if jitted
        else find_reasonable_step_size
    )
    step_size = fn(
        vv_update, init_step_size, m_inv, mass_matrix_sqrt(m_inv), z_info, random.PRNGKey(0)
    )

    # One leapfrog step of size eps from the origin changes the energy by
    # r^2 * eps^4 / 8. From 0.01 every trial accepts until the step size is
    # large, from 100 every trial rejects until it is small.
    if init_step_size < 1:
        assert step_size > init_step_size
    else:
        assert step_size < init_step_size
    # the search only doubles or halves
    num_doublings = np.log2(float(step_size) / init_step_size)
    assert_allclose(num_doublings, np.round(num_doublings), atol=1e-6)


@pytest.mark.parametrize(
    "num_steps, expected",
    [
        (18, [(0, 17)]),
        (50, [(0, 6), (7, 44), (45, 49)]),
        (100, [(0, 14), (15, 89), (90, 99)]),
        (150, [(0, 74), (75, 99), (100, 149)]),
        (200, [(0, 74), (75, 99), (100, 149), (150, 199)]),
        (280, [(0, 74), (75, 99), (100, 229), (230, 279)]),
        (1000, [(0, 74), (75, 99), (100, 149), (150, 249), (250, 449), (450, 949), (950, 999)]),
    ],
)
def test_build_adaptation_schedule(num_steps, expected):
    adaptation_schedule = build_adaptation_schedule(num_steps)
    expected_schedule = [AdaptWindow(i, j) for i, j in expected]
    assert adaptation_schedule == expected_schedule


@pytest.mark.parametrize(
    "jitted",
    [
        True,
        pytest.param(
            False, marks=pytest.mark.skipif("CI" in os.environ, reason="slow in CI")
        ),
    ],
)
def test_warmup_adapter(jitted):
    def find_reasonable_step_size(step_size, m_inv, m_sqrt, z_info, rng_key):
        return jnp.where(step_size < 1, step_size * 4, step_size / 4)

    num_steps = 150
    adaptation_schedule = build_adaptation_schedule(num_steps)
    init_step_size = 1.0
    mass_matrix_size = 3

    wa_init, wa_update = warmup_adapter(num_steps, find_reasonable_step_size)
    wa_update = jit(wa_update) if jitted else wa_update

    rng_key = random.PRNGKey(0)
    z = jnp.ones(3)
    wa_state = wa_init(IntegratorState(z), rng_key, init_step_size)
    assert wa_state.step_size == find_reasonable_step_size(
        init_step_size, None, None, None, None
    )
    assert_allclose(wa_state.inverse_mass_matrix, jnp.ones(mass_matrix_size))
    assert wa_state.window_idx == 0

    window = adaptation_schedule[0]
    for t in range(window.start, window.end + 1):
        wa_state = wa_update(
            t, 0.7 + 0.1 * t / (window.end - window.start), IntegratorState(z), wa_state
        )
    last_step_size = find_reasonable_step_size(init_step_size, None, None, None, None)
    assert wa_state.window_idx == 1
    # step_size is decreased because accept_prob < target_accept_prob
    assert wa_state.step_size < last_step_size
    # inverse_mass_matrix does not change at the end of the first window
    assert_allclose(wa_state.inverse_mass_matrix, jnp.ones(mass_matrix_size))

    window = adaptation_schedule[1]
    window_len = window.end - window.start
    last_step_size = wa_state.step_size
    for t in range(window.start, window.end + 1):
        wa_state = wa_update(
            t,
            0.8 + 0.1 * (t - window.start) / window_len,
            IntegratorState(2 * z),
            wa_state,
        )
    assert wa_state.window_idx == 2
    # the window end restarts from the heuristic, applied to the adapted step size
    # which had grown because accept_prob > target_accept_prob
    assert wa_state.step_size != last_step_size
    # The samples are constant during the second window, so the covariance is 0
    # and only the shrinkage term of the welford scheme remains. Samples of the
    # first window do not leak into the second one.
    welford_regularize_term = 1e-3 * (5 / (window.end + 1 - window.start + 5))
    assert_allclose(
        wa_state.inverse_mass_matrix,
        jnp.full((mass_matrix_size,), welford_regularize_term),
        atol=1e-7,
    )
    assert_allclose(
        wa_state.mass_matrix_sqrt, 1 / np.sqrt(welford_regularize_term), rtol=1e-6
    )

    window = adaptation_schedule[2]
    inverse_mass_matrix = wa_state.inverse_mass_matrix
    last_step_size = wa_state.step_size
    for t in range(window.start, window.end + 1):
        wa_state = wa_update(t, 0.8, IntegratorState(t * z), wa_state)
    assert wa_state.window_idx == 3
    # during the last window, because target_accept_prob=0.8,
    # log_step_size will be equal to the constant prox_center=log(10*last_step_size)
    assert_allclose(wa_state.step_size, last_step_size * 10, rtol=1e-6)
    # the mass matrix is frozen in the terminal buffer
    assert_allclose(wa_state.inverse_mass_matrix, inverse_mass_matrix)


def test_warmup_adapter_dense_mass():
    wa_init, wa_update = warmup_adapter(100, dense_mass=True, adapt_step_size=False)
    wa_state = wa_init(IntegratorState(jnp.ones(2)), random.PRNGKey(0))
    assert wa_state.inverse_mass_matrix.shape == (2, 2)
    assert_allclose(wa_state.inverse_mass_matrix, jnp.identity(2))

    samples = random.multivariate_normal(
        random.PRNGKey(1), jnp.zeros(2), jnp.array([[2.0, 0.5], [0.5, 1.0]]), (100,)
    )
    for t in range(100):
        wa_state = wa_update(t, 0.8, IntegratorState(samples[t]), wa_state)
    # the slow window (15, 89) produced a symmetric positive definite estimate
    assert_allclose(wa_state.inverse_mass_matrix, wa_state.inverse_mass_matrix.T)
    assert np.all(np.linalg.eigvalsh(np.asarray(wa_state.inverse_mass_matrix)) > 0)
    assert not np.allclose(wa_state.inverse_mass_matrix, jnp.identity(2))
    sqrt = wa_state.mass_matrix_sqrt
    assert_allclose(
        jnp.matmul(sqrt, sqrt.T), jnp.linalg.inv(wa_state.inverse_mass_matrix), rtol=1e-6
    )
    # the step size is left alone
    assert_allclose(wa_state.step_size, 1.0)


def test_initial_mass_matrix_size_mismatch():
    wa_init, _ = warmup_adapter(10)
    with pytest.raises(ConfigurationError):
        wa_init(IntegratorState(jnp.ones(3)), random.PRNGKey(0), 1.0, jnp.ones(2))


@pytest.mark.parametrize(
    "leaf_idx, ckpt_idxs",
    [(0, (1, 0)), (6, (3, 2)), (7, (0, 2)), (13, (2, 2)), (15, (0, 3))],
)
def test_leaf_idx_to_ckpt_idx(leaf_idx, ckpt_idxs):
    assert _leaf_idx_to_ckpt_idxs(leaf_idx) == ckpt_idxs


@pytest.mark.parametrize(
    "ckpt_idxs, expected_turning",
    [((3, 2), False), ((3, 3), True), ((0, 0), False), ((0, 1), True), ((1, 3), True)],
)
def test_is_iterative_turning(ckpt_idxs, expected_turning):
    inverse_mass_matrix = jnp.ones(1)
    r = jnp.array([1.0])
    r_sum = jnp.array([3.0])
    r_ckpts = jnp.array([[1.0], [2.0], [3.0], [-2.0]])
    r_sum_ckpts = jnp.array([[2.0], [4.0], [4.0], [-1.0]])

    actual_turning = _is_iterative_turning(
        inverse_mass_matrix, r, r_sum, r_ckpts, r_sum_ckpts, *ckpt_idxs
    )
    assert expected_turning == actual_turning


@pytest.mark.parametrize("step_size", [0.01, 1.0, 100.0])
def test_build_tree(step_size):
    vv_init, vv_update = velocity_verlet(_harmonic_potential_and_grad)
    vv_state = vv_init(jnp.zeros(1), jnp.ones(1))
    inverse_mass_matrix = jnp.array([1.0])
    rng_key = random.PRNGKey(0)

    @jit
    def fn(vv_state):
        return build_tree(vv_update, vv_state, inverse_mass_matrix, step_size, rng_key)

    tree = fn(vv_state)

    assert tree.num_proposals >= 2 ** (tree.depth - 1)

    assert tree.sum_accept_probs <= tree.num_proposals

    if tree.depth < 10:
        assert tree.turning | tree.diverging

    # for large step_size, assert that diverging will happen in 1 step
    if step_size > 10:
        assert tree.diverging
        assert tree.num_proposals == 1

    # for small step_size, assert that it should take a while to meet the terminate condition
    if step_size < 0.1:
        assert tree.num_proposals > 10

    # the proposal is one of the visited states, with its own energy
    proposal = tree.proposal
    assert_allclose(proposal.potential_energy, _harmonic_potential_and_grad(proposal.z)[0])
    assert_allclose(
        tree.proposal_energy,
        proposal.potential_energy + kinetic_energy(inverse_mass_matrix, proposal.r),
    )


def test_build_tree_respects_max_depth():
    vv_init, vv_update = velocity_verlet(_harmonic_potential_and_grad)
    vv_state = vv_init(jnp.zeros(1), jnp.ones(1))
    tree = build_tree(
        vv_update, vv_state, jnp.ones(1), 0.001, random.PRNGKey(1), max_tree_depth=3
    )
    # a tiny step size never turns within 1 + 2 + 4 steps
    assert tree.depth == 3
    assert tree.num_proposals == 7
    assert not tree.turning and not tree.diverging


def test_build_tree_non_finite_gradient_diverges():
    def potential_and_grad(q):
        # finite energy but a gradient that blows up away from the origin
        pe = jnp.sum(jnp.where(jnp.abs(q) < 0.5, 0.5 * q**2, 0.125))
        return pe, jnp.where(jnp.abs(q) < 0.5, q, jnp.nan)

    vv_init, vv_update = velocity_verlet(potential_and_grad)
    vv_state = vv_init(jnp.zeros(1), jnp.ones(1))
    tree = build_tree(vv_update, vv_state, jnp.ones(1), 1.0, random.PRNGKey(0))
    assert tree.diverging
    assert tree.num_proposals == 1
