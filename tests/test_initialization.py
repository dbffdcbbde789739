"""Initialization strategies: skip, consistency check and override."""

from __future__ import annotations

import logging

import numpy as np
import pytest

from history_forms import CallingConvention, HistoryFunction
from initialization import (
    CheckInit,
    CheckInitFailureError,
    InitializationError,
    NoInit,
    OverrideInit,
    OverrideInitMissingAlgorithm,
    default_initialization,
    get_initial_values,
)
from nonlinear_solve import LevenbergMarquardt, NonlinearProblem
from problem_functions import ODEFunction, OverrideInitData
from problems import DAEProblem, DDEProblem, ODEProblem
from stepping import init
from value_providers import ProblemState

MASS = np.diag([1.0, 1.0, 0.0])


def rober(u, p, t):
    k1, k2, k3 = p
    return np.array([
        -k1 * u[0] + k3 * u[1] * u[2],
        k1 * u[0] - k3 * u[1] * u[2] - k2 * u[1] ** 2,
        u[0] + u[1] + u[2] - 1.0,
    ])


def rober_into(du, u, p, t):
    du[:] = rober(u, p, t)


ROBER_P = (0.04, 3e7, 1e4)


@pytest.fixture(params=[rober, rober_into], ids=["value", "buffer"])
def rober_problem(request):
    f = ODEFunction(request.param, mass_matrix=MASS)
    return ODEProblem(f, [1.0, 0.0, 0.0], (0.0, 1e5), ROBER_P)


def _initial_values(prob, provider, alg, **kwargs):
    return get_initial_values(prob, provider, prob.f, alg, prob.f.convention, **kwargs)


class TestNoInit:
    def test_returns_provider_values(self, rober_problem):
        #Inconsistent on purpose: skipping never evaluates anything.
        provider = ProblemState([1.0, 0.0, 5.0], ROBER_P)
        u, p, success = _initial_values(rober_problem, provider, NoInit())
        np.testing.assert_array_equal(u, [1.0, 0.0, 5.0])
        assert p is ROBER_P
        assert success

    def test_does_not_call_function(self):
        def explode(u, p, t):
            raise AssertionError("evaluated")
        prob = ODEProblem(ODEFunction(explode, mass_matrix=MASS), [1.0, 0.0, 0.0], 1.0)
        u, _, success = _initial_values(prob, ProblemState([1.0, 0.0, 0.0]), NoInit())
        assert success


class TestCheckMassMatrix:
    def test_consistent(self, rober_problem):
        provider = ProblemState([1.0, 0.0, 0.0], ROBER_P)
        u, p, success = _initial_values(rober_problem, provider, CheckInit())
        assert success
        np.testing.assert_array_equal(u, [1.0, 0.0, 0.0])

    def test_perturbed_constraint_fails(self, rober_problem):
        provider = ProblemState([1.0, 0.0, 2.0], ROBER_P)
        with pytest.raises(CheckInitFailureError) as excinfo:
            _initial_values(rober_problem, provider, CheckInit())
        err = excinfo.value
        assert err.strategy == "CheckInit"
        assert err.violations == (2,)
        np.testing.assert_allclose(err.residual, [2.0])
        assert err.normresid > 1.0
        assert "CheckInit" in str(err) and "algebraic" in str(err)
        #The check never writes to the provider.
        np.testing.assert_array_equal(provider.current_state(), [1.0, 0.0, 2.0])

    def test_differential_rows_ignored(self, rober_problem):
        #A large drift in the differential rows is not a violation.
        provider = ProblemState([0.5, 0.5, 0.0], ROBER_P)
        assert _initial_values(rober_problem, provider, CheckInit())[2]

    def test_tolerance_scales_with_state(self):
        prob = ODEProblem(ODEFunction(lambda u, p, t: np.array([0.0, u[1] - 1e6]), mass_matrix=np.diag([1.0, 0.0])),
                          [0.0, 1e6 + 100.0], 1.0)
        provider = ProblemState([0.0, 1e6 + 100.0])
        #100 is within reltol 1e-3 of 1e6 ...
        assert _initial_values(prob, provider, CheckInit())[2]
        #... but not once the relative part is switched off.
        with pytest.raises(CheckInitFailureError):
            _initial_values(prob, provider, CheckInit(abstol=1.0, reltol=0.0))

    def test_keyword_tolerances_take_precedence(self):
        prob = ODEProblem(ODEFunction(lambda u, p, t: np.array([0.0, 0.5]), mass_matrix=np.diag([1.0, 0.0])),
                          [0.0, 0.0], 1.0, abstol=1.0)
        provider = ProblemState([0.0, 0.0])
        assert _initial_values(prob, provider, CheckInit())[2]
        with pytest.raises(CheckInitFailureError):
            _initial_values(prob, provider, CheckInit(), abstol=0.1)
        with pytest.raises(CheckInitFailureError):
            _initial_values(prob, provider, CheckInit(abstol=0.1))


def dae_residual(du, u, p, t):
    return np.array([du[0] - p * u[0], u[1] - u[0]])


class TestCheckImplicit:
    @pytest.fixture
    def prob(self):
        return DAEProblem(dae_residual, [1.0, 0.0], [1.0, 1.0], 1.0, 1.0)

    def test_consistent(self, prob):
        provider = ProblemState([1.0, 1.0], 1.0, du=[1.0, 0.0])
        assert _initial_values(prob, provider, CheckInit())[2]

    def test_wrong_state_fails(self, prob):
        provider = ProblemState([1.0, 2.0], 1.0, du=[1.0, 0.0])
        with pytest.raises(CheckInitFailureError) as excinfo:
            _initial_values(prob, provider, CheckInit())
        assert excinfo.value.violations == (1,)

    def test_wrong_derivative_fails(self, prob):
        provider = ProblemState([1.0, 1.0], 1.0, du=[2.0, 0.0])
        with pytest.raises(CheckInitFailureError) as excinfo:
            _initial_values(prob, provider, CheckInit())
        assert excinfo.value.violations == (0,)

    def test_buffer_convention(self):
        def residual_into(out, du, u, p, t):
            out[:] = dae_residual(du, u, p, t)
        prob = DAEProblem(residual_into, [1.0, 0.0], [1.0, 1.0], 1.0, 1.0)
        provider = ProblemState([1.0, 1.0], 1.0, du=[1.0, 0.0])
        assert _initial_values(prob, provider, CheckInit())[2]

    def test_missing_derivative(self, prob):
        with pytest.raises(InitializationError, match="state derivative"):
            _initial_values(prob, ProblemState([1.0, 1.0], 1.0), CheckInit())


class TestCheckDelay:
    def test_continuity_with_history(self):
        h = lambda p, t: np.array([1.0])
        drift = lambda u, h, p, t: -h(p, t - 1.0)
        prob = DDEProblem(drift, [1.5], h, (0.0, 2.0), constant_lags=[1.0], order_discontinuity_t0=1)
        with pytest.raises(CheckInitFailureError, match="continuity"):
            _initial_values(prob, ProblemState([1.5], t=0.0), CheckInit())
        assert _initial_values(prob, ProblemState([1.0], t=0.0), CheckInit())[2]

    def test_order_zero_skips_continuity(self):
        h = lambda p, t: np.array([1.0])
        prob = DDEProblem(lambda u, h, p, t: -u, [1.5], h, (0.0, 2.0))
        assert _initial_values(prob, ProblemState([1.5], t=0.0), CheckInit())[2]

    def test_continuity_only_at_start(self):
        h = lambda p, t: np.array([1.0])
        prob = DDEProblem(lambda u, h, p, t: -u, [1.0], h, (0.0, 2.0), order_discontinuity_t0=1)
        assert _initial_values(prob, ProblemState([5.0], t=1.0), CheckInit())[2]

    def test_neutral_history_derivative(self):
        #du/dt = h'(t - 1) with h(t) = t: the drift at t0 is 1, matching h'(t0) = 1.
        h = HistoryFunction(value=lambda p, t: np.array([t]), derivative=lambda p, t, order: np.array([1.0]))
        drift = lambda u, h, p, t: h(p, t - 1.0, deriv=1)
        prob = DDEProblem(drift, None, h, (0.0, 2.0), constant_lags=[1.0], neutral=True)
        assert _initial_values(prob, ProblemState(prob.u0, t=0.0), CheckInit())[2]

        bad = DDEProblem(lambda u, h, p, t: 2.0 * h(p, t - 1.0, deriv=1), None, h, (0.0, 2.0),
                         constant_lags=[1.0], neutral=True)
        with pytest.raises(CheckInitFailureError, match="history derivative"):
            _initial_values(bad, ProblemState(bad.u0, t=0.0), CheckInit())

    def test_provider_history_is_used(self):
        seen = []
        prob_h = lambda p, t: np.array([0.0])

        def drift(u, h, p, t):
            seen.append(float(h(p, t - 1.0)[0]))
            return -u

        prob = DDEProblem(drift, [1.0], prob_h, (0.0, 2.0))
        provider = ProblemState([1.0], t=0.5, h=lambda p, t: np.array([7.0]))
        _initial_values(prob, provider, CheckInit())
        assert seen == [7.0]


def _override_function(refresh=True, pmap=True):
    """
    Unknowns (u2, p) with parameter u1: u1^2 - u2^2 = 0, p^2 - 2p + 1 = 0.
    The sub-problem starts with u1 = 1.
    """
    def constraints(x, sub_p):
        return np.array([sub_p[0] ** 2 - x[0] ** 2, x[1] ** 2 - 2.0 * x[1] + 1.0])

    iprob = NonlinearProblem(constraints, [1.0, 0.0], [1.0])

    def update(initializeprob, provider):
        initializeprob.p[0] = provider.current_state()[0]

    data = OverrideInitData(
        initializeprob=iprob,
        update_initializeprob=update if refresh else None,
        initializeprobmap=lambda sol: np.array([sol.prob.p[0], sol.u[0]]),
        initializeprobpmap=(lambda sol: sol.u[1]) if pmap else None,
    )
    return ODEFunction(lambda u, p, t: -u, initialization_data=data)


class TestOverride:
    def _run(self, f, **kwargs):
        prob = ODEProblem(f, [2.0, 0.0], 1.0, 0.0)
        provider = ProblemState([2.0, 0.0], 0.0)
        return get_initial_values(prob, provider, f, OverrideInit(), f.convention, **kwargs)

    def test_update_map_and_pmap(self):
        u, p, success = self._run(_override_function(), nlsolve_alg=LevenbergMarquardt())
        assert success
        np.testing.assert_allclose(u, [2.0, 2.0], atol=1e-6)
        assert p == pytest.approx(1.0, abs=1e-6)

    def test_without_pmap_parameters_pass_through(self):
        u, p, success = self._run(_override_function(pmap=False), nlsolve_alg=LevenbergMarquardt())
        assert success
        np.testing.assert_allclose(u, [2.0, 2.0], atol=1e-6)
        assert p == 0.0

    def test_without_update_uses_stored_subproblem(self):
        u, p, success = self._run(_override_function(refresh=False), nlsolve_alg=LevenbergMarquardt())
        assert success
        np.testing.assert_allclose(u, [1.0, 1.0], atol=1e-6)
        assert p == pytest.approx(1.0, abs=1e-6)

    def test_algorithm_from_strategy(self):
        f = _override_function()
        prob = ODEProblem(f, [2.0, 0.0], 1.0, 0.0)
        u, _, success = get_initial_values(
            prob, ProblemState([2.0, 0.0], 0.0), f, OverrideInit(nlsolve=LevenbergMarquardt()), f.convention
        )
        assert success
        np.testing.assert_allclose(u, [2.0, 2.0], atol=1e-6)

    def test_missing_algorithm(self):
        with pytest.raises(OverrideInitMissingAlgorithm) as excinfo:
            self._run(_override_function())
        assert excinfo.value.strategy == "OverrideInit"
        assert excinfo.value.n_unknowns == 2

    def test_no_initialization_data_is_noop(self, caplog):
        f = ODEFunction(lambda u, p, t: -u)
        prob = ODEProblem(f, [3.0], 1.0, 0.5)
        with caplog.at_level(logging.INFO, logger="initialization"):
            u, p, success = get_initial_values(prob, ProblemState([3.0], 0.5), f, OverrideInit(), f.convention)
        np.testing.assert_array_equal(u, [3.0])
        assert p == 0.5 and success
        assert "no initialization data" in caplog.text

    def test_trivial_subproblem_needs_no_algorithm(self):
        iprob = NonlinearProblem(lambda x, sub_p: np.array([sub_p[0] - 4.0]), np.zeros(0), [4.0])
        data = OverrideInitData(initializeprob=iprob, initializeprobmap=lambda sol: np.array([sol.prob.p[0]]))
        f = ODEFunction(lambda u, p, t: -u, initialization_data=data)
        prob = ODEProblem(f, [0.0], 1.0)
        u, _, success = get_initial_values(prob, ProblemState([0.0]), f, OverrideInit(), f.convention)
        assert success
        np.testing.assert_allclose(u, [4.0])

    def test_map_shape_checked(self):
        iprob = NonlinearProblem(lambda x, sub_p: np.zeros(0), np.zeros(0))
        data = OverrideInitData(initializeprob=iprob, initializeprobmap=lambda sol: np.zeros(3))
        f = ODEFunction(lambda u, p, t: -u, initialization_data=data)
        prob = ODEProblem(f, [0.0], 1.0)
        with pytest.raises(InitializationError, match="shape"):
            get_initial_values(prob, ProblemState([0.0]), f, OverrideInit(), f.convention)


class TestLiveIntegrator:
    def test_mutated_state_fails_check(self, rober_problem):
        integ = init(rober_problem, initializealg=NoInit())
        assert _initial_values(rober_problem, integ, CheckInit())[2]
        integ.u[2] = 0.5
        with pytest.raises(CheckInitFailureError) as excinfo:
            _initial_values(rober_problem, integ, CheckInit())
        assert excinfo.value.violations == (2,)

    def test_mutated_derivative_fails_check(self):
        prob = DAEProblem(dae_residual, [1.0, 0.0], [1.0, 1.0], 1.0, 1.0)
        integ = init(prob)
        integ.du[0] = 2.0
        with pytest.raises(CheckInitFailureError) as excinfo:
            _initial_values(prob, integ, CheckInit())
        assert excinfo.value.violations == (0,)

    def test_override_reads_current_state(self):
        f = _override_function()
        prob = ODEProblem(f, [2.0, 0.0], 1.0, 0.0)
        integ = init(prob, initializealg=NoInit())
        integ.u[0] = 3.0
        u, p, success = _initial_values(prob, integ, OverrideInit(), nlsolve_alg=LevenbergMarquardt())
        assert success
        np.testing.assert_allclose(u, [3.0, 3.0], atol=1e-6)
        assert p == pytest.approx(1.0, abs=1e-6)


class TestDispatch:
    def test_convention_mismatch(self, rober_problem):
        other = (CallingConvention.VALUE if rober_problem.f.convention is CallingConvention.BUFFER
                 else CallingConvention.BUFFER)
        with pytest.raises(ValueError, match="calling convention"):
            get_initial_values(rober_problem, ProblemState(rober_problem.u0, ROBER_P), rober_problem.f, NoInit(), other)

    def test_unknown_strategy(self, rober_problem):
        with pytest.raises(TypeError, match="unknown initialization strategy"):
            _initial_values(rober_problem, ProblemState(rober_problem.u0, ROBER_P), "check")

    def test_defaults(self, rober_problem):
        assert default_initialization(rober_problem, rober_problem.f) == CheckInit()
        plain = ODEProblem(lambda u, p, t: -u, [1.0], 1.0)
        assert default_initialization(plain, plain.f) == NoInit()
        dae = DAEProblem(dae_residual, [1.0, 0.0], [1.0, 1.0], 1.0, 1.0)
        assert default_initialization(dae, dae.f) == CheckInit()
        f = _override_function()
        assert default_initialization(ODEProblem(f, [2.0, 0.0], 1.0), f) == OverrideInit()
        continuous = DDEProblem.from_history(lambda u, h, p, t: -u, lambda p, t: np.ones(1), 1.0)
        assert default_initialization(continuous, continuous.f) == CheckInit()
