"""
A fixed-step stepping engine for ODE, delay and stochastic delay problems.

The engine is a live :class:`ValueProvider`: :func:`init` copies (or,
when the alias specifier allows it, reuses) the initial state, runs the
requested initialization strategy through :func:`get_initial_values` and
refuses to start when it fails.  :meth:`Integrator.reinit` repeats that
after a caller-declared reinitialization event.

Delay terms look up the stored trajectory (linearly interpolated) for
``t >= t0`` and the problem's history function before it.  Steps are
shortened to land on tstops, saveat times and the discontinuities the
constant lags propagate from t0.

Example usage
-------------

code-block: python

    prob = DDEProblem(f, None, h, (0.0, 10.0), p, constant_lags=[1.0])
    sol = solve(prob, RK4(), dt=0.01)
"""

from __future__ import annotations

import copy
import logging
import warnings
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Sequence, Union

import numpy as np

from history_forms import CallingConvention, Derivative, HistoryFormError, IndexRestricted, build_request
from initialization import InitializationError, default_initialization, get_initial_values
from problem_functions import MassMatrixFunction
from problems import AliasSpecifier, DAEProblem, DDEProblem, SDDEProblem, discontinuity_times
from value_providers import ValueProvider

logger = logging.getLogger(__name__)

RHS = Callable[[float, np.ndarray], np.ndarray]


#Numerical integrators for time stepping
class NumericalIntegrator:
    """Base class: performs one time step integration y(t)->y(t+d_t)."""
    stochastic = False

    def integral(self, y: np.ndarray, t: float, d_t: float, d_y_over_d_t: RHS) -> np.ndarray:
        raise NotImplementedError


class ForwardEulerMethod(NumericalIntegrator):
    """Explicit Euler integrator."""
    def integral(self, y, t, d_t, d_y_over_d_t):
        return y + d_t * d_y_over_d_t(t, y)


class ExplicitMidpointMethod(NumericalIntegrator):
    """Explicit midpoint (RK2)."""
    def integral(self, y, t, d_t, d_y_over_d_t):
        h = d_t * 0.5
        y_half = y + h * d_y_over_d_t(t, y)
        return y + d_t * d_y_over_d_t(t + h, y_half)


class RK4(NumericalIntegrator):
    """Classical Runge-Kutta 4th order."""
    def integral(self, y, t, d_t, d_y_over_d_t):
        h = d_t; h2 = 0.5 * h
        k1 = d_y_over_d_t(t, y)
        k2 = d_y_over_d_t(t + h2, y + h2 * k1)
        k3 = d_y_over_d_t(t + h2, y + h2 * k2)
        k4 = d_y_over_d_t(t + h, y + h * k3)
        return y + (h / 6.0) * (k1 + 2 * k2 + 2 * k3 + k4)


class EulerMaruyama(NumericalIntegrator):
    """Euler-Maruyama for ``du = f dt + g dW``; g dW is supplied by the engine."""
    stochastic = True

    def integral(self, y, t, d_t, d_y_over_d_t, noise_term: Optional[np.ndarray] = None):
        y_next = y + d_t * d_y_over_d_t(t, y)
        if noise_term is not None:
            y_next = y_next + noise_term
        return y_next


@dataclass
class Solution:
    """The recorded trajectory of a solve."""
    t: np.ndarray
    u: np.ndarray
    retcode: str = "Success"

    def __len__(self) -> int:
        return len(self.t)


class _TrajectoryHistory:
    """
    The lookup delay terms see while stepping: the problem's history before
    t0, the linearly interpolated trajectory from t0 on.
    """

    def __init__(self, integrator: Integrator):
        self._integ = integrator

    def __call__(self, p, t, *, out=None, deriv=0, idxs=None):
        request = build_request(out is not None, deriv, idxs)
        integ = self._integ
        if t < integ.prob.tspan[0]:
            return integ.prob.h.evaluate(request, p, t, out)

        what = request.what
        if isinstance(what, Derivative):
            if what.order > 1:
                raise HistoryFormError(
                    f"derivative of order {what.order} after t0 is not available from the stored trajectory"
                )
            values = integ._interpolate(t, integ._dus)
        else:
            values = integ._interpolate(t, integ._us)
        if isinstance(what, IndexRestricted):
            values = values.ravel()[list(what.idxs)]
        if request.convention is CallingConvention.BUFFER:
            out[...] = values
            return out
        return values


class Integrator(ValueProvider):
    """
    Holds and advances (u, p, t, du) of one problem.

    Use :func:`init` to build one; the constructor does not initialize.
    """

    def __init__(
        self,
        prob,
        method: NumericalIntegrator,
        u: np.ndarray,
        p: Any,
        dt: float,
        tstops: Sequence[float],
        saveat: Optional[Sequence[float]],
        callback: Optional[Callable[[Integrator], None]],
        maxiters: int,
    ):
        self.prob = prob
        self.method = method
        self.u = u
        self.p = p
        self.t = prob.tspan[0]
        self.dt = dt
        self.du: Optional[np.ndarray] = None
        self.iter = 0
        self._tstops = sorted(s for s in set(tstops) if prob.tspan[0] < s <= prob.tspan[1])
        self._saveat = None if saveat is None else np.asarray(sorted(saveat), dtype=float)
        self._callback = callback
        self._maxiters = maxiters
        self._delayed = isinstance(prob, DDEProblem)
        self._history = _TrajectoryHistory(self) if self._delayed else None
        self._d_t: Optional[float] = None
        self._lags_warned = False
        self._rng = None
        if isinstance(prob, SDDEProblem):
            self._rng = np.random.default_rng(prob.seed if prob.seed else None)
        self._ts: List[float] = []
        self._us: List[np.ndarray] = []
        self._dus: List[np.ndarray] = []

    #ValueProvider interface
    def _state(self) -> np.ndarray:
        return self.u

    def _state_derivative(self) -> Optional[np.ndarray]:
        return self.du

    def current_params(self) -> Any:
        return self.p

    def current_time(self) -> float:
        return self.t

    def current_history(self):
        return self._history

    def set_state(self, u: Any) -> None:
        self.u[...] = u

    def set_params(self, p: Any) -> None:
        self.p = p

    #Right-hand sides
    def _call(self, func, template: np.ndarray, *args) -> np.ndarray:
        if self.prob.f.isinplace:
            out = np.empty_like(template, dtype=float)
            func(out, *args)
            return out
        return np.asarray(func(*args), dtype=float)

    def _drift(self, t: float, y: np.ndarray) -> np.ndarray:
        f = self.prob.f
        if self._delayed:
            self._check_lags(t, y)
            return self._call(f, y, y, self._history, self.p, t)
        return self._call(f, y, y, self.p, t)

    def _diffusion_increment(self, t: float, y: np.ndarray, d_t: float) -> np.ndarray:
        prob = self.prob
        self._check_lags(t, y)
        prototype = prob.noise_rate_prototype
        template = y if prototype is None else prototype
        g = self._call(prob.g, template, y, self._history, self.p, t)
        shape = y.shape if prototype is None else (prototype.shape[1],)
        if prob.noise is not None:
            d_w = np.asarray(prob.noise(self._rng, t, d_t, shape), dtype=float)
        else:
            d_w = self._rng.normal(0.0, np.sqrt(d_t), shape)
        return g * d_w if prototype is None else g @ d_w

    def _compute_derivative(self) -> Optional[np.ndarray]:
        f = self.prob.f
        if isinstance(self.prob, DAEProblem):
            return np.array(self.prob.du0, dtype=float) if self.du is None else self.du
        if isinstance(f, MassMatrixFunction) and f.has_identity_mass_matrix:
            return self._drift(self.t, self.u)
        return None

    #Trajectory
    def _record(self) -> None:
        self._ts.append(self.t)
        self._us.append(np.array(self.u, dtype=float))
        self._dus.append(np.zeros_like(self._us[-1]) if self.du is None else np.array(self.du, dtype=float))

    def _interpolate(self, t: float, values: List[np.ndarray]) -> np.ndarray:
        ts = self._ts
        if len(ts) == 1 or t <= ts[0]:
            return np.array(values[0])
        if t >= ts[-1]:
            #Lookups beyond the latest stored step hold the last value.
            return np.array(values[-1])
        i = int(np.searchsorted(ts, t, side="right")) - 1
        w = (t - ts[i]) / (ts[i + 1] - ts[i])
        return (1.0 - w) * values[i] + w * values[i + 1]

    def _restart_record(self) -> None:
        keep = [i for i, s in enumerate(self._ts) if s < self.t]
        self._ts = [self._ts[i] for i in keep]
        self._us = [self._us[i] for i in keep]
        self._dus = [self._dus[i] for i in keep]
        self._record()

    def initialize(
        self,
        alg=None,
        nlsolve_alg=None,
        abstol: Optional[float] = None,
        reltol: Optional[float] = None,
    ) -> None:
        """
        Runs alg (or the problem's default strategy) on the current values
        and adopts the result.

        :raise InitializationError: if the strategy reports no success
        """
        prob = self.prob
        options = prob.options
        if alg is None:
            alg = options.initializealg if options.initializealg is not None else default_initialization(prob, prob.f)
        self._restart_record()
        self.du = self._compute_derivative()
        self._dus[-1] = np.zeros_like(self.u, dtype=float) if self.du is None else np.array(self.du, dtype=float)

        u, p, success = get_initial_values(
            prob,
            self,
            prob.f,
            alg,
            prob.f.convention,
            nlsolve_alg=nlsolve_alg if nlsolve_alg is not None else options.nlsolve_alg,
            abstol=abstol,
            reltol=reltol,
        )
        if not success:
            raise InitializationError(
                f"{type(alg).__name__}: initialization of {type(prob).__name__} at t={self.t} did not succeed",
                type(alg).__name__,
            )
        self.set_state(u)
        self.set_params(p)
        self.du = self._compute_derivative()
        self._ts.pop(); self._us.pop(); self._dus.pop()
        self._record()
        logger.debug("initialized %s at t=%s with %s", type(prob).__name__, self.t, type(alg).__name__)

    def reinit(self, u: Any = None, p: Any = None, alg=None, nlsolve_alg=None) -> None:
        """Writes new values at the current time and initializes again."""
        if u is not None:
            self.set_state(u)
        if p is not None:
            self.set_params(p)
        self.initialize(alg, nlsolve_alg)

    @property
    def done(self) -> bool:
        return self.t >= self.prob.tspan[1]

    def _check_lags(self, t: float, y: np.ndarray) -> None:
        """Evaluates the lags at (y, p, t) and warns once per step when one is shorter than the step."""
        prob = self.prob
        lags = [tau for tau in prob.constant_lags if tau > 0.0]
        lags.extend(float(tau) for tau in prob.evaluate_dependent_lags(y, self.p, t) if tau > 0.0)
        d_t = self._d_t
        if d_t is None or self._lags_warned or not lags or d_t <= min(lags):
            return
        self._lags_warned = True
        warnings.warn(
            f"step size {d_t:g} exceeds the smallest lag {min(lags):g} at t={t:g}; "
            "delayed lookups inside the step hold the last computed value",
            UserWarning,
            stacklevel=5,
        )

    def step(self) -> None:
        """Advances one step, shortened to land on the next stop."""
        if self.done:
            raise RuntimeError(f"cannot step past the end of the time span ({self.prob.tspan[1]})")
        if self.iter >= self._maxiters:
            raise RuntimeError(f"maximum number of steps ({self._maxiters}) exceeded at t={self.t}")
        f = self.prob.f
        if not isinstance(f, MassMatrixFunction) or not f.has_identity_mass_matrix:
            raise ValueError(
                f"{type(self.method).__name__} is explicit and cannot step {type(self.prob).__name__} "
                "with a non-identity mass matrix or an implicit residual"
            )

        t_end = self.prob.tspan[1]
        while self._tstops and self._tstops[0] <= self.t:
            self._tstops.pop(0)
        next_stop = self._tstops[0] if self._tstops else t_end
        d_t = min(self.dt, next_stop - self.t, t_end - self.t)

        self._d_t, self._lags_warned = d_t, False
        try:
            if self.method.stochastic:
                noise_term = self._diffusion_increment(self.t, self.u, d_t)
                u_next = self.method.integral(self.u, self.t, d_t, self._drift, noise_term)
            else:
                u_next = self.method.integral(self.u, self.t, d_t, self._drift)
        finally:
            self._d_t = None

        #land exactly on stops to avoid drifting past them
        self.t = next_stop if next_stop - (self.t + d_t) <= 1e-12 * max(1.0, abs(next_stop)) else self.t + d_t
        self.u[...] = u_next
        self.du = self._compute_derivative()
        self.iter += 1
        self._record()
        if self._callback is not None:
            self._callback(self)

    def solution(self) -> Solution:
        ts = np.asarray(self._ts, dtype=float)
        us = np.asarray(self._us, dtype=float)
        if self._saveat is not None:
            mask = np.isin(ts, self._saveat)
            ts, us = ts[mask], us[mask]
        return Solution(ts, us, "Success" if self.done else "Incomplete")


def init(
    prob,
    method: Optional[NumericalIntegrator] = None,
    *,
    dt: Optional[float] = None,
    initializealg=None,
    nlsolve_alg=None,
    alias: Union[None, bool, AliasSpecifier] = None,
    abstol: Optional[float] = None,
    reltol: Optional[float] = None,
) -> Integrator:
    """
    Builds an initialized integrator for prob.

    :param prob: the problem
    :param method: the integrator; RK4 for deterministic problems and
        Euler-Maruyama for stochastic ones if None
    :param dt: the step size, the problem's option or 1/100 of the time
        span if None
    :param initializealg: the initialization strategy, the problem's option
        or the default for the problem if None
    :param nlsolve_alg: nonlinear solve algorithm for OverrideInit
    :param alias: which inputs may be reused in place (a bool sets every
        flag); the initial state is
        copied unless ``alias_u0`` is True, the parameters are deep-copied
        only if ``alias_p`` is False
    :raise InitializationError: if initialization fails
    """
    options = prob.options
    stochastic = isinstance(prob, SDDEProblem)
    if method is None:
        method = EulerMaruyama() if stochastic else RK4()
    if method.stochastic != stochastic:
        raise ValueError(
            f"{type(method).__name__} cannot step {type(prob).__name__}: "
            f"{'stochastic' if stochastic else 'deterministic'} problems need a "
            f"{'stochastic' if stochastic else 'deterministic'} method"
        )

    t_0, t_1 = prob.tspan
    if dt is None:
        dt = options.dt
    if dt is None:
        dt = (t_1 - t_0) / 100.0 if t_1 > t_0 else 1.0
    if not dt > 0.0:
        raise ValueError(f"time step size must be > 0, got {dt}")

    if alias is None:
        alias = options.alias if options.alias is not None else AliasSpecifier()
    elif isinstance(alias, (bool, np.bool_)):
        alias = AliasSpecifier(alias=bool(alias))
    elif not isinstance(alias, AliasSpecifier):
        raise TypeError(f"alias must be an AliasSpecifier or a bool, got {alias!r}")
    if alias.alias_u0 is True and prob.u0.flags.writeable:
        u = prob.u0
    else:
        u = np.array(prob.u0, dtype=float, copy=True)
    p = copy.deepcopy(prob.p) if alias.alias_p is False else prob.p

    tstops = list(options.tstops)
    if options.saveat is not None:
        tstops.extend(options.saveat)
    if isinstance(prob, DDEProblem):
        tstops.extend(s for s, _ in discontinuity_times(prob))

    integ = Integrator(prob, method, u, p, dt, tstops, options.saveat, options.callback, options.maxiters)
    integ.initialize(initializealg, nlsolve_alg, abstol, reltol)
    return integ


def solve(prob, method: Optional[NumericalIntegrator] = None, **kwargs) -> Solution:
    """Initializes and steps prob to the end of its time span."""
    integ = init(prob, method, **kwargs)
    while not integ.done:
        integ.step()
    return integ.solution()


__all__ = [
    "NumericalIntegrator",
    "ForwardEulerMethod",
    "ExplicitMidpointMethod",
    "RK4",
    "EulerMaruyama",
    "Solution",
    "Integrator",
    "init",
    "solve",
]
