"""
Initial values for ODE, DAE and delay problems.

:func:`get_initial_values` is called by a stepping engine at the start of
a solve (and after a reinitialization event) with one of three
strategies:

- :class:`NoInit`: take the provider's values as they are
- :class:`CheckInit`: verify the values satisfy the governing equations
  (algebraic rows of mass-matrix forms, every row of fully implicit
  forms, continuity with the history for delay problems) and raise
  :class:`CheckInitFailureError` otherwise
- :class:`OverrideInit`: compute the values by solving the auxiliary
  nonlinear problem attached to the function as OverrideInitData

The result is always ``(u, p, success)``.  A failure names the active
strategy and what it was checking; a strategy is never swapped for
another one behind the caller's back.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional, Sequence, Tuple

import numpy as np

from error_minimization import (
    error_weights,
    resolve_tolerances,
    scaled_max_norm,
    violating_components,
)
from history_forms import CallingConvention, HistoryForm, HistoryFunction, HistoryKind
from nonlinear_solve import NonlinearSolveAlgorithm, TrustRegion, solve_nonlinear
from problem_functions import DAEFunction, DDEFunction, MassMatrixFunction
from problems import DDEProblem
from value_providers import ValueProvider

logger = logging.getLogger(__name__)

InitialValues = Tuple[np.ndarray, Any, bool]


class InitializationError(RuntimeError):
    """A fatal failure to obtain initial values."""

    def __init__(self, message: str, strategy: str):
        super().__init__(message)
        self.strategy = strategy


class CheckInitFailureError(InitializationError):
    """
    The initial values violate the governing equations.

    :ivar what: which equations were checked
    :ivar residual: the full residual vector of that check
    :ivar weights: the error weights the residual was scaled by
    :ivar normresid: the scaled residual norm (failure means > 1)
    :ivar violations: flat indices of the components above tolerance
    """

    def __init__(
        self,
        what: str,
        residual: np.ndarray,
        weights: np.ndarray,
        normresid: float,
        violations: Sequence[int],
        abstol: float,
        reltol: float,
    ):
        self.what = what
        self.residual = np.asarray(residual)
        self.weights = np.asarray(weights)
        self.normresid = normresid
        self.violations = tuple(violations)
        self.abstol = abstol
        self.reltol = reltol
        super().__init__(
            f"CheckInit: initial values violate the {what}: scaled residual norm {normresid:.6g} exceeds 1 "
            f"(abstol={abstol:g}, reltol={reltol:g}); violating components {list(self.violations)}, "
            f"residual {self.residual.tolist()}",
            "CheckInit",
        )


class OverrideInitMissingAlgorithm(InitializationError):
    """OverrideInit needs a nonlinear solve algorithm for a non-trivial sub-problem."""

    def __init__(self, n_unknowns: int):
        self.n_unknowns = n_unknowns
        super().__init__(
            f"OverrideInit: the initialization problem has {n_unknowns} unknown(s) but no nonlinear "
            "solve algorithm was given; pass nlsolve_alg= (e.g. TrustRegion())",
            "OverrideInit",
        )


@dataclass(frozen=True)
class NoInit:
    """Use the provider's values unchanged."""


@dataclass(frozen=True)
class CheckInit:
    """Verify the provider's values within abstol + reltol * |u|."""
    abstol: Optional[float] = None
    reltol: Optional[float] = None


@dataclass(frozen=True)
class OverrideInit:
    """Solve the function's attached initialization problem."""
    nlsolve: Optional[NonlinearSolveAlgorithm] = None


def _first(*values):
    for value in values:
        if value is not None:
            return value
    return None


def _evaluate(f, convention: CallingConvention, template: np.ndarray, *args) -> np.ndarray:
    """Calls f in the given convention and returns its result as an array."""
    if convention is CallingConvention.BUFFER:
        out = np.empty_like(template, dtype=float)
        f(out, *args)
        return out
    return np.asarray(f(*args), dtype=float)


def _history_at(h: HistoryFunction, p: Any, t: float, kind: HistoryKind, template: np.ndarray) -> np.ndarray:
    """Evaluates the history at t, preferring its value-returning form."""
    deriv = 1 if kind is HistoryKind.DERIVATIVE else 0
    if h.supports(HistoryForm(CallingConvention.VALUE, kind)):
        return np.asarray(h(p, t, deriv=deriv), dtype=float)
    if h.supports(HistoryForm(CallingConvention.BUFFER, kind)):
        return np.asarray(h(p, t, out=np.empty_like(template, dtype=float), deriv=deriv), dtype=float)
    raise InitializationError(
        f"CheckInit: checking the {kind.value} of the history at t0 requires a history form that "
        f"implements it; available forms: {', '.join(sorted(str(f) for f in h.forms))}",
        "CheckInit",
    )


def _raise_if_inconsistent(
    what: str,
    residual: np.ndarray,
    u: np.ndarray,
    abstol: float,
    reltol: float,
    rows: Optional[np.ndarray] = None,
) -> None:
    """rows: the state components the residual entries belong to, if a subset."""
    weights = error_weights(u, abstol, reltol, residual.shape)
    normresid = scaled_max_norm(residual, weights)
    logger.debug("CheckInit: %s scaled residual norm %.3e", what, normresid)
    if not normresid <= 1.0:
        violations = violating_components(residual, weights)
        if rows is not None:
            violations = tuple(int(rows[i]) for i in violations)
        raise CheckInitFailureError(what, residual, weights, normresid, violations, abstol, reltol)


def check_consistency(
    prob,
    provider: ValueProvider,
    f,
    convention: CallingConvention,
    abstol: Optional[float] = None,
    reltol: Optional[float] = None,
) -> None:
    """
    Raises CheckInitFailureError unless the provider's values satisfy the
    governing equations of prob at the provider's time.

    Fully implicit functions are checked on every row of
    ``f(du, u, p, t)``.  Mass-matrix functions are checked on the rows where
    the mass matrix is entirely zero, where ``M du`` vanishes and the
    residual is the drift itself.  Delay problems are additionally checked
    for continuity with the history at t0 when the discontinuity order
    there is at least 1, and for agreement of the drift with the history
    derivative when it is at least 2 (at least 1 for neutral problems).
    """
    abstol, reltol = resolve_tolerances(abstol, reltol)
    u = provider.current_state()
    p = provider.current_params()
    t = provider.current_time()

    if isinstance(f, DAEFunction):
        if not provider.has_state_derivative:
            raise InitializationError(
                "CheckInit: a fully implicit problem needs the state derivative, "
                f"but {type(provider).__name__} holds none",
                "CheckInit",
            )
        du = provider.current_state_derivative()
        residual = _evaluate(f, convention, u, du, u, p, t)
        _raise_if_inconsistent("implicit residual equations", residual.ravel(), u.ravel(), abstol, reltol)
        return

    if not isinstance(f, MassMatrixFunction):
        raise TypeError(f"CheckInit: unsupported function type {type(f).__name__}")

    delayed = isinstance(f, DDEFunction)
    if delayed:
        if not isinstance(prob, DDEProblem):
            raise TypeError("CheckInit: a delay function must be checked against a delay problem")
        h = provider.current_history()
        if h is None:
            h = prob.h
        prob.evaluate_dependent_lags(u, p, t)
        drift = _evaluate(f, convention, u, u, h, p, t).ravel()
    else:
        drift = _evaluate(f, convention, u, u, p, t).ravel()

    algebraic = f.algebraic_rows()
    if algebraic.any():
        _raise_if_inconsistent(
            "algebraic constraints",
            drift[algebraic],
            u.ravel()[algebraic],
            abstol,
            reltol,
            rows=np.flatnonzero(algebraic),
        )

    if not delayed or t != prob.tspan[0]:
        return
    order = prob.order_discontinuity_t0
    if order >= 1:
        h_value = _history_at(prob.h, p, t, HistoryKind.VALUE, u)
        _raise_if_inconsistent("continuity with the history", (u - h_value).ravel(), u.ravel(), abstol, reltol)
    if order >= 2 or (prob.neutral and order >= 1):
        h_deriv = _history_at(prob.h, p, t, HistoryKind.DERIVATIVE, u).ravel()
        m = f.mass_matrix
        lhs = h_deriv if m is None else m @ h_deriv
        differential = ~algebraic if algebraic.size else np.ones(drift.size, dtype=bool)
        _raise_if_inconsistent(
            "history derivative",
            (drift - lhs)[differential],
            u.ravel()[differential],
            abstol,
            reltol,
            rows=np.flatnonzero(differential),
        )


def solve_override(prob, provider: ValueProvider, f, nlsolve_alg: Optional[NonlinearSolveAlgorithm]) -> InitialValues:
    """
    Computes initial values from the initialization problem attached to f.

    The refresh hook (if any) runs first; without it the sub-problem is
    solved with whatever values it currently holds.  Parameters are only
    replaced when the data has a parameter map.
    """
    data = f.initialization_data
    if data is None:
        logger.info("OverrideInit: %s has no initialization data, nothing to override", type(f).__name__)
        return provider.current_state(), provider.current_params(), True

    iprob = data.initializeprob
    if data.update_initializeprob is not None:
        data.update_initializeprob(iprob, provider)

    if not iprob.is_trivial and nlsolve_alg is None:
        raise OverrideInitMissingAlgorithm(int(np.size(iprob.u0)))

    sol = solve_nonlinear(iprob, nlsolve_alg if nlsolve_alg is not None else TrustRegion())
    if not sol.success:
        logger.warning("OverrideInit: initialization problem did not converge: %s", sol.message)

    current = provider.current_state()
    u = np.asarray(data.initializeprobmap(sol), dtype=float)
    if u.shape != current.shape:
        raise InitializationError(
            f"OverrideInit: initializeprobmap returned shape {u.shape}, expected the state shape {current.shape}",
            "OverrideInit",
        )
    if data.initializeprobpmap is not None:
        p = data.initializeprobpmap(sol)
    else:
        p = provider.current_params()
    return u, p, sol.success


def get_initial_values(
    prob,
    provider: ValueProvider,
    f,
    alg,
    convention: CallingConvention,
    *,
    nlsolve_alg: Optional[NonlinearSolveAlgorithm] = None,
    abstol: Optional[float] = None,
    reltol: Optional[float] = None,
) -> InitialValues:
    """
    Returns the initial values ``(u, p, success)`` under strategy alg.

    :param prob: the problem being initialized
    :param provider: the current values (live engine or snapshot)
    :param f: the active problem function
    :param alg: NoInit(), CheckInit() or OverrideInit()
    :param convention: the calling convention to evaluate f with; must be
        f's own convention
    :param nlsolve_alg: algorithm for OverrideInit, overriding the strategy's
    :param abstol: absolute tolerance for CheckInit, overriding the strategy's
    :param reltol: relative tolerance for CheckInit, overriding the strategy's
    """
    if convention is not f.convention:
        raise ValueError(
            f"{type(alg).__name__}: {type(f).__name__} uses the {f.convention.value} calling convention, "
            f"cannot evaluate it as {getattr(convention, 'value', convention)}"
        )
    options = getattr(prob, "options", None)
    logger.debug("initializing %s with %s", type(prob).__name__, alg)

    if isinstance(alg, NoInit):
        return provider.current_state(), provider.current_params(), True
    if isinstance(alg, CheckInit):
        check_consistency(
            prob,
            provider,
            f,
            convention,
            abstol=_first(abstol, alg.abstol, getattr(options, "abstol", None)),
            reltol=_first(reltol, alg.reltol, getattr(options, "reltol", None)),
        )
        return provider.current_state(), provider.current_params(), True
    if isinstance(alg, OverrideInit):
        nlsolve = _first(nlsolve_alg, alg.nlsolve, getattr(options, "nlsolve_alg", None))
        return solve_override(prob, provider, f, nlsolve)
    raise TypeError(f"unknown initialization strategy {alg!r}; expected NoInit, CheckInit or OverrideInit")


def default_initialization(prob, f):
    """
    The strategy used when none is requested: override if f carries
    initialization data, check for implicit forms, singular mass matrices
    and delay problems continuous at t0, no initialization otherwise.
    """
    if f.initialization_data is not None:
        return OverrideInit()
    if isinstance(f, DAEFunction):
        return CheckInit()
    if isinstance(f, MassMatrixFunction) and f.algebraic_rows().any():
        return CheckInit()
    if isinstance(prob, DDEProblem) and prob.order_discontinuity_t0 >= 1:
        return CheckInit()
    return NoInit()


__all__ = [
    "InitializationError",
    "CheckInitFailureError",
    "OverrideInitMissingAlgorithm",
    "NoInit",
    "CheckInit",
    "OverrideInit",
    "check_consistency",
    "solve_override",
    "get_initial_values",
    "default_initialization",
]
