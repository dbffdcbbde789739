"""
Problem definitions: ODE, DAE, delay and stochastic delay problems.

All problems are immutable records validated at construction.  A
malformed definition (bad time span, negative lag, dependent lag with the
wrong arity, an initial state that cannot be used with the function's
calling convention, a history function missing a form the drift needs,
or an unrecognised solver option) raises ProblemConstructionError before
any instance exists.

Delay problems
--------------

``du = f(u, h, p, t) dt [+ g(u, h, p, t) dW]`` for ``t >= t0`` with
``u(t) = h(p, t)`` for ``t < t0``.  If no initial state is given it is
taken to be ``h(p, t0)`` and the order of the discontinuity at ``t0`` is
forced to be at least 1.
"""

from __future__ import annotations

import math
import numbers
import warnings
from dataclasses import InitVar, dataclass, fields
from fractions import Fraction
from typing import Any, Callable, Dict, List, Mapping, Optional, Sequence, Tuple, Union

import numpy as np

from history_forms import (
    CallingConvention,
    HistoryForm,
    HistoryFunction,
    HistoryKind,
    default_history_forms,
    positional_arity,
)
from problem_functions import (
    DAEFunction,
    DDEFunction,
    ODEFunction,
    ProblemConstructionError,
    SDDEFunction,
)

TimeSpan = Tuple[float, float]


class NullParameters:
    """Placeholder for problems defined without parameters."""
    _instance = None

    def __new__(cls):
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __getitem__(self, item):
        raise IndexError(
            f"cannot index parameter {item!r}: no parameters were given to this problem; "
            "pass p= when constructing it"
        )

    def __repr__(self) -> str:
        return "NullParameters()"


NULL_PARAMETERS = NullParameters()


def promote_tspan(tspan: Union[float, Sequence[float]]) -> TimeSpan:
    """Returns tspan as an ordered pair of floats; a scalar T means (0, T)."""
    if isinstance(tspan, numbers.Real):
        tspan = (0.0, tspan)
    try:
        t_0, t_1 = tspan
    except (TypeError, ValueError):
        raise ProblemConstructionError(f"time span must be a pair (t0, tf), got {tspan!r}") from None
    t_0, t_1 = float(t_0), float(t_1)
    if math.isnan(t_0) or math.isnan(t_1):
        raise ProblemConstructionError("time span bounds cannot be NaN")
    if t_0 > t_1:
        raise ProblemConstructionError(
            f"lower bound of time span ({t_0}) cannot be greater than its upper bound ({t_1})"
        )
    return t_0, t_1


def _warn_paramtype(p: Any) -> None:
    if isinstance(p, Mapping):
        warnings.warn(
            "parameters given as a mapping; lookups by key are slow inside right-hand "
            "side functions, prefer a tuple, array or dataclass",
            UserWarning,
            stacklevel=3,
        )


def _prepare_initial_state(u0: Any, convention: CallingConvention, label: str = "initial state") -> np.ndarray:
    if u0 is None:
        raise ProblemConstructionError(f"{label} is required")
    if np.iscomplexobj(u0):
        raise ProblemConstructionError(f"{label} must be real, got complex values {u0!r}")
    u = u0 if isinstance(u0, np.ndarray) and u0.dtype.kind == "f" else np.asarray(u0, dtype=float)
    if convention is CallingConvention.BUFFER and u.ndim == 0:
        raise ProblemConstructionError(
            f"{label} is a scalar but the function writes into a buffer; "
            "use an array initial state or a value-returning function"
        )
    return u


@dataclass(frozen=True)
class SolverOptions:
    """
    The recognised solver options.

    dt: fixed step size; tstops: times the stepper must land on;
    saveat: times to record (all steps if None); callback:
    ``callback(integrator)`` called after each step; abstol / reltol:
    tolerances of the consistency check; maxiters: step limit;
    initializealg: initialization strategy; nlsolve_alg: algorithm for
    override initialization; alias: an AliasSpecifier, a bool is
    taken as ``AliasSpecifier(alias=...)``.
    """
    dt: Optional[float] = None
    tstops: Tuple[float, ...] = ()
    saveat: Optional[Tuple[float, ...]] = None
    callback: Optional[Callable[[Any], None]] = None
    abstol: Optional[float] = None
    reltol: Optional[float] = None
    maxiters: int = 100_000
    initializealg: Any = None
    nlsolve_alg: Any = None
    alias: Any = None

    def __post_init__(self):
        if self.dt is not None and not self.dt > 0.0:
            raise ProblemConstructionError(f"time step size must be > 0, got {self.dt}")
        if self.maxiters <= 0:
            raise ProblemConstructionError(f"maxiters must be > 0, got {self.maxiters}")
        object.__setattr__(self, "tstops", tuple(float(t) for t in self.tstops))
        if self.saveat is not None:
            object.__setattr__(self, "saveat", tuple(float(t) for t in np.atleast_1d(self.saveat)))
        if self.callback is not None and not callable(self.callback):
            raise ProblemConstructionError("callback must be callable")
        if isinstance(self.alias, (bool, np.bool_)):
            object.__setattr__(self, "alias", AliasSpecifier(alias=bool(self.alias)))
        elif self.alias is not None and not isinstance(self.alias, AliasSpecifier):
            raise ProblemConstructionError(f"alias must be an AliasSpecifier or a bool, got {self.alias!r}")

    @classmethod
    def from_kwargs(cls, kwargs: Mapping[str, Any]) -> SolverOptions:
        known = {f.name for f in fields(cls)}
        unknown = sorted(set(kwargs) - known)
        if unknown:
            raise ProblemConstructionError(
                f"unrecognised solver option(s): {', '.join(unknown)}; "
                f"recognised options are {', '.join(sorted(known))}"
            )
        return cls(**kwargs)


_ALIAS_FIELDS = ("alias_p", "alias_f", "alias_u0", "alias_tstops", "alias_jumps")


@dataclass(frozen=True)
class AliasSpecifier:
    """
    Which inputs a solver may alias instead of copying.

    Each flag is True (may be reused or mutated in place), False (must be
    copied first) or None (the consumer decides). ``alias`` sets all five
    flags at once. ``alias_du0`` is accepted and ignored.
    """
    alias_p: Optional[bool] = None
    alias_f: Optional[bool] = None
    alias_u0: Optional[bool] = None
    alias_tstops: Optional[bool] = None
    alias_jumps: Optional[bool] = None
    alias_du0: InitVar[Optional[bool]] = None
    alias: InitVar[Optional[bool]] = None

    def __post_init__(self, alias_du0, alias):
        for name in _ALIAS_FIELDS:
            flag = getattr(self, name)
            if flag is not None and not isinstance(flag, (bool, np.bool_)):
                raise TypeError(f"{name} must be True, False or None, got {flag!r}")
        if alias is not None:
            if not isinstance(alias, (bool, np.bool_)):
                raise TypeError(f"alias must be True, False or None, got {alias!r}")
            for name in _ALIAS_FIELDS:
                object.__setattr__(self, name, bool(alias))


class _AbstractProblem:
    """Shared storage and accessors of all problem types."""

    def __init__(self, f, u0: np.ndarray, tspan, p: Any, options: Dict[str, Any]):
        self._f = f
        self._u0 = u0
        self._tspan = promote_tspan(tspan)
        if p is None:
            p = NULL_PARAMETERS
        _warn_paramtype(p)
        self._p = p
        self._options = SolverOptions.from_kwargs(options)

    @property
    def f(self):
        return self._f

    @property
    def u0(self) -> np.ndarray:
        return self._u0

    @property
    def tspan(self) -> TimeSpan:
        return self._tspan

    @property
    def p(self) -> Any:
        return self._p

    @property
    def options(self) -> SolverOptions:
        return self._options

    @property
    def isinplace(self) -> bool:
        return self._f.isinplace

    def __repr__(self) -> str:
        return f"{type(self).__name__}(tspan={self._tspan}, u0={self._u0!r}, p={self._p!r})"


class ODEProblem(_AbstractProblem):
    """``M du/dt = f(u, p, t)`` on tspan with ``u(t0) = u0``."""

    def __init__(self, f, u0, tspan, p=None, **options):
        if not isinstance(f, ODEFunction):
            f = ODEFunction(f)
        u0 = _prepare_initial_state(u0, f.convention)
        _check_mass_matrix_shape(f, u0)
        super().__init__(f, u0, tspan, p, options)


class DAEProblem(_AbstractProblem):
    """
    Fully implicit ``0 = f(du, u, p, t)`` with initial state u0 and
    initial derivative du0.

    :param differential_vars: optional boolean mask of the components that
        appear differentiated (the others are algebraic)
    """

    def __init__(self, f, du0, u0, tspan, p=None, differential_vars=None, **options):
        if not isinstance(f, DAEFunction):
            f = DAEFunction(f)
        u0 = _prepare_initial_state(u0, f.convention)
        du0 = _prepare_initial_state(du0, f.convention, "initial derivative")
        if du0.shape != u0.shape:
            raise ProblemConstructionError(
                f"initial derivative shape {du0.shape} must match initial state shape {u0.shape}"
            )
        if differential_vars is not None:
            differential_vars = np.asarray(differential_vars, dtype=bool)
            if differential_vars.shape != u0.shape:
                raise ProblemConstructionError(
                    f"differential_vars shape {differential_vars.shape} must match initial state shape {u0.shape}"
                )
        super().__init__(f, u0, tspan, p, options)
        self._du0 = du0
        self._differential_vars = differential_vars

    @property
    def du0(self) -> np.ndarray:
        return self._du0

    @property
    def differential_vars(self) -> Optional[np.ndarray]:
        return self._differential_vars


def _check_mass_matrix_shape(f, u0: np.ndarray) -> None:
    m = f.mass_matrix
    if m is not None and m.shape[0] != u0.size:
        raise ProblemConstructionError(
            f"mass matrix of size {m.shape[0]} does not match initial state with {u0.size} components"
        )


def _validate_constant_lags(constant_lags: Sequence[float]) -> Tuple[float, ...]:
    lags = []
    for lag in constant_lags:
        lag = float(lag)
        if not math.isfinite(lag) or lag < 0.0:
            raise ProblemConstructionError(f"constant lags must be finite and non-negative, got {lag}")
        lags.append(float(lag))
    return tuple(sorted(lags))


def _validate_dependent_lags(dependent_lags: Sequence[Callable]) -> Tuple[Callable, ...]:
    for i, lag in enumerate(dependent_lags):
        if not callable(lag):
            raise ProblemConstructionError(f"dependent lag {i} is not callable")
        arity = positional_arity(lag)
        if arity is not None and arity != 3:
            raise ProblemConstructionError(
                f"dependent lag {i} must have the form (u, p, t) -> lag, but takes {arity} positional arguments"
            )
    return tuple(dependent_lags)


class DDEProblem(_AbstractProblem):
    """
    A delay differential problem ``M du/dt = f(u, h, p, t)``.

    :param f: drift, a DDEFunction or a plain callable
    :param u0: the initial state. If None it is set to ``h(p, tspan[0])``
    :param h: the history function, a HistoryFunction or a plain callable
    :param tspan: the time span
    :param p: parameters, NullParameters if not given
    :param constant_lags: non-negative lags known before solving
    :param dependent_lags: ``(u, p, t) -> lag`` functions, re-evaluated on
        every drift evaluation
    :param neutral: whether delays appear in derivative terms. Defaults to
        whether the mass matrix is non-identity with determinant other than 1
    :param order_discontinuity_t0: order of the discontinuity at tspan[0];
        0 if u0 is given, at least 1 if it is derived from h
    """

    def __init__(
        self,
        f,
        u0,
        h,
        tspan,
        p=None,
        *,
        constant_lags: Sequence[float] = (),
        dependent_lags: Sequence[Callable] = (),
        neutral: Optional[bool] = None,
        order_discontinuity_t0: Union[None, int, Fraction] = None,
        **options,
    ):
        f = self._wrap_function(f)
        history = HistoryFunction.wrap(h)
        tspan = promote_tspan(tspan)
        if p is None:
            p = NULL_PARAMETERS

        if u0 is None:
            if not history.supports(HistoryForm(CallingConvention.VALUE, HistoryKind.VALUE)):
                raise ProblemConstructionError(
                    "initial state omitted but the history function has no value-returning form to derive it from"
                )
            u0 = history(p, tspan[0])
            order = Fraction(1) if order_discontinuity_t0 is None else Fraction(order_discontinuity_t0)
            order = max(Fraction(1), order)
        else:
            order = Fraction(0) if order_discontinuity_t0 is None else Fraction(order_discontinuity_t0)
        if order < 0:
            raise ProblemConstructionError(f"order of discontinuity at t0 must be >= 0, got {order}")

        u0 = _prepare_initial_state(u0, f.convention)
        _check_mass_matrix_shape(f, u0)
        super().__init__(f, u0, tspan, p, options)

        self._h = history
        self._constant_lags = _validate_constant_lags(constant_lags)
        self._dependent_lags = _validate_dependent_lags(dependent_lags)
        self._neutral = f.default_neutral() if neutral is None else bool(neutral)
        self._order_discontinuity_t0 = order

        forms = f.history_forms or default_history_forms(f.convention, self._neutral, history)
        history.require(forms, "drift function")
        self._required_history_forms = frozenset(forms)

    @staticmethod
    def _wrap_function(f):
        return f if isinstance(f, DDEFunction) else DDEFunction(f)

    @classmethod
    def from_history(cls, f, h, tspan, p=None, **kwargs):
        """Builds the problem with the initial state taken from the history."""
        return cls(f, None, h, tspan, p, **kwargs)

    @property
    def h(self) -> HistoryFunction:
        return self._h

    @property
    def constant_lags(self) -> Tuple[float, ...]:
        return self._constant_lags

    @property
    def dependent_lags(self) -> Tuple[Callable, ...]:
        return self._dependent_lags

    @property
    def neutral(self) -> bool:
        return self._neutral

    @property
    def order_discontinuity_t0(self) -> Fraction:
        return self._order_discontinuity_t0

    @property
    def required_history_forms(self):
        return self._required_history_forms

    def evaluate_dependent_lags(self, u: np.ndarray, p: Any, t: float) -> np.ndarray:
        """Evaluates every dependent lag at (u, p, t); nothing is cached."""
        lags = np.array([float(lag(u, p, t)) for lag in self._dependent_lags], dtype=float)
        if lags.size and (not np.all(np.isfinite(lags)) or np.any(lags < 0.0)):
            raise ValueError(f"dependent lags evaluated to invalid values {lags} at t={t}")
        return lags


class SDDEProblem(DDEProblem):
    """
    A stochastic delay problem ``du = f(u, h, p, t) dt + g(u, h, p, t) dW``.

    :param noise_rate_prototype: prototype of g's output for non-diagonal
        noise, its number of columns sets the number of Wiener processes
    :param noise: ``noise(rng, t, dt, shape) -> dW`` increments; Gaussian
        increments with variance dt if None
    :param seed: seed of the random number generator, 0 for fresh entropy
    """

    def __init__(
        self,
        f,
        g,
        u0,
        h,
        tspan,
        p=None,
        *,
        noise_rate_prototype=None,
        noise: Optional[Callable] = None,
        seed: int = 0,
        **kwargs,
    ):
        if not isinstance(f, SDDEFunction):
            if g is None:
                raise ProblemConstructionError("SDDE problem requires a diffusion function")
            f = SDDEFunction(f, g)
        if int(seed) != seed or seed < 0:
            raise ProblemConstructionError(f"seed must be a non-negative integer, got {seed!r}")
        if noise is not None and not callable(noise):
            raise ProblemConstructionError("noise must be callable")
        if noise_rate_prototype is not None:
            noise_rate_prototype = np.asarray(noise_rate_prototype, dtype=float)
            if noise_rate_prototype.ndim != 2:
                raise ProblemConstructionError(
                    f"noise rate prototype must be a matrix, got shape {noise_rate_prototype.shape}"
                )
        super().__init__(f, u0, h, tspan, p, **kwargs)
        if noise_rate_prototype is not None and noise_rate_prototype.shape[0] != self.u0.size:
            raise ProblemConstructionError(
                f"noise rate prototype has {noise_rate_prototype.shape[0]} rows, "
                f"expected one per state component ({self.u0.size})"
            )
        forms = f.history_forms or default_history_forms(f.convention, self.neutral, self.h)
        self.h.require(forms, "diffusion function")
        self._noise_rate_prototype = noise_rate_prototype
        self._noise = noise
        self._seed = int(seed)

    @staticmethod
    def _wrap_function(f):
        return f

    @classmethod
    def from_history(cls, f, g, h, tspan, p=None, **kwargs):
        """Builds the problem with the initial state taken from the history."""
        return cls(f, g, None, h, tspan, p, **kwargs)

    @property
    def g(self) -> Callable:
        return self.f.g

    @property
    def noise_rate_prototype(self) -> Optional[np.ndarray]:
        return self._noise_rate_prototype

    @property
    def noise(self) -> Optional[Callable]:
        return self._noise

    @property
    def seed(self) -> int:
        return self._seed


def discontinuity_times(
    problem: DDEProblem,
    max_order: int = 5,
    max_points: int = 10_000,
) -> List[Tuple[float, Fraction]]:
    """
    Returns the discontinuities propagated from t0 by the constant lags.

    Every discontinuity at time s of order k spawns one at ``s + tau`` for
    each positive constant lag tau, of order k + 1 for retarded problems
    and of unchanged order for neutral ones.  Points beyond tspan[1] or with
    an order above max_order are dropped.

    :return: sorted (time, order) pairs, t0 first
    """
    t_0, t_1 = problem.tspan
    lags = [tau for tau in problem.constant_lags if tau > 0.0]
    step = Fraction(0) if problem.neutral else Fraction(1)
    found: Dict[float, Fraction] = {t_0: problem.order_discontinuity_t0}
    frontier = [(t_0, problem.order_discontinuity_t0)]
    while frontier and len(found) < max_points:
        s, k = frontier.pop()
        for tau in lags:
            t_next = s + tau
            k_next = k + step
            if t_next > t_1 + 1e-12 * max(1.0, abs(t_1)) or k_next > max_order:
                continue
            key = round(t_next, 12)
            if key in found and found[key] <= k_next:
                continue
            found[key] = k_next
            frontier.append((key, k_next))
    return sorted(found.items())


__all__ = [
    "NullParameters",
    "NULL_PARAMETERS",
    "promote_tspan",
    "SolverOptions",
    "AliasSpecifier",
    "ODEProblem",
    "DAEProblem",
    "DDEProblem",
    "SDDEProblem",
    "discontinuity_times",
]
