"""
Right-hand side wrappers for ODE, DAE and (stochastic) delay problems.

Each wrapper records the user callable, its calling convention (value
returning or buffer writing, inferred from the positional arity unless
given), the mass matrix where the formulation has one, and optionally the
data needed to override the initial values by solving an auxiliary
nonlinear problem (:class:`OverrideInitData`).
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, FrozenSet, Iterable, Optional

import numpy as np

from history_forms import CallingConvention, HistoryForm, positional_arity


class ProblemConstructionError(ValueError):
    """Raised when a problem or one of its functions is malformed."""


@dataclass(frozen=True)
class OverrideInitData:
    """
    Data for computing initial values from an auxiliary nonlinear problem.

    :param initializeprob: the nonlinear sub-problem whose unknowns are
        (some of) the initial values
    :param update_initializeprob: optional ``(initializeprob, provider) -> None``
        copying values of the current provider into the sub-problem before it
        is solved. Without it the sub-problem is solved as it was last left.
    :param initializeprobmap: ``solution -> u0``, mapping the sub-problem
        solution to the full state
    :param initializeprobpmap: optional ``solution -> p``. Without it the
        parameters are passed through unchanged.
    """
    initializeprob: Any
    update_initializeprob: Optional[Callable[[Any, Any], None]] = None
    initializeprobmap: Optional[Callable[[Any], Any]] = None
    initializeprobpmap: Optional[Callable[[Any], Any]] = None

    def __post_init__(self):
        if self.initializeprob is None:
            raise ProblemConstructionError("initialization data requires an initialization problem")
        if self.initializeprobmap is None or not callable(self.initializeprobmap):
            raise ProblemConstructionError("initialization data requires a callable initializeprobmap")
        for name in ("update_initializeprob", "initializeprobpmap"):
            hook = getattr(self, name)
            if hook is not None and not callable(hook):
                raise ProblemConstructionError(f"{name} must be callable or None")


def _infer_convention(func: Callable, value_arity: int, name: str, inplace: Optional[bool]) -> CallingConvention:
    if not callable(func):
        raise ProblemConstructionError(f"{name} must be callable, got {type(func).__name__}")
    if inplace is not None:
        return CallingConvention.BUFFER if inplace else CallingConvention.VALUE
    arity = positional_arity(func)
    if arity == value_arity:
        return CallingConvention.VALUE
    if arity == value_arity + 1:
        return CallingConvention.BUFFER
    raise ProblemConstructionError(
        f"cannot infer calling convention of {name} with {arity} positional arguments; "
        f"expected {value_arity} (value returning) or {value_arity + 1} (buffer writing), "
        "or pass inplace= explicitly"
    )


def _prepare_mass_matrix(mass_matrix: Any) -> Optional[np.ndarray]:
    if mass_matrix is None:
        return None
    m = np.array(mass_matrix, dtype=float)
    if m.ndim != 2 or m.shape[0] != m.shape[1]:
        raise ProblemConstructionError(f"mass matrix must be square, got shape {m.shape}")
    m.setflags(write=False)
    return m


class _ProblemFunction:
    """Base wrapper; subclasses fix the value-returning arity."""
    _VALUE_ARITY = 3
    _LABEL = "function"

    def __init__(
        self,
        f: Callable,
        *,
        inplace: Optional[bool] = None,
        initialization_data: Optional[OverrideInitData] = None,
    ):
        self._f = f
        self._convention = _infer_convention(f, self._VALUE_ARITY, self._LABEL, inplace)
        if initialization_data is not None and not isinstance(initialization_data, OverrideInitData):
            raise ProblemConstructionError("initialization_data must be an OverrideInitData instance")
        self._initialization_data = initialization_data

    @property
    def f(self) -> Callable:
        return self._f

    @property
    def convention(self) -> CallingConvention:
        return self._convention

    @property
    def isinplace(self) -> bool:
        return self._convention is CallingConvention.BUFFER

    @property
    def initialization_data(self) -> Optional[OverrideInitData]:
        return self._initialization_data

    def __call__(self, *args):
        return self._f(*args)


class MassMatrixFunction(_ProblemFunction):
    def __init__(self, f: Callable, *, mass_matrix: Any = None, **kwargs):
        super().__init__(f, **kwargs)
        self._mass_matrix = _prepare_mass_matrix(mass_matrix)

    @property
    def mass_matrix(self) -> Optional[np.ndarray]:
        """The mass matrix, or None for the identity."""
        return self._mass_matrix

    @property
    def has_identity_mass_matrix(self) -> bool:
        m = self._mass_matrix
        return m is None or np.array_equal(m, np.eye(m.shape[0]))

    def algebraic_rows(self) -> np.ndarray:
        """Boolean mask of the rows of the mass matrix that are entirely zero."""
        if self._mass_matrix is None:
            return np.zeros(0, dtype=bool)
        return np.all(self._mass_matrix == 0.0, axis=1)

    def default_neutral(self) -> bool:
        """A non-identity mass matrix whose determinant is not 1."""
        m = self._mass_matrix
        if m is None:
            return False
        return not self.has_identity_mass_matrix and float(np.linalg.det(m)) != 1.0


class ODEFunction(MassMatrixFunction):
    """``f(u, p, t) -> du`` or ``f(du, u, p, t)``, with ``M du/dt = f``."""
    _VALUE_ARITY = 3
    _LABEL = "ODE function"


class DAEFunction(_ProblemFunction):
    """Fully implicit residual ``f(du, u, p, t) -> resid`` or ``f(resid, du, u, p, t)``."""
    _VALUE_ARITY = 4
    _LABEL = "DAE residual function"


class DDEFunction(MassMatrixFunction):
    """
    Delay drift ``f(u, h, p, t) -> du`` or ``f(du, u, h, p, t)``.

    :param history_forms: the history forms f calls. If None, plain value
        evaluation in f's own convention is assumed (plus the first
        derivative for neutral problems).
    """
    _VALUE_ARITY = 4
    _LABEL = "DDE drift function"

    def __init__(self, f: Callable, *, history_forms: Optional[Iterable[HistoryForm]] = None, **kwargs):
        super().__init__(f, **kwargs)
        self._history_forms = None if history_forms is None else frozenset(history_forms)

    @property
    def history_forms(self) -> Optional[FrozenSet[HistoryForm]]:
        return self._history_forms


class SDDEFunction(DDEFunction):
    """Drift and diffusion of a stochastic delay problem, sharing one convention."""
    _LABEL = "SDDE drift function"

    def __init__(self, f: Callable, g: Callable, **kwargs):
        super().__init__(f, **kwargs)
        g_convention = _infer_convention(g, self._VALUE_ARITY, "SDDE diffusion function", kwargs.get("inplace"))
        if g_convention is not self._convention:
            raise ProblemConstructionError(
                f"drift ({self._convention.value}) and diffusion ({g_convention.value}) "
                "must use the same calling convention"
            )
        self._g = g

    @property
    def g(self) -> Callable:
        return self._g


__all__ = [
    "ProblemConstructionError",
    "OverrideInitData",
    "MassMatrixFunction",
    "ODEFunction",
    "DAEFunction",
    "DDEFunction",
    "SDDEFunction",
]
