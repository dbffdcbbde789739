"""
Nonlinear problems and the engine that solves them.

The override initialization strategy hands an auxiliary
:class:`NonlinearProblem` to :func:`solve_nonlinear`, which delegates to
``scipy.optimize.root``.  The engine owns its own iteration limits; a
failure to converge is reported through ``NonlinearSolution.success``,
never raised.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, Callable, ClassVar, Dict, Optional

import numpy as np
from scipy.optimize import root

logger = logging.getLogger(__name__)


class NonlinearProblem:
    """
    ``f(x, p) = 0`` for the unknowns x, starting from u0.

    u0 and numeric sequence parameters are stored as mutable float arrays:
    initialization refresh hooks write current values into them.
    """

    def __init__(self, f: Callable[[np.ndarray, Any], Any], u0: Any, p: Any = None):
        if not callable(f):
            raise ValueError("nonlinear residual function must be callable")
        self.f = f
        self.u0 = np.array(u0, dtype=float)
        if isinstance(p, (list, tuple, np.ndarray)):
            p = np.array(p, dtype=float)
        self.p = p

    @property
    def is_trivial(self) -> bool:
        """Whether there are no unknowns to solve for."""
        return self.u0.size == 0

    def residual(self, x: np.ndarray) -> np.ndarray:
        return np.atleast_1d(np.asarray(self.f(x, self.p), dtype=float))

    def __repr__(self) -> str:
        return f"NonlinearProblem(u0={self.u0!r}, p={self.p!r})"


@dataclass
class NonlinearSolution:
    u: np.ndarray
    prob: NonlinearProblem
    success: bool
    message: str = ""
    residual: Optional[np.ndarray] = None
    nfev: int = 0

    @property
    def p(self) -> Any:
        """The parameters of the problem that was solved."""
        return self.prob.p


@dataclass(frozen=True)
class NonlinearSolveAlgorithm(ABC):
    """Base of the algorithm descriptors; maps onto a scipy.optimize.root method."""
    xtol: float = 1.49012e-08
    maxiter: Optional[int] = None

    method: ClassVar[str] = ""

    def __post_init__(self):
        if self.xtol <= 0.0:
            raise ValueError(f"xtol must be > 0, got {self.xtol}")
        if self.maxiter is not None and self.maxiter <= 0:
            raise ValueError(f"maxiter must be > 0, got {self.maxiter}")

    @abstractmethod
    def options(self) -> Dict[str, Any]:
        raise NotImplementedError


@dataclass(frozen=True)
class TrustRegion(NonlinearSolveAlgorithm):
    """MINPACK hybrid Powell method."""
    method: ClassVar[str] = "hybr"

    def options(self) -> Dict[str, Any]:
        opts: Dict[str, Any] = {"xtol": self.xtol}
        if self.maxiter is not None:
            opts["maxfev"] = self.maxiter
        return opts


@dataclass(frozen=True)
class LevenbergMarquardt(NonlinearSolveAlgorithm):
    """MINPACK Levenberg-Marquardt (least squares), robust for singular roots."""
    method: ClassVar[str] = "lm"

    def options(self) -> Dict[str, Any]:
        opts: Dict[str, Any] = {"xtol": self.xtol}
        if self.maxiter is not None:
            opts["maxiter"] = self.maxiter
        return opts


@dataclass(frozen=True)
class NewtonKrylov(NonlinearSolveAlgorithm):
    """Inexact Newton with a Krylov inverse-Jacobian approximation."""
    method: ClassVar[str] = "krylov"

    def options(self) -> Dict[str, Any]:
        opts: Dict[str, Any] = {"xtol": self.xtol}
        if self.maxiter is not None:
            opts["maxiter"] = self.maxiter
        return opts


def solve_nonlinear(prob: NonlinearProblem, alg: NonlinearSolveAlgorithm) -> NonlinearSolution:
    """
    Solves prob with alg.

    :param prob: the nonlinear problem
    :param alg: the algorithm descriptor
    :return: the solution; success is False when the engine did not converge
    """
    if not isinstance(alg, NonlinearSolveAlgorithm):
        raise TypeError(f"expected a NonlinearSolveAlgorithm, got {type(alg).__name__}")

    if prob.is_trivial:
        residual = prob.residual(prob.u0)
        success = bool(np.all(np.abs(residual) <= alg.xtol))
        logger.debug("trivial nonlinear problem, residual %s, success=%s", residual, success)
        return NonlinearSolution(np.copy(prob.u0), prob, success, "no unknowns", residual, 1)

    shape = prob.u0.shape

    def fun(x: np.ndarray) -> np.ndarray:
        return prob.residual(x.reshape(shape))

    result = root(fun, prob.u0.ravel(), method=alg.method, options=alg.options())
    u = np.asarray(result.x, dtype=float).reshape(shape)
    residual = np.asarray(result.fun, dtype=float) if getattr(result, "fun", None) is not None else prob.residual(u)
    logger.debug(
        "nonlinear solve (%s) finished: success=%s, message=%s, max residual=%.3e",
        alg.method,
        result.success,
        result.message,
        float(np.max(np.abs(residual))) if residual.size else 0.0,
    )
    return NonlinearSolution(
        u=u,
        prob=prob,
        success=bool(result.success),
        message=str(result.message),
        residual=residual,
        nfev=int(getattr(result, "nfev", 0) or 0),
    )


__all__ = [
    "NonlinearProblem",
    "NonlinearSolution",
    "NonlinearSolveAlgorithm",
    "TrustRegion",
    "LevenbergMarquardt",
    "NewtonKrylov",
    "solve_nonlinear",
]
