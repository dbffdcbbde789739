"""
Uniform access to "the current numerical state".

Initialization reads the state, parameters, time and (for implicit forms)
the state derivative through :class:`ValueProvider`.  A live stepping
engine and an inert :class:`ProblemState` snapshot both implement it;
nothing downstream may depend on which one it was handed.

Every array getter supports both calling conventions: without ``out`` a
new array is returned, with ``out`` the values are copied into the given
buffer, which is returned.
"""

from __future__ import annotations

from abc import ABC, abstractmethod
from typing import Any, Callable, Optional

import numpy as np


def _deliver(values: np.ndarray, out: Optional[np.ndarray]) -> np.ndarray:
    if out is None:
        return np.array(values, copy=True)
    if out.shape != np.shape(values):
        raise ValueError(f"output buffer shape {out.shape} does not match value shape {np.shape(values)}")
    out[...] = values
    return out


class ValueProvider(ABC):
    """Read/write accessor over a current (u, p, t, du)."""

    @abstractmethod
    def _state(self) -> np.ndarray:
        """The stored state, without copying."""

    @abstractmethod
    def _state_derivative(self) -> Optional[np.ndarray]:
        """The stored state derivative (None if unavailable), without copying."""

    @abstractmethod
    def current_params(self) -> Any:
        pass

    @abstractmethod
    def current_time(self) -> float:
        pass

    @abstractmethod
    def set_state(self, u: Any) -> None:
        pass

    @abstractmethod
    def set_params(self, p: Any) -> None:
        pass

    def current_state(self, out: Optional[np.ndarray] = None) -> np.ndarray:
        return _deliver(self._state(), out)

    def current_history(self) -> Optional[Callable]:
        """
        The lookup delay terms should use at the current time, or None when
        the problem's own history function applies.
        """
        return None

    @property
    def has_state_derivative(self) -> bool:
        return self._state_derivative() is not None

    def current_state_derivative(self, out: Optional[np.ndarray] = None) -> np.ndarray:
        du = self._state_derivative()
        if du is None:
            raise RuntimeError(f"{type(self).__name__} does not hold a state derivative")
        return _deliver(du, out)


class ProblemState(ValueProvider):
    """
    A transient snapshot of (u, p, t, du).

    The arrays are copied on construction, so writing to the snapshot never
    touches the caller's containers.
    """

    def __init__(self, u: Any, p: Any = None, t: float = 0.0, du: Any = None, h: Optional[Callable] = None):
        self._u = np.array(u, dtype=float)
        self._p = p
        self._t = float(t)
        self._du = None if du is None else np.array(du, dtype=float)
        if self._du is not None and self._du.shape != self._u.shape:
            raise ValueError(f"derivative shape {self._du.shape} must match state shape {self._u.shape}")
        self._h = h

    @classmethod
    def from_provider(cls, provider: ValueProvider) -> ProblemState:
        du = provider.current_state_derivative() if provider.has_state_derivative else None
        return cls(
            provider.current_state(),
            provider.current_params(),
            provider.current_time(),
            du,
            provider.current_history(),
        )

    def current_history(self) -> Optional[Callable]:
        return self._h

    def _state(self) -> np.ndarray:
        return self._u

    def _state_derivative(self) -> Optional[np.ndarray]:
        return self._du

    def current_params(self) -> Any:
        return self._p

    def current_time(self) -> float:
        return self._t

    def set_state(self, u: Any) -> None:
        self._u[...] = u

    def set_state_derivative(self, du: Any) -> None:
        if self._du is None:
            self._du = np.array(du, dtype=float)
        else:
            self._du[...] = du

    def set_params(self, p: Any) -> None:
        self._p = p

    def set_time(self, t: float) -> None:
        self._t = float(t)

    def __repr__(self) -> str:
        return f"ProblemState(u={self._u!r}, p={self._p!r}, t={self._t!r}, du={self._du!r})"


__all__ = ["ValueProvider", "ProblemState"]
