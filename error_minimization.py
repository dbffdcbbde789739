"""Numerically guarded primitives for residual checks.

The consistency check compares residuals against error weights that scale
with the magnitude of the state.  Badly scaled systems (components that
differ by many orders of magnitude) make a plain absolute threshold
useless, so every norm here is taken after dividing by a per-component
weight ``abstol + reltol * |u_i|``.

Example usage
-------------

code-block: python

    from error_minimization import error_weights, scaled_max_norm

    w = error_weights(u, abstol=1e-6, reltol=1e-3)
    ok = scaled_max_norm(residual, w) <= 1.0
"""

from __future__ import annotations

from typing import Optional, Tuple, Union

import numpy as np

DEFAULT_ABSTOL = 1e-6
DEFAULT_RELTOL = 1e-3

ArrayLike = Union[float, np.ndarray]


def safe_divide(numerator: ArrayLike, denominator: ArrayLike, eps: float = 1e-15) -> np.ndarray:
    """Stable divide with eps regularization of near-zero denominators."""
    a = np.asarray(numerator, dtype=float)
    b = np.asarray(denominator, dtype=float)
    #Keep the sign of b; exact zeros are pushed to +eps.
    guarded = np.where(np.abs(b) < eps, np.where(b < 0, -eps, eps), b)
    return a / guarded


def resolve_tolerances(abstol: Optional[float], reltol: Optional[float]) -> Tuple[float, float]:
    """Fill missing tolerances with module defaults and validate them."""
    abstol = DEFAULT_ABSTOL if abstol is None else float(abstol)
    reltol = DEFAULT_RELTOL if reltol is None else float(reltol)
    if abstol < 0.0 or not np.isfinite(abstol):
        raise ValueError(f"absolute tolerance must be finite and non-negative, got {abstol}")
    if reltol < 0.0 or not np.isfinite(reltol):
        raise ValueError(f"relative tolerance must be finite and non-negative, got {reltol}")
    if abstol == 0.0 and reltol == 0.0:
        raise ValueError("absolute and relative tolerance cannot both be zero")
    return abstol, reltol


def error_weights(
    u: ArrayLike,
    abstol: float,
    reltol: float,
    shape: Optional[Tuple[int, ...]] = None,
) -> np.ndarray:
    """
    Returns the per-component error weights ``abstol + reltol * |u|``.

    :param u: the state the residual was evaluated at
    :param abstol: the absolute tolerance
    :param reltol: the relative tolerance
    :param shape: the shape of the residual the weights are for. If it
        differs from the shape of u (e.g. an implicit residual with a
        different number of equations), every weight uses ``max |u|``.
    :return: an array of weights with the requested shape
    """
    u_arr = np.abs(np.asarray(u, dtype=float))
    if shape is None or u_arr.shape == tuple(shape):
        return abstol + reltol * u_arr
    scale = float(u_arr.max()) if u_arr.size else 0.0
    return np.full(shape, abstol + reltol * scale)


def scaled_residual(residual: ArrayLike, weights: ArrayLike) -> np.ndarray:
    return np.abs(safe_divide(residual, weights))


def scaled_max_norm(residual: ArrayLike, weights: ArrayLike) -> float:
    """Componentwise-dominant norm: ``max_i |r_i| / w_i`` (0 when empty)."""
    scaled = scaled_residual(residual, weights)
    if scaled.size == 0:
        return 0.0
    #NaN residuals must never pass a tolerance test.
    if np.isnan(scaled).any():
        return float("inf")
    return float(scaled.max())


def violating_components(residual: ArrayLike, weights: ArrayLike) -> Tuple[int, ...]:
    """Flat indices of the components whose scaled residual exceeds 1."""
    scaled = scaled_residual(residual, weights).ravel()
    bad = ~(scaled <= 1.0)
    return tuple(int(i) for i in np.flatnonzero(bad))


__all__ = [
    "DEFAULT_ABSTOL",
    "DEFAULT_RELTOL",
    "safe_divide",
    "resolve_tolerances",
    "error_weights",
    "scaled_residual",
    "scaled_max_norm",
    "violating_components",
]
