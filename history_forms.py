"""
Calling conventions and history evaluation forms for delay problems.

A history function ``h`` is consulted for every reference to a time
before the start of the problem.  User drift functions may call it in
several shapes:

- ``h(p, t)``: value, returned
- ``h(p, t, out=buf)``: value, written into ``buf``
- ``h(p, t, deriv=i)``: ``i``-th derivative (either convention)
- ``h(p, t, idxs=[...])``: only the requested output components

Every call is turned into a :class:`HistoryRequest` (a calling convention
paired with one of the closed set of request kinds :class:`Value`,
:class:`Derivative` and :class:`IndexRestricted`) and matched explicitly
against the forms the history function declared.  Problems check once, at
construction, that the history implements every form the drift function
says it uses.
"""

from __future__ import annotations

import inspect
from dataclasses import dataclass
from enum import Enum
from typing import Any, Callable, FrozenSet, Iterable, NamedTuple, Optional, Sequence, Tuple, Union

import numpy as np


class HistoryFormError(ValueError):
    """Raised when a history function does not implement a requested form."""


class CallingConvention(Enum):
    """
    How a producer hands back its result.

    VALUE: the producer allocates and returns a new container.
    BUFFER: the producer writes into a caller-supplied buffer.
    """
    VALUE = "value"
    BUFFER = "buffer"


class HistoryKind(Enum):
    VALUE = "value"
    DERIVATIVE = "derivative"
    INDEX_RESTRICTED = "index_restricted"


@dataclass(frozen=True)
class Value:
    """Plain evaluation of the history."""

    @property
    def kind(self) -> HistoryKind:
        return HistoryKind.VALUE


@dataclass(frozen=True)
class Derivative:
    """Evaluation of the ``order``-th time derivative of the history."""
    order: int

    def __post_init__(self):
        if int(self.order) != self.order or self.order < 1:
            raise HistoryFormError(f"derivative order must be a positive integer, got {self.order!r}")

    @property
    def kind(self) -> HistoryKind:
        return HistoryKind.DERIVATIVE


@dataclass(frozen=True)
class IndexRestricted:
    """Evaluation of the output components ``idxs`` only."""
    idxs: Tuple[int, ...]

    def __post_init__(self):
        object.__setattr__(self, "idxs", tuple(int(i) for i in np.atleast_1d(self.idxs)))

    @property
    def kind(self) -> HistoryKind:
        return HistoryKind.INDEX_RESTRICTED


RequestKind = Union[Value, Derivative, IndexRestricted]


class HistoryForm(NamedTuple):
    """A capability: one request kind under one calling convention."""
    convention: CallingConvention
    kind: HistoryKind

    def __str__(self) -> str:
        return f"{self.kind.value}/{self.convention.value}"


@dataclass(frozen=True)
class HistoryRequest:
    convention: CallingConvention
    what: RequestKind

    @property
    def form(self) -> HistoryForm:
        return HistoryForm(self.convention, self.what.kind)


def positional_arity(func: Callable) -> Optional[int]:
    """
    Returns the number of required positional parameters of func, or None
    if it accepts ``*args`` (the arity cannot be decided then).
    """
    try:
        signature = inspect.signature(func)
    except (TypeError, ValueError):
        return None
    count = 0
    for param in signature.parameters.values():
        if param.kind is inspect.Parameter.VAR_POSITIONAL:
            return None
        if (
            param.kind in (inspect.Parameter.POSITIONAL_ONLY, inspect.Parameter.POSITIONAL_OR_KEYWORD)
            and param.default is inspect.Parameter.empty
        ):
            count += 1
    return count


def _accepts_keyword(func: Callable, name: str) -> bool:
    try:
        params = inspect.signature(func).parameters
    except (TypeError, ValueError):
        return False
    return name in params or any(p.kind is inspect.Parameter.VAR_KEYWORD for p in params.values())


class HistoryFunction:
    """
    A history function together with the forms it implements.

    :param value: ``(p, t) -> array``
    :param value_into: ``(out, p, t) -> None``, writes the value into out
    :param derivative: ``(p, t, order) -> array``
    :param derivative_into: ``(out, p, t, order) -> None``
    :param indexed: whether the value callables accept an ``idxs`` keyword
        restricting the evaluation to some output components
    """

    def __init__(
        self,
        value: Optional[Callable[[Any, float], Any]] = None,
        value_into: Optional[Callable[[np.ndarray, Any, float], None]] = None,
        derivative: Optional[Callable[[Any, float, int], Any]] = None,
        derivative_into: Optional[Callable[[np.ndarray, Any, float, int], None]] = None,
        indexed: bool = False,
    ):
        if value is None and value_into is None and derivative is None and derivative_into is None:
            raise HistoryFormError("history function must implement at least one form")
        self._value = value
        self._value_into = value_into
        self._derivative = derivative
        self._derivative_into = derivative_into

        forms = set()
        if value is not None:
            forms.add(HistoryForm(CallingConvention.VALUE, HistoryKind.VALUE))
        if value_into is not None:
            forms.add(HistoryForm(CallingConvention.BUFFER, HistoryKind.VALUE))
        if derivative is not None:
            forms.add(HistoryForm(CallingConvention.VALUE, HistoryKind.DERIVATIVE))
        if derivative_into is not None:
            forms.add(HistoryForm(CallingConvention.BUFFER, HistoryKind.DERIVATIVE))
        if indexed:
            if value is not None:
                forms.add(HistoryForm(CallingConvention.VALUE, HistoryKind.INDEX_RESTRICTED))
            if value_into is not None:
                forms.add(HistoryForm(CallingConvention.BUFFER, HistoryKind.INDEX_RESTRICTED))
        self._forms: FrozenSet[HistoryForm] = frozenset(forms)

    @classmethod
    def wrap(cls, h: Union[HistoryFunction, Callable]) -> HistoryFunction:
        """
        Adopts a plain callable: ``h(p, t)`` is the value form, ``h(out, p, t)``
        the buffer form.  An ``idxs`` keyword marks it as index-restricted.
        """
        if isinstance(h, HistoryFunction):
            return h
        if not callable(h):
            raise HistoryFormError(f"history must be callable, got {type(h).__name__}")
        arity = positional_arity(h)
        indexed = _accepts_keyword(h, "idxs")
        if arity == 2:
            return cls(value=h, indexed=indexed)
        if arity == 3:
            return cls(value_into=h, indexed=indexed)
        raise HistoryFormError(
            f"cannot infer the calling convention of history function with arity {arity}; "
            "expected h(p, t) or h(out, p, t), or build a HistoryFunction explicitly"
        )

    @property
    def forms(self) -> FrozenSet[HistoryForm]:
        return self._forms

    def supports(self, form: HistoryForm) -> bool:
        return form in self._forms

    def require(self, forms: Iterable[HistoryForm], context: str = "drift function") -> None:
        """Raises HistoryFormError listing every form in forms not implemented."""
        missing = sorted(str(f) for f in forms if f not in self._forms)
        if missing:
            raise HistoryFormError(
                f"history function does not implement forms required by the {context}: {', '.join(missing)} "
                f"(implemented: {', '.join(sorted(str(f) for f in self._forms)) or 'none'})"
            )

    def evaluate(self, request: HistoryRequest, p: Any, t: float, out: Optional[np.ndarray] = None) -> Any:
        """Evaluates one explicit request."""
        if not self.supports(request.form):
            raise HistoryFormError(f"history function does not implement the {request.form} form")
        buffered = request.convention is CallingConvention.BUFFER
        if buffered and out is None:
            raise HistoryFormError(f"the {request.form} form requires an output buffer")

        what = request.what
        if isinstance(what, Value):
            if buffered:
                self._value_into(out, p, t)
                return out
            return self._value(p, t)
        if isinstance(what, Derivative):
            if buffered:
                self._derivative_into(out, p, t, what.order)
                return out
            return self._derivative(p, t, what.order)
        if isinstance(what, IndexRestricted):
            idxs = list(what.idxs)
            if buffered:
                self._value_into(out, p, t, idxs=idxs)
                return out
            return self._value(p, t, idxs=idxs)
        raise TypeError(f"unknown history request kind {type(what).__name__}")

    def __call__(
        self,
        p: Any,
        t: float,
        *,
        out: Optional[np.ndarray] = None,
        deriv: int = 0,
        idxs: Optional[Sequence[int]] = None,
    ) -> Any:
        return self.evaluate(build_request(out is not None, deriv, idxs), p, t, out)


def build_request(buffered: bool, deriv: int = 0, idxs: Optional[Sequence[int]] = None) -> HistoryRequest:
    """Turns the keyword call shape into an explicit HistoryRequest."""
    convention = CallingConvention.BUFFER if buffered else CallingConvention.VALUE
    if idxs is not None:
        if deriv:
            raise HistoryFormError("index-restricted evaluation of history derivatives is not supported")
        return HistoryRequest(convention, IndexRestricted(tuple(idxs)))
    if deriv:
        return HistoryRequest(convention, Derivative(deriv))
    return HistoryRequest(convention, Value())


def default_history_forms(
    convention: CallingConvention,
    neutral: bool,
    history: Optional[HistoryFunction] = None,
) -> FrozenSet[HistoryForm]:
    """
    The forms assumed for a drift function that declares none.

    Each needed kind takes the drift's convention.  When a history is given
    and implements the kind only in the other convention, that one is
    assumed instead, so an ``h(p, t)`` history serves a drift that writes
    into a buffer.
    """
    other = CallingConvention.VALUE if convention is CallingConvention.BUFFER else CallingConvention.BUFFER
    kinds = [HistoryKind.VALUE, HistoryKind.DERIVATIVE] if neutral else [HistoryKind.VALUE]
    forms = set()
    for kind in kinds:
        form = HistoryForm(convention, kind)
        if history is not None and not history.supports(form) and history.supports(HistoryForm(other, kind)):
            form = HistoryForm(other, kind)
        forms.add(form)
    return frozenset(forms)


__all__ = [
    "HistoryFormError",
    "CallingConvention",
    "HistoryKind",
    "Value",
    "Derivative",
    "IndexRestricted",
    "HistoryForm",
    "HistoryRequest",
    "HistoryFunction",
    "build_request",
    "default_history_forms",
    "positional_arity",
]
