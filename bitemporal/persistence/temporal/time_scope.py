# Recidiviz - a data platform for criminal justice reform
# Copyright (C) 2025 Recidiviz, Inc.
#
# This program is free software: you can redistribute it and/or modify
# it under the terms of the GNU General Public License as published by
# the Free Software Foundation, either version 3 of the License, or
# (at your option) any later version.
#
# This program is distributed in the hope that it will be useful,
# but WITHOUT ANY WARRANTY; without even the implied warranty of
# MERCHANTABILITY or FITNESS FOR A PARTICULAR PURPOSE.  See the
# GNU General Public License for more details.
#
# You should have received a copy of the GNU General Public License
# along with this program.  If not, see <https://www.gnu.org/licenses/>.
# =============================================================================
"""Ambient "as of" bindings for each time dimension.

Bindings are pushed onto a stack that is scoped to the current execution
context (thread or asyncio task) via a ContextVar, so concurrent units of work
never see each other's bindings. A nested scope shadows outer bindings for the
same dimension only, and the outer stack is restored exactly when the block
exits, whether or not it raised.

    with time_scopes.at({"validity": datetime(2020, 1, 1, tzinfo=timezone.utc)}):
        ...
"""
from contextlib import contextmanager
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Dict, Iterable, Iterator, Mapping, Optional, Tuple

import attr

Bindings = Mapping[str, datetime]


def _to_sorted_pairs(
    pairs: Iterable[Tuple[str, datetime]]
) -> Tuple[Tuple[str, datetime], ...]:
    return tuple(sorted(dict(pairs).items()))


def _validate_pairs(
    _instance: "TimeScope",
    _attribute: attr.Attribute,
    pairs: Tuple[Tuple[str, datetime], ...],
) -> None:
    for dimension, instant in pairs:
        if not isinstance(dimension, str) or not dimension:
            raise ValueError(f"Invalid time dimension name [{dimension}]")
        if not isinstance(instant, datetime):
            raise ValueError(
                f"Expected datetime for time dimension [{dimension}], found "
                f"[{type(instant)}]"
            )


@attr.s(frozen=True)
class TimeScope:
    """An immutable mapping from time dimension name to as-of instant."""

    _pairs: Tuple[Tuple[str, datetime], ...] = attr.ib(
        default=(), converter=_to_sorted_pairs, validator=_validate_pairs
    )

    @classmethod
    def of(
        cls, bindings: Optional[Bindings] = None, **kwargs: datetime
    ) -> "TimeScope":
        merged: Dict[str, datetime] = dict(bindings or {})
        merged.update(kwargs)
        return cls(merged.items())

    @property
    def bindings(self) -> Dict[str, datetime]:
        return dict(self._pairs)

    @property
    def dimensions(self) -> Tuple[str, ...]:
        return tuple(dimension for dimension, _ in self._pairs)

    @property
    def is_empty(self) -> bool:
        return not self._pairs

    def lookup(self, dimension: str) -> Optional[datetime]:
        """Returns the instant bound to |dimension|, or None if there is none."""
        return self.bindings.get(dimension)

    def merged_with(self, other: "TimeScope") -> "TimeScope":
        """Returns a scope with the bindings of both scopes, where |other| wins
        for any dimension bound in both."""
        merged = self.bindings
        merged.update(other.bindings)
        return TimeScope(merged.items())

    def restricted_to(self, dimensions: Iterable[str]) -> "TimeScope":
        wanted = set(dimensions)
        return TimeScope(
            (dimension, instant)
            for dimension, instant in self._pairs
            if dimension in wanted
        )


class TimeScopeRegistry:
    """Stack of TimeScope frames owned by the current execution context."""

    def __init__(self, name: str = "time_scope_stack") -> None:
        self._stack: ContextVar[Tuple[TimeScope, ...]] = ContextVar(name, default=())

    @contextmanager
    def at(
        self, bindings: Optional[Bindings] = None, **kwargs: datetime
    ) -> Iterator[TimeScope]:
        """Binds each dimension in |bindings| for the duration of the block and
        yields the resulting effective scope."""
        frame = TimeScope.of(bindings, **kwargs)
        token = self._stack.set(self._stack.get() + (frame,))
        try:
            yield self.current()
        finally:
            self._stack.reset(token)

    def current(self) -> TimeScope:
        """Returns the effective scope, where inner frames shadow outer ones."""
        scope = TimeScope()
        for frame in self._stack.get():
            scope = scope.merged_with(frame)
        return scope

    def lookup(self, dimension: str) -> Optional[datetime]:
        for frame in reversed(self._stack.get()):
            instant = frame.lookup(dimension)
            if instant is not None:
                return instant
        return None

    @property
    def depth(self) -> int:
        return len(self._stack.get())


time_scopes = TimeScopeRegistry()


def resolve_time(
    dimension: str,
    time: Optional[datetime] = None,
    scope: Optional[TimeScope] = None,
    registry: TimeScopeRegistry = time_scopes,
) -> datetime:
    """Returns |time| if given, else the instant bound to |dimension| in |scope|
    (or in the ambient registry when no scope is passed), else the current
    wall-clock time."""
    if time is not None:
        return time
    instant = scope.lookup(dimension) if scope is not None else registry.lookup(dimension)
    if instant is not None:
        return instant
    return datetime.now(tz=timezone.utc)
