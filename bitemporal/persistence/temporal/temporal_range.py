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
"""Half-open time intervals and the storage constraint that keeps the intervals
of a single identity from overlapping.

Both application time (validity) and system time (system_period) are stored as
PostgreSQL tstzrange columns with [) bounds. An absent end means the interval
is unbounded in the future.
"""
from datetime import datetime
from typing import Any, List, Optional, Sequence, Tuple

import attr
from sqlalchemy import DateTime, and_, func, or_, text
from sqlalchemy.dialects.postgresql import TSTZRANGE, ExcludeConstraint, Range
from sqlalchemy.engine import Connection, Dialect
from sqlalchemy.sql.elements import ColumnElement
from sqlalchemy.types import TypeDecorator


@attr.s(frozen=True)
class TemporalRange:
    """The half-open interval [start, end)."""

    start: datetime = attr.ib(validator=attr.validators.instance_of(datetime))
    end: Optional[datetime] = attr.ib(
        default=None,
        validator=attr.validators.optional(attr.validators.instance_of(datetime)),
    )

    @end.validator
    def _end_after_start(self, _attribute: attr.Attribute, value: Optional[datetime]) -> None:
        if value is not None and not self.start < value:
            raise ValueError(
                f"Range end [{value}] must be after range start [{self.start}]"
            )

    @property
    def is_open(self) -> bool:
        return self.end is None

    def contains(self, instant: datetime) -> bool:
        return self.start <= instant and (self.end is None or instant < self.end)

    def overlaps(self, other: "TemporalRange") -> bool:
        starts_before_other_ends = other.end is None or self.start < other.end
        other_starts_before_end = self.end is None or other.start < self.end
        return starts_before_other_ends and other_starts_before_end

    def closed_at(self, time: datetime) -> "TemporalRange":
        """Returns a copy of this range ending at |time|."""
        return attr.evolve(self, end=time)

    def to_range(self) -> Range:
        return Range(self.start, self.end, bounds="[)")

    @classmethod
    def from_range(cls, value: Range) -> Optional["TemporalRange"]:
        if value.isempty:
            return None
        return cls(start=value.lower, end=value.upper)

    def __str__(self) -> str:
        end = self.end.isoformat() if self.end else ""
        return f"[{self.start.isoformat()}, {end})"


class TemporalRangeType(TypeDecorator):
    """Stores a TemporalRange in a tstzrange column."""

    impl = TSTZRANGE
    cache_ok = True

    def process_bind_param(self, value: Any, dialect: Dialect) -> Any:
        if isinstance(value, TemporalRange):
            return value.to_range()
        return value

    def process_result_value(self, value: Any, dialect: Dialect) -> Any:
        if value is None:
            return None
        return TemporalRange.from_range(value)


def range_start(range_column: Any) -> ColumnElement:
    return func.lower(range_column, type_=DateTime(timezone=True))


def range_end(range_column: Any) -> ColumnElement:
    return func.upper(range_column, type_=DateTime(timezone=True))


def point_in_time_predicate(range_column: Any, instant: Any) -> ColumnElement:
    """Rows whose [start, end) |range_column| contains |instant|."""
    return and_(
        range_start(range_column) <= instant,
        or_(range_end(range_column).is_(None), instant < range_end(range_column)),
    )


def _exclusion_elements(
    identity_columns: Sequence[str], range_column: str
) -> List[Tuple[str, str]]:
    if not identity_columns:
        raise ValueError(
            f"Exclusion constraint on [{range_column}] requires at least one "
            f"identity column"
        )
    return [(column, "=") for column in identity_columns] + [(range_column, "&&")]


def exclusion_constraint_expression(
    identity_columns: Sequence[str], range_column: str
) -> str:
    """Returns the expression of the exclusion constraint that prevents two rows
    with the same identity from having overlapping |range_column| values, e.g.
    "id WITH =, validity WITH &&".
    """
    return ", ".join(
        f"{column} WITH {operator}"
        for column, operator in _exclusion_elements(identity_columns, range_column)
    )


def build_exclusion_constraint(
    identity_columns: Sequence[str], range_column: str, name: Optional[str] = None
) -> ExcludeConstraint:
    """Returns the GiST ExcludeConstraint whose elements are those of
    |exclusion_constraint_expression|."""
    return ExcludeConstraint(
        *_exclusion_elements(identity_columns, range_column),
        using="gist",
        name=name,
    )


def ensure_btree_gist(_target: Any, connection: Connection, **_kw: Any) -> None:
    """Enables the btree_gist extension, which the exclusion constraints need in
    order to compare scalar identity columns with '=' inside a GiST index.

    Signature matches SQLAlchemy DDL event listeners so it can be attached with
    `listeners=[("before_create", ensure_btree_gist)]`.
    """
    if connection.dialect.name != "postgresql":
        return
    connection.execute(text("CREATE EXTENSION IF NOT EXISTS btree_gist"))
