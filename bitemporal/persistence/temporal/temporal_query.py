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
"""As-of queries over one or more time dimensions.

Filtering happens in a do_orm_execute listener on every Session: each ORM
select, including the select behind a lazy relationship load, is limited to
the rows of temporal entities that were effective at the instants bound in the
current time scope. Queries on application-versioned entities with no bound
instant only return head revisions.

    with time_scopes.at(validity=last_year):
        session.execute(select(Employee))  # revisions effective last year

    books = session.scalars(as_of(Book, system_period=yesterday)).all()
    books[0].author  # the author's history row as of yesterday
"""
from datetime import datetime
from typing import Any, Dict, List, Mapping, Optional, Type

from sqlalchemy import Result, Select, and_, event, inspect, select
from sqlalchemy.orm import ORMExecuteState, Session, with_loader_criteria
from sqlalchemy.orm.interfaces import UserDefinedOption
from sqlalchemy.sql.elements import ColumnElement

from bitemporal.persistence.database.constants import SYSTEM_PERIOD_COLUMN_NAME
from bitemporal.persistence.temporal.application_versioning import (
    ApplicationVersioned,
)
from bitemporal.persistence.temporal.history_models import (
    ASSOCIATION_INSTANT_PARAM,
    HistoryEntity,
    has_versioned_associations,
    history_model,
)
from bitemporal.persistence.temporal.temporal_range import (
    point_in_time_predicate,
    range_end,
)
from bitemporal.persistence.temporal.time_scope import TimeScope, time_scopes

# Execution option that turns off the default head revision filter.
ALL_REVISIONS = "all_revisions"


class TemporalScopeOption(UserDefinedOption):
    """Carries the time scope of a statement to the statements that lazily load
    relationships of its results."""

    propagate_to_loaders = True

    def __init__(self, scope: TimeScope, propagate: bool = True):
        super().__init__(payload=scope)
        self.propagate_to_loaders = propagate

    @property
    def scope(self) -> TimeScope:
        return self.payload


def _range_attribute(model_cls: Type, dimension: str) -> Any:
    for prop in inspect(model_cls).column_attrs:
        if prop.columns[0].name == dimension:
            return getattr(model_cls, prop.key)
    raise ValueError(
        f"[{model_cls.__name__}] has no time dimension column [{dimension}]"
    )


def time_dimensions(model_cls: Type) -> tuple:
    return tuple(getattr(model_cls, "__time_dimensions__", ()))


def as_of_predicate(
    model_cls: Type, instants: Mapping[str, datetime]
) -> Optional[ColumnElement]:
    """Returns the conjunction of point in time predicates for every time
    dimension of |model_cls| that has an instant in |instants|, or None if none
    do."""
    clauses = [
        point_in_time_predicate(_range_attribute(model_cls, dimension), instants[dimension])
        for dimension in time_dimensions(model_cls)
        if instants.get(dimension) is not None
    ]
    if not clauses:
        return None
    return and_(*clauses)


def head_predicate(model_cls: Type[ApplicationVersioned]) -> ColumnElement:
    """Rows that are the head revision of their identity."""
    return range_end(_range_attribute(model_cls, model_cls.get_time_dimension())).is_(
        None
    )


def as_of(
    model_cls: Type,
    time: Optional[datetime] = None,
    scope: Optional[TimeScope] = None,
    **instants: datetime,
) -> Select:
    """Returns a select of the history model of |model_cls| as of the given
    instants. |time| applies to every time dimension of the history model, and
    named |instants| override it. Instants not given explicitly come from
    |scope|, or the current time scope.

    Relationships lazily loaded from the results are filtered at the same
    instants.
    """
    history_cls = history_model(model_cls)
    bindings: Dict[str, datetime] = {}
    if time is not None:
        bindings = {dimension: time for dimension in time_dimensions(history_cls)}
    bindings.update(instants)

    base_scope = scope if scope is not None else time_scopes.current()
    return select(history_cls).options(
        TemporalScopeOption(base_scope.merged_with(TimeScope.of(bindings)))
    )


def at_time(model_cls: Type, time: datetime) -> Select:
    """Returns a select of the history model of |model_cls| at |time| in each of
    its own time dimensions. Relationships loaded from the results are not
    filtered at |time|."""
    history_cls = history_model(model_cls)
    scope = TimeScope.of(
        {dimension: time for dimension in time_dimensions(history_cls)}
    )
    return select(history_cls).options(TemporalScopeOption(scope, propagate=False))


def all_revisions(statement: Select) -> Select:
    """Lifts the head revision filter from |statement|."""
    return statement.execution_options(**{ALL_REVISIONS: True})


def _statement_scope(execute_state: ORMExecuteState) -> TimeScope:
    for option in execute_state.user_defined_options:
        if isinstance(option, TemporalScopeOption):
            return option.scope
    return time_scopes.current()


def _criteria_for(
    model_cls: Type, scope: TimeScope, include_all_revisions: bool
) -> Optional[ColumnElement]:
    predicate = as_of_predicate(model_cls, scope.bindings)
    if predicate is not None:
        return predicate
    if (
        not include_all_revisions
        and issubclass(model_cls, ApplicationVersioned)
        and not issubclass(model_cls, HistoryEntity)
    ):
        return head_predicate(model_cls)
    return None


def _temporal_classes(execute_state: ORMExecuteState) -> List[Type]:
    """Every mapped class with a time dimension, starting with the classes the
    statement selects. Criteria for the others apply where they are joined or
    eagerly loaded."""
    candidates = [mapper.class_ for mapper in execute_state.all_mappers]
    pending: List[Type] = [ApplicationVersioned, HistoryEntity]
    while pending:
        cls = pending.pop(0)
        candidates.append(cls)
        pending.extend(cls.__subclasses__())
    return [
        cls
        for cls in dict.fromkeys(candidates)
        if time_dimensions(cls) and inspect(cls, raiseerr=False) is not None
    ]


@event.listens_for(Session, "do_orm_execute")
def _apply_time_scope(execute_state: ORMExecuteState) -> Optional[Result]:
    if not execute_state.is_select or execute_state.is_column_load:
        return None

    scope = _statement_scope(execute_state)
    include_all_revisions = execute_state.execution_options.get(ALL_REVISIONS, False)

    options = []
    for model_cls in _temporal_classes(execute_state):
        criteria = _criteria_for(model_cls, scope, include_all_revisions)
        if criteria is not None:
            options.append(
                with_loader_criteria(
                    model_cls, criteria, include_aliases=True, propagate_to_loaders=False
                )
            )
    if options:
        execute_state.statement = execute_state.statement.options(*options)

    # Associations through system versioned secondary tables default to the
    # current ones.
    instant = scope.lookup(SYSTEM_PERIOD_COLUMN_NAME)
    if instant is None or not has_versioned_associations():
        return None
    if execute_state.parameters is None:
        execute_state.parameters = {}
    if ASSOCIATION_INSTANT_PARAM in execute_state.parameters:
        return None
    return execute_state.invoke_statement(params={ASSOCIATION_INSTANT_PARAM: instant})
