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
"""Resolves live entity classes to their history models.

A history model is a separate class mapped onto the history table of a system
versioned entity, or onto the entity's own table otherwise. It mirrors the
column attributes and relationships of the live class but never subclasses it:
history rows are snapshots with their own identity, and loading them must not
run any of the live class's behavior.

History model classes are named <Entity>History, e.g. BookHistory.
"""
import importlib
import logging
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple, Type

from sqlalchemy import DateTime, Select, Table, and_, bindparam, inspect, or_, select
from sqlalchemy.orm import Mapper, foreign, registry, relationship, remote
from sqlalchemy.orm.interfaces import MANYTOONE
from sqlalchemy.orm.relationships import RelationshipProperty

from bitemporal.persistence.database.constants import (
    HISTORY_CLASS_SUFFIX,
    SYSTEM_PERIOD_COLUMN_NAME,
)
from bitemporal.persistence.database.database_entity import DatabaseEntity
from bitemporal.persistence.errors import (
    AbstractEntityError,
    UnresolvedHistoryNameError,
)
from bitemporal.persistence.temporal.system_versioning import (
    history_table_of,
    is_system_versioned,
    mirror_source_columns,
)
from bitemporal.persistence.temporal.temporal_range import (
    point_in_time_predicate,
    range_end,
)

# Bind parameter holding the system_period instant at which associations through
# a system versioned secondary table are followed. When it is NULL, only the
# current associations are.
ASSOCIATION_INSTANT_PARAM = "association_system_period"

# Names of the system versioned secondary tables that history relationships go
# through.
_versioned_associations: Set[str] = set()


class HistoryEntity(DatabaseEntity):
    """Base class of every history model."""

    __live_model__: Type
    __time_dimensions__: Tuple[str, ...] = ()
    __system_versioned__: bool = False

    def __init__(self, **kwargs: Any):
        for key, value in kwargs.items():
            setattr(self, key, value)


def is_history_model(cls: Any) -> bool:
    return isinstance(cls, type) and issubclass(cls, HistoryEntity)


def _live_mapper(live_cls: Any) -> Mapper:
    name = getattr(live_cls, "__name__", repr(live_cls))
    if not isinstance(live_cls, type) or live_cls.__dict__.get("__abstract__", False):
        raise AbstractEntityError(name)
    mapper = inspect(live_cls, raiseerr=False)
    if not isinstance(mapper, Mapper):
        raise AbstractEntityError(name)
    return mapper


class HistoryModelResolver:
    """Builds history models on first use and returns the same class afterwards.

    All models built by one resolver are mapped in the resolver's own
    registry, separate from the registry of the live classes.
    """

    def __init__(self) -> None:
        self.registry = registry()
        self._models: Dict[Type, Type[HistoryEntity]] = {}

    def register(self, live_cls: Type, history_cls: Type[HistoryEntity]) -> None:
        """Uses |history_cls| as the history model of |live_cls| instead of
        deriving one."""
        self._models[live_cls] = history_cls

    def is_resolved(self, live_cls: Type) -> bool:
        return live_cls in self._models

    def history_model(self, live_cls: Type) -> Type[HistoryEntity]:
        if is_history_model(live_cls):
            return live_cls
        if live_cls in self._models:
            return self._models[live_cls]

        mapper = _live_mapper(live_cls)
        # Every class of a single table hierarchy shares one history table, so
        # the whole hierarchy is mapped at once.
        built = []
        for live_mapper in mapper.base_mapper.self_and_descendants:
            if live_mapper.class_ not in self._models:
                self._models[live_mapper.class_] = self._build(live_mapper)
                built.append(live_mapper)

        # Relationship targets are mapped now rather than while the history
        # mappers are being configured.
        for live_mapper in built:
            for prop in live_mapper.relationships:
                if prop.parent is live_mapper:
                    self.history_model(prop.mapper.class_)
        return self._models[live_cls]

    def _build(self, live_mapper: Mapper) -> Type[HistoryEntity]:
        live_cls = live_mapper.class_
        system_versioned = is_system_versioned(live_cls)
        dimensions = tuple(getattr(live_cls, "__time_dimensions__", ()))
        if system_versioned:
            dimensions += (SYSTEM_PERIOD_COLUMN_NAME,)

        parent = live_mapper.inherits
        parent_history = self._models[parent.class_] if parent is not None else None
        history_cls = type(
            f"{live_cls.__name__}{HISTORY_CLASS_SUFFIX}",
            (parent_history or HistoryEntity,),
            {
                "__module__": live_cls.__module__,
                "__live_model__": live_cls,
                "__time_dimensions__": dimensions,
                "__system_versioned__": system_versioned,
            },
        )

        if parent_history is not None:
            if live_mapper.local_table is not parent.local_table:
                raise ValueError(
                    f"Cannot build history model for [{live_cls.__name__}]: only "
                    f"single table inheritance is supported"
                )
            self.registry.map_imperatively(
                history_cls,
                None,
                inherits=parent_history,
                polymorphic_identity=live_mapper.polymorphic_identity,
                properties=self._relationships(live_mapper, history_cls),
            )
            return history_cls

        table = live_mapper.local_table
        if system_versioned:
            table = live_cls.__history_table__
            mirror_source_columns(live_mapper.local_table, table)
        properties: Dict[str, Any] = {}
        for hierarchy_mapper in live_mapper.self_and_descendants:
            for prop in hierarchy_mapper.column_attrs:
                column = prop.columns[0]
                if getattr(column, "name", None) in table.c:
                    properties[prop.key] = table.c[column.name]
        properties.update(self._relationships(live_mapper, history_cls))

        polymorphic_on = live_mapper.polymorphic_on
        self.registry.map_imperatively(
            history_cls,
            table,
            properties=properties,
            polymorphic_on=(
                table.c[polymorphic_on.name] if polymorphic_on is not None else None
            ),
            polymorphic_identity=live_mapper.polymorphic_identity,
        )
        logging.debug(
            "Mapped history model [%s] on table [%s]",
            history_cls.__name__,
            table.fullname,
        )
        return history_cls

    def _relationships(
        self, live_mapper: Mapper, history_cls: Type[HistoryEntity]
    ) -> Dict[str, Any]:
        """Mirrors the relationships declared on |live_mapper| itself onto
        |history_cls|, joining history models instead of live classes.

        A relationship through a secondary table goes through that table's
        history table when it is system versioned, and through the live table
        otherwise.
        """
        relationships = {}
        for prop in live_mapper.relationships:
            if prop.parent is not live_mapper:
                continue
            if prop.secondary is None:
                relationships[prop.key] = relationship(
                    self._target_resolver(prop.mapper.class_),
                    primaryjoin=self._primaryjoin(prop, live_mapper.class_),
                    uselist=prop.uselist,
                    viewonly=True,
                )
                continue

            association = history_table_of(prop.secondary)
            scope: List[Any] = []
            if association is None:
                association = prop.secondary
            else:
                _versioned_associations.add(association.fullname)
                scope.append(association_scope_predicate(association))
            logging.debug(
                "Mirroring relationship [%s.%s] through [%s] on history model [%s]",
                live_mapper.class_.__name__,
                prop.key,
                association.fullname,
                history_cls.__name__,
            )
            relationships[prop.key] = relationship(
                self._target_resolver(prop.mapper.class_),
                secondary=association,
                primaryjoin=self._association_join(
                    live_mapper.class_, association, prop.synchronize_pairs
                ),
                secondaryjoin=self._association_join(
                    prop.mapper.class_,
                    association,
                    prop.secondary_synchronize_pairs,
                    scope,
                ),
                uselist=prop.uselist,
                viewonly=True,
            )
        return relationships

    def _association_join(
        self,
        live_cls: Type,
        association: Table,
        pairs: Iterable[Tuple[Any, Any]],
        extra_criteria: Iterable[Any] = (),
    ) -> Callable:
        def build() -> Any:
            table = _persisted_table(self.history_model(live_cls))
            clauses = [
                table.c[entity_column.name] == association.c[association_column.name]
                for entity_column, association_column in pairs
            ]
            clauses.extend(extra_criteria)
            return and_(*clauses)

        return build

    def _target_resolver(self, target_live_cls: Type) -> Callable[[], Type]:
        return lambda: self.history_model(target_live_cls)

    def _primaryjoin(self, prop: RelationshipProperty, owner_live_cls: Type) -> Callable:
        target_live_cls = prop.mapper.class_

        def build() -> Any:
            local_table = _persisted_table(self.history_model(owner_live_cls))
            remote_table = _persisted_table(self.history_model(target_live_cls))
            clauses = []
            for local_column, remote_column in prop.local_remote_pairs:
                local = local_table.c[local_column.name]
                other = remote_table.c[remote_column.name]
                if prop.direction is MANYTOONE:
                    clauses.append(foreign(local) == remote(other))
                else:
                    clauses.append(local == remote(foreign(other)))
            return and_(*clauses)

        return build


def _persisted_table(history_cls: Type[HistoryEntity]) -> Table:
    return inspect(history_cls).persist_selectable


class HistoryNamespace:
    """Resolves history models by the name of their live class within a module.

        history = HistoryNamespace("myapp.models")
        history["Book"]  # BookHistory, for myapp.models.Book
        history.namespace("billing")["Invoice"]  # for myapp.models.billing.Invoice
    """

    def __init__(
        self, root_module: str, resolver: Optional[HistoryModelResolver] = None
    ):
        self.root_module = root_module
        self.resolver = resolver or default_resolver
        self._namespaces: Dict[str, "HistoryNamespace"] = {}
        self._overrides: Dict[str, Type] = {}

    def namespace(self, name: str) -> "HistoryNamespace":
        if name not in self._namespaces:
            self._namespaces[name] = HistoryNamespace(
                f"{self.root_module}.{name}", self.resolver
            )
        return self._namespaces[name]

    def register(self, name: str, history_cls: Type) -> None:
        self._overrides[name] = history_cls

    def resolve(self, name: str) -> Type[HistoryEntity]:
        namespace_name, _, rest = name.partition(".")
        if rest:
            return self.namespace(namespace_name).resolve(rest)
        if name in self._overrides:
            return self._overrides[name]

        qualified_name = f"{self.root_module}.{name}"
        try:
            module = importlib.import_module(self.root_module)
        except ModuleNotFoundError as e:
            raise UnresolvedHistoryNameError(
                f"uninitialized name {qualified_name}", qualified_name
            ) from e
        live = getattr(module, name, None)
        if live is None:
            raise UnresolvedHistoryNameError(
                f"uninitialized name {qualified_name}", qualified_name
            )
        is_entity = isinstance(live, type) and (
            live.__dict__.get("__abstract__", False)
            or inspect(live, raiseerr=False) is not None
        )
        if not is_entity:
            raise UnresolvedHistoryNameError(
                f"{live!r} is not a mapped entity", qualified_name
            )
        return self.resolver.history_model(live)

    def __getitem__(self, name: str) -> Type[HistoryEntity]:
        return self.resolve(name)


default_resolver = HistoryModelResolver()


def history_model(live_cls: Type) -> Type[HistoryEntity]:
    return default_resolver.history_model(live_cls)


def history(live_cls: Type) -> Select:
    """Returns a select of every history row of |live_cls|."""
    return select(history_model(live_cls))


def association_scope_predicate(association_history: Table) -> Any:
    """Rows of |association_history| effective at the instant bound to
    ASSOCIATION_INSTANT_PARAM, or open rows when it is NULL."""
    instant = bindparam(
        ASSOCIATION_INSTANT_PARAM, None, type_=DateTime(timezone=True)
    )
    period = association_history.c[SYSTEM_PERIOD_COLUMN_NAME]
    return or_(
        and_(instant.is_(None), range_end(period).is_(None)),
        point_in_time_predicate(period, instant),
    )


def has_versioned_associations() -> bool:
    return bool(_versioned_associations)
