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
"""Application-time versioning: caller-controlled revisions of an entity, each
effective over a validity range that never overlaps another revision of the
same identity.

A revision is the HEAD while its validity range is open-ended. Revising the
HEAD closes it at the revision time and creates its successor, with the next
version number, effective from that time onwards. Closed revisions can never
be revised or inactivated again.

Each operation comes in a build-only flavor (|original|, |revision|), which
only touches objects in memory, and a persisting flavor (|originate|,
|revise|, |inactivate|), which writes all of its changes in a single
SAVEPOINT so that they are committed or rolled back together.
"""
import logging
from datetime import datetime
from typing import Any, ContextManager, Dict, Optional, Tuple, Type, TypeVar

from sqlalchemy import BigInteger, Column, text
from sqlalchemy.orm import Session, declared_attr, has_inherited_table

from bitemporal.persistence.database.constants import (
    DEFAULT_PRIMARY_KEY_COLUMN_NAME,
    VALIDITY_COLUMN_NAME,
    VERSION_COLUMN_NAME,
)
from bitemporal.persistence.database.constraint_violations import (
    constraint_violations_as_errors,
)
from bitemporal.persistence.database.database_entity import DatabaseEntity
from bitemporal.persistence.errors import ClosedRevisionError
from bitemporal.persistence.temporal.temporal_range import (
    TemporalRange,
    TemporalRangeType,
    build_exclusion_constraint,
    ensure_btree_gist,
)
from bitemporal.persistence.temporal.time_scope import TimeScope, resolve_time

AppVersionedT = TypeVar("AppVersionedT", bound="ApplicationVersioned")


class ApplicationVersioned(DatabaseEntity):
    """Declarative mixin for application-versioned entities.

    The primary key of the table is the identity columns plus |version|. The
    identity columns must be declared by the entity itself, and default to
    "id":

        class User(Base, ApplicationVersioned):
            __tablename__ = "users"

            id = Column(BigInteger, primary_key=True, autoincrement=True)
            name = Column(String(255))

    An entity that sets its own __table_args__ must include
    |application_versioned_table_args| to keep the exclusion constraint.
    """

    __identity_columns__: Tuple[str, ...] = (DEFAULT_PRIMARY_KEY_COLUMN_NAME,)
    __time_dimensions__: Tuple[str, ...] = (VALIDITY_COLUMN_NAME,)

    version = Column(
        VERSION_COLUMN_NAME,
        BigInteger,
        primary_key=True,
        nullable=False,
        default=1,
        server_default=text("1"),
    )

    validity = Column(VALIDITY_COLUMN_NAME, TemporalRangeType, nullable=False)

    @declared_attr
    def __table_args__(cls) -> Any:  # pylint: disable=no-self-argument
        if has_inherited_table(cls):
            return None
        return application_versioned_table_args(cls)

    @classmethod
    def get_time_dimension(cls) -> str:
        return cls.__time_dimensions__[0]

    def get_time_range(self) -> Optional[TemporalRange]:
        return getattr(self, type(self).get_time_dimension())

    def is_head_revision(self) -> bool:
        time_range = self.get_time_range()
        return time_range is not None and time_range.is_open

    def get_identity(self) -> Tuple[Any, ...]:
        return tuple(
            getattr(self, type(self).get_property_name_by_column_name(column))
            for column in type(self).__identity_columns__
        )


def application_versioned_table_args(cls: Type[ApplicationVersioned]) -> Tuple:
    """Returns the __table_args__ shared by every application-versioned table."""
    return (
        build_exclusion_constraint(
            cls.__identity_columns__,
            cls.get_time_dimension(),
            name=f"{cls.__tablename__}_{cls.get_time_dimension()}_excl",
        ),
        {"listeners": [("before_create", ensure_btree_gist)]},
    )


def original(
    model_cls: Type[AppVersionedT],
    attributes: Optional[Dict[str, Any]] = None,
    time: Optional[datetime] = None,
    scope: Optional[TimeScope] = None,
) -> AppVersionedT:
    """Builds, without persisting, version 1 of a new identity of |model_cls|
    that is effective from |time| onwards.
    """
    _check_application_versioned(model_cls)
    dimension = model_cls.get_time_dimension()
    start = resolve_time(dimension, time, scope)

    record = model_cls(**(attributes or {}))
    record.version = 1
    setattr(record, dimension, TemporalRange(start=start))
    return record


def originate(
    session: Session,
    model_cls: Type[AppVersionedT],
    attributes: Optional[Dict[str, Any]] = None,
    time: Optional[datetime] = None,
    scope: Optional[TimeScope] = None,
) -> AppVersionedT:
    """Creates and persists version 1 of a new identity of |model_cls| that is
    effective from |time| onwards.
    """
    record = original(model_cls, attributes, time, scope)
    with _constraint_violations_as_errors(model_cls):
        with session.begin_nested():
            session.add(record)
    logging.debug("Originated [%s] at [%s]", record, record.get_time_range())
    return record


def revision(
    head: AppVersionedT,
    attributes: Optional[Dict[str, Any]] = None,
    time: Optional[datetime] = None,
    scope: Optional[TimeScope] = None,
) -> AppVersionedT:
    """Closes |head| at |time| in memory and returns its unsaved successor.

    The successor carries over every attribute of |head|, overridden by
    |attributes|, keeps the identity of |head| and has the next version number.
    Nothing is written to the database.
    """
    _check_head_revision(head, "revise")
    model_cls = type(head)
    dimension = model_cls.get_time_dimension()
    at = resolve_time(dimension, time, scope)

    closed_range = head.get_time_range().closed_at(at)
    successor = _build_successor(head, attributes or {})
    successor.version = head.version + 1
    setattr(successor, dimension, TemporalRange(start=at))

    setattr(head, dimension, closed_range)
    return successor


def revise(
    session: Session,
    head: AppVersionedT,
    attributes: Optional[Dict[str, Any]] = None,
    time: Optional[datetime] = None,
    scope: Optional[TimeScope] = None,
) -> AppVersionedT:
    """Closes |head| at |time| and persists its successor, as one unit.

    If either write fails, neither is kept: the SAVEPOINT is rolled back and
    |head| is expired so that it reloads its stored (still open) state.
    """
    _check_head_revision(head, "revise")
    model_cls = type(head)
    with _constraint_violations_as_errors(model_cls):
        with session.begin_nested():
            successor = revision(head, attributes, time, scope)
            session.add(head)
            # The predecessor must be closed before the successor is inserted,
            # otherwise their ranges overlap.
            session.flush([head])
            session.add(successor)
    logging.debug(
        "Revised [%s] to version [%s] at [%s]",
        head,
        successor.version,
        successor.get_time_range(),
    )
    return successor


def inactivate(
    session: Session,
    head: ApplicationVersioned,
    time: Optional[datetime] = None,
    scope: Optional[TimeScope] = None,
) -> None:
    """Closes |head| at |time| without creating a successor."""
    _check_head_revision(head, "inactivate")
    dimension = type(head).get_time_dimension()
    at = resolve_time(dimension, time, scope)
    closed_range = head.get_time_range().closed_at(at)

    with _constraint_violations_as_errors(type(head)):
        with session.begin_nested():
            setattr(head, dimension, closed_range)
            session.add(head)
    logging.debug("Inactivated [%s] at [%s]", head, at)


def _build_successor(
    head: AppVersionedT, attributes: Dict[str, Any]
) -> AppVersionedT:
    model_cls = type(head)
    excluded_columns = [VERSION_COLUMN_NAME, model_cls.get_time_dimension()]
    values = head.column_values(
        exclude=[
            model_cls.get_property_name_by_column_name(column)
            for column in excluded_columns
        ]
    )
    values.update(attributes)
    for column in model_cls.__identity_columns__:
        name = model_cls.get_property_name_by_column_name(column)
        values[name] = getattr(head, name)
    return model_cls(**values)


def _check_application_versioned(model_cls: Type) -> None:
    if not (isinstance(model_cls, type) and issubclass(model_cls, ApplicationVersioned)):
        raise ValueError(f"[{model_cls}] is not an application-versioned entity")


def _check_head_revision(record: ApplicationVersioned, action: str) -> None:
    _check_application_versioned(type(record))
    if not record.is_head_revision():
        raise ClosedRevisionError(
            f"Cannot {action} closed version: [{record.get_entity_name()}] with "
            f"identity {record.get_identity()} and version [{record.version}] has "
            f"{record.get_time_dimension()} [{record.get_time_range()}]"
        )


def _constraint_violations_as_errors(
    model_cls: Type[ApplicationVersioned],
) -> ContextManager[None]:
    return constraint_violations_as_errors(
        model_cls.get_entity_name(), model_cls.__tablename__
    )
