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
"""Defines an object that identifies a database whose schema is managed by
SQLAlchemy.
"""
from typing import Any, Optional

import attr

DEFAULT_DB_NAME = "postgres"


@attr.s(frozen=True)
class SQLAlchemyDatabaseKey:
    """Identifies a single database and the declarative base whose tables live in
    it."""

    # The declarative base (or any class with a |metadata|) defining the schema.
    declarative_meta: Any = attr.ib()

    # Identifies which individual database to connect to inside the instance
    db_name: str = attr.ib(default=DEFAULT_DB_NAME, validator=attr.validators.instance_of(str))

    # Revisions and history rows are written by read-then-write transactions,
    # which may need a stricter level than the server default.
    isolation_level: Optional[str] = attr.ib(default=None)

    @property
    def is_default_db(self) -> bool:
        return self.db_name == DEFAULT_DB_NAME

    @classmethod
    def canonical_for_base(cls, declarative_meta: Any) -> "SQLAlchemyDatabaseKey":
        return cls(declarative_meta, db_name=DEFAULT_DB_NAME)
