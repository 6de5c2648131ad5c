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
"""
Class for generating SQLAlchemy Sessions objects for a database.
"""
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy.orm import Session

from bitemporal.persistence.database.constraint_violations import (
    constraint_violations_as_errors,
)
from bitemporal.persistence.database.sqlalchemy_database_key import SQLAlchemyDatabaseKey
from bitemporal.persistence.database.sqlalchemy_engine_manager import (
    SQLAlchemyEngineManager,
)


class SessionFactory:
    """Creates SQLAlchemy sessions for the given database"""

    @classmethod
    @contextmanager
    def using_database(
        cls, database_key: SQLAlchemyDatabaseKey, *, autocommit: bool = True
    ) -> Iterator[Session]:
        session = None
        try:
            session = cls.for_database(database_key)
            with constraint_violations_as_errors():
                yield session
                if autocommit:
                    try:
                        session.commit()
                    except Exception as e:
                        session.rollback()
                        raise e
        finally:
            if session:
                session.close()

    @classmethod
    def for_database(cls, database_key: SQLAlchemyDatabaseKey) -> Session:
        engine = SQLAlchemyEngineManager.get_engine_for_database(
            database_key=database_key
        )
        if engine is None:
            raise ValueError(f"No engine set for key [{database_key}]")
        return Session(bind=engine)
