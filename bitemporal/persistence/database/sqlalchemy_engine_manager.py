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
"""A class to manage all SQLAlchemy Engines for our database instances."""
import logging
import os
from typing import Any, Dict, Optional

import sqlalchemy
from sqlalchemy.engine import URL, Engine

from bitemporal.persistence.database.constants import (
    SQLALCHEMY_DB_HOST,
    SQLALCHEMY_DB_PASSWORD,
    SQLALCHEMY_DB_PORT,
    SQLALCHEMY_DB_USER,
)
from bitemporal.persistence.database.sqlalchemy_database_key import SQLAlchemyDatabaseKey

DEFAULT_DB_PORT = 5432


class SQLAlchemyEngineManager:
    """A class to manage all SQLAlchemy Engines for our database instances."""

    _engine_for_database: Dict[SQLAlchemyDatabaseKey, Engine] = {}

    @classmethod
    def init_engine_for_postgres_instance(
        cls,
        database_key: SQLAlchemyDatabaseKey,
        db_url: Any,
    ) -> Engine:
        """Initializes a sqlalchemy Engine object for the given Postgres database and
        caches it for future use."""
        return cls.init_engine_for_db_instance(
            database_key=database_key,
            db_url=db_url,
            # Range bounds are compared against now(), so sessions always run
            # in UTC regardless of the server setting.
            connect_args={"options": "-c timezone=utc"},
        )

    @classmethod
    def init_engine_for_db_instance(
        cls,
        database_key: SQLAlchemyDatabaseKey,
        db_url: Any,
        **dialect_specific_kwargs: Any,
    ) -> Engine:
        if database_key in cls._engine_for_database:
            raise ValueError(f"Already initialized database [{database_key}]")

        try:
            engine = sqlalchemy.create_engine(
                db_url,
                isolation_level=database_key.isolation_level or "READ COMMITTED",
                **dialect_specific_kwargs,
            )
        except Exception as e:
            logging.error(
                "Unable to connect to postgres instance for [%s]: %s",
                database_key,
                str(e),
            )
            raise e
        cls._engine_for_database[database_key] = engine
        return engine

    @classmethod
    def teardown_engine_for_database_key(
        cls, *, database_key: SQLAlchemyDatabaseKey
    ) -> None:
        cls._engine_for_database.pop(database_key).dispose()

    @classmethod
    def teardown_engines(cls) -> None:
        for engine in cls._engine_for_database.values():
            engine.dispose()
        cls._engine_for_database.clear()

    @classmethod
    def get_engine_for_database(
        cls, database_key: SQLAlchemyDatabaseKey
    ) -> Optional[Engine]:
        """Retrieve the engine for a given database.

        Will attempt to create the engine from environment variables if it does not
        already exist."""
        if database_key not in cls._engine_for_database:
            db_url = cls.get_postgres_instance_url_from_env(database_key=database_key)
            if db_url is None:
                logging.info(
                    "Database environment variables not set, not connecting to "
                    "postgres instance for [%s].",
                    database_key,
                )
                return None
            cls.init_engine_for_postgres_instance(database_key, db_url)
        return cls._engine_for_database.get(database_key, None)

    @classmethod
    def get_postgres_instance_url_from_env(
        cls, *, database_key: SQLAlchemyDatabaseKey
    ) -> Optional[URL]:
        """Returns the URL of |database_key| on the instance configured by the
        SQLALCHEMY_DB_* environment variables, or None if no host is set."""
        host = os.environ.get(SQLALCHEMY_DB_HOST)
        if not host:
            return None
        port = os.environ.get(SQLALCHEMY_DB_PORT)
        return URL.create(
            drivername="postgresql",
            username=os.environ.get(SQLALCHEMY_DB_USER),
            password=os.environ.get(SQLALCHEMY_DB_PASSWORD),
            host=host,
            port=int(port) if port else DEFAULT_DB_PORT,
            database=database_key.db_name,
        )
