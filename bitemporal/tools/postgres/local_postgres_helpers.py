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
"""This module generates a local postgres instance for use in testing."""
import os
import pwd
import shutil
import subprocess
import tempfile
from typing import Callable, Dict, Optional

from sqlalchemy import text
from sqlalchemy.orm.session import close_all_sessions

from bitemporal.persistence.database.constants import (
    SQLALCHEMY_DB_HOST,
    SQLALCHEMY_DB_NAME,
    SQLALCHEMY_DB_PASSWORD,
    SQLALCHEMY_DB_PORT,
    SQLALCHEMY_DB_USER,
)
from bitemporal.persistence.database.session_factory import SessionFactory
from bitemporal.persistence.database.sqlalchemy_database_key import SQLAlchemyDatabaseKey
from bitemporal.persistence.database.sqlalchemy_engine_manager import (
    SQLAlchemyEngineManager,
)
from bitemporal.utils import environment

LINUX_TEST_DB_OWNER_NAME = "bitemporal_test_db_owner"
TEST_POSTGRES_DB_NAME = "bitemporal_test_db"
TEST_POSTGRES_USER_NAME = "bitemporal_test_usr"
TEST_POSTGRES_PORT = 5432


def update_local_sqlalchemy_postgres_env_vars() -> Dict[str, Optional[str]]:
    """Updates the appropriate env vars for SQLAlchemy to talk to a locally created
    Postgres instance.

    It returns the old set of env variables that were overridden.
    """
    sqlalchemy_vars = [
        SQLALCHEMY_DB_NAME,
        SQLALCHEMY_DB_HOST,
        SQLALCHEMY_DB_PORT,
        SQLALCHEMY_DB_USER,
        SQLALCHEMY_DB_PASSWORD,
    ]
    original_values = {env_var: os.environ.get(env_var) for env_var in sqlalchemy_vars}

    os.environ[SQLALCHEMY_DB_NAME] = TEST_POSTGRES_DB_NAME
    os.environ[SQLALCHEMY_DB_HOST] = "localhost"
    os.environ[SQLALCHEMY_DB_PORT] = str(TEST_POSTGRES_PORT)
    os.environ[SQLALCHEMY_DB_USER] = TEST_POSTGRES_USER_NAME
    os.environ[SQLALCHEMY_DB_PASSWORD] = ""

    return original_values


def restore_local_env_vars(overridden_env_vars: Dict[str, Optional[str]]) -> None:
    for var, value in overridden_env_vars.items():
        if value is None:
            os.environ.pop(var, None)
        else:
            os.environ[var] = value


def _get_run_as_user_fn(password_record: pwd.struct_passwd) -> Callable[[], None]:
    """Returns a function that modifies the current OS user and group to those
    given. To be used in preexec_fn when creating new subprocesses."""

    def set_ids() -> None:
        # Must set group id first. If user id is set first, then that user won't
        # have permission to modify the group.
        os.setgid(password_record.pw_gid)
        os.setuid(password_record.pw_uid)

    return set_ids


def _is_root_user() -> bool:
    return os.getuid() == 0


def _run_command(
    command: str,
    assert_success: bool = True,
    as_user: Optional[pwd.struct_passwd] = None,
) -> str:
    """Runs the given command, as a different OS user if `as_user` is set. Returns
    stdout, and raises if the command fails and `assert_success` is set."""
    # pylint: disable=subprocess-popen-preexec-fn
    proc = subprocess.Popen(
        command,
        shell=True,
        stdout=subprocess.PIPE,
        stderr=subprocess.PIPE,
        text=True,
        preexec_fn=_get_run_as_user_fn(as_user) if as_user else None,
    )
    try:
        out, err = proc.communicate(timeout=15)
    except subprocess.TimeoutExpired as e:
        proc.kill()
        out, err = proc.communicate()
        raise RuntimeError(f"Command timed out: `{command}`\n{err}\n{out}") from e

    if assert_success and proc.returncode != 0:
        raise RuntimeError(f"Command failed: `{command}`\n{err}\n{out}")
    return out


@environment.local_only
def can_start_on_disk_postgresql_database() -> bool:
    try:
        _run_command("which pg_ctl")
    except RuntimeError:
        return False
    return True


@environment.local_only
def start_on_disk_postgresql_database() -> str:
    """Starts and initializes a local postgres database for use in tests. Should
    be called in setUpClass so this only runs once per test class.

    Returns the directory where the database data lives.
    """
    _clear_all_on_disk_postgresql_databases()

    temp_db_data_dir = tempfile.mkdtemp(prefix="postgres")

    # The database can't be owned by root so create a separate OS user to own the
    # database if we are currently root.
    password_record = None
    if _is_root_user():
        _run_command(f"useradd {LINUX_TEST_DB_OWNER_NAME}", assert_success=False)
        password_record = pwd.getpwnam(LINUX_TEST_DB_OWNER_NAME)
        os.chown(
            temp_db_data_dir, uid=password_record.pw_uid, gid=password_record.pw_gid
        )
        os.makedirs("/var/run/postgresql", exist_ok=True)
        os.chown(
            "/var/run/postgresql",
            uid=password_record.pw_uid,
            gid=password_record.pw_gid,
        )

    # Write logs to file so that pg_ctl closes its stdout file descriptor when it
    # moves to the background, otherwise the subprocess will hang.
    _run_command(
        f"pg_ctl -D {temp_db_data_dir} -l /tmp/postgres initdb -o '--timezone=UTC'",
        as_user=password_record,
    )
    _run_command(
        f"pg_ctl -D {temp_db_data_dir} -l /tmp/postgres -w start",
        as_user=password_record,
    )

    # These will fail if they already exist, ignore that failure and continue.
    _run_command(
        f"createuser --superuser {TEST_POSTGRES_USER_NAME}",
        as_user=password_record,
        assert_success=False,
    )
    _run_command(
        f"createdb -O {TEST_POSTGRES_USER_NAME} {TEST_POSTGRES_DB_NAME}",
        as_user=password_record,
        assert_success=False,
    )
    return temp_db_data_dir


def _clear_all_on_disk_postgresql_databases() -> None:
    tmp_dir = tempfile.gettempdir()
    postgres_dirs = [
        os.path.join(tmp_dir, name)
        for name in os.listdir(tmp_dir)
        if name.startswith("postgres") and os.path.isdir(os.path.join(tmp_dir, name))
    ]
    for postgres_dir in postgres_dirs:
        stop_and_clear_on_disk_postgresql_database(postgres_dir, assert_success=False)


@environment.local_only
def stop_and_clear_on_disk_postgresql_database(
    temp_db_data_dir: str, assert_success: bool = True
) -> None:
    """Stops the postgres server and removes its data directory. Should be called
    in tearDownClass so this only runs once per test class."""
    password_record = (
        pwd.getpwnam(LINUX_TEST_DB_OWNER_NAME) if _is_root_user() else None
    )
    _run_command(
        f"pg_ctl -D {temp_db_data_dir} -l /tmp/postgres stop",
        as_user=password_record,
        assert_success=assert_success,
    )
    shutil.rmtree(temp_db_data_dir, ignore_errors=not assert_success)


@environment.local_only
def on_disk_postgres_db_url() -> str:
    return (
        f"postgresql://{TEST_POSTGRES_USER_NAME}:@localhost:{TEST_POSTGRES_PORT}/"
        f"{TEST_POSTGRES_DB_NAME}"
    )


@environment.local_only
def use_on_disk_postgresql_database(
    database_key: SQLAlchemyDatabaseKey, create_tables: bool = True
) -> None:
    """Connects SQLAlchemy to a local test postgres server and creates every table
    of the key's schema, including history tables and versioning hooks. Should be
    called after the test database and user have been initialized."""
    engine = SQLAlchemyEngineManager.init_engine_for_postgres_instance(
        database_key=database_key,
        db_url=on_disk_postgres_db_url(),
    )
    with engine.begin() as connection:
        connection.execute(text("CREATE EXTENSION IF NOT EXISTS btree_gist"))
    if create_tables:
        database_key.declarative_meta.metadata.create_all(engine)


@environment.local_only
def teardown_on_disk_postgresql_database(database_key: SQLAlchemyDatabaseKey) -> None:
    """Drops every table of the key's schema, for use once a single test has
    completed. Tables are dropped rather than cleared since history tables are
    only ever written by triggers."""
    # Ensure all sessions are closed, otherwise the below may hang.
    close_all_sessions()

    engine = SQLAlchemyEngineManager.get_engine_for_database(database_key)
    if engine is not None:
        database_key.declarative_meta.metadata.drop_all(engine)
    SQLAlchemyEngineManager.teardown_engine_for_database_key(database_key=database_key)


@environment.local_only
def clear_on_disk_postgresql_database(database_key: SQLAlchemyDatabaseKey) -> None:
    """Deletes every row of the key's schema without dropping tables."""
    close_all_sessions()
    with SessionFactory.using_database(database_key) as session:
        for table in reversed(database_key.declarative_meta.metadata.sorted_tables):
            session.execute(table.delete())
