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
"""Tests for temporal versioning against a local postgres database."""
import unittest
from datetime import datetime, timedelta, timezone
from typing import List

import pytest
from alembic.migration import MigrationContext
from alembic.operations import Operations
from sqlalchemy import Column, String, inspect, select, text, update
from sqlalchemy.orm import Session, joinedload

from bitemporal.persistence.database.session_factory import SessionFactory
from bitemporal.persistence.database.sqlalchemy_database_key import (
    SQLAlchemyDatabaseKey,
)
from bitemporal.persistence.database.sqlalchemy_engine_manager import (
    SQLAlchemyEngineManager,
)
from bitemporal.persistence.errors import ConstraintViolationError
from bitemporal.persistence.temporal import (
    TableVersioning,
    TemporalRange,
    all_revisions,
    as_of,
    at_time,
    change_versioning_hook,
    create_table,
    drop_table,
    history_model,
    inactivate,
    originate,
    revise,
    time_scopes,
    versioning_hook,
)
from bitemporal.tests.persistence.temporal.temporal_test_schema import (
    Author,
    Book,
    Car,
    Catalog,
    Library,
    Tag,
    TestBase,
    Truck,
    Vehicle,
)
from bitemporal.tools.postgres import local_postgres_helpers

JAN_2020 = datetime(2020, 1, 1, tzinfo=timezone.utc)
JAN_2021 = datetime(2021, 1, 1, tzinfo=timezone.utc)
ONE_DAY = timedelta(days=1)


@pytest.mark.uses_db
@unittest.skipUnless(
    local_postgres_helpers.can_start_on_disk_postgresql_database(),
    "pg_ctl is not installed",
)
class TemporalIntegrationTest(unittest.TestCase):
    """Base class for tests that write temporal entities to postgres."""

    temp_db_dir: str

    @classmethod
    def setUpClass(cls) -> None:
        cls.temp_db_dir = local_postgres_helpers.start_on_disk_postgresql_database()

    def setUp(self) -> None:
        self.database_key = SQLAlchemyDatabaseKey.canonical_for_base(TestBase)
        local_postgres_helpers.use_on_disk_postgresql_database(self.database_key)

    def tearDown(self) -> None:
        local_postgres_helpers.teardown_on_disk_postgresql_database(self.database_key)

    @classmethod
    def tearDownClass(cls) -> None:
        local_postgres_helpers.stop_and_clear_on_disk_postgresql_database(
            cls.temp_db_dir
        )

    def _now(self) -> datetime:
        """Returns a transaction time later than every committed write."""
        with SessionFactory.using_database(self.database_key) as session:
            return session.scalar(text("SELECT now()"))

    @staticmethod
    def _history_rows(session: Session, live_cls: type) -> List:
        history_cls = history_model(live_cls)
        return list(
            session.scalars(
                select(history_cls).order_by(history_cls.system_period)
            ).all()
        )


class ApplicationVersioningIntegrationTest(TemporalIntegrationTest):
    """Tests for revisions of application-versioned entities."""

    def test_originate_and_revise(self) -> None:
        with SessionFactory.using_database(self.database_key) as session:
            author = originate(session, Author, {"name": "Octavia"}, time=JAN_2020)
            session.flush()
            author_id = author.id

        with SessionFactory.using_database(self.database_key) as session:
            head = session.scalars(select(Author)).one()
            successor = revise(
                session, head, {"name": "Octavia E."}, time=JAN_2021
            )
            self.assertEqual(2, successor.version)

        with SessionFactory.using_database(self.database_key) as session:
            head = session.scalars(select(Author)).one()
            self.assertEqual((author_id, 2, "Octavia E."), (head.id, head.version, head.name))
            self.assertEqual(TemporalRange(start=JAN_2021), head.validity)

            revisions = session.scalars(
                all_revisions(select(Author).order_by(Author.version))
            ).all()
            self.assertEqual([1, 2], [r.version for r in revisions])
            self.assertEqual(
                TemporalRange(start=JAN_2020, end=JAN_2021), revisions[0].validity
            )
            self.assertEqual("Octavia", revisions[0].name)

    def test_inactivate(self) -> None:
        with SessionFactory.using_database(self.database_key) as session:
            originate(session, Author, {"name": "Ursula"}, time=JAN_2020)

        with SessionFactory.using_database(self.database_key) as session:
            inactivate(session, session.scalars(select(Author)).one(), time=JAN_2021)

        with SessionFactory.using_database(self.database_key) as session:
            self.assertEqual([], session.scalars(select(Author)).all())
            closed = session.scalars(all_revisions(select(Author))).one()
            self.assertEqual(
                TemporalRange(start=JAN_2020, end=JAN_2021), closed.validity
            )

    def test_overlapping_revision_rejected(self) -> None:
        with SessionFactory.using_database(self.database_key) as session:
            author = originate(session, Author, {"name": "Ada"}, time=JAN_2020)
            session.flush()
            author_id = author.id

        with SessionFactory.using_database(self.database_key) as session:
            # A copy that claims to be a later head of the same identity.
            copy = Author(
                id=author_id,
                version=5,
                name="Ada",
                validity=TemporalRange(start=JAN_2020 + ONE_DAY),
            )
            with self.assertLogs(level="ERROR"):
                with self.assertRaises(ConstraintViolationError) as e:
                    revise(session, copy, {"name": "Ada L."}, time=JAN_2021)
            self.assertEqual("authors", e.exception.table_name)
            self.assertEqual("authors_validity_excl", e.exception.constraint_name)

            # Only the savepoint was rolled back.
            head = session.scalars(select(Author)).one()
            self.assertEqual((1, "Ada"), (head.version, head.name))


class SystemVersioningIntegrationTest(TemporalIntegrationTest):
    """Tests for the history rows written by versioning hooks."""

    def test_insert(self) -> None:
        with SessionFactory.using_database(self.database_key) as session:
            session.add(Library(id=1, name="Central"))

        with SessionFactory.using_database(self.database_key) as session:
            row = self._history_rows(session, Library)[0]
            self.assertEqual((1, "Central"), (row.id, row.name))
            self.assertTrue(row.system_period.is_open)

    def test_insert_uses_server_default(self) -> None:
        with SessionFactory.using_database(self.database_key) as session:
            session.add(Library(id=1))

        with SessionFactory.using_database(self.database_key) as session:
            self.assertEqual(["unnamed"], [r.name for r in self._history_rows(session, Library)])

    def test_update(self) -> None:
        with SessionFactory.using_database(self.database_key) as session:
            session.add(Library(id=1, name="Central"))

        with SessionFactory.using_database(self.database_key) as session:
            session.get(Library, 1).name = "Main"

        with SessionFactory.using_database(self.database_key) as session:
            old, new = self._history_rows(session, Library)
            self.assertEqual(("Central", "Main"), (old.name, new.name))
            self.assertEqual(old.system_period.end, new.system_period.start)
            self.assertTrue(new.system_period.is_open)

    def test_unchanged_update(self) -> None:
        with SessionFactory.using_database(self.database_key) as session:
            session.add(Library(id=1, name="Central"))

        with SessionFactory.using_database(self.database_key) as session:
            libraries = Library.__table__
            session.execute(
                update(libraries)
                .where(libraries.c.id == 1)
                .values(name=libraries.c.name)
            )

        with SessionFactory.using_database(self.database_key) as session:
            rows = self._history_rows(session, Library)
            self.assertEqual(1, len(rows))
            self.assertTrue(rows[0].system_period.is_open)

    def test_updates_in_one_transaction(self) -> None:
        with SessionFactory.using_database(self.database_key) as session:
            session.add(Library(id=1, name="Central"))

        with SessionFactory.using_database(self.database_key) as session:
            library = session.get(Library, 1)
            library.name = "Main"
            session.flush()
            library.name = "Downtown"
            session.flush()

        with SessionFactory.using_database(self.database_key) as session:
            self.assertEqual(
                ["Central", "Downtown"],
                [r.name for r in self._history_rows(session, Library)],
            )

    def test_insert_and_update_in_one_transaction(self) -> None:
        with SessionFactory.using_database(self.database_key) as session:
            library = Library(id=1, name="Central")
            session.add(library)
            session.flush()
            library.name = "Main"

        with SessionFactory.using_database(self.database_key) as session:
            self.assertEqual(
                ["Main"], [r.name for r in self._history_rows(session, Library)]
            )

    def test_delete(self) -> None:
        with SessionFactory.using_database(self.database_key) as session:
            session.add(Library(id=1, name="Central"))

        with SessionFactory.using_database(self.database_key) as session:
            session.delete(session.get(Library, 1))

        with SessionFactory.using_database(self.database_key) as session:
            row = self._history_rows(session, Library)[0]
            self.assertFalse(row.system_period.is_open)
            self.assertIsNone(session.get(Library, 1))

    def test_insert_and_delete_in_one_transaction(self) -> None:
        with SessionFactory.using_database(self.database_key) as session:
            library = Library(id=1, name="Central")
            session.add(library)
            session.flush()
            session.delete(library)

        with SessionFactory.using_database(self.database_key) as session:
            self.assertEqual([], self._history_rows(session, Library))

    def test_as_of_around_delete(self) -> None:
        with SessionFactory.using_database(self.database_key) as session:
            session.add(Library(id=1, name="Central"))

        with SessionFactory.using_database(self.database_key) as session:
            session.delete(session.get(Library, 1))

        with SessionFactory.using_database(self.database_key) as session:
            deleted_at = self._history_rows(session, Library)[0].system_period.end
            before = session.scalars(
                as_of(Library, system_period=deleted_at - timedelta(microseconds=1))
            ).all()
            self.assertEqual(["Central"], [r.name for r in before])
            self.assertEqual(
                [], session.scalars(as_of(Library, system_period=deleted_at)).all()
            )

    def test_unchanged_update_of_json_column(self) -> None:
        with SessionFactory.using_database(self.database_key) as session:
            session.add(Catalog(id=1, entries={"shelves": 3}))

        with SessionFactory.using_database(self.database_key) as session:
            session.get(Catalog, 1).entries = {"shelves": 4}

        with SessionFactory.using_database(self.database_key) as session:
            catalogs = Catalog.__table__
            session.execute(
                update(catalogs)
                .where(catalogs.c.id == 1)
                .values(entries=catalogs.c.entries)
            )

        with SessionFactory.using_database(self.database_key) as session:
            rows = self._history_rows(session, Catalog)
            self.assertEqual(
                [{"shelves": 3}, {"shelves": 4}], [r.entries for r in rows]
            )
            self.assertTrue(rows[1].system_period.is_open)

    def test_concurrent_writer_rejected(self) -> None:
        with SessionFactory.using_database(self.database_key) as session:
            session.add(Library(id=1, name="Central"))

        with self.assertLogs(level="ERROR"):
            with self.assertRaises(ConstraintViolationError) as e:
                with SessionFactory.using_database(self.database_key) as earlier:
                    # Starts the earlier transaction, which fixes its now().
                    earlier.execute(text("SELECT now()"))
                    with SessionFactory.using_database(self.database_key) as later:
                        later.get(Library, 1).name = "Main"

                    earlier.get(Library, 1).name = "Downtown"
                    earlier.flush()
        self.assertEqual("libraries_history", e.exception.table_name)
        self.assertEqual(
            "libraries_history_system_period_excl", e.exception.constraint_name
        )

        with SessionFactory.using_database(self.database_key) as session:
            self.assertEqual(
                ["Central", "Main"],
                [r.name for r in self._history_rows(session, Library)],
            )

    def test_association_follows_scope(self) -> None:
        with SessionFactory.using_database(self.database_key) as session:
            session.add(
                Library(id=1, name="Central", tags=[Tag(id=1, label="fiction")])
            )
        tagged_at = self._now()

        with SessionFactory.using_database(self.database_key) as session:
            session.get(Library, 1).tags = [Tag(id=2, label="poetry")]

        with SessionFactory.using_database(self.database_key) as session:
            library = session.scalars(as_of(Library, system_period=tagged_at)).one()
            self.assertEqual(["fiction"], [t.label for t in library.tags])

        with SessionFactory.using_database(self.database_key) as session:
            # Without an instant, only current associations are followed.
            library = session.scalars(select(history_model(Library))).one()
            self.assertEqual(["poetry"], [t.label for t in library.tags])

    def test_eager_load_follows_scope(self) -> None:
        with SessionFactory.using_database(self.database_key) as session:
            session.add(Library(id=1, name="Central"))
            session.flush()
            originate(
                session, Book, {"title": "Draft", "library_id": 1}, time=JAN_2020
            )
        first_recorded = self._now()

        with SessionFactory.using_database(self.database_key) as session:
            revise(
                session,
                session.scalars(select(Book)).one(),
                {"title": "Final"},
                time=JAN_2021,
            )

        library_history = history_model(Library)
        for recorded, title in ((first_recorded, "Draft"), (self._now(), "Final")):
            with SessionFactory.using_database(self.database_key) as session:
                library = (
                    session.scalars(
                        as_of(
                            Library,
                            validity=JAN_2021 + ONE_DAY,
                            system_period=recorded,
                        ).options(joinedload(library_history.books))
                    )
                    .unique()
                    .one()
                )
                self.assertEqual([title], [b.title for b in library.books])

    def test_single_table_inheritance(self) -> None:
        with SessionFactory.using_database(self.database_key) as session:
            session.add_all(
                [
                    Car(id=1, name="Beetle", seats=4),
                    Truck(id=2, name="Hauler", payload_tons=10),
                ]
            )

        car_history = history_model(Car)
        truck_history = history_model(Truck)
        with SessionFactory.using_database(self.database_key) as session:
            cars = session.scalars(select(car_history)).all()
            self.assertEqual([(1, 4)], [(c.id, c.seats) for c in cars])

            vehicles = session.scalars(
                select(history_model(Vehicle)).order_by(history_model(Vehicle).id)
            ).all()
            self.assertIsInstance(vehicles[0], car_history)
            self.assertIsInstance(vehicles[1], truck_history)
            self.assertEqual(10, vehicles[1].payload_tons)

    def test_versioning_hook_introspection(self) -> None:
        engine = SQLAlchemyEngineManager.get_engine_for_database(self.database_key)
        assert engine is not None
        with engine.begin() as connection:
            definition = versioning_hook(connection, "libraries")
            assert definition is not None
            self.assertEqual("libraries_history", definition.history_table)
            self.assertEqual(("id", "name"), tuple(definition.columns))
            self.assertEqual(("id",), tuple(definition.primary_key))
            self.assertIsNone(versioning_hook(connection, "tags"))

    def test_change_versioning_hook(self) -> None:
        engine = SQLAlchemyEngineManager.get_engine_for_database(self.database_key)
        assert engine is not None
        with engine.begin() as connection:
            connection.execute(text("ALTER TABLE libraries ADD COLUMN city VARCHAR"))
            connection.execute(
                text("ALTER TABLE libraries_history ADD COLUMN city VARCHAR")
            )
            changed = change_versioning_hook(
                connection, "libraries", "libraries_history", add_columns=["city"]
            )
            self.assertIn("city", changed.columns)

        with engine.begin() as connection:
            connection.execute(
                text("INSERT INTO libraries (id, name, city) VALUES (1, 'Central', 'Oslo')")
            )

        with engine.begin() as connection:
            self.assertEqual(
                "Oslo",
                connection.execute(text("SELECT city FROM libraries_history")).scalar(),
            )
            self.assertIn("city", versioning_hook(connection, "libraries").columns)
            with self.assertRaises(ValueError):
                change_versioning_hook(connection, "libraries", "other_history")


class BitemporalIntegrationTest(TemporalIntegrationTest):
    """Tests for queries across both time dimensions."""

    def setUp(self) -> None:
        super().setUp()
        with SessionFactory.using_database(self.database_key) as session:
            author = originate(session, Author, {"name": "Old name"}, time=JAN_2020)
            session.flush()
            originate(
                session,
                Book,
                {"title": "Draft", "author_id": author.id},
                time=JAN_2020,
            )

        with SessionFactory.using_database(self.database_key) as session:
            self.first_recorded = self._history_rows(session, Book)[0].system_period.start

        with SessionFactory.using_database(self.database_key) as session:
            revise(session, session.scalars(select(Book)).one(), {"title": "Final"}, time=JAN_2021)
            revise(
                session,
                session.scalars(select(Author)).one(),
                {"name": "New name"},
                time=JAN_2021,
            )
        self.now = self._now()

    def test_as_of_both_dimensions(self) -> None:
        with SessionFactory.using_database(self.database_key) as session:
            current = session.scalars(
                as_of(Book, validity=JAN_2021 + ONE_DAY, system_period=self.now)
            ).one()
            self.assertEqual(("Final", 2), (current.title, current.version))

            as_first_recorded = session.scalars(
                as_of(
                    Book,
                    validity=JAN_2021 + ONE_DAY,
                    system_period=self.first_recorded,
                )
            ).one()
            self.assertEqual(("Draft", 1), (as_first_recorded.title, as_first_recorded.version))
            self.assertTrue(as_first_recorded.validity.is_open)

            earlier = session.scalars(
                as_of(Book, validity=JAN_2020 + ONE_DAY, system_period=self.now)
            ).one()
            self.assertEqual("Draft", earlier.title)
            self.assertEqual(
                TemporalRange(start=JAN_2020, end=JAN_2021), earlier.validity
            )

    def test_history_rows(self) -> None:
        with SessionFactory.using_database(self.database_key) as session:
            rows = self._history_rows(session, Book)
            # Version 1 closed, version 1 as first recorded and version 2.
            self.assertEqual(3, len(rows))
            self.assertEqual(
                [(1, False), (1, True), (2, False)],
                sorted(
                    (r.version, r.validity.is_open and not r.system_period.is_open)
                    for r in rows
                ),
            )

    def test_relationship_follows_scope(self) -> None:
        with SessionFactory.using_database(self.database_key) as session:
            book = session.scalars(
                as_of(Book, validity=JAN_2020 + ONE_DAY, system_period=self.now)
            ).one()
            self.assertEqual("Old name", book.author.name)

            book = session.scalars(
                as_of(Book, validity=JAN_2021 + ONE_DAY, system_period=self.now)
            ).one()
            self.assertEqual("New name", book.author.name)

    def test_ambient_scope(self) -> None:
        with time_scopes.at(validity=JAN_2020 + ONE_DAY, system_period=self.now):
            with SessionFactory.using_database(self.database_key) as session:
                book = session.scalars(as_of(Book)).one()
                self.assertEqual("Draft", book.title)
                self.assertEqual("Old name", book.author.name)

                # Live application versioned queries follow the ambient scope.
                author = session.scalars(select(Author)).one()
                self.assertEqual("Old name", author.name)

    def test_at_time(self) -> None:
        with SessionFactory.using_database(self.database_key) as session:
            books = session.scalars(at_time(Book, self.now)).all()
            # The current time is later than the start of every validity range.
            self.assertEqual(["Final"], [b.title for b in books])


class SchemaStatementsIntegrationTest(TemporalIntegrationTest):
    """Tests for creating temporal tables from a migration."""

    def test_create_and_drop_bitemporal_table(self) -> None:
        engine = SQLAlchemyEngineManager.get_engine_for_database(self.database_key)
        assert engine is not None
        with engine.begin() as connection:
            op = Operations(MigrationContext.configure(connection))
            create_table(
                op,
                "events",
                Column("label", String(255)),
                versioning=TableVersioning.BITEMPORAL,
            )

        with engine.begin() as connection:
            connection.execute(
                text(
                    "INSERT INTO events (label, validity) "
                    "VALUES ('opened', tstzrange(now(), NULL))"
                )
            )

        with engine.begin() as connection:
            self.assertEqual(
                [("opened", 1)],
                connection.execute(
                    text("SELECT label, version FROM events_history")
                ).all(),
            )
            self.assertIsNotNone(versioning_hook(connection, "events"))

        with engine.begin() as connection:
            op = Operations(MigrationContext.configure(connection))
            drop_table(op, "events", versioning=TableVersioning.BITEMPORAL)

        with engine.connect() as connection:
            inspector = inspect(connection)
            self.assertFalse(inspector.has_table("events"))
            self.assertFalse(inspector.has_table("events_history"))
            # Only the hooks of the tables in the test schema remain.
            self.assertEqual(
                5 * 3,
                connection.execute(
                    text("SELECT count(*) FROM pg_proc WHERE proname LIKE 'sys_ver_%'")
                ).scalar(),
            )
