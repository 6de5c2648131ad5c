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
"""System-time versioning: a history table that the database itself keeps in
step with a source table.

For every source table, three PL/pgSQL trigger functions mirror each committed
change into the history table. Every history row covers the [) system_period
during which its values were the committed values of the source row. All
statements inside one transaction share the same now(), so repeated writes to a
row inside one transaction collapse into a single history transition.
"""
import hashlib
import json
import logging
from typing import Any, Iterable, List, Optional, Sequence, Tuple, Type

import attr
from sqlalchemy import Column, MetaData, Table, event, text
from sqlalchemy.dialects import postgresql
from sqlalchemy.engine import Connection

from bitemporal.persistence.database.constants import (
    HISTORY_TABLE_SUFFIX,
    SYSTEM_PERIOD_COLUMN_NAME,
    VERSIONING_HOOK_FUNCTION_PREFIX,
)
from bitemporal.persistence.temporal.temporal_range import (
    TemporalRangeType,
    build_exclusion_constraint,
    ensure_btree_gist,
)

_PREPARER = postgresql.dialect().identifier_preparer

# Key in Table.info under which a source table holds its history table.
HISTORY_TABLE_INFO_KEY = "history_table"

INSERT = "insert"
UPDATE = "update"
DELETE = "delete"


def _quote(identifier: str) -> str:
    return _PREPARER.quote(identifier)


def _split_qualified_name(name: str) -> Tuple[Optional[str], str]:
    if "." in name:
        schema, table = name.split(".", 1)
        return schema, table
    return None, name


def _literal(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


def quote_qualified_name(name: str) -> str:
    """Quotes a possibly schema-qualified name, e.g. 'my schema.books' becomes
    '"my schema".books'."""
    schema, table = _split_qualified_name(name)
    if schema is None:
        return _quote(table)
    return f"{_quote(schema)}.{_quote(table)}"


def _tuple_converter(values: Iterable[str]) -> Tuple[str, ...]:
    return tuple(values)


@attr.s(frozen=True)
class VersioningHookDefinition:
    """Parameters of the triggers that version |source_table| into
    |history_table|.

    The definition is serialized into a comment on the insert function so that
    the hook installed in a database can be read back and changed later.
    """

    source_table: str = attr.ib()
    history_table: str = attr.ib()
    columns: Tuple[str, ...] = attr.ib(converter=_tuple_converter)
    primary_key: Tuple[str, ...] = attr.ib(converter=_tuple_converter)
    # Bumped when the generated trigger logic changes incompatibly.
    version: int = attr.ib(default=2)

    @property
    def insert_hook(self) -> "VersioningHook":
        return VersioningHook(self, INSERT)

    @property
    def update_hook(self) -> "VersioningHook":
        return VersioningHook(self, UPDATE)

    @property
    def delete_hook(self) -> "VersioningHook":
        return VersioningHook(self, DELETE)

    @property
    def hooks(self) -> List["VersioningHook"]:
        return [self.insert_hook, self.update_hook, self.delete_hook]

    @property
    def digest(self) -> str:
        key = f"{self.source_table}:{self.history_table}"
        return hashlib.md5(key.encode("utf-8")).hexdigest()[:20]

    def to_json(self) -> str:
        return json.dumps(attr.asdict(self, retain_collection_types=False))

    @classmethod
    def from_json(cls, serialized: str) -> "VersioningHookDefinition":
        return cls(**json.loads(serialized))

    def with_columns(
        self, add_columns: Sequence[str] = (), remove_columns: Sequence[str] = ()
    ) -> "VersioningHookDefinition":
        for column in remove_columns:
            if column in self.primary_key:
                raise ValueError(
                    f"Cannot stop versioning primary key column [{column}] of "
                    f"[{self.source_table}]"
                )
        columns = [c for c in self.columns if c not in set(remove_columns)]
        columns.extend(c for c in add_columns if c not in columns)
        return attr.evolve(self, columns=columns)


@attr.s(frozen=True)
class VersioningHook:
    """One trigger and its function, for a single kind of source row change."""

    definition: VersioningHookDefinition = attr.ib()
    kind: str = attr.ib(validator=attr.validators.in_([INSERT, UPDATE, DELETE]))

    @property
    def function_name(self) -> str:
        name = f"{VERSIONING_HOOK_FUNCTION_PREFIX}_{self.kind}_{self.definition.digest}"
        schema, _table = _split_qualified_name(self.definition.source_table)
        return f"{schema}.{name}" if schema else name

    @property
    def trigger_name(self) -> str:
        _schema, name = _split_qualified_name(self.function_name)
        return name

    def create_statements(self) -> List[str]:
        function = quote_qualified_name(self.function_name)
        source = quote_qualified_name(self.definition.source_table)
        trigger = _quote(self.trigger_name)
        statements = [
            f"CREATE OR REPLACE FUNCTION {function}() RETURNS TRIGGER AS $$\n"
            f"BEGIN\n{self._body()}\nEND;\n$$ LANGUAGE plpgsql",
            f"DROP TRIGGER IF EXISTS {trigger} ON {source}",
            f"CREATE TRIGGER {trigger} AFTER {self.kind.upper()} ON {source} "
            f"FOR EACH ROW EXECUTE PROCEDURE {function}()",
        ]
        if self.kind == INSERT:
            comment = self.definition.to_json().replace("'", "''")
            statements.append(f"COMMENT ON FUNCTION {function}() IS '{comment}'")
        return statements

    def drop_statements(self) -> List[str]:
        # CASCADE drops the trigger too, even when the source table is gone.
        return [
            f"DROP FUNCTION IF EXISTS {quote_qualified_name(self.function_name)}() "
            f"CASCADE",
        ]

    def _body(self) -> str:
        if not self.definition.columns:
            raise ValueError(
                f"Versioning hook for [{self.definition.source_table}] has no columns"
            )
        if self.kind == INSERT:
            return self._insert_body()
        if self.kind == UPDATE:
            return self._update_body()
        return self._delete_body()

    def _history(self) -> str:
        return quote_qualified_name(self.definition.history_table)

    def _columns(self, prefix: str = "") -> str:
        return ", ".join(f"{prefix}{_quote(c)}" for c in self.definition.columns)

    def _matches_open_row(self) -> str:
        keys = " AND ".join(
            f"{_quote(c)} = OLD.{_quote(c)}" for c in self.definition.primary_key
        )
        return f"{keys} AND upper_inf({SYSTEM_PERIOD_COLUMN_NAME})"

    def _insert_new_row(self) -> str:
        return (
            f"  INSERT INTO {self._history()} ({self._columns()}, "
            f"{SYSTEM_PERIOD_COLUMN_NAME})\n"
            f"  VALUES ({self._columns('NEW.')}, tstzrange(now(), NULL));"
        )

    def _insert_body(self) -> str:
        return f"{self._insert_new_row()}\n  RETURN NULL;"

    def _reject_concurrent_write(self) -> str:
        # A transaction that started before a concurrent writer committed would
        # otherwise close the open row before it began.
        history = self.definition.history_table
        message = (
            f"Overlapping {SYSTEM_PERIOD_COLUMN_NAME} for "
            f"[{self.definition.source_table}] in [{history}]"
        )
        _schema, table = _split_qualified_name(history)
        return (
            f"  IF EXISTS (SELECT 1 FROM {self._history()}\n"
            f"    WHERE {self._matches_open_row()} "
            f"AND lower({SYSTEM_PERIOD_COLUMN_NAME}) > now()) THEN\n"
            f"    RAISE EXCEPTION USING ERRCODE = 'exclusion_violation',\n"
            f"      MESSAGE = {_literal(message)},\n"
            f"      TABLE = {_literal(table)},\n"
            f"      CONSTRAINT = {_literal(history_constraint_name(table))};\n"
            f"  END IF;\n"
        )

    def _update_body(self) -> str:
        return (
            f"  IF ROW({self._columns('OLD.')}) *= "
            f"ROW({self._columns('NEW.')}) THEN\n"
            f"    RETURN NULL;\n"
            f"  END IF;\n"
            f"  UPDATE {self._history()} SET ({self._columns()}) = "
            f"ROW({self._columns('NEW.')})\n"
            f"  WHERE {self._matches_open_row()} "
            f"AND lower({SYSTEM_PERIOD_COLUMN_NAME}) = now();\n"
            f"  IF FOUND THEN\n"
            f"    RETURN NULL;\n"
            f"  END IF;\n"
            f"{self._reject_concurrent_write()}"
            f"  UPDATE {self._history()} SET {SYSTEM_PERIOD_COLUMN_NAME} = "
            f"tstzrange(lower({SYSTEM_PERIOD_COLUMN_NAME}), now())\n"
            f"  WHERE {self._matches_open_row()};\n"
            f"{self._insert_new_row()}\n"
            f"  RETURN NULL;"
        )

    def _delete_body(self) -> str:
        return (
            f"  DELETE FROM {self._history()}\n"
            f"  WHERE {self._matches_open_row()} "
            f"AND lower({SYSTEM_PERIOD_COLUMN_NAME}) = now();\n"
            f"  IF FOUND THEN\n"
            f"    RETURN NULL;\n"
            f"  END IF;\n"
            f"{self._reject_concurrent_write()}"
            f"  UPDATE {self._history()} SET {SYSTEM_PERIOD_COLUMN_NAME} = "
            f"tstzrange(lower({SYSTEM_PERIOD_COLUMN_NAME}), now())\n"
            f"  WHERE {self._matches_open_row()};\n"
            f"  RETURN NULL;"
        )


def _execute(bind: Connection, statement: str) -> None:
    # Generated SQL is never parameterized, so colons are literal.
    bind.execute(text(statement.replace(":", r"\:")))


def versioning_hook_definition(
    source: Table, history: Table
) -> VersioningHookDefinition:
    return VersioningHookDefinition(
        source_table=source.fullname,
        history_table=history.fullname,
        columns=[column.name for column in source.columns],
        primary_key=[column.name for column in source.primary_key],
    )


def create_versioning_hook(bind: Connection, definition: VersioningHookDefinition) -> None:
    """Installs the insert, update and delete triggers of |definition|. Running
    this again with the same definition replaces the installed hook."""
    for hook in definition.hooks:
        for statement in hook.create_statements():
            _execute(bind, statement)
    logging.info(
        "Created versioning hook from [%s] to [%s]",
        definition.source_table,
        definition.history_table,
    )


def drop_versioning_hook(bind: Connection, source_table: str, history_table: str) -> None:
    definition = VersioningHookDefinition(
        source_table=source_table,
        history_table=history_table,
        columns=(),
        primary_key=(),
    )
    for hook in definition.hooks:
        for statement in hook.drop_statements():
            _execute(bind, statement)
    logging.info(
        "Dropped versioning hook from [%s] to [%s]", source_table, history_table
    )


def versioning_hook(bind: Connection, source_table: str) -> Optional[VersioningHookDefinition]:
    """Returns the definition of the hook installed on |source_table|, or None if
    the table is not system versioned."""
    prefix = f"{VERSIONING_HOOK_FUNCTION_PREFIX}_{INSERT}_".replace("_", r"\_")
    result = bind.execute(
        text(
            "SELECT obj_description(p.oid, 'pg_proc') FROM pg_trigger t "
            "JOIN pg_proc p ON p.oid = t.tgfoid "
            "WHERE t.tgrelid = to_regclass(:table_name) AND p.proname LIKE :prefix"
        ),
        {"table_name": quote_qualified_name(source_table), "prefix": f"{prefix}%"},
    ).scalar()
    if result is None:
        return None
    return VersioningHookDefinition.from_json(result)


def change_versioning_hook(
    bind: Connection,
    source_table: str,
    history_table: str,
    add_columns: Sequence[str] = (),
    remove_columns: Sequence[str] = (),
) -> VersioningHookDefinition:
    """Replaces the hook on |source_table| with one that also versions
    |add_columns| and no longer versions |remove_columns|. The history table
    must already have any added columns."""
    definition = versioning_hook(bind, source_table)
    if definition is None:
        raise ValueError(f"Table [{source_table}] has no versioning hook")
    if definition.history_table != history_table:
        raise ValueError(
            f"Table [{source_table}] is versioned into "
            f"[{definition.history_table}], not [{history_table}]"
        )
    changed = definition.with_columns(add_columns, remove_columns)
    drop_versioning_hook(bind, source_table, history_table)
    create_versioning_hook(bind, changed)
    return changed


def history_table_name(source_name: str) -> str:
    return f"{source_name}{HISTORY_TABLE_SUFFIX}"


def history_constraint_name(history_name: str) -> str:
    return f"{history_name}_{SYSTEM_PERIOD_COLUMN_NAME}_excl"


def _history_column(column: Column) -> Column:
    if column.primary_key:
        return Column(
            column.name,
            column.type,
            key=column.key,
            primary_key=True,
            autoincrement=False,
        )
    return Column(column.name, column.type, key=column.key, nullable=True)


def mirror_source_columns(source: Table, history: Table) -> None:
    """Adds any column of |source| that |history| lacks, e.g. the columns that
    single table subclasses add after the history table was built."""
    for column in source.columns:
        if column.name not in history.c:
            history.append_column(_history_column(column))


def build_history_table(
    source: Table, metadata: MetaData, name: Optional[str] = None
) -> Table:
    """Builds the history table of |source| in |metadata|.

    History rows are snapshots, so none of the source table's defaults,
    nullability, foreign keys or unique constraints carry over. The primary key
    is the source primary key plus system_period.
    """
    name = name or history_table_name(source.name)
    key = name if source.schema is None else f"{source.schema}.{name}"
    if key in metadata.tables:
        return metadata.tables[key]

    columns: List[Any] = [_history_column(column) for column in source.columns]
    columns.append(
        Column(SYSTEM_PERIOD_COLUMN_NAME, TemporalRangeType, primary_key=True)
    )
    columns.append(
        build_exclusion_constraint(
            [column.name for column in source.primary_key],
            SYSTEM_PERIOD_COLUMN_NAME,
            name=history_constraint_name(name),
        )
    )

    logging.debug("Building history table [%s] for [%s]", key, source.fullname)
    return Table(
        name,
        metadata,
        *columns,
        schema=source.schema,
        info={"history_of": source.fullname},
        listeners=[("before_create", ensure_btree_gist)],
    )


def system_versioned_table(
    source: Table, history_table_name: Optional[str] = None
) -> Table:
    """Makes |source| system versioned: builds its history table and installs the
    versioning hook whenever the metadata is created. Used directly for tables
    that have no entity of their own, e.g. the association table of a many to
    many relationship."""
    existing = source.info.get(HISTORY_TABLE_INFO_KEY)
    if existing is not None:
        return existing

    history = build_history_table(source, source.metadata, history_table_name)

    def mirror_columns(_target: Any, _connection: Connection, **_kw: Any) -> None:
        mirror_source_columns(source, history)

    def create_hook(_target: Any, connection: Connection, **kw: Any) -> None:
        tables = kw.get("tables")
        if tables is not None and source not in tables:
            return
        create_versioning_hook(connection, versioning_hook_definition(source, history))

    def drop_hook(_target: Any, connection: Connection, **_kw: Any) -> None:
        drop_versioning_hook(connection, source.fullname, history.fullname)

    event.listen(history, "before_create", mirror_columns)
    event.listen(source.metadata, "after_create", create_hook)
    event.listen(source.metadata, "before_drop", drop_hook)

    source.info[HISTORY_TABLE_INFO_KEY] = history
    return history


def system_versioned(
    model_cls: Optional[Type] = None, *, history_table_name: Optional[str] = None
) -> Any:
    """Class decorator making a declarative entity system versioned:

        @system_versioned
        class Book(Base):
            ...

    Builds the history table next to the entity's table and installs the
    versioning hook whenever the metadata is created.
    """

    def decorate(cls: Type) -> Type:
        cls.__history_table__ = system_versioned_table(cls.__table__, history_table_name)
        cls.__system_versioned__ = True
        return cls

    if model_cls is not None:
        return decorate(model_cls)
    return decorate


def history_table_of(source: Table) -> Optional[Table]:
    return source.info.get(HISTORY_TABLE_INFO_KEY)


def is_system_versioned(model_cls: Type) -> bool:
    return bool(getattr(model_cls, "__system_versioned__", False))
