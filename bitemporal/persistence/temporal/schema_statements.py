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
"""Migration entry points for creating and dropping temporal tables.

Inside an Alembic migration:

    def upgrade() -> None:
        create_table(
            op,
            "books",
            Column("title", String(255)),
            versioning=TableVersioning.BITEMPORAL,
        )

    def downgrade() -> None:
        drop_table(op, "books", versioning=TableVersioning.BITEMPORAL)
"""
import enum
import logging
from typing import Any, List, Optional, Sequence

from alembic.operations import Operations
from sqlalchemy import BigInteger, Column, MetaData, PrimaryKeyConstraint, Table, text

from bitemporal.persistence.database.constants import (
    DEFAULT_PRIMARY_KEY_COLUMN_NAME,
    VALIDITY_COLUMN_NAME,
    VERSION_COLUMN_NAME,
)
from bitemporal.persistence.temporal import system_versioning
from bitemporal.persistence.temporal.temporal_range import (
    TemporalRangeType,
    build_exclusion_constraint,
    ensure_btree_gist,
)


class TableVersioning(enum.Enum):
    PLAIN = "plain"
    APPLICATION = "application"
    SYSTEM = "system"
    # Application versioned and system versioned.
    BITEMPORAL = "bitemporal"


def create_table(
    op: Operations,
    table_name: str,
    *columns: Any,
    versioning: TableVersioning = TableVersioning.PLAIN,
    primary_key: Optional[Sequence[str]] = None,
    history_table_name: Optional[str] = None,
    **kw: Any,
) -> Table:
    """Creates |table_name| with |columns| and the extra columns, constraints,
    history table and versioning hook that |versioning| requires. Returns the
    created source table.
    """
    match versioning:
        case TableVersioning.PLAIN:
            return op.create_table(table_name, *columns, **kw)
        case TableVersioning.APPLICATION:
            return _create_application_versioned_table(
                op, table_name, columns, primary_key, **kw
            )
        case TableVersioning.SYSTEM:
            source = op.create_table(table_name, *columns, **kw)
            _create_history(op, source, history_table_name)
            return source
        case TableVersioning.BITEMPORAL:
            source = _create_application_versioned_table(
                op, table_name, columns, primary_key, **kw
            )
            _create_history(op, source, history_table_name)
            return source

    raise ValueError(f"Unexpected table versioning [{versioning}].")


def drop_table(
    op: Operations,
    table_name: str,
    versioning: TableVersioning = TableVersioning.PLAIN,
    history_table_name: Optional[str] = None,
    schema: Optional[str] = None,
) -> None:
    """Drops a table created by |create_table| with the same |versioning|."""
    match versioning:
        case TableVersioning.PLAIN | TableVersioning.APPLICATION:
            op.drop_table(table_name, schema=schema)
            return
        case TableVersioning.SYSTEM | TableVersioning.BITEMPORAL:
            history_name = history_table_name or system_versioning.history_table_name(
                table_name
            )
            system_versioning.drop_versioning_hook(
                op.get_bind(),
                _qualified(table_name, schema),
                _qualified(history_name, schema),
            )
            op.drop_table(history_name, schema=schema)
            op.drop_table(table_name, schema=schema)
            return

    raise ValueError(f"Unexpected table versioning [{versioning}].")


def _qualified(table_name: str, schema: Optional[str]) -> str:
    return f"{schema}.{table_name}" if schema else table_name


def _create_application_versioned_table(
    op: Operations,
    table_name: str,
    columns: Sequence[Any],
    primary_key: Optional[Sequence[str]],
    **kw: Any,
) -> Table:
    """The primary key is |primary_key| (default "id") plus "version". Without an
    explicit |primary_key|, "id" is added as a BIGSERIAL column."""
    identity_columns = list(primary_key or [DEFAULT_PRIMARY_KEY_COLUMN_NAME])
    table_columns: List[Any] = list(columns)
    declared = {c.name for c in table_columns if isinstance(c, Column)}

    if primary_key is None and DEFAULT_PRIMARY_KEY_COLUMN_NAME not in declared:
        table_columns.insert(
            0,
            Column(
                DEFAULT_PRIMARY_KEY_COLUMN_NAME,
                BigInteger,
                nullable=False,
                autoincrement=True,
            ),
        )
    missing = [c for c in identity_columns if c not in declared | {DEFAULT_PRIMARY_KEY_COLUMN_NAME}]
    if missing:
        raise ValueError(
            f"Primary key columns {missing} are not declared on [{table_name}]"
        )

    table_columns.extend(
        [
            Column(
                VERSION_COLUMN_NAME,
                BigInteger,
                nullable=False,
                server_default=text("1"),
            ),
            Column(VALIDITY_COLUMN_NAME, TemporalRangeType, nullable=False),
            PrimaryKeyConstraint(*identity_columns, VERSION_COLUMN_NAME),
            build_exclusion_constraint(
                identity_columns,
                VALIDITY_COLUMN_NAME,
                name=f"{table_name}_{VALIDITY_COLUMN_NAME}_excl",
            ),
        ]
    )

    ensure_btree_gist(None, op.get_bind())
    logging.info(
        "Creating application versioned table [%s] with identity %s",
        table_name,
        identity_columns,
    )
    return op.create_table(table_name, *table_columns, **kw)


def _create_history(
    op: Operations, source: Table, history_table_name: Optional[str]
) -> Table:
    bind = op.get_bind()
    history = system_versioning.build_history_table(
        source, MetaData(), history_table_name
    )
    history.create(bind)
    system_versioning.create_versioning_hook(
        bind, system_versioning.versioning_hook_definition(source, history)
    )
    return history
