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
"""Surfaces overlapping-range rejections from the database as
ConstraintViolationError.

PostgreSQL reports both exclusion constraint violations and the conflicts that
versioning hooks detect between concurrent writers with the
exclusion_violation SQLSTATE.
"""
import logging
from contextlib import contextmanager
from typing import Iterator, Optional

from psycopg2.errorcodes import EXCLUSION_VIOLATION
from sqlalchemy.exc import IntegrityError

from bitemporal.persistence.errors import ConstraintViolationError


def is_exclusion_violation(error: IntegrityError) -> bool:
    return getattr(error.orig, "pgcode", None) == EXCLUSION_VIOLATION


@contextmanager
def constraint_violations_as_errors(
    entity_name: Optional[str] = None, table_name: Optional[str] = None
) -> Iterator[None]:
    """Raises ConstraintViolationError in place of any exclusion violation raised
    inside the block. Other errors propagate as is.

    |table_name| is used when the database does not report the table, and
    |entity_name| only names the writer in the log.
    """
    try:
        yield
    except IntegrityError as e:
        if not is_exclusion_violation(e):
            raise
        diag = getattr(e.orig, "diag", None)
        violated_table = getattr(diag, "table_name", None) or table_name or "unknown"
        constraint_name = getattr(diag, "constraint_name", None)
        logging.error(
            "Overlapping time ranges for [%s] rejected by [%s] on table [%s]",
            entity_name or violated_table,
            constraint_name,
            violated_table,
        )
        raise ConstraintViolationError(
            violated_table,
            constraint_name,
            getattr(diag, "message_detail", None)
            or getattr(diag, "message_primary", None),
        ) from e
