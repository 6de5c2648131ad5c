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
"""Contains errors for the persistence directory."""
from typing import Optional


class TemporalError(Exception):
    """Base class for errors raised by the temporal versioning layer."""


class ClosedRevisionError(TemporalError):
    """Raised when a revision, revise or inactivate is attempted on an
    application-versioned revision that is no longer the head revision."""


class AbstractEntityError(TemporalError):
    """Raised when a history model is requested for an entity class that cannot
    be instantiated, e.g. an abstract declarative base."""

    def __init__(self, entity_name: str):
        self.entity_name = entity_name
        super().__init__(
            f"Abstract entity [{entity_name}] cannot have a history model"
        )


class UnresolvedHistoryNameError(TemporalError):
    """Raised when a history namespace is asked for a name that does not refer to
    a mapped entity class."""

    def __init__(self, msg: str, name: str):
        self.name = name
        super().__init__(msg)


class ConstraintViolationError(TemporalError):
    """Raised when the database rejects a write because two rows for the same
    identity would claim overlapping time ranges."""

    def __init__(
        self, table_name: str, constraint_name: Optional[str], detail: Optional[str]
    ):
        self.table_name = table_name
        self.constraint_name = constraint_name
        msg = (
            f"Overlapping time ranges rejected by [{constraint_name}] on table "
            f"[{table_name}]"
        )
        if detail:
            msg += f": {detail}"
        super().__init__(msg)
