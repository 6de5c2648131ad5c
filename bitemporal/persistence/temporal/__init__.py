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
"""Bitemporal versioning of SQLAlchemy entities.

Importing this package registers the Session listener that applies time scopes
to ORM queries.
"""
from bitemporal.persistence.database.constraint_violations import (
    constraint_violations_as_errors,
)
from bitemporal.persistence.temporal.application_versioning import (
    ApplicationVersioned,
    inactivate,
    original,
    originate,
    revise,
    revision,
)
from bitemporal.persistence.temporal.history_models import (
    HistoryEntity,
    HistoryModelResolver,
    HistoryNamespace,
    history,
    history_model,
)
from bitemporal.persistence.temporal.schema_statements import (
    TableVersioning,
    create_table,
    drop_table,
)
from bitemporal.persistence.temporal.system_versioning import (
    VersioningHookDefinition,
    build_history_table,
    change_versioning_hook,
    create_versioning_hook,
    drop_versioning_hook,
    system_versioned,
    system_versioned_table,
    versioning_hook,
)
from bitemporal.persistence.temporal.temporal_query import (
    TemporalScopeOption,
    all_revisions,
    as_of,
    at_time,
)
from bitemporal.persistence.temporal.temporal_range import (
    TemporalRange,
    TemporalRangeType,
)
from bitemporal.persistence.temporal.time_scope import (
    TimeScope,
    resolve_time,
    time_scopes,
)

__all__ = [
    "ApplicationVersioned",
    "HistoryEntity",
    "HistoryModelResolver",
    "HistoryNamespace",
    "TableVersioning",
    "TemporalRange",
    "TemporalRangeType",
    "TemporalScopeOption",
    "TimeScope",
    "VersioningHookDefinition",
    "all_revisions",
    "as_of",
    "at_time",
    "build_history_table",
    "change_versioning_hook",
    "constraint_violations_as_errors",
    "create_table",
    "create_versioning_hook",
    "drop_table",
    "drop_versioning_hook",
    "history",
    "history_model",
    "inactivate",
    "original",
    "originate",
    "resolve_time",
    "revise",
    "revision",
    "system_versioned",
    "system_versioned_table",
    "time_scopes",
    "versioning_hook",
]
