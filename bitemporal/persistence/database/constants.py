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
"""Constants for interacting with the database"""

SQLALCHEMY_DB_NAME = "SQLALCHEMY_DB_NAME"
SQLALCHEMY_DB_HOST = "SQLALCHEMY_DB_HOST"
SQLALCHEMY_DB_PORT = "SQLALCHEMY_DB_PORT"
SQLALCHEMY_DB_USER = "SQLALCHEMY_DB_USER"
SQLALCHEMY_DB_PASSWORD = "SQLALCHEMY_DB_PASSWORD"

# Application time dimension of application-versioned tables.
VALIDITY_COLUMN_NAME = "validity"

# Transaction time dimension of history tables.
SYSTEM_PERIOD_COLUMN_NAME = "system_period"

VERSION_COLUMN_NAME = "version"

DEFAULT_PRIMARY_KEY_COLUMN_NAME = "id"

HISTORY_TABLE_SUFFIX = "_history"

# Appended to live class names when deriving history model classes, e.g. Book
# and BookHistory.
HISTORY_CLASS_SUFFIX = "History"

# Prefix of every function created for a system versioning hook.
VERSIONING_HOOK_FUNCTION_PREFIX = "sys_ver"
