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
"""Packaging for the bitemporal versioning library.

REQUIRED_PACKAGES are the external packages imported by ./bitemporal outside of
its tests, and must be manually updated any time such a dependency is added.
"""
import setuptools

REQUIRED_PACKAGES = [
    "alembic",
    "attrs",
    # Exclusion violations are recognized by psycopg2 error codes.
    "psycopg2-binary",
    # Requires SQLAlchemy 2.0 for the Range type and ORM execute events.
    "SQLAlchemy>=2.0",
]

TEST_PACKAGES = [
    "freezegun",
    "pytest",
]

setuptools.setup(
    name="bitemporal",
    version="0.1.0",
    python_requires=">=3.10",
    install_requires=REQUIRED_PACKAGES,
    extras_require={"tests": TEST_PACKAGES},
    packages=setuptools.find_packages(include=["bitemporal", "bitemporal.*"]),
)
