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

"""Mixin class for database entities"""
from functools import lru_cache
from typing import Any, Dict, List, Optional, Set, Tuple, Type, TypeVar

from sqlalchemy.inspection import inspect
from sqlalchemy.orm.properties import ColumnProperty
from sqlalchemy.orm.relationships import RelationshipProperty


class DatabaseEntity:
    """Mixin class to provide helper methods to expose database entity
    properties
    """

    Property = TypeVar("Property", RelationshipProperty, ColumnProperty)

    @classmethod
    def get_entity_name(cls) -> str:
        return cls.__name__

    @classmethod
    @lru_cache(maxsize=None)
    def get_primary_key_column_names(cls) -> Tuple[str, ...]:
        """Returns the names of the primary key columns of the mapped table, in
        key order.

        NOTE: These names are the *column* names on the table, which are not
        guaranteed to be the same as the *attribute* names on the ORM object.
        """
        return tuple(col.name for col in inspect(cls).primary_key)

    @classmethod
    @lru_cache(maxsize=None)
    def get_column_property_names(cls) -> Set[str]:
        """Returns set of string names of all properties of the entity that
        correspond to columns in the table.

        NOTE: These names are the *attribute* names on the ORM object, which are
        not guaranteed to be the same as the *column* names in the table. This
        distinction is important in cases where a different attribute name is
        used because the column name is not a valid Python identifier.
        """
        return cls._get_entity_property_names_by_type(ColumnProperty)

    @classmethod
    @lru_cache(maxsize=None)
    def get_relationship_property_names(cls) -> Set[str]:
        """Returns set of string names of all properties of the entity that
        correspond to relationships to other database entities.
        """
        return set(inspect(cls).relationships.keys())

    @classmethod
    @lru_cache(maxsize=None)
    def get_property_name_by_column_name(cls, column_name: str) -> str:
        """Returns string name of ORM object attribute corresponding to
        |column_name| on table
        """
        for name, prop in cls._get_entity_names_and_properties_by_type(
            ColumnProperty
        ).items():
            if any(col.name == column_name for col in prop.columns):
                return name
        raise ValueError(
            f"No property found on [{cls.__name__}] for column [{column_name}]"
        )

    @classmethod
    @lru_cache(maxsize=None)
    def get_column_name_by_property_name(cls, property_name: str) -> Optional[str]:
        prop = cls._get_entity_names_and_properties_by_type(ColumnProperty).get(
            property_name
        )
        if prop is None:
            return None
        return prop.columns[0].name

    def get_primary_key(self) -> Tuple[Any, ...]:
        """Returns the primary key values for the entity, in key order"""
        return tuple(
            getattr(self, type(self).get_property_name_by_column_name(column_name), None)
            for column_name in type(self).get_primary_key_column_names()
        )

    @classmethod
    @lru_cache(maxsize=None)
    def _get_entity_property_names_by_type(
        cls, property_type: Type[Property]
    ) -> Set[str]:
        """Returns set of string names of all properties of |cls| that match the
        type of |property_type|.
        """
        return set(cls._get_entity_names_and_properties_by_type(property_type).keys())

    @classmethod
    def _get_entity_names_and_properties_by_type(
        cls, property_type: Type[Property]
    ) -> Dict[str, Property]:
        """Returns a dictionary where the keys are the string names of all
        properties of |cls| that are of type |property_type|, and the
        values are the corresponding properties.
        """

        names_to_properties = {}

        for property_object in inspect(cls).attrs:
            if isinstance(property_object, property_type):
                names_to_properties[property_object.key] = property_object

        return names_to_properties

    def column_values(self, exclude: Optional[List[str]] = None) -> Dict[str, Any]:
        """Returns a dictionary of all column attribute values on this entity,
        keyed by attribute name, skipping any names in |exclude|.
        """
        excluded = set(exclude or [])
        return {
            name: getattr(self, name)
            for name in type(self).get_column_property_names()
            if name not in excluded
        }

    def __repr__(self) -> str:
        key = ", ".join(str(value) for value in self.get_primary_key())
        return f"{self.get_entity_name()}({key})"
