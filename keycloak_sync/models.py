"""
Keycloak admin API records.

Typed views of the user and group representations returned by the Keycloak
admin REST API. Records are read-only input to the resource mapper; optional
fields that Keycloak omits decode to None (or an empty collection).
"""

from dataclasses import dataclass, field
from typing import Dict, List, Any, Optional


def _optional_str(data: Dict[str, Any], key: str) -> Optional[str]:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, str):
        raise ValueError(f"field '{key}' must be a string, got {type(value).__name__}")
    return value


def _optional_bool(data: Dict[str, Any], key: str) -> Optional[bool]:
    value = data.get(key)
    if value is None:
        return None
    if not isinstance(value, bool):
        raise ValueError(f"field '{key}' must be a boolean, got {type(value).__name__}")
    return value


def _require_object(data: Any, kind: str) -> Dict[str, Any]:
    if not isinstance(data, dict):
        raise ValueError(f"{kind} representation must be a JSON object, got {type(data).__name__}")
    if not data.get('id') or not isinstance(data['id'], str):
        raise ValueError(f"{kind} representation is missing 'id'")
    return data


@dataclass(frozen=True)
class UserAccess:
    """Capability flags Keycloak reports for the calling client on a user."""

    manage: Optional[bool] = None
    view: Optional[bool] = None
    impersonate: Optional[bool] = None
    map_roles: Optional[bool] = None
    manage_group_membership: Optional[bool] = None

    @classmethod
    def from_dict(cls, data: Optional[Dict[str, Any]]) -> 'UserAccess':
        if data is None:
            return cls()
        if not isinstance(data, dict):
            raise ValueError("field 'access' must be a JSON object")
        return cls(
            manage=_optional_bool(data, 'manage'),
            view=_optional_bool(data, 'view'),
            impersonate=_optional_bool(data, 'impersonate'),
            map_roles=_optional_bool(data, 'mapRoles'),
            manage_group_membership=_optional_bool(data, 'manageGroupMembership'),
        )


@dataclass(frozen=True)
class KeycloakUser:
    """A Keycloak user (UserRepresentation)."""

    id: str
    username: Optional[str] = None
    enabled: Optional[bool] = None
    email: Optional[str] = None
    first_name: Optional[str] = None
    last_name: Optional[str] = None
    email_verified: Optional[bool] = None
    created_timestamp: Optional[int] = None
    access: UserAccess = field(default_factory=UserAccess)

    @classmethod
    def from_dict(cls, data: Any) -> 'KeycloakUser':
        """
        Decode a user representation.

        Raises:
            ValueError: If the payload is not a user object or a field has the wrong type
        """
        data = _require_object(data, 'user')

        created = data.get('createdTimestamp')
        if created is not None and (isinstance(created, bool) or not isinstance(created, int)):
            raise ValueError("field 'createdTimestamp' must be an integer")

        return cls(
            id=data['id'],
            username=_optional_str(data, 'username'),
            enabled=_optional_bool(data, 'enabled'),
            email=_optional_str(data, 'email'),
            first_name=_optional_str(data, 'firstName'),
            last_name=_optional_str(data, 'lastName'),
            email_verified=_optional_bool(data, 'emailVerified'),
            created_timestamp=created,
            access=UserAccess.from_dict(data.get('access')),
        )


@dataclass(frozen=True)
class KeycloakGroup:
    """A Keycloak group (GroupRepresentation)."""

    id: str
    name: Optional[str] = None
    path: Optional[str] = None
    attributes: Dict[str, List[str]] = field(default_factory=dict)
    sub_groups: List['KeycloakGroup'] = field(default_factory=list)

    @property
    def description(self) -> Optional[str]:
        """First value of the 'description' attribute, if any."""
        values = self.attributes.get('description') or []
        return values[0] if values else None

    @classmethod
    def from_dict(cls, data: Any) -> 'KeycloakGroup':
        """
        Decode a group representation, including nested sub-groups.

        Raises:
            ValueError: If the payload is not a group object or a field has the wrong type
        """
        data = _require_object(data, 'group')

        attributes = data.get('attributes') or {}
        if not isinstance(attributes, dict):
            raise ValueError("field 'attributes' must be a JSON object")
        for key, values in attributes.items():
            if not isinstance(values, list):
                raise ValueError(f"attribute '{key}' must be a list")

        sub_groups = data.get('subGroups') or []
        if not isinstance(sub_groups, list):
            raise ValueError("field 'subGroups' must be a list")

        return cls(
            id=data['id'],
            name=_optional_str(data, 'name'),
            path=_optional_str(data, 'path'),
            attributes={key: [str(v) for v in values] for key, values in attributes.items()},
            sub_groups=[cls.from_dict(sub) for sub in sub_groups],
        )
