"""
Resource, entitlement and grant values produced for the governance platform.

Entitlement and grant ids are part of the contract with the platform: grant
and revoke requests come back carrying them, and provisioning parses the
group id back out of the entitlement id.
"""

import enum
from dataclasses import dataclass, field
from typing import Dict, List, Any, Optional, Union

MEMBERSHIP_SLUG = 'membership'


class UserStatus(enum.Enum):
    ENABLED = 'enabled'
    DISABLED = 'disabled'


@dataclass(frozen=True)
class ResourceType:
    id: str
    display_name: str
    traits: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {'id': self.id, 'display_name': self.display_name, 'traits': list(self.traits)}


USER_RESOURCE_TYPE = ResourceType(id='user', display_name='User', traits=['user'])
GROUP_RESOURCE_TYPE = ResourceType(id='group', display_name='Group', traits=['group'])


@dataclass
class UserTrait:
    profile: Dict[str, Any] = field(default_factory=dict)
    login: str = ''
    email: str = ''
    status: UserStatus = UserStatus.ENABLED

    def to_dict(self) -> Dict[str, Any]:
        return {
            'profile': dict(self.profile),
            'login': self.login,
            'email': self.email,
            'status': self.status.value,
        }


@dataclass
class GroupTrait:
    profile: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return {'profile': dict(self.profile)}


@dataclass
class Resource:
    """A normalized user or group."""

    resource_type: str
    id: str
    display_name: str
    parent_id: Optional[str] = None
    traits: Union[UserTrait, GroupTrait, None] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            'resource_type': self.resource_type,
            'id': self.id,
            'display_name': self.display_name,
            'parent_id': self.parent_id,
            'traits': self.traits.to_dict() if self.traits else None,
        }


@dataclass
class Entitlement:
    """A grantable capability attached to a resource."""

    id: str
    display_name: str
    description: str
    resource: Resource
    grantable_to: List[str]
    slug: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'display_name': self.display_name,
            'description': self.description,
            'resource': {'resource_type': self.resource.resource_type, 'id': self.resource.id},
            'grantable_to': list(self.grantable_to),
            'slug': self.slug,
        }


@dataclass
class Grant:
    """An entitlement held by a principal."""

    id: str
    entitlement: Entitlement
    principal: Resource

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': self.id,
            'entitlement': self.entitlement.id,
            'principal': {'resource_type': self.principal.resource_type, 'id': self.principal.id},
        }


def format_membership_entitlement_id(group_id: str) -> str:
    return f"group:{group_id}:{MEMBERSHIP_SLUG}"


def parse_membership_entitlement_id(entitlement_id: str) -> Optional[str]:
    """
    Extract the group id from a membership entitlement id.

    Returns:
        The group id, or None if the id is not of the form group:<id>:membership
    """
    parts = entitlement_id.split(':') if isinstance(entitlement_id, str) else []
    if len(parts) != 3 or parts[0] != 'group' or parts[2] != MEMBERSHIP_SLUG or not parts[1]:
        return None
    return parts[1]


def format_grant_id(group_id: str, principal_id: str) -> str:
    return f"grant:{group_id}:{principal_id}"


def membership_entitlement(group: Resource) -> Entitlement:
    """Build the single membership entitlement of a group resource."""
    return Entitlement(
        id=format_membership_entitlement_id(group.id),
        display_name=f"Membership in {group.display_name}",
        description=f"Membership in the {group.display_name} group",
        resource=group,
        grantable_to=[USER_RESOURCE_TYPE.id],
        slug=MEMBERSHIP_SLUG,
    )


def membership_grant(group: Resource, principal: Resource) -> Grant:
    """Build the grant of a group's membership entitlement to a user."""
    return Grant(
        id=format_grant_id(group.id, principal.id),
        entitlement=membership_entitlement(group),
        principal=principal,
    )
