"""
Translation of Keycloak users and groups into platform resources.

Pure functions: no I/O, and missing optional fields never raise. The one
exception is a user without a username when users are keyed by username.
"""

from typing import Optional

from keycloak_sync.keycloak_client import DecodeError
from keycloak_sync.models import KeycloakUser, KeycloakGroup
from keycloak_sync.resources import (
    Resource, UserTrait, GroupTrait, UserStatus,
    USER_RESOURCE_TYPE, GROUP_RESOURCE_TYPE
)


def user_resource_id(user: KeycloakUser, identity: str = 'id') -> str:
    """
    Return the resource id of a user under the configured identity scheme.

    Raises:
        DecodeError: If users are keyed by username and this user has none
    """
    if identity == 'username':
        if not user.username:
            raise DecodeError(f"User {user.id} has no username to use as its resource id")
        return user.username
    return user.id


def user_resource(user: KeycloakUser, parent_id: Optional[str] = None,
                  identity: str = 'id') -> Resource:
    """
    Map a Keycloak user to a user resource.

    Args:
        user: Keycloak user record
        parent_id: Optional parent resource id
        identity: 'id' to key the resource by Keycloak user id, 'username' to key it by username

    Returns:
        User resource with profile, login and status traits
    """
    username = user.username or ''

    profile = {
        'username': username,
        'email': user.email or '',
        'firstName': user.first_name or '',
        'lastName': user.last_name or '',
    }
    if user.created_timestamp is not None:
        profile['createdTimestamp'] = user.created_timestamp

    # Only an explicit false disables the account
    status = UserStatus.DISABLED if user.enabled is False else UserStatus.ENABLED

    return Resource(
        resource_type=USER_RESOURCE_TYPE.id,
        id=user_resource_id(user, identity),
        display_name=username,
        parent_id=parent_id,
        traits=UserTrait(profile=profile, login=username, email=user.email or '', status=status),
    )


def group_resource(group: KeycloakGroup, parent_id: Optional[str] = None) -> Resource:
    """Map a Keycloak group to a group resource."""
    profile = {
        'name': group.name or '',
        'path': group.path or '',
    }
    if group.description:
        profile['description'] = group.description

    return Resource(
        resource_type=GROUP_RESOURCE_TYPE.id,
        id=group.id,
        display_name=group.name or '',
        parent_id=parent_id,
        traits=GroupTrait(profile=profile),
    )
