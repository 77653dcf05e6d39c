"""
Group membership provisioning.

Grant adds a user to a group and revoke removes one. Each request moves
through REQUESTED -> RESOLVING -> APPLYING and ends COMMITTED or FAILED. A
request only reports success after Keycloak has accepted the change; nothing
is retried here beyond the client's single token refresh.
"""

import enum
import logging
from typing import List

from keycloak_sync.keycloak_client import KeycloakSyncError, ResourceNotFound
from keycloak_sync.logging_setup import security_logger
from keycloak_sync.resources import (
    USER_RESOURCE_TYPE, Resource, Entitlement, Grant,
    parse_membership_entitlement_id, format_grant_id
)

logger = logging.getLogger(__name__)


class ProvisioningError(KeycloakSyncError):
    """Base exception for grant and revoke failures."""
    pass


class InvalidEntitlementFormat(ProvisioningError):
    """Raised when an entitlement id is not group:<id>:membership."""
    pass


class InvalidPrincipal(ProvisioningError):
    """Raised when the principal of a grant is not a user."""
    pass


class UserNotFound(ProvisioningError):
    """Raised when the principal cannot be resolved to a Keycloak user."""
    pass


class GroupNotFound(ProvisioningError):
    """Raised when Keycloak does not know the entitlement's group."""
    pass


class ProvisioningState(enum.Enum):
    REQUESTED = 'requested'
    RESOLVING = 'resolving'
    APPLYING = 'applying'
    COMMITTED = 'committed'
    FAILED = 'failed'


class Provisioner:
    """
    Executes grant and revoke requests against Keycloak.

    Under the 'username' identity scheme the principal id is a username and is
    resolved with a linear scan over all users, one scan per request.
    """

    def __init__(self, connector):
        """
        Initialize provisioner.

        Args:
            connector: Connector that supplies a connected KeycloakClient
        """
        self.connector = connector
        self.last_state = None

    def _transition(self, operation: str, state: ProvisioningState, detail: str = ''):
        self.last_state = state
        logger.debug(f"{operation}: {state.value}{' - ' + detail if detail else ''}")

    def grant(self, principal: Resource, entitlement: Entitlement) -> List[Grant]:
        """
        Add the principal to the group named by a membership entitlement.

        Args:
            principal: User resource receiving the membership
            entitlement: Membership entitlement, id group:<groupID>:membership

        Returns:
            Single-element list with the new grant, id grant:<groupID>:<userID>

        Raises:
            InvalidEntitlementFormat: If the entitlement id is malformed (no provider call is made)
            InvalidPrincipal: If the principal is not a user resource
            UserNotFound: If the principal cannot be resolved
            GroupNotFound: If Keycloak does not know the group
        """
        operation = 'grant'
        self._transition(operation, ProvisioningState.REQUESTED,
                         f"entitlement={entitlement.id} principal={principal.id}")

        group_id = self._parse_request(operation, entitlement.id, principal)

        user_id = None
        try:
            self._transition(operation, ProvisioningState.RESOLVING)
            client = self.connector.ensure_connected()
            user_id = self.resolve_user_id(principal.id)

            self._transition(operation, ProvisioningState.APPLYING, f"user={user_id} group={group_id}")
            try:
                client.add_user_to_group(user_id, group_id)
            except ResourceNotFound as e:
                raise self._not_found_error(e, user_id, group_id)
        except KeycloakSyncError:
            self._fail(operation, user_id or principal.id, group_id)
            raise

        self._transition(operation, ProvisioningState.COMMITTED)
        security_logger.log_provisioning_operation(operation, user_id, group_id, True)
        logger.info(f"Added user {user_id} to group {group_id}")

        return [Grant(id=format_grant_id(group_id, user_id), entitlement=entitlement, principal=principal)]

    def revoke(self, grant: Grant) -> None:
        """
        Remove the grant's principal from the grant's group.

        Raises:
            InvalidEntitlementFormat: If the grant's entitlement id is malformed
            InvalidPrincipal: If the principal is not a user resource
            UserNotFound: If the principal cannot be resolved
            GroupNotFound: If Keycloak does not know the group
        """
        operation = 'revoke'
        self._transition(operation, ProvisioningState.REQUESTED, f"grant={grant.id}")

        group_id = self._parse_request(operation, grant.entitlement.id, grant.principal)

        user_id = None
        try:
            self._transition(operation, ProvisioningState.RESOLVING)
            client = self.connector.ensure_connected()
            user_id = self.resolve_user_id(grant.principal.id)

            self._transition(operation, ProvisioningState.APPLYING, f"user={user_id} group={group_id}")
            try:
                client.remove_user_from_group(user_id, group_id)
            except ResourceNotFound as e:
                raise self._not_found_error(e, user_id, group_id)
        except KeycloakSyncError:
            self._fail(operation, user_id or grant.principal.id, group_id)
            raise

        self._transition(operation, ProvisioningState.COMMITTED)
        security_logger.log_provisioning_operation(operation, user_id, group_id, True)
        logger.info(f"Removed user {user_id} from group {group_id}")

    def _parse_request(self, operation: str, entitlement_id: str, principal: Resource) -> str:
        """Validate the request shape and return the group id."""
        group_id = parse_membership_entitlement_id(entitlement_id)
        if group_id is None:
            self._transition(operation, ProvisioningState.FAILED, f"bad entitlement {entitlement_id!r}")
            raise InvalidEntitlementFormat(f"{operation}: invalid entitlement ID format: {entitlement_id}")

        if principal.resource_type != USER_RESOURCE_TYPE.id:
            self._transition(operation, ProvisioningState.FAILED, f"bad principal {principal.id!r}")
            raise InvalidPrincipal(f"{operation}: principal {principal.id} is a "
                                   f"{principal.resource_type}, expected {USER_RESOURCE_TYPE.id}")
        return group_id

    def _fail(self, operation: str, user_id: str, group_id: str):
        self._transition(operation, ProvisioningState.FAILED)
        security_logger.log_provisioning_operation(operation, user_id, group_id, False)

    def resolve_user_id(self, principal_id: str) -> str:
        """
        Resolve a principal resource id to a Keycloak user id.

        Under the 'id' identity scheme the principal id already is the user id.
        Under 'username' every user page is scanned for an exact, case-sensitive
        username match.

        Raises:
            UserNotFound: If no user has that username
        """
        if self.connector.user_identity != 'username':
            return principal_id

        client = self.connector.ensure_connected()
        page_token = ""
        while True:
            users, page_token = client.list_users(page_token)
            for user in users:
                if user.username == principal_id:
                    logger.debug(f"Resolved username {principal_id} to user id {user.id}")
                    return user.id
            if not page_token:
                break

        raise UserNotFound(f"No Keycloak user with username {principal_id!r}")

    def _not_found_error(self, error: ResourceNotFound, user_id: str,
                         group_id: str) -> ProvisioningError:
        """Translate a Keycloak 404 into the missing user or group."""
        if 'user' in (error.body or '').lower():
            return UserNotFound(f"Keycloak user {user_id} not found: {error}")
        return GroupNotFound(f"Keycloak group {group_id} not found: {error}")
