"""
Group syncer.

Lists realm groups as group resources, gives each group a single membership
entitlement grantable to users, and derives one grant per direct member. This
is the only place group membership is read during a sync.
"""

import logging
from typing import List, Optional, Tuple

from keycloak_sync.mapping import group_resource, user_resource
from keycloak_sync.resources import (
    GROUP_RESOURCE_TYPE, Resource, Entitlement, Grant,
    membership_entitlement, membership_grant
)
from keycloak_sync.syncers.base import ResourceSyncer

logger = logging.getLogger(__name__)


class GroupSyncer(ResourceSyncer):
    resource_type = GROUP_RESOURCE_TYPE

    def list(self, parent_id: Optional[str] = None,
             page_token: Optional[str] = None) -> Tuple[List[Resource], str]:
        groups, next_token = self.client.list_groups(page_token)
        # Groups are reported flat, never nested under a parent
        resources = [group_resource(group) for group in groups]
        logger.debug(f"Mapped {len(resources)} group resources (page token {page_token!r})")
        return resources, next_token

    def entitlements(self, resource: Resource,
                     page_token: Optional[str] = None) -> Tuple[List[Entitlement], str]:
        return [membership_entitlement(resource)], ""

    def grants(self, resource: Resource,
               page_token: Optional[str] = None) -> Tuple[List[Grant], str]:
        """
        Derive one membership grant per direct member of the group.

        Members are fetched in a single call; an empty group yields no grants.
        """
        members = self.client.list_group_members(resource.id)
        grants = [
            membership_grant(resource, user_resource(member, identity=self.user_identity))
            for member in members
        ]
        logger.debug(f"Derived {len(grants)} grants for group {resource.id}")
        return grants, ""
