"""
User syncer.

Lists realm users as user resources. Users carry no entitlements of their own;
their group memberships are reported as grants by the group syncer.
"""

import logging
from typing import List, Optional, Tuple

from keycloak_sync.mapping import user_resource
from keycloak_sync.resources import USER_RESOURCE_TYPE, Resource, Entitlement, Grant
from keycloak_sync.syncers.base import ResourceSyncer

logger = logging.getLogger(__name__)


class UserSyncer(ResourceSyncer):
    resource_type = USER_RESOURCE_TYPE

    def list(self, parent_id: Optional[str] = None,
             page_token: Optional[str] = None) -> Tuple[List[Resource], str]:
        users, next_token = self.client.list_users(page_token)
        resources = [user_resource(user, identity=self.user_identity) for user in users]
        logger.debug(f"Mapped {len(resources)} user resources (page token {page_token!r})")
        return resources, next_token

    def entitlements(self, resource: Resource,
                     page_token: Optional[str] = None) -> Tuple[List[Entitlement], str]:
        return [], ""

    def grants(self, resource: Resource,
               page_token: Optional[str] = None) -> Tuple[List[Grant], str]:
        return [], ""
