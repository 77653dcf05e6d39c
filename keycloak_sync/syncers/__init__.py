"""Resource syncers: one per resource type the connector reports."""

from keycloak_sync.syncers.base import ResourceSyncer
from keycloak_sync.syncers.users import UserSyncer
from keycloak_sync.syncers.groups import GroupSyncer

__all__ = ['ResourceSyncer', 'UserSyncer', 'GroupSyncer']
