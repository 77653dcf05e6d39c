"""
Base resource syncer interface.

This module defines the abstract base class each resource type's syncer
implements. A syncer lists its resources one page at a time and reports the
entitlements and grants attached to each resource.
"""

import logging
from abc import ABC, abstractmethod
from typing import List, Optional, Tuple

from keycloak_sync.keycloak_client import KeycloakClient
from keycloak_sync.resources import ResourceType, Resource, Entitlement, Grant

logger = logging.getLogger(__name__)


class ResourceSyncer(ABC):
    """
    Abstract base class for resource syncers.

    Syncers never cache a position between calls: every call serves exactly
    the page named by the token it is given, and the caller chains tokens.
    """

    resource_type: ResourceType

    def __init__(self, connector):
        """
        Initialize syncer.

        Args:
            connector: Connector that supplies a connected KeycloakClient
        """
        self.connector = connector

    @property
    def client(self) -> KeycloakClient:
        """Connected client, connecting on demand."""
        return self.connector.ensure_connected()

    @property
    def user_identity(self) -> str:
        return self.connector.user_identity

    @abstractmethod
    def list(self, parent_id: Optional[str] = None,
             page_token: Optional[str] = None) -> Tuple[List[Resource], str]:
        """
        List one page of resources.

        Args:
            parent_id: Parent resource id, for nested resource types
            page_token: Token of the page to fetch ("" or None for the first)

        Returns:
            Tuple of (resources, next page token); "" when there are no more pages
        """
        pass

    @abstractmethod
    def entitlements(self, resource: Resource,
                     page_token: Optional[str] = None) -> Tuple[List[Entitlement], str]:
        """
        List the entitlements attached to a resource.

        Returns:
            Tuple of (entitlements, next page token)
        """
        pass

    @abstractmethod
    def grants(self, resource: Resource,
               page_token: Optional[str] = None) -> Tuple[List[Grant], str]:
        """
        List the grants of a resource's entitlements.

        Returns:
            Tuple of (grants, next page token)
        """
        pass
