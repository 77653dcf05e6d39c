"""
Keycloak connector.

This module contains the connector that the governance platform talks to. It
owns the Keycloak client (built and connected on first use, rebuilt after it
is closed), exposes the user and group syncers and the provisioner, and can
run a complete sync that walks every page of every resource type.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Dict, Any, List, Optional, Callable, Tuple

from keycloak_sync.config import credentials_from_config
from keycloak_sync.keycloak_client import KeycloakClient, KeycloakSyncError
from keycloak_sync.provisioning import Provisioner
from keycloak_sync.resources import Resource, Entitlement, Grant
from keycloak_sync.syncers import ResourceSyncer, UserSyncer, GroupSyncer

logger = logging.getLogger(__name__)


class SyncError(KeycloakSyncError):
    """Raised when a sync run cannot make progress."""
    pass


@dataclass
class SyncResult:
    """Everything a full sync run produced."""

    resources: List[Resource] = field(default_factory=list)
    entitlements: List[Entitlement] = field(default_factory=list)
    grants: List[Grant] = field(default_factory=list)
    stats: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        stats = dict(self.stats)
        for key in ('start_time', 'end_time'):
            if isinstance(stats.get(key), datetime):
                stats[key] = stats[key].isoformat()
        return {
            'resources': [resource.to_dict() for resource in self.resources],
            'entitlements': [entitlement.to_dict() for entitlement in self.entitlements],
            'grants': [grant.to_dict() for grant in self.grants],
            'stats': stats,
        }


class Connector:
    """
    Connector for one Keycloak realm.

    Every public operation goes through ensure_connected(), so the client is
    only created when first needed and is recreated after close().
    """

    DISPLAY_NAME = 'Keycloak'
    DESCRIPTION = 'Syncs users, groups and group memberships from a Keycloak realm'

    def __init__(self, config: Dict[str, Any], client_factory: Callable[..., KeycloakClient] = KeycloakClient):
        """
        Initialize connector.

        Args:
            config: Loaded configuration dictionary
            client_factory: Callable building a KeycloakClient from credentials and options

        Raises:
            ConfigurationError: If a required Keycloak setting is missing
        """
        self.config = config
        self.credentials = credentials_from_config(config)

        keycloak_config = config.get('keycloak', {})
        self.client_options = {
            'page_size': keycloak_config.get('page_size', 300),
            'timeout': keycloak_config.get('timeout', 30),
            'verify_ssl': keycloak_config.get('verify_ssl', True),
            'ca_cert_file': keycloak_config.get('ca_cert_file'),
        }
        self.user_identity = config.get('sync', {}).get('user_identity', 'id')

        self.client_factory = client_factory
        self.client = None

        self.provisioner = Provisioner(self)
        self._syncers = [UserSyncer(self), GroupSyncer(self)]

    def ensure_connected(self) -> KeycloakClient:
        """
        Return a connected client, creating and connecting one if needed.

        Raises:
            AuthError: If authentication fails
        """
        if self.client is not None and self.client.is_connected:
            return self.client

        logger.debug(f"Connecting to Keycloak realm '{self.credentials.realm}'")
        client = self.client_factory(self.credentials, **self.client_options)
        client.connect()
        self.client = client
        return client

    def close(self):
        """Release the client. Safe to call when no client exists."""
        if self.client is None:
            return
        try:
            self.client.close()
        finally:
            self.client = None

    def metadata(self) -> Dict[str, str]:
        return {'display_name': self.DISPLAY_NAME, 'description': self.DESCRIPTION}

    def validate(self) -> bool:
        """
        Exercise the credentials with one authenticated call.

        Returns:
            True if the realm's users can be listed

        Raises:
            AuthError: If the credentials are rejected
            TransportError: If Keycloak cannot be reached
        """
        client = self.ensure_connected()
        client.list_users("", page_size=1)
        logger.info(f"Validated access to Keycloak realm '{self.credentials.realm}'")
        return True

    def resource_syncers(self) -> List[ResourceSyncer]:
        return list(self._syncers)

    def grant(self, principal: Resource, entitlement: Entitlement) -> List[Grant]:
        return self.provisioner.grant(principal, entitlement)

    def revoke(self, grant: Grant) -> None:
        self.provisioner.revoke(grant)

    def sync(self) -> SyncResult:
        """
        Run a complete sync of every resource type.

        Lists all resources page by page, then the entitlements and grants of
        each resource. Any error aborts the run.

        Returns:
            SyncResult with resources, entitlements, grants and statistics
        """
        result = SyncResult()
        stats = {
            'start_time': datetime.now(),
            'end_time': None,
            'runtime_seconds': 0,
            'pages_fetched': 0,
            'resources': {},
            'entitlements': 0,
            'grants': 0,
        }
        result.stats = stats

        logger.info(f"Starting sync of Keycloak realm '{self.credentials.realm}'")

        for syncer in self._syncers:
            resource_type = syncer.resource_type.id
            resources = self._collect_pages(
                f"list {resource_type}", lambda token: syncer.list(None, token), stats)
            stats['resources'][resource_type] = len(resources)
            result.resources.extend(resources)

            for resource in resources:
                result.entitlements.extend(self._collect_pages(
                    f"entitlements of {resource_type} {resource.id}",
                    lambda token: syncer.entitlements(resource, token), stats))
                result.grants.extend(self._collect_pages(
                    f"grants of {resource_type} {resource.id}",
                    lambda token: syncer.grants(resource, token), stats))

            logger.info(f"Synced {len(resources)} {resource_type} resources")

        stats['entitlements'] = len(result.entitlements)
        stats['grants'] = len(result.grants)
        stats['end_time'] = datetime.now()
        stats['runtime_seconds'] = (stats['end_time'] - stats['start_time']).total_seconds()

        self._log_sync_summary(stats)
        return result

    def _collect_pages(self, description: str, fetch: Callable[[Optional[str]], Tuple[List[Any], str]],
                       stats: Dict[str, Any]) -> List[Any]:
        """Chain page tokens until a page comes back empty or without a next token."""
        items = []
        page_token = ""
        seen_tokens = set()

        while True:
            page, next_token = fetch(page_token)
            stats['pages_fetched'] += 1
            items.extend(page)

            if not next_token or not page:
                return items
            if next_token in seen_tokens:
                raise SyncError(f"Pagination for {description} repeated page token {next_token!r}")
            seen_tokens.add(next_token)
            page_token = next_token

    def _log_sync_summary(self, stats: Dict[str, Any]):
        """Log final synchronization statistics."""
        runtime_str = f"{stats['runtime_seconds']:.2f} seconds"
        if stats['runtime_seconds'] > 60:
            minutes = int(stats['runtime_seconds'] // 60)
            seconds = stats['runtime_seconds'] % 60
            runtime_str = f"{minutes}m {seconds:.1f}s"

        logger.info("=== Sync Summary ===")
        logger.info(f"Realm: {self.credentials.realm}")
        logger.info(f"Total runtime: {runtime_str}")
        logger.info(f"Pages fetched: {stats['pages_fetched']}")
        for resource_type, count in stats['resources'].items():
            logger.info(f"{resource_type.capitalize()} resources: {count}")
        logger.info(f"Entitlements: {stats['entitlements']}")
        logger.info(f"Grants: {stats['grants']}")

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()
