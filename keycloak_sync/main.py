"""
Command line entry point for Keycloak Sync.

Runs a full sync and writes the result as JSON, validates credentials, or
grants and revokes a single group membership.
"""

import sys
import json
import logging
import argparse
from typing import Optional, List

from keycloak_sync.config import load_config, ConfigurationError
from keycloak_sync.connector import Connector
from keycloak_sync.keycloak_client import AuthError, KeycloakSyncError
from keycloak_sync.logging_setup import setup_logging
from keycloak_sync.resources import (
    Resource, Entitlement, Grant, USER_RESOURCE_TYPE, GROUP_RESOURCE_TYPE, MEMBERSHIP_SLUG,
    parse_membership_entitlement_id, format_grant_id
)

logger = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_CONFIG_ERROR = 2
EXIT_AUTH_ERROR = 3


def build_membership_request(entitlement_id: str, principal_id: str):
    """
    Build the principal and entitlement values for a provisioning request.

    The entitlement id is passed through unchanged so that a malformed id is
    rejected by the provisioner.
    """
    group_id = parse_membership_entitlement_id(entitlement_id) or ''
    group = Resource(resource_type=GROUP_RESOURCE_TYPE.id, id=group_id, display_name=group_id)
    principal = Resource(resource_type=USER_RESOURCE_TYPE.id, id=principal_id, display_name=principal_id)
    entitlement = Entitlement(
        id=entitlement_id,
        display_name=f"Membership in {group_id}",
        description=f"Membership in the {group_id} group",
        resource=group,
        grantable_to=[USER_RESOURCE_TYPE.id],
        slug=MEMBERSHIP_SLUG,
    )
    return principal, entitlement


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description='Keycloak User and Group Sync')
    parser.add_argument('--config', '-c', help='Path to configuration file')
    parser.add_argument('--output', '-o', help='Write sync result JSON to this file instead of stdout')

    action = parser.add_mutually_exclusive_group()
    action.add_argument('--validate', action='store_true',
                        help='Check the credentials against Keycloak instead of syncing')
    action.add_argument('--grant', nargs=2, metavar=('ENTITLEMENT_ID', 'PRINCIPAL_ID'),
                        help='Add a user to the group of a membership entitlement')
    action.add_argument('--revoke', nargs=2, metavar=('ENTITLEMENT_ID', 'PRINCIPAL_ID'),
                        help='Remove a user from the group of a membership entitlement')

    return parser.parse_args(argv)


def run(args: argparse.Namespace) -> int:
    """
    Execute the requested operation.

    Returns:
        Exit code (0 for success, non-zero for failure)
    """
    try:
        config = load_config(args.config)
    except ConfigurationError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        return EXIT_CONFIG_ERROR

    setup_logging(config.get('logging', {}))

    try:
        connector = Connector(config)
    except ConfigurationError as e:
        logger.error(f"Configuration error: {e}")
        return EXIT_CONFIG_ERROR

    try:
        if args.validate:
            return _validate(connector)
        if args.grant:
            principal, entitlement = build_membership_request(*args.grant)
            grants = connector.grant(principal, entitlement)
            print(json.dumps([grant.to_dict() for grant in grants], indent=2))
            return EXIT_OK
        if args.revoke:
            principal, entitlement = build_membership_request(*args.revoke)
            grant_id = format_grant_id(entitlement.resource.id, principal.id)
            connector.revoke(Grant(id=grant_id, entitlement=entitlement, principal=principal))
            print(json.dumps({'revoked': grant_id}, indent=2))
            return EXIT_OK

        result = connector.sync()
        _write_output(result.to_dict(), args.output)
        return EXIT_OK

    except AuthError as e:
        logger.error(f"Authentication error: {e}")
        return EXIT_AUTH_ERROR
    except KeycloakSyncError as e:
        logger.error(f"Operation failed: {e}")
        return EXIT_FAILURE
    except OSError as e:
        logger.error(f"Failed to write sync result: {e}")
        return EXIT_FAILURE
    finally:
        connector.close()


def _validate(connector: Connector) -> int:
    """Print a health status document and return the matching exit code."""
    health_status = {'status': 'healthy', 'metadata': connector.metadata()}
    exit_code = EXIT_OK
    try:
        connector.validate()
        health_status['keycloak'] = {'status': 'pass', 'message': 'Authenticated call succeeded'}
    except AuthError as e:
        health_status['status'] = 'unhealthy'
        health_status['keycloak'] = {'status': 'fail', 'message': f'Authentication failed: {e}'}
        exit_code = EXIT_AUTH_ERROR
    except KeycloakSyncError as e:
        health_status['status'] = 'unhealthy'
        health_status['keycloak'] = {'status': 'fail', 'message': f'Keycloak call failed: {e}'}
        exit_code = EXIT_FAILURE

    print(json.dumps(health_status, indent=2))
    return exit_code


def _write_output(document, output_path: Optional[str]):
    if output_path:
        with open(output_path, 'w') as f:
            json.dump(document, f, indent=2)
        logger.info(f"Sync result written to {output_path}")
    else:
        print(json.dumps(document, indent=2))


def main():
    """Main entry point for the application."""
    sys.exit(run(parse_args()))


if __name__ == "__main__":
    main()
