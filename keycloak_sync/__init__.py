"""
Keycloak Sync - Synchronize Keycloak users, groups and group memberships into a
resource / entitlement / grant model, and provision group membership back.

This package reads a single Keycloak realm through its admin REST API and
produces normalized resources, membership entitlements and grants.
"""

__version__ = "1.0.0"
__author__ = "Keycloak Sync Team"
