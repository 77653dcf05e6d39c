#!/usr/bin/env python3
"""
Unit tests for the command line entry point.
"""

import os
import sys
import io
import json
import shutil
import tempfile
import unittest
from contextlib import redirect_stdout
from unittest.mock import patch, MagicMock

# Add the project directory to the path so we can import our modules
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))
sys.path.insert(0, os.path.dirname(os.path.abspath(__file__)))

from keycloak_sync.config import ConfigurationError
from keycloak_sync.connector import Connector
from keycloak_sync.keycloak_client import AuthError, TransportError
from keycloak_sync.main import (
    run, parse_args, build_membership_request,
    EXIT_OK, EXIT_FAILURE, EXIT_CONFIG_ERROR, EXIT_AUTH_ERROR
)
from keycloak_sync.provisioning import InvalidEntitlementFormat
from fakes import FakeKeycloakServer, make_config, client_factory_for


class TestParseArgs(unittest.TestCase):
    """Test cases for argument parsing."""

    def test_defaults(self):
        args = parse_args([])

        self.assertIsNone(args.config)
        self.assertFalse(args.validate)
        self.assertIsNone(args.grant)

    def test_grant_arguments(self):
        args = parse_args(['-c', 'config.yaml', '--grant', 'group:g1:membership', 'u1'])

        self.assertEqual(args.config, 'config.yaml')
        self.assertEqual(args.grant, ['group:g1:membership', 'u1'])

    def test_actions_are_exclusive(self):
        with patch('sys.stderr', new_callable=io.StringIO):
            with self.assertRaises(SystemExit):
                parse_args(['--validate', '--revoke', 'group:g1:membership', 'u1'])

    def test_build_membership_request(self):
        principal, entitlement = build_membership_request('group:g1:membership', 'alice')

        self.assertEqual((principal.resource_type, principal.id), ('user', 'alice'))
        self.assertEqual(entitlement.id, 'group:g1:membership')
        self.assertEqual(entitlement.resource.id, 'g1')

    def test_build_request_keeps_malformed_id(self):
        _, entitlement = build_membership_request('g1:membership', 'alice')
        self.assertEqual(entitlement.id, 'g1:membership')


class TestRun(unittest.TestCase):
    """Test cases for run() against the in-memory Keycloak server."""

    def setUp(self):
        self.server = FakeKeycloakServer()
        self.server.add_user('u1', 'alice')
        self.server.add_group('g1', 'admins')
        self.server.add_member('g1', 'u1')
        self.factory = client_factory_for(self.server)
        self.temp_dir = tempfile.mkdtemp()

        patchers = [
            patch('keycloak_sync.main.load_config', return_value=make_config()),
            patch('keycloak_sync.main.setup_logging'),
            patch('keycloak_sync.main.Connector',
                  side_effect=lambda config: Connector(config, client_factory=self.factory)),
        ]
        self.mocks = [patcher.start() for patcher in patchers]
        for patcher in patchers:
            self.addCleanup(patcher.stop)

    def tearDown(self):
        shutil.rmtree(self.temp_dir, ignore_errors=True)

    def run_cli(self, argv):
        stdout = io.StringIO()
        with redirect_stdout(stdout):
            exit_code = run(parse_args(argv))
        return exit_code, stdout.getvalue()

    def test_sync_to_stdout(self):
        exit_code, output = self.run_cli([])

        self.assertEqual(exit_code, EXIT_OK)
        document = json.loads(output)
        self.assertEqual(len(document['resources']), 2)
        self.assertEqual([grant['id'] for grant in document['grants']], ['grant:g1:u1'])

    def test_sync_to_file(self):
        output_path = os.path.join(self.temp_dir, 'result.json')

        exit_code, output = self.run_cli(['--output', output_path])

        self.assertEqual(exit_code, EXIT_OK)
        self.assertEqual(output, '')
        with open(output_path) as f:
            self.assertEqual(json.load(f)['stats']['grants'], 1)

    def test_unwritable_output_fails(self):
        output_path = os.path.join(self.temp_dir, 'missing', 'result.json')

        exit_code, output = self.run_cli(['--output', output_path])

        self.assertEqual(exit_code, EXIT_FAILURE)
        self.assertFalse(os.path.exists(output_path))

    def test_validate_healthy(self):
        exit_code, output = self.run_cli(['--validate'])

        self.assertEqual(exit_code, EXIT_OK)
        health = json.loads(output)
        self.assertEqual(health['status'], 'healthy')
        self.assertEqual(health['keycloak']['status'], 'pass')
        self.assertEqual(health['metadata']['display_name'], 'Keycloak')

    def test_validate_bad_credentials(self):
        self.server.client_secret = 'rotated'

        exit_code, output = self.run_cli(['--validate'])

        self.assertEqual(exit_code, EXIT_AUTH_ERROR)
        self.assertEqual(json.loads(output)['status'], 'unhealthy')

    def test_grant_and_revoke(self):
        self.server.add_group('g2', 'auditors')

        exit_code, output = self.run_cli(['--grant', 'group:g2:membership', 'u1'])
        self.assertEqual(exit_code, EXIT_OK)
        self.assertEqual(json.loads(output)[0]['id'], 'grant:g2:u1')
        self.assertEqual(self.server.members['g2'], ['u1'])

        exit_code, output = self.run_cli(['--revoke', 'group:g2:membership', 'u1'])
        self.assertEqual(exit_code, EXIT_OK)
        self.assertEqual(json.loads(output), {'revoked': 'grant:g2:u1'})
        self.assertEqual(self.server.members['g2'], [])

    def test_malformed_entitlement_fails(self):
        exit_code, _ = self.run_cli(['--grant', 'g1:membership', 'u1'])

        self.assertEqual(exit_code, EXIT_FAILURE)
        self.assertEqual(self.server.token_requests, 0)

    def test_auth_failure_exit_code(self):
        self.server.client_secret = 'rotated'

        exit_code, _ = self.run_cli([])

        self.assertEqual(exit_code, EXIT_AUTH_ERROR)


class TestRunFailures(unittest.TestCase):
    """Test cases for configuration and connector failures."""

    @patch('keycloak_sync.main.load_config', side_effect=ConfigurationError('missing realm'))
    def test_configuration_error(self, mock_load):
        with patch('sys.stderr', new_callable=io.StringIO) as stderr:
            exit_code = run(parse_args(['-c', 'missing.yaml']))

        self.assertEqual(exit_code, EXIT_CONFIG_ERROR)
        self.assertIn('missing realm', stderr.getvalue())
        mock_load.assert_called_once_with('missing.yaml')

    @patch('keycloak_sync.main.setup_logging')
    @patch('keycloak_sync.main.load_config', return_value=make_config())
    @patch('keycloak_sync.main.Connector')
    def test_connector_closed_after_failure(self, mock_connector_class, mock_load, mock_setup):
        connector = MagicMock()
        connector.sync.side_effect = TransportError('connection reset')
        mock_connector_class.return_value = connector

        exit_code = run(parse_args([]))

        self.assertEqual(exit_code, EXIT_FAILURE)
        connector.close.assert_called_once()

    @patch('keycloak_sync.main.setup_logging')
    @patch('keycloak_sync.main.load_config', return_value=make_config())
    @patch('keycloak_sync.main.Connector')
    def test_grant_error_exit_code(self, mock_connector_class, mock_load, mock_setup):
        connector = MagicMock()
        connector.grant.side_effect = InvalidEntitlementFormat('bad id')
        mock_connector_class.return_value = connector

        exit_code = run(parse_args(['--grant', 'bad', 'u1']))

        self.assertEqual(exit_code, EXIT_FAILURE)

    @patch('keycloak_sync.main.setup_logging')
    @patch('keycloak_sync.main.load_config', return_value=make_config())
    @patch('keycloak_sync.main.Connector')
    def test_sync_auth_error(self, mock_connector_class, mock_load, mock_setup):
        connector = MagicMock()
        connector.sync.side_effect = AuthError('invalid client')
        mock_connector_class.return_value = connector

        self.assertEqual(run(parse_args([])), EXIT_AUTH_ERROR)


if __name__ == '__main__':
    unittest.main()
