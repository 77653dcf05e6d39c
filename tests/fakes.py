"""
In-memory Keycloak server used by the test suite.

FakeKeycloakServer answers the token endpoint and the admin endpoints the
client uses. FakeHTTPConnection stands in for http.client connections and
routes every request to a server handler.
"""

import json
import itertools
from urllib.parse import urlsplit, parse_qs, unquote

from keycloak_sync.keycloak_client import KeycloakClient

SERVER_URL = 'http://keycloak.test'
REALM = 'test'
CLIENT_ID = 'sync-client'
CLIENT_SECRET = 'sync-secret'


def make_config(**overrides):
    """Return a loaded-style configuration dictionary for the fake server."""
    config = {
        'keycloak': {
            'server_url': SERVER_URL,
            'realm': REALM,
            'client_id': CLIENT_ID,
            'client_secret': CLIENT_SECRET,
            'page_size': 300,
            'timeout': 5,
            'verify_ssl': True,
            'ca_cert_file': None,
        },
        'sync': {'user_identity': 'id'},
        'logging': {'level': 'INFO'},
    }
    for section, values in overrides.items():
        config.setdefault(section, {}).update(values)
    return config


class FakeResponse:
    def __init__(self, status, data=b'', reason=None):
        self.status = status
        self.reason = reason or {200: 'OK', 204: 'No Content', 401: 'Unauthorized',
                                 404: 'Not Found', 409: 'Conflict'}.get(status, 'Error')
        self._data = data

    def read(self):
        return self._data


class FakeHTTPConnection:
    """Records requests and answers them through a handler callable."""

    def __init__(self, handler):
        self.handler = handler
        self.requests = []
        self.closed = False
        self._pending = None

    def request(self, method, path, body=None, headers=None):
        headers = dict(headers or {})
        self.requests.append((method, path, body, headers))
        self._pending = self.handler(method, path, body, headers)

    def getresponse(self):
        status, payload = self._pending
        if payload is None:
            data = b''
        elif isinstance(payload, bytes):
            data = payload
        elif isinstance(payload, str):
            data = payload.encode('utf-8')
        else:
            data = json.dumps(payload).encode('utf-8')
        return FakeResponse(status, data)

    def close(self):
        self.closed = True


class FakeKeycloakServer:
    """A single realm with users, groups and direct memberships."""

    def __init__(self, realm=REALM, client_id=CLIENT_ID, client_secret=CLIENT_SECRET, expires_in=300):
        self.realm = realm
        self.client_id = client_id
        self.client_secret = client_secret
        self.expires_in = expires_in
        self.users = []
        self.groups = []
        self.members = {}
        self.valid_tokens = set()
        self.token_requests = 0
        self.calls = []
        self._token_counter = itertools.count(1)

    def add_user(self, user_id, username, **fields):
        user = {'id': user_id, 'username': username, 'enabled': True}
        user.update(fields)
        self.users.append(user)
        return user

    def add_group(self, group_id, name, **fields):
        group = {'id': group_id, 'name': name, 'path': f"/{name}", 'subGroups': []}
        group.update(fields)
        self.groups.append(group)
        self.members.setdefault(group_id, [])
        return group

    def add_member(self, group_id, user_id):
        if user_id not in self.members[group_id]:
            self.members[group_id].append(user_id)

    def revoke_tokens(self):
        self.valid_tokens.clear()

    def admin_calls(self, method=None, route=None):
        return [call for call in self.calls
                if (method is None or call[0] == method) and (route is None or call[1] == route)]

    def _user(self, user_id):
        return next((user for user in self.users if user['id'] == user_id), None)

    def _group(self, group_id):
        return next((group for group in self.groups if group['id'] == group_id), None)

    def handle(self, method, path, body, headers):
        parts = urlsplit(path)
        query = {key: values[0] for key, values in parse_qs(parts.query).items()}
        segments = [unquote(segment) for segment in parts.path.strip('/').split('/')]

        if segments[:2] == ['realms', self.realm] and segments[2:] == ['protocol', 'openid-connect', 'token']:
            return self._token(method, body)

        if segments[:3] != ['admin', 'realms', self.realm]:
            return 404, {'error': 'Realm not found.'}

        auth = headers.get('Authorization', '')
        if not auth.startswith('Bearer ') or auth[len('Bearer '):] not in self.valid_tokens:
            return 401, {'error': 'HTTP 401 Unauthorized'}

        route = segments[3:]
        self.calls.append((method, '/'.join(route), query))
        return self._admin(method, route, query)

    def _token(self, method, body):
        self.token_requests += 1
        form = {key: values[0] for key, values in parse_qs(body or '').items()}
        if (method != 'POST' or form.get('grant_type') != 'client_credentials'
                or form.get('client_id') != self.client_id
                or form.get('client_secret') != self.client_secret):
            return 401, {'error': 'unauthorized_client', 'error_description': 'Invalid client credentials'}

        token = f"token-{next(self._token_counter)}"
        self.valid_tokens.add(token)
        return 200, {'access_token': token, 'expires_in': self.expires_in, 'token_type': 'Bearer'}

    def _page(self, records, query):
        first = int(query.get('first', 0))
        max_results = int(query.get('max', 100))
        return records[first:first + max_results]

    def _admin(self, method, route, query):
        if method == 'GET' and route == ['users']:
            return 200, self._page(self.users, query)

        if method == 'GET' and route == ['groups']:
            return 200, self._page(self.groups, query)

        if method == 'GET' and len(route) == 3 and route[0] == 'groups' and route[2] == 'members':
            if self._group(route[1]) is None:
                return 404, {'error': 'Could not find group by id'}
            members = [self._user(user_id) for user_id in self.members[route[1]]]
            return 200, self._page(members, query)

        if method == 'GET' and len(route) == 3 and route[0] == 'users' and route[2] == 'groups':
            if self._user(route[1]) is None:
                return 404, {'error': 'User not found'}
            return 200, [group for group in self.groups if route[1] in self.members[group['id']]]

        if method in ('PUT', 'DELETE') and len(route) == 4 and route[0] == 'users' and route[2] == 'groups':
            user_id, group_id = route[1], route[3]
            if self._user(user_id) is None:
                return 404, {'error': 'User not found'}
            if self._group(group_id) is None:
                return 404, {'error': 'Group not found'}
            members = self.members[group_id]
            if method == 'PUT' and user_id not in members:
                members.append(user_id)
            elif method == 'DELETE' and user_id in members:
                members.remove(user_id)
            return 204, None

        return 404, {'error': 'Not found'}


def client_factory_for(server):
    """Return a client factory whose clients talk to the fake server."""
    created = []

    def factory(credentials, **options):
        client = KeycloakClient(credentials, **options)
        client.connection = FakeHTTPConnection(server.handle)
        created.append(client)
        return client

    factory.created = created
    return factory
