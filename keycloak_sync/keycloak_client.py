"""
Keycloak admin REST API client.

This module provides the client used to authenticate against a Keycloak realm
with the client-credentials grant and to list users, groups and group
memberships, and to add or remove users from groups. The client owns the
access token and keeps it fresh across a long-running sync.
"""

import json
import ssl
import time
import logging
import threading
from typing import Dict, List, Any, Optional, Tuple, Union
from urllib.parse import urlparse, urlencode, quote
from http.client import HTTPSConnection, HTTPConnection, HTTPException

from keycloak_sync.config import Credentials
from keycloak_sync.logging_setup import security_logger
from keycloak_sync.models import KeycloakUser, KeycloakGroup

logger = logging.getLogger(__name__)

DEFAULT_PAGE_SIZE = 300
DEFAULT_TIMEOUT = 30

# Tokens are treated as expired this many seconds before Keycloak says so
TOKEN_EXPIRY_BUFFER_SECONDS = 60

# Assumed lifetime when the token response carries no usable expires_in
DEFAULT_TOKEN_LIFETIME = 300

# One re-authentication per request on a 401
MAX_AUTH_RETRIES = 1


class KeycloakSyncError(Exception):
    """Base exception for all Keycloak sync errors."""
    pass


class AuthError(KeycloakSyncError):
    """Raised when credentials are rejected or a token cannot be obtained."""
    pass


class TransportError(KeycloakSyncError):
    """Raised on network failures and HTTP error responses."""

    def __init__(self, message: str, status: Optional[int] = None, method: Optional[str] = None,
                 path: Optional[str] = None, body: str = ''):
        super().__init__(message)
        self.status = status
        self.method = method
        self.path = path
        self.body = body


class ResourceNotFound(TransportError):
    """Raised when Keycloak answers 404 for a user or group."""
    pass


class DecodeError(KeycloakSyncError):
    """Raised when a response body does not match the expected representation."""
    pass


class NotConnected(KeycloakSyncError):
    """Raised when an admin operation is attempted before connect()."""
    pass


def parse_page_token(page_token: Optional[str]) -> int:
    """
    Decode a page token into a 'first' offset.

    Args:
        page_token: Stringified offset; None or "" means the first page

    Returns:
        Offset of the first record on the page

    Raises:
        ValueError: If the token is not a non-negative integer
    """
    if not page_token:
        return 0
    try:
        first = int(page_token)
    except (TypeError, ValueError):
        raise ValueError(f"Invalid page token: {page_token!r}")
    if first < 0:
        raise ValueError(f"Invalid page token: {page_token!r}")
    return first


def next_page_token(first: int, count: int, page_size: int) -> str:
    """Return the token for the page after one of `count` records, or "" at the end."""
    if count < page_size:
        return ""
    return str(first + count)


class KeycloakClient:
    """
    Client for a single Keycloak realm's admin API.

    The token is acquired on connect() and refreshed transparently before any
    call once it is within TOKEN_EXPIRY_BUFFER_SECONDS of expiry. A 401 from the
    admin API forces one re-authentication and one retry of the request.
    """

    def __init__(self, credentials: Credentials, page_size: int = DEFAULT_PAGE_SIZE,
                 timeout: float = DEFAULT_TIMEOUT, verify_ssl: bool = True,
                 ca_cert_file: Optional[str] = None):
        """
        Initialize Keycloak client.

        Args:
            credentials: Server URL, realm and client credentials
            page_size: Number of records requested per listing page
            timeout: Socket timeout in seconds for every request
            verify_ssl: Whether to verify the server certificate
            ca_cert_file: Optional PEM bundle of trusted CA certificates
        """
        self.credentials = credentials
        self.realm = credentials.realm
        self.page_size = page_size
        self.timeout = timeout
        self.verify_ssl = verify_ssl
        self.ca_cert_file = ca_cert_file

        # Parse server URL
        self.parsed_url = urlparse(credentials.server_url)
        self.host = self.parsed_url.netloc
        base_path = self.parsed_url.path.rstrip('/')
        realm_path = quote(self.realm, safe='')
        self.admin_path = f"{base_path}/admin/realms/{realm_path}"
        self.token_path = f"{base_path}/realms/{realm_path}/protocol/openid-connect/token"

        # HTTP connection
        self.connection = None
        self.ssl_context = None

        # Token state, guarded by _token_lock
        self._token_lock = threading.Lock()
        self._access_token = None
        self._token_expires_at = 0.0
        self._connected = False

        self._setup_ssl_context()

    def _setup_ssl_context(self):
        """Set up SSL context based on configuration."""
        if self.parsed_url.scheme != 'https':
            return

        if not self.verify_ssl:
            self.ssl_context = ssl._create_unverified_context()
            logger.warning(f"SSL verification disabled for {self.host}")
            return

        self.ssl_context = ssl.create_default_context()
        if self.ca_cert_file:
            try:
                self.ssl_context.load_verify_locations(cafile=self.ca_cert_file)
                logger.info(f"Loaded CA certificates: {self.ca_cert_file}")
            except (OSError, ssl.SSLError) as e:
                raise TransportError(f"Failed to load CA certificates {self.ca_cert_file}: {e}")

    @property
    def is_connected(self) -> bool:
        return self._connected

    def connect(self) -> bool:
        """
        Authenticate with the client-credentials grant.

        Returns:
            True once a token is held

        Raises:
            AuthError: If the credentials are rejected or the server is unreachable
        """
        with self._token_lock:
            self._authenticate()
        self._connected = True
        logger.info(f"Connected to Keycloak realm '{self.realm}' at {self.host}")
        return True

    def close(self):
        """Close the HTTP connection and forget the token."""
        with self._token_lock:
            self._access_token = None
            self._token_expires_at = 0.0
        self._connected = False
        if self.connection:
            try:
                self.connection.close()
            except Exception as e:
                logger.warning(f"Error closing connection to {self.host}: {e}")
            finally:
                self.connection = None

    def _authenticate(self):
        """Request a new access token. Caller must hold _token_lock."""
        form = urlencode({
            'grant_type': 'client_credentials',
            'client_id': self.credentials.client_id,
            'client_secret': self.credentials.client_secret,
        })
        headers = {
            'Content-Type': 'application/x-www-form-urlencoded',
            'Accept': 'application/json'
        }

        logger.debug(f"Requesting access token for client '{self.credentials.client_id}'")
        try:
            status, reason, data = self._send('POST', self.token_path, form, headers)
        except (TransportError, DecodeError) as e:
            security_logger.log_authentication_attempt('keycloak', self.credentials.client_id, False)
            raise AuthError(f"Token request to {self.host} failed: {e}")

        if status != 200:
            security_logger.log_authentication_attempt('keycloak', self.credentials.client_id, False)
            raise AuthError(f"Token request rejected for client '{self.credentials.client_id}': "
                            f"{status} {reason}")

        try:
            token_response = json.loads(data)
        except json.JSONDecodeError as e:
            raise AuthError(f"Invalid JSON in token response: {e}")

        access_token = token_response.get('access_token') if isinstance(token_response, dict) else None
        if not access_token:
            raise AuthError("Token response missing access_token")

        expires_in = token_response.get('expires_in') or DEFAULT_TOKEN_LIFETIME
        try:
            expires_in = int(expires_in)
        except (TypeError, ValueError):
            expires_in = DEFAULT_TOKEN_LIFETIME

        self._access_token = access_token
        # Short-lived tokens keep at least half of their lifetime
        buffer_seconds = min(TOKEN_EXPIRY_BUFFER_SECONDS, max(expires_in, 0) // 2)
        self._token_expires_at = time.time() + expires_in - buffer_seconds
        security_logger.log_authentication_attempt('keycloak', self.credentials.client_id, True)
        logger.info(f"Obtained access token for realm '{self.realm}', expires in {expires_in} seconds")

    def _token_valid(self) -> bool:
        return self._access_token is not None and time.time() < self._token_expires_at

    def _ensure_token(self) -> str:
        """Return a usable token, refreshing it first if it has expired."""
        with self._token_lock:
            if not self._token_valid():
                logger.info(f"Access token expired for realm '{self.realm}', re-authenticating")
                self._authenticate()
            return self._access_token

    def _invalidate_token(self, stale_token: str):
        """Drop the token unless another caller has already replaced it."""
        with self._token_lock:
            if self._access_token == stale_token:
                self._token_expires_at = 0.0

    def _get_connection(self) -> Union[HTTPSConnection, HTTPConnection]:
        """Get or create HTTP connection."""
        if self.connection:
            return self.connection

        if self.parsed_url.scheme == 'https':
            self.connection = HTTPSConnection(self.host, context=self.ssl_context, timeout=self.timeout)
        else:
            self.connection = HTTPConnection(self.host, timeout=self.timeout)

        return self.connection

    def _send(self, method: str, path: str, body: Optional[str],
              headers: Dict[str, str]) -> Tuple[int, str, str]:
        """
        Issue a single HTTP request.

        Returns:
            Tuple of (status, reason, body text)

        Raises:
            TransportError: On connection failure or timeout
            DecodeError: If the response body is not valid UTF-8
        """
        try:
            conn = self._get_connection()
            logger.debug(f"Making {method} request to {self.host}{path}")
            conn.request(method, path, body, headers)
            response = conn.getresponse()
            data = response.read().decode('utf-8')
        except (OSError, HTTPException) as e:
            # The connection is unusable after a failed exchange
            self._drop_connection()
            raise TransportError(f"{method} {path} failed: {e}", method=method, path=path)
        except UnicodeDecodeError as e:
            raise DecodeError(f"{method} {path}: response body is not valid UTF-8: {e}")

        logger.debug(f"Response status: {response.status} {response.reason}")
        return response.status, response.reason, data

    def _drop_connection(self):
        if self.connection:
            try:
                self.connection.close()
            except Exception:
                logger.debug(f"Ignoring error while dropping connection to {self.host}")
            self.connection = None

    def request(self, method: str, path: str, params: Optional[Dict[str, Any]] = None,
                operation: Optional[str] = None) -> Any:
        """
        Make an authenticated request to the realm's admin API.

        Args:
            method: HTTP method (GET, PUT, DELETE)
            path: Endpoint path relative to /admin/realms/{realm}
            params: Optional query parameters
            operation: Operation name used in error messages

        Returns:
            Decoded JSON body, or None for an empty body

        Raises:
            NotConnected: If connect() has not succeeded
            AuthError: If the token cannot be refreshed or is rejected twice
            TransportError: On network failure or HTTP error status
            DecodeError: If the body is not valid JSON
        """
        operation = operation or f"{method} {path}"
        if not self._connected:
            raise NotConnected(f"{operation} called before connect()")

        full_path = f"{self.admin_path}/{path.lstrip('/')}"
        if params:
            full_path += '?' + urlencode(params)

        for auth_attempt in range(MAX_AUTH_RETRIES + 1):
            token = self._ensure_token()
            headers = {
                'Authorization': f"Bearer {token}",
                'Accept': 'application/json'
            }
            status, reason, data = self._send(method, full_path, None, headers)

            if status == 401:
                if auth_attempt < MAX_AUTH_RETRIES:
                    logger.info(f"401 received for {operation}, refreshing access token")
                    self._invalidate_token(token)
                    continue
                raise AuthError(f"{operation} rejected: authentication failed for realm '{self.realm}'")

            if status == 404:
                raise ResourceNotFound(f"{operation}: HTTP 404 {reason}", status=status,
                                       method=method, path=full_path, body=data)
            if status >= 400:
                raise TransportError(f"{operation}: HTTP {status} {reason}", status=status,
                                     method=method, path=full_path, body=data)

            if not data.strip():
                return None
            try:
                return json.loads(data)
            except json.JSONDecodeError as e:
                raise DecodeError(f"{operation}: invalid JSON response: {e}")

        # Loop always returns or raises
        raise AuthError(f"{operation} failed after {MAX_AUTH_RETRIES + 1} attempts")

    def _decode_list(self, payload: Any, record_type, operation: str) -> List[Any]:
        """Decode a JSON array into records; any bad record fails the whole call."""
        if not isinstance(payload, list):
            raise DecodeError(f"{operation}: expected a JSON array, got {type(payload).__name__}")
        records = []
        for index, item in enumerate(payload):
            try:
                records.append(record_type.from_dict(item))
            except ValueError as e:
                raise DecodeError(f"{operation}: malformed record at index {index}: {e}")
        return records

    def list_users(self, page_token: Optional[str] = None,
                   page_size: Optional[int] = None) -> Tuple[List[KeycloakUser], str]:
        """
        Fetch one page of users.

        Args:
            page_token: Offset token from the previous page ("" or None for the first)
            page_size: Override for the configured page size

        Returns:
            Tuple of (users, next page token); the token is "" after the last page
        """
        first = parse_page_token(page_token)
        max_results = page_size or self.page_size
        payload = self.request('GET', 'users', params={'first': first, 'max': max_results},
                               operation='list_users')
        users = self._decode_list(payload, KeycloakUser, 'list_users')
        next_token = next_page_token(first, len(users), max_results)
        logger.debug(f"Listed {len(users)} users from offset {first}")
        return users, next_token

    def list_groups(self, page_token: Optional[str] = None,
                    page_size: Optional[int] = None) -> Tuple[List[KeycloakGroup], str]:
        """
        Fetch one page of top-level groups.

        Args:
            page_token: Offset token from the previous page ("" or None for the first)
            page_size: Override for the configured page size

        Returns:
            Tuple of (groups, next page token); the token is "" after the last page
        """
        first = parse_page_token(page_token)
        max_results = page_size or self.page_size
        params = {'first': first, 'max': max_results, 'briefRepresentation': 'false'}
        payload = self.request('GET', 'groups', params=params, operation='list_groups')
        groups = self._decode_list(payload, KeycloakGroup, 'list_groups')
        next_token = next_page_token(first, len(groups), max_results)
        logger.debug(f"Listed {len(groups)} groups from offset {first}")
        return groups, next_token

    def list_group_members(self, group_id: str) -> List[KeycloakUser]:
        """
        Return every direct member of a group.

        Keycloak caps an unbounded members request at 100 records, so the
        members are read page by page until a short page comes back.
        """
        operation = f"list_group_members({group_id})"
        path = f"groups/{quote(group_id, safe='')}/members"
        members = []
        first = 0
        while True:
            payload = self.request('GET', path, params={'first': first, 'max': self.page_size},
                                   operation=operation)
            page = self._decode_list(payload, KeycloakUser, operation)
            members.extend(page)
            if not next_page_token(first, len(page), self.page_size):
                break
            first += len(page)
        logger.debug(f"Group {group_id} has {len(members)} direct members")
        return members

    def list_user_groups(self, user_id: str) -> List[KeycloakGroup]:
        """Return the groups a user directly belongs to."""
        operation = f"list_user_groups({user_id})"
        payload = self.request('GET', f"users/{quote(user_id, safe='')}/groups",
                               params={'briefRepresentation': 'false'}, operation=operation)
        return self._decode_list(payload, KeycloakGroup, operation)

    def add_user_to_group(self, user_id: str, group_id: str):
        """Add a user to a group. Adding an existing member is a no-op."""
        operation = f"add_user_to_group({user_id}, {group_id})"
        path = f"users/{quote(user_id, safe='')}/groups/{quote(group_id, safe='')}"
        try:
            self.request('PUT', path, operation=operation)
        except TransportError as e:
            if e.status != 409:
                raise
            logger.info(f"User {user_id} is already a member of group {group_id}")

    def remove_user_from_group(self, user_id: str, group_id: str):
        """Remove a user from a group. Removing a non-member is a no-op."""
        operation = f"remove_user_from_group({user_id}, {group_id})"
        path = f"users/{quote(user_id, safe='')}/groups/{quote(group_id, safe='')}"
        try:
            self.request('DELETE', path, operation=operation)
        except TransportError as e:
            if e.status != 409:
                raise
            logger.info(f"User {user_id} is not a member of group {group_id}")

    def __enter__(self):
        """Context manager entry."""
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        """Context manager exit."""
        self.close()
