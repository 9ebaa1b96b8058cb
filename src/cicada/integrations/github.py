"""
GitHub SSH key registry client

Uploads stored public keys to a GitHub account and lists or deletes the keys
registered there. The key store only supplies the persisted public key bytes.
"""

import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

import requests
from requests.adapters import HTTPAdapter
from requests.packages.urllib3.util.retry import Retry

from ..version import __version__
from ..crypto.storage import KeyStore, PathLike
from ..crypto.types import KeyId
from ..exceptions import ConfigurationError, IntegrationError
from ..logging_utils import AuditSink, get_default_audit_sink

logger = logging.getLogger(__name__)

GITHUB_API_URL = "https://api.github.com"
GITHUB_MEDIA_TYPE = "application/vnd.github.v3+json"
USER_AGENT = f"CIcaDA-KeyManager/{__version__}"
DEFAULT_TITLE_PREFIX = "CIcaDA-"


@dataclass
class RegistryConfig:
    """
    Connection settings for the GitHub API

    Attributes:
        base_url: API root
        timeout: Request timeout in seconds
        verify_ssl: Whether to verify SSL certificates
        retry_attempts: Retries for idempotent requests
        retry_backoff_factor: Backoff factor between retries
    """
    base_url: str = GITHUB_API_URL
    timeout: float = 30.0
    verify_ssl: bool = True
    retry_attempts: int = 3
    retry_backoff_factor: float = 0.5

    def __post_init__(self):
        parsed = urlparse(self.base_url)
        if not parsed.scheme or not parsed.netloc:
            raise ConfigurationError(f"Invalid registry URL: {self.base_url}", "INVALID_URL")
        self.base_url = self.base_url.rstrip('/')
        if self.timeout <= 0:
            raise ConfigurationError("Timeout must be positive", "INVALID_TIMEOUT")
        if self.retry_attempts < 0:
            raise ConfigurationError("Retry attempts must be non-negative", "INVALID_RETRY_ATTEMPTS")


class GitHubKeyRegistry:
    """
    Client for the ``/user/keys`` endpoints of the GitHub API

    Args:
        token: Personal access token with the ``admin:public_key`` scope
        config: Connection settings
        audit_sink: Receives upload and delete events
    """

    def __init__(self, token: str, config: Optional[RegistryConfig] = None,
                 audit_sink: Optional[AuditSink] = None):
        if not token:
            raise ConfigurationError(
                "A GitHub token is required (set github.token or CICADA_GITHUB_TOKEN)",
                "MISSING_GITHUB_TOKEN"
            )
        self.token = token
        self.config = config or RegistryConfig()
        self.audit_sink = audit_sink or get_default_audit_sink()
        self.session = self._create_session()

    def _create_session(self) -> requests.Session:
        session = requests.Session()

        # POST is not retried so a key is never uploaded twice
        retry_strategy = Retry(
            total=self.config.retry_attempts,
            status_forcelist=[429, 500, 502, 503, 504],
            allowed_methods=["HEAD", "GET", "DELETE"],
            backoff_factor=self.config.retry_backoff_factor,
        )
        adapter = HTTPAdapter(max_retries=retry_strategy)
        session.mount("http://", adapter)
        session.mount("https://", adapter)

        session.headers.update({
            'Authorization': f"token {self.token}",
            'Accept': GITHUB_MEDIA_TYPE,
            'User-Agent': USER_AGENT,
        })
        return session

    def _request(self, method: str, path: str, expected_status: int, **kwargs) -> requests.Response:
        """
        Send a request and check the status code

        Raises:
            IntegrationError: On network errors or an unexpected status
        """
        url = f"{self.config.base_url}{path}"
        kwargs.setdefault('timeout', self.config.timeout)
        kwargs.setdefault('verify', self.config.verify_ssl)

        try:
            logger.debug(f"Making {method} request to {url}")
            response = self.session.request(method, url, **kwargs)
        except requests.exceptions.Timeout as e:
            raise IntegrationError(
                f"GitHub request timed out after {self.config.timeout} seconds", "TIMEOUT"
            ) from e
        except requests.exceptions.ConnectionError as e:
            raise IntegrationError(f"Connection error: {e}", "CONNECTION_ERROR") from e
        except requests.exceptions.RequestException as e:
            raise IntegrationError(f"GitHub request failed: {e}", "REQUEST_FAILED") from e

        if response.status_code != expected_status:
            try:
                message = response.json().get('message', response.reason)
            except (ValueError, AttributeError):
                message = response.reason
            raise IntegrationError(
                f"GitHub API error ({response.status_code}): {message}",
                "GITHUB_API_ERROR",
                http_status=response.status_code,
                details={'url': url, 'method': method}
            )
        return response

    def _json(self, response: requests.Response) -> Any:
        try:
            return response.json()
        except ValueError as e:
            raise IntegrationError(f"Invalid JSON response: {e}", "INVALID_RESPONSE") from e

    def upload(self, store: KeyStore, key_id: KeyId, key_dir: PathLike,
               title: Optional[str] = None) -> Dict[str, Any]:
        """
        Upload a stored public key

        Args:
            store: KeyStore holding the key
            key_id: Id of the key to upload
            key_dir: Key directory
            title: Key title on GitHub, defaults to ``CIcaDA-<first 8 chars of id>``

        Returns:
            dict with ``github_key_id``, ``title`` and ``created_at``

        Raises:
            IntegrationError: If the key is unknown or the upload fails
        """
        record = store.find(key_id, key_dir)
        if record is None:
            raise IntegrationError(f"Key not found: {key_id}", "KEY_NOT_FOUND")

        try:
            with open(record.public_key_path, 'r', encoding='utf-8') as f:
                public_key = f.read().strip()
        except OSError as e:
            raise IntegrationError(f"Failed to read public key: {e}", "KEY_READ_FAILED") from e

        title = title or f"{DEFAULT_TITLE_PREFIX}{str(record.id)[:8]}"
        response = self._request(
            'POST', '/user/keys', 201,
            data=json.dumps({'title': title, 'key': public_key}),
            headers={'Content-Type': 'application/json'},
        )
        data = self._json(response)

        logger.info(f"Uploaded key {record.id} to GitHub as {data.get('id')}")
        self.audit_sink.key_operation(
            "GITHUB_UPLOAD", f"Key {record.id} uploaded: ID={data.get('id')}", key_id=str(record.id)
        )
        return {
            'github_key_id': data.get('id'),
            'title': data.get('title', title),
            'created_at': data.get('created_at'),
        }

    def list_keys(self) -> List[Dict[str, Any]]:
        """List the SSH keys registered on the account"""
        data = self._json(self._request('GET', '/user/keys', 200))
        if not isinstance(data, list):
            raise IntegrationError("Unexpected response listing keys", "INVALID_RESPONSE")
        return [
            {
                'id': k.get('id'),
                'title': k.get('title'),
                'key': k.get('key'),
                'created_at': k.get('created_at'),
            }
            for k in data
        ]

    def delete(self, github_key_id: int) -> bool:
        """Delete a registered key by its GitHub id"""
        self._request('DELETE', f"/user/keys/{int(github_key_id)}", 204)
        logger.info(f"Deleted GitHub key {github_key_id}")
        self.audit_sink.key_operation("GITHUB_DELETE", f"GitHub key {github_key_id} deleted")
        return True

    def verify_token(self) -> bool:
        """Whether the token authenticates; any failure counts as invalid"""
        try:
            self._request('GET', '/user', 200)
        except IntegrationError as e:
            logger.debug(f"Token verification failed: {e}")
            return False
        return True

    def close(self):
        """Close the HTTP session."""
        self.session.close()

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
