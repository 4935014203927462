"""
Google credential loading for the remote document store.

Supports service-account keys and authorized-user files. Credentials are cached
per manager and refreshed under a lock when they expire.
"""

import json
import logging
import threading
from typing import Any, Dict, Optional

import google.auth.credentials
import google.auth.exceptions
import google.auth.transport.requests
import google.oauth2.credentials
from google.oauth2 import service_account

from ..status import status

DEFAULT_SCOPES = ['https://www.googleapis.com/auth/datastore', ]


def load_credentials(info: Dict[str, Any]) -> google.auth.credentials.Credentials:
    """Build credentials from the parsed content of a credentials file.

    Args:
        info: Parsed JSON. Files with ``"type": "service_account"`` are treated as
            service-account keys, anything else as an authorized-user file.

    Raises:
        ValueError: If required keys are missing.
    """
    if info.get('type') == 'service_account':
        return service_account.Credentials.from_service_account_info(info, scopes=DEFAULT_SCOPES)
    return google.oauth2.credentials.Credentials.from_authorized_user_info(info, scopes=DEFAULT_SCOPES)


class AuthManager:
    """Manages Google credentials with thread-safe refresh.

    Args:
        settings: The SettingsAPI providing the credentials path.
    """

    def __init__(self, settings):
        self._lock = threading.Lock()
        self._creds: Optional[google.auth.credentials.Credentials] = None
        self.settings = settings

    def get_valid_credentials(self) -> google.auth.credentials.Credentials:
        """
        Return valid credentials, refreshing them when needed.

        Raises:
            status.CredsNotFoundException: if the credentials file does not exist.
            status.CredsInvalidException: if the credentials file is corrupt.
            status.AuthenticationException: if a refresh fails.
        """
        with self._lock:
            if self._creds is None:
                path = self.settings.credentials_path
                if not path.exists():
                    raise status.CredsNotFoundException(f'Expected at {path}')
                try:
                    with path.open('r', encoding='utf-8') as f:
                        info = json.load(f)
                    self._creds = load_credentials(info)
                except (ValueError, KeyError, TypeError) as ex:
                    raise status.CredsInvalidException(f'Failed to load {path}') from ex
                logging.debug(f'Loaded credentials from {path}')

            if not self._creds.valid:
                try:
                    self._creds.refresh(google.auth.transport.requests.Request())
                except (google.auth.exceptions.RefreshError, google.auth.exceptions.TransportError) as ex:
                    raise status.AuthenticationException('Failed to refresh credentials') from ex

            return self._creds

    def clear(self) -> None:
        """Forget the cached credentials so the next call reloads them from disk."""
        with self._lock:
            self._creds = None
