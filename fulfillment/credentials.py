"""Service-account credentials for the Google record store and archive.

The credential JSON is read from an environment variable the first time a
session is requested, not at import or process start, so the HTTP surface
can come up (and answer health checks) without secrets. A failure to parse
the credentials is raised as ConfigurationError at that first use.

One CredentialProvider is created per process and handed explicitly to the
components that need an authorized session.
"""

from __future__ import annotations

import json
import logging
import os
import threading
from typing import Any, Dict, Optional, Sequence

from google.auth.transport.requests import AuthorizedSession
from google.oauth2 import service_account

from .errors import ConfigurationError

LOG = logging.getLogger(__name__)

DEFAULT_CREDENTIALS_ENV = "GOOGLE_SERVICE_ACCOUNT"
DEFAULT_SCOPES = (
    "https://www.googleapis.com/auth/drive",
    "https://www.googleapis.com/auth/spreadsheets",
)


class CredentialProvider:
    """Lazily builds and caches one AuthorizedSession.

    Parameters
    ----------
    credentials_env : str
        Name of the environment variable holding the service-account JSON.
    scopes : Sequence[str]
        OAuth scopes requested for the session.
    environ : Dict[str, str], optional
        Environment mapping to read from (defaults to os.environ).
    """

    def __init__(
        self,
        credentials_env: str = DEFAULT_CREDENTIALS_ENV,
        scopes: Sequence[str] = DEFAULT_SCOPES,
        environ: Optional[Dict[str, str]] = None,
    ):
        self.credentials_env = credentials_env
        self.scopes = tuple(scopes)
        self._environ = environ if environ is not None else os.environ
        self._session: Optional[AuthorizedSession] = None
        self._lock = threading.Lock()

    @classmethod
    def from_config(cls, config: Dict[str, Any]) -> "CredentialProvider":
        auth_config = config.get("auth", {})
        return cls(
            credentials_env=auth_config.get("credentials_env", DEFAULT_CREDENTIALS_ENV),
            scopes=auth_config.get("scopes", DEFAULT_SCOPES),
        )

    def load_info(self) -> Dict[str, Any]:
        """Parse the service-account JSON from the environment."""
        raw = self._environ.get(self.credentials_env)
        if not raw:
            raise ConfigurationError(
                f"Service account credentials not set: ${self.credentials_env} is empty"
            )
        try:
            info = json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ConfigurationError(
                f"Failed to parse ${self.credentials_env}: {exc}"
            ) from exc
        if not isinstance(info, dict):
            raise ConfigurationError(
                f"${self.credentials_env} must hold a JSON object"
            )
        return info

    def session(self) -> AuthorizedSession:
        """Return the shared authorized session, creating it on first call."""
        with self._lock:
            if self._session is None:
                info = self.load_info()
                try:
                    credentials = service_account.Credentials.from_service_account_info(
                        info, scopes=list(self.scopes)
                    )
                except (ValueError, KeyError) as exc:
                    raise ConfigurationError(
                        f"Invalid service account credentials: {exc}"
                    ) from exc
                self._session = AuthorizedSession(credentials)
                LOG.info("Google service account loaded successfully.")
            return self._session
