"""
Credential lookup for fleets and workers.
"""

import json
import logging
import os
from typing import Dict, Optional

import google.auth
from google.oauth2 import service_account

from clients import SCOPES
from errors import ConfigurationError

logger = logging.getLogger(__name__)


class CredentialStore:
    """
    Resolves credential ids from a JSON file.

    The file maps ids to either a service-account key file
    (``{"key_file": "..."}``) used for provider calls, or a username and
    secret (``{"username": "...", "secret": "..."}``) used to reach workers.
    """

    def __init__(self, path: Optional[str] = None):
        self.path = path
        self._entries: Dict[str, Dict] = {}
        if path:
            self.load(path)

    def load(self, path: str) -> None:
        with open(path, "r") as f:
            data = json.load(f)
        self._entries = dict(data.get("credentials", {}))
        logger.debug(f"Loaded {len(self._entries)} credential(s) from {path}")

    def _entry(self, credentials_id: str) -> Dict:
        entry = self._entries.get(credentials_id)
        if entry is None:
            raise ConfigurationError(f"Unknown credentials id: {credentials_id}")
        return entry

    def fleet_credentials(self, credentials_id: str = ""):
        """
        Provider credentials for a fleet.

        Application default credentials are used when no id is given.
        """
        if not credentials_id:
            credentials, _ = google.auth.default(scopes=SCOPES)
            return credentials

        key_file = self._entry(credentials_id).get("key_file")
        if not key_file:
            raise ConfigurationError(f"Credentials {credentials_id} have no key_file")
        if self.path and not os.path.isabs(key_file):
            key_file = os.path.join(os.path.dirname(os.path.abspath(self.path)), key_file)
        return service_account.Credentials.from_service_account_file(key_file, scopes=SCOPES)

    def resolve(self, credentials_id: str) -> Dict[str, str]:
        """Username and secret for logging into a worker."""
        entry = self._entry(credentials_id)
        if "username" not in entry:
            raise ConfigurationError(f"Credentials {credentials_id} have no username")
        return {"username": entry["username"], "secret": entry.get("secret", "")}
