"""
Secret Manager service for marketplace account credentials.
"""

import json
import logging
import os
import time
from typing import Any, Callable, Dict, List, Optional, Tuple

from google.cloud import secretmanager

from ..exceptions import ConfigurationError
from ..models.account import MarketplaceAccount

logger = logging.getLogger(__name__)


def account_secret_name(account_id: str) -> str:
    return f"marketplace-account-{account_id}-credentials"


class SecretManagerService:
    """
    Credential vault backed by Google Secret Manager.

    Each account's credentials are one JSON secret, e.g.
    ``{"api_key": "...", "api_secret": "..."}``. Values are decrypted by
    Secret Manager and never written back to Firestore. Decrypted values are
    cached for ``cache_ttl_seconds`` so rotated keys are picked up without a
    restart.
    """

    def __init__(
        self,
        project_id: Optional[str] = None,
        client=None,
        cache_ttl_seconds: float = 300,
        clock: Callable[[], float] = time.monotonic,
    ):
        """Initialize Secret Manager service."""
        self.project_id = project_id or os.getenv("GOOGLE_CLOUD_PROJECT")
        if not self.project_id:
            raise ValueError("GOOGLE_CLOUD_PROJECT environment variable must be set")

        self.client = client or secretmanager.SecretManagerServiceClient()
        self.cache_ttl_seconds = cache_ttl_seconds
        self.clock = clock
        # Cache key to (value, fetched at)
        self._cache: Dict[str, Tuple[str, float]] = {}

    def get_secret(self, secret_name: str, version: str = "latest") -> str:
        """Retrieve a secret value from Secret Manager."""
        cache_key = f"{secret_name}:{version}"

        cached = self._cache.get(cache_key)
        if cached is not None:
            value, fetched_at = cached
            if self.clock() - fetched_at < self.cache_ttl_seconds:
                return value
            del self._cache[cache_key]

        try:
            secret_path = f"projects/{self.project_id}/secrets/{secret_name}/versions/{version}"
            response = self.client.access_secret_version(request={"name": secret_path})
            secret_value = response.payload.data.decode("UTF-8")

            self._cache[cache_key] = (secret_value, self.clock())
            logger.info(f"Retrieved secret: {secret_name}")
            return secret_value

        except Exception as e:
            logger.error(f"Failed to retrieve secret {secret_name}: {e}")
            raise

    def get_account_credentials(self, account: MarketplaceAccount) -> Dict[str, Any]:
        """
        Return the decrypted credential fields of an account.

        Raises:
            ConfigurationError: If the secret is not a JSON object
        """
        secret_name = account.credentials_secret or account_secret_name(account.id)
        raw = self.get_secret(secret_name)
        try:
            credentials = json.loads(raw)
        except ValueError:
            raise ConfigurationError(f"Credentials of account {account.id} are not valid JSON")
        if not isinstance(credentials, dict):
            raise ConfigurationError(f"Credentials of account {account.id} must be a JSON object")
        return credentials

    def find_account_by_api_key(
        self,
        accounts: List[MarketplaceAccount],
        api_key: str,
    ) -> Optional[MarketplaceAccount]:
        """Match a plaintext API key against the decrypted keys of the given accounts."""
        for account in accounts:
            try:
                credentials = self.get_account_credentials(account)
            except Exception as e:
                logger.warning(f"Skipping account {account.id} while matching API key: {e}")
                continue
            if credentials.get("api_key") == api_key or credentials.get("token") == api_key:
                return account
        return None

    def invalidate(self, secret_name: Optional[str] = None) -> None:
        """Drop cached values, e.g. after credentials were rotated."""
        if secret_name is None:
            self._cache.clear()
            return
        for key in [k for k in self._cache if k.startswith(f"{secret_name}:")]:
            del self._cache[key]

    def forget_account_credentials(self, account: MarketplaceAccount) -> None:
        """Drop an account's cached credentials so the next read hits Secret Manager."""
        self.invalidate(account.credentials_secret or account_secret_name(account.id))
