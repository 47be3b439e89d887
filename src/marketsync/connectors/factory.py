"""
Builds connected marketplace connectors for accounts.
"""

import logging
from typing import Any, Dict, Optional, Tuple, Type

from ..exceptions import ConnectorError, MarketplaceAuthError, MarketSyncException
from ..models.account import MarketplaceAccount, MarketplaceType
from .base import BaseConnector

logger = logging.getLogger(__name__)


class ConnectorFactory:
    """
    Resolves a marketplace type to a connector and connects it with the
    account's credentials from the vault.

    Every call returns a new connector instance so that concurrent jobs never
    share a session or a rate limiter.
    """

    def __init__(
        self,
        vault,
        registry: Optional[Dict[MarketplaceType, Type[BaseConnector]]] = None,
        connector_options: Optional[Dict[MarketplaceType, Dict[str, Any]]] = None,
    ):
        """
        Args:
            vault: Credential vault exposing ``get_account_credentials(account)``
                and ``forget_account_credentials(account)``
            registry: Marketplace type to connector class map
            connector_options: Per-marketplace keyword arguments for connector constructors
        """
        if registry is None:
            from . import CONNECTOR_REGISTRY
            registry = CONNECTOR_REGISTRY
        self.vault = vault
        self.registry = registry
        self.connector_options = connector_options or {}

    def create(self, marketplace_type: MarketplaceType) -> BaseConnector:
        connector_class = self.registry.get(MarketplaceType(marketplace_type))
        if connector_class is None:
            raise ConnectorError(f"No connector registered for {marketplace_type}")
        return connector_class(**self.connector_options.get(MarketplaceType(marketplace_type), {}))

    def get_connected(self, account: MarketplaceAccount) -> BaseConnector:
        """
        Create a connector and connect it with the account's credentials.

        Raises:
            ConfigurationError: If required credentials are missing
            MarketplaceAuthError: If the marketplace rejects the credentials
            ConnectorError: If the connection test fails otherwise
        """
        connector = self.create(account.marketplace_type)
        credentials = self.vault.get_account_credentials(account)
        try:
            connected = connector.connect(credentials)
        except MarketplaceAuthError:
            connector.disconnect()
            # Rotated keys are read fresh on the next attempt
            self.vault.forget_account_credentials(account)
            raise
        except Exception:
            connector.disconnect()
            raise
        if not connected:
            connector.disconnect()
            raise ConnectorError(
                f"Failed to connect to {account.marketplace_type.value} for account {account.id}"
            )
        logger.info(f"Connected {account.marketplace_type.value} connector for account {account.id}")
        return connector

    def check_connection(self, account: MarketplaceAccount) -> Tuple[bool, Optional[str]]:
        """Connect and disconnect. Returns whether it worked and the error if not."""
        try:
            connector = self.get_connected(account)
        except MarketSyncException as e:
            logger.warning(f"Connection check failed for account {account.id}: {e}")
            return False, str(e)
        connector.disconnect()
        return True, None
