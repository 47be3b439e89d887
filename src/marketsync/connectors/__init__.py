"""
Marketplace connectors.

Each connector normalizes one marketplace's seller API into the shared
record models. Connectors are looked up by marketplace type.
"""

from typing import Dict, Type, Union

from ..models.account import MarketplaceType
from .base import BaseConnector, ConnectorCapability
from .wildberries import WildberriesConnector
from .ozon import OzonConnector
from .yandex_market import YandexMarketConnector

__all__ = [
    "BaseConnector",
    "ConnectorCapability",
    "WildberriesConnector",
    "OzonConnector",
    "YandexMarketConnector",
    "CONNECTOR_REGISTRY",
    "get_connector",
]

# Connector registry for dynamic loading
CONNECTOR_REGISTRY: Dict[MarketplaceType, Type[BaseConnector]] = {
    MarketplaceType.WILDBERRIES: WildberriesConnector,
    MarketplaceType.OZON: OzonConnector,
    MarketplaceType.YANDEX_MARKET: YandexMarketConnector,
}


def get_connector(marketplace_type: Union[MarketplaceType, str]) -> Type[BaseConnector]:
    """Get a connector class by marketplace type."""
    try:
        key = MarketplaceType(marketplace_type)
    except ValueError:
        raise ValueError(f"Unknown marketplace type: {marketplace_type}")
    return CONNECTOR_REGISTRY[key]
