"""
Helpers shared by the marketplace connectors for turning upstream payloads
into normalized records.
"""

import logging
from collections import defaultdict
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple

from ..exceptions import NormalizationError
from ..models.account import ensure_utc
from ..models.records import (
    Sale, RegionalBucket, TopProduct, UNKNOWN_PRODUCT, UNKNOWN_REGION
)

logger = logging.getLogger(__name__)

MINOR_UNITS_THRESHOLD = 10000
TOP_PRODUCTS_LIMIT = 5

_DATETIME_FORMATS = (
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d",
    "%d-%m-%Y %H:%M:%S",
    "%d-%m-%Y",
    "%d.%m.%Y %H:%M:%S",
    "%d.%m.%Y",
)


def parse_datetime(value: Any, field: str = "date", required: bool = True) -> Optional[datetime]:
    """
    Parse the date representations the marketplaces return.

    Accepts datetimes, unix timestamps (seconds or milliseconds), ISO 8601
    strings with or without ``Z`` and a few day-first formats. The result
    is always timezone-aware UTC.
    """
    if value is None or value == "":
        if required:
            raise NormalizationError(f"Missing required {field}")
        return None

    if isinstance(value, datetime):
        return ensure_utc(value)

    if isinstance(value, (int, float)):
        seconds = value / 1000 if value > 1e11 else value
        return datetime.fromtimestamp(seconds, tz=timezone.utc)

    text = str(value).strip()
    iso = text[:-1] + "+00:00" if text.endswith("Z") else text
    try:
        return ensure_utc(datetime.fromisoformat(iso))
    except ValueError:
        pass

    for fmt in _DATETIME_FORMATS:
        try:
            return datetime.strptime(text, fmt).replace(tzinfo=timezone.utc)
        except ValueError:
            continue

    if required:
        raise NormalizationError(f"Unparseable {field}: {value!r}")
    logger.warning(f"Ignoring unparseable {field}: {value!r}")
    return None


def to_float(value: Any, default: float = 0.0) -> float:
    if value is None or value == "":
        return default
    try:
        return float(value)
    except (TypeError, ValueError):
        return default


def to_int(value: Any, default: int = 0) -> int:
    if value is None or value == "":
        return default
    try:
        return int(float(value))
    except (TypeError, ValueError):
        return default


def rescale_minor_units(value: float, threshold: float = MINOR_UNITS_THRESHOLD) -> float:
    """Values above ``threshold`` are assumed to be in minor units (kopecks)."""
    if value > threshold:
        return round(value / 100, 2)
    return value


def require_price(value: Any, context: str) -> float:
    """A sale cannot be stored without a numeric price."""
    if value is None or value == "" or isinstance(value, bool):
        raise NormalizationError(f"Sale without price in {context}")
    try:
        return float(value)
    except (TypeError, ValueError):
        raise NormalizationError(f"Non-numeric sale price {value!r} in {context}")


def text_or(value: Any, default: str) -> str:
    if value is None:
        return default
    text = str(value).strip()
    return text or default


def product_name_or_default(value: Any) -> str:
    return text_or(value, UNKNOWN_PRODUCT)


def region_or_default(value: Any) -> str:
    return text_or(value, UNKNOWN_REGION)


def split_window(start: datetime, end: datetime, days: int) -> List[Tuple[datetime, datetime]]:
    """Split [start, end] into contiguous sub-windows of at most ``days`` days."""
    start = ensure_utc(start)
    end = ensure_utc(end)
    if start >= end:
        return [(start, end)]

    step = timedelta(days=days)
    windows = []
    cursor = start
    while cursor < end:
        window_end = min(cursor + step, end)
        windows.append((cursor, window_end))
        cursor = window_end
    return windows


def aggregate_regions(sales: Iterable[Sale]) -> List[RegionalBucket]:
    """Group sales by region into buckets with totals and top products."""
    orders: Dict[str, set] = defaultdict(set)
    totals: Dict[str, float] = defaultdict(float)
    quantities: Dict[str, Dict[str, int]] = defaultdict(lambda: defaultdict(int))
    names: Dict[str, str] = {}

    for sale in sales:
        region = sale.region or UNKNOWN_REGION
        orders[region].add(sale.order_id or sale.id)
        totals[region] += sale.total_amount
        quantities[region][sale.product_id] += sale.quantity
        names.setdefault(sale.product_id, sale.product_name)

    buckets = []
    for region, order_ids in orders.items():
        count = len(order_ids)
        total = round(totals[region], 2)
        ranked = sorted(quantities[region].items(), key=lambda item: item[1], reverse=True)
        buckets.append(RegionalBucket(
            region=region,
            orders_count=count,
            total_amount=total,
            average_order_value=round(total / count, 2) if count else 0.0,
            top_products=[
                TopProduct(product_id=pid, product_name=names.get(pid, UNKNOWN_PRODUCT), quantity=qty)
                for pid, qty in ranked[:TOP_PRODUCTS_LIMIT]
            ],
        ))

    buckets.sort(key=lambda b: b.total_amount, reverse=True)
    return buckets
