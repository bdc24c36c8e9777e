#!/usr/bin/env python3
"""USD price oracle backed by the Jupiter price API."""
import logging
import time
from typing import Callable, Dict, Optional, Tuple

import requests

from binpilot.config import JUPITER_PRICE_API
from binpilot.errors import PriceUnavailableError

logger = logging.getLogger("binpilot.prices")

PRICE_CACHE_TTL = 60  # seconds


def _parse_price(payload: dict, mint: str) -> Optional[float]:
    # v3 shape: {mint: {"usdPrice": ...}}; older shape: {"data": {mint: {"price": ...}}}
    entry = payload.get(mint)
    if entry is None and isinstance(payload.get("data"), dict):
        entry = payload["data"].get(mint)
    if not isinstance(entry, dict):
        return None
    raw = entry.get("usdPrice", entry.get("price"))
    if raw is None:
        return None
    try:
        price = float(raw)
    except (TypeError, ValueError):
        return None
    return price if price > 0 else None


class PriceOracle:
    """
    price(mint) -> USD float or None.

    None means "cannot proceed safely": callers must never treat it as zero.
    Successful lookups are cached for PRICE_CACHE_TTL seconds.
    """

    def __init__(self, api_url: str = JUPITER_PRICE_API, api_key: str = "", session=None,
                 clock: Callable[[], float] = time.time, ttl: float = PRICE_CACHE_TTL):
        self.api_url = api_url
        self.api_key = api_key
        self.session = session or requests
        self.clock = clock
        self.ttl = ttl
        self._cache: Dict[str, Tuple[float, float]] = {}

    def price(self, mint: str) -> Optional[float]:
        cached = self._cache.get(mint)
        if cached and (self.clock() - cached[1]) < self.ttl:
            return cached[0]

        headers = {'x-api-key': self.api_key} if self.api_key else {}
        try:
            resp = self.session.get(self.api_url, params={"ids": mint}, headers=headers, timeout=10)
            resp.raise_for_status()
            value = _parse_price(resp.json(), mint)
        except (requests.RequestException, ValueError) as e:
            logger.warning(f"[Price] Lookup failed for {mint[:8]}...: {e}")
            return None

        if value is None:
            logger.warning(f"[Price] No price returned for {mint[:8]}...")
            return None
        self._cache[mint] = (value, self.clock())
        return value

    def require_price(self, mint: str, context: str = "price") -> float:
        value = self.price(mint)
        if value is None:
            raise PriceUnavailableError(f"Price unavailable for {mint}", context=context)
        return value
