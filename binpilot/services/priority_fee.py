"""
Priority fee estimation.

Resolves a micro-lamport per compute unit bid via the RPC's
getPriorityFeeEstimate method, with a static fallback table when the
estimate is unavailable. Retries escalate Medium -> High -> VeryHigh.
"""

import logging
from enum import Enum
from typing import List, Optional, Sequence

import requests
from solders.compute_budget import set_compute_unit_limit, set_compute_unit_price
from solders.instruction import Instruction

from binpilot.config import DEFAULT_PRIORITY_FEE_MICRO_LAMPORTS

logger = logging.getLogger("binpilot.priority_fee")

MIN_PRIORITY_FEE = 1_000  # micro-lamports


class PriorityLevel(Enum):
    LOW = 'Low'
    MEDIUM = 'Medium'
    HIGH = 'High'
    VERY_HIGH = 'VeryHigh'

    @classmethod
    def from_name(cls, name) -> 'PriorityLevel':
        if isinstance(name, cls):
            return name
        key = str(name).replace('_', '').replace('-', '').lower()
        for level in cls:
            if level.value.lower() == key:
                return level
        raise ValueError(f"Unknown priority level: {name}")


FALLBACK_MULTIPLIERS = {
    PriorityLevel.LOW: 0.5,
    PriorityLevel.MEDIUM: 1,
    PriorityLevel.HIGH: 3,
    PriorityLevel.VERY_HIGH: 10,
}


def fallback_priority_fee(level: PriorityLevel = PriorityLevel.MEDIUM,
                          base_micro_lamports: int = DEFAULT_PRIORITY_FEE_MICRO_LAMPORTS) -> int:
    """Static fee for a level when no live estimate is available."""
    base = base_micro_lamports if base_micro_lamports and base_micro_lamports > 0 else DEFAULT_PRIORITY_FEE_MICRO_LAMPORTS
    return max(int(base * FALLBACK_MULTIPLIERS.get(level, 1)), MIN_PRIORITY_FEE)


def priority_level_for_attempt(attempt: int) -> PriorityLevel:
    """Medium for attempts 0-2, High for 3-5, VeryHigh afterwards."""
    if attempt < 3:
        return PriorityLevel.MEDIUM
    if attempt < 6:
        return PriorityLevel.HIGH
    return PriorityLevel.VERY_HIGH


def estimate_priority_lamports(micro_lamports: int, compute_units: int) -> int:
    return int(micro_lamports * compute_units // 1_000_000)


def compute_budget_instructions(micro_lamports: int, unit_limit: Optional[int] = None) -> List[Instruction]:
    ixs = []
    if unit_limit:
        ixs.append(set_compute_unit_limit(max(1_000, int(unit_limit))))
    ixs.append(set_compute_unit_price(int(micro_lamports)))
    return ixs


class PriorityFeeEstimator:
    """Live fee estimates from the RPC with a static fallback."""

    def __init__(self, rpc_url: str, base_fallback: int = DEFAULT_PRIORITY_FEE_MICRO_LAMPORTS,
                 timeout: float = 5, session=None):
        self.rpc_url = rpc_url
        self.base_fallback = base_fallback
        self.timeout = timeout
        self.session = session or requests

    def estimate(self, level: PriorityLevel = PriorityLevel.MEDIUM,
                 transaction_b64: Optional[str] = None,
                 account_keys: Optional[Sequence[str]] = None) -> int:
        """Return a micro-lamport bid for `level`, never below MIN_PRIORITY_FEE."""
        params = {"options": {"priorityLevel": level.value, "recommended": True}}
        if transaction_b64:
            params["transaction"] = transaction_b64
            params["options"]["transactionEncoding"] = "base64"
        elif account_keys:
            params["accountKeys"] = list(account_keys)

        try:
            response = self.session.post(
                self.rpc_url,
                json={
                    "jsonrpc": "2.0",
                    "id": "1",
                    "method": "getPriorityFeeEstimate",
                    "params": [params]
                },
                timeout=self.timeout
            )
            response.raise_for_status()
            data = response.json()
            if data.get("error"):
                raise ValueError(f"estimate error: {data['error']}")
            fee = data.get("result", {}).get("priorityFeeEstimate")
            if fee is None:
                raise ValueError("estimate missing from response")
            fee = max(int(fee), MIN_PRIORITY_FEE)
            logger.debug(f"Dynamic priority fee ({level.value}): {fee:,} micro-lamports")
            return fee
        except (requests.RequestException, ValueError) as e:
            fallback = fallback_priority_fee(level, self.base_fallback)
            logger.warning(f"Priority fee estimate failed ({level.value}): {e}; using fallback {fallback:,}")
            return fallback
