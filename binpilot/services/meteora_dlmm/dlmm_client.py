#!/usr/bin/env python3
"""
Meteora DLMM Client
Talks to the Node.js sidecar that wraps the DLMM SDK. The sidecar builds
unsigned versioned transactions; signing and submission happen here in
Python.
"""

import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Iterable, List, Optional, Sequence

import requests

from binpilot.config import SIDECAR_BASE, SOL_MINT
from binpilot.errors import EngineError, ErrorCode, classify_error

logger = logging.getLogger("binpilot.dlmm")


@dataclass
class PoolInfo:
    """Pool handle state needed by the engine."""
    address: str
    token_x_mint: str
    token_y_mint: str
    token_x_decimals: int
    token_y_decimals: int
    bin_step: int
    active_bin_id: int
    active_price: float = 0.0

    @property
    def sol_is_x(self) -> bool:
        return self.token_x_mint == SOL_MINT

    @property
    def token_mint(self) -> str:
        """The non-SOL side of the pair."""
        return self.token_y_mint if self.sol_is_x else self.token_x_mint

    @property
    def token_decimals(self) -> int:
        return self.token_y_decimals if self.sol_is_x else self.token_x_decimals

    def to_dict(self) -> Dict[str, Any]:
        return {
            'address': self.address,
            'token_x_mint': self.token_x_mint,
            'token_y_mint': self.token_y_mint,
            'token_x_decimals': self.token_x_decimals,
            'token_y_decimals': self.token_y_decimals,
            'bin_step': self.bin_step,
            'active_bin_id': self.active_bin_id,
            'active_price': self.active_price,
        }


@dataclass(frozen=True)
class BinAmount:
    bin_id: int
    amount_x: int
    amount_y: int


@dataclass(frozen=True)
class PositionSnapshot:
    """
    Normalized view of one live position.

    Amounts are raw base units summed over the position's bins. `keys`
    lists every underlying position object; the first is canonical.
    """
    position_key: str
    pool_address: str
    lower_bin_id: int
    upper_bin_id: int
    amount_x: int
    amount_y: int
    fee_x: int = 0
    fee_y: int = 0
    bins: tuple = ()
    keys: tuple = ()

    @property
    def bin_count(self) -> int:
        return self.upper_bin_id - self.lower_bin_id + 1

    @property
    def is_empty(self) -> bool:
        return self.amount_x == 0 and self.amount_y == 0

    def contains(self, bin_id: int) -> bool:
        return self.lower_bin_id <= bin_id <= self.upper_bin_id

    def to_dict(self) -> Dict[str, Any]:
        return {
            'position_key': self.position_key,
            'pool_address': self.pool_address,
            'lower_bin_id': self.lower_bin_id,
            'upper_bin_id': self.upper_bin_id,
            'amount_x': self.amount_x,
            'amount_y': self.amount_y,
            'fee_x': self.fee_x,
            'fee_y': self.fee_y,
            'keys': list(self.keys),
        }


def _to_int(value, default: int = 0) -> int:
    """SDK amounts arrive as ints, decimal strings, hex strings or floats."""
    if value is None or value == '':
        return default
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return int(value)
    text = str(value).strip()
    try:
        if text.lower().startswith('0x'):
            return int(text, 16)
        if '.' in text:
            return int(float(text))
        return int(text)
    except ValueError:
        return default


def _first(data: Dict, *names, default=None):
    for name in names:
        if name in data and data[name] is not None:
            return data[name]
    return default


def normalize_position(raw: Dict[str, Any], pool_address: str = '') -> PositionSnapshot:
    """
    Single adapter from every SDK position shape to PositionSnapshot.

    Handles the nested `{publicKey, positionData: {...}}` enumeration shape
    and flat shapes in camelCase or snake_case. When per-bin data is present
    the totals are the sum over bins.
    """
    data = raw.get('positionData') or raw.get('position_data') or raw
    key = _first(raw, 'publicKey', 'positionPubkey', 'position', 'address', 'position_key')
    if key is None:
        key = _first(data, 'publicKey', 'positionPubkey', 'address')
    if key is None:
        raise EngineError("Position without a key", code=ErrorCode.INVALID_PARAMS, context="normalize_position")

    raw_bins = _first(data, 'positionBinData', 'bins', 'position_bin_data', default=[]) or []
    bins = tuple(
        BinAmount(
            bin_id=_to_int(_first(b, 'binId', 'bin_id')),
            amount_x=_to_int(_first(b, 'positionXAmount', 'amountX', 'amount_x')),
            amount_y=_to_int(_first(b, 'positionYAmount', 'amountY', 'amount_y')),
        )
        for b in raw_bins
    )

    if bins:
        amount_x = sum(b.amount_x for b in bins)
        amount_y = sum(b.amount_y for b in bins)
    else:
        amount_x = _to_int(_first(data, 'totalXAmount', 'amountX', 'amount_x', 'total_x_amount'))
        amount_y = _to_int(_first(data, 'totalYAmount', 'amountY', 'amount_y', 'total_y_amount'))

    lower = _first(data, 'lowerBinId', 'lower_bin_id', 'minBinId', 'min_bin_id')
    upper = _first(data, 'upperBinId', 'upper_bin_id', 'maxBinId', 'max_bin_id')
    if lower is None and bins:
        lower = min(b.bin_id for b in bins)
    if upper is None and bins:
        upper = max(b.bin_id for b in bins)

    key = str(key)
    return PositionSnapshot(
        position_key=key,
        pool_address=str(_first(raw, 'poolAddress', 'lbPair', 'pool_address', default=pool_address)),
        lower_bin_id=_to_int(lower),
        upper_bin_id=_to_int(upper),
        amount_x=amount_x,
        amount_y=amount_y,
        fee_x=_to_int(_first(data, 'feeX', 'fee_x', 'feeXExcludeTransferFee')),
        fee_y=_to_int(_first(data, 'feeY', 'fee_y', 'feeYExcludeTransferFee')),
        bins=bins,
        keys=(key,),
    )


def merge_positions(snapshots: Sequence[PositionSnapshot]) -> PositionSnapshot:
    """Fold the underlying objects of one logical position; the first key stays canonical."""
    if not snapshots:
        raise ValueError("merge_positions needs at least one snapshot")
    if len(snapshots) == 1:
        return snapshots[0]
    first = snapshots[0]
    return PositionSnapshot(
        position_key=first.position_key,
        pool_address=first.pool_address,
        lower_bin_id=min(s.lower_bin_id for s in snapshots),
        upper_bin_id=max(s.upper_bin_id for s in snapshots),
        amount_x=sum(s.amount_x for s in snapshots),
        amount_y=sum(s.amount_y for s in snapshots),
        fee_x=sum(s.fee_x for s in snapshots),
        fee_y=sum(s.fee_y for s in snapshots),
        bins=tuple(b for s in snapshots for b in s.bins),
        keys=tuple(k for s in snapshots for k in s.keys),
    )


@dataclass
class ExtendedPositionTxs:
    """Transactions for one underlying position of a multi-position open."""
    position_key: str
    min_bin_id: int
    max_bin_id: int
    init_transaction: str
    add_liquidity_transactions: List[str] = field(default_factory=list)


@dataclass
class CreationQuote:
    """One-time cost of opening a range (bin arrays to initialize, position rent)."""
    bin_array_count: int
    bin_array_cost: float
    position_count: int
    position_cost: float

    @property
    def requires_bin_array_init(self) -> bool:
        return self.bin_array_count > 0


class DLMMClient:
    """Client for the DLMM SDK sidecar service."""

    def __init__(self, sidecar_url: str = SIDECAR_BASE, session=None, timeout: float = 30):
        self.sidecar_url = sidecar_url.rstrip('/')
        self.session = session or requests
        self.timeout = timeout

    # ── Transport ───────────────────────────────────────────────────────

    def _unwrap(self, response, context: str) -> Dict:
        try:
            data = response.json()
        except ValueError:
            data = {}
        if response.status_code >= 400 or not data.get('success', False):
            message = data.get('error') or f"HTTP {response.status_code}"
            logs = data.get('logs')
            if isinstance(logs, list) and logs:
                message = f"{message} | {' '.join(logs)}"
            logger.error(f"[DLMM] Sidecar {context} error: {message}")
            raise EngineError(message, code=classify_error(message), context=context)
        return data

    def _get(self, path: str, context: str, params: Optional[Dict] = None) -> Dict:
        try:
            response = self.session.get(f"{self.sidecar_url}{path}", params=params, timeout=self.timeout)
        except requests.RequestException as e:
            raise EngineError(f"Sidecar unreachable: {e}", code=ErrorCode.NETWORK_ERROR, context=context) from e
        return self._unwrap(response, context)

    def _post(self, path: str, payload: Dict, context: str) -> Dict:
        try:
            response = self.session.post(f"{self.sidecar_url}{path}", json=payload, timeout=self.timeout)
        except requests.RequestException as e:
            raise EngineError(f"Sidecar unreachable: {e}", code=ErrorCode.NETWORK_ERROR, context=context) from e
        return self._unwrap(response, context)

    # ── Reads ───────────────────────────────────────────────────────────

    def get_pool(self, address: str) -> PoolInfo:
        data = self._get(f"/pool/{address}", "get_pool")
        pool = data.get('pool') or {}
        if not pool:
            raise EngineError(f"Pool {address} not found", code=ErrorCode.POOL_NOT_FOUND, context="get_pool")
        return PoolInfo(
            address=pool.get('address', address),
            token_x_mint=pool['tokenXMint'],
            token_y_mint=pool['tokenYMint'],
            token_x_decimals=int(pool.get('tokenXDecimals', 9)),
            token_y_decimals=int(pool.get('tokenYDecimals', 9)),
            bin_step=int(pool.get('binStep', 0)),
            active_bin_id=int(pool['activeBinId']),
            active_price=float(pool.get('activePrice') or 0),
        )

    def get_active_bin(self, address: str) -> int:
        data = self._get(f"/pool/{address}/active-bin", "get_active_bin")
        active = data.get('activeBin') or {}
        bin_id = active.get('binId', data.get('activeBinId'))
        if bin_id is None:
            raise EngineError(f"No active bin in response for pool {address}",
                              code=ErrorCode.RPC_ERROR, context="get_active_bin")
        return int(bin_id)

    def get_positions(self, pool_address: str, owner: str) -> List[PositionSnapshot]:
        data = self._get(f"/positions/{pool_address}/{owner}", "get_positions")
        return [normalize_position(p, pool_address) for p in data.get('positions') or []]

    def find_positions(self, pool_address: str, owner: str, keys: Iterable[str]) -> List[PositionSnapshot]:
        """Live snapshots for `keys`, in the order given; missing keys are skipped."""
        by_key = {p.position_key: p for p in self.get_positions(pool_address, owner)}
        return [by_key[k] for k in keys if k in by_key]

    def position_exists(self, pool_address: str, owner: str, key: str) -> bool:
        return bool(self.find_positions(pool_address, owner, [key]))

    # ── Builders ────────────────────────────────────────────────────────

    def build_create_position(self, pool_address: str, owner: str, position_key: str,
                              amount_x: int, amount_y: int, min_bin_id: int, max_bin_id: int,
                              strategy: str, slippage_pct: float,
                              priority_micro_lamports: int = 0) -> str:
        """Initialize + add liquidity for a single position (≤ 69 bins)."""
        data = self._post("/build/create-position", {
            'poolAddress': pool_address,
            'owner': owner,
            'positionPubkey': position_key,
            'totalXAmount': str(int(amount_x)),
            'totalYAmount': str(int(amount_y)),
            'minBinId': min_bin_id,
            'maxBinId': max_bin_id,
            'strategyType': strategy,
            'slippage': slippage_pct,
            'priorityMicroLamports': priority_micro_lamports,
        }, "build_create_position")
        return data['transaction']

    def build_create_positions_extended(self, pool_address: str, owner: str,
                                        position_keys: Sequence[str], amount_x: int, amount_y: int,
                                        min_bin_id: int, max_bin_id: int, strategy: str,
                                        slippage_pct: float,
                                        priority_micro_lamports: int = 0) -> List[ExtendedPositionTxs]:
        """Split a wide range across several positions; one entry per position, in bin order."""
        data = self._post("/build/create-positions-extended", {
            'poolAddress': pool_address,
            'owner': owner,
            'positionPubkeys': list(position_keys),
            'totalXAmount': str(int(amount_x)),
            'totalYAmount': str(int(amount_y)),
            'minBinId': min_bin_id,
            'maxBinId': max_bin_id,
            'strategyType': strategy,
            'slippage': slippage_pct,
            'priorityMicroLamports': priority_micro_lamports,
        }, "build_create_positions_extended")
        return [
            ExtendedPositionTxs(
                position_key=item['positionPubkey'],
                min_bin_id=int(item['minBinId']),
                max_bin_id=int(item['maxBinId']),
                init_transaction=item['initTransaction'],
                add_liquidity_transactions=list(item.get('addLiquidityTransactions') or []),
            )
            for item in data.get('positions') or []
        ]

    def build_remove_liquidity(self, pool_address: str, owner: str, position_key: str,
                               bps: int = 10_000, claim_and_close: bool = True,
                               priority_micro_lamports: int = 0) -> List[str]:
        """Remove `bps` of liquidity; may take several transactions."""
        data = self._post("/build/remove-liquidity", {
            'poolAddress': pool_address,
            'owner': owner,
            'positionPubkey': position_key,
            'bps': bps,
            'shouldClaimAndClose': claim_and_close,
            'priorityMicroLamports': priority_micro_lamports,
        }, "build_remove_liquidity")
        return list(data.get('transactions') or [])

    def build_close_position(self, pool_address: str, owner: str, position_key: str,
                             priority_micro_lamports: int = 0) -> str:
        data = self._post("/build/close-position", {
            'poolAddress': pool_address,
            'owner': owner,
            'positionPubkey': position_key,
            'priorityMicroLamports': priority_micro_lamports,
        }, "build_close_position")
        return data['transaction']

    def quote_create_position(self, pool_address: str, min_bin_id: int, max_bin_id: int,
                              strategy: str) -> CreationQuote:
        data = self._post("/quote/create-position", {
            'poolAddress': pool_address,
            'minBinId': min_bin_id,
            'maxBinId': max_bin_id,
            'strategyType': strategy,
        }, "quote_create_position")
        quote = data.get('quote') or {}
        return CreationQuote(
            bin_array_count=int(quote.get('binArraysCount', 0)),
            bin_array_cost=float(quote.get('binArrayCost', 0)),
            position_count=int(quote.get('positionCount', 1)),
            position_cost=float(quote.get('positionCost', 0)),
        )

    def check_sidecar_health(self) -> bool:
        """Check if sidecar service is running."""
        try:
            response = self.session.get(f"{self.sidecar_url}/health", timeout=5)
            return response.status_code == 200
        except requests.RequestException:
            return False
