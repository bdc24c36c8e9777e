import base64
import logging
import math
import random
import time
from dataclasses import dataclass, field
from typing import Callable, List, Optional, Sequence, Tuple

import requests
from solders.hash import Hash as SoldersHash
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.system_program import TransferParams, transfer
from solders.transaction import VersionedTransaction

from binpilot.config import LAMPORTS_PER_SOL
from binpilot.errors import BundleError, ErrorCode

logger = logging.getLogger("binpilot.jito")

# Jito Block Engine Endpoints
JITO_ENDPOINTS = [
    "https://mainnet.block-engine.jito.wtf/api/v1/bundles",
    "https://ny.mainnet.block-engine.jito.wtf/api/v1/bundles",
    "https://tokyo.mainnet.block-engine.jito.wtf/api/v1/bundles",
    "https://frankfurt.mainnet.block-engine.jito.wtf/api/v1/bundles",
]

# Jito Tip Floor API
JITO_TIP_FLOOR_URL = "https://bundles.jito.wtf/api/v1/bundles/tip_floor"

JITO_TIP_ACCOUNTS = [
    "96gYZGLnJYVFmbjzopPSU6QiEV5fGqZNyN9nmNhvrZU5",
    "HFqU5x63VTqvQss8hp11i4wVV8bD44PvwucfZ2bU7gRe",
    "Cw8CFyM9FkoMi7K7Crf6HNQqf4uEMzpKw6QNghXLvLkY",
    "ADaUMid9yfUytqMBgopwjb2DTLSokTSzL1zt6iGPaS49",
    "DfXygSm4jCyNCybVYYK6DwvWqjKee8pbDmJGcLWNDXjh",
    "ADuUkR4vqLUMWXxW9gh6D6L8pMSawimctcNZ5pGwDcEt",
    "3AVi9Tg9Uo68tJfuvoKvqKNWKkC5wPdSSdeBnizKZ6jT",
    "DttWaMuVvTiduZRnguLF7jNxTgiMBZ1hyAumKUiL2KRL",
]

DEFAULT_TIP_LAMPORTS = 10_000          # 0.00001 SOL, used when the tip floor is unavailable
MIN_TIP_LAMPORTS = 6_000
MAX_TIP_LAMPORTS = 1_400_000           # 0.0014 SOL cap
MAX_BUNDLE_SIZE = 5                    # relay limit, tip transaction included
BUNDLE_TIMEOUT_SECONDS = 30
STATUS_CHECK_INTERVAL_SECONDS = 2

PERCENTILE_KEYS = {
    "low": "landed_tips_25th_percentile",
    "medium": "ema_landed_tips_50th_percentile",
    "high": "landed_tips_75th_percentile",
    "veryhigh": "landed_tips_95th_percentile",
}

FALLBACK_TIP_MULTIPLIERS = {
    "low": 0.6,
    "medium": 1,
    "high": 3,
    "veryhigh": 10,
}


def _priority_key(priority) -> str:
    value = getattr(priority, "value", priority)
    key = str(value or "medium").replace("_", "").replace("-", "").lower()
    return key if key in PERCENTILE_KEYS else "medium"


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Dynamic Tip Floor Cache
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

class TipFloorCache:
    """
    Cached Jito tip floor statistics.

    Refreshed inline when older than CACHE_TTL. A failed refresh keeps the
    previous data if there is any; with no data at all get_tip_floor()
    returns None and callers use the static fallback tip.
    """

    CACHE_TTL = 10  # seconds

    def __init__(self, session=None, clock: Callable[[], float] = time.time):
        self.session = session or requests
        self.clock = clock
        self._data: Optional[dict] = None
        self._last_fetch: float = 0

    def _fetch_tip_floor(self) -> dict:
        resp = self.session.get(JITO_TIP_FLOOR_URL, timeout=3)
        resp.raise_for_status()
        data = resp.json()
        # API returns a list with one element
        if isinstance(data, list):
            if not data:
                raise ValueError("empty tip floor response")
            data = data[0]
        if not isinstance(data, dict):
            raise ValueError("invalid tip floor response format")
        return data

    def get_tip_floor(self) -> Optional[dict]:
        if self._data is not None and (self.clock() - self._last_fetch) < self.CACHE_TTL:
            return dict(self._data)
        try:
            self._data = self._fetch_tip_floor()
            self._last_fetch = self.clock()
        except (requests.RequestException, ValueError) as e:
            logger.warning(f"[Jito] Tip floor fetch failed: {e}")
        return dict(self._data) if self._data is not None else None

    def get_status(self) -> dict:
        floor = self._data
        if floor:
            return {
                "available": True,
                "age_s": round(self.clock() - self._last_fetch, 1),
                "p25_lamports": int(floor.get("landed_tips_25th_percentile", 0) * LAMPORTS_PER_SOL),
                "p75_lamports": int(floor.get("landed_tips_75th_percentile", 0) * LAMPORTS_PER_SOL),
                "p95_lamports": int(floor.get("landed_tips_95th_percentile", 0) * LAMPORTS_PER_SOL),
                "ema50_lamports": int(floor.get("ema_landed_tips_50th_percentile", 0) * LAMPORTS_PER_SOL),
            }
        return {"available": False, "fallback_lamports": DEFAULT_TIP_LAMPORTS}


def fallback_bundle_tip(transaction_count: int, priority="medium") -> int:
    """Static tip when no tip floor statistics are available."""
    multiplier = FALLBACK_TIP_MULTIPLIERS[_priority_key(priority)]
    tip = DEFAULT_TIP_LAMPORTS * multiplier * math.sqrt(max(transaction_count, 1))
    return int(min(tip, MAX_TIP_LAMPORTS))


def calculate_bundle_tip(transaction_count: int, priority="medium",
                         tip_floor: Optional[dict] = None) -> int:
    """
    Tip in lamports for a bundle of `transaction_count` payload transactions.

    Percentile by priority (low 25th, medium EMA 50th, high 75th, veryhigh
    95th), scaled by 1 + (sqrt(n) - 1) * 0.2 and clamped to
    [MIN_TIP_LAMPORTS, MAX_TIP_LAMPORTS].
    """
    if not tip_floor:
        return fallback_bundle_tip(transaction_count, priority)

    key = _priority_key(priority)
    base_sol = tip_floor.get(PERCENTILE_KEYS[key])
    if not base_sol and key == "medium":
        base_sol = tip_floor.get("landed_tips_50th_percentile")
    if not base_sol:
        return fallback_bundle_tip(transaction_count, priority)

    base_lamports = int(base_sol * LAMPORTS_PER_SOL)
    scaling = 1 + (math.sqrt(max(transaction_count, 1)) - 1) * 0.2
    tip = int(base_lamports * scaling)
    return max(MIN_TIP_LAMPORTS, min(tip, MAX_TIP_LAMPORTS))


def should_use_bundles(transaction_count: int, multi_position: bool,
                       cluster: str = "mainnet", enabled: bool = True) -> bool:
    """
    Bundles are only for multi-position operations on mainnet.

    Single positions, swaps and standard operations always go through
    regular RPC. The payload must leave room for the tip transaction.
    """
    if not enabled or cluster != "mainnet":
        return False
    if not multi_position:
        return False
    return 1 < transaction_count <= MAX_BUNDLE_SIZE - 1


def get_random_tip_account() -> str:
    return random.choice(JITO_TIP_ACCOUNTS)


def build_tip_transaction(signer: Keypair, tip_amount_lamports: int, recent_blockhash,
                          tip_account: Optional[str] = None) -> VersionedTransaction:
    """Build a signed V0 transaction that sends a tip to a Jito tip account."""
    to_pubkey = Pubkey.from_string(tip_account or get_random_tip_account())
    sender = signer.pubkey()

    ix = transfer(TransferParams(
        from_pubkey=sender,
        to_pubkey=to_pubkey,
        lamports=tip_amount_lamports
    ))

    # Accepts str or Hash
    if isinstance(recent_blockhash, str):
        recent_blockhash = SoldersHash.from_string(recent_blockhash)

    msg = MessageV0.try_compile(
        payer=sender,
        instructions=[ix],
        address_lookup_table_accounts=[],
        recent_blockhash=recent_blockhash,
    )
    return VersionedTransaction(msg, [signer])


# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Bundle executor
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

@dataclass
class BundleResult:
    bundle_id: str
    signatures: List[str]
    slot: Optional[int]
    tip_lamports: int
    transaction_count: int
    attempts: int = 1
    payload_signatures: List[str] = field(default_factory=list)


class JitoBundleExecutor:
    """Submits a group of sidecar-built transactions as one atomic bundle.

    `transactions` are (unsigned base64 transaction, extra signers) pairs.
    Every failure surfaces as BundleError so callers can fall back to
    sequential submission.
    """

    def __init__(self, chain, tip_cache: Optional[TipFloorCache] = None, session=None,
                 endpoint: str = JITO_ENDPOINTS[0],
                 timeout_seconds: float = BUNDLE_TIMEOUT_SECONDS,
                 poll_interval: float = STATUS_CHECK_INTERVAL_SECONDS,
                 max_retries: int = 2, retry_delay: float = 2.0,
                 sleep: Callable[[float], None] = time.sleep,
                 clock: Callable[[], float] = time.time):
        self.chain = chain
        self.session = session or requests
        self.tip_cache = tip_cache or TipFloorCache(session=self.session, clock=clock)
        self.endpoint = endpoint
        self.timeout_seconds = timeout_seconds
        self.poll_interval = poll_interval
        self.max_retries = max_retries
        self.retry_delay = retry_delay
        self.sleep = sleep
        self.clock = clock

    def calculate_tip(self, transaction_count: int, priority="medium") -> int:
        tip = calculate_bundle_tip(transaction_count, priority, self.tip_cache.get_tip_floor())
        logger.info(f"[Jito] Tip: {priority} priority, {transaction_count} txs → {tip:,} lamports")
        return tip

    def _rpc(self, method: str, params: list) -> dict:
        try:
            resp = self.session.post(self.endpoint, json={
                "jsonrpc": "2.0",
                "id": 1,
                "method": method,
                "params": params
            }, timeout=5)
            resp.raise_for_status()
            data = resp.json()
        except (requests.RequestException, ValueError) as e:
            raise BundleError(f"{method} failed: {e}", context="jito") from e
        if data.get("error"):
            raise BundleError(f"{method} error: {data['error']}", context="jito")
        return data

    def _prepare(self, transactions: Sequence[Tuple[str, Sequence[Keypair]]],
                 priority) -> Tuple[List[str], List[str], int]:
        if not transactions:
            raise BundleError("Cannot send empty bundle", context="jito")
        if len(transactions) + 1 > MAX_BUNDLE_SIZE:
            raise BundleError(
                f"Bundle too large: {len(transactions)} + tip > {MAX_BUNDLE_SIZE} transactions",
                context="jito"
            )

        tip_lamports = self.calculate_tip(len(transactions), priority)
        tip_tx = build_tip_transaction(self.chain.payer, tip_lamports, self.chain.latest_blockhash())

        signed = [tip_tx] + [self.chain.sign_transaction(tx_b64, signers) for tx_b64, signers in transactions]
        encoded = [base64.b64encode(bytes(tx)).decode("utf-8") for tx in signed]
        signatures = [str(tx.signatures[0]) for tx in signed]
        return encoded, signatures, tip_lamports

    def wait_for_confirmation(self, bundle_id: str) -> dict:
        """Poll inflight then final bundle status until landed, failed or timed out."""
        deadline = self.clock() + self.timeout_seconds
        last_status = "pending"
        while self.clock() < deadline:
            try:
                inflight = self._rpc("getInflightBundleStatuses", [[bundle_id]])
            except BundleError as e:
                logger.warning(f"[Jito] Status check error: {e}")
                self.sleep(self.poll_interval)
                continue

            values = (inflight.get("result") or {}).get("value") or []
            status = values[0] if values else None
            if status:
                state = status.get("status")
                if state != last_status:
                    logger.info(f"[Jito] Bundle status: {last_status} → {state}")
                    last_status = state
                if state == "Landed":
                    final = self._rpc("getBundleStatuses", [[bundle_id]])
                    final_values = (final.get("result") or {}).get("value") or []
                    if final_values and final_values[0]:
                        return {
                            "slot": final_values[0].get("slot"),
                            "signatures": final_values[0].get("transactions") or [],
                        }
                    return {"slot": status.get("landed_slot"), "signatures": []}
                if state in ("Failed", "Invalid"):
                    raise BundleError(f"Bundle {state.lower()}", context="jito")
            self.sleep(self.poll_interval)

        raise BundleError("Bundle confirmation timeout", code=ErrorCode.BUNDLE_FAILED, context="jito")

    def execute(self, transactions: Sequence[Tuple[str, Sequence[Keypair]]],
                priority="medium") -> BundleResult:
        """Single bundle attempt: tip first, sign all, submit, wait for landing."""
        try:
            encoded, signatures, tip_lamports = self._prepare(transactions, priority)
        except BundleError:
            raise
        except Exception as e:
            # blockhash or signing failure before anything was sent
            raise BundleError(f"Bundle preparation failed: {e}", context="jito") from e
        response = self._rpc("sendBundle", [encoded, {"encoding": "base64"}])
        bundle_id = response.get("result")
        if not bundle_id:
            raise BundleError("Bundle submission failed: no result", context="jito")

        logger.info(f"[Jito] Bundle submitted: {bundle_id} ({len(encoded)} txs)")
        landed = self.wait_for_confirmation(bundle_id)
        logger.info(f"[Jito] Bundle landed in slot {landed['slot']}, tip {tip_lamports / LAMPORTS_PER_SOL:.6f} SOL")
        return BundleResult(
            bundle_id=bundle_id,
            signatures=landed["signatures"] or signatures,
            slot=landed["slot"],
            tip_lamports=tip_lamports,
            transaction_count=len(transactions),
            payload_signatures=signatures[1:],
        )

    def send_with_confirmation(self, transactions: Sequence[Tuple[str, Sequence[Keypair]]],
                               priority="medium") -> BundleResult:
        """Run `execute` up to max_retries times, retry_delay apart."""
        last_error: Optional[BundleError] = None
        for attempt in range(1, self.max_retries + 1):
            try:
                result = self.execute(transactions, priority)
                result.attempts = attempt
                return result
            except BundleError as e:
                last_error = e
                logger.warning(f"[Jito] Bundle attempt {attempt}/{self.max_retries} failed: {e.message}")
                if attempt < self.max_retries:
                    self.sleep(self.retry_delay)
        raise BundleError(
            f"Bundle execution failed: {last_error.message}",
            context="jito",
            details={"attempts": self.max_retries}
        )
