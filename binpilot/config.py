#!/usr/bin/env python3
"""Configuration module for binpilot."""
import os
import json
from dataclasses import dataclass, field, asdict
from typing import Optional, Dict, Any

from dotenv import load_dotenv
from solders.keypair import Keypair

load_dotenv()

# Base paths
BASE_DIR = os.path.dirname(os.path.abspath(__file__))

# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━
# Venue constants
# ━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━━

SOL_MINT = "So11111111111111111111111111111111111111112"
LAMPORTS_PER_SOL = 1_000_000_000
SOL_DECIMALS = 9

MAX_BIN_PER_TX = 69            # venue limit for one position object
MAX_BIN_SPAN = 1400
TOKEN_ACCOUNT_SIZE = 165       # bytes, for rent-exemption estimates

SIGNATURE_FEE_LAMPORTS = 5_000
POSITION_SOL_BUFFER = 20_000_000       # 0.02 SOL kept back on a fresh open
EXTRA_HEADROOM_LAMPORTS = 50_000
DUST_CLAMP_LAMPORTS = 10_000
SHRINK_MARGIN = 5_000

DEFAULT_PRIORITY_FEE_MICRO_LAMPORTS = 50_000
DEFAULT_COMPUTE_UNITS = 250_000
DEFAULT_SLIPPAGE_BPS = 10
DEFAULT_MAX_PRICE_IMPACT = 0.5         # percent
DEFAULT_HAIRCUT_BPS = 10

# Jupiter API
JUPITER_API_KEY = os.getenv("JUPITER_API_KEY", "")
JUPITER_QUOTE_API = "https://lite-api.jup.ag/swap/v1/quote"
JUPITER_SWAP_API = "https://lite-api.jup.ag/swap/v1/swap"
JUPITER_PRICE_API = "https://lite-api.jup.ag/price/v3"

# Liquidity-pool SDK sidecar (Node.js, wraps the DLMM SDK)
SIDECAR_BASE = os.getenv("SIDECAR_URL", "http://localhost:5002")

FEE_HANDLING_MODES = ("compound", "claim_to_sol")
AUTO_COMPOUND_MODES = ("both", "sol_only", "token_only", "none")


def _env_bool(name: str, default: bool) -> bool:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return value.strip().lower() in ("1", "true", "yes", "on")


def _env_float(name: str, default: Optional[float]) -> Optional[float]:
    value = os.getenv(name)
    if value is None or value == "":
        return default
    return float(value)


@dataclass
class EngineConfig:
    """Runtime settings for one managed position.

    Passed into the engine at construction; nothing reads process-wide
    state after `from_env` returns.

    Attributes:
        rpc_url: Solana JSON-RPC endpoint.
        pool_address: DLMM pool (lb pair) managed by this engine.
        wallet_path: JSON secret-key array for the signing wallet.
        sidecar_url: Base URL of the DLMM SDK sidecar.
        cluster: "mainnet" or "devnet"; bundles are mainnet only.
        total_bins_span: Default bin span for opens and reopens.
        liquidity_strategy: Spot, Curve or BidAsk for the first open.
        rebalance_strategy: Strategy for reopens (falls back to the above).
        slippage_bps: Swap slippage passed to the aggregator.
        max_price_impact: Highest acceptable quote price impact, percent.
        haircut_bps: One-time safety haircut on deposit amounts.
        fee_handling_mode: "compound" or "claim_to_sol".
        auto_compound_mode: "both", "sol_only", "token_only" or "none".
        min_swap_usd: Minimum fee value worth converting to SOL.
        use_jito_bundles: Allow atomic bundles for multi-position opens.
        jito_priority: Tip percentile tier for bundles.
        monitor_interval_seconds: Position monitor poll interval.
        pnl_state_path: Where the P&L baseline is persisted.
    """
    rpc_url: str = "https://api.mainnet-beta.solana.com"
    pool_address: str = ""
    wallet_path: str = os.path.join(BASE_DIR, "keypair.json")
    sidecar_url: str = SIDECAR_BASE
    cluster: str = "mainnet"
    total_bins_span: int = 20
    liquidity_strategy: str = "Spot"
    rebalance_strategy: Optional[str] = None
    slippage_bps: int = DEFAULT_SLIPPAGE_BPS
    max_price_impact: float = DEFAULT_MAX_PRICE_IMPACT
    haircut_bps: int = DEFAULT_HAIRCUT_BPS
    fee_handling_mode: str = "compound"
    auto_compound_mode: str = "both"
    min_swap_usd: float = 0.0
    use_jito_bundles: bool = True
    jito_priority: str = "medium"
    monitor_interval_seconds: int = 5
    pnl_state_path: Optional[str] = None
    jupiter_api_key: str = field(default=JUPITER_API_KEY, repr=False)

    @classmethod
    def from_env(cls) -> 'EngineConfig':
        """Build a config from environment variables (after `.env` loading)."""
        defaults = cls()
        return cls(
            rpc_url=os.getenv("RPC_URL", defaults.rpc_url),
            pool_address=os.getenv("POOL_ADDRESS", defaults.pool_address),
            wallet_path=os.getenv("WALLET_PATH", defaults.wallet_path),
            sidecar_url=os.getenv("SIDECAR_URL", defaults.sidecar_url),
            cluster=os.getenv("CLUSTER", defaults.cluster),
            total_bins_span=int(os.getenv("TOTAL_BINS_SPAN", defaults.total_bins_span)),
            liquidity_strategy=os.getenv("LIQUIDITY_STRATEGY", defaults.liquidity_strategy),
            rebalance_strategy=os.getenv("REBALANCE_STRATEGY") or None,
            slippage_bps=int(os.getenv("SLIPPAGE_BPS", defaults.slippage_bps)),
            max_price_impact=_env_float("PRICE_IMPACT", defaults.max_price_impact),
            haircut_bps=int(os.getenv("HAIRCUT_BPS", defaults.haircut_bps)),
            fee_handling_mode=os.getenv("FEE_HANDLING_MODE", defaults.fee_handling_mode),
            auto_compound_mode=os.getenv("AUTO_COMPOUND_MODE", defaults.auto_compound_mode),
            min_swap_usd=_env_float("MIN_SWAP_USD", defaults.min_swap_usd),
            use_jito_bundles=_env_bool("USE_JITO_BUNDLES", defaults.use_jito_bundles),
            jito_priority=os.getenv("JITO_PRIORITY", defaults.jito_priority),
            monitor_interval_seconds=int(os.getenv("MONITOR_INTERVAL_SECONDS", defaults.monitor_interval_seconds)),
            pnl_state_path=os.getenv("PNL_STATE_PATH") or None,
            jupiter_api_key=os.getenv("JUPITER_API_KEY", ""),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = asdict(self)
        data.pop("jupiter_api_key", None)
        return data


def load_keypair(path: str) -> Keypair:
    """Load a wallet keypair from a JSON secret-key array file."""
    resolved = os.path.expanduser(path)
    with open(resolved, 'r') as f:
        kp_data = json.load(f)
    return Keypair.from_bytes(bytes(kp_data))
