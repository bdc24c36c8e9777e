#!/usr/bin/env python3
"""Wiring of the live clients into a LiquidityEngine."""
import logging
from typing import Optional

import requests
from solana.rpc.api import Client

from binpilot.config import EngineConfig, load_keypair
from binpilot.engine import LiquidityEngine
from binpilot.services.blockhash_cache import BlockhashCache
from binpilot.services.chain import SolanaChain
from binpilot.services.jito import JitoBundleExecutor, TipFloorCache
from binpilot.services.liquidity.pnl_tracker import PnLTracker
from binpilot.services.meteora_dlmm.dlmm_client import DLMMClient
from binpilot.services.prices import PriceOracle
from binpilot.services.priority_fee import PriorityFeeEstimator
from binpilot.services.trading import JupiterSwapper

logger = logging.getLogger("binpilot")

LOG_FORMAT = '[%(asctime)s.%(msecs)03d] [%(levelname)s] %(name)s: %(message)s'


def configure_logging(level: int = logging.INFO):
    logging.basicConfig(level=level, format=LOG_FORMAT, datefmt='%Y-%m-%d %H:%M:%S')


def create_engine(config: Optional[EngineConfig] = None, session=None,
                  start_blockhash_refresh: bool = True) -> LiquidityEngine:
    """Engine factory. Every client shares one HTTP session."""
    config = config or EngineConfig.from_env()
    session = session or requests.Session()

    payer = load_keypair(config.wallet_path)
    fee_estimator = PriorityFeeEstimator(config.rpc_url, session=session)
    blockhash_cache = BlockhashCache(config.rpc_url, session=session)
    if start_blockhash_refresh:
        blockhash_cache.start()
    chain = SolanaChain(Client(config.rpc_url), payer, blockhash_cache=blockhash_cache,
                        fee_estimator=fee_estimator)

    dlmm = DLMMClient(config.sidecar_url, session=session)
    if not dlmm.check_sidecar_health():
        logger.warning(f"[DLMM] Sidecar not reachable at {config.sidecar_url}")

    swapper = JupiterSwapper(chain, api_key=config.jupiter_api_key, session=session,
                             slippage_bps=config.slippage_bps,
                             max_price_impact=config.max_price_impact)
    oracle = PriceOracle(api_key=config.jupiter_api_key, session=session)

    bundle_executor = None
    if config.use_jito_bundles and config.cluster == "mainnet":
        bundle_executor = JitoBundleExecutor(chain, TipFloorCache(session=session), session=session)

    tracker = PnLTracker(config.pnl_state_path)
    tracker.load()

    logger.info(f"[Engine] Wallet {payer.pubkey()} managing pool {config.pool_address} "
                f"({config.cluster}, bundles={'on' if bundle_executor else 'off'})")
    return LiquidityEngine(config, dlmm, chain, swapper, oracle,
                           bundle_executor=bundle_executor,
                           fee_estimator=fee_estimator,
                           tracker=tracker)
