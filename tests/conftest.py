# tests/conftest.py
"""Offline fakes for the sidecar, chain, swap and price services."""

import pytest
import requests
from solders.keypair import Keypair

from binpilot.config import SOL_MINT, EngineConfig
from binpilot.engine import LiquidityEngine
from binpilot.errors import PriceUnavailableError
from binpilot.services.jito import BundleResult
from binpilot.services.liquidity.pnl_tracker import PnLTracker
from binpilot.services.meteora_dlmm.dlmm_client import (
    CreationQuote, ExtendedPositionTxs, PoolInfo, PositionSnapshot,
)
from binpilot.services.trading import SwapResult

TOKEN_MINT = "EPjFWdd5AufqSSqeM2qN1xzybapC8G4wEGGkZwyTDt1v"
TOKEN_DECIMALS = 6
POOL_ADDRESS = str(Keypair().pubkey())
ACTIVE_BIN = 1000
RENT = 2_039_280


def make_pool(active_bin: int = ACTIVE_BIN, sol_is_x: bool = False) -> PoolInfo:
    if sol_is_x:
        return PoolInfo(POOL_ADDRESS, SOL_MINT, TOKEN_MINT, 9, TOKEN_DECIMALS, 10, active_bin)
    return PoolInfo(POOL_ADDRESS, TOKEN_MINT, SOL_MINT, TOKEN_DECIMALS, 9, 10, active_bin)


def make_position(key: str, lower: int, upper: int, amount_x: int = 0, amount_y: int = 0,
                  fee_x: int = 0, fee_y: int = 0) -> PositionSnapshot:
    return PositionSnapshot(
        position_key=key, pool_address=POOL_ADDRESS, lower_bin_id=lower, upper_bin_id=upper,
        amount_x=amount_x, amount_y=amount_y, fee_x=fee_x, fee_y=fee_y, keys=(key,),
    )


class FakeResponse:
    def __init__(self, payload, status_code: int = 200):
        self.payload = payload
        self.status_code = status_code

    def json(self):
        return self.payload

    def raise_for_status(self):
        if self.status_code >= 400:
            raise requests.HTTPError(f"HTTP {self.status_code}")


class FakeSession:
    """Replays queued responses for get/post and records every call."""

    def __init__(self, get=None, post=None):
        self.get_responses = list(get or [])
        self.post_responses = list(post or [])
        self.calls = []

    def _next(self, queue):
        item = queue.pop(0) if len(queue) > 1 else queue[0]
        if isinstance(item, Exception):
            raise item
        return item

    def get(self, url, **kwargs):
        self.calls.append(('get', url, kwargs))
        return self._next(self.get_responses)

    def post(self, url, **kwargs):
        self.calls.append(('post', url, kwargs))
        return self._next(self.post_responses)


class FakeChain:
    def __init__(self, native: int = 5_000_000_000, tokens=None):
        self.payer = Keypair()
        self.native = native
        self.tokens = dict(tokens or {})
        self.sent = []
        self.failures = []
        self.unwrap_calls = 0

    @property
    def wallet(self):
        return self.payer.pubkey()

    def get_native_balance(self) -> int:
        return self.native

    def get_token_balance(self, mint: str) -> int:
        return self.tokens.get(mint, 0)

    def get_rent_exemption(self, size: int = 165) -> int:
        return RENT

    def send_transaction(self, tx_b64, extra_signers=(), priority=None):
        if self.failures:
            error = self.failures.pop(0)
            if error is not None:
                raise error
        self.sent.append((tx_b64, list(extra_signers)))
        return f"sig-{len(self.sent)}"

    def unwrap_wsol(self, priority=None):
        self.unwrap_calls += 1
        return None


class BlockhashOutageChain(FakeChain):
    """Sequential sends work but no fresh blockhash can be fetched."""

    def latest_blockhash(self):
        raise requests.ConnectionError("rpc down")


class FakeDLMM:
    def __init__(self, pool: PoolInfo = None, positions=()):
        self.pool = pool or make_pool()
        self.active_bin = self.pool.active_bin_id
        self.positions = {p.position_key: p for p in positions}
        self.quote = CreationQuote(bin_array_count=0, bin_array_cost=0.0, position_count=1, position_cost=0.0)
        self.create_calls = []
        self.extended_calls = []
        self.remove_calls = []
        self.close_calls = []

    def get_pool(self, address):
        return self.pool

    def get_active_bin(self, address):
        return self.active_bin

    def get_positions(self, pool_address, owner):
        return list(self.positions.values())

    def find_positions(self, pool_address, owner, keys):
        return [self.positions[k] for k in keys if k in self.positions]

    def position_exists(self, pool_address, owner, key):
        return key in self.positions

    def build_create_position(self, pool_address, owner, position_key, amount_x, amount_y,
                              min_bin_id, max_bin_id, strategy, slippage_pct, priority_micro_lamports=0):
        self.create_calls.append({
            'position_key': position_key, 'amount_x': amount_x, 'amount_y': amount_y,
            'min_bin_id': min_bin_id, 'max_bin_id': max_bin_id, 'strategy': strategy,
            'slippage': slippage_pct,
        })
        return f"tx-create-{len(self.create_calls)}"

    def build_create_positions_extended(self, pool_address, owner, position_keys, amount_x, amount_y,
                                        min_bin_id, max_bin_id, strategy, slippage_pct,
                                        priority_micro_lamports=0):
        self.extended_calls.append({'keys': list(position_keys), 'slippage': slippage_pct})
        batches = []
        start = min_bin_id
        for key in position_keys:
            end = min(start + 68, max_bin_id)
            batches.append(ExtendedPositionTxs(key, start, end, f"tx-init-{key[:4]}", [f"tx-add-{key[:4]}"]))
            start = end + 1
        return batches

    def build_remove_liquidity(self, pool_address, owner, position_key, bps=10_000,
                               claim_and_close=True, priority_micro_lamports=0):
        self.remove_calls.append(position_key)
        self.positions.pop(position_key, None)
        return [f"tx-remove-{position_key[:4]}"]

    def build_close_position(self, pool_address, owner, position_key, priority_micro_lamports=0):
        self.close_calls.append(position_key)
        self.positions.pop(position_key, None)
        return f"tx-close-{position_key[:4]}"

    def quote_create_position(self, pool_address, min_bin_id, max_bin_id, strategy):
        return self.quote


class FakeSwapper:
    def __init__(self, rate: float = 1.0, error=None):
        self.rate = rate
        self.error = error
        self.calls = []

    def swap(self, input_mint, output_mint, amount):
        self.calls.append((input_mint, output_mint, amount))
        if self.error is not None:
            raise self.error
        return SwapResult(
            signature=f"swap-{len(self.calls)}", input_mint=input_mint, output_mint=output_mint,
            in_amount=amount, out_amount=int(amount * self.rate), price_impact_pct=0.01,
        )


class FakeOracle:
    def __init__(self, prices=None):
        self.prices = dict(prices if prices is not None else {SOL_MINT: 100.0, TOKEN_MINT: 1.0})

    def price(self, mint):
        return self.prices.get(mint)

    def require_price(self, mint, context="price"):
        value = self.prices.get(mint)
        if value is None:
            raise PriceUnavailableError(f"Price unavailable for {mint}", context=context)
        return value


class FakeBundleExecutor:
    def __init__(self, error=None):
        self.error = error
        self.bundles = []

    def send_with_confirmation(self, transactions, priority="medium"):
        self.bundles.append(list(transactions))
        if self.error is not None:
            raise self.error
        sigs = [f"bundle-sig-{i}" for i in range(len(transactions))]
        return BundleResult(bundle_id="bundle-1", signatures=["tip-sig"] + sigs, slot=1,
                            tip_lamports=10_000, transaction_count=len(transactions),
                            payload_signatures=sigs)


@pytest.fixture
def chain():
    return FakeChain(tokens={TOKEN_MINT: 70_000_000})


@pytest.fixture
def dlmm():
    return FakeDLMM()


@pytest.fixture
def oracle():
    return FakeOracle()


@pytest.fixture
def swapper():
    return FakeSwapper()


@pytest.fixture
def config():
    return EngineConfig(pool_address=POOL_ADDRESS, use_jito_bundles=False)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def engine(config, dlmm, chain, swapper, oracle, sleeps):
    return LiquidityEngine(config, dlmm, chain, swapper, oracle,
                           tracker=PnLTracker(), sleep=sleeps.append)
