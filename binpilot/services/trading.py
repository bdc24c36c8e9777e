#!/usr/bin/env python3
"""Swap execution via Jupiter Aggregator."""
import base64
import logging
import time
from dataclasses import dataclass
from typing import Callable

import requests
from solders.message import to_bytes_versioned
from solders.transaction import VersionedTransaction

from binpilot.config import (
    DEFAULT_MAX_PRICE_IMPACT, DEFAULT_PRIORITY_FEE_MICRO_LAMPORTS, DEFAULT_SLIPPAGE_BPS,
    JUPITER_QUOTE_API, JUPITER_SWAP_API,
)
from binpilot.errors import EngineError, ErrorCode
from binpilot.services.retry import RetryPolicy, execute_with_retry

logger = logging.getLogger("binpilot.trading")


@dataclass
class SwapResult:
    signature: str
    input_mint: str
    output_mint: str
    in_amount: int
    out_amount: int
    price_impact_pct: float
    attempts: int = 1


class JupiterSwapper:
    """
    quote(input, output, amount) -> order; swap(...) -> confirmed signature.

    Every attempt asks for a fresh quote; a stale quote is never re-sent.
    """

    def __init__(self, chain, api_key: str = "", session=None,
                 slippage_bps: int = DEFAULT_SLIPPAGE_BPS,
                 max_price_impact: float = DEFAULT_MAX_PRICE_IMPACT,
                 priority_micro_lamports: int = DEFAULT_PRIORITY_FEE_MICRO_LAMPORTS,
                 max_attempts: int = 3, retry_delay: float = 1.0,
                 sleep: Callable[[float], None] = time.sleep):
        self.chain = chain
        self.api_key = api_key
        self.session = session or requests
        self.slippage_bps = slippage_bps
        self.max_price_impact = max_price_impact
        self.priority_micro_lamports = priority_micro_lamports
        self.policy = RetryPolicy(max_attempts=max_attempts, delay_seconds=retry_delay)
        self.sleep = sleep

    @property
    def _headers(self) -> dict:
        return {'x-api-key': self.api_key} if self.api_key else {}

    def get_quote(self, input_mint: str, output_mint: str, amount: int) -> dict:
        """Quote `amount` raw units; rejects quotes above the price impact limit."""
        params = {
            "inputMint": input_mint,
            "outputMint": output_mint,
            "amount": int(amount),
            "slippageBps": self.slippage_bps,
        }
        try:
            resp = self.session.get(JUPITER_QUOTE_API, params=params, headers=self._headers, timeout=10)
            quote = resp.json()
        except (requests.RequestException, ValueError) as e:
            raise EngineError(f"Quote request failed: {e}", code=ErrorCode.NETWORK_ERROR, context="quote") from e
        if "error" in quote:
            raise EngineError(f"Quote: {quote['error']}", code=ErrorCode.SWAP_FAILED, context="quote")

        impact = abs(float(quote.get("priceImpactPct") or 0)) * 100
        if impact > self.max_price_impact:
            raise EngineError(
                f"Price impact {impact:.4f}% above {self.max_price_impact}%",
                code=ErrorCode.PRICE_IMPACT_TOO_HIGH, context="quote"
            )
        return quote

    def _execute_quote(self, quote: dict) -> str:
        payload = {
            "quoteResponse": quote,
            "userPublicKey": str(self.chain.wallet),
            "wrapAndUnwrapSol": True,
            "computeUnitPriceMicroLamports": self.priority_micro_lamports,
        }
        try:
            swap_res = self.session.post(JUPITER_SWAP_API, json=payload, headers=self._headers, timeout=10).json()
        except (requests.RequestException, ValueError) as e:
            raise EngineError(f"Swap request failed: {e}", code=ErrorCode.NETWORK_ERROR, context="swap") from e
        if "error" in swap_res:
            raise EngineError(f"Swap: {swap_res['error']}", code=ErrorCode.SWAP_FAILED, context="swap")

        txn = VersionedTransaction.from_bytes(base64.b64decode(swap_res['swapTransaction']))
        signature = self.chain.payer.sign_message(to_bytes_versioned(txn.message))
        signed_txn = VersionedTransaction.populate(txn.message, [signature])
        return self.chain.send_signed(signed_txn)

    def swap(self, input_mint: str, output_mint: str, amount: int) -> SwapResult:
        """Quote and execute; retries fetch a new quote each time."""
        if amount <= 0:
            raise EngineError("Swap amount must be positive", code=ErrorCode.INVALID_PARAMS, context="swap")

        def attempt(ctx):
            quote = self.get_quote(input_mint, output_mint, amount)
            sig = self._execute_quote(quote)
            return SwapResult(
                signature=sig,
                input_mint=input_mint,
                output_mint=output_mint,
                in_amount=int(quote.get("inAmount", amount)),
                out_amount=int(quote.get("outAmount", 0)),
                price_impact_pct=abs(float(quote.get("priceImpactPct") or 0)) * 100,
                attempts=ctx.attempt + 1,
            )

        result = execute_with_retry(attempt, self.policy, context="swap", sleep=self.sleep)
        logger.info(
            f"[Swap] {result.in_amount} {input_mint[:6]}.. → {result.out_amount} "
            f"{output_mint[:6]}.. ({result.signature})"
        )
        return result
