#!/usr/bin/env python3
"""
Solana RPC gateway.

Balance and rent reads, signing of sidecar-built
transactions, submission with confirmation, and the wrapped-SOL unwrap that
leaves the wallet in a clean state after closes and failures.
"""

import base64
import logging
import time
from typing import Callable, Optional, Sequence

from solana.rpc.api import Client
from solana.rpc.commitment import Confirmed
from solana.rpc.core import RPCException
from solana.rpc.types import TxOpts
from solders.hash import Hash as SoldersHash
from solders.keypair import Keypair
from solders.message import MessageV0
from solders.pubkey import Pubkey
from solders.signature import Signature
from solders.transaction import VersionedTransaction
from solders.transaction_status import TransactionConfirmationStatus
from spl.token.constants import TOKEN_PROGRAM_ID
from spl.token.instructions import CloseAccountParams, close_account, get_associated_token_address

from binpilot.config import SOL_MINT, TOKEN_ACCOUNT_SIZE
from binpilot.errors import EngineError, ErrorCode
from binpilot.services.blockhash_cache import BlockhashCache
from binpilot.services.priority_fee import PriorityFeeEstimator, PriorityLevel, compute_budget_instructions

logger = logging.getLogger("binpilot.chain")

_CONFIRMED_STATES = (TransactionConfirmationStatus.Confirmed, TransactionConfirmationStatus.Finalized)


def _is_missing_account(error: Exception) -> bool:
    return 'could not find account' in str(error).lower()


class SolanaChain:
    """Wallet-scoped access to the chain."""

    def __init__(self, client: Client, payer: Keypair,
                 blockhash_cache: Optional[BlockhashCache] = None,
                 fee_estimator: Optional[PriorityFeeEstimator] = None,
                 confirm_timeout: float = 45.0, poll_interval: float = 0.5,
                 sleep: Callable[[float], None] = time.sleep):
        self.client = client
        self.payer = payer
        self.blockhash_cache = blockhash_cache
        self.fee_estimator = fee_estimator
        self.confirm_timeout = confirm_timeout
        self.poll_interval = poll_interval
        self.sleep = sleep

    @property
    def wallet(self) -> Pubkey:
        return self.payer.pubkey()

    # ── Reads ───────────────────────────────────────────────────────────

    def get_native_balance(self) -> int:
        return self.client.get_balance(self.wallet, commitment=Confirmed).value

    def get_token_balance(self, mint: str) -> int:
        """Raw token amount held in the wallet's ATA (0 when the ATA is missing).

        For the SOL mint this is native lamports plus any wrapped SOL.
        """
        mint_pk = Pubkey.from_string(mint)
        ata = get_associated_token_address(self.wallet, mint_pk)
        try:
            held = int(self.client.get_token_account_balance(ata, commitment=Confirmed).value.amount)
        except RPCException as e:
            if not _is_missing_account(e):
                raise
            held = 0
        if mint == SOL_MINT:
            return self.get_native_balance() + held
        return held

    def get_rent_exemption(self, size: int = TOKEN_ACCOUNT_SIZE) -> int:
        return self.client.get_minimum_balance_for_rent_exemption(size).value

    # ── Signing & submission ────────────────────────────────────────────

    def sign_transaction(self, tx_b64: str, extra_signers: Sequence[Keypair] = ()) -> VersionedTransaction:
        """Sign a base64 unsigned versioned transaction with the wallet plus extra signers.

        Extra signers the message does not require are left out.
        """
        unsigned = VersionedTransaction.from_bytes(base64.b64decode(tx_b64))
        message = unsigned.message
        required = set(message.account_keys[:message.header.num_required_signatures])
        signers = [self.payer] + [
            kp for kp in extra_signers
            if kp.pubkey() in required and kp.pubkey() != self.wallet
        ]
        return VersionedTransaction(message, signers)

    def send_transaction(self, tx_b64: str, extra_signers: Sequence[Keypair] = (),
                         skip_preflight: bool = False) -> str:
        """Sign, send and wait for confirmation. Returns the signature string."""
        signed = self.sign_transaction(tx_b64, extra_signers)
        return self.send_signed(signed, skip_preflight=skip_preflight)

    def send_signed(self, signed: VersionedTransaction, skip_preflight: bool = False) -> str:
        try:
            send_res = self.client.send_raw_transaction(
                bytes(signed),
                opts=TxOpts(skip_preflight=skip_preflight, preflight_commitment="confirmed")
            )
        except RPCException as e:
            if self.blockhash_cache and 'blockhash not found' in str(e).lower():
                self.blockhash_cache.invalidate()
            raise
        sig = str(send_res.value)
        self.confirm_signature(sig)
        return sig

    def confirm_signature(self, signature: str) -> None:
        """Poll signature status until confirmed, failed or timed out."""
        sig = Signature.from_string(signature)
        deadline = time.time() + self.confirm_timeout
        search_history = False
        while time.time() <= deadline:
            statuses = self.client.get_signature_statuses([sig], search_transaction_history=search_history).value
            status = statuses[0] if statuses else None
            if status is not None:
                if status.err is not None:
                    raise EngineError(
                        f"Transaction {signature} failed: {status.err}",
                        code=ErrorCode.TRANSACTION_FAILED, context="confirm"
                    )
                if status.confirmation_status in _CONFIRMED_STATES:
                    return
            else:
                search_history = True
            self.sleep(self.poll_interval)
        raise EngineError(
            f"Transaction {signature} not confirmed within {self.confirm_timeout:.0f}s",
            code=ErrorCode.TIMEOUT, context="confirm"
        )

    def latest_blockhash(self) -> SoldersHash:
        if self.blockhash_cache:
            blockhash, _ = self.blockhash_cache.get_fresh_blockhash()
            return SoldersHash.from_string(blockhash)
        return self.client.get_latest_blockhash(commitment=Confirmed).value.blockhash

    # ── Wallet hygiene ──────────────────────────────────────────────────

    def unwrap_wsol(self, priority: PriorityLevel = PriorityLevel.MEDIUM) -> Optional[str]:
        """Close the wrapped-SOL ATA back into native SOL if it holds anything."""
        owner = self.wallet
        ata = get_associated_token_address(owner, Pubkey.from_string(SOL_MINT))
        try:
            amount = int(self.client.get_token_account_balance(ata, commitment=Confirmed).value.amount)
        except RPCException as e:
            if _is_missing_account(e):
                return None
            raise
        if amount <= 0:
            return None

        micro_lamports = self.fee_estimator.estimate(priority) if self.fee_estimator else 0
        ixs = compute_budget_instructions(micro_lamports) if micro_lamports else []
        ixs.append(close_account(CloseAccountParams(
            program_id=TOKEN_PROGRAM_ID,
            account=ata,
            dest=owner,
            owner=owner,
        )))
        msg = MessageV0.try_compile(
            payer=owner,
            instructions=ixs,
            address_lookup_table_accounts=[],
            recent_blockhash=self.latest_blockhash(),
        )
        sig = self.send_signed(VersionedTransaction(msg, [self.payer]))
        logger.info(f"WSOL unwrapped: {amount} lamports ({sig})")
        return sig
