#!/usr/bin/env python3
"""
Engine error types.

Low-level failures (RPC, sidecar, aggregator, relay) are wrapped into an
EngineError with a stable code and an operation context before they cross a
service boundary. The retry controller only looks at the code.
"""

import logging
import re
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, Optional

logger = logging.getLogger("binpilot.errors")


class ErrorKind(Enum):
    VALIDATION = 'validation'
    INSUFFICIENT_FUNDS = 'insufficient_funds'
    VENUE_TRANSIENT = 'venue_transient'
    BUNDLE_FAILURE = 'bundle_failure'
    PRICE_UNAVAILABLE = 'price_unavailable'
    NOT_FOUND = 'not_found'


class ErrorCode:
    # Position
    POSITION_EXISTS = 'POSITION_EXISTS'
    POSITION_NOT_FOUND = 'POSITION_NOT_FOUND'
    POSITION_CREATION_FAILED = 'POSITION_CREATION_FAILED'

    # Balance
    INSUFFICIENT_SOL = 'INSUFFICIENT_SOL'
    INSUFFICIENT_FUNDS = 'INSUFFICIENT_FUNDS'

    # Swap
    SWAP_FAILED = 'SWAP_FAILED'
    SLIPPAGE_EXCEEDED = 'SLIPPAGE_EXCEEDED'
    PRICE_IMPACT_TOO_HIGH = 'PRICE_IMPACT_TOO_HIGH'
    PRICE_UNAVAILABLE = 'PRICE_UNAVAILABLE'

    # Fees
    FEE_CLAIM_FAILED = 'FEE_CLAIM_FAILED'

    # Network
    RPC_ERROR = 'RPC_ERROR'
    TRANSACTION_FAILED = 'TRANSACTION_FAILED'
    TIMEOUT = 'TIMEOUT'
    NETWORK_ERROR = 'NETWORK_ERROR'
    BUNDLE_FAILED = 'BUNDLE_FAILED'

    # Validation
    INVALID_PARAMS = 'INVALID_PARAMS'
    INVALID_POOL = 'INVALID_POOL'
    INVALID_STRATEGY = 'INVALID_STRATEGY'
    VALIDATION_ERROR = 'VALIDATION_ERROR'

    POOL_NOT_FOUND = 'POOL_NOT_FOUND'
    UNKNOWN_ERROR = 'UNKNOWN_ERROR'


CODE_KINDS: Dict[str, ErrorKind] = {
    ErrorCode.POSITION_EXISTS: ErrorKind.VALIDATION,
    ErrorCode.POSITION_NOT_FOUND: ErrorKind.NOT_FOUND,
    ErrorCode.POSITION_CREATION_FAILED: ErrorKind.VENUE_TRANSIENT,
    ErrorCode.INSUFFICIENT_SOL: ErrorKind.INSUFFICIENT_FUNDS,
    ErrorCode.INSUFFICIENT_FUNDS: ErrorKind.INSUFFICIENT_FUNDS,
    ErrorCode.SWAP_FAILED: ErrorKind.VENUE_TRANSIENT,
    ErrorCode.SLIPPAGE_EXCEEDED: ErrorKind.VENUE_TRANSIENT,
    ErrorCode.PRICE_IMPACT_TOO_HIGH: ErrorKind.VENUE_TRANSIENT,
    ErrorCode.PRICE_UNAVAILABLE: ErrorKind.PRICE_UNAVAILABLE,
    ErrorCode.FEE_CLAIM_FAILED: ErrorKind.VENUE_TRANSIENT,
    ErrorCode.RPC_ERROR: ErrorKind.VENUE_TRANSIENT,
    ErrorCode.TRANSACTION_FAILED: ErrorKind.VENUE_TRANSIENT,
    ErrorCode.TIMEOUT: ErrorKind.VENUE_TRANSIENT,
    ErrorCode.NETWORK_ERROR: ErrorKind.VENUE_TRANSIENT,
    ErrorCode.BUNDLE_FAILED: ErrorKind.BUNDLE_FAILURE,
    ErrorCode.INVALID_PARAMS: ErrorKind.VALIDATION,
    ErrorCode.INVALID_POOL: ErrorKind.VALIDATION,
    ErrorCode.INVALID_STRATEGY: ErrorKind.VALIDATION,
    ErrorCode.VALIDATION_ERROR: ErrorKind.VALIDATION,
    ErrorCode.POOL_NOT_FOUND: ErrorKind.NOT_FOUND,
    ErrorCode.UNKNOWN_ERROR: ErrorKind.VENUE_TRANSIENT,
}

NON_RETRYABLE_CODES = frozenset({
    ErrorCode.INVALID_PARAMS,
    ErrorCode.INVALID_POOL,
    ErrorCode.INVALID_STRATEGY,
    ErrorCode.VALIDATION_ERROR,
    ErrorCode.POSITION_EXISTS,
    ErrorCode.POSITION_NOT_FOUND,
    ErrorCode.POOL_NOT_FOUND,
    ErrorCode.PRICE_UNAVAILABLE,
})

# Program error surfaced when a bin moved past the allowed slippage
BIN_SLIPPAGE_PATTERN = re.compile(r"ExceededBinSlippageTolerance|\b6004\b|0x1774")
INSUFFICIENT_FUNDS_PATTERN = re.compile(r"insufficient (funds|lamports)", re.IGNORECASE)
TRANSFER_CHECKED_PATTERN = re.compile(r"TransferChecked", re.IGNORECASE)


class EngineError(Exception):
    """Error raised across service boundaries, tagged with a stable code."""

    default_code = ErrorCode.UNKNOWN_ERROR

    def __init__(self, message: str, code: Optional[str] = None,
                 context: Optional[str] = None, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code
        self.context = context
        self.details = details or {}
        self.timestamp = datetime.now(timezone.utc).isoformat()

    @property
    def kind(self) -> ErrorKind:
        return CODE_KINDS.get(self.code, ErrorKind.VENUE_TRANSIENT)

    @property
    def retryable(self) -> bool:
        return self.code not in NON_RETRYABLE_CODES

    def __str__(self) -> str:
        if self.context:
            return f"[{self.context}] {self.message}"
        return self.message

    def to_dict(self) -> Dict[str, Any]:
        return {
            'message': self.message,
            'code': self.code,
            'kind': self.kind.value,
            'context': self.context,
            'timestamp': self.timestamp,
        }


class ValidationError(EngineError):
    default_code = ErrorCode.VALIDATION_ERROR


class InsufficientFundsError(EngineError):
    default_code = ErrorCode.INSUFFICIENT_FUNDS


class PriceUnavailableError(EngineError):
    default_code = ErrorCode.PRICE_UNAVAILABLE


class BundleError(EngineError):
    default_code = ErrorCode.BUNDLE_FAILED


def extract_error_message(error: Any) -> str:
    """Pull a readable message out of exceptions, RPC error dicts or program logs."""
    if error is None:
        return 'Unknown error'
    if isinstance(error, str):
        return error
    if isinstance(error, dict):
        if error.get('message'):
            return str(error['message'])
        if error.get('error') is not None:
            return extract_error_message(error['error'])
        logs = error.get('logs')
        if isinstance(logs, list):
            for line in logs:
                if 'Error' in line or 'failed' in line:
                    return line
        return str(error)
    if isinstance(error, BaseException):
        message = str(error)
        logs = getattr(error, 'logs', None)
        if isinstance(logs, list) and logs:
            message = f"{message} | {' '.join(logs)}"
        return message or error.__class__.__name__
    return str(error)


def classify_error(message: str) -> str:
    """Map a raw error message to a stable code."""
    text = message.lower()
    if 'insufficient' in text:
        if 'sol' in text or 'lamports' in text:
            return ErrorCode.INSUFFICIENT_SOL
        return ErrorCode.INSUFFICIENT_FUNDS
    if BIN_SLIPPAGE_PATTERN.search(message) or 'slippage' in text:
        return ErrorCode.SLIPPAGE_EXCEEDED
    if 'position' in text:
        if 'not found' in text:
            return ErrorCode.POSITION_NOT_FOUND
        if 'exists' in text:
            return ErrorCode.POSITION_EXISTS
        return ErrorCode.POSITION_CREATION_FAILED
    if 'swap' in text:
        return ErrorCode.SWAP_FAILED
    if 'timeout' in text or 'timed out' in text or 'blockhash not found' in text:
        return ErrorCode.TIMEOUT
    if 'invalid' in text:
        return ErrorCode.INVALID_PARAMS
    return ErrorCode.RPC_ERROR


def wrap_error(error: BaseException, context: str, **details) -> EngineError:
    """Wrap an exception with an operation context and a stable code."""
    if isinstance(error, EngineError):
        if not error.context:
            error.context = context
        error.details.update(details)
        return error
    message = extract_error_message(error)
    code = classify_error(message)
    logger.error(f"[{context}] {message}")
    wrapped = EngineError(message, code=code, context=context, details=details)
    wrapped.__cause__ = error
    return wrapped


def is_retryable(error: BaseException) -> bool:
    """Whether the retry controller may attempt the operation again."""
    if isinstance(error, EngineError):
        return error.retryable
    return classify_error(extract_error_message(error)) not in NON_RETRYABLE_CODES


def is_bin_slippage_error(error: BaseException) -> bool:
    return bool(BIN_SLIPPAGE_PATTERN.search(extract_error_message(error)))


def is_transfer_insufficient_funds(error: BaseException) -> bool:
    """An insufficient-funds failure traced to a token transfer instruction."""
    message = extract_error_message(error)
    return bool(TRANSFER_CHECKED_PATTERN.search(message) and INSUFFICIENT_FUNDS_PATTERN.search(message))


def format_error_for_user(error: BaseException) -> str:
    if isinstance(error, EngineError):
        messages = {
            ErrorCode.INSUFFICIENT_SOL: 'Insufficient SOL balance. Add more SOL to the wallet.',
            ErrorCode.INSUFFICIENT_FUNDS: 'Insufficient token balance for this operation.',
            ErrorCode.POSITION_EXISTS: 'A position already exists for this pool.',
            ErrorCode.POSITION_NOT_FOUND: 'Position not found. It may have been closed.',
            ErrorCode.SLIPPAGE_EXCEEDED: 'Transaction failed due to slippage. Try a higher tolerance.',
            ErrorCode.SWAP_FAILED: 'Token swap failed. Please try again.',
            ErrorCode.PRICE_UNAVAILABLE: 'Price feed unavailable. Operation aborted.',
            ErrorCode.RPC_ERROR: 'Network error. Check the RPC connection and try again.',
        }
        return messages.get(error.code, error.message)
    return extract_error_message(error)
