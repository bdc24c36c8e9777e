#!/usr/bin/env python3
"""
Input validation for engine entry points.

Every check raises ValidationError (never retried) so bad input fails before
anything touches the chain.
"""
import logging
import math
from typing import Any, Dict, List, Optional, Tuple

from solders.pubkey import Pubkey

from binpilot.config import LAMPORTS_PER_SOL, MAX_BIN_SPAN
from binpilot.errors import ErrorCode, ValidationError
from binpilot.services.meteora_dlmm.strategy_calculator import (
    Direction, StrategyType, SwaplessOptions, TokenRatio,
)

logger = logging.getLogger("binpilot.validation")


def is_valid_pubkey(address: Any) -> bool:
    if isinstance(address, Pubkey):
        return True
    if not isinstance(address, str) or not address:
        return False
    try:
        Pubkey.from_string(address)
        return True
    except ValueError:
        return False


def validate_pubkey(address: Any, name: str = "address") -> str:
    if not is_valid_pubkey(address):
        raise ValidationError(f"Invalid {name}: {address!r}", code=ErrorCode.INVALID_PARAMS)
    return str(address)


def validate_pool_address(address: Any) -> str:
    if not is_valid_pubkey(address):
        raise ValidationError(f"Invalid pool address: {address!r}", code=ErrorCode.INVALID_POOL)
    return str(address)


def validate_budget(budget_sol: Any) -> Optional[float]:
    """None means no ceiling; otherwise a finite positive SOL amount."""
    if budget_sol is None:
        return None
    if isinstance(budget_sol, bool):
        raise ValidationError(f"Invalid budget: {budget_sol!r}", code=ErrorCode.INVALID_PARAMS)
    try:
        value = float(budget_sol)
    except (TypeError, ValueError):
        raise ValidationError(f"Invalid budget: {budget_sol!r}", code=ErrorCode.INVALID_PARAMS)
    if not math.isfinite(value) or value <= 0:
        raise ValidationError(f"Budget must be a positive SOL amount (got {budget_sol!r})",
                              code=ErrorCode.INVALID_PARAMS)
    if value * LAMPORTS_PER_SOL < 1:
        raise ValidationError("Budget is below one lamport", code=ErrorCode.INVALID_PARAMS)
    return value


def parse_ratio(ratio: Any) -> Optional[TokenRatio]:
    """
    Accepts None, a TokenRatio, a {'sol', 'token'} mapping, a (sol, token)
    pair, or a single SOL share between 0 and 1.
    """
    if ratio is None:
        return None
    if isinstance(ratio, TokenRatio):
        return ratio.validate()
    try:
        if isinstance(ratio, dict):
            parsed = TokenRatio(sol=float(ratio['sol']), token=float(ratio['token']))
        elif isinstance(ratio, (tuple, list)) and len(ratio) == 2:
            parsed = TokenRatio(sol=float(ratio[0]), token=float(ratio[1]))
        elif isinstance(ratio, (int, float)) and not isinstance(ratio, bool):
            parsed = TokenRatio(sol=float(ratio), token=1.0 - float(ratio))
        else:
            raise ValidationError(f"Unsupported ratio value: {ratio!r}", code=ErrorCode.INVALID_PARAMS)
    except (KeyError, TypeError, ValueError):
        raise ValidationError(f"Invalid token ratio: {ratio!r}", code=ErrorCode.INVALID_PARAMS)
    return parsed.validate()


def validate_bin_span(span: Any) -> int:
    if isinstance(span, bool) or not isinstance(span, int) or span < 1 or span > MAX_BIN_SPAN:
        raise ValidationError(f"Bin span must be an integer between 1 and {MAX_BIN_SPAN} (got {span!r})",
                              code=ErrorCode.INVALID_PARAMS)
    return span


def parse_swapless(options: Any) -> Optional[SwaplessOptions]:
    if options is None or options is False:
        return None
    if options is True:
        return SwaplessOptions()
    if isinstance(options, SwaplessOptions):
        parsed = options
    elif isinstance(options, dict):
        parsed = SwaplessOptions(direction=Direction.from_name(options.get('direction')),
                                 bin_span=options.get('bin_span'))
    else:
        raise ValidationError(f"Invalid swapless options: {options!r}", code=ErrorCode.INVALID_PARAMS)
    if parsed.bin_span is not None:
        validate_bin_span(parsed.bin_span)
    return parsed


def validate_provided_balances(balances: Any) -> Optional[Tuple[int, int]]:
    if balances is None:
        return None
    try:
        sol, token = balances
        sol, token = int(sol), int(token)
    except (TypeError, ValueError):
        raise ValidationError(f"Provided balances must be (sol, token): {balances!r}",
                              code=ErrorCode.INVALID_PARAMS)
    if sol < 0 or token < 0:
        raise ValidationError("Provided balances must be non-negative", code=ErrorCode.INVALID_PARAMS)
    return sol, token


def validate_open_params(budget_sol=None, ratio=None, bin_span: int = 20, strategy="Spot",
                         swapless=None, provided_balances=None) -> Dict[str, Any]:
    """Validate and normalize every open parameter, reporting all problems at once."""
    errors: List[str] = []
    normalized: Dict[str, Any] = {}
    checks = (
        ('budget_sol', validate_budget, budget_sol),
        ('ratio', parse_ratio, ratio),
        ('bin_span', validate_bin_span, bin_span),
        ('strategy', StrategyType.from_name, strategy),
        ('swapless', parse_swapless, swapless),
        ('provided_balances', validate_provided_balances, provided_balances),
    )
    codes = set()
    for name, check, value in checks:
        try:
            normalized[name] = check(value)
        except ValidationError as e:
            errors.append(e.message)
            codes.add(e.code)

    if errors:
        code = codes.pop() if len(codes) == 1 else ErrorCode.VALIDATION_ERROR
        raise ValidationError("; ".join(errors), code=code, context="validate_open",
                              details={'errors': errors})
    return normalized
