#!/usr/bin/env python3
"""binpilot: position lifecycle engine for Meteora DLMM pools."""

from .config import EngineConfig
from .engine import LiquidityEngine, OpenResult
from .errors import EngineError, ErrorCode, ValidationError
from .extensions import configure_logging, create_engine

__version__ = "0.1.0"

__all__ = [
    'EngineConfig',
    'LiquidityEngine',
    'OpenResult',
    'EngineError',
    'ErrorCode',
    'ValidationError',
    'configure_logging',
    'create_engine',
]
