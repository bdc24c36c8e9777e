"""Chain, swap, price and fee services used by the engine."""
from binpilot.services.chain import SolanaChain
from binpilot.services.outcome import EngineEvent, EventKind, OutcomeLog
from binpilot.services.prices import PriceOracle
from binpilot.services.priority_fee import PriorityFeeEstimator, PriorityLevel
from binpilot.services.retry import RetryPolicy, execute_with_retry
from binpilot.services.trading import JupiterSwapper

__all__ = [
    'SolanaChain',
    'EngineEvent',
    'EventKind',
    'OutcomeLog',
    'PriceOracle',
    'PriorityFeeEstimator',
    'PriorityLevel',
    'RetryPolicy',
    'execute_with_retry',
    'JupiterSwapper',
]
