#!/usr/bin/env python3
"""
Operation outcome log.

Every engine operation returns the events it produced (signatures sent,
amounts reserved, swaps, state transitions, fallbacks). A listener can be
attached to stream events as they happen; otherwise they are read in batch
from the returned result.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

logger = logging.getLogger("binpilot.outcome")


class EventKind(Enum):
    TRANSACTION = 'transaction'
    RESERVE = 'reserve'
    SWAP = 'swap'
    STATE = 'state'
    FALLBACK = 'fallback'
    NOTE = 'note'


@dataclass
class EngineEvent:
    kind: EventKind
    message: str
    data: Dict[str, Any] = field(default_factory=dict)
    timestamp: float = field(default_factory=time.time)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'kind': self.kind.value,
            'message': self.message,
            'data': dict(self.data),
            'timestamp': self.timestamp,
        }


class OutcomeLog:
    """Ordered list of events for one operation."""

    def __init__(self, listener: Optional[Callable[[EngineEvent], None]] = None):
        self.events: List[EngineEvent] = []
        self.listener = listener

    def record(self, kind: EventKind, message: str, **data) -> EngineEvent:
        event = EngineEvent(kind=kind, message=message, data=data)
        self.events.append(event)
        if self.listener:
            self.listener(event)
        return event

    def transaction(self, signature: str, label: str, **data) -> EngineEvent:
        logger.info(f"[Tx] {label}: {signature}")
        return self.record(EventKind.TRANSACTION, label, signature=signature, **data)

    def reserve(self, amount: int, reason: str, side: str) -> EngineEvent:
        return self.record(EventKind.RESERVE, reason, amount=int(amount), reason=reason, side=side)

    def state(self, state: str, **data) -> EngineEvent:
        return self.record(EventKind.STATE, state, **data)

    def note(self, message: str, **data) -> EngineEvent:
        return self.record(EventKind.NOTE, message, **data)

    def signatures(self) -> List[str]:
        return [e.data['signature'] for e in self.events if e.kind is EventKind.TRANSACTION]

    def reserves(self) -> List[EngineEvent]:
        return [e for e in self.events if e.kind is EventKind.RESERVE]

    def reserved_total(self, side: Optional[str] = None) -> int:
        return sum(
            e.data['amount'] for e in self.reserves()
            if side is None or e.data.get('side') == side
        )

    def states(self) -> List[str]:
        return [e.message for e in self.events if e.kind is EventKind.STATE]

    def of_kind(self, kind: EventKind) -> List[EngineEvent]:
        return [e for e in self.events if e.kind is kind]

    def to_list(self) -> List[Dict[str, Any]]:
        return [e.to_dict() for e in self.events]

    def __len__(self) -> int:
        return len(self.events)
