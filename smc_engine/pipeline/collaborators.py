from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Protocol

import pandas as pd


@dataclass(frozen=True)
class TradeOutcome:
    """What the engine reports after an exit; day-keyed for the learning store."""

    phase: str
    direction: int
    hit_tp: bool
    pnl: float
    time: pd.Timestamp
    tags: tuple = ()
    meta: Dict[str, Any] = field(default_factory=dict, compare=False)

    @property
    def day(self) -> str:
        return self.time.strftime("%Y-%m-%d")


# ----------------------------- Component Protocols -----------------------------

class SignalJournal(Protocol):  # pragma: no cover (interface only)
    def append(self, records: List[Dict[str, Any]]) -> None:
        ...


class OutcomeRecorder(Protocol):  # pragma: no cover (interface only)
    def record_outcome(self, outcome: TradeOutcome) -> None:
        ...


class ExecutionGateway(Protocol):  # pragma: no cover (interface only)
    # returns a broker reference, or None when the order was not placed
    def submit(self, decision: Any) -> Optional[str]:
        ...
