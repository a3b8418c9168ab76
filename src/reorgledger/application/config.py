from __future__ import annotations
from dataclasses import dataclass

from ..domain.value_types import Key, SinkStrategy, ZERO_ADDRESS

@dataclass(slots=True, frozen=True)
class EngineConfig:
    window_capacity: int = 64          # >= max reorg depth expected on the chain
    null_key: Key = ZERO_ADDRESS       # mint/burn counterparty, never tracked
    sink_table: str = "balances"
    sink_strategy: SinkStrategy = "auto"
    prune_finalized: bool = True

    def __post_init__(self) -> None:
        if self.window_capacity < 1:
            raise ValueError(f"window_capacity must be >= 1, got {self.window_capacity}")
        if self.sink_strategy not in ("auto", "range_delete", "compensate"):
            raise ValueError(f"unknown sink strategy {self.sink_strategy!r}")
