"""External interactions queued by core services.

Core services never call the collateral or share token directly. They record
what must happen here and the engine executes the queue after the state
transition has been computed and its invariants checked, in a fixed order:
collateral pulls, then share mint/burn, then collateral pushes.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import List, Tuple


@dataclass
class Interactions:
    transfers_in: List[Tuple[str, int]] = field(default_factory=list)
    transfers_out: List[Tuple[str, int]] = field(default_factory=list)
    mints: List[Tuple[str, int]] = field(default_factory=list)
    burns: List[Tuple[str, int]] = field(default_factory=list)

    def transfer_in(self, account: str, amount: int) -> None:
        if amount < 0:
            raise ValueError(f"transfer amount must be non-negative: {amount}")
        if amount:
            self.transfers_in.append((account, amount))

    def transfer_out(self, account: str, amount: int) -> None:
        if amount < 0:
            raise ValueError(f"transfer amount must be non-negative: {amount}")
        if amount:
            self.transfers_out.append((account, amount))

    def mint(self, account: str, amount: int) -> None:
        if amount > 0:
            self.mints.append((account, amount))

    def burn(self, account: str, amount: int) -> None:
        if amount > 0:
            self.burns.append((account, amount))

    def is_empty(self) -> bool:
        return not (self.transfers_in or self.transfers_out or self.mints or self.burns)
