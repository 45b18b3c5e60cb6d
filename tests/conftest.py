from __future__ import annotations

from typing import Any, Callable, Dict

import pytest

from perp_builders import ENGINE_CONFIG
from perpamm.core.fixed_point import Round
from perpamm.integration.config import EngineConfig
from perpamm.integration.engine import PerpetualEngine


@pytest.fixture
def make_engine() -> Callable[..., PerpetualEngine]:
    """Factory for an engine; wallets are pre-funded in fixed-point units."""

    def _make(
        *,
        config: Dict[str, Any] | None = None,
        wallets: Dict[str, int] | None = None,
        now: int = 1_000,
        run: bool = True,
    ) -> PerpetualEngine:
        engine = PerpetualEngine.from_config(EngineConfig.from_dict(config or ENGINE_CONFIG), now=now)
        for account, amount in (wallets or {}).items():
            engine.collateral.token.mint(account, engine.collateral.to_raw(amount, Round.CEIL))
        if run:
            engine.run_liquidity_pool("operator", now=now)
        return engine

    return _make
