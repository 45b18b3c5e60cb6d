"""Invariant checkers for the liquidity pool.

Each function returns True when the invariant holds, and `check_all()` returns
the list of violated invariant IDs (empty = all pass). The engine runs
`check_all()` on every post-state before committing it.
"""

from __future__ import annotations

from typing import Callable

from .fixed_point import ONE
from .types import POOL_ACCOUNT, RISK_PARAMETERS, LiquidityPoolStorage, Option, PerpetualState

_LIVE_STATES = (PerpetualState.NORMAL, PerpetualState.EMERGENCY)


def inv_insurance_total_nonneg(s: LiquidityPoolStorage) -> bool:
    return s.insurance_fund + s.donated_insurance_fund >= 0


def inv_donated_insurance_nonneg(s: LiquidityPoolStorage) -> bool:
    return s.donated_insurance_fund >= 0


def inv_insurance_fund_nonneg(s: LiquidityPoolStorage) -> bool:
    return s.insurance_fund >= 0


def inv_options_in_bounds(s: LiquidityPoolStorage) -> bool:
    for perp in s.perpetuals:
        for name in RISK_PARAMETERS:
            opt: Option = getattr(perp, name)
            if not (opt.min_value <= opt.value <= opt.max_value):
                return False
    return True


def inv_margin_rates_ordered(s: LiquidityPoolStorage) -> bool:
    return all(
        0 < p.maintenance_margin_rate <= p.initial_margin_rate <= ONE for p in s.perpetuals
    )


def inv_state_valid(s: LiquidityPoolStorage) -> bool:
    return all(p.state != PerpetualState.INVALID for p in s.perpetuals)


def inv_collateral_conservation(s: LiquidityPoolStorage) -> bool:
    for perp in s.perpetuals:
        if perp.state != PerpetualState.NORMAL:
            continue
        if sum(acc.cash for acc in perp.accounts.values()) != perp.total_collateral:
            return False
    return True


def inv_open_interest_matches_longs(s: LiquidityPoolStorage) -> bool:
    for perp in s.perpetuals:
        if perp.state not in _LIVE_STATES:
            continue
        longs = sum(acc.position for acc in perp.accounts.values() if acc.position > 0)
        if perp.open_interest != longs or perp.open_interest < 0:
            return False
    return True


def inv_positions_net_zero(s: LiquidityPoolStorage) -> bool:
    for perp in s.perpetuals:
        if perp.state not in _LIVE_STATES:
            continue
        if sum(acc.position for acc in perp.accounts.values()) != 0:
            return False
    return True


def inv_flat_entry_zeroed(s: LiquidityPoolStorage) -> bool:
    for perp in s.perpetuals:
        for acc in perp.accounts.values():
            if acc.position == 0 and (acc.entry_value != 0 or acc.entry_funding_penalty != 0):
                return False
    return True


def inv_active_accounts_match(s: LiquidityPoolStorage) -> bool:
    for perp in s.perpetuals:
        if POOL_ACCOUNT in perp.active_accounts:
            return False
        if perp.state != PerpetualState.NORMAL:
            continue
        for trader, acc in perp.accounts.items():
            if trader == POOL_ACCOUNT:
                continue
            if acc.is_empty() == (trader in perp.active_accounts):
                return False
        if any(trader not in perp.accounts for trader in perp.active_accounts):
            return False
    return True


def inv_funding_rate_bounded(s: LiquidityPoolStorage) -> bool:
    return all(
        abs(p.funding_rate) <= p.funding_rate_limit.value
        for p in s.perpetuals
        if p.state == PerpetualState.NORMAL
    )


def inv_redemption_rates_bounded(s: LiquidityPoolStorage) -> bool:
    return all(
        0 <= p.redemption_rate_with_position <= ONE
        and 0 <= p.redemption_rate_without_position <= ONE
        for p in s.perpetuals
    )


# ---------------------------------------------------------------------------
# Registry + check_all
# ---------------------------------------------------------------------------

INVARIANT_REGISTRY: dict[str, Callable[[LiquidityPoolStorage], bool]] = {
    "inv_insurance_total_nonneg": inv_insurance_total_nonneg,
    "inv_donated_insurance_nonneg": inv_donated_insurance_nonneg,
    "inv_insurance_fund_nonneg": inv_insurance_fund_nonneg,
    "inv_options_in_bounds": inv_options_in_bounds,
    "inv_margin_rates_ordered": inv_margin_rates_ordered,
    "inv_state_valid": inv_state_valid,
    "inv_collateral_conservation": inv_collateral_conservation,
    "inv_open_interest_matches_longs": inv_open_interest_matches_longs,
    "inv_positions_net_zero": inv_positions_net_zero,
    "inv_flat_entry_zeroed": inv_flat_entry_zeroed,
    "inv_active_accounts_match": inv_active_accounts_match,
    "inv_funding_rate_bounded": inv_funding_rate_bounded,
    "inv_redemption_rates_bounded": inv_redemption_rates_bounded,
}


def check_all(state: LiquidityPoolStorage) -> list[str]:
    """Return list of violated invariant IDs (empty = all pass)."""
    return [
        inv_id
        for inv_id, check_fn in INVARIANT_REGISTRY.items()
        if not check_fn(state)
    ]
