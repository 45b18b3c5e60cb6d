"""Per-(market, account) margin ledger.

Functions here read and mutate `MarginAccount` records inside a `Perpetual`.
They never touch pool-level cash; `total_collateral` is adjusted by callers.

Funding owed by an account is

    position * unit_accumulative_funding
        + penalty(position, entry_value) - entry_funding_penalty

where `penalty` is the mean-reversion term

    mean_revert_factor * | |entry_value| - |position| * mean_rate | * accumulator

using the long accumulator for longs and the negated short accumulator for
shorts. The pool's own account carries no penalty.
"""

from __future__ import annotations

import logging
from typing import Optional, Tuple

from .fixed_point import ONE, Round, wfrac, wmul
from .types import POOL_ACCOUNT, PerpetualState, MarginAccount, Perpetual

logger = logging.getLogger(__name__)


def has_the_same_sign(x: int, y: int) -> bool:
    if x == 0 or y == 0:
        return True
    return (x > 0) == (y > 0)


def split_amount(position: int, amount: int) -> Tuple[int, int]:
    """Split `amount` into (close, open) legs relative to `position`."""
    if position == 0 or has_the_same_sign(position, amount):
        return 0, amount
    if abs(position) >= abs(amount):
        return amount, 0
    return -position, position + amount


def is_open(position: int, amount: int) -> bool:
    """True if applying `amount` to `position` opens any new exposure."""
    if amount == 0:
        return False
    if has_the_same_sign(position, amount):
        return True
    return abs(position) < abs(amount)


def funding_penalty(perp: Perpetual, trader: str, position: int, entry_value: int) -> int:
    if trader == POOL_ACCOUNT or position == 0:
        return 0
    factor = perp.mean_revert_factor.value
    if factor == 0:
        return 0
    mean_value = wmul(abs(position), perp.mean_rate.value)
    deviation = abs(abs(entry_value) - mean_value)
    if position > 0:
        return wmul(wmul(factor, deviation), perp.unit_accumulative_long_funding)
    return -wmul(wmul(factor, deviation), perp.unit_accumulative_short_funding)


def get_funding(perp: Perpetual, trader: str) -> int:
    acc = perp.peek_account(trader)
    if acc.position == 0 and acc.entry_funding_penalty == 0:
        return 0
    return (
        wmul(acc.position, perp.unit_accumulative_funding)
        + funding_penalty(perp, trader, acc.position, acc.entry_value)
        - acc.entry_funding_penalty
    )


def get_position(perp: Perpetual, trader: str) -> int:
    return perp.peek_account(trader).position


def get_cash(perp: Perpetual, trader: str) -> int:
    return perp.peek_account(trader).cash


def get_available_cash(perp: Perpetual, trader: str) -> int:
    return get_cash(perp, trader) - get_funding(perp, trader)


def get_margin(perp: Perpetual, trader: str, price: int) -> int:
    return wmul(get_position(perp, trader), price) + get_available_cash(perp, trader)


def get_initial_margin(perp: Perpetual, trader: str, price: int) -> int:
    return abs(wmul(wmul(get_position(perp, trader), price), perp.initial_margin_rate))


def get_maintenance_margin(perp: Perpetual, trader: str, price: int) -> int:
    return abs(wmul(wmul(get_position(perp, trader), price), perp.maintenance_margin_rate))


def _keeper_reserve(perp: Perpetual, trader: str) -> int:
    return perp.keeper_gas_reward if get_position(perp, trader) != 0 else 0


def get_available_margin(perp: Perpetual, trader: str, price: int) -> int:
    """Margin above the initial requirement (and the keeper reserve)."""
    threshold = 0
    if get_position(perp, trader) != 0:
        threshold = get_initial_margin(perp, trader, price) + perp.keeper_gas_reward
    return get_margin(perp, trader, price) - threshold


def is_initial_margin_safe(perp: Perpetual, trader: str, price: int) -> bool:
    return get_available_margin(perp, trader, price) >= 0


def is_maintenance_margin_safe(perp: Perpetual, trader: str, price: int) -> bool:
    threshold = 0
    if get_position(perp, trader) != 0:
        threshold = get_maintenance_margin(perp, trader, price) + perp.keeper_gas_reward
    return get_margin(perp, trader, price) >= threshold


def is_margin_safe(perp: Perpetual, trader: str, price: int) -> bool:
    return get_margin(perp, trader, price) >= _keeper_reserve(perp, trader)


def is_empty_account(perp: Perpetual, trader: str) -> bool:
    return perp.peek_account(trader).is_empty()


def get_settleable_margin(perp: Perpetual, trader: str, price: int) -> int:
    """Margin paid out on settlement, scaled by the bucket's redemption rate."""
    margin = get_margin(perp, trader, price)
    if margin <= 0:
        return 0
    if get_position(perp, trader) != 0:
        rate = perp.redemption_rate_with_position
    else:
        rate = perp.redemption_rate_without_position
    return wmul(margin, rate, Round.FLOOR)


def _sync_active(perp: Perpetual, trader: str) -> None:
    if trader == POOL_ACCOUNT or perp.state != PerpetualState.NORMAL:
        return
    if perp.peek_account(trader).is_empty():
        perp.active_accounts.remove(trader)
    else:
        perp.active_accounts.add(trader)


def update_cash(perp: Perpetual, trader: str, delta_cash: int) -> None:
    if delta_cash == 0:
        return
    acc = perp.account(trader)
    acc.cash += delta_cash
    _sync_active(perp, trader)


def update_margin(
    perp: Perpetual,
    trader: str,
    delta_position: int,
    delta_cash: int,
    *,
    counterparty: Optional[str] = POOL_ACCOUNT,
) -> int:
    """Apply a position/cash change and return the change in open interest.

    Available cash moves by exactly `delta_cash` (less any realized penalty).
    The realized mean-reversion penalty of the closed part is credited to
    `counterparty` so market cash is conserved.
    """
    acc = perp.account(trader)
    old_position = acc.position
    acc.cash += delta_cash + wmul(delta_position, perp.unit_accumulative_funding)

    close, open_ = split_amount(old_position, delta_position)
    if close != 0:
        _close_entry(perp, trader, acc, close, counterparty)
    if open_ != 0:
        before = funding_penalty(perp, trader, acc.position, acc.entry_value)
        acc.position += open_
        acc.entry_value += wfrac(delta_cash, open_, delta_position)
        after = funding_penalty(perp, trader, acc.position, acc.entry_value)
        acc.entry_funding_penalty += after - before

    if acc.position == 0:
        acc.entry_value = 0
        acc.entry_funding_penalty = 0

    delta_oi = 0
    if old_position > 0:
        delta_oi -= old_position
    if acc.position > 0:
        delta_oi += acc.position
    perp.open_interest += delta_oi
    _sync_active(perp, trader)
    return delta_oi


def _close_entry(
    perp: Perpetual,
    trader: str,
    acc: MarginAccount,
    close: int,
    counterparty: Optional[str],
) -> None:
    # `closed` carries the sign of the position being reduced.
    closed = -close
    old_position = acc.position
    entry_closed = wfrac(acc.entry_value, closed, old_position)
    snapshot_closed = wfrac(acc.entry_funding_penalty, closed, old_position)
    realized = funding_penalty(perp, trader, closed, entry_closed) - snapshot_closed

    acc.position = old_position + close
    acc.entry_value -= entry_closed
    acc.entry_funding_penalty -= snapshot_closed
    if realized != 0:
        acc.cash -= realized
        if counterparty is not None and counterparty != trader:
            update_cash(perp, counterparty, realized)
        logger.debug(
            "realized funding penalty perpetual=%s trader=%s amount=%s", perp.id, trader, realized
        )


def reset_account(perp: Perpetual, trader: str) -> None:
    acc = perp.account(trader)
    acc.cash = 0
    acc.position = 0
    acc.entry_value = 0
    acc.entry_funding_penalty = 0
    perp.active_accounts.remove(trader)


def set_target_leverage(perp: Perpetual, trader: str, target_leverage: int) -> None:
    perp.account(trader).target_leverage = target_leverage


def get_target_leverage(perp: Perpetual, trader: str) -> int:
    """Account preference, falling back to the market default."""
    leverage = perp.peek_account(trader).target_leverage
    if leverage == 0:
        leverage = perp.default_target_leverage.value
    return leverage if leverage > 0 else ONE
