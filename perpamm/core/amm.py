"""Virtual AMM pricing.

The pool's solvency measure is the pool margin `M`, the larger root of

    M^2 - (A + PV) * M + (sum_i beta_i * P_i^2 * p_i^2) / 2 = 0

where `A` is the pool's available cash (shared pool cash plus the pool
account's available cash in every NORMAL market), `PV` the pool's aggregate
position value at index prices, and `beta_i` each market's slippage factor.
Quotes move along

    deltaCash = -(p2 - p1) * P * (1 - beta * P * (p1 + p2) / (2M))

from the AMM's point of view. All sizes and cash deltas in this module are
signed from the AMM's side unless noted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, replace
from typing import Optional, Tuple

from . import margin, perpetual
from .errors import LiquidityError, SafetyViolation, ValidationError
from .fixed_point import ONE, Round, div, mul, sqrt, wdiv, wfrac, wmul
from .types import POOL_ACCOUNT, LiquidityPoolStorage, Perpetual, PerpetualState

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Context:
    """Pool exposure seen from one market (or from none, for liquidity ops).

    `position_value`, `square_value` and `position_margin` aggregate every
    NORMAL market except the one being priced; `square_value` keeps 36
    decimals so the quadratic can be solved without losing precision.
    """

    index_price: int = 0
    position: int = 0
    position_value: int = 0
    square_value: int = 0
    position_margin: int = 0
    available_cash: int = 0


def prepare_context(
    pool: LiquidityPoolStorage,
    perpetual_index: Optional[int] = None,
    *,
    check_maintenance: bool = True,
) -> Context:
    index_price = 0
    position = 0
    position_value = 0
    square_value = 0
    position_margin = 0
    available_cash = 0
    maintenance_margin = 0
    for i, perp in enumerate(pool.perpetuals):
        if perp.state != PerpetualState.NORMAL:
            continue
        price = perpetual.get_index_price(perp)
        pos = margin.get_position(perp, POOL_ACCOUNT)
        if i == perpetual_index:
            index_price = price
            position = pos
        else:
            value = wmul(price, pos, Round.FLOOR)
            position_value += value
            square_value += mul(
                wmul(wmul(pos, pos, Round.CEIL), wmul(price, price, Round.CEIL), Round.CEIL),
                perp.open_slippage_factor.value,
            )
            position_margin += wdiv(abs(value), perp.amm_max_leverage.value)
        available_cash += margin.get_available_cash(perp, POOL_ACCOUNT)
        maintenance_margin += margin.get_maintenance_margin(
            perp, POOL_ACCOUNT, perpetual.get_mark_price(perp)
        )
    available_cash += pool.pool_cash
    total_margin = available_cash + position_value + wmul(index_price, position)
    if check_maintenance and total_margin < maintenance_margin:
        raise SafetyViolation("AMM is maintenance margin unsafe")
    return Context(
        index_price=index_price,
        position=position,
        position_value=position_value,
        square_value=square_value,
        position_margin=position_margin,
        available_cash=available_cash,
    )


def is_amm_safe(context: Context, slippage_factor: int) -> bool:
    value = wmul(context.index_price, context.position)
    min_available_cash = mul(wmul(value, value), slippage_factor) + context.square_value
    min_available_cash = sqrt(mul(min_available_cash, 2)) - (context.position_value + value)
    return context.available_cash >= min_available_cash


def calculate_pool_margin_when_safe(context: Context, slippage_factor: int) -> int:
    value = wmul(context.index_price, context.position)
    total_margin = value + context.position_value + context.available_cash
    tmp = mul(wmul(value, value), slippage_factor) + context.square_value
    before_sqrt = mul(total_margin, total_margin) - mul(tmp, 2)
    if before_sqrt < 0:
        raise SafetyViolation("AMM is unsafe when calculating pool margin")
    return div(sqrt(before_sqrt) + total_margin, 2, Round.FLOOR)


def get_pool_margin(context: Context, slippage_factor: int = 0) -> Tuple[int, bool]:
    """Pool margin and whether the AMM is safe. Unsafe pools report (A + PV) / 2."""
    if is_amm_safe(context, slippage_factor):
        return calculate_pool_margin_when_safe(context, slippage_factor), True
    value = wmul(context.index_price, context.position)
    return div(context.available_cash + context.position_value + value, 2, Round.FLOOR), False


def get_pool_margin_of(pool: LiquidityPoolStorage) -> Tuple[int, bool]:
    """Whole-pool margin, usable even when the pool is below maintenance."""
    return get_pool_margin(prepare_context(pool, check_maintenance=False))


def get_mid_price(pool_margin: int, index_price: int, position: int, slippage_factor: int) -> int:
    """P * (1 - beta * P * position / M)."""
    ratio = wdiv(wmul(wmul(slippage_factor, index_price), position), pool_margin)
    return wmul(index_price, ONE - ratio)


def get_delta_cash(
    pool_margin: int, position1: int, position2: int, index_price: int, slippage_factor: int
) -> int:
    ratio = wdiv(
        wmul(wmul(slippage_factor, index_price), position1 + position2), mul(pool_margin, 2)
    )
    return -wmul(wmul(position2 - position1, index_price), ONE - ratio, Round.FLOOR)


def get_max_position(
    context: Context,
    pool_margin: int,
    amm_max_leverage: int,
    slippage_factor: int,
    is_long_side: bool,
) -> int:
    """Largest AMM position on one side: min of the solvency, zero-price and leverage bounds."""
    index_price = context.index_price
    before_sqrt = wdiv(
        mul(mul(pool_margin, pool_margin), 2) - context.square_value, slippage_factor, Round.FLOOR
    )
    if before_sqrt <= 0:
        return context.position
    max_position = wdiv(sqrt(before_sqrt, Round.FLOOR), index_price, Round.FLOOR)
    if is_long_side:
        max_position = min(
            max_position,
            wdiv(wdiv(pool_margin, slippage_factor, Round.FLOOR), index_price, Round.FLOOR),
        )
    leverage_bound = wdiv(
        wmul(pool_margin - context.position_margin, amm_max_leverage, Round.FLOOR),
        index_price,
        Round.FLOOR,
    )
    max_position = max(0, min(max_position, leverage_bound))
    return max_position if is_long_side else -max_position


def calculate_open_slippage(perp: Perpetual, slippage_factor: int, trade_amount: int) -> int:
    """Widen the open slippage when the index has drifted from `mean_rate`
    in the direction the trade pushes."""
    penalty = perp.open_slippage_penalty.value
    mean = perp.mean_rate.value
    if penalty == 0 or mean == 0:
        return slippage_factor
    index_price = perpetual.get_index_price(perp)
    deviation = wdiv(index_price - mean, mean)
    # AMM selling (trader buying) above the mean, or buying below it.
    if (trade_amount < 0 and deviation > 0) or (trade_amount > 0 and deviation < 0):
        return wmul(slippage_factor, ONE + wmul(abs(deviation), penalty), Round.CEIL)
    return slippage_factor


def amm_close_position(context: Context, perp: Perpetual, trade_amount: int) -> Tuple[int, int]:
    """Returns (delta_cash, best_price) for reducing the AMM's position."""
    if trade_amount == 0:
        return 0, 0
    index_price = context.index_price
    slippage_factor = perp.close_slippage_factor.value
    half_spread = perp.half_spread.value if trade_amount < 0 else -perp.half_spread.value
    if is_amm_safe(context, slippage_factor):
        pool_margin = calculate_pool_margin_when_safe(context, slippage_factor)
        if pool_margin <= 0:
            raise SafetyViolation("pool margin must be positive")
        best_price = wmul(
            get_mid_price(pool_margin, index_price, context.position, slippage_factor),
            ONE + half_spread,
        )
        delta_cash = get_delta_cash(
            pool_margin, context.position, context.position + trade_amount, index_price, slippage_factor
        )
    else:
        best_price = index_price
        delta_cash = -wmul(best_price, trade_amount)
    discount = perp.max_close_price_discount.value
    price_limit = wmul(index_price, ONE + discount if trade_amount > 0 else ONE - discount)
    delta_cash = max(delta_cash, -wmul(price_limit, trade_amount))
    return delta_cash, best_price


def amm_open_position(
    context: Context, perp: Perpetual, trade_amount: int, partial_fill: bool
) -> Tuple[int, int, int]:
    """Returns (delta_cash, delta_position, best_price) for growing the AMM's position."""
    if trade_amount == 0:
        return 0, 0, 0
    slippage_factor = calculate_open_slippage(perp, perp.open_slippage_factor.value, trade_amount)
    if not is_amm_safe(context, slippage_factor):
        if partial_fill:
            return 0, 0, 0
        raise SafetyViolation("AMM is unsafe when open")
    pool_margin = calculate_pool_margin_when_safe(context, slippage_factor)
    if pool_margin <= 0:
        if partial_fill:
            return 0, 0, 0
        raise SafetyViolation("pool margin must be positive")

    new_position = context.position + trade_amount
    max_position = get_max_position(
        context, pool_margin, perp.amm_max_leverage.value, slippage_factor, new_position > 0
    )
    if (new_position > 0 and new_position > max_position) or (
        new_position < 0 and new_position < max_position
    ):
        if not partial_fill:
            raise SafetyViolation("trade amount exceeds max amount")
        if abs(max_position) <= abs(context.position):
            return 0, 0, 0
        trade_amount = max_position - context.position
        new_position = max_position

    delta_cash = get_delta_cash(
        pool_margin, context.position, new_position, context.index_price, slippage_factor
    )
    half_spread = perp.half_spread.value
    mid = get_mid_price(pool_margin, context.index_price, context.position, slippage_factor)
    best_price = wmul(mid, ONE - half_spread if trade_amount > 0 else ONE + half_spread)
    return delta_cash, trade_amount, best_price


def query_trade_with_amm(
    pool: LiquidityPoolStorage, perpetual_index: int, trade_amount: int, partial_fill: bool
) -> Tuple[int, int]:
    """Quote `trade_amount` (AMM side). Returns (delta_cash, delta_position), AMM side.

    The fill is never better for the trader than the bid/ask implied by
    the half spread around the mid price.
    """
    if trade_amount == 0:
        raise ValidationError("trade amount is zero")
    perp = pool.perpetual(perpetual_index)
    context = prepare_context(pool, perpetual_index)
    close, open_ = margin.split_amount(context.position, trade_amount)

    delta_cash, close_best_price = amm_close_position(context, perp, close)
    context = replace(
        context,
        available_cash=context.available_cash + delta_cash,
        position=context.position + close,
    )
    open_cash, open_position, open_best_price = amm_open_position(context, perp, open_, partial_fill)
    delta_cash += open_cash
    delta_position = close + open_position
    best_price = close_best_price if close != 0 else open_best_price
    delta_cash = max(delta_cash, wmul(best_price, -delta_position, Round.CEIL))
    logger.debug(
        "amm quote perpetual=%s amount=%s delta_position=%s delta_cash=%s",
        perpetual_index,
        trade_amount,
        delta_position,
        delta_cash,
    )
    return delta_cash, delta_position


# ---------------------------------------------------------------------------
# Liquidity
# ---------------------------------------------------------------------------


def is_all_perpetuals_in(pool: LiquidityPoolStorage, state: PerpetualState) -> bool:
    return bool(pool.perpetuals) and all(p.state == state for p in pool.perpetuals)


def get_share_to_mint(
    pool: LiquidityPoolStorage, share_total_supply: int, cash_to_add: int
) -> Tuple[int, int]:
    """Returns (share_to_mint, added_pool_margin)."""
    context = prepare_context(pool)
    pool_margin, _ = get_pool_margin(context)
    context = replace(context, available_cash=context.available_cash + cash_to_add)
    new_pool_margin, _ = get_pool_margin(context)
    added_pool_margin = new_pool_margin - pool_margin
    if share_total_supply == 0:
        # Residual value already in the pool belongs to the first provider.
        return new_pool_margin, added_pool_margin
    if pool_margin <= 0:
        raise LiquidityError("share token has no value")
    share_to_mint = wfrac(added_pool_margin, share_total_supply, pool_margin, Round.FLOOR)
    return share_to_mint, added_pool_margin


@dataclass(frozen=True)
class Redemption:
    share_to_remove: int
    cash_to_return: int
    removed_insurance_fund: int = 0
    removed_donated_insurance_fund: int = 0
    removed_pool_margin: int = 0


def calculate_cash_to_return(context: Context, new_pool_margin: int) -> int:
    if new_pool_margin == 0:
        return context.available_cash
    # square_value has 36 decimals.
    required = div(context.square_value, mul(new_pool_margin, 2), Round.CEIL)
    required = required + new_pool_margin - context.position_value
    return context.available_cash - required


def _check_after_removal(pool: LiquidityPoolStorage, context: Context, new_pool_margin: int, cash: int) -> None:
    for perp in pool.perpetuals:
        if perp.state != PerpetualState.NORMAL:
            continue
        position = margin.get_position(perp, POOL_ACCOUNT)
        if position <= 0:
            continue
        bound = wdiv(
            wdiv(new_pool_margin, perp.open_slippage_factor.value), perpetual.get_index_price(perp)
        )
        if position > bound:
            raise SafetyViolation("AMM would offer a negative price after removing liquidity")
    if context.available_cash + context.position_value - cash < context.position_margin:
        raise SafetyViolation("AMM exceeds max leverage after removing liquidity")


def _redeem_cleared(pool: LiquidityPoolStorage, share_total_supply: int, share_to_remove: int) -> Redemption:
    removed_fund = wfrac(pool.insurance_fund, share_to_remove, share_total_supply, Round.FLOOR)
    removed_donated = wfrac(pool.donated_insurance_fund, share_to_remove, share_total_supply, Round.FLOOR)
    removed_cash = wfrac(max(pool.pool_cash, 0), share_to_remove, share_total_supply, Round.FLOOR)
    return Redemption(
        share_to_remove=share_to_remove,
        cash_to_return=removed_cash + removed_fund + removed_donated,
        removed_insurance_fund=removed_fund,
        removed_donated_insurance_fund=removed_donated,
    )


def get_cash_to_return(
    pool: LiquidityPoolStorage, share_total_supply: int, share_to_remove: int
) -> Redemption:
    if share_total_supply <= 0:
        raise LiquidityError("total supply of share token is zero")
    if share_to_remove > share_total_supply:
        raise ValidationError("share to remove exceeds total supply")
    if is_all_perpetuals_in(pool, PerpetualState.CLEARED):
        return _redeem_cleared(pool, share_total_supply, share_to_remove)

    context = prepare_context(pool)
    if not is_amm_safe(context, 0):
        raise SafetyViolation("AMM is unsafe before removing liquidity")
    pool_margin = calculate_pool_margin_when_safe(context, 0)
    if pool_margin <= 0:
        raise LiquidityError("pool margin must be positive")
    new_pool_margin = wfrac(share_total_supply - share_to_remove, pool_margin, share_total_supply, Round.CEIL)
    cash = calculate_cash_to_return(context, new_pool_margin)
    if cash < 0:
        raise LiquidityError("received margin is negative")
    _check_after_removal(pool, context, new_pool_margin, cash)
    return Redemption(
        share_to_remove=share_to_remove,
        cash_to_return=cash,
        removed_pool_margin=pool_margin - new_pool_margin,
    )


def get_share_to_remove(
    pool: LiquidityPoolStorage, share_total_supply: int, cash_to_return: int
) -> Redemption:
    if share_total_supply <= 0:
        raise LiquidityError("total supply of share token is zero")
    if is_all_perpetuals_in(pool, PerpetualState.CLEARED):
        total = max(pool.pool_cash, 0) + pool.insurance_fund + pool.donated_insurance_fund
        if total <= 0:
            raise LiquidityError("share token has no value")
        share_to_remove = wfrac(cash_to_return, share_total_supply, total, Round.CEIL)
        if share_to_remove > share_total_supply:
            raise LiquidityError("insufficient pool cash")
        return _redeem_cleared(pool, share_total_supply, share_to_remove)

    context = prepare_context(pool)
    if not is_amm_safe(context, 0):
        raise SafetyViolation("AMM is unsafe before removing liquidity")
    pool_margin = calculate_pool_margin_when_safe(context, 0)
    if pool_margin <= 0:
        raise LiquidityError("pool margin must be positive")
    after = replace(context, available_cash=context.available_cash - cash_to_return)
    if not is_amm_safe(after, 0):
        raise SafetyViolation("AMM is unsafe after removing liquidity")
    new_pool_margin = calculate_pool_margin_when_safe(after, 0)
    share_to_remove = wfrac(pool_margin - new_pool_margin, share_total_supply, pool_margin, Round.CEIL)
    _check_after_removal(pool, context, new_pool_margin, cash_to_return)
    return Redemption(
        share_to_remove=share_to_remove,
        cash_to_return=cash_to_return,
        removed_pool_margin=pool_margin - new_pool_margin,
    )
