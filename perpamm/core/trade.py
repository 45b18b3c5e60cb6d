"""
Trade and liquidation execution.

A trade mutates two margin accounts in one market: the trader's and the
AMM's (`POOL_ACCOUNT`), or the liquidator's for `liquidate_by_trader`.
Sizes returned to callers are signed from the trader's side.
"""

from __future__ import annotations

import logging
from typing import Optional

from . import amm, liquidity_pool, margin, perpetual
from .effects import Interactions
from .errors import LiquidityError, SafetyViolation, StateError, ValidationError
from .fees import FeeRates, TradeFees, compute_trade_fees
from .fixed_point import Round, wdiv, wfrac, wmul
from .types import (
    POOL_ACCOUNT,
    LiquidationResult,
    LiquidityPoolStorage,
    Perpetual,
    PerpetualState,
    TradeFlag,
    TradeQuote,
)

logger = logging.getLogger(__name__)


def _require_normal(perp: Perpetual) -> None:
    if perp.state != PerpetualState.NORMAL:
        raise StateError(f"perpetual {perp.id} is {perp.state.name}, expected NORMAL")


def validate_price(is_long: bool, price: int, limit_price: int) -> None:
    if price <= 0:
        raise SafetyViolation("price must be positive")
    if is_long and price > limit_price:
        raise SafetyViolation(f"price {price} exceeds limit {limit_price}")
    if not is_long and price < limit_price:
        raise SafetyViolation(f"price {price} is below limit {limit_price}")


def _check_open_interest(pool: LiquidityPoolStorage, perp: Perpetual, delta_open_interest: int) -> None:
    if perp.open_interest < 0:
        raise SafetyViolation("negative open interest")
    if delta_open_interest <= 0:
        return
    pool_margin, _ = amm.get_pool_margin_of(pool)
    limit = wfrac(perp.max_open_interest_rate, pool_margin, perpetual.get_index_price(perp), Round.FLOOR)
    if perp.open_interest > limit:
        raise SafetyViolation("open interest exceeds limit")


def _close_only_amount(perp: Perpetual, trader: str, amount: int) -> int:
    position = margin.get_position(perp, trader)
    if position == 0 or margin.has_the_same_sign(position, amount):
        raise ValidationError("trader has no position to close")
    if abs(amount) > abs(position):
        return -position
    return amount


def _charge_fees(
    pool: LiquidityPoolStorage,
    perp: Perpetual,
    trader: str,
    referrer: Optional[str],
    trade_value: int,
    has_opened: bool,
    fx: Interactions,
) -> TradeFees:
    rates = FeeRates(
        lp_fee_rate=perp.lp_fee_rate,
        operator_fee_rate=perp.operator_fee_rate,
        vault_fee_rate=pool.vault_fee_rate if pool.vault else 0,
        referral_rebate_rate=perp.referral_rebate_rate,
    )
    fees = compute_trade_fees(
        trade_value,
        rates,
        has_opened=has_opened,
        available_margin=margin.get_available_margin(perp, trader, perpetual.get_mark_price(perp)),
        has_referrer=bool(referrer),
    )
    if fees.total == 0:
        return fees
    margin.update_cash(perp, trader, -fees.total)
    margin.update_cash(perp, POOL_ACCOUNT, fees.lp_fee)
    perp.total_collateral -= fees.leaving_market
    fx.transfer_out(pool.operator, fees.operator_fee)
    if pool.vault:
        fx.transfer_out(pool.vault, fees.vault_fee)
    if referrer:
        fx.transfer_out(referrer, fees.referral_rebate)
    return fees


def adjust_margin_leverage(
    pool: LiquidityPoolStorage,
    perp: Perpetual,
    trader: str,
    has_opened: bool,
    fx: Interactions,
) -> int:
    """Deposit or withdraw so the account sits at its target leverage.

    Returns the signed cash moved into the account.
    """
    position = margin.get_position(perp, trader)
    if position == 0:
        adjust = -max(margin.get_available_cash(perp, trader), 0)
    else:
        price = perpetual.get_mark_price(perp)
        leverage = margin.get_target_leverage(perp, trader)
        required = wdiv(abs(wmul(position, price)), leverage, Round.CEIL) + perp.keeper_gas_reward
        current = margin.get_margin(perp, trader, price)
        if has_opened:
            adjust = max(required - current, 0)
        else:
            adjust = -max(current - required, 0)
    if adjust > 0:
        fx.transfer_in(trader, adjust)
    elif adjust < 0:
        if -adjust > perp.total_collateral:
            raise LiquidityError("insufficient collateral in perpetual")
        fx.transfer_out(trader, -adjust)
    margin.update_cash(perp, trader, adjust)
    perp.total_collateral += adjust
    return adjust


def _execute_trade(
    pool: LiquidityPoolStorage,
    perpetual_index: int,
    trader: str,
    amount: int,
    limit_price: int,
    fx: Interactions,
    referrer: Optional[str],
    flags: TradeFlag,
    check_margin: bool = True,
) -> TradeQuote:
    perp = pool.perpetual(perpetual_index)
    _require_normal(perp)
    if amount == 0:
        raise ValidationError("trade amount is zero")
    if trader == POOL_ACCOUNT:
        raise ValidationError("reserved account")
    if flags & TradeFlag.CLOSE_ONLY:
        amount = _close_only_amount(perp, trader, amount)

    delta_cash, delta_position = amm.query_trade_with_amm(
        pool, perpetual_index, -amount, bool(flags & TradeFlag.PARTIAL_FILL)
    )
    if delta_position == 0:
        raise LiquidityError("insufficient liquidity")
    trade_price = abs(wdiv(delta_cash, delta_position))
    if not flags & TradeFlag.MARKET_ORDER:
        validate_price(amount > 0, trade_price, limit_price)

    has_opened = margin.is_open(margin.get_position(perp, trader), -delta_position)
    delta_oi = margin.update_margin(perp, POOL_ACCOUNT, delta_position, delta_cash, counterparty=None)
    delta_oi += margin.update_margin(perp, trader, -delta_position, -delta_cash, counterparty=POOL_ACCOUNT)
    _check_open_interest(pool, perp, delta_oi)

    fees = _charge_fees(pool, perp, trader, referrer, abs(delta_cash), has_opened, fx)

    if flags & TradeFlag.USE_TARGET_LEVERAGE:
        adjust_margin_leverage(pool, perp, trader, has_opened, fx)
    # The AMM's margin in this market changed; restore it to initial margin.
    liquidity_pool.rebalance(pool, perpetual_index)

    if check_margin:
        price = perpetual.get_mark_price(perp)
        if has_opened:
            safe = margin.is_maintenance_margin_safe(perp, trader, price)
        else:
            safe = margin.is_margin_safe(perp, trader, price)
        if not safe:
            raise SafetyViolation("trader margin is unsafe after trade")

    logger.info(
        "trade perpetual=%s trader=%s amount=%s price=%s fee=%s",
        perp.id,
        trader,
        -delta_position,
        trade_price,
        fees.total,
    )
    return TradeQuote(
        delta_cash=-delta_cash,
        delta_position=-delta_position,
        trade_price=trade_price,
        total_fee=fees.total,
    )


def trade(
    pool: LiquidityPoolStorage,
    perpetual_index: int,
    trader: str,
    amount: int,
    limit_price: int,
    fx: Interactions,
    *,
    referrer: Optional[str] = None,
    flags: TradeFlag = TradeFlag.NONE,
) -> int:
    """Trade `amount` (trader side) against the AMM. Returns the filled amount."""
    quote = _execute_trade(pool, perpetual_index, trader, amount, limit_price, fx, referrer, flags)
    return quote.delta_position


def query_trade(
    pool: LiquidityPoolStorage,
    perpetual_index: int,
    trader: str,
    amount: int,
    fx: Interactions,
    *,
    referrer: Optional[str] = None,
    flags: TradeFlag = TradeFlag.NONE,
) -> TradeQuote:
    """Run a market order against `pool` and report the fill. Callers pass a copy.

    The trader's own margin is not checked, so an unfunded account still gets
    a price and fee quote. AMM limits (max position, open interest) still apply.
    """
    return _execute_trade(
        pool, perpetual_index, trader, amount, 0, fx, referrer, flags | TradeFlag.MARKET_ORDER, check_margin=False
    )


def post_liquidation(
    pool: LiquidityPoolStorage,
    perpetual_index: int,
    liquidator: str,
    trader: str,
    position_before: int,
    delta_position: int,
) -> LiquidationResult:
    """Charge the liquidation penalty on the trader's liquidated fraction.

    `delta_position` is the trader's position change. A bankrupt remainder
    turns the penalty negative: the insurance funds absorb the shortfall, and
    if they cannot, the shortfall is truncated and the market enters
    EMERGENCY.
    """
    perp = pool.perpetual(perpetual_index)
    price = perpetual.get_mark_price(perp)
    liquidated = abs(delta_position)
    penalty = abs(wmul(wmul(price, delta_position), perp.liquidation_penalty_rate))
    remaining = margin.get_margin(perp, trader, price)
    fraction_margin = wfrac(remaining, liquidated, abs(position_before))
    is_emergency = False
    if remaining >= 0:
        penalty = min(penalty, fraction_margin)
        to_fund = wmul(penalty, perp.insurance_fund_rate)
        to_liquidator = penalty - to_fund
    else:
        penalty = fraction_margin
        total_fund = pool.insurance_fund + pool.donated_insurance_fund
        if total_fund + penalty < 0:
            logger.warning(
                "liquidation shortfall %s exceeds insurance funds %s in perpetual %s",
                -penalty,
                total_fund,
                perp.id,
            )
            penalty = -total_fund
            is_emergency = True
        to_fund = penalty
        to_liquidator = 0

    to_lp = liquidity_pool.update_insurance_fund(pool, to_fund)
    margin.update_cash(perp, trader, -penalty)
    margin.update_cash(perp, liquidator, to_liquidator)
    margin.update_cash(perp, POOL_ACCOUNT, to_lp)
    perp.total_collateral += to_lp - to_fund

    result = LiquidationResult(
        liquidated_amount=delta_position,
        liquidation_price=price,
        penalty=penalty,
        penalty_to_insurance_fund=to_fund,
        penalty_to_liquidator=to_liquidator,
        penalty_to_lp=to_lp,
    )
    if is_emergency:
        liquidity_pool.set_emergency_state(pool, perpetual_index)
    return result


def liquidate_by_amm(
    pool: LiquidityPoolStorage,
    perpetual_index: int,
    keeper: str,
    trader: str,
    fx: Interactions,
) -> LiquidationResult:
    """The AMM takes over (part of) an unsafe position; the keeper is paid gas."""
    perp = pool.perpetual(perpetual_index)
    _require_normal(perp)
    price = perpetual.get_mark_price(perp)
    if margin.is_maintenance_margin_safe(perp, trader, price):
        raise SafetyViolation("trader is safe")
    position = margin.get_position(perp, trader)

    delta_cash, delta_position = amm.query_trade_with_amm(pool, perpetual_index, position, True)
    if delta_position == 0:
        raise LiquidityError("insufficient liquidity")
    liquidation_price = abs(wdiv(delta_cash, delta_position))
    delta_oi = margin.update_margin(perp, POOL_ACCOUNT, delta_position, delta_cash, counterparty=None)
    delta_oi += margin.update_margin(perp, trader, -delta_position, -delta_cash, counterparty=POOL_ACCOUNT)
    if perp.open_interest < 0:
        raise SafetyViolation("negative open interest")

    reward = perp.keeper_gas_reward
    if reward > 0:
        margin.update_cash(perp, trader, -reward)
        perp.total_collateral -= reward
        fx.transfer_out(keeper, reward)

    result = post_liquidation(pool, perpetual_index, POOL_ACCOUNT, trader, position, -delta_position)
    liquidity_pool.rebalance(pool, perpetual_index)
    logger.info(
        "liquidate by AMM perpetual=%s trader=%s amount=%s price=%s penalty=%s",
        perp.id,
        trader,
        -delta_position,
        liquidation_price,
        result.penalty,
    )
    return result


def liquidate_by_trader(
    pool: LiquidityPoolStorage,
    perpetual_index: int,
    liquidator: str,
    trader: str,
    amount: int,
    limit_price: int,
    fx: Interactions,
) -> LiquidationResult:
    """`liquidator` takes `amount` of the trader's position at mark price."""
    perp = pool.perpetual(perpetual_index)
    _require_normal(perp)
    if liquidator == trader or POOL_ACCOUNT in (liquidator, trader):
        raise ValidationError("invalid liquidator")
    price = perpetual.get_mark_price(perp)
    if margin.is_maintenance_margin_safe(perp, trader, price):
        raise SafetyViolation("trader is safe")
    position = margin.get_position(perp, trader)
    if amount == 0 or not margin.has_the_same_sign(position, amount) or abs(amount) > abs(position):
        raise ValidationError("invalid liquidation amount")
    validate_price(amount > 0, price, limit_price)

    liquidator_position = margin.get_position(perp, liquidator)
    delta_cash = -wmul(price, amount)
    delta_oi = margin.update_margin(perp, liquidator, amount, delta_cash, counterparty=trader)
    delta_oi += margin.update_margin(perp, trader, -amount, -delta_cash, counterparty=liquidator)
    _check_open_interest(pool, perp, delta_oi)

    result = post_liquidation(pool, perpetual_index, liquidator, trader, position, -amount)

    if perp.state == PerpetualState.NORMAL:
        if margin.is_open(liquidator_position, amount):
            if not margin.is_initial_margin_safe(perp, liquidator, price):
                raise SafetyViolation("liquidator margin is unsafe")
        elif not margin.is_margin_safe(perp, liquidator, price):
            raise SafetyViolation("liquidator margin is unsafe")
    logger.info(
        "liquidate by trader perpetual=%s liquidator=%s trader=%s amount=%s penalty=%s",
        perp.id,
        liquidator,
        trader,
        -amount,
        result.penalty,
    )
    return result
