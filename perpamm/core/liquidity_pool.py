"""
Liquidity pool orchestration.

One pool owns N perpetuals that share a single collateral balance
(`pool_cash`). Each market's AMM account is kept at its initial margin by
`rebalance`, which moves cash between the market ledger and the pool.

Collateral and share-token movements are recorded on an `Interactions`
queue; the engine executes them after the state transition succeeds.
"""

from __future__ import annotations

import logging
from typing import Mapping, Optional

from . import amm, margin, perpetual
from .effects import Interactions
from .errors import LiquidityError, SafetyViolation, StateError, ValidationError
from .fixed_point import Round, wdiv, wmul
from .types import (
    POOL_ACCOUNT,
    LiquidityPoolStorage,
    Option,
    Perpetual,
    PerpetualState,
    PriceData,
)

logger = logging.getLogger(__name__)


def _require_running(pool: LiquidityPoolStorage) -> None:
    if not pool.is_running:
        raise StateError("liquidity pool is not running")


def _require_normal(perp: Perpetual) -> None:
    if perp.state != PerpetualState.NORMAL:
        raise StateError(f"perpetual {perp.id} is {perp.state.name}, expected NORMAL")


# ---------------------------------------------------------------------------
# Cash movement between pool and markets
# ---------------------------------------------------------------------------


def get_available_pool_cash(pool: LiquidityPoolStorage, exclusive_index: Optional[int] = None) -> int:
    """Pool cash plus every other NORMAL market's AMM margin above initial margin."""
    available = pool.pool_cash
    for i, perp in enumerate(pool.perpetuals):
        if i == exclusive_index or perp.state != PerpetualState.NORMAL:
            continue
        available += perpetual.get_rebalance_margin(perp)
    return available


def transfer_from_pool_to_perpetual(pool: LiquidityPoolStorage, perp: Perpetual, amount: int) -> None:
    pool.pool_cash -= amount
    perp.total_collateral += amount
    margin.update_cash(perp, POOL_ACCOUNT, amount)


def transfer_from_perpetual_to_pool(pool: LiquidityPoolStorage, perp: Perpetual, amount: int) -> None:
    perp.total_collateral -= amount
    pool.pool_cash += amount
    margin.update_cash(perp, POOL_ACCOUNT, -amount)


def rebalance(pool: LiquidityPoolStorage, perpetual_index: int) -> None:
    """Move cash so the market's AMM margin equals its initial margin."""
    perp = pool.perpetual(perpetual_index)
    if perp.state != PerpetualState.NORMAL:
        return
    rebalance_margin = perpetual.get_rebalance_margin(perp)
    if rebalance_margin > 0:
        amount = min(rebalance_margin, perp.total_collateral)
        if amount > 0:
            transfer_from_perpetual_to_pool(pool, perp, amount)
    elif rebalance_margin < 0:
        available = get_available_pool_cash(pool, perpetual_index)
        if available <= 0:
            return
        transfer_from_pool_to_perpetual(pool, perp, min(-rebalance_margin, available))


# ---------------------------------------------------------------------------
# Insurance fund
# ---------------------------------------------------------------------------


def update_insurance_fund(pool: LiquidityPoolStorage, delta_fund: int) -> int:
    """Apply `delta_fund` to the insurance fund. Returns the excess routed to LPs.

    Growth beyond `insurance_fund_cap` is returned as penalty to LP; a
    depletion below zero draws the donated fund, which may not go negative.
    """
    if delta_fund == 0:
        return 0
    penalty_to_lp = 0
    if delta_fund > 0:
        room = max(pool.insurance_fund_cap - pool.insurance_fund, 0)
        to_fund = min(delta_fund, room)
        penalty_to_lp = delta_fund - to_fund
        pool.insurance_fund += to_fund
        if penalty_to_lp:
            logger.info("insurance fund at cap, %s routed to LP", penalty_to_lp)
        return penalty_to_lp

    new_fund = pool.insurance_fund + delta_fund
    if new_fund < 0:
        donated = pool.donated_insurance_fund + new_fund
        if donated < 0:
            raise SafetyViolation("negative donated insurance fund")
        pool.donated_insurance_fund = donated
        new_fund = 0
        logger.info("insurance fund depleted, donated fund now %s", donated)
    pool.insurance_fund = new_fund
    return 0


def donate_insurance_fund(pool: LiquidityPoolStorage, donator: str, amount: int, fx: Interactions) -> None:
    _require_running(pool)
    if amount <= 0:
        raise ValidationError("donated amount must be positive")
    fx.transfer_in(donator, amount)
    pool.donated_insurance_fund += amount
    logger.info("donated insurance fund donator=%s amount=%s", donator, amount)


# ---------------------------------------------------------------------------
# Liquidity
# ---------------------------------------------------------------------------


def add_liquidity(
    pool: LiquidityPoolStorage,
    trader: str,
    cash_to_add: int,
    share_total_supply: int,
    fx: Interactions,
) -> int:
    """Deposit `cash_to_add` into the pool and return the shares minted."""
    _require_running(pool)
    if cash_to_add <= 0:
        raise ValidationError("cash amount must be positive")
    if not any(p.state == PerpetualState.NORMAL for p in pool.perpetuals):
        raise StateError("no perpetual is in NORMAL state")

    share_to_mint, added_pool_margin = amm.get_share_to_mint(pool, share_total_supply, cash_to_add)
    if share_to_mint <= 0:
        raise LiquidityError("received share must be positive")

    fx.transfer_in(trader, cash_to_add)
    pool.pool_cash += cash_to_add
    if pool.liquidity_cap > 0:
        new_pool_margin, _ = amm.get_pool_margin_of(pool)
        if new_pool_margin > pool.liquidity_cap:
            raise LiquidityError("liquidity reaches cap")
    fx.mint(trader, share_to_mint)
    logger.info(
        "add liquidity trader=%s cash=%s shares=%s added_pool_margin=%s",
        trader,
        cash_to_add,
        share_to_mint,
        added_pool_margin,
    )
    return share_to_mint


def remove_liquidity(
    pool: LiquidityPoolStorage,
    trader: str,
    share_to_remove: int,
    cash_to_return: int,
    share_total_supply: int,
    share_balance: int,
    fx: Interactions,
) -> amm.Redemption:
    """Redeem by share amount or by cash amount; exactly one must be nonzero."""
    _require_running(pool)
    if (share_to_remove == 0) == (cash_to_return == 0):
        raise ValidationError("exactly one of share_to_remove and cash_to_return must be nonzero")
    if share_to_remove < 0 or cash_to_return < 0:
        raise ValidationError("amount must be positive")

    if share_to_remove > 0:
        redemption = amm.get_cash_to_return(pool, share_total_supply, share_to_remove)
    else:
        redemption = amm.get_share_to_remove(pool, share_total_supply, cash_to_return)

    if redemption.share_to_remove > share_balance:
        raise LiquidityError("insufficient share balance")
    if redemption.cash_to_return < 0:
        raise LiquidityError("received margin is negative")

    from_pool = (
        redemption.cash_to_return
        - redemption.removed_insurance_fund
        - redemption.removed_donated_insurance_fund
    )
    if from_pool > get_available_pool_cash(pool):
        raise LiquidityError("insufficient pool cash")

    pool.insurance_fund -= redemption.removed_insurance_fund
    pool.donated_insurance_fund -= redemption.removed_donated_insurance_fund
    pool.pool_cash -= from_pool
    fx.burn(trader, redemption.share_to_remove)
    fx.transfer_out(trader, redemption.cash_to_return)
    logger.info(
        "remove liquidity trader=%s shares=%s cash=%s",
        trader,
        redemption.share_to_remove,
        redemption.cash_to_return,
    )
    return redemption


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


def create_perpetual(
    pool: LiquidityPoolStorage,
    oracle_id: str,
    core_parameters: Mapping[str, int],
    risk_parameters: Mapping[str, Option],
    now: int,
    prices: Optional[tuple[PriceData, PriceData]] = None,
) -> int:
    """Append a market. It starts NORMAL only when the pool already runs."""
    if pool.is_running and not pool.is_fast_creation_enabled:
        raise StateError("cannot create perpetual after the pool is running")
    perp = perpetual.new_perpetual(len(pool.perpetuals), oracle_id, core_parameters, risk_parameters)
    if prices is not None:
        perpetual.update_price(perp, *prices)
    pool.perpetuals.append(perp)
    if pool.is_running:
        if prices is None:
            raise ValidationError("prices are required to create a perpetual in a running pool")
        perpetual.set_normal_state(perp, now)
    logger.info("created perpetual %s oracle=%s", perp.id, oracle_id)
    return perp.id


def run_liquidity_pool(pool: LiquidityPoolStorage, now: int) -> None:
    if pool.is_running:
        raise StateError("liquidity pool is already running")
    if not pool.perpetuals:
        raise StateError("no perpetual to run")
    for perp in pool.perpetuals:
        if perp.state == PerpetualState.INITIALIZING:
            if perp.mark_price_data.price <= 0 or perp.index_price_data.price <= 0:
                raise ValidationError(f"perpetual {perp.id} has no oracle price")
            perpetual.set_normal_state(perp, now)
    pool.is_running = True
    logger.info("liquidity pool running with %s perpetuals", len(pool.perpetuals))


def _enter_emergency(pool: LiquidityPoolStorage, perpetual_index: int, price: Optional[PriceData]) -> None:
    perp = pool.perpetual(perpetual_index)
    perpetual.set_emergency_state(perp, price)
    if len(perp.active_accounts) == 0:
        set_cleared_state(pool, perpetual_index)


def set_emergency_state(
    pool: LiquidityPoolStorage,
    perpetual_index: int,
    settlement_price: Optional[PriceData] = None,
) -> None:
    """Rebalance, then freeze one market at its mark (or a forced) price."""
    perp = pool.perpetual(perpetual_index)
    _require_normal(perp)
    rebalance(pool, perpetual_index)
    _enter_emergency(pool, perpetual_index, settlement_price)


def is_pool_maintenance_margin_safe(pool: LiquidityPoolStorage) -> bool:
    total_margin = pool.pool_cash
    maintenance_margin = 0
    for perp in pool.perpetuals:
        if perp.state != PerpetualState.NORMAL:
            continue
        price = perpetual.get_mark_price(perp)
        total_margin += margin.get_margin(perp, POOL_ACCOUNT, price)
        maintenance_margin += margin.get_maintenance_margin(perp, POOL_ACCOUNT, price)
    return total_margin >= maintenance_margin


def set_all_perpetuals_to_emergency_state(pool: LiquidityPoolStorage) -> None:
    """Freeze every NORMAL market once the pool is below maintenance margin.

    Each market's AMM margin is rescaled to the same fraction of its initial
    margin (floor-rounded) so the pool's cash never ends negative.
    """
    normal = [i for i, p in enumerate(pool.perpetuals) if p.state == PerpetualState.NORMAL]
    if not normal:
        raise StateError("no perpetual to settle")
    total_margin = pool.pool_cash
    maintenance_margin = 0
    initial_margin = 0
    for i in normal:
        perp = pool.perpetuals[i]
        price = perpetual.get_mark_price(perp)
        total_margin += margin.get_margin(perp, POOL_ACCOUNT, price)
        maintenance_margin += margin.get_maintenance_margin(perp, POOL_ACCOUNT, price)
        initial_margin += margin.get_initial_margin(perp, POOL_ACCOUNT, price)
    if total_margin >= maintenance_margin:
        raise SafetyViolation("AMM margin is not below maintenance margin")

    rate = wdiv(total_margin, initial_margin, Round.FLOOR) if initial_margin != 0 else 0
    for i in normal:
        perp = pool.perpetuals[i]
        price = perpetual.get_mark_price(perp)
        new_margin = wmul(margin.get_initial_margin(perp, POOL_ACCOUNT, price), rate, Round.FLOOR)
        delta = new_margin - margin.get_margin(perp, POOL_ACCOUNT, price)
        if delta > 0:
            transfer_from_pool_to_perpetual(pool, perp, delta)
        elif delta < 0:
            transfer_from_perpetual_to_pool(pool, perp, -delta)
    for i in normal:
        _enter_emergency(pool, i, None)
    if pool.pool_cash < 0:
        raise SafetyViolation("negative pool cash after settling all perpetuals")
    logger.info("all perpetuals set to EMERGENCY, margin rate %s", rate)


def set_cleared_state(pool: LiquidityPoolStorage, perpetual_index: int) -> None:
    """Count the AMM's own margin, compute redemption rates and settle the AMM."""
    perp = pool.perpetual(perpetual_index)
    perpetual.count_margin(perp, POOL_ACCOUNT)
    perpetual.set_cleared_state(perp)
    settled = perpetual.settle(perp, POOL_ACCOUNT)
    pool.pool_cash += settled


def clear(pool: LiquidityPoolStorage, perpetual_index: int, keeper: str, fx: Interactions) -> str:
    """Clear the next active account of an EMERGENCY market. Returns its id."""
    perp = pool.perpetual(perpetual_index)
    if perp.state != PerpetualState.EMERGENCY:
        raise StateError(f"perpetual {perp.id} is {perp.state.name}, expected EMERGENCY")
    if len(perp.active_accounts) == 0:
        raise ValidationError("no active account to clear")
    trader = perp.active_accounts.at(0)
    done = perpetual.clear(perp, trader)
    reward = perp.keeper_gas_reward
    if 0 < reward <= perp.total_collateral:
        perp.total_collateral -= reward
        fx.transfer_out(keeper, reward)
    if done:
        set_cleared_state(pool, perpetual_index)
    logger.info("cleared perpetual=%s trader=%s remaining=%s", perp.id, trader, len(perp.active_accounts))
    return trader


def settle(pool: LiquidityPoolStorage, perpetual_index: int, trader: str, fx: Interactions) -> int:
    perp = pool.perpetual(perpetual_index)
    if trader == POOL_ACCOUNT:
        raise ValidationError("the pool account is settled automatically")
    amount = perpetual.settle(perp, trader)
    fx.transfer_out(trader, amount)
    logger.info("settled perpetual=%s trader=%s amount=%s", perp.id, trader, amount)
    return amount


# ---------------------------------------------------------------------------
# Trader margin
# ---------------------------------------------------------------------------


def deposit(pool: LiquidityPoolStorage, perpetual_index: int, trader: str, amount: int, fx: Interactions) -> None:
    perp = pool.perpetual(perpetual_index)
    _require_normal(perp)
    if amount <= 0:
        raise ValidationError("deposit amount must be positive")
    if trader == POOL_ACCOUNT:
        raise ValidationError("reserved account")
    fx.transfer_in(trader, amount)
    margin.update_cash(perp, trader, amount)
    perp.total_collateral += amount


def withdraw(pool: LiquidityPoolStorage, perpetual_index: int, trader: str, amount: int, fx: Interactions) -> None:
    perp = pool.perpetual(perpetual_index)
    _require_normal(perp)
    if amount <= 0:
        raise ValidationError("withdraw amount must be positive")
    if trader == POOL_ACCOUNT:
        raise ValidationError("reserved account")
    rebalance(pool, perpetual_index)
    margin.update_cash(perp, trader, -amount)
    if not margin.is_initial_margin_safe(perp, trader, perpetual.get_mark_price(perp)):
        raise SafetyViolation("margin is unsafe after withdrawal")
    if amount > perp.total_collateral:
        raise LiquidityError("insufficient collateral in perpetual")
    perp.total_collateral -= amount
    fx.transfer_out(trader, amount)


# ---------------------------------------------------------------------------
# Funding / prices
# ---------------------------------------------------------------------------


def update_funding_state(pool: LiquidityPoolStorage, now: int) -> None:
    for perp in pool.perpetuals:
        if perp.state == PerpetualState.NORMAL:
            perpetual.update_funding_state(perp, now)


def update_funding_rate(pool: LiquidityPoolStorage) -> None:
    pool_margin, _ = amm.get_pool_margin_of(pool)
    for perp in pool.perpetuals:
        if perp.state == PerpetualState.NORMAL:
            perpetual.update_funding_rate(perp, pool_margin)
