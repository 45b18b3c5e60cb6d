"""Per-market state: parameters, prices, funding and lifecycle.

Lifecycle is forward-only:

    INITIALIZING -> NORMAL -> EMERGENCY -> CLEARED

Prices are cached with their oracle timestamps; an update older than the
cached one is ignored (last writer by time, not by call order).
"""

from __future__ import annotations

import logging
from typing import Mapping, Optional

from . import margin
from .errors import StateError, ValidationError
from .fixed_point import ONE, Round, mul, wdiv, wfrac, wmul
from .types import (
    CORE_PARAMETERS,
    POOL_ACCOUNT,
    RISK_PARAMETERS,
    Option,
    Perpetual,
    PerpetualState,
    PriceData,
)

logger = logging.getLogger(__name__)

FUNDING_INTERVAL = 8 * 3600
MAX_FEE_RATE = ONE // 100


def new_perpetual(
    perpetual_id: int,
    oracle_id: str,
    core_parameters: Mapping[str, int],
    risk_parameters: Mapping[str, Option],
) -> Perpetual:
    """Build and validate a market in INITIALIZING state."""
    missing = [n for n in CORE_PARAMETERS if n not in core_parameters]
    missing += [n for n in RISK_PARAMETERS if n not in risk_parameters]
    if missing:
        raise ValidationError(f"missing perpetual parameters: {', '.join(missing)}")
    unknown = set(core_parameters) - set(CORE_PARAMETERS)
    unknown |= set(risk_parameters) - set(RISK_PARAMETERS)
    if unknown:
        raise ValidationError(f"unknown perpetual parameters: {', '.join(sorted(unknown))}")

    perp = Perpetual(id=perpetual_id, oracle_id=oracle_id)
    for name in CORE_PARAMETERS:
        setattr(perp, name, int(core_parameters[name]))
    for name in RISK_PARAMETERS:
        setattr(perp, name, risk_parameters[name])
    validate_core_parameters(perp)
    validate_risk_parameters(perp)
    return perp


# ---------------------------------------------------------------------------
# Parameters
# ---------------------------------------------------------------------------


def validate_core_parameters(perp: Perpetual) -> None:
    def require(cond: bool, msg: str) -> None:
        if not cond:
            raise ValidationError(msg)

    require(perp.initial_margin_rate > 0, "initial_margin_rate must be positive")
    require(perp.maintenance_margin_rate > 0, "maintenance_margin_rate must be positive")
    require(
        perp.maintenance_margin_rate <= perp.initial_margin_rate,
        "maintenance_margin_rate must not exceed initial_margin_rate",
    )
    require(perp.initial_margin_rate <= ONE, "initial_margin_rate must not exceed 1")
    require(0 <= perp.operator_fee_rate <= MAX_FEE_RATE, "operator_fee_rate must be in [0, 1%]")
    require(0 <= perp.lp_fee_rate <= MAX_FEE_RATE, "lp_fee_rate must be in [0, 1%]")
    require(
        0 <= perp.liquidation_penalty_rate <= perp.maintenance_margin_rate,
        "liquidation_penalty_rate must be in [0, maintenance_margin_rate]",
    )
    require(perp.keeper_gas_reward >= 0, "keeper_gas_reward must be non-negative")
    require(0 <= perp.referral_rebate_rate <= ONE, "referral_rebate_rate must be in [0, 1]")
    require(0 <= perp.insurance_fund_rate <= ONE, "insurance_fund_rate must be in [0, 1]")
    require(perp.max_open_interest_rate > 0, "max_open_interest_rate must be positive")


def validate_risk_parameters(perp: Perpetual) -> None:
    def require(cond: bool, msg: str) -> None:
        if not cond:
            raise ValidationError(msg)

    max_leverage = wdiv(ONE, perp.initial_margin_rate, Round.FLOOR)
    require(0 <= perp.half_spread.value < ONE, "half_spread must be in [0, 1)")
    require(perp.open_slippage_factor.value > 0, "open_slippage_factor must be positive")
    require(perp.close_slippage_factor.value > 0, "close_slippage_factor must be positive")
    require(
        perp.close_slippage_factor.value <= perp.open_slippage_factor.value,
        "close_slippage_factor must not exceed open_slippage_factor",
    )
    require(perp.funding_rate_factor.value >= 0, "funding_rate_factor must be non-negative")
    require(perp.funding_rate_limit.value >= 0, "funding_rate_limit must be non-negative")
    require(
        0 < perp.amm_max_leverage.value <= max_leverage,
        "amm_max_leverage must be in (0, 1/initial_margin_rate]",
    )
    require(
        0 <= perp.max_close_price_discount.value < ONE,
        "max_close_price_discount must be in [0, 1)",
    )
    require(
        ONE <= perp.default_target_leverage.value <= max_leverage,
        "default_target_leverage must be in [1, 1/initial_margin_rate]",
    )
    require(perp.mean_rate.value >= 0, "mean_rate must be non-negative")
    require(perp.mean_revert_factor.value >= 0, "mean_revert_factor must be non-negative")
    require(perp.open_slippage_penalty.value >= 0, "open_slippage_penalty must be non-negative")


def set_perpetual_parameter(perp: Perpetual, name: str, value: int) -> None:
    """Governor: replace a core parameter, then re-validate the full set."""
    if name not in CORE_PARAMETERS:
        raise ValidationError(f"unknown core parameter: {name}")
    setattr(perp, name, value)
    validate_core_parameters(perp)
    validate_risk_parameters(perp)


def set_risk_parameter(perp: Perpetual, name: str, value: int, min_value: int, max_value: int) -> None:
    """Governor: replace a risk parameter and its bounds."""
    if name not in RISK_PARAMETERS:
        raise ValidationError(f"unknown risk parameter: {name}")
    setattr(perp, name, Option(value, min_value, max_value))
    validate_risk_parameters(perp)


def update_risk_parameter(perp: Perpetual, name: str, value: int) -> None:
    """Operator: move a risk parameter within its existing bounds."""
    if name not in RISK_PARAMETERS:
        raise ValidationError(f"unknown risk parameter: {name}")
    option: Option = getattr(perp, name)
    setattr(perp, name, option.with_value(value))
    validate_risk_parameters(perp)


# ---------------------------------------------------------------------------
# Prices
# ---------------------------------------------------------------------------


def get_mark_price(perp: Perpetual) -> int:
    if perp.state == PerpetualState.NORMAL:
        return perp.mark_price_data.price
    return perp.settlement_price_data.price


def get_index_price(perp: Perpetual) -> int:
    if perp.state == PerpetualState.NORMAL:
        return perp.index_price_data.price
    return perp.settlement_price_data.price


def update_price(perp: Perpetual, mark: PriceData, index: PriceData) -> None:
    for new, attr in ((mark, "mark_price_data"), (index, "index_price_data")):
        if new.price <= 0:
            raise ValidationError(f"invalid oracle price for perpetual {perp.id}: {new.price}")
        cached: PriceData = getattr(perp, attr)
        if new.time >= cached.time:
            setattr(perp, attr, new)


# ---------------------------------------------------------------------------
# Funding
# ---------------------------------------------------------------------------


def update_funding_state(perp: Perpetual, now: int) -> None:
    """Accrue funding for the time elapsed since `funding_time`."""
    if now <= perp.funding_time:
        return
    elapsed = now - perp.funding_time
    delta = wfrac(
        get_index_price(perp), mul(perp.funding_rate, elapsed), FUNDING_INTERVAL * ONE
    )
    perp.unit_accumulative_funding += delta
    if delta > 0:
        perp.unit_accumulative_long_funding += delta
    elif delta < 0:
        perp.unit_accumulative_short_funding += delta
    perp.funding_time = now


def update_funding_rate(perp: Perpetual, pool_margin: int) -> None:
    position = margin.get_position(perp, POOL_ACCOUNT)
    limit = perp.funding_rate_limit.value
    if position != 0 and pool_margin <= 0:
        perp.funding_rate = -limit if position > 0 else limit
        return

    rate = 0
    if position != 0:
        rate = wmul(-wfrac(get_index_price(perp), position, pool_margin), perp.funding_rate_factor.value)
    base = perp.base_funding_rate.value
    if perp.open_interest != 0 and ((base > 0 and position <= 0) or (base < 0 and position >= 0)):
        rate += base
    perp.funding_rate = max(-limit, min(limit, rate))
    logger.debug("funding rate perpetual=%s rate=%s", perp.id, perp.funding_rate)


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------


def _require_state(perp: Perpetual, state: PerpetualState) -> None:
    if perp.state != state:
        raise StateError(f"perpetual {perp.id} is {perp.state.name}, expected {state.name}")


def set_normal_state(perp: Perpetual, now: int) -> None:
    _require_state(perp, PerpetualState.INITIALIZING)
    perp.state = PerpetualState.NORMAL
    perp.funding_time = now
    logger.info("perpetual %s -> NORMAL", perp.id)


def set_emergency_state(perp: Perpetual, settlement_price: Optional[PriceData] = None) -> None:
    """Freeze the market at `settlement_price` (defaults to the cached mark price)."""
    _require_state(perp, PerpetualState.NORMAL)
    price = settlement_price or perp.mark_price_data
    if price.price <= 0:
        raise ValidationError("settlement price must be positive")
    perp.settlement_price_data = price
    perp.state = PerpetualState.EMERGENCY
    logger.info("perpetual %s -> EMERGENCY at price %s", perp.id, price.price)


def set_cleared_state(perp: Perpetual) -> None:
    _require_state(perp, PerpetualState.EMERGENCY)
    settle_collateral(perp)
    perp.state = PerpetualState.CLEARED
    logger.info(
        "perpetual %s -> CLEARED rate_with=%s rate_without=%s",
        perp.id,
        perp.redemption_rate_with_position,
        perp.redemption_rate_without_position,
    )


def count_margin(perp: Perpetual, trader: str) -> None:
    """Add an account's settlement margin to the with/without-position bucket."""
    value = margin.get_margin(perp, trader, get_mark_price(perp))
    if value <= 0:
        return
    if margin.get_position(perp, trader) != 0:
        perp.total_margin_with_position += value
    else:
        perp.total_margin_without_position += value


def clear(perp: Perpetual, trader: str) -> bool:
    """Count and deregister one active account. Returns True when none remain."""
    _require_state(perp, PerpetualState.EMERGENCY)
    if trader not in perp.active_accounts:
        raise ValidationError(f"account {trader} is not active in perpetual {perp.id}")
    count_margin(perp, trader)
    perp.active_accounts.remove(trader)
    return len(perp.active_accounts) == 0


def settle_collateral(perp: Perpetual) -> None:
    total = max(perp.total_collateral, 0)
    without = perp.total_margin_without_position
    with_position = perp.total_margin_with_position
    if total < without:
        perp.redemption_rate_without_position = wdiv(total, without, Round.FLOOR)
        perp.redemption_rate_with_position = 0
        return
    perp.redemption_rate_without_position = ONE
    if with_position > 0:
        perp.redemption_rate_with_position = min(
            ONE, wdiv(total - without, with_position, Round.FLOOR)
        )
    else:
        perp.redemption_rate_with_position = 0


def settle(perp: Perpetual, trader: str) -> int:
    """Return the settleable margin and reset the account (CLEARED only)."""
    _require_state(perp, PerpetualState.CLEARED)
    amount = margin.get_settleable_margin(perp, trader, get_mark_price(perp))
    margin.reset_account(perp, trader)
    perp.total_collateral -= amount
    return amount


def get_rebalance_margin(perp: Perpetual) -> int:
    """Pool account margin above its initial margin, at mark price."""
    price = get_mark_price(perp)
    return margin.get_margin(perp, POOL_ACCOUNT, price) - margin.get_initial_margin(
        perp, POOL_ACCOUNT, price
    )
