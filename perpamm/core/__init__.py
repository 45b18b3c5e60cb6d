"""
Core perpetual-AMM algorithms
"""

from .errors import (
    PerpError,
    ValidationError,
    PermissionDenied,
    SafetyViolation,
    InvariantViolation,
    StateError,
    ReentrancyError,
    LiquidityError,
)
from .fixed_point import ONE, Round, wmul, wdiv, wfrac, wsqrt, from_decimal, to_decimal
from .types import (
    ALL_PERPETUALS,
    POOL_ACCOUNT,
    LiquidationResult,
    LiquidityPoolStorage,
    MarginAccount,
    Option,
    Perpetual,
    PerpetualState,
    PriceData,
    Privilege,
    TradeFlag,
    TradeQuote,
)
from .effects import Interactions
from .fees import FeeRates, TradeFees, compute_trade_fees
from .amm import get_pool_margin, get_pool_margin_of, query_trade_with_amm
from .liquidity_pool import add_liquidity, remove_liquidity, create_perpetual, run_liquidity_pool
from .trade import liquidate_by_amm, liquidate_by_trader, query_trade
from .invariants import INVARIANT_REGISTRY, check_all
from .oracle import ManualOracle, Oracle, is_fresh, read_prices

__all__ = [
    "PerpError",
    "ValidationError",
    "PermissionDenied",
    "SafetyViolation",
    "InvariantViolation",
    "StateError",
    "ReentrancyError",
    "LiquidityError",
    "ONE",
    "Round",
    "wmul",
    "wdiv",
    "wfrac",
    "wsqrt",
    "from_decimal",
    "to_decimal",
    "ALL_PERPETUALS",
    "POOL_ACCOUNT",
    "LiquidationResult",
    "LiquidityPoolStorage",
    "MarginAccount",
    "Option",
    "Perpetual",
    "PerpetualState",
    "PriceData",
    "Privilege",
    "TradeFlag",
    "TradeQuote",
    "Interactions",
    "FeeRates",
    "TradeFees",
    "compute_trade_fees",
    "get_pool_margin",
    "get_pool_margin_of",
    "query_trade_with_amm",
    "add_liquidity",
    "remove_liquidity",
    "create_perpetual",
    "run_liquidity_pool",
    "query_trade",
    "liquidate_by_amm",
    "liquidate_by_trader",
    "INVARIANT_REGISTRY",
    "check_all",
    "ManualOracle",
    "Oracle",
    "is_fresh",
    "read_prices",
]
