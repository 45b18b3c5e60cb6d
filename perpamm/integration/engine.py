"""
Transactional facade over the perpetual AMM core.

Every state-mutating operation is all-or-nothing:

1. the non-reentrant gate is taken (a nested call raises `ReentrancyError`),
2. the pool state is deep-copied and synced (funding accrual, oracle prices),
3. the core service runs against the copy and queues external interactions,
4. funding rates are recomputed and the invariant registry is checked,
5. interactions run in a fixed order (collateral pulls, share mint/burn,
   collateral pushes); a failure rolls the in-memory ledgers back,
6. only then is the copy committed.

Methods raise `PerpError` subclasses. `execute(op)` is the non-raising
variant and returns an `EngineResult`.
"""

from __future__ import annotations

import copy
import inspect
import logging
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Any, Dict, Iterator, List, Mapping, Optional, Tuple

from ..core import amm, invariants, liquidity_pool, margin, perpetual, trade as trade_module
from ..core.effects import Interactions
from ..core.errors import (
    InvariantViolation,
    PerpError,
    PermissionDenied,
    ReentrancyError,
    StateError,
    ValidationError,
)
from ..core.fixed_point import ONE, Round, wdiv
from ..core.oracle import ManualOracle, Oracle, is_fresh, read_prices
from ..core.types import (
    ALL_PERPETUALS,
    POOL_ACCOUNT,
    LiquidationResult,
    LiquidityPoolStorage,
    MarginAccount,
    Option,
    PerpetualState,
    PriceData,
    Privilege,
    TradeFlag,
    TradeQuote,
)
from ..state.access import AccessControl
from ..state.collateral import CollateralAdapter, CollateralToken
from ..state.shares import ShareToken
from ..state.snapshot import pool_to_dict
from .config import EngineConfig

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class EngineResult:
    ok: bool
    value: Any = None
    error: Optional[str] = None
    code: Optional[str] = None


class PerpetualEngine:
    """One liquidity pool with its collateral, share token, oracles and ACL."""

    def __init__(
        self,
        pool: LiquidityPoolStorage,
        collateral: CollateralAdapter,
        share_token: ShareToken,
        oracles: Mapping[str, Oracle],
        access: Optional[AccessControl] = None,
        *,
        max_price_staleness: int = 0,
    ) -> None:
        self.pool = pool
        self.collateral = collateral
        self.share_token = share_token
        self.oracles: Dict[str, Oracle] = dict(oracles)
        self.access = access or AccessControl()
        self.max_price_staleness = max_price_staleness
        self._entered = False

    @classmethod
    def from_config(
        cls,
        config: EngineConfig,
        *,
        token: Optional[CollateralToken] = None,
        oracles: Optional[Mapping[str, Oracle]] = None,
        now: int = 0,
    ) -> "PerpetualEngine":
        """Build an in-memory engine and create every configured perpetual."""
        settings = config.pool
        token = token or CollateralToken(settings.collateral, settings.collateral_decimals)
        adapter = CollateralAdapter(token, settings.address)
        pool = LiquidityPoolStorage(
            operator=settings.operator,
            governor=settings.governor,
            collateral=settings.collateral,
            share_token=settings.share_token,
            scaler=adapter.scaler,
            is_fast_creation_enabled=settings.fast_creation,
            insurance_fund_cap=settings.insurance_fund_cap,
            liquidity_cap=settings.liquidity_cap,
            vault=settings.vault,
            vault_fee_rate=settings.vault_fee_rate,
        )
        all_oracles: Dict[str, Oracle] = dict(oracles or {})
        for p in config.perpetuals:
            if p.oracle not in all_oracles:
                all_oracles[p.oracle] = ManualOracle(p.initial_price, now)
        engine = cls(
            pool,
            adapter,
            ShareToken(settings.share_token),
            all_oracles,
            max_price_staleness=config.max_price_staleness,
        )
        for p in config.perpetuals:
            engine.create_perpetual(settings.operator, p.oracle, p.core, p.risk, now=now)
        return engine

    # ------------------------------------------------------------------
    # Transaction machinery
    # ------------------------------------------------------------------

    @contextmanager
    def _transaction(
        self, now: int, *, sync: bool = True, check_amm: bool = False, dry_run: bool = False
    ) -> Iterator[Tuple[LiquidityPoolStorage, Interactions]]:
        if self._entered:
            raise ReentrancyError("reentrant call")
        self._entered = True
        try:
            work = copy.deepcopy(self.pool)
            fx = Interactions()
            if sync and work.is_running:
                self._sync(work, now)
            amm_safe_before = check_amm and self._is_amm_safe(work)

            yield work, fx

            if work.is_running:
                liquidity_pool.update_funding_rate(work)
            violations = invariants.check_all(work)
            if amm_safe_before and not self._is_amm_safe(work):
                violations.append("inv_amm_safe_after_operation")
            if violations:
                raise InvariantViolation(violations)
            if dry_run:
                return
            self._run_interactions(fx)
            self.pool = work
        finally:
            self._entered = False

    @staticmethod
    def _is_amm_safe(pool: LiquidityPoolStorage) -> bool:
        if not any(p.state == PerpetualState.NORMAL for p in pool.perpetuals):
            return True
        return amm.is_amm_safe(amm.prepare_context(pool, check_maintenance=False), 0)

    def _sync(self, pool: LiquidityPoolStorage, now: int) -> None:
        """Accrue funding, then refresh cached prices of NORMAL markets."""
        for i, perp in enumerate(pool.perpetuals):
            if perp.state == PerpetualState.NORMAL and self._oracle(perp.oracle_id).is_terminated():
                logger.info("oracle %s terminated, perpetual %s -> EMERGENCY", perp.oracle_id, i)
                liquidity_pool.set_emergency_state(pool, i)
        liquidity_pool.update_funding_state(pool, now)
        for perp in pool.perpetuals:
            if perp.state != PerpetualState.NORMAL:
                continue
            oracle = self._oracle(perp.oracle_id)
            if oracle.is_market_closed():
                continue
            mark, index = read_prices(oracle)
            if self.max_price_staleness and not is_fresh(index.time, now, self.max_price_staleness):
                raise ValidationError(f"stale oracle price for perpetual {perp.id}")
            perpetual.update_price(perp, mark, index)

    def _run_interactions(self, fx: Interactions) -> None:
        token_checkpoint = self.collateral.token.checkpoint()
        share_checkpoint = self.share_token.checkpoint()
        try:
            for account, amount in fx.transfers_in:
                self.collateral.transfer_in(account, amount)
            for account, amount in fx.burns:
                self.share_token.burn(account, amount)
            for account, amount in fx.mints:
                self.share_token.mint(account, amount)
            for account, amount in fx.transfers_out:
                self.collateral.transfer_out(account, amount)
        except BaseException:
            self.collateral.token.rollback(token_checkpoint)
            self.share_token.rollback(share_checkpoint)
            raise

    def _oracle(self, oracle_id: str) -> Oracle:
        oracle = self.oracles.get(oracle_id)
        if oracle is None:
            raise ValidationError(f"unknown oracle: {oracle_id}")
        return oracle

    # ------------------------------------------------------------------
    # Authorization helpers
    # ------------------------------------------------------------------

    def _require_operator(self, caller: str) -> None:
        if caller != self.pool.operator:
            raise PermissionDenied("only the operator is allowed")

    def _require_governor(self, caller: str) -> None:
        if caller != self.pool.governor:
            raise PermissionDenied("only the governor is allowed")

    def _require_authorized(self, trader: str, caller: str, privilege: Privilege) -> None:
        if not self.access.is_authorized(trader, caller, privilege):
            raise PermissionDenied(f"{caller} is not authorized to {privilege.name.lower()} for {trader}")

    @staticmethod
    def _require_deadline(now: int, deadline: Optional[int]) -> None:
        if deadline is not None and now > deadline:
            raise ValidationError("deadline exceeded")

    # ------------------------------------------------------------------
    # Pool lifecycle and governance
    # ------------------------------------------------------------------

    def create_perpetual(
        self,
        caller: str,
        oracle_id: str,
        core_parameters: Mapping[str, int],
        risk_parameters: Mapping[str, Option],
        *,
        now: int,
    ) -> int:
        self._require_operator(caller)
        oracle = self._oracle(oracle_id)
        prices: Optional[Tuple[PriceData, PriceData]] = None
        if oracle.mark_price()[0] > 0 and oracle.index_price()[0] > 0:
            prices = read_prices(oracle)
        with self._transaction(now, sync=False) as (pool, _):
            index = liquidity_pool.create_perpetual(
                pool, oracle_id, core_parameters, risk_parameters, now, prices
            )
        return index

    def run_liquidity_pool(self, caller: str, *, now: int) -> None:
        self._require_operator(caller)
        with self._transaction(now, sync=False) as (pool, _):
            for perp in pool.perpetuals:
                if perp.state == PerpetualState.INITIALIZING:
                    perpetual.update_price(perp, *read_prices(self._oracle(perp.oracle_id)))
            liquidity_pool.run_liquidity_pool(pool, now)

    def set_perpetual_parameter(self, caller: str, perpetual_index: int, name: str, value: int, *, now: int) -> None:
        self._require_governor(caller)
        with self._transaction(now) as (pool, _):
            perpetual.set_perpetual_parameter(pool.perpetual(perpetual_index), name, value)

    def set_risk_parameter(
        self,
        caller: str,
        perpetual_index: int,
        name: str,
        value: int,
        min_value: int,
        max_value: int,
        *,
        now: int,
    ) -> None:
        self._require_governor(caller)
        with self._transaction(now) as (pool, _):
            perpetual.set_risk_parameter(pool.perpetual(perpetual_index), name, value, min_value, max_value)

    def update_risk_parameter(self, caller: str, perpetual_index: int, name: str, value: int, *, now: int) -> None:
        self._require_operator(caller)
        with self._transaction(now) as (pool, _):
            perpetual.update_risk_parameter(pool.perpetual(perpetual_index), name, value)

    def set_pool_parameter(self, caller: str, name: str, value: int, *, now: int) -> None:
        self._require_governor(caller)
        if name not in ("insurance_fund_cap", "liquidity_cap", "vault_fee_rate", "is_fast_creation_enabled"):
            raise ValidationError(f"unknown pool parameter: {name}")
        if name != "is_fast_creation_enabled" and value < 0:
            raise ValidationError(f"{name} must be non-negative")
        if name == "vault_fee_rate" and value > perpetual.MAX_FEE_RATE:
            raise ValidationError("vault_fee_rate must be in [0, 1%]")
        with self._transaction(now, sync=False) as (pool, _):
            setattr(pool, name, bool(value) if name == "is_fast_creation_enabled" else value)

    def force_to_set_emergency_state(
        self, caller: str, perpetual_index: int, settlement_price: int, *, now: int
    ) -> None:
        """Governor: freeze a market at an explicit settlement price."""
        self._require_governor(caller)
        with self._transaction(now) as (pool, _):
            liquidity_pool.set_emergency_state(pool, perpetual_index, PriceData(settlement_price, now))

    def set_emergency_state(self, caller: str, perpetual_index: int, *, now: int) -> None:
        """Permissionless: ALL when the pool is below maintenance margin,
        a single market when its oracle is terminated."""
        with self._transaction(now) as (pool, _):
            if perpetual_index == ALL_PERPETUALS:
                liquidity_pool.set_all_perpetuals_to_emergency_state(pool)
                return
            perp = pool.perpetual(perpetual_index)
            if perp.state != PerpetualState.NORMAL:
                # Already moved by the sync step (terminated oracle).
                if not self._oracle(perp.oracle_id).is_terminated():
                    raise StateError(f"perpetual {perpetual_index} is {perp.state.name}")
                return
            if not self._oracle(perp.oracle_id).is_terminated():
                raise StateError("oracle is not terminated")
            liquidity_pool.set_emergency_state(pool, perpetual_index)
        logger.info("emergency requested by %s for perpetual %s", caller, perpetual_index)

    # ------------------------------------------------------------------
    # Trader margin
    # ------------------------------------------------------------------

    def deposit(self, caller: str, perpetual_index: int, trader: str, amount: int, *, now: int) -> None:
        self._require_authorized(trader, caller, Privilege.DEPOSIT)
        with self._transaction(now) as (pool, fx):
            liquidity_pool.deposit(pool, perpetual_index, trader, amount, fx)

    def withdraw(self, caller: str, perpetual_index: int, trader: str, amount: int, *, now: int) -> None:
        self._require_authorized(trader, caller, Privilege.WITHDRAW)
        with self._transaction(now) as (pool, fx):
            liquidity_pool.withdraw(pool, perpetual_index, trader, amount, fx)

    def set_target_leverage(
        self, caller: str, perpetual_index: int, trader: str, target_leverage: int, *, now: int
    ) -> None:
        self._require_authorized(trader, caller, Privilege.TRADE)
        with self._transaction(now) as (pool, _):
            perp = pool.perpetual(perpetual_index)
            if target_leverage != 0:
                max_leverage = wdiv(ONE, perp.initial_margin_rate, Round.FLOOR)
                if not (ONE <= target_leverage <= max_leverage):
                    raise ValidationError("target leverage must be in [1, 1/initial_margin_rate]")
            margin.set_target_leverage(perp, trader, target_leverage)

    # ------------------------------------------------------------------
    # Liquidity
    # ------------------------------------------------------------------

    def add_liquidity(self, caller: str, cash_to_add: int, *, now: int) -> int:
        with self._transaction(now, check_amm=True) as (pool, fx):
            shares = liquidity_pool.add_liquidity(
                pool, caller, cash_to_add, self.share_token.total_supply(), fx
            )
        return shares

    def remove_liquidity(
        self, caller: str, *, share_to_remove: int = 0, cash_to_return: int = 0, now: int
    ) -> amm.Redemption:
        with self._transaction(now, check_amm=True) as (pool, fx):
            redemption = liquidity_pool.remove_liquidity(
                pool,
                caller,
                share_to_remove,
                cash_to_return,
                self.share_token.total_supply(),
                self.share_token.balance_of(caller),
                fx,
            )
        return redemption

    def donate_insurance_fund(self, caller: str, amount: int, *, now: int) -> None:
        with self._transaction(now) as (pool, fx):
            liquidity_pool.donate_insurance_fund(pool, caller, amount, fx)

    # ------------------------------------------------------------------
    # Trading and liquidation
    # ------------------------------------------------------------------

    def trade(
        self,
        caller: str,
        perpetual_index: int,
        trader: str,
        amount: int,
        limit_price: int,
        *,
        now: int,
        deadline: Optional[int] = None,
        referrer: Optional[str] = None,
        flags: TradeFlag = TradeFlag.NONE,
    ) -> int:
        self._require_deadline(now, deadline)
        self._require_authorized(trader, caller, Privilege.TRADE)
        with self._transaction(now, check_amm=True) as (pool, fx):
            filled = trade_module.trade(
                pool, perpetual_index, trader, amount, limit_price, fx, referrer=referrer, flags=flags
            )
        return filled

    def liquidate_by_amm(
        self, caller: str, perpetual_index: int, trader: str, *, now: int, deadline: Optional[int] = None
    ) -> LiquidationResult:
        self._require_deadline(now, deadline)
        with self._transaction(now) as (pool, fx):
            result = trade_module.liquidate_by_amm(pool, perpetual_index, caller, trader, fx)
        return result

    def liquidate_by_trader(
        self,
        caller: str,
        perpetual_index: int,
        liquidator: str,
        trader: str,
        amount: int,
        limit_price: int,
        *,
        now: int,
        deadline: Optional[int] = None,
    ) -> LiquidationResult:
        self._require_deadline(now, deadline)
        self._require_authorized(liquidator, caller, Privilege.LIQUIDATE)
        with self._transaction(now) as (pool, fx):
            result = trade_module.liquidate_by_trader(
                pool, perpetual_index, liquidator, trader, amount, limit_price, fx
            )
        return result

    # ------------------------------------------------------------------
    # Emergency settlement
    # ------------------------------------------------------------------

    def clear(self, caller: str, perpetual_index: int, *, now: int) -> str:
        with self._transaction(now) as (pool, fx):
            trader = liquidity_pool.clear(pool, perpetual_index, caller, fx)
        return trader

    def settle(self, caller: str, perpetual_index: int, trader: str, *, now: int) -> int:
        with self._transaction(now) as (pool, fx):
            amount = liquidity_pool.settle(pool, perpetual_index, trader, fx)
        return amount

    # ------------------------------------------------------------------
    # Read-only queries
    # ------------------------------------------------------------------

    def query_trade(
        self,
        perpetual_index: int,
        trader: str,
        amount: int,
        *,
        now: int,
        referrer: Optional[str] = None,
        flags: TradeFlag = TradeFlag.NONE,
    ) -> TradeQuote:
        """Dry-run a market order and report what the trader would get."""
        with self._transaction(now, dry_run=True) as (pool, fx):
            quote = trade_module.query_trade(
                pool, perpetual_index, trader, amount, fx, referrer=referrer, flags=flags
            )
        return quote

    def get_pool_margin(self) -> Tuple[int, bool]:
        return amm.get_pool_margin_of(self.pool)

    def get_margin_account(self, perpetual_index: int, trader: str) -> Dict[str, Any]:
        perp = self.pool.perpetual(perpetual_index)
        acc: MarginAccount = perp.peek_account(trader)
        price = perpetual.get_mark_price(perp)
        return {
            "cash": acc.cash,
            "position": acc.position,
            "entry_value": acc.entry_value,
            "target_leverage": margin.get_target_leverage(perp, trader),
            "available_cash": margin.get_available_cash(perp, trader),
            "margin": margin.get_margin(perp, trader, price),
            "settleable_margin": margin.get_settleable_margin(perp, trader, price)
            if perp.state == PerpetualState.CLEARED
            else 0,
            "is_initial_margin_safe": margin.is_initial_margin_safe(perp, trader, price),
            "is_maintenance_margin_safe": margin.is_maintenance_margin_safe(perp, trader, price),
            "is_margin_safe": margin.is_margin_safe(perp, trader, price),
        }

    def get_perpetual_info(self, perpetual_index: int) -> Dict[str, Any]:
        perp = self.pool.perpetual(perpetual_index)
        return {
            "state": perp.state.name,
            "oracle": perp.oracle_id,
            "mark_price": perpetual.get_mark_price(perp),
            "index_price": perpetual.get_index_price(perp),
            "funding_rate": perp.funding_rate,
            "unit_accumulative_funding": perp.unit_accumulative_funding,
            "open_interest": perp.open_interest,
            "total_collateral": perp.total_collateral,
            "amm_position": margin.get_position(perp, POOL_ACCOUNT),
            "active_account_count": len(perp.active_accounts),
        }

    def get_liquidity_pool_info(self) -> Dict[str, Any]:
        pool_margin, is_safe = self.get_pool_margin()
        return {
            "is_running": self.pool.is_running,
            "operator": self.pool.operator,
            "governor": self.pool.governor,
            "pool_cash": self.pool.pool_cash,
            "insurance_fund": self.pool.insurance_fund,
            "donated_insurance_fund": self.pool.donated_insurance_fund,
            "insurance_fund_cap": self.pool.insurance_fund_cap,
            "liquidity_cap": self.pool.liquidity_cap,
            "perpetual_count": len(self.pool.perpetuals),
            "share_total_supply": self.share_token.total_supply(),
            "pool_margin": pool_margin,
            "is_amm_safe": is_safe,
        }

    def get_active_accounts(self, perpetual_index: int, begin: int = 0, end: Optional[int] = None) -> List[str]:
        accounts = self.pool.perpetual(perpetual_index).active_accounts
        return accounts.slice(begin, len(accounts) if end is None else end)

    def snapshot(self) -> Dict[str, Any]:
        return pool_to_dict(self.pool)

    # ------------------------------------------------------------------
    # Non-raising dispatch
    # ------------------------------------------------------------------

    _ACTIONS = frozenset(
        {
            "create_perpetual",
            "run_liquidity_pool",
            "set_perpetual_parameter",
            "set_risk_parameter",
            "update_risk_parameter",
            "set_pool_parameter",
            "force_to_set_emergency_state",
            "set_emergency_state",
            "deposit",
            "withdraw",
            "set_target_leverage",
            "add_liquidity",
            "remove_liquidity",
            "donate_insurance_fund",
            "trade",
            "liquidate_by_amm",
            "liquidate_by_trader",
            "clear",
            "settle",
        }
    )

    def execute(self, op: Mapping[str, Any]) -> EngineResult:
        """Run `{"action": name, **kwargs}` and report instead of raising."""
        action = op.get("action")
        if action not in self._ACTIONS:
            return EngineResult(ok=False, error=f"unknown action: {action!r}", code=ValidationError.code)
        kwargs = {k: v for k, v in op.items() if k != "action"}
        method = getattr(self, action)
        try:
            inspect.signature(method).bind(**kwargs)
        except TypeError as exc:
            return EngineResult(ok=False, error=f"bad arguments for {action}: {exc}", code=ValidationError.code)
        try:
            value = method(**kwargs)
        except PerpError as exc:
            logger.info("%s rejected: %s", action, exc)
            return EngineResult(ok=False, error=str(exc), code=exc.code)
        return EngineResult(ok=True, value=value)
