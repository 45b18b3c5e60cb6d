"""Tests for perpamm/core/trade.py: trades, fees and liquidations."""

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st
from perp_builders import fund, make_pool, w

from perpamm.core import amm, margin, trade
from perpamm.core.effects import Interactions
from perpamm.core.errors import SafetyViolation, StateError, ValidationError
from perpamm.core.types import POOL_ACCOUNT, Perpetual, PerpetualState, PriceData, TradeFlag


def set_price(perp: Perpetual, price: int, now: int = 2_000) -> None:
    perp.mark_price_data = PriceData(price, now)
    perp.index_price_data = PriceData(price, now)


def open_against_pool(perp: Perpetual, trader: str, position: int, price: int) -> None:
    """Book a position at `price` with the AMM as counterparty, bypassing the quote."""
    value = position * price // 10**18
    margin.update_margin(perp, POOL_ACCOUNT, -position, value, counterparty=None)
    margin.update_margin(perp, trader, position, -value, counterparty=POOL_ACCOUNT)


# ---------------------------------------------------------------------------
# Trade
# ---------------------------------------------------------------------------

class TestTrade:
    def test_open_long_at_ask(self):
        pool = make_pool(pool_cash=w(1_000_000))
        perp = pool.perpetuals[0]
        fund(perp, "alice", w(200))

        filled = trade.trade(pool, 0, "alice", w(10), w(101), Interactions())
        assert filled == w(10)
        acc = perp.accounts["alice"]
        assert acc.position == w(10)
        assert acc.cash == w(200) - w(1001)
        assert margin.get_position(perp, POOL_ACCOUNT) == -w(10)
        assert perp.open_interest == w(10)

    def test_amm_is_rebalanced_to_initial_margin(self):
        pool = make_pool(pool_cash=w(1_000_000))
        perp = pool.perpetuals[0]
        fund(perp, "alice", w(200))
        trade.trade(pool, 0, "alice", w(10), w(101), Interactions())
        # AMM margin 1 after the fill, initial margin 100: 99 comes from the pool.
        assert pool.pool_cash == w(1_000_000) - w(99)
        assert margin.get_cash(perp, POOL_ACCOUNT) == w(1100)
        assert perp.total_collateral == w(299)

    def test_open_short_at_bid(self):
        pool = make_pool(pool_cash=w(1_000_000))
        perp = pool.perpetuals[0]
        fund(perp, "alice", w(200))
        assert trade.trade(pool, 0, "alice", -w(10), w(99), Interactions()) == -w(10)
        assert perp.accounts["alice"].cash == w(200) + w(999)
        # the AMM is long now
        assert perp.open_interest == w(10)

    def test_price_worse_than_limit_rejected(self):
        pool = make_pool(pool_cash=w(1_000_000))
        fund(pool.perpetuals[0], "alice", w(200))
        with pytest.raises(SafetyViolation, match="limit"):
            trade.trade(pool, 0, "alice", w(10), w(100), Interactions())
        with pytest.raises(SafetyViolation, match="limit"):
            trade.trade(pool, 0, "alice", -w(10), w(100), Interactions())

    def test_market_order_ignores_limit(self):
        pool = make_pool(pool_cash=w(1_000_000))
        fund(pool.perpetuals[0], "alice", w(200))
        filled = trade.trade(pool, 0, "alice", w(10), 0, Interactions(), flags=TradeFlag.MARKET_ORDER)
        assert filled == w(10)

    def test_zero_amount_and_reserved_account_rejected(self):
        pool = make_pool(pool_cash=w(1_000_000))
        with pytest.raises(ValidationError):
            trade.trade(pool, 0, "alice", 0, w(100), Interactions())
        with pytest.raises(ValidationError):
            trade.trade(pool, 0, POOL_ACCOUNT, w(1), w(200), Interactions())

    def test_unsafe_after_open_rejected(self):
        pool = make_pool(pool_cash=w(1_000_000))
        fund(pool.perpetuals[0], "bob", w(1))
        with pytest.raises(SafetyViolation, match="unsafe"):
            trade.trade(pool, 0, "bob", w(1), w(200), Interactions())

    def test_open_interest_cap(self):
        # limit = 0.0001 * 1,000,000 / 100 = 1 contract
        pool = make_pool(pool_cash=w(1_000_000), core={"max_open_interest_rate": w("0.0001")})
        fund(pool.perpetuals[0], "alice", w(1000))
        with pytest.raises(SafetyViolation, match="open interest"):
            trade.trade(pool, 0, "alice", w(2), w(200), Interactions())

    def test_market_must_be_normal(self):
        pool = make_pool(pool_cash=w(1_000_000))
        pool.perpetuals[0].state = PerpetualState.EMERGENCY
        with pytest.raises(StateError, match="expected NORMAL"):
            trade.trade(pool, 0, "alice", w(1), w(200), Interactions())

    def test_oversized_order_needs_partial_fill_flag(self):
        # Pool margin 1000 at 5x AMM leverage: the AMM can go at most 50 short.
        pool = make_pool(pool_cash=w(1000))
        perp = pool.perpetuals[0]
        fund(perp, "alice", w(1000))
        with pytest.raises(SafetyViolation, match="max amount"):
            trade.trade(pool, 0, "alice", w(80), 0, Interactions(), flags=TradeFlag.MARKET_ORDER)

        flags = TradeFlag.MARKET_ORDER | TradeFlag.PARTIAL_FILL
        filled = trade.trade(pool, 0, "alice", w(80), 0, Interactions(), flags=flags)
        assert filled == w(50)
        assert margin.get_position(perp, "alice") == w(50)
        assert margin.get_position(perp, POOL_ACCOUNT) == -w(50)

    def test_unfunded_trader_still_gets_a_quote(self):
        pool = make_pool(pool_cash=w(1_000_000))
        quote = trade.query_trade(pool, 0, "carol", w(1), Interactions())
        assert quote.delta_position == w(1)
        assert quote.trade_price == w("100.1")
        with pytest.raises(SafetyViolation, match="unsafe"):
            trade.trade(make_pool(pool_cash=w(1_000_000)), 0, "carol", w(1), w(200), Interactions())


class TestCloseOnly:
    def _long_pool(self):
        pool = make_pool(pool_cash=w(1_000_000))
        fund(pool.perpetuals[0], "alice", w(200))
        trade.trade(pool, 0, "alice", w(10), w(101), Interactions())
        return pool

    def test_amount_clamped_to_position(self):
        pool = self._long_pool()
        filled = trade.trade(pool, 0, "alice", -w(15), w(90), Interactions(), flags=TradeFlag.CLOSE_ONLY)
        assert filled == -w(10)
        assert margin.get_position(pool.perpetuals[0], "alice") == 0
        assert pool.perpetuals[0].open_interest == 0

    def test_same_side_rejected(self):
        pool = self._long_pool()
        with pytest.raises(ValidationError):
            trade.trade(pool, 0, "alice", w(1), w(200), Interactions(), flags=TradeFlag.CLOSE_ONLY)

    def test_flat_account_rejected(self):
        pool = make_pool(pool_cash=w(1_000_000))
        with pytest.raises(ValidationError):
            trade.trade(pool, 0, "bob", -w(1), 0, Interactions(), flags=TradeFlag.CLOSE_ONLY)


class TestTradeFees:
    def _fee_pool(self):
        pool = make_pool(
            pool_cash=w(1_000_000),
            core={
                "lp_fee_rate": w("0.0007"),
                "operator_fee_rate": w("0.0001"),
                "referral_rebate_rate": w("0.2"),
            },
        )
        pool.vault = "vault"
        pool.vault_fee_rate = w("0.0002")
        fund(pool.perpetuals[0], "alice", w(200))
        return pool

    def test_fees_charged_on_notional(self):
        pool = self._fee_pool()
        perp = pool.perpetuals[0]
        fx = Interactions()
        trade.trade(pool, 0, "alice", w(10), w(101), fx)
        # notional 1001: lp 0.7007, operator 0.1001, vault 0.2002
        assert perp.accounts["alice"].cash == w(200) - w(1001) - w("1.001")
        assert ("operator", w("0.1001")) in fx.transfers_out
        assert ("vault", w("0.2002")) in fx.transfers_out

    def test_referrer_rebate_comes_out_of_lp_and_operator_fees(self):
        pool = self._fee_pool()
        fx = Interactions()
        trade.trade(pool, 0, "alice", w(10), w(101), fx, referrer="ref")
        assert ("ref", w("0.16016")) in fx.transfers_out
        assert ("operator", w("0.08008")) in fx.transfers_out
        assert pool.perpetuals[0].accounts["alice"].cash == w(200) - w(1001) - w("1.001")


class TestTargetLeverage:
    def test_open_deposits_to_target(self):
        pool = make_pool(pool_cash=w(1_000_000))
        perp = pool.perpetuals[0]
        fx = Interactions()
        trade.trade(pool, 0, "alice", w(1), w(101), fx, flags=TradeFlag.USE_TARGET_LEVERAGE)
        # 100 notional at 5x needs 20 of margin; the fill left -0.1.
        assert fx.transfers_in == [("alice", w("20.1"))]
        assert margin.get_margin(perp, "alice", w(100)) == w(20)

    def test_close_to_flat_withdraws_everything(self):
        pool = make_pool(pool_cash=w(1_000_000))
        perp = pool.perpetuals[0]
        trade.trade(pool, 0, "alice", w(1), w(101), Interactions(), flags=TradeFlag.USE_TARGET_LEVERAGE)
        fx = Interactions()
        trade.trade(pool, 0, "alice", -w(1), w(99), fx, flags=TradeFlag.USE_TARGET_LEVERAGE)
        assert perp.accounts["alice"].cash == 0
        assert [account for account, _ in fx.transfers_out] == ["alice"]
        assert "alice" not in perp.active_accounts


@settings(max_examples=40, deadline=None)
@given(st.integers(min_value=1, max_value=20), st.booleans())
def test_trade_cash_is_conserved(units, is_long):
    pool = make_pool(
        pool_cash=w(1_000_000),
        core={"lp_fee_rate": w("0.0007"), "operator_fee_rate": w("0.0001")},
    )
    perp = pool.perpetuals[0]
    fund(perp, "alice", w(1000))
    trader_before = perp.accounts["alice"].cash
    amm_before = margin.get_cash(perp, POOL_ACCOUNT) + pool.pool_cash

    fx = Interactions()
    quote = trade.query_trade(pool, 0, "alice", w(units) if is_long else -w(units), fx)
    leaving = sum(amount for _, amount in fx.transfers_out)
    amm_after = margin.get_cash(perp, POOL_ACCOUNT) + pool.pool_cash

    assert perp.accounts["alice"].cash == trader_before + quote.delta_cash - quote.total_fee
    assert amm_after - amm_before == -quote.delta_cash + quote.total_fee - leaving
    assert amm.is_amm_safe(amm.prepare_context(pool), 0)


# ---------------------------------------------------------------------------
# Liquidation
# ---------------------------------------------------------------------------

def _unsafe_long_pool(cash: int, price: int):
    """alice: long 5 opened at 100 with `cash` of equity, marked at `price`."""
    pool = make_pool(
        pool_cash=w(1_000_000),
        core={"maintenance_margin_rate": w("0.03"), "keeper_gas_reward": w(2)},
    )
    pool.insurance_fund_cap = w(1000)
    perp = pool.perpetuals[0]
    fund(perp, "alice", cash)
    open_against_pool(perp, "alice", w(5), w(100))
    set_price(perp, price)
    return pool, perp


class TestLiquidateByAMM:
    def test_amm_takes_over_the_position(self):
        pool, perp = _unsafe_long_pool(w(50), w(93))
        assert not margin.is_maintenance_margin_safe(perp, "alice", w(93))

        fx = Interactions()
        result = trade.liquidate_by_amm(pool, 0, "keeper", "alice", fx)
        assert result.liquidated_amount == -w(5)
        assert margin.get_position(perp, "alice") == 0
        assert margin.get_position(perp, POOL_ACCOUNT) == 0
        assert fx.transfers_out == [("keeper", w(2))]
        # 93 * 5 * 1%, split by insurance_fund_rate 0.5
        assert result.penalty == w("4.65")
        assert result.penalty_to_insurance_fund == w("2.325")
        assert result.penalty_to_liquidator == w("2.325")
        assert result.penalty_to_insurance_fund + result.penalty_to_liquidator == result.penalty
        assert pool.insurance_fund == w("2.325")

    def test_fill_is_at_the_bid(self):
        pool, perp = _unsafe_long_pool(w(50), w(93))
        cash_before = perp.accounts["alice"].cash
        trade.liquidate_by_amm(pool, 0, "keeper", "alice", Interactions())
        proceeds = perp.accounts["alice"].cash - cash_before + w(2) + w("4.65")
        assert w(93) * 5 * 95 // 100 < proceeds < w(93) * 5

    def test_safe_trader_cannot_be_liquidated(self):
        pool, _ = _unsafe_long_pool(w(50), w(100))
        with pytest.raises(SafetyViolation, match="safe"):
            trade.liquidate_by_amm(pool, 0, "keeper", "alice", Interactions())


class TestLiquidateByTrader:
    def test_liquidator_takes_position_at_mark(self):
        pool, perp = _unsafe_long_pool(w(50), w(93))
        fund(perp, "bob", w(1000))
        result = trade.liquidate_by_trader(pool, 0, "bob", "alice", w(5), w(100), Interactions())
        assert result.liquidation_price == w(93)
        assert margin.get_position(perp, "bob") == w(5)
        assert perp.accounts["alice"].cash == w(15) - w("4.65")
        assert perp.accounts["bob"].cash == w(1000) - w(465) + w("2.325")
        assert result.penalty_to_insurance_fund + result.penalty_to_liquidator == result.penalty

    def test_penalty_capped_by_remaining_margin(self):
        # margin after liquidation: 5 * 90.2 - 450 = 1 < 90.2 * 5 * 1%
        pool, perp = _unsafe_long_pool(w(50), w("90.2"))
        fund(perp, "bob", w(1000))
        result = trade.liquidate_by_trader(pool, 0, "bob", "alice", w(5), w(100), Interactions())
        assert result.penalty == w(1)
        assert perp.accounts["alice"].cash == 0

    def test_partial_liquidation_charges_the_fraction(self):
        pool, perp = _unsafe_long_pool(w(50), w(93))
        fund(perp, "bob", w(1000))
        result = trade.liquidate_by_trader(pool, 0, "bob", "alice", w(2), w(100), Interactions())
        assert result.penalty == w("1.86")
        assert margin.get_position(perp, "alice") == w(3)

    def test_invalid_amounts(self):
        pool, perp = _unsafe_long_pool(w(50), w(93))
        fund(perp, "bob", w(1000))
        with pytest.raises(ValidationError):
            trade.liquidate_by_trader(pool, 0, "bob", "alice", -w(5), 0, Interactions())
        with pytest.raises(ValidationError):
            trade.liquidate_by_trader(pool, 0, "bob", "alice", w(6), w(100), Interactions())
        with pytest.raises(ValidationError):
            trade.liquidate_by_trader(pool, 0, "alice", "alice", w(5), w(100), Interactions())

    def test_limit_price(self):
        pool, perp = _unsafe_long_pool(w(50), w(93))
        fund(perp, "bob", w(1000))
        with pytest.raises(SafetyViolation):
            trade.liquidate_by_trader(pool, 0, "bob", "alice", w(5), w(92), Interactions())


class TestBankruptLiquidation:
    def test_insurance_fund_absorbs_shortfall(self):
        # margin at 80: 400 - 490 = -90
        pool, perp = _unsafe_long_pool(w(10), w(80))
        pool.insurance_fund = w(100)
        fund(perp, "bob", w(1000))
        result = trade.liquidate_by_trader(pool, 0, "bob", "alice", w(5), w(100), Interactions())
        assert result.penalty == -w(90)
        assert result.penalty_to_insurance_fund == -w(90)
        assert result.penalty_to_liquidator == 0
        assert pool.insurance_fund == w(10)
        assert perp.accounts["alice"].cash == 0
        assert "alice" not in perp.active_accounts
        assert perp.state == PerpetualState.NORMAL

    def test_donated_fund_backs_the_insurance_fund(self):
        pool, perp = _unsafe_long_pool(w(10), w(80))
        pool.insurance_fund = w(40)
        pool.donated_insurance_fund = w(100)
        fund(perp, "bob", w(1000))
        trade.liquidate_by_trader(pool, 0, "bob", "alice", w(5), w(100), Interactions())
        assert (pool.insurance_fund, pool.donated_insurance_fund) == (0, w(50))

    def test_shortfall_beyond_funds_is_truncated(self):
        # margin at 68: 340 - 490 = -150 against 100 of insurance
        pool, perp = _unsafe_long_pool(w(10), w(68))
        pool.insurance_fund = w(100)
        fund(perp, "bob", w(1000))
        result = trade.liquidate_by_trader(pool, 0, "bob", "alice", w(5), w(100), Interactions())
        assert result.penalty == -w(100)
        assert result.penalty_to_insurance_fund == -w(100)
        assert pool.insurance_fund == 0
        assert pool.donated_insurance_fund == 0
        assert perp.accounts["alice"].cash == -w(50)
        assert perp.state == PerpetualState.EMERGENCY
        assert perp.settlement_price_data.price == w(68)
