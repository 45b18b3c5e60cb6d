"""Tests for perpamm/core/perpetual.py: parameters, funding, prices and lifecycle."""

import pytest
from perp_builders import core_params, fund, make_pool, risk_params, w

from perpamm.core import margin, perpetual
from perpamm.core.errors import StateError, ValidationError
from perpamm.core.perpetual import FUNDING_INTERVAL
from perpamm.core.types import POOL_ACCOUNT, PerpetualState, PriceData


# ---------------------------------------------------------------------------
# Parameters
# ---------------------------------------------------------------------------

class TestParameters:
    def test_new_perpetual_starts_initializing(self):
        perp = perpetual.new_perpetual(0, "oracle", core_params(), risk_params())
        assert perp.state == PerpetualState.INITIALIZING

    def test_missing_and_unknown_parameters(self):
        core = core_params()
        del core["keeper_gas_reward"]
        with pytest.raises(ValidationError, match="missing"):
            perpetual.new_perpetual(0, "oracle", core, risk_params())
        with pytest.raises(ValidationError, match="unknown"):
            perpetual.new_perpetual(0, "oracle", core_params(bogus=1), risk_params())

    def test_maintenance_must_not_exceed_initial(self):
        perp = make_pool().perpetuals[0]
        with pytest.raises(ValidationError, match="maintenance_margin_rate"):
            perpetual.set_perpetual_parameter(perp, "maintenance_margin_rate", w("0.2"))

    def test_fee_rates_capped_at_one_percent(self):
        perp = make_pool().perpetuals[0]
        perpetual.set_perpetual_parameter(perp, "lp_fee_rate", w("0.01"))
        with pytest.raises(ValidationError, match="1%"):
            perpetual.set_perpetual_parameter(perp, "operator_fee_rate", w("0.02"))

    def test_unknown_parameter(self):
        perp = make_pool().perpetuals[0]
        with pytest.raises(ValidationError):
            perpetual.set_perpetual_parameter(perp, "half_spread", 1)
        with pytest.raises(ValidationError):
            perpetual.update_risk_parameter(perp, "keeper_gas_reward", 1)

    def test_close_slippage_must_not_exceed_open(self):
        perp = make_pool().perpetuals[0]
        with pytest.raises(ValidationError, match="close_slippage_factor"):
            perpetual.set_risk_parameter(perp, "close_slippage_factor", w("0.002"), 0, w(1))

    def test_amm_leverage_bounded_by_initial_margin(self):
        perp = make_pool().perpetuals[0]
        perpetual.set_risk_parameter(perp, "amm_max_leverage", w(10), w(1), w(20))
        with pytest.raises(ValidationError, match="amm_max_leverage"):
            perpetual.set_risk_parameter(perp, "amm_max_leverage", w(11), w(1), w(20))


class TestRiskParameterTiers:
    def test_operator_moves_value_within_bounds(self):
        perp = make_pool().perpetuals[0]
        perpetual.set_risk_parameter(perp, "half_spread", w("0.001"), 0, w("0.002"))
        perpetual.update_risk_parameter(perp, "half_spread", w("0.002"))
        assert perp.half_spread.value == w("0.002")

    def test_operator_cannot_widen_bounds(self):
        perp = make_pool().perpetuals[0]
        perpetual.set_risk_parameter(perp, "half_spread", w("0.001"), 0, w("0.002"))
        with pytest.raises(ValidationError, match="out of range"):
            perpetual.update_risk_parameter(perp, "half_spread", w("0.003"))
        assert perp.half_spread.value == w("0.001")
        assert perp.half_spread.max_value == w("0.002")

    def test_governor_widens_bounds(self):
        perp = make_pool().perpetuals[0]
        perpetual.set_risk_parameter(perp, "half_spread", w("0.003"), 0, w("0.005"))
        assert (perp.half_spread.value, perp.half_spread.max_value) == (w("0.003"), w("0.005"))


# ---------------------------------------------------------------------------
# Funding
# ---------------------------------------------------------------------------

class TestFundingState:
    def test_one_interval_accrues_rate_times_index(self):
        perp = make_pool().perpetuals[0]
        perp.funding_rate = w("0.001")
        start = perp.funding_time
        perpetual.update_funding_state(perp, start + FUNDING_INTERVAL)
        assert perp.unit_accumulative_funding == w("0.1")
        assert perp.unit_accumulative_long_funding == w("0.1")
        assert perp.unit_accumulative_short_funding == 0
        assert perp.funding_time == start + FUNDING_INTERVAL

    def test_negative_rate_goes_to_short_accumulator(self):
        perp = make_pool().perpetuals[0]
        perp.funding_rate = -w("0.001")
        perpetual.update_funding_state(perp, perp.funding_time + FUNDING_INTERVAL // 2)
        assert perp.unit_accumulative_funding == -w("0.05")
        assert perp.unit_accumulative_short_funding == -w("0.05")
        assert perp.unit_accumulative_long_funding == 0

    def test_stale_or_duplicate_call_is_noop(self):
        perp = make_pool().perpetuals[0]
        perp.funding_rate = w("0.001")
        start = perp.funding_time
        perpetual.update_funding_state(perp, start)
        perpetual.update_funding_state(perp, start - 100)
        assert perp.unit_accumulative_funding == 0
        assert perp.funding_time == start


class TestFundingRate:
    def _short_amm(self, **risk):
        pool = make_pool(risk=risk)
        perp = pool.perpetuals[0]
        margin.update_margin(perp, POOL_ACCOUNT, -w(10), w(1000), counterparty=None)
        return perp

    def test_amm_short_pays_longs_less(self):
        perp = self._short_amm(funding_rate_factor=w("0.001"))
        # -100 * (-10) / 1000 * 0.001
        perpetual.update_funding_rate(perp, w(1000))
        assert perp.funding_rate == w("0.001")

    def test_clamped_to_limit(self):
        perp = self._short_amm(funding_rate_factor=w("0.01"))
        perpetual.update_funding_rate(perp, w(1000))
        assert perp.funding_rate == w("0.005")

    def test_zero_pool_margin_forces_limit(self):
        perp = self._short_amm(funding_rate_factor=w("0.001"))
        perpetual.update_funding_rate(perp, 0)
        assert perp.funding_rate == w("0.005")

        pool = make_pool(risk={"funding_rate_factor": w("0.001")})
        long_amm = pool.perpetuals[0]
        margin.update_margin(long_amm, POOL_ACCOUNT, w(10), -w(1000), counterparty=None)
        perpetual.update_funding_rate(long_amm, 0)
        assert long_amm.funding_rate == -w("0.005")

    def test_base_rate_only_when_one_sided_with_open_interest(self):
        perp = self._short_amm(funding_rate_factor=w("0.001"), base_funding_rate=w("0.0001"))
        perpetual.update_funding_rate(perp, w(1000))
        assert perp.funding_rate == w("0.001")

        perp.open_interest = w(10)
        perpetual.update_funding_rate(perp, w(1000))
        assert perp.funding_rate == w("0.0011")

    def test_base_rate_skipped_when_amm_on_the_other_side(self):
        pool = make_pool(risk={"funding_rate_factor": w("0.001"), "base_funding_rate": w("0.0001")})
        perp = pool.perpetuals[0]
        margin.update_margin(perp, POOL_ACCOUNT, w(10), -w(1000), counterparty=None)
        perpetual.update_funding_rate(perp, w(1000))
        assert perp.funding_rate == -w("0.001")

    def test_flat_amm_has_no_funding(self):
        perp = make_pool().perpetuals[0]
        perpetual.update_funding_rate(perp, w(1000))
        assert perp.funding_rate == 0


# ---------------------------------------------------------------------------
# Prices
# ---------------------------------------------------------------------------

class TestPrices:
    def test_older_price_is_ignored(self):
        perp = make_pool(now=1_000).perpetuals[0]
        perpetual.update_price(perp, PriceData(w(90), 999), PriceData(w(90), 1_001))
        assert perp.mark_price_data == PriceData(w(100), 1_000)
        assert perp.index_price_data == PriceData(w(90), 1_001)

    def test_same_timestamp_is_accepted(self):
        perp = make_pool(now=1_000).perpetuals[0]
        perpetual.update_price(perp, PriceData(w(95), 1_000), PriceData(w(95), 1_000))
        assert perpetual.get_mark_price(perp) == w(95)

    def test_non_positive_price_rejected(self):
        perp = make_pool().perpetuals[0]
        with pytest.raises(ValidationError):
            perpetual.update_price(perp, PriceData(0, 2_000), PriceData(w(1), 2_000))

    def test_frozen_markets_use_settlement_price(self):
        pool = make_pool()
        perp = pool.perpetuals[0]
        fund(perp, "alice", w(1))
        perpetual.set_emergency_state(perp, PriceData(w(80), 1_500))
        assert perpetual.get_mark_price(perp) == w(80)
        assert perpetual.get_index_price(perp) == w(80)


# ---------------------------------------------------------------------------
# Lifecycle
# ---------------------------------------------------------------------------

class TestLifecycle:
    def test_transitions_are_forward_only(self):
        perp = make_pool().perpetuals[0]
        with pytest.raises(StateError):
            perpetual.set_normal_state(perp, 0)
        with pytest.raises(StateError):
            perpetual.set_cleared_state(perp)
        perpetual.set_emergency_state(perp)
        with pytest.raises(StateError):
            perpetual.set_emergency_state(perp)
        perpetual.set_cleared_state(perp)
        assert perp.state == PerpetualState.CLEARED
        with pytest.raises(StateError):
            perpetual.set_emergency_state(perp)

    def test_clear_only_active_accounts(self):
        perp = make_pool().perpetuals[0]
        fund(perp, "alice", w(1))
        perpetual.set_emergency_state(perp)
        with pytest.raises(ValidationError):
            perpetual.clear(perp, "bob")
        assert perpetual.clear(perp, "alice") is True
        assert perp.total_margin_without_position == w(1)

    def test_negative_margin_is_not_counted(self):
        perp = make_pool().perpetuals[0]
        margin.update_margin(perp, "alice", w(1), -w(110), counterparty=None)
        perpetual.set_emergency_state(perp)
        perpetual.count_margin(perp, "alice")
        assert perp.total_margin_with_position == 0

    def test_redemption_rates_when_collateral_covers_flat_accounts(self):
        perp = make_pool().perpetuals[0]
        perp.total_collateral = w(100)
        perp.total_margin_without_position = w(40)
        perp.total_margin_with_position = w(120)
        perpetual.settle_collateral(perp)
        assert perp.redemption_rate_without_position == w(1)
        assert perp.redemption_rate_with_position == w("0.5")

    def test_redemption_rates_when_collateral_is_short(self):
        perp = make_pool().perpetuals[0]
        perp.total_collateral = w(30)
        perp.total_margin_without_position = w(40)
        perp.total_margin_with_position = w(120)
        perpetual.settle_collateral(perp)
        assert perp.redemption_rate_without_position == w("0.75")
        assert perp.redemption_rate_with_position == 0

    def test_settle_requires_cleared(self):
        perp = make_pool().perpetuals[0]
        with pytest.raises(StateError):
            perpetual.settle(perp, "alice")
