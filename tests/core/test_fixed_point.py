"""Tests for perpamm/core/fixed_point.py."""

from decimal import Decimal

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from perpamm.core.errors import ArithmeticOverflow, DivisionByZero, InvalidArgument
from perpamm.core.fixed_point import (
    INT256_MAX,
    ONE,
    Round,
    div,
    from_decimal,
    sqrt,
    to_decimal,
    wdiv,
    wfrac,
    wln,
    wmul,
    wsqrt,
)


# ---------------------------------------------------------------------------
# Rounding modes
# ---------------------------------------------------------------------------

class TestDivRounding:
    def test_half_up_rounds_half_away_from_zero(self):
        assert div(5, 10) == 1
        assert div(-5, 10) == -1
        assert div(4, 10) == 0
        assert div(-4, 10) == 0

    def test_floor(self):
        assert div(7, 2, Round.FLOOR) == 3
        assert div(-7, 2, Round.FLOOR) == -4

    def test_ceil(self):
        assert div(7, 2, Round.CEIL) == 4
        assert div(-7, 2, Round.CEIL) == -3

    def test_exact_is_unchanged(self):
        for mode in Round:
            assert div(12, 4, mode) == 3
            assert div(-12, 4, mode) == -3

    def test_division_by_zero(self):
        with pytest.raises(DivisionByZero):
            div(1, 0)

    def test_division_by_zero_is_also_a_zero_division_error(self):
        with pytest.raises(ZeroDivisionError):
            wdiv(ONE, 0)


class TestWadOps:
    def test_wmul(self):
        assert wmul(2 * ONE, 3 * ONE) == 6 * ONE
        assert wmul(ONE // 2, ONE // 3) == 166666666666666667

    def test_wmul_floor_vs_ceil(self):
        assert wmul(1, 1, Round.FLOOR) == 0
        assert wmul(1, 1, Round.CEIL) == 1
        assert wmul(-1, 1, Round.FLOOR) == -1

    def test_wdiv(self):
        assert wdiv(ONE, 3 * ONE, Round.FLOOR) == 333333333333333333
        assert wdiv(2 * ONE, 3 * ONE) == 666666666666666667

    def test_wfrac_single_rounding_step(self):
        # 1/3 * 3 would lose precision with two roundings.
        assert wfrac(ONE, 3 * ONE, 3 * ONE) == ONE

    def test_overflow_is_rejected(self):
        with pytest.raises(ArithmeticOverflow):
            wmul(INT256_MAX, 2 * ONE)

    @settings(max_examples=200)
    @given(
        st.integers(min_value=-(10**40), max_value=10**40),
        st.integers(min_value=1, max_value=10**40),
    )
    def test_floor_le_half_up_le_ceil(self, x, y):
        f = wdiv(x, y, Round.FLOOR)
        h = wdiv(x, y)
        c = wdiv(x, y, Round.CEIL)
        assert f <= h <= c
        assert c - f <= 1


class TestSqrt:
    def test_perfect_square(self):
        assert sqrt(144) == 12
        assert wsqrt(4 * ONE) == 2 * ONE

    def test_rounding(self):
        assert sqrt(8, Round.FLOOR) == 2
        assert sqrt(8, Round.CEIL) == 3
        # sqrt(6) = 2.449 -> 2, sqrt(7) = 2.645 -> 3
        assert sqrt(6) == 2
        assert sqrt(7) == 3

    def test_negative_rejected(self):
        with pytest.raises(InvalidArgument):
            sqrt(-1)
        with pytest.raises(ValueError):
            wsqrt(-ONE)

    @settings(max_examples=200)
    @given(st.integers(min_value=0, max_value=10**60))
    def test_floor_sqrt_brackets_value(self, x):
        s = sqrt(x, Round.FLOOR)
        assert s * s <= x < (s + 1) * (s + 1)


class TestLn:
    def test_ln_one_is_zero(self):
        assert wln(ONE) == 0

    def test_ln_e_close_to_one(self):
        e = 2718281828459045235
        assert abs(wln(e) - ONE) < 10**6

    def test_ln_below_one_is_negative(self):
        assert abs(wln(ONE // 2) + 693147180559945309) < 10**6

    def test_non_positive_rejected(self):
        with pytest.raises(InvalidArgument):
            wln(0)


# ---------------------------------------------------------------------------
# Decimal conversion
# ---------------------------------------------------------------------------

class TestFromDecimal:
    def test_exact_conversion(self):
        assert from_decimal("0.001") == 10**15
        assert from_decimal("100") == 100 * ONE
        assert from_decimal(5) == 5 * ONE
        assert from_decimal("-1.5") == -3 * ONE // 2

    def test_many_integer_digits_stay_exact(self):
        assert from_decimal("12345678901234.123456789012345678") == 12345678901234123456789012345678

    def test_too_many_decimals_rejected(self):
        with pytest.raises(InvalidArgument, match="decimals"):
            from_decimal("0.0000000000000000001")

    def test_garbage_rejected(self):
        with pytest.raises(InvalidArgument):
            from_decimal("abc")
        with pytest.raises(InvalidArgument):
            from_decimal("inf")

    def test_bool_rejected(self):
        with pytest.raises(InvalidArgument):
            from_decimal(True)

    def test_to_decimal(self):
        assert to_decimal(1_500_000_000_000_000_000) == Decimal("1.5")
