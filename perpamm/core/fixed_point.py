"""Signed 18-decimal fixed-point arithmetic with explicit rounding.

Every function is stateless and operates on plain Python ints holding
``value * 10**18``. Results are bounded to the signed 256-bit range so a value
that could not be stored is rejected instead of silently wrapping.

Rounding is part of the contract, not cosmetics:
- ``Round.HALF_UP`` (default) rounds half away from zero: 0.5 -> 1, -0.5 -> -1,
- ``Round.FLOOR`` rounds toward negative infinity,
- ``Round.CEIL`` rounds toward positive infinity.

Pool-margin and cash-to-return paths use FLOOR so the pool never pays out more
than it holds. CEIL is used where overstating a charge to the trader is the
safe direction.
"""

from __future__ import annotations

import math
from decimal import Decimal, InvalidOperation, localcontext
from enum import Enum, unique

from .errors import ArithmeticOverflow, DivisionByZero, InvalidArgument

DECIMALS = 18
ONE = 10**DECIMALS
INT256_MAX = 2**255 - 1
INT256_MIN = -(2**255)

# ln(2) in fixed point, truncated.
LN2 = 693_147_180_559_945_309
_LOG2_FRACTION_BITS = 64


@unique
class Round(Enum):
    HALF_UP = "half_up"
    FLOOR = "floor"
    CEIL = "ceil"


def check_int256(x: int) -> int:
    """Return *x* unchanged, or raise ``ArithmeticOverflow`` outside int256."""
    if x > INT256_MAX or x < INT256_MIN:
        raise ArithmeticOverflow(f"int256 overflow: {x}")
    return x


def mul(x: int, y: int) -> int:
    """Checked integer product (no rescaling)."""
    return check_int256(x * y)


def div(x: int, y: int, rounding: Round = Round.HALF_UP) -> int:
    """Integer ``x / y`` rounded per *rounding*."""
    if y == 0:
        raise DivisionByZero("division by zero")
    if rounding is Round.FLOOR:
        return check_int256(x // y)
    if rounding is Round.CEIL:
        return check_int256(-((-x) // y))
    negative = (x < 0) != (y < 0)
    q, r = divmod(abs(x), abs(y))
    if 2 * r >= abs(y):
        q += 1
    return check_int256(-q if negative else q)


def wmul(x: int, y: int, rounding: Round = Round.HALF_UP) -> int:
    """``x * y / ONE``."""
    return div(mul(x, y), ONE, rounding)


def wdiv(x: int, y: int, rounding: Round = Round.HALF_UP) -> int:
    """``x * ONE / y``."""
    return div(mul(x, ONE), y, rounding)


def wfrac(x: int, y: int, z: int, rounding: Round = Round.HALF_UP) -> int:
    """``x * y / z`` with a single rounding step."""
    return div(mul(x, y), z, rounding)


def sqrt(x: int, rounding: Round = Round.HALF_UP) -> int:
    """Integer square root of a raw (unscaled) integer."""
    if x < 0:
        raise InvalidArgument(f"sqrt of negative value: {x}")
    s = math.isqrt(x)
    rem = x - s * s
    if rem == 0 or rounding is Round.FLOOR:
        return s
    if rounding is Round.CEIL:
        return s + 1
    # (s + 0.5)^2 = s^2 + s + 0.25
    return s + 1 if rem > s else s


def wsqrt(x: int, rounding: Round = Round.HALF_UP) -> int:
    """Square root of a fixed-point value."""
    if x < 0:
        raise InvalidArgument(f"sqrt of negative value: {x}")
    return sqrt(mul(x, ONE), rounding)


def wln(x: int) -> int:
    """Natural logarithm of a fixed-point value, truncated toward zero.

    Binary logarithm by repeated squaring, then scaled by ln(2).
    """
    if x <= 0:
        raise InvalidArgument(f"ln of non-positive value: {x}")
    k = x.bit_length() - ONE.bit_length()
    y = x >> k if k >= 0 else x << -k
    while y >= 2 * ONE:
        y >>= 1
        k += 1
    while y < ONE:
        y <<= 1
        k -= 1

    result = k * ONE
    bit = ONE >> 1
    for _ in range(_LOG2_FRACTION_BITS):
        if bit == 0:
            break
        y = (y * y) // ONE
        if y >= 2 * ONE:
            y >>= 1
            result += bit
        bit >>= 1
    return wmul(result, LN2, Round.FLOOR if result >= 0 else Round.CEIL)


def from_decimal(value: str | int | Decimal) -> int:
    """Convert a human-readable number (``"0.001"``) to fixed point exactly."""
    if isinstance(value, bool):
        raise InvalidArgument("bool is not a number")
    try:
        d = Decimal(str(value).strip())
    except InvalidOperation as exc:
        raise InvalidArgument(f"not a decimal number: {value!r}") from exc
    if not d.is_finite():
        raise InvalidArgument(f"not a finite number: {value!r}")
    with localcontext() as ctx:
        ctx.prec = 100
        scaled = d * ONE
        if scaled != scaled.to_integral_value():
            raise InvalidArgument(f"more than {DECIMALS} decimals: {value!r}")
    return check_int256(int(scaled))


def to_decimal(x: int) -> Decimal:
    """Fixed point back to ``Decimal`` (display and logging only)."""
    with localcontext() as ctx:
        ctx.prec = 100
        return Decimal(x) / Decimal(ONE)
