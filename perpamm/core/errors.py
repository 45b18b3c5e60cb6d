"""Exception types for the perpetual AMM engine.

Every failure is raised synchronously; nothing is retried or deferred inside
the engine. The integration facade converts these into ``EngineResult`` codes
for callers that prefer inspection over exceptions.
"""

from __future__ import annotations


class PerpError(Exception):
    """Base class for every engine failure."""

    code = "error"


class ValidationError(PerpError):
    """Caller fault: bad amount, wrong market index, expired deadline, bad flags."""

    code = "validation"


class PermissionDenied(ValidationError):
    """The caller is not authorized to act for the account."""

    code = "permission"


class SafetyViolation(PerpError):
    """A margin, AMM or open-interest safety condition would be broken."""

    code = "safety"


class InvariantViolation(SafetyViolation):
    """Raised when a post-state violates one or more registered invariants."""

    code = "invariant"

    def __init__(self, violations: list[str]) -> None:
        self.violations = violations
        super().__init__(f"invariant violations: {', '.join(violations)}")


class StateError(PerpError):
    """Operation attempted in the wrong lifecycle state."""

    code = "state"


class ReentrancyError(StateError):
    """A state-mutating operation was entered while another one is in flight."""

    code = "reentrancy"


class LiquidityError(PerpError):
    """Not enough pool cash, or shares that have no value."""

    code = "liquidity"


class PerpArithmeticError(PerpError, ArithmeticError):
    """Fixed-point arithmetic failure. Never silently clamped."""

    code = "arithmetic"


class DivisionByZero(PerpArithmeticError, ZeroDivisionError):
    code = "division_by_zero"


class ArithmeticOverflow(PerpArithmeticError, OverflowError):
    code = "overflow"


class InvalidArgument(PerpArithmeticError, ValueError):
    code = "invalid_argument"
