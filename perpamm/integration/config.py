"""
Engine configuration.

Configuration comes from a mapping (usually a YAML file) and can be
overridden by `PERPAMM_*` environment variables. Rates, prices and amounts are
written as human-readable decimals (`"0.001"`, `"100"`) and converted to
18-decimal fixed point exactly.

Example file: `config/pool.example.yaml`.
"""

from __future__ import annotations

import logging
import os
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping, Optional

import yaml

from ..core.errors import ValidationError
from ..core.fixed_point import DECIMALS, from_decimal
from ..core.perpetual import MAX_FEE_RATE
from ..core.types import CORE_PARAMETERS, RISK_PARAMETERS, Option

ENV_PREFIX = "PERPAMM_"

# Parameters that are plain counts rather than fixed-point decimals.
_INTEGER_KEYS = frozenset({"collateral_decimals", "max_price_staleness"})


def _env_int(name: str, default: int, *, lo: int, hi: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return int(default)
    try:
        v = int(raw.strip())
    except ValueError:
        return int(default)
    if v < lo:
        return int(lo)
    if v > hi:
        return int(hi)
    return int(v)


def _env_str(name: str, default: str) -> str:
    raw = os.environ.get(name)
    if raw is None:
        return default
    v = raw.strip()
    return v if v else default


def _env_decimal(name: str, default: int) -> int:
    raw = os.environ.get(name)
    if raw is None or not raw.strip():
        return default
    return from_decimal(raw.strip())


def _option(name: str, raw: Any) -> Option:
    if isinstance(raw, Mapping):
        value = from_decimal(raw["value"])
        return Option(
            value,
            from_decimal(raw.get("min", raw["value"])),
            from_decimal(raw.get("max", raw["value"])),
        )
    value = from_decimal(raw)
    return Option(value, value, value)


@dataclass(frozen=True)
class PerpetualSettings:
    oracle: str
    core: Dict[str, int]
    risk: Dict[str, Option]
    # Initial oracle price for in-memory oracles (demo, tests); 0 when external.
    initial_price: int = 0

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "PerpetualSettings":
        unknown = set(d) - set(CORE_PARAMETERS) - set(RISK_PARAMETERS) - {"oracle", "initial_price"}
        if unknown:
            raise ValidationError(f"unknown perpetual settings: {', '.join(sorted(unknown))}")
        missing = [n for n in (*CORE_PARAMETERS, *RISK_PARAMETERS) if n not in d]
        if missing:
            raise ValidationError(f"missing perpetual settings: {', '.join(missing)}")
        return cls(
            oracle=str(d.get("oracle", "")),
            core={name: from_decimal(d[name]) for name in CORE_PARAMETERS},
            risk={name: _option(name, d[name]) for name in RISK_PARAMETERS},
            initial_price=from_decimal(d.get("initial_price", 0)),
        )


@dataclass(frozen=True)
class PoolSettings:
    operator: str = "operator"
    governor: str = "governor"
    address: str = "pool"
    collateral: str = "USD"
    collateral_decimals: int = DECIMALS
    share_token: str = "PERPAMM-LP"
    insurance_fund_cap: int = 0
    liquidity_cap: int = 0
    vault: str = ""
    vault_fee_rate: int = 0
    fast_creation: bool = False

    def __post_init__(self) -> None:
        if not 0 <= self.vault_fee_rate <= MAX_FEE_RATE:
            raise ValidationError(f"vault_fee_rate must be in [0, 1%]: {self.vault_fee_rate}")

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "PoolSettings":
        known = {f for f in cls.__dataclass_fields__}
        unknown = set(d) - known
        if unknown:
            raise ValidationError(f"unknown pool settings: {', '.join(sorted(unknown))}")
        kwargs: Dict[str, Any] = {}
        for name, raw in d.items():
            if name in ("insurance_fund_cap", "liquidity_cap", "vault_fee_rate"):
                kwargs[name] = from_decimal(raw)
            elif name in _INTEGER_KEYS:
                kwargs[name] = int(raw)
            elif name == "fast_creation":
                kwargs[name] = bool(raw)
            else:
                kwargs[name] = str(raw)
        return cls(**kwargs)


@dataclass(frozen=True)
class EngineConfig:
    pool: PoolSettings = field(default_factory=PoolSettings)
    perpetuals: List[PerpetualSettings] = field(default_factory=list)
    # Seconds; 0 disables the oracle staleness check.
    max_price_staleness: int = 0
    log_level: str = "INFO"

    @classmethod
    def from_dict(cls, d: Mapping[str, Any]) -> "EngineConfig":
        unknown = set(d) - {"pool", "perpetuals", "max_price_staleness", "log_level"}
        if unknown:
            raise ValidationError(f"unknown config sections: {', '.join(sorted(unknown))}")
        return cls(
            pool=PoolSettings.from_dict(d.get("pool") or {}),
            perpetuals=[PerpetualSettings.from_dict(p) for p in d.get("perpetuals") or []],
            max_price_staleness=int(d.get("max_price_staleness", 0)),
            log_level=str(d.get("log_level", "INFO")),
        )

    @classmethod
    def from_file(cls, path: str | Path) -> "EngineConfig":
        with open(path, encoding="utf-8") as fh:
            data = yaml.safe_load(fh) or {}
        if not isinstance(data, Mapping):
            raise ValidationError(f"config file {path} must contain a mapping")
        return cls.from_dict(data)

    def apply_env(self) -> "EngineConfig":
        """Return a copy with `PERPAMM_*` environment overrides applied."""
        pool = replace(
            self.pool,
            operator=_env_str(ENV_PREFIX + "OPERATOR", self.pool.operator),
            governor=_env_str(ENV_PREFIX + "GOVERNOR", self.pool.governor),
            insurance_fund_cap=_env_decimal(ENV_PREFIX + "INSURANCE_FUND_CAP", self.pool.insurance_fund_cap),
            liquidity_cap=_env_decimal(ENV_PREFIX + "LIQUIDITY_CAP", self.pool.liquidity_cap),
        )
        return replace(
            self,
            pool=pool,
            max_price_staleness=_env_int(
                ENV_PREFIX + "MAX_PRICE_STALENESS", self.max_price_staleness, lo=0, hi=365 * 86400
            ),
            log_level=_env_str(ENV_PREFIX + "LOG_LEVEL", self.log_level).upper(),
        )


def load_config(path: Optional[str | Path] = None) -> EngineConfig:
    """Load from `path` (or `PERPAMM_CONFIG`), then apply env overrides."""
    path = path or os.environ.get(ENV_PREFIX + "CONFIG")
    config = EngineConfig.from_file(path) if path else EngineConfig()
    return config.apply_env()


def configure_logging(level: str | int = "INFO") -> None:
    """Install a stderr handler on the package logger. Library code never calls this."""
    logger = logging.getLogger("perpamm")
    if not any(getattr(h, "_perpamm", False) for h in logger.handlers):
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
        handler._perpamm = True  # type: ignore[attr-defined]
        logger.addHandler(handler)
    logger.setLevel(level if isinstance(level, int) else level.upper())
