"""Versioned serialization of the pool state.

Round-trip property (tested): `pool_from_dict(pool_to_dict(p)) == p`.

Layout: the pool record, then the ordered perpetual records, each holding its
margin-account table keyed by account id and its active-account list. Every
value is a plain bool/int/str so the dict can go through JSON unchanged.
"""

from __future__ import annotations

from dataclasses import fields
from typing import Any, Mapping

from ..core.types import (
    CORE_PARAMETERS,
    RISK_PARAMETERS,
    AccountSet,
    LiquidityPoolStorage,
    MarginAccount,
    Option,
    Perpetual,
    PerpetualState,
    PriceData,
)

STATE_VERSION = 1

_POOL_SCALARS: tuple[str, ...] = tuple(
    f.name for f in fields(LiquidityPoolStorage) if f.name != "perpetuals"
)
_PRICE_FIELDS = ("mark_price_data", "index_price_data", "settlement_price_data")
_PERPETUAL_INTS: tuple[str, ...] = (
    "funding_time",
    "funding_rate",
    "unit_accumulative_funding",
    "unit_accumulative_long_funding",
    "unit_accumulative_short_funding",
    *CORE_PARAMETERS,
    "open_interest",
    "total_collateral",
    "redemption_rate_with_position",
    "redemption_rate_without_position",
    "total_margin_with_position",
    "total_margin_without_position",
)
_ACCOUNT_FIELDS: tuple[str, ...] = tuple(f.name for f in fields(MarginAccount))


def _int(name: str, val: Any) -> int:
    if isinstance(val, bool) or not isinstance(val, int):
        raise TypeError(f"state var {name!r} must be int, got {type(val).__name__}")
    return int(val)


def perpetual_to_dict(perp: Perpetual) -> dict[str, Any]:
    out: dict[str, Any] = {
        "id": perp.id,
        "oracle_id": perp.oracle_id,
        "state": perp.state.name,
    }
    for name in _PRICE_FIELDS:
        data: PriceData = getattr(perp, name)
        out[name] = {"price": data.price, "time": data.time}
    for name in _PERPETUAL_INTS:
        out[name] = getattr(perp, name)
    for name in RISK_PARAMETERS:
        opt: Option = getattr(perp, name)
        out[name] = [opt.value, opt.min_value, opt.max_value]
    out["accounts"] = {
        trader: {f: getattr(acc, f) for f in _ACCOUNT_FIELDS}
        for trader, acc in sorted(perp.accounts.items())
    }
    out["active_accounts"] = perp.active_accounts.to_list()
    return out


def perpetual_from_dict(d: Mapping[str, Any]) -> Perpetual:
    perp = Perpetual(
        id=_int("id", d["id"]),
        oracle_id=str(d["oracle_id"]),
        state=PerpetualState[d["state"]],
    )
    for name in _PRICE_FIELDS:
        raw = d[name]
        setattr(perp, name, PriceData(_int(name, raw["price"]), _int(name, raw["time"])))
    for name in _PERPETUAL_INTS:
        setattr(perp, name, _int(name, d[name]))
    for name in RISK_PARAMETERS:
        value, min_value, max_value = d[name]
        setattr(perp, name, Option(_int(name, value), _int(name, min_value), _int(name, max_value)))
    perp.accounts = {
        str(trader): MarginAccount(**{f: _int(f, acc[f]) for f in _ACCOUNT_FIELDS})
        for trader, acc in d["accounts"].items()
    }
    perp.active_accounts = AccountSet([str(t) for t in d["active_accounts"]])
    return perp


def pool_to_dict(pool: LiquidityPoolStorage) -> dict[str, Any]:
    """Serialize the pool to a plain, versioned dict."""
    out: dict[str, Any] = {"version": STATE_VERSION}
    for name in _POOL_SCALARS:
        out[name] = getattr(pool, name)
    out["perpetuals"] = [perpetual_to_dict(p) for p in pool.perpetuals]
    return out


def pool_from_dict(d: Mapping[str, Any]) -> LiquidityPoolStorage:
    """Deserialize a pool dict. Raises ValueError on an unknown version, KeyError on missing fields."""
    version = d.get("version")
    if version != STATE_VERSION:
        raise ValueError(f"unsupported state version: {version!r}")
    kwargs: dict[str, Any] = {}
    for name in _POOL_SCALARS:
        val = d[name]
        if isinstance(val, (bool, str)):
            kwargs[name] = val
        else:
            kwargs[name] = _int(name, val)
    pool = LiquidityPoolStorage(**kwargs)
    pool.perpetuals = [perpetual_from_dict(p) for p in d["perpetuals"]]
    return pool
