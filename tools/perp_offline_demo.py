#!/usr/bin/env python3

from __future__ import annotations

import argparse
import json
import sys
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from perpamm.core.errors import SafetyViolation
from perpamm.core.fixed_point import ONE, Round, to_decimal, wdiv
from perpamm.integration.config import EngineConfig, configure_logging, load_config
from perpamm.integration.engine import PerpetualEngine


def _fmt(x: int) -> str:
    return str(to_decimal(x))


def main(argv: list[str] | None = None) -> int:
    p = argparse.ArgumentParser(description="Run a small offline scenario against an in-memory perpetual pool.")
    p.add_argument("--config", type=Path, default=ROOT / "config" / "pool.example.yaml", help="Pool config (YAML)")
    p.add_argument("--liquidity", type=int, default=100_000, help="Collateral the LP adds (whole units)")
    p.add_argument("--deposit", type=int, default=100, help="Collateral the trader deposits (whole units)")
    p.add_argument("--amount", type=int, default=1, help="Position to open (whole contracts, signed)")
    p.add_argument("--move", type=int, default=5, help="Oracle price move before closing (whole units)")
    p.add_argument("--leverage", type=int, default=8, help="Leverage of the position that gets liquidated")
    p.add_argument("--crash", type=int, default=10, help="Oracle price drop before liquidation (percent)")
    p.add_argument("--snapshot", type=Path, default=None, help="Write the final pool state as JSON")
    args = p.parse_args(argv)

    config: EngineConfig = load_config(args.config)
    configure_logging(config.log_level)
    if not config.perpetuals:
        print("[perp-demo] FAIL: config has no perpetuals")
        return 1

    now = 1_000
    engine = PerpetualEngine.from_config(config, now=now)
    operator = config.pool.operator
    lp, trader = "lp", "trader"
    token = engine.collateral.token
    token.mint(lp, engine.collateral.to_raw(args.liquidity * ONE, Round.CEIL))
    token.mint(trader, engine.collateral.to_raw(args.deposit * ONE, Round.CEIL))

    engine.run_liquidity_pool(operator, now=now)
    shares = engine.add_liquidity(lp, args.liquidity * ONE, now=now)
    print(f"[perp-demo] lp shares minted: {_fmt(shares)}")

    engine.deposit(trader, 0, trader, args.deposit * ONE, now=now)
    quote = engine.query_trade(0, trader, args.amount * ONE, now=now)
    print(f"[perp-demo] quote: price={_fmt(quote.trade_price)} fee={_fmt(quote.total_fee)}")

    limit = quote.trade_price * 2 if args.amount > 0 else 0
    filled = engine.trade(trader, 0, trader, args.amount * ONE, limit, now=now, deadline=now + 60)
    print(f"[perp-demo] opened: {_fmt(filled)}")

    oracle = engine.oracles[config.perpetuals[0].oracle]
    mark = engine.get_perpetual_info(0)["mark_price"]
    now += 3_600
    oracle.set_price(mark + args.move * ONE, now)

    close_limit = 0 if filled > 0 else mark * 10
    engine.trade(trader, 0, trader, -filled, close_limit, now=now, deadline=now + 60)
    account = engine.get_margin_account(0, trader)
    print(f"[perp-demo] trader after close: cash={_fmt(account['cash'])} position={_fmt(account['position'])}")

    if account["available_cash"] > 0:
        engine.withdraw(trader, 0, trader, account["available_cash"], now=now)

    # A leveraged long that the AMM takes over after the price drops.
    whale = "whale"
    token.mint(whale, engine.collateral.to_raw(args.deposit * ONE, Round.CEIL))
    engine.deposit(whale, 0, whale, args.deposit * ONE, now=now)
    mark = engine.get_perpetual_info(0)["mark_price"]
    size = wdiv(args.deposit * ONE * args.leverage, mark, Round.FLOOR)
    engine.trade(whale, 0, whale, size, mark * 2, now=now, deadline=now + 60)
    print(f"[perp-demo] whale opened {_fmt(size)} at {args.leverage}x")

    now += 3_600
    oracle.set_price(mark * (100 - args.crash) // 100, now)
    try:
        result = engine.liquidate_by_amm("keeper", 0, whale, now=now)
    except SafetyViolation as exc:
        print(f"[perp-demo] whale not liquidated: {exc}")
    else:
        print(
            f"[perp-demo] liquidated {_fmt(result.liquidated_amount)} at {_fmt(result.liquidation_price)}"
            f" penalty={_fmt(result.penalty)} to_insurance={_fmt(result.penalty_to_insurance_fund)}"
        )
    info = engine.get_liquidity_pool_info()
    print(f"[perp-demo] pool: margin={_fmt(info['pool_margin'])} insurance={_fmt(info['insurance_fund'])}")
    print(f"[perp-demo] trader wallet: {token.balance_of(trader)} raw")

    if args.snapshot is not None:
        args.snapshot.write_text(json.dumps(engine.snapshot(), indent=2, sort_keys=True) + "\n", encoding="utf-8")
        print(f"[perp-demo] wrote {args.snapshot}")
    print("[perp-demo] OK")
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
