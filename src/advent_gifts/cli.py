from __future__ import annotations

import argparse
import asyncio
import json
import logging
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from .clock import SeasonCalendar, SystemClock
from .commitment import create_commitment, load_entries, load_json, reveal_day, write_artifacts
from .config import Settings
from .engine import GiftEngine
from .errors import GiftError, IntegrityError
from .hourly import HourlyDistributor
from .ledger_source import RpcLedgerSource
from .models import HourlyOutcome
from .project_constants import NUM_DAYS
from .rpc import RpcClient
from .scheduler import GiftScheduler
from .store import GiftStore
from .transfers import DryRunTransferExecutor
from .verify import verify_artifact_dir, verify_reveal_file

log = logging.getLogger("advent_gifts")


def setup_logging(verbose: bool) -> None:
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(level=level, format="%(levelname)s: %(message)s")


def _dump(obj: Any) -> None:
    print(json.dumps(obj, indent=2, default=str))


def _open_store(args: argparse.Namespace) -> GiftStore:
    settings = Settings.from_env(db_path_override=args.db, require_rpc=False)
    store = GiftStore(settings.db_path)
    store.initialize()
    return store


@dataclass
class Services:
    settings: Settings
    store: GiftStore
    rpc: RpcClient
    scheduler: GiftScheduler
    hourly: HourlyDistributor


def build_services(args: argparse.Namespace) -> Services:
    settings = Settings.from_env(rpc_url_override=args.rpc_url, db_path_override=args.db)
    store = GiftStore(settings.db_path)
    store.initialize()
    clock = SystemClock()
    calendar = SeasonCalendar(settings.season_start)
    rpc = RpcClient(settings.rpc_url, timeout_s=args.timeout)
    ledger = RpcLedgerSource(rpc, store, calendar, settings.token_mint)
    executor = DryRunTransferExecutor(source_wallet=settings.treasury_wallet)
    engine = GiftEngine(settings.excluded_wallets, settings.salt)
    scheduler = GiftScheduler(
        store,
        ledger,
        executor,
        engine,
        clock,
        calendar,
        retry_attempts=settings.retry_attempts,
        retry_delay_s=settings.retry_delay_s,
        io_timeout_s=settings.io_timeout_s,
        daily_fee_cap=settings.daily_fee_cap,
        close_time=settings.daily_close_time,
    )
    hourly = HourlyDistributor(
        store,
        ledger,
        DryRunTransferExecutor(source_wallet=settings.airdrop_wallet),
        clock,
        calendar,
        salt=settings.salt,
        excluded_wallets=settings.excluded_wallets,
        io_timeout_s=settings.io_timeout_s,
    )
    log.debug("Services ready (db=%s, transfer_mode=%s)", settings.db_path, settings.transfer_mode)
    return Services(settings, store, rpc, scheduler, hourly)


def _run_async(args: argparse.Namespace, fn) -> Any:
    async def runner() -> Any:
        services = build_services(args)
        try:
            return await fn(services)
        finally:
            await services.rpc.close()

    return asyncio.run(runner())


def _outcome_dict(o: HourlyOutcome) -> Dict[str, Any]:
    return {
        "status": o.status.value,
        "day": o.day,
        "hour": o.hour,
        "winner": o.winner,
        "amount": str(o.amount),
        "block_entropy": o.block_entropy,
        "tx_signature": o.tx_signature,
        "eligible_count": o.eligible_count,
        "reason": o.reason,
        "dry_run": o.dry_run,
    }


def cmd_commit(args: argparse.Namespace) -> int:
    entries = load_entries(args.gifts)
    salts: Optional[List[str]] = None
    if args.salts:
        salts = load_json(args.salts)["salts"]
    artifacts = create_commitment(entries, salts)
    out = write_artifacts(artifacts, args.out)

    print("========================================")
    print("🎄 ADVENT GIFT COMMITMENT")
    print("========================================")
    print(f"Root          : {artifacts.root}")
    print(f"Entries       : {artifacts.public['numEntries']}")
    print(f"Public file   : {out / 'commitment.json'}")
    print(f"Private file  : {out / 'private-merkle-data.json'}  (keep secret until reveals)")
    return 0


def cmd_verify_reveal(args: argparse.Namespace) -> int:
    if args.dir:
        result = verify_artifact_dir(args.dir)
        print("✅ COMMITMENT VERIFIED")
        print(f"Root          : {result['root']}")
        print(f"Days verified : {len(result['verified_days'])}")
        return 0

    if not (args.reveal and args.commitment):
        raise SystemExit("verify-reveal needs --dir, or both --reveal and --commitment")
    result = verify_reveal_file(args.reveal, args.commitment)
    print("✅ REVEAL VERIFIED")
    print(f"Day           : {result['day']}")
    print(f"Gift type     : {result['type']}")
    print(f"Leaf          : {result['leaf']}")
    print(f"Root          : {result['root']}")
    return 0


def cmd_reveal(args: argparse.Namespace) -> int:
    store = _open_store(args)
    spec = reveal_day(store, load_json(args.reveal), load_json(args.commitment))
    print(f"Day {spec.day} revealed: {spec.variant.value} (leaf {spec.leaf})")
    return 0


def cmd_execute_day(args: argparse.Namespace) -> int:
    status = _run_async(args, lambda s: s.scheduler.run_day(args.day, force=args.force))
    _dump(
        {
            "day": status.day,
            "state": status.state.value,
            "attempts": status.attempts,
            "error": status.error,
        }
    )
    return 0 if status.state.value == "completed" else 1


def cmd_dry_run_day(args: argparse.Namespace) -> int:
    computed = _run_async(args, lambda s: s.scheduler.dry_run_day(args.day))
    _dump(computed.to_dict())
    return 0


def cmd_execute_hour(args: argparse.Namespace) -> int:
    override = [w.strip() for w in args.override.split(",")] if args.override else None
    outcome = _run_async(args, lambda s: s.hourly.execute_hour(args.day, args.hour, override))
    _dump(_outcome_dict(outcome))
    return 0


def cmd_dry_run_hour(args: argparse.Namespace) -> int:
    override = [w.strip() for w in args.override.split(",")] if args.override else None
    outcome = _run_async(args, lambda s: s.hourly.dry_run_hour(args.day, args.hour, override))
    _dump(_outcome_dict(outcome))
    return 0


def cmd_status(args: argparse.Namespace) -> int:
    store = _open_store(args)
    statuses = {s.day: s for s in store.all_statuses()}
    days = [args.day] if args.day else range(1, NUM_DAYS + 1)
    rows = []
    for day in days:
        s = statuses.get(day)
        payout = store.get_daily_payout(day)
        rows.append(
            {
                "day": day,
                "state": s.state.value if s else "pending",
                "attempts": s.attempts if s else 0,
                "last_attempt": s.last_attempt.isoformat() if s and s.last_attempt else None,
                "error": s.error if s else None,
                "payout": payout.state.value if payout else None,
                "hourly_rows": len(store.hourly_rows(day)),
            }
        )
    _dump(rows)
    return 0


def cmd_logs(args: argparse.Namespace) -> int:
    store = _open_store(args)
    if args.audit:
        _dump(
            [
                {
                    "ts": e.ts.isoformat(),
                    "actor": e.actor,
                    "action": e.action,
                    "resource": f"{e.resource_type}:{e.resource_id}" if e.resource_type else None,
                    "payload": e.payload,
                }
                for e in store.audit_entries(limit=args.limit)
            ]
        )
        return 0

    for record in store.executions_for_day(args.day):
        print(f"--- {record.execution_id} [{record.status}] {record.variant} {record.start_time.isoformat()}")
        for step in record.step_log:
            print(f"  #{step.step_number:<3} {step.level.upper():7} {step.step_name}: {step.message}")
    return 0


def cmd_run(args: argparse.Namespace) -> int:
    async def both(s: Services) -> None:
        await asyncio.gather(s.scheduler.run_forever(), s.hourly.run_forever())

    _run_async(args, both)
    return 0


def build_parser() -> argparse.ArgumentParser:
    p = argparse.ArgumentParser(
        prog="advent-gifts",
        description="Commit-reveal advent gift distribution tool.",
    )
    p.add_argument("--verbose", action="store_true", help="Enable debug logging.")
    p.add_argument("--rpc-url", default=None, help="Override RPC URL (else use env).")
    p.add_argument("--timeout", type=float, default=60.0, help="RPC timeout seconds.")
    p.add_argument("--db", default=None, help="Override SQLite path (else GIFTS_DB_PATH).")

    sub = p.add_subparsers(dest="cmd", required=True)

    c = sub.add_parser("commit", help="Hash the 24 gifts and write commitment artifacts.")
    c.add_argument("--gifts", required=True, help="JSON file with the 24 gift entries.")
    c.add_argument("--salts", default=None, help="Reuse salts from a private-merkle-data.json.")
    c.add_argument("--out", default="commitment", help="Output directory.")
    c.set_defaults(func=cmd_commit)

    v = sub.add_parser("verify-reveal", help="Verify reveals against the published root.")
    v.add_argument("--reveal", default=None, help="Path to reveals/day-XX.json.")
    v.add_argument("--commitment", default=None, help="Path to commitment.json.")
    v.add_argument("--dir", default=None, help="Verify a whole artifact directory.")
    v.set_defaults(func=cmd_verify_reveal)

    r = sub.add_parser("reveal", help="Verify a day's reveal and store it for execution.")
    r.add_argument("--reveal", required=True, help="Path to reveals/day-XX.json.")
    r.add_argument("--commitment", required=True, help="Path to commitment.json.")
    r.set_defaults(func=cmd_reveal)

    e = sub.add_parser("execute-day", help="Run a day's gift now.")
    e.add_argument("--day", required=True, type=int, help="Advent day 1..24.")
    e.add_argument("--force", action="store_true", help="Rerun even if completed or another run is active.")
    e.set_defaults(func=cmd_execute_day)

    d = sub.add_parser("dry-run-day", help="Compute a day's winners without paying or recording.")
    d.add_argument("--day", required=True, type=int, help="Advent day 1..24.")
    d.set_defaults(func=cmd_dry_run_day)

    for name, func, helptext in (
        ("execute-hour", cmd_execute_hour, "Run the hourly airdrop for one hour."),
        ("dry-run-hour", cmd_dry_run_hour, "Preview the hourly airdrop for one hour."),
    ):
        h = sub.add_parser(name, help=helptext)
        h.add_argument("--day", required=True, type=int, help="Advent day 1..24.")
        h.add_argument("--hour", required=True, type=int, help="UTC hour 0..23.")
        h.add_argument("--override", default=None, help="Comma-separated manual recipient list.")
        h.set_defaults(func=func)

    s = sub.add_parser("status", help="Show per-day execution status.")
    s.add_argument("--day", type=int, default=None, help="Only this day.")
    s.set_defaults(func=cmd_status)

    lg = sub.add_parser("logs", help="Show execution steps for a day, or the audit log.")
    lg.add_argument("--day", type=int, default=None, help="Advent day 1..24.")
    lg.add_argument("--audit", action="store_true", help="Show the audit log instead.")
    lg.add_argument("--limit", type=int, default=50, help="Max audit entries.")
    lg.set_defaults(func=cmd_logs)

    run = sub.add_parser("run", help="Run the daily and hourly tickers until interrupted.")
    run.set_defaults(func=cmd_run)

    return p


def main(argv: Optional[List[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    setup_logging(args.verbose)
    if args.cmd == "logs" and not args.audit and args.day is None:
        parser.error("logs needs --day or --audit")
    try:
        code = args.func(args)
    except IntegrityError as e:
        log.error("Integrity check failed: %s", e)
        code = 2
    except GiftError as e:
        log.error("%s: %s", type(e).__name__, e)
        code = 1
    raise SystemExit(code)


if __name__ == "__main__":
    main()
