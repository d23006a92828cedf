from __future__ import annotations

import argparse
import logging
from datetime import datetime, timezone

from storesync.context import SyncServices
from storesync.core.config import Settings, get_settings
from storesync.core.errors import SyncError
from storesync.core.logging import configure_logging
from storesync.engine.base import ReconciliationEngine
from storesync.engine.orders import OrderReconciler
from storesync.engine.products import ProductReconciler
from storesync.services.ledger import ORDER, PRODUCT
from storesync.services.retry import DeadLetterRetrier


ENGINES: dict[str, type[ReconciliationEngine]] = {
    "products": ProductReconciler,
    "orders": OrderReconciler,
}
KIND_TO_TARGET = {PRODUCT: "products", ORDER: "orders"}

logger = logging.getLogger("storesync.cli")


def _stamp(epoch: float) -> str:
    return datetime.fromtimestamp(epoch, tz=timezone.utc).strftime("%Y-%m-%d %H:%M:%S")


def run_sync(services: SyncServices, target: str, use_workers: bool, workers: int | None, propagate: bool) -> int:
    engine_cls = ENGINES[target]
    kwargs = {"use_workers": use_workers, "worker_count": workers}
    if engine_cls is OrderReconciler:
        kwargs["propagate_updates"] = propagate
    report = engine_cls(services, **kwargs).sync()
    print(
        f"run={report.run_id} kind={report.kind} status={report.status} total={report.total} "
        f"succeeded={report.succeeded} skipped={report.skipped} failed={report.failed} unreported={report.unreported}"
    )
    return 0


def run_retry(services: SyncServices, args: argparse.Namespace) -> int:
    engine = ENGINES[KIND_TO_TARGET[args.kind]](services, use_workers=False)
    retrier = DeadLetterRetrier(services.dead_letters, engine)
    repair = not args.skip_validation_fixes
    if args.batch:
        report = retrier.retry_all(since_days=args.days, include_all=args.all, repair=repair, dry_run=args.dry_run)
    else:
        report = retrier.retry_latest(max_attempts=args.max_attempts, repair=repair, dry_run=args.dry_run)
    print(
        f"attempted={report.attempted} succeeded={report.succeeded} failed={report.failed} "
        f"already_mapped={report.skipped} dry_run={report.dry_run} invalid={report.invalid} remaining={report.remaining}"
    )
    if report.attempted and not report.succeeded:
        return 1
    return 0


def run_cache(services: SyncServices, args: argparse.Namespace) -> int:
    cache = services.cache
    if args.action == "list":
        for entry in cache.entries():
            state = "expired" if entry.expired else "valid"
            print(f"{entry.item_id}\t{state}\tcached={_stamp(entry.cached_at)}\texpires={_stamp(entry.expires_at)}\t{entry.size_bytes}B")
        return 0
    if args.action == "status":
        status = cache.status()
        print(" ".join(f"{key}={value}" for key, value in status.items()))
        return 0
    if args.action == "clear":
        removed = cache.invalidate(args.item_id)
        print(f"removed={removed}")
        return 0

    if not args.item_id:
        logger.error("cache refresh needs a product id")
        return 1
    detail = services.supplier.get_item_detail(args.item_id)
    if not detail:
        logger.error("Supplier returned no details for product %s", args.item_id)
        return 1
    cache.put(args.item_id, detail)
    print(f"refreshed={args.item_id}")
    return 0


def run_stats(services: SyncServices, args: argparse.Namespace) -> int:
    stats = services.stats
    if args.run:
        run = stats.get_run(args.run)
        if run is None:
            logger.error("Sync run %s not found", args.run)
            return 1
        print(f"run={run.id} kind={run.kind} status={run.status} processed={run.items_processed} failed={run.items_failed}")
        for detail in stats.run_details(args.run, status="failed" if args.failed_only else None):
            print(f"  {detail.item_id}\t{detail.operation}\t{detail.status}\t{detail.reason or ''}\t{detail.message or ''}")
        return 0
    if args.summary:
        for row in stats.daily_summary(kind=args.kind):
            print(
                f"{row['day']} {row['kind']} runs={row['runs']} processed={row['processed']} "
                f"succeeded={row['succeeded']} failed={row['failed']}"
            )
        return 0
    for run in stats.recent_runs(limit=args.limit, kind=args.kind):
        print(
            f"run={run.id} kind={run.kind} status={run.status} started={run.started_at:%Y-%m-%d %H:%M:%S} "
            f"processed={run.items_processed} succeeded={run.items_succeeded} failed={run.items_failed}"
        )
    summary = services.dead_letters.summary()
    print(f"dead_letters pending={summary['pending']} by_reason={summary['by_reason']}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Supplier/storefront reconciliation")
    commands = parser.add_subparsers(dest="command", required=True)

    sync = commands.add_parser("sync", help="Run one reconciliation batch")
    sync.add_argument("target", choices=sorted(ENGINES.keys()))
    sync.add_argument("--no-workers", action="store_true", help="Process the batch in this process")
    sync.add_argument("--workers", type=int, default=None)
    sync.add_argument("--no-propagate", action="store_true", help="Skip pushing supplier order updates back")

    retry = commands.add_parser("retry", help="Replay dead letters")
    retry.add_argument("--kind", default=ORDER, choices=[ORDER, PRODUCT])
    retry.add_argument("--max-attempts", type=int, default=1)
    retry.add_argument("--batch", action="store_true", help="Retry every pending dead letter in the lookback window")
    retry.add_argument("--days", type=int, default=None)
    retry.add_argument("--all", action="store_true", help="Ignore the lookback window")
    retry.add_argument("--skip-validation-fixes", action="store_true")
    retry.add_argument("--dry-run", action="store_true")

    cache = commands.add_parser("cache", help="Inspect or manage the product detail cache")
    cache.add_argument("action", choices=["list", "status", "clear", "refresh"])
    cache.add_argument("item_id", nargs="?")

    stats = commands.add_parser("stats", help="Show sync run statistics")
    stats.add_argument("--limit", type=int, default=10)
    stats.add_argument("--kind", choices=[ORDER, PRODUCT])
    stats.add_argument("--run")
    stats.add_argument("--failed-only", action="store_true")
    stats.add_argument("--summary", action="store_true")
    return parser


def run_command(args: argparse.Namespace, settings: Settings) -> int:
    services = SyncServices.from_settings(settings)
    try:
        if args.command == "sync":
            return run_sync(services, args.target, not args.no_workers, args.workers, not args.no_propagate)
        if args.command == "retry":
            if args.days is None:
                args.days = settings.dead_letter_lookback_days
            return run_retry(services, args)
        if args.command == "cache":
            return run_cache(services, args)
        return run_stats(services, args)
    finally:
        services.close()


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    settings = get_settings()
    configure_logging(settings)
    try:
        return run_command(args, settings)
    except SyncError as exc:
        logger.error("%s failed: %s", args.command, exc)
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
