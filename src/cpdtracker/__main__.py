"""
Main entrypoint: local store + background auto-sync in one process.

FastAPI runs separately under uvicorn.

Usage:
    python -m cpdtracker                         # auto-sync scheduler (default)
    python -m cpdtracker sync --direction upload # one sync now
    python -m cpdtracker status                  # print sync status
    python -m cpdtracker export backup.json
    python -m cpdtracker import backup.json
    uvicorn --factory cpdtracker.api.main:create_app --port 8000  # starts API
"""
import argparse
import asyncio
import logging
import sys

logger = logging.getLogger(__name__)


async def _run_scheduler(services) -> None:
    from cpdtracker.scheduler.jobs import build_scheduler

    scheduler = build_scheduler(services.sync_engine)
    scheduler.start()
    logger.info(
        "Scheduler started (auto-sync every %d min, backend=%s)",
        services.settings.sync_interval_minutes,
        services.adapter.name,
    )
    try:
        await asyncio.Event().wait()
    except (KeyboardInterrupt, SystemExit, asyncio.CancelledError):
        logger.info("Shutting down...")
    finally:
        scheduler.shutdown(wait=False)
        await services.aclose()
        logger.info("Goodbye.")


async def _run_sync(services, direction: str) -> int:
    try:
        result = await services.sync_engine.sync(direction)
    finally:
        await services.aclose()
    print(result.model_dump_json(indent=2))
    return 0 if result.success else 1


async def _print_status(services) -> int:
    try:
        await services.monitor.check()
    finally:
        await services.aclose()
    print(services.sync_engine.status.snapshot().model_dump_json(indent=2))
    return 0


def _build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="cpdtracker", description="CPD Tracker sync service")
    sub = parser.add_subparsers(dest="command")
    sub.add_parser("run", help="Run the auto-sync scheduler (default)")
    sync_cmd = sub.add_parser("sync", help="Run one sync now")
    sync_cmd.add_argument(
        "--direction",
        choices=["upload", "download", "bidirectional"],
        default="bidirectional",
    )
    sub.add_parser("status", help="Print the current sync status")
    for name in ("export", "import"):
        cmd = sub.add_parser(name, help=f"{name.capitalize()} local data as JSON")
        cmd.add_argument("file")
    return parser


def main(argv=None) -> int:
    args = _build_parser().parse_args(argv)

    from cpdtracker.config import get_settings
    from cpdtracker.services import build_services

    settings = get_settings()
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )

    if args.command in ("export", "import"):
        from cpdtracker.scripts.transfer import main as transfer_main
        return transfer_main([args.command, args.file])

    services = build_services(settings)
    if args.command == "sync":
        return asyncio.run(_run_sync(services, args.direction))
    if args.command == "status":
        return asyncio.run(_print_status(services))
    try:
        asyncio.run(_run_scheduler(services))
    except KeyboardInterrupt:
        pass
    return 0


if __name__ == "__main__":
    sys.exit(main())
