from __future__ import annotations

import argparse
import json
import signal
import sys
from typing import List, Optional

from pydantic import ValidationError

from birdcatalog.core.config import settings
from birdcatalog.core.errors import AnalysisAlreadyRunning, EngineNotFound, MigrationFailure
from birdcatalog.core.logging import logger, setup_logging
from birdcatalog.db.migrations import applied_versions
from birdcatalog.db.session import close_db, get_manager, init_db, session_scope
from birdcatalog.schemas.analysis import AnalysisRequest
from birdcatalog.services.catalog.lease import recover_if_idle
from birdcatalog.services.catalog.runs import list_runs_with_stats
from birdcatalog.services.engine.protocol import TransportMode
from birdcatalog.services.engine.supervisor import EXECUTION_PROVIDER_FLAGS
from birdcatalog.services.tasks.runtime import get_runner, supervisor

# ────────────────────────────────────────────────────────────────────────────
# SIGINT/SIGTERM: 첫 신호는 분석 취소, 두 번째는 엔진 프로세스 정리 후 종료
# ────────────────────────────────────────────────────────────────────────────
_SIGNALS_SEEN = 0


def _signal_handler(signum, frame):
    global _SIGNALS_SEEN
    _SIGNALS_SEEN += 1
    if _SIGNALS_SEEN == 1:
        logger.warning("Received signal %s. Cancelling current analysis.", signum)
        get_runner().cancel()
        return
    logger.warning("Received signal %s again. Terminating engine processes.", signum)
    supervisor.kill_all()
    sys.exit(128 + signum)


def _install_signal_handlers():
    signal.signal(signal.SIGINT, _signal_handler)
    signal.signal(signal.SIGTERM, _signal_handler)


def parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    p = argparse.ArgumentParser(prog="birdcatalog", description="birda analysis runner and detection catalog")
    p.add_argument(
        "--log-level",
        default=settings.LOG_LEVEL,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        help="Log verbosity",
    )
    p.add_argument("--db", default=settings.DB_PATH, help="SQLite database path (default: settings.DB_PATH)")
    sub = p.add_subparsers(dest="command", required=True)

    a = sub.add_parser("analyze", help="Run birda on a file or directory and store detections")
    a.add_argument("source", help="Audio file or directory")
    a.add_argument("--model", default=settings.DEFAULT_MODEL)
    a.add_argument("--confidence", type=float, default=settings.DEFAULT_CONFIDENCE)
    a.add_argument("--lat", type=float)
    a.add_argument("--lon", type=float)
    a.add_argument("--location-name")
    a.add_argument("--month", type=int)
    a.add_argument("--day", type=int)
    a.add_argument("--tz-offset", type=int, help="Timezone offset in minutes for recordings")
    a.add_argument("--mode", choices=[m.value for m in TransportMode], help="Force inline or directory mode")
    a.add_argument(
        "--provider",
        default=settings.DEFAULT_EXECUTION_PROVIDER,
        choices=sorted(EXECUTION_PROVIDER_FLAGS),
        help="Execution provider",
    )

    sub.add_parser("migrate", help="Create tables and apply pending migrations")
    sub.add_parser("recover", help="Mark runs left pending/running by a dead process as failed")
    sub.add_parser("runs", help="List analysis runs")
    return p.parse_args(argv)


def _cmd_analyze(args: argparse.Namespace) -> int:
    try:
        req = AnalysisRequest(
            source_path=args.source,
            model=args.model,
            min_confidence=args.confidence,
            latitude=args.lat,
            longitude=args.lon,
            location_name=args.location_name,
            month=args.month,
            day=args.day,
            timezone_offset_min=args.tz_offset,
            execution_provider=args.provider,
            mode=args.mode,
        )
    except ValidationError as e:
        logger.error("Invalid request: %s", e)
        return 2

    _install_signal_handlers()
    try:
        outcome = get_runner().analyze(req)
    except (AnalysisAlreadyRunning, EngineNotFound, FileNotFoundError) as e:
        logger.error("%s", e)
        return 1
    print(json.dumps(outcome.model_dump(mode="json"), indent=2))
    return 0 if outcome.status != "failed" else 1


def _cmd_migrate(args: argparse.Namespace) -> int:
    versions = applied_versions(get_manager().engine)
    logger.info("Schema at version %s (applied: %s)", max(versions, default=0), versions)
    return 0


def _cmd_recover(args: argparse.Namespace) -> int:
    n = recover_if_idle(get_manager().session_factory)
    if n is None:
        logger.error("An analysis is in progress on this catalog, nothing recovered")
        return 1
    logger.info("Recovered %d stale run(s)", n)
    return 0


def _cmd_runs(args: argparse.Namespace) -> int:
    with session_scope() as db:
        rows = list_runs_with_stats(db)
    for r in rows:
        print(
            f"{r['id']:>5}  {r['status']:<22} {r['detection_count']:>7}  {r['model']:<16} {r['source_path']}"
        )
    return 0


COMMANDS = {
    "analyze": _cmd_analyze,
    "migrate": _cmd_migrate,
    "recover": _cmd_recover,
    "runs": _cmd_runs,
}


def main(argv: Optional[List[str]] = None) -> int:
    args = parse_args(argv)
    setup_logging(args.log_level)

    try:
        init_db(args.db)
    except MigrationFailure as e:
        logger.error("Database migration failed, refusing to start: %s", e)
        return 3

    try:
        return COMMANDS[args.command](args)
    finally:
        supervisor.kill_all()
        close_db()


if __name__ == "__main__":
    sys.exit(main())
