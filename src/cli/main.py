"""CLI for the study scheduler."""

import argparse
import asyncio
import json
import logging
from contextlib import asynccontextmanager

import uvicorn
from dotenv import load_dotenv

from src.core.config import load_app_config, load_scheduler_settings
from src.db.pool import close_database, init_database
from src.scheduler.errors import SchedulerError
from src.scheduler.models import TriggeredBy
from src.scheduler.service import SchedulingService
from src.scheduler.strategies import STRATEGIES, StrategyContext
from src.state.sweep import run_sweep_once
from src.stores.postgres import PostgresStores, ensure_scheduler_tables


def setup_logging(level: str = "INFO"):
    """Configure logging."""
    logging.basicConfig(
        level=getattr(logging, level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )


def print_json(data) -> None:
    print(json.dumps(data, indent=2, default=str))


@asynccontextmanager
async def connected_service():
    """SchedulingService on the configured PostgreSQL database."""
    load_dotenv()
    app_config = load_app_config()
    setup_logging(app_config.log_level)
    settings = load_scheduler_settings(app_config.scheduler_config_path)

    db = await init_database()
    try:
        stores = PostgresStores(db)
        yield SchedulingService(
            plans=stores.plans,
            tasks=stores.tasks,
            conflicts=stores.conflicts,
            audit_store=stores.audit,
            profiles=stores.profiles,
            settings=settings,
        )
    finally:
        await close_database()


async def _init_db(args):
    load_dotenv()
    setup_logging(load_app_config().log_level)
    db = await init_database()
    try:
        await ensure_scheduler_tables(db)
    finally:
        await close_database()
    print("Scheduler tables ready")


async def _auto_schedule(args):
    async with connected_service() as service:
        result = await service.auto_schedule(
            args.user,
            args.plan_id,
            only_unscheduled=args.only_unscheduled,
            daily_hours=args.daily_hours,
            max_tasks_per_day=args.max_per_day,
            triggered_by=TriggeredBy.USER_ACTION,
        )
        print_json(result.to_dict())


async def _detect(args):
    async with connected_service() as service:
        conflicts = await service.detect_conflicts(args.user, args.plan_id, TriggeredBy.USER_ACTION)
        print_json({"conflicts": [c.to_dict() for c in conflicts], "total": len(conflicts)})


async def _redistribute(args):
    async with connected_service() as service:
        options = service.default_redistribution_options(
            reason=args.reason,
            max_to_reschedule=args.max,
            triggered_by=TriggeredBy.USER_ACTION,
        )
        result = await service.redistribute_missed(args.user, args.plan_id, options)
        print_json(result.to_dict())


async def _strategy(args):
    async with connected_service() as service:
        context = StrategyContext(
            available_hours=args.hours,
            max_tasks_per_day=args.max_per_day,
            triggered_by=TriggeredBy.USER_ACTION,
        )
        print_json(await service.execute_strategy(args.user, args.plan_id, args.mode, context))


async def _sweep(args):
    async with connected_service() as service:
        result = await run_sweep_once(service)
        print_json(result.to_dict())


COMMANDS = {
    "init-db": _init_db,
    "auto-schedule": _auto_schedule,
    "detect": _detect,
    "redistribute": _redistribute,
    "strategy": _strategy,
    "sweep": _sweep,
}


def cmd_async(args) -> int:
    """Run an async command handler, reporting engine errors as JSON."""
    try:
        asyncio.run(COMMANDS[args.command](args))
    except SchedulerError as e:
        print_json(e.to_dict())
        return 1
    return 0


def cmd_serve(args) -> int:
    """Serve the HTTP API."""
    load_dotenv()
    app_config = load_app_config()
    uvicorn.run(
        "src.api.main:app",
        host=args.host or app_config.host,
        port=args.port or app_config.port,
        log_level=app_config.log_level.lower(),
    )
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Study Scheduler - slot packing, conflicts and missed-work redistribution"
    )
    subparsers = parser.add_subparsers(dest="command", required=True)

    # init-db command
    init_parser = subparsers.add_parser("init-db", help="Create scheduler tables")
    init_parser.set_defaults(func=cmd_async)

    def plan_command(name: str, help_text: str) -> argparse.ArgumentParser:
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("plan_id", help="Study plan ID")
        sub.add_argument("--user", "-u", required=True, help="Owner user ID")
        sub.set_defaults(func=cmd_async)
        return sub

    # auto-schedule command
    auto_parser = plan_command("auto-schedule", "Pack a plan's tasks into time slots")
    auto_parser.add_argument(
        "--only-unscheduled",
        action="store_true",
        help="Place only tasks without a window, in future slots",
    )
    auto_parser.add_argument("--daily-hours", type=float, default=None, help="Override daily study hours")
    auto_parser.add_argument("--max-per-day", type=int, default=None, help="Maximum tasks per day")

    # detect command
    plan_command("detect", "Detect overlapping task windows")

    # redistribute command
    redistribute_parser = plan_command("redistribute", "Move overdue tasks into future slots")
    redistribute_parser.add_argument("--reason", default="missed_task", help="Reason recorded on each task")
    redistribute_parser.add_argument("--max", type=int, default=50, help="Maximum tasks to reschedule")

    # strategy command
    strategy_parser = plan_command("strategy", "Run a scheduling mode")
    strategy_parser.add_argument(
        "--mode", "-m",
        choices=["auto", *STRATEGIES],
        default="auto",
        help="Scheduling mode",
    )
    strategy_parser.add_argument("--hours", type=float, default=None, help="Available hours per day")
    strategy_parser.add_argument("--max-per-day", type=int, default=None, help="Maximum tasks per day")

    # sweep command
    sweep_parser = subparsers.add_parser("sweep", help="Redistribute overdue tasks of all plans once")
    sweep_parser.set_defaults(func=cmd_async)

    # serve command
    serve_parser = subparsers.add_parser("serve", help="Run the HTTP API")
    serve_parser.add_argument("--host", default=None, help="Bind address")
    serve_parser.add_argument("--port", type=int, default=None, help="Port")
    serve_parser.set_defaults(func=cmd_serve)

    return parser


def main(argv=None) -> int:
    """Main entry point."""
    args = build_parser().parse_args(argv)
    return args.func(args)


if __name__ == "__main__":
    raise SystemExit(main())
