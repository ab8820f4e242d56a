"""
Orchestrator - CLI.

============================================================
RESPONSIBILITY
============================================================
Command-line interface for the trading engine.

- argparse-based commands for the jobs and the control surface
- Configuration from the environment, overridden by flags
- Wiring lives in app.py; commands receive a built engine

============================================================
USAGE
============================================================
python app.py run --jobs position risk maintenance
python app.py run --loop --interval 60
python app.py signal --file signal.json --symbol AAPL --ticker AAPL_US_EQ --price 187.5
python app.py approve 12 --by alice
python app.py emergency-stop --by ops

============================================================
"""

import argparse
import asyncio
import json
import logging
from pathlib import Path
from typing import Any, List

from pydantic import ValidationError

from trade_planning import ScoringSignal
from orchestrator.config import LOG_FORMATS, EngineConfig
from orchestrator.core import TradingEngine


logger = logging.getLogger(__name__)


JOBS = ("position", "risk", "maintenance")


# ============================================================
# CLI ARGUMENT PARSER
# ============================================================

def create_parser() -> argparse.ArgumentParser:
    """Create the argument parser."""
    parser = argparse.ArgumentParser(
        prog="trade-engine",
        description="Trade lifecycle and risk-management engine",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Jobs:
  position     - mark to market, exits, partial exits, DCA, conditional orders
  risk         - loss cool-down escalation and drawdown report
  maintenance  - plan expiry, lock cleanup, order replacement, broker sync

Examples:
  %(prog)s run                              # run every job once
  %(prog)s run --loop --interval 60         # run every job each minute
  %(prog)s plans --limit 10                 # recent trade plans
  %(prog)s approve 12 --by alice            # approve and execute plan 12
        """,
    )

    # --------------------------------------------------------
    # Global Options
    # --------------------------------------------------------
    parser.add_argument("--env-file", type=str, default=None, help="Path to a .env file")
    parser.add_argument(
        "--live",
        action="store_true",
        help="Send orders to the broker (overrides DRY_RUN)",
    )
    parser.add_argument("--database-url", type=str, default=None, help="SQLAlchemy database URL")
    parser.add_argument(
        "--log-level",
        type=str,
        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"],
        default=None,
        help="Log level (default: LOG_LEVEL or INFO)",
    )
    parser.add_argument("--log-format", type=str, choices=LOG_FORMATS, default=None, help="Log format")

    commands = parser.add_subparsers(dest="command", required=True)

    # --------------------------------------------------------
    # Jobs
    # --------------------------------------------------------
    run = commands.add_parser("run", help="Run scheduled jobs")
    run.add_argument("--jobs", nargs="+", choices=JOBS, default=list(JOBS), help="Jobs to run")
    run.add_argument("--loop", action="store_true", help="Repeat until interrupted")
    run.add_argument("--interval", type=float, default=60.0, metavar="SECONDS", help="Loop interval")

    signal = commands.add_parser("signal", help="Process a scoring signal from a JSON file")
    signal.add_argument("--file", type=Path, required=True)
    signal.add_argument("--symbol", type=str, required=True)
    signal.add_argument("--ticker", type=str, required=True)
    signal.add_argument("--price", type=float, required=True)
    signal.add_argument("--sector", type=str, default=None)

    # --------------------------------------------------------
    # Control Surface
    # --------------------------------------------------------
    commands.add_parser("status", help="Show engine status")

    plans = commands.add_parser("plans", help="List recent trade plans")
    plans.add_argument("--limit", type=int, default=20)

    for name, help_text in (("approve", "Approve and execute a plan"), ("reject", "Reject a plan")):
        sub = commands.add_parser(name, help=help_text)
        sub.add_argument("plan_id", type=int)
        sub.add_argument("--by", type=str, default="cli")

    for name, help_text in (("close", "Force close a position"), ("unlock", "Remove pair locks")):
        sub = commands.add_parser(name, help=help_text)
        sub.add_argument("symbol", type=str)
        sub.add_argument("--by", type=str, default="cli")

    stop = commands.add_parser("emergency-stop", help="Close every position and pause")
    stop.add_argument("--by", type=str, default="cli")

    return parser


def build_config(args: argparse.Namespace) -> EngineConfig:
    """Environment configuration with command-line overrides applied."""
    config = EngineConfig.from_env(args.env_file)
    if args.live:
        config.execution.dry_run = False
    if args.database_url:
        config.database_url = args.database_url
    if args.log_level:
        config.log_level = args.log_level
    if args.log_format:
        config.log_format = args.log_format
    return config


def print_banner(config: EngineConfig, command: str) -> None:
    """Print startup banner."""
    print()
    print("=" * 60)
    print("  TRADE LIFECYCLE ENGINE")
    print("=" * 60)
    print(f"  Command:    {command}")
    print(f"  Dry Run:    {config.dry_run}")
    print(f"  Approval:   {'manual' if config.planning.require_approval else 'auto'}")
    print(f"  Log Level:  {config.log_level}")
    print("=" * 60)
    print()


def _print(payload: Any) -> None:
    print(json.dumps(payload, indent=2, default=str))


# ============================================================
# COMMANDS
# ============================================================

async def run_jobs(engine: TradingEngine, jobs: List[str]) -> None:
    """Run the selected jobs once, in a fixed order."""
    if "risk" in jobs:
        await engine.run_risk_checks()
    if "position" in jobs:
        await engine.run_position_cycle()
    if "maintenance" in jobs:
        await engine.run_maintenance()


async def run_loop(engine: TradingEngine, jobs: List[str], interval: float) -> None:
    logger.info(f"Running jobs {jobs} every {interval:g}s")
    while True:
        try:
            await run_jobs(engine, jobs)
        except Exception as e:
            logger.error(f"Job cycle failed: {e}", exc_info=True)
        await asyncio.sleep(interval)


async def execute_command(engine: TradingEngine, args: argparse.Namespace) -> int:
    """Dispatch one parsed command against a built engine. Returns the exit code."""
    command = args.command

    if command == "run":
        if args.loop:
            await run_loop(engine, args.jobs, args.interval)
        else:
            await run_jobs(engine, args.jobs)
        return 0

    if command == "signal":
        try:
            signal = ScoringSignal.model_validate_json(args.file.read_text())
        except (OSError, ValidationError) as e:
            logger.error(f"Invalid signal file {args.file}: {e}")
            return 1
        plan = await engine.process_signal(signal, args.symbol, args.ticker, args.price, args.sector)
        if plan is None:
            print("No plan created")
        else:
            print(engine.planner.format_plan_message(plan))
        return 0

    if command == "status":
        _print(engine.get_status())
        return 0

    if command == "plans":
        for plan in engine.planner.get_recent_plans(args.limit):
            print(f"#{plan.id:<5} {plan.status:<9} {plan.side:<4} {plan.symbol:<8} "
                  f"{plan.shares:g} @ {plan.entry_price:.2f}  R:R {plan.risk_reward_ratio:.2f}")
        return 0

    if command == "approve":
        result = await engine.approve_plan(args.plan_id, args.by)
        if result is None:
            print(f"Plan {args.plan_id} not executed (already resolved or blocked)")
            return 1
        _print(result.to_dict())
        return 0 if result.success else 1

    if command == "reject":
        plan = engine.reject_plan(args.plan_id, args.by)
        print(f"Plan {args.plan_id} rejected" if plan else f"Plan {args.plan_id} was already resolved")
        return 0 if plan else 1

    if command == "close":
        result = await engine.force_close(args.symbol, args.by)
        _print(result.to_dict())
        return 0 if result.success else 1

    if command == "unlock":
        print(f"{engine.unlock_pair(args.symbol, args.by)} lock(s) removed for {args.symbol}")
        return 0

    if command == "emergency-stop":
        stop = await engine.emergency_stop(args.by)
        print(f"Emergency stop: {stop.closed}/{stop.total} positions closed")
        return 0 if not stop.failed else 1

    logger.error(f"Unknown command {command}")
    return 2
