#!/usr/bin/env python3
"""
Trade Lifecycle Engine - Main Application Entry Point.

============================================================
SINGLE ENTRYPOINT
============================================================
This is the ONE executable entry point for the engine.

- Loads configuration (.env, environment, flags)
- Initializes the database
- Wires broker adapter, quotes, broadcast hub and engine
- Runs one command and shuts down cleanly

============================================================
USAGE
============================================================
Direct execution:
    python app.py run
    python app.py run --loop --interval 60

Live trading (requires BROKER_BASE_URL and BROKER_API_KEY):
    python app.py --live run --loop

Environment-based configuration:
    DRY_RUN=false REQUIRE_APPROVAL=true python app.py run

============================================================
"""

import asyncio
import logging
import sys
from decimal import Decimal
from pathlib import Path
from typing import List, Optional, Tuple

# Add project root to path
PROJECT_ROOT = Path(__file__).parent.absolute()
if str(PROJECT_ROOT) not in sys.path:
    sys.path.insert(0, str(PROJECT_ROOT))

from sqlalchemy.orm import Session

from core.exceptions import BrokerError, ConfigurationError
from execution_engine.adapters import (
    BrokerAdapter,
    HttpBrokerAdapter,
    HttpBrokerConfig,
    MockBrokerAdapter,
    MockConfig,
)
from monitoring.broadcast import BroadcastHub, WebhookConfig, WebhookSubscriber
from orchestrator.cli import build_config, create_parser, execute_command, print_banner
from orchestrator.config import EngineConfig
from orchestrator.core import TradingEngine, setup_logging
from position_management.tracker import QuoteProvider
from storage.database import DatabasePersistenceError, initialize_database


logger = logging.getLogger("app")


# ============================================================
# QUOTES
# ============================================================

class BrokerQuoteProvider(QuoteProvider):
    """Latest prices from the broker adapter."""

    def __init__(self, adapter: BrokerAdapter):
        self._adapter = adapter

    async def get_quote(self, symbol: str) -> Optional[float]:
        price = await self._adapter.get_current_price(symbol)
        return float(price) if price is not None else None


# ============================================================
# MODULE WIRING
# ============================================================

def create_adapter(config: EngineConfig) -> BrokerAdapter:
    """REST adapter when a broker is configured, otherwise the paper broker."""
    if config.broker_base_url:
        return HttpBrokerAdapter(HttpBrokerConfig(
            base_url=config.broker_base_url,
            api_key=config.broker_api_key or "",
            timeout_seconds=config.execution.order_timeout_seconds,
        ))
    logger.info("No broker configured, using the paper broker for quotes")
    return MockBrokerAdapter(MockConfig(initial_cash=Decimal(str(config.paper_cash))))


def build_engine(
    config: EngineConfig,
    session: Session,
    adapter: BrokerAdapter,
) -> Tuple[TradingEngine, List[WebhookSubscriber]]:
    """
    Wire every component around one session.

    Returns the engine and the webhook subscribers that need
    closing at shutdown.
    """
    broadcaster = BroadcastHub()
    subscribers: List[WebhookSubscriber] = []
    webhook = WebhookSubscriber(WebhookConfig.from_env())
    if webhook.is_configured:
        broadcaster.subscribe(webhook)
        subscribers.append(webhook)

    engine = TradingEngine(
        session=session,
        config=config,
        quotes=BrokerQuoteProvider(adapter),
        adapter=adapter,
        broadcaster=broadcaster,
    )
    return engine, subscribers


# ============================================================
# APPLICATION RUNNER
# ============================================================

async def run_application(args) -> int:
    """Build everything, run the command, shut down."""
    config = build_config(args)
    setup_logging(config.log_level, config.log_format)

    try:
        config.validate()
    except ConfigurationError as e:
        logger.error(f"Invalid configuration: {e}")
        return 1

    print_banner(config, args.command)

    try:
        factory = initialize_database(config.database_url)
    except DatabasePersistenceError as e:
        logger.critical(f"Database unavailable: {e}")
        return 1

    session = factory()
    adapter = create_adapter(config)
    subscribers: List[WebhookSubscriber] = []
    engine: Optional[TradingEngine] = None
    try:
        await adapter.connect()
        engine, subscribers = build_engine(config, session, adapter)
        return await execute_command(engine, args)
    except BrokerError as e:
        logger.error(f"Broker error: {e}")
        return 1
    finally:
        if engine is not None:
            await engine.broadcaster.drain()
        for subscriber in subscribers:
            await subscriber.close()
        await adapter.disconnect()
        session.close()
        logger.info("Shutdown complete")


def main() -> int:
    """Main entry point."""
    parser = create_parser()
    args = parser.parse_args()

    try:
        return asyncio.run(run_application(args))
    except KeyboardInterrupt:
        logging.info("Interrupted by user")
        return 130


# ============================================================
# MODULE EXECUTION
# ============================================================

if __name__ == "__main__":
    sys.exit(main())
