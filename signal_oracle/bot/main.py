"""
Signal oracle runner. Wires the Gamma provider, LLM estimator, engine,
SQLite sink and cycle scheduler together.

Entry point:
    python -m signal_oracle.bot.main [--duration 2] [--interval 5] [--config config.yaml] [--once]
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import time
from typing import Optional

from ..core.engine import EngineContext, SignalEngine
from ..core.settings import EngineSettings
from ..estimators.base import ProbabilityEstimator
from ..estimators.llm import LLMEstimator
from ..polymarket import clob
from .config import load_config
from .database import DEFAULT_DB_PATH, Database
from .provider import GammaMarketProvider
from .scheduler import CycleScheduler

logger = logging.getLogger(__name__)


def _build_estimator(config: dict) -> Optional[ProbabilityEstimator]:
    estimator_cfg = config.get("estimator")
    if not estimator_cfg:
        logger.warning("No estimator configured; every signal will use the structural fallback")
        return None
    return LLMEstimator(estimator_cfg)


def build_engine(config: dict, db: Database) -> SignalEngine:
    """Construct a SignalEngine from config."""
    settings = EngineSettings.from_config(config)
    context = EngineContext.from_settings(settings)
    provider = GammaMarketProvider(max_markets=settings.max_markets)
    return SignalEngine(
        context,
        provider,
        estimator=_build_estimator(config),
        sink=db,
    )


async def run(
    duration_hours: float = 2,
    interval_minutes: float = 5,
    config_path: str = "config.yaml",
    once: bool = False,
) -> None:
    """High-level entry: load config, build engine, run the scheduler."""
    config = load_config(config_path)
    settings = EngineSettings.from_config(config)

    db = Database(
        config.get("database", {}).get("path", DEFAULT_DB_PATH),
        history_cap=settings.cycle_history_cap,
    )
    await db.init_schema()
    engine = build_engine(config, db)
    await db.restore_engine_state(engine.context)

    sched_cfg = config.get("scheduler", {})
    cycle_timeout = float(sched_cfg.get("cycle_timeout", settings.cycle_budget_seconds))
    if cycle_timeout < settings.cycle_budget_seconds:
        logger.warning(
            "cycle_timeout %.0fs is below the worst-case cycle time %.0fs; slow cycles may be cancelled",
            cycle_timeout, settings.cycle_budget_seconds,
        )
    scheduler = CycleScheduler(
        engine.run_cycle,
        queue_cap=sched_cfg.get("queue_cap", 10),
        cycle_timeout=cycle_timeout,
    )

    logger.info(
        "Starting signal oracle (db=%s, interval=%.1f min, duration=%s)",
        db.db_path, interval_minutes, "one cycle" if once else f"{duration_hours} h",
    )
    try:
        if once:
            await scheduler.run_once()
        else:
            await scheduler.run_forever(interval_minutes * 60, duration_hours * 3600)
    finally:
        await scheduler.stop()
        await db.save_engine_state(engine.context, time.time())
        await engine.close()
        await engine.provider.close()
        await clob.close()
        logger.info(
            "Session complete: %d cycles ok, %d failed", scheduler.completed, scheduler.failed
        )


def main() -> None:
    """CLI entry point."""
    parser = argparse.ArgumentParser(description="Polymarket Signal Oracle")
    parser.add_argument(
        "--duration", type=float, default=2, help="Duration in hours (default: 2)"
    )
    parser.add_argument(
        "--interval", type=float, default=5, help="Interval in minutes (default: 5)"
    )
    parser.add_argument(
        "--config", default="config.yaml", help="Config file path"
    )
    parser.add_argument(
        "--once", action="store_true", help="Run a single cycle and exit"
    )
    parser.add_argument(
        "--log-level", default="INFO", help="Logging level (default: INFO)"
    )
    args = parser.parse_args()

    logging.basicConfig(
        level=getattr(logging, args.log_level.upper(), logging.INFO),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)

    asyncio.run(
        run(
            duration_hours=args.duration,
            interval_minutes=args.interval,
            config_path=args.config,
            once=args.once,
        )
    )


if __name__ == "__main__":
    main()
