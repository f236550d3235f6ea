"""Trading Oversight — main entry point.

Wires the oversight and lifecycle components and runs the cycle on a schedule.

Startup: load config -> logging -> connect DB -> seed state -> AI client + oracles
         -> lifecycle -> orchestrator -> optional API -> scheduler
Shutdown: stop scheduler -> stop API -> close DB
"""

from __future__ import annotations

import asyncio
import signal
from datetime import datetime, timedelta, timezone
from pathlib import Path

import structlog
from aiohttp import web
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.cron import CronTrigger
from apscheduler.triggers.interval import IntervalTrigger

from src.api.server import create_app
from src.lifecycle.promoter import StrategyPromoter
from src.lifecycle.versions import VersionManager
from src.orchestrator.ai_client import AIClient
from src.orchestrator.cycle import CycleContext, CycleOrchestrator
from src.oversight.oracles import build_oracles
from src.oversight.safety import RiskControl
from src.shell.config import Config, load_config
from src.shell.database import Database
from src.shell.execution import PaperExecution
from src.shell.state import SystemState
from src.utils.logging import setup_logging

log = structlog.get_logger()


class OversightService:
    """Owns every component and the scheduler."""

    def __init__(self, config: Config | None = None) -> None:
        self._config = config
        self._db: Database | None = None
        self._ai: AIClient | None = None
        self._orchestrator: CycleOrchestrator | None = None
        self._scheduler: AsyncIOScheduler | None = None
        self._api_runner: web.AppRunner | None = None
        self._stopped = asyncio.Event()

    @property
    def running(self) -> bool:
        return self._scheduler is not None

    @property
    def orchestrator(self) -> CycleOrchestrator | None:
        return self._orchestrator

    @property
    def scheduler(self) -> AsyncIOScheduler | None:
        return self._scheduler

    async def start(self) -> None:
        """Full startup sequence. Returns once the scheduler is running."""
        config = self._config = self._config or load_config()
        setup_logging(config.log_level)
        log.info("service.starting", mode=config.mode, strategies=config.strategies)

        if not config.is_paper():
            raise RuntimeError("Live execution is not wired in this service; set general.mode = \"paper\"")

        Path(config.db_path).parent.mkdir(parents=True, exist_ok=True)
        self._db = Database(config.db_path)
        await self._db.connect()
        state = SystemState(self._db)
        await state.initialize(config.strategies)
        risk_control = RiskControl(state)
        await risk_control.load()

        self._ai = AIClient(config.ai, self._db)
        await self._ai.initialize()

        versions = VersionManager(self._db)
        promoter = StrategyPromoter(self._db, versions)
        self._orchestrator = CycleOrchestrator(
            config, self._db, state, risk_control, build_oracles(self._ai), versions, promoter,
            CycleContext(PaperExecution(config.paper_balance_usd, db=self._db)), ai=self._ai,
        )

        if config.api.enabled:
            await self._start_api(create_app(
                config, self._db, state, risk_control, self._orchestrator, versions, promoter, ai=self._ai,
            ))

        self._scheduler = AsyncIOScheduler(timezone=config.timezone)
        self._add_jobs(self._scheduler)
        self._scheduler.start()
        self._stopped.clear()
        log.info("service.started", interval_minutes=config.cycle.interval_minutes)

    async def _start_api(self, app: web.Application) -> None:
        api = self._config.api
        self._api_runner = web.AppRunner(app)
        await self._api_runner.setup()
        await web.TCPSite(self._api_runner, api.host, api.port).start()
        log.info("api.started", host=api.host, port=api.port)

    def _add_jobs(self, scheduler: AsyncIOScheduler) -> None:
        cycle = self._config.cycle
        first_run = {"next_run_time": datetime.now(timezone.utc) + timedelta(seconds=10)} if cycle.run_on_start else {}
        scheduler.add_job(
            self._orchestrator.run_cycle, IntervalTrigger(minutes=cycle.interval_minutes),
            id="oversight_cycle", name="Oversight Cycle", max_instances=1, coalesce=True, **first_run,
        )
        # token_usage is bucketed by UTC date
        scheduler.add_job(
            self._reset_daily_tokens, CronTrigger(hour=0, minute=0, timezone=timezone.utc),
            id="daily_token_reset", name="Daily Token Reset",
        )
        log.info("scheduler.configured", interval_minutes=cycle.interval_minutes, run_on_start=cycle.run_on_start)

    async def _reset_daily_tokens(self) -> None:
        if self._ai is not None:
            self._ai.reset_daily_tokens()
            log.info("ai.daily_tokens_reset")

    async def serve(self) -> None:
        """Start, then block until stop() completes."""
        await self.start()
        await self._stopped.wait()

    async def stop(self) -> None:
        """Stop the scheduler, then the API, then close the database."""
        log.info("service.stopping")
        if self._scheduler is not None:
            self._scheduler.shutdown(wait=False)
            self._scheduler = None
        if self._api_runner is not None:
            await self._api_runner.cleanup()
            self._api_runner = None
        if self._db is not None:
            await self._db.close()
            self._db = None
        self._stopped.set()
        log.info("service.stopped")


async def main() -> None:
    service = OversightService()
    loop = asyncio.get_running_loop()
    stopping: list[asyncio.Task] = []

    def request_stop() -> None:
        if not stopping:
            stopping.append(asyncio.create_task(service.stop()))

    for sig in (signal.SIGTERM, signal.SIGINT):
        loop.add_signal_handler(sig, request_stop)

    try:
        await service.serve()
    finally:
        if stopping:
            await stopping[0]
        elif service.running:
            await service.stop()


def run() -> None:
    """Console script entry point."""
    asyncio.run(main())


if __name__ == "__main__":
    run()
