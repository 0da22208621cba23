"""Periodic monitoring loop: collect -> evaluate -> dispatch."""

from __future__ import annotations

import asyncio
import signal
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable

import structlog
import yaml
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from apscheduler.triggers.interval import IntervalTrigger

from caddy_manager.alerting.dispatcher import AlertDispatcher, DispatchOutcome
from caddy_manager.alerting.rules import AlertEvent, evaluate
from caddy_manager.config import ManagerConfig
from caddy_manager.monitoring.collector import COLLECTORS, HealthCollector
from caddy_manager.monitoring.observations import Observation
from caddy_manager.runtime import RuntimeSettings

logger = structlog.get_logger(__name__)

JOB_ID = "monitor_cycle"


@dataclass
class CycleResult:
    observations: list[Observation] = field(default_factory=list)
    events: list[AlertEvent] = field(default_factory=list)
    outcomes: list[DispatchOutcome] = field(default_factory=list)

    @property
    def collector_failed(self) -> bool:
        return any(o.metric == "collector_error" for o in self.observations)


class MonitorService:
    """Owns one monitoring cycle and the scheduler that repeats it."""

    def __init__(
        self,
        collector: HealthCollector,
        dispatcher: AlertDispatcher,
        settings: RuntimeSettings,
        *,
        interval_seconds: float = 300,
        kinds: Iterable[str] = COLLECTORS,
        sites: list[str] | None = None,
        reload_config: Callable[[], ManagerConfig] | None = None,
    ):
        self.collector = collector
        self.dispatcher = dispatcher
        self.settings = settings
        self.interval_seconds = max(1.0, float(interval_seconds))
        self.kinds = list(kinds)
        self.sites = sites
        self.reload_config = reload_config
        self.cycles = 0
        self._stop = asyncio.Event()
        self._idle = asyncio.Event()
        self._idle.set()

    async def run_cycle(self) -> CycleResult:
        observations = await self.collector.collect(self.kinds, sites=self.sites)
        events = evaluate(observations, self.settings.snapshot().rules)
        # Delivery retries sleep; keep them off the event loop.
        outcomes = await asyncio.to_thread(self.dispatcher.dispatch_all, events) if events else []
        self.cycles += 1
        logger.info(
            "Monitoring cycle finished",
            cycle=self.cycles,
            observations=len(observations),
            alerts=len(events),
        )
        return CycleResult(observations=observations, events=events, outcomes=outcomes)

    async def _scheduled_cycle(self) -> None:
        if self._stop.is_set():
            return
        self._idle.clear()
        try:
            await self.run_cycle()
        except Exception as e:
            logger.error("Monitoring cycle failed", error=f"{type(e).__name__}: {e}")
        finally:
            self._idle.set()

    def stop(self) -> None:
        self._stop.set()

    def reload_settings(self) -> bool:
        """Re-read the config file and swap the alerting settings; keep the old ones on error."""
        if self.reload_config is None:
            return False
        try:
            config = self.reload_config()
        except (OSError, ValueError, yaml.YAMLError) as e:
            logger.error("Config reload failed, keeping current settings", error=str(e))
            return False
        self.settings.apply_config(config)
        return True

    def _install_signal_handlers(self) -> list[signal.Signals]:
        loop = asyncio.get_running_loop()
        handlers = {signal.SIGINT: self.stop, signal.SIGTERM: self.stop}
        if self.reload_config is not None:
            handlers[signal.SIGHUP] = self.reload_settings
        installed = []
        for sig, handler in handlers.items():
            try:
                loop.add_signal_handler(sig, handler)
                installed.append(sig)
            except (NotImplementedError, RuntimeError):
                # Not the main thread, or unsupported platform.
                logger.debug("Signal handler not installed", signal=sig.name)
        return installed

    async def run_forever(self) -> None:
        installed = self._install_signal_handlers()
        scheduler = AsyncIOScheduler()
        scheduler.add_job(
            self._scheduled_cycle,
            trigger=IntervalTrigger(seconds=self.interval_seconds),
            id=JOB_ID,
            name="Monitoring cycle",
            max_instances=1,
            coalesce=True,
            next_run_time=datetime.now(),
        )
        scheduler.start()
        logger.info("Monitor started", interval_seconds=self.interval_seconds, collectors=self.kinds)
        try:
            await self._stop.wait()
        finally:
            scheduler.shutdown(wait=True)
            # Coroutine jobs are not awaited by shutdown(); wait for the cycle boundary here.
            await self._idle.wait()
            loop = asyncio.get_running_loop()
            for sig in installed:
                loop.remove_signal_handler(sig)
            logger.info("Monitor stopped", cycles=self.cycles)
