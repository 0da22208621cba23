from __future__ import annotations

import asyncio
from datetime import datetime
from pathlib import Path
from typing import Iterable

import httpx
import structlog

from caddy_manager.analytics.logfiles import load_access_records
from caddy_manager.analytics.reports import log_alert_observations
from caddy_manager.caddyfile import CaddyfileSyntaxError, parse
from caddy_manager.config import ManagerConfig
from caddy_manager.errors import CollectorError, LogUnavailable
from caddy_manager.monitoring.certs import scan_certificates
from caddy_manager.monitoring.host import PROC_ROOT, HostSampler
from caddy_manager.monitoring.observations import Observation
from caddy_manager.monitoring.process import check_process
from caddy_manager.monitoring.sites import probe_sites
from caddy_manager.retry import RetryExecutor

logger = structlog.get_logger(__name__)

COLLECTORS = ("system", "process", "site", "cert", "logs")


class HealthCollector:
    """Runs the selected collectors once; a failing collector becomes a ``collector_error`` observation."""

    def __init__(
        self,
        config: ManagerConfig,
        *,
        retry: RetryExecutor | None = None,
        host: HostSampler | None = None,
        http_client: httpx.AsyncClient | None = None,
        proc_root: Path = PROC_ROOT,
    ):
        self.config = config
        mon = config.monitoring
        self.retry = retry or RetryExecutor(max_attempts=mon.probe_attempts, interval=mon.probe_retry_interval_seconds)
        self.proc_root = Path(proc_root)
        self.host = host or HostSampler(disk_paths=mon.disk_paths, proc_root=self.proc_root)
        self.http_client = http_client

    def site_list(self) -> list[str]:
        if self.config.monitoring.sites:
            return list(self.config.monitoring.sites)
        path = Path(self.config.paths.caddyfile)
        try:
            return parse(path.read_text(encoding="utf-8")).site_addresses()
        except (OSError, UnicodeDecodeError, CaddyfileSyntaxError) as exc:
            raise CollectorError(f"Cannot read sites from {path}: {exc}") from exc

    async def _system(self, _sites: list[str] | None) -> list[Observation]:
        return await asyncio.to_thread(self.host.sample)

    async def _process(self, _sites: list[str] | None) -> list[Observation]:
        server = self.config.server
        return await asyncio.to_thread(check_process, server.process_name, server.listen_ports, self.proc_root)

    async def _site(self, sites: list[str] | None) -> list[Observation]:
        mon = self.config.monitoring
        targets = sites if sites else await asyncio.to_thread(self.site_list)
        return await probe_sites(
            targets,
            retry=self.retry,
            scheme=mon.site_scheme,
            timeout_seconds=mon.probe_timeout_seconds,
            attempts=mon.probe_attempts,
            retry_interval_seconds=mon.probe_retry_interval_seconds,
            concurrency=mon.probe_concurrency,
            check_tls=mon.check_remote_tls,
            client=self.http_client,
        )

    async def _cert(self, _sites: list[str] | None) -> list[Observation]:
        return await asyncio.to_thread(scan_certificates, self.config.paths.cert_dir)

    def _log_counters(self) -> list[Observation]:
        if not self.config.monitoring.collect_log_alerts:
            return []
        try:
            records, _malformed = load_access_records(self.config.paths.access_log)
        except LogUnavailable as exc:
            # A server without traffic yet has no access log.
            logger.info("Skipping log counters", reason=exc.message)
            return []
        return log_alert_observations(
            records,
            hours=self.config.monitoring.log_alert_window_hours,
            now=datetime.now().astimezone(),
            slow_threshold_ms=self.config.analytics.slow_request_threshold_ms,
        )

    async def _logs(self, _sites: list[str] | None) -> list[Observation]:
        return await asyncio.to_thread(self._log_counters)

    async def _guarded(self, kind: str, sites: list[str] | None) -> list[Observation]:
        runner = getattr(self, f"_{kind}")
        try:
            return await runner(sites)
        except Exception as exc:
            logger.error("Collector failed", collector=kind, error=f"{type(exc).__name__}: {exc}")
            return [Observation(metric="collector_error", value=1.0, source=kind)]

    async def collect(self, kinds: Iterable[str] = COLLECTORS, *, sites: list[str] | None = None) -> list[Observation]:
        kinds = list(kinds)
        selected = [k for k in kinds if k in COLLECTORS]
        unknown = [k for k in kinds if k not in COLLECTORS]
        if unknown:
            raise CollectorError(f"Unknown collector(s): {', '.join(unknown)}")

        results = await asyncio.gather(*[self._guarded(k, sites) for k in selected])
        out: list[Observation] = []
        for obs in results:
            out.extend(obs)
        logger.info("Collection finished", collectors=selected, observations=len(out))
        return out
