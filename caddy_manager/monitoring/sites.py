from __future__ import annotations

import asyncio
import ssl
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any
from urllib.parse import urlsplit

import httpx
import structlog

from caddy_manager.monitoring.observations import Observation
from caddy_manager.retry import RetryExecutor

logger = structlog.get_logger(__name__)


@dataclass(frozen=True)
class SiteProbeResult:
    site: str
    url: str
    up: bool
    status: int
    latency_ms: float | None
    attempts: int
    error: str | None


def site_url(site: str, scheme: str = "https") -> str | None:
    """
    Turn a Caddyfile address or a configured site into a probe URL.
    Port-only addresses and wildcards cannot be probed and return None.
    """
    s = str(site or "").strip()
    if not s:
        return None
    if "://" in s:
        return s
    if s.startswith(":") or "*" in s or s.startswith("/"):
        return None
    return f"{scheme}://{s}"


async def probe_site(
    client: httpx.AsyncClient,
    site: str,
    url: str,
    *,
    retry: RetryExecutor,
    timeout_seconds: float,
    attempts: int,
    retry_interval_seconds: float,
) -> SiteProbeResult:
    """Up means HTTP 200 within ``attempts`` tries; status 0 stands for a connection failure."""
    last: dict[str, Any] = {"status": 0, "latency_ms": None, "error": None}

    async def _once() -> int:
        started = time.perf_counter()
        try:
            resp = await client.get(url, follow_redirects=True, timeout=timeout_seconds)
        except httpx.RequestError as exc:
            last.update(status=0, latency_ms=None, error=f"{type(exc).__name__}: {exc}")
            raise
        last.update(
            status=resp.status_code,
            latency_ms=round((time.perf_counter() - started) * 1000.0, 3),
            error=None if resp.status_code == 200 else f"HTTP {resp.status_code}",
        )
        return resp.status_code

    outcome = await retry.execute_async(
        _once,
        max_attempts=attempts,
        interval=retry_interval_seconds,
        succeeded=lambda status: status == 200,
        label=f"probe {site}",
    )
    return SiteProbeResult(
        site=site,
        url=url,
        up=outcome.ok,
        status=int(last["status"]),
        latency_ms=last["latency_ms"],
        attempts=outcome.attempts,
        error=last["error"],
    )


def _tls_host_port_from_url(url: str) -> tuple[str, int] | None:
    try:
        parts = urlsplit(str(url or "").strip())
        port = parts.port
    except ValueError:
        return None
    if (parts.scheme or "").lower() != "https":
        return None
    host = (parts.hostname or "").strip()
    if not host:
        return None
    return host, int(port or 443)


def _parse_cert_not_after(cert: dict[str, Any]) -> datetime | None:
    # ssl.getpeercert() returns e.g. "Feb  6 12:00:00 2026 GMT"
    s = cert.get("notAfter")
    if not isinstance(s, str) or not s.strip():
        return None
    try:
        dt = datetime.strptime(s.strip(), "%b %d %H:%M:%S %Y %Z")
    except ValueError:
        return None
    return dt.replace(tzinfo=timezone.utc)


async def remote_cert_days_left(host: str, port: int, *, timeout_seconds: float) -> float | None:
    """Days until the certificate served on host:port expires; None when it cannot be read."""
    ctx = ssl.create_default_context()
    writer = None
    try:
        _reader, writer = await asyncio.wait_for(
            asyncio.open_connection(host=host, port=port, ssl=ctx, server_hostname=host),
            timeout=max(1.0, float(timeout_seconds)),
        )
        sslobj = writer.get_extra_info("ssl_object")
        cert = sslobj.getpeercert() if sslobj else {}
        not_after = _parse_cert_not_after(cert) if isinstance(cert, dict) else None
        if not_after is None:
            return None
        return round((not_after - datetime.now(timezone.utc)).total_seconds() / 86400.0, 3)
    except (OSError, ssl.SSLError, asyncio.TimeoutError) as exc:
        logger.warning("Remote TLS check failed", host=host, port=port, error=f"{type(exc).__name__}: {exc}")
        return None
    finally:
        if writer is not None:
            writer.close()
            try:
                await writer.wait_closed()
            except (OSError, ssl.SSLError):
                pass


def _result_observations(result: SiteProbeResult, ts: float) -> list[Observation]:
    out = [
        Observation(metric="site_up", value=1.0 if result.up else 0.0, source=result.site, ts=ts),
        Observation(metric="site_status", value=float(result.status), source=result.site, ts=ts),
    ]
    if result.latency_ms is not None:
        out.append(Observation(metric="site_latency_ms", value=float(result.latency_ms), source=result.site, ts=ts))
    return out


async def probe_sites(
    sites: list[str],
    *,
    retry: RetryExecutor,
    scheme: str = "https",
    timeout_seconds: float = 10.0,
    attempts: int = 3,
    retry_interval_seconds: float = 5.0,
    concurrency: int = 10,
    check_tls: bool = True,
    client: httpx.AsyncClient | None = None,
) -> list[Observation]:
    """Probe every site concurrently and return once all of them have finished."""
    targets: list[tuple[str, str]] = []
    for site in sites:
        url = site_url(site, scheme)
        if url is None:
            logger.debug("Skipping unprobeable address", site=site)
            continue
        targets.append((site, url))
    if not targets:
        return []

    sem = asyncio.Semaphore(max(1, int(concurrency)))
    owns_client = client is None
    if client is None:
        client = httpx.AsyncClient(headers={"User-Agent": "caddy-manager/1.0"})

    async def _run_one(site: str, url: str) -> list[Observation]:
        async with sem:
            result = await probe_site(
                client,
                site,
                url,
                retry=retry,
                timeout_seconds=timeout_seconds,
                attempts=attempts,
                retry_interval_seconds=retry_interval_seconds,
            )
            ts = time.time()
            obs = _result_observations(result, ts)
            if check_tls:
                target = _tls_host_port_from_url(url)
                if target is not None:
                    days = await remote_cert_days_left(target[0], target[1], timeout_seconds=timeout_seconds)
                    if days is not None:
                        obs.append(Observation(metric="site_cert_days_left", value=days, source=site, ts=ts))
            logger.info(
                "Site probed",
                site=site,
                up=result.up,
                status=result.status,
                latency_ms=result.latency_ms,
                attempts=result.attempts,
            )
            return obs

    try:
        results = await asyncio.gather(*[_run_one(s, u) for s, u in targets])
    finally:
        if owns_client:
            await client.aclose()

    out: list[Observation] = []
    for obs in results:
        out.extend(obs)
    return out
