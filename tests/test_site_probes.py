from __future__ import annotations

import threading
from http.server import BaseHTTPRequestHandler, HTTPServer

import httpx
import pytest

from caddy_manager.monitoring.sites import probe_site, probe_sites, site_url
from caddy_manager.retry import RetryExecutor

_hits: dict[str, int] = {}


class _Handler(BaseHTTPRequestHandler):
    def log_message(self, format: str, *args) -> None:  # noqa: A002
        return

    def do_GET(self) -> None:  # noqa: N802
        _hits[self.path] = _hits.get(self.path, 0) + 1
        if self.path == "/ok":
            status = 200
        elif self.path == "/bad_gateway":
            status = 502
        elif self.path == "/flaky":
            status = 200 if _hits[self.path] >= 2 else 503
        else:
            status = 404
        body = b"hello"
        self.send_response(status)
        self.send_header("Content-Type", "text/plain")
        self.send_header("Content-Length", str(len(body)))
        self.end_headers()
        self.wfile.write(body)


@pytest.fixture(scope="module")
def local_server_base_url() -> str:
    httpd = HTTPServer(("127.0.0.1", 0), _Handler)
    host, port = httpd.server_address
    thread = threading.Thread(target=httpd.serve_forever, daemon=True)
    thread.start()
    try:
        yield f"http://{host}:{port}"
    finally:
        httpd.shutdown()
        thread.join(timeout=5)
        httpd.server_close()


def _retry() -> RetryExecutor:
    async def _no_sleep(_seconds: float) -> None:
        return None

    return RetryExecutor(max_attempts=3, interval=0, async_sleep=_no_sleep)


def test_site_url() -> None:
    assert site_url("example.com") == "https://example.com"
    assert site_url("example.com", "http") == "http://example.com"
    assert site_url("http://127.0.0.1:8080/health") == "http://127.0.0.1:8080/health"
    assert site_url(":8080") is None
    assert site_url("*.example.com") is None


@pytest.mark.asyncio
async def test_probe_ok(local_server_base_url: str) -> None:
    async with httpx.AsyncClient() as client:
        result = await probe_site(
            client, "ok", f"{local_server_base_url}/ok",
            retry=_retry(), timeout_seconds=5, attempts=3, retry_interval_seconds=0,
        )
    assert result.up is True
    assert result.status == 200
    assert result.attempts == 1
    assert result.latency_ms is not None and result.latency_ms >= 0


@pytest.mark.asyncio
async def test_probe_retries_non_200_then_reports_down(local_server_base_url: str) -> None:
    before = _hits.get("/bad_gateway", 0)
    async with httpx.AsyncClient() as client:
        result = await probe_site(
            client, "bad", f"{local_server_base_url}/bad_gateway",
            retry=_retry(), timeout_seconds=5, attempts=3, retry_interval_seconds=0,
        )
    assert result.up is False
    assert result.status == 502
    assert result.attempts == 3
    assert _hits["/bad_gateway"] - before == 3


@pytest.mark.asyncio
async def test_probe_recovers_on_retry(local_server_base_url: str) -> None:
    async with httpx.AsyncClient() as client:
        result = await probe_site(
            client, "flaky", f"{local_server_base_url}/flaky",
            retry=_retry(), timeout_seconds=5, attempts=3, retry_interval_seconds=0,
        )
    assert result.up is True and result.attempts == 2


@pytest.mark.asyncio
async def test_probe_sites_gathers_all_results(local_server_base_url: str) -> None:
    sites = [f"{local_server_base_url}/ok", f"{local_server_base_url}/bad_gateway", "http://127.0.0.1:9/", ":443"]
    obs = await probe_sites(sites, retry=_retry(), timeout_seconds=2, attempts=2, retry_interval_seconds=0, check_tls=False)

    by_key = {(o.metric, o.source): o.value for o in obs}
    assert by_key[("site_up", sites[0])] == 1.0
    assert by_key[("site_status", sites[0])] == 200.0
    assert by_key[("site_up", sites[1])] == 0.0
    assert by_key[("site_status", sites[1])] == 502.0
    assert by_key[("site_up", sites[2])] == 0.0
    assert by_key[("site_status", sites[2])] == 0.0
    assert ("site_latency_ms", sites[2]) not in by_key
    assert not any(o.source == ":443" for o in obs)
