from __future__ import annotations

import json
import threading
from datetime import datetime
from http.server import BaseHTTPRequestHandler, HTTPServer

import pytest
from pydantic import ValidationError

from caddy_manager.alerting.channels import (
    TELEGRAM_MAX_MESSAGE_LEN,
    DeliveryError,
    HttpTransport,
    format_text,
    render,
    split_telegram_message,
)
from caddy_manager.alerting.rules import AlertEvent
from caddy_manager.config import ChannelConfig

EVENT = AlertEvent(
    message="Disk usage on / is high: 91%",
    severity="warning",
    timestamp=datetime(2024, 5, 1, 12, 0, 0),
    source_metric="disk_pct:/",
)

_received: list[tuple[str, dict]] = []


class _Handler(BaseHTTPRequestHandler):
    def log_message(self, format: str, *args) -> None:  # noqa: A002
        return

    def do_POST(self) -> None:  # noqa: N802
        length = int(self.headers.get("Content-Length") or 0)
        body = json.loads(self.rfile.read(length) or b"{}")
        _received.append((self.path, body))

        routes = {
            "/ok": (200, {"ok": True}),
            "/dingtalk-error": (200, {"errcode": 310000, "errmsg": "keywords not in content"}),
            "/fail": (500, {"error": "boom"}),
        }
        status, payload = routes.get(self.path, (404, {}))
        raw = json.dumps(payload).encode("utf-8")
        self.send_response(status)
        self.send_header("Content-Type", "application/json")
        self.send_header("Content-Length", str(len(raw)))
        self.end_headers()
        self.wfile.write(raw)


@pytest.fixture(scope="module")
def hook_base_url() -> str:
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


def test_format_text() -> None:
    assert format_text(EVENT) == "[Caddy Alert - warning] [2024-05-01 12:00:00] Disk usage on / is high: 91%"


def test_render_payload_shapes() -> None:
    text = format_text(EVENT)

    [tg] = render(ChannelConfig(name="tg", kind="telegram", token="123:abc", chat_id="42"), EVENT)
    assert tg.url == "https://api.telegram.org/bot123:abc/sendMessage"
    assert tg.payload == {"chat_id": "42", "text": text, "parse_mode": "HTML"}

    [ding] = render(ChannelConfig(name="d", kind="dingtalk", url="http://x/d"), EVENT)
    assert ding.payload == {"msgtype": "text", "text": {"content": text}}

    [slack] = render(ChannelConfig(name="s", kind="slack", url="http://x/s"), EVENT)
    assert slack.payload == {"text": text}

    [wecom] = render(ChannelConfig(name="w", kind="wecom", url="http://x/w", format="markdown"), EVENT)
    content = wecom.payload["markdown"]["content"]
    assert wecom.payload["msgtype"] == "markdown"
    assert '<font color="comment">[Caddy Alert - warning]</font>' in content
    assert "2024-05-01 12:00:00" in content and EVENT.message in content

    [hook] = render(ChannelConfig(name="h", kind="webhook", url="http://x/h", format="json"), EVENT)
    assert hook.payload["severity"] == "warning"
    assert hook.payload["timestamp"] == "2024-05-01 12:00:00"
    assert hook.payload["message"] == EVENT.message
    assert hook.payload["source_metric"] == "disk_pct:/"


def test_render_rejects_incomplete_channels() -> None:
    with pytest.raises(DeliveryError):
        render(ChannelConfig(name="tg", kind="telegram", token="t"), EVENT)
    with pytest.raises(DeliveryError):
        render(ChannelConfig(name="s", kind="slack"), EVENT)


def test_unknown_channel_kind_and_format_are_rejected_at_load() -> None:
    with pytest.raises(ValidationError):
        ChannelConfig(name="x", kind="pager", url="http://x")
    with pytest.raises(ValidationError):
        ChannelConfig(name="x", kind="webhook", url="http://x", format="html")


def test_long_telegram_text_is_split() -> None:
    long_event = AlertEvent(message="line\n" * 2000, severity="error", timestamp=EVENT.timestamp)
    parts = render(ChannelConfig(name="tg", kind="telegram", token="t", chat_id="1"), long_event)
    assert len(parts) > 1
    assert all(len(p.payload["text"]) <= TELEGRAM_MAX_MESSAGE_LEN for p in parts)
    assert split_telegram_message("") == [""]


def test_transport_delivers_json(hook_base_url: str) -> None:
    transport = HttpTransport(timeout_seconds=5)
    try:
        transport.send(EVENT, ChannelConfig(name="h", kind="webhook", url=f"{hook_base_url}/ok", format="json"))
    finally:
        transport.close()
    path, body = _received[-1]
    assert path == "/ok"
    assert body["message"] == EVENT.message


def test_transport_raises_on_http_and_api_errors(hook_base_url: str) -> None:
    transport = HttpTransport(timeout_seconds=5)
    try:
        with pytest.raises(DeliveryError, match="HTTP 500"):
            transport.send(EVENT, ChannelConfig(name="h", kind="slack", url=f"{hook_base_url}/fail"))
        with pytest.raises(DeliveryError, match="errcode=310000"):
            transport.send(EVENT, ChannelConfig(name="d", kind="dingtalk", url=f"{hook_base_url}/dingtalk-error"))
    finally:
        transport.close()


def test_transport_connection_error_is_delivery_error() -> None:
    transport = HttpTransport(timeout_seconds=1)
    try:
        with pytest.raises(DeliveryError):
            transport.send(EVENT, ChannelConfig(name="h", kind="webhook", url="http://127.0.0.1:9/hook"))
    finally:
        transport.close()
