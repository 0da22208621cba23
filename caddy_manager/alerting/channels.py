"""Per-channel rendering and HTTP delivery of Alert Events."""

from __future__ import annotations

import html
from dataclasses import dataclass
from typing import Any

import httpx

from caddy_manager.alerting.rules import AlertEvent
from caddy_manager.config import ChannelConfig

TIME_FORMAT = "%Y-%m-%d %H:%M:%S"
TELEGRAM_MAX_MESSAGE_LEN = 3900

CHANNEL_KINDS = ("telegram", "dingtalk", "slack", "wecom", "webhook")

# WeCom markdown only knows these font colours.
_WECOM_COLORS = {"error": "warning", "warning": "comment", "info": "info"}


class DeliveryError(Exception):
    pass


@dataclass(frozen=True)
class Request:
    url: str
    payload: dict[str, Any]


def format_text(event: AlertEvent) -> str:
    return f"[Caddy Alert - {event.severity}] [{event.timestamp.strftime(TIME_FORMAT)}] {event.message}"


def split_telegram_message(text: str, *, max_len: int = TELEGRAM_MAX_MESSAGE_LEN) -> list[str]:
    s = (text or "").strip()
    if not s:
        return [""]

    max_len = max(1, int(max_len))
    parts: list[str] = []
    while s:
        if len(s) <= max_len:
            parts.append(s)
            break
        cut = s.rfind("\n", 0, max_len + 1)
        if cut < max_len * 0.6:
            cut = max_len
        parts.append(s[:cut].rstrip())
        s = s[cut:].lstrip()
    return parts


def _structured(event: AlertEvent) -> dict[str, Any]:
    return {
        "severity": event.severity,
        "timestamp": event.timestamp.strftime(TIME_FORMAT),
        "message": event.message,
        "source_metric": event.source_metric,
    }


def render(channel: ChannelConfig, event: AlertEvent) -> list[Request]:
    """Build the HTTP request(s) delivering ``event`` to ``channel``."""
    kind = channel.kind
    text = format_text(event)
    structured = channel.format in ("markdown", "json")
    ts = event.timestamp.strftime(TIME_FORMAT)

    if kind == "telegram":
        if not channel.token or not channel.chat_id:
            raise DeliveryError(f"Channel {channel.name}: telegram needs token and chat_id")
        url = f"https://api.telegram.org/bot{channel.token}/sendMessage"
        if structured:
            body = (
                f"<b>[Caddy Alert - {html.escape(event.severity)}]</b>\n"
                f"<i>{html.escape(ts)}</i>\n{html.escape(event.message)}"
            )
        else:
            body = html.escape(text)
        return [
            Request(url, {"chat_id": channel.chat_id, "text": part, "parse_mode": "HTML"})
            for part in split_telegram_message(body)
        ]

    if not channel.url:
        raise DeliveryError(f"Channel {channel.name}: {kind} needs a url")

    if kind == "dingtalk":
        if structured:
            md = f"### [Caddy Alert - {event.severity}]\n\n- time: {ts}\n- {event.message}"
            return [Request(channel.url, {"msgtype": "markdown", "markdown": {"title": "Caddy Alert", "text": md}})]
        return [Request(channel.url, {"msgtype": "text", "text": {"content": text}})]

    if kind == "slack":
        if structured:
            return [Request(channel.url, {"text": f"*[Caddy Alert - {event.severity}]* `{ts}`\n{event.message}"})]
        return [Request(channel.url, {"text": text})]

    if kind == "wecom":
        if structured:
            color = _WECOM_COLORS.get(event.severity, "info")
            content = (
                f'<font color="{color}">[Caddy Alert - {event.severity}]</font>\n'
                f"> time: {ts}\n> {event.message}"
            )
            return [Request(channel.url, {"msgtype": "markdown", "markdown": {"content": content}})]
        return [Request(channel.url, {"msgtype": "text", "text": {"content": text}})]

    if kind == "webhook":
        if structured:
            return [Request(channel.url, {**_structured(event), "text": text})]
        return [Request(channel.url, {"text": text})]

    raise DeliveryError(f"Channel {channel.name}: unknown kind {kind!r}")


def _redact(channel: ChannelConfig, msg: str) -> str:
    if channel.token:
        msg = msg.replace(channel.token, "<redacted>")
    return msg


def _check_response(channel: ChannelConfig, resp: httpx.Response) -> None:
    if resp.status_code >= 300:
        raise DeliveryError(f"HTTP {resp.status_code}: {resp.text[:300]}")
    if channel.kind not in ("telegram", "dingtalk", "wecom"):
        return
    # These APIs answer 200 with an error flag in the body.
    try:
        data = resp.json()
    except ValueError:
        return
    if not isinstance(data, dict):
        return
    if channel.kind == "telegram" and data.get("ok") is False:
        raise DeliveryError(f"telegram: {data.get('description') or 'not ok'}")
    if channel.kind in ("dingtalk", "wecom") and data.get("errcode") not in (None, 0):
        raise DeliveryError(f"{channel.kind}: errcode={data.get('errcode')} {data.get('errmsg') or ''}".strip())


class HttpTransport:
    """``send(event, channel)``: deliver one event to one channel or raise DeliveryError."""

    def __init__(self, *, timeout_seconds: float = 15.0, client: httpx.Client | None = None):
        self.client = client or httpx.Client(timeout=timeout_seconds)
        self._owns_client = client is None

    def send(self, event: AlertEvent, channel: ChannelConfig) -> None:
        for req in render(channel, event):
            try:
                resp = self.client.post(req.url, json=req.payload)
            except httpx.HTTPError as exc:
                raise DeliveryError(_redact(channel, f"{type(exc).__name__}: {exc}")) from None
            _check_response(channel, resp)

    def close(self) -> None:
        if self._owns_client:
            self.client.close()
