"""Log Record types and line parsers.

Two access-log shapes are understood:

* Caddy's structured JSON access log (``format json`` in the site template)
* combined log format with the request latency in milliseconds appended as the
  last field

Error logs are either the same access shapes filtered to 4xx/5xx, Caddy JSON
entries, or ``YYYY/mm/dd HH:MM:SS [LEVEL] message`` lines.
"""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Iterable

_COMBINED_RE = re.compile(
    r'^(?P<ip>\S+)\s+\S+\s+\S+\s+\[(?P<ts>[^\]]+)\]\s+"(?P<req>[^"]*)"\s+(?P<status>\d{3})\s+(?P<size>\S+)'
    r'(?:\s+"(?P<ref>[^"]*)"\s+"(?P<ua>[^"]*)")?'
    r"(?:\s+(?P<latency>\d+(?:\.\d+)?))?\s*$"
)
_ERROR_TEXT_RE = re.compile(r"^(?P<ts>\d{4}/\d{2}/\d{2}\s+\d{2}:\d{2}:\d{2})\s+\[(?P<level>\w+)\]\s+(?P<msg>.*)$")
_STATUS_IN_TEXT_RE = re.compile(r"\b(?P<status>[45]\d{2})\b")


@dataclass(frozen=True)
class AccessRecord:
    client_ip: str
    timestamp: datetime
    method: str
    path: str
    status: int
    bytes_sent: int
    latency_ms: float | None
    user_agent: str


@dataclass(frozen=True)
class ErrorRecord:
    timestamp: datetime
    status: int
    path: str
    client_ip: str
    message: str
    raw: str


def _local(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.astimezone()
    return dt


def _parse_json_ts(value: Any) -> datetime | None:
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(float(value), tz=timezone.utc).astimezone()
    if isinstance(value, str) and value.strip():
        try:
            return _local(datetime.fromisoformat(value.strip().replace("Z", "+00:00")))
        except ValueError:
            return None
    return None


def _header(headers: Any, name: str) -> str:
    if not isinstance(headers, dict):
        return ""
    for key, val in headers.items():
        if str(key).lower() != name.lower():
            continue
        if isinstance(val, list):
            return str(val[0]) if val else ""
        return str(val)
    return ""


def _load_json(line: str) -> dict[str, Any] | None:
    s = line.strip()
    if not s.startswith("{"):
        return None
    try:
        obj = json.loads(s)
    except json.JSONDecodeError:
        return None
    return obj if isinstance(obj, dict) else None


def _access_from_json(obj: dict[str, Any]) -> AccessRecord | None:
    ts = _parse_json_ts(obj.get("ts"))
    req = obj.get("request")
    if ts is None or not isinstance(req, dict) or "status" not in obj:
        return None
    try:
        status = int(obj.get("status") or 0)
        size = int(obj.get("size") or 0)
        duration = obj.get("duration")
        latency_ms = round(float(duration) * 1000.0, 3) if duration is not None else None
    except (TypeError, ValueError):
        return None
    return AccessRecord(
        client_ip=str(req.get("client_ip") or req.get("remote_ip") or ""),
        timestamp=ts,
        method=str(req.get("method") or ""),
        path=str(req.get("uri") or ""),
        status=status,
        bytes_sent=size,
        latency_ms=latency_ms,
        user_agent=_header(req.get("headers"), "User-Agent"),
    )


def _access_from_combined(line: str) -> AccessRecord | None:
    m = _COMBINED_RE.match(line.strip())
    if not m:
        return None
    try:
        ts = datetime.strptime(m.group("ts"), "%d/%b/%Y:%H:%M:%S %z")
    except ValueError:
        return None
    parts = m.group("req").split()
    method = parts[0] if parts else ""
    path = parts[1] if len(parts) > 1 else ""
    size = m.group("size")
    latency = m.group("latency")
    return AccessRecord(
        client_ip=m.group("ip"),
        timestamp=ts,
        method=method,
        path=path,
        status=int(m.group("status")),
        bytes_sent=int(size) if size.isdigit() else 0,
        latency_ms=float(latency) if latency is not None else None,
        user_agent=m.group("ua") or "",
    )


def parse_access_line(line: str) -> AccessRecord | None:
    obj = _load_json(line)
    if obj is not None:
        return _access_from_json(obj)
    return _access_from_combined(line)


def parse_access_lines(lines: Iterable[str]) -> tuple[list[AccessRecord], int]:
    """Return (records, malformed_count); blank lines are neither."""
    records: list[AccessRecord] = []
    malformed = 0
    for line in lines:
        if not line.strip():
            continue
        rec = parse_access_line(line)
        if rec is None:
            malformed += 1
        else:
            records.append(rec)
    return records, malformed


def _error_from_json(obj: dict[str, Any], raw: str) -> ErrorRecord | None:
    ts = _parse_json_ts(obj.get("ts"))
    if ts is None:
        return None
    req = obj.get("request") if isinstance(obj.get("request"), dict) else {}
    try:
        status = int(obj.get("status") or 0)
    except (TypeError, ValueError):
        status = 0
    level = str(obj.get("level") or "").lower()
    if status < 400 and level not in ("error", "warn", "warning", "fatal", "panic"):
        return None
    message = str(obj.get("error") or obj.get("msg") or "")
    return ErrorRecord(
        timestamp=ts,
        status=status,
        path=str(req.get("uri") or ""),
        client_ip=str(req.get("client_ip") or req.get("remote_ip") or ""),
        message=message,
        raw=raw,
    )


def parse_error_lines(lines: Iterable[str]) -> tuple[list[ErrorRecord], int]:
    """
    Return (records, malformed_count).
    Well-formed lines that do not describe an error (2xx/3xx access entries,
    info-level JSON) are skipped without counting as malformed.
    """
    records: list[ErrorRecord] = []
    malformed = 0
    for line in lines:
        raw = line.rstrip("\n")
        if not raw.strip():
            continue

        obj = _load_json(raw)
        if obj is not None:
            if _parse_json_ts(obj.get("ts")) is None:
                malformed += 1
                continue
            rec = _error_from_json(obj, raw)
            if rec is not None:
                records.append(rec)
            continue

        access = _access_from_combined(raw)
        if access is not None:
            if access.status >= 400:
                records.append(
                    ErrorRecord(
                        timestamp=access.timestamp,
                        status=access.status,
                        path=access.path,
                        client_ip=access.client_ip,
                        message=f"{access.method} {access.path} {access.status}",
                        raw=raw,
                    )
                )
            continue

        m = _ERROR_TEXT_RE.match(raw.strip())
        if m is None:
            malformed += 1
            continue
        try:
            ts = _local(datetime.strptime(m.group("ts"), "%Y/%m/%d %H:%M:%S"))
        except ValueError:
            malformed += 1
            continue
        sm = _STATUS_IN_TEXT_RE.search(m.group("msg"))
        records.append(
            ErrorRecord(
                timestamp=ts,
                status=int(sm.group("status")) if sm else 0,
                path="",
                client_ip="",
                message=m.group("msg"),
                raw=raw,
            )
        )
    return records, malformed
