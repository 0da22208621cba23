"""Access, error and performance reports over a time window.

Every function here is pure: it sees only the records, the window and ``now``.
Hour-of-day buckets use the hour of each record's own timestamp.
"""

from __future__ import annotations

from collections import Counter
from datetime import datetime, timedelta
from typing import Any, Iterable, TypeVar

from caddy_manager.analytics.records import AccessRecord, ErrorRecord
from caddy_manager.monitoring.observations import Observation

PERCENTILES = (0.50, 0.75, 0.90, 0.95, 0.99)

R = TypeVar("R", AccessRecord, ErrorRecord)


def in_window(records: Iterable[R], *, hours: float, now: datetime) -> list[R]:
    if now.tzinfo is None:
        now = now.astimezone()
    start = now - timedelta(hours=float(hours))
    out: list[R] = []
    for r in records:
        ts = r.timestamp if r.timestamp.tzinfo is not None else r.timestamp.astimezone()
        if start <= ts <= now:
            out.append(r)
    return out


def percentile(sorted_values: list[float], p: float) -> float | None:
    """Value at index ``min(floor(count * p), count - 1)`` of the sorted list."""
    if not sorted_values:
        return None
    idx = min(int(len(sorted_values) * float(p)), len(sorted_values) - 1)
    return float(sorted_values[max(0, idx)])


def top(counter: Counter, n: int) -> list[tuple[Any, int]]:
    return counter.most_common(max(0, int(n)))


def per_hour(timestamps: Iterable[datetime]) -> dict[int, int]:
    counts = Counter(ts.hour for ts in timestamps)
    return {h: counts[h] for h in sorted(counts)}


def _window_seconds(hours: float) -> float:
    return max(1.0, float(hours) * 3600.0)


def access_report(
    records: list[AccessRecord],
    *,
    hours: float,
    now: datetime,
    slow_threshold_ms: float = 2000.0,
    top_n: int = 10,
    recent_n: int = 10,
    malformed: int = 0,
) -> dict[str, Any]:
    rs = in_window(records, hours=hours, now=now)
    total = len(rs)
    total_bytes = sum(r.bytes_sent for r in rs)

    slow = [r for r in rs if r.latency_ms is not None and r.latency_ms > float(slow_threshold_ms)]
    slow.sort(key=lambda r: r.timestamp, reverse=True)

    return {
        "kind": "access",
        "hours": float(hours),
        "generated_at": now.isoformat(),
        "total_requests": total,
        "unique_ips": len({r.client_ip for r in rs}),
        "status_counts": dict(sorted(Counter(r.status for r in rs).items())),
        "top_ips": top(Counter(r.client_ip for r in rs), top_n),
        "top_paths": top(Counter(r.path for r in rs), top_n),
        "top_user_agents": top(Counter(r.user_agent for r in rs if r.user_agent), top_n),
        "total_bytes": total_bytes,
        "avg_request_bytes": round(total_bytes / total, 3) if total else 0.0,
        "bandwidth_bytes_per_sec": round(total_bytes / _window_seconds(hours), 3),
        "requests_per_hour": per_hour(r.timestamp for r in rs),
        "slow_threshold_ms": float(slow_threshold_ms),
        "slow_request_count": len(slow),
        "slow_requests": [
            {
                "timestamp": r.timestamp.isoformat(),
                "method": r.method,
                "path": r.path,
                "latency_ms": r.latency_ms,
            }
            for r in slow[: max(0, int(recent_n))]
        ],
        "malformed_lines": malformed,
    }


def error_report(
    records: list[ErrorRecord],
    *,
    hours: float,
    now: datetime,
    top_n: int = 10,
    recent_n: int = 10,
    malformed: int = 0,
) -> dict[str, Any]:
    rs = in_window(records, hours=hours, now=now)
    client = [r for r in rs if 400 <= r.status < 500]
    server = [r for r in rs if 500 <= r.status < 600]
    recent = rs[-max(0, int(recent_n)):] if recent_n else []
    return {
        "kind": "error",
        "hours": float(hours),
        "generated_at": now.isoformat(),
        "total_errors": len(rs),
        "status_4xx": dict(sorted(Counter(r.status for r in client).items())),
        "status_5xx": dict(sorted(Counter(r.status for r in server).items())),
        "top_error_paths": top(Counter(r.path for r in rs if r.path), top_n),
        "top_error_ips": top(Counter(r.client_ip for r in rs if r.client_ip), top_n),
        "errors_per_hour": per_hour(r.timestamp for r in rs),
        "recent_errors": [r.raw for r in recent],
        "malformed_lines": malformed,
    }


def performance_report(
    records: list[AccessRecord],
    *,
    hours: float,
    now: datetime,
    malformed: int = 0,
) -> dict[str, Any]:
    rs = in_window(records, hours=hours, now=now)
    latencies = sorted(r.latency_ms for r in rs if r.latency_ms is not None)

    latency: dict[str, Any] | None = None
    if latencies:
        latency = {
            "count": len(latencies),
            "mean_ms": round(sum(latencies) / len(latencies), 3),
            "min_ms": latencies[0],
            "max_ms": latencies[-1],
        }
        for p in PERCENTILES:
            latency[f"p{int(round(p * 100))}_ms"] = percentile(latencies, p)

    total = len(rs)
    statuses = Counter(r.status for r in rs)
    total_bytes = sum(r.bytes_sent for r in rs)
    return {
        "kind": "performance",
        "hours": float(hours),
        "generated_at": now.isoformat(),
        "total_requests": total,
        "latency": latency,
        "qps_per_hour": {h: round(c / 3600.0, 4) for h, c in per_hour(r.timestamp for r in rs).items()},
        "status_distribution": {
            code: {"count": count, "percent": round(count * 100.0 / total, 2)}
            for code, count in sorted(statuses.items())
        },
        "total_bytes": total_bytes,
        "bandwidth_bytes_per_sec": round(total_bytes / _window_seconds(hours), 3),
        "malformed_lines": malformed,
    }


def log_alert_observations(
    records: list[AccessRecord],
    *,
    hours: float,
    now: datetime,
    slow_threshold_ms: float = 2000.0,
    source: str = "access_log",
) -> list[Observation]:
    """Counters fed into threshold evaluation: 5xx, 4xx and slow requests in the window."""
    rs = in_window(records, hours=hours, now=now)
    ts = now.timestamp()
    counts = {
        "http_5xx_count": sum(1 for r in rs if 500 <= r.status < 600),
        "http_4xx_count": sum(1 for r in rs if 400 <= r.status < 500),
        "slow_request_count": sum(
            1 for r in rs if r.latency_ms is not None and r.latency_ms > float(slow_threshold_ms)
        ),
    }
    return [Observation(metric=m, value=float(v), source=source, ts=ts) for m, v in counts.items()]
