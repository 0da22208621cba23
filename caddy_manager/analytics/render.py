from __future__ import annotations

import json
from typing import Any


def to_json(reports: list[dict[str, Any]]) -> str:
    payload: Any = reports[0] if len(reports) == 1 else reports
    return json.dumps(payload, ensure_ascii=False, indent=2, default=str)


def _fmt_bytes(n: float) -> str:
    value = float(n)
    for unit in ("B", "KB", "MB", "GB"):
        if abs(value) < 1024.0:
            return f"{value:.1f}{unit}"
        value /= 1024.0
    return f"{value:.1f}TB"


def _ranked(title: str, items: list[tuple[Any, int]], lines: list[str]) -> None:
    lines.append(f"{title}:")
    if not items:
        lines.append("  (none)")
        return
    for key, count in items:
        lines.append(f"  {count:>7}  {key}")


def _hours(title: str, counts: dict[int, Any], lines: list[str]) -> None:
    lines.append(f"{title}:")
    if not counts:
        lines.append("  (none)")
        return
    for hour, value in counts.items():
        lines.append(f"  {int(hour):02d}:00  {value}")


def render_access(r: dict[str, Any]) -> str:
    lines = [
        f"📊 Access report (last {r['hours']:g}h)",
        f"Total requests: {r['total_requests']}",
        f"Unique IPs: {r['unique_ips']}",
        f"Total traffic: {_fmt_bytes(r['total_bytes'])} (avg {_fmt_bytes(r['avg_request_bytes'])}/request)",
        f"Average bandwidth: {_fmt_bytes(r['bandwidth_bytes_per_sec'])}/s",
        "Status codes:",
    ]
    for code, count in r["status_counts"].items():
        lines.append(f"  {code}: {count}")
    _ranked("Top IPs", r["top_ips"], lines)
    _ranked("Top paths", r["top_paths"], lines)
    _ranked("Top user agents", r["top_user_agents"], lines)
    _hours("Requests per hour", r["requests_per_hour"], lines)
    lines.append(f"Slow requests (> {r['slow_threshold_ms']:g}ms): {r['slow_request_count']}")
    for s in r["slow_requests"]:
        lines.append(f"  [{s['timestamp']}] {s['method']} {s['path']} {s['latency_ms']:g}ms")
    if r.get("malformed_lines"):
        lines.append(f"Skipped malformed lines: {r['malformed_lines']}")
    return "\n".join(lines)


def render_error(r: dict[str, Any]) -> str:
    lines = [f"🚨 Error report (last {r['hours']:g}h)", f"Total errors: {r['total_errors']}", "5xx:"]
    for code, count in r["status_5xx"].items():
        lines.append(f"  {code}: {count}")
    lines.append("4xx:")
    for code, count in r["status_4xx"].items():
        lines.append(f"  {code}: {count}")
    _ranked("Top error paths", r["top_error_paths"], lines)
    _ranked("Top error IPs", r["top_error_ips"], lines)
    _hours("Errors per hour", r["errors_per_hour"], lines)
    lines.append("Recent errors:")
    for raw in r["recent_errors"] or ["(none)"]:
        lines.append(f"  {raw}")
    if r.get("malformed_lines"):
        lines.append(f"Skipped malformed lines: {r['malformed_lines']}")
    return "\n".join(lines)


def render_performance(r: dict[str, Any]) -> str:
    lines = [f"⚡ Performance report (last {r['hours']:g}h)", f"Total requests: {r['total_requests']}"]
    lat = r.get("latency")
    if lat:
        lines.append(
            f"Latency: mean {lat['mean_ms']:g}ms, min {lat['min_ms']:g}ms, max {lat['max_ms']:g}ms "
            f"({lat['count']} samples)"
        )
        pcts = ", ".join(f"{k[:-3].upper()} {v:g}ms" for k, v in lat.items() if k.startswith("p") and v is not None)
        lines.append(f"Percentiles: {pcts}")
    else:
        lines.append("Latency: no samples")
    _hours("QPS per hour", r["qps_per_hour"], lines)
    lines.append("Status distribution:")
    for code, info in r["status_distribution"].items():
        lines.append(f"  {code}: {info['count']} ({info['percent']:g}%)")
    lines.append(f"Average bandwidth: {_fmt_bytes(r['bandwidth_bytes_per_sec'])}/s")
    return "\n".join(lines)


_RENDERERS = {
    "access": render_access,
    "error": render_error,
    "performance": render_performance,
}


def render_text(reports: list[dict[str, Any]]) -> str:
    return "\n\n".join(_RENDERERS[r["kind"]](r) for r in reports)
