from __future__ import annotations

import operator
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable, Iterable

from caddy_manager.config import RuleConfig
from caddy_manager.monitoring.observations import Observation

SEVERITIES = ("info", "warning", "error")
SEVERITY_RANK = {name: rank for rank, name in enumerate(SEVERITIES)}

COMPARATORS: dict[str, Callable[[float, float], bool]] = {
    ">": operator.gt,
    ">=": operator.ge,
    "<": operator.lt,
    "<=": operator.le,
    "==": operator.eq,
    "!=": operator.ne,
}


@dataclass(frozen=True)
class AlertEvent:
    message: str
    severity: str
    timestamp: datetime = field(default_factory=datetime.now)
    # "<metric>:<source>", the deduplication key together with severity.
    source_metric: str = ""


def _fmt_value(value: float) -> str:
    v = float(value)
    if v.is_integer():
        return str(int(v))
    return f"{v:.2f}"


@dataclass(frozen=True)
class ThresholdRule:
    metric: str
    comparator: str
    limit: float
    severity: str
    message: str = "{metric} on {source} is {value}"

    def __post_init__(self) -> None:
        if self.comparator not in COMPARATORS:
            raise ValueError(f"Unknown comparator {self.comparator!r} for rule on {self.metric}")
        if self.severity not in SEVERITY_RANK:
            raise ValueError(f"Unknown severity {self.severity!r} for rule on {self.metric}")

    @classmethod
    def from_config(cls, cfg: RuleConfig) -> "ThresholdRule":
        return cls(
            metric=cfg.metric,
            comparator=cfg.comparator,
            limit=float(cfg.limit),
            severity=cfg.severity,
            message=cfg.message,
        )

    def matches(self, value: float) -> bool:
        return COMPARATORS[self.comparator](float(value), float(self.limit))

    def render(self, obs: Observation) -> str:
        return self.message.format(
            metric=obs.metric,
            source=obs.source,
            value=_fmt_value(obs.value),
            limit=_fmt_value(self.limit),
        )


DEFAULT_RULES: tuple[ThresholdRule, ...] = (
    ThresholdRule("cpu_pct", ">", 80, "warning", "CPU usage is high: {value}%"),
    ThresholdRule("mem_pct", ">", 80, "warning", "Memory usage is high: {value}%"),
    ThresholdRule("disk_pct", ">", 80, "warning", "Disk usage on {source} is high: {value}%"),
    ThresholdRule("server_up", "==", 0, "error", "Server process {source} is not running"),
    ThresholdRule("server_listening", "==", 0, "warning", "Server is not listening on ports {source}"),
    ThresholdRule("site_up", "==", 0, "error", "Site {source} is down"),
    ThresholdRule("site_status", ">=", 500, "error", "Site {source} returned HTTP {value}"),
    ThresholdRule("site_latency_ms", ">", 5000, "warning", "Site {source} is slow: {value}ms"),
    ThresholdRule("cert_days_left", "<=", 7, "error", "Certificate {source} expires in {value} days"),
    ThresholdRule("cert_days_left", "<=", 14, "warning", "Certificate {source} expires in {value} days"),
    ThresholdRule("site_cert_days_left", "<=", 7, "error", "Certificate of {source} expires in {value} days"),
    ThresholdRule("site_cert_days_left", "<=", 14, "warning", "Certificate of {source} expires in {value} days"),
    ThresholdRule("cert_weak_signature", "==", 1, "warning", "Certificate {source} uses a weak signature algorithm"),
    ThresholdRule("cert_key_bits", "<", 2048, "warning", "Certificate {source} key is too short: {value} bits"),
    ThresholdRule("cert_unreadable", "==", 1, "warning", "Certificate {source} cannot be parsed"),
    ThresholdRule("http_5xx_count", ">", 10, "error", "Too many 5xx responses: {value}"),
    ThresholdRule("slow_request_count", ">", 10, "warning", "Too many slow requests: {value}"),
    ThresholdRule("http_4xx_count", ">", 20, "warning", "Too many 4xx responses: {value}"),
    ThresholdRule("collector_error", "==", 1, "error", "Monitoring collector {source} failed"),
)


def rules_from_config(rules: list[RuleConfig] | None) -> tuple[ThresholdRule, ...]:
    if rules is None:
        return DEFAULT_RULES
    return tuple(ThresholdRule.from_config(r) for r in rules)


def evaluate(observations: Iterable[Observation], rules: Iterable[ThresholdRule]) -> list[AlertEvent]:
    """
    One event per observation at most: rules on the same metric are tiers and
    only the most severe matching one fires (first listed wins a tie).
    """
    by_metric: dict[str, list[ThresholdRule]] = {}
    for rule in rules:
        by_metric.setdefault(rule.metric, []).append(rule)

    events: list[AlertEvent] = []
    for obs in observations:
        best: ThresholdRule | None = None
        for rule in by_metric.get(obs.metric, ()):
            if not rule.matches(obs.value):
                continue
            if best is None or SEVERITY_RANK[rule.severity] > SEVERITY_RANK[best.severity]:
                best = rule
        if best is None:
            continue
        events.append(
            AlertEvent(
                message=best.render(obs),
                severity=best.severity,
                timestamp=datetime.fromtimestamp(obs.ts),
                source_metric=f"{obs.metric}:{obs.source}",
            )
        )
    return events
