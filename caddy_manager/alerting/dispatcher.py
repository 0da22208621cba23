"""Alert delivery: global switch, duplicate suppression, per-channel retries, audit trail."""

from __future__ import annotations

import json
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Iterable, Protocol

import structlog

from caddy_manager.alerting.channels import format_text
from caddy_manager.alerting.rules import AlertEvent
from caddy_manager.config import ChannelConfig
from caddy_manager.retry import RetryExecutor
from caddy_manager.runtime import RuntimeSettings

logger = structlog.get_logger(__name__)
audit_logger = structlog.get_logger("caddy_manager.audit")

DISABLED = "disabled"
SUPPRESSED = "suppressed"
NO_CHANNELS = "no_channels"
SENT = "sent"
PARTIAL = "partial"
FAILED = "failed"


class Transport(Protocol):
    def send(self, event: AlertEvent, channel: ChannelConfig) -> None: ...


@dataclass(frozen=True)
class DeliveryResult:
    channel: str
    ok: bool
    attempts: int
    error: str | None = None


@dataclass(frozen=True)
class DispatchOutcome:
    event: AlertEvent
    status: str
    deliveries: list[DeliveryResult] = field(default_factory=list)


class AlertDispatcher:
    def __init__(
        self,
        settings: RuntimeSettings,
        transport: Transport,
        *,
        retry: RetryExecutor | None = None,
        audit_path: str | Path | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings
        self.transport = transport
        self.retry = retry or RetryExecutor()
        self.audit_path = Path(audit_path) if audit_path else None
        self._clock = clock
        # (source_metric, severity) -> (clock at dispatch start, cycle id)
        self._last_sent: dict[tuple[str, str], tuple[float, int | None]] = {}
        self._cycle = 0
        self._lock = threading.Lock()

    def _suppressed(self, event: AlertEvent, window: float, started: float, cycle: int | None) -> bool:
        with self._lock:
            last = self._last_sent.get((event.source_metric, event.severity))
        if last is None:
            return False
        last_started, last_cycle = last
        if cycle is not None and last_cycle == cycle:
            return True
        return (started - last_started) < window

    def _mark_sent(self, event: AlertEvent, started: float, cycle: int | None) -> None:
        with self._lock:
            self._last_sent[(event.source_metric, event.severity)] = (started, cycle)

    def dispatch(self, event: AlertEvent, *, cycle: int | None = None) -> DispatchOutcome:
        """
        Deliver ``event`` to every enabled channel.

        An event is a duplicate when the same (source_metric, severity) was sent
        in the same ``cycle``, or when the previous send started less than the
        suppression window ago.
        """
        started = self._clock()
        snap = self.settings.snapshot()
        if not snap.alerts_enabled:
            return self._audit(DispatchOutcome(event=event, status=DISABLED))
        if self._suppressed(event, snap.suppression_window, started, cycle):
            return self._audit(DispatchOutcome(event=event, status=SUPPRESSED))
        if not snap.channels:
            return self._audit(DispatchOutcome(event=event, status=NO_CHANNELS))

        deliveries: list[DeliveryResult] = []
        for channel in snap.channels:
            outcome = self.retry.execute(
                lambda ch=channel: self.transport.send(event, ch),
                label=f"alert:{channel.name}",
            )
            deliveries.append(
                DeliveryResult(channel=channel.name, ok=outcome.ok, attempts=outcome.attempts, error=outcome.error)
            )
            if not outcome.ok:
                logger.error("Alert delivery failed", channel=channel.name, error=outcome.error, hint=outcome.hint)

        delivered = sum(1 for d in deliveries if d.ok)
        if delivered:
            # A fully failed event may be retried next cycle.
            self._mark_sent(event, started, cycle)
        status = SENT if delivered == len(deliveries) else (PARTIAL if delivered else FAILED)
        return self._audit(DispatchOutcome(event=event, status=status, deliveries=deliveries))

    def dispatch_all(self, events: Iterable[AlertEvent]) -> list[DispatchOutcome]:
        """Dispatch one evaluation cycle's events; duplicates inside the batch are suppressed."""
        with self._lock:
            self._cycle += 1
            cycle = self._cycle
        return [self.dispatch(e, cycle=cycle) for e in events]

    def _audit(self, outcome: DispatchOutcome) -> DispatchOutcome:
        event = outcome.event
        log = getattr(audit_logger, event.severity if event.severity in ("info", "warning", "error") else "info")
        log(
            "Alert dispatch",
            status=outcome.status,
            severity=event.severity,
            source_metric=event.source_metric,
            message=event.message,
            channels={d.channel: ("ok" if d.ok else d.error) for d in outcome.deliveries},
        )
        if self.audit_path is not None:
            record = {
                "ts": event.timestamp.isoformat(),
                "status": outcome.status,
                "severity": event.severity,
                "source_metric": event.source_metric,
                "text": format_text(event),
                "deliveries": [
                    {"channel": d.channel, "ok": d.ok, "attempts": d.attempts, "error": d.error}
                    for d in outcome.deliveries
                ],
            }
            try:
                self.audit_path.parent.mkdir(parents=True, exist_ok=True)
                with self._lock, open(self.audit_path, "a", encoding="utf-8") as f:
                    f.write(json.dumps(record, ensure_ascii=False) + "\n")
            except OSError as exc:
                logger.warning("Cannot write audit log", path=str(self.audit_path), error=str(exc))
        return outcome
