"""Settings shared between the monitoring loop and alert delivery threads."""

from __future__ import annotations

import threading
from contextlib import contextmanager
from dataclasses import dataclass
from typing import Iterable, Iterator

import structlog

from caddy_manager.alerting.rules import ThresholdRule, rules_from_config
from caddy_manager.config import ChannelConfig, ManagerConfig

logger = structlog.get_logger(__name__)


class ReadWriteLock:
    """Many readers or one writer; a waiting writer blocks new readers."""

    def __init__(self) -> None:
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read_locked(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write_locked(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


@dataclass(frozen=True)
class SettingsSnapshot:
    alerts_enabled: bool
    channels: tuple[ChannelConfig, ...]
    rules: tuple[ThresholdRule, ...]
    suppression_window: float


class RuntimeSettings:
    def __init__(
        self,
        *,
        alerts_enabled: bool,
        channels: Iterable[ChannelConfig],
        rules: Iterable[ThresholdRule],
        suppression_window: float,
    ):
        self._lock = ReadWriteLock()
        self._alerts_enabled = bool(alerts_enabled)
        self._channels = tuple(channels)
        self._rules = tuple(rules)
        self._suppression_window = max(0.0, float(suppression_window))

    @classmethod
    def from_config(cls, config: ManagerConfig) -> "RuntimeSettings":
        return cls(
            alerts_enabled=config.alerting.enabled,
            channels=[c for c in config.alerting.channels if c.enabled],
            rules=rules_from_config(config.alerting.rules),
            suppression_window=config.suppression_window(),
        )

    def snapshot(self) -> SettingsSnapshot:
        with self._lock.read_locked():
            return SettingsSnapshot(
                alerts_enabled=self._alerts_enabled,
                channels=self._channels,
                rules=self._rules,
                suppression_window=self._suppression_window,
            )

    def apply_config(self, config: ManagerConfig) -> None:
        """Swap in the alerting part of a freshly loaded config; readers see old or new, never a mix."""
        channels = tuple(c for c in config.alerting.channels if c.enabled)
        rules = tuple(rules_from_config(config.alerting.rules))
        with self._lock.write_locked():
            self._alerts_enabled = bool(config.alerting.enabled)
            self._channels = channels
            self._rules = rules
            self._suppression_window = max(0.0, config.suppression_window())
        logger.info("Runtime settings reloaded", alerts_enabled=config.alerting.enabled, channels=len(channels), rules=len(rules))
