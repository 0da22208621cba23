"""Configuration management for caddy-manager."""

import os
from pathlib import Path
from typing import Any, Literal, Optional

import yaml
from pydantic import BaseModel, Field

DEFAULT_CONFIG_PATH = "/etc/caddy-manager/config.yaml"


class PathsConfig(BaseModel):
    """Locations of the managed server's files."""
    caddyfile: str = Field(default="/etc/caddy/Caddyfile", description="Live Caddyfile")
    backup_dir: str = Field(default="/etc/caddy/backups", description="Directory for Caddyfile snapshots")
    access_log: str = Field(default="/var/log/caddy/access.log", description="Access log")
    error_log: str = Field(default="/var/log/caddy/error.log", description="Error log")
    server_log: str = Field(default="/var/log/caddy/caddy.log", description="Per-site log written by the site template")
    cert_dir: str = Field(
        default="/var/lib/caddy/.local/share/caddy/certificates",
        description="Certificate store scanned by the certificate monitor",
    )
    audit_log: Optional[str] = Field(default=None, description="Optional JSONL file receiving alert dispatch records")


class ServerConfig(BaseModel):
    """External commands used to validate and reload the managed server.

    ``{config}`` inside an argument is replaced with the Caddyfile path being validated.
    """
    validate_commands: list[list[str]] = Field(
        default_factory=lambda: [["caddy", "validate", "--config", "{config}", "--adapter", "caddyfile"]],
        description="Every command must exit 0 for a document to be valid",
    )
    is_active_command: list[str] = Field(default_factory=lambda: ["systemctl", "is-active", "--quiet", "caddy"])
    reload_command: list[str] = Field(default_factory=lambda: ["systemctl", "reload", "caddy"])
    start_command: list[str] = Field(default_factory=lambda: ["systemctl", "start", "caddy"])
    command_timeout_seconds: float = Field(default=30.0, description="Timeout for each external command")
    process_name: str = Field(default="caddy", description="Process name checked by the liveness monitor")
    listen_ports: list[int] = Field(default_factory=lambda: [80, 443])
    file_group: Optional[str] = Field(default=None, description="Group applied to the Caddyfile and snapshots")


class RetryConfig(BaseModel):
    max_attempts: int = Field(default=3, description="Attempts per network operation")
    interval_seconds: float = Field(default=3.0, description="Fixed delay between attempts")


class MonitoringConfig(BaseModel):
    interval_seconds: int = Field(default=300, description="Seconds between monitoring cycles")
    probe_timeout_seconds: float = Field(default=10.0, description="Timeout of one site request")
    probe_attempts: int = Field(default=3, description="Requests per site before it is declared down")
    probe_retry_interval_seconds: float = Field(default=5.0, description="Delay between site requests")
    probe_concurrency: int = Field(default=10, description="Sites probed at the same time")
    site_scheme: str = Field(default="https", description="Scheme used for sites taken from the Caddyfile")
    sites: list[str] = Field(default_factory=list, description="Sites to probe; empty means every Caddyfile site")
    check_remote_tls: bool = Field(default=True, description="Read the served certificate of https sites")
    disk_paths: list[str] = Field(default_factory=lambda: ["/"])
    collect_log_alerts: bool = Field(default=True, description="Feed access/error log counters into the cycle")
    log_alert_window_hours: float = Field(default=1.0)


class AnalyticsConfig(BaseModel):
    default_hours: float = Field(default=24.0, description="Window used when no hours are given")
    slow_request_threshold_ms: float = Field(default=2000.0)
    top_n: int = Field(default=10)
    recent_n: int = Field(default=10)
    log_retention_days: int = Field(default=30)
    rotate_max_mb: int = Field(default=100)


class BackupConfig(BaseModel):
    retention_days: int = Field(default=30, ge=1, description="Snapshots older than this are pruned after each backup")
    keep_count: int = Field(default=5, description="Snapshots kept by cleanup-backups")


class ChannelConfig(BaseModel):
    """One notification endpoint."""
    name: str
    kind: Literal["telegram", "dingtalk", "slack", "wecom", "webhook"]
    url: Optional[str] = Field(default=None, description="Webhook URL")
    token: Optional[str] = Field(default=None, description="Telegram bot token")
    chat_id: Optional[str] = Field(default=None, description="Telegram chat id")
    format: Literal["text", "markdown", "json"] = Field(default="text")
    enabled: bool = Field(default=True)


class RuleConfig(BaseModel):
    metric: str
    comparator: Literal[">", ">=", "<", "<=", "==", "!="] = Field(default=">")
    limit: float
    severity: Literal["info", "warning", "error"] = Field(default="warning")
    message: str = Field(default="{metric} on {source} is {value}")


class AlertingConfig(BaseModel):
    enabled: bool = Field(default=False, description="Global alert switch")
    suppression_window_seconds: Optional[float] = Field(
        default=None, description="Extra dedup window in seconds; unset means dedup within one evaluation cycle"
    )
    http_timeout_seconds: float = Field(default=15.0)
    channels: list[ChannelConfig] = Field(default_factory=list)
    rules: Optional[list[RuleConfig]] = Field(default=None, description="Replaces the default threshold rules")


class ManagerConfig(BaseModel):
    """Main configuration."""

    log_level: str = Field(default="INFO", description="Logging level")
    require_root: bool = Field(default=True, description="Refuse mutating commands without root")
    lock_timeout_seconds: float = Field(default=30.0, description="Wait for a concurrent transaction")

    paths: PathsConfig = Field(default_factory=PathsConfig)
    server: ServerConfig = Field(default_factory=ServerConfig)
    retry: RetryConfig = Field(default_factory=RetryConfig)
    monitoring: MonitoringConfig = Field(default_factory=MonitoringConfig)
    analytics: AnalyticsConfig = Field(default_factory=AnalyticsConfig)
    backups: BackupConfig = Field(default_factory=BackupConfig)
    alerting: AlertingConfig = Field(default_factory=AlertingConfig)

    def suppression_window(self) -> float:
        if self.alerting.suppression_window_seconds is not None:
            return max(0.0, float(self.alerting.suppression_window_seconds))
        return 0.0


def _env_channels(existing: list[dict[str, Any]]) -> list[dict[str, Any]]:
    kinds = {str(c.get("kind")) for c in existing if isinstance(c, dict)}
    added: list[dict[str, Any]] = []

    token = os.getenv("TELEGRAM_BOT_TOKEN")
    chat_id = os.getenv("TELEGRAM_CHAT_ID")
    if token and chat_id and "telegram" not in kinds:
        added.append({"name": "telegram", "kind": "telegram", "token": token, "chat_id": chat_id})

    webhooks = {
        "dingtalk": ("DINGTALK_WEBHOOK", "text"),
        "slack": ("SLACK_WEBHOOK", "text"),
        "wecom": ("WEIXIN_WEBHOOK", "markdown"),
        "webhook": ("ALERT_WEBHOOK_URL", "json"),
    }
    for kind, (env_name, fmt) in webhooks.items():
        url = os.getenv(env_name)
        if url and kind not in kinds:
            added.append({"name": kind, "kind": kind, "url": url, "format": fmt})
    return added


def load_config(config_path: Optional[str] = None) -> ManagerConfig:
    """Load configuration from a YAML file, then apply environment overrides."""
    if config_path is None:
        config_path = os.getenv("CADDY_MANAGER_CONFIG", DEFAULT_CONFIG_PATH)

    config_data: dict[str, Any] = {}
    if config_path and Path(config_path).exists():
        with open(config_path, "r", encoding="utf-8") as f:
            config_data = yaml.safe_load(f) or {}
    if not isinstance(config_data, dict):
        raise ValueError(f"Config file {config_path} must contain a mapping")

    log_level = os.getenv("LOG_LEVEL")
    if log_level:
        config_data["log_level"] = log_level

    alerting = dict(config_data.get("alerting") or {})
    enable_alerts = os.getenv("ENABLE_ALERTS")
    if enable_alerts is not None:
        alerting["enabled"] = enable_alerts.lower() in ("true", "1", "yes")

    # Channel credentials from the environment stay in memory only.
    channels = list(alerting.get("channels") or [])
    channels.extend(_env_channels(channels))
    alerting["channels"] = channels
    config_data["alerting"] = alerting

    return ManagerConfig(**config_data)
