"""Command line interface: ``caddy-manager <command> ...``."""

from __future__ import annotations

import argparse
import asyncio
import os
import sys
from datetime import datetime
from typing import Callable

import structlog
import yaml

from caddy_manager.alerting.channels import HttpTransport
from caddy_manager.alerting.dispatcher import AlertDispatcher
from caddy_manager.alerting.rules import evaluate
from caddy_manager.analytics import render
from caddy_manager.analytics.logfiles import cleanup_logs, load_access_records, load_error_records, rotate_logs
from caddy_manager.analytics.reports import access_report, error_report, log_alert_observations, performance_report
from caddy_manager.config import ManagerConfig, load_config
from caddy_manager.errors import ManagerError, PermissionDenied, ValidationFailed
from caddy_manager.logging_config import configure_logging
from caddy_manager.monitoring.collector import COLLECTORS, HealthCollector
from caddy_manager.retry import RetryExecutor
from caddy_manager.runtime import RuntimeSettings
from caddy_manager.scheduler import MonitorService
from caddy_manager.server_control import CommandServerControl
from caddy_manager.transactions import ConfigTransactionManager, TransactionResult

logger = structlog.get_logger(__name__)

# Commands that write server files or control the server process.
PRIVILEGED_COMMANDS = {
    "add-site",
    "remove-site",
    "backup",
    "restore",
    "cleanup-backups",
    "optimize",
    "secure",
    "reload",
    "cleanup-logs",
    "rotate-logs",
}

MONITOR_KINDS = {
    "system": ["system", "process"],
    "site": ["site"],
    "cert": ["cert"],
    "all": list(COLLECTORS),
}


class App:
    """Wires the components for one CLI invocation."""

    def __init__(self, config: ManagerConfig):
        self.config = config
        self._settings: RuntimeSettings | None = None
        self._dispatcher: AlertDispatcher | None = None
        self._transport: HttpTransport | None = None
        self._manager: ConfigTransactionManager | None = None

    @property
    def settings(self) -> RuntimeSettings:
        if self._settings is None:
            self._settings = RuntimeSettings.from_config(self.config)
        return self._settings

    @property
    def dispatcher(self) -> AlertDispatcher:
        if self._dispatcher is None:
            self._transport = HttpTransport(timeout_seconds=self.config.alerting.http_timeout_seconds)
            self._dispatcher = AlertDispatcher(
                self.settings,
                self._transport,
                retry=RetryExecutor(self.config.retry.max_attempts, self.config.retry.interval_seconds),
                audit_path=self.config.paths.audit_log,
            )
        return self._dispatcher

    @property
    def manager(self) -> ConfigTransactionManager:
        if self._manager is None:
            self._manager = ConfigTransactionManager(
                self.config,
                CommandServerControl(self.config.server),
                alert_sink=self.dispatcher.dispatch,
            )
        return self._manager

    def log_paths(self) -> list[str]:
        paths = self.config.paths
        return [p for p in dict.fromkeys([paths.access_log, paths.error_log, paths.server_log]) if p]

    def close(self) -> None:
        if self._transport is not None:
            self._transport.close()
            self._transport = None


def _ok(text: str) -> None:
    print(f"✅ {text}")


def _print_result(result: TransactionResult) -> None:
    _ok(result.message)
    if result.snapshot is not None:
        print(f"   snapshot: {result.snapshot.snapshot_id}")


def cmd_add_site(app: App, args: argparse.Namespace) -> int:
    _print_result(app.manager.add_site(args.domain, args.upstream))
    return 0


def cmd_remove_site(app: App, args: argparse.Namespace) -> int:
    _print_result(app.manager.remove_site(args.domain))
    return 0


def cmd_list_sites(app: App, args: argparse.Namespace) -> int:
    sites = app.manager.list_sites()
    if not sites:
        print("No sites configured")
    for site in sites:
        print(site)
    return 0


def cmd_backup(app: App, args: argparse.Namespace) -> int:
    snap = app.manager.backup()
    _ok(f"Backup created: {snap.path}")
    return 0


def cmd_restore(app: App, args: argparse.Namespace) -> int:
    _print_result(app.manager.restore(args.snapshot))
    return 0


def cmd_list_backups(app: App, args: argparse.Namespace) -> int:
    snaps = app.manager.list_backups()
    if not snaps:
        print("No backups found")
    for s in snaps:
        print(f"{s.snapshot_id}  {s.created_at:%Y-%m-%d %H:%M:%S}  {s.path}")
    return 0


def cmd_cleanup_backups(app: App, args: argparse.Namespace) -> int:
    removed = app.manager.cleanup_backups(args.keep)
    _ok(f"Removed {len(removed)} old backup(s)")
    return 0


def cmd_optimize(app: App, args: argparse.Namespace) -> int:
    _print_result(app.manager.optimize())
    return 0


def cmd_secure(app: App, args: argparse.Namespace) -> int:
    _print_result(app.manager.secure())
    return 0


def cmd_validate(app: App, args: argparse.Namespace) -> int:
    if not app.manager.validate():
        raise ValidationFailed(f"{app.config.paths.caddyfile} failed validation")
    _ok("Caddyfile is valid")
    return 0


def cmd_reload(app: App, args: argparse.Namespace) -> int:
    app.manager.reload()
    _ok("Server reloaded")
    return 0


def cmd_analyze(app: App, args: argparse.Namespace) -> int:
    cfg = app.config
    hours = args.hours if args.hours is not None else cfg.analytics.default_hours
    now = datetime.now().astimezone()
    kinds = ["access", "error", "performance"] if args.kind == "all" else [args.kind]

    reports = []
    access = None
    for kind in kinds:
        if kind == "error":
            records, malformed = load_error_records(cfg.paths.error_log)
            reports.append(
                error_report(
                    records,
                    hours=hours,
                    now=now,
                    top_n=cfg.analytics.top_n,
                    recent_n=cfg.analytics.recent_n,
                    malformed=malformed,
                )
            )
            continue
        if access is None:
            access = load_access_records(cfg.paths.access_log)
        records, malformed = access
        if kind == "access":
            reports.append(
                access_report(
                    records,
                    hours=hours,
                    now=now,
                    slow_threshold_ms=cfg.analytics.slow_request_threshold_ms,
                    top_n=cfg.analytics.top_n,
                    recent_n=cfg.analytics.recent_n,
                    malformed=malformed,
                )
            )
        else:
            reports.append(performance_report(records, hours=hours, now=now, malformed=malformed))

    print(render.to_json(reports) if args.json else render.render_text(reports))
    return 0


def cmd_monitor(app: App, args: argparse.Namespace) -> int:
    cfg = app.config
    collector = HealthCollector(cfg)
    service = MonitorService(
        collector,
        app.dispatcher,
        app.settings,
        interval_seconds=cfg.monitoring.interval_seconds,
        kinds=MONITOR_KINDS[args.kind],
        sites=[args.domain] if args.domain else None,
        reload_config=lambda: load_config(args.config),
    )
    if not args.once:
        asyncio.run(service.run_forever())
        return 0

    result = asyncio.run(service.run_cycle())
    for obs in result.observations:
        print(f"{obs.metric:<22} {obs.source:<40} {obs.value:g}")
    for event in result.events:
        print(f"⚠️  [{event.severity}] {event.message}")
    if result.collector_failed:
        failed = sorted({o.source for o in result.observations if o.metric == "collector_error"})
        print(f"❌ Collector failed: {', '.join(failed)}", file=sys.stderr)
        return 11
    return 0


def cmd_check_alerts(app: App, args: argparse.Namespace) -> int:
    cfg = app.config
    hours = args.hours if args.hours is not None else cfg.monitoring.log_alert_window_hours
    records, _malformed = load_access_records(cfg.paths.access_log)
    observations = log_alert_observations(
        records,
        hours=hours,
        now=datetime.now().astimezone(),
        slow_threshold_ms=cfg.analytics.slow_request_threshold_ms,
    )
    events = evaluate(observations, app.settings.snapshot().rules)
    for obs in observations:
        print(f"{obs.metric:<22} {obs.value:g}")
    if not events:
        _ok("No alerts")
        return 0
    for outcome in app.dispatcher.dispatch_all(events):
        print(f"⚠️  [{outcome.event.severity}] {outcome.event.message} ({outcome.status})")
    return 0


def cmd_cleanup_logs(app: App, args: argparse.Namespace) -> int:
    days = args.days if args.days is not None else app.config.analytics.log_retention_days
    removed = cleanup_logs(app.log_paths(), days)
    _ok(f"Removed {len(removed)} rotated log file(s) older than {days:g} days")
    return 0


def cmd_rotate_logs(app: App, args: argparse.Namespace) -> int:
    max_mb = args.max_mb if args.max_mb is not None else app.config.analytics.rotate_max_mb
    rotated = rotate_logs(app.log_paths(), int(max_mb * 1024 * 1024))
    _ok(f"Rotated {len(rotated)} log file(s)")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="caddy-manager", description="Caddy reverse proxy manager")
    parser.add_argument("--config", default=None, help="Path to YAML config (default: $CADDY_MANAGER_CONFIG)")
    parser.add_argument("--log-level", default=None, help="Logging level (DEBUG, INFO, WARNING, ...)")
    sub = parser.add_subparsers(dest="command", required=True)

    def add(name: str, func: Callable[[App, argparse.Namespace], int], help_text: str) -> argparse.ArgumentParser:
        p = sub.add_parser(name, help=help_text)
        p.set_defaults(func=func)
        return p

    p = add("add-site", cmd_add_site, "Add a reverse-proxy site")
    p.add_argument("domain")
    p.add_argument("upstream", help="host:port, :port or http(s)://host[:port]")

    p = add("remove-site", cmd_remove_site, "Remove a site")
    p.add_argument("domain")

    add("list-sites", cmd_list_sites, "List configured sites")
    add("backup", cmd_backup, "Snapshot the Caddyfile")

    p = add("restore", cmd_restore, "Restore a snapshot (latest when omitted)")
    p.add_argument("snapshot", nargs="?", default=None, help="Snapshot id or path")

    add("list-backups", cmd_list_backups, "List snapshots")

    p = add("cleanup-backups", cmd_cleanup_backups, "Keep only the newest snapshots")
    p.add_argument("--keep", type=int, default=None)

    add("optimize", cmd_optimize, "Apply performance options")
    add("secure", cmd_secure, "Apply security options and tighten permissions")
    add("validate", cmd_validate, "Validate the live Caddyfile")
    add("reload", cmd_reload, "Reload (or start) the server")

    p = add("analyze", cmd_analyze, "Analyze access/error logs")
    p.add_argument("kind", choices=["access", "error", "performance", "all"])
    p.add_argument("hours", nargs="?", type=float, default=None)
    p.add_argument("--json", action="store_true", help="Print the report as JSON")

    p = add("monitor", cmd_monitor, "Monitor system, sites and certificates")
    p.add_argument("kind", nargs="?", choices=sorted(MONITOR_KINDS), default="all")
    p.add_argument("domain", nargs="?", default=None)
    p.add_argument("--once", action="store_true", help="Run one cycle and exit")

    p = add("check-alerts", cmd_check_alerts, "Evaluate log-based alerts now")
    p.add_argument("hours", nargs="?", type=float, default=None)

    p = add("cleanup-logs", cmd_cleanup_logs, "Delete old rotated logs")
    p.add_argument("days", nargs="?", type=float, default=None)

    p = add("rotate-logs", cmd_rotate_logs, "Rotate oversized logs")
    p.add_argument("--max-mb", type=float, default=None)
    return parser


def _require_root(config: ManagerConfig, command: str) -> None:
    if config.require_root and command in PRIVILEGED_COMMANDS and os.geteuid() != 0:
        raise PermissionDenied(
            f"'{command}' must be run as root",
            hint="re-run with sudo, or set require_root: false in the config",
        )


def _fail(exc: ManagerError) -> int:
    print(f"❌ {exc.message}", file=sys.stderr)
    if exc.hint:
        print(f"   hint: {exc.hint}", file=sys.stderr)
    return exc.exit_code


def main(argv: list[str] | None = None) -> int:
    args = build_parser().parse_args(argv)

    try:
        config = load_config(args.config)
    except (OSError, ValueError, yaml.YAMLError) as exc:
        print(f"❌ Invalid configuration: {exc}", file=sys.stderr)
        return 2

    configure_logging(args.log_level or config.log_level)

    app = App(config)
    try:
        _require_root(config, args.command)
        return int(args.func(app, args))
    except ManagerError as exc:
        logger.error("Command failed", command=args.command, kind=exc.kind, error=exc.message)
        return _fail(exc)
    except KeyboardInterrupt:
        return 130
    finally:
        app.close()


if __name__ == "__main__":
    raise SystemExit(main())
