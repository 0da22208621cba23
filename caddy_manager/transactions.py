"""Safe, reversible Caddyfile mutations.

Every mutating operation follows the same shape::

    snapshot -> mutate -> validate -> (reload | restore snapshot)

so the live Caddyfile is never left in a state the validator rejected. At most
one transaction runs at a time: an in-process lock plus an ``flock`` on
``<Caddyfile>.lock`` serialise concurrent callers, including other processes.
"""

from __future__ import annotations

import fcntl
import os
import re
import shutil
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Callable, Iterator

import structlog

from caddy_manager.alerting.rules import AlertEvent
from caddy_manager.backups import Snapshot, SnapshotStore
from caddy_manager.caddyfile import CaddyfileDocument, CaddyfileSyntaxError, parse
from caddy_manager.caddyfile.templates import (
    PERFORMANCE_MARKER,
    SECURITY_MARKER,
    SECURITY_SNIPPET,
    performance_directives,
    security_directives,
    security_headers_snippet,
    site_block,
)
from caddy_manager.config import ManagerConfig
from caddy_manager.errors import (
    Busy,
    Conflict,
    InvalidInput,
    IOFailure,
    ManagerError,
    NotFound,
    ReloadFailed,
    ValidationFailed,
)
from caddy_manager.server_control import ServerControl

logger = structlog.get_logger(__name__)

DOMAIN_RE = re.compile(r"^[a-zA-Z0-9][a-zA-Z0-9.-]+\.[a-zA-Z]{2,}$")
_UPSTREAM_HOST_PORT_RE = re.compile(r"^(?P<host>[A-Za-z0-9._-]*|\[[0-9A-Fa-f:]+\]):(?P<port>\d{1,5})$")
_UPSTREAM_URL_RE = re.compile(r"^https?://(?P<host>[A-Za-z0-9._-]+|\[[0-9A-Fa-f:]+\])(?::(?P<port>\d{1,5}))?/?$")
_UPSTREAM_UNIX_RE = re.compile(r"^unix//[A-Za-z0-9/_.-]+$")

# Failures that happen after the snapshot and are worth an alert.
_ALERTING_FAILURES = (ValidationFailed, ReloadFailed, IOFailure)


class TransactionState(str, Enum):
    IDLE = "idle"
    SNAPSHOTTING = "snapshotting"
    MUTATED = "mutated"
    VALIDATING = "validating"
    COMMITTED = "committed"
    ROLLED_BACK = "rolled_back"


@dataclass(frozen=True)
class TransactionResult:
    operation: str
    state: TransactionState
    snapshot: Snapshot | None
    message: str


def validate_domain(domain: str) -> str:
    d = str(domain or "").strip()
    if not DOMAIN_RE.match(d):
        raise InvalidInput(f"Invalid domain: {domain!r}")
    return d


def validate_upstream(upstream: str) -> str:
    u = str(upstream or "").strip()
    if _UPSTREAM_UNIX_RE.match(u):
        return u
    m = _UPSTREAM_HOST_PORT_RE.match(u) or _UPSTREAM_URL_RE.match(u)
    if not m:
        raise InvalidInput(f"Invalid upstream: {upstream!r} (expected host:port, :port or http(s)://host[:port])")
    port = m.group("port")
    if port is not None and not (0 < int(port) <= 65535):
        raise InvalidInput(f"Invalid upstream port: {port}")
    return u


class ConfigTransactionManager:
    """Owns the live Caddyfile and every change made to it."""

    def __init__(
        self,
        config: ManagerConfig,
        server: ServerControl,
        *,
        snapshots: SnapshotStore | None = None,
        alert_sink: Callable[[AlertEvent], None] | None = None,
    ):
        self.config = config
        self.server = server
        self.caddyfile = Path(config.paths.caddyfile)
        self.snapshots = snapshots or SnapshotStore(config.paths.backup_dir, file_group=config.server.file_group)
        self.alert_sink = alert_sink
        self.lock_timeout = max(0.0, float(config.lock_timeout_seconds))
        self.state = TransactionState.IDLE
        self.transitions: list[TransactionState] = []
        self._thread_lock = threading.Lock()

    # -- locking and state ---------------------------------------------------

    @contextmanager
    def _exclusive(self) -> Iterator[None]:
        if not self._thread_lock.acquire(timeout=self.lock_timeout):
            raise Busy("Another configuration transaction is in progress")
        try:
            lock_path = self.caddyfile.with_name(f"{self.caddyfile.name}.lock")
            try:
                lock_path.parent.mkdir(parents=True, exist_ok=True)
                fh = open(lock_path, "a+")
            except OSError as exc:
                raise IOFailure(f"Cannot open lock file {lock_path}: {exc}") from exc
            with fh:
                deadline = time.monotonic() + self.lock_timeout
                while True:
                    try:
                        fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
                        break
                    except BlockingIOError:
                        if time.monotonic() >= deadline:
                            raise Busy(f"Caddyfile is locked by another process ({lock_path})")
                        time.sleep(0.1)
                try:
                    yield
                finally:
                    fcntl.flock(fh.fileno(), fcntl.LOCK_UN)
        finally:
            self._thread_lock.release()

    def _set_state(self, state: TransactionState, operation: str) -> None:
        self.state = state
        self.transitions.append(state)
        logger.debug("Transaction state", operation=operation, state=state.value)

    # -- file helpers ---------------------------------------------------------

    def _read_live(self) -> bytes:
        try:
            return self.caddyfile.read_bytes()
        except OSError as exc:
            raise IOFailure(f"Cannot read {self.caddyfile}: {exc}", hint="check the Caddyfile path and permissions") from exc

    def _parse(self, raw: bytes) -> CaddyfileDocument:
        try:
            return parse(raw.decode("utf-8"))
        except (UnicodeDecodeError, CaddyfileSyntaxError) as exc:
            raise ValidationFailed(f"Current Caddyfile cannot be parsed: {exc}") from exc

    def _write_atomic(self, path: Path, data: bytes, *, mode: int | None = None) -> None:
        tmp = path.with_name(f".{path.name}.tmp")
        try:
            if mode is None:
                try:
                    mode = path.stat().st_mode & 0o777
                except FileNotFoundError:
                    mode = 0o640
            tmp.write_bytes(data)
            os.chmod(tmp, mode)
            if self.config.server.file_group:
                shutil.chown(tmp, group=self.config.server.file_group)
            tmp.replace(path)
        except (OSError, LookupError) as exc:
            tmp.unlink(missing_ok=True)
            raise IOFailure(f"Cannot write {path}: {exc}") from exc

    def _validate(self, path: Path, operation: str) -> bool:
        try:
            return bool(self.server.validate(path))
        except Exception as exc:
            logger.error("Validator raised", operation=operation, error=f"{type(exc).__name__}: {exc}")
            return False

    def _reload(self, operation: str) -> None:
        try:
            ok = bool(self.server.reload())
        except Exception as exc:
            logger.error("Reload raised", operation=operation, error=f"{type(exc).__name__}: {exc}")
            ok = False
        if not ok:
            raise ReloadFailed(
                f"{operation}: Caddyfile was updated but the server did not reload",
                hint="the new configuration is on disk; fix the server and run 'reload', or 'restore' the previous snapshot",
            )

    def _emit_alert(self, operation: str, exc: ManagerError) -> None:
        if self.alert_sink is None or not isinstance(exc, _ALERTING_FAILURES):
            return
        event = AlertEvent(
            message=f"Configuration {operation} failed: {exc.message}",
            severity="error",
            timestamp=datetime.now(),
            source_metric=f"config_transaction:{operation}",
        )
        try:
            self.alert_sink(event)
        except Exception as alert_exc:
            logger.error("Alert sink failed", operation=operation, error=str(alert_exc))

    def _prune(self, keep: Snapshot) -> None:
        """Drop expired snapshots, never the one just taken."""
        try:
            self.snapshots.prune_older_than(self.config.backups.retention_days, exclude=(keep.snapshot_id,))
        except IOFailure as exc:
            logger.warning("Snapshot pruning failed", error=exc.message)

    # -- transaction core -----------------------------------------------------

    def _run(
        self,
        operation: str,
        mutate: Callable[[CaddyfileDocument], str],
        *,
        on_commit: Callable[[], None] | None = None,
    ) -> TransactionResult:
        """
        ``mutate`` edits the document in memory and returns a success message.
        It raises before anything touches the disk when the request is rejected.
        ``on_commit`` runs once the new file is accepted, before the reload.
        """
        self.transitions = []
        with self._exclusive():
            try:
                original = self._read_live()
                doc = self._parse(original)
                message = mutate(doc)
                updated = doc.serialize().encode("utf-8")

                self._set_state(TransactionState.SNAPSHOTTING, operation)
                snapshot = self.snapshots.create_from_bytes(original)

                self._write_atomic(self.caddyfile, updated)
                self._set_state(TransactionState.MUTATED, operation)

                self._set_state(TransactionState.VALIDATING, operation)
                if not self._validate(self.caddyfile, operation):
                    # Restore from memory; the snapshot file is a copy, not the source.
                    self._write_atomic(self.caddyfile, original)
                    self._set_state(TransactionState.ROLLED_BACK, operation)
                    logger.error("Validation failed, snapshot restored", operation=operation, snapshot=snapshot.snapshot_id)
                    self._prune(keep=snapshot)
                    raise ValidationFailed(
                        f"{operation}: new configuration failed validation; restored snapshot {snapshot.snapshot_id}"
                    )

                self._set_state(TransactionState.COMMITTED, operation)
                self._prune(keep=snapshot)
                if on_commit is not None:
                    on_commit()
                self._reload(operation)
                logger.info("Transaction committed", operation=operation, snapshot=snapshot.snapshot_id)
                return TransactionResult(
                    operation=operation,
                    state=TransactionState.COMMITTED,
                    snapshot=snapshot,
                    message=message,
                )
            except ManagerError as exc:
                self._emit_alert(operation, exc)
                raise
            finally:
                self.state = TransactionState.IDLE

    # -- operations -----------------------------------------------------------

    def add_site(self, domain: str, upstream: str) -> TransactionResult:
        domain = validate_domain(domain)
        upstream = validate_upstream(upstream)

        def mutate(doc: CaddyfileDocument) -> str:
            if doc.has_site(domain):
                raise Conflict(f"Site already exists: {domain}")
            imports = (SECURITY_SNIPPET,) if doc.has_snippet(SECURITY_SNIPPET) else ()
            doc.append_site(site_block(domain, upstream, log_path=self.config.paths.server_log, imports=imports))
            return f"Site added: {domain} -> {upstream}"

        return self._run("add_site", mutate)

    def remove_site(self, domain: str) -> TransactionResult:
        domain = validate_domain(domain)

        def mutate(doc: CaddyfileDocument) -> str:
            if not doc.has_site(domain):
                raise NotFound(f"Site does not exist: {domain}")
            doc.remove_site(domain)
            return f"Site removed: {domain}"

        return self._run("remove_site", mutate)

    def optimize(self) -> TransactionResult:
        def mutate(doc: CaddyfileDocument) -> str:
            if doc.has_marker(PERFORMANCE_MARKER):
                raise Conflict("Performance options are already applied")
            doc.merge_global(performance_directives())
            return "Performance options applied"

        return self._run("optimize", mutate)

    def secure(self) -> TransactionResult:
        def mutate(doc: CaddyfileDocument) -> str:
            if doc.has_marker(SECURITY_MARKER):
                raise Conflict("Security options are already applied")
            doc.merge_global(security_directives())
            if not doc.has_snippet(SECURITY_SNIPPET):
                doc.insert_after_global(security_headers_snippet())
            doc.add_import_to_sites(SECURITY_SNIPPET)
            return "Security options applied"

        return self._run("secure", mutate, on_commit=self._tighten_permissions)

    def _tighten_permissions(self) -> None:
        try:
            os.chmod(self.caddyfile, 0o600)
        except OSError as exc:
            logger.warning("Cannot tighten Caddyfile permissions", path=str(self.caddyfile), error=str(exc))

        cert_dir = Path(self.config.paths.cert_dir)
        if not cert_dir.is_dir():
            return
        for root, dirs, files in os.walk(cert_dir):
            try:
                os.chmod(root, 0o700)
                for name in files:
                    os.chmod(os.path.join(root, name), 0o600)
            except OSError as exc:
                logger.warning("Cannot tighten certificate permissions", path=root, error=str(exc))

    def list_sites(self) -> list[str]:
        return self._parse(self._read_live()).site_addresses()

    def backup(self) -> Snapshot:
        with self._exclusive():
            snapshot = self.snapshots.create(self.caddyfile)
            self._prune(keep=snapshot)
            return snapshot

    def list_backups(self) -> list[Snapshot]:
        return self.snapshots.list()

    def cleanup_backups(self, keep: int | None = None) -> list[Snapshot]:
        with self._exclusive():
            return self.snapshots.prune_keep(self.config.backups.keep_count if keep is None else keep)

    def restore(self, snapshot_ref: str | None = None) -> TransactionResult:
        """Validate a snapshot first and only then put it in place of the live Caddyfile."""
        operation = "restore"
        self.transitions = []
        with self._exclusive():
            try:
                snapshot = self.snapshots.get(snapshot_ref)
                data = self.snapshots.read(snapshot)

                candidate = self.caddyfile.with_name(f".{self.caddyfile.name}.restore")
                self._write_atomic(candidate, data, mode=0o640)
                try:
                    self._set_state(TransactionState.VALIDATING, operation)
                    if not self._validate(candidate, operation):
                        raise ValidationFailed(
                            f"Snapshot {snapshot.snapshot_id} failed validation; live Caddyfile left untouched"
                        )
                finally:
                    candidate.unlink(missing_ok=True)

                if self.caddyfile.exists():
                    self._set_state(TransactionState.SNAPSHOTTING, operation)
                    self.snapshots.create(self.caddyfile)
                self._write_atomic(self.caddyfile, data, mode=0o640)
                self._set_state(TransactionState.COMMITTED, operation)
                self._reload(operation)
                logger.info("Configuration restored", snapshot=snapshot.snapshot_id)
                return TransactionResult(
                    operation=operation,
                    state=TransactionState.COMMITTED,
                    snapshot=snapshot,
                    message=f"Restored snapshot {snapshot.snapshot_id}",
                )
            except ManagerError as exc:
                self._emit_alert(operation, exc)
                raise
            finally:
                self.state = TransactionState.IDLE

    def validate(self) -> bool:
        return self._validate(self.caddyfile, "validate")

    def reload(self) -> None:
        self._reload("reload")
