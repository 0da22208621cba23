"""Compressed, timestamped snapshots of the Caddyfile."""

from __future__ import annotations

import gzip
import os
import re
import shutil
from dataclasses import dataclass
from datetime import datetime, timedelta
from pathlib import Path
from typing import Callable, Iterable

import structlog

from caddy_manager.errors import IOFailure, NotFound

logger = structlog.get_logger(__name__)

SNAPSHOT_PREFIX = "Caddyfile_"
_ID_FORMAT = "%Y%m%d_%H%M%S_%f"
_LEGACY_ID_FORMAT = "%Y%m%d_%H%M%S"
_NAME_RE = re.compile(r"^Caddyfile_(?P<id>\d{8}_\d{6}(?:_\d{6})?)(?P<gz>\.gz)?$")


@dataclass(frozen=True)
class Snapshot:
    snapshot_id: str
    path: Path
    created_at: datetime


def _parse_id(snapshot_id: str) -> datetime | None:
    for fmt in (_ID_FORMAT, _LEGACY_ID_FORMAT):
        try:
            return datetime.strptime(snapshot_id, fmt)
        except ValueError:
            continue
    return None


class SnapshotStore:
    """Append-only snapshot directory; ids sort in creation order."""

    def __init__(
        self,
        backup_dir: str | Path,
        *,
        now: Callable[[], datetime] = datetime.now,
        file_group: str | None = None,
    ):
        self.backup_dir = Path(backup_dir)
        self._now = now
        self.file_group = file_group

    def _next_id(self) -> str:
        ts = self._now()
        existing = {s.snapshot_id for s in self.list()}
        candidate = ts.strftime(_ID_FORMAT)
        latest = self.latest()
        # Ids must keep increasing even if the clock stalls or steps back.
        if latest is not None and ts <= latest.created_at:
            ts = latest.created_at + timedelta(microseconds=1)
            candidate = ts.strftime(_ID_FORMAT)
        while candidate in existing:
            ts = ts + timedelta(microseconds=1)
            candidate = ts.strftime(_ID_FORMAT)
        return candidate

    def create(self, source: str | Path) -> Snapshot:
        src = Path(source)
        try:
            data = src.read_bytes()
        except OSError as exc:
            raise IOFailure(f"Cannot read {src}: {exc}", hint="check that the Caddyfile exists and is readable") from exc
        return self.create_from_bytes(data)

    def create_from_bytes(self, data: bytes) -> Snapshot:
        try:
            self.backup_dir.mkdir(parents=True, exist_ok=True)
            snapshot_id = self._next_id()
            path = self.backup_dir / f"{SNAPSHOT_PREFIX}{snapshot_id}.gz"
            tmp = path.with_name(f"{path.name}.tmp")
            with gzip.open(tmp, "wb", compresslevel=9) as f:
                f.write(data)
            os.chmod(tmp, 0o640)
            if self.file_group:
                shutil.chown(tmp, group=self.file_group)
            tmp.replace(path)
        except (OSError, LookupError) as exc:
            raise IOFailure(
                f"Cannot write snapshot to {self.backup_dir}: {exc}",
                hint="check free disk space and permissions of the backup directory",
            ) from exc

        created_at = _parse_id(snapshot_id) or self._now()
        logger.info("Snapshot created", snapshot_id=snapshot_id, path=str(path), size=len(data))
        return Snapshot(snapshot_id=snapshot_id, path=path, created_at=created_at)

    def list(self) -> list[Snapshot]:
        if not self.backup_dir.is_dir():
            return []
        out: list[Snapshot] = []
        for p in self.backup_dir.iterdir():
            m = _NAME_RE.match(p.name)
            if not m or not p.is_file():
                continue
            created = _parse_id(m.group("id"))
            if created is None:
                continue
            out.append(Snapshot(snapshot_id=m.group("id"), path=p, created_at=created))
        out.sort(key=lambda s: (s.created_at, s.snapshot_id))
        return out

    def latest(self) -> Snapshot | None:
        items = self.list()
        return items[-1] if items else None

    def get(self, ref: str | None = None) -> Snapshot:
        """Resolve a snapshot id, a snapshot file path, or (None) the newest snapshot."""
        if ref is None:
            latest = self.latest()
            if latest is None:
                raise NotFound(f"No snapshots in {self.backup_dir}")
            return latest

        ref = str(ref).strip()
        for s in self.list():
            if ref in (s.snapshot_id, s.path.name, str(s.path)):
                return s

        p = Path(ref)
        if p.is_file():
            m = _NAME_RE.match(p.name)
            created = _parse_id(m.group("id")) if m else None
            if created is None:
                created = datetime.fromtimestamp(p.stat().st_mtime)
            return Snapshot(snapshot_id=m.group("id") if m else p.name, path=p, created_at=created)
        raise NotFound(f"Snapshot not found: {ref}")

    def read(self, snapshot: Snapshot) -> bytes:
        try:
            if snapshot.path.suffix == ".gz":
                with gzip.open(snapshot.path, "rb") as f:
                    return f.read()
            return snapshot.path.read_bytes()
        except (OSError, EOFError) as exc:
            raise IOFailure(f"Cannot read snapshot {snapshot.path}: {exc}") from exc

    def _remove(self, snapshots: list[Snapshot]) -> list[Snapshot]:
        removed: list[Snapshot] = []
        for s in snapshots:
            try:
                s.path.unlink()
            except FileNotFoundError:
                continue
            except OSError as exc:
                raise IOFailure(f"Cannot delete snapshot {s.path}: {exc}") from exc
            removed.append(s)
        if removed:
            logger.info("Pruned snapshots", count=len(removed), oldest=removed[0].snapshot_id)
        return removed

    def prune_older_than(self, days: float, exclude: Iterable[str] = ()) -> list[Snapshot]:
        cutoff = self._now() - timedelta(days=max(0.0, float(days)))
        skip = set(exclude)
        return self._remove([s for s in self.list() if s.created_at < cutoff and s.snapshot_id not in skip])

    def prune_keep(self, keep: int) -> list[Snapshot]:
        keep = max(0, int(keep))
        items = self.list()
        if len(items) <= keep:
            return []
        return self._remove(items[: len(items) - keep])
