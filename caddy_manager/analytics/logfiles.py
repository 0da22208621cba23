"""Log sources on disk: loading, age-based cleanup and size-triggered rotation."""

from __future__ import annotations

import gzip
import os
import re
import shutil
import time
from datetime import datetime
from pathlib import Path

import structlog

from caddy_manager.analytics.records import AccessRecord, ErrorRecord, parse_access_lines, parse_error_lines
from caddy_manager.errors import IOFailure, LogUnavailable

logger = structlog.get_logger(__name__)

ROTATED_SUFFIX_FORMAT = "%Y%m%d_%H%M%S"


def read_log_lines(path: str | Path) -> list[str]:
    """Read a log source (plain or .gz); a missing or empty source is LogUnavailable."""
    p = Path(path)
    try:
        if p.suffix == ".gz":
            with gzip.open(p, "rt", encoding="utf-8", errors="replace") as f:
                text = f.read()
        else:
            text = p.read_text(encoding="utf-8", errors="replace")
    except FileNotFoundError as exc:
        raise LogUnavailable(f"Log file not found: {p}", hint="check paths.access_log / paths.error_log") from exc
    except (OSError, EOFError) as exc:
        raise LogUnavailable(f"Cannot read log file {p}: {exc}") from exc
    if not text.strip():
        raise LogUnavailable(f"Log file is empty: {p}")
    return text.splitlines()


def load_access_records(path: str | Path) -> tuple[list[AccessRecord], int]:
    records, malformed = parse_access_lines(read_log_lines(path))
    if malformed:
        logger.debug("Skipped malformed access log lines", path=str(path), count=malformed)
    return records, malformed


def load_error_records(path: str | Path) -> tuple[list[ErrorRecord], int]:
    records, malformed = parse_error_lines(read_log_lines(path))
    if malformed:
        logger.debug("Skipped malformed error log lines", path=str(path), count=malformed)
    return records, malformed


def _rotation_patterns(live: Path) -> tuple[re.Pattern[str], ...]:
    name, stem, suffix = re.escape(live.name), re.escape(live.stem), re.escape(live.suffix)
    return (
        # rotate_logs: access.log_20240101_000000.gz
        re.compile(rf"^{name}_\d{{8}}_\d{{6}}\.gz$"),
        # the server's own rolls: access-2024-01-01T00-00-00.000.log[.gz]
        re.compile(rf"^{stem}-\d{{4}}-\d{{2}}-\d{{2}}T\d{{2}}-\d{{2}}-\d{{2}}\.\d{{3}}{suffix}(?:\.gz)?$"),
    )


def _rotated_siblings(live: Path) -> list[Path]:
    """Rotated copies of ``live``; unrelated files sharing its prefix are left alone."""
    if not live.parent.is_dir():
        return []
    patterns = _rotation_patterns(live)
    out: list[Path] = []
    for p in live.parent.iterdir():
        if p.is_file() and any(rx.match(p.name) for rx in patterns):
            out.append(p)
    return sorted(out)


def cleanup_logs(paths: list[str], days: float, *, now: float | None = None) -> list[Path]:
    """Delete rotated log files older than ``days``; live logs are never touched."""
    cutoff = (time.time() if now is None else now) - max(0.0, float(days)) * 86400.0
    removed: list[Path] = []
    for raw in paths:
        for p in _rotated_siblings(Path(raw)):
            try:
                if p.stat().st_mtime >= cutoff:
                    continue
                p.unlink()
            except FileNotFoundError:
                continue
            except OSError as exc:
                raise IOFailure(f"Cannot delete {p}: {exc}") from exc
            removed.append(p)
    logger.info("Old logs cleaned", removed=len(removed), days=days)
    return removed


def rotate_logs(
    paths: list[str],
    max_bytes: int,
    *,
    now: datetime | None = None,
    mode: int = 0o640,
) -> list[Path]:
    """
    Compress every log larger than ``max_bytes`` to ``<log>_<ts>.gz`` and
    truncate the live file in place so the server keeps its open handle.
    """
    stamp = (now or datetime.now()).strftime(ROTATED_SUFFIX_FORMAT)
    rotated: list[Path] = []
    for raw in paths:
        live = Path(raw)
        try:
            size = live.stat().st_size
        except FileNotFoundError:
            continue
        except OSError as exc:
            raise IOFailure(f"Cannot stat {live}: {exc}") from exc
        if size <= int(max_bytes):
            continue

        target = live.with_name(f"{live.name}_{stamp}.gz")
        try:
            with open(live, "rb") as src, gzip.open(target, "wb") as dst:
                shutil.copyfileobj(src, dst)
            with open(live, "r+b") as f:
                f.truncate(0)
            os.chmod(live, mode)
        except OSError as exc:
            raise IOFailure(f"Cannot rotate {live}: {exc}") from exc
        logger.info("Log rotated", path=str(live), size=size, archive=str(target))
        rotated.append(target)
    return rotated
