"""System resource sampling from /proc (Linux)."""

from __future__ import annotations

import os
import shutil
import time
from pathlib import Path

from caddy_manager.monitoring.observations import Observation

PROC_ROOT = Path("/proc")

# Connection states as encoded in /proc/net/tcp.
TCP_ESTABLISHED = "01"
TCP_TIME_WAIT = "06"
TCP_LISTEN = "0A"


def read_meminfo_kb(proc_root: Path = PROC_ROOT) -> dict[str, int]:
    """
    Parse /proc/meminfo into {field: kB}.
    Returns {} when the file is not available (non-Linux hosts).
    """
    try:
        raw = (proc_root / "meminfo").read_text(encoding="utf-8")
    except OSError:
        return {}

    values: dict[str, int] = {}
    for line in raw.splitlines():
        if ":" not in line:
            continue
        key, rest = line.split(":", 1)
        parts = rest.strip().split()
        if not parts:
            continue
        try:
            values[key.strip()] = int(parts[0])
        except ValueError:
            continue
    return values


def read_cpu_total_idle(proc_root: Path = PROC_ROOT) -> tuple[int, int] | None:
    """
    Return (total_jiffies, idle_jiffies) for the aggregate CPU line of /proc/stat.
    Idle includes iowait.
    """
    try:
        raw = (proc_root / "stat").read_text(encoding="utf-8")
    except OSError:
        return None

    for line in raw.splitlines():
        if not line.startswith("cpu "):
            continue
        # cpu user nice system idle iowait irq softirq steal guest guest_nice
        nums: list[int] = []
        for p in line.split()[1:]:
            try:
                nums.append(int(p))
            except ValueError:
                nums.append(0)
        if len(nums) < 4:
            return None
        return int(sum(nums)), int(nums[3] + (nums[4] if len(nums) > 4 else 0))
    return None


def cpu_used_percent(*, prev_total: int, prev_idle: int, cur_total: int, cur_idle: int) -> float | None:
    delta_total = int(cur_total) - int(prev_total)
    delta_idle = int(cur_idle) - int(prev_idle)
    if delta_total <= 0:
        return None
    used = max(0.0, min(100.0, (1.0 - (delta_idle / float(delta_total))) * 100.0))
    return round(used, 3)


def disk_used_percent(path: str) -> float | None:
    try:
        total, used, _free = shutil.disk_usage(path)
    except OSError:
        return None
    if total <= 0:
        return None
    return round((used / float(total)) * 100.0, 3)


def used_percent(total: int | None, free: int | None) -> float | None:
    if not isinstance(total, int) or total <= 0 or not isinstance(free, int):
        return None
    return round((1.0 - (free / float(total))) * 100.0, 3)


def read_tcp_states(proc_root: Path = PROC_ROOT) -> dict[str, int] | None:
    """Count sockets per state across /proc/net/tcp and /proc/net/tcp6."""
    counts: dict[str, int] = {}
    found = False
    for name in ("tcp", "tcp6"):
        try:
            raw = (proc_root / "net" / name).read_text(encoding="utf-8")
        except OSError:
            continue
        found = True
        for line in raw.splitlines()[1:]:
            parts = line.split()
            if len(parts) < 4:
                continue
            state = parts[3].upper()
            counts[state] = counts.get(state, 0) + 1
    return counts if found else None


def listening_ports(proc_root: Path = PROC_ROOT) -> set[int]:
    ports: set[int] = set()
    for name in ("tcp", "tcp6"):
        try:
            raw = (proc_root / "net" / name).read_text(encoding="utf-8")
        except OSError:
            continue
        for line in raw.splitlines()[1:]:
            parts = line.split()
            if len(parts) < 4 or parts[3].upper() != TCP_LISTEN:
                continue
            _addr, _sep, port_hex = parts[1].rpartition(":")
            try:
                ports.add(int(port_hex, 16))
            except ValueError:
                continue
    return ports


class HostSampler:
    """Produces system Observations; keeps the previous CPU sample between cycles."""

    def __init__(
        self,
        *,
        disk_paths: list[str] | None = None,
        proc_root: Path = PROC_ROOT,
        first_sample_delay: float = 0.5,
    ):
        self.disk_paths = list(disk_paths or ["/"])
        self.proc_root = Path(proc_root)
        self.first_sample_delay = first_sample_delay
        self._cpu_prev: tuple[int, int] | None = None

    def _cpu(self) -> float | None:
        cur = read_cpu_total_idle(self.proc_root)
        if cur is None:
            return None
        prev = self._cpu_prev
        if prev is None:
            # No previous cycle yet: take a short in-cycle baseline.
            time.sleep(self.first_sample_delay)
            prev, cur = cur, read_cpu_total_idle(self.proc_root) or cur
        self._cpu_prev = cur
        return cpu_used_percent(prev_total=prev[0], prev_idle=prev[1], cur_total=cur[0], cur_idle=cur[1])

    def sample(self) -> list[Observation]:
        now = time.time()
        out: list[Observation] = []

        def add(metric: str, value: float | None, source: str = "host") -> None:
            if value is not None:
                out.append(Observation(metric=metric, value=float(value), source=source, ts=now))

        add("cpu_pct", self._cpu())

        meminfo = read_meminfo_kb(self.proc_root)
        add("mem_pct", used_percent(meminfo.get("MemTotal"), meminfo.get("MemAvailable")))
        add("swap_pct", used_percent(meminfo.get("SwapTotal"), meminfo.get("SwapFree")))

        for p in self.disk_paths:
            pp = str(p or "").strip()
            if pp and Path(pp).exists():
                add("disk_pct", disk_used_percent(pp), source=pp)

        try:
            load1 = float(os.getloadavg()[0])
        except OSError:
            load1 = None
        cpu_count = os.cpu_count() or 0
        if load1 is not None and cpu_count > 0:
            add("load1_per_cpu", round(load1 / float(cpu_count), 3))

        states = read_tcp_states(self.proc_root)
        if states is not None:
            add("tcp_total", sum(states.values()))
            add("tcp_established", states.get(TCP_ESTABLISHED, 0))
            add("tcp_time_wait", states.get(TCP_TIME_WAIT, 0))
            add("tcp_listen", states.get(TCP_LISTEN, 0))
        return out
