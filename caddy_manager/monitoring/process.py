"""Liveness of the managed server process and its listeners."""

from __future__ import annotations

import time
from pathlib import Path

from caddy_manager.monitoring.host import PROC_ROOT, listening_ports
from caddy_manager.monitoring.observations import Observation


def find_processes(name: str, proc_root: Path = PROC_ROOT) -> list[int]:
    pids: list[int] = []
    try:
        entries = list(proc_root.iterdir())
    except OSError:
        return pids
    for entry in entries:
        if not entry.name.isdigit():
            continue
        try:
            comm = (entry / "comm").read_text(encoding="utf-8").strip()
        except OSError:
            # Process exited while scanning.
            continue
        if comm == name:
            pids.append(int(entry.name))
    return sorted(pids)


def check_process(name: str, ports: list[int], proc_root: Path = PROC_ROOT) -> list[Observation]:
    now = time.time()
    pids = find_processes(name, proc_root)
    out = [Observation(metric="server_up", value=1.0 if pids else 0.0, source=name, ts=now)]

    wanted = {int(p) for p in ports}
    if wanted:
        open_ports = listening_ports(proc_root)
        missing = sorted(wanted - open_ports)
        source = ",".join(str(p) for p in sorted(wanted))
        out.append(Observation(metric="server_listening", value=0.0 if missing else 1.0, source=source, ts=now))
    return out
