from __future__ import annotations

import time
from dataclasses import dataclass, field


@dataclass(frozen=True)
class Observation:
    """One measured value; ``source`` names what was measured (a mount, a site, a certificate file)."""

    metric: str
    value: float
    source: str = "host"
    ts: float = field(default_factory=time.time)
