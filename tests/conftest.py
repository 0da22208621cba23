from __future__ import annotations

from pathlib import Path
from typing import Callable

import pytest
import structlog

from caddy_manager.config import ManagerConfig

SAMPLE_CADDYFILE = """{
\temail ops@example.com
}

# main site
example.com {
\treverse_proxy 127.0.0.1:8080
\theader X-Note "braces { in } quotes"
}

(common) {
\tencode gzip
}

api.example.com, api2.example.com {
\timport common
\treverse_proxy 127.0.0.1:9000
}
"""


class FakeServer:
    """Server Control double: ``valid`` decides validation, ``reload_ok`` decides reload."""

    def __init__(self, *, valid: bool | Callable[[str], bool] = True, reload_ok: bool = True) -> None:
        self.valid = valid
        self.reload_ok = reload_ok
        self.validated: list[str] = []
        self.reloads = 0

    def validate(self, config_path: Path) -> bool:
        text = Path(config_path).read_text(encoding="utf-8")
        self.validated.append(text)
        if callable(self.valid):
            return bool(self.valid(text))
        return bool(self.valid)

    def reload(self) -> bool:
        self.reloads += 1
        return self.reload_ok

    def is_active(self) -> bool:
        return True


@pytest.fixture()
def make_config(tmp_path: Path) -> Callable[..., ManagerConfig]:
    def _make(caddyfile_text: str | None = SAMPLE_CADDYFILE, **overrides) -> ManagerConfig:
        caddyfile = tmp_path / "Caddyfile"
        if caddyfile_text is not None:
            caddyfile.write_text(caddyfile_text, encoding="utf-8")
        data = {
            "require_root": False,
            "lock_timeout_seconds": 1,
            "paths": {
                "caddyfile": str(caddyfile),
                "backup_dir": str(tmp_path / "backups"),
                "access_log": str(tmp_path / "logs" / "access.log"),
                "error_log": str(tmp_path / "logs" / "error.log"),
                "server_log": str(tmp_path / "logs" / "caddy.log"),
                "cert_dir": str(tmp_path / "certs"),
            },
            "server": {
                "validate_commands": [["true"]],
                "is_active_command": ["true"],
                "reload_command": ["true"],
                "start_command": ["true"],
            },
        }
        for key, value in overrides.items():
            if isinstance(value, dict) and isinstance(data.get(key), dict):
                data[key] = {**data[key], **value}
            else:
                data[key] = value
        return ManagerConfig(**data)

    return _make


@pytest.fixture(autouse=True)
def _reset_structlog():
    """CLI tests configure structlog globally; start every test from the defaults."""
    yield
    structlog.reset_defaults()
