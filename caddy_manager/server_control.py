"""Black-box control of the managed server: validate a Caddyfile, reload the process."""

from __future__ import annotations

import subprocess
from pathlib import Path
from typing import Protocol

import structlog

from caddy_manager.config import ServerConfig

logger = structlog.get_logger(__name__)


class ServerControl(Protocol):
    def validate(self, config_path: Path) -> bool: ...

    def reload(self) -> bool: ...

    def is_active(self) -> bool: ...


class CommandServerControl:
    """Runs the configured external commands; a zero exit status means success."""

    def __init__(self, config: ServerConfig):
        self.config = config

    def _run(self, argv: list[str], *, action: str) -> bool:
        if not argv:
            return True
        try:
            proc = subprocess.run(
                argv,
                capture_output=True,
                text=True,
                timeout=float(self.config.command_timeout_seconds),
                check=False,
            )
        except (OSError, subprocess.TimeoutExpired) as exc:
            logger.error("Server command could not run", action=action, command=argv, error=str(exc))
            return False

        if proc.returncode != 0:
            logger.warning(
                "Server command failed",
                action=action,
                command=argv,
                returncode=proc.returncode,
                stderr=(proc.stderr or "").strip()[-800:],
            )
            return False
        return True

    def validate(self, config_path: Path) -> bool:
        for template in self.config.validate_commands:
            argv = [arg.replace("{config}", str(config_path)) for arg in template]
            if not self._run(argv, action="validate"):
                return False
        return True

    def is_active(self) -> bool:
        return self._run(list(self.config.is_active_command), action="is_active")

    def reload(self) -> bool:
        if not self.is_active():
            logger.info("Server is not running, starting it")
            return self._run(list(self.config.start_command), action="start")
        return self._run(list(self.config.reload_command), action="reload")
