"""Safe Caddyfile management and health monitoring for a Caddy reverse proxy."""

__version__ = "1.0.0"
