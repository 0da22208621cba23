"""Caddyfile document model and fixed configuration templates."""

from .document import CaddyfileDocument, CaddyfileSyntaxError, normalize_address, parse

__all__ = ["CaddyfileDocument", "CaddyfileSyntaxError", "normalize_address", "parse"]
