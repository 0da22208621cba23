"""Scan the server's certificate store for expiry and weak parameters."""

from __future__ import annotations

import time
from datetime import datetime, timezone
from pathlib import Path

import structlog
from cryptography import x509
from cryptography.exceptions import UnsupportedAlgorithm
from cryptography.hazmat.primitives.asymmetric import dsa, rsa

from caddy_manager.monitoring.observations import Observation

logger = structlog.get_logger(__name__)

CERT_SUFFIXES = (".crt", ".pem")
WEAK_HASHES = {"md5", "sha1"}


def _iter_cert_files(cert_dir: Path) -> list[Path]:
    if not cert_dir.is_dir():
        return []
    return sorted(p for p in cert_dir.rglob("*") if p.is_file() and p.suffix.lower() in CERT_SUFFIXES)


def inspect_certificate(cert: x509.Certificate, *, source: str, now: datetime | None = None) -> list[Observation]:
    now = now or datetime.now(timezone.utc)
    ts = now.timestamp()
    days_left = (cert.not_valid_after_utc - now).total_seconds() / 86400.0
    out = [Observation(metric="cert_days_left", value=round(days_left, 3), source=source, ts=ts)]

    try:
        algo = cert.signature_hash_algorithm
    except UnsupportedAlgorithm:
        algo = None
    weak = algo is not None and algo.name.lower() in WEAK_HASHES
    out.append(Observation(metric="cert_weak_signature", value=1.0 if weak else 0.0, source=source, ts=ts))

    # Only RSA/DSA sizes are comparable with the 2048-bit floor.
    key = cert.public_key()
    if isinstance(key, (rsa.RSAPublicKey, dsa.DSAPublicKey)):
        out.append(Observation(metric="cert_key_bits", value=float(key.key_size), source=source, ts=ts))
    return out


def scan_certificates(cert_dir: str | Path, *, now: datetime | None = None) -> list[Observation]:
    root = Path(cert_dir)
    out: list[Observation] = []
    for path in _iter_cert_files(root):
        source = str(path.relative_to(root))
        try:
            data = path.read_bytes()
        except OSError as exc:
            logger.warning("Cannot read certificate", path=str(path), error=str(exc))
            continue
        if b"-----BEGIN CERTIFICATE-----" not in data:
            # Keys and other PEM material share the suffix.
            continue
        try:
            # The leaf comes first in a chain file.
            cert = x509.load_pem_x509_certificates(data)[0]
        except (ValueError, IndexError) as exc:
            logger.warning("Unparseable certificate", path=str(path), error=str(exc))
            out.append(Observation(metric="cert_unreadable", value=1.0, source=source, ts=time.time()))
            continue
        out.extend(inspect_certificate(cert, source=source, now=now))
    return out
