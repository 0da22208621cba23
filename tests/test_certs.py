from __future__ import annotations

from datetime import timedelta
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec, rsa
from cryptography.x509.oid import NameOID

from caddy_manager.alerting.rules import DEFAULT_RULES, evaluate
from caddy_manager.monitoring.certs import scan_certificates

DATA = Path(__file__).parent / "data"
# Current cryptography releases refuse to sign with SHA-1, so the weak certificate is a
# fixture made with: openssl req -x509 -newkey rsa:1024 -sha1 -nodes -days 400
WEAK_PEM = (DATA / "old.example.com.crt").read_bytes()
NOW = x509.load_pem_x509_certificate(WEAK_PEM).not_valid_after_utc - timedelta(days=5)


def _write_cert(path: Path, *, days_left: float, key, algorithm) -> None:
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, path.stem)])
    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(NOW - timedelta(days=30))
        .not_valid_after(NOW + timedelta(days=days_left))
        .sign(key, algorithm)
    )
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_bytes(cert.public_bytes(serialization.Encoding.PEM))


def test_scan_reports_expiry_and_weak_parameters(tmp_path: Path) -> None:
    store = tmp_path / "certificates"
    rsa_2048 = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    ec_key = ec.generate_private_key(ec.SECP256R1())

    (store / "acme").mkdir(parents=True)
    (store / "acme" / "old.example.com.crt").write_bytes(WEAK_PEM)
    _write_cert(store / "acme" / "good.example.com.crt", days_left=60, key=rsa_2048, algorithm=hashes.SHA256())
    _write_cert(store / "acme" / "ec.example.com.pem", days_left=10, key=ec_key, algorithm=hashes.SHA256())
    (store / "acme" / "good.example.com.key").write_text("not a cert", encoding="utf-8")
    (store / "acme" / "broken.crt").write_text(
        "-----BEGIN CERTIFICATE-----\nAAAA\n-----END CERTIFICATE-----\n", encoding="utf-8"
    )

    obs = {(o.metric, o.source): o.value for o in scan_certificates(store, now=NOW)}

    old = "acme/old.example.com.crt"
    good = "acme/good.example.com.crt"
    ecc = "acme/ec.example.com.pem"
    assert round(obs[("cert_days_left", old)]) == 5
    assert obs[("cert_weak_signature", old)] == 1.0
    assert obs[("cert_key_bits", old)] == 1024.0
    assert obs[("cert_weak_signature", good)] == 0.0
    assert obs[("cert_key_bits", good)] == 2048.0
    assert round(obs[("cert_days_left", ecc)]) == 10
    assert ("cert_key_bits", ecc) not in obs
    assert obs[("cert_unreadable", "acme/broken.crt")] == 1.0

    fired = {(e.source_metric, e.severity) for e in evaluate(scan_certificates(store, now=NOW), DEFAULT_RULES)}
    assert (f"cert_days_left:{old}", "error") in fired
    assert (f"cert_days_left:{ecc}", "warning") in fired
    assert (f"cert_key_bits:{old}", "warning") in fired
    assert (f"cert_weak_signature:{old}", "warning") in fired
    assert not any(src.endswith(good) for src, _ in fired)


def test_missing_store_yields_nothing(tmp_path: Path) -> None:
    assert scan_certificates(tmp_path / "none") == []
