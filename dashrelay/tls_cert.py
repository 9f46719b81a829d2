"""Helpers for serving the stream over HTTPS."""

from __future__ import annotations

import datetime as _dt
import ipaddress
import logging
import ssl
import tempfile
from pathlib import Path

from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import ec
from cryptography.x509.oid import NameOID

LOOPBACK = "127.0.0.1"
CERT_VALIDITY = _dt.timedelta(days=1)

TLS_MODES = {"off", "self-signed", "manual"}


class TlsError(Exception):
    """Raised when TLS material cannot be produced or loaded."""


def generate_cert_and_key() -> tuple[bytes, bytes]:
    """Return a throwaway self-signed ``(certificate, private key)`` PEM pair.

    The certificate is bound to the loopback address and valid for one day.
    """

    key = ec.generate_private_key(ec.SECP256R1())
    name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, LOOPBACK)])
    now = _dt.datetime.now(tz=_dt.timezone.utc)

    cert = (
        x509.CertificateBuilder()
        .subject_name(name)
        .issuer_name(name)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(now)
        .not_valid_after(now + CERT_VALIDITY)
        .add_extension(
            x509.SubjectAlternativeName(
                [
                    x509.IPAddress(ipaddress.ip_address(LOOPBACK)),
                    x509.DNSName(LOOPBACK),
                ]
            ),
            critical=False,
        )
        .sign(key, hashes.SHA256())
    )

    cert_pem = cert.public_bytes(serialization.Encoding.PEM)
    key_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.PKCS8,
        encryption_algorithm=serialization.NoEncryption(),
    )
    return cert_pem, key_pem


def _server_context() -> ssl.SSLContext:
    context = ssl.SSLContext(ssl.PROTOCOL_TLS_SERVER)
    context.minimum_version = ssl.TLSVersion.TLSv1_2
    return context


def ssl_context_from_pem(cert_pem: bytes, key_pem: bytes) -> ssl.SSLContext:
    """Load in-memory PEM material into a server context."""

    context = _server_context()
    # load_cert_chain only accepts file paths
    with tempfile.TemporaryDirectory(prefix=".dashrelay-tls") as tmp:
        cert_path = Path(tmp) / "cert.pem"
        key_path = Path(tmp) / "key.pem"
        cert_path.write_bytes(cert_pem)
        key_path.write_bytes(key_pem)
        key_path.chmod(0o600)
        try:
            context.load_cert_chain(certfile=str(cert_path), keyfile=str(key_path))
        except (OSError, ssl.SSLError) as exc:
            raise TlsError(f"Unable to load generated certificate: {exc}") from exc
    return context


def build_ssl_context(
    mode: str,
    *,
    certificate_path: str | Path | None = None,
    private_key_path: str | Path | None = None,
    logger: logging.Logger | None = None,
) -> ssl.SSLContext | None:
    """Return the server SSL context for ``mode`` (``None`` when TLS is off)."""

    log = logger or logging.getLogger("web_streamer")
    mode = (mode or "off").strip().lower()
    if mode not in TLS_MODES:
        raise TlsError(f"Unknown TLS mode {mode!r}; expected one of {sorted(TLS_MODES)}")
    if mode == "off":
        return None

    if mode == "manual":
        if not certificate_path or not private_key_path:
            raise TlsError("Manual TLS requires certificate_path and private_key_path to be set")
        context = _server_context()
        try:
            context.load_cert_chain(certfile=str(certificate_path), keyfile=str(private_key_path))
        except (OSError, ssl.SSLError) as exc:
            raise TlsError(f"Unable to load manual TLS certificate: {exc}") from exc
        log.info("Loaded HTTPS certificate from %s", certificate_path)
        return context

    cert_pem, key_pem = generate_cert_and_key()
    log.info("Generated self-signed HTTPS certificate for %s", LOOPBACK)
    return ssl_context_from_pem(cert_pem, key_pem)
