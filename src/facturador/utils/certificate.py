from __future__ import annotations

from datetime import UTC, datetime
from pathlib import Path

from cryptography.hazmat.primitives.serialization import (
    Encoding,
    NoEncryption,
    PrivateFormat,
    pkcs12,
)
from cryptography.x509 import Certificate
from cryptography.x509.oid import NameOID


def _read(pfx_path: str, password: str):
    pfx_data = Path(pfx_path).read_bytes()
    return pkcs12.load_key_and_certificates(pfx_data, password.encode())


def load_pfx(pfx_path: str, password: str) -> tuple[bytes, bytes, list[Certificate]]:
    """Load a .pfx/.p12 certificate and return (private_key_pem, cert_pem, chain).

    Used to sign exported Facturae documents.
    """
    private_key, certificate, chain = _read(pfx_path, password)

    if private_key is None or certificate is None:
        raise ValueError("Certificate or private key not found in .pfx file")

    key_pem = private_key.private_bytes(
        encoding=Encoding.PEM,
        format=PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=NoEncryption(),
    )
    cert_pem = certificate.public_bytes(Encoding.PEM)
    ca_certs = list(chain) if chain else []

    return key_pem, cert_pem, ca_certs


def _serial_number(certificate: Certificate) -> str | None:
    # FNMT certificates carry the holder's NIF in the subject serialNumber
    attrs = certificate.subject.get_attributes_for_oid(NameOID.SERIAL_NUMBER)
    if not attrs:
        return None
    value = str(attrs[0].value).upper()
    return value.removeprefix("IDCES-")


def validate_certificate(pfx_path: str, password: str) -> dict:
    """Validate certificate and return info."""
    _, certificate, _ = _read(pfx_path, password)

    if certificate is None:
        raise ValueError("No certificate found in .pfx file")

    now = datetime.now(UTC)
    return {
        "subject": certificate.subject.rfc4514_string(),
        "issuer": certificate.issuer.rfc4514_string(),
        "not_before": certificate.not_valid_before_utc,
        "not_after": certificate.not_valid_after_utc,
        "valid": certificate.not_valid_before_utc <= now <= certificate.not_valid_after_utc,
        "serial": certificate.serial_number,
        "holder_nif": _serial_number(certificate),
    }
