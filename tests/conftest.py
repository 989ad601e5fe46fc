from __future__ import annotations

import threading
from datetime import UTC, date, datetime, timedelta
from decimal import Decimal
from unittest.mock import patch

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.asymmetric import rsa
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID
from lxml import etree

from facturador.config import MADRID, BillingSettings
from facturador.models.counterparty import Counterparty
from facturador.models.invoice import DraftLine, InvoiceDraft, TaxClass
from facturador.models.issuer import Issuer


def xml_text(el: etree._Element, xpath: str) -> str | None:
    """Extract text from an XML element by xpath."""
    found = el.find(xpath)
    return found.text if found is not None else None


class FakeClock:
    """Deterministic clock for retry scheduling."""

    def __init__(self, start: datetime | None = None) -> None:
        self.now = start or datetime(2025, 3, 14, 10, 0, tzinfo=MADRID)

    def __call__(self) -> datetime:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += timedelta(seconds=seconds)


class FakeAuthority:
    """Transport double that deduplicates by idempotency key like AEAT does.

    *script* is consumed one item per call: an exception instance is raised,
    anything else means "accept".
    """

    def __init__(self, script: list | None = None) -> None:
        self.script = list(script or [])
        self.calls: list[tuple[dict, str]] = []
        self.registered: dict[str, str] = {}
        self._lock = threading.Lock()

    def __call__(self, payload: dict, key: str) -> dict:
        with self._lock:
            self.calls.append((payload, key))
            outcome = self.script.pop(0) if self.script else "ack"
            if isinstance(outcome, Exception):
                raise outcome
            duplicate = key in self.registered
            if not duplicate:
                self.registered[key] = f"CSV{len(self.registered) + 1:06d}"
            return {
                "reference": self.registered[key],
                "timestamp": "2025-03-14T10:00:05+01:00",
                "duplicate": duplicate,
                "response": {"EstadoRegistro": "Correcto"},
            }


# --- Issuer / counterparty fixtures ---


@pytest.fixture
def issuer_dict() -> dict:
    return {
        "nif": "B12345678",
        "razon_social": "Nutrición Ejemplo S.L.",
        "direccion": "Calle Mayor 1",
        "codigo_postal": "28001",
        "poblacion": "Madrid",
        "provincia": "Madrid",
        "serie": "F",
        "email": "facturacion@example.com",
    }


@pytest.fixture
def issuer(issuer_dict: dict) -> Issuer:
    return Issuer.from_dict(issuer_dict)


@pytest.fixture
def counterparty_dict() -> dict:
    return {
        "nif": "12345678Z",
        "nombre": "María",
        "apellidos": "García López",
        "direccion": "Avenida de la Constitución 5",
        "codigo_postal": "41004",
        "poblacion": "Sevilla",
        "provincia": "Sevilla",
    }


@pytest.fixture
def counterparty(counterparty_dict: dict) -> Counterparty:
    return Counterparty.from_dict(counterparty_dict)


@pytest.fixture
def company_counterparty() -> Counterparty:
    return Counterparty.from_dict({
        "nif": "A58818501",
        "nombre": "Clínica Norte S.A.",
        "person_type": "J",
        "direccion": "Gran Vía 10",
        "codigo_postal": "48001",
        "poblacion": "Bilbao",
        "provincia": "Bizkaia",
    })


@pytest.fixture
def make_draft(issuer, counterparty):
    def _make(
        lines: list[DraftLine] | None = None,
        issue_date: date = date(2025, 3, 14),
        **kwargs,
    ) -> InvoiceDraft:
        if lines is None:
            lines = [DraftLine("Consulta", Decimal("1"), Decimal("100.00"), TaxClass.GENERAL)]
        kwargs.setdefault("issuer", issuer)
        kwargs.setdefault("counterparty", counterparty)
        return InvoiceDraft(issue_date=issue_date, lines=tuple(lines), **kwargs)

    return _make


# --- Settings / storage fixtures ---


@pytest.fixture
def settings() -> BillingSettings:
    return BillingSettings(
        max_attempts=3,
        base_delay=10.0,
        max_delay=60.0,
        jitter=0.0,
        sent_timeout=300.0,
        lock_timeout=5.0,
        workers=2,
    )


@pytest.fixture
def data_dir(tmp_path):
    data = tmp_path / "data"
    with patch("facturador.config.get_data_dir", return_value=data):
        yield data


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


# --- Certificate / PFX fixtures ---


@pytest.fixture(scope="session")
def test_key_and_cert():
    key = rsa.generate_private_key(public_exponent=65537, key_size=2048)
    subject = issuer = x509.Name(
        [
            x509.NameAttribute(NameOID.COMMON_NAME, "Test Certificate"),
            x509.NameAttribute(NameOID.ORGANIZATION_NAME, "Test Org"),
            x509.NameAttribute(NameOID.SERIAL_NUMBER, "IDCES-B12345678"),
        ]
    )
    cert = (
        x509.CertificateBuilder()
        .subject_name(subject)
        .issuer_name(issuer)
        .public_key(key.public_key())
        .serial_number(x509.random_serial_number())
        .not_valid_before(datetime.now(UTC) - timedelta(days=1))
        .not_valid_after(datetime.now(UTC) + timedelta(days=365))
        .sign(key, hashes.SHA256())
    )
    return key, cert


@pytest.fixture(scope="session")
def self_signed_pem(test_key_and_cert):
    key, cert = test_key_and_cert
    key_pem = key.private_bytes(
        encoding=serialization.Encoding.PEM,
        format=serialization.PrivateFormat.TraditionalOpenSSL,
        encryption_algorithm=serialization.NoEncryption(),
    )
    cert_pem = cert.public_bytes(serialization.Encoding.PEM)
    return key_pem, cert_pem


@pytest.fixture
def test_pfx(tmp_path, test_key_and_cert):
    key, cert = test_key_and_cert
    password = b"testpass"
    pfx_data = pkcs12.serialize_key_and_certificates(
        name=b"test",
        key=key,
        cert=cert,
        cas=None,
        encryption_algorithm=serialization.BestAvailableEncryption(password),
    )
    pfx_path = tmp_path / "test.pfx"
    pfx_path.write_bytes(pfx_data)
    return str(pfx_path), "testpass"


# --- Config dir fixture ---


@pytest.fixture
def config_dir(tmp_path, issuer_dict, counterparty_dict):
    import yaml

    cfg = tmp_path / "config"
    (cfg / "issuers").mkdir(parents=True)
    (cfg / "counterparties").mkdir()
    (cfg / "issuers" / "B12345678.yaml").write_text(
        yaml.dump(issuer_dict, allow_unicode=True), encoding="utf-8"
    )
    (cfg / "counterparties" / "maria.yaml").write_text(
        yaml.dump(counterparty_dict, allow_unicode=True), encoding="utf-8"
    )
    return cfg
