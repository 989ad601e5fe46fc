from __future__ import annotations

from datetime import UTC, datetime, timedelta

import pytest
from cryptography import x509
from cryptography.hazmat.primitives import hashes, serialization
from cryptography.hazmat.primitives.serialization import pkcs12
from cryptography.x509.oid import NameOID

from facturador.utils.certificate import load_pfx, validate_certificate


class TestLoadPfx:
    def test_returns_key_and_cert(self, test_pfx):
        pfx_path, password = test_pfx
        key_pem, cert_pem, chain = load_pfx(pfx_path, password)
        assert key_pem is not None
        assert cert_pem is not None
        assert isinstance(chain, list)

    def test_key_is_pem(self, test_pfx):
        pfx_path, password = test_pfx
        key_pem, _, _ = load_pfx(pfx_path, password)
        assert key_pem.startswith(b"-----BEGIN")

    def test_cert_is_pem(self, test_pfx):
        pfx_path, password = test_pfx
        _, cert_pem, _ = load_pfx(pfx_path, password)
        assert cert_pem.startswith(b"-----BEGIN")

    def test_chain_empty_self_signed(self, test_pfx):
        pfx_path, password = test_pfx
        _, _, chain = load_pfx(pfx_path, password)
        assert chain == []

    def test_wrong_password(self, test_pfx):
        pfx_path, _ = test_pfx
        with pytest.raises(ValueError):
            load_pfx(pfx_path, "wrongpassword")

    def test_missing_file(self):
        with pytest.raises(FileNotFoundError):
            load_pfx("/nonexistent/path.pfx", "pass")


class TestValidateCertificate:
    def test_keys(self, test_pfx):
        pfx_path, password = test_pfx
        info = validate_certificate(pfx_path, password)
        assert "subject" in info
        assert "issuer" in info
        assert "not_before" in info
        assert "not_after" in info
        assert "valid" in info
        assert "serial" in info
        assert "holder_nif" in info

    def test_valid_true(self, test_pfx):
        pfx_path, password = test_pfx
        info = validate_certificate(pfx_path, password)
        assert info["valid"] is True

    def test_holder_nif_from_subject(self, test_pfx):
        pfx_path, password = test_pfx
        info = validate_certificate(pfx_path, password)
        assert info["holder_nif"] == "B12345678"

    def test_holder_nif_missing(self, tmp_path, test_key_and_cert):
        key, _ = test_key_and_cert
        name = x509.Name([x509.NameAttribute(NameOID.COMMON_NAME, "Sin NIF")])
        cert = (
            x509.CertificateBuilder()
            .subject_name(name)
            .issuer_name(name)
            .public_key(key.public_key())
            .serial_number(x509.random_serial_number())
            .not_valid_before(datetime.now(UTC) - timedelta(days=1))
            .not_valid_after(datetime.now(UTC) + timedelta(days=1))
            .sign(key, hashes.SHA256())
        )
        pfx = pkcs12.serialize_key_and_certificates(
            name=b"x",
            key=key,
            cert=cert,
            cas=None,
            encryption_algorithm=serialization.BestAvailableEncryption(b"pw"),
        )
        path = tmp_path / "nonif.pfx"
        path.write_bytes(pfx)
        assert validate_certificate(str(path), "pw")["holder_nif"] is None
