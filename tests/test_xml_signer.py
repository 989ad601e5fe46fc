from __future__ import annotations

from unittest.mock import patch

import pytest
from lxml import etree

from facturador.config import FACTURAE_NS
from facturador.services.xml_signer import sign_facturae

DS = "{http://www.w3.org/2000/09/xmldsig#}"


def _make_facturae() -> etree._Element:
    """Minimal Facturae root for signing tests."""
    root = etree.Element(f"{{{FACTURAE_NS}}}Facturae", nsmap={"fe": FACTURAE_NS})
    header = etree.SubElement(root, "FileHeader")
    etree.SubElement(header, "SchemaVersion").text = "3.2.2"
    etree.SubElement(header, "Modality").text = "I"
    return root


class TestSignFacturae:
    @patch("facturador.services.xml_signer.XMLSigner")
    def test_uses_enveloped_rsa_sha256(self, mock_signer_cls, self_signed_pem):
        key_pem, cert_pem = self_signed_pem
        doc = _make_facturae()
        mock_signer_cls.return_value.sign.return_value = doc

        sign_facturae(doc, key_pem, cert_pem)
        kwargs = mock_signer_cls.call_args.kwargs
        assert kwargs["method"].name == "enveloped"
        assert kwargs["signature_algorithm"].name == "RSA_SHA256"
        assert kwargs["digest_algorithm"].name == "SHA256"

    @patch("facturador.services.xml_signer.XMLSigner")
    def test_passes_key_and_cert(self, mock_signer_cls, self_signed_pem):
        key_pem, cert_pem = self_signed_pem
        doc = _make_facturae()
        mock_signer_cls.return_value.sign.return_value = doc

        sign_facturae(doc, key_pem, cert_pem)
        args, kwargs = mock_signer_cls.return_value.sign.call_args
        assert args[0] is doc
        assert kwargs["key"] == key_pem
        assert kwargs["cert"] == cert_pem.decode()

    def test_real_signature(self, self_signed_pem):
        key_pem, cert_pem = self_signed_pem
        signed = sign_facturae(_make_facturae(), key_pem, cert_pem)

        sig = signed.find(f"{DS}Signature")
        assert sig is not None
        method = sig.find(f"{DS}SignedInfo/{DS}SignatureMethod")
        assert method.get("Algorithm").endswith("rsa-sha256")
        assert sig.find(f".//{DS}X509Certificate") is not None
        # Content preserved
        assert signed.find("FileHeader/SchemaVersion").text == "3.2.2"

    def test_rejects_other_documents(self, self_signed_pem):
        key_pem, cert_pem = self_signed_pem
        with pytest.raises(ValueError, match="Not a Facturae document"):
            sign_facturae(etree.Element("Invoice"), key_pem, cert_pem)
