from __future__ import annotations

from lxml import etree
from signxml.algorithms import (
    DigestAlgorithm,
    SignatureConstructionMethod,
    SignatureMethod,
)
from signxml.signer import XMLSigner

from facturador.config import FACTURAE_NS


def sign_facturae(document: etree._Element, key_pem: bytes, cert_pem: bytes) -> etree._Element:
    """Sign the whole Facturae document with an enveloped RSA-SHA256 signature."""
    if document.tag != f"{{{FACTURAE_NS}}}Facturae":
        raise ValueError(f"Not a Facturae document: {document.tag}")

    signer = XMLSigner(
        method=SignatureConstructionMethod.enveloped,
        signature_algorithm=SignatureMethod.RSA_SHA256,
        digest_algorithm=DigestAlgorithm.SHA256,
        c14n_algorithm="http://www.w3.org/TR/2001/REC-xml-c14n-20010315",
    )

    return signer.sign(document, key=key_pem, cert=cert_pem.decode())
