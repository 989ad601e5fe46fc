"""Client for the AEAT Verifactu registration endpoint.

The record travels as JSON over mutual TLS using the issuer's PKCS#12
certificate. Transient problems surface as AuthorityUnavailableError and
definitive refusals as AuthorityRejectError; callers decide about retries.
"""

from __future__ import annotations

import json
import logging
import uuid
from datetime import datetime
from typing import Any

import requests.exceptions
from requests_pkcs12 import get, post

from facturador.config import AEAT_TIMEOUT, MADRID, get_endpoint
from facturador.models.chain import ChainEntry
from facturador.models.invoice import Invoice
from facturador.models.submission import SubmissionRecord
from facturador.services.exceptions import AuthorityRejectError, AuthorityUnavailableError
from facturador.services.http_retry import AEAT_PROBE, RETRYABLE_STATUS_CODES, retry_call

logger = logging.getLogger(__name__)

ACCEPTED_STATES = frozenset({"Correcto", "AceptadoConErrores"})
DUPLICATE_CODE = "3000"
HUELLA_SHA256 = "01"


def build_record(entry: ChainEntry, invoice: Invoice, record: SubmissionRecord) -> dict[str, Any]:
    """Serialize a chain entry (plus invoice totals) into the registration payload."""
    issuer = invoice.issuer
    payload: dict[str, Any] = {
        "IDVersion": "1.0",
        "Operacion": record.operation.value,
        "IdempotencyKey": record.idempotency_key,
        "IDEmisorFactura": issuer.nif,
        "NombreRazonEmisor": issuer.razon_social,
        "NumSerieFactura": entry.invoice_number,
        "EjercicioFiscal": entry.fiscal_year,
        "NumeroSecuencia": entry.sequence_number,
        "FechaExpedicionFactura": invoice.issue_date.strftime("%d-%m-%Y"),
        "TipoFactura": invoice.invoice_type.value,
        "Destinatario": {
            "NIF": invoice.counterparty.nif,
            "NombreRazon": invoice.counterparty.full_name,
        },
        "Desglose": [
            {
                "ClaveRegimen": issuer.clave_regimen,
                "CalificacionOperacion": issuer.calificacion,
                "TipoImpositivo": f"{g.rate:.2f}",
                "BaseImponible": f"{g.base:.2f}",
                "CuotaRepercutida": f"{g.tax:.2f}",
            }
            for g in invoice.breakdown.groups
        ],
        "CuotaTotal": f"{invoice.breakdown.tax:.2f}",
        "ImporteTotal": f"{invoice.breakdown.total:.2f}",
        "TipoHuella": HUELLA_SHA256,
        "Huella": entry.content_hash,
        "HuellaAnterior": entry.previous_hash,
        "HuellaRegistro": entry.entry_hash,
        "FechaHoraHusoGenRegistro": entry.timestamp,
    }
    if invoice.corrects:
        payload["FacturaRectificada"] = {
            "NumSerieFactura": invoice.corrects,
            "Motivo": invoice.correction_reason or "",
        }
    return payload


def _extract_reason(data: dict) -> str:
    """Best-effort extraction of a human-readable rejection reason."""
    for key in ("DescripcionErrorRegistro", "mensaje", "message"):
        val = data.get(key)
        if val:
            return str(val)
    return json.dumps(data, ensure_ascii=False)[:200]


def _interpret(data: dict) -> dict[str, Any]:
    """Map an authority response body to an acknowledgement or raise."""
    estado = data.get("EstadoRegistro")
    code = data.get("CodigoErrorRegistro")
    code = str(code) if code is not None else None
    duplicate = code == DUPLICATE_CODE

    if estado in ACCEPTED_STATES or duplicate:
        reference = data.get("CSV") or data.get("IdPeticionRegistroDuplicado")
        if not reference:
            raise AuthorityUnavailableError(f"Acknowledgement without CSV: {_extract_reason(data)}")
        if estado == "AceptadoConErrores":
            logger.warning("Record accepted with errors: %s", _extract_reason(data))
        return {
            "reference": str(reference),
            "timestamp": data.get("FechaHoraRegistro"),
            "duplicate": duplicate,
            "response": data,
        }

    if estado == "Incorrecto":
        raise AuthorityRejectError(f"{code}: {_extract_reason(data)}", code=code, response=data)

    raise AuthorityUnavailableError(f"Unexpected authority response: {_extract_reason(data)}")


def submit_record(
    payload: dict[str, Any],
    idempotency_key: str,
    pfx_path: str,
    pfx_password: str,
    env: str = "pruebas",
) -> dict[str, Any]:
    """Send one registration record; single attempt, no retries."""
    url = get_endpoint(env)
    try:
        resp = post(
            url,
            json=payload,
            headers={"Idempotency-Key": idempotency_key},
            pkcs12_filename=pfx_path,
            pkcs12_password=pfx_password,
            timeout=AEAT_TIMEOUT,
        )
    except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as exc:
        raise AuthorityUnavailableError(f"AEAT unreachable: {exc}") from exc

    body = resp.text[:500] if resp.text else ""
    if resp.status_code in RETRYABLE_STATUS_CODES:
        raise AuthorityUnavailableError(f"AEAT API error ({resp.status_code}): {body}")

    try:
        data = resp.json()
    except ValueError as exc:
        if resp.ok:
            raise AuthorityUnavailableError(f"AEAT returned non-JSON body: {body}") from exc
        data = {}

    if resp.status_code == 409:
        data.setdefault("CodigoErrorRegistro", DUPLICATE_CODE)
        return _interpret(data)
    if not resp.ok:
        code = data.get("CodigoErrorRegistro") or str(resp.status_code)
        raise AuthorityRejectError(
            f"AEAT API error ({resp.status_code}): {body}", code=str(code), response=data
        )
    return _interpret(data)


def simulate_ack(payload: dict[str, Any]) -> dict[str, Any]:
    """Synthetic acknowledgement for test mode; no network I/O."""
    now = datetime.now(MADRID)
    reference = f"VF{now:%Y%m%d%H%M%S}{uuid.uuid4().hex[:8].upper()}"
    logger.info("Test mode: simulated acknowledgement %s for %s", reference, payload["NumSerieFactura"])
    return {
        "reference": reference,
        "timestamp": now.isoformat(timespec="seconds"),
        "duplicate": False,
        "response": {"EstadoRegistro": "Correcto", "CSV": reference, "simulated": True},
    }


def check_connectivity(pfx_path: str, pfx_password: str, env: str = "pruebas") -> None:
    """Test AEAT reachability and the mTLS handshake via GET.

    Any HTTP status proves the endpoint answered; only connection problems
    (after a short retry) raise AuthorityUnavailableError.
    """
    url = get_endpoint(env)

    def _do_get():
        try:
            return get(
                url,
                pkcs12_filename=pfx_path,
                pkcs12_password=pfx_password,
                timeout=AEAT_TIMEOUT,
            )
        except (requests.exceptions.ConnectionError, requests.exceptions.Timeout) as exc:
            raise AuthorityUnavailableError(f"AEAT unreachable: {exc}") from exc

    retry_call(_do_get, AEAT_PROBE)
