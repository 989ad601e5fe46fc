from __future__ import annotations

from dataclasses import dataclass, field, replace
from enum import StrEnum


class SubmissionStatus(StrEnum):
    PENDING = "PENDING"
    SENT = "SENT"
    ACKNOWLEDGED = "ACKNOWLEDGED"
    REJECTED = "REJECTED"
    FAILED = "FAILED"

    @classmethod
    def terminal(cls) -> frozenset[SubmissionStatus]:
        return frozenset({cls.ACKNOWLEDGED, cls.REJECTED})


class Operation(StrEnum):
    REGISTER = "Alta"
    CANCEL = "Anulacion"


@dataclass(frozen=True)
class SubmissionRecord:
    """Delivery state of one chain entry towards the tax authority.

    Never deleted; *history* keeps every transition for audit.
    """

    idempotency_key: str
    issuer_id: str
    fiscal_year: int
    sequence_number: int
    invoice_id: str
    status: SubmissionStatus = SubmissionStatus.PENDING
    operation: Operation = Operation.REGISTER
    attempts: int = 0
    external_reference: str | None = None
    last_error: str | None = None
    error_code: str | None = None
    next_retry_at: str | None = None
    sent_at: str | None = None
    acknowledged_at: str | None = None
    history: tuple[dict, ...] = field(default_factory=tuple)

    @property
    def is_exhausted(self) -> bool:
        """FAILED with nothing scheduled: surfaced to operators."""
        return self.status == SubmissionStatus.FAILED and self.next_retry_at is None

    def transition(self, status: SubmissionStatus, at: str, **changes) -> SubmissionRecord:
        event = {"at": at, "status": status.value}
        if changes.get("last_error"):
            event["error"] = changes["last_error"]
        return replace(self, status=status, history=(*self.history, event), **changes)

    def to_dict(self) -> dict:
        return {
            "idempotency_key": self.idempotency_key,
            "issuer_id": self.issuer_id,
            "fiscal_year": self.fiscal_year,
            "sequence_number": self.sequence_number,
            "invoice_id": self.invoice_id,
            "status": self.status.value,
            "operation": self.operation.value,
            "attempts": self.attempts,
            "external_reference": self.external_reference,
            "last_error": self.last_error,
            "error_code": self.error_code,
            "next_retry_at": self.next_retry_at,
            "sent_at": self.sent_at,
            "acknowledged_at": self.acknowledged_at,
            "history": list(self.history),
        }

    @classmethod
    def from_dict(cls, d: dict) -> SubmissionRecord:
        return cls(
            idempotency_key=d["idempotency_key"],
            issuer_id=d["issuer_id"],
            fiscal_year=int(d["fiscal_year"]),
            sequence_number=int(d["sequence_number"]),
            invoice_id=d["invoice_id"],
            status=SubmissionStatus(d["status"]),
            operation=Operation(d.get("operation", Operation.REGISTER.value)),
            attempts=int(d.get("attempts", 0)),
            external_reference=d.get("external_reference"),
            last_error=d.get("last_error"),
            error_code=d.get("error_code"),
            next_retry_at=d.get("next_retry_at"),
            sent_at=d.get("sent_at"),
            acknowledged_at=d.get("acknowledged_at"),
            history=tuple(d.get("history", ())),
        )
