from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class ChainEntry:
    """One hash-linked registration record.

    *snapshot* holds the canonical invoice fields by value, so the chain can
    be replayed without the invoice records.
    """

    issuer_id: str
    fiscal_year: int
    sequence_number: int
    invoice_number: str
    snapshot: dict
    content_hash: str
    previous_hash: str
    entry_hash: str
    timestamp: str  # ISO datetime, Europe/Madrid

    @property
    def position(self) -> tuple[int, int]:
        return (self.fiscal_year, self.sequence_number)

    def to_dict(self) -> dict:
        return {
            "issuer_id": self.issuer_id,
            "fiscal_year": self.fiscal_year,
            "sequence_number": self.sequence_number,
            "invoice_number": self.invoice_number,
            "snapshot": self.snapshot,
            "content_hash": self.content_hash,
            "previous_hash": self.previous_hash,
            "entry_hash": self.entry_hash,
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, d: dict) -> ChainEntry:
        return cls(
            issuer_id=d["issuer_id"],
            fiscal_year=int(d["fiscal_year"]),
            sequence_number=int(d["sequence_number"]),
            invoice_number=d["invoice_number"],
            snapshot=d["snapshot"],
            content_hash=d["content_hash"],
            previous_hash=d["previous_hash"],
            entry_hash=d["entry_hash"],
            timestamp=d["timestamp"],
        )
