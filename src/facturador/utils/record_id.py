from __future__ import annotations

import uuid

# Fixed namespace: changing it would re-key every pending submission
_NAMESPACE = uuid.UUID("6f1c2b0e-3d4a-5b8c-9e7f-a1b2c3d4e5f6")


def chain_position_id(issuer_id: str, fiscal_year: int, sequence_number: int) -> str:
    """Canonical text for a chain position.

    Format: NIF(9) + "-" + year(4) + "-" + sequence(15), e.g.
    B12345678-2025-000000000000001
    """
    if not issuer_id:
        raise ValueError("issuer_id must not be empty")
    if sequence_number < 1:
        raise ValueError(f"sequence_number must be positive, got {sequence_number}")
    return f"{issuer_id.upper()}-{fiscal_year:04d}-{sequence_number:015d}"


def idempotency_key(issuer_id: str, fiscal_year: int, sequence_number: int) -> str:
    """Deterministic submission key: the same chain position always maps to the same key."""
    return str(uuid.uuid5(_NAMESPACE, chain_position_id(issuer_id, fiscal_year, sequence_number)))
