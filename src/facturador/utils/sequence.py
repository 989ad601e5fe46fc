from __future__ import annotations

import logging
from typing import Any

from facturador.utils import ledger

logger = logging.getLogger(__name__)


def _bump(state: dict[str, Any], fiscal_year: int) -> int:
    counters = state.setdefault("counters", {})
    value = int(counters.get(str(fiscal_year), 0)) + 1
    counters[str(fiscal_year)] = value
    return value


def allocate(issuer_id: str, fiscal_year: int, *, state: dict[str, Any]) -> int:
    """Return the next invoice number for (issuer, fiscal year).

    *state* is the ledger transaction the caller already holds; the number
    only becomes permanent when that transaction commits, together with the
    chain entry that uses it.
    """
    if state.get("issuer_id") != issuer_id:
        raise ValueError(f"Ledger state belongs to {state.get('issuer_id')}, not {issuer_id}")
    value = _bump(state, fiscal_year)
    logger.debug("Allocated %s/%d #%d", issuer_id, fiscal_year, value)
    return value


def current(issuer_id: str, fiscal_year: int, env: str = ledger.DEFAULT_ENV) -> int:
    """Return the last committed number, 0 if the year has none yet."""
    return int(ledger.load(issuer_id, env)["counters"].get(str(fiscal_year), 0))


def peek_next(issuer_id: str, fiscal_year: int, env: str = ledger.DEFAULT_ENV) -> int:
    """Return the number the next allocation would get, without persisting it."""
    return current(issuer_id, fiscal_year, env) + 1


def format_invoice_number(serie: str, fiscal_year: int, sequence_number: int) -> str:
    """Human invoice number, e.g. F2025-000001."""
    return f"{serie}{fiscal_year}-{sequence_number:06d}"
