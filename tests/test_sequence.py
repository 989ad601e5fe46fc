from __future__ import annotations

import inspect
import threading

import pytest

from facturador.services import chain
from facturador.utils import ledger, sequence


def _register(issuer_id: str, year: int, env: str = ledger.DEFAULT_ENV, timeout: float = 10) -> int:
    """Allocate a number and chain it in one ledger transaction."""
    with ledger.transaction(issuer_id, env, timeout) as state:
        seq = sequence.allocate(issuer_id, year, state=state)
        chain.append(
            state,
            {
                "issuer_id": issuer_id,
                "counterparty_id": "12345678Z",
                "counterparty_name": "María García López",
                "issue_date": f"{year}-03-14",
                "fiscal_year": year,
                "sequence_number": seq,
                "invoice_number": sequence.format_invoice_number("F", year, seq),
                "invoice_type": "F1",
                "corrects": None,
                "base": "100.00",
                "tax": "21.00",
                "total": "121.00",
                "lines": ["Consulta"],
            },
        )
    return seq


def test_sequence_increment(data_dir):
    assert sequence.current("B12345678", 2025) == 0
    assert _register("B12345678", 2025) == 1
    assert _register("B12345678", 2025) == 2
    assert sequence.current("B12345678", 2025) == 2
    assert chain.verify_chain("B12345678") == 2


def test_peek_does_not_persist(data_dir):
    _register("B12345678", 2025)
    assert sequence.peek_next("B12345678", 2025) == 2
    assert sequence.peek_next("B12345678", 2025) == 2
    assert _register("B12345678", 2025) == 2


def test_restarts_each_fiscal_year(data_dir):
    for _ in range(3):
        _register("B12345678", 2025)
    assert _register("B12345678", 2026) == 1
    assert _register("B12345678", 2025) == 4


def test_per_issuer_and_env_isolation(data_dir):
    _register("B12345678", 2025)
    _register("B12345678", 2025)
    _register("A58818501", 2025)
    _register("B12345678", 2025, env="produccion")

    assert sequence.current("B12345678", 2025) == 2
    assert sequence.current("A58818501", 2025) == 1
    assert sequence.current("B12345678", 2025, env="produccion") == 1


def test_allocation_requires_ledger_transaction():
    with pytest.raises(TypeError):
        sequence.allocate("B12345678", 2025)
    assert inspect.signature(sequence.allocate).parameters["state"].default is inspect.Parameter.empty


def test_aborted_transaction_burns_no_number(data_dir):
    _register("B12345678", 2025)
    with pytest.raises(RuntimeError), ledger.transaction("B12345678") as state:
        assert sequence.allocate("B12345678", 2025, state=state) == 2
        raise RuntimeError("persisting the invoice failed")
    assert sequence.current("B12345678", 2025) == 1
    assert _register("B12345678", 2025) == 2
    assert chain.verify_chain("B12345678") == 2


def test_state_of_other_issuer_rejected(data_dir):
    with ledger.transaction("B12345678") as state, pytest.raises(ValueError):
        sequence.allocate("A58818501", 2025, state=state)


def test_concurrent_allocations_are_gapless(data_dir):
    results: list[int] = []
    lock = threading.Lock()

    def worker():
        for _ in range(10):
            n = _register("B12345678", 2025, timeout=30)
            with lock:
                results.append(n)

    threads = [threading.Thread(target=worker) for _ in range(8)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(results) == list(range(1, 81))
    assert sequence.current("B12345678", 2025) == 80
    assert chain.verify_chain("B12345678") == 80


def test_format_invoice_number():
    assert sequence.format_invoice_number("F", 2025, 1) == "F2025-000001"
    assert sequence.format_invoice_number("R", 2026, 123456) == "R2026-123456"
