"""Per-issuer ledger file: counters, chain, invoices and submission records.

Everything an issuer owns lives in one JSON document so that allocating a
number, appending the chain entry and persisting the invoice commit (or roll
back) together: the file is only replaced when the transaction body returns.
"""

from __future__ import annotations

import json
import logging
import os
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Any

from filelock import FileLock, Timeout

from facturador import config as _config
from facturador.services.exceptions import (
    AllocationConflictError,
    ChainIntegrityError,
    LedgerCorruptError,
)

logger = logging.getLogger(__name__)

DEFAULT_ENV = "pruebas"
DEFAULT_LOCK_TIMEOUT = 10.0


def _ledger_path(issuer_id: str, env: str) -> Path:
    return _config.get_ledger_dir(env) / f"{issuer_id}.json"


def _empty(issuer_id: str) -> dict[str, Any]:
    return {
        "issuer_id": issuer_id,
        "revision": 0,
        "counters": {},
        "chain": [],
        "invoices": {},
        "submissions": {},
        "halted": None,
    }


def _load(path: Path, issuer_id: str) -> dict[str, Any]:
    if not path.exists():
        return _empty(issuer_id)
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (json.JSONDecodeError, ValueError) as exc:
        # Fiscal records are never reset: an operator has to restore the file
        raise LedgerCorruptError(issuer_id, f"unreadable ledger {path.name}: {exc}") from exc
    if data.get("issuer_id") != issuer_id:
        raise LedgerCorruptError(issuer_id, f"ledger {path.name} belongs to {data.get('issuer_id')}")
    return data


def _save(path: Path, state: dict[str, Any]) -> None:
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp = path.with_suffix(".tmp")
    tmp.write_text(json.dumps(state, indent=2, ensure_ascii=False) + "\n", encoding="utf-8")
    os.replace(tmp, path)


def _lock(path: Path, timeout: float) -> FileLock:
    path.parent.mkdir(parents=True, exist_ok=True)
    return FileLock(path.with_suffix(".lock"), timeout=timeout)


@contextmanager
def transaction(
    issuer_id: str,
    env: str = DEFAULT_ENV,
    timeout: float = DEFAULT_LOCK_TIMEOUT,
) -> Iterator[dict[str, Any]]:
    """Hold the issuer lock and yield its mutable ledger state.

    The state is written back only if the body completes; an exception leaves
    the file untouched. Raises AllocationConflictError if the lock is not
    obtained within *timeout* or the on-disk revision moved meanwhile.
    """
    path = _ledger_path(issuer_id, env)
    lock = _lock(path, timeout)
    try:
        lock.acquire()
    except Timeout as exc:
        raise AllocationConflictError(f"Ledger for {issuer_id} busy after {timeout:.1f}s") from exc
    try:
        state = _load(path, issuer_id)
        revision = state["revision"]
        yield state
        on_disk = _load(path, issuer_id)["revision"] if path.exists() else 0
        if on_disk != revision:
            raise AllocationConflictError(
                f"Ledger for {issuer_id} moved from revision {revision} to {on_disk}"
            )
        state["revision"] = revision + 1
        _save(path, state)
    finally:
        lock.release()


def load(issuer_id: str, env: str = DEFAULT_ENV, timeout: float = DEFAULT_LOCK_TIMEOUT) -> dict[str, Any]:
    """Return a consistent read-only copy of the issuer ledger."""
    path = _ledger_path(issuer_id, env)
    try:
        with _lock(path, timeout):
            return _load(path, issuer_id)
    except Timeout as exc:
        raise AllocationConflictError(f"Ledger for {issuer_id} busy after {timeout:.1f}s") from exc


def list_ledgers(env: str = DEFAULT_ENV) -> list[str]:
    """Return the issuer ids that have a ledger in *env*."""
    ledger_dir = _config.get_ledger_dir(env)
    if not ledger_dir.exists():
        return []
    return sorted(p.stem for p in ledger_dir.glob("*.json"))


# --- Halt marker ---


def halt(issuer_id: str, error: ChainIntegrityError, env: str = DEFAULT_ENV) -> None:
    """Persist a halt marker so no further invoices extend a broken chain."""
    path = _ledger_path(issuer_id, env)
    with _lock(path, DEFAULT_LOCK_TIMEOUT):
        try:
            state = _load(path, issuer_id)
        except LedgerCorruptError:
            # The file itself is the problem; nothing can be written into it
            logger.critical("Issuer %s halted: ledger unreadable", issuer_id)
            return
        state["halted"] = {
            "reason": error.reason,
            "fiscal_year": error.fiscal_year,
            "sequence_number": error.sequence_number,
            "at": datetime.now(_config.MADRID).isoformat(timespec="seconds"),
        }
        state["revision"] = state["revision"] + 1
        _save(path, state)
    logger.critical("Issuer %s halted: %s", issuer_id, error)


def resume(issuer_id: str, env: str = DEFAULT_ENV) -> bool:
    """Clear the halt marker after manual resolution. Returns True if one was set."""
    with transaction(issuer_id, env) as state:
        was_halted = state.get("halted") is not None
        state["halted"] = None
    if was_halted:
        logger.warning("Issuer %s resumed by operator", issuer_id)
    return was_halted


# --- Health check (read-only, no locks) ---


@dataclass
class LedgerHealth:
    env: str
    readable: list[str] = field(default_factory=list)
    corrupt: list[str] = field(default_factory=list)
    halted: dict[str, dict] = field(default_factory=dict)
    entries: dict[str, int] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.corrupt and not self.halted


def check_ledger_health(env: str = DEFAULT_ENV) -> LedgerHealth:
    """Probe every ledger file in *env* for parse errors and halt markers."""
    health = LedgerHealth(env=env)
    for issuer_id in list_ledgers(env):
        path = _ledger_path(issuer_id, env)
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (json.JSONDecodeError, ValueError):
            health.corrupt.append(issuer_id)
            continue
        health.readable.append(issuer_id)
        health.entries[issuer_id] = len(data.get("chain", []))
        if data.get("halted"):
            health.halted[issuer_id] = data["halted"]
    return health
