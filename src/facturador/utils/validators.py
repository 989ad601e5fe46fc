from __future__ import annotations

import re
from datetime import date
from decimal import Decimal, InvalidOperation

_NIF_LETTERS = "TRWAGMYFPDXBNJZSQVHLCKE"
_CIF_CONTROL_LETTERS = "JABCDEFGHI"
_NIE_PREFIX = {"X": "0", "Y": "1", "Z": "2"}


def _cif_is_valid(value: str) -> bool:
    digits = value[1:8]
    total = 0
    for i, ch in enumerate(digits):
        n = int(ch)
        if i % 2 == 0:
            n *= 2
            n = n // 10 + n % 10
        total += n
    control = (10 - total % 10) % 10
    last = value[8]
    # Letter-only for P, Q, R, S, W and N; digit-only for A, B, E, H
    if value[0] in "PQRSWN":
        return last == _CIF_CONTROL_LETTERS[control]
    if value[0] in "ABEH":
        return last == str(control)
    return last in (str(control), _CIF_CONTROL_LETTERS[control])


def validate_nif(value: str) -> str:
    """Validate a Spanish NIF, NIE or CIF including its control character.

    Returns the value upper-cased. Raises ValueError otherwise.
    """
    v = value.strip().upper()
    if re.fullmatch(r"\d{8}[A-Z]", v):
        if v[8] != _NIF_LETTERS[int(v[:8]) % 23]:
            raise ValueError(f"NIF '{value}': control letter does not match")
        return v
    if re.fullmatch(r"[XYZ]\d{7}[A-Z]", v):
        number = int(_NIE_PREFIX[v[0]] + v[1:8])
        if v[8] != _NIF_LETTERS[number % 23]:
            raise ValueError(f"NIE '{value}': control letter does not match")
        return v
    if re.fullmatch(r"[ABCDEFGHJNPQRSUVW]\d{7}[0-9A-J]", v):
        if not _cif_is_valid(v):
            raise ValueError(f"CIF '{value}': control character does not match")
        return v
    raise ValueError(f"'{value}' is not a NIF, NIE or CIF")


def validate_monetary(value: str) -> str:
    """Validate and normalize a non-negative monetary value to 2 decimals."""
    try:
        d = Decimal(value)
        if not d.is_finite():
            raise InvalidOperation
    except InvalidOperation:
        raise ValueError(f"Invalid amount: '{value}'") from None
    if d < 0:
        raise ValueError(f"Amount must not be negative: '{value}'")
    return f"{d:.2f}"


def validate_date(value: str) -> str:
    """Validate an ISO date string (YYYY-MM-DD)."""
    try:
        date.fromisoformat(value)
    except ValueError:
        raise ValueError(f"Invalid date: '{value}'. Use YYYY-MM-DD.") from None
    return value


def validate_postal_code(value: str) -> str:
    """Spanish postal code: 5 digits, province prefix 01-52."""
    if not re.fullmatch(r"\d{5}", value) or not 1 <= int(value[:2]) <= 52:
        raise ValueError(f"Invalid postal code: '{value}'")
    return value
