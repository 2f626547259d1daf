"""SQLAlchemy column type for 256-bit on-chain quantities.

Amounts are carried through the application as decimal strings. PostgreSQL
stores them as ``NUMERIC(78, 0)``; other dialects (SQLite in tests) store the
string itself, since their numeric affinity degrades to floating point past
64 bits.
"""

from __future__ import annotations

from decimal import Decimal
from typing import Any

from sqlalchemy import Numeric, String
from sqlalchemy.types import TypeDecorator

UINT256_DIGITS = 78
UINT256_MAX = 2**256 - 1


def normalize_amount(value: int | str | Decimal) -> str:
    """Validate a base-unit quantity and render it as a decimal string."""
    if isinstance(value, bool):
        raise TypeError("amount must be an integer quantity, not bool")
    if isinstance(value, int):
        number = value
    elif isinstance(value, Decimal):
        if value != value.to_integral_value():
            raise ValueError(f"amount must be integral: {value}")
        number = int(value)
    elif isinstance(value, str):
        if not value.isdigit():
            raise ValueError(f"amount must be a non-negative decimal integer string: {value!r}")
        number = int(value)
    else:
        raise TypeError(f"Unsupported amount type: {type(value).__name__}")
    if number < 0 or number > UINT256_MAX:
        raise ValueError("amount out of uint256 range")
    return str(number)


class UInt256Amount(TypeDecorator[str]):
    impl = String(UINT256_DIGITS)
    cache_ok = True

    def load_dialect_impl(self, dialect: Any) -> Any:
        if dialect.name == "postgresql":
            return dialect.type_descriptor(Numeric(UINT256_DIGITS, 0, asdecimal=True))
        return dialect.type_descriptor(String(UINT256_DIGITS))

    def process_bind_param(self, value: Any, dialect: Any) -> Any:
        if value is None:
            return None
        text = normalize_amount(value)
        if dialect.name == "postgresql":
            return Decimal(text)
        return text

    def process_result_value(self, value: Any, dialect: Any) -> str | None:  # noqa: ARG002
        if value is None:
            return None
        if isinstance(value, Decimal):
            return str(int(value))
        return str(value)
