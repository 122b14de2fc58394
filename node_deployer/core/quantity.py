# node_deployer/core/quantity.py
"""Kubernetes resource quantity parsing ("500m", "512Mi", "1.5", "2e3")."""

import re
from decimal import Decimal, InvalidOperation
from typing import Optional


_QUANTITY_RE = re.compile(
    r"^(?P<number>[+]?(?:\d+(?:\.\d*)?|\.\d+))"
    r"(?P<exponent>[eE][+-]?\d+)?"
    r"(?P<suffix>Ki|Mi|Gi|Ti|Pi|Ei|n|u|m|k|M|G|T|P|E)?$"
)

_BINARY = {
    "Ki": 2 ** 10,
    "Mi": 2 ** 20,
    "Gi": 2 ** 30,
    "Ti": 2 ** 40,
    "Pi": 2 ** 50,
    "Ei": 2 ** 60,
}

_DECIMAL = {
    "n": Decimal("1e-9"),
    "u": Decimal("1e-6"),
    "m": Decimal("1e-3"),
    "": Decimal(1),
    "k": Decimal("1e3"),
    "M": Decimal("1e6"),
    "G": Decimal("1e9"),
    "T": Decimal("1e12"),
    "P": Decimal("1e15"),
    "E": Decimal("1e18"),
}


def parse_quantity(value: str) -> Decimal:
    """
    Parse a resource quantity into its base unit (cores or bytes).

    Raises:
        ValueError: if the string does not follow the quantity grammar
    """
    if not isinstance(value, str):
        raise ValueError(f"quantity must be a string, got {type(value).__name__}")

    match = _QUANTITY_RE.match(value.strip())
    if not match:
        raise ValueError(f"invalid resource quantity '{value}'")

    try:
        number = Decimal(match.group("number"))
        if match.group("exponent"):
            number = number * (Decimal(10) ** int(match.group("exponent")[1:]))
    except InvalidOperation as e:
        raise ValueError(f"invalid resource quantity '{value}'") from e

    suffix = match.group("suffix") or ""
    if suffix in _BINARY:
        return number * _BINARY[suffix]
    return number * _DECIMAL[suffix]


def is_valid_quantity(value) -> bool:
    try:
        parse_quantity(value)
    except ValueError:
        return False
    return True


def to_millicores(value: Optional[str]) -> Optional[float]:
    """CPU quantity to millicores. None passes through."""
    if value is None:
        return None
    return float(parse_quantity(value) * 1000)


def to_bytes(value: Optional[str]) -> Optional[int]:
    """Memory quantity to bytes. None passes through."""
    if value is None:
        return None
    return int(parse_quantity(value))
