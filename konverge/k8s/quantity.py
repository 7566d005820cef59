"""Kubernetes resource quantities.

Parses suffixed literals such as ``100m``, ``128Mi``, ``1.5Gi``, ``2e3`` or a
plain ``1`` into exact decimals, and converts them to the canonical integer
units used for comparisons: millicores for CPU, bytes for memory and storage.
"""

import math
import re
from decimal import ROUND_CEILING, Decimal, InvalidOperation
from typing import Union

from konverge.core.errors import ValidationError

BINARY_SUFFIXES = {
    "Ki": 2 ** 10,
    "Mi": 2 ** 20,
    "Gi": 2 ** 30,
    "Ti": 2 ** 40,
    "Pi": 2 ** 50,
    "Ei": 2 ** 60,
}

DECIMAL_SUFFIXES = {
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

_QUANTITY_RE = re.compile(
    r"^(?P<number>[+-]?(?:\d+\.?\d*|\.\d+))"
    r"(?:(?P<binary>Ki|Mi|Gi|Ti|Pi|Ei)|(?P<exponent>[eE][+-]?\d+)|(?P<decimal>[numkMGTPE]?))$"
)

QuantityInput = Union[str, int, float]


def parse_quantity(value: QuantityInput, field: str = "quantity") -> Decimal:
    """Parse a quantity literal into an exact Decimal in base units.

    Args:
        value: Literal such as "250m", "64Mi", "1e3", or a bare number
        field: Field path reported in the ValidationError

    Returns:
        The quantity in base units (cores, bytes, ...)

    Raises:
        ValidationError: If the literal is not a valid quantity

    Example:
        >>> parse_quantity("128Mi")
        Decimal('134217728')
        >>> parse_quantity("100m")
        Decimal('0.100')
    """
    if isinstance(value, bool):
        raise ValidationError(field, f"invalid quantity {value!r}")
    if isinstance(value, (int, float)):
        if isinstance(value, float) and not math.isfinite(value):
            raise ValidationError(field, f"invalid quantity {value!r}")
        return Decimal(str(value))
    if not isinstance(value, str):
        raise ValidationError(field, f"invalid quantity {value!r}")

    match = _QUANTITY_RE.match(value.strip())
    if match is None:
        raise ValidationError(field, f"invalid quantity {value!r}")

    try:
        number = Decimal(match.group("number"))
    except InvalidOperation as e:
        raise ValidationError(field, f"invalid quantity {value!r}") from e

    if match.group("binary"):
        return number * BINARY_SUFFIXES[match.group("binary")]
    if match.group("exponent"):
        return number.scaleb(int(match.group("exponent")[1:]))
    return number * DECIMAL_SUFFIXES[match.group("decimal") or ""]


def parse_positive_quantity(value: QuantityInput, field: str = "quantity") -> Decimal:
    """Parse a quantity that must be strictly positive."""
    quantity = parse_quantity(value, field)
    if quantity <= 0:
        raise ValidationError(field, f"quantity must be positive, got {value!r}")
    return quantity


def _ceil(quantity: Decimal) -> int:
    return int(quantity.to_integral_value(rounding=ROUND_CEILING))


def cpu_millicores(value: QuantityInput, field: str = "cpu") -> int:
    """CPU quantity in millicores, rounded up ("1" -> 1000, "250m" -> 250)."""
    return _ceil(parse_quantity(value, field) * 1000)


def memory_bytes(value: QuantityInput, field: str = "memory") -> int:
    """Memory or storage quantity in bytes, rounded up ("128Mi" -> 134217728)."""
    return _ceil(parse_quantity(value, field))


def canonical(resource: str, value: QuantityInput, field: str) -> int:
    """Canonical integer for a named resource: millicores for cpu, bytes otherwise."""
    if resource == "cpu":
        return cpu_millicores(value, field)
    return memory_bytes(value, field)
