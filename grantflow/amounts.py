from __future__ import annotations

import re

from grantflow.errors import IllegalTransition

_UNITS: dict[str, int] = {
    "B": 1,
    "KIB": 1024,
    "MIB": 1024**2,
    "GIB": 1024**3,
    "TIB": 1024**4,
    "PIB": 1024**5,
    "EIB": 1024**6,
    "KB": 1000,
    "MB": 1000**2,
    "GB": 1000**3,
    "TB": 1000**4,
    "PB": 1000**5,
    "EB": 1000**6,
}

_SIZE_RE = re.compile(r"^\s*(\d+(?:\.\d+)?)\s*([A-Za-z]*)\s*$")


def parse_size_to_bytes(size: str) -> int | None:
    """Parse a datacap amount such as ``10TiB`` or ``5 PiBs``.

    A bare number is read as bytes. Returns ``None`` for unknown units or
    malformed input.
    """
    match = _SIZE_RE.match(str(size or ""))
    if match is None:
        return None
    number_raw, unit_raw = match.groups()
    unit = unit_raw.upper()
    if unit.endswith("S") and unit != "S":
        unit = unit[:-1]
    if not unit:
        unit = "B"
    multiplier = _UNITS.get(unit)
    if multiplier is None:
        return None
    return int(float(number_raw) * multiplier)


def require_bytes(size: str, *, field: str = "amount") -> int:
    value = parse_size_to_bytes(size)
    if value is None:
        raise IllegalTransition(
            code="INVALID_AMOUNT",
            message=f"invalid datacap {field}: {size!r}",
            http_status=400,
        )
    return value


def allowance_covers(allowance: str, requested: str) -> bool | None:
    allowance_bytes = parse_size_to_bytes(allowance)
    requested_bytes = parse_size_to_bytes(requested)
    if allowance_bytes is None or requested_bytes is None:
        return None
    return allowance_bytes >= requested_bytes
