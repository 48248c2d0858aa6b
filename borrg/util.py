"""Small helpers: home-directory expansion and byte sizes."""
from __future__ import annotations

import os

_SUFFIX_IEC = ["", "Ki", "Mi", "Gi", "Ti", "Pi", "Ei", "Zi", "Yi"]

_QUOTA_FACTORS = {
    "": 1,
    "K": 1024,
    "M": 1024 ** 2,
    "G": 1024 ** 3,
    "T": 1024 ** 4,
    "P": 1024 ** 5,
}


def resolve_path(path: str) -> str:
    """Expand a leading ``~`` or ``~/``. ``~user`` and ``~test`` are left alone."""
    if path == "~" or path.startswith("~/"):
        return os.path.expanduser(path)
    return path


def _scaled(num: int, base: int, suffixes: list[str], precision: int | None) -> str:
    if num < base:
        return str(num)
    exp = 0
    while exp < len(suffixes) - 1 and num >= base ** (exp + 1):
        exp += 1
    return f"{num / base ** exp:.{precision or 0}f}{suffixes[exp]}"


def format_iec(num: int, precision: int | None = None) -> str:
    """Format a byte count with binary suffixes: 1024 -> '1Ki'."""
    return _scaled(num, 1024, _SUFFIX_IEC, precision)


def format_bytes(num: int) -> str:
    """Human readable size used in progress lines, e.g. '3.40GiB'."""
    if num < 1024:
        return f"{num}B"
    return f"{format_iec(num, 2)}B"


def parse_byte_size(size: str) -> int:
    """Parse a quota like '5G' or '100' into bytes (binary units)."""
    text = size.strip()
    digits = "".join(c for c in text if c.isdigit())
    suffix = "".join(c for c in text if not c.isdigit())
    if not digits:
        raise ValueError(f"Invalid byte size: {size!r}")
    if suffix not in _QUOTA_FACTORS:
        raise ValueError(f"Invalid byte suffix: {suffix!r}")
    return int(digits) * _QUOTA_FACTORS[suffix]
