"""Kubernetes resource quantity helpers."""

import math
from typing import Optional, Union

from kubernetes.utils import parse_quantity as _parse_k8s_quantity

from dynamic_storage.errors import ConfigurationInvalid

KiB = 1024
MiB = 1024 * KiB
GiB = 1024 * MiB
TiB = 1024 * GiB

_BINARY_SUFFIXES = (
    (TiB, "Ti"),
    (GiB, "Gi"),
    (MiB, "Mi"),
    (KiB, "Ki"),
)


def parse_quantity(value: Union[str, int, float], field: str = "quantity") -> int:
    """Parse a Kubernetes quantity ("10Gi", "500M", 1024) into bytes.

    Fractional byte counts are rounded up, matching how the API server
    canonicalises storage requests.
    """
    if isinstance(value, bool):
        raise ConfigurationInvalid(field, value, "not a quantity")
    if value is None or value == "":
        raise ConfigurationInvalid(field, value, "empty quantity")
    try:
        parsed = _parse_k8s_quantity(value)
    except (ValueError, TypeError) as e:
        raise ConfigurationInvalid(field, value, str(e))
    if parsed < 0:
        raise ConfigurationInvalid(field, value, "must not be negative")
    return int(math.ceil(parsed))


def parse_optional_quantity(value: Optional[Union[str, int]], field: str = "quantity") -> Optional[int]:
    if value is None or value == "":
        return None
    return parse_quantity(value, field)


def format_quantity(size_bytes: int) -> str:
    """Render bytes with the largest exact binary suffix ("10Gi", "1536Mi")."""
    size_bytes = int(size_bytes)
    if size_bytes == 0:
        return "0"
    for factor, suffix in _BINARY_SUFFIXES:
        if size_bytes % factor == 0:
            return f"{size_bytes // factor}{suffix}"
    return str(size_bytes)


def ceil_to_gib(size_bytes: int) -> int:
    """Round a byte count up to whole GiB, never returning less than 1Gi."""
    gib = -(-int(size_bytes) // GiB)
    return max(gib, 1) * GiB
