"""Data models for dynamic storage sizing."""

from .models import *  # noqa: F401,F403
from .models import __all__ as _model_names
from .quantity import GiB, MiB, ceil_to_gib, format_quantity, parse_quantity

__all__ = list(_model_names) + ["GiB", "MiB", "ceil_to_gib", "parse_quantity"]
