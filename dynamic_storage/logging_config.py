"""Logging setup shared by the operator and instance entry points."""

import logging

from dynamic_storage.config.base_config import LOG_LEVEL


def setup_logging(level: str = LOG_LEVEL):
    """Configure logging with consistent format."""
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s'
    )
