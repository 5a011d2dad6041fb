import asyncio
import sys

from dynamic_storage.config import load_sizing_config
from dynamic_storage.errors import ConfigurationInvalid
from dynamic_storage.logging_config import setup_logging
from dynamic_storage.operator import run_operator

if __name__ == '__main__':
    setup_logging()
    try:
        config = load_sizing_config()
    except ConfigurationInvalid as e:
        print(f"Invalid configuration: {e}", file=sys.stderr)
        sys.exit(1)
    asyncio.run(run_operator(config))
