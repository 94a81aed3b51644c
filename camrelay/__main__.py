#!/usr/bin/env python3
"""
camrelay main entry point.

Allows camrelay to be run as a module: python3 -m camrelay
"""

import logging
import os
import sys

# Set default log level from environment, or INFO if not set
log_level = os.getenv("CAMRELAY_LOG_LEVEL", "INFO").upper()
logging.basicConfig(
    level=getattr(logging, log_level, logging.INFO),
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s"
)

from camrelay.config import load_config  # noqa: E402
from camrelay.service import RelayService  # noqa: E402


def main() -> int:
    try:
        config = load_config()
    except ValueError:
        return 1

    try:
        relay = RelayService(config)
        relay.start()
    except Exception as e:
        logging.error(f"camrelay failed to start: {e}", exc_info=True)
        return 1

    relay.run_forever()
    return 0


if __name__ == "__main__":
    sys.exit(main())
