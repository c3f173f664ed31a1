"""Run the bridge: python -m filament_bridge"""

import asyncio
import logging

from . import config
from .server import main


def run():
    logging.basicConfig(level=config.LOG_LEVEL, format=config.LOG_FORMAT)
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        logging.getLogger("filament_bridge").info("Shutting down")


if __name__ == "__main__":
    run()
