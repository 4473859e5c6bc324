"""Entry point: python -m automator"""
from __future__ import annotations

import asyncio
import logging
import sys

from automator.config import ConfigError, load
from automator.daemon import Daemon, configure_logging


def main() -> None:
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    log = logging.getLogger("automator")

    try:
        cfg = load()
    except ConfigError as exc:
        log.error("Config error: %s", exc)
        sys.exit(1)

    logging.getLogger().setLevel(cfg.log_level.upper())
    configure_logging(cfg.log_level)

    try:
        asyncio.run(Daemon(cfg).run())
    except KeyboardInterrupt:
        pass
    finally:
        log.info("automator stopped.")


if __name__ == "__main__":
    main()
