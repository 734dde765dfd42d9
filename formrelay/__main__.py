"""Entry point for the relay.

Usage::

    python -m formrelay
"""

from __future__ import annotations

import asyncio
import sys

import structlog

from .config import RelayConfig
from .errors import AuthorizationError
from .service import RelayService

logger = structlog.get_logger()


def main() -> None:
    config = RelayConfig()
    service = RelayService(config)
    try:
        asyncio.run(service.run())
    except AuthorizationError as exc:
        logger.critical("authorization_failed", error=str(exc))
        sys.exit(1)


if __name__ == "__main__":
    main()
