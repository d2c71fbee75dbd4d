import asyncio

import structlog

from betwatch.app import BetWatch
from betwatch.core.config import settings
from betwatch.core.logging import Logger
from betwatch.core.logging import configure as configure_logging

configure_logging()

logger: Logger = structlog.get_logger()


async def main():
    logger.info("Starting betwatch application...")
    betwatch = BetWatch(
        refresh_interval_ms=settings.REFRESH_INTERVAL_MS,
        enable_http=settings.ENABLE_HTTP,
        http_port=settings.HTTP_PORT,
    )

    await betwatch.run()

    await logger.ainfo("betwatch finished")


def run() -> None:
    asyncio.run(main())


if __name__ == "__main__":
    run()
