#!/usr/bin/env python
"""
Check a market reference against the live Gamma and CLOB APIs.

Run with: uv run python scripts/check_market.py <polymarket event url or slug>
"""

import asyncio
import sys
import time

import aiohttp
import structlog

from betwatch.analysis.changes import ChangeCalculator
from betwatch.core.logging import configure as configure_logging
from betwatch.markets.api import ClobClient, GammaClient
from betwatch.markets.parser import extract_slug, item_from_event

configure_logging()
logger = structlog.get_logger()


async def main(reference: str):
    """Fetch the snapshot and price changes for one market."""
    slug = extract_slug(reference)
    logger.info(f"Checking market {slug}...")

    async with aiohttp.ClientSession() as session:
        try:
            event = await GammaClient(session).fetch_snapshot(slug)
            item = item_from_event(event, time.time())

            print(f"\n--- {item.title} ---")
            print(f"ID: {item.id}")
            print(f"Current price: {item.current_price}%")
            print(f"Liquidity: {item.liquidity:,.2f}")
            print(f"YES token: {item.yes_token_id[:20]}...")

            changes = await ChangeCalculator(ClobClient(session)).compute_for(item)

            print(f"1h change: {changes.one_hour}")
            print(f"24h change: {changes.one_day}")
            print(f"7d change: {changes.seven_days}")

        except Exception as e:
            logger.error(f"Failed to check market: {e}", exc_info=True)
            raise


if __name__ == "__main__":
    if len(sys.argv) != 2:
        print("usage: check_market.py <url-or-slug>")
        sys.exit(1)

    asyncio.run(main(sys.argv[1]))
