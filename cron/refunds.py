from __future__ import annotations

import argparse
import asyncio
import logging
from typing import Dict, Optional

from core.config import get_settings
from core.logging import configure_logging
from services.container import build_booking_service


logger = logging.getLogger(__name__)


async def run_once(limit: Optional[int] = None) -> Dict[str, int]:
    settings = get_settings()
    service = await build_booking_service(settings)
    counts = await service.retry_pending_refunds(limit)
    logger.info("cron.refunds_done", extra=counts)
    return counts


def main() -> None:
    parser = argparse.ArgumentParser(description="Deliver queued refunds and void those whose cancellation never committed.")
    parser.add_argument("--limit", type=int, default=None, help="maximum outbox entries to process")
    args = parser.parse_args()
    configure_logging(get_settings().log_level)
    asyncio.run(run_once(args.limit))


if __name__ == "__main__":
    main()
