#!/usr/bin/env python
"""Delete guest carts whose expiry has passed.

Guest carts are stamped with an expiry when created. This script removes
every expired cart together with its line items. Signed-in users' carts
never expire.

Usage:
    python scripts/sweep_expired_carts.py

Intended to run daily from cron or a scheduled job.
"""

import asyncio
import logging
import sys
from pathlib import Path

# Add the project root to the path
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.services.cart_service import CartService

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


async def main() -> int:
    """Run the sweep once.

    Returns:
        int: Process exit code.
    """
    service = CartService()
    try:
        result = await service.cleanup_expired_carts()
    except Exception as e:
        logger.error("Cart sweep failed: %s", e, exc_info=True)
        return 1

    logger.info(
        "Sweep complete: %d carts, %d items removed",
        result["deleted_carts"],
        result["deleted_items"],
    )
    return 0


if __name__ == "__main__":
    sys.exit(asyncio.run(main()))
