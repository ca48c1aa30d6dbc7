#!/usr/bin/env python3
"""
Cancel approved appointments whose payment deadline passed without payment.

Nothing in the API does this on its own; run it periodically (e.g. cron).
Cancelling releases the slot for other patients.

Usage:
    python scripts/expire_unpaid_appointments.py
    python scripts/expire_unpaid_appointments.py --as-of "2025-06-01 09:00"
"""

import argparse
import asyncio
from datetime import datetime

import dotenv

dotenv.load_dotenv()

from app.config import settings  # noqa: E402
from app.core.clock import Clock, FixedClock  # noqa: E402
from app.core.payments import build_payment_gateway  # noqa: E402
from app.core.redis_client import CacheManager, get_redis_client  # noqa: E402
from app.database import AsyncSessionLocal, engine  # noqa: E402
from app.middleware.logging import configure_logging  # noqa: E402
from app.services.appointment_service import SchedulingService  # noqa: E402


async def expire_unpaid(as_of: datetime | None) -> int:
    """Cancel overdue approvals as of now (or the given clinic-local time)."""
    clock = (
        FixedClock(settings.clinic_timezone, as_of)
        if as_of
        else Clock(settings.clinic_timezone)
    )

    async with AsyncSessionLocal() as session:
        service = SchedulingService(
            session,
            build_payment_gateway(settings),
            clock,
            cache_manager=CacheManager(get_redis_client()),
        )
        expired = await service.expire_overdue_approvals()

    await engine.dispose()
    return expired


def main():
    """Main entry point."""
    parser = argparse.ArgumentParser(
        description="Cancel approved appointments whose payment window has closed",
    )
    parser.add_argument(
        "--as-of",
        type=datetime.fromisoformat,
        default=None,
        help="Clinic-local time to treat as now, e.g. '2025-06-01 09:00'",
    )
    args = parser.parse_args()

    configure_logging()
    expired = asyncio.run(expire_unpaid(args.as_of))
    print(f"✓ Expired appointments: {expired}")


if __name__ == "__main__":
    main()
