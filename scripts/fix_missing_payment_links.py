#!/usr/bin/env python3
"""
Create payment links for approved appointments that never got one.

This happens when Stripe was unreachable at approval time: the approval
is kept and the appointment waits in APPROVED without a link.

Usage:
    python scripts/fix_missing_payment_links.py
"""

import asyncio
import sys

import dotenv

dotenv.load_dotenv()

from app.config import settings  # noqa: E402
from app.core.clock import Clock  # noqa: E402
from app.core.payments import build_payment_gateway  # noqa: E402
from app.database import AsyncSessionLocal, engine  # noqa: E402
from app.middleware.logging import configure_logging  # noqa: E402
from app.services.appointment_service import SchedulingService  # noqa: E402


async def fix_missing_payment_links() -> int:
    """Issue links for every linkless APPROVED appointment; returns the failure count."""
    gateway = build_payment_gateway(settings)
    if not gateway.is_configured:
        print("✗ STRIPE_SECRET_KEY is not set, nothing to do", file=sys.stderr)
        return 1

    async with AsyncSessionLocal() as session:
        service = SchedulingService(session, gateway, Clock(settings.clinic_timezone))
        fixed, failed = await service.fill_missing_payment_links()

    await engine.dispose()

    print(f"✓ Payment links created: {fixed}")
    if failed:
        print(f"✗ Payment links still missing: {failed}", file=sys.stderr)
    return failed


def main() -> None:
    """Main entry point."""
    configure_logging()
    failed = asyncio.run(fix_missing_payment_links())
    sys.exit(1 if failed else 0)


if __name__ == "__main__":
    main()
