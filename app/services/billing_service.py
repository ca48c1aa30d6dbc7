"""Billing records for completed appointment payments."""

from decimal import Decimal
from typing import Any
from uuid import UUID

import structlog
from sqlalchemy import insert, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from app.core.clock import Clock
from app.models.bills import bill_items, bills, payment_history

logger = structlog.get_logger(__name__)


class BillingService:
    """Writes one bill, one line item and one payment record per payment."""

    def __init__(self, db: AsyncSession, clock: Clock):
        """Initialize service with database session and clock."""
        self.db = db
        self.clock = clock

    async def get_bill_by_reference(self, external_reference: str) -> dict[str, Any] | None:
        """Get the bill created for a provider reference."""
        result = await self.db.execute(
            select(bills).where(bills.c.external_reference == external_reference)
        )
        row = result.mappings().first()
        return dict(row) if row else None

    async def create_bill_for_payment(
        self,
        patient_id: UUID,
        amount: Decimal,
        currency: str,
        description: str,
        external_reference: str,
        appointment_id: UUID | None = None,
    ) -> dict[str, Any]:
        """
        Record a completed payment.

        Calling this twice with the same ``external_reference`` returns the
        existing bill and writes nothing.

        Args:
            patient_id: Paying patient
            amount: Amount charged
            currency: ISO currency code
            description: Line item description
            external_reference: Provider payment reference
            appointment_id: Appointment being paid for

        Returns:
            The bill row
        """
        existing = await self.get_bill_by_reference(external_reference)
        if existing:
            logger.info("bill_already_exists", external_reference=external_reference)
            return existing

        now = self.clock.now()
        try:
            result = await self.db.execute(
                insert(bills)
                .values(
                    patient_id=patient_id,
                    appointment_id=appointment_id,
                    external_reference=external_reference,
                    description=description,
                    total_amount=amount,
                    currency=currency,
                    status="paid",
                    created_at=now,
                )
                .returning(bills)
            )
            bill = dict(result.mappings().one())

            await self.db.execute(
                insert(bill_items).values(
                    bill_id=bill["id"],
                    description=description,
                    quantity=1,
                    unit_price=amount,
                    line_total=amount,
                )
            )
            await self.db.execute(
                insert(payment_history).values(
                    bill_id=bill["id"],
                    amount=amount,
                    payment_method="online",
                    transaction_ref=external_reference,
                    paid_at=now,
                )
            )
            await self.db.commit()
        except IntegrityError:
            # A concurrent call created it first
            await self.db.rollback()
            existing = await self.get_bill_by_reference(external_reference)
            if existing is None:
                raise
            return existing
        except Exception:
            await self.db.rollback()
            raise

        logger.info(
            "bill_created",
            bill_id=str(bill["id"]),
            patient_id=str(patient_id),
            amount=str(amount),
            external_reference=external_reference,
        )
        return bill
