import logging
from datetime import datetime
from functools import lru_cache
from typing import Protocol
from uuid import uuid4
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

import tables


logger = logging.getLogger('enrollment-receipts')


class ReceiptEmitter(Protocol):
    async def on_enrollment_activated(
        self,
        session: AsyncSession,
        enrollment: tables.Enrollment,
        payment: tables.Payment | None
    ) -> bool:
        ...


class OutboxReceiptEmitter:
    """
    Records the activation in the `activation_notification` outbox within the
    caller's transaction, the worker delivers it to the access-grant/email handler.
    The enrollment id is the idempotency key, so a second call for the same
    enrollment is refused and returns False.
    """

    async def on_enrollment_activated(
        self,
        session: AsyncSession,
        enrollment: tables.Enrollment,
        payment: tables.Payment | None
    ) -> bool:
        already_fired = await session.scalar(
            select(tables.ActivationNotification.id)
            .where(tables.ActivationNotification.enrollment_id == enrollment.id)
        )
        if already_fired is not None:
            logger.warning(f'activation of enrollment {enrollment.id} was already emitted, skipping')
            return False

        session.add(tables.ActivationNotification(
            id=uuid4(),
            enrollment_id=enrollment.id,
            payment_id=payment.id if payment else None,
            created_at=datetime.now(),
            sent_to_topic=False,
            data={
                'enrollment_id': str(enrollment.id),
                'user_id': str(enrollment.user_id),
                'course_id': str(enrollment.course_id),
                'payment_id': str(payment.id) if payment else None,
                'gateway': payment.gateway if payment else None,
                'gateway_transaction_id': payment.gateway_transaction_id if payment else None,
                'amount': str(payment.amount if payment else enrollment.price),
                'currency': payment.currency if payment else enrollment.currency
            }
        ))
        await session.flush()

        logger.info(f'enrollment {enrollment.id} activated, notification queued')
        return True


@lru_cache
def get_receipt_emitter() -> ReceiptEmitter:
    return OutboxReceiptEmitter()
