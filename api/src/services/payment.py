import logging
from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache
from decimal import Decimal
from typing import Any, Sequence
from uuid import UUID, uuid4
from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

import tables
from errors import InvalidTransition, PaymentNotFound
from tables.payment import Gateway, Status, TERMINAL_STATUSES
from tables.payment_transition import Origin


logger = logging.getLogger('enrollment-payment-store')


ALLOWED_TRANSITIONS: dict[Status, tuple[Status, ...]] = {
    'initiated': ('awaiting_confirmation', 'succeeded', 'failed', 'cancelled'),
    'awaiting_confirmation': ('succeeded', 'failed', 'cancelled'),
    'succeeded': ('refunded',),
    'failed': (),
    'cancelled': (),
    'refunded': ()
}


def is_terminal(status: Status) -> bool:
    return status in TERMINAL_STATUSES


@dataclass(frozen=True)
class PaymentStore:
    """
    Owner of `Payment` rows and their append-only transition history.

    Every mutation is a compare-and-set on `Payment.version`, a False result means
    a concurrent writer got there first and the caller has to re-read the payment.
    """

    async def create(
        self,
        session: AsyncSession,
        enrollment_id: UUID,
        gateway: Gateway,
        amount: Decimal,
        currency: str
    ) -> tables.Payment:
        now = datetime.now()
        payment = tables.Payment(
            id=uuid4(),
            enrollment_id=enrollment_id,
            gateway=gateway,
            gateway_transaction_id=None,
            created_at=now,
            updated_at=now,
            status='initiated',
            version=0,
            amount=amount,
            currency=currency
        )
        session.add(payment)
        session.add(tables.PaymentTransition(
            id=uuid4(),
            payment_id=payment.id,
            created_at=now,
            from_status=None,
            to_status='initiated',
            origin='checkout'
        ))
        await session.flush()
        return payment

    async def get(self, session: AsyncSession, payment_id: UUID, for_update: bool = False) -> tables.Payment:
        query = select(tables.Payment).where(tables.Payment.id == payment_id)
        if for_update:
            query = query.with_for_update()

        payment = await session.scalar(query.execution_options(populate_existing=True))
        if payment is None:
            raise PaymentNotFound(f'payment {payment_id} not found')
        return payment

    async def find_by_transaction_id(self, session: AsyncSession, transaction_id: str) -> tables.Payment | None:
        return await session.scalar(
            select(tables.Payment)
            .where(tables.Payment.gateway_transaction_id == transaction_id)
        )

    async def history(self, session: AsyncSession, payment_id: UUID) -> Sequence[tables.PaymentTransition]:
        return (await session.scalars(
            select(tables.PaymentTransition)
            .where(tables.PaymentTransition.payment_id == payment_id)
            .order_by(tables.PaymentTransition.created_at.asc())
        )).all()

    async def transition(
        self,
        session: AsyncSession,
        payment: tables.Payment,
        to_status: Status,
        origin: Origin,
        raw_payload: dict[str, Any] | None = None,
        gateway_transaction_id: str | None = None,
        failure_reason: str | None = None
    ) -> bool:
        if to_status not in ALLOWED_TRANSITIONS[payment.status]:
            raise InvalidTransition(f'payment {payment.id} cannot move from {payment.status} to {to_status}')

        if gateway_transaction_id and payment.gateway_transaction_id not in (None, gateway_transaction_id):
            raise InvalidTransition(f'payment {payment.id} is bound to another gateway transaction')

        from_status = payment.status
        now = datetime.now()
        values: dict[Any, Any] = {
            tables.Payment.status: to_status,
            tables.Payment.version: payment.version + 1,
            tables.Payment.updated_at: now
        }
        if gateway_transaction_id and payment.gateway_transaction_id is None:
            values[tables.Payment.gateway_transaction_id] = gateway_transaction_id
        if failure_reason is not None:
            values[tables.Payment.failure_reason] = failure_reason

        result = await session.execute(
            update(tables.Payment)
            .where(tables.Payment.id == payment.id, tables.Payment.version == payment.version)
            .values(values)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:  # type: ignore[attr-defined]
            logger.info(f'payment {payment.id} changed concurrently, {from_status} -> {to_status} not applied')
            return False

        session.add(tables.PaymentTransition(
            id=uuid4(),
            payment_id=payment.id,
            created_at=now,
            from_status=from_status,
            to_status=to_status,
            origin=origin,
            gateway_transaction_id=gateway_transaction_id or payment.gateway_transaction_id,
            raw_payload=raw_payload
        ))
        await session.flush()
        await session.refresh(payment)

        logger.info(f'payment {payment.id}: {from_status} -> {to_status} via {origin}')
        return True

    async def expire_stale(self, session: AsyncSession, older_than: datetime) -> list[UUID]:
        stale = (await session.scalars(
            select(tables.Payment)
            .where(
                tables.Payment.status == 'awaiting_confirmation',
                tables.Payment.updated_at < older_than
            )
        )).all()

        expired = []
        for payment in stale:
            if await self.transition(session, payment, 'failed', origin='expiry', failure_reason='expired awaiting confirmation'):
                expired.append(payment.id)
        return expired


@lru_cache
def get_payment_store() -> PaymentStore:
    return PaymentStore()
