import logging
from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache
from typing import Annotated, Any, Literal
from uuid import UUID, uuid4
from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

import db.postgres
import tables
from errors import ConsistencyError, InvalidTransition
from gateways import GatewayRegistry, PaymentEvent, get_gateway_registry
from settings import settings
from tables.payment import Status
from tables.payment_conflict import Kind
from .enrollment import EnrollmentStateMachine, get_enrollment_state_machine
from .payment import PaymentStore, get_payment_store, is_terminal


logger = logging.getLogger('enrollment-reconciliation')


Outcome = Literal['applied', 'duplicate', 'conflict', 'unmatched', 'ignored']
Decision = Literal['apply', 'duplicate', 'conflict']


@dataclass(frozen=True)
class Reconciliation:
    outcome: Outcome
    payment_id: UUID | None = None
    payment_status: Status | None = None
    enrollment_id: UUID | None = None
    enrollment_status: str | None = None
    detail: str | None = None


def decide(stored: Status, reported: Status) -> Decision:
    """Idempotency check of a reported outcome against the stored payment status"""

    if not is_terminal(stored):
        return 'conflict' if reported == 'refunded' else 'apply'
    if stored == reported:
        return 'duplicate'
    if stored == 'succeeded' and reported == 'refunded':
        return 'apply'
    # Stale redelivery of the success that preceded the refund
    if stored == 'refunded' and reported == 'succeeded':
        return 'duplicate'
    return 'conflict'


@dataclass(frozen=True)
class ReconciliationService:
    """
    The only place that decides whether a payment event is trustworthy and new.

    Events from every channel (webhook, redirect callback, client confirmation,
    operator refund) go through the same path: resolve the payment, run the
    idempotency check, verify untrusted successes with the gateway, then apply the
    transition, the enrollment activation and the receipt in one transaction.
    """

    session_maker: async_sessionmaker[AsyncSession]
    gateways: GatewayRegistry
    payments: PaymentStore
    enrollments: EnrollmentStateMachine
    max_attempts: int = 3

    async def reconcile(self, event: PaymentEvent) -> Reconciliation:
        if not event.actionable:
            return Reconciliation(outcome='ignored', detail=f'{event.gateway} reported a non-terminal status')

        adapter = self.gateways.get(event.gateway)
        reported: Status = event.reported_status  # type: ignore[assignment]
        failure_reason = event.failure_reason
        raw_payload = event.raw_payload
        verified = not (reported == 'succeeded' and adapter.requires_verification)

        for _ in range(self.max_attempts):
            async with self.session_maker() as session:
                payment = await self._resolve(session, event)

            if payment is None:
                logger.warning(
                    f'{event.gateway} event for transaction {event.source_gateway_transaction_id} '
                    f'via {event.received_via} matches no payment, ignoring'
                )
                return Reconciliation(outcome='unmatched', detail='no payment matches the event')

            if not verified and decide(payment.status, reported) == 'apply':
                # Network call, made without holding any row
                verified = True
                verification = await adapter.verify(event, payment)
                raw_payload = {'callback': event.raw_payload, 'validation': verification.raw_payload}
                if not verification.confirmed:
                    reported = 'failed'
                    failure_reason = f'gateway validation did not confirm the reported success: {verification.reason}'

            async with self.session_maker() as session, session.begin():
                result = await self._apply(session, payment.id, event, reported, failure_reason, raw_payload)
            if result is not None:
                return result

        raise ConsistencyError(f'payment for transaction {event.source_gateway_transaction_id} kept changing, giving up')

    async def _resolve(self, session: AsyncSession, event: PaymentEvent) -> tables.Payment | None:
        if event.source_gateway_transaction_id:
            payment = await self.payments.find_by_transaction_id(session, event.source_gateway_transaction_id)
            if payment is not None:
                return payment if payment.gateway == event.gateway else None

        # First event of an attempt whose transaction id has not been recorded yet
        if event.enrollment_id is not None:
            enrollment = await session.get(tables.Enrollment, event.enrollment_id)
            if enrollment is not None and enrollment.payment_id is not None:
                payment = await session.get(tables.Payment, enrollment.payment_id)
                if payment is not None and payment.gateway == event.gateway and payment.gateway_transaction_id is None:
                    return payment

        return None

    async def _apply(
        self,
        session: AsyncSession,
        payment_id: UUID,
        event: PaymentEvent,
        reported: Status,
        failure_reason: str | None,
        raw_payload: dict[str, Any]
    ) -> Reconciliation | None:
        payment = await self.payments.get(session, payment_id, for_update=True)

        match decide(payment.status, reported):
            case 'duplicate':
                logger.info(f'duplicate {reported} for payment {payment.id} via {event.received_via}, discarding')
                return Reconciliation(
                    outcome='duplicate',
                    payment_id=payment.id,
                    payment_status=payment.status,
                    enrollment_id=payment.enrollment_id
                )
            case 'conflict':
                detail = f'payment {payment.id} is {payment.status} but {event.received_via} reports {reported}'
                await self._record_conflict(session, 'conflicting_event', payment, event, reported, detail)
                return Reconciliation(
                    outcome='conflict',
                    payment_id=payment.id,
                    payment_status=payment.status,
                    enrollment_id=payment.enrollment_id,
                    detail=detail
                )

        applied = await self.payments.transition(
            session, payment, reported,
            origin=event.received_via,
            raw_payload=raw_payload,
            gateway_transaction_id=event.source_gateway_transaction_id,
            failure_reason=failure_reason if reported == 'failed' else None
        )
        if not applied:
            return None

        enrollment_status = None
        detail = None
        try:
            if reported == 'succeeded':
                enrollment_status = (await self.enrollments.mark_active(session, payment.enrollment_id, payment.id)).status
            elif reported == 'refunded':
                enrollment_status = (await self.enrollments.mark_refunded(session, payment.enrollment_id, payment.id)).status
        except InvalidTransition as e:
            detail = f'payment {payment.id} is {reported} but its enrollment was not updated: {e.message}'
            await self._record_conflict(session, 'activation_rejected', payment, event, reported, detail)

        if enrollment_status is None:
            enrollment = await session.get(tables.Enrollment, payment.enrollment_id)
            enrollment_status = enrollment.status if enrollment else None

        return Reconciliation(
            outcome='applied',
            payment_id=payment.id,
            payment_status=payment.status,
            enrollment_id=payment.enrollment_id,
            enrollment_status=enrollment_status,
            detail=detail
        )

    async def _record_conflict(
        self,
        session: AsyncSession,
        kind: Kind,
        payment: tables.Payment,
        event: PaymentEvent,
        reported: Status,
        detail: str
    ):
        logger.error(f'{kind}: {detail}')
        session.add(tables.PaymentConflict(
            id=uuid4(),
            created_at=datetime.now(),
            kind=kind,
            payment_id=payment.id,
            stored_status=payment.status,
            reported_status=reported,
            received_via=event.received_via,
            detail=detail,
            event=event.model_dump(mode='json')
        ))
        await session.flush()


@lru_cache
def get_reconciliation_service(
    session_maker: Annotated[async_sessionmaker[AsyncSession], Depends(db.postgres.get_session_maker)],
    gateways: Annotated[GatewayRegistry, Depends(get_gateway_registry)],
    payments: Annotated[PaymentStore, Depends(get_payment_store)],
    enrollments: Annotated[EnrollmentStateMachine, Depends(get_enrollment_state_machine)]
) -> ReconciliationService:
    return ReconciliationService(
        session_maker=session_maker,
        gateways=gateways,
        payments=payments,
        enrollments=enrollments,
        max_attempts=settings.reconciliation_max_attempts
    )
