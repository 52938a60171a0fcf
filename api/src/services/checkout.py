import logging
from dataclasses import dataclass
from functools import lru_cache
from typing import Annotated, Any
from uuid import UUID
from fastapi import Depends
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

import db.postgres
import tables
from errors import ConflictingPaymentEvent, InvalidTransition, NotOwner, PaymentInProgress
from gateways import GatewayRegistry, PaymentEvent, PaymentRequest, get_gateway_registry
from tables.payment import Gateway
from .enrollment import EnrollmentStateMachine, get_enrollment_state_machine
from .payment import PaymentStore, get_payment_store
from .reconciliation import Reconciliation, ReconciliationService, get_reconciliation_service


logger = logging.getLogger('enrollment-checkout')


class PaymentIntent(BaseModel):
    payment_id: UUID
    enrollment_id: UUID
    gateway: Gateway
    transaction_id: str
    client_secret: str | None = None
    gateway_url: str | None = None


@dataclass(frozen=True)
class CheckoutService:
    session_maker: async_sessionmaker[AsyncSession]
    gateways: GatewayRegistry
    payments: PaymentStore
    enrollments: EnrollmentStateMachine
    reconciliation: ReconciliationService

    async def create_payment_intent(self, enrollment_id: UUID, user_id: UUID, payment_method: Gateway) -> PaymentIntent:
        adapter = self.gateways.get(payment_method)
        enrollment = await self.enrollments.get(enrollment_id, user_id)
        payment = await self.enrollments.start_checkout(enrollment_id, user_id, payment_method)

        handle = await adapter.initiate(PaymentRequest(
            payment_id=payment.id,
            enrollment_id=enrollment_id,
            user_id=user_id,
            course_id=enrollment.course_id,
            amount=payment.amount,
            currency=payment.currency,
            description=f'Enrollment {enrollment_id}'
        ))

        async with self.session_maker() as session, session.begin():
            payment = await self.payments.get(session, payment.id, for_update=True)

            if payment.status == 'initiated':
                if not await self.payments.transition(
                    session, payment, 'awaiting_confirmation',
                    origin='checkout',
                    gateway_transaction_id=handle.transaction_id
                ):
                    raise PaymentInProgress(f'payment {payment.id} changed while contacting the gateway')
            elif payment.gateway_transaction_id != handle.transaction_id:
                # Another checkout or an early gateway event got there first
                raise PaymentInProgress(f'payment {payment.id} is already {payment.status}')

        logger.info(f'payment {payment.id} sent to {payment_method} gateway as {handle.transaction_id}')
        return PaymentIntent(
            payment_id=payment.id,
            enrollment_id=enrollment_id,
            gateway=payment_method,
            transaction_id=handle.transaction_id,
            client_secret=handle.client_secret,
            gateway_url=handle.gateway_url
        )

    async def confirm(self, payment_id: UUID, user_id: UUID, payload: dict[str, Any]) -> Reconciliation:
        """Client-reported end of checkout, re-checked with the gateway before it counts"""

        async with self.session_maker() as session:
            payment = await self.payments.get(session, payment_id)
            enrollment = await session.get(tables.Enrollment, payment.enrollment_id)
        if enrollment is None or enrollment.user_id != user_id:
            raise NotOwner('you can only confirm your own payments')

        event = await self.gateways.get(payment.gateway).confirm(payment, payload)
        result = await self.reconciliation.reconcile(event)

        if result.outcome == 'conflict':
            raise ConflictingPaymentEvent(result.detail)

        async with self.session_maker() as session:
            payment = await self.payments.get(session, payment_id)
            enrollment = await session.get(tables.Enrollment, payment.enrollment_id)

        return Reconciliation(
            outcome=result.outcome,
            payment_id=payment.id,
            payment_status=payment.status,
            enrollment_id=payment.enrollment_id,
            enrollment_status=enrollment.status if enrollment else None,
            detail=result.detail
        )

    async def refund(self, payment_id: UUID, operator_id: UUID, reason: str) -> Reconciliation:
        """
        Operator-initiated full refund.

        The gateway is asked first, the local `succeeded -> refunded` transition then goes
        through reconciliation, so a refund notification arriving from the gateway later
        is discarded as a duplicate.
        """
        async with self.session_maker() as session:
            payment = await self.payments.get(session, payment_id)
            enrollment = await session.get(tables.Enrollment, payment.enrollment_id)
            settled = next(
                (t.raw_payload for t in reversed(await self.payments.history(session, payment_id)) if t.to_status == 'succeeded'),
                None
            )

        if payment.status != 'succeeded':
            raise InvalidTransition(f'payment {payment_id} is {payment.status}, only succeeded payments can be refunded')
        if enrollment is None or enrollment.status != 'active' or enrollment.payment_id != payment.id:
            raise InvalidTransition(
                f'enrollment {payment.enrollment_id} is {enrollment.status if enrollment else "missing"}, '
                f'only an active enrollment paid by payment {payment_id} can be refunded'
            )

        refund = await self.gateways.get(payment.gateway).refund(payment, settled, reason)
        logger.info(f'payment {payment_id} refunded by {payment.gateway} gateway on request of {operator_id}')

        return await self.reconciliation.reconcile(PaymentEvent(
            gateway=payment.gateway,
            source_gateway_transaction_id=payment.gateway_transaction_id,
            reported_status='refunded',
            received_via='operator-refund',
            raw_payload={'refund': refund, 'reason': reason, 'requested_by': str(operator_id)},
            enrollment_id=payment.enrollment_id
        ))


@lru_cache
def get_checkout_service(
    session_maker: Annotated[async_sessionmaker[AsyncSession], Depends(db.postgres.get_session_maker)],
    gateways: Annotated[GatewayRegistry, Depends(get_gateway_registry)],
    payments: Annotated[PaymentStore, Depends(get_payment_store)],
    enrollments: Annotated[EnrollmentStateMachine, Depends(get_enrollment_state_machine)],
    reconciliation: Annotated[ReconciliationService, Depends(get_reconciliation_service)]
) -> CheckoutService:
    return CheckoutService(
        session_maker=session_maker,
        gateways=gateways,
        payments=payments,
        enrollments=enrollments,
        reconciliation=reconciliation
    )
