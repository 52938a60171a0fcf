import logging
from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache
from typing import Annotated, Sequence
from uuid import UUID, uuid4
from fastapi import Depends
from sqlalchemy import select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

import db.postgres
import tables
from errors import DuplicateEnrollment, EnrollmentNotFound, InvalidTransition, NotOwner, PaymentInProgress
from tables.enrollment import LIVE_STATUSES, Status
from tables.payment import Gateway
from .catalog import CourseCatalog, get_course_catalog
from .payment import PaymentStore, get_payment_store, is_terminal
from .receipts import ReceiptEmitter, get_receipt_emitter


logger = logging.getLogger('enrollment-state-machine')


ALLOWED_TRANSITIONS: dict[Status, tuple[Status, ...]] = {
    'pending_payment': ('active', 'cancelled'),
    'active': ('completed', 'cancelled', 'refunded'),
    'completed': (),
    'cancelled': (),
    'refunded': ()
}


@dataclass(frozen=True)
class EnrollmentStateMachine:
    session_maker: async_sessionmaker[AsyncSession]
    catalog: CourseCatalog
    payments: PaymentStore
    emitter: ReceiptEmitter

    async def create_enrollment(self, user_id: UUID, course_id: UUID, payment_method: Gateway) -> tables.Enrollment:
        price = await self.catalog.get_price(course_id)

        try:
            async with self.session_maker() as session, session.begin():
                existing = await session.scalar(
                    select(tables.Enrollment)
                    .where(
                        tables.Enrollment.user_id == user_id,
                        tables.Enrollment.course_id == course_id,
                        tables.Enrollment.status.in_(LIVE_STATUSES)
                    )
                )
                if existing is not None:
                    if existing.status != 'pending_payment':
                        raise DuplicateEnrollment(f'user {user_id} is already enrolled in course {course_id}')
                    logger.info(f'enrollment {existing.id} is already awaiting payment, returning it')
                    return existing

                now = datetime.now()
                free = price.amount == 0
                enrollment = tables.Enrollment(
                    id=uuid4(),
                    user_id=user_id,
                    course_id=course_id,
                    created_at=now,
                    updated_at=now,
                    status='active' if free else 'pending_payment',
                    payment_id=None,
                    progress=0,
                    price=price.amount,
                    currency=price.currency
                )
                session.add(enrollment)
                await session.flush()

                if free:
                    await self.emitter.on_enrollment_activated(session, enrollment, None)
                else:
                    payment = await self.payments.create(session, enrollment.id, payment_method, price.amount, price.currency)
                    enrollment.payment_id = payment.id
        except IntegrityError as e:
            # Lost a race against a concurrent request for the same course
            raise DuplicateEnrollment(f'user {user_id} is already enrolled in course {course_id}') from e

        logger.info(f'enrollment {enrollment.id} created for user {user_id} in course {course_id} as {enrollment.status}')
        return enrollment

    async def get(self, enrollment_id: UUID, user_id: UUID | None = None) -> tables.Enrollment:
        async with self.session_maker() as session:
            return await self._load(session, enrollment_id, user_id)

    async def list_for_user(self, user_id: UUID) -> Sequence[tables.Enrollment]:
        async with self.session_maker() as session:
            return (await session.scalars(
                select(tables.Enrollment)
                .where(tables.Enrollment.user_id == user_id)
                .order_by(tables.Enrollment.created_at.desc())
            )).all()

    async def mark_active(self, session: AsyncSession, enrollment_id: UUID, payment_id: UUID) -> tables.Enrollment:
        """
        Activates a paid enrollment within the reconciliation transaction.
        Only a `pending_payment` enrollment whose current payment is `payment_id` qualifies.
        """
        payment = await self.payments.get(session, payment_id)
        if payment.status != 'succeeded':
            raise InvalidTransition(f'payment {payment_id} has not succeeded')

        enrollment = await self._compare_and_set(
            session, enrollment_id, 'pending_payment', 'active',
            tables.Enrollment.payment_id == payment_id
        )
        await self.emitter.on_enrollment_activated(session, enrollment, payment)
        return enrollment

    async def mark_refunded(self, session: AsyncSession, enrollment_id: UUID, payment_id: UUID) -> tables.Enrollment:
        return await self._compare_and_set(
            session, enrollment_id, 'active', 'refunded',
            tables.Enrollment.payment_id == payment_id
        )

    async def mark_completed(self, enrollment_id: UUID) -> tables.Enrollment:
        async with self.session_maker() as session, session.begin():
            enrollment = await self._compare_and_set(session, enrollment_id, 'active', 'completed', progress=100)

        logger.info(f'enrollment {enrollment_id} completed')
        return enrollment

    async def cancel(self, enrollment_id: UUID, user_id: UUID, reason: str | None = None) -> tables.Enrollment:
        async with self.session_maker() as session, session.begin():
            enrollment = await self._load(session, enrollment_id, user_id)

            if enrollment.status == 'cancelled':
                return enrollment

            if enrollment.status == 'pending_payment' and enrollment.payment_id is not None:
                payment = await self.payments.get(session, enrollment.payment_id, for_update=True)
                if not is_terminal(payment.status):
                    if not await self.payments.transition(session, payment, 'cancelled', origin='enrollment', failure_reason=reason):
                        raise InvalidTransition(f'payment {payment.id} changed while cancelling, try again')

            enrollment = await self._compare_and_set(
                session, enrollment_id, enrollment.status, 'cancelled',
                cancellation_reason=reason
            )

        logger.info(f'enrollment {enrollment_id} cancelled by {user_id}: {reason}')
        return enrollment

    async def start_checkout(self, enrollment_id: UUID, user_id: UUID, gateway: Gateway) -> tables.Payment:
        """
        Returns the payment attempt a new checkout should use.

        An attempt that never reached a gateway is reused, a failed or cancelled one is
        replaced by a new attempt and `Enrollment.payment_id` is reassigned.
        """
        async with self.session_maker() as session, session.begin():
            enrollment = await self._load(session, enrollment_id, user_id)
            if enrollment.status != 'pending_payment':
                raise InvalidTransition(f'enrollment {enrollment_id} is {enrollment.status}, nothing to pay for')

            current = None
            if enrollment.payment_id is not None:
                current = await self.payments.get(session, enrollment.payment_id, for_update=True)

            if current is not None and not is_terminal(current.status):
                if current.status != 'initiated' or current.gateway_transaction_id is not None:
                    raise PaymentInProgress(f'payment {current.id} for enrollment {enrollment_id} is awaiting confirmation')

                if current.gateway != gateway:
                    result = await session.execute(
                        update(tables.Payment)
                        .where(tables.Payment.id == current.id, tables.Payment.version == current.version)
                        .values({tables.Payment.gateway: gateway, tables.Payment.version: current.version + 1})
                        .execution_options(synchronize_session=False)
                    )
                    if result.rowcount != 1:  # type: ignore[attr-defined]
                        raise PaymentInProgress(f'payment {current.id} for enrollment {enrollment_id} changed concurrently')
                    await session.refresh(current)
                return current

            if current is not None and current.status == 'succeeded':
                raise PaymentInProgress(f'payment {current.id} for enrollment {enrollment_id} has already succeeded')

            payment = await self.payments.create(session, enrollment.id, gateway, enrollment.price, enrollment.currency)
            result = await session.execute(
                update(tables.Enrollment)
                .where(
                    tables.Enrollment.id == enrollment.id,
                    tables.Enrollment.status == 'pending_payment',
                    tables.Enrollment.payment_id == enrollment.payment_id if enrollment.payment_id else tables.Enrollment.payment_id.is_(None)
                )
                .values({tables.Enrollment.payment_id: payment.id, tables.Enrollment.updated_at: datetime.now()})
                .execution_options(synchronize_session=False)
            )
            if result.rowcount != 1:  # type: ignore[attr-defined]
                raise PaymentInProgress(f'enrollment {enrollment_id} got a new payment attempt concurrently')

        logger.info(f'enrollment {enrollment_id} payment reassigned from {enrollment.payment_id} to {payment.id}')
        return payment

    async def _load(self, session: AsyncSession, enrollment_id: UUID, user_id: UUID | None = None) -> tables.Enrollment:
        enrollment = await session.get(tables.Enrollment, enrollment_id, populate_existing=True)
        if enrollment is None:
            raise EnrollmentNotFound(f'enrollment {enrollment_id} not found')
        if user_id is not None and enrollment.user_id != user_id:
            raise NotOwner('you can only manage your own enrollments')
        return enrollment

    async def _compare_and_set(
        self,
        session: AsyncSession,
        enrollment_id: UUID,
        from_status: Status,
        to_status: Status,
        *criteria,
        progress: int | None = None,
        cancellation_reason: str | None = None
    ) -> tables.Enrollment:
        if to_status not in ALLOWED_TRANSITIONS[from_status]:
            raise InvalidTransition(f'enrollment {enrollment_id} cannot move from {from_status} to {to_status}')

        values = {tables.Enrollment.status: to_status, tables.Enrollment.updated_at: datetime.now()}
        if progress is not None:
            values[tables.Enrollment.progress] = progress
        if cancellation_reason is not None:
            values[tables.Enrollment.cancellation_reason] = cancellation_reason

        result = await session.execute(
            update(tables.Enrollment)
            .where(tables.Enrollment.id == enrollment_id, tables.Enrollment.status == from_status, *criteria)
            .values(values)
            .execution_options(synchronize_session=False)
        )
        enrollment = await self._load(session, enrollment_id)

        if result.rowcount != 1:  # type: ignore[attr-defined]
            raise InvalidTransition(
                f'enrollment {enrollment_id} is {enrollment.status} with payment {enrollment.payment_id}, '
                f'cannot move from {from_status} to {to_status}'
            )

        logger.info(f'enrollment {enrollment_id}: {from_status} -> {to_status}')
        return enrollment


@lru_cache
def get_enrollment_state_machine(
    session_maker: Annotated[async_sessionmaker[AsyncSession], Depends(db.postgres.get_session_maker)],
    catalog: Annotated[CourseCatalog, Depends(get_course_catalog)],
    payments: Annotated[PaymentStore, Depends(get_payment_store)],
    emitter: Annotated[ReceiptEmitter, Depends(get_receipt_emitter)]
) -> EnrollmentStateMachine:
    return EnrollmentStateMachine(session_maker=session_maker, catalog=catalog, payments=payments, emitter=emitter)
