import uuid
import asyncio
import pytest
from pytest_httpx import HTTPXMock
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

import tables
from errors import DuplicateEnrollment, InvalidTransition, NotOwner, PaymentInProgress
from services.enrollment import EnrollmentStateMachine
from services.payment import PaymentStore
from stubs import mock_course


async def test_concurrent_enrollments_leave_one_live(
    session_maker: async_sessionmaker[AsyncSession],
    enrollments: EnrollmentStateMachine,
    httpx_mock: HTTPXMock
):
    user_id = uuid.uuid4()
    course_id = mock_course(httpx_mock, price='0')

    results = await asyncio.gather(
        *(enrollments.create_enrollment(user_id, course_id, 'card') for _ in range(3)),
        return_exceptions=True
    )

    created = [r for r in results if isinstance(r, tables.Enrollment)]
    assert len(created) == 1
    assert all(isinstance(r, DuplicateEnrollment) for r in results if r not in created)

    async with session_maker() as session:
        assert await session.scalar(select(func.count()).select_from(tables.Enrollment)) == 1
        assert await session.scalar(select(func.count()).select_from(tables.ActivationNotification)) == 1


async def test_activation_requires_current_succeeded_payment(
    session_maker: async_sessionmaker[AsyncSession],
    enrollments: EnrollmentStateMachine,
    payments: PaymentStore,
    httpx_mock: HTTPXMock
):
    course_id = mock_course(httpx_mock, price='50.00')
    enrollment = await enrollments.create_enrollment(uuid.uuid4(), course_id, 'card')
    assert enrollment.payment_id is not None

    async with session_maker() as session, session.begin():
        with pytest.raises(InvalidTransition):
            await enrollments.mark_active(session, enrollment.id, enrollment.payment_id)

    async with session_maker() as session, session.begin():
        stale = await payments.create(session, enrollment.id, 'card', enrollment.price, enrollment.currency)
        assert await payments.transition(session, stale, 'succeeded', origin='webhook', gateway_transaction_id='pi_stale')

    async with session_maker() as session, session.begin():
        with pytest.raises(InvalidTransition):
            await enrollments.mark_active(session, enrollment.id, stale.id)

    assert (await enrollments.get(enrollment.id)).status == 'pending_payment'


async def test_checkout_reuses_untouched_attempt(
    enrollments: EnrollmentStateMachine,
    httpx_mock: HTTPXMock
):
    user_id = uuid.uuid4()
    course_id = mock_course(httpx_mock, price='500.00', currency='BDT')
    enrollment = await enrollments.create_enrollment(user_id, course_id, 'card')

    payment = await enrollments.start_checkout(enrollment.id, user_id, 'redirect')

    assert payment.id == enrollment.payment_id
    assert payment.gateway == 'redirect'

    with pytest.raises(NotOwner):
        await enrollments.start_checkout(enrollment.id, uuid.uuid4(), 'card')


async def test_checkout_after_success_is_refused(
    session_maker: async_sessionmaker[AsyncSession],
    enrollments: EnrollmentStateMachine,
    payments: PaymentStore,
    httpx_mock: HTTPXMock
):
    user_id = uuid.uuid4()
    course_id = mock_course(httpx_mock, price='50.00')
    enrollment = await enrollments.create_enrollment(user_id, course_id, 'card')

    async with session_maker() as session, session.begin():
        payment = await payments.get(session, enrollment.payment_id)  # type: ignore[arg-type]
        await payments.transition(session, payment, 'succeeded', origin='webhook', gateway_transaction_id='pi_1')

    with pytest.raises(PaymentInProgress):
        await enrollments.start_checkout(enrollment.id, user_id, 'card')


async def test_free_course_cannot_be_paid_for(enrollments: EnrollmentStateMachine, httpx_mock: HTTPXMock):
    user_id = uuid.uuid4()
    enrollment = await enrollments.create_enrollment(user_id, mock_course(httpx_mock, price='0'), 'card')

    with pytest.raises(InvalidTransition):
        await enrollments.start_checkout(enrollment.id, user_id, 'card')
