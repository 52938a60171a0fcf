import re
import uuid
import pytest
from datetime import datetime
from pytest_httpx import HTTPXMock
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from starlette import status

import tables
from gateways import PaymentEvent
from services.enrollment import EnrollmentStateMachine
from services.events import get_payment_event_queue
from services.payment import PaymentStore
from services.reconciliation import Reconciliation, ReconciliationService
from settings import settings
from stubs import mock_course
from worker.payment_events import process_next_event


async def redirect_payment(
    session_maker: async_sessionmaker[AsyncSession],
    enrollments: EnrollmentStateMachine,
    payments: PaymentStore,
    httpx_mock: HTTPXMock
) -> tuple[tables.Enrollment, str]:
    enrollment = await enrollments.create_enrollment(
        uuid.uuid4(),
        mock_course(httpx_mock, price='500.00', currency='BDT'),
        'redirect'
    )
    transaction_id = uuid.uuid4().hex
    async with session_maker() as session, session.begin():
        payment = await payments.get(session, enrollment.payment_id)  # type: ignore[arg-type]
        await payments.transition(session, payment, 'awaiting_confirmation', origin='checkout', gateway_transaction_id=transaction_id)
    return enrollment, transaction_id


def redirect_success(transaction_id: str) -> PaymentEvent:
    return PaymentEvent(
        gateway='redirect',
        source_gateway_transaction_id=transaction_id,
        reported_status='succeeded',
        received_via='redirect-callback',
        raw_payload={'tran_id': transaction_id, 'status': 'VALID', 'val_id': 'val_1'},
        validation_id='val_1'
    )


async def queued(session_maker: async_sessionmaker[AsyncSession]) -> list[tables.PaymentEventRequest]:
    async with session_maker() as session:
        return list((await session.scalars(select(tables.PaymentEventRequest))).all())


async def test_empty_queue(session_maker: async_sessionmaker[AsyncSession], reconciliation: ReconciliationService):
    assert not await process_next_event(session_maker, reconciliation)


async def test_unavailable_gateway_is_retried(
    session_maker: async_sessionmaker[AsyncSession],
    enrollments: EnrollmentStateMachine,
    payments: PaymentStore,
    reconciliation: ReconciliationService,
    httpx_mock: HTTPXMock
):
    enrollment, transaction_id = await redirect_payment(session_maker, enrollments, payments, httpx_mock)
    httpx_mock.add_response(
        method='GET',
        url='https://sandbox.sslcommerz.com/validator/api/validationserverAPI.php?val_id=val_1&store_id=testbox&store_passwd=qwerty&format=json',
        status_code=status.HTTP_502_BAD_GATEWAY
    )
    await get_payment_event_queue(session_maker).enqueue(redirect_success(transaction_id))

    assert await process_next_event(session_maker, reconciliation)

    [request] = await queued(session_maker)
    assert request.attempts == 1
    assert request.processed_at is not None

    # Not picked up again until the retry delay has passed
    assert not await process_next_event(session_maker, reconciliation)

    async with session_maker() as session:
        payment = await payments.get(session, enrollment.payment_id)  # type: ignore[arg-type]
    assert payment.status == 'awaiting_confirmation'


async def test_event_is_given_up_after_max_attempts(
    session_maker: async_sessionmaker[AsyncSession],
    enrollments: EnrollmentStateMachine,
    payments: PaymentStore,
    reconciliation: ReconciliationService,
    httpx_mock: HTTPXMock,
    monkeypatch: pytest.MonkeyPatch
):
    monkeypatch.setattr(settings, 'payment_event_max_attempts', 1)
    _, transaction_id = await redirect_payment(session_maker, enrollments, payments, httpx_mock)
    httpx_mock.add_response(
        method='GET',
        url='https://sandbox.sslcommerz.com/validator/api/validationserverAPI.php?val_id=val_1&store_id=testbox&store_passwd=qwerty&format=json',
        status_code=status.HTTP_503_SERVICE_UNAVAILABLE
    )
    await get_payment_event_queue(session_maker).enqueue(redirect_success(transaction_id))

    assert await process_next_event(session_maker, reconciliation)

    assert await queued(session_maker) == []
    async with session_maker() as session:
        conflict = await session.scalar(select(tables.PaymentConflict))
    assert conflict is not None
    assert conflict.kind == 'unprocessable_event'
    assert conflict.event is not None
    assert conflict.event['source_gateway_transaction_id'] == transaction_id


async def test_unreadable_event_is_dropped(
    session_maker: async_sessionmaker[AsyncSession],
    reconciliation: ReconciliationService
):
    async with session_maker() as session, session.begin():
        session.add(tables.PaymentEventRequest(
            id=uuid.uuid4(),
            created_at=datetime.now(),
            attempts=0,
            gateway='card',
            event={'gateway': 'card', 'reported_status': 'teleported'}
        ))

    assert await process_next_event(session_maker, reconciliation)

    assert await queued(session_maker) == []
    async with session_maker() as session:
        assert await session.scalar(select(func.count()).select_from(tables.PaymentConflict)) == 1


async def test_unmatched_event_is_consumed(
    session_maker: async_sessionmaker[AsyncSession],
    reconciliation: ReconciliationService
):
    await get_payment_event_queue(session_maker).enqueue(PaymentEvent(
        gateway='card',
        source_gateway_transaction_id='pi_unknown',
        reported_status='succeeded',
        received_via='webhook',
        raw_payload={}
    ))

    assert await process_next_event(session_maker, reconciliation)
    assert await queued(session_maker) == []


async def test_unreadable_validation_reply_is_retried(
    session_maker: async_sessionmaker[AsyncSession],
    enrollments: EnrollmentStateMachine,
    payments: PaymentStore,
    reconciliation: ReconciliationService,
    httpx_mock: HTTPXMock
):
    _, transaction_id = await redirect_payment(session_maker, enrollments, payments, httpx_mock)
    httpx_mock.add_response(
        method='GET',
        url=re.compile(r'.*validationserverAPI.*'),
        text='<html>maintenance</html>'
    )
    await get_payment_event_queue(session_maker).enqueue(redirect_success(transaction_id))

    assert await process_next_event(session_maker, reconciliation)

    [request] = await queued(session_maker)
    assert request.attempts == 1
    assert request.claimed_until is None


class FailingReconciliation:
    def __init__(self):
        self.calls = 0

    async def reconcile(self, event: PaymentEvent) -> Reconciliation:
        self.calls += 1
        raise RuntimeError('unexpected payload shape')


async def test_unexpected_error_is_counted_then_given_up(
    session_maker: async_sessionmaker[AsyncSession],
    monkeypatch: pytest.MonkeyPatch
):
    monkeypatch.setattr(settings, 'payment_event_max_attempts', 2)
    monkeypatch.setattr(settings, 'payment_event_loop_sleep_duration', 0)
    reconciliation = FailingReconciliation()
    await get_payment_event_queue(session_maker).enqueue(redirect_success('abc'))

    assert await process_next_event(session_maker, reconciliation)  # type: ignore[arg-type]
    [request] = await queued(session_maker)
    assert request.attempts == 1

    assert await process_next_event(session_maker, reconciliation)  # type: ignore[arg-type]
    assert await queued(session_maker) == []
    assert reconciliation.calls == 2

    async with session_maker() as session:
        conflict = await session.scalar(select(tables.PaymentConflict))
    assert conflict is not None
    assert conflict.kind == 'unprocessable_event'
    assert 'RuntimeError' in conflict.detail


class ObservingReconciliation:
    """Looks at the queue from a second worker while the event is being reconciled"""

    def __init__(self, session_maker: async_sessionmaker[AsyncSession]):
        self.session_maker = session_maker
        self.seen_by_other_worker: bool | None = None
        self.claimed_until: datetime | None = None

    async def reconcile(self, event: PaymentEvent) -> Reconciliation:
        [request] = await queued(self.session_maker)
        self.claimed_until = request.claimed_until
        self.seen_by_other_worker = await process_next_event(self.session_maker, FailingReconciliation())  # type: ignore[arg-type]
        return Reconciliation(outcome='ignored')


async def test_event_is_claimed_while_reconciled(session_maker: async_sessionmaker[AsyncSession]):
    reconciliation = ObservingReconciliation(session_maker)
    await get_payment_event_queue(session_maker).enqueue(redirect_success('abc'))

    assert await process_next_event(session_maker, reconciliation)  # type: ignore[arg-type]

    assert reconciliation.claimed_until is not None
    assert reconciliation.claimed_until > datetime.now()
    assert reconciliation.seen_by_other_worker is False
    assert await queued(session_maker) == []
