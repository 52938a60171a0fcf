import asyncio
import logging
from datetime import datetime, timedelta
from uuid import uuid4
from pydantic import ValidationError
from sqlalchemy import delete, select, update, nulls_last, or_
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

import tables
import db.postgres
from errors import EnrollmentServiceError, GatewayUnavailable
from gateways import PaymentEvent
from services.reconciliation import ReconciliationService
from settings import settings


logger = logging.getLogger('enrollment-worker-payment-event-loop')


async def payment_event_loop(reconciliation: ReconciliationService):
    while True:
        if not await process_next_event(db.postgres.get_session_maker(), reconciliation):
            await asyncio.sleep(settings.payment_event_loop_sleep_duration)


async def process_next_event(
    session_maker: async_sessionmaker[AsyncSession],
    reconciliation: ReconciliationService
) -> bool:
    """Reconciles one queued gateway callback, returns False when the queue has nothing ready"""

    now = datetime.now()
    async with session_maker() as session:
        request = await session.scalar(
            select(tables.PaymentEventRequest)
            .where(
                or_(
                    tables.PaymentEventRequest.processed_at.is_(None),
                    tables.PaymentEventRequest.processed_at < (now - timedelta(seconds=settings.payment_event_loop_sleep_duration))
                ),
                or_(
                    tables.PaymentEventRequest.claimed_until.is_(None),
                    tables.PaymentEventRequest.claimed_until < now
                )
            )
            .order_by(nulls_last(tables.PaymentEventRequest.processed_at.asc()), tables.PaymentEventRequest.created_at.asc())
            .with_for_update(skip_locked=True)
            .limit(1)
        )
        if request is None:
            return False

        session.expunge(request)
        try:
            event = PaymentEvent.model_validate(request.event)
        except ValidationError as e:
            logger.error(f'payment event {request.id} cannot be read, dropping it: {e}')
            await record_unprocessable(session, request, f'stored event cannot be read: {e}')
            await session.commit()
            return True

        # Reconciliation calls gateways, the row is claimed instead of staying locked
        await session.execute(
            update(tables.PaymentEventRequest)
            .where(tables.PaymentEventRequest.id == request.id)
            .values({tables.PaymentEventRequest.claimed_until: now + timedelta(seconds=settings.payment_event_claim_duration)})
        )
        await session.commit()

    error = None
    try:
        result = await reconciliation.reconcile(event)
        logger.info(
            f'payment event {request.id} ({event.gateway} {event.reported_status} via {event.received_via}): '
            f'{result.outcome}{f", {result.detail}" if result.detail else ""}'
        )
    except GatewayUnavailable as e:
        error = f'gateway unavailable: {e.message}'
        logger.warning(f'payment event {request.id} will be retried, {error}')
    except EnrollmentServiceError as e:
        error = f'{type(e).__name__}: {e.message}'
        logger.error(f'payment event {request.id} failed, {error}')
    except Exception as e:
        error = f'unexpected {type(e).__name__}: {e}'
        logger.exception(f'payment event {request.id} failed unexpectedly')

    async with session_maker() as session:
        if error is None:
            await session.execute(
                delete(tables.PaymentEventRequest)
                .where(tables.PaymentEventRequest.id == request.id)
            )
        elif request.attempts + 1 >= settings.payment_event_max_attempts:
            logger.error(f'payment event {request.id} gave up after {request.attempts + 1} attempts')
            await record_unprocessable(session, request, error)
        else:
            await session.execute(
                update(tables.PaymentEventRequest)
                .where(tables.PaymentEventRequest.id == request.id)
                .values({
                    tables.PaymentEventRequest.attempts: request.attempts + 1,
                    tables.PaymentEventRequest.processed_at: datetime.now(),
                    tables.PaymentEventRequest.claimed_until: None
                })
            )

        await session.commit()
    return True


async def record_unprocessable(session: AsyncSession, request: tables.PaymentEventRequest, detail: str):
    session.add(tables.PaymentConflict(
        id=uuid4(),
        created_at=datetime.now(),
        kind='unprocessable_event',
        payment_id=None,
        stored_status=None,
        reported_status=request.event.get('reported_status'),
        received_via=request.event.get('received_via'),
        detail=detail,
        event=request.event
    ))
    await session.execute(
        delete(tables.PaymentEventRequest)
        .where(tables.PaymentEventRequest.id == request.id)
    )
