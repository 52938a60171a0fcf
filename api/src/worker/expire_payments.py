import asyncio
import logging
from datetime import datetime, timedelta
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from uuid import UUID

import db.postgres
from services.payment import PaymentStore
from settings import settings


logger = logging.getLogger('enrollment-worker-payment-expiry-loop')


async def payment_expiry_loop(payments: PaymentStore, ttl_sec: float):
    while True:
        await expire_payments(db.postgres.get_session_maker(), payments, ttl_sec)
        await asyncio.sleep(settings.expiry_loop_sleep_duration)


async def expire_payments(
    session_maker: async_sessionmaker[AsyncSession],
    payments: PaymentStore,
    ttl_sec: float
) -> list[UUID]:
    # The enrollment stays in `pending_payment`, the user can start a new attempt
    async with session_maker() as session, session.begin():
        expired = await payments.expire_stale(session, datetime.now() - timedelta(seconds=ttl_sec))

    if expired:
        logger.info(f'expired {len(expired)} payment attempts stuck awaiting confirmation')
    return expired
