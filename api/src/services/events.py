from dataclasses import dataclass
from datetime import datetime
from functools import lru_cache
from typing import Annotated
from uuid import UUID, uuid4
from fastapi import Depends
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

import db.postgres
import tables
from gateways import PaymentEvent


@dataclass(frozen=True)
class PaymentEventQueue:
    """Durable queue of gateway callbacks, drained by the worker's payment event loop"""

    session_maker: async_sessionmaker[AsyncSession]

    async def enqueue(self, event: PaymentEvent) -> UUID:
        request_id = uuid4()
        async with self.session_maker() as session, session.begin():
            session.add(tables.PaymentEventRequest(
                id=request_id,
                created_at=datetime.now(),
                processed_at=None,
                attempts=0,
                gateway=event.gateway,
                event=event.model_dump(mode='json')
            ))
        return request_id


@lru_cache
def get_payment_event_queue(
    session_maker: Annotated[async_sessionmaker[AsyncSession], Depends(db.postgres.get_session_maker)]
) -> PaymentEventQueue:
    return PaymentEventQueue(session_maker=session_maker)
