import asyncio
import json
import httpx
import logging
import aiokafka
from aiokafka.errors import KafkaError
from datetime import datetime, timedelta
from sqlalchemy import select, update, nulls_last, or_
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

import tables
import db.postgres
from settings import settings, kafka_settings


logger = logging.getLogger('enrollment-worker-activation-notification-loop')


async def activation_notification_loop(
    handler_client: httpx.AsyncClient,
    kafka_producer: aiokafka.AIOKafkaProducer
):
    while True:
        if not await deliver_next_notification(db.postgres.get_session_maker(), handler_client, kafka_producer):
            await asyncio.sleep(settings.notification_loop_sleep_duration)


async def deliver_next_notification(
    session_maker: async_sessionmaker[AsyncSession],
    handler_client: httpx.AsyncClient,
    kafka_producer: aiokafka.AIOKafkaProducer
) -> bool:
    """
    Delivers one activation notification: once to the enrollment topic, then to the
    access-grant handler if one is configured. Delivered rows are kept, the
    enrollment id on them is what makes a second activation notice impossible.
    """

    async with session_maker() as session:
        notification = await session.scalar(
            select(tables.ActivationNotification)
            .where(
                tables.ActivationNotification.delivered_at.is_(None),
                or_(
                    tables.ActivationNotification.processed_at.is_(None),
                    tables.ActivationNotification.processed_at < (datetime.now() - timedelta(seconds=settings.notification_loop_sleep_duration))
                )
            )
            .order_by(nulls_last(tables.ActivationNotification.processed_at.asc()))
            .with_for_update(skip_locked=True)
            .limit(1)
        )
        if notification is None:
            return False

        session.expunge(notification)
        values = {tables.ActivationNotification.processed_at: datetime.now()}

        sent_to_topic = notification.sent_to_topic or await send_to_topic(notification, kafka_producer)
        if sent_to_topic:
            values[tables.ActivationNotification.sent_to_topic] = True

            if settings.activation_handler_url is None or await notify_handler(notification, handler_client):
                values[tables.ActivationNotification.delivered_at] = datetime.now()

        await session.execute(
            update(tables.ActivationNotification)
            .where(tables.ActivationNotification.id == notification.id)
            .values(values)
        )
        await session.commit()
        return True


async def send_to_topic(
    notification: tables.ActivationNotification,
    kafka_producer: aiokafka.AIOKafkaProducer
) -> bool:
    try:
        await kafka_producer.send_and_wait(
            topic=kafka_settings.enrollment_topic,
            key=str(notification.enrollment_id).encode(),
            value=json.dumps(notification.data).encode()
        )
    except KafkaError as e:
        logger.warning(f'couldn\'t send activation of enrollment {notification.enrollment_id} to the "{kafka_settings.enrollment_topic}" topic: {e}')
        return False

    logger.info(f'sent activation of enrollment {notification.enrollment_id} to the "{kafka_settings.enrollment_topic}" topic')
    return True


async def notify_handler(
    notification: tables.ActivationNotification,
    handler_client: httpx.AsyncClient
) -> bool:
    assert settings.activation_handler_url is not None

    error_msg = None
    try:
        response = await handler_client.post(
            url=settings.activation_handler_url,
            json=notification.data,
            headers={'Idempotency-Key': str(notification.enrollment_id)},
            timeout=settings.notification_timeout
        )
        if response.status_code not in (200, 201, 202, 204):
            error_msg = f'got status {response.status_code} from handler "{settings.activation_handler_url}"'
    except httpx.TransportError:
        error_msg = f'couldn\'t reach handler "{settings.activation_handler_url}"'

    if error_msg is not None:
        logger.warning(f'activation of enrollment {notification.enrollment_id} not delivered, {error_msg}')
        return False

    logger.info(f'activation of enrollment {notification.enrollment_id} delivered to handler')
    return True
