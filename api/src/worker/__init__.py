import httpx
import aiokafka
import logging
import anyio

import db.postgres
from gateways import get_gateway_registry
from services.catalog import get_course_catalog
from services.enrollment import get_enrollment_state_machine
from services.payment import get_payment_store
from services.receipts import get_receipt_emitter
from services.reconciliation import get_reconciliation_service
from settings import settings, pg_settings, kafka_settings
from .expire_payments import payment_expiry_loop
from .notify_handlers import activation_notification_loop
from .payment_events import payment_event_loop


logger = logging.getLogger('enrollment-worker')


async def run():
    db.postgres.init(pg_settings.get_url('psycopg'))
    session_maker = db.postgres.get_session_maker()

    gateways = get_gateway_registry()
    catalog = get_course_catalog()
    payments = get_payment_store()
    enrollments = get_enrollment_state_machine(session_maker, catalog, payments, get_receipt_emitter())
    reconciliation = get_reconciliation_service(session_maker, gateways, payments, enrollments)

    handler_client = httpx.AsyncClient()
    kafka_producer = aiokafka.AIOKafkaProducer(bootstrap_servers=kafka_settings.bootstrap_servers)
    await kafka_producer.start()

    try:
        async with anyio.create_task_group() as tg:
            tg.start_soon(payment_event_loop, reconciliation)
            tg.start_soon(activation_notification_loop, handler_client, kafka_producer)
            if settings.awaiting_confirmation_ttl_sec is not None:
                tg.start_soon(payment_expiry_loop, payments, settings.awaiting_confirmation_ttl_sec)

            logger.info('worker is started')
    finally:
        await kafka_producer.stop()
        await handler_client.aclose()
        await gateways.aclose()
        await catalog.aclose()
        await db.postgres.close()
