import sys
import uuid
import pathlib
import pytest
import httpx
from asgi_lifespan import LifespanManager
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

sys.path.append(str(pathlib.Path(__file__).parent.parent/'src'))
sys.path.append(str(pathlib.Path(__file__).parent))

import db.postgres
import tables
from settings import pg_settings
from main import app
from gateways import GatewayRegistry, get_gateway_registry
from services.catalog import get_course_catalog
from services.checkout import get_checkout_service
from services.enrollment import EnrollmentStateMachine, get_enrollment_state_machine
from services.events import get_payment_event_queue
from services.payment import PaymentStore, get_payment_store
from services.receipts import get_receipt_emitter
from services.reconciliation import ReconciliationService, get_reconciliation_service


def clear_service_caches():
    for factory in (
        get_gateway_registry,
        get_course_catalog,
        get_payment_store,
        get_receipt_emitter,
        get_enrollment_state_machine,
        get_reconciliation_service,
        get_checkout_service,
        get_payment_event_queue
    ):
        factory.cache_clear()


@pytest.fixture(autouse=True)
async def session_maker(tmp_path: pathlib.Path):
    pg_settings.url = f'sqlite+aiosqlite:///{tmp_path/"enroll.db"}'
    clear_service_caches()

    async with LifespanManager(app):
        assert db.postgres.engine is not None
        async with db.postgres.engine.begin() as conn:
            await conn.run_sync(tables.Base.metadata.create_all)

        yield db.postgres.get_session_maker()

    clear_service_caches()


@pytest.fixture
async def api_client():
    async with httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url='http://tests') as client:
        yield client


@pytest.fixture
def user_id() -> uuid.UUID:
    return uuid.uuid4()


@pytest.fixture
def gateways() -> GatewayRegistry:
    return get_gateway_registry()


@pytest.fixture
def payments() -> PaymentStore:
    return get_payment_store()


@pytest.fixture
def enrollments(session_maker: async_sessionmaker[AsyncSession], payments: PaymentStore) -> EnrollmentStateMachine:
    return get_enrollment_state_machine(session_maker, get_course_catalog(), payments, get_receipt_emitter())


@pytest.fixture
def reconciliation(
    session_maker: async_sessionmaker[AsyncSession],
    gateways: GatewayRegistry,
    payments: PaymentStore,
    enrollments: EnrollmentStateMachine
) -> ReconciliationService:
    return get_reconciliation_service(session_maker, gateways, payments, enrollments)
