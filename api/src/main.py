import logging
from contextlib import asynccontextmanager
from fastapi import FastAPI, Request
from fastapi.responses import ORJSONResponse
from starlette import status

import db.postgres
from api.v1 import enrollment, payment
from errors import (
    EnrollmentServiceError, ConsistencyError, ConflictingPaymentEvent, CourseNotFound, DuplicateEnrollment,
    EnrollmentNotFound, GatewayRejected, GatewayUnavailable, InvalidTransition, MalformedCallback, NotOwner,
    PaymentInProgress, PaymentNotFound
)
from gateways import get_gateway_registry
from services.catalog import get_course_catalog
from settings import pg_settings


logging.basicConfig(level=logging.INFO, format='%(asctime)s %(name)s %(levelname)s: %(message)s')
logger = logging.getLogger('enrollment-api')


ERROR_STATUS_CODES: list[tuple[type[EnrollmentServiceError], int]] = [
    (DuplicateEnrollment, status.HTTP_409_CONFLICT),
    (InvalidTransition, status.HTTP_409_CONFLICT),
    (PaymentInProgress, status.HTTP_409_CONFLICT),
    (ConflictingPaymentEvent, status.HTTP_409_CONFLICT),
    (NotOwner, status.HTTP_403_FORBIDDEN),
    (EnrollmentNotFound, status.HTTP_404_NOT_FOUND),
    (PaymentNotFound, status.HTTP_404_NOT_FOUND),
    (CourseNotFound, status.HTTP_404_NOT_FOUND),
    (GatewayRejected, status.HTTP_400_BAD_REQUEST),
    (MalformedCallback, status.HTTP_400_BAD_REQUEST),
    (GatewayUnavailable, status.HTTP_503_SERVICE_UNAVAILABLE),
    (ConsistencyError, status.HTTP_503_SERVICE_UNAVAILABLE)
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    db.postgres.init(pg_settings.get_url('psycopg'))

    yield

    await get_gateway_registry().aclose()
    await get_course_catalog().aclose()
    await db.postgres.close()


app = FastAPI(
    title='Enrollment',
    lifespan=lifespan,
    docs_url='/api/openapi',
    openapi_url='/api/openapi.json',
    default_response_class=ORJSONResponse
)


@app.exception_handler(EnrollmentServiceError)
async def service_error_handler(request: Request, e: EnrollmentServiceError) -> ORJSONResponse:
    status_code = next(
        (code for error_type, code in ERROR_STATUS_CODES if isinstance(e, error_type)),
        status.HTTP_500_INTERNAL_SERVER_ERROR
    )
    if isinstance(e, MalformedCallback):
        logger.warning(f'rejected callback to {request.url.path}: {e.message}')

    return ORJSONResponse(
        status_code=status_code,
        content={'error': type(e).__name__, 'detail': e.message}
    )


app.include_router(enrollment.router, prefix='/api/v1/enrollments', tags=['enrollments'])
app.include_router(payment.router, prefix='/api/v1/payments', tags=['payments'])
