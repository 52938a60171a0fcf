import re
import hmac
import json
import time
import uuid
import hashlib
import httpx
from decimal import Decimal
from typing import Any
from pytest_httpx import HTTPXMock
from starlette import status

from settings import catalog_settings, card_settings, redirect_settings


def auth(user_id: uuid.UUID, role: str = 'student') -> dict[str, str]:
    return {'X-User-Id': str(user_id), 'X-User-Role': role}


def mock_course(httpx_mock: HTTPXMock, price: str, currency: str = 'USD') -> uuid.UUID:
    course_id = uuid.uuid4()
    httpx_mock.add_response(
        method='GET',
        url=f'{catalog_settings.base_url}/courses/{course_id}',
        json={'id': str(course_id), 'title': 'Course', 'price': price, 'currency': currency},
        is_reusable=True
    )
    return course_id


def mock_card_intent(httpx_mock: HTTPXMock, transaction_id: str | None = None) -> str:
    transaction_id = transaction_id or f'pi_{uuid.uuid4().hex[:24]}'
    httpx_mock.add_response(
        method='POST',
        url=f'{card_settings.base_url}/v1/payment_intents',
        json={'id': transaction_id, 'object': 'payment_intent', 'client_secret': f'{transaction_id}_secret_x'}
    )
    return transaction_id


def mock_card_intent_status(httpx_mock: HTTPXMock, transaction_id: str, intent_status: str, **extra: Any):
    httpx_mock.add_response(
        method='GET',
        url=f'{card_settings.base_url}/v1/payment_intents/{transaction_id}',
        json={'id': transaction_id, 'object': 'payment_intent', 'status': intent_status, **extra}
    )


def card_webhook(
    event_type: str,
    obj: dict[str, Any],
    secret: str | None = None,
    timestamp: int | None = None
) -> tuple[bytes, dict[str, str]]:
    body = json.dumps({
        'id': f'evt_{uuid.uuid4().hex[:24]}',
        'object': 'event',
        'type': event_type,
        'data': {'object': obj}
    }).encode()

    timestamp = timestamp if timestamp is not None else int(time.time())
    signature = hmac.new(
        (secret or card_settings.webhook_secret).encode(),
        f'{timestamp}.'.encode() + body,
        hashlib.sha256
    ).hexdigest()

    return body, {'Content-Type': 'application/json', 'Stripe-Signature': f't={timestamp},v1={signature}'}


def card_intent_succeeded(transaction_id: str, enrollment_id: uuid.UUID | str | None = None) -> tuple[bytes, dict[str, str]]:
    return card_webhook('payment_intent.succeeded', {
        'id': transaction_id,
        'object': 'payment_intent',
        'status': 'succeeded',
        'metadata': {'enrollment_id': str(enrollment_id)} if enrollment_id else {}
    })


def mock_redirect_session(httpx_mock: HTTPXMock, is_reusable: bool = False):
    httpx_mock.add_callback(
        callback=lambda request: httpx.Response(
            status_code=status.HTTP_200_OK,
            json={
                'status': 'SUCCESS',
                'sessionkey': uuid.uuid4().hex,
                'GatewayPageURL': f'{redirect_settings.base_url}/EasyCheckOut/{uuid.uuid4().hex}'
            }
        ),
        method='POST',
        url=f'{redirect_settings.base_url}/gwprocess/v4/api.php',
        is_reusable=is_reusable
    )


def mock_redirect_validation(
    httpx_mock: HTTPXMock,
    transaction_id: str,
    amount: Decimal | str,
    currency: str = 'BDT',
    validation_status: str = 'VALID'
):
    httpx_mock.add_response(
        method='GET',
        url=re.compile(re.escape(f'{redirect_settings.base_url}/validator/api/validationserverAPI.php') + r'.*'),
        json={
            'status': validation_status,
            'tran_id': transaction_id,
            'val_id': 'val_1',
            'amount': str(amount),
            'currency_type': currency,
            'bank_tran_id': f'bank_{transaction_id}'
        }
    )


def sign_redirect_callback(data: dict[str, str], store_password: str | None = None) -> dict[str, str]:
    keys = sorted(data)
    signed = dict(data)
    signed['store_passwd'] = hashlib.md5((store_password or redirect_settings.store_password).encode()).hexdigest()
    verify_sign = hashlib.md5('&'.join(f'{key}={signed[key]}' for key in sorted(signed)).encode()).hexdigest()
    return {**data, 'verify_key': ','.join(keys), 'verify_sign': verify_sign}


def redirect_callback(
    transaction_id: str,
    gateway_status: str,
    enrollment_id: uuid.UUID | None = None,
    signed: bool = True,
    **extra: str
) -> dict[str, str]:
    data = {'tran_id': transaction_id, 'status': gateway_status, **extra}
    if gateway_status in ('VALID', 'VALIDATED'):
        data.setdefault('val_id', 'val_1')
    if enrollment_id is not None:
        data['value_a'] = str(enrollment_id)
    return sign_redirect_callback(data) if signed else data


def mock_card_refund(httpx_mock: HTTPXMock, refund_status: str = 'succeeded'):
    httpx_mock.add_response(
        method='POST',
        url=f'{card_settings.base_url}/v1/refunds',
        json={'id': f're_{uuid.uuid4().hex[:24]}', 'object': 'refund', 'status': refund_status}
    )


def mock_redirect_refund(httpx_mock: HTTPXMock, refund_status: str = 'success', api_connect: str = 'DONE'):
    httpx_mock.add_response(
        method='GET',
        url=re.compile(re.escape(f'{redirect_settings.base_url}/validator/api/merchantTransIDvalidationAPI.php') + r'.*'),
        json={'APIConnect': api_connect, 'status': refund_status, 'refund_ref_id': uuid.uuid4().hex}
    )
