import json
import logging
import httpx
import stripe
from collections.abc import Mapping
from decimal import Decimal
from typing import Any
from uuid import UUID

import tables
from errors import GatewayRejected, GatewayUnavailable, InvalidTransition, MalformedCallback
from settings import CardGatewaySettings
from .base import GatewayAdapter, GatewayHandle, PaymentEvent, PaymentRequest, ReportedStatus


logger = logging.getLogger('enrollment-gateway-card')

ZERO_DECIMAL_CURRENCIES = frozenset({'jpy', 'krw', 'vnd', 'clp', 'pyg', 'ugx', 'xaf', 'xof'})


def to_minor_units(amount: Decimal, currency: str) -> int:
    if currency.lower() in ZERO_DECIMAL_CURRENCIES:
        return int(amount)
    return int((amount * 100).to_integral_value())


class CardGatewayAdapter(GatewayAdapter):
    """
    Card processor with client-side confirmation.

    `initiate` creates a payment intent and hands its client secret to the browser,
    the outcome arrives later as a signed webhook and/or a client confirmation
    which is re-read from the processor, never taken from the client.
    """

    name = 'card'

    def __init__(self, client: httpx.AsyncClient, call_timeout: float, settings: CardGatewaySettings):
        super().__init__(client, call_timeout)
        self.settings = settings

    async def initiate(self, payment: PaymentRequest) -> GatewayHandle:
        # https://docs.stripe.com/api/payment_intents/create
        async with self.call('initiate'):
            response = await self.client.post(
                url='/v1/payment_intents',
                headers={'Idempotency-Key': str(payment.payment_id)},
                data={
                    'amount': str(to_minor_units(payment.amount, payment.currency)),
                    'currency': payment.currency.lower(),
                    'description': payment.description,
                    'automatic_payment_methods[enabled]': 'true',
                    'metadata[payment_id]': str(payment.payment_id),
                    'metadata[enrollment_id]': str(payment.enrollment_id),
                    'metadata[course_id]': str(payment.course_id),
                    'metadata[user_id]': str(payment.user_id)
                }
            )
        response_json = self.read_json(response, 'initiate')
        if not response_json.get('id') or not response_json.get('client_secret'):
            raise GatewayUnavailable('card gateway returned a payment intent without id or client secret')

        return GatewayHandle(
            transaction_id=response_json['id'],
            client_secret=response_json['client_secret']
        )

    def parse_callback(self, body: bytes, headers: Mapping[str, str]) -> PaymentEvent:
        signature = headers.get('stripe-signature')
        if not signature:
            raise MalformedCallback('card webhook is not signed')

        # https://docs.stripe.com/webhooks#verify-official-libraries
        try:
            stripe.Webhook.construct_event(
                body, signature, self.settings.webhook_secret,
                tolerance=self.settings.webhook_tolerance_sec
            )
        except stripe.SignatureVerificationError as e:
            raise MalformedCallback(f'card webhook signature is invalid: {e}') from e
        except ValueError as e:
            raise MalformedCallback(f'card webhook cannot be decoded: {e}') from e

        try:
            payload = json.loads(body)
            event_type = payload['type']
            obj = payload['data']['object']
        except (ValueError, KeyError, TypeError) as e:
            raise MalformedCallback(f'card webhook has unexpected structure: {e}') from e

        if not isinstance(obj, dict):
            raise MalformedCallback('card webhook object is not a mapping')

        failure_reason = None
        match event_type:
            case 'payment_intent.succeeded':
                status: ReportedStatus = 'succeeded'
                transaction_id = obj.get('id')
            case 'payment_intent.payment_failed':
                status = 'failed'
                transaction_id = obj.get('id')
                failure_reason = (obj.get('last_payment_error') or {}).get('message') or 'payment failed'
            case 'payment_intent.canceled':
                status = 'failed'
                transaction_id = obj.get('id')
                failure_reason = f'canceled: {obj.get("cancellation_reason") or "unknown"}'
            case 'charge.refunded':
                # Partial refunds are not tracked, only a full refund ends the enrollment
                status = 'refunded' if obj.get('refunded') else 'pending'
                transaction_id = obj.get('payment_intent')
            case _:
                status = 'pending'
                transaction_id = obj.get('id') if str(obj.get('object')) == 'payment_intent' else obj.get('payment_intent')

        if status != 'pending' and not transaction_id:
            raise MalformedCallback(f'card webhook "{event_type}" carries no payment intent id')

        return PaymentEvent(
            gateway='card',
            source_gateway_transaction_id=transaction_id,
            reported_status=status,
            received_via='webhook',
            raw_payload=payload,
            enrollment_id=_metadata_uuid(obj, 'enrollment_id'),
            failure_reason=failure_reason
        )

    async def confirm(self, payment: tables.Payment, payload: dict[str, Any]) -> PaymentEvent:
        if payment.gateway_transaction_id is None:
            raise InvalidTransition(f'payment {payment.id} has not been sent to the card gateway yet')

        # https://docs.stripe.com/api/payment_intents/retrieve
        async with self.call('confirm'):
            response = await self.client.get(url=f'/v1/payment_intents/{payment.gateway_transaction_id}')
        intent = self.read_json(response, 'confirm')

        failure_reason = None
        match intent.get('status'):
            case 'succeeded':
                status: ReportedStatus = 'succeeded'
            case 'canceled':
                status = 'failed'
                failure_reason = f'canceled: {intent.get("cancellation_reason") or "unknown"}'
            case 'requires_payment_method' if intent.get('last_payment_error'):
                status = 'failed'
                failure_reason = intent['last_payment_error'].get('message') or 'payment failed'
            case _:
                status = 'pending'

        return PaymentEvent(
            gateway='card',
            source_gateway_transaction_id=payment.gateway_transaction_id,
            reported_status=status,
            received_via='client-confirmation',
            raw_payload=intent,
            enrollment_id=payment.enrollment_id,
            failure_reason=failure_reason
        )

    async def refund(self, payment: tables.Payment, settled: dict[str, Any] | None, reason: str) -> dict[str, Any]:
        # https://docs.stripe.com/api/refunds/create
        async with self.call('refund'):
            response = await self.client.post(
                url='/v1/refunds',
                headers={'Idempotency-Key': f'refund-{payment.id}'},
                data={
                    'payment_intent': payment.gateway_transaction_id,
                    'reason': 'requested_by_customer',
                    'metadata[payment_id]': str(payment.id),
                    'metadata[enrollment_id]': str(payment.enrollment_id),
                    'metadata[refund_reason]': reason
                }
            )
        refund = self.read_json(response, 'refund')

        if refund.get('status') in ('failed', 'canceled'):
            raise GatewayRejected(f'card gateway did not refund {payment.gateway_transaction_id}: {refund.get("failure_reason") or refund.get("status")}')
        return refund


def _metadata_uuid(obj: dict[str, Any], key: str) -> UUID | None:
    value = (obj.get('metadata') or {}).get(key)
    try:
        return UUID(value) if value else None
    except ValueError:
        logger.warning(f'card webhook metadata "{key}" is not a valid id: {value!r}')
        return None


def create_card_adapter(settings: CardGatewaySettings, call_timeout: float) -> CardGatewayAdapter:
    return CardGatewayAdapter(
        client=httpx.AsyncClient(
            base_url=settings.base_url,
            auth=httpx.BasicAuth(settings.secret_key, ''),
            timeout=call_timeout
        ),
        call_timeout=call_timeout,
        settings=settings
    )
