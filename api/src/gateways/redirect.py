import json
import hashlib
import logging
import httpx
from collections.abc import Mapping
from decimal import Decimal, InvalidOperation
from typing import Any
from urllib.parse import parse_qsl
from uuid import UUID

import tables
from errors import GatewayRejected, GatewayUnavailable, MalformedCallback
from settings import RedirectGatewaySettings
from .base import GatewayAdapter, GatewayHandle, PaymentEvent, PaymentRequest, ReceivedVia, ReportedStatus, Verification


logger = logging.getLogger('enrollment-gateway-redirect')

SUCCESS_STATUSES = ('VALID', 'VALIDATED')
FAILURE_STATUSES = ('FAILED', 'CANCELLED', 'EXPIRED')
PENDING_STATUSES = ('UNATTEMPTED', 'PENDING')
REFUND_ACCEPTED_STATUSES = ('success', 'processing')


class RedirectGatewayAdapter(GatewayAdapter):
    """
    Regional redirect-based gateway.

    The user is sent to a hosted payment page and the gateway reports back through
    browser redirects and server notifications (IPN). Both must carry the store hash,
    and a reported success is accepted only after the validation API confirms it.
    """

    name = 'redirect'
    requires_verification = True

    def __init__(self, client: httpx.AsyncClient, call_timeout: float, settings: RedirectGatewaySettings):
        super().__init__(client, call_timeout)
        self.settings = settings

    @property
    def callback_url(self) -> str:
        return f'{self.settings.server_url.rstrip("/")}/api/v1/payments/redirect/verify'

    async def initiate(self, payment: PaymentRequest) -> GatewayHandle:
        if payment.currency.upper() != self.settings.currency.upper():
            raise GatewayRejected(f'redirect gateway accepts only {self.settings.currency}, got {payment.currency}')
        if payment.amount < self.settings.min_amount:
            raise GatewayRejected(f'redirect gateway minimum amount is {self.settings.min_amount} {self.settings.currency}')

        transaction_id = payment.payment_id.hex

        # https://developer.sslcommerz.com/doc/v4/#create-and-get-session
        async with self.call('initiate'):
            response = await self.client.post(
                url='/gwprocess/v4/api.php',
                data={
                    'store_id': self.settings.store_id,
                    'store_passwd': self.settings.store_password,
                    'total_amount': str(payment.amount),
                    'currency': self.settings.currency,
                    'tran_id': transaction_id,
                    'success_url': self.callback_url,
                    'fail_url': self.callback_url,
                    'cancel_url': self.callback_url,
                    'ipn_url': self.callback_url,
                    'shipping_method': 'NO',
                    'product_name': payment.description,
                    'product_category': 'Education',
                    'product_profile': 'digital-goods',
                    'num_of_item': '1',
                    'value_a': str(payment.enrollment_id)
                }
            )
        response_json = self.read_json(response, 'initiate')

        if response_json.get('status') != 'SUCCESS' or not response_json.get('GatewayPageURL'):
            raise GatewayRejected(f'redirect gateway refused the session: {response_json.get("failedreason") or "unknown reason"}')

        return GatewayHandle(
            transaction_id=transaction_id,
            gateway_url=response_json['GatewayPageURL']
        )

    def parse_callback(self, body: bytes, headers: Mapping[str, str]) -> PaymentEvent:
        content_type = headers.get('content-type', '')
        try:
            if content_type.startswith('application/json'):
                payload = json.loads(body)
                if not isinstance(payload, dict):
                    raise ValueError('payload is not an object')
            else:
                payload = dict(parse_qsl(body.decode(), keep_blank_values=True))
        except (ValueError, UnicodeDecodeError) as e:
            raise MalformedCallback(f'redirect callback cannot be decoded: {e}') from e

        self._verify_hash(payload)
        return self._to_event(payload, 'redirect-callback')

    async def confirm(self, payment: tables.Payment, payload: dict[str, Any]) -> PaymentEvent:
        # The client forwards what the gateway posted to the success/fail page
        self._verify_hash(payload)
        event = self._to_event(payload, 'client-confirmation')
        if event.source_gateway_transaction_id != payment.gateway_transaction_id:
            raise MalformedCallback(f'confirmation for payment {payment.id} names another transaction')
        return event

    async def verify(self, event: PaymentEvent, payment: tables.Payment) -> Verification:
        if not event.validation_id:
            logger.warning(f'redirect success for {event.source_gateway_transaction_id} has no validation id')
            return Verification(confirmed=False, reason='reported success carries no validation id')

        # https://developer.sslcommerz.com/doc/v4/#order-validation-api
        async with self.call('verify'):
            response = await self.client.get(
                url='/validator/api/validationserverAPI.php',
                params={
                    'val_id': event.validation_id,
                    'store_id': self.settings.store_id,
                    'store_passwd': self.settings.store_password,
                    'format': 'json'
                }
            )
        validation = self.read_json(response, 'verify')

        reason = None
        if validation.get('status') not in SUCCESS_STATUSES:
            reason = f'validation status is {validation.get("status")}'
        elif validation.get('tran_id') != payment.gateway_transaction_id:
            reason = f'validation belongs to transaction {validation.get("tran_id")}, expected {payment.gateway_transaction_id}'
        else:
            currency = validation.get('currency_type') or validation.get('currency')
            try:
                amount = Decimal(str(validation.get('amount')))
            except InvalidOperation:
                reason = f'validation amount {validation.get("amount")!r} is unreadable'
            else:
                if amount != payment.amount or str(currency).upper() != payment.currency.upper():
                    reason = f'validation reports {amount} {currency}, expected {payment.amount} {payment.currency}'

        if reason is not None:
            logger.warning(f'redirect validation {event.validation_id} for {event.source_gateway_transaction_id} rejected: {reason}')
        return Verification(confirmed=reason is None, raw_payload=validation, reason=reason)

    async def refund(self, payment: tables.Payment, settled: dict[str, Any] | None, reason: str) -> dict[str, Any]:
        bank_transaction_id = _bank_transaction_id(settled or {})
        if not bank_transaction_id:
            raise GatewayRejected(f'payment {payment.id} has no bank transaction id to refund')

        # https://developer.sslcommerz.com/doc/v4/#initiate-the-refund
        async with self.call('refund'):
            response = await self.client.get(
                url='/validator/api/merchantTransIDvalidationAPI.php',
                params={
                    'bank_tran_id': bank_transaction_id,
                    'refund_amount': str(payment.amount),
                    'refund_remarks': reason,
                    'refe_id': payment.id.hex,
                    'store_id': self.settings.store_id,
                    'store_passwd': self.settings.store_password,
                    'format': 'json'
                }
            )
        refund = self.read_json(response, 'refund')

        if refund.get('APIConnect') != 'DONE':
            raise GatewayUnavailable(f'redirect gateway refund API answered {refund.get("APIConnect")}')
        if refund.get('status') not in REFUND_ACCEPTED_STATUSES:
            raise GatewayRejected(f'redirect gateway refused the refund: {refund.get("errorReason") or refund.get("status")}')
        return refund

    def _to_event(self, payload: dict[str, Any], received_via: ReceivedVia) -> PaymentEvent:
        transaction_id = payload.get('tran_id')
        gateway_status = str(payload.get('status') or '').upper()

        if not transaction_id:
            raise MalformedCallback('redirect callback has no transaction id')

        if gateway_status in SUCCESS_STATUSES:
            status: ReportedStatus = 'succeeded'
            if not payload.get('val_id'):
                raise MalformedCallback(f'redirect success for {transaction_id} has no validation id')
        elif gateway_status in FAILURE_STATUSES:
            status = 'failed'
        elif gateway_status in PENDING_STATUSES:
            status = 'pending'
        else:
            raise MalformedCallback(f'redirect callback for {transaction_id} has unknown status "{gateway_status}"')

        return PaymentEvent(
            gateway='redirect',
            source_gateway_transaction_id=transaction_id,
            reported_status=status,
            received_via=received_via,
            raw_payload=payload,
            enrollment_id=_parse_uuid(payload.get('value_a')),
            validation_id=payload.get('val_id') or None,
            failure_reason=payload.get('error') or (gateway_status.lower() if status == 'failed' else None)
        )

    def _verify_hash(self, payload: dict[str, Any]):
        # https://developer.sslcommerz.com/doc/v4/#hash-validation
        verify_sign = payload.get('verify_sign')
        verify_key = payload.get('verify_key')
        if not verify_sign or not verify_key:
            raise MalformedCallback('redirect callback is not signed with the store hash')

        signed = {key: str(payload.get(key, '')) for key in str(verify_key).split(',')}
        if 'tran_id' not in signed or 'status' not in signed:
            raise MalformedCallback('redirect callback hash does not cover the transaction and status')
        signed['store_passwd'] = hashlib.md5(self.settings.store_password.encode()).hexdigest()
        data = '&'.join(f'{key}={signed[key]}' for key in sorted(signed))

        if hashlib.md5(data.encode()).hexdigest() != verify_sign:
            raise MalformedCallback('redirect callback hash does not match')


def _parse_uuid(value: Any) -> UUID | None:
    try:
        return UUID(str(value)) if value else None
    except ValueError:
        return None


def _bank_transaction_id(settled: dict[str, Any]) -> str | None:
    # Verified successes store the callback next to the validation response
    for part in (settled.get('validation'), settled.get('callback'), settled):
        if isinstance(part, dict) and part.get('bank_tran_id'):
            return str(part['bank_tran_id'])
    return None


def create_redirect_adapter(settings: RedirectGatewaySettings, call_timeout: float) -> RedirectGatewayAdapter:
    return RedirectGatewayAdapter(
        client=httpx.AsyncClient(base_url=settings.base_url, timeout=call_timeout),
        call_timeout=call_timeout,
        settings=settings
    )
