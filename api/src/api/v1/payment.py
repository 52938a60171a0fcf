import logging
from typing import Annotated, Any
from uuid import UUID
from fastapi import APIRouter, Body, Depends, Path, Request
from pydantic import Field
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

import db.postgres
import tables
from errors import NotOwner
from gateways import GatewayRegistry, get_gateway_registry
from services.checkout import CheckoutService, PaymentIntent, get_checkout_service
from services.events import PaymentEventQueue, get_payment_event_queue
from services.payment import PaymentStore, get_payment_store
from services.reconciliation import Reconciliation
from tables.payment import Gateway
from .auth import Identity, get_identity, require_operator
from .schemas import ConflictOut, PaymentOut, PaymentTransitionOut, RequestBody


logger = logging.getLogger('enrollment-api-payment')

router = APIRouter()


class PaymentIntentBody(RequestBody):
    enrollment_id: UUID
    payment_method: Gateway


class ConfirmationBody(RequestBody):
    payment_id: UUID
    payload: dict[str, Any] = Field(
        default_factory=dict,
        description='What the gateway handed back to the client at the end of checkout'
    )


class RefundBody(RequestBody):
    reason: str = Field(min_length=5, max_length=500)


@router.post(
    path='/create-payment-intent',
    description=
    'Starts a payment attempt for an enrollment awaiting payment<br>'
    'The card gateway returns a `client_secret` for the client-side form, '
    'the redirect gateway returns a `gateway_url` the user has to be sent to<br>'
    'A failed or cancelled previous attempt is replaced by a new one'
)
async def create_payment_intent(
    body: Annotated[PaymentIntentBody, Body()],
    identity: Annotated[Identity, Depends(get_identity)],
    checkout: Annotated[CheckoutService, Depends(get_checkout_service)]
) -> PaymentIntent:
    return await checkout.create_payment_intent(body.enrollment_id, identity.user_id, body.payment_method)


@router.post(
    path='/confirm',
    description=
    'Client-side confirmation after checkout<br>'
    'The outcome is re-checked with the gateway, the client report alone never activates an enrollment'
)
async def confirm_payment(
    body: Annotated[ConfirmationBody, Body()],
    identity: Annotated[Identity, Depends(get_identity)],
    checkout: Annotated[CheckoutService, Depends(get_checkout_service)]
) -> Reconciliation:
    return await checkout.confirm(body.payment_id, identity.user_id, body.payload)


async def receive_callback(
    gateway: Gateway,
    request: Request,
    gateways: GatewayRegistry,
    queue: PaymentEventQueue
) -> dict[str, bool]:
    adapter = gateways.get(gateway)
    event = adapter.parse_callback(await request.body(), request.headers)

    if not event.actionable:
        logger.info(f'{gateway} callback for transaction {event.source_gateway_transaction_id} is not final, skipping')
        return {'received': True}

    request_id = await queue.enqueue(event)
    logger.info(f'{gateway} {event.reported_status} for transaction {event.source_gateway_transaction_id} queued as {request_id}')
    return {'received': True}


@router.post(
    path='/card/webhook',
    description='Card gateway webhook, accepted once the signature checks out and the event is queued'
)
async def card_webhook(
    request: Request,
    gateways: Annotated[GatewayRegistry, Depends(get_gateway_registry)],
    queue: Annotated[PaymentEventQueue, Depends(get_payment_event_queue)]
) -> dict[str, bool]:
    return await receive_callback('card', request, gateways, queue)


@router.post(
    path='/redirect/verify',
    description=
    'Redirect gateway callback (IPN and browser return)<br>'
    'Must carry the store hash (`verify_sign`, `verify_key`), a reported success counts only after the gateway validation service confirms it'
)
async def redirect_callback(
    request: Request,
    gateways: Annotated[GatewayRegistry, Depends(get_gateway_registry)],
    queue: Annotated[PaymentEventQueue, Depends(get_payment_event_queue)]
) -> dict[str, bool]:
    return await receive_callback('redirect', request, gateways, queue)


@router.get(
    path='/conflicts',
    description='Payment events that contradicted the stored state or could not be processed, for operators'
)
async def list_conflicts(
    _: Annotated[Identity, Depends(require_operator)],
    session_maker: Annotated[async_sessionmaker[AsyncSession], Depends(db.postgres.get_session_maker)],
    include_resolved: bool = False
) -> list[ConflictOut]:
    query = select(tables.PaymentConflict).order_by(tables.PaymentConflict.created_at.desc())
    if not include_resolved:
        query = query.where(tables.PaymentConflict.resolved_at.is_(None))

    async with session_maker() as session:
        return [ConflictOut.model_validate(c) for c in (await session.scalars(query)).all()]


@router.post(
    path='/{payment_id}/refund',
    description=
    'Refunds a succeeded payment in full through its gateway, for operators<br>'
    'The enrollment it paid for moves to `refunded`'
)
async def refund_payment(
    payment_id: Annotated[UUID, Path()],
    body: Annotated[RefundBody, Body()],
    identity: Annotated[Identity, Depends(require_operator)],
    checkout: Annotated[CheckoutService, Depends(get_checkout_service)]
) -> Reconciliation:
    return await checkout.refund(payment_id, identity.user_id, body.reason)


@router.get(path='/{payment_id}')
async def get_payment(
    payment_id: Annotated[UUID, Path()],
    identity: Annotated[Identity, Depends(get_identity)],
    session_maker: Annotated[async_sessionmaker[AsyncSession], Depends(db.postgres.get_session_maker)],
    payments: Annotated[PaymentStore, Depends(get_payment_store)]
) -> PaymentOut:
    async with session_maker() as session:
        payment = await payments.get(session, payment_id)
        enrollment = await session.get(tables.Enrollment, payment.enrollment_id)
        if not identity.is_operator and (enrollment is None or enrollment.user_id != identity.user_id):
            raise NotOwner('you can only view your own payments')

        history = await payments.history(session, payment_id)

    out = PaymentOut.model_validate(payment)
    out.history = [PaymentTransitionOut.model_validate(t) for t in history]
    return out
