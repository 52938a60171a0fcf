import asyncio
import httpx
from abc import ABC, abstractmethod
from collections.abc import Mapping
from contextlib import asynccontextmanager
from decimal import Decimal
from typing import Any, ClassVar, Literal
from uuid import UUID
from pydantic import BaseModel

import tables
from errors import GatewayRejected, GatewayUnavailable


ReportedStatus = Literal['succeeded', 'failed', 'refunded', 'pending']
ReceivedVia = Literal['webhook', 'redirect-callback', 'client-confirmation', 'operator-refund']


class PaymentRequest(BaseModel):
    payment_id: UUID
    enrollment_id: UUID
    user_id: UUID
    course_id: UUID
    amount: Decimal
    currency: str
    description: str


class GatewayHandle(BaseModel):
    transaction_id: str
    client_secret: str | None = None
    gateway_url: str | None = None


class PaymentEvent(BaseModel):
    gateway: tables.payment.Gateway
    source_gateway_transaction_id: str | None
    reported_status: ReportedStatus
    received_via: ReceivedVia
    raw_payload: dict[str, Any]
    enrollment_id: UUID | None = None
    validation_id: str | None = None
    failure_reason: str | None = None

    @property
    def actionable(self) -> bool:
        return self.reported_status != 'pending'


class Verification(BaseModel):
    confirmed: bool
    raw_payload: dict[str, Any] | None = None
    reason: str | None = None


class GatewayAdapter(ABC):
    name: ClassVar[tables.payment.Gateway]

    # Reported successes must be confirmed with the gateway before being accepted
    requires_verification: ClassVar[bool] = False

    def __init__(self, client: httpx.AsyncClient, call_timeout: float):
        self.client = client
        self.call_timeout = call_timeout

    @abstractmethod
    async def initiate(self, payment: PaymentRequest) -> GatewayHandle:
        ...

    @abstractmethod
    def parse_callback(self, body: bytes, headers: Mapping[str, str]) -> PaymentEvent:
        ...

    @abstractmethod
    async def confirm(self, payment: tables.Payment, payload: dict[str, Any]) -> PaymentEvent:
        ...

    @abstractmethod
    async def refund(self, payment: tables.Payment, settled: dict[str, Any] | None, reason: str) -> dict[str, Any]:
        """
        Returns the gateway's refund record for a succeeded payment in full.
        `settled` is the raw payload stored when the payment succeeded.
        """

    async def verify(self, event: PaymentEvent, payment: tables.Payment) -> Verification:
        return Verification(confirmed=True)

    @asynccontextmanager
    async def call(self, operation: str):
        try:
            async with asyncio.timeout(self.call_timeout):
                yield
        except TimeoutError as e:
            raise GatewayUnavailable(f'{self.name} gateway timed out on {operation}') from e
        except httpx.TransportError as e:
            raise GatewayUnavailable(f'{self.name} gateway is unreachable on {operation}: {e}') from e

    def check_response(self, response: httpx.Response, operation: str):
        if response.status_code >= 500:
            raise GatewayUnavailable(f'{self.name} gateway returned {response.status_code} on {operation}')
        if response.status_code >= 400:
            raise GatewayRejected(f'{self.name} gateway rejected {operation}: {response.text}')

    def read_json(self, response: httpx.Response, operation: str) -> dict[str, Any]:
        self.check_response(response, operation)
        try:
            response_json = response.json()
        except ValueError as e:
            # Maintenance pages and proxies answer with HTML
            raise GatewayUnavailable(f'{self.name} gateway sent an unreadable body on {operation}') from e
        if not isinstance(response_json, dict):
            raise GatewayUnavailable(f'{self.name} gateway sent an unexpected body on {operation}')
        return response_json
