from datetime import datetime
from decimal import Decimal
from typing import Any
from uuid import UUID
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel


class RequestBody(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class EnrollmentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    user_id: UUID
    course_id: UUID
    status: str
    payment_id: UUID | None
    progress: int
    price: Decimal
    currency: str
    cancellation_reason: str | None
    created_at: datetime
    updated_at: datetime


class PaymentTransitionOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    from_status: str | None
    to_status: str
    origin: str
    gateway_transaction_id: str | None
    created_at: datetime


class PaymentOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    enrollment_id: UUID
    gateway: str
    gateway_transaction_id: str | None
    status: str
    amount: Decimal
    currency: str
    failure_reason: str | None
    created_at: datetime
    updated_at: datetime
    history: list[PaymentTransitionOut] = []


class ConflictOut(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    kind: str
    payment_id: UUID | None
    stored_status: str | None
    reported_status: str | None
    received_via: str | None
    detail: str
    event: dict[str, Any] | None
    created_at: datetime
