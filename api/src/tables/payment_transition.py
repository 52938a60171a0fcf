from uuid import UUID
from datetime import datetime
from typing import Any, Literal
from sqlalchemy import ForeignKey
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base
from .payment import Payment


Origin = Literal['checkout', 'webhook', 'redirect-callback', 'client-confirmation', 'operator-refund', 'enrollment', 'expiry']


class PaymentTransition(Base):
    __tablename__ = 'payment_transition'

    id: Mapped[UUID] = mapped_column(primary_key=True)
    payment_id: Mapped[UUID] = mapped_column(ForeignKey(Payment.id, ondelete='RESTRICT'), index=True)
    created_at: Mapped[datetime] = mapped_column(index=True)
    from_status: Mapped[str | None] = mapped_column(nullable=True)
    to_status: Mapped[str] = mapped_column()
    origin: Mapped[Origin] = mapped_column()
    gateway_transaction_id: Mapped[str | None] = mapped_column(nullable=True)
    raw_payload: Mapped[dict[str, Any] | None] = mapped_column(nullable=True)
