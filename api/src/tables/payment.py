from .base import Base
from typing import Literal
from datetime import datetime
from uuid import UUID
from decimal import Decimal
from sqlalchemy import ForeignKey, Numeric
from sqlalchemy.orm import Mapped, mapped_column

from .enrollment import Enrollment


Status = Literal['initiated', 'awaiting_confirmation', 'succeeded', 'failed', 'cancelled', 'refunded']
Gateway = Literal['card', 'redirect']

TERMINAL_STATUSES: tuple[Status, ...] = ('succeeded', 'failed', 'cancelled', 'refunded')


class Payment(Base):
    __tablename__ = 'payment'

    id: Mapped[UUID] = mapped_column(primary_key=True)
    enrollment_id: Mapped[UUID] = mapped_column(ForeignKey(Enrollment.id, ondelete='RESTRICT'), index=True)
    gateway: Mapped[Gateway] = mapped_column()
    gateway_transaction_id: Mapped[str | None] = mapped_column(index=True, unique=True, nullable=True)
    created_at: Mapped[datetime] = mapped_column()
    updated_at: Mapped[datetime] = mapped_column()
    status: Mapped[Status] = mapped_column(index=True)
    version: Mapped[int] = mapped_column(default=0)
    failure_reason: Mapped[str | None] = mapped_column(nullable=True)

    amount: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    currency: Mapped[str] = mapped_column()
