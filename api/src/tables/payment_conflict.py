from uuid import UUID
from datetime import datetime
from typing import Any, Literal
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base


Kind = Literal['conflicting_event', 'activation_rejected', 'unprocessable_event']


class PaymentConflict(Base):
    __tablename__ = 'payment_conflict'

    id: Mapped[UUID] = mapped_column(primary_key=True)
    created_at: Mapped[datetime] = mapped_column(index=True)
    kind: Mapped[Kind] = mapped_column()
    payment_id: Mapped[UUID | None] = mapped_column(index=True, nullable=True)
    stored_status: Mapped[str | None] = mapped_column(nullable=True)
    reported_status: Mapped[str | None] = mapped_column(nullable=True)
    received_via: Mapped[str | None] = mapped_column(nullable=True)
    detail: Mapped[str] = mapped_column()
    event: Mapped[dict[str, Any] | None] = mapped_column(nullable=True)
    resolved_at: Mapped[datetime | None] = mapped_column(nullable=True)
