from uuid import UUID
from datetime import datetime
from typing import Any
from sqlalchemy import ForeignKey
from sqlalchemy.orm import Mapped, mapped_column

from .base import Base
from .enrollment import Enrollment


class ActivationNotification(Base):
    __tablename__ = 'activation_notification'

    id: Mapped[UUID] = mapped_column(primary_key=True)
    # Idempotency key of the emitter: one notification per enrollment
    enrollment_id: Mapped[UUID] = mapped_column(ForeignKey(Enrollment.id, ondelete='RESTRICT'), unique=True)
    payment_id: Mapped[UUID | None] = mapped_column(nullable=True)
    created_at: Mapped[datetime] = mapped_column(index=True)
    processed_at: Mapped[datetime | None] = mapped_column(index=True, nullable=True)
    sent_to_topic: Mapped[bool] = mapped_column(default=False)
    delivered_at: Mapped[datetime | None] = mapped_column(index=True, nullable=True)
    data: Mapped[dict[str, Any]] = mapped_column()
