from .base import Base
from typing import Literal
from datetime import datetime
from uuid import UUID
from decimal import Decimal
from sqlalchemy import Index, Numeric, text
from sqlalchemy.orm import Mapped, mapped_column


Status = Literal['pending_payment', 'active', 'completed', 'cancelled', 'refunded']

LIVE_STATUSES: tuple[Status, ...] = ('pending_payment', 'active', 'completed')

_live_clause = text("status IN ('pending_payment', 'active', 'completed')")


class Enrollment(Base):
    __tablename__ = 'enrollment'
    __table_args__ = (
        Index(
            'uq_enrollment_live_user_course', 'user_id', 'course_id',
            unique=True,
            postgresql_where=_live_clause,
            sqlite_where=_live_clause
        ),
    )

    id: Mapped[UUID] = mapped_column(primary_key=True)
    user_id: Mapped[UUID] = mapped_column(index=True)
    course_id: Mapped[UUID] = mapped_column(index=True)
    created_at: Mapped[datetime] = mapped_column()
    updated_at: Mapped[datetime] = mapped_column()
    status: Mapped[Status] = mapped_column(index=True)
    payment_id: Mapped[UUID | None] = mapped_column(nullable=True)
    progress: Mapped[int] = mapped_column(default=0)
    cancellation_reason: Mapped[str | None] = mapped_column(nullable=True)

    price: Mapped[Decimal] = mapped_column(Numeric(12, 2))
    currency: Mapped[str] = mapped_column()
