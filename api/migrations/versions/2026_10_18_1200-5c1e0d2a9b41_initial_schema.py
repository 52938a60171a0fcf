"""initial schema

Revision ID: 5c1e0d2a9b41
Revises:
Create Date: 2026-10-18 12:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = '5c1e0d2a9b41'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    op.create_table(
        'enrollment',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('user_id', sa.Uuid(), nullable=False),
        sa.Column('course_id', sa.Uuid(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.Column('status', sa.String(length=15), nullable=False),
        sa.Column('payment_id', sa.Uuid(), nullable=True),
        sa.Column('progress', sa.Integer(), nullable=False),
        sa.Column('cancellation_reason', sa.String(), nullable=True),
        sa.Column('price', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(), nullable=False)
    )
    op.create_index('ix_enrollment_user_id', 'enrollment', ['user_id'])
    op.create_index('ix_enrollment_course_id', 'enrollment', ['course_id'])
    op.create_index('ix_enrollment_status', 'enrollment', ['status'])
    # One live enrollment per user and course, cancelled and refunded ones don't count
    op.create_index(
        'uq_enrollment_live_user_course', 'enrollment', ['user_id', 'course_id'],
        unique=True,
        postgresql_where=sa.text("status IN ('pending_payment', 'active', 'completed')")
    )

    op.create_table(
        'payment',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('enrollment_id', sa.Uuid(), sa.ForeignKey('enrollment.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('gateway', sa.String(length=8), nullable=False),
        sa.Column('gateway_transaction_id', sa.String(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.Column('status', sa.String(length=21), nullable=False),
        sa.Column('version', sa.Integer(), nullable=False),
        sa.Column('failure_reason', sa.String(), nullable=True),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('currency', sa.String(), nullable=False)
    )
    op.create_index('ix_payment_enrollment_id', 'payment', ['enrollment_id'])
    op.create_index('ix_payment_gateway_transaction_id', 'payment', ['gateway_transaction_id'], unique=True)
    op.create_index('ix_payment_status', 'payment', ['status'])

    op.create_table(
        'payment_transition',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('payment_id', sa.Uuid(), sa.ForeignKey('payment.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('from_status', sa.String(), nullable=True),
        sa.Column('to_status', sa.String(), nullable=False),
        sa.Column('origin', sa.String(length=19), nullable=False),
        sa.Column('gateway_transaction_id', sa.String(), nullable=True),
        sa.Column('raw_payload', sa.JSON(), nullable=True)
    )
    op.create_index('ix_payment_transition_payment_id', 'payment_transition', ['payment_id'])
    op.create_index('ix_payment_transition_created_at', 'payment_transition', ['created_at'])

    op.create_table(
        'payment_event_request',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.Column('claimed_until', sa.DateTime(), nullable=True),
        sa.Column('attempts', sa.Integer(), nullable=False),
        sa.Column('gateway', sa.String(), nullable=False),
        sa.Column('event', sa.JSON(), nullable=False)
    )
    op.create_index('ix_payment_event_request_created_at', 'payment_event_request', ['created_at'])
    op.create_index('ix_payment_event_request_processed_at', 'payment_event_request', ['processed_at'])

    op.create_table(
        'payment_conflict',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('kind', sa.String(length=19), nullable=False),
        sa.Column('payment_id', sa.Uuid(), nullable=True),
        sa.Column('stored_status', sa.String(), nullable=True),
        sa.Column('reported_status', sa.String(), nullable=True),
        sa.Column('received_via', sa.String(), nullable=True),
        sa.Column('detail', sa.String(), nullable=False),
        sa.Column('event', sa.JSON(), nullable=True),
        sa.Column('resolved_at', sa.DateTime(), nullable=True)
    )
    op.create_index('ix_payment_conflict_created_at', 'payment_conflict', ['created_at'])
    op.create_index('ix_payment_conflict_payment_id', 'payment_conflict', ['payment_id'])

    op.create_table(
        'activation_notification',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('enrollment_id', sa.Uuid(), sa.ForeignKey('enrollment.id', ondelete='RESTRICT'), nullable=False, unique=True),
        sa.Column('payment_id', sa.Uuid(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.Column('sent_to_topic', sa.Boolean(), nullable=False),
        sa.Column('delivered_at', sa.DateTime(), nullable=True),
        sa.Column('data', sa.JSON(), nullable=False)
    )
    op.create_index('ix_activation_notification_created_at', 'activation_notification', ['created_at'])
    op.create_index('ix_activation_notification_processed_at', 'activation_notification', ['processed_at'])
    op.create_index('ix_activation_notification_delivered_at', 'activation_notification', ['delivered_at'])


def downgrade() -> None:
    op.drop_table('activation_notification')
    op.drop_table('payment_conflict')
    op.drop_table('payment_event_request')
    op.drop_table('payment_transition')
    op.drop_table('payment')
    op.drop_table('enrollment')
