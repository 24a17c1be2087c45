"""Refund holds on payments, retry schedule on outbox rows

Revision ID: 002
Revises: 001
Create Date: 2024-02-01

"""
from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op


revision: str = "002"
down_revision: Union[str, None] = "001"
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def upgrade() -> None:
    # Amount set aside by refunds whose gateway call has not returned yet.
    op.add_column(
        "payments",
        sa.Column("refund_pending", sa.Numeric(12, 2), nullable=False, server_default="0"),
    )
    op.create_check_constraint(
        "ck_payments_refund_hold_bound",
        "payments",
        "refund_pending >= 0 AND refunded_amount + refund_pending <= amount",
    )

    op.add_column(
        "outbox",
        sa.Column("next_attempt_at", sa.DateTime(timezone=True), nullable=True),
    )


def downgrade() -> None:
    op.drop_column("outbox", "next_attempt_at")
    op.drop_constraint("ck_payments_refund_hold_bound", "payments", type_="check")
    op.drop_column("payments", "refund_pending")
