"""Initial schema: users, credit ledger, generations, payment events.

Revision ID: 001
Revises: (none)
Create Date: 2026-10-17
"""

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects.postgresql import JSONB, UUID

revision = "001"
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # --- users ---
    op.create_table(
        "users",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("email", sa.String(255), nullable=False),
        sa.Column("credit_balance", sa.Integer(), server_default="0", nullable=False),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.CheckConstraint("credit_balance >= 0", name="ck_users_credit_balance"),
    )

    # --- credit_transactions (append-only) ---
    op.create_table(
        "credit_transactions",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "user_id",
            sa.String(64),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("amount", sa.Integer(), nullable=False),
        sa.Column("type", sa.String(20), nullable=False),
        sa.Column("description", sa.Text(), server_default="", nullable=False),
        sa.Column("external_ref", sa.String(255), nullable=True, unique=True),
        sa.Column("generation_id", UUID(as_uuid=True), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.UniqueConstraint(
            "generation_id", "type", name="uq_credit_transactions_generation_type"
        ),
        sa.CheckConstraint(
            "type IN ('purchase', 'generation', 'refund', 'bonus', 'hd_unlock')",
            name="ck_credit_transactions_type",
        ),
    )
    op.create_index(
        "idx_credit_transactions_user", "credit_transactions", ["user_id", "created_at"]
    )

    # --- generations ---
    op.create_table(
        "generations",
        sa.Column("id", UUID(as_uuid=True), primary_key=True),
        sa.Column(
            "user_id",
            sa.String(64),
            sa.ForeignKey("users.id", ondelete="CASCADE"),
            nullable=False,
        ),
        sa.Column("style_slug", sa.String(50), nullable=False),
        sa.Column("room_type", sa.String(50), nullable=False),
        sa.Column("transform_mode", sa.String(30), nullable=False),
        sa.Column("input_image_ref", sa.String(1000), nullable=False),
        sa.Column("output_image_ref", sa.String(1000), nullable=True),
        sa.Column("status", sa.String(20), server_default="pending", nullable=False),
        sa.Column("prompt", sa.Text(), nullable=False),
        sa.Column("hd_unlocked", sa.Boolean(), server_default=sa.text("false"), nullable=False),
        sa.Column("provider_job_id", sa.String(255), nullable=True, unique=True),
        sa.Column("payment_ref", sa.String(255), nullable=True),
        sa.Column("error", sa.Text(), nullable=True),
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.CheckConstraint(
            "(status = 'completed' AND output_image_ref IS NOT NULL)"
            " OR (status <> 'completed' AND output_image_ref IS NULL)",
            name="ck_generations_output_iff_completed",
        ),
        sa.CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="ck_generations_status",
        ),
    )
    op.create_index("idx_generations_user", "generations", ["user_id", "created_at"])

    # --- payment_events (Stripe event ids already applied) ---
    op.create_table(
        "payment_events",
        sa.Column("id", sa.String(255), primary_key=True),
        sa.Column("type", sa.String(100), nullable=False),
        sa.Column("session_id", sa.String(255), nullable=True),
        sa.Column("action", sa.String(50), nullable=True),
        sa.Column("payload", JSONB(), nullable=True),
        sa.Column(
            "processed_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )


def downgrade() -> None:
    op.drop_table("payment_events")
    op.drop_index("idx_generations_user", table_name="generations")
    op.drop_table("generations")
    op.drop_index("idx_credit_transactions_user", table_name="credit_transactions")
    op.drop_table("credit_transactions")
    op.drop_table("users")
