"""SQLAlchemy ORM models.

Design principle: every exactly-once guarantee lives in the database.
The balance decrement, status transitions and HD flag are conditional
updates; the unique constraints below make duplicate charges, refunds and
payment credits impossible even when two processes race.
"""

import uuid
from datetime import UTC, datetime

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    Uuid,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, relationship


def utcnow() -> datetime:
    return datetime.now(UTC)


class Base(DeclarativeBase):
    pass


class User(Base):
    __tablename__ = "users"
    __table_args__ = (CheckConstraint("credit_balance >= 0", name="ck_users_credit_balance"),)

    # Subject claim from the identity provider
    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[str] = mapped_column(String(255), nullable=False)
    # Projection of SUM(credit_transactions.amount); the ledger is authoritative
    credit_balance: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    transactions: Mapped[list["CreditTransactionRow"]] = relationship(
        back_populates="user", cascade="all, delete"
    )
    generations: Mapped[list["GenerationRow"]] = relationship(
        back_populates="user", cascade="all, delete"
    )


class CreditTransactionRow(Base):
    __tablename__ = "credit_transactions"
    __table_args__ = (
        UniqueConstraint("generation_id", "type", name="uq_credit_transactions_generation_type"),
        CheckConstraint(
            "type IN ('purchase', 'generation', 'refund', 'bonus', 'hd_unlock')",
            name="ck_credit_transactions_type",
        ),
        Index("idx_credit_transactions_user", "user_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    amount: Mapped[int] = mapped_column(Integer, nullable=False)
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    external_ref: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True)
    # Not a foreign key: the debit is written in the same transaction that
    # creates the generation and must survive generation cleanup for audit
    generation_id: Mapped[uuid.UUID | None] = mapped_column(Uuid, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)

    user: Mapped["User"] = relationship(back_populates="transactions")


class GenerationRow(Base):
    __tablename__ = "generations"
    __table_args__ = (
        CheckConstraint(
            "(status = 'completed' AND output_image_ref IS NOT NULL)"
            " OR (status <> 'completed' AND output_image_ref IS NULL)",
            name="ck_generations_output_iff_completed",
        ),
        CheckConstraint(
            "status IN ('pending', 'processing', 'completed', 'failed')",
            name="ck_generations_status",
        ),
        Index("idx_generations_user", "user_id", "created_at"),
    )

    id: Mapped[uuid.UUID] = mapped_column(Uuid, primary_key=True, default=uuid.uuid4)
    user_id: Mapped[str] = mapped_column(
        ForeignKey("users.id", ondelete="CASCADE"), nullable=False
    )
    style_slug: Mapped[str] = mapped_column(String(50), nullable=False)
    room_type: Mapped[str] = mapped_column(String(50), nullable=False)
    transform_mode: Mapped[str] = mapped_column(String(30), nullable=False)
    input_image_ref: Mapped[str] = mapped_column(String(1000), nullable=False)
    output_image_ref: Mapped[str | None] = mapped_column(String(1000), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="pending")
    prompt: Mapped[str] = mapped_column(Text, nullable=False)
    hd_unlocked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    provider_job_id: Mapped[str | None] = mapped_column(String(255), nullable=True, unique=True)
    payment_ref: Mapped[str | None] = mapped_column(String(255), nullable=True)
    error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, onupdate=utcnow
    )

    user: Mapped["User"] = relationship(back_populates="generations")


class PaymentEventRow(Base):
    __tablename__ = "payment_events"

    # Event id assigned by the payment provider (evt_...)
    id: Mapped[str] = mapped_column(String(255), primary_key=True)
    type: Mapped[str] = mapped_column(String(100), nullable=False)
    session_id: Mapped[str | None] = mapped_column(String(255), nullable=True)
    action: Mapped[str | None] = mapped_column(String(50), nullable=True)
    payload: Mapped[dict | None] = mapped_column(
        JSON().with_variant(JSONB(), "postgresql"), nullable=True
    )
    processed_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
