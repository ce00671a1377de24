"""Payment ledger database models.

`payments` is the source of truth for provider payment state; registrations are
owned by the checkout flow and only have their status flipped here.
"""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import Boolean, DateTime, Index, Integer, String, UniqueConstraint, func, text
from sqlalchemy.orm import Mapped, mapped_column

from ledgerlink.common.db import Base


class Registration(Base):
    """Course registration row; status becomes `completed` once paid."""

    __tablename__ = "course_registrations"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    name: Mapped[str] = mapped_column(String)
    phone: Mapped[str] = mapped_column(String)
    email: Mapped[str | None] = mapped_column(String, nullable=True)
    course_title: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String, default="pending", index=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )


class Payment(Base):
    """One payment attempt against a provider order."""

    __tablename__ = "payments"
    __table_args__ = (
        UniqueConstraint("order_id", "provider_payment_id", name="uq_payment_order_payment"),
        # At most one attempt per order may still be waiting for its payment id.
        Index(
            "uq_payment_pending_order",
            "order_id",
            unique=True,
            postgresql_where=text("provider_payment_id IS NULL"),
            sqlite_where=text("provider_payment_id IS NULL"),
        ),
    )

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    registration_id: Mapped[int] = mapped_column(Integer, index=True)
    order_id: Mapped[str] = mapped_column(String, index=True)
    provider_payment_id: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    status: Mapped[str] = mapped_column(String, default="created", index=True)
    amount: Mapped[int] = mapped_column(Integer)
    currency: Mapped[str] = mapped_column(String(3))
    method: Mapped[str | None] = mapped_column(String, nullable=True)
    fee: Mapped[int | None] = mapped_column(Integer, nullable=True)
    tax: Mapped[int | None] = mapped_column(Integer, nullable=True)
    captured: Mapped[bool] = mapped_column(Boolean, default=False)
    error_code: Mapped[str | None] = mapped_column(String, nullable=True)
    error_description: Mapped[str | None] = mapped_column(String, nullable=True)
    error_source: Mapped[str | None] = mapped_column(String, nullable=True)
    error_step: Mapped[str | None] = mapped_column(String, nullable=True)
    error_reason: Mapped[str | None] = mapped_column(String, nullable=True)
    provider_signature: Mapped[str | None] = mapped_column(String, nullable=True)
    is_retry_attempt: Mapped[bool] = mapped_column(Boolean, default=False)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
