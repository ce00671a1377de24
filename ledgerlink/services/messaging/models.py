"""Message ledger model.

One row per provider message id. `record_kind` tells a full message apart from
a placeholder created by a status event that arrived before its message.
"""

from datetime import datetime
from uuid import uuid4

from sqlalchemy import JSON, DateTime, String, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from ledgerlink.common.db import Base


MATERIALIZED = "materialized"
STATUS_ONLY = "status_only"
PLACEHOLDER_CONTENT = "[Status update - message content not yet received]"


class WhatsAppMessage(Base):
    """Inbound or outbound provider message, or a status-only placeholder."""

    __tablename__ = "whatsapp_messages"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: str(uuid4()))
    message_id: Mapped[str] = mapped_column(String, unique=True)
    direction: Mapped[str] = mapped_column(String)
    from_number: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    to_number: Mapped[str | None] = mapped_column(String, nullable=True, index=True)
    business_account_id: Mapped[str | None] = mapped_column(String, nullable=True)
    message_type: Mapped[str] = mapped_column(String, default="text")
    content: Mapped[str] = mapped_column(String)
    status: Mapped[str] = mapped_column(String)
    timestamp: Mapped[datetime] = mapped_column(DateTime(timezone=True), index=True)
    record_kind: Mapped[str] = mapped_column(String, default=MATERIALIZED)
    provider_metadata: Mapped[dict] = mapped_column(JSON().with_variant(JSONB, "postgresql"), default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )
