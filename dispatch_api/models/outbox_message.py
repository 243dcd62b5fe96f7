from sqlalchemy import JSON, Column, DateTime, Index, Text, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.sql import func

from dispatch_api.database import Base

JSONType = JSON().with_variant(JSONB(), "postgresql")


class OutboxMessage(Base):
    __tablename__ = "outbox_messages"
    __table_args__ = (
        UniqueConstraint("client_id", "idempotency_key", name="uq_outbox_messages_client_idempotency"),
        Index("ix_outbox_messages_due", "status", "not_before", "created_at"),
        Index("ix_outbox_messages_correlation", "client_id", "correlation_kind", "campaign_id"),
    )

    id = Column(Text, primary_key=True)
    client_id = Column(Text, nullable=False, index=True)
    channel = Column(Text, nullable=False, default="whatsapp")
    to = Column(Text, nullable=False)
    message = Column(Text, nullable=False)
    status = Column(Text, nullable=False, default="pending")
    not_before = Column(DateTime(timezone=True))
    idempotency_key = Column(Text)
    message_type = Column(Text)
    contact_id = Column(Text)
    # denormalized from correlation for cancellation and paused-run filtering
    correlation_kind = Column(Text)
    campaign_id = Column(Text)
    run_id = Column(Text, index=True)
    correlation = Column(JSONType)
    delivery_meta = Column(JSONType)
    last_error = Column(Text)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    resolved_at = Column(DateTime(timezone=True))
