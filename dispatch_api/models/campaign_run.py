from sqlalchemy import Column, DateTime, Index, Integer, Text
from sqlalchemy.sql import func

from dispatch_api.database import Base


class CampaignRun(Base):
    __tablename__ = "campaign_runs"
    __table_args__ = (Index("ix_campaign_runs_campaign", "client_id", "campaign_id", "kind"),)

    id = Column(Text, primary_key=True)
    client_id = Column(Text, nullable=False, index=True)
    campaign_id = Column(Text, nullable=False)
    kind = Column(Text, nullable=False, default="direct")
    status = Column(Text, nullable=False, default="queued")
    pace_profile = Column(Text, nullable=False, default="safe")
    total_targets = Column(Integer, nullable=False, default=0)
    enqueued = Column(Integer, nullable=False, default=0)
    skipped = Column(Integer, nullable=False, default=0)
    failed = Column(Integer, nullable=False, default=0)
    sent = Column(Integer, nullable=False, default=0)
    delivery_failed = Column(Integer, nullable=False, default=0)
    last_error = Column(Text)
    created_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at = Column(DateTime(timezone=True), nullable=False, server_default=func.now())
    started_at = Column(DateTime(timezone=True))
    finished_at = Column(DateTime(timezone=True))
