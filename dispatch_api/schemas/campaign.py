from datetime import datetime
from typing import Optional

from pydantic import BaseModel, Field

from dispatch_api.schemas.outbox import DrainResult, OutboxItem
from dispatch_api.services.run_state_machine import CampaignRunKind, CampaignRunStatus


class CampaignRunItem(BaseModel):
    id: str
    client_id: str
    campaign_id: str
    kind: CampaignRunKind = CampaignRunKind.DIRECT
    status: CampaignRunStatus = CampaignRunStatus.QUEUED
    pace_profile: str = "safe"
    total_targets: int = 0
    enqueued: int = 0
    skipped: int = 0
    failed: int = 0
    sent: int = 0
    delivery_failed: int = 0
    last_error: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None


class DispatchTarget(BaseModel):
    to: str
    message: Optional[str] = None
    contact_id: Optional[str] = None
    idempotency_key: Optional[str] = None


class DispatchRequest(BaseModel):
    message: Optional[str] = None
    targets: list[DispatchTarget] = Field(default_factory=list)
    # free text: unknown profiles fall back to "safe"
    profile: Optional[str] = None


class GroupDispatchRequest(BaseModel):
    message: str
    group_ids: list[str] = Field(default_factory=list)
    profile: Optional[str] = None


class DispatchResponse(BaseModel):
    success: bool
    run_id: str
    status: CampaignRunStatus
    total_targets: int
    enqueued: int
    skipped: int
    failed: int
    drained: Optional[DrainResult] = None


class CancelResponse(BaseModel):
    success: bool
    canceled: int


class ResumeRequest(BaseModel):
    reschedule: bool = True


class RunListResponse(BaseModel):
    count: int
    runs: list[CampaignRunItem]


class RunItemsResponse(BaseModel):
    run_id: str
    count: int
    counts: dict[str, int]
    items: list[OutboxItem]


class ScheduledSend(BaseModel):
    to: str
    not_before: datetime


class GuardrailPolicyItem(BaseModel):
    profile: str
    per_send_min_seconds: int
    per_send_max_seconds: int
    pause_every_n: int
    pause_min_seconds: int
    pause_max_seconds: int
    max_targets_per_run: int


class SimulationResponse(BaseModel):
    """Dry preview of a dispatch. Nothing is stored."""

    allowed: bool
    reason: Optional[str] = None
    total_targets: int
    policy: GuardrailPolicyItem
    schedule: list[ScheduledSend] = Field(default_factory=list)
    starts_at: Optional[datetime] = None
    estimated_finish_at: Optional[datetime] = None
