from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter


class OutboxStatus(str, Enum):
    PENDING = "pending"
    SENT = "sent"
    FAILED = "failed"


class CampaignCorrelation(BaseModel):
    kind: Literal["campaign"] = "campaign"
    campaign_id: str
    run_id: Optional[str] = None

    @property
    def owner_id(self) -> str:
        return self.campaign_id


class GroupCampaignCorrelation(BaseModel):
    kind: Literal["group_campaign"] = "group_campaign"
    group_campaign_id: str
    run_id: Optional[str] = None
    group_id: Optional[str] = None

    @property
    def owner_id(self) -> str:
        return self.group_campaign_id


Correlation = Annotated[
    Union[CampaignCorrelation, GroupCampaignCorrelation],
    Field(discriminator="kind"),
]

_correlation_adapter = TypeAdapter(Optional[Correlation])


def parse_correlation(value: Any) -> Optional[Union[CampaignCorrelation, GroupCampaignCorrelation]]:
    if not value:
        return None
    return _correlation_adapter.validate_python(value)


class EnqueueRequest(BaseModel):
    client_id: str
    to: str
    message: str
    not_before: Optional[datetime] = None
    idempotency_key: Optional[str] = None
    message_type: Optional[str] = None
    contact_id: Optional[str] = None
    correlation: Optional[Correlation] = None


class OutboxItem(BaseModel):
    id: str
    client_id: str
    channel: str = "whatsapp"
    to: str
    message: str
    status: OutboxStatus = OutboxStatus.PENDING
    not_before: Optional[datetime] = None
    idempotency_key: Optional[str] = None
    message_type: Optional[str] = None
    contact_id: Optional[str] = None
    correlation: Optional[Correlation] = None
    delivery_meta: Optional[dict[str, Any]] = None
    last_error: Optional[str] = None
    created_at: datetime
    updated_at: datetime
    resolved_at: Optional[datetime] = None

    @property
    def run_id(self) -> Optional[str]:
        return self.correlation.run_id if self.correlation else None


class EnqueueResponse(BaseModel):
    success: bool
    created: bool
    item: OutboxItem


class OutboxListResponse(BaseModel):
    count: int
    items: list[OutboxItem]


class DrainRequest(BaseModel):
    client_id: Optional[str] = None
    limit: Optional[int] = Field(default=None, ge=1, le=200)
    dry_run: Optional[bool] = None


class DrainItemResult(BaseModel):
    id: str
    status: str
    reason: Optional[str] = None


class DrainResult(BaseModel):
    ok: bool = True
    processed: int = 0
    sent: int = 0
    failed: int = 0
    skipped: int = 0
    items: list[DrainItemResult] = []
