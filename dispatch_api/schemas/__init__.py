from dispatch_api.schemas.campaign import (
    CampaignRunItem,
    DispatchRequest,
    DispatchResponse,
    DispatchTarget,
    GroupDispatchRequest,
)
from dispatch_api.schemas.outbox import (
    CampaignCorrelation,
    DrainResult,
    EnqueueRequest,
    GroupCampaignCorrelation,
    OutboxItem,
    OutboxStatus,
)
