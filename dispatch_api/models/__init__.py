from dispatch_api.models.campaign_run import CampaignRun
from dispatch_api.models.outbox_message import OutboxMessage

__all__ = [
    "OutboxMessage",
    "CampaignRun",
]
