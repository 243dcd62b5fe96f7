from datetime import datetime
from typing import Optional

from dispatch_api.logging_config import get_logger
from dispatch_api.services.outbox_store import CorrelationFilter, ensure_utc, utcnow
from dispatch_api.services.run_state_machine import CampaignRunKind
from dispatch_api.services.run_tracker import complete_run_if_drained
from dispatch_api.services.stores import DispatchStores

logger = get_logger("cancellation_service")

CANCEL_REASON = "campaign canceled"


def _settle_runs(
    stores: DispatchStores,
    client_id: str,
    campaign_id: str,
    kind: CampaignRunKind,
    now: datetime,
) -> None:
    try:
        for run in stores.runs.list_by_campaign(client_id, campaign_id, kind=kind, limit=200):
            complete_run_if_drained(stores.outbox, stores.runs, client_id, run.id, now=now)
    except Exception as e:
        logger.error(
            f"Run settle after cancel failed: {e}",
            extra={"context": {"client_id": client_id, "campaign_id": campaign_id}},
        )


def _cancel(
    stores: DispatchStores,
    client_id: str,
    campaign_id: str,
    correlation: CorrelationFilter,
    kind: CampaignRunKind,
    now: Optional[datetime],
) -> dict:
    client_id = str(client_id or "").strip()
    campaign_id = str(campaign_id or "").strip()
    if not client_id or not campaign_id:
        return {"canceled": 0}

    now = ensure_utc(now) or utcnow()
    canceled = stores.outbox.cancel_by_correlation(client_id, correlation, CANCEL_REASON, now=now)
    logger.info(
        "Campaign canceled",
        extra={
            "context": {
                "client_id": client_id,
                "campaign_id": campaign_id,
                "kind": kind.value,
                "canceled": canceled,
            }
        },
    )
    if canceled:
        _settle_runs(stores, client_id, campaign_id, kind, now)
    return {"canceled": canceled}


def cancel_campaign(
    stores: DispatchStores,
    client_id: str,
    campaign_id: str,
    now: Optional[datetime] = None,
) -> dict:
    """Fail every still-pending entry of a campaign. Sent entries are left alone."""
    correlation = CorrelationFilter(kind="campaign", campaign_id=str(campaign_id or "").strip())
    return _cancel(stores, client_id, campaign_id, correlation, CampaignRunKind.DIRECT, now)


def cancel_group_campaign(
    stores: DispatchStores,
    client_id: str,
    group_campaign_id: str,
    now: Optional[datetime] = None,
) -> dict:
    correlation = CorrelationFilter(kind="group_campaign", campaign_id=str(group_campaign_id or "").strip())
    return _cancel(stores, client_id, group_campaign_id, correlation, CampaignRunKind.GROUP, now)
