from datetime import datetime, timezone
from typing import Optional

from dispatch_api.logging_config import get_logger
from dispatch_api.services.outbox_store import MAX_DUE_LIMIT, ensure_utc, utcnow
from dispatch_api.services.run_state_machine import CampaignRunStatus
from dispatch_api.services.stores import DispatchStores

logger = get_logger("health_service")

# a due entry older than this means the drain worker is not keeping up
DRAIN_LAG_WARN_SECONDS = 15 * 60


def get_dispatch_health(
    stores: DispatchStores,
    client_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> dict:
    """Outbox backlog and run state for operators."""
    now = ensure_utc(now) or utcnow()
    paused_run_ids = stores.runs.list_ids_by_status(client_id, CampaignRunStatus.PAUSED)
    due = stores.outbox.list_due(client_id, MAX_DUE_LIMIT, now=now, exclude_run_ids=paused_run_ids)
    due_count = stores.outbox.count_due(client_id, now=now, exclude_run_ids=paused_run_ids)

    oldest_due_seconds = None
    if due:
        oldest = min(item.not_before or item.created_at for item in due)
        oldest_due_seconds = int((now - oldest).total_seconds())

    status = "ok"
    if oldest_due_seconds is not None and oldest_due_seconds > DRAIN_LAG_WARN_SECONDS:
        status = "degraded"
        logger.warning(
            "Outbox drain lagging",
            extra={"context": {"client_id": client_id, "oldest_due_seconds": oldest_due_seconds}},
        )

    return {
        "status": status,
        "outbox": stores.outbox.count_by_status(client_id),
        "due": due_count,
        "oldest_due_seconds": oldest_due_seconds,
        "runs": {
            "sending": len(stores.runs.list_ids_by_status(client_id, CampaignRunStatus.SENDING)),
            "paused": len(paused_run_ids),
        },
        "checked_at": datetime.now(timezone.utc).isoformat(),
    }
