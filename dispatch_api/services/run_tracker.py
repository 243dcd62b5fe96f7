"""Campaign run lifecycle on top of the RunStore port.

Every status change is checked against the run state machine first and then
applied as a compare-and-swap on the stored status.
"""

from datetime import datetime
from typing import Optional

from dispatch_api.logging_config import get_logger
from dispatch_api.schemas.campaign import CampaignRunItem
from dispatch_api.schemas.outbox import OutboxItem, OutboxStatus
from dispatch_api.services.alert_service import alert_run_failed
from dispatch_api.services.errors import RunNotFoundError
from dispatch_api.services.outbox_store import OutboxStore, RunStore, clamp_error, ensure_utc, make_id, utcnow
from dispatch_api.services.run_state_machine import (
    CampaignRunKind,
    CampaignRunStatus,
    InvalidRunTransitionError,
    transition,
)

logger = get_logger("run_tracker")

DELIVERY_COUNTERS = {
    OutboxStatus.SENT: "sent",
    OutboxStatus.FAILED: "delivery_failed",
}


def create_run(
    runs: RunStore,
    *,
    client_id: str,
    campaign_id: str,
    kind: CampaignRunKind,
    pace_profile: str,
    total_targets: int,
    now: Optional[datetime] = None,
) -> CampaignRunItem:
    now = ensure_utc(now) or utcnow()
    run = CampaignRunItem(
        id=make_id("run_"),
        client_id=client_id,
        campaign_id=campaign_id,
        kind=kind,
        status=CampaignRunStatus.QUEUED,
        pace_profile=pace_profile,
        total_targets=total_targets,
        created_at=now,
        updated_at=now,
    )
    runs.create(run)
    logger.info(
        "Campaign run created",
        extra={
            "context": {
                "client_id": client_id,
                "campaign_id": campaign_id,
                "run_id": run.id,
                "kind": run.kind.value,
                "total_targets": total_targets,
            }
        },
    )
    return run


def get_run(runs: RunStore, client_id: str, run_id: str) -> CampaignRunItem:
    run = runs.get(client_id, run_id)
    if run is None:
        raise RunNotFoundError(f"Campaign run {run_id} not found")
    return run


def list_runs(
    runs: RunStore,
    client_id: str,
    campaign_id: str,
    kind: Optional[CampaignRunKind] = None,
    limit: int = 50,
) -> list[CampaignRunItem]:
    return runs.list_by_campaign(client_id, campaign_id, kind=kind, limit=limit)


def list_run_items(outbox: OutboxStore, runs: RunStore, client_id: str, run_id: str) -> list[OutboxItem]:
    """Per-target ledger of a run: every entry it wrote, in schedule order."""
    get_run(runs, client_id, run_id)
    return outbox.list_entries_for_run(client_id, run_id)


def _apply(
    runs: RunStore,
    run: CampaignRunItem,
    to_status: CampaignRunStatus,
    fields: Optional[dict] = None,
    now: Optional[datetime] = None,
) -> CampaignRunItem:
    transition(run.status, to_status)
    updated = runs.update_status(run.client_id, run.id, run.status, to_status, fields=fields, now=now)
    if updated is None:
        current = get_run(runs, run.client_id, run.id)
        raise InvalidRunTransitionError(current.status, to_status)

    logger.info(
        "Campaign run transition",
        extra={
            "context": {
                "client_id": run.client_id,
                "run_id": run.id,
                "from": run.status.value,
                "to": to_status.value,
            }
        },
    )
    return updated


def start_run(runs: RunStore, run: CampaignRunItem, now: Optional[datetime] = None) -> CampaignRunItem:
    now = ensure_utc(now) or utcnow()
    return _apply(runs, run, CampaignRunStatus.SENDING, {"started_at": now}, now=now)


def fail_run(
    runs: RunStore,
    client_id: str,
    run_id: str,
    error: str,
    now: Optional[datetime] = None,
    alert: bool = True,
) -> Optional[CampaignRunItem]:
    """Move a queued or sending run to `failed`. Returns None if it already left those states.

    Async callers pass `alert=False` and send the alert themselves.
    """
    now = ensure_utc(now) or utcnow()
    run = get_run(runs, client_id, run_id)
    if run.status not in (CampaignRunStatus.QUEUED, CampaignRunStatus.SENDING):
        logger.warning(
            "Run not failed: status already moved on",
            extra={"context": {"client_id": client_id, "run_id": run_id, "status": run.status.value}},
        )
        return None

    last_error = clamp_error(error) or "unknown error"
    updated = runs.update_status(
        client_id,
        run_id,
        run.status,
        CampaignRunStatus.FAILED,
        fields={"last_error": last_error, "finished_at": now},
        now=now,
    )
    if updated is None:
        return None

    logger.error(
        "Campaign run failed",
        extra={"context": {"client_id": client_id, "run_id": run_id, "error": last_error}},
    )
    if alert:
        try:
            alert_run_failed(client_id, run_id, last_error)
        except Exception as e:
            logger.error(f"Run failure alert error: {e}")
    return updated


def pause_run(runs: RunStore, client_id: str, run_id: str, now: Optional[datetime] = None) -> CampaignRunItem:
    run = get_run(runs, client_id, run_id)
    if run.status == CampaignRunStatus.PAUSED:
        return run
    return _apply(runs, run, CampaignRunStatus.PAUSED, now=now)


def resume_run(runs: RunStore, client_id: str, run_id: str, now: Optional[datetime] = None) -> CampaignRunItem:
    """Return a paused run to `sending`, or to `queued` if it never started."""
    run = get_run(runs, client_id, run_id)
    target = CampaignRunStatus.SENDING if run.started_at else CampaignRunStatus.QUEUED
    return _apply(runs, run, target, now=now)


def enqueue_outcomes(run: CampaignRunItem) -> int:
    return run.enqueued + run.skipped + run.failed


def complete_run_if_drained(
    outbox: OutboxStore,
    runs: RunStore,
    client_id: str,
    run_id: str,
    now: Optional[datetime] = None,
) -> Optional[CampaignRunItem]:
    """Mark a sending run `done` once every target is accounted for and none are pending.

    A run whose enqueue loop is still writing entries is never completed, even
    if everything written so far has been resolved or canceled.
    """
    run = runs.get(client_id, run_id)
    if run is None or run.status != CampaignRunStatus.SENDING:
        return run
    if enqueue_outcomes(run) < run.total_targets:
        return run
    if outbox.count_pending(client_id, run_id) > 0:
        return run

    now = ensure_utc(now) or utcnow()
    updated = runs.update_status(
        client_id,
        run_id,
        CampaignRunStatus.SENDING,
        CampaignRunStatus.DONE,
        fields={"finished_at": now},
        now=now,
    )
    if updated is None:
        return runs.get(client_id, run_id)

    logger.info(
        "Campaign run done",
        extra={
            "context": {
                "client_id": client_id,
                "run_id": run_id,
                "enqueued": updated.enqueued,
                "sent": updated.sent,
                "delivery_failed": updated.delivery_failed,
            }
        },
    )
    return updated


def _increment(runs: RunStore, client_id: str, run_id: str, counter: str) -> bool:
    try:
        return runs.increment(client_id, run_id, counter)
    except Exception as e:
        logger.error(
            f"Run counter update failed: {e}",
            extra={"context": {"client_id": client_id, "run_id": run_id, "counter": counter}},
        )
        return False


def record_enqueue_outcome(runs: RunStore, client_id: str, run_id: str, counter: str) -> bool:
    """Count one target as `enqueued`, `skipped` or `failed`."""
    if counter not in ("enqueued", "skipped", "failed"):
        raise ValueError(f"Not an enqueue counter: {counter}")
    return _increment(runs, client_id, run_id, counter)


def record_delivery_outcome(runs: RunStore, client_id: str, run_id: str, status: OutboxStatus) -> bool:
    counter = DELIVERY_COUNTERS.get(OutboxStatus(status))
    if counter is None:
        raise ValueError(f"Not a delivery outcome: {status}")
    return _increment(runs, client_id, run_id, counter)
