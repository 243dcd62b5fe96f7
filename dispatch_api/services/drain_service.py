from datetime import datetime
from typing import Optional

from dispatch_api.logging_config import bind_logger, get_logger
from dispatch_api.schemas.outbox import DrainItemResult, DrainResult, OutboxItem, OutboxStatus
from dispatch_api.services.outbox_store import clamp_error, clamp_limit, ensure_utc, utcnow
from dispatch_api.services.run_state_machine import CampaignRunStatus
from dispatch_api.services.run_tracker import complete_run_if_drained, record_delivery_outcome
from dispatch_api.services.stores import DispatchStores
from dispatch_api.services.transport import PROVIDER_NOT_CONFIGURED, Transport

logger = get_logger("drain_service")


async def _deliver(
    item: OutboxItem,
    transport: Optional[Transport],
    dry_run: bool,
) -> tuple[OutboxStatus, dict]:
    if dry_run:
        return OutboxStatus.SENT, {"dry_run": True}
    if transport is None:
        return OutboxStatus.FAILED, {"error": PROVIDER_NOT_CONFIGURED}
    try:
        meta = await transport.send(item.client_id, item.to, item.message)
    except Exception as e:
        return OutboxStatus.FAILED, {"error": clamp_error(e) or type(e).__name__}
    return OutboxStatus.SENT, dict(meta or {})


def _settle_run(stores: DispatchStores, item: OutboxItem, status: OutboxStatus, now: datetime) -> None:
    """Count the delivery on the owning run and close the run if nothing is left."""
    run_id = item.run_id
    if not run_id:
        return
    record_delivery_outcome(stores.runs, item.client_id, run_id, status)
    try:
        complete_run_if_drained(stores.outbox, stores.runs, item.client_id, run_id, now=now)
    except Exception as e:
        logger.error(
            f"Run completion check failed: {e}",
            extra={"context": {"client_id": item.client_id, "run_id": run_id}},
        )


async def drain_outbox(
    stores: DispatchStores,
    transport: Optional[Transport],
    *,
    client_id: Optional[str] = None,
    limit: int = 25,
    dry_run: bool = False,
    now: Optional[datetime] = None,
) -> DrainResult:
    """Deliver one bounded batch of due entries.

    Entries are sent one at a time in `list_due` order. Pacing is already in
    each entry's `not_before`, so the pass never sleeps between sends. A storage
    error while resolving leaves the entry pending for the next pass.
    """
    now = ensure_utc(now) or utcnow()
    limit = clamp_limit(limit)
    log = bind_logger(logger, client_id=client_id, dry_run=dry_run)

    paused_run_ids = stores.runs.list_ids_by_status(client_id, CampaignRunStatus.PAUSED)
    due = stores.outbox.list_due(client_id, limit, now=now, exclude_run_ids=paused_run_ids)

    result = DrainResult()
    for item in due:
        result.processed += 1
        status, meta = await _deliver(item, transport, dry_run)

        try:
            effective = stores.outbox.resolve(item.id, status, meta, now=now)
        except Exception as e:
            log.error(f"Outbox resolve failed: {e}", context={"outbox_id": item.id})
            result.skipped += 1
            result.items.append(DrainItemResult(id=item.id, status="skipped", reason="storage_error"))
            continue

        if not effective:
            # another drain or a cancellation got there first
            result.skipped += 1
            result.items.append(DrainItemResult(id=item.id, status="skipped", reason="already_resolved"))
            continue

        if status == OutboxStatus.SENT:
            result.sent += 1
            result.items.append(DrainItemResult(id=item.id, status="sent"))
        else:
            result.failed += 1
            result.items.append(DrainItemResult(id=item.id, status="failed", reason=meta.get("error")))
            log.warning(
                "Outbox delivery failed",
                context={"outbox_id": item.id, "run_id": item.run_id, "error": meta.get("error")},
            )

        _settle_run(stores, item, status, now)

    result.ok = result.failed == 0
    if result.processed:
        log.info(
            "Outbox drain pass",
            context={
                "processed": result.processed,
                "sent": result.sent,
                "failed": result.failed,
                "skipped": result.skipped,
                "paused_runs": len(paused_run_ids),
            },
        )
    return result
