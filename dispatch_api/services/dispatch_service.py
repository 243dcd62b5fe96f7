"""Campaign dispatch: validate, pace and enqueue one outbox entry per target."""

import random
from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Optional, Union

from dispatch_api.config import Settings, get_settings
from dispatch_api.logging_config import bind_logger, get_logger
from dispatch_api.schemas.campaign import (
    CampaignRunItem,
    DispatchResponse,
    DispatchTarget,
    GuardrailPolicyItem,
    ScheduledSend,
    SimulationResponse,
)
from dispatch_api.schemas.outbox import (
    CampaignCorrelation,
    DrainResult,
    EnqueueRequest,
    GroupCampaignCorrelation,
)
from dispatch_api.services.alert_service import alert_run_failed_async
from dispatch_api.services.drain_service import drain_outbox
from dispatch_api.services.errors import DispatchValidationError, GuardrailViolationError
from dispatch_api.services.guardrail_policy import GuardrailPolicy, resolve_policy
from dispatch_api.services.outbox_store import (
    EnqueueResult,
    OutboxStore,
    clamp_error,
    ensure_utc,
    is_group_jid,
    normalize_destination,
    utcnow,
)
from dispatch_api.services.run_state_machine import CampaignRunKind
from dispatch_api.services.run_tracker import (
    complete_run_if_drained,
    create_run,
    fail_run,
    get_run,
    pause_run,
    record_enqueue_outcome,
    resume_run,
    start_run,
)
from dispatch_api.services.schedule_service import apply_send_window, build_schedule
from dispatch_api.services.stores import DispatchStores
from dispatch_api.services.transport import Transport

logger = get_logger("dispatch_service")


@dataclass
class _PreparedTarget:
    to: str
    message: str
    contact_id: Optional[str] = None
    idempotency_key: Optional[str] = None


def _schedule_base(now: datetime, settings: Settings) -> datetime:
    if not settings.send_window_enabled:
        return now
    return apply_send_window(
        now,
        start=settings.send_window_start,
        end=settings.send_window_end,
        tz_name=settings.send_window_timezone,
    )


def _prepare_targets(targets: list[DispatchTarget], default_message: Optional[str]) -> list[_PreparedTarget]:
    if not targets:
        raise DispatchValidationError("targets must not be empty")

    prepared = []
    for index, target in enumerate(targets):
        to = normalize_destination(target.to)
        message = (target.message or default_message or "").strip()
        if not to:
            raise DispatchValidationError(f"target {index}: 'to' is required")
        if not message:
            raise DispatchValidationError(f"target {index}: 'message' is required")
        prepared.append(
            _PreparedTarget(
                to=to,
                message=message,
                contact_id=target.contact_id,
                idempotency_key=(target.idempotency_key or "").strip() or None,
            )
        )
    return prepared


def _check_group_ids(group_ids: list[str]) -> None:
    invalid = [group_id for group_id in group_ids if not is_group_jid(group_id)]
    if invalid:
        raise DispatchValidationError(f"not a group id: {', '.join(invalid[:5])}")


def _cap_violation(policy: GuardrailPolicy, count: int) -> Optional[str]:
    if count > policy.max_targets_per_run:
        return (
            f"{count} targets exceed the '{policy.profile.value}' limit of "
            f"{policy.max_targets_per_run} per run"
        )
    return None


def _build_correlation(
    kind: CampaignRunKind,
    campaign_id: str,
    run_id: str,
    target: _PreparedTarget,
) -> Union[CampaignCorrelation, GroupCampaignCorrelation]:
    if kind == CampaignRunKind.GROUP:
        return GroupCampaignCorrelation(group_campaign_id=campaign_id, run_id=run_id, group_id=target.to)
    return CampaignCorrelation(campaign_id=campaign_id, run_id=run_id)


async def _fail_run(stores: DispatchStores, client_id: str, run_id: str, error: str, now: datetime) -> None:
    failed = fail_run(stores.runs, client_id, run_id, error, now=now, alert=False)
    if failed is None:
        return
    try:
        await alert_run_failed_async(client_id, run_id, failed.last_error)
    except Exception as e:
        logger.error(f"Run failure alert error: {e}")


async def _dispatch(
    stores: DispatchStores,
    *,
    kind: CampaignRunKind,
    client_id: str,
    campaign_id: str,
    targets: list[_PreparedTarget],
    profile: Optional[str],
    transport: Optional[Transport],
    settings: Settings,
    now: datetime,
    rng: Optional[random.Random],
) -> DispatchResponse:
    policy = resolve_policy(profile or settings.default_pace_profile)
    violation = _cap_violation(policy, len(targets))
    if violation:
        raise GuardrailViolationError(violation)

    run = create_run(
        stores.runs,
        client_id=client_id,
        campaign_id=campaign_id,
        kind=kind,
        pace_profile=policy.profile.value,
        total_targets=len(targets),
        now=now,
    )
    log = bind_logger(logger, client_id=client_id, campaign_id=campaign_id, run_id=run.id)

    try:
        schedule = build_schedule(len(targets), policy, _schedule_base(now, settings), rng=rng)
        run = start_run(stores.runs, run, now=now)
    except Exception as e:
        await _fail_run(stores, client_id, run.id, f"dispatch setup failed: {e}", now)
        raise

    counts = {"enqueued": 0, "skipped": 0, "failed": 0}
    last_error = None
    for target, not_before in zip(targets, schedule):
        request = EnqueueRequest(
            client_id=client_id,
            to=target.to,
            message=target.message,
            not_before=not_before,
            idempotency_key=target.idempotency_key or f"run:{run.id}:{target.to}",
            message_type="group_campaign" if kind == CampaignRunKind.GROUP else "campaign",
            contact_id=target.contact_id,
            correlation=_build_correlation(kind, campaign_id, run.id, target),
        )
        try:
            result = stores.outbox.enqueue(request, now=now)
            counter = "enqueued" if result.created else "skipped"
        except Exception as e:
            counter = "failed"
            last_error = clamp_error(e)
            log.error(f"Enqueue failed: {e}", context={"to": target.to})
        counts[counter] += 1
        record_enqueue_outcome(stores.runs, client_id, run.id, counter)

    log.info("Campaign enqueued", context={**counts, "profile": policy.profile.value})

    drained: Optional[DrainResult] = None
    if counts["enqueued"] == 0 and counts["failed"] > 0:
        await _fail_run(stores, client_id, run.id, last_error or "all targets failed to enqueue", now)
    else:
        if settings.outbox_immediate_delivery:
            drained = await drain_outbox(
                stores,
                transport,
                client_id=client_id,
                limit=settings.outbox_process_limit,
                dry_run=settings.outbox_dry_run,
                now=now,
            )
        complete_run_if_drained(stores.outbox, stores.runs, client_id, run.id, now=now)

    final = get_run(stores.runs, client_id, run.id)
    return DispatchResponse(
        success=counts["enqueued"] > 0 or counts["failed"] == 0,
        run_id=final.id,
        status=final.status,
        total_targets=final.total_targets,
        enqueued=counts["enqueued"],
        skipped=counts["skipped"],
        failed=counts["failed"],
        drained=drained,
    )


async def dispatch_campaign(
    stores: DispatchStores,
    *,
    client_id: str,
    campaign_id: str,
    targets: list[DispatchTarget],
    message: Optional[str] = None,
    profile: Optional[str] = None,
    transport: Optional[Transport] = None,
    settings: Optional[Settings] = None,
    now: Optional[datetime] = None,
    rng: Optional[random.Random] = None,
) -> DispatchResponse:
    """Create a run for `campaign_id` and enqueue one paced entry per target.

    Validation and guardrail errors are raised before anything is stored.
    A failing target is counted on the run and the rest still go out.
    """
    if not str(campaign_id or "").strip():
        raise DispatchValidationError("campaign_id is required")
    prepared = _prepare_targets(targets, message)
    return await _dispatch(
        stores,
        kind=CampaignRunKind.DIRECT,
        client_id=client_id,
        campaign_id=campaign_id,
        targets=prepared,
        profile=profile,
        transport=transport,
        settings=settings or get_settings(),
        now=ensure_utc(now) or utcnow(),
        rng=rng,
    )


async def dispatch_group_campaign(
    stores: DispatchStores,
    *,
    client_id: str,
    group_campaign_id: str,
    group_ids: list[str],
    message: str,
    profile: Optional[str] = None,
    transport: Optional[Transport] = None,
    settings: Optional[Settings] = None,
    now: Optional[datetime] = None,
    rng: Optional[random.Random] = None,
) -> DispatchResponse:
    """Group broadcast: one entry per `@g.us` group id."""
    if not str(group_campaign_id or "").strip():
        raise DispatchValidationError("group_campaign_id is required")
    _check_group_ids(group_ids)
    prepared = _prepare_targets([DispatchTarget(to=group_id) for group_id in group_ids], message)
    return await _dispatch(
        stores,
        kind=CampaignRunKind.GROUP,
        client_id=client_id,
        campaign_id=group_campaign_id,
        targets=prepared,
        profile=profile,
        transport=transport,
        settings=settings or get_settings(),
        now=ensure_utc(now) or utcnow(),
        rng=rng,
    )


def _simulate(
    client_id: str,
    targets: list[_PreparedTarget],
    profile: Optional[str],
    settings: Settings,
    now: datetime,
    rng: Optional[random.Random],
) -> SimulationResponse:
    policy = resolve_policy(profile or settings.default_pace_profile)
    policy_item = GuardrailPolicyItem(**{**asdict(policy), "profile": policy.profile.value})

    reason = _cap_violation(policy, len(targets))
    if reason:
        logger.info("Campaign simulation rejected", extra={"context": {"client_id": client_id, "reason": reason}})
        return SimulationResponse(allowed=False, reason=reason, total_targets=len(targets), policy=policy_item)

    schedule = build_schedule(len(targets), policy, _schedule_base(now, settings), rng=rng)
    return SimulationResponse(
        allowed=True,
        total_targets=len(targets),
        policy=policy_item,
        schedule=[ScheduledSend(to=target.to, not_before=at) for target, at in zip(targets, schedule)],
        starts_at=schedule[0],
        estimated_finish_at=schedule[-1],
    )


def simulate_campaign(
    client_id: str,
    targets: list[DispatchTarget],
    message: Optional[str] = None,
    profile: Optional[str] = None,
    *,
    settings: Optional[Settings] = None,
    now: Optional[datetime] = None,
    rng: Optional[random.Random] = None,
) -> SimulationResponse:
    """Preview the paced schedule and guardrail verdict of a dispatch without storing anything."""
    return _simulate(
        client_id,
        _prepare_targets(targets, message),
        profile,
        settings or get_settings(),
        ensure_utc(now) or utcnow(),
        rng,
    )


def simulate_group_campaign(
    client_id: str,
    group_ids: list[str],
    message: str,
    profile: Optional[str] = None,
    *,
    settings: Optional[Settings] = None,
    now: Optional[datetime] = None,
    rng: Optional[random.Random] = None,
) -> SimulationResponse:
    _check_group_ids(group_ids)
    return _simulate(
        client_id,
        _prepare_targets([DispatchTarget(to=group_id) for group_id in group_ids], message),
        profile,
        settings or get_settings(),
        ensure_utc(now) or utcnow(),
        rng,
    )


def enqueue_message(outbox: OutboxStore, request: EnqueueRequest, now: Optional[datetime] = None) -> EnqueueResult:
    """Transactional single send outside any campaign."""
    result = outbox.enqueue(request, now=now)
    logger.info(
        "Outbox message enqueued" if result.created else "Outbox enqueue deduplicated",
        extra={
            "context": {
                "client_id": result.item.client_id,
                "outbox_id": result.item.id,
                "idempotency_key": result.item.idempotency_key,
            }
        },
    )
    return result


def pause_campaign_run(
    stores: DispatchStores,
    client_id: str,
    run_id: str,
    now: Optional[datetime] = None,
) -> CampaignRunItem:
    return pause_run(stores.runs, client_id, run_id, now=now)


def resume_campaign_run(
    stores: DispatchStores,
    client_id: str,
    run_id: str,
    *,
    reschedule: bool = True,
    settings: Optional[Settings] = None,
    now: Optional[datetime] = None,
    rng: Optional[random.Random] = None,
) -> CampaignRunItem:
    """Resume a paused run, re-pacing its pending entries from `now` when asked."""
    settings = settings or get_settings()
    now = ensure_utc(now) or utcnow()
    run = resume_run(stores.runs, client_id, run_id, now=now)

    if reschedule:
        pending = stores.outbox.list_pending_for_run(client_id, run_id)
        policy = resolve_policy(run.pace_profile)
        schedule = build_schedule(len(pending), policy, _schedule_base(now, settings), rng=rng)
        moved = 0
        for item, not_before in zip(pending, schedule):
            if stores.outbox.reschedule(item.id, not_before, now=now):
                moved += 1
        logger.info(
            "Campaign run rescheduled",
            extra={"context": {"client_id": client_id, "run_id": run_id, "entries": moved}},
        )

    complete_run_if_drained(stores.outbox, stores.runs, client_id, run_id, now=now)
    return get_run(stores.runs, client_id, run_id)
