"""Campaign and group-campaign dispatch endpoints."""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from dispatch_api.routers.deps import get_dispatch_transport, get_stores
from dispatch_api.schemas.campaign import (
    CampaignRunItem,
    CancelResponse,
    DispatchRequest,
    DispatchResponse,
    GroupDispatchRequest,
    ResumeRequest,
    RunItemsResponse,
    RunListResponse,
    SimulationResponse,
)
from dispatch_api.schemas.outbox import OutboxStatus
from dispatch_api.services.cancellation_service import cancel_campaign, cancel_group_campaign
from dispatch_api.services.dispatch_service import (
    dispatch_campaign,
    dispatch_group_campaign,
    pause_campaign_run,
    resume_campaign_run,
    simulate_campaign,
    simulate_group_campaign,
)
from dispatch_api.services.run_state_machine import CampaignRunKind
from dispatch_api.services.run_tracker import get_run, list_run_items, list_runs
from dispatch_api.services.stores import DispatchStores
from dispatch_api.services.transport import Transport

router = APIRouter(prefix="/clients/{client_id}", tags=["campaigns"])


# === DISPATCH ===


@router.post("/campaigns/{campaign_id}/dispatch", response_model=DispatchResponse)
async def dispatch(
    client_id: str,
    campaign_id: str,
    request: DispatchRequest,
    stores: DispatchStores = Depends(get_stores),
    transport: Optional[Transport] = Depends(get_dispatch_transport),
):
    return await dispatch_campaign(
        stores,
        client_id=client_id,
        campaign_id=campaign_id,
        targets=request.targets,
        message=request.message,
        profile=request.profile,
        transport=transport,
    )


@router.post("/group-campaigns/{group_campaign_id}/dispatch", response_model=DispatchResponse)
async def dispatch_group(
    client_id: str,
    group_campaign_id: str,
    request: GroupDispatchRequest,
    stores: DispatchStores = Depends(get_stores),
    transport: Optional[Transport] = Depends(get_dispatch_transport),
):
    return await dispatch_group_campaign(
        stores,
        client_id=client_id,
        group_campaign_id=group_campaign_id,
        group_ids=request.group_ids,
        message=request.message,
        profile=request.profile,
        transport=transport,
    )


# === SIMULATE ===


@router.post("/campaigns/{campaign_id}/simulate", response_model=SimulationResponse)
def simulate(client_id: str, campaign_id: str, request: DispatchRequest):
    """Preview pacing and the guardrail verdict. Nothing is stored."""
    return simulate_campaign(client_id, request.targets, message=request.message, profile=request.profile)


@router.post("/group-campaigns/{group_campaign_id}/simulate", response_model=SimulationResponse)
def simulate_group(client_id: str, group_campaign_id: str, request: GroupDispatchRequest):
    return simulate_group_campaign(client_id, request.group_ids, request.message, profile=request.profile)


# === CANCEL ===


@router.post("/campaigns/{campaign_id}/cancel", response_model=CancelResponse)
def cancel(client_id: str, campaign_id: str, stores: DispatchStores = Depends(get_stores)):
    result = cancel_campaign(stores, client_id, campaign_id)
    return CancelResponse(success=True, canceled=result["canceled"])


@router.post("/group-campaigns/{group_campaign_id}/cancel", response_model=CancelResponse)
def cancel_group(client_id: str, group_campaign_id: str, stores: DispatchStores = Depends(get_stores)):
    result = cancel_group_campaign(stores, client_id, group_campaign_id)
    return CancelResponse(success=True, canceled=result["canceled"])


# === RUNS ===


@router.get("/campaigns/{campaign_id}/runs", response_model=RunListResponse)
def campaign_runs(
    client_id: str,
    campaign_id: str,
    limit: int = Query(default=50, ge=1, le=200),
    stores: DispatchStores = Depends(get_stores),
):
    runs = list_runs(stores.runs, client_id, campaign_id, kind=CampaignRunKind.DIRECT, limit=limit)
    return RunListResponse(count=len(runs), runs=runs)


@router.get("/group-campaigns/{group_campaign_id}/runs", response_model=RunListResponse)
def group_campaign_runs(
    client_id: str,
    group_campaign_id: str,
    limit: int = Query(default=50, ge=1, le=200),
    stores: DispatchStores = Depends(get_stores),
):
    runs = list_runs(stores.runs, client_id, group_campaign_id, kind=CampaignRunKind.GROUP, limit=limit)
    return RunListResponse(count=len(runs), runs=runs)


@router.get("/runs/{run_id}", response_model=CampaignRunItem)
def run_detail(client_id: str, run_id: str, stores: DispatchStores = Depends(get_stores)):
    return get_run(stores.runs, client_id, run_id)


@router.get("/runs/{run_id}/items", response_model=RunItemsResponse)
def run_items(client_id: str, run_id: str, stores: DispatchStores = Depends(get_stores)):
    items = list_run_items(stores.outbox, stores.runs, client_id, run_id)
    counts = {status.value: 0 for status in OutboxStatus}
    for item in items:
        counts[item.status.value] += 1
    return RunItemsResponse(run_id=run_id, count=len(items), counts=counts, items=items)


@router.post("/runs/{run_id}/pause", response_model=CampaignRunItem)
def pause(client_id: str, run_id: str, stores: DispatchStores = Depends(get_stores)):
    return pause_campaign_run(stores, client_id, run_id)


@router.post("/runs/{run_id}/resume", response_model=CampaignRunItem)
def resume(
    client_id: str,
    run_id: str,
    request: Optional[ResumeRequest] = None,
    stores: DispatchStores = Depends(get_stores),
):
    request = request or ResumeRequest()
    return resume_campaign_run(stores, client_id, run_id, reschedule=request.reschedule)
