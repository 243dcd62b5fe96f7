"""Outbox endpoints: transactional enqueue, manual drain pass, listing."""

from typing import Optional

from fastapi import APIRouter, Depends, Query

from dispatch_api.config import get_settings
from dispatch_api.routers.deps import get_dispatch_transport, get_stores, require_admin_token
from dispatch_api.schemas.outbox import (
    DrainRequest,
    DrainResult,
    EnqueueRequest,
    EnqueueResponse,
    OutboxListResponse,
    OutboxStatus,
)
from dispatch_api.services.dispatch_service import enqueue_message
from dispatch_api.services.drain_service import drain_outbox
from dispatch_api.services.stores import DispatchStores
from dispatch_api.services.transport import Transport

router = APIRouter(prefix="/outbox", tags=["outbox"], dependencies=[Depends(require_admin_token)])


@router.post("/enqueue", response_model=EnqueueResponse)
def enqueue(request: EnqueueRequest, stores: DispatchStores = Depends(get_stores)):
    """Queue a single message outside any campaign."""
    result = enqueue_message(stores.outbox, request)
    return EnqueueResponse(success=True, created=result.created, item=result.item)


@router.post("/run", response_model=DrainResult)
async def run_outbox(
    request: Optional[DrainRequest] = None,
    stores: DispatchStores = Depends(get_stores),
    transport: Optional[Transport] = Depends(get_dispatch_transport),
):
    """Run one drain pass."""
    settings = get_settings()
    request = request or DrainRequest()
    return await drain_outbox(
        stores,
        transport,
        client_id=request.client_id,
        limit=request.limit or settings.outbox_process_limit,
        dry_run=settings.outbox_dry_run if request.dry_run is None else request.dry_run,
    )


@router.get("", response_model=OutboxListResponse)
def list_outbox(
    client_id: Optional[str] = None,
    status: Optional[OutboxStatus] = None,
    limit: int = Query(default=200, ge=1, le=500),
    stores: DispatchStores = Depends(get_stores),
):
    items = stores.outbox.list_entries(client_id=client_id, status=status, limit=limit)
    return OutboxListResponse(count=len(items), items=items)
