"""Admin API endpoints for dispatch diagnostics."""

from typing import Optional

from fastapi import APIRouter, Depends

from dispatch_api.services.health_service import get_dispatch_health
from dispatch_api.services.stores import DispatchStores

from dispatch_api.routers.deps import get_stores, require_admin_token

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin_token)])


@router.get("/health")
def dispatch_health(client_id: Optional[str] = None, stores: DispatchStores = Depends(get_stores)):
    """Get outbox backlog and run status."""
    return get_dispatch_health(stores, client_id=client_id)
