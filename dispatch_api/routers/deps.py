from typing import Optional

from fastapi import Depends, Header, HTTPException
from sqlalchemy.orm import Session

from dispatch_api.config import get_settings
from dispatch_api.database import get_db
from dispatch_api.services.stores import DispatchStores, build_stores
from dispatch_api.services.transport import Transport, get_transport


def get_stores(db: Session = Depends(get_db)) -> DispatchStores:
    return build_stores(db)


def get_dispatch_transport() -> Optional[Transport]:
    return get_transport()


def require_admin_token(x_admin_token: Optional[str] = Header(default=None, alias="X-Admin-Token")) -> None:
    expected = get_settings().admin_token
    if not expected:
        raise HTTPException(status_code=500, detail="ADMIN_TOKEN not configured")
    if not x_admin_token or x_admin_token != expected:
        raise HTTPException(status_code=401, detail="Invalid admin token")
