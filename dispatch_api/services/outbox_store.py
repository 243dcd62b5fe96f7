"""Storage port for the outbox and campaign runs.

Business logic depends only on the two protocols below; `sql_store` and
`file_store` provide the relational and flat-file adapters. Every status change
is a compare-and-swap from the expected prior status, so concurrent drains and
cancellations never overwrite each other.
"""

import re
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Collection, Optional, Protocol

from dispatch_api.schemas.campaign import CampaignRunItem
from dispatch_api.schemas.outbox import EnqueueRequest, OutboxItem, OutboxStatus
from dispatch_api.services.errors import DispatchValidationError
from dispatch_api.services.run_state_machine import CampaignRunKind, CampaignRunStatus

MAX_DUE_LIMIT = 500
MAX_ERROR_LENGTH = 500
RUN_COUNTERS = frozenset({"enqueued", "skipped", "failed", "sent", "delivery_failed"})

_NON_DIGITS_RE = re.compile(r"\D+")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(dt: Optional[datetime]) -> Optional[datetime]:
    if dt is None:
        return None
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def make_id(prefix: str) -> str:
    return f"{prefix}{uuid.uuid4().hex[:16]}"


def clamp_error(value: Any) -> Optional[str]:
    text = str(value or "").strip()
    if not text:
        return None
    return text[:MAX_ERROR_LENGTH]


def clamp_limit(limit: Optional[int], default: int = 100, maximum: int = MAX_DUE_LIMIT) -> int:
    try:
        value = int(limit) if limit is not None else default
    except (TypeError, ValueError):
        value = default
    return max(1, min(maximum, value))


def is_group_jid(value: str) -> bool:
    return "@g.us" in (value or "")


def normalize_destination(raw: str) -> str:
    """Keep group and user JIDs verbatim; reduce phone numbers to digits."""
    value = str(raw or "").strip()
    if not value:
        return ""
    if "@g.us" in value or "@s.whatsapp.net" in value:
        return value
    return _NON_DIGITS_RE.sub("", value)


def build_outbox_item(request: EnqueueRequest, now: datetime) -> OutboxItem:
    """Validate an enqueue request and build the pending item to persist."""
    client_id = str(request.client_id or "").strip()
    to = normalize_destination(request.to)
    message = str(request.message or "").strip()

    if not client_id:
        raise DispatchValidationError("enqueue: client_id is required")
    if not to:
        raise DispatchValidationError("enqueue: 'to' is required")
    if not message:
        raise DispatchValidationError("enqueue: 'message' is required")

    return OutboxItem(
        id=make_id("wout_"),
        client_id=client_id,
        to=to,
        message=message,
        status=OutboxStatus.PENDING,
        not_before=ensure_utc(request.not_before),
        idempotency_key=(request.idempotency_key or "").strip() or None,
        message_type=request.message_type,
        contact_id=request.contact_id,
        correlation=request.correlation,
        created_at=now,
        updated_at=now,
    )


def resolution_fields(status: OutboxStatus, delivery_meta: Optional[dict]) -> tuple[dict, Optional[str]]:
    if status == OutboxStatus.PENDING:
        raise DispatchValidationError("resolve: status must be 'sent' or 'failed'")
    meta = dict(delivery_meta or {})
    last_error = clamp_error(meta.get("error")) if status == OutboxStatus.FAILED else None
    return meta, last_error


@dataclass(frozen=True)
class CorrelationFilter:
    """Selects entries by correlation; unset fields match anything."""

    kind: str
    campaign_id: Optional[str] = None
    run_id: Optional[str] = None

    def matches(self, item: OutboxItem) -> bool:
        correlation = item.correlation
        if correlation is None or correlation.kind != self.kind:
            return False
        if self.campaign_id is not None and correlation.owner_id != self.campaign_id:
            return False
        if self.run_id is not None and correlation.run_id != self.run_id:
            return False
        return True


@dataclass(frozen=True)
class EnqueueResult:
    item: OutboxItem
    created: bool


class OutboxStore(Protocol):
    def enqueue(self, request: EnqueueRequest, now: Optional[datetime] = None) -> EnqueueResult: ...

    def get(self, entry_id: str) -> Optional[OutboxItem]: ...

    def list_due(
        self,
        client_id: Optional[str],
        limit: int,
        now: Optional[datetime] = None,
        exclude_run_ids: Collection[str] = (),
    ) -> list[OutboxItem]: ...

    def count_due(
        self,
        client_id: Optional[str],
        now: Optional[datetime] = None,
        exclude_run_ids: Collection[str] = (),
    ) -> int: ...

    def resolve(
        self,
        entry_id: str,
        status: OutboxStatus,
        delivery_meta: Optional[dict] = None,
        now: Optional[datetime] = None,
    ) -> bool: ...

    def cancel_by_correlation(
        self,
        client_id: str,
        correlation: CorrelationFilter,
        reason: str,
        now: Optional[datetime] = None,
    ) -> int: ...

    def count_pending(self, client_id: str, run_id: str) -> int: ...

    def list_pending_for_run(self, client_id: str, run_id: str) -> list[OutboxItem]: ...

    def list_entries_for_run(self, client_id: str, run_id: str) -> list[OutboxItem]: ...

    def reschedule(self, entry_id: str, not_before: datetime, now: Optional[datetime] = None) -> bool: ...

    def list_entries(
        self,
        client_id: Optional[str] = None,
        status: Optional[OutboxStatus] = None,
        limit: int = 200,
    ) -> list[OutboxItem]: ...

    def count_by_status(self, client_id: Optional[str] = None) -> dict[str, int]: ...


class RunStore(Protocol):
    def create(self, run: CampaignRunItem) -> CampaignRunItem: ...

    def get(self, client_id: str, run_id: str) -> Optional[CampaignRunItem]: ...

    def list_by_campaign(
        self,
        client_id: str,
        campaign_id: str,
        kind: Optional[CampaignRunKind] = None,
        limit: int = 50,
    ) -> list[CampaignRunItem]: ...

    def update_status(
        self,
        client_id: str,
        run_id: str,
        from_status: CampaignRunStatus,
        to_status: CampaignRunStatus,
        fields: Optional[dict] = None,
        now: Optional[datetime] = None,
    ) -> Optional[CampaignRunItem]: ...

    def increment(self, client_id: str, run_id: str, counter: str, amount: int = 1) -> bool: ...

    def list_ids_by_status(self, client_id: Optional[str], status: CampaignRunStatus) -> list[str]: ...


def check_counter(counter: str) -> str:
    if counter not in RUN_COUNTERS:
        raise ValueError(f"Unknown run counter: {counter}")
    return counter
