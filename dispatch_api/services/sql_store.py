from __future__ import annotations

from datetime import datetime
from typing import Collection

from sqlalchemy import func, or_, update
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from dispatch_api.logging_config import get_logger
from dispatch_api.models import CampaignRun, OutboxMessage
from dispatch_api.schemas.campaign import CampaignRunItem
from dispatch_api.schemas.outbox import EnqueueRequest, OutboxItem, OutboxStatus, parse_correlation
from dispatch_api.services.outbox_store import (
    CorrelationFilter,
    EnqueueResult,
    build_outbox_item,
    check_counter,
    clamp_error,
    clamp_limit,
    ensure_utc,
    resolution_fields,
    utcnow,
)
from dispatch_api.services.run_state_machine import CampaignRunKind, CampaignRunStatus

logger = get_logger("sql_store")

_UPSERT_INSERTS = {
    "postgresql": postgresql.insert,
    "sqlite": sqlite.insert,
}


def _row_to_item(row: OutboxMessage) -> OutboxItem:
    return OutboxItem(
        id=row.id,
        client_id=row.client_id,
        channel=row.channel or "whatsapp",
        to=row.to,
        message=row.message,
        status=OutboxStatus(row.status),
        not_before=ensure_utc(row.not_before),
        idempotency_key=row.idempotency_key,
        message_type=row.message_type,
        contact_id=row.contact_id,
        correlation=parse_correlation(row.correlation),
        delivery_meta=row.delivery_meta,
        last_error=row.last_error,
        created_at=ensure_utc(row.created_at),
        updated_at=ensure_utc(row.updated_at),
        resolved_at=ensure_utc(row.resolved_at),
    )


def _item_to_values(item: OutboxItem) -> dict:
    correlation = item.correlation
    return {
        "id": item.id,
        "client_id": item.client_id,
        "channel": item.channel,
        "to": item.to,
        "message": item.message,
        "status": item.status.value,
        "not_before": item.not_before,
        "idempotency_key": item.idempotency_key,
        "message_type": item.message_type,
        "contact_id": item.contact_id,
        "correlation_kind": correlation.kind if correlation else None,
        "campaign_id": correlation.owner_id if correlation else None,
        "run_id": correlation.run_id if correlation else None,
        "correlation": correlation.model_dump(mode="json") if correlation else None,
        "created_at": item.created_at,
        "updated_at": item.updated_at,
    }


def _row_to_run(row: CampaignRun) -> CampaignRunItem:
    return CampaignRunItem(
        id=row.id,
        client_id=row.client_id,
        campaign_id=row.campaign_id,
        kind=CampaignRunKind(row.kind),
        status=CampaignRunStatus(row.status),
        pace_profile=row.pace_profile,
        total_targets=row.total_targets or 0,
        enqueued=row.enqueued or 0,
        skipped=row.skipped or 0,
        failed=row.failed or 0,
        sent=row.sent or 0,
        delivery_failed=row.delivery_failed or 0,
        last_error=row.last_error,
        created_at=ensure_utc(row.created_at),
        updated_at=ensure_utc(row.updated_at),
        started_at=ensure_utc(row.started_at),
        finished_at=ensure_utc(row.finished_at),
    )


class SqlOutboxStore:
    """Outbox adapter over the `outbox_messages` table.

    Each call runs in its own short transaction. Status changes are single
    conditional UPDATEs guarded by `status = 'pending'`.
    """

    def __init__(self, db: Session):
        self.db = db

    def _find_by_key(self, client_id: str, idempotency_key: str) -> OutboxItem | None:
        row = (
            self.db.query(OutboxMessage)
            .filter(
                OutboxMessage.client_id == client_id,
                OutboxMessage.idempotency_key == idempotency_key,
            )
            .first()
        )
        return _row_to_item(row) if row else None

    def _insert(self, values: dict) -> bool:
        dialect = self.db.get_bind().dialect.name
        insert_fn = _UPSERT_INSERTS.get(dialect)
        if insert_fn is not None and values.get("idempotency_key"):
            stmt = (
                insert_fn(OutboxMessage)
                .values(**values)
                .on_conflict_do_nothing(index_elements=["client_id", "idempotency_key"])
            )
            result = self.db.execute(stmt)
            return result.rowcount > 0
        self.db.add(OutboxMessage(**values))
        self.db.flush()
        return True

    def enqueue(self, request: EnqueueRequest, now: datetime | None = None) -> EnqueueResult:
        now = ensure_utc(now) or utcnow()
        item = build_outbox_item(request, now)

        if item.idempotency_key:
            existing = self._find_by_key(item.client_id, item.idempotency_key)
            if existing:
                return EnqueueResult(item=existing, created=False)

        try:
            created = self._insert(_item_to_values(item))
            self.db.commit()
        except IntegrityError:
            self.db.rollback()
            if not item.idempotency_key:
                raise
            created = False
        except Exception:
            self.db.rollback()
            raise

        if created:
            return EnqueueResult(item=item, created=True)

        # lost the race to a concurrent enqueue with the same key
        existing = self._find_by_key(item.client_id, item.idempotency_key)
        if existing is None:
            raise RuntimeError(f"Outbox entry for idempotency key {item.idempotency_key} vanished")
        return EnqueueResult(item=existing, created=False)

    def get(self, entry_id: str) -> OutboxItem | None:
        row = self.db.query(OutboxMessage).filter(OutboxMessage.id == entry_id).first()
        return _row_to_item(row) if row else None

    def _due_query(self, query, client_id: str | None, now: datetime, exclude_run_ids: Collection[str]):
        query = query.filter(
            OutboxMessage.status == OutboxStatus.PENDING.value,
            or_(OutboxMessage.not_before.is_(None), OutboxMessage.not_before <= now),
        )
        if client_id:
            query = query.filter(OutboxMessage.client_id == client_id)
        if exclude_run_ids:
            query = query.filter(
                or_(OutboxMessage.run_id.is_(None), OutboxMessage.run_id.notin_(list(exclude_run_ids)))
            )
        return query

    def list_due(
        self,
        client_id: str | None,
        limit: int,
        now: datetime | None = None,
        exclude_run_ids: Collection[str] = (),
    ) -> list[OutboxItem]:
        now = ensure_utc(now) or utcnow()
        query = self._due_query(self.db.query(OutboxMessage), client_id, now, exclude_run_ids)
        rows = (
            query.order_by(OutboxMessage.created_at.asc(), OutboxMessage.not_before.asc())
            .limit(clamp_limit(limit))
            .all()
        )
        return [_row_to_item(row) for row in rows]

    def count_due(
        self,
        client_id: str | None,
        now: datetime | None = None,
        exclude_run_ids: Collection[str] = (),
    ) -> int:
        now = ensure_utc(now) or utcnow()
        query = self._due_query(self.db.query(func.count(OutboxMessage.id)), client_id, now, exclude_run_ids)
        return query.scalar() or 0

    def resolve(
        self,
        entry_id: str,
        status: OutboxStatus,
        delivery_meta: dict | None = None,
        now: datetime | None = None,
    ) -> bool:
        status = OutboxStatus(status)
        meta, last_error = resolution_fields(status, delivery_meta)
        now = ensure_utc(now) or utcnow()
        try:
            result = self.db.execute(
                update(OutboxMessage)
                .where(
                    OutboxMessage.id == entry_id,
                    OutboxMessage.status == OutboxStatus.PENDING.value,
                )
                .values(
                    status=status.value,
                    delivery_meta=meta,
                    last_error=last_error,
                    updated_at=now,
                    resolved_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return result.rowcount > 0

    def cancel_by_correlation(
        self,
        client_id: str,
        correlation: CorrelationFilter,
        reason: str,
        now: datetime | None = None,
    ) -> int:
        now = ensure_utc(now) or utcnow()
        conditions = [
            OutboxMessage.client_id == client_id,
            OutboxMessage.status == OutboxStatus.PENDING.value,
            OutboxMessage.correlation_kind == correlation.kind,
        ]
        if correlation.campaign_id is not None:
            conditions.append(OutboxMessage.campaign_id == correlation.campaign_id)
        if correlation.run_id is not None:
            conditions.append(OutboxMessage.run_id == correlation.run_id)
        try:
            result = self.db.execute(
                update(OutboxMessage)
                .where(*conditions)
                .values(
                    status=OutboxStatus.FAILED.value,
                    delivery_meta={"canceled_at": now.isoformat(), "cancel_reason": reason},
                    last_error=clamp_error(reason),
                    updated_at=now,
                    resolved_at=now,
                )
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return result.rowcount or 0

    def count_pending(self, client_id: str, run_id: str) -> int:
        return (
            self.db.query(func.count(OutboxMessage.id))
            .filter(
                OutboxMessage.client_id == client_id,
                OutboxMessage.run_id == run_id,
                OutboxMessage.status == OutboxStatus.PENDING.value,
            )
            .scalar()
            or 0
        )

    def list_pending_for_run(self, client_id: str, run_id: str) -> list[OutboxItem]:
        rows = (
            self.db.query(OutboxMessage)
            .filter(
                OutboxMessage.client_id == client_id,
                OutboxMessage.run_id == run_id,
                OutboxMessage.status == OutboxStatus.PENDING.value,
            )
            .order_by(OutboxMessage.not_before.asc(), OutboxMessage.created_at.asc())
            .all()
        )
        return [_row_to_item(row) for row in rows]

    def list_entries_for_run(self, client_id: str, run_id: str) -> list[OutboxItem]:
        rows = (
            self.db.query(OutboxMessage)
            .filter(OutboxMessage.client_id == client_id, OutboxMessage.run_id == run_id)
            .order_by(OutboxMessage.not_before.asc(), OutboxMessage.created_at.asc())
            .all()
        )
        return [_row_to_item(row) for row in rows]

    def reschedule(self, entry_id: str, not_before: datetime, now: datetime | None = None) -> bool:
        now = ensure_utc(now) or utcnow()
        try:
            result = self.db.execute(
                update(OutboxMessage)
                .where(
                    OutboxMessage.id == entry_id,
                    OutboxMessage.status == OutboxStatus.PENDING.value,
                )
                .values(not_before=ensure_utc(not_before), updated_at=now)
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return result.rowcount > 0

    def list_entries(
        self,
        client_id: str | None = None,
        status: OutboxStatus | None = None,
        limit: int = 200,
    ) -> list[OutboxItem]:
        query = self.db.query(OutboxMessage)
        if client_id:
            query = query.filter(OutboxMessage.client_id == client_id)
        if status:
            query = query.filter(OutboxMessage.status == OutboxStatus(status).value)
        rows = query.order_by(OutboxMessage.created_at.desc()).limit(clamp_limit(limit, default=200)).all()
        return [_row_to_item(row) for row in rows]

    def count_by_status(self, client_id: str | None = None) -> dict[str, int]:
        query = self.db.query(OutboxMessage.status, func.count(OutboxMessage.id))
        if client_id:
            query = query.filter(OutboxMessage.client_id == client_id)
        counts = {status.value: 0 for status in OutboxStatus}
        for status, count in query.group_by(OutboxMessage.status).all():
            counts[status] = count
        return counts


class SqlRunStore:
    def __init__(self, db: Session):
        self.db = db

    def create(self, run: CampaignRunItem) -> CampaignRunItem:
        row = CampaignRun(
            id=run.id,
            client_id=run.client_id,
            campaign_id=run.campaign_id,
            kind=run.kind.value,
            status=run.status.value,
            pace_profile=run.pace_profile,
            total_targets=run.total_targets,
            enqueued=run.enqueued,
            skipped=run.skipped,
            failed=run.failed,
            sent=run.sent,
            delivery_failed=run.delivery_failed,
            last_error=run.last_error,
            created_at=run.created_at,
            updated_at=run.updated_at,
            started_at=run.started_at,
            finished_at=run.finished_at,
        )
        try:
            self.db.add(row)
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return run

    def get(self, client_id: str, run_id: str) -> CampaignRunItem | None:
        row = (
            self.db.query(CampaignRun)
            .filter(CampaignRun.client_id == client_id, CampaignRun.id == run_id)
            .first()
        )
        return _row_to_run(row) if row else None

    def list_by_campaign(
        self,
        client_id: str,
        campaign_id: str,
        kind: CampaignRunKind | None = None,
        limit: int = 50,
    ) -> list[CampaignRunItem]:
        query = self.db.query(CampaignRun).filter(
            CampaignRun.client_id == client_id,
            CampaignRun.campaign_id == campaign_id,
        )
        if kind:
            query = query.filter(CampaignRun.kind == CampaignRunKind(kind).value)
        rows = query.order_by(CampaignRun.created_at.desc()).limit(clamp_limit(limit, default=50, maximum=200)).all()
        return [_row_to_run(row) for row in rows]

    def update_status(
        self,
        client_id: str,
        run_id: str,
        from_status: CampaignRunStatus,
        to_status: CampaignRunStatus,
        fields: dict | None = None,
        now: datetime | None = None,
    ) -> CampaignRunItem | None:
        now = ensure_utc(now) or utcnow()
        values = {"status": CampaignRunStatus(to_status).value, "updated_at": now}
        values.update(fields or {})
        try:
            result = self.db.execute(
                update(CampaignRun)
                .where(
                    CampaignRun.client_id == client_id,
                    CampaignRun.id == run_id,
                    CampaignRun.status == CampaignRunStatus(from_status).value,
                )
                .values(**values)
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        if not result.rowcount:
            return None
        return self.get(client_id, run_id)

    def increment(self, client_id: str, run_id: str, counter: str, amount: int = 1) -> bool:
        column = getattr(CampaignRun, check_counter(counter))
        try:
            result = self.db.execute(
                update(CampaignRun)
                .where(CampaignRun.client_id == client_id, CampaignRun.id == run_id)
                .values({column: column + amount, CampaignRun.updated_at: utcnow()})
                .execution_options(synchronize_session=False)
            )
            self.db.commit()
        except Exception:
            self.db.rollback()
            raise
        return result.rowcount > 0

    def list_ids_by_status(self, client_id: str | None, status: CampaignRunStatus) -> list[str]:
        query = self.db.query(CampaignRun.id).filter(CampaignRun.status == CampaignRunStatus(status).value)
        if client_id:
            query = query.filter(CampaignRun.client_id == client_id)
        return [row[0] for row in query.all()]
