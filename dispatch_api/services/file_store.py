"""Flat-file fallback for the outbox and campaign runs.

Each store is one JSON array on disk. Every read-modify-write happens under an
exclusive `flock` on a sidecar lock file and the new content is swapped in with
`os.replace`, so a compare-and-swap from `pending` holds across processes.
"""

import fcntl
import json
import os
import tempfile
import threading
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import Callable, Collection, Optional

from dispatch_api.logging_config import get_logger
from dispatch_api.schemas.campaign import CampaignRunItem
from dispatch_api.schemas.outbox import EnqueueRequest, OutboxItem, OutboxStatus
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

logger = get_logger("file_store")


class JsonFileCorruptError(Exception):
    pass


class JsonFile:
    """A JSON array file guarded by an advisory lock."""

    def __init__(self, path):
        self.path = Path(path)
        self.lock_path = self.path.with_name(self.path.name + ".lock")
        self._thread_lock = threading.Lock()

    @contextmanager
    def _locked(self, mode: int):
        self.path.parent.mkdir(parents=True, exist_ok=True)
        with self._thread_lock:
            with open(self.lock_path, "a+") as lock_file:
                fcntl.flock(lock_file.fileno(), mode)
                try:
                    yield
                finally:
                    fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)

    def _read(self) -> list[dict]:
        if not self.path.exists():
            return []
        raw = self.path.read_text(encoding="utf-8")
        if not raw.strip():
            return []
        try:
            data = json.loads(raw)
        except json.JSONDecodeError as e:
            raise JsonFileCorruptError(f"{self.path}: {e}") from e
        if not isinstance(data, list):
            raise JsonFileCorruptError(f"{self.path}: expected a JSON array")
        return data

    def _write(self, records: list[dict]) -> None:
        fd, tmp_path = tempfile.mkstemp(dir=self.path.parent, prefix=self.path.name, suffix=".tmp")
        try:
            with os.fdopen(fd, "w", encoding="utf-8") as f:
                json.dump(records, f, ensure_ascii=False, indent=2)
                f.flush()
                os.fsync(f.fileno())
            os.replace(tmp_path, self.path)
        except Exception:
            if os.path.exists(tmp_path):
                os.unlink(tmp_path)
            raise

    def load(self) -> list[dict]:
        with self._locked(fcntl.LOCK_SH):
            return self._read()

    def update(self, mutate: Callable[[list[dict]], tuple]):
        """Run `mutate(records) -> (result, changed)` under the exclusive lock."""
        with self._locked(fcntl.LOCK_EX):
            records = self._read()
            result, changed = mutate(records)
            if changed:
                self._write(records)
            return result


def _dump(model) -> dict:
    return model.model_dump(mode="json")


class JsonFileOutboxStore:
    def __init__(self, path):
        self.file = JsonFile(path)

    def _items(self) -> list[OutboxItem]:
        return [OutboxItem.model_validate(record) for record in self.file.load()]

    def enqueue(self, request: EnqueueRequest, now: Optional[datetime] = None) -> EnqueueResult:
        now = ensure_utc(now) or utcnow()
        item = build_outbox_item(request, now)

        def mutate(records):
            if item.idempotency_key:
                for record in records:
                    if (
                        record.get("client_id") == item.client_id
                        and record.get("idempotency_key") == item.idempotency_key
                    ):
                        return EnqueueResult(item=OutboxItem.model_validate(record), created=False), False
            records.append(_dump(item))
            return EnqueueResult(item=item, created=True), True

        return self.file.update(mutate)

    def get(self, entry_id: str) -> Optional[OutboxItem]:
        for item in self._items():
            if item.id == entry_id:
                return item
        return None

    def _due(
        self,
        client_id: Optional[str],
        now: Optional[datetime],
        exclude_run_ids: Collection[str],
    ) -> list[OutboxItem]:
        now = ensure_utc(now) or utcnow()
        excluded = set(exclude_run_ids or ())
        due = [
            item
            for item in self._items()
            if item.status == OutboxStatus.PENDING
            and (item.not_before is None or item.not_before <= now)
            and (not client_id or item.client_id == client_id)
            and (item.run_id is None or item.run_id not in excluded)
        ]
        due.sort(key=lambda item: (item.created_at, item.not_before or item.created_at))
        return due

    def list_due(
        self,
        client_id: Optional[str],
        limit: int,
        now: Optional[datetime] = None,
        exclude_run_ids: Collection[str] = (),
    ) -> list[OutboxItem]:
        return self._due(client_id, now, exclude_run_ids)[: clamp_limit(limit)]

    def count_due(
        self,
        client_id: Optional[str],
        now: Optional[datetime] = None,
        exclude_run_ids: Collection[str] = (),
    ) -> int:
        return len(self._due(client_id, now, exclude_run_ids))

    def _transition_pending(self, entry_id: str, changes: dict) -> bool:
        def mutate(records):
            for record in records:
                if record.get("id") != entry_id:
                    continue
                if record.get("status") != OutboxStatus.PENDING.value:
                    return False, False
                record.update(changes)
                return True, True
            return False, False

        return self.file.update(mutate)

    def resolve(
        self,
        entry_id: str,
        status: OutboxStatus,
        delivery_meta: Optional[dict] = None,
        now: Optional[datetime] = None,
    ) -> bool:
        status = OutboxStatus(status)
        meta, last_error = resolution_fields(status, delivery_meta)
        stamp = (ensure_utc(now) or utcnow()).isoformat()
        return self._transition_pending(
            entry_id,
            {
                "status": status.value,
                "delivery_meta": json.loads(json.dumps(meta, default=str)),
                "last_error": last_error,
                "updated_at": stamp,
                "resolved_at": stamp,
            },
        )

    def cancel_by_correlation(
        self,
        client_id: str,
        correlation: CorrelationFilter,
        reason: str,
        now: Optional[datetime] = None,
    ) -> int:
        stamp = (ensure_utc(now) or utcnow()).isoformat()

        def mutate(records):
            canceled = 0
            for record in records:
                if record.get("client_id") != client_id:
                    continue
                if record.get("status") != OutboxStatus.PENDING.value:
                    continue
                if not correlation.matches(OutboxItem.model_validate(record)):
                    continue
                record.update(
                    {
                        "status": OutboxStatus.FAILED.value,
                        "delivery_meta": {"canceled_at": stamp, "cancel_reason": reason},
                        "last_error": clamp_error(reason),
                        "updated_at": stamp,
                        "resolved_at": stamp,
                    }
                )
                canceled += 1
            return canceled, canceled > 0

        return self.file.update(mutate)

    def list_pending_for_run(self, client_id: str, run_id: str) -> list[OutboxItem]:
        pending = [
            item
            for item in self._items()
            if item.client_id == client_id and item.run_id == run_id and item.status == OutboxStatus.PENDING
        ]
        pending.sort(key=lambda item: (item.not_before or item.created_at, item.created_at))
        return pending

    def list_entries_for_run(self, client_id: str, run_id: str) -> list[OutboxItem]:
        entries = [item for item in self._items() if item.client_id == client_id and item.run_id == run_id]
        entries.sort(key=lambda item: (item.not_before or item.created_at, item.created_at))
        return entries

    def count_pending(self, client_id: str, run_id: str) -> int:
        return len(self.list_pending_for_run(client_id, run_id))

    def reschedule(self, entry_id: str, not_before: datetime, now: Optional[datetime] = None) -> bool:
        return self._transition_pending(
            entry_id,
            {
                "not_before": ensure_utc(not_before).isoformat(),
                "updated_at": (ensure_utc(now) or utcnow()).isoformat(),
            },
        )

    def list_entries(
        self,
        client_id: Optional[str] = None,
        status: Optional[OutboxStatus] = None,
        limit: int = 200,
    ) -> list[OutboxItem]:
        items = [
            item
            for item in self._items()
            if (not client_id or item.client_id == client_id)
            and (not status or item.status == OutboxStatus(status))
        ]
        items.sort(key=lambda item: item.created_at, reverse=True)
        return items[: clamp_limit(limit, default=200)]

    def count_by_status(self, client_id: Optional[str] = None) -> dict[str, int]:
        counts = {status.value: 0 for status in OutboxStatus}
        for item in self._items():
            if client_id and item.client_id != client_id:
                continue
            counts[item.status.value] += 1
        return counts


class JsonFileRunStore:
    def __init__(self, path):
        self.file = JsonFile(path)

    def _runs(self) -> list[CampaignRunItem]:
        return [CampaignRunItem.model_validate(record) for record in self.file.load()]

    def create(self, run: CampaignRunItem) -> CampaignRunItem:
        def mutate(records):
            records.append(_dump(run))
            return run, True

        return self.file.update(mutate)

    def get(self, client_id: str, run_id: str) -> Optional[CampaignRunItem]:
        for run in self._runs():
            if run.id == run_id and run.client_id == client_id:
                return run
        return None

    def list_by_campaign(
        self,
        client_id: str,
        campaign_id: str,
        kind: Optional[CampaignRunKind] = None,
        limit: int = 50,
    ) -> list[CampaignRunItem]:
        runs = [
            run
            for run in self._runs()
            if run.client_id == client_id
            and run.campaign_id == campaign_id
            and (not kind or run.kind == CampaignRunKind(kind))
        ]
        runs.sort(key=lambda run: run.created_at, reverse=True)
        return runs[: clamp_limit(limit, default=50, maximum=200)]

    def update_status(
        self,
        client_id: str,
        run_id: str,
        from_status: CampaignRunStatus,
        to_status: CampaignRunStatus,
        fields: Optional[dict] = None,
        now: Optional[datetime] = None,
    ) -> Optional[CampaignRunItem]:
        now = ensure_utc(now) or utcnow()
        from_value = CampaignRunStatus(from_status).value

        def mutate(records):
            for index, record in enumerate(records):
                if record.get("id") != run_id or record.get("client_id") != client_id:
                    continue
                if record.get("status") != from_value:
                    return None, False
                updated = CampaignRunItem.model_validate(record).model_copy(
                    update={"status": CampaignRunStatus(to_status), "updated_at": now, **(fields or {})}
                )
                records[index] = _dump(updated)
                return updated, True
            return None, False

        return self.file.update(mutate)

    def increment(self, client_id: str, run_id: str, counter: str, amount: int = 1) -> bool:
        check_counter(counter)
        stamp = utcnow().isoformat()

        def mutate(records):
            for record in records:
                if record.get("id") == run_id and record.get("client_id") == client_id:
                    record[counter] = int(record.get(counter) or 0) + amount
                    record["updated_at"] = stamp
                    return True, True
            return False, False

        return self.file.update(mutate)

    def list_ids_by_status(self, client_id: Optional[str], status: CampaignRunStatus) -> list[str]:
        status = CampaignRunStatus(status)
        return [
            run.id
            for run in self._runs()
            if run.status == status and (not client_id or run.client_id == client_id)
        ]
