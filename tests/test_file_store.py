import json
from concurrent.futures import ThreadPoolExecutor
from datetime import datetime, timezone

import pytest

from dispatch_api.schemas.outbox import EnqueueRequest, OutboxStatus
from dispatch_api.services.file_store import JsonFileCorruptError, JsonFileOutboxStore, JsonFileRunStore

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _request(**kwargs):
    return EnqueueRequest(client_id="client-1", to="5511900000001", message="hello", **kwargs)


class TestJsonFile:
    def test_missing_file_reads_empty(self, tmp_path):
        store = JsonFileOutboxStore(tmp_path / "outbox.json")
        assert store.list_entries() == []
        assert not (tmp_path / "outbox.json").exists()

    def test_blank_file_reads_empty(self, tmp_path):
        path = tmp_path / "outbox.json"
        path.write_text("")
        assert JsonFileOutboxStore(path).list_entries() == []

    def test_corrupt_file_raises(self, tmp_path):
        path = tmp_path / "outbox.json"
        path.write_text("{not json")
        with pytest.raises(JsonFileCorruptError):
            JsonFileOutboxStore(path).list_entries()

    def test_non_array_raises(self, tmp_path):
        path = tmp_path / "runs.json"
        path.write_text('{"id": "run_1"}')
        with pytest.raises(JsonFileCorruptError):
            JsonFileRunStore(path).list_ids_by_status(None, "queued")

    def test_writes_json_array_without_leftovers(self, tmp_path):
        path = tmp_path / "data" / "outbox.json"
        JsonFileOutboxStore(path).enqueue(_request(), now=NOW)

        records = json.loads(path.read_text())
        assert len(records) == 1
        assert records[0]["status"] == "pending"
        assert [p.name for p in path.parent.iterdir() if p.suffix == ".tmp"] == []

    def test_noop_resolve_does_not_rewrite(self, tmp_path):
        path = tmp_path / "outbox.json"
        store = JsonFileOutboxStore(path)
        store.enqueue(_request(), now=NOW)
        before = path.stat().st_mtime_ns

        assert store.resolve("wout_missing", OutboxStatus.SENT, now=NOW) is False
        assert path.stat().st_mtime_ns == before


class TestConcurrentWriters:
    def test_instances_share_file(self, tmp_path):
        path = tmp_path / "outbox.json"
        item = JsonFileOutboxStore(path).enqueue(_request(), now=NOW).item
        assert JsonFileOutboxStore(path).get(item.id) == item

    def test_only_one_resolver_wins(self, tmp_path):
        path = tmp_path / "outbox.json"
        item = JsonFileOutboxStore(path).enqueue(_request(), now=NOW).item

        def resolve(status):
            return JsonFileOutboxStore(path).resolve(item.id, status, now=NOW)

        statuses = [OutboxStatus.SENT, OutboxStatus.FAILED] * 8
        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(resolve, statuses))

        assert results.count(True) == 1
        assert JsonFileOutboxStore(path).get(item.id).status != OutboxStatus.PENDING

    def test_parallel_enqueues_are_all_kept(self, tmp_path):
        path = tmp_path / "outbox.json"

        def enqueue(index):
            return JsonFileOutboxStore(path).enqueue(_request(idempotency_key=f"k{index}"), now=NOW).created

        with ThreadPoolExecutor(max_workers=8) as pool:
            created = list(pool.map(enqueue, range(20)))

        assert all(created)
        assert len(JsonFileOutboxStore(path).list_entries()) == 20

    def test_parallel_same_key_creates_one(self, tmp_path):
        path = tmp_path / "outbox.json"

        def enqueue(_):
            return JsonFileOutboxStore(path).enqueue(_request(idempotency_key="same"), now=NOW)

        with ThreadPoolExecutor(max_workers=8) as pool:
            results = list(pool.map(enqueue, range(10)))

        assert sum(1 for result in results if result.created) == 1
        assert len({result.item.id for result in results}) == 1
