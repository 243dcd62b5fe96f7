import random
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock, patch

import pytest

from dispatch_api.schemas.campaign import DispatchTarget
from dispatch_api.schemas.outbox import EnqueueRequest, OutboxStatus
from dispatch_api.services.dispatch_service import (
    dispatch_campaign,
    dispatch_group_campaign,
    enqueue_message,
    pause_campaign_run,
    resume_campaign_run,
    simulate_campaign,
    simulate_group_campaign,
)
from dispatch_api.services.drain_service import drain_outbox
from dispatch_api.services.errors import DispatchValidationError, GuardrailViolationError, RunNotFoundError
from dispatch_api.services.run_state_machine import CampaignRunKind, CampaignRunStatus
from dispatch_api.services.run_tracker import get_run, list_run_items, list_runs

NOW = datetime(2024, 1, 1, tzinfo=timezone.utc)


def _targets(count, prefix="55119000"):
    return [DispatchTarget(to=f"{prefix}{index:05d}") for index in range(count)]


def _all_runs(stores):
    return [
        run_id
        for status in CampaignRunStatus
        for run_id in stores.runs.list_ids_by_status(None, status)
    ]


async def _dispatch(stores, settings, targets, **kwargs):
    return await dispatch_campaign(
        stores,
        client_id=kwargs.pop("client_id", "client-1"),
        campaign_id=kwargs.pop("campaign_id", "camp-1"),
        targets=targets,
        message=kwargs.pop("message", "Promo de janeiro"),
        settings=settings,
        now=kwargs.pop("now", NOW),
        rng=kwargs.pop("rng", random.Random(5)),
        **kwargs,
    )


class TestDispatchCampaign:
    @pytest.mark.asyncio
    async def test_balanced_end_to_end(self, stores, settings):
        response = await _dispatch(stores, settings, _targets(3), profile="balanced")

        assert response.success is True
        assert (response.enqueued, response.skipped, response.failed) == (3, 0, 0)
        assert response.status == CampaignRunStatus.SENDING

        entries = stores.outbox.list_pending_for_run("client-1", response.run_id)
        assert len(entries) == 3
        assert all(entry.status == OutboxStatus.PENDING for entry in entries)
        times = [entry.not_before for entry in entries]
        assert all(later - earlier >= timedelta(seconds=60) for earlier, later in zip(times, times[1:]))
        assert times[0] >= NOW + timedelta(seconds=60)
        assert [entry.to for entry in entries] == [target.to for target in _targets(3)]

        await drain_outbox(stores, None, dry_run=True, now=NOW + timedelta(days=1))

        run = get_run(stores.runs, "client-1", response.run_id)
        assert run.status == CampaignRunStatus.DONE
        assert (run.enqueued, run.failed, run.sent) == (3, 0, 3)
        assert run.pace_profile == "balanced"

    @pytest.mark.asyncio
    async def test_guardrail_cap_rejects_before_storage(self, stores, settings):
        with pytest.raises(GuardrailViolationError):
            await _dispatch(stores, settings, _targets(1000), profile="safe")

        assert stores.outbox.list_entries() == []
        assert _all_runs(stores) == []

    @pytest.mark.asyncio
    async def test_unknown_profile_uses_safe_cap(self, stores, settings):
        with pytest.raises(GuardrailViolationError):
            await _dispatch(stores, settings, _targets(31), profile="yolo")

    @pytest.mark.asyncio
    async def test_default_profile_from_settings(self, stores, settings):
        settings.default_pace_profile = "aggressive"
        response = await _dispatch(stores, settings, _targets(2))
        assert get_run(stores.runs, "client-1", response.run_id).pace_profile == "aggressive"

    @pytest.mark.asyncio
    async def test_empty_targets_rejected(self, stores, settings):
        with pytest.raises(DispatchValidationError):
            await _dispatch(stores, settings, [])
        assert _all_runs(stores) == []

    @pytest.mark.asyncio
    async def test_invalid_target_rejects_whole_batch(self, stores, settings):
        targets = _targets(2) + [DispatchTarget(to="   ")]
        with pytest.raises(DispatchValidationError):
            await _dispatch(stores, settings, targets)

        assert stores.outbox.list_entries() == []
        assert _all_runs(stores) == []

    @pytest.mark.asyncio
    async def test_missing_message_rejected(self, stores, settings):
        with pytest.raises(DispatchValidationError):
            await _dispatch(stores, settings, _targets(1), message=None)

    @pytest.mark.asyncio
    async def test_per_target_message_overrides_default(self, stores, settings):
        targets = [DispatchTarget(to="5511900000001", message="Oi Ana")]
        response = await _dispatch(stores, settings, targets)

        entry = stores.outbox.list_pending_for_run("client-1", response.run_id)[0]
        assert entry.message == "Oi Ana"
        assert entry.message_type == "campaign"
        assert entry.correlation.campaign_id == "camp-1"

    @pytest.mark.asyncio
    async def test_duplicate_target_is_skipped(self, stores, settings):
        targets = [DispatchTarget(to="5511900000001"), DispatchTarget(to="+55 11 90000-0001")]
        response = await _dispatch(stores, settings, targets)

        assert (response.enqueued, response.skipped) == (1, 1)
        run = get_run(stores.runs, "client-1", response.run_id)
        assert (run.enqueued, run.skipped) == (1, 1)

    @pytest.mark.asyncio
    async def test_caller_idempotency_key_dedupes_across_runs(self, stores, settings):
        targets = [DispatchTarget(to="5511900000001", idempotency_key="promo-jan:ana")]
        await _dispatch(stores, settings, targets)
        second = await _dispatch(stores, settings, targets)

        assert (second.enqueued, second.skipped) == (0, 1)
        assert second.status == CampaignRunStatus.DONE
        assert len(stores.outbox.list_entries()) == 1

    @pytest.mark.asyncio
    async def test_per_target_failure_does_not_abort(self, stores, settings):
        original = stores.outbox.enqueue

        def flaky(request, now=None):
            if request.to.endswith("00001"):
                raise RuntimeError("write failed")
            return original(request, now=now)

        with patch.object(stores.outbox, "enqueue", side_effect=flaky):
            response = await _dispatch(stores, settings, _targets(3))

        assert (response.enqueued, response.failed) == (2, 1)
        assert response.success is True
        run = get_run(stores.runs, "client-1", response.run_id)
        assert (run.enqueued, run.failed) == (2, 1)
        assert run.status == CampaignRunStatus.SENDING

    @pytest.mark.asyncio
    @patch("dispatch_api.services.run_tracker.alert_run_failed")
    @patch("dispatch_api.services.dispatch_service.alert_run_failed_async")
    async def test_all_targets_failing_fails_run(self, mock_alert, mock_sync_alert, stores, settings):
        with patch.object(stores.outbox, "enqueue", side_effect=RuntimeError("db unavailable")):
            response = await _dispatch(stores, settings, _targets(2))

        assert response.success is False
        assert response.status == CampaignRunStatus.FAILED
        run = get_run(stores.runs, "client-1", response.run_id)
        assert run.failed == 2
        assert run.last_error == "db unavailable"
        mock_alert.assert_awaited_once_with("client-1", response.run_id, "db unavailable")
        mock_sync_alert.assert_not_called()

    @pytest.mark.asyncio
    @patch("dispatch_api.services.dispatch_service.alert_run_failed_async")
    async def test_schedule_failure_fails_run_and_raises(self, mock_alert, stores, settings):
        with patch("dispatch_api.services.dispatch_service.build_schedule", side_effect=RuntimeError("rng broken")):
            with pytest.raises(RuntimeError):
                await _dispatch(stores, settings, _targets(2))

        runs = list_runs(stores.runs, "client-1", "camp-1")
        assert len(runs) == 1
        assert runs[0].status == CampaignRunStatus.FAILED
        assert "rng broken" in runs[0].last_error
        assert stores.outbox.list_entries() == []

    @pytest.mark.asyncio
    async def test_send_window_shifts_schedule(self, stores, settings):
        settings.send_window_enabled = True
        now = datetime(2024, 1, 1, 3, 0, tzinfo=timezone.utc)

        response = await _dispatch(stores, settings, _targets(2), now=now)

        entries = stores.outbox.list_pending_for_run("client-1", response.run_id)
        assert entries[0].not_before > datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)

    @pytest.mark.asyncio
    async def test_immediate_delivery_drains_due_entries(self, stores, settings):
        settings.outbox_immediate_delivery = True
        transport = AsyncMock()
        transport.send.return_value = {"evolution": {}}
        stores.outbox.enqueue(EnqueueRequest(client_id="client-1", to="5511999999999", message="otp"), now=NOW)

        response = await _dispatch(stores, settings, _targets(1), transport=transport)

        assert response.drained is not None
        assert response.drained.sent == 1
        assert response.status == CampaignRunStatus.SENDING


class TestDispatchGroupCampaign:
    @pytest.mark.asyncio
    async def test_enqueues_one_entry_per_group(self, stores, settings):
        response = await dispatch_group_campaign(
            stores,
            client_id="client-1",
            group_campaign_id="gc-1",
            group_ids=["1203630001@g.us", "1203630002@g.us"],
            message="Aviso",
            settings=settings,
            now=NOW,
            rng=random.Random(1),
        )

        assert response.enqueued == 2
        run = get_run(stores.runs, "client-1", response.run_id)
        assert run.kind == CampaignRunKind.GROUP
        entries = stores.outbox.list_pending_for_run("client-1", response.run_id)
        assert [entry.to for entry in entries] == ["1203630001@g.us", "1203630002@g.us"]
        assert entries[0].correlation.kind == "group_campaign"
        assert entries[0].correlation.group_campaign_id == "gc-1"
        assert entries[0].correlation.group_id == "1203630001@g.us"

    @pytest.mark.asyncio
    async def test_rejects_non_group_ids(self, stores, settings):
        with pytest.raises(DispatchValidationError):
            await dispatch_group_campaign(
                stores,
                client_id="client-1",
                group_campaign_id="gc-1",
                group_ids=["1203630001@g.us", "5511900000001"],
                message="Aviso",
                settings=settings,
                now=NOW,
            )
        assert stores.outbox.list_entries() == []


class TestPauseResume:
    @pytest.mark.asyncio
    async def test_resume_reschedules_from_now(self, stores, settings):
        response = await _dispatch(stores, settings, _targets(3), profile="aggressive")
        pause_campaign_run(stores, "client-1", response.run_id, now=NOW)

        later = NOW + timedelta(hours=6)
        blocked = await drain_outbox(stores, None, dry_run=True, now=later)
        assert blocked.processed == 0

        run = resume_campaign_run(
            stores, "client-1", response.run_id, settings=settings, now=later, rng=random.Random(2)
        )
        assert run.status == CampaignRunStatus.SENDING

        entries = stores.outbox.list_pending_for_run("client-1", response.run_id)
        assert all(entry.not_before > later for entry in entries)
        assert (await drain_outbox(stores, None, dry_run=True, now=later)).processed == 0

        await drain_outbox(stores, None, dry_run=True, now=later + timedelta(hours=1))
        assert get_run(stores.runs, "client-1", response.run_id).status == CampaignRunStatus.DONE

    @pytest.mark.asyncio
    async def test_resume_without_reschedule_keeps_times(self, stores, settings):
        response = await _dispatch(stores, settings, _targets(2))
        before = [e.not_before for e in stores.outbox.list_pending_for_run("client-1", response.run_id)]
        pause_campaign_run(stores, "client-1", response.run_id, now=NOW)

        resume_campaign_run(stores, "client-1", response.run_id, reschedule=False, settings=settings, now=NOW)

        after = [e.not_before for e in stores.outbox.list_pending_for_run("client-1", response.run_id)]
        assert after == before


class TestEnqueueMessage:
    def test_transactional_enqueue(self, stores):
        request = EnqueueRequest(client_id="client-1", to="5511900000001", message="Seu código: 1234")
        result = enqueue_message(stores.outbox, request, now=NOW)

        assert result.created is True
        assert result.item.correlation is None
        assert stores.outbox.list_due("client-1", 10, now=NOW)[0].id == result.item.id


class TestSimulateCampaign:
    def _assert_nothing_stored(self, stores):
        assert stores.outbox.list_entries() == []
        assert _all_runs(stores) == []

    def test_preview_matches_dispatch_pacing(self, stores, settings):
        preview = simulate_campaign(
            "client-1", _targets(3), message="Oi", profile="balanced", settings=settings, now=NOW, rng=random.Random(5)
        )

        assert preview.allowed is True
        assert preview.policy.profile == "balanced"
        assert preview.policy.max_targets_per_run == 50
        assert [send.to for send in preview.schedule] == [target.to for target in _targets(3)]
        times = [send.not_before for send in preview.schedule]
        assert all(later - earlier >= timedelta(seconds=60) for earlier, later in zip(times, times[1:]))
        assert preview.starts_at == times[0]
        assert preview.estimated_finish_at == times[-1]
        self._assert_nothing_stored(stores)

    @pytest.mark.asyncio
    async def test_same_seed_same_schedule_as_dispatch(self, stores, settings):
        preview = simulate_campaign(
            "client-1", _targets(2), message="Oi", settings=settings, now=NOW, rng=random.Random(5)
        )

        response = await _dispatch(stores, settings, _targets(2), message="Oi")

        entries = stores.outbox.list_pending_for_run("client-1", response.run_id)
        assert [entry.not_before for entry in entries] == [send.not_before for send in preview.schedule]

    def test_over_cap_is_a_verdict_not_an_error(self, stores, settings):
        preview = simulate_campaign("client-1", _targets(31), message="Oi", profile="safe", settings=settings, now=NOW)

        assert preview.allowed is False
        assert "limit of 30" in preview.reason
        assert preview.schedule == []
        self._assert_nothing_stored(stores)

    def test_validation_errors_raise(self, settings):
        with pytest.raises(DispatchValidationError):
            simulate_campaign("client-1", [], message="Oi", settings=settings, now=NOW)
        with pytest.raises(DispatchValidationError):
            simulate_campaign("client-1", _targets(1), message=None, settings=settings, now=NOW)

    def test_group_preview(self, stores, settings):
        preview = simulate_group_campaign(
            "client-1", ["1203630001@g.us", "1203630002@g.us"], "Aviso", settings=settings, now=NOW
        )

        assert preview.allowed is True
        assert [send.to for send in preview.schedule] == ["1203630001@g.us", "1203630002@g.us"]
        with pytest.raises(DispatchValidationError):
            simulate_group_campaign("client-1", ["5511900000001"], "Aviso", settings=settings, now=NOW)
        self._assert_nothing_stored(stores)


class TestRunItems:
    @pytest.mark.asyncio
    async def test_lists_every_target_with_outcome(self, stores, settings):
        response = await _dispatch(stores, settings, _targets(3))
        first = stores.outbox.list_pending_for_run("client-1", response.run_id)[0]
        stores.outbox.resolve(first.id, OutboxStatus.FAILED, {"error": "blocked"}, now=NOW)

        items = list_run_items(stores.outbox, stores.runs, "client-1", response.run_id)

        assert [item.to for item in items] == [target.to for target in _targets(3)]
        assert [item.status for item in items] == [OutboxStatus.FAILED, OutboxStatus.PENDING, OutboxStatus.PENDING]
        assert items[0].last_error == "blocked"

    def test_unknown_run(self, stores):
        with pytest.raises(RunNotFoundError):
            list_run_items(stores.outbox, stores.runs, "client-1", "run_missing")
