"""
同期エンジン 統合テスト
フェイクのリモートカレンダーで各フェーズ・エッジケースの動作を確認
"""

import asyncio
from datetime import date, datetime, time, timedelta

import pytest

from family_calendar_sync.config.sync_config import SyncEngineConfig
from family_calendar_sync.core.models import CalendarEvent, EventTime, RemoteEvent, SyncSettings
from family_calendar_sync.layers.auth_layer.credential_store import InMemoryCredentialStore
from family_calendar_sync.layers.auth_layer.token_manager import TokenManager
from family_calendar_sync.layers.data_acquisition.error_handler import (
    ReauthRequired, SyncInProgressError, TransientError, Unauthorized
)
from family_calendar_sync.layers.sync_layer.conflict_resolver import ConflictType, ResolutionAction
from family_calendar_sync.layers.sync_layer.sync_engine import SyncEngine

from tests.integration.fake_client import LONDON, NOW, FakeRemoteCalendarClient, fixed_clock, make_remote


def paired_event(**kwargs) -> CalendarEvent:
    """リモートと対応付け済みのローカルイベント"""
    values = dict(
        title="Football practice",
        date=date(2024, 5, 3),
        time=time(17, 0),
        duration_minutes=60,
        remote_event_id="g1",
        remote_calendar_id="family",
        updated_at=NOW - timedelta(days=2),
    )
    values.update(kwargs)
    return CalendarEvent(**values)


def remote_for(title="Football practice", hour=17, minutes=60, updated=None, **kwargs):
    start = datetime(2024, 5, 3, hour, 0, tzinfo=LONDON)
    return make_remote("g1", title, start, minutes, updated=updated, **kwargs)


class TestScenarios:
    """代表シナリオ"""

    @pytest.mark.asyncio
    async def test_export_new_event(self, engine, fake_client):
        """ローカルのみのイベントがエクスポートされ相関キーが付与される"""
        event = CalendarEvent(title="Dentist", date=date(2024, 5, 1), time=time(10, 0), duration_minutes=30)
        settings = SyncSettings(selected_calendar_ids=["family"], sync_direction="export")

        result = await engine.sync(settings, [event])

        assert result.exported_count == 1
        assert result.errors == []
        assert result.success
        assert event.remote_event_id == "r1"
        assert event.remote_calendar_id == "family"
        assert fake_client.called("list_events") == []
        assert fake_client.events["family"]["r1"].title == "Dentist"

    @pytest.mark.asyncio
    async def test_remote_title_change_wins_when_newer(self, engine, fake_client):
        """リモート側が新しい内容変更はローカルへ反映"""
        local = paired_event()
        fake_client.add("family", remote_for(title="Football match", updated=NOW - timedelta(days=1)))
        settings = SyncSettings(selected_calendar_ids=["family"], sync_direction="both")

        result = await engine.sync(settings, [local])

        assert result.updated_count == 1
        assert len(result.conflicts) == 1
        assert result.conflicts[0].conflict_type == ConflictType.CONTENT_MISMATCH
        assert local.title == "Football match"
        assert result.updated_events == [local]
        assert fake_client.called("update_event") == []
        assert isinstance(result.conflicts[0].remote_event, RemoteEvent)
        assert result.conflicts[0].remote_event.id == "g1"
        assert result.conflicts[0].remote_as_local.title == "Football match"

    @pytest.mark.asyncio
    async def test_no_calendars_selected_makes_no_remote_calls(self, engine, fake_client):
        settings = SyncSettings(selected_calendar_ids=[], sync_direction="export")
        event = CalendarEvent(title="Dentist", date=date(2024, 5, 1), time=time(10, 0))

        result = await engine.sync(settings, [event])

        assert fake_client.calls == []
        assert (result.imported_count, result.exported_count, result.updated_count) == (0, 0, 0)
        assert result.success
        assert event.remote_event_id is None


class TestReconcile:
    """照合フェーズ"""

    @pytest.mark.asyncio
    async def test_local_newer_pushes_to_remote(self, engine, fake_client):
        local = paired_event(title="Football final", updated_at=NOW)
        fake_client.add("family", remote_for(updated=NOW - timedelta(days=1)))
        settings = SyncSettings(selected_calendar_ids=["family"])

        result = await engine.sync(settings, [local])

        assert result.updated_count == 1
        assert fake_client.called("update_event") == [("update_event", "family", "g1")]
        assert fake_client.events["family"]["g1"].title == "Football final"
        assert local.title == "Football final"
        assert result.conflicts[0].resolution.action == ResolutionAction.UPDATE_REMOTE

    @pytest.mark.asyncio
    async def test_time_mismatch_takes_priority(self, engine, fake_client):
        """時刻と内容の両方が異なる場合は時刻の競合として報告"""
        local = paired_event()
        fake_client.add("family", remote_for(title="Football match", hour=18))
        settings = SyncSettings(selected_calendar_ids=["family"])

        result = await engine.sync(settings, [local])

        assert [c.conflict_type for c in result.conflicts] == [ConflictType.TIME_MISMATCH]
        assert local.time == time(18, 0)

    @pytest.mark.asyncio
    async def test_deletion_is_reported_not_applied(self, engine, fake_client):
        local = paired_event(remote_event_id="gone")
        settings = SyncSettings(selected_calendar_ids=["family"])

        result = await engine.sync(settings, [local])

        assert len(result.conflicts) == 1
        conflict = result.conflicts[0]
        assert conflict.conflict_type == ConflictType.DELETION_CONFLICT
        assert conflict.resolution.action == ResolutionAction.REPORT_ONLY
        assert conflict.resolution.winner is None
        assert result.updated_count == 0
        assert local.remote_event_id == "gone"
        assert fake_client.called("update_event") == []
        assert fake_client.called("delete_event") == []
        assert fake_client.called("create_event") == []

    @pytest.mark.asyncio
    async def test_events_outside_window_are_not_classified(self, engine, fake_client):
        """取得期間外のイベントは削除競合にしない"""
        local = paired_event(date=date(2023, 1, 10))
        settings = SyncSettings(selected_calendar_ids=["family"])

        result = await engine.sync(settings, [local])

        assert result.conflicts == []
        assert result.success

    @pytest.mark.asyncio
    async def test_failed_calendar_fetch_does_not_report_deletions(self, engine, fake_client):
        fake_client.failures["list_events"] = TransientError("Remote server error 503", status=503)
        local = paired_event()
        settings = SyncSettings(selected_calendar_ids=["family"])

        result = await engine.sync(settings, [local])

        assert result.conflicts == []
        assert len(result.errors) == 1
        assert "family" in result.errors[0]

    @pytest.mark.asyncio
    async def test_second_sync_is_idempotent(self, engine, fake_client):
        local = paired_event()
        fake_client.add("family", remote_for(title="Football match"))
        new_event = CalendarEvent(title="Swim lesson", date=date(2024, 5, 4), time=time(9, 0))
        settings = SyncSettings(selected_calendar_ids=["family"])

        first = await engine.sync(settings, [local, new_event])
        second = await engine.sync(settings, [local, new_event] + first.imported_events)

        assert first.updated_count == 1
        assert first.exported_count == 1
        assert second.updated_count == 0
        assert second.exported_count == 0
        assert second.imported_count == 0
        assert second.conflicts == []
        assert len(fake_client.called("create_event")) == 1

    @pytest.mark.asyncio
    async def test_recurring_series_instances_are_paired_with_master(self, engine, fake_client):
        """展開済みインスタンスしか返らない繰り返しイベントは親と照合する"""
        lesson = CalendarEvent(title="Swim lesson", date=date(2024, 5, 4), time=time(9, 0),
                               duration_minutes=45, recurrence_rule="FREQ=WEEKLY")
        settings = SyncSettings(selected_calendar_ids=["family"])

        first = await engine.sync(settings, [lesson])
        fake_client.expand_series("family", lesson.remote_event_id)
        second = await engine.sync(settings, [lesson])

        assert first.exported_count == 1
        assert second.imported_count == 0
        assert second.conflicts == []
        assert second.errors == []
        assert fake_client.called("get_event") == [("get_event", "family", "r1")]
        assert fake_client.called("update_event") == []

    @pytest.mark.asyncio
    async def test_recurring_master_change_updates_local_series(self, engine, fake_client):
        lesson = CalendarEvent(title="Swim lesson", date=date(2024, 5, 4), time=time(9, 0),
                               duration_minutes=45, recurrence_rule="FREQ=WEEKLY")
        settings = SyncSettings(selected_calendar_ids=["family"])
        await engine.sync(settings, [lesson])
        fake_client.expand_series("family", "r1")

        lesson.updated_at = NOW - timedelta(days=1)
        master = fake_client.masters["family"]["r1"]
        master.title = "Swimming gala"
        master.updated = NOW

        result = await engine.sync(settings, [lesson])

        assert [c.conflict_type for c in result.conflicts] == [ConflictType.CONTENT_MISMATCH]
        assert result.imported_count == 0
        assert lesson.title == "Swimming gala"
        assert lesson.recurrence_rule == "FREQ=WEEKLY"
        assert lesson.remote_event_id == "r1"

    @pytest.mark.asyncio
    async def test_malformed_remote_event_is_recorded_per_event(self, engine, fake_client):
        """壊れたリモートイベントは1件のエラーとして記録し、同期は続行"""
        local = paired_event()
        fake_client.add("family", RemoteEvent(id="g1", title="Football practice",
                                              start=EventTime(), end=EventTime(), updated=NOW))
        new_event = CalendarEvent(title="Dentist", date=date(2024, 5, 1), time=time(10, 0))
        settings = SyncSettings(selected_calendar_ids=["family"])

        result = await engine.sync(settings, [local, new_event])

        assert len(result.errors) == 1
        assert "Football practice" in result.errors[0]
        assert result.exported_count == 1
        assert result.sync_time == NOW
        assert local.title == "Football practice"


class TestImportExport:
    """インポート・エクスポート"""

    @pytest.mark.asyncio
    async def test_remote_only_events_are_returned(self, engine, fake_client):
        fake_client.add("family", make_remote("g7", "School play", datetime(2024, 5, 10, 14, 0, tzinfo=LONDON)))
        fake_client.add("family", make_remote("g8", "Cancelled party",
                                               datetime(2024, 5, 11, 14, 0, tzinfo=LONDON),
                                               status="cancelled"))
        settings = SyncSettings(selected_calendar_ids=["family"], sync_direction="import")

        result = await engine.sync(settings, [])

        assert result.imported_count == 1
        imported = result.imported_events[0]
        assert imported.id == "remote-g7"
        assert imported.remote_event_id == "g7"
        assert imported.remote_calendar_id == "family"
        assert imported.time == time(14, 0)
        assert fake_client.called("create_event") == []

    @pytest.mark.asyncio
    async def test_export_failure_is_recorded_per_event(self, engine, fake_client):
        fake_client.reject_titles.add("Broken")
        events = [
            CalendarEvent(title="Broken", date=date(2024, 5, 1), time=time(9, 0)),
            CalendarEvent(title="Family dinner", date=date(2024, 5, 2), time=time(18, 0)),
        ]
        settings = SyncSettings(selected_calendar_ids=["family", "work"], sync_direction="export")

        result = await engine.sync(settings, events)

        assert result.exported_count == 1
        assert len(result.errors) == 1
        assert "Broken" in result.errors[0]
        assert not result.success
        assert events[0].remote_event_id is None
        assert events[1].remote_event_id is not None
        assert all(call[1] == "family" for call in fake_client.called("create_event"))

    @pytest.mark.asyncio
    async def test_time_skipped_by_clock_change_is_not_exported(self, engine, fake_client):
        """夏時間開始で存在しない時刻はエクスポートせずエラーとして記録"""
        events = [
            CalendarEvent(title="Early swim", date=date(2024, 3, 31), time=time(1, 30)),
            CalendarEvent(title="Late swim", date=date(2024, 3, 31), time=time(3, 30)),
        ]
        settings = SyncSettings(selected_calendar_ids=["family"], sync_direction="export")

        result = await engine.sync(settings, events)

        assert result.exported_count == 1
        assert len(result.errors) == 1
        assert "Early swim" in result.errors[0]
        assert events[0].remote_event_id is None
        assert fake_client.called("create_event") == [("create_event", "family", "Late swim")]


class TestFailureModes:
    """認証失敗・タイムアウト・同時実行"""

    @pytest.mark.asyncio
    async def test_missing_credentials_fail_the_call(self, oauth_config):
        store = InMemoryCredentialStore()
        manager = TokenManager("nobody", oauth_config, store, clock=fixed_clock)
        engine = SyncEngine(manager, FakeRemoteCalendarClient(manager), clock=fixed_clock)
        settings = SyncSettings(selected_calendar_ids=["family"])

        with pytest.raises(ReauthRequired):
            await engine.sync(settings, [])
        # ロックは解放されている
        with pytest.raises(ReauthRequired):
            await engine.sync(settings, [])
        assert settings.last_sync_at is None

    @pytest.mark.asyncio
    async def test_unauthorized_mid_sync_returns_partial_result(self, engine, fake_client, credential_store):
        fake_client.failures["list_events"] = Unauthorized("Authentication expired. Please reconnect.")
        event = CalendarEvent(title="Dentist", date=date(2024, 5, 1), time=time(10, 0))
        settings = SyncSettings(selected_calendar_ids=["family"])

        result = await engine.sync(settings, [event])

        assert result.reauth_required
        assert len(result.errors) == 1
        assert fake_client.called("create_event") == []
        assert await credential_store.get("family-account") is None
        assert settings.last_sync_at == NOW

    @pytest.mark.asyncio
    async def test_timeout_returns_accumulated_result(self, engine, fake_client):
        fake_client.list_delay = 5.0
        settings = SyncSettings(selected_calendar_ids=["family"])

        result = await engine.sync(settings, [], timeout=0.05)

        assert result.timed_out
        assert len(result.errors) == 1
        assert settings.last_sync_at == NOW

    @pytest.mark.asyncio
    async def test_zero_timeout_is_an_immediate_deadline(self, engine, fake_client):
        fake_client.list_delay = 5.0
        settings = SyncSettings(selected_calendar_ids=["family"])

        result = await engine.sync(settings, [], timeout=0)

        assert result.timed_out
        assert len(result.errors) == 1

    @pytest.mark.asyncio
    async def test_concurrent_sync_is_rejected(self, engine, fake_client):
        fake_client.list_gate = asyncio.Event()
        settings = SyncSettings(selected_calendar_ids=["family"])

        first = asyncio.create_task(engine.sync(settings, []))
        await asyncio.sleep(0)
        while not fake_client.called("list_events"):
            await asyncio.sleep(0)

        with pytest.raises(SyncInProgressError):
            await engine.sync(settings, [])

        fake_client.list_gate.set()
        result = await first
        assert result.success

    @pytest.mark.asyncio
    async def test_disabled_settings_do_nothing(self, engine, fake_client):
        settings = SyncSettings(enabled=False, selected_calendar_ids=["family"])

        result = await engine.sync(settings, [])

        assert result.success
        assert fake_client.calls == []
        assert settings.last_sync_at is None


class TestEngineBoundary:
    """同期以外の公開操作"""

    @pytest.mark.asyncio
    async def test_export_single_event(self, engine, fake_client):
        event = CalendarEvent(title="Parents evening", date=date(2024, 5, 9), time=time(18, 30))

        remote_id = await engine.export_single_event(event, "family")

        assert remote_id == "r1"
        assert event.remote_event_id == "r1"

        event.title = "Parents evening (moved)"
        assert await engine.export_single_event(event) == "r1"
        assert fake_client.called("update_event") == [("update_event", "family", "r1")]

    @pytest.mark.asyncio
    async def test_calendar_list_and_auth_state(self, engine):
        calendars = await engine.get_calendar_list()

        assert [c.id for c in calendars] == ["family"]
        assert await engine.is_authenticated()

    @pytest.mark.asyncio
    async def test_context_manager_closes_client(self, token_manager, fake_client):
        async with SyncEngine(token_manager, fake_client, config=SyncEngineConfig()) as engine:
            assert engine.account_id == "family-account"
        assert fake_client.closed
