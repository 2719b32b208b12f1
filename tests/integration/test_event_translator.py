"""
イベント変換テスト
"""

from datetime import date, datetime, time, timezone

import pytest

from family_calendar_sync.core.categories import EventType
from family_calendar_sync.core.models import (
    CalendarEvent, EventStatus, EventTime, Reminder, ReminderKind, RemoteEvent, RemoteReminder
)
from family_calendar_sync.layers.sync_layer.event_translator import EventTranslator

from tests.integration.fake_client import LONDON, make_remote


@pytest.fixture
def translator():
    return EventTranslator("Europe/London")


class TestRoundTrip:
    """往復変換"""

    @pytest.mark.parametrize("day, start, minutes", [
        (date(2024, 5, 1), time(10, 0), 30),
        (date(2024, 1, 15), time(23, 45), 90),     # GMT
        (date(2024, 7, 1), time(0, 15), 15),       # BST
        (date(2024, 3, 31), time(12, 0), 60 * 24), # 夏時間切替日
    ])
    def test_local_remote_local_preserves_schedule(self, translator, day, start, minutes):
        event = CalendarEvent(title="Dentist", date=day, time=start, duration_minutes=minutes)

        back = translator.to_local(translator.to_remote(event))

        assert (back.title, back.date, back.time, back.duration_minutes) == \
            (event.title, event.date, event.time, event.duration_minutes)

    def test_remote_body_shape(self, translator):
        event = CalendarEvent(title="Swim lesson", date=date(2024, 5, 4), time=time(9, 0),
                              duration_minutes=45, location="Leisure centre",
                              recurrence_rule="FREQ=WEEKLY;BYDAY=SA")

        body = translator.to_remote(event).to_api()

        assert body['summary'] == "Swim lesson"
        assert body['start']['timeZone'] == "Europe/London"
        assert body['start']['dateTime'] == "2024-05-04T09:00:00+01:00"
        assert body['end']['dateTime'] == "2024-05-04T09:45:00+01:00"
        assert body['description'] == ''
        assert body['recurrence'] == ["RRULE:FREQ=WEEKLY;BYDAY=SA"]
        assert body['extendedProperties']['private']['category'] == "sport"

    @pytest.mark.parametrize("day, start", [
        (date(2024, 5, 1), time(10, 0)),
        (date(2024, 1, 15), time(23, 45)),
        (date(2024, 3, 31), time(3, 30)),
        (date(2024, 10, 27), time(1, 30)),   # 冬時間へ戻る際の重複時刻
    ])
    def test_round_trip_through_wire_format(self, translator, day, start):
        event = CalendarEvent(title="Dentist", date=day, time=start, duration_minutes=60)

        body = translator.to_remote(event).to_api()
        back = translator.to_local(RemoteEvent.from_api(body))

        assert (back.date, back.time, back.duration_minutes) == (event.date, event.time, 60)

    def test_time_skipped_by_clock_change_is_rejected(self, translator):
        # 2024-03-31 01:00 GMT から 02:00 BST へ進む
        event = CalendarEvent(title="Early swim", date=date(2024, 3, 31), time=time(1, 30))

        with pytest.raises(ValueError, match="does not exist"):
            translator.to_remote(event)


class TestToLocal:
    """リモート → ローカル"""

    def test_utc_time_is_shown_in_policy_zone(self, translator):
        remote = RemoteEvent(
            id="g1", title="Call with school",
            start=EventTime(date_time=datetime(2024, 6, 3, 8, 0, tzinfo=timezone.utc)),
            end=EventTime(date_time=datetime(2024, 6, 3, 8, 20, tzinfo=timezone.utc)),
        )

        local = translator.to_local(remote, "family")

        assert local.time == time(9, 0)
        assert local.duration_minutes == 20
        assert local.id == "remote-g1"
        assert local.remote_calendar_id == "family"

    def test_all_day_event(self, translator):
        remote = RemoteEvent(
            id="g2", title="Family visit",
            start=EventTime(date=date(2024, 5, 6)),
            end=EventTime(date=date(2024, 5, 7)),
        )

        local = translator.to_local(remote)

        assert local.date == date(2024, 5, 6)
        assert local.time == time(0, 0)
        assert local.duration_minutes == 24 * 60
        assert local.type == EventType.FAMILY

    def test_short_events_are_clamped(self, translator):
        remote = make_remote("g3", "Quick call", datetime(2024, 5, 2, 12, 0, tzinfo=LONDON), minutes=5)

        assert translator.to_local(remote).duration_minutes == 15

    @pytest.mark.parametrize("title, expected", [
        ("Doctor appointment", EventType.APPOINTMENT),
        ("Dentist call", EventType.APPOINTMENT),       # 表の先頭が優先
        ("Team meeting", EventType.MEETING),
        ("Football training", EventType.SPORT),
        ("Piano lesson", EventType.EDUCATION),
        ("Birthday party", EventType.SOCIAL),
        ("Sunday dinner", EventType.FAMILY),
        ("Haircut", EventType.OTHER),
    ])
    def test_category_inferred_from_title(self, translator, title, expected):
        remote = make_remote("g4", title, datetime(2024, 5, 2, 12, 0, tzinfo=LONDON))

        assert translator.to_local(remote).type == expected

    def test_explicit_category_wins_over_keywords(self, translator):
        remote = make_remote("g5", "Doctor Who marathon", datetime(2024, 5, 2, 19, 0, tzinfo=LONDON),
                             category="social")

        assert translator.to_local(remote).type == EventType.SOCIAL

    def test_default_reminder_and_empty_fields(self, translator):
        remote = make_remote("g6", "", datetime(2024, 5, 2, 12, 0, tzinfo=LONDON),
                             description="", location="", status="tentative")

        local = translator.to_local(remote)

        assert local.title == "Untitled Event"
        assert local.notes is None
        assert local.location is None
        assert local.status == EventStatus.TENTATIVE
        assert local.reminders == [Reminder(ReminderKind.NOTIFICATION, 15, True)]

    def test_remote_reminders_and_status(self, translator):
        remote = make_remote("g7", "Parents evening", datetime(2024, 5, 2, 18, 0, tzinfo=LONDON),
                             reminders=[RemoteReminder("email", 60), RemoteReminder("popup", 10)],
                             status="cancelled")

        local = translator.to_local(remote)

        assert [(r.kind, r.offset_minutes) for r in local.reminders] == \
            [(ReminderKind.EMAIL, 60), (ReminderKind.NOTIFICATION, 10)]
        assert local.status == EventStatus.CANCELLED


class TestToRemote:
    """ローカル → リモート"""

    def test_only_enabled_reminders_are_sent(self, translator):
        event = CalendarEvent(
            title="Dentist", date=date(2024, 5, 1), time=time(10, 0),
            reminders=[
                Reminder(ReminderKind.EMAIL, 1440, True),
                Reminder(ReminderKind.SMS, 30, True),
                Reminder(ReminderKind.NOTIFICATION, 5, False),
            ],
        )

        remote = translator.to_remote(event)

        assert [(r.method, r.minutes) for r in remote.reminders] == [("email", 1440), ("popup", 30)]

    @pytest.mark.parametrize("status, expected", [
        (EventStatus.CONFIRMED, "confirmed"),
        (EventStatus.TENTATIVE, "tentative"),
        (EventStatus.CANCELLED, "tentative"),
    ])
    def test_status_mapping(self, translator, status, expected):
        event = CalendarEvent(title="Dentist", date=date(2024, 5, 1), time=time(10, 0), status=status)

        assert translator.to_remote(event).status == expected


class TestApplyRemote:
    """リモート優先時のローカル更新"""

    def test_updates_synchronized_fields_in_place(self, translator):
        local = CalendarEvent(title="Football practice", date=date(2024, 5, 3), time=time(17, 0),
                              cost=12.5, remote_event_id="g1", remote_calendar_id="family")
        remote = make_remote("g1", "Football match", datetime(2024, 5, 3, 18, 30, tzinfo=LONDON),
                             minutes=90, location="Park")

        result = translator.apply_remote(local, remote)

        assert result is local
        assert (local.title, local.time, local.duration_minutes, local.location) == \
            ("Football match", time(18, 30), 90, "Park")
        assert local.id != "remote-g1"
        assert local.cost == 12.5
        assert local.remote_calendar_id == "family"
        assert local.updated_at == remote.updated
