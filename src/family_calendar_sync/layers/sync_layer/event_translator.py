"""
イベント変換 - ローカルイベントとリモートイベントの相互変換
タイムゾーンは固定ポリシー（既定 Europe/London）で解釈する
"""

import logging
from datetime import datetime, timedelta, timezone, tzinfo
from typing import List, Optional, Union
from zoneinfo import ZoneInfo

from ...core.categories import infer_event_type, parse_event_type
from ...core.models import (
    CalendarEvent, EventStatus, EventTime, Reminder, ReminderKind,
    RemoteEvent, RemoteReminder, MIN_DURATION_MINUTES, utcnow
)

logger = logging.getLogger(__name__)

DEFAULT_TIMEZONE = "Europe/London"
DEFAULT_TITLE = "Untitled Event"
DEFAULT_DURATION_MINUTES = 60
LOCAL_ID_PREFIX = "remote-"
RRULE_PREFIX = "RRULE:"


class EventTranslator:
    """ローカル ↔ リモートのイベント変換（副作用なし、apply_remoteを除く）"""

    def __init__(self, timezone: Union[str, tzinfo] = DEFAULT_TIMEZONE):
        if isinstance(timezone, str):
            self.timezone_name = timezone
            self.zone: tzinfo = ZoneInfo(timezone)
        else:
            self.timezone_name = str(timezone)
            self.zone = timezone

    def to_local(self, remote: RemoteEvent, calendar_id: Optional[str] = None) -> CalendarEvent:
        """リモートイベントをローカル形式に変換"""
        start = remote.start.resolve(self.zone)
        if remote.end.date is None and remote.end.date_time is None:
            duration = DEFAULT_DURATION_MINUTES
        else:
            end = remote.end.resolve(self.zone)
            duration = round((end - start).total_seconds() / 60)

        created = remote.created or remote.updated or utcnow()

        return CalendarEvent(
            id=f"{LOCAL_ID_PREFIX}{remote.id}",
            title=remote.title or DEFAULT_TITLE,
            date=start.date(),
            time=start.time().replace(second=0, microsecond=0, tzinfo=None),
            duration_minutes=max(MIN_DURATION_MINUTES, duration),
            location=remote.location or None,
            notes=remote.description or None,
            type=parse_event_type(remote.category) or infer_event_type(remote.title or ''),
            recurrence_rule=_first_rrule(remote.recurrence),
            status=_local_status(remote.status),
            remote_event_id=remote.id,
            remote_calendar_id=calendar_id,
            reminders=self._to_local_reminders(remote.reminders),
            attendees=list(remote.attendees),
            created_at=created,
            updated_at=remote.updated or created,
        )

    def to_remote(self, local: CalendarEvent) -> RemoteEvent:
        """ローカルイベントをリモート形式に変換"""
        start = local.start_datetime(self.zone)
        if _is_nonexistent(start):
            raise ValueError(f"{local.date} {local.time:%H:%M} does not exist in {self.timezone_name} "
                             f"(skipped by the daylight saving change)")
        end = start + timedelta(minutes=local.duration_minutes)

        return RemoteEvent(
            id=local.remote_event_id,
            title=local.title,
            description=local.notes or None,
            location=local.location or None,
            start=EventTime(date_time=start, time_zone=self.timezone_name),
            end=EventTime(date_time=end, time_zone=self.timezone_name),
            attendees=list(local.attendees),
            reminders=[
                RemoteReminder(
                    method='email' if r.kind == ReminderKind.EMAIL else 'popup',
                    minutes=r.offset_minutes
                )
                for r in local.reminders if r.enabled
            ],
            recurrence=[_as_rrule_line(local.recurrence_rule)] if local.recurrence_rule else [],
            status='confirmed' if local.status == EventStatus.CONFIRMED else 'tentative',
            category=local.type.value if local.type else None,
        )

    def apply_remote(self, local: CalendarEvent, remote: RemoteEvent) -> CalendarEvent:
        """リモート側の同期対象フィールドでローカルイベントを上書き（その場で更新）"""
        incoming = self.to_local(remote, local.remote_calendar_id)

        local.title = incoming.title
        local.date = incoming.date
        local.time = incoming.time
        local.duration_minutes = incoming.duration_minutes
        local.location = incoming.location
        local.notes = incoming.notes
        local.status = incoming.status
        local.attendees = incoming.attendees
        local.recurrence_rule = incoming.recurrence_rule
        if remote.reminders is not None:
            local.reminders = incoming.reminders
        if remote.category:
            local.type = incoming.type
        local.updated_at = incoming.updated_at

        return local

    def _to_local_reminders(self, reminders: Optional[List[RemoteReminder]]) -> List[Reminder]:
        if not reminders:
            return [Reminder()]
        return [
            Reminder(
                kind=ReminderKind.EMAIL if r.method == 'email' else ReminderKind.NOTIFICATION,
                offset_minutes=r.minutes,
                enabled=True
            )
            for r in reminders
        ]


def _local_status(remote_status: Optional[str]) -> EventStatus:
    if remote_status == 'confirmed':
        return EventStatus.CONFIRMED
    if remote_status == 'cancelled':
        return EventStatus.CANCELLED
    return EventStatus.TENTATIVE


def _is_nonexistent(value: datetime) -> bool:
    """夏時間への切り替えで飛ばされた壁時計時刻か"""
    round_trip = value.astimezone(timezone.utc).astimezone(value.tzinfo)
    return round_trip.replace(tzinfo=None) != value.replace(tzinfo=None)


def _first_rrule(recurrence: List[str]) -> Optional[str]:
    for line in recurrence:
        if line.upper().startswith(RRULE_PREFIX):
            return line[len(RRULE_PREFIX):]
    return None


def _as_rrule_line(rule: str) -> str:
    return rule if rule.upper().startswith(RRULE_PREFIX) else f"{RRULE_PREFIX}{rule}"


if __name__ == "__main__":
    from datetime import date, time

    translator = EventTranslator()
    event = CalendarEvent(title="Swimming lesson", date=date(2025, 3, 8), time=time(9, 30),
                          duration_minutes=45, location="Leisure centre")
    remote = translator.to_remote(event)
    print(remote.to_api())
    print(translator.to_local(remote).to_dict())
