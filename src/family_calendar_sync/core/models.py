"""データモデル定義"""

import uuid
from datetime import datetime, date, time, timedelta, timezone, tzinfo
from dataclasses import dataclass, field
from enum import Enum
from typing import Optional, List, Dict, Any
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from .categories import EventType, infer_event_type, parse_event_type

MIN_DURATION_MINUTES = 15
DEFAULT_REMINDER_MINUTES = 15


def utcnow() -> datetime:
    """現在時刻（UTC, aware）"""
    return datetime.now(timezone.utc)


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    """ISO 8601文字列をdatetimeに変換（'Z'表記対応）"""
    if not value:
        return None
    parsed = datetime.fromisoformat(value.replace('Z', '+00:00'))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def format_datetime(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


class EventStatus(Enum):
    """イベントステータス"""
    CONFIRMED = "confirmed"
    TENTATIVE = "tentative"
    CANCELLED = "cancelled"


class Priority(Enum):
    """優先度"""
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"


class ReminderKind(Enum):
    """リマインダー種別"""
    NOTIFICATION = "notification"
    EMAIL = "email"
    SMS = "sms"


class SyncDirection(Enum):
    """同期方向"""
    IMPORT = "import"
    EXPORT = "export"
    BOTH = "both"

    @property
    def fetches_remote(self) -> bool:
        return self in (SyncDirection.IMPORT, SyncDirection.BOTH)

    @property
    def exports_local(self) -> bool:
        return self in (SyncDirection.EXPORT, SyncDirection.BOTH)

    @property
    def reconciles(self) -> bool:
        return self == SyncDirection.BOTH


@dataclass
class Reminder:
    """リマインダー"""
    kind: ReminderKind = ReminderKind.NOTIFICATION
    offset_minutes: int = DEFAULT_REMINDER_MINUTES
    enabled: bool = True

    def to_dict(self) -> Dict[str, Any]:
        return {
            'kind': self.kind.value,
            'offset_minutes': self.offset_minutes,
            'enabled': self.enabled,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'Reminder':
        return cls(
            kind=ReminderKind(data.get('kind', 'notification')),
            offset_minutes=int(data.get('offset_minutes', DEFAULT_REMINDER_MINUTES)),
            enabled=bool(data.get('enabled', True)),
        )


@dataclass
class CalendarEvent:
    """ローカル（家族カレンダー）イベントモデル"""
    title: str
    date: date
    time: time
    duration_minutes: int = 60
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    location: Optional[str] = None
    notes: Optional[str] = None
    type: Optional[EventType] = None
    cost: float = 0.0
    recurrence_rule: Optional[str] = None
    priority: Priority = Priority.MEDIUM
    status: EventStatus = EventStatus.CONFIRMED
    remote_event_id: Optional[str] = None
    remote_calendar_id: Optional[str] = None
    reminders: List[Reminder] = field(default_factory=list)
    attendees: List[str] = field(default_factory=list)
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def __post_init__(self):
        # 15分未満の予定は15分に切り上げ
        self.duration_minutes = max(MIN_DURATION_MINUTES, int(self.duration_minutes))
        if self.type is None:
            self.type = infer_event_type(self.title)

    @property
    def is_local_only(self) -> bool:
        """リモート側との対応付けがないかどうか"""
        return not self.remote_event_id

    def start_datetime(self, zone: tzinfo) -> datetime:
        """指定タイムゾーンでの開始日時"""
        return datetime.combine(self.date, self.time).replace(tzinfo=zone)

    def end_datetime(self, zone: tzinfo) -> datetime:
        return self.start_datetime(zone) + timedelta(minutes=self.duration_minutes)

    def link_remote(self, remote_event_id: str, calendar_id: Optional[str]):
        """相関キーの設定（別カレンダーのIDで上書きしない）"""
        if self.remote_event_id and self.remote_calendar_id and calendar_id \
                and self.remote_calendar_id != calendar_id:
            raise ValueError(
                f"Event {self.id} is already linked to calendar {self.remote_calendar_id}"
            )
        self.remote_event_id = remote_event_id
        self.remote_calendar_id = calendar_id or self.remote_calendar_id

    def to_dict(self) -> Dict[str, Any]:
        """JSON互換の辞書形式に変換"""
        return {
            'id': self.id,
            'title': self.title,
            'date': self.date.isoformat(),
            'time': self.time.strftime('%H:%M'),
            'duration_minutes': self.duration_minutes,
            'location': self.location,
            'notes': self.notes,
            'type': self.type.value if self.type else None,
            'cost': self.cost,
            'recurrence_rule': self.recurrence_rule,
            'priority': self.priority.value,
            'status': self.status.value,
            'remote_event_id': self.remote_event_id,
            'remote_calendar_id': self.remote_calendar_id,
            'reminders': [reminder.to_dict() for reminder in self.reminders],
            'attendees': list(self.attendees),
            'created_at': format_datetime(self.created_at),
            'updated_at': format_datetime(self.updated_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'CalendarEvent':
        """辞書形式から復元"""
        kwargs: Dict[str, Any] = {
            'title': data['title'],
            'date': date.fromisoformat(data['date']),
            'time': time.fromisoformat(data.get('time') or '00:00'),
            'duration_minutes': int(data.get('duration_minutes', 60)),
            'location': data.get('location'),
            'notes': data.get('notes'),
            'type': parse_event_type(data.get('type')),
            'cost': float(data.get('cost', 0.0)),
            'recurrence_rule': data.get('recurrence_rule'),
            'priority': Priority(data.get('priority', 'medium')),
            'status': EventStatus(data.get('status', 'confirmed')),
            'remote_event_id': data.get('remote_event_id'),
            'remote_calendar_id': data.get('remote_calendar_id'),
            'reminders': [Reminder.from_dict(r) for r in data.get('reminders', [])],
            'attendees': list(data.get('attendees', [])),
        }
        if data.get('id'):
            kwargs['id'] = data['id']
        if data.get('created_at'):
            kwargs['created_at'] = parse_datetime(data['created_at'])
        if data.get('updated_at'):
            kwargs['updated_at'] = parse_datetime(data['updated_at'])
        return cls(**kwargs)


@dataclass
class EventTime:
    """リモートイベントの開始/終了（終日はdate、それ以外はdateTime）"""
    date: Optional[date] = None
    date_time: Optional[datetime] = None
    time_zone: Optional[str] = None

    @property
    def is_all_day(self) -> bool:
        return self.date_time is None and self.date is not None

    def resolve(self, zone: tzinfo) -> datetime:
        """指定タイムゾーンのaware datetimeに変換"""
        if self.date_time is not None:
            value = self.date_time
            if value.tzinfo is None:
                value = value.replace(tzinfo=self._own_zone() or zone)
            return value.astimezone(zone)

        if self.date is not None:
            # 終日イベントは当日00:00
            return datetime(self.date.year, self.date.month, self.date.day, tzinfo=zone)

        raise ValueError("Event time has neither 'date' nor 'dateTime'")

    def _own_zone(self) -> Optional[tzinfo]:
        if not self.time_zone:
            return None
        try:
            return ZoneInfo(self.time_zone)
        except (ZoneInfoNotFoundError, ValueError):
            return None

    def to_api(self) -> Dict[str, str]:
        data: Dict[str, str] = {}
        if self.date_time is not None:
            data['dateTime'] = self.date_time.isoformat()
        elif self.date is not None:
            data['date'] = self.date.isoformat()
        if self.time_zone:
            data['timeZone'] = self.time_zone
        return data

    @classmethod
    def from_api(cls, data: Optional[Dict[str, Any]]) -> 'EventTime':
        data = data or {}
        date_time = data.get('dateTime')
        day = data.get('date')
        return cls(
            date=date.fromisoformat(day) if day else None,
            date_time=datetime.fromisoformat(date_time.replace('Z', '+00:00')) if date_time else None,
            time_zone=data.get('timeZone'),
        )


@dataclass
class RemoteReminder:
    """リモート側リマインダー（popup / email）"""
    method: str
    minutes: int


@dataclass
class RemoteEvent:
    """リモートカレンダーのイベント"""
    id: Optional[str]
    title: str
    start: EventTime
    end: EventTime
    description: Optional[str] = None
    location: Optional[str] = None
    attendees: List[str] = field(default_factory=list)
    reminders: Optional[List[RemoteReminder]] = None  # None = リモート側の既定値
    recurrence: List[str] = field(default_factory=list)
    status: str = "confirmed"
    created: Optional[datetime] = None
    updated: Optional[datetime] = None
    etag: Optional[str] = None
    category: Optional[str] = None
    recurring_event_id: Optional[str] = None  # 展開済みインスタンスの親（繰り返し）イベントID

    def to_api(self) -> Dict[str, Any]:
        """REST API形式に変換"""
        body: Dict[str, Any] = {
            'summary': self.title,
            'description': self.description or '',
            'location': self.location or '',
            'start': self.start.to_api(),
            'end': self.end.to_api(),
            'status': self.status,
        }

        if self.reminders is None:
            body['reminders'] = {'useDefault': True}
        else:
            body['reminders'] = {
                'useDefault': False,
                'overrides': [
                    {'method': r.method, 'minutes': r.minutes} for r in self.reminders
                ],
            }

        if self.attendees:
            body['attendees'] = [{'email': email} for email in self.attendees]

        if self.recurrence:
            body['recurrence'] = list(self.recurrence)

        # カテゴリは非公開の拡張プロパティとして保持
        if self.category:
            body['extendedProperties'] = {'private': {'category': self.category}}

        return body

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> 'RemoteEvent':
        """REST APIレスポンスをパース"""
        reminders_data = data.get('reminders') or {}
        overrides = reminders_data.get('overrides')
        reminders = None
        if overrides is not None:
            reminders = [
                RemoteReminder(method=o.get('method', 'popup'), minutes=int(o.get('minutes', 0)))
                for o in overrides
            ]

        private = (data.get('extendedProperties') or {}).get('private') or {}

        return cls(
            id=data.get('id'),
            title=data.get('summary') or '',
            description=data.get('description'),
            location=data.get('location'),
            start=EventTime.from_api(data.get('start')),
            end=EventTime.from_api(data.get('end')),
            attendees=[a['email'] for a in data.get('attendees', []) if a.get('email')],
            reminders=reminders,
            recurrence=list(data.get('recurrence') or []),
            status=data.get('status', 'confirmed'),
            created=parse_datetime(data.get('created')),
            updated=parse_datetime(data.get('updated')),
            etag=data.get('etag'),
            category=private.get('category'),
            recurring_event_id=data.get('recurringEventId'),
        )


@dataclass
class CalendarInfo:
    """リモートカレンダー情報"""
    id: str
    summary: str
    description: Optional[str] = None
    primary: bool = False
    access_role: str = "reader"
    background_color: Optional[str] = None
    foreground_color: Optional[str] = None

    @property
    def writable(self) -> bool:
        return self.access_role in ("owner", "writer")

    @classmethod
    def from_api(cls, data: Dict[str, Any]) -> 'CalendarInfo':
        return cls(
            id=data['id'],
            summary=data.get('summary', ''),
            description=data.get('description'),
            primary=bool(data.get('primary', False)),
            access_role=data.get('accessRole', 'reader'),
            background_color=data.get('backgroundColor'),
            foreground_color=data.get('foregroundColor'),
        )


@dataclass
class SyncSettings:
    """同期設定（呼び出し側が永続化）"""
    enabled: bool = True
    selected_calendar_ids: List[str] = field(default_factory=list)
    sync_direction: SyncDirection = SyncDirection.BOTH
    auto_sync: bool = True
    sync_interval_minutes: int = 30
    last_sync_at: Optional[datetime] = None

    def __post_init__(self):
        if isinstance(self.sync_direction, str):
            self.sync_direction = SyncDirection(self.sync_direction)
        # 順序を保ったまま重複を除去（先頭がエクスポート先）
        self.selected_calendar_ids = list(dict.fromkeys(self.selected_calendar_ids))

    @property
    def export_calendar_id(self) -> Optional[str]:
        return self.selected_calendar_ids[0] if self.selected_calendar_ids else None

    def is_due(self, now: Optional[datetime] = None) -> bool:
        """自動同期のタイミングかどうか"""
        if not (self.enabled and self.auto_sync):
            return False
        if self.last_sync_at is None:
            return True
        now = now or utcnow()
        return now - self.last_sync_at >= timedelta(minutes=self.sync_interval_minutes)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'enabled': self.enabled,
            'selected_calendar_ids': list(self.selected_calendar_ids),
            'sync_direction': self.sync_direction.value,
            'auto_sync': self.auto_sync,
            'sync_interval_minutes': self.sync_interval_minutes,
            'last_sync_at': format_datetime(self.last_sync_at),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'SyncSettings':
        return cls(
            enabled=bool(data.get('enabled', True)),
            selected_calendar_ids=list(data.get('selected_calendar_ids', [])),
            sync_direction=SyncDirection(data.get('sync_direction', 'both')),
            auto_sync=bool(data.get('auto_sync', True)),
            sync_interval_minutes=int(data.get('sync_interval_minutes', 30)),
            last_sync_at=parse_datetime(data.get('last_sync_at')),
        )
