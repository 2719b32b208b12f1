"""
イベントカテゴリ定義とタイトルからのカテゴリ推定
"""

from enum import Enum
from typing import Optional, Tuple


class EventType(Enum):
    """イベントカテゴリ（閉じた列挙）"""
    SPORT = "sport"
    MEETING = "meeting"
    FITNESS = "fitness"
    SOCIAL = "social"
    EDUCATION = "education"
    FAMILY = "family"
    OTHER = "other"
    APPOINTMENT = "appointment"
    WORK = "work"
    PERSONAL = "personal"


# 評価順序が意味を持つため辞書ではなくタプルで保持する
CATEGORY_RULES: Tuple[Tuple[EventType, Tuple[str, ...]], ...] = (
    (EventType.APPOINTMENT, ("doctor", "dentist", "medical")),
    (EventType.MEETING, ("meeting", "call", "conference")),
    (EventType.SPORT, ("sport", "football", "swim")),
    (EventType.EDUCATION, ("school", "class", "lesson")),
    (EventType.SOCIAL, ("birthday", "party", "social")),
    (EventType.FAMILY, ("family", "dinner", "visit")),
)


def infer_event_type(title: Optional[str]) -> EventType:
    """タイトルのキーワードからカテゴリを推定（最初に一致した規則を採用）"""
    lower = (title or "").lower()

    for event_type, keywords in CATEGORY_RULES:
        if any(keyword in lower for keyword in keywords):
            return event_type

    return EventType.OTHER


def parse_event_type(value: Optional[str]) -> Optional[EventType]:
    """文字列をカテゴリに変換（未知の値はNone）"""
    if not value:
        return None
    try:
        return EventType(value.lower())
    except ValueError:
        return None
