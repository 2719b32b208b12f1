"""
競合解決システム - 対応付けられたローカル/リモートイベント間の競合を分類・解決
比較のみを行い、変更の適用は同期エンジンが担当する
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Dict, Optional, Any, Union

from ...core.models import CalendarEvent, RemoteEvent

logger = logging.getLogger(__name__)


class ConflictType(Enum):
    """競合タイプ（優先順）"""
    NONE = "none"
    DELETION_CONFLICT = "deletion_conflict"
    TIME_MISMATCH = "time_mismatch"
    CONTENT_MISMATCH = "content_mismatch"


class ResolutionPolicy(Enum):
    """競合解決ポリシー"""
    LATEST_WINS = "latest_wins"      # 最新更新優先（同時刻はリモート優先）
    REMOTE_WINS = "remote_wins"      # リモート優先
    LOCAL_WINS = "local_wins"        # ローカル優先


class Winner(Enum):
    LOCAL = "local"
    REMOTE = "remote"


class ResolutionAction(Enum):
    """解決アクション"""
    NO_ACTION = "no_action"
    UPDATE_LOCAL = "update_local"      # リモートの値をローカルへ
    UPDATE_REMOTE = "update_remote"    # ローカルの値をリモートへ
    REPORT_ONLY = "report_only"        # 報告のみ（削除競合）


@dataclass
class Resolution:
    """解決結果"""
    winner: Optional[Winner]
    action: ResolutionAction

    @property
    def requires_change(self) -> bool:
        return self.action in (ResolutionAction.UPDATE_LOCAL, ResolutionAction.UPDATE_REMOTE)


@dataclass
class Conflict:
    """イベント競合

    remote_as_local は比較に使ったローカル形式のリモートイベント、
    remote_event は取得したままのリモートイベント（渡された場合のみ）。
    """
    local_event: CalendarEvent
    remote_as_local: Optional[CalendarEvent]
    conflict_type: ConflictType
    remote_event: Optional[RemoteEvent] = None
    resolution: Optional[Resolution] = None

    def summary(self) -> str:
        winner = self.resolution.winner.value if self.resolution and self.resolution.winner else "none"
        return f"{self.conflict_type.value}: '{self.local_event.title}' (winner: {winner})"

    def to_dict(self) -> Dict[str, Any]:
        return {
            'local_event_id': self.local_event.id,
            'remote_event_id': self.local_event.remote_event_id,
            'conflict_type': self.conflict_type.value,
            'winner': self.resolution.winner.value if self.resolution and self.resolution.winner else None,
            'action': self.resolution.action.value if self.resolution else None,
        }


class ConflictResolver:
    """競合解決エンジン"""

    def __init__(self, policy: Union[ResolutionPolicy, str] = ResolutionPolicy.LATEST_WINS):
        self.policy = ResolutionPolicy(policy)

        # 統計情報
        self.conflicts_detected = 0
        self.conflicts_resolved = 0
        self.reported_only = 0

    def classify(self, local: CalendarEvent, remote: Optional[CalendarEvent]) -> ConflictType:
        """競合の分類（削除 > 時刻 > 内容）

        remoteはローカル形式に変換済みのリモートイベント。
        """
        if remote is None:
            if local.remote_event_id:
                return ConflictType.DELETION_CONFLICT
            return ConflictType.NONE

        if (local.date != remote.date
                or _minutes(local.time) != _minutes(remote.time)
                or local.duration_minutes != remote.duration_minutes):
            return ConflictType.TIME_MISMATCH

        if (local.title != remote.title
                or _text(local.location) != _text(remote.location)
                or _text(local.notes) != _text(remote.notes)):
            return ConflictType.CONTENT_MISMATCH

        return ConflictType.NONE

    def resolve(self,
                conflict_type: ConflictType,
                local: CalendarEvent,
                remote: Optional[CalendarEvent],
                policy: Optional[ResolutionPolicy] = None) -> Resolution:
        """勝者とアクションの決定"""
        policy = ResolutionPolicy(policy) if policy else self.policy

        if conflict_type == ConflictType.NONE:
            return Resolution(winner=None, action=ResolutionAction.NO_ACTION)

        if conflict_type == ConflictType.DELETION_CONFLICT or remote is None:
            # 削除は自動適用しない
            self.reported_only += 1
            logger.warning(f"Remote counterpart missing for '{local.title}' ({local.remote_event_id}); reporting only")
            return Resolution(winner=None, action=ResolutionAction.REPORT_ONLY)

        if policy == ResolutionPolicy.REMOTE_WINS:
            winner = Winner.REMOTE
        elif policy == ResolutionPolicy.LOCAL_WINS:
            winner = Winner.LOCAL
        else:
            winner = self._latest(local.updated_at, remote.updated_at)

        self.conflicts_resolved += 1
        action = ResolutionAction.UPDATE_LOCAL if winner == Winner.REMOTE else ResolutionAction.UPDATE_REMOTE
        logger.debug(f"{conflict_type.value} on '{local.title}' resolved in favour of {winner.value}")
        return Resolution(winner=winner, action=action)

    def detect(self, local: CalendarEvent, remote_as_local: Optional[CalendarEvent],
               remote_event: Optional[RemoteEvent] = None) -> Optional[Conflict]:
        """分類と解決をまとめて行う（競合なしならNone）"""
        conflict_type = self.classify(local, remote_as_local)
        if conflict_type == ConflictType.NONE:
            return None

        self.conflicts_detected += 1
        conflict = Conflict(
            local_event=local,
            remote_as_local=remote_as_local,
            conflict_type=conflict_type,
            remote_event=remote_event
        )
        conflict.resolution = self.resolve(conflict_type, local, remote_as_local)
        return conflict

    def _latest(self, local_updated: Optional[datetime], remote_updated: Optional[datetime]) -> Winner:
        """更新時刻の比較（同時刻・不明はリモート優先）"""
        if local_updated is None or remote_updated is None:
            return Winner.REMOTE if remote_updated is not None or local_updated is None else Winner.LOCAL
        return Winner.LOCAL if local_updated > remote_updated else Winner.REMOTE

    def get_statistics(self) -> Dict[str, Any]:
        """競合解決統計情報"""
        total = self.conflicts_detected
        return {
            "conflicts_detected": total,
            "conflicts_resolved": self.conflicts_resolved,
            "reported_only": self.reported_only,
            "auto_resolution_rate": (self.conflicts_resolved / total * 100) if total > 0 else 0.0,
            "policy_used": self.policy.value
        }


def _minutes(value) -> int:
    return value.hour * 60 + value.minute


def _text(value: Optional[str]) -> str:
    # None と "" は同一視
    return value or ""
