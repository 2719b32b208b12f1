"""
同期エンジン - ローカル ↔ リモートカレンダーの双方向同期
認証・取得・照合・インポート・エクスポート・確定の各フェーズを順に実行
"""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Any, Set, Tuple

import aiohttp

from .conflict_resolver import Conflict, ConflictResolver, ResolutionAction, ResolutionPolicy
from .event_translator import EventTranslator
from ..auth_layer.credential_store import (
    CredentialStore, EncryptedFileCredentialStore, InMemoryCredentialStore, SQLiteCredentialStore
)
from ..auth_layer.token_manager import TokenManager, TokenSet
from ..data_acquisition.calendar_client import RemoteCalendarClient
from ..data_acquisition.error_handler import (
    CalendarSyncError, ConfigurationError, ReauthRequired, RejectedError, SyncInProgressError, Unauthorized
)
from ...config.sync_config import AppConfig, SecurityManager, SyncEngineConfig
from ...core.models import CalendarEvent, CalendarInfo, RemoteEvent, SyncSettings, utcnow
from ...utils.enhanced_logger import get_logger, get_metrics

logger = get_logger(__name__)


@dataclass
class SyncResult:
    """同期結果"""
    imported_count: int = 0
    exported_count: int = 0
    updated_count: int = 0
    errors: List[str] = field(default_factory=list)
    conflicts: List[Conflict] = field(default_factory=list)
    imported_events: List[CalendarEvent] = field(default_factory=list)
    updated_events: List[CalendarEvent] = field(default_factory=list)
    reauth_required: bool = False
    timed_out: bool = False
    sync_time: Optional[datetime] = None

    @property
    def success(self) -> bool:
        return not self.errors

    def summary(self) -> str:
        status = "succeeded" if self.success else "finished with errors"
        return (f"Sync {status}: "
                f"{self.imported_count} imported, "
                f"{self.exported_count} exported, "
                f"{self.updated_count} updated, "
                f"{len(self.conflicts)} conflicts, "
                f"{len(self.errors)} errors")

    def to_dict(self) -> Dict[str, Any]:
        return {
            'success': self.success,
            'imported_count': self.imported_count,
            'exported_count': self.exported_count,
            'updated_count': self.updated_count,
            'errors': list(self.errors),
            'conflicts': [conflict.to_dict() for conflict in self.conflicts],
            'reauth_required': self.reauth_required,
            'timed_out': self.timed_out,
            'sync_time': self.sync_time.isoformat() if self.sync_time else None,
        }


@dataclass
class RemoteSnapshot:
    """取得したリモートイベント"""
    # remote id -> (calendar id, event)
    events: Dict[str, Tuple[str, RemoteEvent]] = field(default_factory=dict)
    # 展開済みインスタンスの親ID -> calendar id
    series: Dict[str, str] = field(default_factory=dict)
    # 取得できたカレンダーID
    fetched: Set[str] = field(default_factory=set)


class SyncEngine:
    """カレンダー同期エンジン（アカウント単位）"""

    # 実行中のアカウント（同一アカウントの同時同期を拒否）
    _active_accounts: Set[str] = set()

    def __init__(self,
                 token_manager: TokenManager,
                 client: RemoteCalendarClient,
                 translator: Optional[EventTranslator] = None,
                 resolver: Optional[ConflictResolver] = None,
                 config: Optional[SyncEngineConfig] = None,
                 clock: Optional[Callable[[], datetime]] = None):

        self.config = config or SyncEngineConfig()
        self.token_manager = token_manager
        self.client = client
        self.translator = translator or EventTranslator(self.config.timezone)
        self.resolver = resolver or ConflictResolver(ResolutionPolicy(self.config.conflict_policy))
        self._clock = clock or utcnow

    @property
    def account_id(self) -> str:
        return self.token_manager.account_id

    async def sync(self,
                   settings: SyncSettings,
                   local_events: List[CalendarEvent],
                   timeout: Optional[float] = None) -> SyncResult:
        """同期の実行（ローカルイベントはその場で更新される）"""
        result = SyncResult()

        if not settings.enabled:
            logger.info("Sync is disabled; nothing to do", account_id=self.account_id)
            return result

        if self.account_id in self._active_accounts:
            raise SyncInProgressError(f"A sync is already running for account {self.account_id}")
        self._active_accounts.add(self.account_id)

        timeout = timeout if timeout is not None else self.config.sync_timeout_seconds
        operation = logger.log_operation_start(
            "calendar_sync",
            account_id=self.account_id,
            direction=settings.sync_direction.value,
            calendars=len(settings.selected_calendar_ids),
            local_events=len(local_events)
        )

        try:
            if timeout is not None:
                await asyncio.wait_for(self._run_phases(settings, local_events, result), timeout)
            else:
                await self._run_phases(settings, local_events, result)

        except asyncio.TimeoutError:
            result.timed_out = True
            result.errors.append(f"Sync timed out after {timeout}s; partial results returned")
            logger.warning("Sync timed out", account_id=self.account_id, timeout_seconds=timeout)

        except ReauthRequired as e:
            logger.log_operation_end(operation, success=False, error_type=e.__class__.__name__)
            raise

        finally:
            self._active_accounts.discard(self.account_id)

        # 6. 確定
        now = self._clock()
        settings.last_sync_at = now
        result.sync_time = now

        self._record_metrics(result)
        logger.log_operation_end(
            operation,
            success=result.success,
            imported=result.imported_count,
            exported=result.exported_count,
            updated=result.updated_count,
            conflicts=len(result.conflicts),
            errors=len(result.errors)
        )
        return result

    async def _run_phases(self, settings: SyncSettings,
                          local_events: List[CalendarEvent], result: SyncResult):
        if not settings.selected_calendar_ids:
            logger.info("No calendars selected; skipping remote calls", account_id=self.account_id)
            return

        direction = settings.sync_direction

        # 1. 認証（ここでの失敗のみ呼び出し元へ伝播）
        await self.token_manager.ensure_valid()

        try:
            snapshot = RemoteSnapshot()

            # 2. リモート取得
            if direction.fetches_remote:
                await self._fetch_remote(settings, snapshot, result)

            # 3. 対応付け済みイベントの照合
            if direction.reconciles:
                await self._reconcile(settings, local_events, snapshot, result)

            # 4. リモートのみのイベントをインポート
            if direction.fetches_remote:
                self._import_remote_only(local_events, snapshot, result)

            # 5. ローカルのみのイベントをエクスポート
            if direction.exports_local:
                await self._export_local_only(settings, local_events, result)

        except ReauthRequired as e:
            if isinstance(e, Unauthorized):
                await self.token_manager.invalidate()
            result.reauth_required = True
            result.errors.append(f"Reauthentication required: {e}")
            logger.warning("Authorization lost during sync; remaining phases skipped",
                           account_id=self.account_id)

    async def _fetch_remote(self, settings: SyncSettings,
                            snapshot: RemoteSnapshot, result: SyncResult):
        """選択カレンダーのイベント取得"""
        time_min, time_max = self._window()

        for calendar_id in settings.selected_calendar_ids:
            try:
                events = await self.client.list_events(calendar_id, time_min, time_max)
            except ReauthRequired:
                raise
            except CalendarSyncError as e:
                result.errors.append(f"Failed to fetch events from calendar {calendar_id}: {e}")
                logger.error("Calendar fetch failed", error=e, calendar_id=calendar_id, operation="fetch")
                continue

            snapshot.fetched.add(calendar_id)
            for event in events:
                # キャンセル済みは存在しないものとして扱う
                if not event.id or event.status == 'cancelled':
                    continue
                snapshot.events.setdefault(event.id, (calendar_id, event))
                if event.recurring_event_id:
                    snapshot.series.setdefault(event.recurring_event_id, calendar_id)

        logger.debug(f"Fetched {len(snapshot.events)} remote events from {len(snapshot.fetched)} calendars")

    async def _reconcile(self, settings: SyncSettings, local_events: List[CalendarEvent],
                         snapshot: RemoteSnapshot, result: SyncResult):
        seen: Set[str] = set()

        for local in local_events:
            if local.is_local_only or local.remote_event_id in seen:
                continue
            seen.add(local.remote_event_id)

            try:
                await self._reconcile_event(local, settings, snapshot, result)
            except ReauthRequired:
                raise
            except (CalendarSyncError, ValueError) as e:
                result.errors.append(f"Failed to reconcile \"{local.title}\": {e}")
                logger.error("Reconciliation failed", error=e, event_id=local.id, operation="reconcile")

    async def _reconcile_event(self, local: CalendarEvent, settings: SyncSettings,
                               snapshot: RemoteSnapshot, result: SyncResult):
        pair = snapshot.events.get(local.remote_event_id)
        if pair is None and local.remote_event_id in snapshot.series:
            pair = await self._fetch_series_master(local.remote_event_id, snapshot)
        if pair is None and not self._absence_is_conclusive(local, settings, snapshot.fetched):
            return

        calendar_id, remote = pair if pair else (local.remote_calendar_id, None)
        translated = self.translator.to_local(remote, calendar_id) if remote else None

        conflict = self.resolver.detect(local, translated, remote)
        if conflict is None:
            return
        result.conflicts.append(conflict)

        await self._apply_resolution(conflict, local, remote, calendar_id, result)

    async def _fetch_series_master(self, master_id: str,
                                   snapshot: RemoteSnapshot) -> Optional[Tuple[str, RemoteEvent]]:
        """展開済みインスタンスだけが取得された繰り返しイベントの親を取得"""
        calendar_id = snapshot.series[master_id]
        try:
            master = await self.client.get_event(calendar_id, master_id)
        except RejectedError as e:
            if e.status in (404, 410):
                return None
            raise

        if master.status == 'cancelled':
            return None
        logger.debug(f"Fetched recurring series {master_id} from calendar {calendar_id}")
        return calendar_id, master

    async def _apply_resolution(self, conflict: Conflict, local: CalendarEvent,
                                remote: Optional[RemoteEvent], calendar_id: Optional[str],
                                result: SyncResult):
        action = conflict.resolution.action if conflict.resolution else ResolutionAction.NO_ACTION

        if action == ResolutionAction.UPDATE_LOCAL and remote is not None:
            self.translator.apply_remote(local, remote)
            result.updated_events.append(local)
            result.updated_count += 1

        elif action == ResolutionAction.UPDATE_REMOTE and calendar_id is not None:
            updated = await self.client.update_event(
                calendar_id, local.remote_event_id, self.translator.to_remote(local)
            )
            local.link_remote(updated.id or local.remote_event_id, calendar_id)
            result.updated_count += 1

        elif action == ResolutionAction.REPORT_ONLY:
            logger.info(f"Deletion conflict reported for \"{local.title}\"", event_id=local.id)

    def _import_remote_only(self, local_events: List[CalendarEvent],
                            snapshot: RemoteSnapshot, result: SyncResult):
        linked = {event.remote_event_id for event in local_events if event.remote_event_id}

        for remote_id, (calendar_id, remote) in snapshot.events.items():
            # 対応付け済みの繰り返しイベントのインスタンスは親側で照合済み
            if remote_id in linked or remote.recurring_event_id in linked:
                continue
            try:
                imported = self.translator.to_local(remote, calendar_id)
            except ValueError as e:
                result.errors.append(f"Failed to import remote event {remote_id}: {e}")
                continue

            result.imported_events.append(imported)
            result.imported_count += 1

    async def _export_local_only(self, settings: SyncSettings,
                                 local_events: List[CalendarEvent], result: SyncResult):
        calendar_id = settings.export_calendar_id

        for local in local_events:
            if not local.is_local_only:
                continue
            try:
                created = await self.client.create_event(calendar_id, self.translator.to_remote(local))
                if not created.id:
                    raise CalendarSyncError("Remote calendar returned an event without an id")
                local.link_remote(created.id, calendar_id)
                result.exported_count += 1
            except ReauthRequired:
                raise
            except (CalendarSyncError, ValueError) as e:
                result.errors.append(f"Failed to export \"{local.title}\": {e}")
                logger.error("Event export failed", error=e, event_id=local.id, operation="export")

    def _window(self) -> Tuple[datetime, datetime]:
        now = self._clock()
        return (now - timedelta(days=self.config.window_past_days),
                now + timedelta(days=self.config.window_future_days))

    def _absence_is_conclusive(self, event: CalendarEvent,
                               settings: SyncSettings, fetched: Set[str]) -> bool:
        """取得結果に無いことが削除を意味するか（期間外・未取得カレンダーは対象外）"""
        if event.remote_calendar_id is not None:
            if event.remote_calendar_id not in fetched:
                return False
        elif len(fetched) < len(settings.selected_calendar_ids):
            return False

        time_min, time_max = self._window()
        return time_min <= event.start_datetime(self.translator.zone) < time_max

    def _record_metrics(self, result: SyncResult):
        metrics = get_metrics()
        if metrics is None:
            return
        metrics.record_event("events_imported", result.imported_count)
        metrics.record_event("events_exported", result.exported_count)
        metrics.record_event("events_updated", result.updated_count)
        metrics.record_event("conflicts_detected", len(result.conflicts))

    async def export_single_event(self, event: CalendarEvent, calendar_id: Optional[str] = None) -> str:
        """単一イベントのエクスポート（対応付け済みなら更新）"""
        calendar_id = calendar_id or event.remote_calendar_id or "primary"
        body = self.translator.to_remote(event)

        if event.remote_event_id:
            updated = await self.client.update_event(calendar_id, event.remote_event_id, body)
            remote_id = updated.id or event.remote_event_id
        else:
            created = await self.client.create_event(calendar_id, body)
            if not created.id:
                raise CalendarSyncError("Remote calendar returned an event without an id")
            remote_id = created.id

        event.link_remote(remote_id, calendar_id)
        logger.info(f"Exported event \"{event.title}\"", event_id=event.id, calendar_id=calendar_id)
        return remote_id

    async def get_calendar_list(self) -> List[CalendarInfo]:
        return await self.client.list_calendars()

    async def is_authenticated(self) -> bool:
        return await self.token_manager.is_authenticated()

    def get_authorization_url(self, state: Optional[str] = None) -> str:
        return self.token_manager.get_authorization_url(state)

    async def complete_authorization(self, code: str) -> TokenSet:
        return await self.token_manager.exchange_code(code)

    async def disconnect(self):
        """トークン失効と資格情報の削除"""
        await self.token_manager.revoke()

    async def close(self):
        await self.client.close()
        await self.token_manager.close()

    async def __aenter__(self) -> 'SyncEngine':
        return self

    async def __aexit__(self, exc_type, exc, tb):
        await self.close()


def create_credential_store(config: AppConfig,
                            security: Optional[SecurityManager] = None) -> CredentialStore:
    """設定に応じた資格情報ストアの生成"""
    backend = config.storage.credential_backend
    if backend == "memory":
        return InMemoryCredentialStore()
    if backend == "sqlite":
        return SQLiteCredentialStore(config.storage.credential_path, security)
    if backend == "file":
        return EncryptedFileCredentialStore(config.storage.credential_path, security)
    raise ConfigurationError(f"Unknown credential backend: {backend}")


def create_sync_engine(config: AppConfig,
                       account_id: str = "default",
                       store: Optional[CredentialStore] = None,
                       security: Optional[SecurityManager] = None,
                       session: Optional[aiohttp.ClientSession] = None) -> SyncEngine:
    """設定から同期エンジンを組み立てる"""
    store = store or create_credential_store(config, security)
    token_manager = TokenManager(
        account_id,
        config.oauth,
        store,
        session=session,
        request_timeout=config.remote_api.request_timeout_seconds
    )
    client = RemoteCalendarClient(token_manager, config.remote_api, session=session)
    return SyncEngine(token_manager, client, config=config.sync)
