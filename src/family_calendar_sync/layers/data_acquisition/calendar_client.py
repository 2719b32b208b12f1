"""
リモートカレンダーAPIクライアント - 認証付きRESTラッパー
ページング・一時的エラーのリトライ・ステータスコードの例外変換を担当
"""

import asyncio
import json
import logging
from datetime import datetime
from typing import Dict, List, Optional, Any, TYPE_CHECKING
from urllib.parse import quote

import aiohttp

from .error_handler import (
    STRATEGIES, CalendarSyncError, RemoteCalendarError, TransientError, classify_error, error_for_status
)
from ...core.models import CalendarInfo, RemoteEvent

if TYPE_CHECKING:
    from ...config.sync_config import RemoteApiConfig
    from ..auth_layer.token_manager import TokenManager

logger = logging.getLogger(__name__)


class RemoteCalendarClient:
    """リモートカレンダーAPIクライアント"""

    def __init__(self,
                 token_manager: 'TokenManager',
                 config: Optional['RemoteApiConfig'] = None,
                 session: Optional[aiohttp.ClientSession] = None):

        if config is None:
            from ...config.sync_config import RemoteApiConfig
            config = RemoteApiConfig()

        self.token_manager = token_manager
        self.config = config
        self.base_url = config.base_url.rstrip('/')
        self.retry_policy = config.retry_policy
        self._timeout = aiohttp.ClientTimeout(total=config.request_timeout_seconds)

        self._session = session
        self._owns_session = session is None

    async def list_calendars(self) -> List[CalendarInfo]:
        """アクセス可能なカレンダー一覧"""
        items = await self._paginate(self.config.calendar_list_path, {})
        calendars = [CalendarInfo.from_api(item) for item in items if item.get('id')]
        logger.debug(f"Fetched {len(calendars)} calendars")
        return calendars

    async def list_events(self, calendar_id: str,
                          time_min: datetime, time_max: datetime) -> List[RemoteEvent]:
        """期間内のイベント（繰り返しは展開済み）"""
        params = {
            'timeMin': time_min.isoformat(),
            'timeMax': time_max.isoformat(),
            'singleEvents': 'true',
            'orderBy': 'startTime',
        }
        items = await self._paginate(f"{_calendar_path(calendar_id)}/events", params)

        events = []
        for item in items:
            try:
                events.append(RemoteEvent.from_api(item))
            except (ValueError, TypeError, KeyError, AttributeError) as e:
                # 壊れたイベントは1件だけ読み飛ばす
                logger.warning(f"Skipping malformed event {item.get('id')} in calendar {calendar_id}: {e}")
        logger.debug(f"Fetched {len(events)} events from calendar {calendar_id}")
        return events

    async def get_event(self, calendar_id: str, event_id: str) -> RemoteEvent:
        """単一イベント（繰り返しの親イベントを含む）"""
        data = await self._request('GET', _event_path(calendar_id, event_id))
        return RemoteEvent.from_api(data or {})

    async def create_event(self, calendar_id: str, event: RemoteEvent) -> RemoteEvent:
        data = await self._request('POST', f"{_calendar_path(calendar_id)}/events", body=event.to_api())
        return RemoteEvent.from_api(data or {})

    async def update_event(self, calendar_id: str, event_id: str, event: RemoteEvent) -> RemoteEvent:
        data = await self._request('PUT', _event_path(calendar_id, event_id), body=event.to_api())
        return RemoteEvent.from_api(data or {})

    async def delete_event(self, calendar_id: str, event_id: str):
        await self._request('DELETE', _event_path(calendar_id, event_id))

    async def close(self):
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    async def _paginate(self, path: str, params: Dict[str, str]) -> List[Dict[str, Any]]:
        """nextPageTokenを辿って全ページを取得"""
        items: List[Dict[str, Any]] = []
        page_token = None

        while True:
            page_params = {**params, 'maxResults': str(self.config.page_size)}
            if page_token:
                page_params['pageToken'] = page_token

            data = await self._request('GET', path, params=page_params) or {}
            items.extend(data.get('items', []))

            page_token = data.get('nextPageToken')
            if not page_token:
                return items

    async def _request(self, method: str, path: str,
                       params: Optional[Dict[str, str]] = None,
                       body: Optional[Dict[str, Any]] = None) -> Optional[Dict[str, Any]]:
        """1論理呼び出し（一時的エラーはバックオフ付きで再試行）"""
        attempt = 0
        while True:
            attempt += 1
            access_token = await self.token_manager.ensure_valid()
            try:
                return await self._send(method, path, access_token, params, body)
            except CalendarSyncError as e:
                if not STRATEGIES[classify_error(e)].retryable:
                    raise
                if attempt >= self.retry_policy.max_attempts:
                    logger.error(f"{method} {path} failed after {attempt} attempts: {e}")
                    raise
                await self.retry_policy.wait(attempt, e)

    async def _send(self, method: str, path: str, access_token: str,
                    params: Optional[Dict[str, str]],
                    body: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
        session = self._get_session()
        headers = {
            'Authorization': f"Bearer {access_token}",
            'Accept': 'application/json',
        }

        try:
            async with session.request(
                method,
                f"{self.base_url}{path}",
                params=params,
                json=body,
                headers=headers,
                timeout=self._timeout
            ) as response:
                text = await response.text()

                if response.status >= 300:
                    raise error_for_status(response.status, _error_message(text, response.status))

                if not text:
                    return None
                return json.loads(text)

        except CalendarSyncError:
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise TransientError(f"{method} {path} failed: {str(e) or e.__class__.__name__}") from e
        except ValueError as e:
            raise RemoteCalendarError(f"Invalid JSON from {method} {path}: {e}") from e

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session


def _calendar_path(calendar_id: str) -> str:
    return f"/calendars/{quote(calendar_id, safe='')}"


def _event_path(calendar_id: str, event_id: str) -> str:
    return f"{_calendar_path(calendar_id)}/events/{quote(event_id, safe='')}"


def _error_message(text: str, status: int) -> str:
    """APIのエラー本文からメッセージを取り出す（なければ本文そのまま）"""
    try:
        data = json.loads(text) if text else {}
    except ValueError:
        return text or f"HTTP {status}"

    error = data.get('error') if isinstance(data, dict) else None
    if isinstance(error, dict) and error.get('message'):
        return error['message']
    if isinstance(error, str):
        return data.get('error_description') or error
    return text or f"HTTP {status}"
