"""
トークン管理 - OAuth2認可コードフロー（オフラインアクセス）とトークンのライフサイクル
認可URL生成・コード交換・リフレッシュ・失効をアカウント単位で扱う
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Dict, Any, Callable, Optional
from urllib.parse import urlencode

import aiohttp

from .credential_store import CredentialStore
from ..data_acquisition.error_handler import (
    AuthExchangeError, ConfigurationError, ReauthRequired
)
from ...config.sync_config import OAuthConfig
from ...core.models import utcnow, parse_datetime, format_datetime

logger = logging.getLogger(__name__)

# 期限切れ判定の余裕（秒）
EXPIRY_SKEW_SECONDS = 60


class TokenState(Enum):
    """認証状態"""
    UNAUTHENTICATED = "unauthenticated"
    AUTHENTICATED = "authenticated"
    EXPIRED = "expired"


@dataclass
class TokenSet:
    """アクセストークン・リフレッシュトークン・有効期限"""
    access_token: str
    refresh_token: Optional[str] = None
    expiry: Optional[datetime] = None
    scope: Optional[str] = None
    token_type: str = "Bearer"

    def is_expired(self, now: datetime, skew_seconds: int = EXPIRY_SKEW_SECONDS) -> bool:
        if self.expiry is None:
            return False
        return now >= self.expiry - timedelta(seconds=skew_seconds)

    def to_blob(self) -> Dict[str, Any]:
        return {
            'access_token': self.access_token,
            'refresh_token': self.refresh_token,
            'expiry': format_datetime(self.expiry),
            'scope': self.scope,
            'token_type': self.token_type,
        }

    @classmethod
    def from_blob(cls, blob: Dict[str, Any]) -> 'TokenSet':
        return cls(
            access_token=blob.get('access_token') or '',
            refresh_token=blob.get('refresh_token'),
            expiry=parse_datetime(blob.get('expiry')),
            scope=blob.get('scope'),
            token_type=blob.get('token_type') or 'Bearer',
        )

    @classmethod
    def from_response(cls, data: Dict[str, Any], now: datetime,
                      previous: Optional['TokenSet'] = None) -> 'TokenSet':
        """トークンエンドポイントの応答から生成（refresh_token省略時は既存を維持）"""
        expires_in = data.get('expires_in')
        expiry = now + timedelta(seconds=int(expires_in)) if expires_in is not None else None
        return cls(
            access_token=data['access_token'],
            refresh_token=data.get('refresh_token') or (previous.refresh_token if previous else None),
            expiry=expiry,
            scope=data.get('scope') or (previous.scope if previous else None),
            token_type=data.get('token_type') or 'Bearer',
        )


class TokenManager:
    """アカウント単位のOAuthトークン管理"""

    def __init__(self,
                 account_id: str,
                 oauth_config: OAuthConfig,
                 store: CredentialStore,
                 session: Optional[aiohttp.ClientSession] = None,
                 clock: Optional[Callable[[], datetime]] = None,
                 request_timeout: float = 30.0):

        self.account_id = account_id
        self.config = oauth_config
        self.store = store
        self._clock = clock or utcnow
        self._timeout = aiohttp.ClientTimeout(total=request_timeout)

        self._session = session
        self._owns_session = session is None

        self._cached: Optional[TokenSet] = None
        self._loaded = False
        self._lock = asyncio.Lock()

    @property
    def state(self) -> TokenState:
        """最後に確認した認証状態"""
        if self._cached is None:
            return TokenState.UNAUTHENTICATED
        if self._cached.is_expired(self._clock()):
            return TokenState.EXPIRED
        return TokenState.AUTHENTICATED

    def get_authorization_url(self, state: Optional[str] = None) -> str:
        """同意画面URLの生成"""
        if not self.config.client_id:
            raise ConfigurationError("OAuth client_id is not configured")

        params = {
            'client_id': self.config.client_id,
            'redirect_uri': self.config.redirect_uri,
            'scope': ' '.join(self.config.scopes),
            'response_type': 'code',
            'access_type': 'offline',
            'prompt': 'consent',
        }
        if state:
            params['state'] = state

        return f"{self.config.auth_uri}?{urlencode(params)}"

    async def exchange_code(self, code: str) -> TokenSet:
        """認可コードをトークンに交換して保存"""
        self._require_client_credentials()

        form = {
            'code': code,
            'client_id': self.config.client_id,
            'client_secret': self.config.client_secret,
            'redirect_uri': self.config.redirect_uri,
            'grant_type': 'authorization_code',
        }

        try:
            status, data = await self._post_token_endpoint(form)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise AuthExchangeError(f"Token exchange request failed: {e}") from e

        if status >= 300 or 'access_token' not in data:
            raise AuthExchangeError(
                f"Failed to exchange authorization code: {_error_message(data, status)}",
                status=status
            )

        token = TokenSet.from_response(data, self._clock())
        await self._save(token)
        logger.info(f"Authorization completed for account {self.account_id}")
        return token

    async def ensure_valid(self) -> str:
        """有効なアクセストークンを返す（必要ならリフレッシュ）"""
        async with self._lock:
            token = await self._load()
            if token is None:
                raise ReauthRequired("Not connected to the remote calendar. Please authorize first.")

            if not token.is_expired(self._clock()):
                return token.access_token

            if not token.refresh_token:
                raise ReauthRequired("Access token expired and no refresh token is available")

            refreshed = await self._refresh(token)
            return refreshed.access_token

    async def _refresh(self, token: TokenSet) -> TokenSet:
        self._require_client_credentials()

        form = {
            'refresh_token': token.refresh_token,
            'client_id': self.config.client_id,
            'client_secret': self.config.client_secret,
            'grant_type': 'refresh_token',
        }

        try:
            status, data = await self._post_token_endpoint(form)
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"Token refresh failed for account {self.account_id}: {e}")
            raise ReauthRequired(f"Token refresh failed: {e}") from e

        if status in (400, 401):
            # invalid_grant など、リフレッシュトークン自体が無効
            logger.warning(f"Refresh token rejected for account {self.account_id} ({status})")
            await self.invalidate()
            raise ReauthRequired(f"Refresh token rejected: {_error_message(data, status)}")

        if status >= 300 or 'access_token' not in data:
            raise ReauthRequired(f"Token refresh failed: {_error_message(data, status)}")

        refreshed = TokenSet.from_response(data, self._clock(), previous=token)
        await self._save(refreshed)
        logger.debug(f"Access token refreshed for account {self.account_id}")
        return refreshed

    async def revoke(self):
        """リモート側で失効させた後、ローカルの資格情報を削除"""
        token = await self._load()
        try:
            if token is not None:
                await self._revoke_remote(token)
        finally:
            await self.invalidate()
            logger.info(f"Disconnected account {self.account_id}")

    async def _revoke_remote(self, token: TokenSet):
        session = self._get_session()
        try:
            async with session.post(
                self.config.revoke_uri,
                params={'token': token.access_token or token.refresh_token},
                timeout=self._timeout
            ) as response:
                if response.status >= 300:
                    body = await response.text()
                    logger.warning(f"Token revocation returned {response.status}: {body}")
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning(f"Token revocation failed: {e}")

    async def invalidate(self):
        """資格情報を破棄（APIが401を返した場合など）"""
        self._cached = None
        self._loaded = True
        await self.store.clear(self.account_id)

    async def is_authenticated(self) -> bool:
        """有効またはリフレッシュ可能な資格情報があるか"""
        token = await self._load()
        if token is None:
            return False
        return not token.is_expired(self._clock()) or bool(token.refresh_token)

    async def close(self):
        if self._owns_session and self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None

    def _require_client_credentials(self):
        if not self.config.client_id or not self.config.client_secret:
            raise ConfigurationError("OAuth client_id and client_secret must be configured")

    def _get_session(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def _post_token_endpoint(self, form: Dict[str, str]):
        session = self._get_session()
        async with session.post(self.config.token_uri, data=form, timeout=self._timeout) as response:
            try:
                data = await response.json(content_type=None)
            except ValueError:
                data = {'error': await response.text()}
            return response.status, data if isinstance(data, dict) else {}

    async def _load(self) -> Optional[TokenSet]:
        if not self._loaded:
            blob = await self.store.get(self.account_id)
            self._cached = TokenSet.from_blob(blob) if blob else None
            self._loaded = True
        return self._cached

    async def _save(self, token: TokenSet):
        await self.store.set(self.account_id, token.to_blob())
        self._cached = token
        self._loaded = True


def _error_message(data: Dict[str, Any], status: int) -> str:
    """トークンエンドポイントのエラー応答からメッセージを取り出す"""
    description = data.get('error_description')
    error = data.get('error')
    if isinstance(error, dict):
        error = error.get('message')
    return description or error or f"HTTP {status}"
