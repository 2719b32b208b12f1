"""
エラーハンドリング - 同期処理の例外体系とリトライ戦略
"""

import asyncio
import logging
from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional

logger = logging.getLogger(__name__)


class CalendarSyncError(Exception):
    """同期処理の基底例外"""
    pass


class ConfigurationError(CalendarSyncError):
    """クライアント認証情報などの設定不備（リトライ不可）"""
    pass


class AuthExchangeError(CalendarSyncError):
    """認可コード交換の失敗"""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class ReauthRequired(CalendarSyncError):
    """トークン失効・無効（OAuthフローの再実行が必要）"""
    pass


class Unauthorized(ReauthRequired):
    """リモートAPIが401を返した"""
    pass


class RemoteCalendarError(CalendarSyncError):
    """リモートAPI呼び出しの失敗"""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class TransientError(RemoteCalendarError):
    """5xx・タイムアウト・接続エラー（バックオフ付きでリトライ可）"""
    pass


class RejectedError(RemoteCalendarError):
    """401以外の4xx（リトライ不可、メッセージはそのまま表示）"""
    pass


class SyncInProgressError(CalendarSyncError):
    """同一アカウントの同期が実行中"""
    pass


class ErrorType(Enum):
    """エラータイプ分類"""
    CONFIGURATION_ERROR = "configuration_error"
    AUTHENTICATION_ERROR = "authentication_error"
    TRANSIENT_ERROR = "transient_error"
    REJECTED_ERROR = "rejected_error"
    UNKNOWN_ERROR = "unknown_error"


@dataclass
class ErrorStrategy:
    """エラー対応戦略設定"""
    retryable: bool
    description: str = ""


STRATEGIES: Dict[ErrorType, ErrorStrategy] = {
    ErrorType.CONFIGURATION_ERROR: ErrorStrategy(
        retryable=False,
        description="missing client credentials, surfaced to the operator",
    ),
    ErrorType.AUTHENTICATION_ERROR: ErrorStrategy(
        retryable=False,
        description="re-run the OAuth flow",
    ),
    ErrorType.TRANSIENT_ERROR: ErrorStrategy(
        retryable=True,
        description="network or server failure",
    ),
    ErrorType.REJECTED_ERROR: ErrorStrategy(
        retryable=False,
        description="request rejected by the remote API",
    ),
    ErrorType.UNKNOWN_ERROR: ErrorStrategy(
        retryable=False,
    ),
}


def classify_error(error: BaseException) -> ErrorType:
    """例外をエラータイプに分類"""
    if isinstance(error, ConfigurationError):
        return ErrorType.CONFIGURATION_ERROR
    if isinstance(error, (ReauthRequired, AuthExchangeError)):
        return ErrorType.AUTHENTICATION_ERROR
    if isinstance(error, TransientError):
        return ErrorType.TRANSIENT_ERROR
    if isinstance(error, RejectedError):
        return ErrorType.REJECTED_ERROR
    if isinstance(error, (ConnectionError, asyncio.TimeoutError)):
        return ErrorType.TRANSIENT_ERROR
    return ErrorType.UNKNOWN_ERROR


def error_for_status(status: int, message: str) -> CalendarSyncError:
    """HTTPステータスから例外を生成"""
    if status == 401:
        return Unauthorized(f"Authentication expired. Please reconnect. ({message})")
    if status >= 500:
        return TransientError(f"Remote server error {status}: {message}", status=status)
    return RejectedError(message, status=status)


@dataclass
class RetryPolicy:
    """一時的エラーのリトライ設定"""
    max_attempts: int = 3
    backoff_base: float = 2.0
    initial_delay: float = 0.5
    max_delay: float = 30.0

    def delay_for(self, attempt: int) -> float:
        """attempt回目（1始まり）の失敗後の待機秒数"""
        delay = self.initial_delay * (self.backoff_base ** (attempt - 1))
        return min(delay, self.max_delay)

    async def wait(self, attempt: int, error: BaseException):
        delay = self.delay_for(attempt)
        logger.info(f"Transient failure ({error}); retrying in {delay:.2f}s "
                    f"(attempt {attempt}/{self.max_attempts})")
        await asyncio.sleep(delay)
