"""
データ取得層 - リモートカレンダーAPIからの取得・更新とエラー分類
"""

from .error_handler import (
    CalendarSyncError, ConfigurationError, AuthExchangeError,
    ReauthRequired, Unauthorized, RemoteCalendarError,
    TransientError, RejectedError, SyncInProgressError,
    ErrorType, RetryPolicy, classify_error
)
from .calendar_client import RemoteCalendarClient

__all__ = [
    'CalendarSyncError', 'ConfigurationError', 'AuthExchangeError',
    'ReauthRequired', 'Unauthorized', 'RemoteCalendarError',
    'TransientError', 'RejectedError', 'SyncInProgressError',
    'ErrorType', 'RetryPolicy', 'classify_error',
    'RemoteCalendarClient'
]
