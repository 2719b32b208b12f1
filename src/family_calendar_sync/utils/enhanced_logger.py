"""
強化ログシステム - 構造化ログ（structlog）と標準ログ、同期メトリクスの収集
"""

import json
import logging
import sys
from collections import defaultdict
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Dict, Any, Optional, TextIO

import structlog

ROOT_LOGGER_NAME = "family_calendar_sync"


class LogLevel(Enum):
    """ログレベル"""
    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class MetricsCollector:
    """同期メトリクス収集"""

    def __init__(self):
        self.counters = defaultdict(int)
        self.histograms = defaultdict(list)
        self.start_time = datetime.now()

    def record_success(self, operation: str, duration: float):
        """成功した操作の回数と所要時間を記録"""
        self.counters[f"{operation}_success"] += 1
        self.histograms[f"{operation}_duration"].append(duration)

    def record_error(self, operation: str, error_type: str):
        """失敗した操作をエラー種別ごとに記録"""
        self.counters[f"{operation}_error_{error_type}"] += 1

    def record_event(self, event_name: str, count: int = 1):
        """イベント記録"""
        self.counters[event_name] += count

    def get_health_summary(self) -> dict:
        """健全性サマリー"""
        successes = sum(v for k, v in self.counters.items() if k.endswith('_success'))
        errors = sum(v for k, v in self.counters.items() if '_error_' in k)
        total = successes + errors

        avg_durations = {
            key: sum(values) / len(values)
            for key, values in self.histograms.items() if values
        }

        return {
            'uptime_seconds': (datetime.now() - self.start_time).total_seconds(),
            'success_rate_percent': (successes / total * 100) if total > 0 else 100.0,
            'total_operations': total,
            'avg_durations': avg_durations,
            'counters': dict(self.counters),
        }


class EnhancedLogger:
    """標準ログと構造化ログ（JSON Lines）への二重出力、メトリクス連携"""

    def __init__(self,
                 name: str = ROOT_LOGGER_NAME,
                 log_level: LogLevel = LogLevel.INFO,
                 json_stream: Optional[TextIO] = None,
                 metrics: Optional[MetricsCollector] = None):

        self.name = name
        self.logger = logging.getLogger(name)
        self.configure(log_level, json_stream, metrics)

    def configure(self,
                  log_level: LogLevel,
                  json_stream: Optional[TextIO] = None,
                  metrics: Optional[MetricsCollector] = None):
        """出力先・レベル・メトリクスの差し替え（setup_loggingから呼ばれる）"""
        self.log_level = log_level
        self.metrics = metrics

        # 構造化ログ（JSON Lines）
        self.structured_logger = structlog.wrap_logger(
            structlog.PrintLogger(file=json_stream or sys.stderr),
            processors=[
                structlog.processors.add_log_level,
                structlog.processors.TimeStamper(fmt="iso"),
                structlog.processors.JSONRenderer(default=str),
            ],
            wrapper_class=structlog.make_filtering_bound_logger(
                getattr(logging, log_level.value)
            ),
        )
        self._structured_enabled = json_stream is not None

    def info(self, message: str, **kwargs):
        """情報ログ"""
        self._log(LogLevel.INFO, message, **kwargs)

    def warning(self, message: str, **kwargs):
        """警告ログ"""
        self._log(LogLevel.WARNING, message, **kwargs)

    def error(self, message: str, error: Optional[BaseException] = None, **kwargs):
        """エラーログ"""
        if error:
            kwargs['error_type'] = error.__class__.__name__
            kwargs['error_message'] = str(error)
        self._log(LogLevel.ERROR, message, **kwargs)

    def critical(self, message: str, **kwargs):
        self._log(LogLevel.CRITICAL, message, **kwargs)

    def debug(self, message: str, **kwargs):
        self._log(LogLevel.DEBUG, message, **kwargs)

    def _log(self, level: LogLevel, message: str, **kwargs):
        """内部ログ処理"""
        if self.metrics and level in [LogLevel.ERROR, LogLevel.CRITICAL]:
            self.metrics.record_error(kwargs.get('operation', 'unknown'),
                                      kwargs.get('error_type', 'unknown'))

        # 構造化ログ
        if self._structured_enabled:
            log_method = getattr(self.structured_logger, level.value.lower())
            log_method(message, logger=self.name, **kwargs)

        # 標準ログ
        if kwargs:
            message = f"{message} | Context: {json.dumps(kwargs, default=str)}"
        getattr(self.logger, level.value.lower())(message)

    def log_operation_start(self, operation: str, **context) -> dict:
        """操作開始ログ"""
        start_time = datetime.now()
        self.info(f"Operation started: {operation}", operation=operation, status='started', **context)
        return {'start_time': start_time, 'operation': operation, **context}

    def log_operation_end(self, operation_context: dict, success: bool = True, **additional_context):
        """操作終了ログ"""
        start_time = operation_context.get('start_time')
        operation = operation_context.get('operation', 'unknown')
        duration = (datetime.now() - start_time).total_seconds() if start_time else 0.0

        context = {
            key: value for key, value in operation_context.items()
            if key not in ('start_time', 'operation')
        }
        context.update(additional_context)

        if self.metrics and success:
            self.metrics.record_success(operation, duration)

        if success:
            self.info(f"Operation completed: {operation} ({duration:.2f}s)",
                      operation=operation, status='success', duration_seconds=duration, **context)
        else:
            self.error(f"Operation failed: {operation} ({duration:.2f}s)",
                       operation=operation, status='failed', duration_seconds=duration, **context)

    def get_health_status(self) -> dict:
        """健全性ステータス取得"""
        if not self.metrics:
            return {"status": "metrics_disabled"}

        summary = self.metrics.get_health_summary()
        success_rate = summary['success_rate_percent']
        if success_rate >= 98.0:
            status = "healthy"
        elif success_rate >= 90.0:
            status = "warning"
        else:
            status = "degraded"

        return {"overall_status": status, "timestamp": datetime.now().isoformat(), **summary}


_loggers: Dict[str, EnhancedLogger] = {}
_metrics: Optional[MetricsCollector] = MetricsCollector()
_log_level = LogLevel.INFO
_json_stream: Optional[TextIO] = None


def get_logger(name: str = ROOT_LOGGER_NAME) -> EnhancedLogger:
    """名前ごとのロガー取得"""
    if name not in _loggers:
        _loggers[name] = EnhancedLogger(name, _log_level, _json_stream, _metrics)
    return _loggers[name]


def get_metrics() -> Optional[MetricsCollector]:
    return _metrics


def setup_logging(config: Any = None) -> EnhancedLogger:
    """ログ設定の初期化（LoggingConfigまたは辞書）"""
    global _log_level, _json_stream, _metrics

    if config is None:
        config = {}
    if not isinstance(config, dict):
        config = vars(config)

    _log_level = LogLevel(str(config.get('level', 'INFO')).upper())
    _metrics = MetricsCollector()

    root = logging.getLogger(ROOT_LOGGER_NAME)
    root.setLevel(getattr(logging, _log_level.value))
    for handler in list(root.handlers):
        root.removeHandler(handler)
        handler.close()

    # 前回のJSON Linesストリームは閉じる
    if _json_stream is not None:
        _json_stream.close()
        _json_stream = None

    formatter = logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s')

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setFormatter(formatter)
    root.addHandler(console_handler)

    log_file_path = config.get('file_path')
    if log_file_path:
        log_file = Path(log_file_path)
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding='utf-8')
        file_handler.setFormatter(formatter)
        root.addHandler(file_handler)

        # 構造化ログは隣の .jsonl へ
        _json_stream = open(log_file.with_suffix('.jsonl'), 'a', encoding='utf-8')

    if not config.get('metrics_enabled', True):
        _metrics = None

    # モジュール読み込み時に取得済みのロガーも新しい設定に揃える
    for existing in _loggers.values():
        existing.configure(_log_level, _json_stream, _metrics)

    return get_logger(ROOT_LOGGER_NAME)
