"""
同期設定管理 - YAML設定ファイル・環境変数・暗号化された秘密情報の統合
"""

import os
import yaml
from dataclasses import dataclass, field, fields
from pathlib import Path
from typing import Dict, Any, Optional, List, Union
from cryptography.fernet import Fernet

from ..layers.data_acquisition.error_handler import RetryPolicy
from ..utils.enhanced_logger import get_logger

logger = get_logger(__name__)

ENCRYPTED_PREFIX = "encrypted:"

DEFAULT_SCOPES = [
    'https://www.googleapis.com/auth/calendar',
    'https://www.googleapis.com/auth/calendar.events'
]


@dataclass
class OAuthConfig:
    """OAuth2クライアント設定"""
    client_id: str = ""
    client_secret: str = ""
    redirect_uri: str = "http://localhost:3000/auth/google/callback"
    auth_uri: str = "https://accounts.google.com/o/oauth2/v2/auth"
    token_uri: str = "https://oauth2.googleapis.com/token"
    revoke_uri: str = "https://oauth2.googleapis.com/revoke"
    scopes: List[str] = field(default_factory=lambda: list(DEFAULT_SCOPES))


@dataclass
class RemoteApiConfig:
    """リモートカレンダーAPI設定"""
    base_url: str = "https://www.googleapis.com/calendar/v3"
    calendar_list_path: str = "/users/me/calendarList"
    page_size: int = 250
    request_timeout_seconds: float = 30.0
    retry_policy: RetryPolicy = field(default_factory=RetryPolicy)


@dataclass
class SyncEngineConfig:
    """同期エンジン設定"""
    timezone: str = "Europe/London"
    window_past_days: int = 30
    window_future_days: int = 90
    conflict_policy: str = "latest_wins"  # latest_wins, remote_wins, local_wins
    sync_timeout_seconds: Optional[float] = None


@dataclass
class StorageConfig:
    """資格情報の保存先"""
    credential_backend: str = "file"  # file, sqlite, memory
    credential_path: str = "config/secrets/credentials"


@dataclass
class LoggingConfig:
    """ログ設定"""
    level: str = "INFO"
    file_path: Optional[str] = None
    metrics_enabled: bool = True


@dataclass
class AppConfig:
    """設定メインクラス"""
    oauth: OAuthConfig = field(default_factory=OAuthConfig)
    remote_api: RemoteApiConfig = field(default_factory=RemoteApiConfig)
    sync: SyncEngineConfig = field(default_factory=SyncEngineConfig)
    storage: StorageConfig = field(default_factory=StorageConfig)
    logging: LoggingConfig = field(default_factory=LoggingConfig)

    debug: bool = False
    environment: str = "development"  # development, staging, production


class SecurityManager:
    """秘密情報の暗号化・復号化"""

    def __init__(self, encryption_key: Optional[str] = None):
        self.encryption_key = encryption_key or self._get_or_create_key()
        self.cipher = Fernet(self.encryption_key.encode())

    def _get_or_create_key(self) -> str:
        """暗号化キーの取得または生成"""
        key = os.getenv('FAMILY_SYNC_ENCRYPTION_KEY')

        if not key:
            key = Fernet.generate_key().decode()
            logger.warning(
                "New encryption key generated. Store it securely!",
                key_preview=key[:8] + "...",
                operation="key_generation"
            )

        return key

    def encrypt_value(self, value: str) -> str:
        """値の暗号化"""
        return self.cipher.encrypt(value.encode()).decode()

    def decrypt_value(self, encrypted_value: str) -> str:
        """値の復号化（鍵が違う場合はInvalidToken）"""
        return self.cipher.decrypt(encrypted_value.encode()).decode()


# 環境変数 -> 設定パス
ENV_OVERRIDES = {
    'FAMILY_SYNC_CLIENT_ID': ('oauth.client_id', str),
    'FAMILY_SYNC_CLIENT_SECRET': ('oauth.client_secret', str),
    'FAMILY_SYNC_REDIRECT_URI': ('oauth.redirect_uri', str),
    'FAMILY_SYNC_API_BASE_URL': ('remote_api.base_url', str),
    'FAMILY_SYNC_TIMEZONE': ('sync.timezone', str),
    'FAMILY_SYNC_CONFLICT_POLICY': ('sync.conflict_policy', str),
    'FAMILY_SYNC_CREDENTIAL_BACKEND': ('storage.credential_backend', str),
    'FAMILY_SYNC_CREDENTIAL_PATH': ('storage.credential_path', str),
    'FAMILY_SYNC_LOG_LEVEL': ('logging.level', str),
    'FAMILY_SYNC_DEBUG': ('debug', lambda x: x.lower() in ['true', '1', 'yes']),
    'FAMILY_SYNC_ENVIRONMENT': ('environment', str),
}


class ConfigManager:
    """設定管理メインクラス"""

    def __init__(self,
                 config_dir: Union[str, Path] = "config",
                 secrets_dir: Union[str, Path] = "config/secrets",
                 security_manager: Optional[SecurityManager] = None):

        self.config_dir = Path(config_dir)
        self.secrets_dir = Path(secrets_dir)
        self._security_manager = security_manager

        self._config_cache: Optional[AppConfig] = None

    @property
    def security_manager(self) -> SecurityManager:
        if self._security_manager is None:
            self._security_manager = SecurityManager()
        return self._security_manager

    def load_config(self, reload: bool = False) -> AppConfig:
        """設定の読み込み（YAML < .env < 環境変数）"""
        if self._config_cache and not reload:
            return self._config_cache

        try:
            raw = self._load_yaml_file(self.config_dir / "sync.yaml")

            overrides = {**self._load_env_file(), **self._load_env_vars()}
            self._apply_overrides(raw, overrides)
            self._decrypt_values(raw)

            self._config_cache = self._create_config_object(raw)

            logger.info(
                "Configuration loaded successfully",
                environment=self._config_cache.environment,
                override_count=len(overrides),
                operation="config_load"
            )

        except (yaml.YAMLError, OSError, TypeError, ValueError) as e:
            logger.error("Failed to load configuration, using defaults", error=e)
            self._config_cache = AppConfig()

        return self._config_cache

    def _load_yaml_file(self, file_path: Path) -> Dict[str, Any]:
        """YAMLファイルの読み込み"""
        if not file_path.exists():
            logger.debug(f"Config file not found: {file_path}")
            return {}

        with open(file_path, 'r', encoding='utf-8') as f:
            return yaml.safe_load(f) or {}

    def _load_env_vars(self) -> Dict[str, str]:
        return {key: os.environ[key] for key in ENV_OVERRIDES if os.environ.get(key)}

    def _load_env_file(self) -> Dict[str, str]:
        """.envファイルからの読み込み"""
        env_file = self.secrets_dir / ".env"
        if not env_file.exists():
            return {}

        values = {}
        with open(env_file, 'r', encoding='utf-8') as f:
            for line in f:
                line = line.strip()
                if line and not line.startswith('#') and '=' in line:
                    key, value = line.split('=', 1)
                    key = key.strip()
                    if key in ENV_OVERRIDES:
                        values[key] = value.strip().strip('"\'')

        return values

    def _apply_overrides(self, config: Dict[str, Any], overrides: Dict[str, str]):
        """環境変数によるオーバーライド"""
        for env_key, env_value in overrides.items():
            config_path, converter = ENV_OVERRIDES[env_key]
            if isinstance(env_value, str) and env_value.startswith(ENCRYPTED_PREFIX):
                converted_value = env_value
            else:
                converted_value = converter(env_value)
            self._set_nested_value(config, config_path, converted_value)

    def _decrypt_values(self, config: Dict[str, Any]):
        """'encrypted:'で始まる値を復号化"""
        for key, value in config.items():
            if isinstance(value, dict):
                self._decrypt_values(value)
            elif isinstance(value, str) and value.startswith(ENCRYPTED_PREFIX):
                config[key] = self.security_manager.decrypt_value(value[len(ENCRYPTED_PREFIX):])

    def _set_nested_value(self, config: Dict, path: str, value: Any):
        """ネストされた設定値の設定"""
        keys = path.split('.')
        current = config

        for key in keys[:-1]:
            if not isinstance(current.get(key), dict):
                current[key] = {}
            current = current[key]

        current[keys[-1]] = value

    def _create_config_object(self, config_dict: Dict[str, Any]) -> AppConfig:
        """設定辞書から設定オブジェクトを作成"""
        remote_raw = dict(config_dict.get('remote_api') or {})
        retry_policy = _build(RetryPolicy, remote_raw.pop('retry_policy', None))

        return AppConfig(
            oauth=_build(OAuthConfig, config_dict.get('oauth')),
            remote_api=_build(RemoteApiConfig, {**remote_raw, 'retry_policy': retry_policy}),
            sync=_build(SyncEngineConfig, config_dict.get('sync')),
            storage=_build(StorageConfig, config_dict.get('storage')),
            logging=_build(LoggingConfig, config_dict.get('logging')),
            debug=bool(config_dict.get('debug', False)),
            environment=str(config_dict.get('environment', 'development')),
        )

    def save_config_template(self):
        """設定ファイルテンプレートの作成"""
        template = {
            "environment": "development",
            "debug": False,
            "oauth": {
                "client_id": "",
                "redirect_uri": OAuthConfig.redirect_uri,
            },
            "sync": {
                "timezone": SyncEngineConfig.timezone,
                "window_past_days": SyncEngineConfig.window_past_days,
                "window_future_days": SyncEngineConfig.window_future_days,
                "conflict_policy": SyncEngineConfig.conflict_policy,
            },
            "storage": {
                "credential_backend": StorageConfig.credential_backend,
                "credential_path": StorageConfig.credential_path,
            },
            "logging": {
                "level": "INFO",
                "file_path": "logs/family_calendar_sync.log",
            },
        }

        self.config_dir.mkdir(parents=True, exist_ok=True)
        file_path = self.config_dir / "sync.yaml"
        if not file_path.exists():
            with open(file_path, 'w', encoding='utf-8') as f:
                yaml.dump(template, f, default_flow_style=False, allow_unicode=True)
            logger.info(f"Created config template: {file_path}")


def _build(cls, data: Optional[Dict[str, Any]]):
    """未知のキーを無視してdataclassを生成"""
    known = {f.name for f in fields(cls)}
    unknown = set((data or {}).keys()) - known
    if unknown:
        logger.warning(f"Ignoring unknown {cls.__name__} keys", keys=sorted(unknown))
    return cls(**{k: v for k, v in (data or {}).items() if k in known})
