"""
認証情報ストア - アカウント単位のOAuth資格情報の保存・取得・削除
暗号化ファイル / SQLite / メモリの実装を提供
"""

import hashlib
import json
import logging
import os
from abc import ABC, abstractmethod
from datetime import datetime, timezone
from pathlib import Path
from typing import Dict, Any, Optional, Union

import aiosqlite
from cryptography.fernet import InvalidToken

from ...config.sync_config import SecurityManager

logger = logging.getLogger(__name__)

CredentialBlob = Dict[str, Any]


class CredentialStore(ABC):
    """資格情報ストアのインターフェース（アカウントIDをキーとする）"""

    @abstractmethod
    async def get(self, account_id: str) -> Optional[CredentialBlob]:
        """資格情報の取得（未保存ならNone）"""
        ...

    @abstractmethod
    async def set(self, account_id: str, blob: CredentialBlob):
        """資格情報の保存（上書き）"""
        ...

    @abstractmethod
    async def clear(self, account_id: str):
        """資格情報の削除"""
        ...


class InMemoryCredentialStore(CredentialStore):
    """メモリ上のストア（テスト・単発実行用）"""

    def __init__(self, initial: Optional[Dict[str, CredentialBlob]] = None):
        self._blobs: Dict[str, CredentialBlob] = {k: dict(v) for k, v in (initial or {}).items()}

    async def get(self, account_id: str) -> Optional[CredentialBlob]:
        blob = self._blobs.get(account_id)
        return dict(blob) if blob is not None else None

    async def set(self, account_id: str, blob: CredentialBlob):
        self._blobs[account_id] = dict(blob)

    async def clear(self, account_id: str):
        self._blobs.pop(account_id, None)


class EncryptedFileCredentialStore(CredentialStore):
    """アカウントごとにFernet暗号化したJSONファイルへ保存"""

    def __init__(self, directory: Union[str, Path], security: Optional[SecurityManager] = None):
        self.directory = Path(directory)
        self.directory.mkdir(parents=True, exist_ok=True)
        self.security = security or SecurityManager()

    def _path_for(self, account_id: str) -> Path:
        # アカウントIDをそのままファイル名にしない
        digest = hashlib.sha256(account_id.encode('utf-8')).hexdigest()
        return self.directory / f"{digest}.cred"

    async def get(self, account_id: str) -> Optional[CredentialBlob]:
        path = self._path_for(account_id)
        if not path.exists():
            return None

        with open(path, 'r', encoding='utf-8') as f:
            token = f.read()

        try:
            return json.loads(self.security.decrypt_value(token))
        except InvalidToken:
            logger.warning(f"Stored credentials for account {account_id} could not be decrypted")
            return None

    async def set(self, account_id: str, blob: CredentialBlob):
        path = self._path_for(account_id)
        encrypted = self.security.encrypt_value(json.dumps(blob))

        with open(path, 'w', encoding='utf-8') as f:
            f.write(encrypted)
        os.chmod(path, 0o600)
        logger.debug(f"Credentials saved for account {account_id}")

    async def clear(self, account_id: str):
        path = self._path_for(account_id)
        if path.exists():
            path.unlink()
            logger.debug(f"Credentials removed for account {account_id}")


class SQLiteCredentialStore(CredentialStore):
    """SQLite（aiosqlite）に暗号化して保存"""

    def __init__(self, database_path: Union[str, Path] = "data/credentials.db",
                 security: Optional[SecurityManager] = None):
        self.database_path = Path(database_path)
        self.database_path.parent.mkdir(parents=True, exist_ok=True)
        self.security = security or SecurityManager()
        self._initialized = False

    async def initialize(self):
        """テーブル作成"""
        sql = """
        CREATE TABLE IF NOT EXISTS credentials (
            account_id TEXT PRIMARY KEY,
            blob TEXT NOT NULL,
            updated_at TIMESTAMP NOT NULL
        )
        """
        async with aiosqlite.connect(self.database_path) as db:
            await db.execute(sql)
            await db.commit()

        self._initialized = True
        logger.info(f"Credential storage initialized: {self.database_path}")

    async def _ensure_initialized(self):
        if not self._initialized:
            await self.initialize()

    async def get(self, account_id: str) -> Optional[CredentialBlob]:
        await self._ensure_initialized()

        async with aiosqlite.connect(self.database_path) as db:
            async with db.execute(
                "SELECT blob FROM credentials WHERE account_id = ?", (account_id,)
            ) as cursor:
                row = await cursor.fetchone()

        if row is None:
            return None

        try:
            return json.loads(self.security.decrypt_value(row[0]))
        except InvalidToken:
            logger.warning(f"Stored credentials for account {account_id} could not be decrypted")
            return None

    async def set(self, account_id: str, blob: CredentialBlob):
        await self._ensure_initialized()

        encrypted = self.security.encrypt_value(json.dumps(blob))
        sql = """
        INSERT INTO credentials (account_id, blob, updated_at) VALUES (?, ?, ?)
        ON CONFLICT(account_id) DO UPDATE SET blob = excluded.blob, updated_at = excluded.updated_at
        """
        async with aiosqlite.connect(self.database_path) as db:
            await db.execute(sql, (account_id, encrypted, datetime.now(timezone.utc).isoformat()))
            await db.commit()

    async def clear(self, account_id: str):
        await self._ensure_initialized()

        async with aiosqlite.connect(self.database_path) as db:
            await db.execute("DELETE FROM credentials WHERE account_id = ?", (account_id,))
            await db.commit()
