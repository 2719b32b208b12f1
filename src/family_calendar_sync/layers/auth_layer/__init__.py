"""
認証層 - OAuthトークンのライフサイクルと資格情報の保存
"""

from .credential_store import (
    CredentialStore, InMemoryCredentialStore,
    EncryptedFileCredentialStore, SQLiteCredentialStore
)
from .token_manager import TokenManager, TokenSet, TokenState

__all__ = [
    'CredentialStore', 'InMemoryCredentialStore',
    'EncryptedFileCredentialStore', 'SQLiteCredentialStore',
    'TokenManager', 'TokenSet', 'TokenState'
]
