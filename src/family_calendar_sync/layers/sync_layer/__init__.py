"""
同期層 - ローカル ↔ リモートカレンダー双方向同期を管理
"""

from .event_translator import EventTranslator
from .conflict_resolver import (
    ConflictResolver, ConflictType, Conflict,
    Resolution, ResolutionAction, ResolutionPolicy, Winner
)
from .sync_engine import SyncEngine, SyncResult, create_sync_engine, create_credential_store

__all__ = [
    'EventTranslator',
    'ConflictResolver', 'ConflictType', 'Conflict',
    'Resolution', 'ResolutionAction', 'ResolutionPolicy', 'Winner',
    'SyncEngine', 'SyncResult', 'create_sync_engine', 'create_credential_store'
]
