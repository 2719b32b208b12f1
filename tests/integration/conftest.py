"""
統合テスト共通フィクスチャ
"""

from datetime import timedelta

import pytest

from family_calendar_sync.config.sync_config import OAuthConfig, SyncEngineConfig
from family_calendar_sync.layers.auth_layer.credential_store import InMemoryCredentialStore
from family_calendar_sync.layers.auth_layer.token_manager import TokenManager, TokenSet
from family_calendar_sync.layers.sync_layer.sync_engine import SyncEngine

from tests.integration.fake_client import NOW, FakeRemoteCalendarClient, fixed_clock


@pytest.fixture
def oauth_config():
    return OAuthConfig(client_id="client-123", client_secret="secret-456")


@pytest.fixture
def valid_token():
    return TokenSet(access_token="access-1", refresh_token="refresh-1",
                    expiry=NOW + timedelta(hours=1))


@pytest.fixture
def credential_store(valid_token):
    return InMemoryCredentialStore({"family-account": valid_token.to_blob()})


@pytest.fixture
def token_manager(oauth_config, credential_store):
    return TokenManager("family-account", oauth_config, credential_store, clock=fixed_clock)


@pytest.fixture
def fake_client(token_manager):
    return FakeRemoteCalendarClient(token_manager)


@pytest.fixture
def engine(token_manager, fake_client):
    return SyncEngine(token_manager, fake_client, config=SyncEngineConfig(), clock=fixed_clock)
