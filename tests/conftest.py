"""Pytest configuration and shared fixtures."""

from __future__ import annotations

import pytest

from credential_provisioner.config import (
    Config,
    Environment,
    FlowKind,
    LogLevel,
    Provider,
    ProviderConfig,
)
from credential_provisioner.oauth.credential_store import InMemoryCredentialStore
from credential_provisioner.oauth.session import InMemorySessionStore

ANTHROPIC_AUTHORIZE_URL = "https://auth.example.com/oauth/authorize"
ANTHROPIC_TOKEN_URL = "https://auth.example.com/v1/oauth/token"
ANTHROPIC_API_KEY_URL = "https://api.example.com/api/oauth/create_api_key"
ANTHROPIC_REDIRECT_URI = "https://auth.example.com/oauth/code/callback"

GEMINI_DEVICE_URL = "https://accounts.example.com/device/code"
GEMINI_TOKEN_URL = "https://accounts.example.com/token"


@pytest.fixture
def default_config() -> Config:
    """Create a default configuration for testing."""
    return Config()


@pytest.fixture
def anthropic_config() -> ProviderConfig:
    """Authorization-code provider that mints API keys."""
    return ProviderConfig(
        client_id="test-client-id",
        authorize_url=ANTHROPIC_AUTHORIZE_URL,
        token_url=ANTHROPIC_TOKEN_URL,
        api_key_url=ANTHROPIC_API_KEY_URL,
        redirect_uri=ANTHROPIC_REDIRECT_URI,
        scopes=("org:create_api_key", "user:profile"),
    )


@pytest.fixture
def gemini_config() -> ProviderConfig:
    """Polling-login provider with a fast poll interval."""
    return ProviderConfig(
        client_id="gemini-client-id",
        authorize_url=GEMINI_DEVICE_URL,
        token_url=GEMINI_TOKEN_URL,
        scopes=("generative-language",),
        flow=FlowKind.POLLING_LOGIN,
        poll_interval_seconds=0.01,
    )


@pytest.fixture
def oauth_config(anthropic_config: ProviderConfig, gemini_config: ProviderConfig) -> Config:
    """Create a configuration with both providers for testing."""
    return Config(
        app_name="OAuth Test Provisioner",
        log_level=LogLevel.DEBUG,
        environment=Environment.DEV,
        http_timeout_seconds=5.0,
        providers={
            Provider.ANTHROPIC: anthropic_config,
            Provider.GEMINI: gemini_config,
        },
    )


@pytest.fixture
def session_store() -> InMemorySessionStore:
    """Create an in-memory session store."""
    return InMemorySessionStore()


@pytest.fixture
def credential_store() -> InMemoryCredentialStore:
    """Create an in-memory credential store."""
    return InMemoryCredentialStore()
