"""
Pytest configuration and shared fixtures for consent server tests.

This module provides common test fixtures, configuration, and utilities
used across all test modules: a configuration pointing at a fake events
API, a mocked API client, and a FastAPI test client wired to both.
"""

import json
import pytest
from typing import Dict
from unittest.mock import AsyncMock

from fastapi.testclient import TestClient

from src.consent_server.api_client import EventsApiClient
from src.consent_server.main import create_app
from src.shared.config import ConsentServerConfig
from src.shared.oauth_models import (
    AuthorizationRequest,
    AuthUser,
    ClientInfo,
    ExistingGrant,
    ParseSuccess,
)


@pytest.fixture
def config() -> ConsentServerConfig:
    """Consent server configuration pointing at a test API host."""
    return ConsentServerConfig(
        events_api_url="https://api.test.tampa.dev",
        request_timeout_seconds=5.0,
        completion_redirect_delay_seconds=2,
    )


@pytest.fixture
def api_client() -> AsyncMock:
    """Events API client double; every method is an AsyncMock."""
    return AsyncMock(spec=EventsApiClient)


@pytest.fixture
def app(config, api_client):
    """Consent server application wired to the mocked API client."""
    return create_app(config=config, api_client=api_client)


@pytest.fixture
def client(app) -> TestClient:
    """Test client for the consent server."""
    return TestClient(app)


@pytest.fixture
def member_user() -> AuthUser:
    """A regular signed-in member."""
    return AuthUser(
        id="user-123",
        email="alice@example.com",
        name="Alice",
        role="user",
        github_username="alice",
    )


@pytest.fixture
def admin_user() -> AuthUser:
    """A signed-in platform administrator."""
    return AuthUser(id="admin-1", email="root@tampa.dev", name="Root", role="admin")


@pytest.fixture
def oauth_params() -> Dict[str, str]:
    """Query parameters of a well-formed authorization request."""
    return {
        "response_type": "code",
        "client_id": "client-abc",
        "redirect_uri": "https://app.example.com/callback",
        "state": "xyz",
        "code_challenge": "E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM",
        "code_challenge_method": "S256",
    }


@pytest.fixture
def oauth_request() -> AuthorizationRequest:
    """The backend's parse of ``oauth_params``."""
    return AuthorizationRequest(
        response_type="code",
        client_id="client-abc",
        redirect_uri="https://app.example.com/callback",
        scope=["profile"],
        state="xyz",
        code_challenge="E9Melhoa2OwvFrEMTJguCHaoeK1t8URWbuGJSstw-cM",
        code_challenge_method="S256",
    )


@pytest.fixture
def client_info() -> ClientInfo:
    """Registered metadata for the test client app."""
    return ClientInfo(
        client_id="client-abc",
        client_name="Meetup Buddy",
        logo_uri="https://app.example.com/logo.png",
        client_uri="https://app.example.com",
        policy_uri="https://app.example.com/privacy",
        tos_uri="https://app.example.com/terms",
    )


@pytest.fixture
def parse_success(oauth_request, client_info):
    """Factory for successful parse results, optionally with a prior grant."""
    def _make(existing_scopes=None) -> ParseSuccess:
        grant = ExistingGrant(scopes=existing_scopes) if existing_scopes is not None else None
        return ParseSuccess(oauth_request=oauth_request, client=client_info, existing_grant=grant)
    return _make


@pytest.fixture
def approve_form(oauth_request, member_user) -> Dict[str, str]:
    """Form fields posted by the consent screen's Allow button."""
    return {
        "intent": "approve",
        "oauthRequest": oauth_request.to_form_value(),
        "userId": member_user.id,
        "approvedScopes": json.dumps(["profile"]),
        "redirectUri": oauth_request.redirect_uri,
        "state": oauth_request.state,
    }


@pytest.fixture(autouse=True)
def disable_logging():
    """Disable logging during tests to reduce noise."""
    import logging
    logging.disable(logging.CRITICAL)
    yield
    logging.disable(logging.NOTSET)


# Pytest configuration
def pytest_configure(config):
    """Configure pytest with custom markers."""
    config.addinivalue_line(
        "markers", "security: marks tests as security-focused tests"
    )
    config.addinivalue_line(
        "markers", "unit: marks tests as unit tests"
    )


def pytest_collection_modifyitems(config, items):
    """Modify test collection to add markers automatically."""
    for item in items:
        if "security" in item.nodeid:
            item.add_marker(pytest.mark.security)
        elif "test_" in item.nodeid:
            item.add_marker(pytest.mark.unit)
