"""Shared fixtures and utilities for NodeRef backend tests."""

import json
import os
from collections.abc import Callable, Generator
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

import httpx
import pytest

from noderef.auth.credentials import BasicCredential, OAuth2Credential
from noderef.auth.initiator import InteractiveSurface, PollingPolicy
from noderef.auth.store import CredentialRepository

TEST_MASTER_KEY = "test-master-key-for-noderef"


# ============================================================================
# Sample Data Fixtures
# ============================================================================


@pytest.fixture
def basic_credential() -> BasicCredential:
    """Create a sample basic credential."""
    return BasicCredential(username="admin", secret="admin-password")


@pytest.fixture
def oauth_credential() -> OAuth2Credential:
    """Create a sample OAuth2 credential valid for another hour."""
    return OAuth2Credential(
        secret="access-token-1",
        provider_host="http://localhost:8180",
        realm="alfresco",
        client_id="noderef-desktop",
        refresh_token="refresh-token-1",
        token_expiry=datetime.now(timezone.utc) + timedelta(hours=1),
    )


@pytest.fixture
def person_entry() -> dict[str, Any]:
    """A people/-me- response for an administrator."""
    return {
        "entry": {
            "id": "admin",
            "firstName": "Administrator",
            "displayName": "Administrator",
            "email": "admin@example.com",
            "capabilities": {"isAdmin": True, "isGuest": False, "isMutable": True},
        }
    }


# ============================================================================
# Storage Fixtures
# ============================================================================


@pytest.fixture
def repository(tmp_path: Path) -> CredentialRepository:
    """Create a credential repository in a temporary directory."""
    return CredentialRepository(tmp_path / "data", master_key=TEST_MASTER_KEY)


# ============================================================================
# Login Fixtures
# ============================================================================


@pytest.fixture
def fast_policy() -> PollingPolicy:
    """A shrunken polling policy for timing scenarios."""
    return PollingPolicy(interval=0.01, max_attempts=20, grace_period=0.05, liveness_interval=0.01)


class FakeSurface(InteractiveSurface):
    """Interactive surface recording what the login did to it."""

    def __init__(self, can_open: bool = True, can_navigate: bool = True):
        self.can_open = can_open
        self.can_navigate = can_navigate
        self.opened = False
        self.navigated_to: str | None = None
        self.closed_by_user = False
        self.close_calls = 0

    def open(self) -> bool:
        self.opened = self.can_open
        return self.can_open

    def navigate(self, url: str) -> bool:
        self.navigated_to = url
        return self.can_navigate

    def is_closed(self) -> bool:
        return self.closed_by_user

    def close(self) -> None:
        self.close_calls += 1


@pytest.fixture
def surface() -> FakeSurface:
    """Create a fake interactive surface."""
    return FakeSurface()


# ============================================================================
# HTTP Fixtures
# ============================================================================


class RecordingHandler:
    """httpx.MockTransport handler returning canned responses and recording requests."""

    def __init__(self, responder: Callable[[httpx.Request], httpx.Response]):
        self.responder = responder
        self.requests: list[httpx.Request] = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        return self.responder(request)

    def form(self, index: int = -1) -> dict[str, str]:
        """Decode the urlencoded body of a recorded request."""
        return dict(httpx.QueryParams(self.requests[index].content.decode()))


def json_response(status: int, data: Any) -> httpx.Response:
    return httpx.Response(status, content=json.dumps(data), headers={"Content-Type": "application/json"})


# ============================================================================
# Environment Fixtures
# ============================================================================


@pytest.fixture
def clean_env() -> Generator[None, None, None]:
    """Temporarily clear NODEREF_* environment variables."""
    old_env = os.environ.copy()
    for key in list(os.environ.keys()):
        if key.startswith("NODEREF_"):
            del os.environ[key]
    yield
    os.environ.clear()
    os.environ.update(old_env)
