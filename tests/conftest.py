"""
Shared fixtures for the SessionKit test suite.
"""

import base64
import io
import json
import uuid

import pytest

from sessionkit.config import AppConfig
from sessionkit.events import SessionEventBus
from sessionkit.logger import StructuredLogger
from sessionkit.models.enums import AuthProvider
from sessionkit.models.user import User
from sessionkit.oauth.browser import CallbackWindow
from sessionkit.storage.memory import MemoryStorage


def make_jwt(claims: dict) -> str:
    """Build an unsigned JWT carrying *claims*."""

    def _segment(data: dict) -> str:
        raw = json.dumps(data).encode("utf-8")
        return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")

    signature = base64.urlsafe_b64encode(b"signature").decode("ascii").rstrip("=")
    return f"{_segment({'alg': 'none', 'typ': 'JWT'})}.{_segment(claims)}.{signature}"


def make_user(**overrides) -> User:
    data = {
        "id": "user-1",
        "email": "ana@example.com",
        "first_name": "Ana",
        "last_name": "Pérez",
        "provider": AuthProvider.EMAIL,
        "auth_token": "access-1",
        "refresh_token": "refresh-1",
    }
    data.update(overrides)
    return User(**data)


@pytest.fixture
def log_stream():
    return io.StringIO()


@pytest.fixture
def logger(log_stream):
    """Logger writing JSON lines to an in-memory stream (unique per test)."""
    return StructuredLogger(
        name=f"sessionkit.test.{uuid.uuid4().hex}",
        stream=log_stream,
        log_file="",
        max_bytes=0,
        backup_count=0,
    )


@pytest.fixture
def config(tmp_path):
    return AppConfig(
        API_BASE_URL="http://api.test",
        GOOGLE_WEB_CLIENT_ID="client-123",
        GOOGLE_WEB_ORIGIN="",
        SESSION_DB_PATH=str(tmp_path / "session.db"),
        SESSION_SALT_PATH=str(tmp_path / "salt"),
        MAILBOX_DIR=str(tmp_path / "mailbox"),
        NATIVE_GOOGLE_SIGNIN_MODULE="",
        LOG_FILE="",
    )


@pytest.fixture
def storage(logger):
    return MemoryStorage(logger=logger)


@pytest.fixture
def bus(logger):
    return SessionEventBus(logger)


@pytest.fixture
def main_window():
    """Initiating window with no fragment."""
    return CallbackWindow(fragment="", origin="http://localhost:8765", name="main")


@pytest.fixture
def user():
    return make_user()
