from __future__ import annotations

from datetime import datetime, timedelta
from pathlib import Path

import jwt
import pytest
from fastapi.testclient import TestClient

from backend.linkcard.main import create_app
from backend.linkcard.persistence import Database
from backend.linkcard.services.dispatcher import SendResult
from backend.linkcard.store import CardStore

JWT_SECRET = "test-secret"


def sqlite_url(path: Path) -> str:
    return f"sqlite:///{path.as_posix()}"


def make_token(subject: str, secret: str = JWT_SECRET) -> str:
    payload = {
        "sub": subject,
        "exp": datetime.utcnow() + timedelta(hours=1),
    }
    return jwt.encode(payload, secret, algorithm="HS256")


def bearer(subject: str) -> dict[str, str]:
    return {"Authorization": f"Bearer {make_token(subject)}"}


class FakeClock:
    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


class RecordingSender:
    """Stands in for the HTTP sender; replies with scripted status codes."""

    def __init__(self, *status_codes) -> None:
        self.status_codes = list(status_codes) or [200]
        self.calls: list[dict] = []

    def __call__(self, url: str, body: bytes, headers: dict[str, str], timeout: float) -> SendResult:
        self.calls.append({"url": url, "body": body, "headers": headers, "timeout": timeout})
        index = min(len(self.calls) - 1, len(self.status_codes) - 1)
        status_code = self.status_codes[index]
        if status_code is None:
            return SendResult(status_code=None, response_ms=3, error="request failed: timed out")
        return SendResult(status_code=status_code, response_ms=3)


@pytest.fixture()
def client(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> TestClient:
    monkeypatch.setenv("DATABASE_URL", sqlite_url(tmp_path / "linkcard.sqlite3"))
    monkeypatch.setenv("AUTH_ENABLED", "false")
    monkeypatch.setenv("WEBHOOK_DISPATCH_ENABLED", "false")
    monkeypatch.setenv("PUBLIC_BASE_URL", "https://cards.example.com")
    app = create_app()
    return TestClient(app)


@pytest.fixture()
def auth_client(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> TestClient:
    monkeypatch.setenv("DATABASE_URL", sqlite_url(tmp_path / "linkcard.sqlite3"))
    monkeypatch.setenv("AUTH_ENABLED", "true")
    monkeypatch.setenv("JWT_SECRET", JWT_SECRET)
    monkeypatch.setenv("WEBHOOK_DISPATCH_ENABLED", "false")
    monkeypatch.setenv("PUBLIC_BASE_URL", "https://cards.example.com")
    app = create_app()
    return TestClient(app)


@pytest.fixture()
def store(tmp_path: Path) -> CardStore:
    return CardStore(Database(sqlite_url(tmp_path / "store.sqlite3")))
