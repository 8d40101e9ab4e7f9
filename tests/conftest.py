import dataclasses

import pytest
from fastapi.testclient import TestClient

from tapgate.audit import AuditLog
from tapgate.config import Settings
from tapgate.handshake import EscalationController, HandshakeConfig
from tapgate.main import create_app
from tapgate.policy import TagPolicy
from tapgate.tokens import now_ms


class FixedClock:
    """Epoch-ms clock that only moves when told to."""

    def __init__(self, t: int):
        self.t = t

    def __call__(self) -> int:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += int(seconds * 1000)


@pytest.fixture
def clock():
    return FixedClock(now_ms())


@pytest.fixture
def config(clock):
    return HandshakeConfig(secret="s1", policy=TagPolicy(["alice", "bob"]), clock=clock)


@pytest.fixture
def controller(config):
    return EscalationController(config)


@pytest.fixture
def settings(tmp_path):
    return Settings(
        SESSION_SECRET="s1",
        ALLOWED_TAGS="alice,bob",
        ALLOWED_TAGS_PATH=tmp_path / "missing.json",
        AUDIT_DIR=tmp_path / "audit",
        ORIGIN="https://frame.example.com",
    )


@pytest.fixture
def audit(settings):
    return AuditLog(settings.AUDIT_DIR)


@pytest.fixture
def client(settings, clock, audit):
    cfg = dataclasses.replace(HandshakeConfig.from_settings(settings), clock=clock)
    app = create_app(settings, EscalationController(cfg), audit)
    return TestClient(app)
