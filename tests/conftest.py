"""
Pytest configuration and shared fixtures for CareXPS MFA tests.

This module provides common test fixtures for:
- A controllable clock
- A SQLite-backed credential store under tmp_path
- Session registry and MFA service wired with fast bcrypt
- Mock Redis client and recording audit sink
"""
import pytest
from datetime import datetime, timedelta, timezone
from pathlib import Path

from cryptography.fernet import Fernet

# Add project root to Python path for imports
import sys
sys.path.insert(0, str(Path(__file__).parent.parent))

from src.auth import totp
from src.auth.config import MFASettings
from src.auth.service import MFAService
from src.auth.sessions import SessionRegistry
from src.database.mfa_store import MFAStore
from src.security.audit import AuditSink
from src.security.encryption import SecretEncryptor


# ============================================
# Clock Fixtures
# ============================================

class FakeClock:
    """Manually advanced UTC clock."""

    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, seconds: float = 0, minutes: float = 0) -> datetime:
        self.current = self.current + timedelta(seconds=seconds, minutes=minutes)
        return self.current


@pytest.fixture
def clock():
    """Clock starting at a fixed instant, mid TOTP step."""
    return FakeClock(datetime(2026, 3, 2, 9, 0, 10, tzinfo=timezone.utc))


# ============================================
# Database Fixtures
# ============================================

@pytest.fixture
def encryption_key():
    return Fernet.generate_key().decode()


@pytest.fixture
def store(tmp_path, encryption_key):
    """
    Provide a SQLite credential store in a temporary directory.
    Automatically cleaned up after test completes.
    """
    db_path = tmp_path / "mfa.db"
    mfa_store = MFAStore(f"sqlite:///{db_path}", encryptor=SecretEncryptor(encryption_key))
    mfa_store.init_schema()
    yield mfa_store
    mfa_store.engine.dispose()


# ============================================
# Service Fixtures
# ============================================

class RecordingAuditSink(AuditSink):
    """Keeps audit events in memory for assertions."""

    def __init__(self):
        self.events = []

    def record(self, event, user_id, success, metadata):
        self.events.append((event, user_id, success, metadata))

    def of(self, event):
        return [e for e in self.events if e[0] == event]


@pytest.fixture
def audit_sink():
    return RecordingAuditSink()


@pytest.fixture
def settings():
    """Default policy with cheap bcrypt and no background sweeper."""
    return MFASettings(backup_code_rounds=4, sweep_interval_seconds=0)


@pytest.fixture
def registry(clock):
    return SessionRegistry(clock=clock)


@pytest.fixture
def service(store, registry, settings, audit_sink, clock):
    return MFAService(store, registry, settings=settings, audit=audit_sink, clock=clock)


@pytest.fixture
def enroll(service):
    """Start enrollment for a user and return the Enrollment."""
    def _enroll(user_id="user-1", label="nurse@clinic.ca"):
        return service.generate_secret(user_id, label)
    return _enroll


@pytest.fixture
def activate(service, enroll, clock):
    """Enroll and verify a user; returns (enrollment, verification_result)."""
    def _activate(user_id="user-1", label="nurse@clinic.ca", phi_access=False):
        enrollment = enroll(user_id, label)
        result = service.verify_code(user_id, totp.code_at(enrollment.secret, clock()), phi_access=phi_access)
        assert result.success
        return enrollment, result
    return _activate


def wrong_code(secret: str, at: datetime) -> str:
    """A 6-digit code that is not valid anywhere in the verification window."""
    valid = {totp.code_at(secret, at + timedelta(seconds=offset)) for offset in (-30, 0, 30)}
    candidate = 0
    while f"{candidate:06d}" in valid:
        candidate += 1
    return f"{candidate:06d}"


# ============================================
# Redis Fixtures
# ============================================

@pytest.fixture
def mock_redis_client():
    """
    Mock Redis client for testing attempt counters.
    Implements get/incr/expire/ttl/delete and pipelines with an in-memory store.
    """
    class MockPipeline:
        def __init__(self, client):
            self.client = client
            self.ops = []

        def incr(self, key):
            self.ops.append(("incr", key))
            return self

        def expire(self, key, seconds):
            self.ops.append(("expire", key, seconds))
            return self

        def ttl(self, key):
            self.ops.append(("ttl", key))
            return self

        def execute(self):
            results = []
            for op in self.ops:
                if op[0] == "incr":
                    results.append(self.client.incr(op[1]))
                elif op[0] == "ttl":
                    results.append(self.client.ttl(op[1]))
                else:
                    results.append(self.client.expire(op[1], op[2]))
            self.ops = []
            return results

    class MockRedisClient:
        def __init__(self):
            self.store = {}
            self.expiry = {}
            self.expire_calls = []

        def get(self, key):
            return self.store.get(key)

        def delete(self, key):
            if key in self.store:
                del self.store[key]
            if key in self.expiry:
                del self.expiry[key]
            return True

        def incr(self, key):
            if key not in self.store:
                self.store[key] = 0
            self.store[key] = int(self.store[key]) + 1
            return self.store[key]

        def expire(self, key, seconds):
            self.expiry[key] = seconds
            self.expire_calls.append((key, seconds))
            return True

        def ttl(self, key):
            if key not in self.store:
                return -2
            return self.expiry.get(key, -1)

        def pipeline(self):
            return MockPipeline(self)

        def ping(self):
            return True

    return MockRedisClient()
