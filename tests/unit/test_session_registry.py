from datetime import datetime, timezone, timedelta

import pytest

from threadgenie.core.exceptions import OperationRejectedError, SessionNotFoundError
from threadgenie.modules.session.models import EditSession, ProcessingStatus
from threadgenie.modules.session.registry import SessionRegistry
from tests.factories import FakeGenerativeClient


def new_session(session_id: str) -> EditSession:
    return EditSession(FakeGenerativeClient(), session_id=session_id)


def test_add_get_remove():
    registry = SessionRegistry(ttl_seconds=60, max_sessions=10)
    session = registry.add(new_session("a"))

    assert "a" in registry
    assert len(registry) == 1
    assert registry.get("a") is session

    registry.remove("a")
    assert "a" not in registry
    with pytest.raises(SessionNotFoundError):
        registry.get("a")
    with pytest.raises(SessionNotFoundError):
        registry.remove("a")


def test_full_registry_evicts_least_recently_used():
    registry = SessionRegistry(ttl_seconds=60, max_sessions=2)
    registry.add(new_session("a"))
    registry.add(new_session("b"))
    registry.get("a")

    registry.add(new_session("c"))

    assert "b" not in registry
    assert "a" in registry and "c" in registry


def test_eviction_skips_busy_sessions():
    registry = SessionRegistry(ttl_seconds=60, max_sessions=2)
    busy = registry.add(new_session("a"))
    busy.status = ProcessingStatus.PROCESSING
    registry.add(new_session("b"))

    registry.add(new_session("c"))

    assert "a" in registry
    assert "b" not in registry


def test_full_registry_of_busy_sessions_rejects_new_ones():
    registry = SessionRegistry(ttl_seconds=60, max_sessions=1)
    registry.add(new_session("a")).status = ProcessingStatus.UPSCALING

    with pytest.raises(OperationRejectedError):
        registry.add(new_session("b"))
    assert len(registry) == 1


def test_purge_expired_keeps_recent_and_busy_sessions():
    # Arrange
    registry = SessionRegistry(ttl_seconds=60, max_sessions=10)
    registry.add(new_session("idle"))
    registry.add(new_session("busy")).status = ProcessingStatus.PROCESSING
    later = datetime.now(timezone.utc) + timedelta(seconds=120)

    # Act
    expired = registry.purge_expired(now=later)

    # Assert
    assert expired == ["idle"]
    assert "busy" in registry
    assert registry.purge_expired() == []
