"""Unit tests for the login audit writer."""
import threading
from datetime import datetime, timedelta, timezone

from authservice.core.audit import AuditDispatcher, AuditLogWriter, InlineDispatcher
from authservice.store import AuditEventType, IdentityStore

from conftest import audit_events as _events, naive_utc


def _user(session_factory, user_id):
    store = IdentityStore(session_factory())
    try:
        return store.get_user(user_id)
    finally:
        store.close()


def test_record_links_user_by_external_id(audit_writer, make_user, session_factory):
    user = make_user(external_id="sub-a", email="a@example.com")

    assert audit_writer.record("sub-a", "other@example.com", AuditEventType.LOGIN, "10.0.0.1", "pytest") is True

    [event] = _events(session_factory)
    assert event.user_id == user.id
    assert event.email == "other@example.com"
    assert event.ip_address == "10.0.0.1"
    assert event.user_agent == "pytest"


def test_record_falls_back_to_email(audit_writer, make_user, session_factory):
    user = make_user(external_id="sub-b", email="b@example.com")

    audit_writer.record("unknown-sub", "b@example.com", AuditEventType.LOGOUT)

    [event] = _events(session_factory)
    assert event.user_id == user.id


def test_record_unlinked_event_for_unknown_user(audit_writer, session_factory):
    assert audit_writer.record("ghost", "ghost@example.com", AuditEventType.LOGIN, success=False,
                               failure_reason="NOT_IN_ALLOWED_GROUP") is True

    [event] = _events(session_factory)
    assert event.user_id is None
    assert event.success is False
    assert event.failure_reason == "NOT_IN_ALLOWED_GROUP"


def test_successful_login_updates_last_login(audit_writer, make_user, session_factory):
    user = make_user(external_id="sub-c")
    when = datetime(2026, 3, 1, 8, 30, tzinfo=timezone.utc)

    audit_writer.record("sub-c", user.email, AuditEventType.MOBILE_LOGIN, event_time=when)

    assert naive_utc(_user(session_factory, user.id).last_login_at) == naive_utc(when)


def test_failed_login_and_logout_do_not_touch_last_login(audit_writer, make_user, session_factory):
    user = make_user(external_id="sub-d")

    audit_writer.record("sub-d", user.email, AuditEventType.LOGIN, success=False, failure_reason="x")
    audit_writer.record("sub-d", user.email, AuditEventType.LOGOUT)

    assert _user(session_factory, user.id).last_login_at is None


def test_event_time_is_kept_as_given(audit_writer, session_factory):
    late = datetime(2026, 1, 1, 10, 0, 5, tzinfo=timezone.utc)
    early = datetime(2026, 1, 1, 10, 0, 0, tzinfo=timezone.utc)

    # Persisted in reverse order of occurrence
    audit_writer.record("s", "s@example.com", AuditEventType.LOGOUT, event_time=late)
    audit_writer.record("s", "s@example.com", AuditEventType.LOGIN, event_time=early)

    events = _events(session_factory)
    assert [event.event_type for event in events] == ["LOGIN", "LOGOUT"]
    assert naive_utc(events[0].event_time) == naive_utc(early)


def test_record_never_raises_when_storage_fails(caplog):
    def broken_factory():
        raise RuntimeError("database down")

    writer = AuditLogWriter(broken_factory, InlineDispatcher())

    assert writer.record("s", "s@example.com", AuditEventType.LOGIN) is False
    assert "Failed to save LOGIN audit for s@example.com" in caplog.text


def test_record_never_raises_when_commit_fails(session_factory, monkeypatch):
    def factory():
        session = session_factory()

        def failing_commit():
            raise RuntimeError("disk full")

        monkeypatch.setattr(session, "commit", failing_commit)
        return session

    writer = AuditLogWriter(factory, InlineDispatcher())
    assert writer.record("s", "s@example.com", AuditEventType.LOGIN) is False
    assert _events(session_factory) == []


def test_submit_runs_on_worker_pool(session_factory):
    dispatcher = AuditDispatcher(max_workers=2, max_pending=10)
    writer = AuditLogWriter(session_factory, dispatcher)
    try:
        for i in range(5):
            assert writer.submit(f"s{i}", f"s{i}@example.com", AuditEventType.LOGIN) is True
        assert writer.flush(timeout=10) is True
    finally:
        dispatcher.shutdown()

    assert len(_events(session_factory)) == 5


def test_submit_never_raises_when_dispatcher_fails(session_factory):
    class BrokenDispatcher:
        def submit(self, fn, *args, **kwargs):
            raise RuntimeError("no threads")

    writer = AuditLogWriter(session_factory, BrokenDispatcher())
    assert writer.submit("s", "s@example.com", AuditEventType.LOGIN) is False


def test_dispatcher_drops_when_saturated():
    dispatcher = AuditDispatcher(max_workers=1, max_pending=1)
    release = threading.Event()
    try:
        assert dispatcher.submit(release.wait, 5) is True
        # Bound reached: rejected immediately, not queued
        assert dispatcher.submit(lambda: None) is False
        assert dispatcher.dropped == 1
        release.set()
        assert dispatcher.flush(timeout=5) is True
        assert dispatcher.submit(lambda: None) is True
        assert dispatcher.flush(timeout=5) is True
    finally:
        release.set()
        dispatcher.shutdown()


def test_dispatcher_rejects_after_shutdown():
    dispatcher = AuditDispatcher(max_workers=1, max_pending=5)
    dispatcher.shutdown()
    assert dispatcher.submit(lambda: None) is False


def test_log_logout_records_success_event(audit_writer, session_factory):
    before = datetime.now(timezone.utc) - timedelta(seconds=1)
    audit_writer.log_logout("sub-x", "x@example.com", "127.0.0.1", "pytest")

    [event] = _events(session_factory)
    assert event.event_type == AuditEventType.LOGOUT
    assert event.success is True
    assert naive_utc(event.event_time) >= naive_utc(before)
