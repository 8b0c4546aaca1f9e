"""Audit Log Writer: best-effort persistence of security events.

``record`` is the fire-and-forget primitive: it never raises, whatever
happens to user resolution or storage. ``submit`` hands ``record`` to a
bounded worker pool so the triggering request can answer its client without
waiting for the write.

Delivery semantics: at most one attempt per event. There is no retry queue;
an event dropped because the pool is saturated, or lost to a storage
failure, is logged and gone.
"""
from __future__ import annotations

import logging
import threading
from concurrent.futures import Future, ThreadPoolExecutor, wait
from datetime import datetime
from typing import Callable, Optional

from sqlalchemy.orm import Session

from authservice.core.exceptions import AuditWriteError
from authservice.store.identity_store import IdentityStore
from authservice.store.models import AuditEvent, AuditEventType, User, utcnow

logger = logging.getLogger(__name__)


class AuditDispatcher:
    """Bounded thread pool for audit writes.

    At most ``max_pending`` writes may be queued or running; submissions
    beyond that are rejected immediately rather than blocking the caller.
    """

    def __init__(self, max_workers: int = 2, max_pending: int = 1000):
        self._executor = ThreadPoolExecutor(max_workers=max(1, max_workers), thread_name_prefix="audit")
        self._slots = threading.BoundedSemaphore(max(1, max_pending))
        self._pending: set[Future] = set()
        self._lock = threading.Lock()
        self.dropped = 0

    def submit(self, fn: Callable, *args, **kwargs) -> bool:
        """Schedule ``fn``; return False if the pool is saturated or shut down."""
        if not self._slots.acquire(blocking=False):
            with self._lock:
                self.dropped += 1
            logger.error("Audit dispatcher saturated; dropping audit write")
            return False

        try:
            future = self._executor.submit(self._run, fn, args, kwargs)
        except RuntimeError as exc:
            self._slots.release()
            logger.error("Audit dispatcher unavailable; dropping audit write: %s", exc)
            return False

        with self._lock:
            self._pending.add(future)
        future.add_done_callback(self._on_done)
        return True

    def _run(self, fn: Callable, args: tuple, kwargs: dict):
        # Slot frees before the future resolves
        try:
            return fn(*args, **kwargs)
        finally:
            self._slots.release()

    def _on_done(self, future: Future) -> None:
        with self._lock:
            self._pending.discard(future)

    def flush(self, timeout: Optional[float] = None) -> bool:
        """Wait for queued writes; True when nothing is left in flight."""
        with self._lock:
            snapshot = set(self._pending)
        if not snapshot:
            return True
        _, not_done = wait(snapshot, timeout=timeout)
        return not not_done

    def shutdown(self, wait_for_pending: bool = True) -> None:
        self._executor.shutdown(wait=wait_for_pending)


class InlineDispatcher:
    """Runs audit writes on the calling thread (CLI scripts, tests)."""

    dropped = 0

    def submit(self, fn: Callable, *args, **kwargs) -> bool:
        fn(*args, **kwargs)
        return True

    def flush(self, timeout: Optional[float] = None) -> bool:
        return True

    def shutdown(self, wait_for_pending: bool = True) -> None:
        return None


class AuditLogWriter:
    """Appends authentication events to the login audit trail."""

    def __init__(self, session_factory: Callable[[], Session], dispatcher=None):
        """Initialize audit writer.

        Args:
            session_factory: Creates a fresh session per write; writes never
                share the caller's transaction
            dispatcher: Pool used by ``submit`` (defaults to a small ``AuditDispatcher``)
        """
        self.session_factory = session_factory
        self.dispatcher = dispatcher or AuditDispatcher()

    def record(
        self,
        external_id: Optional[str],
        email: Optional[str],
        event_type: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        success: bool = True,
        failure_reason: Optional[str] = None,
        event_time: Optional[datetime] = None,
    ) -> bool:
        """Persist one event; never raises.

        Returns:
            True if the event was stored, False if persistence failed
        """
        event_time = event_time or utcnow()
        session = None
        try:
            session = self.session_factory()
            store = IdentityStore(session)

            user = self._resolve_user(store, external_id, email)
            if user is None:
                logger.warning("No user found for external_id: %s or email: %s", external_id, email)
            elif success and event_type in AuditEventType.AUTHENTICATION:
                user.last_login_at = event_time

            event = store.append_audit_event(AuditEvent(
                user_id=user.id if user is not None else None,
                external_id=external_id,
                email=email,
                event_type=event_type,
                ip_address=ip_address[:45] if ip_address else None,
                user_agent=user_agent,
                success=bool(success),
                failure_reason=failure_reason,
                event_time=event_time,
            ))
            session.commit()
            logger.info("Persisted %s audit for user: %s with ID: %s", event_type, email, event.id)
            return True
        except Exception as exc:
            logger.error("%s", AuditWriteError(event_type, email, exc), exc_info=True)
            if session is not None:
                try:
                    session.rollback()
                except Exception as rollback_exc:
                    logger.debug("Audit rollback failed: %s", rollback_exc)
            return False
        finally:
            if session is not None:
                try:
                    session.close()
                except Exception as close_exc:
                    logger.debug("Audit session close failed: %s", close_exc)

    @staticmethod
    def _resolve_user(store: IdentityStore, external_id: Optional[str], email: Optional[str]) -> Optional[User]:
        """Weak user link: by external id, then by email. Lookup failures mean "unlinked"."""
        for lookup, value in ((store.find_user_by_external_id, external_id), (store.find_user_by_email, email)):
            if not value:
                continue
            try:
                user = lookup(value)
            except Exception as exc:
                logger.debug("Audit user lookup failed for %s: %s", value, exc)
                store.session.rollback()
                continue
            if user is not None:
                return user
        return None

    def submit(
        self,
        external_id: Optional[str],
        email: Optional[str],
        event_type: str,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
        success: bool = True,
        failure_reason: Optional[str] = None,
        event_time: Optional[datetime] = None,
    ) -> bool:
        """Dispatch ``record`` off the caller's thread; never raises.

        ``event_time`` should be captured by the caller at the point of
        decision so events sort correctly even when persisted out of order.
        """
        event_time = event_time or utcnow()
        try:
            return self.dispatcher.submit(
                self.record,
                external_id,
                email,
                event_type,
                ip_address,
                user_agent,
                success,
                failure_reason,
                event_time,
            )
        except Exception as exc:
            logger.error("Failed to dispatch %s audit for %s: %s", event_type, email, exc)
            return False

    def log_logout(
        self,
        external_id: Optional[str],
        email: Optional[str],
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> bool:
        return self.submit(external_id, email, AuditEventType.LOGOUT, ip_address, user_agent, True, None, utcnow())

    def flush(self, timeout: Optional[float] = None) -> bool:
        return self.dispatcher.flush(timeout)
