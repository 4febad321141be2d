"""
In-memory registry of verified MFA sessions.

The registry is the only source of truth for "this user completed MFA".
Nothing outside it (client-side flags, cached booleans, cookies from
another device) can create, extend or revive a session.

Sessions live for the lifetime of the process and are never persisted.
An expired entry is inert: lookups treat it as absent and evict it.
"""
import logging
import secrets
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional, Set

logger = logging.getLogger(__name__)

# 32 random bytes -> 64 hex chars (256 bits)
SESSION_TOKEN_BYTES = 32


@dataclass(frozen=True)
class MFASession:
    """A server-held proof that a user completed second-factor verification."""
    session_token: str
    user_id: str
    verified_at: datetime
    expires_at: datetime
    ttl_seconds: int
    phi_access_enabled: bool = False

    def is_valid(self, now: datetime) -> bool:
        return now <= self.expires_at


class SessionRegistry:
    """
    Process-wide table of MFA sessions keyed by token, indexed by user.

    Construct once and pass the instance to every caller; tests build
    independent registries with their own clock.

    Example usage:
        registry = SessionRegistry(ttl=timedelta(minutes=15))
        session = registry.create_session(user_id)
        registry.lookup(user_id)              # -> MFASession
        registry.invalidate(session.session_token)
        registry.lookup(user_id)              # -> None
    """

    def __init__(
        self,
        ttl: timedelta = timedelta(minutes=15),
        phi_ttl: timedelta = timedelta(minutes=5),
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.ttl = ttl
        self.phi_ttl = phi_ttl
        self._clock = clock or (lambda: datetime.now(timezone.utc))
        self._lock = threading.Lock()
        self._sessions: Dict[str, MFASession] = {}
        self._user_sessions: Dict[str, Set[str]] = {}

    def now(self) -> datetime:
        return self._clock()

    # ==========================================
    # Internal helpers (caller holds self._lock)
    # ==========================================

    def _remove(self, session_token: str) -> Optional[MFASession]:
        session = self._sessions.pop(session_token, None)
        if session is None:
            return None
        tokens = self._user_sessions.get(session.user_id)
        if tokens is not None:
            tokens.discard(session_token)
            if not tokens:
                del self._user_sessions[session.user_id]
        return session

    def _live(self, session_token: str, now: datetime) -> Optional[MFASession]:
        session = self._sessions.get(session_token)
        if session is None:
            return None
        if not session.is_valid(now):
            self._remove(session_token)
            logger.debug(f"Evicted expired MFA session for user {session.user_id}")
            return None
        return session

    # ==========================================
    # Public API
    # ==========================================

    def create_session(self, user_id: str, phi_access: bool = False) -> MFASession:
        """
        Issue a new session. Call only after a successful verification.

        Args:
            user_id: Verified user.
            phi_access: Grant the narrower PHI scope (shorter TTL).

        Returns:
            The new MFASession.
        """
        if not user_id:
            raise ValueError("user_id is required")

        ttl = self.phi_ttl if phi_access else self.ttl
        now = self._clock()
        session = MFASession(
            session_token=secrets.token_hex(SESSION_TOKEN_BYTES),
            user_id=user_id,
            verified_at=now,
            expires_at=now + ttl,
            ttl_seconds=int(ttl.total_seconds()),
            phi_access_enabled=phi_access,
        )

        with self._lock:
            self._sessions[session.session_token] = session
            self._user_sessions.setdefault(user_id, set()).add(session.session_token)

        logger.debug(f"Created MFA session for user {user_id}, expires {session.expires_at}")
        return session

    def lookup(self, user_id: str) -> Optional[MFASession]:
        """
        Get the user's most recently verified live session.

        Expired entries found on the way are evicted.

        Returns:
            MFASession, or None if the user has no live session.
        """
        now = self._clock()
        with self._lock:
            tokens = list(self._user_sessions.get(user_id, ()))
            live = [s for s in (self._live(t, now) for t in tokens) if s is not None]

        if not live:
            return None
        return max(live, key=lambda s: s.verified_at)

    def get(self, session_token: str) -> Optional[MFASession]:
        """Get a live session by token, or None if unknown or expired."""
        if not session_token:
            return None
        with self._lock:
            return self._live(session_token, self._clock())

    def extend(self, session_token: str) -> Optional[MFASession]:
        """
        Sliding expiration: push expires_at to now + the session's TTL.

        An expired or unknown token is never revived.

        Returns:
            The refreshed session, or None.
        """
        now = self._clock()
        with self._lock:
            session = self._live(session_token, now)
            if session is None:
                return None
            refreshed = replace(session, expires_at=now + timedelta(seconds=session.ttl_seconds))
            self._sessions[session_token] = refreshed
            return refreshed

    def invalidate(self, session_token: str) -> Optional[MFASession]:
        """
        Remove a session immediately. Idempotent.

        Returns:
            The removed session, or None if it was already gone.
        """
        with self._lock:
            return self._remove(session_token)

    def invalidate_user(self, user_id: str) -> List[MFASession]:
        """
        Remove every session of a user (disable, logout everywhere, admin action).

        Returns:
            The removed sessions.
        """
        with self._lock:
            tokens = list(self._user_sessions.get(user_id, ()))
            removed = [self._remove(t) for t in tokens]

        removed = [s for s in removed if s is not None]
        if removed:
            logger.info(f"Invalidated {len(removed)} MFA sessions for user {user_id}")
        return removed

    def sweep_expired(self) -> int:
        """
        Purge every expired session.

        Returns:
            Number of sessions removed.
        """
        now = self._clock()
        with self._lock:
            expired = [t for t, s in self._sessions.items() if not s.is_valid(now)]
            for token in expired:
                self._remove(token)

        if expired:
            logger.debug(f"Swept {len(expired)} expired MFA sessions")
        return len(expired)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)


class SessionSweeper:
    """
    Daemon thread that calls SessionRegistry.sweep_expired() periodically.

    Lookups already evict lazily; the sweeper only bounds memory held by
    sessions nobody looks up again.
    """

    def __init__(self, registry: SessionRegistry, interval_seconds: float = 60):
        self.registry = registry
        self.interval_seconds = interval_seconds
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def start(self) -> None:
        if self._thread is not None and self._thread.is_alive():
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._run, name="mfa-session-sweeper", daemon=True)
        self._thread.start()
        logger.info(f"MFA session sweeper started (every {self.interval_seconds}s)")

    def stop(self, timeout: float = 5) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None

    def _run(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                self.registry.sweep_expired()
            except Exception as e:
                logger.error(f"MFA session sweep failed: {e}", exc_info=True)
