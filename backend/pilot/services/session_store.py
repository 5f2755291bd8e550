"""
Session registry - authoritative in-memory record of every sandbox session.

Build status follows a small state machine:

    idle → cloning → building → running
      └────────┴──────────┴────────┴──→ failed

Re-applying the current status is a no-op; anything else outside the table
raises InvalidStateTransitionError. Every read through get_session() and
every mutation refreshes last_activity, which drives reclamation.
"""

import itertools
import threading
from dataclasses import dataclass, field, fields, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Set, Union

from pilot.core.config import settings
from pilot.core.exceptions import (
    InvalidStateTransitionError,
    SessionNotFoundError,
    ValidationError,
)
from pilot.core.logging_config import logger


class BuildStatus(str, Enum):
    IDLE = "idle"
    CLONING = "cloning"
    BUILDING = "building"
    RUNNING = "running"
    FAILED = "failed"


BUILD_STATUS_TRANSITIONS: Dict[BuildStatus, Set[BuildStatus]] = {
    BuildStatus.IDLE: {BuildStatus.CLONING, BuildStatus.FAILED},
    BuildStatus.CLONING: {BuildStatus.BUILDING, BuildStatus.FAILED},
    BuildStatus.BUILDING: {BuildStatus.RUNNING, BuildStatus.FAILED},
    BuildStatus.RUNNING: {BuildStatus.FAILED},
    BuildStatus.FAILED: set(),
}


def can_transition(current: BuildStatus, requested: BuildStatus) -> bool:
    return current == requested or requested in BUILD_STATUS_TRANSITIONS[current]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class SessionData:
    """One sandbox session as seen by the outside world"""
    session_id: str
    container_id: Optional[str] = None
    repo_url: Optional[str] = None
    repo_name: Optional[str] = None
    framework: Optional[str] = None
    preview_port: Optional[int] = None
    build_status: BuildStatus = BuildStatus.IDLE
    preview_ready: bool = False
    picker_injected: bool = False
    error: Optional[str] = None
    created_at: datetime = field(default_factory=_utcnow)
    last_activity: datetime = field(default_factory=_utcnow)

    def to_status_dict(self) -> Dict[str, Any]:
        return {
            "sessionId": self.session_id,
            "buildStatus": self.build_status.value,
            "previewReady": self.preview_ready,
            "repoName": self.repo_name,
            "framework": self.framework,
        }

    def to_dict(self) -> Dict[str, Any]:
        return {
            **self.to_status_dict(),
            "containerId": self.container_id,
            "repoUrl": self.repo_url,
            "previewPort": self.preview_port,
            "pickerInjected": self.picker_injected,
            "error": self.error,
            "createdAt": self.created_at.isoformat(),
            "lastActivity": self.last_activity.isoformat(),
        }


# Fields callers may never overwrite through update_session()
_IMMUTABLE_FIELDS = {"session_id", "created_at", "last_activity"}
_UPDATABLE_FIELDS = {f.name for f in fields(SessionData)} - _IMMUTABLE_FIELDS

SessionCallback = Callable[[SessionData], None]


class SessionStore:
    """Thread-safe session map with per-session subscribers"""

    def __init__(
        self,
        max_inactivity_seconds: Optional[float] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.max_inactivity_seconds = (
            settings.SESSION_MAX_INACTIVITY_SECONDS
            if max_inactivity_seconds is None else max_inactivity_seconds
        )
        self._clock = clock
        self._lock = threading.Lock()
        self._sessions: Dict[str, SessionData] = {}
        self._subscribers: Dict[str, Dict[int, SessionCallback]] = {}
        self._subscriber_ids = itertools.count(1)

    def create_session(self, session_id: str, container_id: Optional[str] = None) -> SessionData:
        now = self._clock()
        session = SessionData(
            session_id=session_id,
            container_id=container_id,
            created_at=now,
            last_activity=now,
        )
        with self._lock:
            if session_id in self._sessions:
                raise ValidationError(f"Session already exists: {session_id}", field="session_id")
            self._sessions[session_id] = session
            snapshot = replace(session)
        logger.log_session_event(session_id, "created", status=session.build_status.value)
        return snapshot

    def get_session(self, session_id: str) -> Optional[SessionData]:
        """Return a snapshot of the session and refresh its activity timestamp"""
        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                return None
            session.last_activity = self._clock()
            return replace(session)

    def peek_session(self, session_id: str) -> Optional[SessionData]:
        """Read without counting as activity"""
        with self._lock:
            session = self._sessions.get(session_id)
            return replace(session) if session else None

    def update_session(self, session_id: str, /, **changes: Any) -> SessionData:
        unknown = set(changes) - _UPDATABLE_FIELDS
        if unknown:
            raise ValidationError(f"Cannot update session fields: {', '.join(sorted(unknown))}")

        with self._lock:
            session = self._sessions.get(session_id)
            if session is None:
                logger.warning(f"[SessionStore] update for unknown session {session_id}")
                raise SessionNotFoundError(session_id)

            previous_status = session.build_status
            if "build_status" in changes:
                requested = BuildStatus(changes["build_status"])
                if not can_transition(previous_status, requested):
                    raise InvalidStateTransitionError(
                        session_id, previous_status.value, requested.value
                    )
                changes["build_status"] = requested

            for name, value in changes.items():
                setattr(session, name, value)
            session.last_activity = self._clock()
            snapshot = replace(session)
            callbacks = list(self._subscribers.get(session_id, {}).values())

        if snapshot.build_status != previous_status:
            logger.log_session_event(session_id, "status changed",
                                     status=snapshot.build_status.value,
                                     previous_status=previous_status.value)

        for callback in callbacks:
            try:
                callback(snapshot)
            except Exception as e:
                logger.error(f"[SessionStore] Subscriber for {session_id} failed: {e}")

        return snapshot

    def delete_session(self, session_id: str) -> bool:
        with self._lock:
            removed = self._sessions.pop(session_id, None)
            self._subscribers.pop(session_id, None)
        if removed is not None:
            logger.log_session_event(session_id, "deleted")
        return removed is not None

    def list_all(self) -> List[SessionData]:
        with self._lock:
            return [replace(s) for s in self._sessions.values()]

    def subscribe(self, session_id: str, callback: SessionCallback) -> Callable[[], None]:
        """Watch one session's updates; returns an unsubscribe function"""
        with self._lock:
            token = next(self._subscriber_ids)
            self._subscribers.setdefault(session_id, {})[token] = callback

        def unsubscribe() -> None:
            with self._lock:
                watchers = self._subscribers.get(session_id)
                if watchers:
                    watchers.pop(token, None)

        return unsubscribe

    def pop_stale(
        self,
        max_inactivity: Union[None, float, timedelta] = None,
    ) -> List[SessionData]:
        """Remove and return every session idle for longer than max_inactivity"""
        if max_inactivity is None:
            max_inactivity = self.max_inactivity_seconds
        if not isinstance(max_inactivity, timedelta):
            max_inactivity = timedelta(seconds=max_inactivity)

        cutoff = self._clock() - max_inactivity
        with self._lock:
            stale = [s for s in self._sessions.values() if s.last_activity < cutoff]
            for session in stale:
                del self._sessions[session.session_id]
                self._subscribers.pop(session.session_id, None)

        for session in stale:
            logger.log_session_event(session.session_id, "swept after inactivity",
                                     status=session.build_status.value)
        return stale

    def sweep_stale(self, max_inactivity: Union[None, float, timedelta] = None) -> List[str]:
        return [s.session_id for s in self.pop_stale(max_inactivity)]

    def used_ports(self) -> Set[int]:
        with self._lock:
            return {s.preview_port for s in self._sessions.values() if s.preview_port is not None}

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)
