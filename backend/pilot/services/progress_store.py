"""
ProgressStore - per-execution progress timelines with live fan-out

Each tracked operation (a repository setup, an agent sub-task) gets an
execution: an append-only list of {timestamp, message, type} records plus the
callbacks currently watching it. Observers either poll the history or
subscribe; subscribers are called synchronously from append()/complete(), so
callbacks must stay cheap (push onto a queue, never block).

Executions are dropped unconditionally PROGRESS_RETENTION_SECONDS after
creation, completed or not. Expiry is enforced lazily on every access and,
when an event loop is running, eagerly via loop.call_later().
"""

import asyncio
import hashlib
import itertools
import json
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from pilot.core.config import settings
from pilot.core.logging_config import logger


class ProgressSeverity(str, Enum):
    INFO = "info"
    SUCCESS = "success"
    ERROR = "error"


COMPLETED_SUCCESS_MESSAGE = "Completed successfully"
COMPLETED_ERROR_MESSAGE = "Completed with errors"


@dataclass
class ProgressMessage:
    """Single progress record"""
    message: str
    type: ProgressSeverity = ProgressSeverity.INFO
    timestamp: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    def to_dict(self) -> Dict[str, Any]:
        return {
            "timestamp": self.timestamp,
            "message": self.message,
            "type": self.type.value,
        }


ProgressCallback = Callable[[ProgressMessage], None]


@dataclass
class ProgressExecution:
    execution_id: str
    created_at: float
    dedup_key: Optional[str] = None
    messages: List[ProgressMessage] = field(default_factory=list)
    completed: bool = False
    subscribers: Dict[int, ProgressCallback] = field(default_factory=dict)


def _noop() -> None:
    return None


class ProgressStore:
    """
    In-memory progress bus.

    All state is guarded by a single lock; subscriber callbacks always run
    outside it so a callback may safely call back into the store.
    """

    def __init__(
        self,
        retention_seconds: Optional[float] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.retention_seconds = (
            settings.PROGRESS_RETENTION_SECONDS if retention_seconds is None else retention_seconds
        )
        self._clock = clock
        self._lock = threading.Lock()
        self._executions: Dict[str, ProgressExecution] = {}
        self._dedup_index: Dict[str, str] = {}
        self._subscriber_ids = itertools.count(1)

    @staticmethod
    def hash_input(payload: Any) -> str:
        """Stable SHA-256 of a JSON-serialisable input, used as dedup key"""
        encoded = json.dumps(payload, sort_keys=True, default=str).encode("utf-8")
        return hashlib.sha256(encoded).hexdigest()

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def create(self, execution_id: str, dedup_key: Optional[str] = None) -> ProgressExecution:
        """Register a new timeline and schedule its deletion"""
        execution = ProgressExecution(
            execution_id=execution_id,
            created_at=self._clock(),
            dedup_key=dedup_key,
        )
        with self._lock:
            self._purge_expired_locked()
            previous = self._executions.get(execution_id)
            if previous is not None:
                self._drop_locked(previous)
            self._executions[execution_id] = execution
            if dedup_key:
                self._dedup_index[dedup_key] = execution_id

        self._schedule_expiry(execution)
        logger.debug(f"[ProgressStore] Created execution {execution_id}")
        return execution

    def _schedule_expiry(self, execution: ProgressExecution) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            # No loop: lazy purge on access covers expiry
            return
        loop.call_later(self.retention_seconds, self._expire, execution)

    def _expire(self, execution: ProgressExecution) -> None:
        with self._lock:
            # The id may have been reused by a newer execution
            if self._executions.get(execution.execution_id) is execution:
                self._drop_locked(execution)
                logger.debug(f"[ProgressStore] Expired execution {execution.execution_id}")

    def _drop_locked(self, execution: ProgressExecution) -> None:
        self._executions.pop(execution.execution_id, None)
        if execution.dedup_key and self._dedup_index.get(execution.dedup_key) == execution.execution_id:
            del self._dedup_index[execution.dedup_key]

    def _purge_expired_locked(self) -> List[str]:
        now = self._clock()
        expired = [
            e for e in self._executions.values()
            if now - e.created_at >= self.retention_seconds
        ]
        for execution in expired:
            self._drop_locked(execution)
        return [e.execution_id for e in expired]

    def purge_expired(self) -> List[str]:
        with self._lock:
            return self._purge_expired_locked()

    def _get_locked(self, execution_id: str) -> Optional[ProgressExecution]:
        self._purge_expired_locked()
        return self._executions.get(execution_id)

    # ------------------------------------------------------------------
    # Producers
    # ------------------------------------------------------------------

    def append(
        self,
        execution_id: str,
        text: str,
        severity: ProgressSeverity = ProgressSeverity.INFO,
    ) -> bool:
        """
        Append a message and fan it out to subscribers.

        Returns False when nothing was stored: unknown execution, already
        completed, or identical to the previous message.
        """
        severity = ProgressSeverity(severity)
        with self._lock:
            execution = self._get_locked(execution_id)
            if execution is None:
                logger.warning(f"[ProgressStore] append to unknown execution {execution_id}")
                return False
            if execution.completed:
                logger.debug(f"[ProgressStore] Ignoring message for completed execution {execution_id}")
                return False
            message = self._append_locked(execution, text, severity)
            if message is None:
                return False
            subscribers = list(execution.subscribers.values())

        self._notify(execution_id, subscribers, message)
        return True

    def _append_locked(
        self,
        execution: ProgressExecution,
        text: str,
        severity: ProgressSeverity,
    ) -> Optional[ProgressMessage]:
        if execution.messages:
            last = execution.messages[-1]
            if last.message == text and last.type == severity:
                return None
        message = ProgressMessage(message=text, type=severity)
        execution.messages.append(message)
        return message

    def complete(self, execution_id: str, success: bool = True) -> bool:
        """Mark completed and record the terminal message once"""
        with self._lock:
            execution = self._get_locked(execution_id)
            if execution is None:
                logger.warning(f"[ProgressStore] complete on unknown execution {execution_id}")
                return False
            if execution.completed:
                return False
            execution.completed = True
            if success:
                message = self._append_locked(
                    execution, COMPLETED_SUCCESS_MESSAGE, ProgressSeverity.SUCCESS
                )
            else:
                message = self._append_locked(
                    execution, COMPLETED_ERROR_MESSAGE, ProgressSeverity.ERROR
                )
            subscribers = list(execution.subscribers.values())

        if message is not None:
            self._notify(execution_id, subscribers, message)
        logger.info(f"[ProgressStore] Execution {execution_id} completed (success={success})")
        return True

    def _notify(
        self,
        execution_id: str,
        subscribers: List[ProgressCallback],
        message: ProgressMessage,
    ) -> None:
        for callback in subscribers:
            try:
                callback(message)
            except Exception as e:
                logger.error(f"[ProgressStore] Subscriber for {execution_id} failed: {e}")

    # ------------------------------------------------------------------
    # Consumers
    # ------------------------------------------------------------------

    def subscribe(
        self,
        execution_id: str,
        callback: ProgressCallback,
        replay_existing: bool = True,
    ) -> Callable[[], None]:
        """
        Register a callback; optionally deliver the existing history first.

        Returns an unsubscribe function. For an unknown execution the
        returned function does nothing.
        """
        with self._lock:
            execution = self._get_locked(execution_id)
            if execution is None:
                logger.warning(f"[ProgressStore] subscribe to unknown execution {execution_id}")
                return _noop
            token = next(self._subscriber_ids)
            execution.subscribers[token] = callback
            history = list(execution.messages) if replay_existing else []

        for message in history:
            self._notify(execution_id, [callback], message)

        def unsubscribe() -> None:
            with self._lock:
                execution.subscribers.pop(token, None)

        return unsubscribe

    def lookup_by_dedup_key(self, dedup_key: str) -> Optional[str]:
        with self._lock:
            self._purge_expired_locked()
            return self._dedup_index.get(dedup_key)

    def get_messages(self, execution_id: str) -> List[ProgressMessage]:
        with self._lock:
            execution = self._get_locked(execution_id)
            return list(execution.messages) if execution else []

    def is_completed(self, execution_id: str) -> bool:
        with self._lock:
            execution = self._get_locked(execution_id)
            return execution.completed if execution else False

    def exists(self, execution_id: str) -> bool:
        with self._lock:
            return self._get_locked(execution_id) is not None

    def subscriber_count(self, execution_id: str) -> int:
        with self._lock:
            execution = self._get_locked(execution_id)
            return len(execution.subscribers) if execution else 0
