import threading
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Optional

from models import utcnow


class WalkerState(str, Enum):
    STARTING = "starting"
    SYNCING = "syncing"
    STALLED = "stalled"
    FAILED = "failed"
    STOPPED = "stopped"


@dataclass(frozen=True)
class SyncStatusSnapshot:
    state: WalkerState
    last_synced_slot: Optional[int]
    epoch: Optional[int]
    last_error: Optional[str]
    last_error_slot: Optional[int]
    consecutive_failures: int
    updated_at: datetime

    def as_dict(self) -> dict:
        return {
            "state": self.state.value,
            "last_synced_slot": self.last_synced_slot,
            "epoch": self.epoch,
            "last_error": self.last_error,
            "last_error_slot": self.last_error_slot,
            "consecutive_failures": self.consecutive_failures,
            "updated_at": self.updated_at,
        }


class SyncStatus:
    """
    Ingestion progress shared between the walker thread and the API.
    The lock is held only to copy fields.
    """

    def __init__(self):
        self._lock = threading.Lock()
        self._state = WalkerState.STARTING
        self._last_synced_slot: Optional[int] = None
        self._epoch: Optional[int] = None
        self._last_error: Optional[str] = None
        self._last_error_slot: Optional[int] = None
        self._consecutive_failures = 0
        self._updated_at = utcnow()

    def mark_running(self, last_synced_slot: Optional[int] = None, epoch: Optional[int] = None) -> None:
        with self._lock:
            self._state = WalkerState.SYNCING
            if last_synced_slot is not None:
                self._last_synced_slot = last_synced_slot
            if epoch is not None:
                self._epoch = epoch
            self._updated_at = utcnow()

    def record_commit(self, slot: int, epoch: int) -> None:
        with self._lock:
            self._state = WalkerState.SYNCING
            if self._last_synced_slot is None or slot > self._last_synced_slot:
                self._last_synced_slot = slot
                self._epoch = epoch
            self._consecutive_failures = 0
            self._updated_at = utcnow()

    def record_error(self, slot: Optional[int], error: BaseException) -> None:
        """
        A slot could not be fetched or committed; the walker will retry it.
        last_error is kept after recovery so the API can still show it.
        """
        with self._lock:
            self._state = WalkerState.STALLED
            self._last_error = f"{type(error).__name__}: {error}"
            self._last_error_slot = slot
            self._consecutive_failures += 1
            self._updated_at = utcnow()

    def record_fatal(self, slot: Optional[int], error: BaseException) -> None:
        with self._lock:
            self._state = WalkerState.FAILED
            self._last_error = f"{type(error).__name__}: {error}"
            self._last_error_slot = slot
            self._updated_at = utcnow()

    def mark_stopped(self) -> None:
        with self._lock:
            # Keep FAILED visible after the thread exits.
            if self._state != WalkerState.FAILED:
                self._state = WalkerState.STOPPED
            self._updated_at = utcnow()

    def snapshot(self) -> SyncStatusSnapshot:
        with self._lock:
            return SyncStatusSnapshot(
                state=self._state,
                last_synced_slot=self._last_synced_slot,
                epoch=self._epoch,
                last_error=self._last_error,
                last_error_slot=self._last_error_slot,
                consecutive_failures=self._consecutive_failures,
                updated_at=self._updated_at,
            )
