"""Download session state and change notifications.

This module provides:
- DownloadState: Immutable snapshot of a download session
- StateTracker: Lock-protected current state with subscriber notification

Snapshots are published to subscribers after every change. The tracker is
written by the download loop and by control calls from other threads.
"""

from __future__ import annotations

import logging
import threading
from collections import deque
from collections.abc import Callable
from dataclasses import asdict, dataclass, replace
from typing import Any

from buildsync.core.types import SessionStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class DownloadState:
    """Snapshot of a download session.

    Attributes:
        status: Session lifecycle status.
        total_files: Files in the batch.
        files_downloaded: Files completed and moved into place.
        total_bytes: Sum of file sizes in the batch.
        downloaded_bytes: Bytes of completed files plus the furthest point
            reached in the current file; never decreases within a session.
        current_file: Path being transferred.
        speed_bytes_per_sec: Throughput from the last sample.
        last_error: Message of the error that ended the session.
    """

    status: SessionStatus = SessionStatus.IDLE
    total_files: int = 0
    files_downloaded: int = 0
    total_bytes: int = 0
    downloaded_bytes: int = 0
    current_file: str | None = None
    speed_bytes_per_sec: float = 0.0
    last_error: str | None = None

    @property
    def progress(self) -> float:
        """Fraction of bytes downloaded (0.0 - 1.0)."""
        if self.total_bytes <= 0:
            return 1.0 if self.status == SessionStatus.SUCCESS else 0.0
        return min(1.0, self.downloaded_bytes / self.total_bytes)

    def to_dict(self) -> dict[str, Any]:
        """Convert to a JSON-friendly dictionary."""
        data = asdict(self)
        data["status"] = self.status.value
        return data


StateCallback = Callable[[DownloadState], None]


class StateTracker:
    """Holds the current DownloadState and notifies subscribers.

    Snapshots are delivered one at a time in the order the changes were
    made. A change made while another thread is delivering is queued and
    delivered by that thread, so ``update`` may return before its own
    snapshot reaches the subscribers. Changes made from inside a callback
    are delivered after that callback returns.
    """

    def __init__(self) -> None:
        self._state = DownloadState()
        self._lock = threading.Lock()
        self._deliver_lock = threading.Lock()
        self._pending: deque[DownloadState] = deque()
        self._subscribers: list[StateCallback] = []

    @property
    def state(self) -> DownloadState:
        """Return the current snapshot."""
        with self._lock:
            return self._state

    def subscribe(self, callback: StateCallback) -> Callable[[], None]:
        """Register a callback for state changes.

        Returns:
            Function that removes the subscription.
        """
        with self._lock:
            self._subscribers.append(callback)

        def unsubscribe() -> None:
            with self._lock:
                if callback in self._subscribers:
                    self._subscribers.remove(callback)

        return unsubscribe

    def update(self, **changes: Any) -> DownloadState:
        """Apply field changes and notify subscribers.

        Returns:
            The new snapshot.
        """
        with self._lock:
            snapshot = self._commit(replace(self._state, **changes))
        self._deliver()
        return snapshot

    def reset(self, **changes: Any) -> DownloadState:
        """Replace the state with a fresh one carrying ``changes``."""
        with self._lock:
            snapshot = self._commit(DownloadState(**changes))
        self._deliver()
        return snapshot

    def advance_bytes(self, downloaded_bytes: int, **changes: Any) -> DownloadState | None:
        """Raise ``downloaded_bytes``, applying ``changes`` with it.

        Lower or equal byte counts are ignored along with ``changes``.

        Returns:
            The new snapshot, or None if nothing changed.
        """
        with self._lock:
            if downloaded_bytes <= self._state.downloaded_bytes:
                return None
            snapshot = self._commit(
                replace(self._state, downloaded_bytes=downloaded_bytes, **changes)
            )
        self._deliver()
        return snapshot

    def _commit(self, snapshot: DownloadState) -> DownloadState:
        # Caller holds self._lock
        self._state = snapshot
        self._pending.append(snapshot)
        return snapshot

    def _deliver(self) -> None:
        while True:
            if not self._deliver_lock.acquire(blocking=False):
                # The delivering thread picks up our snapshot
                return
            try:
                while True:
                    with self._lock:
                        if not self._pending:
                            break
                        snapshot = self._pending.popleft()
                        subscribers = list(self._subscribers)
                    self._notify(snapshot, subscribers)
            finally:
                self._deliver_lock.release()
            # A snapshot queued between the final check and the release
            # would otherwise wait for the next change
            with self._lock:
                if not self._pending:
                    return

    @staticmethod
    def _notify(snapshot: DownloadState, subscribers: list[StateCallback]) -> None:
        for callback in subscribers:
            try:
                callback(snapshot)
            except Exception:
                logger.exception("State subscriber failed")
