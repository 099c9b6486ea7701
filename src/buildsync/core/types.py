"""Shared enums for buildsync.

Used by the download session (SessionStatus) and the delta
detector (FileChange).
"""

from __future__ import annotations

from enum import Enum


class SessionStatus(str, Enum):
    """Status of a download session.

    Lifecycle:
        IDLE -> DOWNLOADING <-> PAUSED -> SUCCESS | ERROR
        DOWNLOADING | PAUSED -> CANCELLING -> IDLE
    """

    IDLE = "idle"
    DOWNLOADING = "downloading"
    PAUSED = "paused"
    CANCELLING = "cancelling"
    SUCCESS = "success"
    ERROR = "error"

    @property
    def is_active(self) -> bool:
        """True while a session owns the transfer loop."""
        return self in (SessionStatus.DOWNLOADING, SessionStatus.PAUSED)


class FileChange(str, Enum):
    """Classification of a path between two manifest versions."""

    NEW = "new"
    CHANGED = "changed"
    UNCHANGED = "unchanged"
    DELETED = "deleted"
