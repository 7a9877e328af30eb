"""
Data models for the delivery pipeline.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class TaskState(Enum):
    """Lifecycle states for a single link task."""

    IDLE = "idle"
    DEDUPING = "deduping"
    RATE_LIMITED = "rate_limited"
    PERMIT_WAIT = "permit_wait"
    DOWNLOADING = "downloading"
    TRANSPORT_SELECT = "transport_select"
    UPLOADING = "uploading"
    LOGGING = "logging"
    CLEANUP = "cleanup"
    DONE = "done"
    FAILED = "failed"


class Quality(Enum):
    """Format preference a user can pick."""

    H265 = "h265"
    H264 = "h264"
    AUDIO = "audio"

    @classmethod
    def from_value(cls, value: Optional[str]) -> "Quality":
        """Map stored preference to enum, falling back to best quality video."""
        for member in cls:
            if member.value == (value or "").strip().lower():
                return member
        return cls.H265


class Transport(Enum):
    """Delivery path picked by file size."""

    BOT_API = "bot_api"
    MTPROTO = "mtproto"


class FailureKind(Enum):
    """User-facing categories for a failed download."""

    SIGN_IN_REQUIRED = "sign_in_required"
    UNAVAILABLE = "unavailable"
    PRIVATE = "private"
    AGE_RESTRICTED = "age_restricted"
    MALFORMED_RESPONSE = "malformed_response"
    TIMEOUT = "timeout"
    GENERIC = "generic"


@dataclass
class DownloadTask:
    """Runtime info for one submitted link."""

    task_id: int
    chat_id: int
    url: str
    quality: Quality = Quality.H265
    username: Optional[str] = None
    user_id: Optional[int] = None
    file_path: Optional[str] = None
    transport: Optional[Transport] = None
    download_attempts: int = 0
    upload_attempts: int = 0
    state: TaskState = TaskState.IDLE
    start_ts: Optional[float] = None
    end_ts: Optional[float] = None
    error_message: Optional[str] = None

    @property
    def is_audio(self) -> bool:
        return self.quality is Quality.AUDIO


@dataclass
class MediaInfo:
    """Subset of ffprobe output needed for upload attributes."""

    duration: int = 0
    width: int = 0
    height: int = 0
