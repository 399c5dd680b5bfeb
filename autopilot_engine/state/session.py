"""Session data model and payload sanitizers."""

import asyncio
import json
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Optional, Union

from pydantic import BaseModel, ConfigDict, Field


class SessionStatus(str, Enum):
    """Autopilot session lifecycle states."""

    PENDING = "pending"
    RUNNING = "running"
    PAUSED = "paused"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


ACTIVE_STATUSES = frozenset({SessionStatus.PENDING, SessionStatus.RUNNING, SessionStatus.PAUSED})
Clock = Callable[[], Union[datetime, str]]
UserUpdate = Union[str, dict]


class SessionEvent(BaseModel):
    """One entry of a session's event log. Immutable once appended."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(description="'{session_id}:event:{n}'")
    timestamp: str = Field(description="ISO-8601 UTC timestamp")
    type: str = Field(default="log", description="Free-form event tag")
    message: str = Field(default="")
    payload: Any = Field(default=None, description="JSON-safe payload clone")
    meta: Any = Field(default=None)


class SessionMessage(BaseModel):
    """Audit record of a raw user input."""

    at: str
    kind: Optional[str] = None
    message: str


class SessionSummary(BaseModel):
    """Public view of a session returned by every manager operation."""

    id: str
    project_id: str
    prompt: str
    status: SessionStatus
    status_message: Optional[str] = None
    created_at: str
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    updated_at: str
    ui_session_id: Optional[str] = None
    result: Any = None
    error: Optional[str] = None
    event_count: int = 0
    events_trimmed: int = 0
    message_count: int = 0
    events: Optional[list[SessionEvent]] = None


@dataclass
class SessionControl:
    """Control block consumed by the executor through capability closures."""

    pending_updates: list[UserUpdate] = field(default_factory=list)
    cancel_requested: bool = False
    pause_requested: bool = False
    running: bool = False
    worker: Optional[asyncio.Task] = None
    autopilot: Optional[Callable[..., Awaitable[Any]]] = None
    now: Optional[Clock] = None


@dataclass
class AutopilotSession:
    """Internal session record. Owned and mutated by the session manager only."""

    id: str
    project_id: str
    prompt: str
    options: dict
    created_at: str
    updated_at: str
    ui_session_id: Optional[str] = None
    status: SessionStatus = SessionStatus.PENDING
    status_message: Optional[str] = "Waiting to start…"
    started_at: Optional[str] = None
    finished_at: Optional[str] = None
    result: Any = None
    error: Optional[str] = None
    messages: list[SessionMessage] = field(default_factory=list)
    events: list[SessionEvent] = field(default_factory=list)
    events_trimmed: int = 0
    next_event_id: int = 0
    control: SessionControl = field(default_factory=SessionControl)

    def summarize(self, include_events: bool = True) -> SessionSummary:
        return SessionSummary(
            id=self.id,
            project_id=self.project_id,
            prompt=self.prompt,
            status=self.status,
            status_message=self.status_message,
            created_at=self.created_at,
            started_at=self.started_at,
            finished_at=self.finished_at,
            updated_at=self.updated_at,
            ui_session_id=self.ui_session_id,
            result=clone_payload(self.result),
            error=self.error,
            event_count=len(self.events),
            events_trimmed=self.events_trimmed,
            message_count=len(self.messages),
            events=list(self.events) if include_events else None,
        )


def now_iso(clock: Optional[Clock] = None) -> str:
    """Return the clock's current time as an ISO-8601 UTC string.

    The clock may return a ``datetime`` (naive values are taken as UTC) or an
    ISO string. Anything else falls back to wall time.
    """
    if callable(clock):
        value = clock()
        if isinstance(value, str):
            try:
                value = datetime.fromisoformat(value.replace("Z", "+00:00"))
            except ValueError:
                value = None
        if isinstance(value, datetime):
            if value.tzinfo is None:
                value = value.replace(tzinfo=timezone.utc)
            return value.astimezone(timezone.utc).isoformat()
    return datetime.now(timezone.utc).isoformat()


def clone_payload(value: Any) -> Any:
    """Deep-clone a JSON-safe value; anything unserializable becomes None."""
    if value is None:
        return None
    if isinstance(value, (str, int, float, bool)):
        return value
    try:
        return json.loads(json.dumps(value))
    except (TypeError, ValueError):
        return None


def sanitize_options(value: Any) -> dict:
    if not isinstance(value, dict):
        return {}
    cloned = clone_payload(value)
    return cloned if isinstance(cloned, dict) else {}


def sanitize_text(value: Any) -> str:
    if not isinstance(value, str):
        return ""
    return value.strip()


def sanitize_ui_session_id(value: Any) -> Optional[str]:
    return sanitize_text(value) or None
