"""Autopilot session manager: registry, event log, control signals and worker."""

import asyncio
import logging
import time
import uuid
from collections.abc import Awaitable, Callable, Mapping
from dataclasses import dataclass, field
from typing import Any, Optional

from ..config.models import SessionConfig
from ..errors import (
    CANCELLED_ERROR_CODE,
    SessionNotFoundError,
    SessionValidationError,
)
from ..utils.logging import get_session_logger
from .machine import SessionMachine, StateTransitionError
from .session import (
    ACTIVE_STATUSES,
    AutopilotSession,
    Clock,
    SessionControl,
    SessionEvent,
    SessionMessage,
    SessionStatus,
    SessionSummary,
    UserUpdate,
    clone_payload,
    now_iso,
    sanitize_options,
    sanitize_text,
    sanitize_ui_session_id,
)

logger = logging.getLogger(__name__)

Executor = Callable[["AutopilotContext"], Awaitable[Any]]


@dataclass(frozen=True)
class UiBridge:
    """Side channel for UI hints; emits ``ui:navigate`` events."""

    navigate_tab: Callable[[Any], None]


@dataclass(frozen=True)
class SessionDeps:
    """Capabilities handed to an executor. The session object itself never is."""

    consume_user_updates: Callable[[], list[UserUpdate]]
    should_cancel: Callable[[], bool]
    should_pause: Callable[[], bool]
    report_status: Callable[[Any], None]
    append_event: Callable[[Mapping], None]
    ui: UiBridge
    wait_for_user_guidance: bool = True


@dataclass(frozen=True)
class AutopilotContext:
    """Arguments passed to an executor for one session run."""

    project_id: str
    prompt: str
    options: dict
    deps: SessionDeps


@dataclass(frozen=True)
class CreateSessionDeps:
    """Overrides accepted by ``create_session``."""

    generate_id: Optional[Callable[[], Any]] = None
    now: Optional[Clock] = None
    autopilot: Optional[Executor] = None


@dataclass
class AutopilotSessionManager:
    """In-memory session registry.

    Construct once per process and inject it wherever sessions are handled.
    All mutation of a session happens either in its own worker task or in a
    synchronous manager method, so a single event loop needs no locking.
    """

    config: SessionConfig = field(default_factory=SessionConfig)
    default_executor: Optional[Executor] = None
    machine: SessionMachine = field(default_factory=SessionMachine)
    _sessions: dict[str, AutopilotSession] = field(default_factory=dict, init=False)

    # ------------------------------------------------------------------
    # Public operations
    # ------------------------------------------------------------------

    async def create_session(
        self,
        project_id: Any,
        prompt: Any,
        options: Any = None,
        ui_session_id: Any = None,
        deps: Optional[CreateSessionDeps] = None,
    ) -> SessionSummary:
        """Create a session and start its worker.

        Raises:
            SessionValidationError: If ``project_id`` or ``prompt`` is blank
        """
        deps = deps or CreateSessionDeps()
        project = self._require_project_id(project_id)
        normalized_prompt = sanitize_text(prompt)
        if not normalized_prompt:
            raise SessionValidationError("prompt is required")

        session_id = self._create_id(deps.generate_id)
        created_at = now_iso(deps.now)
        session = AutopilotSession(
            id=session_id,
            project_id=project,
            prompt=normalized_prompt,
            options=sanitize_options(options),
            ui_session_id=sanitize_ui_session_id(ui_session_id),
            created_at=created_at,
            updated_at=created_at,
            control=SessionControl(
                autopilot=deps.autopilot if callable(deps.autopilot) else None,
                now=deps.now if callable(deps.now) else None,
            ),
        )

        self._sessions[session_id] = session
        self._append_event(
            session,
            {
                "type": "session:created",
                "message": "Autopilot session created",
                "payload": {"prompt": normalized_prompt},
            },
        )
        logger.info("Created autopilot session %s for project %s", session_id, project)

        self._start_worker(session)
        return session.summarize()

    def get_session(self, session_id: Any, include_events: bool = True) -> Optional[SessionSummary]:
        session = self._sessions.get(str(session_id or ""))
        if session is None:
            return None
        return session.summarize(include_events=include_events)

    def enqueue_message(
        self,
        session_id: Any,
        project_id: Any,
        message: Any,
        kind: Optional[str] = None,
        metadata: Optional[dict] = None,
    ) -> SessionSummary:
        """Queue a user update for the executor and apply control flags.

        Raises:
            SessionValidationError: If ``project_id`` or ``message`` is blank
            SessionNotFoundError: Unknown session or ownership mismatch
        """
        project = self._require_project_id(project_id)
        normalized_message = sanitize_text(message)
        if not normalized_message:
            raise SessionValidationError("message is required")

        session = self._get_or_raise(session_id)
        self._assert_ownership(session, project)

        normalized_kind = sanitize_text(kind) or None
        if normalized_kind:
            update: UserUpdate = {"kind": normalized_kind, "message": normalized_message}
            if isinstance(metadata, dict):
                update["metadata"] = clone_payload(metadata)
        else:
            update = normalized_message

        session.control.pending_updates.append(update)
        session.messages.append(
            SessionMessage(
                at=now_iso(session.control.now),
                kind=normalized_kind,
                message=normalized_message,
            )
        )

        if normalized_kind == "pause":
            session.control.pause_requested = True
        elif normalized_kind == "resume":
            session.control.pause_requested = False
        elif normalized_kind == "cancel":
            session.control.cancel_requested = True

        self._append_event(
            session,
            {
                "type": "user:message",
                "message": normalized_message,
                "payload": {"kind": normalized_kind},
            },
        )
        return session.summarize()

    def cancel_session(
        self,
        session_id: Any,
        project_id: Any,
        reason: Optional[str] = None,
    ) -> SessionSummary:
        """Request cooperative cancellation. No-op for terminal sessions.

        Raises:
            SessionValidationError: If ``project_id`` is blank
            SessionNotFoundError: Unknown session or ownership mismatch
        """
        project = self._require_project_id(project_id)
        session = self._get_or_raise(session_id)
        self._assert_ownership(session, project)

        if self.machine.is_terminal(session.status):
            return session.summarize()

        session.control.cancel_requested = True
        self._append_event(
            session,
            {
                "type": "session:cancel-requested",
                "message": "Cancellation requested",
                "payload": {"reason": reason} if reason else None,
            },
        )
        logger.info("Cancellation requested for session %s", session.id)
        return session.summarize()

    async def resume_sessions(
        self,
        project_id: Any,
        ui_session_id: Any,
        limit: Any = None,
    ) -> dict:
        """Restart workers for active sessions owned by a UI session.

        Raises:
            SessionValidationError: If ``project_id`` or ``ui_session_id`` is blank
        """
        project = self._require_project_id(project_id)
        normalized_ui_session = sanitize_ui_session_id(ui_session_id)
        if not normalized_ui_session:
            raise SessionValidationError("uiSessionId is required")

        if isinstance(limit, (int, float)) and not isinstance(limit, bool) and limit >= 1:
            limit_value = int(limit)
        else:
            limit_value = self.config.resume_limit

        candidates = [
            session
            for session in self._sessions.values()
            if session.project_id == project
            and session.ui_session_id == normalized_ui_session
            and session.status in ACTIVE_STATUSES
        ]

        resumed = []
        for session in candidates[:limit_value]:
            if not session.control.running:
                logger.info("Resuming autopilot session %s", session.id)
                self._start_worker(session)
            resumed.append(session.summarize(include_events=False))

        return {"success": True, "resumed": resumed}

    async def wait_for_session(
        self,
        session_id: Any,
        timeout: Optional[float] = None,
    ) -> Optional[SessionSummary]:
        """Wait until a session reaches a terminal status.

        Raises:
            TimeoutError: If the session is still active after ``timeout``
        """
        timeout = self.config.wait_timeout_sec if timeout is None else timeout
        deadline = time.monotonic() + timeout
        while time.monotonic() < deadline:
            session = self._sessions.get(str(session_id or ""))
            if session is None:
                return None
            if self.machine.is_terminal(session.status):
                worker = session.control.worker
                if worker is not None and not worker.done():
                    # Outcome is already recorded on the session
                    await asyncio.wait({worker})
                return session.summarize()
            await asyncio.sleep(0.01)
        raise TimeoutError("Timed out waiting for autopilot session to finish")

    def reset(self) -> None:
        """Forget every session. Intended for tests."""
        self._sessions.clear()

    # ------------------------------------------------------------------
    # Event log
    # ------------------------------------------------------------------

    def _append_event(self, session: AutopilotSession, raw_event: Any) -> None:
        if not raw_event or not isinstance(raw_event, Mapping):
            return

        raw_type = raw_event.get("type")
        event_type = raw_type.strip() if isinstance(raw_type, str) and raw_type.strip() else "log"
        raw_message = raw_event.get("message")
        if isinstance(raw_message, str):
            message = raw_message
        else:
            message = "" if raw_message is None else str(raw_message)

        session.next_event_id += 1
        event = SessionEvent(
            id=f"{session.id}:event:{session.next_event_id}",
            timestamp=now_iso(session.control.now),
            type=event_type,
            message=message,
            payload=clone_payload(raw_event.get("payload")),
            meta=clone_payload(raw_event.get("meta")),
        )

        session.events.append(event)
        overflow = len(session.events) - self.config.event_limit
        if overflow > 0:
            del session.events[:overflow]
            session.events_trimmed += overflow
        session.updated_at = event.timestamp

    # ------------------------------------------------------------------
    # Worker
    # ------------------------------------------------------------------

    def _build_deps(self, session: AutopilotSession) -> SessionDeps:
        control = session.control

        def consume_user_updates() -> list[UserUpdate]:
            if not control.pending_updates:
                return []
            drained = list(control.pending_updates)
            control.pending_updates.clear()
            return drained

        def report_status(message: Any) -> None:
            text = message.strip() if isinstance(message, str) else ""
            if not text or text == session.status_message:
                return
            session.status_message = text
            self._append_event(session, {"type": "status", "message": text})

        def append_event(event: Mapping) -> None:
            try:
                self._append_event(session, event)
            except Exception as e:
                logger.warning("Dropped event for session %s: %s", session.id, e)

        def navigate_tab(tab: Any) -> None:
            target = tab if isinstance(tab, str) else ("" if tab is None else str(tab))
            self._append_event(
                session,
                {
                    "type": "ui:navigate",
                    "message": f"navigate:{target}" if target else "navigate",
                    "payload": {"tab": target or None},
                },
            )

        return SessionDeps(
            consume_user_updates=consume_user_updates,
            should_cancel=lambda: control.cancel_requested,
            should_pause=lambda: control.pause_requested,
            report_status=report_status,
            append_event=append_event,
            ui=UiBridge(navigate_tab=navigate_tab),
        )

    def _resolve_executor(self, session: AutopilotSession) -> Executor:
        if session.control.autopilot is not None:
            return session.control.autopilot
        if self.default_executor is not None:
            return self.default_executor
        from ..executor.loop import autopilot_feature_request

        return autopilot_feature_request

    def _start_worker(self, session: AutopilotSession) -> Optional[asyncio.Task]:
        control = session.control
        if control.running:
            return control.worker

        control.running = True
        task = asyncio.get_running_loop().create_task(
            self._run_worker(session),
            name=f"autopilot-session-{session.id}",
        )
        task.add_done_callback(lambda t: self._on_worker_done(session, t))
        control.worker = task
        return task

    async def _run_worker(self, session: AutopilotSession) -> None:
        control = session.control
        log = get_session_logger(__name__, session.id)

        control.running = True
        self.machine.transition(session, SessionStatus.RUNNING)
        session.started_at = session.started_at or now_iso(control.now)
        self._append_event(
            session,
            {"type": "session:started", "message": "Autopilot execution started"},
        )
        log.info("Autopilot execution started")

        try:
            executor = self._resolve_executor(session)
            result = await executor(
                AutopilotContext(
                    project_id=session.project_id,
                    prompt=session.prompt,
                    options=session.options,
                    deps=self._build_deps(session),
                )
            )
            session.result = clone_payload(result)
            self.machine.transition(session, SessionStatus.COMPLETED)
            session.status_message = "Completed successfully"
            self._append_event(
                session,
                {
                    "type": "session:completed",
                    "message": "Autopilot completed successfully",
                    "payload": {"status": "completed"},
                },
            )
            log.info("Autopilot completed")
        except asyncio.CancelledError:
            self._mark_cancelled(session, "Autopilot worker task cancelled")
            raise
        except Exception as error:
            code = getattr(error, "code", None)
            message = str(error) or "Autopilot run failed"
            if code == CANCELLED_ERROR_CODE or control.cancel_requested:
                self._mark_cancelled(session, str(error) or "Autopilot cancelled")
                log.info("Autopilot cancelled")
            else:
                self._mark_failed(session, message)
                log.warning("Autopilot failed: %s", message)
        finally:
            session.finished_at = now_iso(control.now)
            control.running = False

    def _on_worker_done(self, session: AutopilotSession, task: asyncio.Task) -> None:
        """Backstop for exceptions escaping the worker coroutine itself."""
        if task.cancelled():
            session.control.running = False
            return
        error = task.exception()
        if error is None:
            return

        logger.error("Autopilot worker crashed for session %s: %s", session.id, error, exc_info=error)
        if not self.machine.is_terminal(session.status):
            self._mark_failed(session, str(error) or "Autopilot worker crashed")
        session.finished_at = now_iso(session.control.now)
        session.control.running = False

    def _mark_failed(self, session: AutopilotSession, error_message: str) -> None:
        self.machine.transition(session, SessionStatus.FAILED)
        session.error = error_message
        session.status_message = error_message
        self._append_event(session, {"type": "session:failed", "message": error_message})

    def _mark_cancelled(self, session: AutopilotSession, message: str) -> None:
        try:
            self.machine.transition(session, SessionStatus.CANCELLED)
        except StateTransitionError:
            logger.warning("Session %s already %s; ignoring cancel", session.id, session.status.value)
            return
        session.status_message = "Cancelled"
        self._append_event(session, {"type": "session:cancelled", "message": message})

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    @staticmethod
    def _create_id(generator: Optional[Callable[[], Any]]) -> str:
        if callable(generator):
            value = generator()
            if value:
                return str(value)
        return str(uuid.uuid4())

    @staticmethod
    def _require_project_id(project_id: Any) -> str:
        if project_id is None or (isinstance(project_id, str) and not project_id.strip()):
            raise SessionValidationError("projectId is required")
        text = str(project_id).strip()
        if not text:
            raise SessionValidationError("projectId is required")
        return text

    def _get_or_raise(self, session_id: Any) -> AutopilotSession:
        session = self._sessions.get(str(session_id or ""))
        if session is None:
            raise SessionNotFoundError()
        return session

    @staticmethod
    def _assert_ownership(session: AutopilotSession, project_id: Optional[str]) -> None:
        if project_id is None or session.project_id == project_id:
            return
        raise SessionNotFoundError()
