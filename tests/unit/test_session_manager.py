"""Unit tests for the autopilot session manager."""

import asyncio

import pytest

from autopilot_engine.config.models import SessionConfig
from autopilot_engine.errors import (
    CANCELLED_ERROR_CODE,
    SESSION_NOT_FOUND_CODE,
    AutopilotCancelledError,
    SessionNotFoundError,
    SessionValidationError,
)
from autopilot_engine.state.manager import AutopilotSessionManager, CreateSessionDeps
from autopilot_engine.state.session import SessionStatus


@pytest.fixture
def manager():
    """Fresh registry per test."""
    registry = AutopilotSessionManager()
    yield registry
    registry.reset()


class Gate:
    """Executor that blocks until released, exposing its deps."""

    def __init__(self, result=None):
        self.started = asyncio.Event()
        self.release = asyncio.Event()
        self.deps = None
        self.result = result

    async def __call__(self, ctx):
        self.deps = ctx.deps
        self.started.set()
        await self.release.wait()
        return self.result


def event_types(summary):
    return [event.type for event in summary.events]


@pytest.mark.asyncio
async def test_end_to_end_fake_executor(manager):
    """Test a completed session records the expected event order."""

    async def executor(ctx):
        ctx.deps.report_status("working")
        return {"ok": True}

    created = await manager.create_session(
        project_id="p1",
        prompt="add a button",
        deps=CreateSessionDeps(autopilot=executor),
    )
    assert created.status == SessionStatus.PENDING
    assert created.status_message == "Waiting to start…"

    final = await manager.wait_for_session(created.id)

    assert final.status == SessionStatus.COMPLETED
    assert final.result == {"ok": True}
    assert final.status_message == "Completed successfully"
    assert final.started_at is not None
    assert final.finished_at is not None
    assert event_types(final) == [
        "session:created",
        "session:started",
        "status",
        "session:completed",
    ]
    assert final.events[2].message == "working"
    assert final.events[0].payload == {"prompt": "add a button"}


@pytest.mark.asyncio
async def test_blank_prompt_rejected(manager):
    """Test blank prompt raises and creates no session."""
    with pytest.raises(SessionValidationError, match="prompt is required"):
        await manager.create_session(project_id="p1", prompt="   ")

    assert manager._sessions == {}


@pytest.mark.asyncio
async def test_blank_project_rejected(manager):
    """Test missing project id raises a validation error."""
    with pytest.raises(SessionValidationError, match="projectId is required"):
        await manager.create_session(project_id=" ", prompt="do it")


@pytest.mark.asyncio
async def test_injected_id_and_clock(manager):
    """Test generate_id and now overrides are honored."""
    gate = Gate()
    created = await manager.create_session(
        project_id=42,
        prompt="  trimmed  ",
        options={"a": [1, 2]},
        ui_session_id=" ui-1 ",
        deps=CreateSessionDeps(
            generate_id=lambda: "sess-1",
            now=lambda: "2024-01-01T00:00:00Z",
            autopilot=gate,
        ),
    )

    assert created.id == "sess-1"
    assert created.project_id == "42"
    assert created.prompt == "trimmed"
    assert created.ui_session_id == "ui-1"
    assert created.created_at == "2024-01-01T00:00:00+00:00"
    assert created.events[0].id == "sess-1:event:1"

    gate.release.set()
    await manager.wait_for_session("sess-1")


@pytest.mark.asyncio
async def test_event_log_is_bounded(manager):
    """Test events beyond the limit are trimmed oldest-first."""

    async def noisy(ctx):
        for i in range(600):
            ctx.deps.append_event({"type": "log", "message": f"line {i}"})

    created = await manager.create_session(
        project_id="p1", prompt="noisy", deps=CreateSessionDeps(autopilot=noisy)
    )
    final = await manager.wait_for_session(created.id)

    # created + started + 600 lines + completed
    assert final.event_count == 500
    assert final.events_trimmed == 103
    assert final.events[0].message == "line 101"
    assert final.events[-1].type == "session:completed"
    assert final.events[-1].id.endswith(":event:603")


@pytest.mark.asyncio
async def test_event_limit_is_configurable():
    """Test SessionConfig.event_limit bounds the log."""
    manager = AutopilotSessionManager(config=SessionConfig(event_limit=3))

    async def executor(ctx):
        for i in range(5):
            ctx.deps.append_event({"message": i})

    created = await manager.create_session(
        project_id="p1", prompt="x", deps=CreateSessionDeps(autopilot=executor)
    )
    final = await manager.wait_for_session(created.id)

    assert final.event_count == 3
    assert final.events_trimmed == 5
    assert final.events[0].type == "log"
    assert final.events[0].message == "3"


@pytest.mark.asyncio
async def test_unserializable_payload_becomes_none(manager):
    """Test payloads that cannot be cloned are stored as None."""

    async def executor(ctx):
        ctx.deps.append_event({"type": "odd", "payload": {"value": object()}})

    created = await manager.create_session(
        project_id="p1", prompt="x", deps=CreateSessionDeps(autopilot=executor)
    )
    final = await manager.wait_for_session(created.id)

    odd = [event for event in final.events if event.type == "odd"]
    assert len(odd) == 1
    assert odd[0].payload is None


@pytest.mark.asyncio
async def test_report_status_dedupes(manager):
    """Test repeated or blank status reports emit one event."""

    async def executor(ctx):
        ctx.deps.report_status("working")
        ctx.deps.report_status("working")
        ctx.deps.report_status("   ")
        ctx.deps.report_status(None)

    created = await manager.create_session(
        project_id="p1", prompt="x", deps=CreateSessionDeps(autopilot=executor)
    )
    final = await manager.wait_for_session(created.id)

    assert event_types(final).count("status") == 1


@pytest.mark.asyncio
async def test_navigate_tab_emits_ui_event(manager):
    """Test ui.navigate_tab records a ui:navigate event."""

    async def executor(ctx):
        ctx.deps.ui.navigate_tab("preview")

    created = await manager.create_session(
        project_id="p1", prompt="x", deps=CreateSessionDeps(autopilot=executor)
    )
    final = await manager.wait_for_session(created.id)

    navigate = [event for event in final.events if event.type == "ui:navigate"]
    assert navigate[0].payload == {"tab": "preview"}
    assert navigate[0].message == "navigate:preview"


@pytest.mark.asyncio
async def test_pause_and_resume_flags(manager):
    """Test pause/resume messages toggle the pause flag seen by the executor."""
    gate = Gate()
    created = await manager.create_session(
        project_id="p1", prompt="x", deps=CreateSessionDeps(autopilot=gate)
    )
    await gate.started.wait()

    paused = manager.enqueue_message(created.id, "p1", "hold on", kind="pause")
    assert gate.deps.should_pause() is True
    assert event_types(paused).count("user:message") == 1

    resumed = manager.enqueue_message(created.id, "p1", "go on", kind="resume")
    assert gate.deps.should_pause() is False
    assert event_types(resumed).count("user:message") == 2
    assert resumed.events[-1].payload == {"kind": "resume"}
    assert resumed.message_count == 2

    gate.release.set()
    final = await manager.wait_for_session(created.id)
    assert final.status == SessionStatus.COMPLETED


@pytest.mark.asyncio
async def test_user_updates_drained_in_order(manager):
    """Test queued updates reach the executor once, in FIFO order."""
    gate = Gate()

    async def executor(ctx):
        await gate(ctx)
        first = ctx.deps.consume_user_updates()
        second = ctx.deps.consume_user_updates()
        return {"first": first, "second": second}

    created = await manager.create_session(
        project_id="p1", prompt="x", deps=CreateSessionDeps(autopilot=executor)
    )
    await gate.started.wait()

    manager.enqueue_message(created.id, "p1", "  also add tests  ")
    manager.enqueue_message(
        created.id, "p1", "Expand scope", kind="goal-update", metadata={"source": "chat"}
    )
    gate.release.set()
    final = await manager.wait_for_session(created.id)

    assert final.result == {
        "first": [
            "also add tests",
            {"kind": "goal-update", "message": "Expand scope", "metadata": {"source": "chat"}},
        ],
        "second": [],
    }
    messages = [event for event in final.events if event.type == "user:message"]
    assert messages[0].payload == {"kind": None}


@pytest.mark.asyncio
async def test_enqueue_unknown_session(manager):
    """Test enqueue on an unknown session raises not-found."""
    with pytest.raises(SessionNotFoundError) as exc_info:
        manager.enqueue_message("missing", "p1", "hello")

    assert exc_info.value.code == SESSION_NOT_FOUND_CODE


@pytest.mark.asyncio
async def test_enqueue_ownership_mismatch(manager):
    """Test a session is invisible to other projects."""
    gate = Gate()
    created = await manager.create_session(
        project_id="p1", prompt="x", deps=CreateSessionDeps(autopilot=gate)
    )

    with pytest.raises(SessionNotFoundError):
        manager.enqueue_message(created.id, "p2", "hello")
    with pytest.raises(SessionNotFoundError):
        manager.cancel_session(created.id, "p2")

    gate.release.set()
    await manager.wait_for_session(created.id)


@pytest.mark.asyncio
async def test_enqueue_blank_message(manager):
    """Test blank message raises a validation error."""
    gate = Gate()
    created = await manager.create_session(
        project_id="p1", prompt="x", deps=CreateSessionDeps(autopilot=gate)
    )

    with pytest.raises(SessionValidationError, match="message is required"):
        manager.enqueue_message(created.id, "p1", "  ")

    gate.release.set()
    await manager.wait_for_session(created.id)


@pytest.mark.asyncio
async def test_cooperative_cancel(manager):
    """Test cancel_session ends a cooperative executor as cancelled."""
    started = asyncio.Event()

    async def executor(ctx):
        started.set()
        while not ctx.deps.should_cancel():
            await asyncio.sleep(0.01)
        raise AutopilotCancelledError()

    created = await manager.create_session(
        project_id="p1", prompt="x", deps=CreateSessionDeps(autopilot=executor)
    )
    await started.wait()

    requested = manager.cancel_session(created.id, "p1", reason="user")
    assert requested.events[-1].type == "session:cancel-requested"
    assert requested.events[-1].payload == {"reason": "user"}

    final = await manager.wait_for_session(created.id)
    assert final.status == SessionStatus.CANCELLED
    assert final.status_message == "Cancelled"
    assert final.events[-1].type == "session:cancelled"
    assert AutopilotCancelledError().code == CANCELLED_ERROR_CODE


@pytest.mark.asyncio
async def test_cancel_flag_maps_generic_error_to_cancelled(manager):
    """Test any error after a cancel request ends as cancelled."""
    gate = Gate()

    async def executor(ctx):
        await gate(ctx)
        raise RuntimeError("interrupted")

    created = await manager.create_session(
        project_id="p1", prompt="x", deps=CreateSessionDeps(autopilot=executor)
    )
    await gate.started.wait()
    manager.enqueue_message(created.id, "p1", "stop please", kind="cancel")
    gate.release.set()

    final = await manager.wait_for_session(created.id)
    assert final.status == SessionStatus.CANCELLED


@pytest.mark.asyncio
async def test_cancel_terminal_session_is_noop(manager):
    """Test cancelling a finished session changes nothing."""

    async def executor(ctx):
        return "done"

    created = await manager.create_session(
        project_id="p1", prompt="x", deps=CreateSessionDeps(autopilot=executor)
    )
    final = await manager.wait_for_session(created.id)

    after = manager.cancel_session(created.id, "p1", reason="late")

    assert after.status == SessionStatus.COMPLETED
    assert after.event_count == final.event_count
    assert "session:cancel-requested" not in event_types(after)


@pytest.mark.asyncio
async def test_executor_failure_marks_failed(manager):
    """Test executor exceptions become a failed session."""

    async def executor(ctx):
        raise RuntimeError("boom")

    created = await manager.create_session(
        project_id="p1", prompt="x", deps=CreateSessionDeps(autopilot=executor)
    )
    final = await manager.wait_for_session(created.id)

    assert final.status == SessionStatus.FAILED
    assert final.error == "boom"
    assert final.status_message == "boom"
    assert final.events[-1].type == "session:failed"
    assert final.finished_at is not None


class UnprintableError(Exception):
    def __str__(self):
        raise RuntimeError("unprintable")


@pytest.mark.asyncio
async def test_worker_crash_is_recorded_by_done_callback(manager):
    """Test an error escaping the worker itself still fails the session."""

    async def executor(ctx):
        raise UnprintableError()

    created = await manager.create_session(
        project_id="p1", prompt="x", deps=CreateSessionDeps(autopilot=executor)
    )
    final = await manager.wait_for_session(created.id)

    assert final.status == SessionStatus.FAILED
    assert final.error == "unprintable"
    assert final.events[-1].type == "session:failed"
    assert final.finished_at is not None
    assert manager._sessions[created.id].control.running is False


@pytest.mark.asyncio
async def test_worker_task_cancellation(manager):
    """Test cancelling the worker task records a cancelled session."""
    gate = Gate()
    created = await manager.create_session(
        project_id="p1", prompt="x", deps=CreateSessionDeps(autopilot=gate)
    )
    await gate.started.wait()

    manager._sessions[created.id].control.worker.cancel()
    final = await manager.wait_for_session(created.id)

    assert final.status == SessionStatus.CANCELLED
    assert manager._sessions[created.id].control.running is False


@pytest.mark.asyncio
async def test_default_executor_used(manager):
    """Test the registry-level default executor runs when none is injected."""

    async def executor(ctx):
        return {"project": ctx.project_id, "options": ctx.options}

    registry = AutopilotSessionManager(default_executor=executor)
    created = await registry.create_session(project_id="p9", prompt="x", options={"k": "v"})
    final = await registry.wait_for_session(created.id)

    assert final.result == {"project": "p9", "options": {"k": "v"}}


@pytest.mark.asyncio
async def test_get_session_without_events(manager):
    """Test include_events=False omits the log but keeps counts."""
    gate = Gate()
    created = await manager.create_session(
        project_id="p1", prompt="x", deps=CreateSessionDeps(autopilot=gate)
    )

    summary = manager.get_session(created.id, include_events=False)
    assert summary.events is None
    assert summary.event_count >= 1
    assert manager.get_session("missing") is None

    gate.release.set()
    await manager.wait_for_session(created.id)


@pytest.mark.asyncio
async def test_wait_for_session_timeout(manager):
    """Test wait_for_session raises when the session stays active."""
    gate = Gate()
    created = await manager.create_session(
        project_id="p1", prompt="x", deps=CreateSessionDeps(autopilot=gate)
    )

    with pytest.raises(TimeoutError):
        await manager.wait_for_session(created.id, timeout=0.05)

    gate.release.set()
    await manager.wait_for_session(created.id)
    assert await manager.wait_for_session("missing") is None


@pytest.mark.asyncio
async def test_resume_requires_ui_session(manager):
    """Test resume_sessions validates its inputs."""
    with pytest.raises(SessionValidationError, match="uiSessionId is required"):
        await manager.resume_sessions("p1", "  ")


@pytest.mark.asyncio
async def test_resume_sessions_filters_and_limits(manager):
    """Test resume returns active sessions for the UI session up to the limit."""
    gates = [Gate(), Gate()]
    first = await manager.create_session(
        project_id="p1", prompt="one", ui_session_id="ui-1", deps=CreateSessionDeps(autopilot=gates[0])
    )
    second = await manager.create_session(
        project_id="p1", prompt="two", ui_session_id="ui-1", deps=CreateSessionDeps(autopilot=gates[1])
    )

    async def done(ctx):
        return None

    finished = await manager.create_session(
        project_id="p1", prompt="three", ui_session_id="ui-1", deps=CreateSessionDeps(autopilot=done)
    )
    await manager.wait_for_session(finished.id)

    limited = await manager.resume_sessions("p1", "ui-1", limit=1)
    assert limited["success"] is True
    assert [s.id for s in limited["resumed"]] == [first.id]
    assert limited["resumed"][0].events is None

    everything = await manager.resume_sessions("p1", "ui-1", limit=0)
    assert [s.id for s in everything["resumed"]] == [first.id, second.id]

    other = await manager.resume_sessions("p1", "ui-2")
    assert other["resumed"] == []

    for gate in gates:
        gate.release.set()
    await manager.wait_for_session(first.id)
    await manager.wait_for_session(second.id)


@pytest.mark.asyncio
async def test_resume_restarts_idle_worker(manager):
    """Test a session whose worker stopped is restarted by resume."""
    runs = []

    async def executor(ctx):
        runs.append(ctx.prompt)
        if len(runs) == 1:
            await asyncio.Event().wait()
        return len(runs)

    created = await manager.create_session(
        project_id="p1", prompt="x", ui_session_id="ui-1", deps=CreateSessionDeps(autopilot=executor)
    )
    while not runs:
        await asyncio.sleep(0.01)

    # Worker considered gone while the session is still active
    session = manager._sessions[created.id]
    stale = session.control.worker
    session.control.running = False

    result = await manager.resume_sessions("p1", "ui-1")
    assert [s.id for s in result["resumed"]] == [created.id]

    final = await manager.wait_for_session(created.id)
    assert final.status == SessionStatus.COMPLETED
    assert final.result == 2
    assert session.control.worker is not stale

    stale.cancel()
    await asyncio.gather(stale, return_exceptions=True)
    assert manager.get_session(created.id).status == SessionStatus.COMPLETED
