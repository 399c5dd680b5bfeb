"""Event emission and user-update helpers shared by autopilot executors."""

import logging
import re
from collections.abc import Awaitable, Callable, Iterable, Mapping
from pathlib import Path
from types import MappingProxyType
from typing import Any, Optional

from ..errors import AutopilotCancelledError
from ..utils.git import GitOps
from ..validation.runs import (
    extract_failing_tests_from_workspace_runs,
    summarize_workspace_runs_for_payload,
)

logger = logging.getLogger(__name__)

EDIT_DIFF_LIMIT = 25_000
DIFF_TRUNCATION_MARKER = "\n…diff truncated…"

DEFAULT_THRESHOLDS = MappingProxyType(
    {"lines": 100, "statements": 100, "functions": 100, "branches": 100}
)

CONTROL_KINDS = frozenset({"stop", "pause", "resume", "cancel", "rollback", "goal-update", "new-goal"})
REPLAN_KINDS = frozenset({"goal-update", "new-goal"})

_WROTE_RE = re.compile(r"\bWrote\s+(\d+)\s+characters\b", re.IGNORECASE)
_WINDOWS_ABS_RE = re.compile(r"^[a-zA-Z]:\\")

AppendEvent = Callable[[Mapping], None]
DiffFetcher = Callable[[str, list[dict]], Awaitable[Optional[str]]]
Rollback = Callable[..., Awaitable[Any]]

CancelledError = AutopilotCancelledError


class PromptUpdates(list):
    """Prompts drained from the user queue, plus an optional replan request."""

    def __init__(self, prompts: Iterable[str] = (), replan: Optional[dict] = None):
        super().__init__(prompts)
        self.replan = replan


def is_conflict_error(error: Any) -> bool:
    if getattr(error, "status_code", None) == 409:
        return True
    return bool(re.search(r"already exists", str(error or ""), re.IGNORECASE))


def safe_append_event(append_event: Optional[AppendEvent], event: Mapping) -> None:
    """Emit an event; timeline failures never interrupt the run."""
    if not callable(append_event):
        return
    try:
        append_event(event)
    except Exception as e:
        logger.debug("Event %s dropped: %s", event.get("type"), e)


def _step_value(step: Any, key: str) -> Any:
    if isinstance(step, Mapping):
        return step.get(key)
    return getattr(step, key, None)


def extract_edit_patch_files(steps: Any) -> list[dict]:
    """Files written during an edit run, in first-touch order, with character counts."""
    files: dict[str, dict] = {}
    for step in steps or []:
        if step is None or _step_value(step, "action") != "write_file":
            continue
        target = _step_value(step, "target")
        if not isinstance(target, str) or not target.strip():
            continue
        path = target.strip()
        step_type = _step_value(step, "type")

        if step_type == "action":
            files.setdefault(path, {"path": path, "chars": None})
        elif step_type == "observation":
            summary = _step_value(step, "summary")
            match = _WROTE_RE.search(summary) if isinstance(summary, str) else None
            entry = files.setdefault(path, {"path": path, "chars": None})
            if match:
                entry["chars"] = int(match.group(1))
    return list(files.values())


def normalize_edit_patch_path(value: Any) -> Optional[str]:
    if not isinstance(value, str):
        return None
    trimmed = value.strip()
    if not trimmed:
        return None
    if ".." in trimmed or trimmed.startswith("/") or _WINDOWS_ABS_RE.match(trimmed):
        return None
    return trimmed


async def default_get_diff_for_files(project_root: Optional[Path], files: list[dict]) -> Optional[str]:
    """Staged diff for ``files`` in the project's git repository."""
    paths = [p for p in (normalize_edit_patch_path(f.get("path")) for f in files or []) if p]
    if project_root is None or not paths:
        return None
    diff = await GitOps(Path(project_root)).get_diff(cached=True, paths=paths)
    return diff if diff.strip() else None


async def append_edit_patch_event(
    append_event: Optional[AppendEvent],
    *,
    phase: str,
    branch_name: Optional[str],
    step_prompt: str,
    edit_result: Any,
    project_id: str,
    get_diff_for_files: Optional[DiffFetcher] = None,
    project_root: Optional[Path] = None,
    diff_limit: int = EDIT_DIFF_LIMIT,
) -> None:
    """Emit ``edit:patch`` describing the files an edit run touched.

    Nothing is emitted when the run wrote no files. Diff failures are logged
    and the event is sent without a diff.
    """
    files = extract_edit_patch_files(_step_value(edit_result, "steps"))
    if not files:
        return

    diff = None
    diff_truncated = False
    diff_original_chars = None
    try:
        if callable(get_diff_for_files):
            raw_diff = await get_diff_for_files(project_id, files)
        else:
            raw_diff = await default_get_diff_for_files(project_root, files)
        if isinstance(raw_diff, str) and raw_diff.strip():
            diff_original_chars = len(raw_diff)
            if len(raw_diff) > diff_limit:
                diff = f"{raw_diff[:diff_limit]}{DIFF_TRUNCATION_MARKER}"
                diff_truncated = True
            else:
                diff = raw_diff
    except Exception as e:
        logger.warning("Diff unavailable for %s: %s", project_id, e)

    safe_append_event(
        append_event,
        {
            "type": "edit:patch",
            "message": "Applied file edits",
            "payload": {
                "phase": phase,
                "branchName": branch_name,
                "prompt": step_prompt,
                "files": files,
                "diff": diff,
                "diffTruncated": diff_truncated,
                "diffOriginalChars": diff_original_chars,
            },
            "meta": None,
        },
    )


def append_run_events(
    append_event: Optional[AppendEvent],
    *,
    phase: str,
    branch_name: Optional[str],
    step_prompt: str,
    run: Any,
) -> None:
    """Emit ``test:run`` followed by ``coverage:run`` for a verification run."""
    run = run if isinstance(run, dict) else {}
    workspace_runs = run.get("workspaceRuns") if isinstance(run.get("workspaceRuns"), list) else []
    failing_tests = (
        extract_failing_tests_from_workspace_runs(workspace_runs)
        if run.get("status") == "failed"
        else []
    )
    summary = run.get("summary")

    safe_append_event(
        append_event,
        {
            "type": "test:run",
            "message": "Test run completed",
            "payload": {
                "phase": phase,
                "branchName": branch_name,
                "prompt": step_prompt,
                "status": run.get("status"),
                "summary": summary,
                "output": summarize_workspace_runs_for_payload(workspace_runs),
                "failingTests": failing_tests,
            },
            "meta": None,
        },
    )

    coverage = summary.get("coverage") if isinstance(summary, dict) else None
    safe_append_event(
        append_event,
        {
            "type": "coverage:run",
            "message": "Coverage evaluated",
            "payload": {
                "phase": phase,
                "branchName": branch_name,
                "prompt": step_prompt,
                "passed": bool(isinstance(coverage, dict) and coverage.get("passed")),
                "coverage": coverage,
            },
            "meta": None,
        },
    )


async def append_rollback_events(
    append_event: Optional[AppendEvent],
    rollback: Optional[Rollback],
    *,
    project_id: str,
    branch_name: Optional[str],
    step_prompt: str,
    reason: str,
) -> None:
    """Run ``rollback`` bracketed by planned, applied and complete events.

    Rollback errors are reported in ``rollback:applied`` and not raised.
    """
    if not callable(rollback):
        return

    base = {
        "projectId": project_id,
        "branchName": branch_name,
        "prompt": step_prompt,
        "reason": reason,
    }
    safe_append_event(
        append_event,
        {"type": "rollback:planned", "message": "Rollback planned", "payload": dict(base), "meta": None},
    )

    result = None
    error_message = None
    try:
        result = await rollback(
            project_id=project_id, branch_name=branch_name, prompt=step_prompt, reason=reason
        )
    except Exception as e:
        error_message = str(e) or "Unknown error"
        logger.warning("Rollback failed for %s: %s", project_id, error_message)

    safe_append_event(
        append_event,
        {
            "type": "rollback:applied",
            "message": "Rollback applied",
            "payload": {
                **base,
                "ok": error_message is None,
                "result": None if error_message else result,
                "error": error_message,
            },
            "meta": None,
        },
    )
    safe_append_event(
        append_event,
        {"type": "rollback:complete", "message": "Rollback complete", "payload": dict(base), "meta": None},
    )


def _update_text(update: Mapping) -> str:
    for key in ("message", "text", "prompt"):
        value = update.get(key)
        if value is not None:
            return value.strip() if isinstance(value, str) else str(value).strip()
    return ""


def update_to_prompt(update: Any) -> str:
    """Turn a queued update into a prompt string; control updates yield ''."""
    if isinstance(update, str):
        return update.strip()
    if isinstance(update, Mapping):
        if update.get("kind") in CONTROL_KINDS:
            return ""
        return _update_text(update)
    return "" if update is None else str(update).strip()


def consume_user_updates_safe(consume_user_updates: Optional[Callable[[], Any]]) -> list:
    if not callable(consume_user_updates):
        return []
    try:
        updates = consume_user_updates()
    except Exception as e:
        logger.warning("Could not read user updates: %s", e)
        return []
    return updates if isinstance(updates, list) else []


def consume_updates_as_prompts(consume_user_updates: Optional[Callable[[], Any]]) -> list[str]:
    prompts = (update_to_prompt(u) for u in consume_user_updates_safe(consume_user_updates))
    return [p for p in prompts if p]


def extract_rollback_message(update: Any) -> str:
    if not isinstance(update, Mapping):
        return ""
    return _update_text(update)


def is_replan_update(update: Any) -> bool:
    return isinstance(update, Mapping) and update.get("kind") in REPLAN_KINDS


async def drain_user_updates(
    consume_user_updates: Optional[Callable[[], Any]],
    append_event: Optional[AppendEvent] = None,
    *,
    label: Optional[str] = None,
    rollback: Optional[Rollback] = None,
    project_id: str = "",
    branch_name: Optional[str] = None,
) -> PromptUpdates:
    """Drain queued user updates.

    Rollback requests run first. Remaining non-control updates become
    prompts and are announced with a ``plan`` event. The newest goal-update
    or new-goal request is surfaced as ``replan`` on the returned list.
    """
    raw_updates = consume_user_updates_safe(consume_user_updates)

    for update in raw_updates:
        if isinstance(update, Mapping) and update.get("kind") == "rollback":
            await append_rollback_events(
                append_event,
                rollback,
                project_id=project_id,
                branch_name=branch_name,
                step_prompt=extract_rollback_message(update) or "Rollback requested",
                reason="user_requested",
            )

    prompts = [p for p in (update_to_prompt(u) for u in raw_updates) if p]

    replan = None
    replans = [u for u in raw_updates if is_replan_update(u)]
    if replans:
        latest = replans[-1]
        replan = {"kind": latest["kind"], "message": extract_rollback_message(latest)}

    if prompts:
        safe_append_event(
            append_event,
            {
                "type": "plan",
                "message": f"Plan updated ({label})" if label else "Plan updated",
                "payload": {"addedPrompts": prompts},
                "meta": None,
            },
        )

    return PromptUpdates(prompts, replan=replan)


def format_plan_summary(prompt: Any, steps: Any) -> str:
    goal = prompt.strip() if isinstance(prompt, str) else ""
    normalized = [s.strip() for s in steps or [] if isinstance(s, str) and s.strip()]
    title = f"Plan for: {goal}" if goal else "Plan"
    if not normalized:
        return title
    return "\n".join([title] + [f"{idx}. {step}" for idx, step in enumerate(normalized, start=1)])


def create_cancelled_error() -> AutopilotCancelledError:
    return CancelledError("Autopilot cancelled")
