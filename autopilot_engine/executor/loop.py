"""Default feature executor: plan, branch, edit, verify, commit and merge."""

import asyncio
import logging
import re
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Optional

from ..agents.base import LocalProjectTools, OpenAIChatClient
from ..agents.code_edit import CodeEditAgent
from ..config.loader import load_config
from ..config.models import EngineConfig, ExecutorConfig, SummarizerConfig
from ..errors import AutopilotError
from ..state.manager import AutopilotContext, SessionDeps
from ..utils.git import GitOps
from ..validation.runner import LocalTestRunner
from ..validation.runs import build_failure_fingerprint, summarize_test_run_for_prompt
from .helpers import (
    DEFAULT_THRESHOLDS,
    DiffFetcher,
    PromptUpdates,
    Rollback,
    append_edit_patch_event,
    append_rollback_events,
    append_run_events,
    create_cancelled_error,
    drain_user_updates,
    extract_edit_patch_files,
    format_plan_summary,
    is_conflict_error,
    safe_append_event,
)

logger = logging.getLogger(__name__)

AsyncFn = Callable[..., Awaitable[Any]]


@dataclass
class ExecutorDeps:
    """Workflow collaborators for :class:`FeatureAutopilot`.

    All callables are awaited with keyword arguments:

    - ``edit(project_id, prompt)`` returns an edit result with ``steps``
    - ``run_tests(project_id, branch_name, thresholds)`` returns a run record
    - ``plan(project_id, prompt)`` returns ``{"parent": {"branchName"}, "children": [{"prompt"}]}``
    - ``create_branch`` / ``checkout(project_id, name)``
    - ``commit(project_id, branch_name, message)`` / ``merge(project_id, branch_name)``
    - ``rollback(project_id, branch_name, prompt, reason)`` discards the
      branch's uncommitted changes and leaves it checked out
    - ``abandon(project_id, branch_name)`` leaves a branch that failed
      verification and restores the base branch
    """

    edit: AsyncFn
    run_tests: AsyncFn
    plan: Optional[AsyncFn] = None
    create_branch: Optional[AsyncFn] = None
    checkout: Optional[AsyncFn] = None
    commit: Optional[AsyncFn] = None
    merge: Optional[AsyncFn] = None
    rollback: Optional[Rollback] = None
    abandon: Optional[AsyncFn] = None
    get_diff_for_files: Optional[DiffFetcher] = None
    project_root: Optional[Path] = None


def slugify_branch_name(prompt: str, prefix: str = "autopilot/") -> str:
    slug = re.sub(r"[^a-z0-9]+", "-", prompt.lower()).strip("-")[:40].rstrip("-")
    return f"{prefix}{slug or 'change'}"


async def default_plan(project_id: str, prompt: str) -> dict:
    """Single-step plan on a branch named after the prompt."""
    return {
        "parent": {"title": prompt, "branchName": slugify_branch_name(prompt)},
        "children": [{"prompt": prompt}],
    }


def run_passed(run: Any) -> bool:
    """A run passes when its status is passed and no coverage gate failed."""
    if not isinstance(run, dict) or run.get("status") != "passed":
        return False
    summary = run.get("summary") if isinstance(run.get("summary"), dict) else {}
    coverage = summary.get("coverage")
    if isinstance(coverage, dict) and coverage.get("passed") is False:
        return False
    return True


def resolve_thresholds(options: dict) -> dict:
    thresholds = dict(DEFAULT_THRESHOLDS)
    overrides = options.get("coverageThresholds") if isinstance(options, dict) else None
    if isinstance(overrides, dict):
        for key, value in overrides.items():
            if key in thresholds and isinstance(value, (int, float)) and not isinstance(value, bool):
                thresholds[key] = value
    return thresholds


def _child_prompts(plan: Any, fallback: str) -> list[str]:
    children = plan.get("children") if isinstance(plan, dict) else None
    prompts = []
    for child in children if isinstance(children, list) else []:
        value = child.get("prompt") if isinstance(child, dict) else child
        text = value.strip() if isinstance(value, str) else ""
        if text:
            prompts.append(text)
    return prompts or [fallback]


class FeatureAutopilot:
    """Runs one feature request against a project through injected collaborators."""

    def __init__(
        self,
        deps: ExecutorDeps,
        config: Optional[ExecutorConfig] = None,
        summarizer: Optional[SummarizerConfig] = None,
    ):
        self.deps = deps
        self.config = config or ExecutorConfig()
        self.summarizer = summarizer or SummarizerConfig()

    async def __call__(self, ctx: AutopilotContext) -> dict:
        return await self.run(ctx)

    async def run(self, ctx: AutopilotContext) -> dict:
        """Execute the feature workflow.

        Raises:
            AutopilotError: Invalid input, missing branch name or failed verification
            AutopilotCancelledError: Cancellation was requested
        """
        project_id = str(ctx.project_id).strip() if ctx.project_id is not None else ""
        if not project_id:
            raise AutopilotError("projectId is required")
        prompt = ctx.prompt.strip() if isinstance(ctx.prompt, str) else ""
        if not prompt:
            raise AutopilotError("prompt is required")

        session = ctx.deps
        thresholds = resolve_thresholds(ctx.options)

        session.report_status("Planning changes")
        plan = await self._plan(project_id, prompt)
        parent = plan.get("parent") if isinstance(plan.get("parent"), dict) else {}
        branch_name = parent.get("branchName")
        if not isinstance(branch_name, str) or not branch_name.strip():
            raise AutopilotError("Planned goal missing branch name")
        branch_name = branch_name.strip()
        queue = _child_prompts(plan, prompt)
        self._emit_plan(session, prompt, branch_name, queue)

        await self._checkpoint(session)
        await self._create_branch(project_id, branch_name)
        session.report_status(f"Working on {branch_name}")

        updates = await self._drain(session, "after branch", project_id, branch_name)
        queue = await self._apply_updates(project_id, prompt, branch_name, queue, updates, session)

        completed: list[dict] = []
        while queue:
            step_prompt = queue.pop(0)
            await self._checkpoint(session)
            await self._run_step(session, project_id, branch_name, step_prompt, thresholds)
            completed.append({"prompt": step_prompt})

            label = "after step" if queue else "before commit"
            updates = await self._drain(session, label, project_id, branch_name)
            queue = await self._apply_updates(project_id, prompt, branch_name, queue, updates, session)

        await self._checkpoint(session)
        session.report_status("Committing changes")
        commit = await self._optional(
            self.deps.commit,
            project_id=project_id,
            branch_name=branch_name,
            message=f"feat: {prompt.splitlines()[0][:72]}",
        )
        safe_append_event(
            session.append_event,
            {
                "type": "git:commit",
                "message": f"Committed changes on {branch_name}",
                "payload": {"branchName": branch_name, "commit": commit},
            },
        )

        await self._checkpoint(session)
        session.report_status("Merging branch")
        merge = await self._optional(self.deps.merge, project_id=project_id, branch_name=branch_name)
        safe_append_event(
            session.append_event,
            {
                "type": "git:merge",
                "message": f"Merged {branch_name}",
                "payload": {"branchName": branch_name, "merge": merge},
            },
        )

        return {
            "kind": "feature",
            "parent": parent,
            "children": completed,
            "branchName": branch_name,
            "merge": merge,
        }

    # ------------------------------------------------------------------
    # Steps
    # ------------------------------------------------------------------

    async def _run_step(
        self,
        session: SessionDeps,
        project_id: str,
        branch_name: str,
        step_prompt: str,
        thresholds: dict,
    ) -> None:
        safe_append_event(
            session.append_event,
            {"type": "step:start", "message": step_prompt, "payload": {"branchName": branch_name}},
        )

        attempt_prompt = step_prompt
        last_fingerprint = None
        for attempt in range(self.config.max_fix_attempts + 1):
            phase = "implement" if attempt == 0 else f"fix-{attempt}"
            await self._checkpoint(session)
            session.report_status(f"Editing ({phase}): {step_prompt}")
            edit_result = await self.deps.edit(project_id=project_id, prompt=attempt_prompt)
            await append_edit_patch_event(
                session.append_event,
                phase=phase,
                branch_name=branch_name,
                step_prompt=step_prompt,
                edit_result=edit_result,
                project_id=project_id,
                get_diff_for_files=self.deps.get_diff_for_files,
                project_root=self.deps.project_root,
                diff_limit=self.config.edit_diff_limit,
            )

            await self._checkpoint(session)
            session.report_status(f"Verifying ({phase}): {step_prompt}")
            run = await self.deps.run_tests(
                project_id=project_id, branch_name=branch_name, thresholds=thresholds
            )
            append_run_events(
                session.append_event,
                phase=phase,
                branch_name=branch_name,
                step_prompt=step_prompt,
                run=run,
            )
            if run_passed(run):
                safe_append_event(
                    session.append_event,
                    {"type": "step:done", "message": step_prompt, "payload": {"branchName": branch_name}},
                )
                return

            fingerprint = build_failure_fingerprint(run, self.summarizer)
            if fingerprint == last_fingerprint:
                logger.info("No progress between fix attempts for %s; giving up", branch_name)
                break
            last_fingerprint = fingerprint
            attempt_prompt = (
                f"{step_prompt}\n\n"
                "The last verification run failed. Fix the problems below without "
                "weakening the tests.\n\n"
                f"{summarize_test_run_for_prompt(run, self.summarizer)}"
            )

        session.report_status("Verification failed; rolling back")
        await append_rollback_events(
            session.append_event,
            self.deps.rollback,
            project_id=project_id,
            branch_name=branch_name,
            step_prompt=step_prompt,
            reason="verification_failed",
        )
        await self._optional(self.deps.abandon, project_id=project_id, branch_name=branch_name)
        raise AutopilotError("Autopilot implementation did not pass tests/coverage.")

    async def _checkpoint(self, session: SessionDeps) -> None:
        """Honor cancel and pause requests between phases."""
        if session.should_cancel():
            raise create_cancelled_error()

        paused = False
        while session.should_pause():
            if not paused:
                paused = True
                safe_append_event(session.append_event, {"type": "lifecycle", "message": "Paused"})
                session.report_status("Paused")
            if session.should_cancel():
                raise create_cancelled_error()
            await asyncio.sleep(self.config.pause_poll_sec)

        if paused:
            safe_append_event(session.append_event, {"type": "lifecycle", "message": "Resumed"})
            session.report_status("Resuming")
        if session.should_cancel():
            raise create_cancelled_error()

    # ------------------------------------------------------------------
    # Collaborators
    # ------------------------------------------------------------------

    async def _plan(self, project_id: str, prompt: str) -> dict:
        planner = self.deps.plan if callable(self.deps.plan) else default_plan
        plan = await planner(project_id=project_id, prompt=prompt)
        return plan if isinstance(plan, dict) else {}

    async def _create_branch(self, project_id: str, branch_name: str) -> None:
        if not callable(self.deps.create_branch):
            return
        try:
            await self.deps.create_branch(project_id=project_id, name=branch_name)
        except Exception as e:
            if not is_conflict_error(e):
                raise
            logger.info("Branch %s already exists; checking it out", branch_name)
            await self._optional(self.deps.checkout, project_id=project_id, name=branch_name)

    @staticmethod
    async def _optional(fn: Optional[AsyncFn], **kwargs: Any) -> Any:
        if not callable(fn):
            return None
        return await fn(**kwargs)

    async def _drain(
        self, session: SessionDeps, label: str, project_id: str, branch_name: str
    ) -> PromptUpdates:
        return await drain_user_updates(
            session.consume_user_updates,
            session.append_event,
            label=label,
            rollback=self.deps.rollback,
            project_id=project_id,
            branch_name=branch_name,
        )

    async def _apply_updates(
        self,
        project_id: str,
        prompt: str,
        branch_name: str,
        queue: list[str],
        updates: PromptUpdates,
        session: SessionDeps,
    ) -> list[str]:
        """Replans replace the remaining queue; plain prompts are appended."""
        if updates.replan:
            goal = updates.replan.get("message") or prompt
            replanned = await self._plan(project_id, goal)
            queue = _child_prompts(replanned, goal)
            self._emit_plan(session, goal, branch_name, queue)
        return queue + list(updates)

    @staticmethod
    def _emit_plan(session: SessionDeps, prompt: str, branch_name: str, steps: list[str]) -> None:
        safe_append_event(
            session.append_event,
            {
                "type": "plan",
                "message": format_plan_summary(prompt, steps),
                "payload": {"branchName": branch_name, "steps": list(steps)},
            },
        )


def build_local_deps(project_id: str, project_root: Path, config: EngineConfig) -> ExecutorDeps:
    """Collaborators backed by a local git checkout, the OpenAI client and pytest."""
    root = Path(project_root).resolve()
    git = GitOps(root)
    agent = CodeEditAgent(
        OpenAIChatClient(config.llm.model_dump()),
        LocalProjectTools({project_id: root}),
        config.agent,
    )
    runner = LocalTestRunner(
        root,
        command=config.executor.test_command,
        timeout_sec=config.executor.test_timeout_sec,
        coverage=config.executor.coverage,
    )
    base_branch: dict[str, str] = {}

    async def edit(project_id: str, prompt: str):
        result = await agent.apply_code_change(project_id, prompt)
        paths = [entry["path"] for entry in extract_edit_patch_files(result.steps)]
        if paths:
            await git.add(paths)
        return result

    async def run_tests(project_id: str, branch_name: str, thresholds: dict) -> dict:
        return await runner.run(thresholds)

    async def create_branch(project_id: str, name: str) -> None:
        base_branch.setdefault("name", await git.get_current_branch())
        await git.create_branch(name)

    async def checkout(project_id: str, name: str) -> None:
        base_branch.setdefault("name", await git.get_current_branch())
        await git.checkout(name)

    async def commit(project_id: str, branch_name: str, message: str) -> dict:
        await git.add()
        return {"sha": await git.commit(message, allow_empty=True)}

    async def merge(project_id: str, branch_name: str) -> dict:
        target = base_branch.get("name") or "main"
        head = await git.merge(branch_name, into=target)
        return {"mergedBranch": branch_name, "current": target, "sha": head}

    async def rollback(project_id: str, branch_name: str, prompt: str, reason: str) -> dict:
        if await git.get_current_branch() != branch_name:
            await git.checkout(branch_name)
        await git.discard_changes()
        return {"branch": branch_name, "rolledBack": True}

    async def abandon(project_id: str, branch_name: str) -> dict:
        target = base_branch.get("name")
        if not target or target == branch_name:
            return {"branch": branch_name, "restored": None}
        await git.discard_changes()
        await git.checkout(target)
        await git.delete_branch(branch_name)
        return {"branch": branch_name, "restored": target}

    return ExecutorDeps(
        edit=edit,
        run_tests=run_tests,
        create_branch=create_branch,
        checkout=checkout,
        commit=commit,
        merge=merge,
        rollback=rollback,
        abandon=abandon,
        project_root=root,
    )


async def autopilot_feature_request(ctx: AutopilotContext) -> dict:
    """Executor used when a session has none injected.

    Runs against the local checkout named by the ``projectRoot`` option,
    with configuration from the optional ``configPath`` option.
    """
    options = ctx.options if isinstance(ctx.options, dict) else {}
    project_root = options.get("projectRoot")
    if not isinstance(project_root, str) or not project_root.strip():
        raise AutopilotError("projectRoot option is required for the default executor")

    config = EngineConfig()
    config_path = options.get("configPath")
    if isinstance(config_path, str) and config_path.strip():
        config = load_config(Path(config_path))

    deps = build_local_deps(str(ctx.project_id), Path(project_root), config)
    autopilot = FeatureAutopilot(deps, config.executor, config.summarizer)
    return await autopilot.run(ctx)
