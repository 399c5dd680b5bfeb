"""Bounded LLM action loop that edits a project one JSON action at a time."""

import json
import logging
import time
from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field

from ..config.models import AgentConfig
from ..safety.guards import (
    LoopDetector,
    PathSafetyError,
    ScopeViolationError,
    StyleScopeContract,
    derive_style_scope_contract,
    enforce_style_write_scope,
    ensure_safe_relative_path,
    normalize_relative_path,
)
from .base import (
    ActionParseError,
    BudgetExceededError,
    LLMClient,
    LoopDetectedError,
    ProjectTools,
)
from .parsing import parse_action_response
from .workspace import build_file_tree_snapshot, list_directory_for_agent

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = """You are an autonomous software engineer that edits a repository on behalf of the user.
Always respond with a SINGLE JSON object describing your next action.

Supported actions:
- {"action":"read_file","path":"relative/path","reason":"why"}
- {"action":"list_dir","path":"relative/dir","reason":"why"}
- {"action":"write_file","path":"relative/file","content":"FULL FILE CONTENT"}
- {"action":"plan","note":"short plan"}
- {"action":"finalize","summary":"concise status"}

Rules:
1. Paths must be relative to the repository root. Do not use absolute paths or traverse outside the workspace.
2. For write_file you must provide the entire desired file content, not a diff.
3. Keep interactions focused on the current goal. Avoid unrelated refactors.
4. Finalize when the requested change is complete or blocked."""

TARGETED_STYLE_MESSAGE = (
    "Style scope contract: this request is element-scoped. Do NOT edit global selectors "
    "(body/html/:root/*/#root). Do NOT satisfy the request by changing app-wide "
    "theme/background tokens. Update only selectors/components tied to the requested target."
)
INVALID_REPLY_MESSAGE = (
    "Your previous reply was invalid. Respond with a single JSON object describing the next action."
)
MISSING_ACTION_MESSAGE = 'Each response must include an "action" field.'
MISSING_CONTENT_MESSAGE = (
    'write_file actions must include a "content" field with the full file contents.'
)
TRUNCATION_MARKER = "\n…truncated…"


class AgentAction(str, Enum):
    """Actions the model may request."""

    READ_FILE = "read_file"
    LIST_DIR = "list_dir"
    WRITE_FILE = "write_file"
    PLAN = "plan"
    FINALIZE = "finalize"

    @classmethod
    def parse(cls, name: str) -> Optional["AgentAction"]:
        if name == "answer":
            return cls.FINALIZE
        try:
            return cls(name)
        except ValueError:
            return None


class AgentStep(BaseModel):
    """One entry in the agent trace."""

    type: str = Field(description="'action' or 'observation'")
    action: str
    target: Optional[str] = None
    meta: Optional[str] = None
    summary: Optional[str] = None
    timestamp: int = Field(default_factory=lambda: int(time.time() * 1000))

    @classmethod
    def action_step(cls, action: str, target: Optional[str], meta: Optional[str] = None) -> "AgentStep":
        return cls(type="action", action=action, target=target or None, meta=meta or None)

    @classmethod
    def observation(cls, action: str, target: Optional[str], summary: str) -> "AgentStep":
        return cls(type="observation", action=action, target=target or None, summary=summary)


class CodeEditResult(BaseModel):
    steps: list[AgentStep]
    summary: str


def truncate_for_observation(value: Any, limit: int) -> str:
    if not isinstance(value, str):
        return ""
    if len(value) <= limit:
        return value
    return f"{value[:limit]}{TRUNCATION_MARKER}"


def build_initial_user_message(prompt: str, file_tree: str) -> str:
    return "\n\n".join(
        [
            "Repository snapshot (truncated):",
            file_tree or "(file tree unavailable)",
            "User goal:",
            prompt.strip(),
        ]
    )


def _text(payload: dict, key: str) -> str:
    value = payload.get(key)
    return value.strip() if isinstance(value, str) else ""


class CodeEditAgent:
    """Drives a conversation with the LLM until it finalizes or a ceiling is hit."""

    def __init__(self, llm: LLMClient, tools: ProjectTools, config: Optional[AgentConfig] = None):
        """Initialize agent.

        Args:
            llm: Text generator
            tools: Project file tools
            config: Action, write and observation limits
        """
        self.llm = llm
        self.tools = tools
        self.config = config or AgentConfig()

    async def apply_code_change(self, project_id: str, prompt: str) -> CodeEditResult:
        """Run the edit loop for one goal.

        Raises:
            ValueError: If ``project_id`` or ``prompt`` is missing
            LoopDetectedError: The model is repeating itself without writing
            BudgetExceededError: Write or action ceiling reached
        """
        if not project_id:
            raise ValueError("projectId is required")
        if not isinstance(prompt, str) or not prompt.strip():
            raise ValueError("prompt is required")

        run = _EditRun(self, str(project_id), prompt)
        return await run.execute()


class _EditRun:
    """State for a single ``apply_code_change`` call."""

    def __init__(self, agent: CodeEditAgent, project_id: str, prompt: str):
        self.llm = agent.llm
        self.tools = agent.tools
        self.config = agent.config
        self.project_id = project_id
        self.prompt = prompt
        self.contract: Optional[StyleScopeContract] = derive_style_scope_contract(prompt)
        self.loop_detector = LoopDetector(self.config.loop_window)
        self.steps: list[AgentStep] = []
        self.messages: list[dict] = []
        self.writes = 0
        self.project_root = None

        self._handlers = {
            AgentAction.READ_FILE: self._handle_read_file,
            AgentAction.LIST_DIR: self._handle_list_dir,
            AgentAction.WRITE_FILE: self._handle_write_file,
            AgentAction.PLAN: self._handle_plan,
            AgentAction.FINALIZE: self._handle_finalize,
        }

    async def execute(self) -> CodeEditResult:
        self.project_root = await self.tools.get_project_root(self.project_id)
        file_tree = build_file_tree_snapshot(self.project_root, self.config.max_file_tree_entries)

        self.messages = [
            {"role": "system", "content": SYSTEM_PROMPT},
            {"role": "user", "content": build_initial_user_message(self.prompt, file_tree)},
        ]
        if self.contract is not None and self.contract.is_targeted:
            self.messages.append({"role": "user", "content": TARGETED_STYLE_MESSAGE})

        for iteration in range(self.config.max_actions):
            response = await self.llm.generate_response(
                self.messages,
                {
                    "max_tokens": self.config.max_tokens,
                    "temperature": self.config.temperature,
                    "phase": "autopilot-edit",
                    "request_type": "code_edit",
                },
            )

            try:
                payload, name = self._parse(response)
            except ActionParseError as e:
                logger.debug("Iteration %d: %s", iteration, e)
                self._say(str(e))
                continue

            self.loop_detector.record(name, payload.get("path") or None)
            self.messages.append({"role": "assistant", "content": json.dumps(payload)})
            if self.loop_detector.is_looping():
                logger.warning("Code edit loop aborted for project %s: looping", self.project_id)
                raise LoopDetectedError("Code edit agent detected a potential infinite loop.")

            logger.debug("Iteration %d: %s %s", iteration, name, payload.get("path") or "")
            action = AgentAction.parse(name)
            if action is None:
                self._handle_unsupported(name, payload)
                continue

            # Only finalize returns a summary
            summary = await self._handlers[action](payload)
            if summary is not None:
                return CodeEditResult(steps=self.steps, summary=summary)

        logger.warning("Code edit loop aborted for project %s: action ceiling", self.project_id)
        raise BudgetExceededError(
            "Code edit agent exceeded the maximum number of steps without finalizing."
        )

    def _parse(self, response: Any) -> tuple[dict, str]:
        payload = parse_action_response(response)
        if not isinstance(payload, dict):
            raise ActionParseError(INVALID_REPLY_MESSAGE)
        raw_name = payload.get("action")
        name = raw_name.strip().lower() if isinstance(raw_name, str) else ""
        if not name:
            raise ActionParseError(MISSING_ACTION_MESSAGE)
        return payload, name

    def _say(self, content: str) -> None:
        self.messages.append({"role": "user", "content": content})

    def _reply(self, body: dict) -> None:
        self._say(json.dumps(body))

    def _record(self, action: str, target: Optional[str], meta: Optional[str], summary: str) -> None:
        self.steps.append(AgentStep.action_step(action, target, meta))
        self.steps.append(AgentStep.observation(action, target, summary))

    # ------------------------------------------------------------------
    # Handlers
    # ------------------------------------------------------------------

    async def _handle_read_file(self, payload: dict) -> Optional[str]:
        action = AgentAction.READ_FILE.value
        reason = _text(payload, "reason") or None
        try:
            path = ensure_safe_relative_path(payload.get("path"))
        except PathSafetyError as e:
            target = normalize_relative_path(payload.get("path")) or None
            self._record(action, target, reason, f"Error: {e}")
            self._reply({"action": action, "path": target, "error": str(e)})
            return

        try:
            content = await self.tools.read_project_file(self.project_id, path)
        except (OSError, UnicodeDecodeError) as e:
            error = str(e) or "Unable to read file"
            self._record(action, path, reason, f"Error: {error}")
            self._reply({"action": action, "path": path, "error": error})
            return

        self._record(action, path, reason, f"Read {len(content)} characters")
        self._reply(
            {
                "action": action,
                "path": path,
                "content": truncate_for_observation(content, self.config.max_observation_chars),
            }
        )

    async def _handle_list_dir(self, payload: dict) -> Optional[str]:
        action = AgentAction.LIST_DIR.value
        reason = _text(payload, "reason") or None
        try:
            listing = list_directory_for_agent(
                self.project_root, payload.get("path") or ".", self.config.max_list_entries
            )
        except PermissionError as e:
            listing = {
                "path": normalize_relative_path(payload.get("path")) or ".",
                "entries": [],
                "error": str(e),
            }

        path = listing["path"]
        if listing.get("error"):
            self._record(action, path, reason, f"Error: {listing['error']}")
            self._reply({"action": action, "path": path, "error": listing["error"]})
            return

        self._record(action, path, reason, f"Listed {len(listing['entries'])} entries")
        self._reply({"action": action, "path": path, "entries": listing["entries"]})

    async def _handle_write_file(self, payload: dict) -> Optional[str]:
        action = AgentAction.WRITE_FILE.value
        reason = _text(payload, "reason") or None
        if self.writes >= self.config.max_writes:
            logger.warning("Code edit loop aborted for project %s: write ceiling", self.project_id)
            raise BudgetExceededError("Write limit reached while attempting to apply changes.")

        content = payload.get("content")
        if not isinstance(content, str):
            self._say(MISSING_CONTENT_MESSAGE)
            return

        target = normalize_relative_path(payload.get("path")) or None
        try:
            if len(content) > self.config.max_file_chars:
                raise ScopeViolationError(
                    f"write_file content exceeds {self.config.max_file_chars} characters"
                )
            path = ensure_safe_relative_path(payload.get("path"))
            enforce_style_write_scope(self.contract, path, content)
        except (PathSafetyError, ScopeViolationError) as e:
            self._record(action, target, reason, f"Rejected: {e}")
            self._reply({"action": action, "path": target, "status": "rejected", "error": str(e)})
            return

        await self.tools.write_project_file(self.project_id, path, content)
        self.writes += 1
        summary = f"Wrote {len(content)} characters"
        self._record(action, path, reason, summary)
        self._reply({"action": action, "path": path, "status": "ok", "summary": summary})

    async def _handle_plan(self, payload: dict) -> Optional[str]:
        note = _text(payload, "note")
        self.steps.append(AgentStep.action_step(AgentAction.PLAN.value, None, note or "Updated plan."))
        self._reply({"action": "plan_ack", "note": note or "Plan acknowledged."})

    async def _handle_finalize(self, payload: dict) -> Optional[str]:
        summary = _text(payload, "summary") or _text(payload, "answer") or "Completed edit session."
        self.steps.append(AgentStep.action_step(AgentAction.FINALIZE.value, None, summary))
        return summary

    def _handle_unsupported(self, name: str, payload: dict) -> None:
        target = payload.get("path") if isinstance(payload.get("path"), str) else None
        self.steps.append(AgentStep.action_step(name, target, "Unsupported action"))
        self.steps.append(AgentStep.observation(name, target, "Action rejected."))
        self._reply({"error": f'Action "{name}" is not supported.'})
