"""Agent errors and collaborator interfaces."""

import asyncio
import os
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any


class AgentError(Exception):
    """Agent execution error."""

    pass


class LoopDetectedError(AgentError):
    """The action loop is repeating itself without progress. Fatal to the run."""

    pass


class BudgetExceededError(AgentError):
    """Write or action ceiling reached. Fatal to the run."""

    pass


class ActionParseError(AgentError):
    """The model reply held no usable JSON action. Recovered by the loop."""

    pass


class LLMClient(ABC):
    """Text generator consumed as a black box."""

    @abstractmethod
    async def generate_response(self, messages: list[dict], options: dict) -> str:
        """Return the completion text for a chat transcript.

        Args:
            messages: ``[{"role": ..., "content": ...}]``
            options: Generation options (``max_tokens``, ``temperature``, tags)

        Returns:
            Raw completion text, possibly malformed
        """
        pass


class ProjectTools(ABC):
    """Project file-system tools."""

    @abstractmethod
    async def get_project_root(self, project_id: str) -> Path:
        pass

    @abstractmethod
    async def read_project_file(self, project_id: str, rel_path: str) -> str:
        """Read a project file.

        Raises:
            FileNotFoundError: Missing file
            OSError: Any other I/O failure
        """
        pass

    @abstractmethod
    async def write_project_file(self, project_id: str, rel_path: str, content: str) -> None:
        """Write a project file, creating parent directories.

        Raises:
            OSError: On I/O failure
        """
        pass


class LocalProjectTools(ProjectTools):
    """Project tools backed by local directories."""

    def __init__(self, roots: dict[str, Path]):
        """Initialize tools.

        Args:
            roots: Project id -> project root directory
        """
        self.roots = {str(key): Path(value).resolve() for key, value in roots.items()}

    async def get_project_root(self, project_id: str) -> Path:
        root = self.roots.get(str(project_id))
        if root is None:
            raise FileNotFoundError(f"Unknown project: {project_id}")
        return root

    async def _resolve(self, project_id: str, rel_path: str) -> Path:
        root = await self.get_project_root(project_id)
        target = (root / rel_path).resolve()
        if target != root and root not in target.parents:
            raise PermissionError(f"Path escapes project root: {rel_path}")
        return target

    async def read_project_file(self, project_id: str, rel_path: str) -> str:
        target = await self._resolve(project_id, rel_path)
        return await asyncio.to_thread(target.read_text, encoding="utf-8")

    async def write_project_file(self, project_id: str, rel_path: str, content: str) -> None:
        target = await self._resolve(project_id, rel_path)
        await asyncio.to_thread(self._write, target, content)

    @staticmethod
    def _write(target: Path, content: str) -> None:
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(content, encoding="utf-8")


class OpenAIChatClient(LLMClient):
    """LLM client using the OpenAI chat completions API."""

    def __init__(self, config: dict):
        """Initialize client.

        Args:
            config: LLM config with model, api_key_env, timeout_sec
        """
        self.config = config
        self.model = config.get("model") or os.environ.get("OPENAI_MODEL")
        self.api_key_env = config.get("api_key_env") or "OPENAI_API_KEY"
        self.timeout_sec = config.get("timeout_sec", 120)
        self._client: Any = None

    def _get_client(self) -> Any:
        if self._client is None:
            import openai

            api_key = os.environ.get(self.api_key_env)
            if not api_key:
                raise AgentError(f"API key not found: {self.api_key_env}")
            self._client = openai.AsyncOpenAI(api_key=api_key)
        return self._client

    async def generate_response(self, messages: list[dict], options: dict) -> str:
        if not self.model:
            raise AgentError("Model not configured. Set llm.model or OPENAI_MODEL.")
        client = self._get_client()
        try:
            response = await client.chat.completions.create(
                model=self.model,
                messages=messages,
                max_tokens=options.get("max_tokens"),
                temperature=options.get("temperature", 0),
                timeout=self.timeout_sec,
            )
        except Exception as e:
            raise AgentError(f"OpenAI request error: {e}")
        return response.choices[0].message.content or ""
