"""Configuration models for the autopilot engine."""

from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class SessionConfig(BaseModel):
    """Session manager limits."""

    event_limit: int = Field(default=500, ge=1, description="Max events kept per session")
    resume_limit: int = Field(default=5, ge=1, description="Default max sessions resumed per call")
    wait_timeout_sec: float = Field(default=5.0, description="Default wait_for_session timeout")


class AgentConfig(BaseModel):
    """Code edit agent limits."""

    max_actions: int = Field(default=40, ge=1, description="Max LLM round-trips per run")
    max_writes: int = Field(default=12, ge=0, description="Max successful file writes per run")
    max_file_tree_entries: int = Field(default=400, description="Entries in the initial snapshot")
    max_list_entries: int = Field(default=200, description="Entries returned by list_dir")
    max_observation_chars: int = Field(
        default=20_000, description="Characters of file content fed back to the model"
    )
    max_file_chars: int = Field(default=200_000, description="Max characters per write_file")
    loop_window: int = Field(
        default=6,
        ge=2,
        description="Sliding window used by the loop detector (exploratory read budget)",
    )
    max_tokens: int = Field(default=800, description="Completion token cap per action")
    temperature: float = Field(default=0.0, description="Sampling temperature")


class SummarizerConfig(BaseModel):
    """Test-run summarization limits."""

    max_failures: int = Field(default=15, description="Max failing tests extracted per run")
    payload_log_lines: int = Field(default=20, description="Log tail kept per workspace")
    prompt_failures: int = Field(default=5, description="Failures listed in prompt summaries")
    prompt_line_refs: int = Field(default=12, description="Uncovered lines listed per file")
    message_chars: int = Field(default=280, description="Max characters per failure message")


class ExecutorConfig(BaseModel):
    """Default feature executor settings."""

    max_fix_attempts: int = Field(default=2, ge=0, description="Verification fix retries per step")
    pause_poll_sec: float = Field(default=0.25, description="Sleep between pause polls")
    edit_diff_limit: int = Field(default=25_000, description="Max diff characters per edit event")
    test_command: str = Field(default="pytest -q", description="Local test command for the CLI")
    test_timeout_sec: int = Field(default=600, description="Local test command timeout")
    coverage: bool = Field(default=True, description="Gate local test runs on pytest-cov coverage")


class LLMConfig(BaseModel):
    """LLM client configuration."""

    model: Optional[str] = Field(
        default=None,
        description="Chat model name (falls back to OPENAI_MODEL)",
    )
    api_key_env: str = Field(default="OPENAI_API_KEY", description="API key env var name")
    timeout_sec: int = Field(default=120, description="Per-request timeout")


class LoggingConfig(BaseModel):
    """Logging configuration."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    level: str = Field(default="INFO", description="Log level")
    log_dir: Path = Field(default=Path(".autopilot/logs"), description="Log directory")
    rotation_mb: int = Field(default=10, description="Log rotation size (MB)")
    retention_days: int = Field(default=7, description="Log retention days")


class EngineConfig(BaseModel):
    """Main configuration model."""

    model_config = ConfigDict(arbitrary_types_allowed=True)

    session: SessionConfig = Field(default_factory=SessionConfig)
    agent: AgentConfig = Field(default_factory=AgentConfig)
    summarizer: SummarizerConfig = Field(default_factory=SummarizerConfig)
    executor: ExecutorConfig = Field(default_factory=ExecutorConfig)
    llm: LLMConfig = Field(default_factory=LLMConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
