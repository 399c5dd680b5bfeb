"""Autopilot engine CLI entrypoint."""

import asyncio
import json
import sys
from pathlib import Path

import click

from .config.loader import ConfigError, create_default_config, load_config
from .config.models import EngineConfig
from .executor.loop import FeatureAutopilot, build_local_deps
from .state.manager import AutopilotSessionManager
from .state.session import SessionStatus, SessionSummary
from .utils.logging import setup_logging
from .validation.runs import build_failure_fingerprint, summarize_test_run_for_prompt

CONTEXT_SETTINGS = {
    "help_option_names": ["-h", "--help"],
}


@click.group(context_settings=CONTEXT_SETTINGS)
@click.option(
    "--config",
    "-c",
    default=".autopilot/engine.yml",
    help="Path to configuration file",
    type=click.Path(exists=False, path_type=Path),
)
@click.option(
    "--verbose",
    "-v",
    is_flag=True,
    help="Enable verbose output",
)
@click.pass_context
def cli(ctx: click.Context, config: Path, verbose: bool) -> None:
    """Autopilot engine - run LLM-driven edit sessions against a local project."""
    setup_logging(level="DEBUG" if verbose else "INFO")

    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config
    ctx.obj["verbose"] = verbose


@cli.command()
@click.option(
    "--force",
    "-f",
    is_flag=True,
    help="Overwrite existing configuration",
)
@click.pass_context
def init(ctx: click.Context, force: bool) -> None:
    """Write a default configuration file."""
    config_path: Path = ctx.obj["config_path"]

    if config_path.exists() and not force:
        click.echo(f"Configuration already exists: {config_path}")
        click.echo("Use --force to overwrite")
        sys.exit(1)

    try:
        create_default_config(config_path)
    except OSError as e:
        click.echo(f"✗ Failed to create configuration: {e}", err=True)
        sys.exit(1)
    click.echo(f"✓ Created configuration: {config_path}")


def _load_config_or_default(config_path: Path) -> EngineConfig:
    if not config_path.exists():
        return EngineConfig()
    try:
        config = load_config(config_path)
    except ConfigError as e:
        click.echo(f"✗ Configuration error: {e}", err=True)
        sys.exit(1)
    click.echo(f"✓ Configuration loaded: {config_path}")
    return config


@cli.command()
@click.argument("prompt")
@click.option(
    "--project-root",
    "-r",
    required=True,
    type=click.Path(exists=True, file_okay=False, path_type=Path),
    help="Git checkout to edit",
)
@click.option(
    "--project-id",
    default="local",
    help="Project identifier used in events",
)
@click.option(
    "--timeout",
    default=3600.0,
    type=float,
    help="Seconds to wait for the session to finish",
)
@click.pass_context
def run(ctx: click.Context, prompt: str, project_root: Path, project_id: str, timeout: float) -> None:
    """Run one autopilot session for PROMPT."""
    config = _load_config_or_default(ctx.obj["config_path"])
    verbose: bool = ctx.obj["verbose"]

    setup_logging(
        level=config.logging.level,
        log_dir=config.logging.log_dir,
        rotation_mb=config.logging.rotation_mb,
        retention_days=config.logging.retention_days,
        use_colors=verbose,
        console=verbose,
    )

    summary = asyncio.run(
        _run_async(
            config=config,
            prompt=prompt,
            project_root=project_root,
            project_id=project_id,
            timeout=timeout,
        )
    )
    _print_summary(summary)
    sys.exit(0 if summary is not None and summary.status == SessionStatus.COMPLETED else 1)


async def _run_async(
    config: EngineConfig,
    prompt: str,
    project_root: Path,
    project_id: str,
    timeout: float,
) -> SessionSummary | None:
    """Create a session, wait for it and return the final summary.

    Args:
        config: Engine configuration
        prompt: Feature request
        project_root: Local checkout
        project_id: Project identifier
        timeout: Seconds to wait

    Returns:
        Final session summary, or None if the session vanished
    """
    executor = FeatureAutopilot(
        build_local_deps(project_id, project_root, config),
        config.executor,
        config.summarizer,
    )
    manager = AutopilotSessionManager(config=config.session, default_executor=executor)

    created = await manager.create_session(project_id=project_id, prompt=prompt)
    click.echo(f"Session {created.id} started")
    try:
        return await manager.wait_for_session(created.id, timeout=timeout)
    except TimeoutError:
        click.echo(f"✗ Session still running after {timeout:.0f}s; cancelling", err=True)
        manager.cancel_session(created.id, project_id, reason="cli_timeout")
        return manager.get_session(created.id)


def _print_summary(summary: SessionSummary | None) -> None:
    if summary is None:
        click.echo("✗ Session not found", err=True)
        return

    for event in summary.events or []:
        click.echo(f"  [{event.type}] {event.message}")
    if summary.events_trimmed:
        click.echo(f"  ({summary.events_trimmed} earlier events trimmed)")

    if summary.status == SessionStatus.COMPLETED:
        click.echo(f"✓ {summary.status_message}")
    else:
        click.echo(f"✗ {summary.status.value}: {summary.error or summary.status_message}", err=True)


@cli.command()
@click.argument("run_json", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def fingerprint(ctx: click.Context, run_json: Path) -> None:
    """Print the prompt summary and failure fingerprint of a recorded test run."""
    config = _load_config_or_default(ctx.obj["config_path"])
    try:
        record = json.loads(run_json.read_text(encoding="utf-8"))
    except (OSError, ValueError) as e:
        click.echo(f"✗ Could not read run record: {e}", err=True)
        sys.exit(1)

    click.echo(summarize_test_run_for_prompt(record, config.summarizer))
    click.echo("")
    click.echo(build_failure_fingerprint(record, config.summarizer))


if __name__ == "__main__":
    cli()
