"""Subprocess management with timeouts and per-stream capture."""

import asyncio
import logging
import os
import shlex
import signal
from pathlib import Path

logger = logging.getLogger(__name__)


class SubprocessError(Exception):
    """Subprocess execution error."""

    def __init__(
        self,
        message: str,
        exit_code: int | None = None,
        timed_out: bool = False,
    ):
        super().__init__(message)
        self.exit_code = exit_code
        self.timed_out = timed_out


class SubprocessManager:
    """Managed subprocess execution with a hard timeout."""

    def __init__(self, timeout_sec: float):
        """Initialize subprocess manager.

        Args:
            timeout_sec: Hard timeout for process
        """
        self.timeout_sec = timeout_sec

    @staticmethod
    async def _terminate_process(
        process: asyncio.subprocess.Process,
        timeout_sec: float = 2.0,
    ) -> None:
        """Terminate a subprocess and its process group (best-effort)."""
        if process.returncode is not None:
            return

        try:
            if os.name != "nt":
                os.killpg(process.pid, signal.SIGTERM)
            else:
                process.terminate()
        except ProcessLookupError:
            return

        try:
            await asyncio.wait_for(process.wait(), timeout=timeout_sec)
            return
        except asyncio.TimeoutError:
            pass

        try:
            if os.name != "nt":
                os.killpg(process.pid, signal.SIGKILL)
            else:
                process.kill()
        except ProcessLookupError:
            return
        await process.wait()

    async def run(
        self,
        command: list[str],
        cwd: Path | None = None,
        env: dict[str, str] | None = None,
    ) -> dict:
        """Run command with timeout.

        Args:
            command: Command and arguments
            cwd: Working directory
            env: Environment variables

        Returns:
            Result dict with keys:
                - success: bool
                - output: str (stdout and stderr interleaved)
                - lines: list[dict] (``{"stream", "message"}`` per line)
                - exit_code: int | None
                - timed_out: bool

        Raises:
            SubprocessError: When the process cannot be started
        """
        logger.debug("Running command: %s", self._format_command_for_log(command))

        try:
            process = await asyncio.create_subprocess_exec(
                *command,
                cwd=cwd,
                env=env,
                start_new_session=(os.name != "nt"),
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except FileNotFoundError:
            if cwd is not None and not Path(cwd).exists():
                raise SubprocessError(
                    f"Working directory not found: {cwd} (while running: {command[0]})"
                )
            raise SubprocessError(f"Command not found: {command[0]}")

        lines: list[dict] = []
        readers = asyncio.gather(
            self._read_stream(process.stdout, "stdout", lines),
            self._read_stream(process.stderr, "stderr", lines),
        )

        timed_out = False
        try:
            await asyncio.wait_for(process.wait(), timeout=self.timeout_sec)
        except asyncio.TimeoutError:
            timed_out = True
            await self._terminate_process(process)
        except asyncio.CancelledError:
            readers.cancel()
            await self._terminate_process(process)
            raise

        try:
            await asyncio.wait_for(readers, timeout=2.0)
        except asyncio.TimeoutError:
            readers.cancel()

        exit_code = None if timed_out else process.returncode
        logger.debug("Command completed: exit_code=%s, timed_out=%s", exit_code, timed_out)
        return {
            "success": exit_code == 0,
            "output": "\n".join(entry["message"] for entry in lines),
            "lines": lines,
            "exit_code": exit_code,
            "timed_out": timed_out,
        }

    @staticmethod
    async def _read_stream(
        stream: asyncio.StreamReader | None,
        stream_name: str,
        lines: list[dict],
    ) -> None:
        if stream is None:
            return
        while True:
            raw = await stream.readline()
            if not raw:
                break
            lines.append(
                {
                    "stream": stream_name,
                    "message": raw.decode("utf-8", errors="replace").rstrip("\r\n"),
                }
            )

    @staticmethod
    def _format_command_for_log(command: list[str]) -> str:
        """Format a command for logs without dumping huge arguments."""
        parts: list[str] = []
        for i, arg in enumerate(command):
            if i >= 12:
                parts.append("...")
                break
            if len(arg) > 200:
                arg = arg[:200] + "..."
            parts.append(shlex.quote(arg))
        return " ".join(parts)
