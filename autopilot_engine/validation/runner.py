"""Local test runner producing workspace run records."""

import json
import logging
import re
import shlex
import tempfile
import time
from pathlib import Path, PurePosixPath
from typing import Any, Optional

from ..utils.subprocess import SubprocessManager

logger = logging.getLogger(__name__)

_COUNT_RE = re.compile(r"(\d+)\s+(passed|failed|errors?|skipped)\b")
COVERAGE_KEYS = ("lines", "statements", "functions", "branches")


def parse_pytest_counts(output: str) -> dict[str, int]:
    """Pull pass/fail counts from the pytest summary line."""
    counts: dict[str, int] = {}
    for line in reversed(output.splitlines()):
        matches = _COUNT_RE.findall(line)
        if matches:
            for value, label in matches:
                key = "error" if label.startswith("error") else label
                counts[key] = counts.get(key, 0) + int(value)
            break
    return counts


def _percent(covered: Any, total: Any) -> Optional[float]:
    if not isinstance(covered, int) or not isinstance(total, int) or total <= 0:
        return None
    return round(covered * 100.0 / total, 2)


def _is_test_file(path: str) -> bool:
    parts = PurePosixPath(path.replace("\\", "/")).parts
    name = parts[-1] if parts else ""
    return name.startswith("test_") or name.endswith("_test.py") or "tests" in parts[:-1]


def coverage_from_report(report: Any, thresholds: dict, workspace: str = "project") -> dict:
    """Judge a coverage.py JSON report against ``thresholds``.

    Lines and statements come from executed statements, branches from
    branch arcs. coverage.py reports no function totals, so ``functions``
    is None and is not gated. Source files that were never executed are
    listed in ``missing``.
    """
    files = report.get("files") if isinstance(report, dict) else None
    totals_raw = report.get("totals") if isinstance(report, dict) else None
    if not isinstance(files, dict) or not isinstance(totals_raw, dict):
        return {"totals": None, "passed": False, "missing": [], "uncoveredLines": []}

    lines_pct = _percent(totals_raw.get("covered_lines"), totals_raw.get("num_statements"))
    if lines_pct is None:
        lines_pct = 100.0
    branches_pct = _percent(totals_raw.get("covered_branches"), totals_raw.get("num_branches"))
    totals = {
        "lines": lines_pct,
        "statements": lines_pct,
        "functions": None,
        "branches": branches_pct if branches_pct is not None else 100.0,
    }

    missing = []
    uncovered = []
    for path in sorted(files):
        if _is_test_file(path):
            continue
        entry = files[path] if isinstance(files[path], dict) else {}
        summary = entry.get("summary") if isinstance(entry.get("summary"), dict) else {}
        if summary.get("num_statements", 0) > 0 and summary.get("covered_lines", 0) == 0:
            missing.append(f"{workspace}/{path}")
        lines = [n for n in entry.get("missing_lines") or [] if isinstance(n, int)]
        if lines:
            uncovered.append({"workspace": workspace, "file": path, "lines": lines})

    passed = not missing and all(
        totals[key] is None or totals[key] >= thresholds[key]
        for key in COVERAGE_KEYS
        if isinstance(thresholds.get(key), (int, float))
    )
    return {"totals": totals, "passed": passed, "missing": missing, "uncoveredLines": uncovered}


class LocalTestRunner:
    """Run the project's test command in a single workspace."""

    def __init__(
        self,
        work_dir: Path,
        command: str = "pytest -q",
        timeout_sec: int = 600,
        workspace: str = "project",
        coverage: bool = True,
    ):
        """Initialize test runner.

        Args:
            work_dir: Project root the command runs in
            command: Test command line
            timeout_sec: Hard timeout for the command
            workspace: Workspace label used in run records
            coverage: Measure coverage with pytest-cov and gate on it
        """
        self.work_dir = work_dir
        self.command = command
        self.timeout_sec = timeout_sec
        self.workspace = workspace
        self.coverage = coverage

    async def run(self, thresholds: dict | None = None) -> dict:
        """Run tests and return a run record.

        With coverage enabled the command gets pytest-cov JSON report options
        and ``summary.coverage`` carries the gate result. A missing report
        fails the gate.

        Raises:
            ValueError: If no command is configured
            SubprocessError: If the command cannot be started
        """
        if not self.command:
            raise ValueError("Tests command is required")

        thresholds = dict(thresholds or {})
        args = shlex.split(self.command)
        with tempfile.TemporaryDirectory(prefix="autopilot-cov-") as tmp:
            report_path = Path(tmp) / "coverage.json"
            if self.coverage:
                args += ["--cov=.", "--cov-branch", f"--cov-report=json:{report_path}"]

            logger.info("Running tests: %s", " ".join(args))
            started = time.monotonic()
            result = await SubprocessManager(timeout_sec=self.timeout_sec).run(args, cwd=self.work_dir)
            duration_ms = int((time.monotonic() - started) * 1000)

            coverage = self._read_coverage(report_path, thresholds) if self.coverage else None

        counts = parse_pytest_counts(result["output"])
        failed = counts.get("failed", 0) + counts.get("error", 0)
        status = "passed" if result["success"] else "failed"
        if result["timed_out"]:
            logger.warning("Test command timed out after %ss", self.timeout_sec)

        return {
            "status": status,
            "summary": {
                "total": sum(counts.values()) if counts else None,
                "failed": failed if counts else None,
                "coverage": coverage,
                "thresholds": thresholds,
            },
            "workspaceRuns": [
                {
                    "workspace": self.workspace,
                    "kind": "test",
                    "status": status,
                    "exitCode": result["exit_code"],
                    "durationMs": duration_ms,
                    "coverage": coverage,
                    "logs": [f"{line['stream']}: {line['message']}" for line in result["lines"]],
                    "tests": [],
                }
            ],
        }

    def _read_coverage(self, report_path: Path, thresholds: dict) -> dict:
        try:
            report = json.loads(report_path.read_text(encoding="utf-8"))
        except (OSError, json.JSONDecodeError) as e:
            logger.warning("Coverage report unavailable: %s", e)
            return {"totals": None, "passed": False, "missing": [], "uncoveredLines": []}
        coverage = coverage_from_report(report, thresholds, self.workspace)
        if not coverage["passed"]:
            logger.info("Coverage below thresholds: %s", coverage["totals"])
        return coverage
