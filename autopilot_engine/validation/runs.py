"""Summaries of per-workspace test runs for event payloads, prompts and retry detection.

A run record is the JSON shape produced by a test runner::

    {
        "status": "failed",
        "summary": {"total": 12, "failed": 1, "coverage": {...}},
        "workspaceRuns": [
            {"workspace": "frontend", "status": "failed", "exitCode": 1,
             "durationMs": 812, "coverage": {...}, "logs": [...], "tests": [...]},
        ],
    }

Every function here tolerates missing or malformed fields.
"""

import json
import math
import re
from typing import Any, Optional

from ..config.models import SummarizerConfig

FAILURE_PATTERNS = (
    re.compile(r"\bfail(?:ed|ure)?\b", re.IGNORECASE),
    re.compile(r"\berror\b", re.IGNORECASE),
    re.compile(r"\bexception\b", re.IGNORECASE),
)
VITEST_FAIL_RE = re.compile(r"^FAIL\s+(.+)$", re.IGNORECASE)
PYTEST_FAIL_RE = re.compile(r"^FAILED\s+(.+?)\s+-\s+(.+)$", re.IGNORECASE)
ERROR_LINE_RE = re.compile(r"^\s*(?:AssertionError\b|TypeError\b|Error:\s+)", re.IGNORECASE)
STREAM_PREFIX_RE = re.compile(r"^\s*(?:stdout|stderr)\s*:\s*", re.IGNORECASE)
TEST_PATH_SEGMENT_RE = re.compile(r"\s+>\s+")

DEFAULT_WORKSPACE = "workspace"
FINGERPRINT_FAILURES = 8
FINGERPRINT_MISSING = 8
FINGERPRINT_UNCOVERED = 8
FINGERPRINT_LINES_PER_FILE = 6

_DEFAULTS = SummarizerConfig()


def _as_list(value: Any) -> list:
    return value if isinstance(value, list) else []


def _as_dict(value: Any) -> dict:
    return value if isinstance(value, dict) else {}


def _as_str(value: Any) -> str:
    return value if isinstance(value, str) else ""


def _is_number(value: Any) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    return math.isfinite(value)


def _or_na(value: Any) -> Any:
    return "n/a" if value is None else value


def parse_failure_from_log_line(workspace: str, text: str, message_chars: int = 280) -> Optional[dict]:
    """Recognize framework-specific failure lines (vitest, pytest, bare errors)."""
    normalized = STREAM_PREFIX_RE.sub("", text, count=1)

    vitest = VITEST_FAIL_RE.match(normalized)
    if vitest:
        raw = vitest.group(1).strip()
        if not raw:
            return None
        segments = [segment.strip() for segment in TEST_PATH_SEGMENT_RE.split(raw) if segment.strip()]
        name = segments[-1] if segments else raw
        return {"workspace": workspace, "name": name, "message": raw[:message_chars]}

    pytest_match = PYTEST_FAIL_RE.match(normalized)
    if pytest_match:
        name = pytest_match.group(1).strip() or "pytest failure"
        message = pytest_match.group(2).strip()
        return {"workspace": workspace, "name": name, "message": message[:message_chars]}

    if ERROR_LINE_RE.match(normalized):
        return {"workspace": workspace, "name": "error", "message": normalized[:message_chars]}

    return None


def split_logs_by_stream(workspace_runs: Any) -> list[dict]:
    """Partition each run's logs into stdout, stderr and other lines."""
    results = []
    for run in _as_list(workspace_runs):
        run = _as_dict(run)
        stdout: list[str] = []
        stderr: list[str] = []
        other: list[str] = []

        for entry in _as_list(run.get("logs")):
            if isinstance(entry, dict):
                stream = _as_str(entry.get("stream")).lower()
                message = _as_str(entry.get("message"))
                if stream == "stderr":
                    stderr.append(message)
                elif stream == "stdout":
                    stdout.append(message)
                else:
                    other.append(message)
                continue

            line = _as_str(entry)
            if not line:
                continue
            lowered = line.lower()
            if lowered.startswith("stderr:"):
                stderr.append(line[7:].strip())
            elif lowered.startswith("stdout:"):
                stdout.append(line[7:].strip())
            else:
                other.append(line)

        results.append(
            {
                "workspace": run.get("workspace") or None,
                "stdout": stdout,
                "stderr": stderr,
                "other": other,
            }
        )
    return results


def summarize_workspace_runs_for_payload(
    workspace_runs: Any,
    config: Optional[SummarizerConfig] = None,
) -> list[dict]:
    """Compact per-workspace view for event payloads (last N log lines only)."""
    config = config or _DEFAULTS
    summaries = []
    for run in _as_list(workspace_runs):
        run = _as_dict(run)
        logs = _as_list(run.get("logs"))
        summaries.append(
            {
                "workspace": run.get("workspace") or None,
                "kind": run.get("kind") or None,
                "status": run.get("status") or None,
                "exitCode": run.get("exitCode") if _is_number(run.get("exitCode")) else None,
                "durationMs": run.get("durationMs") if _is_number(run.get("durationMs")) else None,
                "coverage": run.get("coverage") or None,
                "logs": logs[-config.payload_log_lines :] if config.payload_log_lines else [],
                "streams": split_logs_by_stream([run])[0],
            }
        )
    return summaries


def extract_failing_tests_from_workspace_runs(
    workspace_runs: Any,
    config: Optional[SummarizerConfig] = None,
) -> list[dict]:
    """Collect ``{workspace, name, message}`` failure records.

    Structured ``tests`` entries win. A workspace that reports no structured
    tests falls back to scanning its raw log lines. Records are deduplicated
    by workspace, name and message, and capped at ``max_failures``.
    """
    config = config or _DEFAULTS
    limit = config.max_failures
    failures: list[dict] = []
    seen: set[str] = set()

    def push(workspace: Any, name: Any, message: Any) -> None:
        if len(failures) >= limit:
            return
        workspace = _as_str(workspace) or DEFAULT_WORKSPACE
        name = _as_str(name) or "unnamed test"
        message = None if message is None else _as_str(message)
        key = f"{workspace}::{name}::{message or ''}"
        if key in seen:
            return
        seen.add(key)
        failures.append({"workspace": workspace, "name": name, "message": message})

    for run in _as_list(workspace_runs):
        if len(failures) >= limit:
            break
        run = _as_dict(run)
        workspace = run.get("workspace") or DEFAULT_WORKSPACE
        tests = _as_list(run.get("tests"))

        for test in tests:
            if not isinstance(test, dict):
                continue
            status = _as_str(test.get("status")).lower()
            if status in ("failed", "fail"):
                push(
                    workspace,
                    test.get("name") or test.get("title") or "unnamed test",
                    test.get("error") or test.get("message") or None,
                )

        if tests:
            continue

        for line in _as_list(run.get("logs")):
            if len(failures) >= limit:
                break
            text = _as_str(line)
            if not text:
                continue
            parsed = parse_failure_from_log_line(workspace, text, config.message_chars)
            if parsed:
                push(parsed["workspace"], parsed["name"], parsed["message"])
            elif any(pattern.search(text) for pattern in FAILURE_PATTERNS):
                push(workspace, "log", text[: config.message_chars])

    return failures


def format_coverage_line_refs(coverage: Any, per_file: int = 12) -> str:
    uncovered = _as_list(_as_dict(coverage).get("uncoveredLines"))
    if not uncovered:
        return ""

    lines = ["Coverage gaps (line references):"]
    for entry in uncovered:
        if not isinstance(entry, dict):
            continue
        workspace = _as_str(entry.get("workspace"))
        file = _as_str(entry.get("file"))
        numbers = []
        for line in _as_list(entry.get("lines")):
            try:
                value = float(line)
            except (TypeError, ValueError):
                continue
            if math.isfinite(value):
                numbers.append(int(value) if value.is_integer() else value)
        if not file or not numbers:
            continue
        limited = numbers[:per_file]
        suffix = ", ..." if len(numbers) > len(limited) else ""
        location = f"{workspace}/{file}" if workspace else file
        lines.append(f"- {location}: {', '.join(str(n) for n in limited)}{suffix}")

    if len(lines) == 1:
        return ""
    lines.append(
        "Instruction: add or adjust tests to execute the exact lines above so coverage reaches 100%."
    )
    return "\n".join(lines)


def summarize_test_run_for_prompt(run: Any, config: Optional[SummarizerConfig] = None) -> str:
    """Render a test run as a compact text block to feed back to the model."""
    if not isinstance(run, dict):
        return ""
    config = config or _DEFAULTS

    lines = [f"Status: {run.get('status') or 'unknown'}"]

    summary = run.get("summary")
    if isinstance(summary, dict):
        totals = []
        if _is_number(summary.get("total")):
            totals.append(f"total={summary['total']}")
        if _is_number(summary.get("failed")):
            totals.append(f"failed={summary['failed']}")

        coverage = summary.get("coverage")
        if isinstance(coverage, dict):
            coverage_parts = []
            coverage_totals = coverage.get("totals")
            if coverage_totals:
                coverage_totals = _as_dict(coverage_totals)
                for key in ("lines", "statements", "functions", "branches"):
                    coverage_parts.append(f"{key}={_or_na(coverage_totals.get(key))}")
            missing = _as_list(coverage.get("missing"))
            if missing:
                coverage_parts.append(f"missing files: {', '.join(str(m) for m in missing)}")
            if coverage_parts:
                totals.append(f"coverage({', '.join(coverage_parts)})")

        if totals:
            lines.append(f"Summary: {' | '.join(totals)}")

        refs = format_coverage_line_refs(coverage, config.prompt_line_refs)
        if refs:
            lines.append(refs)

    failures = extract_failing_tests_from_workspace_runs(run.get("workspaceRuns"), config)
    if failures:
        lines.append("Reported failures:")
        for failure in failures[: config.prompt_failures]:
            message = f" — {failure['message']}" if failure["message"] else ""
            lines.append(f"- [{failure['workspace']}] {failure['name']}{message}")

    return "\n".join(lines)


def build_failure_fingerprint(run: Any, config: Optional[SummarizerConfig] = None) -> str:
    """Canonical JSON string over the parts of a run that show progress.

    Two structurally equal runs always produce the same string.
    """
    if not isinstance(run, dict):
        return ""

    summary = _as_dict(run.get("summary"))
    coverage = _as_dict(summary.get("coverage"))
    totals = _as_dict(coverage.get("totals"))
    workspace_runs = run.get("workspaceRuns")

    failures = [
        f"{entry['workspace'] or DEFAULT_WORKSPACE}|{entry['name'] or 'test'}|{entry['message'] or ''}"
        for entry in extract_failing_tests_from_workspace_runs(workspace_runs, config)[
            :FINGERPRINT_FAILURES
        ]
    ]

    workspace_statuses = []
    for workspace_run in _as_list(workspace_runs):
        if not isinstance(workspace_run, dict):
            continue
        exit_code = workspace_run.get("exitCode")
        workspace_statuses.append(
            f"{workspace_run.get('workspace') or DEFAULT_WORKSPACE}"
            f":{workspace_run.get('status') or 'unknown'}"
            f":{exit_code if _is_number(exit_code) else 'x'}"
        )

    uncovered_lines = []
    for entry in _as_list(coverage.get("uncoveredLines"))[:FINGERPRINT_UNCOVERED]:
        entry = _as_dict(entry)
        numbers = ",".join(str(n) for n in _as_list(entry.get("lines"))[:FINGERPRINT_LINES_PER_FILE])
        uncovered_lines.append(
            f"{entry.get('workspace') or DEFAULT_WORKSPACE}/{entry.get('file') or ''}:{numbers}"
        )

    failed = summary.get("failed")
    return json.dumps(
        {
            "status": run.get("status") or "unknown",
            "failed": failed if _is_number(failed) else None,
            "totals": {key: totals.get(key) for key in ("lines", "statements", "functions", "branches")},
            "failures": failures,
            "workspaceStatuses": workspace_statuses,
            "missingCoverage": _as_list(coverage.get("missing"))[:FINGERPRINT_MISSING],
            "uncoveredLines": uncovered_lines,
        },
        separators=(",", ":"),
        ensure_ascii=False,
    )
