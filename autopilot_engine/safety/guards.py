"""Safety guards for the code edit agent: path sandboxing, loop detection, style scope."""

import logging
import re
from collections import deque
from dataclasses import dataclass
from enum import Enum
from typing import Optional

logger = logging.getLogger(__name__)


class SafetyError(Exception):
    """Safety violation error."""

    pass


class PathSafetyError(SafetyError):
    """Path is empty or escapes the project workspace."""

    pass


class ScopeViolationError(SafetyError):
    """A write breaks the style-scope contract. Soft-rejected back to the model."""

    pass


# ----------------------------------------------------------------------
# Paths
# ----------------------------------------------------------------------


def normalize_relative_path(value: Optional[str]) -> str:
    text = str(value or "").replace("\\", "/")
    return text.lstrip("/").strip()


def ensure_safe_relative_path(value: Optional[str]) -> str:
    """Normalize a model-supplied path and reject traversal.

    Raises:
        PathSafetyError: If the path is empty or contains ``..``
    """
    normalized = normalize_relative_path(value)
    if not normalized:
        raise PathSafetyError("Path is required")
    if ".." in normalized:
        raise PathSafetyError("Path must stay within the project workspace")
    return normalized


# ----------------------------------------------------------------------
# Loop detection
# ----------------------------------------------------------------------


class LoopDetector:
    """Sliding-window heuristic for runaway action loops.

    A full window is looping when every action has the same name, or when
    none of them is a ``write_file``. The window doubles as the budget for
    exploratory reads before the first write.
    """

    WRITE_ACTION = "write_file"

    def __init__(self, window: int = 6):
        if window < 2:
            raise ValueError("Loop detector window must be at least 2")
        self.window = window
        self.history: deque[tuple[str, Optional[str]]] = deque(maxlen=window)

    def record(self, action: str, target: Optional[str] = None) -> None:
        self.history.append((action, target))

    def is_looping(self) -> bool:
        if len(self.history) < self.window:
            return False
        actions = {action for action, _ in self.history}
        if len(actions) == 1:
            return True
        return not any(action == self.WRITE_ACTION for action, _ in self.history)


# ----------------------------------------------------------------------
# Style scope
# ----------------------------------------------------------------------

STYLE_REQUEST_RE = re.compile(
    r"\b(css|style|styling|theme|color|background|foreground|text|font|typography|navbar"
    r"|navigation bar|header|footer|sidebar|card|modal|button|input|form)\b",
    re.IGNORECASE,
)
GLOBAL_STYLE_REQUEST_RE = re.compile(
    r"\b(global|app-wide|site-wide|entire app|whole app|across the app|entire page|whole page"
    r"|page-wide|every page|all pages|entire site|whole site|all screens)\b",
    re.IGNORECASE,
)
GLOBAL_SELECTOR_RE = re.compile(
    r"\b(body|html)\s*[{,]|:root\s*[{,]|(^|\n)\s*\*\s*[{,]|#root\s*[{,]"
    r"|:global\(\s*(body|html|:root|\*)\s*\)",
    re.IGNORECASE,
)
GLOBAL_STYLE_FILE_RE = re.compile(
    r"(^|/)(index|app|styles|theme|globals?)\.(css|scss|sass|less)$",
    re.IGNORECASE,
)
NAVBAR_RE = re.compile(r"\b(navbar|navigation\s+bar|nav\s+bar)\b")
TARGET_PHRASE_RE = re.compile(
    r"\b(?:the|a|an)\s+([a-z0-9_-]+(?:\s+[a-z0-9_-]+){0,3})\s+"
    r"(?:have|has|with|to|should|needs|need|be)\b"
)
SELECTOR_TOKEN_RE = re.compile(r"[.#][a-z0-9_-]+")

TARGET_STOP_WORDS = frozenset(
    {
        "the", "a", "an", "and", "or", "to", "of", "for", "with", "in", "on", "at", "by",
        "make", "set", "change", "update", "turn", "give", "use", "have", "has", "be", "as",
        "black", "white", "red", "green", "blue", "yellow", "orange", "purple", "pink",
        "gray", "grey",
    }
)
MAX_TARGET_HINTS = 8


class StyleScopeMode(str, Enum):
    GLOBAL = "global"
    TARGETED = "targeted"


@dataclass(frozen=True)
class StyleScopeContract:
    """Whether a styling request may touch global selectors and stylesheets."""

    mode: StyleScopeMode
    target_hints: tuple[str, ...] = ()

    @property
    def is_targeted(self) -> bool:
        return self.mode == StyleScopeMode.TARGETED


def normalize_hint(value: Optional[str]) -> str:
    return re.sub(r"[^a-z0-9_-]", "", str(value or "").lower()).strip()


def extract_style_target_hints(prompt: Optional[str]) -> tuple[str, ...]:
    lower = str(prompt or "").lower()
    if not lower:
        return ()

    hints: list[str] = []

    def add_hint(value: str) -> None:
        normalized = normalize_hint(value)
        if len(normalized) < 3 or normalized in TARGET_STOP_WORDS or normalized in hints:
            return
        hints.append(normalized)

    if NAVBAR_RE.search(lower):
        for hint in ("navbar", "navigation", "nav", "bar"):
            add_hint(hint)

    phrase = TARGET_PHRASE_RE.search(lower)
    if phrase:
        for word in phrase.group(1).split():
            add_hint(word)

    for selector in SELECTOR_TOKEN_RE.findall(lower):
        add_hint(selector[1:])

    return tuple(hints[:MAX_TARGET_HINTS])


def derive_style_scope_contract(prompt: Optional[str]) -> Optional[StyleScopeContract]:
    """Derive the style-scope contract for a prompt, or None if it is not a styling request."""
    text = str(prompt or "").strip()
    if not text or not STYLE_REQUEST_RE.search(text):
        return None
    if GLOBAL_STYLE_REQUEST_RE.search(text):
        return StyleScopeContract(mode=StyleScopeMode.GLOBAL)
    return StyleScopeContract(
        mode=StyleScopeMode.TARGETED,
        target_hints=extract_style_target_hints(text),
    )


def write_mentions_target(path: Optional[str], content: Optional[str], target_hints) -> bool:
    if not target_hints:
        return False
    haystack = f"{str(path or '').lower()}\n{str(content or '').lower()}"
    return any(hint in haystack for hint in target_hints)


def validate_style_write_scope(
    contract: Optional[StyleScopeContract],
    path: Optional[str],
    content: Optional[str],
) -> Optional[str]:
    """Return the violation message for a write, or None when it is allowed."""
    if contract is None or not contract.is_targeted:
        return None

    normalized_path = normalize_relative_path(path).lower()
    text = str(content or "")

    if GLOBAL_SELECTOR_RE.search(text):
        return "Targeted style request cannot change global selectors (body/html/:root/*/#root)."

    if GLOBAL_STYLE_FILE_RE.search(normalized_path) and not write_mentions_target(
        normalized_path, text, contract.target_hints
    ):
        return (
            "Targeted style request must include target-specific selectors/components; "
            "broad global stylesheet edits are not allowed."
        )

    return None


def enforce_style_write_scope(
    contract: Optional[StyleScopeContract],
    path: Optional[str],
    content: Optional[str],
) -> None:
    """Raise ScopeViolationError if the write breaks the contract."""
    violation = validate_style_write_scope(contract, path, content)
    if violation:
        logger.info("Style scope rejected write to %s: %s", path, violation)
        raise ScopeViolationError(violation)
