"""Heuristic activity analyzers for agent transcripts and plain shells."""

from __future__ import annotations

import re
import time
from abc import ABC, abstractmethod
from collections.abc import Callable

from termnexus.activity.models import (
    RECENT_FILE_CHANGES_LIMIT,
    ActivityState,
    AnalyzerResult,
    FileChange,
)
from termnexus.activity.patterns import (
    AGENT_FILE_RULES,
    AGENT_RULES,
    AGENT_SUMMARY_PATTERNS,
    COMPLETION_BAR,
    ERROR_MESSAGE_LIMIT,
    MIN_CONFIDENCE,
    MIN_SUMMARY_LENGTH,
    PROMPT_BAR,
    SHELL_COMMAND_PATTERN,
    SHELL_FILE_RULES,
    SHELL_RULES,
    SUMMARY_LIMIT,
    WAITING_OVERRIDE_BAR,
    WORKING_BAR,
    FileOpRule,
    PatternCategory,
    PatternRule,
    normalize_output,
)

_CATEGORY_STATES = {
    PatternCategory.ERROR: ActivityState.ERROR,
    PatternCategory.WAITING: ActivityState.WAITING_FOR_INPUT,
    PatternCategory.WORKING: ActivityState.WORKING,
    PatternCategory.COMPLETION: ActivityState.IDLE,
    PatternCategory.PROMPT: ActivityState.IDLE,
}

_URL_SCHEME = re.compile(r"^[a-z][a-z0-9+.-]*://", re.IGNORECASE)
_VERSION = re.compile(r"^\d+\.\d+\.\d+")


def match_categories(text: str, rules: tuple[PatternRule, ...]) -> dict[PatternCategory, float]:
    """Highest matching confidence per category; unmatched categories are absent."""
    found: dict[PatternCategory, float] = {}
    for rule in rules:
        if rule.pattern.search(text):
            found[rule.category] = max(found.get(rule.category, 0.0), rule.confidence)
    return found


def resolve_category(found: dict[PatternCategory, float]) -> tuple[PatternCategory | None, float]:
    """Pick the winning category by priority with confidence override.

    Error wins outright above the confidence floor. Waiting-for-input may
    replace it when at least as confident. Each lower category is only
    considered while the best confidence so far stays under its bar, and must
    strictly beat it.
    """
    best: PatternCategory | None = None
    best_confidence = 0.0

    error = found.get(PatternCategory.ERROR, 0.0)
    if error >= MIN_CONFIDENCE:
        best, best_confidence = PatternCategory.ERROR, error

    waiting = found.get(PatternCategory.WAITING)
    if best_confidence < WAITING_OVERRIDE_BAR and waiting is not None and waiting >= best_confidence:
        best, best_confidence = PatternCategory.WAITING, waiting

    for category, bar in (
        (PatternCategory.WORKING, WORKING_BAR),
        (PatternCategory.COMPLETION, COMPLETION_BAR),
        (PatternCategory.PROMPT, PROMPT_BAR),
    ):
        confidence = found.get(category)
        if best_confidence < bar and confidence is not None and confidence > best_confidence:
            best, best_confidence = category, confidence

    if best is None or best_confidence < MIN_CONFIDENCE:
        return None, 0.0
    return best, best_confidence


class ActivityAnalyzer(ABC):
    """Incremental pattern engine for one session's output.

    ``analyze`` receives the whole rolling buffer and only scans the part it
    has not seen yet. Analyzers never raise; unmatched text yields an empty
    result and leaves the previous state untouched.
    """

    rules: tuple[PatternRule, ...] = ()
    file_rules: tuple[FileOpRule, ...] = ()

    def __init__(self, clock: Callable[[], float] = time.time) -> None:
        self._clock = clock
        self.reset()

    @property
    def current_state(self) -> ActivityState:
        return self._state

    @property
    def last_confidence(self) -> float:
        return self._confidence

    @property
    def task_summary(self) -> str | None:
        return self._task_summary

    @property
    def error_message(self) -> str | None:
        return self._error_message

    @property
    def recent_file_changes(self) -> list[FileChange]:
        return list(self._file_changes)

    @property
    def position(self) -> int:
        return self._position

    def analyze(self, output: str) -> AnalyzerResult:
        if len(output) < self._position:
            self._position = 0
        suffix = output[self._position :]
        if not suffix.strip():
            return AnalyzerResult()
        self._position = len(output)

        text = normalize_output(suffix)
        result = AnalyzerResult()
        found = match_categories(text, self.rules)

        if found.get(PatternCategory.ERROR, 0.0) >= MIN_CONFIDENCE:
            message = self._extract_error_line(text)
            if message:
                self._error_message = message
                result.error_message = message

        category, confidence = resolve_category(found)
        if category is not None:
            state = _CATEGORY_STATES[category]
            result.activity_state = state
            result.confidence = confidence
            self._state = state
            self._confidence = confidence
            self._on_resolved(category)

        summary = self._extract_summary(text)
        if summary is not None:
            self._task_summary = summary
            result.task_summary = summary

        changes = self._extract_file_changes(text)
        if changes:
            self._file_changes = [*self._file_changes, *changes][-RECENT_FILE_CHANGES_LIMIT:]
            result.file_changes = changes
        return result

    def discard_prefix(self, count: int) -> None:
        """Account for the caller dropping ``count`` leading characters of its buffer."""
        self._position = max(0, self._position - count)

    def clear_error(self) -> None:
        self._error_message = None
        if self._state == ActivityState.ERROR:
            self._state = ActivityState.IDLE
            self._confidence = 0.0

    def reset(self) -> None:
        self._position = 0
        self._state = ActivityState.IDLE
        self._confidence = 0.0
        self._error_message: str | None = None
        self._task_summary: str | None = None
        self._file_changes: list[FileChange] = []

    def _on_resolved(self, category: PatternCategory) -> None:
        pass

    @abstractmethod
    def _extract_summary(self, text: str) -> str | None: ...

    @abstractmethod
    def _is_valid_path(self, path: str) -> bool: ...

    def _extract_error_line(self, text: str) -> str | None:
        lines = text.split("\n")
        for rule in self.rules:
            if rule.category != PatternCategory.ERROR:
                continue
            for line in lines:
                if rule.pattern.search(line):
                    return line.strip()[:ERROR_MESSAGE_LIMIT]
        return None

    def _extract_file_changes(self, text: str) -> list[FileChange]:
        now = int(self._clock() * 1000)
        changes: list[FileChange] = []
        seen: set[str] = set()
        for rule in self.file_rules:
            for match in rule.pattern.finditer(text):
                path = match.group(1)
                if path in seen or not self._is_valid_path(path):
                    continue
                seen.add(path)
                changes.append(FileChange(path=path, type=rule.change, timestamp=now))
        return changes


class AgentTranscriptAnalyzer(ActivityAnalyzer):
    rules = AGENT_RULES
    file_rules = AGENT_FILE_RULES

    def _extract_summary(self, text: str) -> str | None:
        for pattern in AGENT_SUMMARY_PATTERNS:
            match = pattern.search(text)
            if match and match.group(1):
                summary = match.group(1).strip()[:SUMMARY_LIMIT]
                if len(summary) > MIN_SUMMARY_LENGTH:
                    return summary
        return None

    def _is_valid_path(self, path: str) -> bool:
        if len(path) < 3:
            return False
        if _URL_SCHEME.match(path):
            return False
        return not _VERSION.match(path)


class ShellAnalyzer(ActivityAnalyzer):
    rules = SHELL_RULES
    file_rules = SHELL_FILE_RULES

    def _on_resolved(self, category: PatternCategory) -> None:
        if category == PatternCategory.PROMPT:
            self._error_message = None

    def _extract_summary(self, text: str) -> str | None:
        # The command typed after the most recent prompt.
        command = None
        for match in SHELL_COMMAND_PATTERN.finditer(text):
            candidate = match.group(1).strip()
            if 0 < len(candidate) < SUMMARY_LIMIT:
                command = candidate
        return command

    def _is_valid_path(self, path: str) -> bool:
        if len(path) < 2 or path.startswith("-"):
            return False
        return not _URL_SCHEME.match(path)
