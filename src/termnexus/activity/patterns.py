"""Pattern tables and thresholds used by the activity analyzers.

Each table is an ordered tuple of ``PatternRule`` entries. A category matches
when any of its rules match the text; the category confidence is the highest
confidence among its matching rules.
"""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

from termnexus.activity.models import FileChangeType

MIN_CONFIDENCE = 0.5
WAITING_OVERRIDE_BAR = 0.9
WORKING_BAR = 0.8
COMPLETION_BAR = 0.7
PROMPT_BAR = 0.6

ERROR_MESSAGE_LIMIT = 200
SUMMARY_LIMIT = 100
MIN_SUMMARY_LENGTH = 10

_I = re.IGNORECASE
_M = re.MULTILINE


class PatternCategory(str, Enum):
    ERROR = "error"
    WAITING = "waiting"
    WORKING = "working"
    COMPLETION = "completion"
    PROMPT = "prompt"


@dataclass(frozen=True)
class PatternRule:
    pattern: re.Pattern[str]
    confidence: float
    category: PatternCategory


@dataclass(frozen=True)
class FileOpRule:
    pattern: re.Pattern[str]
    change: FileChangeType


def _rules(category: PatternCategory, *entries: tuple[str, float, int]) -> tuple[PatternRule, ...]:
    return tuple(PatternRule(re.compile(expr, flags), confidence, category) for expr, confidence, flags in entries)


def _file_ops(change: FileChangeType, *expressions: str) -> tuple[FileOpRule, ...]:
    return tuple(FileOpRule(re.compile(expr, _I), change) for expr in expressions)


ANSI_ESCAPE = re.compile(r"\x1b\[[0-?]*[ -/]*[@-~]|\x1b\][^\x07\x1b]*(?:\x07|\x1b\\)|\x1b[@-Z\\-_]")


def normalize_output(text: str) -> str:
    """Strip terminal escape sequences and normalize line endings to ``\\n``."""
    cleaned = ANSI_ESCAPE.sub("", text)
    return cleaned.replace("\r\n", "\n").replace("\r", "\n")


# Agent transcripts (boxed tool-call UI, spinners, y/n confirmations).
AGENT_RULES: tuple[PatternRule, ...] = (
    *_rules(
        PatternCategory.ERROR,
        (r"^Error:", 0.9, _I | _M),
        (r"^Failed:", 0.85, _I | _M),
        (r"^Exception:", 0.9, _I | _M),
        (r"Error occurred", 0.8, _I),
        (r"Command failed", 0.85, _I),
        (r"Permission denied", 0.9, _I),
        (r"ENOENT", 0.8, _I),
        (r"EACCES", 0.85, _I),
        (r"FATAL:", 0.95, _I),
        (r"panic:", 0.9, _I),
    ),
    *_rules(
        PatternCategory.WAITING,
        (r"\(y\)es\s*/\s*\(n\)o", 0.95, _I),
        (r"Continue\?\s*\[Y/n\]", 0.95, _I),
        (r"\[Y/n\]", 0.9, _I),
        (r"\[y/N\]", 0.9, _I),
        (r"waiting for (?:your )?(?:input|response)", 0.85, _I),
        (r"Press Enter to continue", 0.9, _I),
        (r"Do you want to\s+(?:continue|proceed)", 0.85, _I),
        (r"Would you like to\s+(?:continue|proceed)", 0.85, _I),
        (r"Approve this (?:action|change|edit)", 0.9, _I),
        (r"^Allow\?", 0.9, _I | _M),
    ),
    *_rules(
        PatternCategory.WORKING,
        (r"^╭─ .*─╮$", 0.9, _M),
        (r"^│ .*│$", 0.7, _M),
        (r"^(?:Thinking|Processing|Reading|Writing|Running|Searching|Analyzing|Fetching)", 0.8, _I),
        (r"^(?:Glob|Grep|Read|Edit|Write|Bash|WebFetch|WebSearch|Task|NotebookEdit)\s", 0.9, _I),
        (r"Tool use:", 0.8, _I),
        (r"\[\d+/\d+\]", 0.7, 0),
        (r"^[⠋⠙⠹⠸⠼⠴⠦⠧⠇⠏]", 0.9, _M),
        (r"Executing.*\.{3}$", 0.8, _I | _M),
        (r"^Calling function", 0.85, _I),
    ),
    *_rules(
        PatternCategory.COMPLETION,
        (r"^Done\.?$", 0.7, _I | _M),
        (r"^Completed\.?$", 0.75, _I | _M),
        (r"^Task completed", 0.8, _I),
        (r"^Finished", 0.7, _I),
        (r"successfully completed", 0.75, _I),
        (r"^╰─.*─╯$", 0.6, _M),
    ),
    *_rules(
        PatternCategory.PROMPT,
        (r"^>\s*$", 0.6, _M),
        (r"^\$\s*$", 0.5, _M),
        (r"^claude>\s*$", 0.85, _M),
        (r"^❯\s*$", 0.7, _M),
        (r"^\?\s*$", 0.75, _M),
        (r"^claude-code>\s*$", 0.9, _M),
        (r"Human:\s*$", 0.8, _M),
    ),
)

AGENT_FILE_RULES: tuple[FileOpRule, ...] = (
    *_file_ops(
        FileChangeType.CREATED,
        r"(?:Created|Wrote|Writing)\s+(?:file:?\s+)?['\"]?([^\s'\"]+\.[a-zA-Z0-9]+)",
        r"(?:Creating|New file:?)\s+['\"]?([^\s'\"]+\.[a-zA-Z0-9]+)",
    ),
    *_file_ops(
        FileChangeType.MODIFIED,
        r"(?:Edited|Modified|Updated|Updating)\s+['\"]?([^\s'\"]+\.[a-zA-Z0-9]+)",
        r"(?:Edit|Write)\s+['\"]?([^\s'\"]+\.[a-zA-Z0-9]+)",
    ),
    *_file_ops(
        FileChangeType.DELETED,
        r"(?:Deleted|Removed|Removing)\s+(?:file:?\s+)?['\"]?([^\s'\"]+\.[a-zA-Z0-9]+)",
    ),
)

AGENT_SUMMARY_PATTERNS: tuple[re.Pattern[str], ...] = (
    re.compile(r"^(?:I'll|I will|Let me|I'm going to)\s+(.+?)(?:\.|$)", _I | _M),
    re.compile(r"^(?:Working on|Starting|Beginning)\s+(.+?)(?:\.|$)", _I | _M),
    re.compile(r"^(?:Task|Goal):\s*(.+?)(?:\.|$)", _I | _M),
)


# Plain interactive shells (bash/zsh, PowerShell, cmd.exe).
SHELL_RULES: tuple[PatternRule, ...] = (
    *_rules(
        PatternCategory.ERROR,
        (r"^error:", 0.9, _I | _M),
        (r"^ERROR:", 0.9, _M),
        (r"FAILED", 0.8, 0),
        (r"^Exception:", 0.9, _I | _M),
        (r"CommandNotFoundException", 0.95, _I),
        (r"command not found", 0.95, _I),
        (r"'[^']+' is not recognized", 0.95, _I),
        (r"Access is denied", 0.9, _I),
        (r"Permission denied", 0.9, _I),
        (r"ENOENT", 0.8, _I),
        (r"EACCES", 0.85, _I),
        (r"npm ERR!", 0.9, _I),
        (r"fatal:", 0.85, _I),
    ),
    *_rules(
        PatternCategory.WAITING,
        (r"\(Y/N\)", 0.9, _I),
        (r"\[Y/n\]", 0.9, _I),
        (r"\[y/N\]", 0.9, _I),
        (r"Press any key", 0.9, _I),
        (r"Enter password", 0.95, _I),
        (r"Password:", 0.85, _I),
        (r"username:", 0.8, _I),
        (r"Confirm:", 0.8, _I),
    ),
    *_rules(
        PatternCategory.WORKING,
        (r"^\s*Running", 0.8, _I | _M),
        (r"^\s*Installing", 0.8, _I | _M),
        (r"^\s*Building", 0.8, _I | _M),
        (r"^\s*Compiling", 0.8, _I | _M),
        (r"^\s*Downloading", 0.8, _I | _M),
        (r"^\s*Uploading", 0.8, _I | _M),
        (r"^\s*Processing", 0.8, _I | _M),
        (r"^\.\.\.", 0.6, _M),
        (r"\[\s*\d+%\s*\]", 0.7, 0),
        (r"[|\\/-]\s*\Z", 0.5, 0),
    ),
    *_rules(
        PatternCategory.COMPLETION,
        (r"Done\.?$", 0.7, _I | _M),
        (r"Completed\.?$", 0.7, _I | _M),
        (r"Successfully", 0.7, _I),
        (r"Build succeeded", 0.75, _I),
        (r"All tests passed", 0.75, _I),
        (r"up to date", 0.65, _I),
    ),
    *_rules(
        PatternCategory.PROMPT,
        (r"PS\s+[A-Z]:\\[^>\n]*>\s*$", 0.6, _M),
        (r"PS>\s*$", 0.6, _M),
        (r">>>\s*$", 0.55, _M),
        (r"\$\s*$", 0.6, _M),
        (r"❯\s*$", 0.6, _M),
        (r"➜\s*$", 0.6, _M),
        (r"\]\$\s*$", 0.6, _M),
        (r"\]#\s*$", 0.6, _M),
        (r"#\s*$", 0.5, _M),
        (r"[A-Z]:\\[^>\n]*>\s*$", 0.6, _M),
        (r">\s*$", 0.5, _M),
    ),
)

SHELL_FILE_RULES: tuple[FileOpRule, ...] = (
    *_file_ops(
        FileChangeType.CREATED,
        r"\b(?:New-Item|touch|mkdir)\s+['\"]?([^\s'\"]+)",
        r"\becho\s+.*?>\s*['\"]?([^\s'\">]+)",
        r"\b(?:created|wrote to)\s+['\"]?([^\s'\"]+)",
    ),
    *_file_ops(
        FileChangeType.MODIFIED,
        r"\b(?:Set-Content|Add-Content)\s+['\"]?([^\s'\"]+)",
    ),
    *_file_ops(
        FileChangeType.DELETED,
        r"\b(?:Remove-Item|rm|del)\s+(?:-[a-z]+\s+)*['\"]?([^\s'\"]+)",
        r"\b(?:deleted|removed)\s+['\"]?([^\s'\"]+)",
    ),
)

SHELL_COMMAND_PATTERN = re.compile(r"(?:PS\s+[^>\n]*>|[A-Z]:\\[^>\n]*>|\$|❯|➜|#)[ \t]*(.+)")
