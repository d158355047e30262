from __future__ import annotations

from termnexus.activity.analyzers import (
    AgentTranscriptAnalyzer,
    ShellAnalyzer,
    match_categories,
    resolve_category,
)
from termnexus.activity.models import ActivityState, FileChangeType
from termnexus.activity.patterns import AGENT_RULES, PatternCategory, normalize_output


def _feed(analyzer, *chunks: str) -> list[ActivityState | None]:
    buffer = ""
    states: list[ActivityState | None] = []
    for chunk in chunks:
        buffer += chunk
        states.append(analyzer.analyze(buffer).activity_state)
    return states


def test_resolve_category_prefers_error_over_lower_categories() -> None:
    found = {PatternCategory.ERROR: 0.9, PatternCategory.WORKING: 0.9, PatternCategory.PROMPT: 0.6}
    assert resolve_category(found) == (PatternCategory.ERROR, 0.9)


def test_resolve_category_lets_waiting_override_a_weaker_error() -> None:
    assert resolve_category({PatternCategory.ERROR: 0.85, PatternCategory.WAITING: 0.9}) == (
        PatternCategory.WAITING,
        0.9,
    )
    assert resolve_category({PatternCategory.ERROR: 0.9, PatternCategory.WAITING: 0.95}) == (
        PatternCategory.ERROR,
        0.9,
    )


def test_resolve_category_lower_categories_must_strictly_beat_best() -> None:
    assert resolve_category({PatternCategory.WORKING: 0.7, PatternCategory.COMPLETION: 0.7}) == (
        PatternCategory.WORKING,
        0.7,
    )
    assert resolve_category({PatternCategory.COMPLETION: 0.55, PatternCategory.PROMPT: 0.75}) == (
        PatternCategory.PROMPT,
        0.75,
    )


def test_resolve_category_ignores_matches_below_confidence_floor() -> None:
    assert resolve_category({PatternCategory.ERROR: 0.4}) == (None, 0.0)
    assert resolve_category({}) == (None, 0.0)


def test_normalize_output_strips_ansi_and_carriage_returns() -> None:
    assert normalize_output("\x1b[32mDone\x1b[0m\r\nnext\rline") == "Done\nnext\nline"


def test_match_categories_reports_best_confidence_per_category() -> None:
    found = match_categories("FATAL: disk full\nError: write failed", AGENT_RULES)
    assert found[PatternCategory.ERROR] == 0.95


def test_shell_prompt_build_and_completion_sequence() -> None:
    analyzer = ShellAnalyzer()

    states = _feed(analyzer, "$ ", "Building...\n", "Build succeeded\n", "$ ")

    assert states == [
        ActivityState.IDLE,
        ActivityState.WORKING,
        ActivityState.IDLE,
        ActivityState.IDLE,
    ]
    assert analyzer.current_state == ActivityState.IDLE


def test_shell_error_is_cleared_by_next_prompt() -> None:
    analyzer = ShellAnalyzer()

    result = analyzer.analyze("bash: frobnicate: command not found\n")
    assert result.activity_state == ActivityState.ERROR
    assert result.error_message == "bash: frobnicate: command not found"
    assert analyzer.error_message == "bash: frobnicate: command not found"

    analyzer.analyze("bash: frobnicate: command not found\nuser@host:~$ ")
    assert analyzer.current_state == ActivityState.IDLE
    assert analyzer.error_message is None


def test_shell_summary_is_last_command_after_prompt() -> None:
    analyzer = ShellAnalyzer()

    analyzer.analyze("$ git status\nOn branch main\n$ npm test\n")
    assert analyzer.task_summary == "npm test"

    analyzer.analyze("$ git status\nOn branch main\n$ npm test\nPS C:\\repo> Get-ChildItem\n")
    assert analyzer.task_summary == "Get-ChildItem"


def test_shell_file_operations_are_detected_and_validated() -> None:
    analyzer = ShellAnalyzer()

    result = analyzer.analyze("$ touch notes.txt\n$ rm -rf build\n$ touch notes.txt\n$ rm -f x\n")

    assert [(change.path, change.type) for change in result.file_changes] == [
        ("notes.txt", FileChangeType.CREATED),
        ("build", FileChangeType.DELETED),
    ]


def test_agent_waiting_prompt_is_detected() -> None:
    analyzer = AgentTranscriptAnalyzer()

    result = analyzer.analyze("Edit src/app.py\nDo you want to proceed? [Y/n]")

    assert result.activity_state == ActivityState.WAITING_FOR_INPUT
    assert result.confidence == 0.9


def test_agent_tool_call_marks_working_and_records_file_changes() -> None:
    analyzer = AgentTranscriptAnalyzer(clock=lambda: 1_700_000_000.0)

    result = analyzer.analyze("Edit src/app.py\nCreated tests/test_app.py\n")

    assert result.activity_state == ActivityState.WORKING
    assert [(change.path, change.type) for change in result.file_changes] == [
        ("tests/test_app.py", FileChangeType.CREATED),
        ("src/app.py", FileChangeType.MODIFIED),
    ]
    assert result.file_changes[0].timestamp == 1_700_000_000_000


def test_agent_rejects_urls_and_versions_as_paths() -> None:
    analyzer = AgentTranscriptAnalyzer()

    result = analyzer.analyze("Created https://example.com/page.html\nUpdated 1.2.3.tar\nUpdated a.b\n")

    assert [change.path for change in result.file_changes] == ["a.b"]


def test_agent_summary_needs_enough_text() -> None:
    analyzer = AgentTranscriptAnalyzer()

    analyzer.analyze("Let me fix it.\n")
    assert analyzer.task_summary is None

    analyzer.analyze("Let me fix it.\nI'll refactor the session registry.\n")
    assert analyzer.task_summary == "refactor the session registry"


def test_agent_error_message_is_first_error_line() -> None:
    analyzer = AgentTranscriptAnalyzer()

    result = analyzer.analyze("running step\nError: could not open config\nmore\n")

    assert result.activity_state == ActivityState.ERROR
    assert result.error_message == "Error: could not open config"

    analyzer.clear_error()
    assert analyzer.error_message is None
    assert analyzer.current_state == ActivityState.IDLE


def test_analyze_only_scans_unseen_suffix() -> None:
    analyzer = AgentTranscriptAnalyzer()

    first = analyzer.analyze("Error: boom\n")
    second = analyzer.analyze("Error: boom\nplain text\n")

    assert first.activity_state == ActivityState.ERROR
    assert second.is_empty
    assert analyzer.current_state == ActivityState.ERROR


def test_whitespace_suffix_does_not_advance_position() -> None:
    analyzer = ShellAnalyzer()

    analyzer.analyze("$ ls\n")
    position = analyzer.position
    assert analyzer.analyze("$ ls\n   \n").is_empty
    assert analyzer.position == position


def test_shrunken_output_is_rescanned_from_start() -> None:
    analyzer = ShellAnalyzer()
    analyzer.analyze("x" * 40)

    result = analyzer.analyze("Installing deps\n")

    assert result.activity_state == ActivityState.WORKING


def test_discard_prefix_keeps_position_aligned_with_trimmed_buffer() -> None:
    analyzer = ShellAnalyzer()
    analyzer.analyze("0123456789")

    analyzer.discard_prefix(4)
    result = analyzer.analyze("456789Compiling app\n")

    assert analyzer.position == len("456789Compiling app\n")
    assert result.activity_state == ActivityState.WORKING


def test_reset_returns_to_idle() -> None:
    analyzer = ShellAnalyzer()
    analyzer.analyze("$ touch a.txt\nnpm ERR! missing script\n")

    analyzer.reset()

    assert analyzer.current_state == ActivityState.IDLE
    assert analyzer.position == 0
    assert analyzer.recent_file_changes == []
    assert analyzer.error_message is None
    assert analyzer.task_summary is None
