from __future__ import annotations

import re

from hypothesis import given
from hypothesis import strategies as st

from termnexus.activity.analyzers import AgentTranscriptAnalyzer, ShellAnalyzer, resolve_category
from termnexus.activity.models import RECENT_FILE_CHANGES_LIMIT
from termnexus.activity.patterns import MIN_CONFIDENCE, PatternCategory
from termnexus.terminal.session import OutputBuffer
from termnexus.worktree import sanitize_branch

_FRAGMENTS = st.sampled_from(
    [
        "$ ",
        "PS C:\\repo> ",
        "Building...\n",
        "Build succeeded\n",
        "Error: boom\n",
        "command not found\n",
        "[Y/n] ",
        "Edit src/app.py\n",
        "touch notes.txt\n",
        "rm -rf build\n",
        "\x1b[32mDone\x1b[0m\r\n",
        "   ",
        "\n",
    ]
)
_CHUNKS = st.lists(st.one_of(_FRAGMENTS, st.text(max_size=40)), max_size=40)
_CONFIDENCES = st.dictionaries(
    st.sampled_from(list(PatternCategory)),
    st.floats(min_value=0.0, max_value=1.0, allow_nan=False),
)


@given(_CHUNKS)
def test_analyzers_track_position_and_bound_file_history(chunks: list[str]) -> None:
    for analyzer in (AgentTranscriptAnalyzer(), ShellAnalyzer()):
        buffer = ""
        for chunk in chunks:
            buffer += chunk
            result = analyzer.analyze(buffer)
            assert analyzer.position <= len(buffer)
            assert len(analyzer.recent_file_changes) <= RECENT_FILE_CHANGES_LIMIT
            if result.activity_state is not None:
                assert result.activity_state == analyzer.current_state
                assert result.confidence >= MIN_CONFIDENCE


@given(_CONFIDENCES)
def test_resolved_category_is_a_confident_match(found: dict[PatternCategory, float]) -> None:
    category, confidence = resolve_category(found)

    if category is None:
        assert confidence == 0.0
    else:
        assert found[category] == confidence
        assert confidence >= MIN_CONFIDENCE


@given(st.lists(st.text(max_size=30), max_size=30), st.integers(min_value=1, max_value=64))
def test_output_buffer_keeps_suffix_of_everything_written(chunks: list[str], limit: int) -> None:
    buffer = OutputBuffer(limit)
    for chunk in chunks:
        buffer.append(chunk)

    expected = "".join(chunks)[-limit:]
    assert buffer.text() == expected
    assert len(buffer) == len(expected)


@given(st.text(max_size=60))
def test_sanitized_branch_is_a_safe_directory_name(branch: str) -> None:
    assert re.fullmatch(r"[A-Za-z0-9_-]+", sanitize_branch(branch))
