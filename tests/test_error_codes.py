from __future__ import annotations

import pytest

from termnexus.errors import ExitCode, TermNexusError, describe_failure, user_facing_error
from termnexus.hooks.state_file import validate_session_id
from termnexus.logging import LOG_LEVELS, configure_logging


def test_exit_codes_are_deterministic() -> None:
    assert int(ExitCode.SUCCESS) == 0
    assert int(ExitCode.INVALID_ARGS) == 2
    assert int(ExitCode.PROCESS_ERROR) == 6
    assert int(ExitCode.UNSUPPORTED_PLATFORM) == 8


def test_termnexus_error_string_contains_hint() -> None:
    err = TermNexusError("git not found", code=ExitCode.GIT_ERROR, hint="Install git")
    assert "Install git" in str(err)
    assert str(TermNexusError("plain")) == "plain"


def test_user_facing_error_template() -> None:
    text = user_facing_error("Invalid terminal size", hint="Use positive values")
    assert text.startswith("Error:")
    assert "Next step" in text


def test_describe_failure_prefers_message_then_fallback() -> None:
    assert describe_failure(OSError("disk full"), "fallback") == "disk full"
    assert describe_failure(RuntimeError(), "fallback") == "fallback"
    assert "Hint: retry" in describe_failure(TermNexusError("boom", hint="retry"), "fallback")



def test_invalid_session_id_is_a_validation_error_with_next_step() -> None:
    with pytest.raises(TermNexusError) as caught:
        validate_session_id("../escape")

    assert caught.value.code == ExitCode.VALIDATION_ERROR
    rendered = describe_failure(caught.value, "fallback")
    assert rendered.startswith("Invalid session id")
    assert "Hint: Session ids may only contain" in rendered

def test_logging_levels() -> None:
    logger = configure_logging("WARN")
    assert logger.level == LOG_LEVELS["WARN"]
