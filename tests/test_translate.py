"""Unit tests for remote failure translation."""

import json
import logging

import pytest

from outboard import DependencyLoadError
from outboard import ProtocolError
from outboard import RemoteExecutionError
from outboard.declarations import Function
from outboard.declarations import SourceText
from outboard.transport import CompanionResponse
from outboard.translate import RemoteFailure
from outboard.translate import build_error
from outboard.translate import format_location
from outboard.translate import parse_stack
from outboard.translate import translate_failure

SAMPLE_STACK: str = (
    "Traceback (most recent call last):\n"
    '  File "outboard://demo.Sample", line 3, in divide\n'
    "    lambda: 1 / 0\n"
    '  File "/usr/lib/python3.12/fractions.py", line 10, in helper\n'
    "    return x / y\n"
    "ZeroDivisionError: division by zero\n"
)


def _failure_response(status: int, error: dict[str, object]) -> CompanionResponse:
    """Build a failure reply.

    :param status: Reply status.
    :param error: Error attributes.
    :returns: Response value.
    """
    return CompanionResponse(status=status, body=json.dumps({"error": error}))


def test_parse_stack_rebuilds_frames() -> None:
    """Verify Python traceback frames become ``source:line:in call`` entries."""
    frames: list[str] = parse_stack(SAMPLE_STACK)
    assert frames == [
        "outboard://demo.Sample:3:in divide",
        "/usr/lib/python3.12/fractions.py:10:in helper",
    ]
    assert parse_stack(None) == []


def test_format_location_renders_pairs() -> None:
    """Verify structured locations become a message suffix."""
    assert format_location({"line": 2, "column": 5}) == " in line: 2 column: 5"
    assert format_location(None) == ""
    assert format_location({}) == ""


def test_build_error_prepends_declaration_site() -> None:
    """Verify the first backtrace frame is the host declaration site."""
    declared: Function = Function("divide", SourceText("lambda: 1 / 0"), source_location="/app/models.py:12")
    failure: RemoteFailure = RemoteFailure(name="ZeroDivisionError", message="division by zero", stack=SAMPLE_STACK)

    error: RemoteExecutionError = build_error(failure, declared)
    assert type(error) is RemoteExecutionError
    assert error.backtrace[0] == "/app/models.py:12"
    assert error.backtrace[1] == "outboard://demo.Sample:3:in divide"
    assert error.remote_type_name == "ZeroDivisionError"
    assert str(error) == "division by zero"


def test_build_error_without_stack_uses_location() -> None:
    """Verify a stackless failure falls back to its message and location."""
    failure: RemoteFailure = RemoteFailure(name="SyntaxError", message="invalid syntax", loc={"line": 1})
    error: RemoteExecutionError = build_error(failure)
    assert str(error) == "invalid syntax in line: 1"
    assert error.backtrace == []


def test_build_error_classifies_dependency_failures() -> None:
    """Verify a dependency marker produces remediation text naming the package."""
    failure: RemoteFailure = RemoteFailure(
        name="ModuleNotFoundError",
        message="No module named 'left_pad'",
        dependency="left_pad",
    )
    error: RemoteExecutionError = build_error(failure)
    assert isinstance(error, DependencyLoadError) is True
    assert error.dependency == "left_pad"
    assert "pip install left_pad" in str(error)


def test_translate_failure_reports_remote_errors(caplog: pytest.LogCaptureFixture) -> None:
    """Verify remote failures are logged before being returned."""
    logger: logging.Logger = logging.getLogger("outboard.tests.translate")
    response: CompanionResponse = _failure_response(
        500,
        {"name": "ValueError", "message": "bad value", "stack": SAMPLE_STACK, "extra": "kept"},
    )
    with caplog.at_level(logging.ERROR, logger="outboard.tests.translate"):
        error = translate_failure(response, None, logger)

    assert isinstance(error, RemoteExecutionError) is True
    assert error.attributes["extra"] == "kept"
    assert "RemoteExecutionError: bad value" in caplog.text
    assert "outboard://demo.Sample:3:in divide" in caplog.text


def test_translate_failure_maps_routing_errors_to_protocol_errors(caplog: pytest.LogCaptureFixture) -> None:
    """Verify non-500 statuses and unreadable bodies become protocol errors and are logged."""
    logger: logging.Logger = logging.getLogger("outboard.tests.translate")
    with caplog.at_level(logging.ERROR, logger="outboard.tests.translate"):
        not_found = translate_failure(
            _failure_response(404, {"name": "NotFound", "message": "Class x not defined"}), None, logger
        )
        empty = translate_failure(CompanionResponse(status=502, body=""), None, logger)
        garbled = translate_failure(CompanionResponse(status=500, body="{not json"), None, logger)

    assert isinstance(not_found, ProtocolError) is True
    assert "404" in str(not_found)
    assert "Class x not defined" in str(not_found)
    assert isinstance(empty, ProtocolError) is True
    assert str(empty) == "Companion returned 502"
    assert isinstance(garbled, ProtocolError) is True
    assert str(garbled) == "Companion returned 500"

    messages: list[str] = [record.getMessage() for record in caplog.records]
    assert len(messages) == 3
    assert messages[0].startswith("ProtocolError: Companion returned 404: Class x not defined") is True
    assert messages[1].startswith("ProtocolError: Companion returned 502") is True
    assert messages[2].startswith("ProtocolError: Companion returned 500") is True


def test_remote_error_carries_backtrace_note() -> None:
    """Verify the remote backtrace is attached as an exception note."""
    error: RemoteExecutionError = RemoteExecutionError("boom", "RuntimeError", "boom", ["a:1:in f"])
    assert error.__notes__ == ["Remote backtrace:\n  a:1:in f"]
