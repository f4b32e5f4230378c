"""Turn companion failure replies into host-side exceptions."""

import logging
import re

from pydantic import BaseModel
from pydantic import ConfigDict
from pydantic import ValidationError

from outboard.declarations import Function
from outboard.errors import DependencyLoadError
from outboard.errors import OutboardError
from outboard.errors import ProtocolError
from outboard.errors import RemoteExecutionError
from outboard.transport import CompanionResponse

_FRAME_PATTERN: re.Pattern[str] = re.compile(r'^\s*File "(?P<src>[^"]*)", line (?P<line>\d+), in (?P<call>.+?)\s*$')
_TRACEBACK_HEADER: str = "Traceback (most recent call last):"


class RemoteFailure(BaseModel):
    """Failure description rendered by the companion."""

    model_config = ConfigDict(extra="allow")

    name: str | None = None
    message: str | None = None
    stack: str | None = None
    loc: dict[str, object] | None = None
    dependency: str | None = None


def parse_stack(stack: str | None) -> list[str]:
    """Rebuild ``source:line:in call`` frames from a remote traceback.

    :param stack: Remote traceback text.
    :returns: Frames, outermost first.
    """
    if stack is None:
        return []
    lines: list[str] = stack.splitlines()
    if len(lines) > 0 and lines[0].strip() == _TRACEBACK_HEADER:
        lines = lines[1:]

    frames: list[str] = []
    for line in lines:
        match: re.Match[str] | None = _FRAME_PATTERN.match(line)
        if match is not None:
            frames.append(f"{match['src']}:{match['line']}:in {match['call']}")
    return frames


def format_location(loc: dict[str, object] | None) -> str:
    """Render structured location fields as a message suffix.

    :param loc: Location fields.
    :returns: ``" in key: value ..."`` or an empty string.
    """
    if loc is None or len(loc) == 0:
        return ""
    return " in" + "".join(f" {key}: {value}" for key, value in loc.items())


def _base_message(failure: RemoteFailure, fallback: str) -> str:
    return failure.message or failure.name or fallback


def build_error(failure: RemoteFailure, function: Function | None = None) -> RemoteExecutionError:
    """Materialize one remote failure.

    :param failure: Validated failure description.
    :param function: Declaration the call targeted, used to attribute the failure.
    :returns: ``DependencyLoadError`` when a package failed to load, else ``RemoteExecutionError``.
    """
    backtrace: list[str] = parse_stack(failure.stack)
    if len(backtrace) > 0 and function is not None and function.source_location is not None:
        backtrace.insert(0, function.source_location)

    attributes: dict[str, object] = failure.model_dump(exclude_none=True)
    remote_type_name: str = failure.name or "Exception"
    remote_message: str = failure.message or ""

    if failure.dependency is not None:
        message: str = (
            f"{_base_message(failure, 'Dependency error')}\n"
            + f"The specified dependency '{failure.dependency}' could not be loaded. "
            + f"Run 'pip install {failure.dependency}' to install it."
        )
        return DependencyLoadError(message, remote_type_name, remote_message, backtrace, attributes)

    message = _base_message(failure, "Unknown error")
    if len(backtrace) == 0:
        message += format_location(failure.loc)
    return RemoteExecutionError(message, remote_type_name, remote_message, backtrace, attributes)


def report_error(error: OutboardError, logger: logging.Logger) -> None:
    """Report a translated failure to the logging collaborator.

    :param error: Materialized error; remote failures also carry a backtrace.
    :param logger: Destination logger.
    """
    backtrace: list[str] = getattr(error, "backtrace", [])
    logger.error(
        "%s: %s\n%s",
        type(error).__name__,
        error,
        "\n".join(backtrace),
    )


def _error_attributes(response: CompanionResponse) -> dict[str, object] | None:
    """Extract the ``error`` object from a failure body.

    :param response: Non-2xx reply.
    :returns: Error attributes or ``None`` when the body carries none.
    """
    try:
        decoded: object = response.payload()
    except ProtocolError:
        return None
    if isinstance(decoded, dict) is False:
        return None
    attributes: object = decoded.get("error")
    if isinstance(attributes, dict) is False:
        return None
    return attributes


def _protocol_error(response: CompanionResponse) -> ProtocolError:
    """Describe a routing or request failure.

    :param response: Non-2xx reply.
    :returns: ``ProtocolError`` naming the status and, when present, the error message.
    """
    attributes: dict[str, object] | None = _error_attributes(response)
    if attributes is None:
        return ProtocolError(f"Companion returned {response.status}")
    try:
        failure: RemoteFailure = RemoteFailure.model_validate(attributes)
    except ValidationError:
        return ProtocolError(f"Companion returned {response.status} with a malformed error")
    return ProtocolError(f"Companion returned {response.status}: {_base_message(failure, 'Unknown error')}")


def translate_failure(
    response: CompanionResponse,
    function: Function | None,
    logger: logging.Logger,
) -> OutboardError:
    """Translate one non-2xx reply into the exception the caller should see.

    Remote execution failures (status 500) become ``RemoteExecutionError``;
    routing and request failures, or bodies that cannot be read, become
    ``ProtocolError``. Either way the error is reported to ``logger`` before
    being returned.

    :param response: Non-2xx reply.
    :param function: Declaration the call targeted, if any.
    :param logger: Logging collaborator.
    :returns: Exception to raise.
    """
    error: OutboardError
    attributes: dict[str, object] | None = _error_attributes(response)
    if response.status != 500 or attributes is None:
        error = _protocol_error(response)
    else:
        try:
            failure: RemoteFailure = RemoteFailure.model_validate(attributes)
        except ValidationError:
            error = _protocol_error(response)
        else:
            error = build_error(failure, function)
    report_error(error, logger)
    return error
