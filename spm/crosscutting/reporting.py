import json
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from spm.crosscutting.config import ConfigError
from spm.domain.errors import (
    EndpointUnavailable,
    FeatureUnavailable,
    NotFound,
    PermanentFailure,
    SpmError,
    TemporaryFailure,
    UsageError,
)


class ErrorCode(str, Enum):
    """Error codes reported in JSON envelopes."""

    INVALID_USAGE = "INVALID_USAGE"
    AUTH_CONFIG = "AUTH_CONFIG"
    NETWORK = "NETWORK"
    SPOTIFY_API = "SPOTIFY_API"
    NOT_FOUND = "NOT_FOUND"
    EXPERIMENTAL_UNAVAILABLE = "EXPERIMENTAL_UNAVAILABLE"
    INTERNAL = "INTERNAL"
    INTERRUPTED = "INTERRUPTED"


EXIT_CODES = {
    ErrorCode.INTERNAL: 1,
    ErrorCode.INVALID_USAGE: 2,
    ErrorCode.AUTH_CONFIG: 3,
    ErrorCode.NETWORK: 4,
    ErrorCode.SPOTIFY_API: 5,
    ErrorCode.NOT_FOUND: 6,
    ErrorCode.EXPERIMENTAL_UNAVAILABLE: 7,
    ErrorCode.INTERRUPTED: 130,
}


@dataclass
class CommandResult:
    """Outcome of one CLI command."""

    data: Dict[str, Any]
    human: List[str] = field(default_factory=list)
    warnings: List[str] = field(default_factory=list)

    def to_json(self) -> Dict[str, Any]:
        return success_envelope(self)


def error_code_for(error: BaseException) -> ErrorCode:
    """Map an exception to its reported error code."""
    if isinstance(error, KeyboardInterrupt):
        return ErrorCode.INTERRUPTED
    if isinstance(error, UsageError):
        return ErrorCode.INVALID_USAGE
    if isinstance(error, ConfigError):
        return ErrorCode.AUTH_CONFIG
    if isinstance(error, TemporaryFailure):
        return ErrorCode.NETWORK
    if isinstance(error, NotFound):
        return ErrorCode.NOT_FOUND
    if isinstance(error, (EndpointUnavailable, FeatureUnavailable)):
        return ErrorCode.EXPERIMENTAL_UNAVAILABLE
    if isinstance(error, PermanentFailure):
        return ErrorCode.SPOTIFY_API
    return ErrorCode.INTERNAL


def exit_code_for(error: BaseException) -> int:
    return EXIT_CODES[error_code_for(error)]


def success_envelope(result: CommandResult) -> Dict[str, Any]:
    return {
        "ok": True,
        "data": result.data,
        "warnings": list(result.warnings),
    }


def error_envelope(error: BaseException) -> Dict[str, Any]:
    code = error_code_for(error)
    if isinstance(error, SpmError):
        message, hint = error.message, error.hint
    elif isinstance(error, KeyboardInterrupt):
        message, hint = "Interrupted.", None
    else:
        message, hint = str(error) or type(error).__name__, None
    payload: Dict[str, Any] = {"code": code.value, "message": message}
    if hint:
        payload["hint"] = hint
    status = getattr(error, "status", None)
    if status is not None:
        payload["status"] = status
    return {"ok": False, "error": payload}


def render_json(envelope: Dict[str, Any]) -> str:
    return json.dumps(envelope, indent=2, ensure_ascii=False)


def render_human(result: CommandResult) -> str:
    """Render human output: body lines followed by warnings."""
    lines = list(result.human)
    for warning in result.warnings:
        lines.append(f"Warning: {warning}")
    return "\n".join(lines)


def render_error_human(error: BaseException) -> str:
    envelope = error_envelope(error)["error"]
    lines = [f"Error: {envelope['message']}"]
    if envelope.get("hint"):
        lines.append(f"Hint: {envelope['hint']}")
    return "\n".join(lines)


def push_kv(lines: List[str], label: str, value: Optional[Any]) -> None:
    """Append a 'Label: value' line, skipping empty values."""
    if value is None or value == "":
        return
    lines.append(f"{label}: {value}")


def action_summary_human(action: str, name: Optional[str], result) -> List[str]:
    """Human summary of an ApplyResult."""
    lines = [
        f"{action}: {name or 'playlist'}",
        f"Before: {result.before_count}",
        f"After: {result.after_count}",
        f"Removed: {result.removed}",
        f"Dropped Episodes: {result.dropped_episodes}",
        f"Changed: {'Yes' if result.changed else 'No'}",
        f"Applied: {'Yes' if result.applied else 'No'}",
    ]
    if not result.applied and result.changed:
        lines.append("Preview only. Re-run with --apply to persist changes.")
    return lines
