"""DAGGER foundations: error taxonomy, validation results, timestamp and ID helpers.

Foundational module shared by every other module:
  - DaggerError hierarchy (not-found, invalid content, invalid merge,
    validation failure, state shape, provider failure)
  - ValidationResult: aggregated, non-throwing validator output
  - Timestamp helpers (canonical ISO-8601 UTC)
  - Node / merge identifier generation

Dependency: stdlib only (no imports from config, state, or response).
"""

from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List


# ---------------------------------------------------------------------------
# Errors
# ---------------------------------------------------------------------------
class DaggerError(Exception):
    """Base class for every domain error raised by the conversation core."""


class NotFoundError(DaggerError, LookupError):
    """Raised when a referenced node, branch, or handle does not exist."""


class InvalidContentError(DaggerError, ValueError):
    """Raised when message content is empty, not text, or has a bad role."""


class InvalidMergeError(DaggerError, ValueError):
    """Raised when a merge breaks the hierarchy rule or repeats a closed thread."""


class StateValidationError(DaggerError, ValueError):
    """Raised when state payload shape is incompatible with expectations."""


class ProviderError(DaggerError):
    """Raised when the upstream LLM call fails."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ValidationFailed(DaggerError):
    """Raised by ValidationResult.raise_if_invalid(); carries every error found."""

    def __init__(self, errors: List[str]):
        super().__init__("; ".join(errors) or "validation failed")
        self.errors = list(errors)


# ---------------------------------------------------------------------------
# Validation result
# ---------------------------------------------------------------------------
@dataclass
class ValidationResult:
    """Outcome of a structural validator. Returned as data, never raised."""

    valid: bool = True
    errors: List[str] = field(default_factory=list)

    @classmethod
    def from_errors(cls, errors: List[str]) -> "ValidationResult":
        return cls(valid=not errors, errors=list(errors))

    def raise_if_invalid(self) -> None:
        if not self.valid:
            raise ValidationFailed(self.errors)

    def to_dict(self) -> Dict[str, Any]:
        return {"valid": self.valid, "errors": list(self.errors)}


# ---------------------------------------------------------------------------
# Timestamp helpers
# ---------------------------------------------------------------------------
def utc_now_iso() -> str:
    """Return the current UTC timestamp in canonical ISO-8601 Zulu format."""
    return datetime.now(timezone.utc).replace(microsecond=0).strftime("%Y-%m-%dT%H:%M:%SZ")


def _is_iso8601_utc(timestamp: Any) -> bool:
    """Validate strict YYYY-MM-DDTHH:MM:SSZ timestamp strings."""
    if not isinstance(timestamp, str):
        return False
    try:
        datetime.strptime(timestamp, "%Y-%m-%dT%H:%M:%SZ")
        return True
    except ValueError:
        return False


def _coerce_timestamp(value: Any) -> str:
    """Return value when valid; otherwise replace with current UTC timestamp."""
    if _is_iso8601_utc(value):
        return str(value)
    return utc_now_iso()


def epoch_millis() -> int:
    """Current UTC time in whole milliseconds."""
    return int(datetime.now(timezone.utc).timestamp() * 1000)


# ---------------------------------------------------------------------------
# ID helpers
# ---------------------------------------------------------------------------
def new_node_id() -> str:
    """Opaque, process-unique identifier for a conversation node."""
    return uuid.uuid4().hex


def new_merge_id() -> str:
    return f"merge_{uuid.uuid4().hex[:12]}"


def is_blank(value: Any) -> bool:
    """True for None, non-strings, and whitespace-only strings."""
    return not isinstance(value, str) or not value.strip()
