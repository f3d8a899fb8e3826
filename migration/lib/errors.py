"""Structured exception hierarchy for migrations.

Provides specific exception types for common failure modes,
with rich context for debugging and for resuming failed runs.
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional

__all__ = [
    "MigrationError",
    "ConfigurationError",
    "AlreadyExistsError",
    "AlreadyInitializedError",
    "KeyCollisionError",
    "TransferError",
    "RejectThresholdExceededError",
    "StepFailedError",
    "SkewWarning",
]


class MigrationError(Exception):
    """Base exception for all migration errors.

    Provides structured error information for debugging.
    """

    def __init__(
        self,
        message: str,
        *,
        table: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        suggestion: Optional[str] = None,
    ) -> None:
        self.table = table
        self.details = details or {}
        self.suggestion = suggestion

        parts = [message]

        if table:
            parts.insert(0, f"[{table}]")

        if details:
            detail_lines = [f"  {k}: {v}" for k, v in details.items()]
            parts.append("\nDetails:")
            parts.extend(detail_lines)

        if suggestion:
            parts.append(f"\nSuggestion: {suggestion}")

        super().__init__("\n".join(parts) if len(parts) > 1 else message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for structured logging."""
        return {
            "error_type": self.__class__.__name__,
            "message": self.message,
            "table": self.table,
            "details": self.details,
            "suggestion": self.suggestion,
        }


class ConfigurationError(MigrationError):
    """Error in migration configuration.

    Raised for malformed locations, file formats, distribution clauses,
    inflation ranges and YAML documents.
    """

    def __init__(
        self,
        message: str,
        *,
        field: Optional[str] = None,
        value: Any = None,
        **kwargs: Any,
    ) -> None:
        self.field = field
        self.value = value

        details = kwargs.pop("details", {})
        if field:
            details["field"] = field
        if value is not None:
            details["value"] = str(value)

        super().__init__(message, details=details, **kwargs)


class AlreadyExistsError(MigrationError):
    """A catalog object or table already exists.

    Setup steps treat this as an idempotent no-op on re-run.
    """

    def __init__(
        self,
        message: str,
        *,
        object_type: Optional[str] = None,
        name: Optional[str] = None,
        **kwargs: Any,
    ) -> None:
        self.object_type = object_type
        self.name = name

        details = kwargs.pop("details", {})
        if object_type:
            details["object_type"] = object_type
        if name:
            details["name"] = name

        super().__init__(message, details=details, **kwargs)


class AlreadyInitializedError(AlreadyExistsError):
    """The database master key already exists."""

    def __init__(self, message: str = "Database master key already exists", **kwargs: Any) -> None:
        kwargs.setdefault("object_type", "MASTER KEY")
        super().__init__(message, **kwargs)


class KeyCollisionError(MigrationError):
    """Synthetic keys would collide with original keys or with each other."""

    def __init__(
        self,
        message: str,
        *,
        key_column: Optional[str] = None,
        offset: Optional[int] = None,
        max_key: Optional[int] = None,
        **kwargs: Any,
    ) -> None:
        self.key_column = key_column
        self.offset = offset
        self.max_key = max_key

        details = kwargs.pop("details", {})
        if key_column:
            details["key_column"] = key_column
        if offset is not None:
            details["offset"] = offset
        if max_key is not None:
            details["max_key"] = max_key

        suggestion = kwargs.pop("suggestion", None)
        if not suggestion and max_key is not None:
            suggestion = f"Use an offset greater than {max_key}."

        super().__init__(message, details=details, suggestion=suggestion, **kwargs)


class TransferError(MigrationError):
    """Upload to object storage failed.

    Fatal for the run: there is no partial retry, the export must be
    re-run in full.
    """

    def __init__(
        self,
        message: str,
        *,
        location: Optional[str] = None,
        cause: Optional[Exception] = None,
        **kwargs: Any,
    ) -> None:
        self.location = location
        self.cause = cause

        details = kwargs.pop("details", {})
        if location:
            details["location"] = location
        if cause:
            details["cause"] = str(cause)
            details["cause_type"] = type(cause).__name__

        suggestion = kwargs.pop("suggestion", None)
        if not suggestion:
            suggestion = (
                "Check storage credentials and connectivity, then re-run the "
                "full export."
            )

        super().__init__(message, details=details, suggestion=suggestion, **kwargs)


class RejectThresholdExceededError(MigrationError):
    """More malformed rows than the reject policy allows.

    The load is aborted and no rows are committed.
    """

    def __init__(
        self,
        message: str,
        *,
        rejected: int = 0,
        processed: int = 0,
        policy: Optional[str] = None,
        reasons: Optional[List[str]] = None,
        **kwargs: Any,
    ) -> None:
        self.rejected = rejected
        self.processed = processed
        self.policy = policy
        self.reasons = reasons or []

        details = kwargs.pop("details", {})
        details["rejected"] = rejected
        details["processed"] = processed
        if policy:
            details["policy"] = policy
        if self.reasons:
            details["first_reason"] = self.reasons[0]

        suggestion = kwargs.pop("suggestion", None)
        if not suggestion:
            suggestion = (
                "Check that the exported file matches the external file format "
                "and column list, or raise REJECT_VALUE."
            )

        super().__init__(message, details=details, suggestion=suggestion, **kwargs)


class StepFailedError(MigrationError):
    """An orchestrator step failed.

    Names the step that failed and the last state reached so a re-run can
    resume instead of restarting.
    """

    def __init__(
        self,
        message: str,
        *,
        step: str,
        state_reached: str,
        cause: Optional[Exception] = None,
        **kwargs: Any,
    ) -> None:
        self.step = step
        self.state_reached = state_reached
        self.cause = cause

        details = kwargs.pop("details", {})
        details["step"] = step
        details["state_reached"] = state_reached
        if cause:
            details["cause"] = getattr(cause, "message", str(cause))
            details["cause_type"] = type(cause).__name__

        suggestion = kwargs.pop("suggestion", None)
        if not suggestion:
            suggestion = f"Fix the cause and resume from state {state_reached}."

        super().__init__(message, details=details, suggestion=suggestion, **kwargs)


class SkewWarning(UserWarning):
    """Row distribution across nodes deviates beyond the skew tolerance."""
