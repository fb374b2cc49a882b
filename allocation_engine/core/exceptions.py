# allocation_engine/core/exceptions.py
"""Engine-level exceptions.

Every error carries a machine friendly ``code`` plus optional ``details``,
``cause`` and ``context`` so callers can log or translate it uniformly.
``ConvergenceTimeout`` is the only non-fatal member: the optimizer catches it
and returns its best-so-far result flagged as partial.
"""
from __future__ import annotations

from typing import Optional, Any, Dict, List
from datetime import datetime, timezone


class EngineError(Exception):
    """Base engine exception with structured metadata.

    Attributes
    ----------
    message
        Human readable message.
    code
        Machine friendly error code (snake_case).
    details
        Arbitrary extra data useful for debugging.
    timestamp
        UTC ISO timestamp when the exception was created.
    cause
        Optional underlying exception instance.
    context
        Optional lightweight context dict (ids, counts, phase names).
    """

    code: str = "engine_error"
    retryable: bool = False

    def __init__(
        self,
        message: str = "An engine error occurred",
        *,
        details: Optional[Any] = None,
        cause: Optional[BaseException] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.details = details
        self.cause = cause
        self.context = context or {}
        self.timestamp = datetime.now(timezone.utc).isoformat()

    def __str__(self) -> str:
        base = f"{self.__class__.__name__}({self.code}): {self.message}"
        if self.context:
            base += f" | context={self.context}"
        if self.details is not None:
            base += f" | details={self.details}"
        if self.cause is not None:
            base += f" | cause={repr(self.cause)}"
        return base

    def to_dict(self) -> Dict[str, Any]:
        """Return a serializable representation for logs and callers."""
        return {
            "error": {
                "type": self.__class__.__name__,
                "code": self.code,
                "message": self.message,
                "details": self.details,
                "context": self.context,
                "timestamp": self.timestamp,
            }
        }

    def with_context(self, **ctx: Any) -> "EngineError":
        """Return self after extending the context dict.

        Example:
        raise err.with_context(model_id=model_id)
        """
        self.context.update({k: v for k, v in ctx.items() if v is not None})
        return self

    @classmethod
    def from_exception(
        cls, exc: BaseException, message: Optional[str] = None
    ) -> "EngineError":
        """Wrap a generic exception preserving the cause."""
        return cls(message or str(exc), cause=exc)


class ValidationError(EngineError):
    """Input failed validation (malformed request, bad features, bad config)."""

    code = "validation_error"

    def __init__(
        self,
        message: str = "Validation failed",
        *,
        errors: Optional[List[str]] = None,
        details: Optional[Any] = None,
        cause: Optional[BaseException] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, details=details, cause=cause, context=context)
        self.errors = list(errors or [])
        if self.errors and self.details is None:
            self.details = {"errors": self.errors}


class InsufficientDataError(EngineError):
    """Training dataset is too small for the model's sequence length."""

    code = "insufficient_data"

    def __init__(
        self,
        message: str = "Not enough data",
        *,
        required: Optional[int] = None,
        available: Optional[int] = None,
        details: Optional[Any] = None,
        cause: Optional[BaseException] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, details=details, cause=cause, context=context)
        self.required = required
        self.available = available
        if required is not None:
            self.context.setdefault("required", required)
        if available is not None:
            self.context.setdefault("available", available)


class InsufficientHistoryError(InsufficientDataError):
    """Historical series is shorter than the forecaster window + 1."""

    code = "insufficient_history"


class ConstraintInfeasibleError(EngineError):
    """No allocation satisfies the hard constraints.

    Raised once the repair-attempt budget is exhausted. ``diagnostics`` lists
    the tasks whose feasible domain turned out empty where known.
    """

    code = "constraint_infeasible"

    def __init__(
        self,
        message: str = "Hard constraints cannot be satisfied",
        *,
        diagnostics: Optional[Dict[str, Any]] = None,
        details: Optional[Any] = None,
        cause: Optional[BaseException] = None,
        context: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, details=details, cause=cause, context=context)
        self.diagnostics = diagnostics or {}


class ConvergenceTimeout(EngineError):
    """Caller deadline reached before convergence (non-fatal)."""

    code = "convergence_timeout"


class ModelNotFoundError(EngineError):
    """No persisted model (or model version) under the given id."""

    code = "model_not_found"

    def __init__(
        self,
        model_id: str,
        version: Optional[int] = None,
        *,
        cause: Optional[BaseException] = None,
    ) -> None:
        message = f"Model '{model_id}' not found"
        if version is not None:
            message = f"Model '{model_id}' version {version} not found"
        super().__init__(
            message, cause=cause, context={"model_id": model_id, "version": version}
        )
        self.model_id = model_id
        self.version = version


class PersistenceError(EngineError):
    """Model store read/write failed. Retried before surfacing."""

    code = "persistence_error"
    retryable = True


class ResultNotFoundError(EngineError):
    """Unknown optimization result id."""

    code = "result_not_found"

    def __init__(self, result_id: str) -> None:
        super().__init__(
            f"Optimization result '{result_id}' not found",
            context={"result_id": result_id},
        )
        self.result_id = result_id
