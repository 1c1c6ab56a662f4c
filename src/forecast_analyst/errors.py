"""
Error types for forecast-analyst.

Every error carries a stable code and a retryable flag so callers can
apply uniform policy (retry, degrade, fall back, abort) without matching
on message text.
"""

from typing import Any, Optional


class ErrorCode:
	"""Stable error codes."""
	UNKNOWN = "UNKNOWN"
	CONFIG_INVALID = "CONFIG_INVALID"
	TIMEOUT = "TIMEOUT"
	RATE_LIMITED = "RATE_LIMITED"
	OVERLOADED = "OVERLOADED"
	EXECUTOR_FAILED = "EXECUTOR_FAILED"
	EXECUTOR_UNAVAILABLE = "EXECUTOR_UNAVAILABLE"
	BUDGET_EXCEEDED = "BUDGET_EXCEEDED"
	MAX_TURNS_EXCEEDED = "MAX_TURNS_EXCEEDED"
	VALIDATION_FAILED = "VALIDATION_FAILED"
	OUTPUT_PARSE_FAILED = "OUTPUT_PARSE_FAILED"
	DECOMPOSE_FAILED = "DECOMPOSE_FAILED"
	FORECAST_FAILED = "FORECAST_FAILED"
	STORE_FAILED = "STORE_FAILED"
	WORKSPACE_NOT_FOUND = "WORKSPACE_NOT_FOUND"
	WORKSPACE_CORRUPTED = "WORKSPACE_CORRUPTED"


TRANSIENT_CODES = frozenset({
	ErrorCode.TIMEOUT,
	ErrorCode.RATE_LIMITED,
	ErrorCode.OVERLOADED,
})

# Substrings that identify transient executor failures, checked in order
_TRANSIENT_MARKERS = [
	("timed out", ErrorCode.TIMEOUT),
	("timeout", ErrorCode.TIMEOUT),
	("rate limit", ErrorCode.RATE_LIMITED),
	("rate_limit", ErrorCode.RATE_LIMITED),
	("429", ErrorCode.RATE_LIMITED),
	("overloaded", ErrorCode.OVERLOADED),
	("529", ErrorCode.OVERLOADED),
	("503", ErrorCode.OVERLOADED),
]

_LIMIT_MARKERS = [
	("max turns", ErrorCode.MAX_TURNS_EXCEEDED),
	("max_turns", ErrorCode.MAX_TURNS_EXCEEDED),
	("budget", ErrorCode.BUDGET_EXCEEDED),
	("cost limit", ErrorCode.BUDGET_EXCEEDED),
]


class AnalystError(Exception):
	"""Base error with a stable code and retryable flag."""

	code: str = ErrorCode.UNKNOWN
	retryable: bool = False

	def __init__(
		self,
		message: str,
		code: Optional[str] = None,
		retryable: Optional[bool] = None,
		context: Optional[dict[str, Any]] = None,
	):
		super().__init__(message)
		self.message = message
		if code is not None:
			self.code = code
		if retryable is not None:
			self.retryable = retryable
		self.context = context or {}

	def to_dict(self) -> dict[str, Any]:
		return {
			"type": type(self).__name__,
			"code": self.code,
			"message": self.message,
			"retryable": self.retryable,
			"context": self.context,
		}


class ConfigError(AnalystError):
	"""Invalid or missing configuration."""
	code = ErrorCode.CONFIG_INVALID


class ExecutorError(AnalystError):
	"""An executor call failed."""
	code = ErrorCode.EXECUTOR_FAILED


class TransientExecutorError(ExecutorError):
	"""Timeout, rate limit or overload. Safe to retry."""
	code = ErrorCode.TIMEOUT
	retryable = True


class BudgetExceededError(AnalystError):
	"""A cost ceiling was hit."""
	code = ErrorCode.BUDGET_EXCEEDED


class MaxTurnsExceededError(AnalystError):
	"""A turn ceiling was hit."""
	code = ErrorCode.MAX_TURNS_EXCEEDED


class FilterValidationError(AnalystError):
	"""Filtered evidence broke the subset contract."""
	code = ErrorCode.VALIDATION_FAILED

	def __init__(self, message: str, issues: Optional[list] = None, **kwargs):
		super().__init__(message, **kwargs)
		self.issues = issues or []


class OutputParseError(AnalystError):
	"""Executor output could not be parsed into the expected document."""
	code = ErrorCode.OUTPUT_PARSE_FAILED


class PhaseFailedError(AnalystError):
	"""A phase with no safe fallback failed; the run is aborted."""

	def __init__(self, phase: str, message: str, code: str, cause: Optional[BaseException] = None):
		super().__init__(message, code=code, context={"phase": phase})
		self.phase = phase
		self.cause = cause


class StoreError(AnalystError):
	"""Persistence backend failure."""
	code = ErrorCode.STORE_FAILED


class WorkspaceNotFoundError(AnalystError):
	"""No workspace exists for the target."""
	code = ErrorCode.WORKSPACE_NOT_FOUND


class WorkspaceCorruptedError(AnalystError):
	"""A stored workspace document failed validation."""
	code = ErrorCode.WORKSPACE_CORRUPTED


def classify_failure(message: str) -> tuple[str, bool]:
	"""
	Map an executor failure message to (code, retryable).

	Limit markers are checked before transient markers.
	"""
	text = (message or "").lower()
	for marker, code in _LIMIT_MARKERS:
		if marker in text:
			return code, False
	for marker, code in _TRANSIENT_MARKERS:
		if marker in text:
			return code, code in TRANSIENT_CODES
	return ErrorCode.EXECUTOR_FAILED, False


_CODE_ERRORS: dict[str, type[AnalystError]] = {
	ErrorCode.TIMEOUT: TransientExecutorError,
	ErrorCode.RATE_LIMITED: TransientExecutorError,
	ErrorCode.OVERLOADED: TransientExecutorError,
	ErrorCode.EXECUTOR_FAILED: ExecutorError,
	ErrorCode.EXECUTOR_UNAVAILABLE: ExecutorError,
	ErrorCode.BUDGET_EXCEEDED: BudgetExceededError,
	ErrorCode.MAX_TURNS_EXCEEDED: MaxTurnsExceededError,
	ErrorCode.VALIDATION_FAILED: FilterValidationError,
	ErrorCode.OUTPUT_PARSE_FAILED: OutputParseError,
}


def error_for_code(
	code: str,
	message: str,
	retryable: Optional[bool] = None,
	context: Optional[dict[str, Any]] = None,
) -> AnalystError:
	"""Build the exception type that corresponds to an error code."""
	error_cls = _CODE_ERRORS.get(code, AnalystError)
	return error_cls(message, code=code, retryable=retryable, context=context)
