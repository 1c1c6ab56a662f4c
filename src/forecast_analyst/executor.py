"""
Executor - Runs one reasoning/research step under a resource profile.

The orchestrator only depends on the Executor protocol. Two
implementations are provided:

- ClaudeCLIExecutor spawns `claude --print --output-format json` with
  the profile's model, tool allow-list, turn cap and cost ceiling.
- RetryingExecutor wraps any executor with a wall-clock timeout and
  exponential-backoff retries for transient failures (timeout, rate
  limit, overload). Budget, turn-limit and validation failures are
  returned immediately.
"""

import asyncio
import json
import logging
import re
import time
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional, Protocol

from .errors import AnalystError, ErrorCode, OutputParseError, classify_failure, error_for_code
from .profiles import ResourceProfile

logger = logging.getLogger(__name__)

_FENCE_RE = re.compile(r"```(?:json)?\s*(.*?)```", re.DOTALL)

# Claude CLI result subtypes that mean a hard limit was hit
_LIMIT_SUBTYPES = {
	"error_max_turns": ErrorCode.MAX_TURNS_EXCEEDED,
	"error_max_budget_usd": ErrorCode.BUDGET_EXCEEDED,
}


@dataclass
class ExecutionError:
	"""Failure details with a stable code."""
	code: str
	message: str
	retryable: bool = False

	@classmethod
	def from_exception(cls, exc: BaseException) -> "ExecutionError":
		if isinstance(exc, AnalystError):
			return cls(code=exc.code, message=exc.message, retryable=exc.retryable)
		code, retryable = classify_failure(str(exc))
		return cls(code=code, message=str(exc) or type(exc).__name__, retryable=retryable)

	@classmethod
	def from_message(cls, message: str) -> "ExecutionError":
		code, retryable = classify_failure(message)
		return cls(code=code, message=message, retryable=retryable)

	def to_exception(self) -> AnalystError:
		return error_for_code(self.code, self.message, retryable=self.retryable)


@dataclass
class ExecutionRequest:
	"""A task plus the limits it must run under."""
	task: str
	profile: ResourceProfile
	context: dict[str, Any] = field(default_factory=dict)


@dataclass
class ExecutionResult:
	"""Outcome of one executor call."""
	success: bool
	output: str = ""
	cost_usd: float = 0.0
	duration_ms: int = 0
	tools_used: list[str] = field(default_factory=list)
	turns: int = 0
	error: Optional[ExecutionError] = None
	attempts: int = 1

	@classmethod
	def failure(cls, error: ExecutionError, duration_ms: int = 0, cost_usd: float = 0.0) -> "ExecutionResult":
		return cls(success=False, error=error, duration_ms=duration_ms, cost_usd=cost_usd)


class Executor(Protocol):
	"""Anything that can run an ExecutionRequest."""

	async def execute(self, request: ExecutionRequest) -> ExecutionResult:
		...


class RetryingExecutor:
	"""
	Adds timeouts and transient-failure retries to an executor.

	Cost from every attempt is accumulated into the returned result so the
	caller can charge the budget for failed attempts too.
	"""

	def __init__(
		self,
		inner: Executor,
		max_attempts: int = 3,
		backoff_seconds: float = 1.0,
		sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
	):
		if max_attempts < 1:
			raise ValueError("max_attempts must be at least 1")
		self.inner = inner
		self.max_attempts = max_attempts
		self.backoff_seconds = backoff_seconds
		self._sleep = sleep

	async def execute(self, request: ExecutionRequest) -> ExecutionResult:
		total_cost = 0.0
		started = time.monotonic()
		ceiling = request.profile.max_cost_usd
		result: Optional[ExecutionResult] = None
		attempt_request = request

		for attempt in range(1, self.max_attempts + 1):
			result = await self._attempt(attempt_request)
			total_cost += result.cost_usd

			if result.success or result.error is None or not result.error.retryable:
				break

			# Retries share the original ceiling
			remaining = ceiling - total_cost
			if remaining <= 0:
				logger.error(
					f"[{request.profile.name}] attempt {attempt} spent the ${ceiling:.4f} ceiling, not retrying: "
					f"{result.error.message[:200]}"
				)
				break

			if attempt < self.max_attempts:
				delay = self.backoff_seconds * (2 ** (attempt - 1))
				logger.warning(
					f"[{request.profile.name}] attempt {attempt}/{self.max_attempts} failed "
					f"({result.error.code}: {result.error.message[:200]}), retrying in {delay:.1f}s "
					f"with ${remaining:.4f} left"
				)
				await self._sleep(delay)
				attempt_request = replace(request, profile=request.profile.capped(remaining))
			else:
				logger.error(
					f"[{request.profile.name}] giving up after {attempt} attempts: {result.error.message[:200]}"
				)

		result.cost_usd = total_cost
		result.attempts = attempt
		result.duration_ms = int((time.monotonic() - started) * 1000)
		return result

	async def _attempt(self, request: ExecutionRequest) -> ExecutionResult:
		started = time.monotonic()
		try:
			return await asyncio.wait_for(
				self.inner.execute(request),
				timeout=request.profile.timeout_seconds,
			)
		except asyncio.TimeoutError:
			return ExecutionResult.failure(
				ExecutionError(
					code=ErrorCode.TIMEOUT,
					message=f"Task timed out after {request.profile.timeout_seconds} seconds",
					retryable=True,
				),
				duration_ms=int((time.monotonic() - started) * 1000),
			)
		except Exception as e:
			return ExecutionResult.failure(
				ExecutionError.from_exception(e),
				duration_ms=int((time.monotonic() - started) * 1000),
			)


class ClaudeCLIExecutor:
	"""Executes tasks through the Claude CLI in non-interactive JSON mode."""

	def __init__(self, command: str = "claude", cwd: Optional[Path] = None):
		self.command = command
		self.cwd = cwd

	def build_args(self, profile: ResourceProfile) -> list[str]:
		args = [
			self.command,
			"--print",
			"--output-format", "json",
			"--model", profile.model,
			"--max-turns", str(profile.max_turns),
			"--max-budget-usd", f"{profile.max_cost_usd:.4f}",
		]
		tools = profile.to_allowed_tools_list()
		if tools:
			args.extend(["--allowedTools", ",".join(tools)])
		return args

	async def execute(self, request: ExecutionRequest) -> ExecutionResult:
		started = time.monotonic()
		if request.profile.max_cost_usd <= 0:
			return ExecutionResult.failure(ExecutionError(
				code=ErrorCode.BUDGET_EXCEEDED,
				message=f"No budget left for {request.profile.name}",
			))

		try:
			process = await asyncio.create_subprocess_exec(
				*self.build_args(request.profile),
				stdin=asyncio.subprocess.PIPE,
				stdout=asyncio.subprocess.PIPE,
				stderr=asyncio.subprocess.PIPE,
				cwd=str(self.cwd) if self.cwd else None,
			)
		except FileNotFoundError:
			return ExecutionResult.failure(ExecutionError(
				code=ErrorCode.EXECUTOR_UNAVAILABLE,
				message=f"Claude CLI not found. Make sure '{self.command}' is in PATH.",
			))

		try:
			stdout, stderr = await process.communicate(input=request.task.encode())
		except asyncio.CancelledError:
			if process.returncode is None:
				process.kill()
				await process.wait()
			raise

		duration_ms = int((time.monotonic() - started) * 1000)
		return self._parse_result(
			stdout.decode(errors="replace"),
			stderr.decode(errors="replace"),
			process.returncode,
			duration_ms,
		)

	def _parse_result(self, output: str, error: str, returncode: Optional[int], duration_ms: int) -> ExecutionResult:
		try:
			payload = json.loads(output) if output.strip() else {}
		except json.JSONDecodeError:
			payload = {}

		if not isinstance(payload, dict):
			payload = {}

		cost = float(payload.get("total_cost_usd") or payload.get("cost_usd") or 0.0)
		turns = int(payload.get("num_turns") or 0)
		subtype = payload.get("subtype", "")

		if subtype in _LIMIT_SUBTYPES:
			return ExecutionResult(
				success=False,
				cost_usd=cost,
				turns=turns,
				duration_ms=duration_ms,
				error=ExecutionError(code=_LIMIT_SUBTYPES[subtype], message=f"Claude stopped: {subtype}"),
			)

		if returncode != 0 or payload.get("is_error"):
			message = payload.get("result") or error or output
			return ExecutionResult(
				success=False,
				cost_usd=cost,
				turns=turns,
				duration_ms=duration_ms,
				error=ExecutionError.from_message(f"Claude exited with code {returncode}: {str(message)[:500]}"),
			)

		return ExecutionResult(
			success=True,
			output=str(payload.get("result", output)),
			cost_usd=cost,
			duration_ms=duration_ms,
			turns=turns,
			tools_used=list(payload.get("tools_used", [])),
		)


def parse_json_output(text: str) -> dict[str, Any]:
	"""
	Extract a JSON object from executor output.

	Accepts a bare object, a fenced ```json block, or prose around a
	single top-level object.

	Raises:
		OutputParseError: If no JSON object can be decoded
	"""
	candidates = [text.strip()]
	candidates.extend(m.strip() for m in _FENCE_RE.findall(text))
	start, end = text.find("{"), text.rfind("}")
	if start != -1 and end > start:
		candidates.append(text[start:end + 1])

	for candidate in candidates:
		if not candidate:
			continue
		try:
			data = json.loads(candidate)
		except json.JSONDecodeError:
			continue
		if isinstance(data, dict):
			return data

	raise OutputParseError(
		"Executor output did not contain a JSON object",
		context={"preview": text[:200]},
	)

