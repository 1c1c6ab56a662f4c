"""Tests for executors and output parsing."""

import asyncio
import json

import pytest

from forecast_analyst import profiles
from forecast_analyst.errors import ErrorCode, OutputParseError, classify_failure
from forecast_analyst.executor import (
	ClaudeCLIExecutor,
	ExecutionRequest,
	ExecutionResult,
	RetryingExecutor,
	parse_json_output,
)

from .helpers import fail, ok


class ScriptedInner:
	"""Inner executor returning queued results."""

	def __init__(self, *results):
		self.results = list(results)
		self.calls = 0

	async def execute(self, request):
		self.calls += 1
		result = self.results.pop(0)
		if isinstance(result, BaseException):
			raise result
		return result


class SlowInner:
	async def execute(self, request):
		await asyncio.sleep(10)
		return ok({})


def _request(timeout: float = 5.0) -> ExecutionRequest:
	return ExecutionRequest(task="do it", profile=profiles.RESEARCH.with_timeout(timeout))


class TestRetryingExecutor:
	"""Retry policy."""

	@pytest.mark.asyncio
	async def test_success_first_try(self):
		inner = ScriptedInner(ok({"a": 1}, cost_usd=0.2))
		result = await RetryingExecutor(inner).execute(_request())

		assert result.success is True
		assert result.attempts == 1
		assert inner.calls == 1

	@pytest.mark.asyncio
	async def test_transient_failures_retried_with_backoff(self):
		"""Rate limit then overload, then success: two sleeps of 1s and 2s."""
		delays = []

		async def fake_sleep(seconds):
			delays.append(seconds)

		inner = ScriptedInner(
			fail(ErrorCode.RATE_LIMITED, "429", retryable=True, cost_usd=0.01),
			fail(ErrorCode.OVERLOADED, "overloaded", retryable=True, cost_usd=0.02),
			ok({"done": True}, cost_usd=0.1),
		)
		executor = RetryingExecutor(inner, max_attempts=3, backoff_seconds=1.0, sleep=fake_sleep)

		result = await executor.execute(_request())

		assert result.success is True
		assert result.attempts == 3
		assert delays == [1.0, 2.0]
		assert result.cost_usd == pytest.approx(0.13)

	@pytest.mark.asyncio
	@pytest.mark.parametrize("code", [
		ErrorCode.BUDGET_EXCEEDED,
		ErrorCode.MAX_TURNS_EXCEEDED,
		ErrorCode.VALIDATION_FAILED,
	])
	async def test_limit_failures_not_retried(self, code):
		inner = ScriptedInner(fail(code, "limit hit"), ok({}))
		result = await RetryingExecutor(inner, sleep=lambda s: asyncio.sleep(0)).execute(_request())

		assert result.success is False
		assert result.error.code == code
		assert inner.calls == 1

	@pytest.mark.asyncio
	async def test_gives_up_after_max_attempts(self):
		async def fake_sleep(seconds):
			pass

		inner = ScriptedInner(*[fail(ErrorCode.TIMEOUT, "timed out", retryable=True)] * 3)
		result = await RetryingExecutor(inner, max_attempts=3, sleep=fake_sleep).execute(_request())

		assert result.success is False
		assert result.attempts == 3
		assert inner.calls == 3

	@pytest.mark.asyncio
	async def test_timeout_becomes_retryable_failure(self):
		async def fake_sleep(seconds):
			pass

		executor = RetryingExecutor(SlowInner(), max_attempts=2, sleep=fake_sleep)
		result = await executor.execute(_request(timeout=0.01))

		assert result.success is False
		assert result.error.code == ErrorCode.TIMEOUT
		assert result.error.retryable is True
		assert result.attempts == 2

	@pytest.mark.asyncio
	async def test_inner_exception_classified(self):
		inner = ScriptedInner(RuntimeError("rate limit exceeded"), ok({}))

		async def fake_sleep(seconds):
			pass

		result = await RetryingExecutor(inner, sleep=fake_sleep).execute(_request())

		assert result.success is True
		assert inner.calls == 2

	def test_rejects_zero_attempts(self):
		with pytest.raises(ValueError):
			RetryingExecutor(ScriptedInner(), max_attempts=0)


class BillingInner:
	"""Spends a fixed share of whatever ceiling it is given, then reports overload."""

	def __init__(self, share: float):
		self.share = share
		self.ceilings: list[float] = []

	async def execute(self, request):
		self.ceilings.append(request.profile.max_cost_usd)
		return fail(
			ErrorCode.OVERLOADED, "overloaded", retryable=True,
			cost_usd=request.profile.max_cost_usd * self.share,
		)


class TestRetryCeiling:
	"""Retries never spend more than the ceiling of the original request."""

	@staticmethod
	async def _no_sleep(seconds):
		pass

	def _request(self, ceiling: float) -> ExecutionRequest:
		return ExecutionRequest(task="do it", profile=profiles.RESEARCH.capped(ceiling))

	@pytest.mark.asyncio
	async def test_attempt_spending_whole_ceiling_stops_retries(self):
		inner = BillingInner(share=1.0)

		result = await RetryingExecutor(inner, max_attempts=3, sleep=self._no_sleep).execute(self._request(1.0))

		assert inner.ceilings == [1.0]
		assert result.cost_usd == pytest.approx(1.0)
		assert result.attempts == 1
		assert result.error.code == ErrorCode.OVERLOADED

	@pytest.mark.asyncio
	async def test_retries_get_what_is_left(self):
		inner = BillingInner(share=0.5)

		result = await RetryingExecutor(inner, max_attempts=3, sleep=self._no_sleep).execute(self._request(1.0))

		assert inner.ceilings == pytest.approx([1.0, 0.5, 0.25])
		assert result.cost_usd == pytest.approx(0.875)
		assert result.cost_usd <= 1.0

	@pytest.mark.asyncio
	async def test_original_request_untouched(self):
		request = self._request(1.0)

		await RetryingExecutor(BillingInner(share=0.5), max_attempts=2, sleep=self._no_sleep).execute(request)

		assert request.profile.max_cost_usd == 1.0


class TestClaudeCLIExecutor:
	"""Argument building and result parsing."""

	def test_build_args(self):
		executor = ClaudeCLIExecutor(command="claude")
		args = executor.build_args(profiles.RESEARCH.capped(0.25))

		assert args[:4] == ["claude", "--print", "--output-format", "json"]
		assert args[args.index("--max-budget-usd") + 1] == "0.2500"
		assert args[args.index("--max-turns") + 1] == str(profiles.RESEARCH.max_turns)
		assert args[args.index("--allowedTools") + 1] == "WebSearch,WebFetch,Read"

	def test_build_args_without_tools(self):
		args = ClaudeCLIExecutor().build_args(profiles.FORECAST)
		assert "--allowedTools" not in args

	def test_parse_success(self):
		payload = {"type": "result", "subtype": "success", "result": "{\"x\": 1}", "total_cost_usd": 0.12, "num_turns": 4}
		result = ClaudeCLIExecutor()._parse_result(json.dumps(payload), "", 0, 100)

		assert result.success is True
		assert result.output == "{\"x\": 1}"
		assert result.cost_usd == 0.12
		assert result.turns == 4

	def test_parse_max_turns(self):
		payload = {"subtype": "error_max_turns", "total_cost_usd": 0.3, "num_turns": 40}
		result = ClaudeCLIExecutor()._parse_result(json.dumps(payload), "", 0, 100)

		assert result.success is False
		assert result.error.code == ErrorCode.MAX_TURNS_EXCEEDED
		assert result.error.retryable is False
		assert result.cost_usd == 0.3

	def test_parse_max_budget(self):
		payload = {"subtype": "error_max_budget_usd", "total_cost_usd": 0.5}
		result = ClaudeCLIExecutor()._parse_result(json.dumps(payload), "", 0, 100)

		assert result.error.code == ErrorCode.BUDGET_EXCEEDED

	def test_parse_nonzero_exit_classified(self):
		result = ClaudeCLIExecutor()._parse_result("", "API Error: 529 overloaded", 1, 100)

		assert result.success is False
		assert result.error.code == ErrorCode.OVERLOADED
		assert result.error.retryable is True

	@pytest.mark.asyncio
	async def test_zero_budget_not_dispatched(self):
		result = await ClaudeCLIExecutor().execute(ExecutionRequest(task="x", profile=profiles.RESEARCH.capped(0)))

		assert result.success is False
		assert result.error.code == ErrorCode.BUDGET_EXCEEDED

	@pytest.mark.asyncio
	async def test_missing_binary(self):
		executor = ClaudeCLIExecutor(command="definitely-not-a-real-claude-binary")
		result = await executor.execute(ExecutionRequest(task="x", profile=profiles.FILTER))

		assert result.success is False
		assert result.error.code == ErrorCode.EXECUTOR_UNAVAILABLE


class TestParseJsonOutput:
	"""Extracting JSON documents from executor text."""

	def test_bare_object(self):
		assert parse_json_output('{"a": 1}') == {"a": 1}

	def test_fenced_block(self):
		text = "Here you go:\n```json\n{\"a\": [1, 2]}\n```\nDone."
		assert parse_json_output(text) == {"a": [1, 2]}

	def test_prose_around_object(self):
		assert parse_json_output('Result: {"ready": true} -- end') == {"ready": True}

	def test_no_object(self):
		with pytest.raises(OutputParseError):
			parse_json_output("no json here")

	def test_array_rejected(self):
		with pytest.raises(OutputParseError):
			parse_json_output("[1, 2, 3]")


class TestClassifyFailure:
	"""Failure message classification."""

	@pytest.mark.parametrize("message,code,retryable", [
		("Request timed out", ErrorCode.TIMEOUT, True),
		("429 Too Many Requests", ErrorCode.RATE_LIMITED, True),
		("Overloaded", ErrorCode.OVERLOADED, True),
		("exceeded max turns", ErrorCode.MAX_TURNS_EXCEEDED, False),
		("budget exceeded after timeout", ErrorCode.BUDGET_EXCEEDED, False),
		("segfault", ErrorCode.EXECUTOR_FAILED, False),
		("", ErrorCode.EXECUTOR_FAILED, False),
	])
	def test_classification(self, message, code, retryable):
		assert classify_failure(message) == (code, retryable)

	def test_failure_result_helper(self):
		result = ExecutionResult.failure(fail().error, duration_ms=10)
		assert result.success is False
		assert result.duration_ms == 10


class TestResourceProfile:
	"""Profile capping."""

	def test_capped_lowers_ceiling(self):
		capped = profiles.RESEARCH.capped(1.25)
		assert capped.max_cost_usd == 1.25
		assert profiles.RESEARCH.max_cost_usd == 3.0

	def test_capped_never_raises_ceiling(self):
		assert profiles.FILTER.capped(10.0) is profiles.FILTER

	def test_capped_floor(self):
		assert profiles.FILTER.capped(-1.0).max_cost_usd == 0.0

	def test_get_profile(self):
		assert profiles.get_profile("analyze") is profiles.ANALYZE
		assert profiles.get_profile("unknown") is None
		assert profiles.ANALYZE.to_dict()["allowed_tools"] == []
