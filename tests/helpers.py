"""Shared factories and a scripted executor for forecast-analyst tests."""

import json
from typing import Any, Optional, Union

from forecast_analyst.errors import ErrorCode
from forecast_analyst.evidence.models import (
	EvidencePackage,
	Finding,
	OpenQuestion,
	PackageMeta,
	ResearchOutput,
	Source,
	TimelineEvent,
)
from forecast_analyst.evidence.validator import passthrough
from forecast_analyst.executor import ExecutionError, ExecutionRequest, ExecutionResult
from forecast_analyst.telemetry import TelemetryEvent


def make_source(url: str, credibility: str = "medium", relevance: str = "medium", **kwargs) -> Source:
	return Source(
		url=url,
		title=kwargs.pop("title", f"Title of {url}"),
		type=kwargs.pop("type", "news"),
		retrieved_at=kwargs.pop("retrieved_at", "2026-01-01T00:00:00"),
		credibility=credibility,
		relevance=relevance,
		**kwargs,
	)


def make_finding(
	claim: str,
	status: str = "supported",
	supporting: tuple[str, ...] = (),
	opposing: tuple[str, ...] = (),
	topic: Optional[str] = None,
	notes: Optional[str] = None,
) -> Finding:
	return Finding(
		topic=topic,
		claim=claim,
		status=status,
		supporting_sources=list(supporting),
		opposing_sources=list(opposing),
		notes=notes,
	)


def make_research(
	findings: Optional[list[Finding]] = None,
	sources: Optional[list[Source]] = None,
	timeline: Optional[list[TimelineEvent]] = None,
	open_questions: Optional[list[OpenQuestion]] = None,
	summary: str = "",
) -> ResearchOutput:
	return ResearchOutput(
		summary=summary,
		findings=findings or [],
		timeline=timeline or [],
		open_questions=open_questions or [],
		sources=sources or [],
	)


def make_package(question_id: str, raw: ResearchOutput, research_cost: float = 0.0, filter_cost: float = 0.0) -> EvidencePackage:
	"""Package whose filtered evidence is the raw evidence unchanged."""
	return EvidencePackage(
		question_id=question_id,
		raw=raw,
		filtered=passthrough(raw),
		meta=PackageMeta(
			research_cost_usd=research_cost,
			filter_cost_usd=filter_cost,
			total_findings=len(raw.findings),
			total_sources=len(raw.sources),
		),
	)


def research_doc(prefix: str, findings: int = 2, sources: int = 3) -> dict[str, Any]:
	"""A research document with distinct claims and sources under prefix."""
	urls = [f"https://{prefix}.example.com/{i}" for i in range(sources)]
	return {
		"summary": f"Research on {prefix}",
		"findings": [
			{
				"topic": prefix,
				"claim": f"{prefix} claim {i}",
				"status": "supported",
				"supporting_sources": [urls[i % len(urls)]] if urls else [],
			}
			for i in range(findings)
		],
		"timeline": [],
		"open_questions": [],
		"sources": [
			{"url": url, "title": f"{prefix} {i}", "type": "news", "retrieved_at": "2026-01-01T00:00:00"}
			for i, url in enumerate(urls)
		],
	}


def decompose_doc(*question_ids: str) -> dict[str, Any]:
	return {
		"mode": "decompose",
		"questions": [
			{"id": qid, "topic": qid, "question": f"What is known about {qid}?", "priority": "important"}
			for qid in question_ids
		],
		"initial_assessment": {"preliminary_range": {"low": 0.3, "high": 0.7}},
	}


def analyze_doc(ready: bool, *questions: tuple[str, str]) -> dict[str, Any]:
	return {
		"mode": "analyze",
		"ready_to_forecast": ready,
		"additional_questions": [
			{"id": qid, "topic": qid, "question": text} for qid, text in questions
		],
		"reasoning": "scripted",
	}


def forecast_doc(probability: float = 0.6, low: float = 0.5, high: float = 0.7) -> dict[str, Any]:
	return {
		"mode": "forecast",
		"forecast": {
			"probability": probability,
			"lower_bound": low,
			"upper_bound": high,
			"confidence": "medium",
			"reasoning": "scripted",
			"assumptions": ["nothing changes"],
		},
	}


def ok(doc: Union[dict, str], cost_usd: float = 0.1) -> ExecutionResult:
	output = doc if isinstance(doc, str) else json.dumps(doc)
	return ExecutionResult(success=True, output=output, cost_usd=cost_usd, duration_ms=5)


def fail(code: str = ErrorCode.EXECUTOR_FAILED, message: str = "boom", retryable: bool = False, cost_usd: float = 0.0) -> ExecutionResult:
	return ExecutionResult.failure(ExecutionError(code=code, message=message, retryable=retryable), cost_usd=cost_usd)


class FakeExecutor:
	"""
	Scripted executor.

	Responses are looked up by (phase, question_id or feature_id) first and
	then by phase. A response is a document (returned as a successful
	result costing cost_usd), an ExecutionResult, an exception to raise,
	or a list of those consumed in order (the last one repeats).
	"""

	def __init__(self, responses: Optional[dict] = None, cost_usd: float = 0.1):
		self.responses = responses or {}
		self.cost_usd = cost_usd
		self.requests: list[ExecutionRequest] = []

	def calls(self, phase: str) -> list[ExecutionRequest]:
		return [r for r in self.requests if r.profile.name == phase]

	async def execute(self, request: ExecutionRequest) -> ExecutionResult:
		self.requests.append(request)
		phase = request.profile.name
		key = (phase, request.context.get("question_id") or request.context.get("feature_id"))
		if key in self.responses:
			response = self.responses[key]
		elif phase in self.responses:
			response = self.responses[phase]
		else:
			return fail(message=f"no scripted response for {phase}")

		if isinstance(response, list):
			response = response.pop(0) if len(response) > 1 else response[0]
		if isinstance(response, BaseException):
			raise response
		if isinstance(response, ExecutionResult):
			return response
		return ok(response, cost_usd=self.cost_usd)


class RecordingSink:
	"""Collects delivered telemetry batches; fails the first `failures` writes."""

	def __init__(self, failures: int = 0):
		self.batches: list[list[TelemetryEvent]] = []
		self.failures = failures
		self.attempts = 0

	async def write_batch(self, events):
		self.attempts += 1
		if self.attempts <= self.failures:
			raise ConnectionError("sink unavailable")
		self.batches.append(list(events))

	@property
	def events(self) -> list[TelemetryEvent]:
		return [e for batch in self.batches for e in batch]
