"""End-to-end tests for AnalystOrchestrator with a scripted executor."""

import asyncio
from pathlib import Path
from typing import Optional

import pytest

from forecast_analyst.config import Config
from forecast_analyst.errors import ErrorCode, ExecutorError, PhaseFailedError
from forecast_analyst.evidence.models import Level
from forecast_analyst.orchestrator import AnalystOrchestrator, ForecastRequest
from forecast_analyst.store import InMemoryStore
from forecast_analyst.telemetry import TelemetryEmitter
from forecast_analyst.workspace import FeatureStatus, ProgressEntryType, WorkspaceTracker

from .helpers import FakeExecutor, analyze_doc, decompose_doc, fail, forecast_doc, ok, research_doc


def _config(tmp_path: Path, **overrides) -> Config:
	return Config(config_dir=tmp_path / "config", data_dir=tmp_path / "data", **overrides)


def _script(*question_ids: str, overrides: Optional[dict] = None, **phases) -> dict:
	"""
	Responses for a run that decomposes into question_ids and is ready after one iteration.

	phases replaces whole-phase responses (analyze=..., forecast=...); overrides
	takes (phase, question_id) keys for a single question.
	"""
	responses = {
		"decompose": decompose_doc(*question_ids),
		"analyze": analyze_doc(True),
		"forecast": forecast_doc(0.6, 0.5, 0.7),
	}
	for qid in question_ids:
		responses[("research", qid)] = research_doc(qid)
		responses[("filter", qid)] = research_doc(qid)
	responses.update(phases)
	responses.update(overrides or {})
	return responses


class RecordingSink:
	def __init__(self):
		self.events = []

	async def write_batch(self, events):
		self.events.extend(events)

	def types(self) -> list[str]:
		return [e.event_type for e in self.events]


class BlockingResearchExecutor(FakeExecutor):
	"""Research calls block until cancelled."""

	def __init__(self, responses):
		super().__init__(responses)
		self.research_started = asyncio.Event()

	async def execute(self, request):
		if request.profile.name == "research":
			self.requests.append(request)
			self.research_started.set()
			await asyncio.sleep(60)
		return await super().execute(request)


class TestHappyPath:
	"""A run that is ready after one iteration."""

	@pytest.mark.asyncio
	async def test_single_iteration_forecast(self, tmp_path):
		executor = FakeExecutor(_script("q1", "q2"))
		orchestrator = AnalystOrchestrator(executor, _config(tmp_path))

		result = await orchestrator.run(ForecastRequest(question="Will the Fed cut in March?", target_id="fed"))

		assert result.forecast.probability == 0.6
		assert result.target_id == "fed"
		assert result.run_id.startswith("run_")
		assert result.metadata.research_iterations == 1
		assert [q.id for q in result.questions_asked] == ["q1", "q2"]
		assert [p.question_id for p in result.evidence_packages] == ["q1", "q2"]
		assert len(result.aggregated_evidence.findings) == 4
		assert len(result.aggregated_evidence.sources) == 6
		assert result.metadata.filter_fallbacks == 0
		assert result.metadata.analyze_fallbacks == 0
		assert len(executor.calls("forecast")) == 1

	@pytest.mark.asyncio
	async def test_cost_breakdown(self, tmp_path):
		executor = FakeExecutor(_script("q1", "q2"), cost_usd=0.1)
		result = await AnalystOrchestrator(executor, _config(tmp_path)).run(ForecastRequest(question="Q?"))

		breakdown = result.metadata.cost_breakdown
		assert breakdown["decompose"] == pytest.approx(0.1)
		assert breakdown["research"] == pytest.approx(0.2)
		assert breakdown["filter"] == pytest.approx(0.2)
		assert breakdown["analyze"] == pytest.approx(0.1)
		assert breakdown["forecast"] == pytest.approx(0.1)
		assert result.metadata.cost_usd == pytest.approx(0.7)
		assert result.metadata.budget["spent_usd"] == pytest.approx(0.7)
		assert [p.name for p in result.metadata.phases] == ["decompose", "research", "analyze", "forecast"]

	@pytest.mark.asyncio
	async def test_target_defaults_to_run_id(self, tmp_path):
		result = await AnalystOrchestrator(FakeExecutor(_script("q1")), _config(tmp_path)).run(
			ForecastRequest(question="Q?"),
		)
		assert result.target_id == result.run_id

	@pytest.mark.asyncio
	async def test_executor_context(self, tmp_path):
		executor = FakeExecutor(_script("q1"))
		result = await AnalystOrchestrator(executor, _config(tmp_path)).run(ForecastRequest(question="Q?", target_id="t"))

		research = executor.calls("research")[0]
		assert research.context == {
			"phase": "research",
			"run_id": result.run_id,
			"target_id": "t",
			"iteration": 1,
			"question_id": "q1",
		}
		assert "question_id" not in executor.calls("forecast")[0].context
		assert research.profile.timeout_seconds == 600.0


class TestResearchLoop:
	"""Iterations driven by the analyze decision."""

	@pytest.mark.asyncio
	async def test_additional_questions_researched(self, tmp_path):
		executor = FakeExecutor(_script(
			"q1", "q2",
			analyze=[analyze_doc(False, ("q3", "What did the minutes say?")), analyze_doc(True)],
			overrides={("research", "q3"): research_doc("q3"), ("filter", "q3"): research_doc("q3")},
		))

		result = await AnalystOrchestrator(executor, _config(tmp_path)).run(ForecastRequest(question="Q?"))

		assert result.metadata.research_iterations == 2
		assert [q.id for q in result.questions_asked] == ["q1", "q2", "q3"]
		assert [r.context["question_id"] for r in executor.calls("research")] == ["q1", "q2", "q3"]
		assert len(result.analyses) == 2
		assert len(result.aggregated_evidence.findings) == 6

	@pytest.mark.asyncio
	async def test_clashing_ids_renamed_and_repeats_skipped(self, tmp_path):
		executor = FakeExecutor({
			"decompose": decompose_doc("q1", "q2"),
			"research": research_doc("r"),
			"filter": research_doc("r"),
			"analyze": [
				analyze_doc(False, ("q1", "A different angle?"), ("q9", "What is known about q2?")),
				analyze_doc(True),
			],
			"forecast": forecast_doc(),
		})

		result = await AnalystOrchestrator(executor, _config(tmp_path)).run(ForecastRequest(question="Q?"))

		assert [q.id for q in result.questions_asked] == ["q1", "q2", "q1_2"]
		assert [p.question_id for p in result.evidence_packages] == ["q1", "q2", "q1_2"]

	@pytest.mark.asyncio
	async def test_iteration_limit_forces_forecast(self, tmp_path):
		executor = FakeExecutor({
			"decompose": decompose_doc("q1"),
			"research": research_doc("r"),
			"filter": research_doc("r"),
			"analyze": [
				analyze_doc(False, ("q2", "Second?")),
				analyze_doc(False, ("q3", "Third?")),
			],
			"forecast": forecast_doc(),
		})

		result = await AnalystOrchestrator(executor, _config(tmp_path, max_iterations=2)).run(ForecastRequest(question="Q?"))

		assert result.metadata.research_iterations == 2
		assert len(executor.calls("research")) == 2
		assert len(executor.calls("forecast")) == 1
		assert result.metadata.budget["iterations_used"] == 2

	@pytest.mark.asyncio
	async def test_spent_budget_forces_forecast_with_reserve(self, tmp_path):
		"""Research overspends the whole budget; the forecast still runs on the reserve."""
		executor = FakeExecutor({
			"decompose": decompose_doc("q1"),
			"research": ok(research_doc("r", findings=1, sources=1), cost_usd=5.0),
			"analyze": analyze_doc(True),
			"forecast": forecast_doc(),
		})
		config = _config(tmp_path, budget_total_usd=3.0, forecast_reserve_usd=0.2)

		result = await AnalystOrchestrator(executor, config).run(ForecastRequest(question="Q?"))

		assert result.metadata.research_iterations == 1
		assert executor.calls("analyze") == []
		assert executor.calls("filter") == []
		assert result.metadata.analyze_fallbacks == 1
		assert result.metadata.filter_fallbacks == 1
		assert executor.calls("forecast")[0].profile.max_cost_usd == pytest.approx(0.2)
		assert result.metadata.budget["spent_usd"] == 3.0
		assert result.metadata.cost_breakdown["research"] == 5.0


class TestDegradation:
	"""Failures that degrade instead of aborting."""

	@pytest.mark.asyncio
	async def test_research_failure_isolated(self, tmp_path):
		executor = FakeExecutor(_script(
			"q1", "q2",
			overrides={("research", "q2"): fail(ErrorCode.TIMEOUT, "timed out", retryable=True, cost_usd=0.05)},
		))

		result = await AnalystOrchestrator(executor, _config(tmp_path)).run(ForecastRequest(question="Q?"))

		failed = result.evidence_packages[1]
		assert failed.failed is True
		assert failed.meta.error.startswith("TIMEOUT")
		assert failed.meta.research_cost_usd == 0.05
		assert result.evidence_packages[0].failed is False
		assert result.aggregated_evidence.meta.failed_questions == ["q2"]
		assert result.metadata.phases[1].error == "1 question(s) failed: q2"
		assert result.forecast.probability == 0.6

	@pytest.mark.asyncio
	async def test_unparseable_research_is_empty_package(self, tmp_path):
		executor = FakeExecutor(_script("q1", overrides={("research", "q1"): ok("I could not find anything.")}))

		result = await AnalystOrchestrator(executor, _config(tmp_path)).run(ForecastRequest(question="Q?"))

		assert result.evidence_packages[0].meta.error.startswith(ErrorCode.OUTPUT_PARSE_FAILED)
		assert executor.calls("filter") == []

	@pytest.mark.asyncio
	async def test_filter_violation_falls_back_to_raw(self, tmp_path):
		tampered = research_doc("q1")
		tampered["sources"].append({"url": "https://invented.example.com", "title": "made up"})
		executor = FakeExecutor(_script("q1", overrides={("filter", "q1"): tampered}))

		result = await AnalystOrchestrator(executor, _config(tmp_path)).run(ForecastRequest(question="Q?"))

		package = result.evidence_packages[0]
		assert package.meta.filter_fallback is True
		assert any("unknown_source_url" in issue for issue in package.meta.filter_issues)
		assert [s.url for s in package.filtered.sources] == [s.url for s in package.raw.sources]
		assert result.metadata.filter_fallbacks == 1

	@pytest.mark.asyncio
	async def test_filter_echo_without_timestamps_kept(self, tmp_path):
		"""Filtered sources that omit retrieved_at are the raw sources, not mutations."""
		echoed = research_doc("q1", findings=1)
		for source in echoed["sources"]:
			del source["retrieved_at"]
		executor = FakeExecutor(_script("q1", overrides={("filter", "q1"): echoed}))

		result = await AnalystOrchestrator(executor, _config(tmp_path)).run(ForecastRequest(question="Q?"))

		package = result.evidence_packages[0]
		assert package.meta.filter_fallback is False
		assert len(package.filtered.findings) == 1
		assert all(s.retrieved_at == "2026-01-01T00:00:00" for s in package.filtered.sources)

	@pytest.mark.asyncio
	async def test_filter_failure_falls_back(self, tmp_path):
		executor = FakeExecutor(_script("q1", overrides={("filter", "q1"): fail(message="crashed", cost_usd=0.02)}))

		result = await AnalystOrchestrator(executor, _config(tmp_path)).run(ForecastRequest(question="Q?"))

		package = result.evidence_packages[0]
		assert package.meta.filter_fallback is True
		assert package.meta.filter_cost_usd == 0.02
		assert package.filtered.findings == package.raw.findings

	@pytest.mark.asyncio
	async def test_analyze_failure_uses_heuristic(self, tmp_path):
		store = InMemoryStore()
		executor = FakeExecutor(_script("q1", "q2", analyze=fail(message="analyze crashed")))

		result = await AnalystOrchestrator(executor, _config(tmp_path), store=store).run(
			ForecastRequest(question="Q?", target_id="fed"),
		)

		assert result.metadata.analyze_fallbacks == 1
		assert result.analyses[0].ready_to_forecast is True
		assert result.analyses[0].evidence_assessment.quality == Level.HIGH
		assert (await store.read("analyst/fed/analyze/1"))["decided_by"] == "heuristic"

	@pytest.mark.asyncio
	async def test_heuristic_stops_when_gap_question_repeats(self, tmp_path):
		"""Thin evidence asks one gap question; asking it again is skipped and the run forecasts."""
		executor = FakeExecutor({
			"decompose": decompose_doc("q1"),
			"research": research_doc("thin", findings=1, sources=1),
			"filter": research_doc("thin", findings=1, sources=1),
			"analyze": fail(message="down"),
			"forecast": forecast_doc(),
		})

		result = await AnalystOrchestrator(executor, _config(tmp_path)).run(ForecastRequest(question="Will it rain?"))

		assert [q.id for q in result.questions_asked] == ["q1", "q_add_2"]
		assert result.metadata.research_iterations == 2
		assert result.metadata.analyze_fallbacks == 2
		assert len(executor.calls("forecast")) == 1

	@pytest.mark.asyncio
	async def test_not_ready_without_questions_gets_gap_question(self, tmp_path):
		executor = FakeExecutor({
			"decompose": decompose_doc("q1"),
			"research": research_doc("r"),
			"filter": research_doc("r"),
			"analyze": [analyze_doc(False), analyze_doc(True)],
			"forecast": forecast_doc(),
		})

		result = await AnalystOrchestrator(executor, _config(tmp_path)).run(ForecastRequest(question="Q?"))

		assert [q.id for q in result.questions_asked] == ["q1", "q_add_2"]
		assert result.metadata.research_iterations == 2


class TestFatalPhases:
	"""Decompose and forecast abort the run."""

	@pytest.mark.asyncio
	async def test_decompose_failure(self, tmp_path):
		store = InMemoryStore()
		executor = FakeExecutor({"decompose": fail(message="no capacity")})

		with pytest.raises(PhaseFailedError) as exc_info:
			await AnalystOrchestrator(executor, _config(tmp_path), store=store).run(ForecastRequest(question="Q?"))

		assert exc_info.value.code == ErrorCode.DECOMPOSE_FAILED
		assert exc_info.value.phase == "decompose"
		assert isinstance(exc_info.value.cause, ExecutorError)
		assert executor.calls("research") == []
		assert await store.list() == []

	@pytest.mark.asyncio
	async def test_unparseable_decompose(self, tmp_path):
		executor = FakeExecutor({"decompose": {"mode": "decompose", "questions": []}})

		with pytest.raises(PhaseFailedError) as exc_info:
			await AnalystOrchestrator(executor, _config(tmp_path)).run(ForecastRequest(question="Q?"))

		assert exc_info.value.code == ErrorCode.DECOMPOSE_FAILED

	@pytest.mark.asyncio
	async def test_forecast_failure(self, tmp_path):
		store = InMemoryStore()
		executor = FakeExecutor(_script("q1", forecast=forecast_doc(0.9, 0.1, 0.2)))

		with pytest.raises(PhaseFailedError) as exc_info:
			await AnalystOrchestrator(executor, _config(tmp_path), store=store).run(
				ForecastRequest(question="Q?", target_id="fed"),
			)

		assert exc_info.value.code == ErrorCode.FORECAST_FAILED
		assert await store.list("analyst/fed/") == ["analyst/fed/analyze/1", "analyst/fed/decompose"]

	@pytest.mark.asyncio
	async def test_cancellation_skips_forecast(self, tmp_path):
		sink = RecordingSink()
		emitter = TelemetryEmitter(sink, flush_interval=60)
		executor = BlockingResearchExecutor(_script("q1", "q2"))
		orchestrator = AnalystOrchestrator(executor, _config(tmp_path), emitter=emitter)

		task = asyncio.create_task(orchestrator.run(ForecastRequest(question="Q?")))
		await asyncio.wait_for(executor.research_started.wait(), timeout=5)
		task.cancel()

		with pytest.raises(asyncio.CancelledError):
			await task
		await emitter.shutdown()

		assert executor.calls("forecast") == []
		assert "run.cancelled" in sink.types()
		assert "run.completed" not in sink.types()


class TestPersistenceAndTelemetry:
	"""Documents written to the store and events emitted."""

	@pytest.mark.asyncio
	async def test_documents_persisted(self, tmp_path):
		store = InMemoryStore()
		executor = FakeExecutor(_script("q1"))

		result = await AnalystOrchestrator(executor, _config(tmp_path), store=store).run(
			ForecastRequest(question="Q?", target_id="fed"),
		)

		assert await store.list("analyst/fed/") == [
			"analyst/fed/analyze/1",
			"analyst/fed/decompose",
			"analyst/fed/forecast",
			"analyst/fed/run",
		]
		forecast = await store.read("analyst/fed/forecast")
		run = await store.read("analyst/fed/run")
		analyze = await store.read("analyst/fed/analyze/1")
		assert forecast["schema_version"] == "forecast_v1"
		assert forecast["probability"] == 0.6
		assert forecast["run_id"] == result.run_id
		assert run["schema_version"] == "run_v1"
		assert run["metadata"]["research_iterations"] == 1
		assert analyze["decided_by"] == "executor"
		assert analyze["iteration"] == 1

	@pytest.mark.asyncio
	async def test_custom_namespace(self, tmp_path):
		store = InMemoryStore()
		orchestrator = AnalystOrchestrator(FakeExecutor(_script("q1")), _config(tmp_path), store=store, namespace="backtest")

		await orchestrator.run(ForecastRequest(question="Q?", target_id="fed"))

		assert await store.exists("backtest/fed/run")

	@pytest.mark.asyncio
	async def test_events_emitted(self, tmp_path):
		sink = RecordingSink()
		emitter = TelemetryEmitter(sink, flush_interval=60)
		orchestrator = AnalystOrchestrator(FakeExecutor(_script("q1")), _config(tmp_path), emitter=emitter)

		result = await orchestrator.run(ForecastRequest(question="Q?"))
		await emitter.shutdown()

		types = sink.types()
		assert types[0] == "session.started"
		assert types[-1] == "session.ended"
		assert "run.completed" in types
		assert types.count("phase.completed") == 4
		assert {e.run_id for e in sink.events} == {result.run_id}


class TestWorkspaceIntegration:
	"""Research questions tracked as workspace features."""

	@pytest.mark.asyncio
	async def test_features_claims_and_progress(self, tmp_path):
		tracker = WorkspaceTracker(InMemoryStore(), namespace="ws")
		executor = FakeExecutor(_script(
			"q1", "q2",
			overrides={("research", "q2"): fail(ErrorCode.TIMEOUT, "timed out")},
		))
		orchestrator = AnalystOrchestrator(executor, _config(tmp_path), workspace=tracker)

		await orchestrator.run(ForecastRequest(question="Will the Fed cut?", target_id="fed"))

		ws = await tracker.load("fed")
		features = {f.name: f for f in ws.feature_list.features}
		done = features["What is known about q1?"]
		failed = features["What is known about q2?"]
		assert ws.feature_list.subject == "Will the Fed cut?"
		assert done.status == FeatureStatus.COMPLETED
		assert failed.status == FeatureStatus.PENDING
		assert failed.attempts == 1
		assert failed.last_error.startswith("TIMEOUT")
		assert [c.text for c in ws.claims.claims] == ["q1 claim 0", "q1 claim 1"]
		assert ws.claims.claims[0].strength == Level.HIGH
		assert "q1" in ws.claims.claims[0].tags
		assert ws.claims.claims[0].sources[0].url == "https://q1.example.com/0"
		assert ws.progress[-1].type == ProgressEntryType.NOTE
		assert ws.progress[-1].message.startswith("Forecast 0.60")

	@pytest.mark.asyncio
	async def test_later_iterations_add_features(self, tmp_path):
		tracker = WorkspaceTracker(InMemoryStore(), namespace="ws")
		executor = FakeExecutor(_script(
			"q1",
			analyze=[analyze_doc(False, ("q2", "Follow-up?")), analyze_doc(True)],
			overrides={("research", "q2"): research_doc("q2"), ("filter", "q2"): research_doc("q2")},
		))

		await AnalystOrchestrator(executor, _config(tmp_path), workspace=tracker).run(
			ForecastRequest(question="Q?", target_id="fed"),
		)

		ws = await tracker.load("fed")
		assert [f.id for f in ws.feature_list.features] == ["feature_1", "feature_2"]
		assert all(f.status == FeatureStatus.COMPLETED for f in ws.feature_list.features)
		assert len(ws.claims.claims) == 4
