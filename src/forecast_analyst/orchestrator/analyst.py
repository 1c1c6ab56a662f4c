"""
Analyst Orchestrator - Drives a forecasting run through its phases.

DECOMPOSE -> RESEARCH (bounded fan-out, barrier) -> ANALYZE -> RESEARCH | FORECAST

DECOMPOSE runs once and FORECAST runs exactly once at the end; both are
fatal on failure. RESEARCH failures degrade to empty evidence packages
for the affected questions. ANALYZE falls back to a deterministic
assessment when the executor cannot produce a usable decision. The
budget controller is consulted after every ANALYZE and forces FORECAST
once spend or iterations run out.
"""

import asyncio
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Optional

from pydantic import BaseModel, Field, ValidationError

from .. import profiles
from ..config import Config
from ..errors import AnalystError, ErrorCode, PhaseFailedError
from ..evidence.aggregator import aggregate_evidence
from ..evidence.models import (
	AggregatedEvidence,
	EvidencePackage,
	FilteredResearch,
	PackageMeta,
	ResearchOutput,
	normalize_text,
)
from ..evidence.validator import enforce_filter_contract, get_filter_limits, passthrough
from ..executor import ExecutionRequest, ExecutionResult, Executor, parse_json_output
from ..profiles import ResourceProfile
from ..store import Store
from ..telemetry import Observability, TelemetryEmitter
from ..workspace.models import CLAIM_STRENGTH, ClaimSource, FeatureDraft, ProgressEntryType
from ..workspace.tracker import WorkspaceTracker
from .assessment import SufficiencyThresholds, assess_evidence, gap_question
from .batch import BatchItem, BatchProcessor, BatchResult
from .budget import BudgetController
from .phases import (
	AnalyzeOutput,
	DecomposeOutput,
	Forecast,
	ForecastRequest,
	ResearchQuestion,
	parse_phase_output,
)
from .tasks import (
	build_analyze_task,
	build_decompose_task,
	build_filter_task,
	build_forecast_task,
	build_research_task,
)

logger = logging.getLogger(__name__)

COST_PHASES = ("decompose", "research", "filter", "analyze", "forecast")


class PhaseRecord(BaseModel):
	"""Cost and timing of one phase execution."""
	name: str
	iteration: int = Field(default=0)
	cost_usd: float = Field(default=0.0)
	duration_ms: int = Field(default=0)
	success: bool = Field(default=True)
	error: Optional[str] = Field(default=None)


class RunMetadata(BaseModel):
	"""Bookkeeping for a whole run."""
	started_at: str
	completed_at: Optional[str] = Field(default=None)
	duration_ms: int = Field(default=0)
	cost_usd: float = Field(default=0.0)
	cost_breakdown: dict[str, float] = Field(default_factory=lambda: {name: 0.0 for name in COST_PHASES})
	research_iterations: int = Field(default=0)
	phases: list[PhaseRecord] = Field(default_factory=list)
	budget: dict[str, Any] = Field(default_factory=dict)
	filter_fallbacks: int = Field(default=0)
	analyze_fallbacks: int = Field(default=0)


class RunResult(BaseModel):
	"""Everything a run produced."""
	schema_version: str = "run_v1"
	run_id: str
	target_id: str
	question: str
	forecast: Forecast
	decompose: DecomposeOutput
	analyses: list[AnalyzeOutput] = Field(default_factory=list)
	questions_asked: list[ResearchQuestion] = Field(default_factory=list)
	evidence_packages: list[EvidencePackage] = Field(default_factory=list)
	aggregated_evidence: AggregatedEvidence
	metadata: RunMetadata


@dataclass
class _Run:
	"""Mutable state owned by a single run."""
	run_id: str
	target_id: str
	request: ForecastRequest
	budget: BudgetController
	obs: Observability
	metadata: RunMetadata
	started: float = field(default_factory=time.monotonic)
	questions: list[ResearchQuestion] = field(default_factory=list)
	question_keys: set[str] = field(default_factory=set)
	packages: list[EvidencePackage] = field(default_factory=list)
	analyses: list[AnalyzeOutput] = field(default_factory=list)
	feature_ids: dict[str, str] = field(default_factory=dict)
	claim_keys: set[str] = field(default_factory=set)


class AnalystOrchestrator:
	"""
	Runs forecasting questions end to end.

	Collaborators are injected; one orchestrator may serve many runs, and
	every run owns its own budget controller and telemetry context.

	Usage:
		orchestrator = AnalystOrchestrator(executor, config, store=store)
		result = await orchestrator.run(ForecastRequest(question="Will X happen by June?"))
		print(result.forecast.probability)
	"""

	def __init__(
		self,
		executor: Executor,
		config: Optional[Config] = None,
		store: Optional[Store] = None,
		workspace: Optional[WorkspaceTracker] = None,
		emitter: Optional[TelemetryEmitter] = None,
		namespace: str = "analyst",
	):
		self.executor = executor
		self.config = config or Config()
		self.store = store
		self.workspace = workspace
		self.emitter = emitter
		self.namespace = namespace
		self.thresholds = SufficiencyThresholds.from_config(self.config)

	# ------------------------------------------------------------------
	# Run loop
	# ------------------------------------------------------------------

	async def run(self, request: ForecastRequest) -> RunResult:
		"""
		Execute one forecasting run.

		Raises:
			PhaseFailedError: If DECOMPOSE or FORECAST fails
			StoreError, WorkspaceCorruptedError: On persistence failures
			asyncio.CancelledError: If the run is cancelled; no forecast is made
		"""
		run_id = f"run_{uuid.uuid4().hex[:12]}"
		run = _Run(
			run_id=run_id,
			target_id=request.target_id or run_id,
			request=request,
			budget=BudgetController(
				total_usd=self.config.budget_total_usd,
				max_iterations=self.config.max_iterations,
				per_call_ceiling_usd=self.config.per_call_ceiling_usd,
				reserve_usd=self.config.forecast_reserve_usd,
			),
			obs=Observability(self.emitter, run_id=run_id),
			metadata=RunMetadata(started_at=datetime.now().isoformat()),
		)
		session_id = run.obs.start_session("analyst", correlation_id=run.target_id, metadata={
			"question": request.question,
			"budget_usd": self.config.budget_total_usd,
			"max_iterations": self.config.max_iterations,
		})
		logger.info(f"[{run_id}] Starting run for target {run.target_id}: {request.question[:120]}")

		try:
			result = await self._execute(run)
		except asyncio.CancelledError:
			logger.warning(f"[{run_id}] Run cancelled after {run.metadata.research_iterations} iteration(s)")
			run.obs.record_event("run.cancelled", session_id=session_id, **self._snapshot(run))
			run.obs.end_session(session_id, {"status": "cancelled"})
			raise
		except AnalystError as e:
			logger.error(f"[{run_id}] Run failed: {e.code}: {e.message}")
			run.obs.record_event("run.failed", session_id=session_id, error=e.to_dict(), **self._snapshot(run))
			run.obs.end_session(session_id, {"status": "failed", "code": e.code})
			raise

		run.obs.metric("run.cost_usd", result.metadata.cost_usd, tags={"target_id": run.target_id})
		run.obs.record_event(
			"run.completed",
			session_id=session_id,
			probability=result.forecast.probability,
			**self._snapshot(run),
		)
		run.obs.end_session(session_id, {"status": "completed", "probability": result.forecast.probability})
		logger.info(
			f"[{run_id}] Forecast {result.forecast.probability:.3f} "
			f"[{result.forecast.lower_bound:.3f}, {result.forecast.upper_bound:.3f}] "
			f"after {result.metadata.research_iterations} iteration(s), ${result.metadata.cost_usd:.4f}"
		)
		return result

	async def _execute(self, run: _Run) -> RunResult:
		decompose = await self._decompose(run)
		await self._persist(run, "decompose", "decompose_v1", decompose.model_dump(mode="json"))

		pending = self._register_questions(run, decompose.questions)
		while pending and run.budget.can_continue():
			iteration = run.budget.start_iteration()
			run.metadata.research_iterations = iteration

			packages = await self._research(run, pending, iteration)
			run.packages.extend(packages)

			evidence = aggregate_evidence(run.packages)
			analysis, source = await self._analyze(run, evidence, iteration)
			run.analyses.append(analysis)
			await self._persist(run, f"analyze/{iteration}", "analyze_v1", {
				"iteration": iteration,
				"decided_by": source,
				**analysis.model_dump(mode="json"),
			})

			if analysis.ready_to_forecast:
				logger.info(f"[{run.run_id}] Evidence ready after iteration {iteration}")
				break
			pending = self._register_questions(run, analysis.additional_questions)
			if not pending:
				logger.info(f"[{run.run_id}] No new questions to research, moving to forecast")

		if not run.budget.can_continue():
			logger.info(f"[{run.run_id}] Budget controller forced forecast: {run.budget.state.to_dict()}")

		evidence = aggregate_evidence(run.packages)
		forecast = await self._forecast(run, evidence, decompose)
		await self._persist(run, "forecast", "forecast_v1", forecast.model_dump(mode="json"))

		run.metadata.completed_at = datetime.now().isoformat()
		run.metadata.duration_ms = int((time.monotonic() - run.started) * 1000)
		run.metadata.cost_usd = round(sum(run.metadata.cost_breakdown.values()), 6)
		run.metadata.budget = run.budget.state.to_dict()

		result = RunResult(
			run_id=run.run_id,
			target_id=run.target_id,
			question=run.request.question,
			forecast=forecast,
			decompose=decompose,
			analyses=run.analyses,
			questions_asked=run.questions,
			evidence_packages=run.packages,
			aggregated_evidence=evidence,
			metadata=run.metadata,
		)
		await self._persist(run, "run", "run_v1", result.model_dump(mode="json"))
		if self.workspace is not None:
			await self.workspace.append_progress(
				run.target_id,
				ProgressEntryType.NOTE,
				f"Forecast {forecast.probability:.2f} ({forecast.confidence.value} confidence) from run {run.run_id}",
				data={"run_id": run.run_id, "cost_usd": run.metadata.cost_usd},
			)
		return result

	# ------------------------------------------------------------------
	# Phases
	# ------------------------------------------------------------------

	async def _decompose(self, run: _Run) -> DecomposeOutput:
		profile = self._profile(profiles.DECOMPOSE, run.budget.allowance(1))
		result = await self._call(run, "decompose", build_decompose_task(run.request), profile, iteration=0)
		self._charge(run, "decompose", 0, result)

		if not result.success:
			raise PhaseFailedError(
				"decompose",
				f"Decompose failed: {result.error.message if result.error else 'unknown error'}",
				ErrorCode.DECOMPOSE_FAILED,
				cause=result.error.to_exception() if result.error else None,
			)
		try:
			output = parse_phase_output(parse_json_output(result.output), "decompose")
		except AnalystError as e:
			raise PhaseFailedError("decompose", f"Decompose output unusable: {e.message}", ErrorCode.DECOMPOSE_FAILED, cause=e) from e

		logger.info(f"[{run.run_id}] Decomposed into {len(output.questions)} question(s)")
		return output

	async def _research(self, run: _Run, questions: list[ResearchQuestion], iteration: int) -> list[EvidencePackage]:
		"""Research every pending question concurrently; returns packages in question order."""
		allowance = run.budget.allowance(len(questions))
		started = time.monotonic()
		run.obs.record_event(
			"phase.started",
			phase="research",
			iteration=iteration,
			questions=[q.id for q in questions],
			allowance_usd=allowance,
		)
		await self._start_features(run, questions)

		processor: BatchProcessor[ResearchQuestion, EvidencePackage] = BatchProcessor(
			max_concurrency=self.config.research_concurrency,
		)

		async def handle(item: BatchItem[ResearchQuestion]) -> EvidencePackage:
			return await self._research_question(run, item.data, allowance, iteration)

		async def on_complete(result: BatchResult[EvidencePackage]) -> None:
			package = result.result
			if not result.success or package is None or package.failed:
				error = result.error if not result.success else (package.meta.error if package else None)
				run.obs.record_event("research.question_failed", phase="research", question_id=result.item_id, error=error)

		summary = await processor.execute(
			[BatchItem(id=q.id, data=q) for q in questions],
			handle,
			on_item_complete=on_complete,
		)

		packages = []
		for question, item in zip(questions, summary.results):
			if item.success and item.result is not None:
				packages.append(item.result)
			else:
				packages.append(EvidencePackage.empty(question.id, item.error or "research failed", iteration=iteration))

		research_cost = sum(p.meta.research_cost_usd for p in packages)
		filter_cost = sum(p.meta.filter_cost_usd for p in packages)
		duration_ms = int((time.monotonic() - started) * 1000)
		run.budget.charge(research_cost)
		run.budget.charge(filter_cost)
		run.metadata.cost_breakdown["research"] += research_cost
		run.metadata.cost_breakdown["filter"] += filter_cost
		run.metadata.filter_fallbacks += sum(1 for p in packages if p.meta.filter_fallback)

		failed = [p.question_id for p in packages if p.failed]
		run.metadata.phases.append(PhaseRecord(
			name="research",
			iteration=iteration,
			cost_usd=research_cost + filter_cost,
			duration_ms=duration_ms,
			success=len(failed) < len(packages),
			error=f"{len(failed)} question(s) failed: {', '.join(failed)}" if failed else None,
		))
		run.obs.record_event(
			"phase.completed",
			phase="research",
			iteration=iteration,
			cost_usd=research_cost + filter_cost,
			duration_ms=duration_ms,
			failed_questions=failed,
		)
		logger.info(
			f"[{run.run_id}] Iteration {iteration}: researched {len(packages)} question(s), "
			f"{len(failed)} failed, ${research_cost + filter_cost:.4f}"
		)

		await self._finish_features(run, packages)
		return packages

	async def _research_question(
		self,
		run: _Run,
		question: ResearchQuestion,
		allowance: float,
		iteration: int,
	) -> EvidencePackage:
		started = time.monotonic()
		profile = self._profile(profiles.RESEARCH, allowance)
		result = await self._call(
			run, "research", build_research_task(question, run.request), profile,
			iteration=iteration, question_id=question.id,
		)
		if not result.success:
			message = f"{result.error.code}: {result.error.message}" if result.error else "research failed"
			logger.warning(f"[{run.run_id}] Research for {question.id} failed: {message[:200]}")
			return EvidencePackage.empty(
				question.id, message, iteration=iteration,
				cost_usd=result.cost_usd, duration_ms=int((time.monotonic() - started) * 1000),
			)

		try:
			raw = ResearchOutput.model_validate(parse_json_output(result.output))
		except (AnalystError, ValidationError) as e:
			logger.warning(f"[{run.run_id}] Research output for {question.id} unusable: {e}")
			return EvidencePackage.empty(
				question.id, f"{ErrorCode.OUTPUT_PARSE_FAILED}: {e}", iteration=iteration,
				cost_usd=result.cost_usd, duration_ms=int((time.monotonic() - started) * 1000),
			)

		filtered, filter_cost, fell_back, issues = await self._filter(
			run, question, raw, allowance - result.cost_usd, iteration,
		)
		return EvidencePackage(
			question_id=question.id,
			raw=raw,
			filtered=filtered,
			meta=PackageMeta(
				research_cost_usd=result.cost_usd,
				filter_cost_usd=filter_cost,
				duration_ms=int((time.monotonic() - started) * 1000),
				total_sources=len(filtered.sources),
				total_findings=len(filtered.findings),
				filter_fallback=fell_back,
				filter_issues=issues,
				iteration=iteration,
			),
		)

	async def _filter(
		self,
		run: _Run,
		question: ResearchQuestion,
		raw: ResearchOutput,
		leftover: float,
		iteration: int,
	) -> tuple[FilteredResearch, float, bool, list[str]]:
		"""Filter raw evidence; any failure or violation passes raw evidence through."""
		if raw.is_empty():
			return passthrough(raw), 0.0, False, []
		if leftover <= 0:
			logger.info(f"[{run.run_id}] No allowance left to filter {question.id}, passing raw evidence through")
			return passthrough(raw), 0.0, True, ["filter skipped: allowance spent by research"]

		limits = get_filter_limits(run.request.filter_profile or self.config.filter_profile)
		profile = self._profile(profiles.FILTER, leftover)
		result = await self._call(
			run, "filter", build_filter_task(question, raw, limits), profile,
			iteration=iteration, question_id=question.id,
		)
		if not result.success:
			message = f"{result.error.code}: {result.error.message}" if result.error else "filter failed"
			return self._filter_fallback(run, question, raw, result.cost_usd, [f"filter failed: {message[:200]}"])

		try:
			filtered = FilteredResearch.model_validate(parse_json_output(result.output))
		except (AnalystError, ValidationError) as e:
			return self._filter_fallback(run, question, raw, result.cost_usd, [f"filter output unusable: {str(e)[:200]}"])

		decision = enforce_filter_contract(raw, filtered)
		if decision.fell_back:
			return self._filter_fallback(run, question, raw, result.cost_usd, [str(i) for i in decision.issues])
		return decision.output, result.cost_usd, False, []

	def _filter_fallback(
		self,
		run: _Run,
		question: ResearchQuestion,
		raw: ResearchOutput,
		cost_usd: float,
		issues: list[str],
	) -> tuple[FilteredResearch, float, bool, list[str]]:
		run.obs.record_event("filter.fallback", phase="filter", question_id=question.id, issues=issues[:5])
		return passthrough(raw), cost_usd, True, issues

	async def _analyze(self, run: _Run, evidence: AggregatedEvidence, iteration: int) -> tuple[AnalyzeOutput, str]:
		"""
		Decide whether to forecast or research more.

		Returns:
			The decision and who made it ("executor" or "heuristic")
		"""
		iterations_left = run.budget.state.remaining_iterations
		heuristic = assess_evidence(
			evidence,
			run.request.question,
			self.thresholds,
			iterations_left=iterations_left,
			questions_asked=len(run.questions),
		)

		allowance = run.budget.allowance(1)
		if allowance <= 0:
			logger.info(f"[{run.run_id}] No allowance left for analyze, using heuristic assessment")
			return self._analyze_fallback(run, heuristic, iteration, "no allowance")

		task = build_analyze_task(run.request, evidence, run.questions, iterations_left)
		result = await self._call(run, "analyze", task, self._profile(profiles.ANALYZE, allowance), iteration=iteration)
		self._charge(run, "analyze", iteration, result)

		if not result.success:
			message = result.error.message if result.error else "analyze failed"
			return self._analyze_fallback(run, heuristic, iteration, message)
		try:
			analysis = parse_phase_output(parse_json_output(result.output), "analyze")
		except AnalystError as e:
			return self._analyze_fallback(run, heuristic, iteration, e.message)

		if not analysis.ready_to_forecast and not analysis.additional_questions:
			logger.info(f"[{run.run_id}] Analyze asked for more research without a question, adding gap question")
			analysis = analysis.model_copy(update={
				"additional_questions": [gap_question(run.request.question, len(run.questions) + 1)],
			})
		return analysis, "executor"

	def _analyze_fallback(
		self,
		run: _Run,
		heuristic: AnalyzeOutput,
		iteration: int,
		reason: str,
	) -> tuple[AnalyzeOutput, str]:
		logger.warning(f"[{run.run_id}] Analyze fell back to heuristic assessment: {reason[:200]}")
		run.metadata.analyze_fallbacks += 1
		run.obs.record_event("analyze.fallback", phase="analyze", iteration=iteration, reason=reason[:200])
		return heuristic, "heuristic"

	async def _forecast(self, run: _Run, evidence: AggregatedEvidence, decompose: DecomposeOutput) -> Forecast:
		# The reserve stays available even if research overshot its allowances
		allowance = max(run.budget.final_allowance(), self.config.forecast_reserve_usd)
		profile = self._profile(profiles.FORECAST, allowance)
		task = build_forecast_task(run.request, evidence, decompose)
		result = await self._call(run, "forecast", task, profile, iteration=run.metadata.research_iterations)
		self._charge(run, "forecast", run.metadata.research_iterations, result)

		if not result.success:
			raise PhaseFailedError(
				"forecast",
				f"Forecast failed: {result.error.message if result.error else 'unknown error'}",
				ErrorCode.FORECAST_FAILED,
				cause=result.error.to_exception() if result.error else None,
			)
		try:
			output = parse_phase_output(parse_json_output(result.output), "forecast")
		except AnalystError as e:
			raise PhaseFailedError("forecast", f"Forecast output unusable: {e.message}", ErrorCode.FORECAST_FAILED, cause=e) from e

		return output.forecast

	# ------------------------------------------------------------------
	# Helpers
	# ------------------------------------------------------------------

	def _profile(self, base: ResourceProfile, allowance: float) -> ResourceProfile:
		return base.capped(allowance).with_timeout(self.config.executor_timeout_seconds)

	async def _call(
		self,
		run: _Run,
		phase: str,
		task: str,
		profile: ResourceProfile,
		iteration: int,
		question_id: Optional[str] = None,
	) -> ExecutionResult:
		context: dict[str, Any] = {
			"phase": phase,
			"run_id": run.run_id,
			"target_id": run.target_id,
			"iteration": iteration,
		}
		if question_id:
			context["question_id"] = question_id
		logger.debug(f"[{run.run_id}] {phase} call (cap ${profile.max_cost_usd:.4f}) {question_id or ''}")
		return await self.executor.execute(ExecutionRequest(task=task, profile=profile, context=context))

	def _charge(self, run: _Run, phase: str, iteration: int, result: ExecutionResult) -> None:
		run.budget.charge(result.cost_usd)
		run.metadata.cost_breakdown[phase] += result.cost_usd
		run.metadata.phases.append(PhaseRecord(
			name=phase,
			iteration=iteration,
			cost_usd=result.cost_usd,
			duration_ms=result.duration_ms,
			success=result.success,
			error=result.error.message[:200] if result.error else None,
		))
		run.obs.record_event(
			"phase.completed",
			phase=phase,
			iteration=iteration,
			cost_usd=result.cost_usd,
			duration_ms=result.duration_ms,
			success=result.success,
		)

	def _register_questions(self, run: _Run, questions: list[ResearchQuestion]) -> list[ResearchQuestion]:
		"""Add questions to the run history, skipping repeats and renaming clashing ids."""
		taken = {q.id for q in run.questions}
		added = []
		for question in questions:
			key = normalize_text(question.question)
			if key in run.question_keys:
				logger.debug(f"[{run.run_id}] Skipping repeated question: {question.question[:80]}")
				continue
			if question.id in taken:
				suffix = 2
				while f"{question.id}_{suffix}" in taken:
					suffix += 1
				question = question.model_copy(update={"id": f"{question.id}_{suffix}"})
			taken.add(question.id)
			run.question_keys.add(key)
			run.questions.append(question)
			added.append(question)
		return added

	async def _persist(self, run: _Run, doc: str, schema_version: str, data: dict[str, Any]) -> None:
		if self.store is None:
			return
		await self.store.write(f"{self.namespace}/{run.target_id}/{doc}", {
			**data,
			"schema_version": schema_version,
			"run_id": run.run_id,
			"target_id": run.target_id,
		})

	def _snapshot(self, run: _Run) -> dict[str, Any]:
		return {
			"target_id": run.target_id,
			"iterations": run.metadata.research_iterations,
			"cost_breakdown": dict(run.metadata.cost_breakdown),
			"budget": run.budget.state.to_dict(),
		}

	# ------------------------------------------------------------------
	# Workspace
	# ------------------------------------------------------------------

	async def _start_features(self, run: _Run, questions: list[ResearchQuestion]) -> None:
		if self.workspace is None:
			return
		drafts = [
			FeatureDraft(name=q.question, description=q.rationale, category=q.topic)
			for q in questions
		]
		if await self.workspace.exists(run.target_id):
			features = await self.workspace.add_features(run.target_id, drafts)
		else:
			ws = await self.workspace.initialize(run.target_id, run.request.question, drafts)
			features = ws.feature_list.features
		for question, feature in zip(questions, features):
			run.feature_ids[question.id] = feature.id
			await self.workspace.start_feature(run.target_id, feature.id)

	async def _finish_features(self, run: _Run, packages: list[EvidencePackage]) -> None:
		if self.workspace is None:
			return
		for package in packages:
			feature_id = run.feature_ids.get(package.question_id)
			if feature_id is None:
				continue
			if package.failed:
				await self.workspace.fail_feature(run.target_id, feature_id, package.meta.error or "research failed")
				continue
			await self.workspace.complete_feature(
				run.target_id,
				feature_id,
				f"{package.meta.total_findings} findings, {package.meta.total_sources} sources",
			)
			await self._record_claims(run, package)

	async def _record_claims(self, run: _Run, package: EvidencePackage) -> None:
		sources = {s.url: s for s in package.filtered.sources}
		for finding in package.filtered.findings:
			if finding.key in run.claim_keys:
				continue
			run.claim_keys.add(finding.key)
			await self.workspace.add_claim(
				run.target_id,
				finding.claim,
				sources=[
					ClaimSource(
						url=url,
						title=sources[url].title,
						type=sources[url].type.value,
						credibility=sources[url].credibility,
					)
					for url in finding.supporting_sources
					if url in sources
				],
				strength=CLAIM_STRENGTH[finding.status],
				tags=[t for t in (finding.topic, package.question_id) if t],
			)
