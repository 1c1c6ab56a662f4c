"""
Workspace Worker - Advance a target's workspace one feature at a time.

initialize_workspace() seeds a workspace with the standard research
features for a subject. WorkspaceWorker.run_once() picks the next ready
feature, researches it through the executor and records what came back:
claims for new findings, evidence against active hypotheses, newly
proposed hypotheses, and the feature's completion or failed attempt.
run_loop() repeats run_once() until no feature is ready or a spend,
iteration or time limit is reached.
"""

import logging
import time
import uuid
from typing import Optional

from pydantic import BaseModel, Field, ValidationError

from .. import profiles
from ..errors import AnalystError, ConfigError, ErrorCode, WorkspaceNotFoundError
from ..evidence.models import ResearchOutput, normalize_text
from ..executor import ExecutionRequest, Executor, parse_json_output
from ..orchestrator.budget import BudgetController
from ..orchestrator.tasks import build_feature_task
from ..profiles import ResourceProfile
from ..telemetry import Observability, TelemetryEmitter
from .models import (
	CLAIM_STRENGTH,
	TERMINAL_FEATURE_STATUSES,
	ClaimSource,
	EvidenceStrength,
	Feature,
	FeatureDraft,
	FeatureStatus,
	ProgressEntryType,
	Workspace,
)
from .tracker import WorkspaceTracker

logger = logging.getLogger(__name__)

DEPTHS = ("standard", "deep", "exhaustive")

# Focus areas that keep an optional default feature; None keeps all of them
_FOCUS_FEATURES = [
	(("timeline", "facts"), "Timeline & Events", "Build a timeline of key events and developments for", "timeline"),
	(("risks",), "Risk Analysis", "Identify risks, uncertainties and potential negative outcomes for", "risks"),
	(("opportunities",), "Opportunity Analysis", "Identify opportunities and potential positive outcomes for", "opportunities"),
	(("prediction",), "Prediction Formation", "Form predictions about likely outcomes for", "predictions"),
]

_DEEP_FEATURES = [
	("Source Verification", "Cross-reference and verify sources for claims about", "verification"),
	("Counter-Arguments", "Identify counter-arguments and opposing viewpoints on", "verification"),
]

_EXHAUSTIVE_FEATURES = [
	("Expert Opinions", "Gather expert opinions and analysis from credible sources about", "sources"),
	("Historical Parallels", "Identify historical parallels and precedents relevant to", "context"),
	("Scenario Analysis", "Develop multiple scenarios and their implications for", "predictions"),
]

SYNTHESIS_PRIORITY = 100


def default_features(subject: str, depth: str = "standard", focus: Optional[list[str]] = None) -> list[FeatureDraft]:
	"""
	Standard research features for a subject.

	Background, key facts and stakeholders are always included. The
	focus list narrows the optional features; deeper runs add
	verification and scenario work. Final Synthesis always runs last.

	Raises:
		ConfigError: If depth is not one of DEPTHS
	"""
	if depth not in DEPTHS:
		raise ConfigError(f"Unknown research depth: {depth}", context={"allowed": list(DEPTHS)})

	entries = [
		("Background Context", "Gather background information and context about", "context"),
		("Key Facts", "Identify and verify key facts related to", "facts"),
		("Key Stakeholders", "Identify the major parties, actors and stakeholders involved in", "stakeholders"),
	]
	for areas, name, description, category in _FOCUS_FEATURES:
		if focus is None or any(area in focus for area in areas):
			entries.append((name, description, category))
	if depth in ("deep", "exhaustive"):
		entries.extend(_DEEP_FEATURES)
	if depth == "exhaustive":
		entries.extend(_EXHAUSTIVE_FEATURES)

	drafts = [
		FeatureDraft(name=name, description=f"{description}: {subject}", priority=i + 1, category=category)
		for i, (name, description, category) in enumerate(entries)
	]
	drafts.append(FeatureDraft(
		name="Final Synthesis",
		description=f"Synthesize all findings into an assessment of: {subject}",
		priority=SYNTHESIS_PRIORITY,
		category="synthesis",
	))
	return drafts


async def initialize_workspace(
	tracker: WorkspaceTracker,
	target_id: str,
	subject: str,
	depth: str = "standard",
	focus: Optional[list[str]] = None,
) -> Workspace:
	"""Create a workspace seeded with default_features(). An existing workspace is returned as is."""
	existing = await tracker.load(target_id)
	if existing is not None:
		logger.info(f"Workspace for {target_id} already exists with {existing.feature_list.total_count} features")
		return existing
	return await tracker.initialize(target_id, subject, default_features(subject, depth, focus))


async def expand_workspace(tracker: WorkspaceTracker, target_id: str, drafts: list[FeatureDraft]) -> list[Feature]:
	"""Add features to an existing workspace and note the expansion in its progress log."""
	added = await tracker.add_features(target_id, drafts)
	await tracker.append_progress(
		target_id,
		ProgressEntryType.NOTE,
		f"Workspace expanded with {len(added)} new features",
		data={"features": [f.name for f in added]},
	)
	return added


class HypothesisUpdate(BaseModel):
	"""Evidence the executor reports against an existing hypothesis."""
	hypothesis_id: str
	supporting: bool = Field(default=True)
	strength: EvidenceStrength = Field(default=EvidenceStrength.MODERATE)
	description: str = Field(default="")
	source: Optional[str] = Field(default=None)


class HypothesisDraft(BaseModel):
	"""A hypothesis proposed by the executor."""
	statement: str
	confidence: float = Field(default=0.5, ge=0.0, le=1.0)
	category: Optional[str] = Field(default=None)


class FeatureOutput(ResearchOutput):
	"""Research for one feature plus its bearing on the workspace hypotheses."""
	hypothesis_updates: list[HypothesisUpdate] = Field(default_factory=list)
	new_hypotheses: list[HypothesisDraft] = Field(default_factory=list)


class WorkerResult(BaseModel):
	"""Outcome of one run_once() call."""
	success: bool
	target_id: str
	feature_id: Optional[str] = Field(default=None)
	feature_name: Optional[str] = Field(default=None)
	feature_status: Optional[FeatureStatus] = Field(default=None)
	progress: float = Field(default=0.0)
	has_more_work: bool = Field(default=False)
	claims_added: int = Field(default=0)
	hypotheses_updated: int = Field(default=0)
	hypotheses_added: int = Field(default=0)
	cost_usd: float = Field(default=0.0)
	duration_ms: int = Field(default=0)
	error: Optional[str] = Field(default=None)


class LoopResult(BaseModel):
	"""Outcome of a run_loop() call."""
	target_id: str
	iterations: int = Field(default=0)
	features_completed: int = Field(default=0)
	features_failed: int = Field(default=0)
	total_cost_usd: float = Field(default=0.0)
	duration_ms: int = Field(default=0)
	final_progress: float = Field(default=0.0)
	stop_reason: str = Field(default="", description="complete, no_ready_features, budget, iterations or time")
	results: list[WorkerResult] = Field(default_factory=list)


class WorkspaceWorker:
	"""
	Runs workspace features through an executor.

	Usage:
		worker = WorkspaceWorker(executor, tracker)
		await initialize_workspace(tracker, "fed-march", "Will the Fed cut in March?")
		result = await worker.run_once("fed-march", max_cost_usd=0.5)
		summary = await worker.run_loop("fed-march", max_iterations=10, max_total_cost_usd=5.0)
	"""

	def __init__(
		self,
		executor: Executor,
		tracker: WorkspaceTracker,
		emitter: Optional[TelemetryEmitter] = None,
		timeout_seconds: float = 600.0,
		profile: ResourceProfile = profiles.RESEARCH,
	):
		self.executor = executor
		self.tracker = tracker
		self.emitter = emitter
		self.timeout_seconds = timeout_seconds
		self.profile = profile

	def _observability(self) -> Observability:
		return Observability(self.emitter, run_id=f"work_{uuid.uuid4().hex[:12]}")

	async def run_once(
		self,
		target_id: str,
		feature_id: Optional[str] = None,
		max_cost_usd: float = 0.5,
		obs: Optional[Observability] = None,
	) -> WorkerResult:
		"""
		Research one feature: the given one, or the next ready one.

		Returns a successful result with no feature when nothing is ready.

		Raises:
			WorkspaceNotFoundError: If the target has no workspace
		"""
		started = time.monotonic()
		obs = obs or self._observability()
		workspace = await self.tracker.load(target_id)
		if workspace is None:
			raise WorkspaceNotFoundError(f"No workspace for target {target_id}", context={"target_id": target_id})
		feature_list = workspace.feature_list

		if feature_id is None:
			feature = feature_list.get_next_feature()
			if feature is None:
				logger.info(f"No ready features for {target_id} ({feature_list.progress:.0%} complete)")
				return WorkerResult(success=True, target_id=target_id, progress=feature_list.progress)
		else:
			feature = feature_list.get_feature(feature_id)
			if feature is None or feature.status in TERMINAL_FEATURE_STATUSES:
				reason = "not found" if feature is None else f"already {feature.status.value}"
				return WorkerResult(
					success=False,
					target_id=target_id,
					feature_id=feature_id,
					progress=feature_list.progress,
					has_more_work=feature_list.get_next_feature() is not None,
					error=f"Feature {feature_id} {reason}",
				)

		session_id = obs.start_session("workspace_worker", correlation_id=target_id, metadata={"feature_id": feature.id})
		await self.tracker.start_feature(target_id, feature.id)
		logger.info(f"[{target_id}] Working on {feature.id}: {feature.name}")

		profile = self.profile.capped(max_cost_usd).with_timeout(self.timeout_seconds)
		execution = await self.executor.execute(ExecutionRequest(
			task=build_feature_task(workspace, feature),
			profile=profile,
			context={"phase": "feature", "target_id": target_id, "feature_id": feature.id},
		))

		output: Optional[FeatureOutput] = None
		error: Optional[str] = None
		if not execution.success:
			error = f"{execution.error.code}: {execution.error.message}" if execution.error else "execution failed"
		else:
			try:
				output = FeatureOutput.model_validate(parse_json_output(execution.output))
			except (AnalystError, ValidationError) as e:
				error = f"{ErrorCode.OUTPUT_PARSE_FAILED}: {e}"
			else:
				if output.is_empty() and not (output.hypothesis_updates or output.new_hypotheses):
					error = "Research returned no evidence"

		result = WorkerResult(
			success=error is None,
			target_id=target_id,
			feature_id=feature.id,
			feature_name=feature.name,
			cost_usd=execution.cost_usd,
			error=error,
		)
		if error is None:
			await self._record(workspace, feature, output, result)
			notes = output.summary[:500] or f"{len(output.findings)} findings, {len(output.sources)} sources"
			updated = await self.tracker.complete_feature(target_id, feature.id, notes)
		else:
			logger.warning(f"[{target_id}] {feature.id} failed: {error[:200]}")
			updated = await self.tracker.fail_feature(target_id, feature.id, error)

		refreshed = await self.tracker.load(target_id)
		result.feature_status = updated.status if updated else None
		result.progress = refreshed.feature_list.progress
		result.has_more_work = refreshed.feature_list.get_next_feature() is not None
		result.duration_ms = int((time.monotonic() - started) * 1000)

		obs.record_event(
			"feature.completed" if result.success else "feature.failed",
			phase="feature",
			session_id=session_id,
			feature_id=feature.id,
			cost_usd=result.cost_usd,
			duration_ms=result.duration_ms,
			claims_added=result.claims_added,
		)
		obs.end_session(session_id, {
			"success": result.success,
			"feature_status": result.feature_status.value if result.feature_status else None,
			"progress": result.progress,
		})
		return result

	async def _record(self, workspace: Workspace, feature: Feature, output: FeatureOutput, result: WorkerResult) -> None:
		target_id = workspace.feature_list.target_id
		sources = {s.url: s for s in output.sources}
		seen_claims = {normalize_text(c.text) for c in workspace.claims.claims}
		for finding in output.findings:
			if finding.key in seen_claims:
				continue
			seen_claims.add(finding.key)
			await self.tracker.add_claim(
				target_id,
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
				tags=[t for t in (finding.topic, feature.category, feature.id) if t],
			)
			result.claims_added += 1

		for update in output.hypothesis_updates:
			hypothesis = await self.tracker.apply_evidence(
				target_id,
				update.hypothesis_id,
				update.description or feature.name,
				update.strength,
				update.supporting,
				source=update.source,
			)
			if hypothesis is not None:
				result.hypotheses_updated += 1

		known = {h.key for h in workspace.hypotheses.hypotheses}
		for draft in output.new_hypotheses:
			if normalize_text(draft.statement) in known:
				continue
			added = await self.tracker.add_hypothesis(
				target_id, draft.statement, draft.confidence, draft.category or feature.category,
			)
			if added is not None:
				known.add(added.key)
				result.hypotheses_added += 1

		await self.tracker.append_progress(
			target_id,
			ProgressEntryType.RESEARCH_UPDATED,
			f"{feature.name}: {len(output.findings)} findings, {len(output.sources)} sources",
			feature_id=feature.id,
			data={"claims_added": result.claims_added, "hypotheses_updated": result.hypotheses_updated},
		)

	async def run_loop(
		self,
		target_id: str,
		max_iterations: int = 10,
		max_total_cost_usd: float = 5.0,
		per_feature_cost_usd: float = 0.5,
		max_duration_seconds: Optional[float] = None,
	) -> LoopResult:
		"""
		Work through features until none is ready or a limit is reached.

		Each feature gets at most per_feature_cost_usd, and never more
		than what is left of max_total_cost_usd.
		"""
		budget = BudgetController(
			total_usd=max_total_cost_usd,
			max_iterations=max_iterations,
			per_call_ceiling_usd=per_feature_cost_usd,
		)
		obs = self._observability()
		session_id = obs.start_session("workspace_loop", correlation_id=target_id)
		started = time.monotonic()
		summary = LoopResult(target_id=target_id)

		while True:
			if not budget.can_continue():
				summary.stop_reason = "budget" if budget.state.remaining_usd <= 0 else "iterations"
				break
			if max_duration_seconds is not None and time.monotonic() - started >= max_duration_seconds:
				summary.stop_reason = "time"
				break

			budget.start_iteration()
			result = await self.run_once(target_id, max_cost_usd=budget.allowance(pending_count=1), obs=obs)
			budget.charge(result.cost_usd)
			summary.final_progress = result.progress
			if result.feature_id is None:
				summary.stop_reason = "complete" if result.progress >= 1.0 else "no_ready_features"
				break

			summary.results.append(result)
			summary.iterations += 1
			summary.total_cost_usd += result.cost_usd
			if result.feature_status == FeatureStatus.COMPLETED:
				summary.features_completed += 1
			elif result.feature_status == FeatureStatus.FAILED:
				summary.features_failed += 1
			if not result.has_more_work:
				summary.stop_reason = "complete" if result.progress >= 1.0 else "no_ready_features"
				break

		summary.duration_ms = int((time.monotonic() - started) * 1000)
		logger.info(
			f"[{target_id}] Worker loop stopped ({summary.stop_reason}) after {summary.iterations} features, "
			f"${summary.total_cost_usd:.4f}, {summary.final_progress:.0%} complete"
		)
		obs.end_session(session_id, {
			"stop_reason": summary.stop_reason,
			"iterations": summary.iterations,
			"total_cost_usd": summary.total_cost_usd,
			"final_progress": summary.final_progress,
		})
		return summary
