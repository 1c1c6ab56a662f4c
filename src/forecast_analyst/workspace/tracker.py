"""
Workspace Tracker - Persistent decomposition state across invocations.

Stores the feature list, hypotheses, claims, plan and progress log for a
target under `{namespace}/{target_id}/{doc}`. Mutations are serialized
with an asyncio.Lock so concurrent callers in one process never lose a
read-modify-write. Separate runs should use separate namespaces.
"""

import asyncio
import logging
import uuid
from datetime import datetime
from typing import Any, Optional, Type, TypeVar

from pydantic import BaseModel, ValidationError

from ..errors import WorkspaceCorruptedError, WorkspaceNotFoundError
from ..store import Store
from .models import (
	TERMINAL_FEATURE_STATUSES,
	Claim,
	ClaimsDoc,
	ClaimSource,
	EvidenceStrength,
	Feature,
	FeatureDraft,
	FeatureList,
	FeatureStatus,
	Goal,
	GoalStatus,
	HypothesesDoc,
	Hypothesis,
	HypothesisEvidence,
	HypothesisStatus,
	PlanDoc,
	ProgressEntry,
	ProgressEntryType,
	ProgressLog,
	Workspace,
)

logger = logging.getLogger(__name__)

M = TypeVar("M", bound=BaseModel)

# Confidence change applied per piece of evidence
STRENGTH_DELTA = {
	EvidenceStrength.STRONG: 0.2,
	EvidenceStrength.MODERATE: 0.1,
	EvidenceStrength.WEAK: 0.05,
}

INITIAL_GOAL_COUNT = 3


class WorkspaceTracker:
	"""
	Long-lived research workspace for one namespace.

	Usage:
		tracker = WorkspaceTracker(store, namespace="analyst")
		await tracker.initialize("fed-march", "Will the Fed cut in March?", drafts)
		feature = await tracker.get_next_feature("fed-march")
		await tracker.start_feature("fed-march", feature.id)
		await tracker.complete_feature("fed-march", feature.id, "found 4 sources")
	"""

	def __init__(
		self,
		store: Store,
		namespace: str = "analyst",
		max_attempts: int = 3,
		confirm_threshold: float = 0.9,
		reject_threshold: float = 0.1,
		session_id: Optional[str] = None,
	):
		self.store = store
		self.namespace = namespace
		self.max_attempts = max_attempts
		self.confirm_threshold = confirm_threshold
		self.reject_threshold = reject_threshold
		self.session_id = session_id
		self._lock = asyncio.Lock()

	def key(self, target_id: str, doc: str) -> str:
		return f"{self.namespace}/{target_id}/{doc}"

	# ------------------------------------------------------------------
	# Loading and saving
	# ------------------------------------------------------------------

	async def _load_doc(self, target_id: str, doc: str, model: Type[M]) -> Optional[M]:
		data = await self.store.read(self.key(target_id, doc))
		if data is None:
			return None
		try:
			return model.model_validate(data)
		except ValidationError as e:
			raise WorkspaceCorruptedError(
				f"Workspace document {self.key(target_id, doc)} is invalid: {e.error_count()} error(s)",
				context={"target_id": target_id, "doc": doc},
			) from e

	async def _save_doc(self, target_id: str, doc: str, model: BaseModel) -> None:
		await self.store.write(self.key(target_id, doc), model.model_dump(mode="json"))

	async def _require(self, target_id: str, doc: str, model: Type[M]) -> M:
		loaded = await self._load_doc(target_id, doc, model)
		if loaded is None:
			raise WorkspaceNotFoundError(
				f"No workspace for target {target_id}",
				context={"target_id": target_id, "doc": doc},
			)
		return loaded

	async def exists(self, target_id: str) -> bool:
		return await self.store.exists(self.key(target_id, "feature_list"))

	async def initialize(
		self,
		target_id: str,
		subject: str,
		features: list[FeatureDraft],
	) -> Workspace:
		"""Create a fresh workspace. Overwrites any existing one for the target."""
		async with self._lock:
			built = [
				Feature(
					id=f"feature_{i + 1}",
					name=draft.name,
					description=draft.description,
					priority=draft.priority if draft.priority is not None else i + 1,
					category=draft.category,
					depends_on=list(draft.depends_on),
				)
				for i, draft in enumerate(features)
			]
			built.sort(key=lambda f: f.priority)

			feature_list = FeatureList(target_id=target_id, subject=subject, features=built)
			hypotheses = HypothesesDoc(target_id=target_id)
			claims = ClaimsDoc(target_id=target_id)
			plan = PlanDoc(
				target_id=target_id,
				current_goals=[
					Goal(id=f"goal_{i + 1}", description=f"Research: {f.name}", priority=i + 1)
					for i, f in enumerate(built[:INITIAL_GOAL_COUNT])
				],
				next_steps=[f"Start with {built[0].name}"] if built else [],
			)
			progress = ProgressLog(
				target_id=target_id,
				entries=[self._entry(
					ProgressEntryType.INITIALIZED,
					f"Workspace initialized with {len(built)} features",
					data={"subject": subject},
				)],
			)

			await asyncio.gather(
				self._save_doc(target_id, "feature_list", feature_list),
				self._save_doc(target_id, "hypotheses", hypotheses),
				self._save_doc(target_id, "claims", claims),
				self._save_doc(target_id, "plan", plan),
				self._save_doc(target_id, "progress", progress),
			)

		logger.info(f"Initialized workspace {self.key(target_id, '')} with {len(built)} features")
		return Workspace(
			feature_list=feature_list,
			hypotheses=hypotheses,
			claims=claims,
			plan=plan,
			progress=progress.entries,
		)

	async def load(self, target_id: str) -> Optional[Workspace]:
		"""Load every document of a workspace. None when it does not exist."""
		feature_list, hypotheses, claims, plan, progress = await asyncio.gather(
			self._load_doc(target_id, "feature_list", FeatureList),
			self._load_doc(target_id, "hypotheses", HypothesesDoc),
			self._load_doc(target_id, "claims", ClaimsDoc),
			self._load_doc(target_id, "plan", PlanDoc),
			self._load_doc(target_id, "progress", ProgressLog),
		)
		if feature_list is None:
			return None
		return Workspace(
			feature_list=feature_list,
			hypotheses=hypotheses or HypothesesDoc(target_id=target_id),
			claims=claims or ClaimsDoc(target_id=target_id),
			plan=plan or PlanDoc(target_id=target_id),
			progress=progress.entries if progress else [],
		)

	# ------------------------------------------------------------------
	# Features
	# ------------------------------------------------------------------

	async def add_features(self, target_id: str, drafts: list[FeatureDraft]) -> list[Feature]:
		"""Append features to an existing workspace."""
		async with self._lock:
			feature_list = await self._require(target_id, "feature_list", FeatureList)
			next_number = _next_number(f.id for f in feature_list.features)
			added = []
			for i, draft in enumerate(drafts):
				feature = Feature(
					id=f"feature_{next_number + i}",
					name=draft.name,
					description=draft.description,
					priority=draft.priority if draft.priority is not None else feature_list.total_count + i + 1,
					category=draft.category,
					depends_on=list(draft.depends_on),
				)
				added.append(feature)
			feature_list.features.extend(added)
			feature_list.features.sort(key=lambda f: f.priority)
			await self._save_feature_list(target_id, feature_list)
		return added

	async def get_next_feature(self, target_id: str) -> Optional[Feature]:
		feature_list = await self._load_doc(target_id, "feature_list", FeatureList)
		if feature_list is None:
			return None
		return feature_list.get_next_feature()

	async def start_feature(self, target_id: str, feature_id: str) -> Optional[Feature]:
		"""Mark a feature in progress and count the attempt."""
		async with self._lock:
			feature_list = await self._require(target_id, "feature_list", FeatureList)
			feature = feature_list.get_feature(feature_id)
			if feature is None:
				logger.warning(f"start_feature: unknown feature {feature_id} in {target_id}")
				return None
			if feature.status in TERMINAL_FEATURE_STATUSES:
				logger.warning(f"start_feature: {feature_id} is already {feature.status.value}")
				return feature

			feature.status = FeatureStatus.IN_PROGRESS
			feature.attempts += 1
			await self._save_feature_list(target_id, feature_list)
			await self._append(target_id, self._entry(
				ProgressEntryType.FEATURE_STARTED,
				f"Started: {feature.name} (attempt {feature.attempts})",
				feature_id=feature_id,
			))
		return feature

	async def complete_feature(self, target_id: str, feature_id: str, notes: Optional[str] = None) -> Optional[Feature]:
		async with self._lock:
			feature_list = await self._require(target_id, "feature_list", FeatureList)
			feature = feature_list.get_feature(feature_id)
			if feature is None:
				logger.warning(f"complete_feature: unknown feature {feature_id} in {target_id}")
				return None

			feature.status = FeatureStatus.COMPLETED
			feature.completed_at = datetime.now().isoformat()
			feature.completion_notes = notes
			feature.last_error = None
			await self._save_feature_list(target_id, feature_list)
			await self._append(target_id, self._entry(
				ProgressEntryType.FEATURE_COMPLETED,
				f"Completed: {feature.name}",
				feature_id=feature_id,
				data={"notes": notes} if notes else {},
			))
		return feature

	async def fail_feature(self, target_id: str, feature_id: str, error: str) -> Optional[Feature]:
		"""
		Record a failed attempt.

		The feature becomes FAILED once it has used max_attempts; before
		that it goes back to PENDING for retry. A failure reported without
		a preceding start_feature still counts as an attempt.
		"""
		async with self._lock:
			feature_list = await self._require(target_id, "feature_list", FeatureList)
			feature = feature_list.get_feature(feature_id)
			if feature is None:
				logger.warning(f"fail_feature: unknown feature {feature_id} in {target_id}")
				return None

			if feature.status != FeatureStatus.IN_PROGRESS:
				feature.attempts += 1
			feature.last_error = error
			if feature.attempts >= self.max_attempts:
				feature.status = FeatureStatus.FAILED
			else:
				feature.status = FeatureStatus.PENDING

			await self._save_feature_list(target_id, feature_list)
			await self._append(target_id, self._entry(
				ProgressEntryType.FEATURE_FAILED,
				f"Failed: {feature.name} (attempt {feature.attempts}/{self.max_attempts}): {error[:200]}",
				feature_id=feature_id,
				data={"attempts": feature.attempts, "final": feature.status == FeatureStatus.FAILED},
			))
		return feature

	async def skip_feature(self, target_id: str, feature_id: str, reason: str = "") -> Optional[Feature]:
		return await self._set_feature_status(target_id, feature_id, FeatureStatus.SKIPPED, reason)

	async def block_feature(self, target_id: str, feature_id: str, reason: str = "") -> Optional[Feature]:
		return await self._set_feature_status(target_id, feature_id, FeatureStatus.BLOCKED, reason)

	async def _set_feature_status(
		self,
		target_id: str,
		feature_id: str,
		status: FeatureStatus,
		reason: str,
	) -> Optional[Feature]:
		async with self._lock:
			feature_list = await self._require(target_id, "feature_list", FeatureList)
			feature = feature_list.get_feature(feature_id)
			if feature is None:
				return None
			feature.status = status
			await self._save_feature_list(target_id, feature_list)
			await self._append(target_id, self._entry(
				ProgressEntryType.NOTE,
				f"{status.value.capitalize()}: {feature.name}" + (f" ({reason})" if reason else ""),
				feature_id=feature_id,
			))
		return feature

	async def _save_feature_list(self, target_id: str, feature_list: FeatureList) -> None:
		feature_list.updated_at = datetime.now().isoformat()
		await self._save_doc(target_id, "feature_list", feature_list)

	# ------------------------------------------------------------------
	# Hypotheses
	# ------------------------------------------------------------------

	async def add_hypothesis(
		self,
		target_id: str,
		statement: str,
		confidence: float = 0.5,
		category: Optional[str] = None,
	) -> Optional[Hypothesis]:
		"""
		Add a hypothesis.

		Returns None when the statement was already rejected; returns the
		existing hypothesis when an identical one is active.
		"""
		async with self._lock:
			doc = await self._load_doc(target_id, "hypotheses", HypothesesDoc) or HypothesesDoc(target_id=target_id)

			if doc.is_rejected(statement):
				logger.info(f"Not re-proposing rejected hypothesis: {statement[:80]}")
				return None

			candidate = Hypothesis(id="", statement=statement)
			for existing in doc.hypotheses:
				if existing.key == candidate.key:
					return existing

			hypothesis = Hypothesis(
				id=f"hyp_{len(doc.hypotheses) + len(doc.rejected) + 1}",
				statement=statement,
				confidence=_clamp(confidence),
				category=category,
			)
			doc.hypotheses.append(hypothesis)
			await self._save_doc(target_id, "hypotheses", doc)
			await self._append(target_id, self._entry(
				ProgressEntryType.HYPOTHESIS_ADDED,
				f"New hypothesis: {statement[:100]}",
				data={"hypothesis_id": hypothesis.id, "confidence": hypothesis.confidence},
			))
		return hypothesis

	async def update_hypothesis_confidence(
		self,
		target_id: str,
		hypothesis_id: str,
		confidence: float,
		evidence: Optional[HypothesisEvidence] = None,
		supporting: bool = True,
	) -> Optional[Hypothesis]:
		async with self._lock:
			return await self._update_confidence(target_id, hypothesis_id, confidence, evidence, supporting)

	async def apply_evidence(
		self,
		target_id: str,
		hypothesis_id: str,
		description: str,
		strength: EvidenceStrength,
		supporting: bool,
		source: Optional[str] = None,
	) -> Optional[Hypothesis]:
		"""Move confidence by a bounded step for one piece of evidence."""
		async with self._lock:
			doc = await self._require(target_id, "hypotheses", HypothesesDoc)
			hypothesis = doc.get(hypothesis_id)
			if hypothesis is None:
				logger.warning(f"apply_evidence: unknown or rejected hypothesis {hypothesis_id}")
				return None
			delta = STRENGTH_DELTA[strength] if supporting else -STRENGTH_DELTA[strength]
			evidence = HypothesisEvidence(description=description, source=source, strength=strength)
			return await self._update_confidence(
				target_id, hypothesis_id, hypothesis.confidence + delta, evidence, supporting,
			)

	async def _update_confidence(
		self,
		target_id: str,
		hypothesis_id: str,
		confidence: float,
		evidence: Optional[HypothesisEvidence],
		supporting: bool,
	) -> Optional[Hypothesis]:
		doc = await self._require(target_id, "hypotheses", HypothesesDoc)
		hypothesis = doc.get(hypothesis_id)
		if hypothesis is None:
			logger.warning(f"Unknown or rejected hypothesis {hypothesis_id} in {target_id}")
			return None

		old = hypothesis.confidence
		new = _clamp(confidence)
		hypothesis.confidence = new
		hypothesis.last_updated = datetime.now().isoformat()

		if evidence is not None:
			if supporting:
				hypothesis.supporting.append(evidence)
			else:
				hypothesis.contradicting.append(evidence)

		if new >= self.confirm_threshold:
			hypothesis.status = HypothesisStatus.CONFIRMED
		elif new <= self.reject_threshold:
			hypothesis.status = HypothesisStatus.REJECTED
			doc.rejected.append(hypothesis)
			doc.hypotheses = [h for h in doc.hypotheses if h.id != hypothesis_id]
		elif hypothesis.status == HypothesisStatus.CONFIRMED:
			hypothesis.status = HypothesisStatus.ACTIVE

		await self._save_doc(target_id, "hypotheses", doc)
		await self._append(target_id, self._entry(
			ProgressEntryType.HYPOTHESIS_UPDATED,
			f"Hypothesis confidence: {old * 100:.0f}% -> {new * 100:.0f}%",
			data={
				"hypothesis_id": hypothesis_id,
				"old_confidence": old,
				"new_confidence": new,
				"status": hypothesis.status.value,
			},
		))
		return hypothesis

	# ------------------------------------------------------------------
	# Claims
	# ------------------------------------------------------------------

	async def add_claim(
		self,
		target_id: str,
		text: str,
		sources: Optional[list[ClaimSource]] = None,
		strength: str = "medium",
		tags: Optional[list[str]] = None,
		related_hypotheses: Optional[list[str]] = None,
		date: Optional[str] = None,
	) -> Claim:
		async with self._lock:
			doc = await self._load_doc(target_id, "claims", ClaimsDoc) or ClaimsDoc(target_id=target_id)
			claim = Claim(
				id=f"claim_{len(doc.claims) + 1}",
				text=text,
				sources=sources or [],
				strength=strength,
				tags=tags or [],
				related_hypotheses=related_hypotheses or [],
				date=date,
			)
			doc.claims.append(claim)
			await self._save_doc(target_id, "claims", doc)
			await self._append(target_id, self._entry(
				ProgressEntryType.RESEARCH_UPDATED,
				f"New claim: {text[:100]}",
				data={"claim_id": claim.id, "source_count": len(claim.sources)},
			))
		return claim

	async def verify_claim(self, target_id: str, claim_id: str, verified: bool, notes: Optional[str] = None) -> Optional[Claim]:
		async with self._lock:
			doc = await self._require(target_id, "claims", ClaimsDoc)
			claim = next((c for c in doc.claims if c.id == claim_id), None)
			if claim is None:
				return None
			claim.verified = verified
			claim.verification_notes = notes
			await self._save_doc(target_id, "claims", doc)
			await self._append(target_id, self._entry(
				ProgressEntryType.RESEARCH_UPDATED,
				f"Claim {'verified' if verified else 'disputed'}: {claim.text[:80]}",
				data={"claim_id": claim_id, "verified": verified},
			))
		return claim

	# ------------------------------------------------------------------
	# Plan
	# ------------------------------------------------------------------

	async def update_goals(self, target_id: str, descriptions: list[str]) -> PlanDoc:
		"""Replace the current goals, keeping completed goals."""
		async with self._lock:
			plan = await self._load_doc(target_id, "plan", PlanDoc) or PlanDoc(target_id=target_id)
			plan.current_goals = [
				Goal(id=f"goal_{uuid.uuid4().hex[:8]}", description=text, priority=i + 1)
				for i, text in enumerate(descriptions)
			]
			await self._save_plan(target_id, plan)
		return plan

	async def update_plan(
		self,
		target_id: str,
		blockers: Optional[list[str]] = None,
		next_steps: Optional[list[str]] = None,
	) -> PlanDoc:
		async with self._lock:
			plan = await self._load_doc(target_id, "plan", PlanDoc) or PlanDoc(target_id=target_id)
			if blockers is not None:
				plan.blockers = blockers
			if next_steps is not None:
				plan.next_steps = next_steps
			await self._save_plan(target_id, plan)
		return plan

	async def complete_goal(self, target_id: str, goal_id: str, outcome: Optional[str] = None) -> Optional[Goal]:
		async with self._lock:
			plan = await self._load_doc(target_id, "plan", PlanDoc)
			if plan is None:
				return None
			goal = next((g for g in plan.current_goals if g.id == goal_id), None)
			if goal is None:
				return None
			goal.status = GoalStatus.COMPLETED
			goal.completed_at = datetime.now().isoformat()
			goal.outcome = outcome
			plan.completed_goals.append(goal)
			plan.current_goals = [g for g in plan.current_goals if g.id != goal_id]
			await self._save_plan(target_id, plan)
		return goal

	async def _save_plan(self, target_id: str, plan: PlanDoc) -> None:
		plan.updated_at = datetime.now().isoformat()
		await self._save_doc(target_id, "plan", plan)

	# ------------------------------------------------------------------
	# Progress log
	# ------------------------------------------------------------------

	def _entry(
		self,
		entry_type: ProgressEntryType,
		message: str,
		feature_id: Optional[str] = None,
		data: Optional[dict[str, Any]] = None,
	) -> ProgressEntry:
		return ProgressEntry(
			type=entry_type,
			message=message,
			feature_id=feature_id,
			session_id=self.session_id,
			data=data or {},
		)

	async def _append(self, target_id: str, entry: ProgressEntry) -> None:
		log = await self._load_doc(target_id, "progress", ProgressLog) or ProgressLog(target_id=target_id)
		log.entries.append(entry)
		await self._save_doc(target_id, "progress", log)

	async def append_progress(
		self,
		target_id: str,
		entry_type: ProgressEntryType,
		message: str,
		feature_id: Optional[str] = None,
		data: Optional[dict[str, Any]] = None,
	) -> ProgressEntry:
		entry = self._entry(entry_type, message, feature_id=feature_id, data=data)
		async with self._lock:
			await self._append(target_id, entry)
		return entry

	async def get_recent_progress(self, target_id: str, count: int = 10) -> list[ProgressEntry]:
		log = await self._load_doc(target_id, "progress", ProgressLog)
		if log is None or count <= 0:
			return []
		return log.entries[-count:]

	async def get_summary(self, target_id: str) -> str:
		"""Markdown overview of the workspace."""
		ws = await self.load(target_id)
		if ws is None:
			return "No workspace found."

		features = ws.feature_list.features
		in_progress = [f.name for f in features if f.status == FeatureStatus.IN_PROGRESS]
		pending = [f.name for f in features if f.status == FeatureStatus.PENDING]
		active = [h for h in ws.hypotheses.hypotheses if h.status == HypothesisStatus.ACTIVE]

		pending_text = ", ".join(pending[:3]) or "None"
		if len(pending) > 3:
			pending_text += f" (+{len(pending) - 3} more)"

		lines = [
			"## Workspace Summary",
			"",
			f"**Subject:** {ws.feature_list.subject}",
			f"**Progress:** {ws.feature_list.progress * 100:.0f}% "
			f"({ws.feature_list.completed_count}/{ws.feature_list.total_count} features)",
			"",
			"### Features",
			f"- In Progress: {', '.join(in_progress) or 'None'}",
			f"- Pending: {pending_text}",
			"",
			"### Active Hypotheses",
		]
		if active:
			lines.extend(f"- [{h.confidence * 100:.0f}%] {h.statement}" for h in active)
		else:
			lines.append("None yet")

		lines.extend(["", "### Recent Activity"])
		lines.extend(f"- {entry.message}" for entry in ws.progress[-5:])
		return "\n".join(lines)


def _clamp(value: float) -> float:
	return max(0.0, min(1.0, value))


def _next_number(ids) -> int:
	highest = 0
	for item_id in ids:
		_, _, suffix = item_id.rpartition("_")
		if suffix.isdigit():
			highest = max(highest, int(suffix))
	return highest + 1
