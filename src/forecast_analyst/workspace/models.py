"""
Workspace Models - Pydantic schemas for long-lived research state.

A workspace is keyed by a target id and holds five documents: the
feature list (units of research work), hypotheses, claims, a rolling
plan, and an append-only progress log. Every document carries a
schema_version tag.
"""

from datetime import datetime
from enum import Enum
from typing import Any, Literal, Optional

from pydantic import BaseModel, Field

from ..evidence.models import ClaimStatus, Level, normalize_text


def _now() -> str:
	return datetime.now().isoformat()


class FeatureStatus(str, Enum):
	"""Status of a research feature."""
	PENDING = "pending"
	IN_PROGRESS = "in_progress"
	COMPLETED = "completed"
	FAILED = "failed"
	BLOCKED = "blocked"
	SKIPPED = "skipped"


TERMINAL_FEATURE_STATUSES = frozenset({
	FeatureStatus.COMPLETED,
	FeatureStatus.FAILED,
	FeatureStatus.SKIPPED,
})


class FeatureDraft(BaseModel):
	"""Input for creating a feature."""
	name: str
	description: str = Field(default="")
	priority: Optional[int] = Field(default=None, description="1 is highest; defaults to list position")
	category: Optional[str] = Field(default=None, description="e.g. facts, context, stakeholders, timeline")
	depends_on: list[str] = Field(default_factory=list)


class Feature(BaseModel):
	"""A unit of research work."""
	id: str = Field(description="Feature identifier (e.g., 'feature_1')")
	name: str
	description: str = Field(default="")
	priority: int = Field(default=1, description="1 is highest")
	status: FeatureStatus = Field(default=FeatureStatus.PENDING)
	category: Optional[str] = Field(default=None)
	depends_on: list[str] = Field(default_factory=list, description="Feature IDs this depends on")
	attempts: int = Field(default=0)
	last_error: Optional[str] = Field(default=None)
	completed_at: Optional[str] = Field(default=None)
	completion_notes: Optional[str] = Field(default=None)


class FeatureList(BaseModel):
	"""All features for a target."""
	schema_version: Literal["feature_list_v1"] = "feature_list_v1"
	target_id: str
	subject: str = Field(default="")
	features: list[Feature] = Field(default_factory=list)
	created_at: str = Field(default_factory=_now)
	updated_at: str = Field(default_factory=_now)

	@property
	def total_count(self) -> int:
		return len(self.features)

	@property
	def completed_count(self) -> int:
		return sum(1 for f in self.features if f.status == FeatureStatus.COMPLETED)

	@property
	def progress(self) -> float:
		if not self.features:
			return 0.0
		return self.completed_count / self.total_count

	def get_feature(self, feature_id: str) -> Optional[Feature]:
		for feature in self.features:
			if feature.id == feature_id:
				return feature
		return None

	def get_next_feature(self) -> Optional[Feature]:
		"""Highest-priority pending feature whose dependencies are all completed."""
		completed = {f.id for f in self.features if f.status == FeatureStatus.COMPLETED}
		ready = [
			f for f in self.features
			if f.status == FeatureStatus.PENDING and all(dep in completed for dep in f.depends_on)
		]
		if not ready:
			return None
		return min(ready, key=lambda f: (f.priority, self.features.index(f)))


class EvidenceStrength(str, Enum):
	"""How strongly a piece of evidence bears on a hypothesis."""
	STRONG = "strong"
	MODERATE = "moderate"
	WEAK = "weak"


class HypothesisStatus(str, Enum):
	"""Status of a hypothesis."""
	ACTIVE = "active"
	CONFIRMED = "confirmed"
	REJECTED = "rejected"
	UNCERTAIN = "uncertain"


class HypothesisEvidence(BaseModel):
	"""Evidence recorded against a hypothesis."""
	description: str
	source: Optional[str] = Field(default=None)
	strength: EvidenceStrength = Field(default=EvidenceStrength.MODERATE)
	found_at: str = Field(default_factory=_now)


class Hypothesis(BaseModel):
	"""A belief under test."""
	id: str
	statement: str
	confidence: float = Field(default=0.5, ge=0.0, le=1.0)
	supporting: list[HypothesisEvidence] = Field(default_factory=list)
	contradicting: list[HypothesisEvidence] = Field(default_factory=list)
	status: HypothesisStatus = Field(default=HypothesisStatus.ACTIVE)
	category: Optional[str] = Field(default=None)
	created_at: str = Field(default_factory=_now)
	last_updated: str = Field(default_factory=_now)

	@property
	def key(self) -> str:
		return normalize_text(self.statement)


class HypothesesDoc(BaseModel):
	"""Current and rejected hypotheses for a target."""
	schema_version: Literal["hypotheses_v1"] = "hypotheses_v1"
	target_id: str
	hypotheses: list[Hypothesis] = Field(default_factory=list)
	rejected: list[Hypothesis] = Field(default_factory=list, description="Append-only")

	def get(self, hypothesis_id: str) -> Optional[Hypothesis]:
		for hyp in self.hypotheses:
			if hyp.id == hypothesis_id:
				return hyp
		return None

	def is_rejected(self, statement: str) -> bool:
		key = normalize_text(statement)
		return any(h.key == key for h in self.rejected)


# Claim strength recorded for a finding of each status
CLAIM_STRENGTH = {
	ClaimStatus.SUPPORTED: Level.HIGH,
	ClaimStatus.CONTESTED: Level.MEDIUM,
	ClaimStatus.UNCLEAR: Level.LOW,
}


class ClaimSource(BaseModel):
	"""A source backing a claim."""
	url: str
	title: str = Field(default="")
	type: Optional[str] = Field(default=None)
	accessed_at: str = Field(default_factory=_now)
	quote: Optional[str] = Field(default=None)
	credibility: Level = Field(default=Level.MEDIUM)


class Claim(BaseModel):
	"""A claim with evidence."""
	id: str
	text: str
	sources: list[ClaimSource] = Field(default_factory=list)
	date: Optional[str] = Field(default=None)
	strength: Level = Field(default=Level.MEDIUM)
	tags: list[str] = Field(default_factory=list)
	related_hypotheses: list[str] = Field(default_factory=list)
	added_at: str = Field(default_factory=_now)
	verified: bool = Field(default=False)
	verification_notes: Optional[str] = Field(default=None)


class ClaimsDoc(BaseModel):
	"""Claims collected for a target."""
	schema_version: Literal["claims_v1"] = "claims_v1"
	target_id: str
	claims: list[Claim] = Field(default_factory=list)


class GoalStatus(str, Enum):
	"""Status of a plan goal."""
	PENDING = "pending"
	IN_PROGRESS = "in_progress"
	COMPLETED = "completed"
	BLOCKED = "blocked"


class Goal(BaseModel):
	"""A goal in the rolling plan."""
	id: str
	description: str
	status: GoalStatus = Field(default=GoalStatus.PENDING)
	priority: int = Field(default=1)
	completed_at: Optional[str] = Field(default=None)
	outcome: Optional[str] = Field(default=None)


class PlanDoc(BaseModel):
	"""Rolling plan for a target."""
	schema_version: Literal["plan_v1"] = "plan_v1"
	target_id: str
	current_goals: list[Goal] = Field(default_factory=list)
	completed_goals: list[Goal] = Field(default_factory=list)
	blockers: list[str] = Field(default_factory=list)
	next_steps: list[str] = Field(default_factory=list)
	updated_at: str = Field(default_factory=_now)


class ProgressEntryType(str, Enum):
	"""Kinds of progress log entries."""
	INITIALIZED = "initialized"
	FEATURE_STARTED = "feature_started"
	FEATURE_COMPLETED = "feature_completed"
	FEATURE_FAILED = "feature_failed"
	HYPOTHESIS_ADDED = "hypothesis_added"
	HYPOTHESIS_UPDATED = "hypothesis_updated"
	RESEARCH_UPDATED = "research_updated"
	ERROR = "error"
	NOTE = "note"


class ProgressEntry(BaseModel):
	"""One line of the progress log."""
	timestamp: str = Field(default_factory=_now)
	session_id: Optional[str] = Field(default=None)
	type: ProgressEntryType
	message: str
	feature_id: Optional[str] = Field(default=None)
	data: dict[str, Any] = Field(default_factory=dict)


class ProgressLog(BaseModel):
	"""Append-only progress log."""
	schema_version: Literal["progress_v1"] = "progress_v1"
	target_id: str
	entries: list[ProgressEntry] = Field(default_factory=list)


class Workspace(BaseModel):
	"""All documents of a workspace, loaded together."""
	feature_list: FeatureList
	hypotheses: HypothesesDoc
	claims: ClaimsDoc
	plan: PlanDoc
	progress: list[ProgressEntry] = Field(default_factory=list)
