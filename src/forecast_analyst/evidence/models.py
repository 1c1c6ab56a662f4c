"""
Evidence Models - Pydantic schemas for research evidence.

Defines sources, findings, timeline events and open questions as produced
by a research step, the filtered form of the same evidence, the per-question
EvidencePackage, and the AggregatedEvidence view merged across packages.
"""

from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


# Longer texts are compared on their first KEY_LENGTH normalized characters
KEY_LENGTH = 100


def normalize_text(text: str) -> str:
	"""Case-fold and collapse whitespace. Used as the merge key for claims and questions."""
	return " ".join((text or "").lower().split())


class ClaimStatus(str, Enum):
	"""Certainty of a finding. Ordered supported > contested > unclear."""
	SUPPORTED = "supported"
	CONTESTED = "contested"
	UNCLEAR = "unclear"

	@property
	def rank(self) -> int:
		return _STATUS_RANK[self]

	@classmethod
	def more_conservative(cls, a: "ClaimStatus", b: "ClaimStatus") -> "ClaimStatus":
		"""Return whichever status ranks lower."""
		return a if a.rank <= b.rank else b


_STATUS_RANK = {
	ClaimStatus.SUPPORTED: 2,
	ClaimStatus.CONTESTED: 1,
	ClaimStatus.UNCLEAR: 0,
}


class Level(str, Enum):
	"""Relevance or credibility level."""
	HIGH = "high"
	MEDIUM = "medium"
	LOW = "low"

	@property
	def rank(self) -> int:
		return _LEVEL_RANK[self]


_LEVEL_RANK = {
	Level.HIGH: 2,
	Level.MEDIUM: 1,
	Level.LOW: 0,
}


class SourceType(str, Enum):
	"""Kind of publication a source comes from."""
	OFFICIAL = "official"
	NEWS = "news"
	ANALYSIS = "analysis"
	DATA = "data"
	SOCIAL = "social"
	ACADEMIC = "academic"
	OTHER = "other"


class Source(BaseModel):
	"""A cited source. Frozen: filtering may keep or drop it, never edit it."""
	model_config = ConfigDict(frozen=True)

	url: str = Field(description="Canonical URL, used as the identity of the source")
	title: str = Field(default="")
	type: SourceType = Field(default=SourceType.OTHER)
	published_at: Optional[str] = Field(default=None, description="Publication date if known")
	retrieved_at: Optional[str] = Field(default=None, description="When the source was fetched (ISO timestamp)")
	relevance: Level = Field(default=Level.MEDIUM)
	credibility: Level = Field(default=Level.MEDIUM)


class Finding(BaseModel):
	"""A claim extracted from sources."""
	topic: Optional[str] = Field(default=None)
	claim: str = Field(description="The claim as a single sentence")
	status: ClaimStatus = Field(default=ClaimStatus.UNCLEAR)
	supporting_sources: list[str] = Field(default_factory=list, description="URLs supporting the claim")
	opposing_sources: list[str] = Field(default_factory=list, description="URLs contradicting the claim")
	notes: Optional[str] = Field(default=None)

	@property
	def key(self) -> str:
		return normalize_text(self.claim)

	def source_urls(self) -> list[str]:
		return [*self.supporting_sources, *self.opposing_sources]


class TimelineEvent(BaseModel):
	"""A dated event relevant to the question."""
	date: str = Field(description="ISO date (YYYY-MM-DD) or a coarser form like YYYY-MM")
	event: str
	sources: list[str] = Field(default_factory=list)

	@property
	def key(self) -> tuple[str, str]:
		return (self.date.strip(), normalize_text(self.event)[:KEY_LENGTH])


class OpenQuestion(BaseModel):
	"""Something the research step could not resolve."""
	question: str
	reason: str = Field(default="")

	@property
	def key(self) -> str:
		return normalize_text(self.question)[:KEY_LENGTH]


class ResearchOutput(BaseModel):
	"""Raw evidence returned by a research step."""
	summary: str = Field(default="")
	findings: list[Finding] = Field(default_factory=list)
	timeline: list[TimelineEvent] = Field(default_factory=list)
	open_questions: list[OpenQuestion] = Field(default_factory=list)
	sources: list[Source] = Field(default_factory=list)

	def is_empty(self) -> bool:
		return not (self.findings or self.timeline or self.open_questions or self.sources)


class FilterMeta(BaseModel):
	"""What the filter step claims it did."""
	dropped_findings: int = Field(default=0)
	dropped_timeline: int = Field(default=0)
	dropped_sources: int = Field(default=0)
	dropped_open_questions: int = Field(default=0)
	rules_used: list[str] = Field(default_factory=list)


class FilteredResearch(ResearchOutput):
	"""Evidence after the conservative filter step."""
	meta: FilterMeta = Field(default_factory=FilterMeta)


class PackageMeta(BaseModel):
	"""Per-package cost and bookkeeping."""
	research_cost_usd: float = Field(default=0.0)
	filter_cost_usd: float = Field(default=0.0)
	duration_ms: int = Field(default=0)
	total_sources: int = Field(default=0)
	total_findings: int = Field(default=0)
	filter_fallback: bool = Field(default=False, description="Raw evidence passed through unfiltered")
	filter_issues: list[str] = Field(default_factory=list)
	iteration: int = Field(default=1)
	error: Optional[str] = Field(default=None)


class EvidencePackage(BaseModel):
	"""Raw and filtered evidence for one research question."""
	model_config = ConfigDict(frozen=True)

	question_id: str
	raw: ResearchOutput = Field(default_factory=ResearchOutput)
	filtered: FilteredResearch = Field(default_factory=FilteredResearch)
	meta: PackageMeta = Field(default_factory=PackageMeta)

	@classmethod
	def empty(cls, question_id: str, error: str, iteration: int = 1, cost_usd: float = 0.0, duration_ms: int = 0) -> "EvidencePackage":
		"""Placeholder for a question whose research failed."""
		return cls(
			question_id=question_id,
			meta=PackageMeta(
				research_cost_usd=cost_usd,
				duration_ms=duration_ms,
				iteration=iteration,
				error=error,
			),
		)

	@property
	def failed(self) -> bool:
		return self.meta.error is not None


class AggregatedFinding(Finding):
	"""A finding merged across packages."""
	source_questions: list[str] = Field(default_factory=list)
	occurrences: int = Field(default=1)


class AggregationMeta(BaseModel):
	"""Counts recorded while aggregating."""
	packages_aggregated: int = Field(default=0)
	total_research_cost_usd: float = Field(default=0.0)
	total_filter_cost_usd: float = Field(default=0.0)
	total_duration_ms: int = Field(default=0)
	raw_findings_count: int = Field(default=0)
	deduped_findings_count: int = Field(default=0)
	raw_sources_count: int = Field(default=0)
	deduped_sources_count: int = Field(default=0)
	questions_answered: list[str] = Field(default_factory=list)
	failed_questions: list[str] = Field(default_factory=list)


class AggregatedEvidence(BaseModel):
	"""All evidence seen so far, deduplicated."""
	summary: str = Field(default="")
	findings: list[AggregatedFinding] = Field(default_factory=list)
	timeline: list[TimelineEvent] = Field(default_factory=list)
	open_questions: list[OpenQuestion] = Field(default_factory=list)
	sources: list[Source] = Field(default_factory=list)
	meta: AggregationMeta = Field(default_factory=AggregationMeta)

	def counts_by_status(self) -> dict[str, int]:
		counts = {status.value: 0 for status in ClaimStatus}
		for finding in self.findings:
			counts[finding.status.value] += 1
		return counts
