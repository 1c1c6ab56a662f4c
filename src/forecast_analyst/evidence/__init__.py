"""Evidence module - Models, aggregation and filter validation."""

from .aggregator import aggregate_evidence, format_evidence_for_task
from .models import (
	AggregatedEvidence,
	AggregatedFinding,
	ClaimStatus,
	EvidencePackage,
	FilteredResearch,
	Finding,
	Level,
	OpenQuestion,
	ResearchOutput,
	Source,
	SourceType,
	TimelineEvent,
)
from .validator import (
	FilterDecision,
	FilterRule,
	ValidationIssue,
	ValidationRule,
	allowed_filter_rules,
	enforce_filter_contract,
	passthrough,
	validate_filtered,
)

__all__ = [
	"AggregatedEvidence",
	"AggregatedFinding",
	"ClaimStatus",
	"EvidencePackage",
	"FilteredResearch",
	"Finding",
	"Level",
	"OpenQuestion",
	"ResearchOutput",
	"Source",
	"SourceType",
	"TimelineEvent",
	"aggregate_evidence",
	"format_evidence_for_task",
	"FilterDecision",
	"FilterRule",
	"ValidationIssue",
	"ValidationRule",
	"allowed_filter_rules",
	"enforce_filter_contract",
	"passthrough",
	"validate_filtered",
]
