"""
Filter Validator - Integrity checks between raw and filtered evidence.

A filter step may only make evidence smaller and more conservative:
drop items, merge duplicates, downgrade claim statuses. It may never
introduce a source, edit a source's labels, upgrade a claim, or grow a
list. validate_filtered() reports every violation as data;
enforce_filter_contract() turns any violation into a raw pass-through.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum

from .models import (
	FilteredResearch,
	FilterMeta,
	ResearchOutput,
	Source,
)

logger = logging.getLogger(__name__)


class ValidationRule(str, Enum):
	"""Identifiers of the integrity rules."""
	MISSING_SOURCE_REFERENCE = "missing_source_reference"
	UNKNOWN_SOURCE_URL = "unknown_source_url"
	SOURCE_MUTATED = "source_mutated"
	STATUS_UPGRADED = "status_upgraded"
	CARDINALITY_EXCEEDED = "cardinality_exceeded"
	UNKNOWN_FILTER_RULE = "unknown_filter_rule"


class FilterRule(str, Enum):
	"""Operations a filter step may claim to have applied."""
	DROP_LOW_CRED_LOW_REL_SOURCES = "drop_low_cred_low_rel_sources"
	DROP_UNREFERENCED_SOURCES = "drop_unreferenced_sources"
	DROP_EMPTY_FINDINGS = "drop_empty_findings"
	DROP_FINDINGS_WITHOUT_SOURCES = "drop_findings_without_sources"
	MERGE_DUPLICATE_FINDINGS = "merge_duplicate_findings"
	DOWNGRADE_SUPPORTED_TO_UNCLEAR = "downgrade_status_supported_to_unclear"
	DOWNGRADE_SUPPORTED_TO_CONTESTED = "downgrade_status_supported_to_contested"
	DOWNGRADE_CONTESTED_TO_UNCLEAR = "downgrade_status_contested_to_unclear"
	TRIM_FINDINGS_BY_IMPORTANCE = "trim_findings_by_importance"
	DROP_TIMELINE_WITHOUT_SOURCES = "drop_timeline_without_sources"
	MERGE_DUPLICATE_TIMELINE = "merge_duplicate_timeline"
	TRIM_TIMELINE_BY_RECENCY = "trim_timeline_by_recency"
	TRIM_OPEN_QUESTIONS = "trim_open_questions"
	APPLY_MAX_SOURCES_LIMIT = "apply_max_sources_limit"
	APPLY_MAX_FINDINGS_LIMIT = "apply_max_findings_limit"
	APPLY_MAX_TIMELINE_LIMIT = "apply_max_timeline_limit"
	APPLY_MAX_OPEN_QUESTIONS_LIMIT = "apply_max_open_questions_limit"
	SHORTEN_SUMMARY = "shorten_summary"


def allowed_filter_rules() -> frozenset[str]:
	"""The canonical set of rule ids a filter step may report in meta.rules_used."""
	return frozenset(rule.value for rule in FilterRule)


@dataclass(frozen=True)
class FilterLimits:
	"""Upper bounds a filter step is asked to trim to."""
	max_findings: int
	max_timeline: int
	max_sources: int
	max_open_questions: int


FILTER_PROFILES: dict[str, FilterLimits] = {
	"strict": FilterLimits(max_findings=8, max_timeline=10, max_sources=15, max_open_questions=3),
	"default": FilterLimits(max_findings=15, max_timeline=20, max_sources=30, max_open_questions=5),
	"loose": FilterLimits(max_findings=25, max_timeline=30, max_sources=50, max_open_questions=10),
}


def get_filter_limits(profile: str) -> FilterLimits:
	"""Get limits for a named profile. Unknown names get the default profile."""
	return FILTER_PROFILES.get(profile, FILTER_PROFILES["default"])


@dataclass(frozen=True)
class ValidationIssue:
	"""A single integrity violation."""
	rule: ValidationRule
	item: str
	message: str

	def __str__(self) -> str:
		return f"[{self.rule.value}] {self.message}"


@dataclass
class FilterDecision:
	"""Outcome of enforcing the filter contract."""
	output: FilteredResearch
	issues: list[ValidationIssue] = field(default_factory=list)
	fell_back: bool = False


_FROZEN_SOURCE_FIELDS = ("title", "type", "published_at", "retrieved_at", "relevance", "credibility")
# A filtered copy may leave these out; absent means unchanged
_OMITTABLE_SOURCE_FIELDS = frozenset({"published_at", "retrieved_at"})


def validate_filtered(raw: ResearchOutput, filtered: FilteredResearch) -> list[ValidationIssue]:
	"""
	Check that filtered evidence is a valid conservative subset of raw evidence.

	Args:
		raw: Evidence as returned by the research step
		filtered: Evidence as returned by the filter step

	Returns:
		List of violations. Empty when the filtered output is acceptable.
	"""
	issues: list[ValidationIssue] = []
	issues.extend(_check_source_references(filtered))
	issues.extend(_check_sources_subset(raw, filtered))
	issues.extend(_check_status_monotonic(raw, filtered))
	issues.extend(_check_cardinality(raw, filtered))
	issues.extend(_check_rules_used(filtered.meta))
	return issues


def _check_source_references(filtered: FilteredResearch) -> list[ValidationIssue]:
	known = {s.url for s in filtered.sources}
	issues = []

	for finding in filtered.findings:
		for url in finding.source_urls():
			if url not in known:
				issues.append(ValidationIssue(
					rule=ValidationRule.MISSING_SOURCE_REFERENCE,
					item=url,
					message=f"Finding \"{finding.claim[:50]}\" references missing source: {url}",
				))

	for event in filtered.timeline:
		for url in event.sources:
			if url not in known:
				issues.append(ValidationIssue(
					rule=ValidationRule.MISSING_SOURCE_REFERENCE,
					item=url,
					message=f"Timeline event \"{event.event[:50]}\" references missing source: {url}",
				))

	return issues


def _check_sources_subset(raw: ResearchOutput, filtered: FilteredResearch) -> list[ValidationIssue]:
	raw_by_url: dict[str, Source] = {s.url: s for s in raw.sources}
	issues = []

	for source in filtered.sources:
		original = raw_by_url.get(source.url)
		if original is None:
			issues.append(ValidationIssue(
				rule=ValidationRule.UNKNOWN_SOURCE_URL,
				item=source.url,
				message=f"Source URL not in raw research: {source.url}",
			))
			continue

		changed = [name for name in _FROZEN_SOURCE_FIELDS if _source_field_changed(name, original, source)]
		if changed:
			issues.append(ValidationIssue(
				rule=ValidationRule.SOURCE_MUTATED,
				item=source.url,
				message=f"Source {source.url} changed fields: {', '.join(changed)}",
			))

	return issues


def _source_field_changed(name: str, original: Source, source: Source) -> bool:
	value = getattr(source, name)
	if value is None and name in _OMITTABLE_SOURCE_FIELDS:
		return False
	return value != getattr(original, name)


def _check_status_monotonic(raw: ResearchOutput, filtered: FilteredResearch) -> list[ValidationIssue]:
	# Several raw findings can share a claim; the filtered one may not beat the weakest
	raw_rank: dict[str, int] = {}
	for finding in raw.findings:
		key = finding.key
		rank = finding.status.rank
		raw_rank[key] = min(rank, raw_rank.get(key, rank))

	issues = []
	for finding in filtered.findings:
		baseline = raw_rank.get(finding.key)
		if baseline is not None and finding.status.rank > baseline:
			issues.append(ValidationIssue(
				rule=ValidationRule.STATUS_UPGRADED,
				item=finding.claim,
				message=f"Finding \"{finding.claim[:50]}\" upgraded to {finding.status.value}",
			))
	return issues


def _check_cardinality(raw: ResearchOutput, filtered: FilteredResearch) -> list[ValidationIssue]:
	pairs = [
		("findings", len(raw.findings), len(filtered.findings)),
		("timeline", len(raw.timeline), len(filtered.timeline)),
		("sources", len(raw.sources), len(filtered.sources)),
		("open_questions", len(raw.open_questions), len(filtered.open_questions)),
	]
	return [
		ValidationIssue(
			rule=ValidationRule.CARDINALITY_EXCEEDED,
			item=name,
			message=f"Filtered {name} count {got} exceeds raw count {limit}",
		)
		for name, limit, got in pairs
		if got > limit
	]


def _check_rules_used(meta: FilterMeta) -> list[ValidationIssue]:
	allowed = allowed_filter_rules()
	return [
		ValidationIssue(
			rule=ValidationRule.UNKNOWN_FILTER_RULE,
			item=rule,
			message=f"Unknown filter rule: {rule}",
		)
		for rule in meta.rules_used
		if rule not in allowed
	]


def passthrough(raw: ResearchOutput) -> FilteredResearch:
	"""Build the safe fallback: the raw evidence, unchanged, in filtered form."""
	return FilteredResearch(
		summary=raw.summary,
		findings=[f.model_copy(deep=True) for f in raw.findings],
		timeline=[e.model_copy(deep=True) for e in raw.timeline],
		open_questions=[q.model_copy(deep=True) for q in raw.open_questions],
		sources=list(raw.sources),
		meta=FilterMeta(),
	)


def enforce_filter_contract(raw: ResearchOutput, filtered: FilteredResearch) -> FilterDecision:
	"""
	Accept filtered evidence only if it passes every integrity rule.

	Any violation discards the filtered output in favor of raw pass-through.
	"""
	issues = validate_filtered(raw, filtered)
	if not issues:
		# Kept sources are the raw records, including fields the filter left out
		raw_by_url = {s.url: s for s in raw.sources}
		return FilterDecision(output=filtered.model_copy(update={
			"sources": [raw_by_url[s.url] for s in filtered.sources],
		}))

	logger.warning(
		f"Filter output rejected with {len(issues)} violation(s), passing raw evidence through: "
		+ "; ".join(str(i) for i in issues[:5])
	)
	return FilterDecision(output=passthrough(raw), issues=issues, fell_back=True)
