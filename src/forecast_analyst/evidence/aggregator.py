"""
Evidence Aggregator - Merge evidence packages into one deduplicated view.

Aggregation is always recomputed from the full list of packages collected
in a run, never accumulated incrementally, so the result is a pure function
of the run's history.

Merge rules:
- Findings merge on the normalized claim; sources are unioned, occurrences
  counted, and the status only ever moves to the more conservative value.
- Timeline events merge on (date, normalized text).
- Open questions merge on normalized text; the first occurrence wins.
- Sources merge on URL; the more credible (then more relevant) copy wins.
"""

import json
import logging
from datetime import datetime
from typing import Iterable, Optional

from .models import (
	AggregatedEvidence,
	AggregatedFinding,
	AggregationMeta,
	ClaimStatus,
	EvidencePackage,
	FilteredResearch,
	OpenQuestion,
	Source,
	TimelineEvent,
)

logger = logging.getLogger(__name__)

EMPTY_SUMMARY = "No research evidence available."
TIMELINE_TASK_LIMIT = 20

_DATE_FORMATS = ("%Y-%m-%d", "%Y-%m", "%Y", "%B %d, %Y", "%b %d, %Y", "%d %B %Y")


def aggregate_evidence(packages: list[EvidencePackage]) -> AggregatedEvidence:
	"""
	Aggregate all evidence packages into a single view.

	Args:
		packages: Every package collected so far in the run, in arrival order

	Returns:
		AggregatedEvidence with merged findings, timeline, questions and sources
	"""
	if not packages:
		return AggregatedEvidence(summary=EMPTY_SUMMARY)

	outputs = [p.filtered for p in packages]

	findings = _aggregate_findings(packages)
	timeline = _aggregate_timeline(outputs)
	open_questions = _aggregate_open_questions(outputs)
	sources = _aggregate_sources(outputs)

	answered: list[str] = []
	failed: list[str] = []
	for package in packages:
		bucket = failed if package.failed else answered
		if package.question_id not in bucket:
			bucket.append(package.question_id)

	meta = AggregationMeta(
		packages_aggregated=len(packages),
		total_research_cost_usd=sum(p.meta.research_cost_usd for p in packages),
		total_filter_cost_usd=sum(p.meta.filter_cost_usd for p in packages),
		total_duration_ms=sum(p.meta.duration_ms for p in packages),
		raw_findings_count=sum(len(o.findings) for o in outputs),
		deduped_findings_count=len(findings),
		raw_sources_count=sum(len(o.sources) for o in outputs),
		deduped_sources_count=len(sources),
		questions_answered=answered,
		failed_questions=failed,
	)

	logger.debug(
		f"Aggregated {len(packages)} packages: "
		f"{meta.raw_findings_count} -> {meta.deduped_findings_count} findings, "
		f"{meta.raw_sources_count} -> {meta.deduped_sources_count} sources"
	)

	return AggregatedEvidence(
		summary=_aggregate_summaries(outputs),
		findings=findings,
		timeline=timeline,
		open_questions=open_questions,
		sources=sources,
		meta=meta,
	)


def _aggregate_findings(packages: list[EvidencePackage]) -> list[AggregatedFinding]:
	merged: dict[str, AggregatedFinding] = {}

	for package in packages:
		for finding in package.filtered.findings:
			key = finding.key
			existing = merged.get(key)
			if existing is None:
				merged[key] = AggregatedFinding(
					topic=finding.topic,
					claim=finding.claim,
					status=finding.status,
					supporting_sources=_dedupe(finding.supporting_sources),
					opposing_sources=_dedupe(finding.opposing_sources),
					notes=finding.notes,
					source_questions=[package.question_id],
					occurrences=1,
				)
				continue

			existing.supporting_sources = _dedupe([*existing.supporting_sources, *finding.supporting_sources])
			existing.opposing_sources = _dedupe([*existing.opposing_sources, *finding.opposing_sources])
			existing.status = ClaimStatus.more_conservative(existing.status, finding.status)
			existing.occurrences += 1
			if package.question_id not in existing.source_questions:
				existing.source_questions.append(package.question_id)
			if existing.topic is None:
				existing.topic = finding.topic
			existing.notes = _merge_notes(existing.notes, finding.notes)

	return sorted(
		merged.values(),
		key=lambda f: (-f.occurrences, -f.status.rank, f.key),
	)


def _aggregate_timeline(outputs: list[FilteredResearch]) -> list[TimelineEvent]:
	merged: dict[tuple[str, str], TimelineEvent] = {}

	for output in outputs:
		for event in output.timeline:
			key = event.key
			existing = merged.get(key)
			if existing is None:
				merged[key] = TimelineEvent(date=event.date, event=event.event, sources=_dedupe(event.sources))
			else:
				existing.sources = _dedupe([*existing.sources, *event.sources])

	dated: list[tuple[datetime, tuple[str, str], TimelineEvent]] = []
	undated: list[tuple[tuple[str, str], TimelineEvent]] = []
	for key, event in merged.items():
		parsed = parse_event_date(event.date)
		if parsed is None:
			undated.append((key, event))
		else:
			dated.append((parsed, key, event))

	# Most recent first; unparseable dates go last
	dated.sort(key=lambda item: item[1])
	dated.sort(key=lambda item: item[0], reverse=True)
	undated.sort(key=lambda item: item[0])
	return [event for _, _, event in dated] + [event for _, event in undated]


def _aggregate_open_questions(outputs: list[FilteredResearch]) -> list[OpenQuestion]:
	seen: set[str] = set()
	questions: list[OpenQuestion] = []

	for output in outputs:
		for question in output.open_questions:
			if question.key in seen:
				continue
			seen.add(question.key)
			questions.append(question)

	return questions


def _aggregate_sources(outputs: list[FilteredResearch]) -> list[Source]:
	by_url: dict[str, Source] = {}

	for output in outputs:
		for source in output.sources:
			existing = by_url.get(source.url)
			if existing is None or _source_weight(source) > _source_weight(existing):
				by_url[source.url] = source

	return sorted(
		by_url.values(),
		key=lambda s: (-s.credibility.rank, -s.relevance.rank, s.url),
	)


def _aggregate_summaries(outputs: list[FilteredResearch]) -> str:
	if len(outputs) == 1:
		return outputs[0].summary
	return "\n\n".join(f"Research {i + 1}: {o.summary}" for i, o in enumerate(outputs))


def _source_weight(source: Source) -> tuple:
	# Credibility, then relevance; the rest only breaks ties so the winner never depends on package order
	return (
		source.credibility.rank,
		source.relevance.rank,
		source.retrieved_at or "",
		source.published_at or "",
		source.title,
		source.type.value,
	)


def _merge_notes(existing: Optional[str], new: Optional[str]) -> Optional[str]:
	if not new:
		return existing
	if not existing:
		return new
	if new in existing.split("; "):
		return existing
	return f"{existing}; {new}"


def _dedupe(values: Iterable[str]) -> list[str]:
	return list(dict.fromkeys(values))


def parse_event_date(value: str) -> Optional[datetime]:
	"""Parse a timeline date. Returns None when no known format matches."""
	text = (value or "").strip()
	if not text:
		return None
	try:
		parsed = datetime.fromisoformat(text.replace("Z", "+00:00"))
		return parsed.replace(tzinfo=None)
	except ValueError:
		pass
	for fmt in _DATE_FORMATS:
		try:
			return datetime.strptime(text, fmt)
		except ValueError:
			continue
	return None


def format_evidence_for_task(evidence: AggregatedEvidence) -> str:
	"""Render aggregated evidence as JSON for inclusion in a task description."""
	return json.dumps(
		{
			"summary": evidence.summary,
			"findings": [
				{
					"topic": f.topic,
					"claim": f.claim,
					"status": f.status.value,
					"supporting_sources": f.supporting_sources,
					"opposing_sources": f.opposing_sources,
					"occurrences": f.occurrences,
				}
				for f in evidence.findings
			],
			"timeline": [e.model_dump() for e in evidence.timeline[:TIMELINE_TASK_LIMIT]],
			"open_questions": [q.model_dump() for q in evidence.open_questions],
			"sources": [
				{
					"url": s.url,
					"title": s.title,
					"type": s.type.value,
					"credibility": s.credibility.value,
					"relevance": s.relevance.value,
				}
				for s in evidence.sources
			],
			"meta": {
				"packages_aggregated": evidence.meta.packages_aggregated,
				"questions_answered": evidence.meta.questions_answered,
				"total_findings": evidence.meta.deduped_findings_count,
				"total_sources": evidence.meta.deduped_sources_count,
			},
		},
		indent=2,
	)
