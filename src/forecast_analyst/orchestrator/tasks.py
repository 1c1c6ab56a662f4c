"""
Task builders - Instruction text handed to the executor for each phase.

Every task ends with the JSON shape the phase parser expects. Field
names are snake_case and match the pydantic models one-to-one.
"""

import json
from typing import Optional

from ..evidence.aggregator import format_evidence_for_task
from ..evidence.models import AggregatedEvidence, ResearchOutput
from ..evidence.validator import FilterLimits, allowed_filter_rules
from ..workspace.models import Feature, HypothesisStatus, Workspace
from .phases import DecomposeOutput, ForecastRequest, ResearchQuestion

DECOMPOSE_SHAPE = """{
  "mode": "decompose",
  "questions": [
    {"id": "q1", "topic": "...", "question": "...", "priority": "critical|important|supplementary",
     "expected_sources": ["..."], "rationale": "..."}
  ],
  "initial_assessment": {
    "uncertainties": ["..."],
    "preliminary_range": {"low": 0.0, "high": 1.0},
    "key_factors": ["..."]
  }
}"""

RESEARCH_SHAPE = """{
  "summary": "...",
  "findings": [
    {"topic": "...", "claim": "...", "status": "supported|contested|unclear",
     "supporting_sources": ["<url>"], "opposing_sources": ["<url>"], "notes": "..."}
  ],
  "timeline": [{"date": "YYYY-MM-DD", "event": "...", "sources": ["<url>"]}],
  "open_questions": [{"question": "...", "reason": "..."}],
  "sources": [
    {"url": "...", "title": "...", "type": "official|news|analysis|data|social|academic|other",
     "published_at": "YYYY-MM-DD or null", "retrieved_at": "ISO timestamp",
     "relevance": "high|medium|low", "credibility": "high|medium|low"}
  ]
}"""

FILTER_META_SHAPE = """"meta": {
    "dropped_findings": 0, "dropped_timeline": 0, "dropped_sources": 0,
    "dropped_open_questions": 0, "rules_used": ["<rule id>"]
  }"""

ANALYZE_SHAPE = """{
  "mode": "analyze",
  "ready_to_forecast": true,
  "additional_questions": [
    {"id": "...", "topic": "...", "question": "...", "priority": "critical|important|supplementary"}
  ],
  "evidence_assessment": {
    "sufficient": true,
    "quality": "high|medium|low",
    "gaps": [{"topic": "...", "description": "...", "importance": "critical|important|supplementary"}],
    "aggregated_summary": "..."
  },
  "reasoning": "..."
}"""

FORECAST_SHAPE = """{
  "mode": "forecast",
  "forecast": {
    "outcome": "Yes",
    "probability": 0.5,
    "lower_bound": 0.4,
    "upper_bound": 0.6,
    "confidence": "high|medium|low",
    "reasoning": "...",
    "assumptions": ["..."],
    "evidence_summary": "...",
    "baselines_used": ["..."],
    "scenario_breakdown": [{"scenario": "...", "probability": 0.5, "description": "..."}],
    "recommendation": "..."
  }
}"""


def _output_section(shape: str) -> list[str]:
	return [
		"## Output",
		"Respond with a single JSON object and nothing else, in this shape:",
		"```json",
		shape,
		"```",
	]


def _request_context(request: ForecastRequest) -> list[str]:
	parts = [f"# Question: {request.question}", "", f"Outcome being forecast: {request.outcome}"]
	if request.resolution_date:
		parts.append(f"Resolution date: {request.resolution_date}")
	if request.resolution_criteria:
		parts.append(f"Resolution criteria: {request.resolution_criteria}")
	parts.append("")

	if request.market_data:
		market = request.market_data
		parts.extend([
			"## Market Data",
			f"Yes price: {market.yes_price:.3f}",
		])
		if market.no_price is not None:
			parts.append(f"No price: {market.no_price:.3f}")
		if market.volume_24h is not None:
			parts.append(f"24h volume: {market.volume_24h:,.0f}")
		if market.liquidity is not None:
			parts.append(f"Liquidity: {market.liquidity:,.0f}")
		if market.price_history:
			recent = market.price_history[-10:]
			parts.append("Recent prices: " + ", ".join(f"{p.timestamp}={p.price:.3f}" for p in recent))
		parts.append("")

	if request.base_rates:
		parts.append("## Base Rates")
		for rate in request.base_rates:
			line = f"- {rate.reference_class}: {rate.probability:.2f}"
			if rate.sample_size is not None:
				line += f" (n={rate.sample_size})"
			if rate.source:
				line += f" [{rate.source}]"
			parts.append(line)
		parts.append("")

	if request.context:
		parts.extend(["## Context", request.context, ""])
	return parts


def build_decompose_task(request: ForecastRequest) -> str:
	parts = _request_context(request)
	parts.extend([
		"## Task",
		"Break this forecasting question into 3-6 focused research questions that,",
		"once answered, would let an analyst estimate the probability. Mark each",
		"question's priority and give a preliminary probability range.",
		"",
	])
	parts.extend(_output_section(DECOMPOSE_SHAPE))
	return "\n".join(parts)


def build_research_task(question: ResearchQuestion, request: ForecastRequest) -> str:
	parts = [
		f"# Research: {question.question}",
		"",
		f"This supports the forecasting question: {request.question}",
		f"Topic: {question.topic} (priority: {question.priority.value})",
	]
	if question.rationale:
		parts.append(f"Why it matters: {question.rationale}")
	if question.expected_sources:
		parts.append("Suggested sources: " + ", ".join(question.expected_sources))
	parts.extend([
		"",
		"## Task",
		"Search for recent, verifiable information. Record every source you rely on",
		"in `sources` and reference sources from findings and timeline events by URL.",
		"Mark a finding `contested` when credible sources disagree and `unclear`",
		"when evidence is thin.",
		"",
	])
	parts.extend(_output_section(RESEARCH_SHAPE))
	return "\n".join(parts)


def build_filter_task(question: ResearchQuestion, raw: ResearchOutput, limits: FilterLimits) -> str:
	shape = RESEARCH_SHAPE.rstrip().rstrip("}").rstrip() + ",\n  " + FILTER_META_SHAPE + "\n}"
	parts = [
		f"# Filter research for: {question.question}",
		"",
		"## Raw Research",
		"```json",
		raw.model_dump_json(indent=2),
		"```",
		"",
		"## Rules",
		"Remove noise conservatively. You may only drop or shorten items:",
		"- Never add findings, timeline events, open questions or sources",
		"- Never change any field of a kept source",
		"- Never make a finding's status more certain (unclear < contested < supported)",
		"- Every URL referenced by a kept finding or event must remain in `sources`",
		"",
		"## Limits",
		f"At most {limits.max_findings} findings, {limits.max_timeline} timeline events,",
		f"{limits.max_sources} sources and {limits.max_open_questions} open questions.",
		"",
		"Report the rules you applied in meta.rules_used, chosen from:",
		", ".join(sorted(allowed_filter_rules())),
		"",
	]
	parts.extend(_output_section(shape))
	return "\n".join(parts)


def build_analyze_task(
	request: ForecastRequest,
	evidence: AggregatedEvidence,
	questions_asked: list[ResearchQuestion],
	iterations_left: int,
) -> str:
	parts = _request_context(request)
	parts.extend([
		"## Questions Researched So Far",
		*[f"- [{q.id}] ({q.priority.value}) {q.question}" for q in questions_asked],
		"",
		"## Aggregated Evidence",
		"```json",
		format_evidence_for_task(evidence),
		"```",
		"",
		"## Task",
		"Decide whether the evidence is sufficient to forecast.",
		f"Research iterations left: {iterations_left}.",
		"If it is not sufficient, ask at least one new question that fills the most",
		"important gap. Do not repeat questions already researched.",
		"",
	])
	parts.extend(_output_section(ANALYZE_SHAPE))
	return "\n".join(parts)


def build_forecast_task(
	request: ForecastRequest,
	evidence: AggregatedEvidence,
	decompose: Optional[DecomposeOutput] = None,
) -> str:
	parts = _request_context(request)
	if decompose is not None:
		initial = decompose.initial_assessment
		parts.extend([
			"## Initial Assessment",
			json.dumps(initial.model_dump(mode="json"), indent=2),
			"",
		])
	parts.extend([
		"## Aggregated Evidence",
		"```json",
		format_evidence_for_task(evidence),
		"```",
		"",
		"## Task",
		"Produce a calibrated probability for the outcome. Start from the base rates",
		"and market price where given, adjust for the evidence, and state your",
		"assumptions. Bounds must satisfy lower_bound <= probability <= upper_bound.",
		"",
	])
	parts.extend(_output_section(FORECAST_SHAPE))
	return "\n".join(parts)


FEATURE_EXTRA_SHAPE = """"hypothesis_updates": [
    {"hypothesis_id": "hyp_1", "supporting": true, "strength": "strong|moderate|weak",
     "description": "...", "source": "<url>"}
  ],
  "new_hypotheses": [{"statement": "...", "confidence": 0.5, "category": "..."}]"""


def build_feature_task(workspace: Workspace, feature: Feature, recent_claims: int = 10) -> str:
	"""Task for one workspace feature, with the active hypotheses it may bear on."""
	shape = RESEARCH_SHAPE.rstrip().rstrip("}").rstrip() + ",\n  " + FEATURE_EXTRA_SHAPE + "\n}"
	feature_list = workspace.feature_list
	parts = [
		f"# Research: {feature.name}",
		"",
		f"Subject: {feature_list.subject}",
		f"Progress: {feature_list.completed_count}/{feature_list.total_count} features completed",
	]
	if feature.category:
		parts.append(f"Category: {feature.category}")
	if feature.description:
		parts.extend(["", feature.description])
	if feature.last_error:
		parts.extend(["", f"The previous attempt failed: {feature.last_error}"])

	active = [h for h in workspace.hypotheses.hypotheses if h.status == HypothesisStatus.ACTIVE]
	if active:
		parts.extend(["", "## Active Hypotheses"])
		parts.extend(f"- [{h.id}] ({h.confidence * 100:.0f}%) {h.statement}" for h in active)
	claims = workspace.claims.claims[-recent_claims:]
	if claims:
		parts.extend(["", "## Claims Already Recorded"])
		parts.extend(f"- {c.text}" for c in claims)

	parts.extend([
		"",
		"## Task",
		"Search for recent, verifiable information on this feature. Record every",
		"source you rely on in `sources` and reference sources by URL. Do not",
		"repeat claims already recorded.",
		"When a finding bears on an active hypothesis, add an entry to",
		"`hypothesis_updates` with its id. Propose `new_hypotheses` only for",
		"outcomes the evidence makes worth tracking.",
		"",
	])
	parts.extend(_output_section(shape))
	return "\n".join(parts)
