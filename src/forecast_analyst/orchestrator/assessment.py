"""
Evidence Assessment - Deterministic sufficiency check for the analyze phase.

Used when the executor's analyze call fails or returns an unusable
document, and to supply a gap question when the executor declares the
evidence insufficient without asking one.
"""

import logging
from dataclasses import dataclass
from typing import Optional

from ..evidence.models import AggregatedEvidence, Level
from .phases import (
	AnalyzeOutput,
	EvidenceAssessment,
	EvidenceGap,
	QuestionPriority,
	ResearchQuestion,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SufficiencyThresholds:
	"""Finding and source counts that decide evidence sufficiency."""
	min_findings: int = 3
	min_sources: int = 5
	critical_min_findings: int = 2
	critical_min_sources: int = 3

	@classmethod
	def from_config(cls, config) -> "SufficiencyThresholds":
		return cls(
			min_findings=config.min_findings_sufficient,
			min_sources=config.min_sources_sufficient,
			critical_min_findings=config.critical_min_findings,
			critical_min_sources=config.critical_min_sources,
		)


def gap_question(question: str, number: int) -> ResearchQuestion:
	"""Follow-up question asked when evidence is too thin."""
	return ResearchQuestion(
		id=f"q_add_{number}",
		topic="additional_context",
		question=f"What additional recent information exists about: {question}",
		priority=QuestionPriority.CRITICAL,
		rationale="Evidence below the critical threshold",
	)


def assess_evidence(
	evidence: AggregatedEvidence,
	question: str,
	thresholds: Optional[SufficiencyThresholds] = None,
	iterations_left: int = 0,
	questions_asked: int = 0,
) -> AnalyzeOutput:
	"""
	Decide whether the evidence gathered so far supports a forecast.

	Evidence with fewer than critical_min_findings findings or fewer than
	critical_min_sources sources is a critical gap: while iterations remain
	the run asks one more question. Otherwise the run is ready, with
	quality high when both sufficiency minimums are met.

	Args:
		evidence: Aggregated evidence over every package so far
		question: The top-level forecasting question
		thresholds: Sufficiency thresholds (defaults when omitted)
		iterations_left: Research iterations still available
		questions_asked: Number of questions asked so far, used to number the gap question

	Returns:
		AnalyzeOutput carrying the decision
	"""
	t = thresholds or SufficiencyThresholds()
	findings = len(evidence.findings)
	sources = len(evidence.sources)

	good = findings >= t.min_findings and sources >= t.min_sources
	critical = findings < t.critical_min_findings or sources < t.critical_min_sources
	counts = f"{findings} findings from {sources} sources"

	if critical and iterations_left > 0:
		logger.info(f"Evidence assessment: critical gap ({counts}), requesting more research")
		return AnalyzeOutput(
			ready_to_forecast=False,
			additional_questions=[gap_question(question, questions_asked + 1)],
			evidence_assessment=EvidenceAssessment(
				sufficient=False,
				quality=Level.LOW,
				gaps=[EvidenceGap(
					topic="insufficient_evidence",
					description=f"Only {counts}",
					importance=QuestionPriority.CRITICAL,
				)],
				aggregated_summary=evidence.summary,
			),
			reasoning=f"Insufficient evidence ({counts}). Need more research.",
		)

	if good:
		quality = Level.HIGH
	elif critical:
		quality = Level.LOW
	else:
		quality = Level.MEDIUM

	logger.info(f"Evidence assessment: ready ({counts}, quality {quality.value})")
	return AnalyzeOutput(
		ready_to_forecast=True,
		evidence_assessment=EvidenceAssessment(
			sufficient=not critical,
			quality=quality,
			aggregated_summary=evidence.summary,
		),
		reasoning=f"Evidence gathered: {counts}. Ready to forecast.",
	)
