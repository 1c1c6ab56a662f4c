"""Tests for phase output parsing and the sufficiency assessment."""

import pytest
from pydantic import ValidationError

from forecast_analyst.errors import OutputParseError
from forecast_analyst.evidence import aggregate_evidence
from forecast_analyst.evidence.models import Level
from forecast_analyst.orchestrator.assessment import SufficiencyThresholds, assess_evidence, gap_question
from forecast_analyst.orchestrator.phases import (
	AnalyzeOutput,
	DecomposeOutput,
	ForecastOutput,
	ProbabilityRange,
	QuestionPriority,
	ResearchQuestion,
	parse_phase_output,
)

from .helpers import analyze_doc, decompose_doc, forecast_doc, make_finding, make_package, make_research, make_source


def _evidence(findings: int, sources: int):
	research = make_research(
		findings=[make_finding(f"claim {i}") for i in range(findings)],
		sources=[make_source(f"https://s{i}.example.com") for i in range(sources)],
	)
	return aggregate_evidence([make_package("q1", research)])


class TestParsePhaseOutput:
	"""Tagged-union parsing of executor documents."""

	def test_decompose(self):
		out = parse_phase_output(decompose_doc("q1", "q2"), "decompose")

		assert isinstance(out, DecomposeOutput)
		assert [q.id for q in out.questions] == ["q1", "q2"]
		assert out.initial_assessment.preliminary_range.low == 0.3
		assert out.initial_assessment.preliminary_range.high == 0.7

	def test_decompose_default_range(self):
		out = parse_phase_output({"questions": [{"id": "q1", "question": "Why?"}]}, "decompose")

		assert out.initial_assessment.preliminary_range == ProbabilityRange(low=0.0, high=1.0)

	def test_missing_mode_filled(self):
		doc = analyze_doc(True)
		doc.pop("mode", None)

		assert isinstance(parse_phase_output(doc, "analyze"), AnalyzeOutput)

	def test_mode_mismatch(self):
		with pytest.raises(OutputParseError, match="Expected forecast output, got analyze"):
			parse_phase_output(analyze_doc(True), "forecast")

	def test_wrapped_and_bare_forecast(self):
		wrapped = parse_phase_output(forecast_doc(0.6, 0.5, 0.7), "forecast")
		bare = parse_phase_output(forecast_doc(0.6, 0.5, 0.7)["forecast"], "forecast")

		assert isinstance(wrapped, ForecastOutput)
		assert wrapped.forecast == bare.forecast

	def test_probability_outside_bounds(self):
		with pytest.raises(OutputParseError):
			parse_phase_output(forecast_doc(0.9, 0.5, 0.7), "forecast")

	def test_probability_out_of_range(self):
		with pytest.raises(OutputParseError):
			parse_phase_output(forecast_doc(1.2, 0.5, 1.3), "forecast")

	def test_decompose_needs_questions(self):
		with pytest.raises(OutputParseError):
			parse_phase_output({"mode": "decompose", "questions": []}, "decompose")

	def test_input_not_mutated(self):
		doc = {"questions": [{"id": "q1", "question": "Why?"}]}
		parse_phase_output(doc, "decompose")
		assert "mode" not in doc


class TestPhaseModels:
	"""Model-level invariants."""

	def test_range_must_be_ordered(self):
		with pytest.raises(ValidationError):
			ProbabilityRange(low=0.7, high=0.3)

	def test_question_is_frozen(self):
		question = ResearchQuestion(id="q1", question="Why?")
		with pytest.raises(ValidationError):
			question.question = "changed"


class TestAssessEvidence:
	"""Deterministic sufficiency decision."""

	def test_critical_gap_asks_for_more(self):
		out = assess_evidence(_evidence(1, 1), "Will it rain?", iterations_left=2, questions_asked=3)

		assert out.ready_to_forecast is False
		assert [q.id for q in out.additional_questions] == ["q_add_4"]
		assert out.additional_questions[0].priority == QuestionPriority.CRITICAL
		assert out.evidence_assessment.quality == Level.LOW
		assert out.evidence_assessment.gaps[0].topic == "insufficient_evidence"

	def test_critical_gap_without_iterations_is_ready_low(self):
		out = assess_evidence(_evidence(1, 1), "Will it rain?", iterations_left=0)

		assert out.ready_to_forecast is True
		assert out.additional_questions == []
		assert out.evidence_assessment.quality == Level.LOW
		assert out.evidence_assessment.sufficient is False

	def test_good_evidence_is_high(self):
		out = assess_evidence(_evidence(3, 5), "Will it rain?", iterations_left=2)

		assert out.ready_to_forecast is True
		assert out.evidence_assessment.quality == Level.HIGH
		assert out.evidence_assessment.sufficient is True

	def test_between_thresholds_is_medium(self):
		out = assess_evidence(_evidence(2, 4), "Will it rain?", iterations_left=2)

		assert out.ready_to_forecast is True
		assert out.evidence_assessment.quality == Level.MEDIUM

	def test_custom_thresholds(self):
		strict = SufficiencyThresholds(min_findings=10, min_sources=10, critical_min_findings=5, critical_min_sources=5)

		out = assess_evidence(_evidence(3, 5), "Will it rain?", thresholds=strict, iterations_left=1)

		assert out.ready_to_forecast is False

	def test_gap_question(self):
		question = gap_question("Will it rain?", 2)

		assert question.id == "q_add_2"
		assert question.question == "What additional recent information exists about: Will it rain?"
