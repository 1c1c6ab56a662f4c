"""Tests for the filter validator."""

from forecast_analyst.evidence.models import ClaimStatus, FilteredResearch, FilterMeta, Level, OpenQuestion, TimelineEvent
from forecast_analyst.evidence.validator import (
	FILTER_PROFILES,
	FilterRule,
	ValidationRule,
	allowed_filter_rules,
	enforce_filter_contract,
	get_filter_limits,
	passthrough,
	validate_filtered,
)

from .helpers import make_finding, make_research, make_source


def _raw(findings: int = 3, sources: int = 2):
	srcs = [make_source(f"https://s{i}.example.com") for i in range(sources)]
	return make_research(
		findings=[make_finding(f"claim {i}", "contested", supporting=(srcs[i % sources].url,)) for i in range(findings)],
		sources=srcs,
		timeline=[TimelineEvent(date="2026-01-01", event="kickoff", sources=[srcs[0].url])],
		open_questions=[OpenQuestion(question="What next?")],
		summary="raw summary",
	)


def _filtered(raw, **updates) -> FilteredResearch:
	data = passthrough(raw).model_dump()
	data.update(updates)
	return FilteredResearch.model_validate(data)


class TestValidFilterOutput:
	"""Outputs that respect the contract."""

	def test_passthrough_is_valid(self):
		raw = _raw()
		assert validate_filtered(raw, passthrough(raw)) == []

	def test_dropping_items_is_valid(self):
		raw = _raw()
		filtered = _filtered(
			raw,
			findings=[f.model_dump() for f in raw.findings[:1]],
			timeline=[],
			open_questions=[],
			meta={"dropped_findings": 2, "rules_used": ["apply_max_findings_limit", "trim_open_questions"]},
		)
		assert validate_filtered(raw, filtered) == []

	def test_downgrading_status_is_valid(self):
		raw = _raw(findings=1)
		finding = raw.findings[0].model_copy(update={"status": ClaimStatus.UNCLEAR})
		filtered = _filtered(raw, findings=[finding.model_dump()])
		assert validate_filtered(raw, filtered) == []


class TestViolations:
	"""Each rule reports its own violation."""

	def test_cardinality_exceeded_falls_back_to_raw(self):
		"""Ten raw findings, twelve filtered: violation, and the fallback keeps exactly ten."""
		srcs = [make_source(f"https://s{i}") for i in range(5)]
		raw = make_research(
			findings=[make_finding(f"claim {i}", supporting=(srcs[i % 5].url,)) for i in range(10)],
			sources=srcs,
		)
		filtered = _filtered(raw, findings=[
			make_finding(f"claim {i % 10}", supporting=(srcs[0].url,)).model_dump() for i in range(12)
		])

		issues = validate_filtered(raw, filtered)
		decision = enforce_filter_contract(raw, filtered)

		assert any(i.rule == ValidationRule.CARDINALITY_EXCEEDED and i.item == "findings" for i in issues)
		assert decision.fell_back is True
		assert len(decision.output.findings) == 10
		assert decision.output.findings == raw.findings

	def test_missing_source_reference(self):
		raw = _raw()
		filtered = _filtered(raw, sources=[raw.sources[1].model_dump()])

		rules = {i.rule for i in validate_filtered(raw, filtered)}

		assert ValidationRule.MISSING_SOURCE_REFERENCE in rules

	def test_timeline_reference_checked(self):
		raw = _raw()
		filtered = _filtered(
			raw,
			findings=[],
			sources=[raw.sources[1].model_dump()],
		)

		issues = validate_filtered(raw, filtered)

		assert [i.rule for i in issues] == [ValidationRule.MISSING_SOURCE_REFERENCE]
		assert "Timeline event" in issues[0].message

	def test_unknown_source_url(self):
		raw = _raw()
		invented = make_source("https://invented.example.com")
		filtered = _filtered(raw, sources=[*(s.model_dump() for s in raw.sources), invented.model_dump()])

		issues = validate_filtered(raw, filtered)

		assert any(i.rule == ValidationRule.UNKNOWN_SOURCE_URL and i.item == invented.url for i in issues)

	def test_source_mutated(self):
		raw = _raw()
		boosted = raw.sources[0].model_copy(update={"credibility": Level.HIGH, "title": "Better title"})
		filtered = _filtered(raw, sources=[boosted.model_dump(), raw.sources[1].model_dump()])

		issues = [i for i in validate_filtered(raw, filtered) if i.rule == ValidationRule.SOURCE_MUTATED]

		assert len(issues) == 1
		assert "credibility" in issues[0].message
		assert "title" in issues[0].message

	def test_status_upgraded(self):
		raw = _raw(findings=1)
		upgraded = raw.findings[0].model_copy(update={"status": ClaimStatus.SUPPORTED})
		filtered = _filtered(raw, findings=[upgraded.model_dump()])

		issues = validate_filtered(raw, filtered)

		assert [i.rule for i in issues] == [ValidationRule.STATUS_UPGRADED]

	def test_status_compared_with_weakest_raw_copy(self):
		src = make_source("https://a")
		raw = make_research(
			findings=[
				make_finding("Same claim", "supported", supporting=(src.url,)),
				make_finding("same claim", "unclear", supporting=(src.url,)),
			],
			sources=[src],
		)
		filtered = _filtered(raw, findings=[raw.findings[0].model_dump()])

		assert validate_filtered(raw, filtered)[0].rule == ValidationRule.STATUS_UPGRADED

	def test_unknown_filter_rule(self):
		raw = _raw()
		filtered = _filtered(raw, meta=FilterMeta(rules_used=["drop_unreferenced_sources", "invent_sources"]).model_dump())

		issues = validate_filtered(raw, filtered)

		assert [(i.rule, i.item) for i in issues] == [(ValidationRule.UNKNOWN_FILTER_RULE, "invent_sources")]

	def test_issues_are_returned_not_raised(self):
		raw = _raw()
		filtered = _filtered(
			raw,
			sources=[make_source("https://other").model_dump()],
			meta={"rules_used": ["nope"]},
		)

		issues = validate_filtered(raw, filtered)

		assert len(issues) > 3
		assert all(str(i).startswith("[") for i in issues)


class TestEnforcement:
	"""Blocking policy and fallback."""

	def test_valid_output_kept(self):
		raw = _raw()
		filtered = _filtered(raw, open_questions=[])

		decision = enforce_filter_contract(raw, filtered)

		assert decision.fell_back is False
		assert decision.output.open_questions == []
		assert decision.issues == []

	def test_any_violation_discards_output(self):
		raw = _raw()
		filtered = _filtered(raw, summary="shorter", meta={"rules_used": ["made_up"]})

		decision = enforce_filter_contract(raw, filtered)

		assert decision.fell_back is True
		assert decision.output.summary == "raw summary"
		assert decision.output.meta.rules_used == []

	def test_omitted_timestamps_are_not_mutations(self):
		"""A filter that echoes sources without retrieved_at/published_at is still accepted."""
		raw = _raw()
		raw = raw.model_copy(update={"sources": [
			raw.sources[0].model_copy(update={"published_at": "2025-12-30"}),
			raw.sources[1],
		]})
		doc = passthrough(raw).model_dump(mode="json")
		for source in doc["sources"]:
			del source["retrieved_at"]
			del source["published_at"]
		filtered = FilteredResearch.model_validate(doc)

		decision = enforce_filter_contract(raw, filtered)

		assert decision.fell_back is False
		assert decision.output.sources == raw.sources
		assert decision.output.sources[0].retrieved_at == "2026-01-01T00:00:00"
		assert decision.output.sources[0].published_at == "2025-12-30"

	def test_changed_timestamp_is_mutation(self):
		raw = _raw()
		moved = raw.sources[0].model_copy(update={"retrieved_at": "2026-02-02T00:00:00"})
		filtered = _filtered(raw, sources=[moved.model_dump(), raw.sources[1].model_dump()])

		issues = validate_filtered(raw, filtered)

		assert [(i.rule, i.item) for i in issues] == [(ValidationRule.SOURCE_MUTATED, moved.url)]

	def test_research_without_timestamp_parses(self):
		"""Absent retrieved_at stays absent; no fetch time is invented."""
		raw = make_research(sources=[make_source("https://a", retrieved_at=None)])

		assert raw.sources[0].retrieved_at is None
		assert validate_filtered(raw, passthrough(raw)) == []

	def test_passthrough_copies_raw(self):
		raw = _raw()
		out = passthrough(raw)

		assert out.findings == raw.findings
		assert out.sources == raw.sources
		assert out.findings[0] is not raw.findings[0]


class TestRulesAndProfiles:
	"""Filter rule ids and limit profiles."""

	def test_allowed_rules(self):
		allowed = allowed_filter_rules()
		assert len(allowed) == 18
		assert FilterRule.SHORTEN_SUMMARY.value in allowed
		assert "downgrade_status_supported_to_unclear" in allowed

	def test_profiles(self):
		assert set(FILTER_PROFILES) == {"strict", "default", "loose"}
		assert get_filter_limits("strict").max_findings == 8
		assert get_filter_limits("loose").max_sources == 50
		assert get_filter_limits("unknown") == FILTER_PROFILES["default"]
