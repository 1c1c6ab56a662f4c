"""
Phase Models - Inputs and outputs of the orchestrator phases.

DecomposeOutput, AnalyzeOutput and ForecastOutput share a `mode`
discriminator and are parsed through one tagged union, so every phase
boundary sees exactly the document type it expects.
"""

from datetime import datetime
from enum import Enum
from typing import Annotated, Any, Literal, Optional, Union

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter, ValidationError, model_validator

from ..errors import OutputParseError
from ..evidence.models import Level


class QuestionPriority(str, Enum):
	"""How much a research question matters to the forecast."""
	CRITICAL = "critical"
	IMPORTANT = "important"
	SUPPLEMENTARY = "supplementary"


class ResearchQuestion(BaseModel):
	"""A sub-question to research. Immutable once created."""
	model_config = ConfigDict(frozen=True)

	id: str
	topic: str = Field(default="general")
	question: str
	priority: QuestionPriority = Field(default=QuestionPriority.IMPORTANT)
	expected_sources: list[str] = Field(default_factory=list, description="Hints for where to look")
	rationale: str = Field(default="")


class PricePoint(BaseModel):
	timestamp: str
	price: float = Field(ge=0.0, le=1.0)


class MarketData(BaseModel):
	"""Prediction-market snapshot supplied with the question."""
	yes_price: float = Field(ge=0.0, le=1.0)
	no_price: Optional[float] = Field(default=None, ge=0.0, le=1.0)
	volume_24h: Optional[float] = Field(default=None, ge=0.0)
	liquidity: Optional[float] = Field(default=None, ge=0.0)
	price_history: list[PricePoint] = Field(default_factory=list)
	source: str = Field(default="")
	fetched_at: str = Field(default_factory=lambda: datetime.now().isoformat())


class BaseRate(BaseModel):
	"""Historical frequency for a reference class."""
	reference_class: str
	probability: float = Field(ge=0.0, le=1.0)
	sample_size: Optional[int] = Field(default=None, ge=0)
	source: str = Field(default="")
	applicability: Optional[str] = Field(default=None)


class ForecastRequest(BaseModel):
	"""Top-level input to a run."""
	question: str
	target_id: Optional[str] = Field(default=None, description="Stable key for persisted artifacts")
	outcome: str = Field(default="Yes")
	resolution_date: Optional[str] = Field(default=None)
	resolution_criteria: Optional[str] = Field(default=None)
	market_data: Optional[MarketData] = Field(default=None)
	base_rates: list[BaseRate] = Field(default_factory=list)
	context: Optional[str] = Field(default=None)
	filter_profile: Optional[str] = Field(default=None)


class ProbabilityRange(BaseModel):
	low: float = Field(ge=0.0, le=1.0)
	high: float = Field(ge=0.0, le=1.0)

	@model_validator(mode="after")
	def _ordered(self) -> "ProbabilityRange":
		if self.low > self.high:
			raise ValueError(f"range low {self.low} exceeds high {self.high}")
		return self


class InitialAssessment(BaseModel):
	uncertainties: list[str] = Field(default_factory=list)
	preliminary_range: ProbabilityRange = Field(default_factory=lambda: ProbabilityRange(low=0.0, high=1.0))
	key_factors: list[str] = Field(default_factory=list)


class DecomposeOutput(BaseModel):
	"""Research plan produced once at the start of a run."""
	mode: Literal["decompose"] = "decompose"
	questions: list[ResearchQuestion] = Field(min_length=1)
	initial_assessment: InitialAssessment = Field(default_factory=InitialAssessment)


class EvidenceGap(BaseModel):
	topic: str
	description: str = Field(default="")
	importance: QuestionPriority = Field(default=QuestionPriority.IMPORTANT)


class EvidenceAssessment(BaseModel):
	sufficient: bool = Field(default=False)
	quality: Level = Field(default=Level.MEDIUM)
	gaps: list[EvidenceGap] = Field(default_factory=list)
	aggregated_summary: str = Field(default="")


class AnalyzeOutput(BaseModel):
	"""Sufficiency decision made after each research iteration."""
	mode: Literal["analyze"] = "analyze"
	ready_to_forecast: bool
	additional_questions: list[ResearchQuestion] = Field(default_factory=list)
	evidence_assessment: EvidenceAssessment = Field(default_factory=EvidenceAssessment)
	reasoning: str = Field(default="")


class Scenario(BaseModel):
	scenario: str
	probability: float = Field(ge=0.0, le=1.0)
	description: str = Field(default="")


class Forecast(BaseModel):
	"""The calibrated probability estimate."""
	outcome: str = Field(default="Yes")
	probability: float = Field(ge=0.0, le=1.0)
	lower_bound: float = Field(ge=0.0, le=1.0)
	upper_bound: float = Field(ge=0.0, le=1.0)
	confidence: Level = Field(default=Level.MEDIUM)
	reasoning: str = Field(default="")
	assumptions: list[str] = Field(default_factory=list)
	evidence_summary: str = Field(default="")
	baselines_used: list[str] = Field(default_factory=list)
	scenario_breakdown: list[Scenario] = Field(default_factory=list)
	recommendation: Optional[str] = Field(default=None)

	@model_validator(mode="after")
	def _bounds_contain_probability(self) -> "Forecast":
		if not self.lower_bound <= self.probability <= self.upper_bound:
			raise ValueError(
				f"expected lower_bound <= probability <= upper_bound, got "
				f"{self.lower_bound} / {self.probability} / {self.upper_bound}"
			)
		return self


class ForecastOutput(BaseModel):
	"""Terminal output of a run."""
	mode: Literal["forecast"] = "forecast"
	forecast: Forecast


PhaseOutput = Annotated[
	Union[DecomposeOutput, AnalyzeOutput, ForecastOutput],
	Field(discriminator="mode"),
]

_PHASE_ADAPTER: TypeAdapter[PhaseOutput] = TypeAdapter(PhaseOutput)


def parse_phase_output(data: dict[str, Any], expected_mode: str) -> Union[DecomposeOutput, AnalyzeOutput, ForecastOutput]:
	"""
	Validate an executor document as the output of a phase.

	A missing mode is filled with expected_mode; a different mode is an error.
	A bare forecast object (no wrapper) is accepted for the forecast phase.

	Raises:
		OutputParseError: If the document does not validate
	"""
	doc = dict(data)
	mode = doc.setdefault("mode", expected_mode)
	if mode != expected_mode:
		raise OutputParseError(
			f"Expected {expected_mode} output, got {mode}",
			context={"expected": expected_mode, "got": mode},
		)
	if expected_mode == "forecast" and "forecast" not in doc:
		doc = {"mode": "forecast", "forecast": {k: v for k, v in doc.items() if k != "mode"}}

	try:
		return _PHASE_ADAPTER.validate_python(doc)
	except ValidationError as e:
		raise OutputParseError(
			f"Invalid {expected_mode} output: {e.error_count()} validation error(s)",
			context={"errors": [f"{err['loc']}: {err['msg']}" for err in e.errors()[:5]]},
		) from e
