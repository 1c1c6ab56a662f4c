"""Orchestrator module - Phase state machine, budget control and research fan-out."""

from .analyst import AnalystOrchestrator, PhaseRecord, RunMetadata, RunResult
from .assessment import SufficiencyThresholds, assess_evidence
from .batch import BatchItem, BatchProcessor, BatchResult, BatchStatus, BatchSummary
from .budget import BudgetController, BudgetState
from .phases import (
	AnalyzeOutput,
	BaseRate,
	DecomposeOutput,
	Forecast,
	ForecastOutput,
	ForecastRequest,
	MarketData,
	QuestionPriority,
	ResearchQuestion,
	parse_phase_output,
)

__all__ = [
	"AnalystOrchestrator",
	"PhaseRecord",
	"RunMetadata",
	"RunResult",
	"SufficiencyThresholds",
	"assess_evidence",
	"BatchItem",
	"BatchProcessor",
	"BatchResult",
	"BatchStatus",
	"BatchSummary",
	"BudgetController",
	"BudgetState",
	"AnalyzeOutput",
	"BaseRate",
	"DecomposeOutput",
	"Forecast",
	"ForecastOutput",
	"ForecastRequest",
	"MarketData",
	"QuestionPriority",
	"ResearchQuestion",
	"parse_phase_output",
]
