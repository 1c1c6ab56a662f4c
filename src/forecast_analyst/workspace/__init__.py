"""Workspace module - Persistent features, hypotheses, claims and plan."""

from .models import (
	Claim,
	ClaimSource,
	EvidenceStrength,
	Feature,
	FeatureDraft,
	FeatureStatus,
	Hypothesis,
	HypothesisStatus,
	ProgressEntryType,
	Workspace,
)
from .tracker import WorkspaceTracker

__all__ = [
	"Claim",
	"ClaimSource",
	"EvidenceStrength",
	"Feature",
	"FeatureDraft",
	"FeatureStatus",
	"Hypothesis",
	"HypothesisStatus",
	"ProgressEntryType",
	"Workspace",
	"WorkspaceTracker",
]
