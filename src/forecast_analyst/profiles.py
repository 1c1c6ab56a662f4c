"""
Resource profiles for executor calls.

Each phase runs with its own profile: a model selector, a tool
allow-list passed through as --allowedTools, a turn cap, a cost ceiling
and a wall-clock timeout. The orchestrator narrows a profile's cost
ceiling per call with capped() before dispatch.
"""

from dataclasses import dataclass, field, replace
from typing import Optional


@dataclass(frozen=True)
class ResourceProfile:
	"""Limits and capabilities for one executor call."""

	name: str
	description: str
	model: str = "sonnet"
	allowed_tools: tuple[str, ...] = field(default_factory=tuple)
	max_turns: int = 10
	max_cost_usd: float = 0.5
	timeout_seconds: float = 600.0

	def to_allowed_tools_list(self) -> list[str]:
		"""Convert to a list of tool patterns for --allowedTools."""
		return list(self.allowed_tools)

	def capped(self, max_cost_usd: float) -> "ResourceProfile":
		"""Return a copy whose cost ceiling is at most max_cost_usd."""
		ceiling = max(0.0, min(self.max_cost_usd, max_cost_usd))
		if ceiling == self.max_cost_usd:
			return self
		return replace(self, max_cost_usd=ceiling)

	def with_timeout(self, timeout_seconds: float) -> "ResourceProfile":
		return replace(self, timeout_seconds=timeout_seconds)

	def to_dict(self) -> dict:
		return {
			"name": self.name,
			"model": self.model,
			"allowed_tools": list(self.allowed_tools),
			"max_turns": self.max_turns,
			"max_cost_usd": self.max_cost_usd,
			"timeout_seconds": self.timeout_seconds,
		}


# Predefined profiles

DECOMPOSE = ResourceProfile(
	name="decompose",
	description="Split the question into research sub-questions",
	allowed_tools=("WebSearch",),
	max_turns=10,
	max_cost_usd=0.5,
)

RESEARCH = ResourceProfile(
	name="research",
	description="Gather sourced evidence for one sub-question",
	allowed_tools=("WebSearch", "WebFetch", "Read"),
	max_turns=40,
	max_cost_usd=3.0,
)

FILTER = ResourceProfile(
	name="filter",
	description="Conservative subset-only cleanup of raw evidence",
	max_turns=5,
	max_cost_usd=0.3,
)

ANALYZE = ResourceProfile(
	name="analyze",
	description="Judge whether the evidence is sufficient to forecast",
	max_turns=10,
	max_cost_usd=0.5,
)

FORECAST = ResourceProfile(
	name="forecast",
	description="Produce the calibrated probability estimate",
	max_turns=10,
	max_cost_usd=0.5,
)

PROFILES: dict[str, ResourceProfile] = {
	"decompose": DECOMPOSE,
	"research": RESEARCH,
	"filter": FILTER,
	"analyze": ANALYZE,
	"forecast": FORECAST,
}


def get_profile(name: str) -> Optional[ResourceProfile]:
	"""Get a predefined profile by name."""
	return PROFILES.get(name)
