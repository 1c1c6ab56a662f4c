"""
Budget Controller - Spend and iteration ceilings for one run.

A controller is owned by exactly one orchestrator run. Spend is
saturating and the stop decision is monotonic: once can_continue()
returns False it keeps returning False for the life of the controller.
"""

import logging
from dataclasses import dataclass, field

from ..errors import BudgetExceededError, ConfigError

logger = logging.getLogger(__name__)


@dataclass
class BudgetState:
	"""Snapshot of the run's spend and iteration usage."""
	total_usd: float
	spent_usd: float = 0.0
	max_iterations: int = 3
	iterations_used: int = 0

	@property
	def remaining_usd(self) -> float:
		return max(0.0, self.total_usd - self.spent_usd)

	@property
	def remaining_iterations(self) -> int:
		return max(0, self.max_iterations - self.iterations_used)

	@property
	def exhausted(self) -> bool:
		return self.spent_usd >= self.total_usd or self.iterations_used >= self.max_iterations

	def to_dict(self) -> dict:
		return {
			"total_usd": self.total_usd,
			"spent_usd": round(self.spent_usd, 6),
			"remaining_usd": round(self.remaining_usd, 6),
			"max_iterations": self.max_iterations,
			"iterations_used": self.iterations_used,
		}


@dataclass
class BudgetController:
	"""
	Tracks spend and iterations and decides when the run must stop researching.

	Usage:
		budget = BudgetController(total_usd=20.0, max_iterations=3)
		budget.start_iteration()
		cap = budget.allowance(pending_count=4)
		...
		budget.charge(result.cost_usd)
		if not budget.can_continue():
			...  # forecast now
	"""

	total_usd: float
	max_iterations: int = 3
	per_call_ceiling_usd: float = 2.0
	reserve_usd: float = 0.0
	_state: BudgetState = field(init=False, repr=False)
	_stopped: bool = field(default=False, init=False, repr=False)

	def __post_init__(self) -> None:
		if self.total_usd <= 0:
			raise ConfigError("Budget total must be positive", context={"total_usd": self.total_usd})
		self._state = BudgetState(total_usd=self.total_usd, max_iterations=self.max_iterations)

	@classmethod
	def from_state(cls, state: BudgetState, per_call_ceiling_usd: float = 2.0, reserve_usd: float = 0.0) -> "BudgetController":
		"""Resume a controller from a saved snapshot."""
		controller = cls(
			total_usd=state.total_usd,
			max_iterations=state.max_iterations,
			per_call_ceiling_usd=per_call_ceiling_usd,
			reserve_usd=reserve_usd,
		)
		controller._state.spent_usd = min(state.total_usd, max(0.0, state.spent_usd))
		controller._state.iterations_used = max(0, state.iterations_used)
		return controller

	@property
	def state(self) -> BudgetState:
		s = self._state
		return BudgetState(
			total_usd=s.total_usd,
			spent_usd=s.spent_usd,
			max_iterations=s.max_iterations,
			iterations_used=s.iterations_used,
		)

	def charge(self, amount_usd: float) -> float:
		"""
		Record spend. Saturates at the total.

		Returns:
			The amount actually applied
		"""
		if amount_usd < 0:
			raise ValueError(f"Cannot charge a negative amount: {amount_usd}")
		before = self._state.spent_usd
		self._state.spent_usd = min(self._state.total_usd, before + amount_usd)
		applied = self._state.spent_usd - before
		if applied < amount_usd:
			logger.warning(
				f"Budget saturated: charged ${amount_usd:.4f}, applied ${applied:.4f} "
				f"(total ${self._state.total_usd:.2f})"
			)
		return applied

	def start_iteration(self) -> int:
		"""Count a research iteration. Returns the 1-based iteration number."""
		if self._state.iterations_used >= self._state.max_iterations:
			raise BudgetExceededError(
				"No research iterations left",
				context=self._state.to_dict(),
			)
		self._state.iterations_used += 1
		return self._state.iterations_used

	def can_continue(self) -> bool:
		"""False once either ceiling is reached. Stays False afterwards."""
		if self._stopped:
			return False
		if self._state.exhausted:
			self._stopped = True
			logger.info(f"Budget controller stopping research: {self._state.to_dict()}")
			return False
		return True

	def allowance(self, pending_count: int) -> float:
		"""
		Cost ceiling for one research dispatch.

		The spendable remainder (after the reserve held back for the
		forecast) is split evenly across pending questions and capped at
		the per-call ceiling.
		"""
		if pending_count <= 0:
			return 0.0
		spendable = max(0.0, self._state.remaining_usd - self.reserve_usd)
		return max(0.0, min(self.per_call_ceiling_usd, spendable / pending_count))

	def final_allowance(self) -> float:
		"""Cost ceiling for the terminal forecast call: everything left."""
		return self._state.remaining_usd
