"""Settings for forecast-analyst runs, resolved from env, config.toml and defaults."""

import os
import tomllib
from dataclasses import dataclass, field, fields
from pathlib import Path

import platformdirs

from .errors import ConfigError
from .evidence.validator import FILTER_PROFILES

APP_NAME = "forecast-analyst"
ENV_PREFIX = "FORECAST_ANALYST_"
STORE_BACKENDS = ("sqlite", "file")


@dataclass
class Config:
	"""Orchestration settings plus per-user directories (platformdirs)."""

	config_dir: Path = field(default_factory=lambda: Path(platformdirs.user_config_dir(APP_NAME)))
	data_dir: Path = field(default_factory=lambda: Path(platformdirs.user_data_dir(APP_NAME)))

	# Derived paths
	store_db_path: Path = field(init=False)
	events_db_path: Path = field(init=False)
	workspace_dir: Path = field(init=False)
	log_dir: Path = field(init=False)

	# Budget and iteration limits
	budget_total_usd: float = 20.0
	max_iterations: int = 3
	per_call_ceiling_usd: float = 2.0
	forecast_reserve_usd: float = 1.0

	# Executor
	executor_command: str = "claude"
	executor_timeout_seconds: float = 600.0
	executor_max_attempts: int = 3
	executor_backoff_seconds: float = 1.0
	research_concurrency: int = 4
	filter_profile: str = "default"

	# Evidence sufficiency thresholds
	min_findings_sufficient: int = 3
	min_sources_sufficient: int = 5
	critical_min_findings: int = 2
	critical_min_sources: int = 3

	# Workspace
	# sqlite keeps documents in store_db_path, file keeps one JSON file each under workspace_dir
	store_backend: str = "sqlite"
	hypothesis_confirm_threshold: float = 0.9
	hypothesis_reject_threshold: float = 0.1
	max_feature_attempts: int = 3

	# Telemetry
	telemetry_batch_size: int = 100
	telemetry_flush_interval: float = 0.5
	telemetry_max_retries: int = 3
	telemetry_retry_delay: float = 0.1

	def __post_init__(self) -> None:
		self.store_db_path = self.data_dir / "documents.db"
		self.events_db_path = self.data_dir / "events.db"
		self.workspace_dir = self.data_dir / "workspace"
		self.log_dir = self.data_dir / "logs"

	def ensure_dirs(self) -> None:
		"""Create the config, data and log directories."""
		self.config_dir.mkdir(parents=True, exist_ok=True)
		self.data_dir.mkdir(parents=True, exist_ok=True)
		self.log_dir.mkdir(parents=True, exist_ok=True)

	def validate(self) -> None:
		"""Raise ConfigError on values the orchestrator cannot run with."""
		if self.budget_total_usd <= 0:
			raise ConfigError("budget_total_usd must be positive", context={"value": self.budget_total_usd})
		if self.max_iterations < 1:
			raise ConfigError("max_iterations must be at least 1", context={"value": self.max_iterations})
		if self.forecast_reserve_usd < 0 or self.forecast_reserve_usd >= self.budget_total_usd:
			raise ConfigError(
				"forecast_reserve_usd must be in [0, budget_total_usd)",
				context={"value": self.forecast_reserve_usd},
			)
		if self.research_concurrency < 1:
			raise ConfigError("research_concurrency must be at least 1")
		if self.filter_profile not in FILTER_PROFILES:
			raise ConfigError(
				f"Unknown filter profile: {self.filter_profile}",
				context={"allowed": sorted(FILTER_PROFILES)},
			)
		if self.store_backend not in STORE_BACKENDS:
			raise ConfigError(
				f"Unknown store backend: {self.store_backend}",
				context={"allowed": list(STORE_BACKENDS)},
			)
		if not 0 <= self.hypothesis_reject_threshold < self.hypothesis_confirm_threshold <= 1:
			raise ConfigError("hypothesis thresholds must satisfy 0 <= reject < confirm <= 1")

	def to_dict(self) -> dict:
		data = {}
		for f in fields(self):
			value = getattr(self, f.name)
			data[f.name] = str(value) if isinstance(value, Path) else value
		return data


_PATH_FIELDS = {"config_dir", "data_dir"}


def _coerce(config: Config, attr: str, raw) -> object:
	"""Convert a raw env/toml value to the type of the existing attribute."""
	if attr in _PATH_FIELDS:
		return Path(os.path.expanduser(str(raw)))
	current = getattr(config, attr)
	try:
		if isinstance(current, bool):
			return str(raw).lower() in ("1", "true", "yes", "on")
		if isinstance(current, int):
			return int(raw)
		if isinstance(current, float):
			return float(raw)
	except (TypeError, ValueError) as e:
		raise ConfigError(f"Invalid value for {attr}: {raw!r}", context={"field": attr}) from e
	return raw


def _apply_env_overrides(config: Config) -> Config:
	"""Apply FORECAST_ANALYST_* environment variable overrides."""
	for f in fields(config):
		if not f.init:
			continue
		val = os.getenv(ENV_PREFIX + f.name.upper())
		if val:
			setattr(config, f.name, _coerce(config, f.name, val))
	# store_db_path and friends follow data_dir
	config.__post_init__()
	return config


def _apply_toml(config: Config) -> Config:
	"""Overlay values from <config_dir>/config.toml; unknown keys are ignored."""
	toml_path = config.config_dir / "config.toml"
	if not toml_path.exists():
		return config

	try:
		with open(toml_path, "rb") as f:
			data = tomllib.load(f)
	except tomllib.TOMLDecodeError as e:
		raise ConfigError(f"Invalid config file {toml_path}: {e}") from e

	init_fields = {f.name for f in fields(config) if f.init}
	for key, val in data.items():
		if key in init_fields:
			setattr(config, key, _coerce(config, key, val))

	config.__post_init__()
	return config


def load_config() -> Config:
	"""Build a validated Config. Env vars beat config.toml, which beats defaults."""
	config = Config()
	# Env may relocate config_dir, which decides where config.toml is read from
	config = _apply_env_overrides(config)
	config = _apply_toml(config)
	config = _apply_env_overrides(config)
	config.validate()
	config.ensure_dirs()
	return config
