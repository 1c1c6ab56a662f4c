"""Logging setup for forecast-analyst: stderr console plus an optional rotating run log."""

import logging
import os
import re
import sys
from logging.handlers import RotatingFileHandler
from pathlib import Path
from typing import Optional

ROOT_LOGGER = "forecast_analyst"

CONSOLE_FORMAT = "%(asctime)s [%(levelname)s] %(message)s"
FILE_FORMAT = "%(asctime)s [%(levelname)s] %(name)s:%(lineno)d - %(message)s"

LOG_FILE_MAX_BYTES = 10 * 1024 * 1024
LOG_FILE_BACKUPS = 5

_SECRET_PATTERNS = [
	re.compile(r"sk-ant-[A-Za-z0-9_\-]{8,}"),
	re.compile(r"(?i)(api[_-]?key|auth[_-]?token|authorization)(\s*[=:]\s*)(\S+)"),
]


class RedactSecretsFilter(logging.Filter):
	"""Masks API keys that leak into log messages, e.g. through executor stderr."""

	def filter(self, record: logging.LogRecord) -> bool:
		message = record.getMessage()
		redacted = _SECRET_PATTERNS[0].sub("[REDACTED]", message)
		redacted = _SECRET_PATTERNS[1].sub(r"\1\2[REDACTED]", redacted)
		if redacted != message:
			record.msg = redacted
			record.args = None
		return True


def setup_logging(
	level: Optional[str] = None,
	log_dir: Optional[Path] = None,
	name: str = ROOT_LOGGER,
) -> logging.Logger:
	"""
	Attach handlers to the package logger.

	Console output goes to stderr so `run --json` keeps stdout clean. When
	log_dir is given, DEBUG and up is also written to `<log_dir>/<name>.log`.
	Calling this twice is a no-op for handlers; only the level is updated.

	Args:
		level: DEBUG, INFO, WARNING or ERROR. Falls back to $LOG_LEVEL, then INFO.
		log_dir: Directory for the rotating log file
		name: Logger to configure

	Returns:
		The configured logger
	"""
	log_level = getattr(logging, (level or os.getenv("LOG_LEVEL", "INFO")).upper(), logging.INFO)
	logger = logging.getLogger(name)
	logger.setLevel(log_level)
	if logger.handlers:
		return logger

	redact = RedactSecretsFilter()

	console = logging.StreamHandler(sys.stderr)
	console.setLevel(log_level)
	console.setFormatter(logging.Formatter(CONSOLE_FORMAT, datefmt="%H:%M:%S"))
	console.addFilter(redact)
	logger.addHandler(console)

	if log_dir is not None:
		Path(log_dir).mkdir(parents=True, exist_ok=True)
		run_log = RotatingFileHandler(
			Path(log_dir) / f"{name}.log",
			maxBytes=LOG_FILE_MAX_BYTES,
			backupCount=LOG_FILE_BACKUPS,
		)
		run_log.setLevel(logging.DEBUG)
		run_log.setFormatter(logging.Formatter(FILE_FORMAT, datefmt="%Y-%m-%d %H:%M:%S"))
		run_log.addFilter(redact)
		logger.addHandler(run_log)

	return logger
