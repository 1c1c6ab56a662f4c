"""forecast-analyst - Decompose, research, analyze and forecast."""

__version__ = "0.1.0"
