"""Tests for forecast-analyst."""
