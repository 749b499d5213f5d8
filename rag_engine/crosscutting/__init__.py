"""Crosscutting concerns: settings, logging, errors, metrics, retry, timing."""
