"""Logging and metrics for EternalStash."""
