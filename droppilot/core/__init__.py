"""Orchestration core."""
