"""Utility modules for DropPilot."""

from __future__ import annotations

# Async helpers
from .async_helpers import AwaitableValue, ScheduledTask, task_wrapper

# Backoff
from .backoff import ExponentialBackoff

# JSON utilities
from .json_utils import json_load, json_minify, json_save, merge_json

# Rate limiting
from .rate_limiter import RateLimiter

# String utilities
from .string_utils import CHARS_ASCII, CHARS_HEX_LOWER, chunk, create_nonce, deduplicate


__all__ = [
    # String utilities
    "CHARS_ASCII",
    "CHARS_HEX_LOWER",
    "create_nonce",
    "chunk",
    "deduplicate",
    # JSON utilities
    "json_minify",
    "json_load",
    "json_save",
    "merge_json",
    # Async helpers
    "task_wrapper",
    "ScheduledTask",
    "AwaitableValue",
    # Rate limiting
    "RateLimiter",
    # Backoff
    "ExponentialBackoff",
]
