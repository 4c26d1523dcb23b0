"""Toolgate Common - shared utilities for Toolgate services."""

from toolgate_common.auth import (
    CallerAuthDependency,
    CallerIdentity,
    generate_caller_token,
    verify_caller_token,
)
from toolgate_common.logging import get_logger, request_context, setup_logging

__all__ = [
    "get_logger",
    "setup_logging",
    "request_context",
    "CallerAuthDependency",
    "CallerIdentity",
    "generate_caller_token",
    "verify_caller_token",
]
