"""Logging configuration for the gateway service.

Re-exports shared logging utilities from toolgate-common.
"""

from toolgate_common import get_logger, request_context, setup_logging

__all__ = ["setup_logging", "get_logger", "request_context"]
