"""Core utilities for the gateway service."""

from gateway_service.core.logging import get_logger, request_context, setup_logging

__all__ = ["setup_logging", "get_logger", "request_context"]
