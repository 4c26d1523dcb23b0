"""Supervisor package initialization."""

from gateway_service.supervisor.instance import (
    BackendInstance,
    InstanceHandle,
    InstanceState,
    InstanceStatus,
)
from gateway_service.supervisor.supervisor import Supervisor

__all__ = ["BackendInstance", "InstanceHandle", "InstanceState", "InstanceStatus", "Supervisor"]
