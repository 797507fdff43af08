"""Windows/systemd service control and dependency-ordered orchestration."""

from .service_control import ResourceHandle, ServiceControl, default_service_control
from .service_orchestrator import ServiceOrchestrator

__all__ = ['ResourceHandle', 'ServiceControl', 'default_service_control', 'ServiceOrchestrator']
