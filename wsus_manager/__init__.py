"""
WSUS Manager
Service orchestration, SUSDB maintenance, health checks and air-gapped media
transfer for a WSUS server.
"""

from .config import WsusConfig, load_config
from .health.health_aggregator import HealthAggregator
from .logging_config import configure_logging
from .media_transfer.transfer_coordinator import TransferCoordinator
from .services.service_orchestrator import ServiceOrchestrator
from .system_maintenance.maintenance_engine import MaintenanceEngine
from .system_maintenance.maintenance_orchestrator import MaintenanceOrchestrator, MaintenanceType

__version__ = '1.0.0'

__all__ = [
    'WsusConfig',
    'load_config',
    'configure_logging',
    'ServiceOrchestrator',
    'MaintenanceEngine',
    'MaintenanceOrchestrator',
    'MaintenanceType',
    'HealthAggregator',
    'TransferCoordinator',
]
