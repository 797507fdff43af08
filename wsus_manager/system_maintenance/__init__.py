"""SUSDB maintenance engine and maintenance run sequencing."""

from .maintenance_engine import MaintenanceEngine
from .maintenance_orchestrator import MaintenanceOrchestrator, MaintenanceReport, MaintenanceType
from .sql_executor import SqlExecutor, SqlServerExecutor

__all__ = [
    'MaintenanceEngine',
    'MaintenanceOrchestrator',
    'MaintenanceReport',
    'MaintenanceType',
    'SqlExecutor',
    'SqlServerExecutor',
]
