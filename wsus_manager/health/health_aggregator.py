"""
WSUS Manager Health Aggregator
Combines service states, a database probe and free disk space into one
verdict, and repairs what can be repaired by starting stopped services.
"""

import asyncio
import logging
from typing import Optional

from wsus_manager.config import HealthSettings, WsusConfig
from wsus_manager.media_transfer.path_validation import available_space_gb
from wsus_manager.models import (
    DatabaseHealth,
    HealthStatus,
    HealthVerdict,
    RepairResult,
    ResourceState,
)
from wsus_manager.services.service_orchestrator import ServiceOrchestrator
from wsus_manager.system_maintenance.maintenance_engine import MaintenanceEngine

logger = logging.getLogger('wsus_manager.health_aggregator')

STATE_DESCRIPTIONS = {
    ResourceState.STOPPED: "stopped",
    ResourceState.START_PENDING: "still starting",
    ResourceState.STOP_PENDING: "stopping",
    ResourceState.NOT_FOUND: "not installed",
    ResourceState.UNKNOWN: "in an unknown state",
}


class HealthAggregator:
    """Stateless health checks over the service set and SUSDB."""

    def __init__(
        self,
        orchestrator: ServiceOrchestrator,
        engine: Optional[MaintenanceEngine] = None,
        settings: Optional[HealthSettings] = None,
        max_size_gb: float = 10.0,
        content_path: Optional[str] = None,
        repair_start_timeout: float = 10.0
    ):
        self.orchestrator = orchestrator
        self.engine = engine
        self.settings = settings or HealthSettings()
        self.max_size_gb = max_size_gb
        self.content_path = content_path
        self.repair_start_timeout = repair_start_timeout

    @classmethod
    def from_config(
        cls,
        config: WsusConfig,
        orchestrator: Optional[ServiceOrchestrator] = None,
        engine: Optional[MaintenanceEngine] = None
    ) -> 'HealthAggregator':
        return cls(
            orchestrator or ServiceOrchestrator.from_config(config),
            engine or MaintenanceEngine.from_config(config),
            config.health,
            max_size_gb=config.sql.max_size_gb,
            content_path=config.transfer.content_path,
            repair_start_timeout=config.service_control.repair_start_timeout
        )

    async def check_health(self, include_database: bool = True) -> HealthVerdict:
        """Run every check and return the aggregated verdict."""
        verdict = HealthVerdict()

        for definition in self.orchestrator.start_order():
            state = await self.orchestrator.query_state(definition.key)
            verdict.services[definition.display_name] = state

            if state != ResourceState.RUNNING:
                status = HealthStatus.UNHEALTHY if definition.required else HealthStatus.DEGRADED
                verdict.downgrade(status, f"{definition.display_name} is {STATE_DESCRIPTIONS.get(state, state.value)}")

        if include_database and self.engine is not None:
            verdict.database = await self._check_database(verdict)

        await self._check_disk_space(verdict)

        if verdict.is_healthy:
            logger.info(verdict.message)
        else:
            logger.warning(verdict.message)

        return verdict

    async def _check_database(self, verdict: HealthVerdict) -> DatabaseHealth:
        try:
            connected = await self.engine.test_connection()
        except Exception as e:
            logger.error(f"Database probe failed: {e}")
            verdict.downgrade(HealthStatus.UNHEALTHY, f"Database check failed: {e}")
            return DatabaseHealth(connected=False, message=str(e))

        if not connected:
            verdict.downgrade(HealthStatus.UNHEALTHY, "Database connection failed")
            return DatabaseHealth(connected=False, message="Connection failed")

        size_gb = await self.engine.get_size_gb()

        if self.max_size_gb > 0:
            used_percent = (size_gb / self.max_size_gb) * 100
            if used_percent >= self.settings.size_warning_percent:
                verdict.downgrade(
                    HealthStatus.DEGRADED,
                    f"Database size {size_gb:.2f} GB is {used_percent:.0f}% of the {self.max_size_gb:g} GB limit"
                )

        return DatabaseHealth(connected=True, size_gb=size_gb, message=f"Connected ({size_gb:.2f} GB)")

    async def _check_disk_space(self, verdict: HealthVerdict):
        if not self.content_path or self.settings.min_free_disk_gb <= 0:
            return

        free_gb = await asyncio.to_thread(available_space_gb, self.content_path)
        if free_gb is None:
            logger.warning(f"Could not determine free space for {self.content_path}")
            return

        if free_gb < self.settings.min_free_disk_gb:
            verdict.downgrade(
                HealthStatus.DEGRADED,
                f"Low disk space: {free_gb:.1f} GB free on the content drive "
                f"(minimum {self.settings.min_free_disk_gb:g} GB)"
            )

    async def repair_health(self) -> RepairResult:
        """Start every configured service that is not running.

        Running services are left alone and the database itself is never
        modified.
        """
        result = RepairResult()

        for definition in self.orchestrator.start_order():
            state = await self.orchestrator.query_state(definition.key)
            if state == ResourceState.RUNNING:
                continue

            logger.info(f"Repair: starting {definition.display_name}")
            if await self.orchestrator.start(definition.key, timeout=self.repair_start_timeout):
                result.services_started.append(definition.display_name)
            else:
                result.services_failed.append(definition.display_name)

        result.success = not result.services_failed
        if result.success:
            logger.info(result.message)
        else:
            logger.error(result.message)

        return result
