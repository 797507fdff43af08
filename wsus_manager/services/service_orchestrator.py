"""
WSUS Manager Service Orchestrator
Starts, stops and restarts the SQL Server, IIS and WSUS services in dependency
order with bounded, cancellable waits. Every operation reports a boolean
outcome; infrastructure faults are logged and never propagated.
"""

import asyncio
import logging
from typing import Dict, List, Optional, Sequence

from wsus_manager.config import ServiceDefinition, WsusConfig
from wsus_manager.exceptions import ServiceNotFoundError
from wsus_manager.models import ResourceState, ServiceRole, ServiceStatus
from wsus_manager.services.service_control import (
    ResourceHandle,
    ServiceControl,
    default_service_control,
)

logger = logging.getLogger('wsus_manager.service_orchestrator')

DEFAULT_TIMEOUT_SECONDS = 60.0

# The web host and update service both need the database reachable
ROLE_ORDER = {
    ServiceRole.DATABASE: 0,
    ServiceRole.WEB: 1,
    ServiceRole.UPDATE: 2,
}


class ServiceOrchestrator:
    """Drives the WSUS service set to a running or stopped state."""

    def __init__(
        self,
        services: Sequence[ServiceDefinition],
        control: Optional[ServiceControl] = None,
        poll_interval: float = 1.0,
        settle_delay: float = 1.0
    ):
        if not services:
            raise ValueError("At least one service definition is required")

        self.services: List[ServiceDefinition] = list(services)
        self.control = control or default_service_control()
        self.poll_interval = poll_interval
        self.settle_delay = settle_delay

    @classmethod
    def from_config(cls, config: WsusConfig, control: Optional[ServiceControl] = None) -> 'ServiceOrchestrator':
        settings = config.service_control
        return cls(
            config.services,
            control or default_service_control(settings.kill_wait_seconds),
            poll_interval=settings.poll_interval_seconds,
            settle_delay=settings.settle_delay_seconds
        )

    def resolve(self, name: str) -> Optional[ServiceDefinition]:
        """Find a definition by key, platform service name or display name."""
        wanted = name.lower()
        for definition in self.services:
            if wanted in (definition.key.lower(), definition.service_name.lower(), definition.display_name.lower()):
                return definition
        return None

    def start_order(self) -> List[ServiceDefinition]:
        return sorted(self.services, key=lambda s: ROLE_ORDER.get(s.role, len(ROLE_ORDER)))

    def stop_order(self) -> List[ServiceDefinition]:
        return list(reversed(self.start_order()))

    def _service_name(self, name: str) -> str:
        definition = self.resolve(name)
        return definition.service_name if definition else name

    def _handle(self, name: str) -> ResourceHandle:
        return ResourceHandle(self._service_name(name), self.control)

    async def query_state(self, name: str) -> ResourceState:
        """Current state of a service; a missing service is NOT_FOUND, never an exception."""
        handle = self._handle(name)
        try:
            return await handle.query_state()
        except ServiceNotFoundError:
            return ResourceState.NOT_FOUND
        except Exception as e:
            logger.warning(f"Could not query {handle.name}: {e}")
            return ResourceState.UNKNOWN

    async def wait_for_state(
        self,
        name: str,
        target: ResourceState,
        timeout: float,
        cancel_event: Optional[asyncio.Event] = None
    ) -> bool:
        """Poll until the service reaches `target`; False on timeout, cancellation or disappearance."""
        loop = asyncio.get_running_loop()
        deadline = loop.time() + timeout

        while True:
            state = await self.query_state(name)
            if state == target:
                return True
            if state == ResourceState.NOT_FOUND:
                return False
            if cancel_event is not None and cancel_event.is_set():
                logger.info(f"Wait for {self._service_name(name)} to reach {target.value} cancelled")
                return False

            remaining = deadline - loop.time()
            if remaining <= 0:
                return False
            await asyncio.sleep(min(self.poll_interval, remaining))

    async def start(
        self,
        name: str,
        timeout: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None
    ) -> bool:
        """Start a service and wait for it to report RUNNING."""
        definition = self.resolve(name)
        if timeout is None:
            timeout = definition.start_timeout if definition else DEFAULT_TIMEOUT_SECONDS
        handle = self._handle(name)

        try:
            state = await handle.query_state()
            if state == ResourceState.RUNNING:
                logger.info(f"{handle.name} is already running")
                return True

            if state != ResourceState.START_PENDING:
                logger.info(f"Starting {handle.name}...")
                await handle.start()

            success = await self.wait_for_state(name, ResourceState.RUNNING, timeout, cancel_event)
            if success:
                logger.info(f"{handle.name} started successfully")
            else:
                logger.warning(f"{handle.name} did not start within {timeout:g} seconds")
            return success

        except ServiceNotFoundError:
            logger.error(f"Cannot start {handle.name}: service not found")
            return False
        except Exception as e:
            logger.error(f"Failed to start {handle.name}: {e}")
            return False

    async def stop(
        self,
        name: str,
        force: bool = False,
        timeout: Optional[float] = None,
        cancel_event: Optional[asyncio.Event] = None
    ) -> bool:
        """Stop a service, escalating to killing its process when forced."""
        definition = self.resolve(name)
        if timeout is None:
            timeout = definition.stop_timeout if definition else DEFAULT_TIMEOUT_SECONDS
        handle = self._handle(name)

        try:
            state = await handle.query_state()
            if state == ResourceState.STOPPED:
                logger.info(f"{handle.name} is already stopped")
                return True

            logger.info(f"Stopping {handle.name}...")
            if state != ResourceState.STOP_PENDING:
                if await handle.can_stop():
                    await handle.stop()
                elif force:
                    await self._kill(handle)
                else:
                    logger.warning(f"{handle.name} cannot be stopped")
                    return False

            success = await self.wait_for_state(name, ResourceState.STOPPED, timeout, cancel_event)

            if not success and force and not (cancel_event and cancel_event.is_set()):
                logger.warning(f"{handle.name} did not stop gracefully, terminating its process")
                await self._kill(handle)
                success = await self.wait_for_state(name, ResourceState.STOPPED, timeout, cancel_event)

            if success:
                logger.info(f"{handle.name} stopped successfully")
            else:
                logger.warning(f"{handle.name} did not stop within {timeout:g} seconds")
            return success

        except ServiceNotFoundError:
            logger.error(f"Cannot stop {handle.name}: service not found")
            return False
        except Exception as e:
            logger.error(f"Failed to stop {handle.name}: {e}")
            return False

    async def _kill(self, handle: ResourceHandle):
        try:
            await handle.kill()
        except Exception as e:
            # Best effort; the state poll that follows decides the outcome
            logger.warning(f"Could not terminate process for {handle.name}: {e}")

    async def restart(self, name: str, force: bool = False) -> bool:
        """Stop, settle, start. Never starts a service whose stop failed."""
        logger.info(f"Restarting {self._service_name(name)}...")

        if not await self.stop(name, force=force):
            return False

        await asyncio.sleep(self.settle_delay)
        return await self.start(name)

    async def start_all(self) -> Dict[str, bool]:
        """Start every service in dependency order, attempting all of them."""
        logger.info("Starting all WSUS services...")

        results = {}
        for definition in self.start_order():
            results[definition.key] = await self.start(definition.key)

        self._log_summary(results, "started", "start")
        return results

    async def stop_all(self, force: bool = False) -> Dict[str, bool]:
        """Stop every service in reverse dependency order, attempting all of them."""
        logger.info("Stopping all WSUS services...")

        results = {}
        for definition in self.stop_order():
            results[definition.key] = await self.stop(definition.key, force=force)

        self._log_summary(results, "stopped", "stop")
        return results

    def _log_summary(self, results: Dict[str, bool], done: str, verb: str):
        failed = [key for key, ok in results.items() if not ok]
        if failed:
            logger.warning(f"Some services failed to {verb}: {', '.join(failed)}")
        else:
            logger.info(f"All WSUS services {done} successfully")

    async def get_status(self) -> Dict[str, ServiceStatus]:
        """Status of every configured service, keyed by definition key."""
        status = {}
        for definition in self.start_order():
            status[definition.key] = ServiceStatus(
                key=definition.key,
                service_name=definition.service_name,
                display_name=definition.display_name,
                state=await self.query_state(definition.key)
            )
        return status
