"""
WSUS Manager Service Control
Platform access to OS-level services: query state, start, stop and force
termination of the owning process. Windows uses sc.exe and psutil's service
API; Linux hosts (lab and CI machines) use systemd.
"""

import asyncio
import logging
import sys
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

import psutil

from wsus_manager.exceptions import ServiceControlError, ServiceNotFoundError
from wsus_manager.models import ResourceState

logger = logging.getLogger('wsus_manager.service_control')

COMMAND_TIMEOUT_SECONDS = 30.0

WINDOWS_STATES = {
    'running': ResourceState.RUNNING,
    'stopped': ResourceState.STOPPED,
    'start_pending': ResourceState.START_PENDING,
    'stop_pending': ResourceState.STOP_PENDING,
}

SYSTEMD_STATES = {
    'active': ResourceState.RUNNING,
    'reloading': ResourceState.RUNNING,
    'inactive': ResourceState.STOPPED,
    'failed': ResourceState.STOPPED,
    'activating': ResourceState.START_PENDING,
    'deactivating': ResourceState.STOP_PENDING,
}


async def run_command(args: List[str], timeout: float = COMMAND_TIMEOUT_SECONDS) -> Dict[str, Any]:
    """Run a service manager command and capture its output."""
    try:
        process = await asyncio.create_subprocess_exec(
            *args,
            stdout=asyncio.subprocess.PIPE,
            stderr=asyncio.subprocess.PIPE
        )
    except OSError as e:
        return {'returncode': -1, 'stdout': '', 'stderr': str(e)}

    try:
        stdout, stderr = await asyncio.wait_for(process.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        process.kill()
        await process.wait()
        raise ServiceControlError(f"Command timed out after {timeout}s: {' '.join(args)}")

    return {
        'returncode': process.returncode,
        'stdout': stdout.decode('utf-8', errors='replace') if stdout else '',
        'stderr': stderr.decode('utf-8', errors='replace') if stderr else ''
    }


def parse_sc_stoppable(output: str) -> bool:
    """Read the accepted-controls line of `sc query` output."""
    text = output.upper()
    if 'NOT_STOPPABLE' in text:
        return False
    return 'STOPPABLE' in text


def parse_systemctl_show(output: str) -> Dict[str, str]:
    properties = {}
    for line in output.splitlines():
        if '=' in line:
            key, _, value = line.partition('=')
            properties[key.strip()] = value.strip()
    return properties


class ServiceControl:
    """Capability to query and drive named OS services."""

    def __init__(self, kill_wait_seconds: float = 5.0):
        self.kill_wait_seconds = kill_wait_seconds

    async def query(self, name: str) -> ResourceState:
        raise NotImplementedError

    async def start(self, name: str):
        raise NotImplementedError

    async def stop(self, name: str):
        raise NotImplementedError

    async def can_stop(self, name: str) -> bool:
        raise NotImplementedError

    async def get_pid(self, name: str) -> Optional[int]:
        raise NotImplementedError

    async def kill(self, name: str):
        """Terminate the process backing a service."""
        pid = await self.get_pid(name)
        if not pid:
            logger.warning(f"No process found for service {name}")
            return

        def _kill():
            process = psutil.Process(pid)
            process.kill()
            process.wait(timeout=self.kill_wait_seconds)

        await asyncio.to_thread(_kill)
        logger.warning(f"Killed process {pid} backing service {name}")


class WindowsServiceControl(ServiceControl):
    """Service control through the Windows service control manager."""

    def _service_info(self, name: str) -> Dict[str, Any]:
        try:
            return psutil.win_service_get(name).as_dict()
        except psutil.NoSuchProcess:
            raise ServiceNotFoundError(name)

    async def query(self, name: str) -> ResourceState:
        info = await asyncio.to_thread(self._service_info, name)
        return WINDOWS_STATES.get(info.get('status'), ResourceState.UNKNOWN)

    async def start(self, name: str):
        result = await run_command(['sc.exe', 'start', name])
        if result['returncode'] != 0:
            raise ServiceControlError(f"sc start {name} failed: {result['stdout'].strip() or result['stderr'].strip()}")

    async def stop(self, name: str):
        result = await run_command(['sc.exe', 'stop', name])
        if result['returncode'] != 0:
            raise ServiceControlError(f"sc stop {name} failed: {result['stdout'].strip() or result['stderr'].strip()}")

    async def can_stop(self, name: str) -> bool:
        result = await run_command(['sc.exe', 'query', name])
        return result['returncode'] == 0 and parse_sc_stoppable(result['stdout'])

    async def get_pid(self, name: str) -> Optional[int]:
        info = await asyncio.to_thread(self._service_info, name)
        return info.get('pid')


class SystemdServiceControl(ServiceControl):
    """Service control through systemctl."""

    async def _show(self, name: str) -> Dict[str, str]:
        result = await run_command([
            'systemctl', 'show', name,
            '--property=LoadState,ActiveState,MainPID,CanStop'
        ])
        if result['returncode'] != 0:
            raise ServiceControlError(f"systemctl show {name} failed: {result['stderr'].strip()}")

        properties = parse_systemctl_show(result['stdout'])
        if properties.get('LoadState') == 'not-found':
            raise ServiceNotFoundError(name)
        return properties

    async def query(self, name: str) -> ResourceState:
        properties = await self._show(name)
        return SYSTEMD_STATES.get(properties.get('ActiveState', ''), ResourceState.UNKNOWN)

    async def start(self, name: str):
        result = await run_command(['systemctl', 'start', '--no-block', name])
        if result['returncode'] != 0:
            raise ServiceControlError(f"systemctl start {name} failed: {result['stderr'].strip()}")

    async def stop(self, name: str):
        result = await run_command(['systemctl', 'stop', '--no-block', name])
        if result['returncode'] != 0:
            raise ServiceControlError(f"systemctl stop {name} failed: {result['stderr'].strip()}")

    async def can_stop(self, name: str) -> bool:
        properties = await self._show(name)
        return properties.get('CanStop', 'yes') == 'yes'

    async def get_pid(self, name: str) -> Optional[int]:
        properties = await self._show(name)
        pid = int(properties.get('MainPID', '0') or 0)
        return pid or None


def default_service_control(kill_wait_seconds: float = 5.0) -> ServiceControl:
    if sys.platform == 'win32':
        return WindowsServiceControl(kill_wait_seconds)
    return SystemdServiceControl(kill_wait_seconds)


@dataclass(frozen=True)
class ResourceHandle:
    """Stateless handle on one named service, built per call and discarded."""
    name: str
    control: ServiceControl

    async def query_state(self) -> ResourceState:
        return await self.control.query(self.name)

    async def start(self):
        await self.control.start(self.name)

    async def stop(self):
        await self.control.stop(self.name)

    async def can_stop(self) -> bool:
        return await self.control.can_stop(self.name)

    async def kill(self):
        await self.control.kill(self.name)
