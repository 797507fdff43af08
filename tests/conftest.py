"""Pytest fixtures for wsus_manager tests."""

from pathlib import Path
from typing import List

import pytest

from tests.helpers import FakeServiceControl, FakeSqlExecutor, make_services
from wsus_manager.config import MaintenanceSettings, ServiceDefinition, TransferSettings
from wsus_manager.models import ResourceState
from wsus_manager.services.service_orchestrator import ServiceOrchestrator
from wsus_manager.system_maintenance.maintenance_engine import MaintenanceEngine


@pytest.fixture
def services() -> List[ServiceDefinition]:
    return make_services()


@pytest.fixture
def control() -> FakeServiceControl:
    return FakeServiceControl({
        'MSSQL$SQLEXPRESS': ResourceState.RUNNING,
        'W3SVC': ResourceState.RUNNING,
        'WSUSService': ResourceState.RUNNING,
    })


@pytest.fixture
def orchestrator(services, control) -> ServiceOrchestrator:
    return ServiceOrchestrator(services, control, poll_interval=0.01, settle_delay=0)


@pytest.fixture
def executor() -> FakeSqlExecutor:
    return FakeSqlExecutor()


@pytest.fixture
def maintenance_settings() -> MaintenanceSettings:
    return MaintenanceSettings(batch_size=10000, batch_pause_seconds=0, progress_interval_rows=10000)


@pytest.fixture
def engine(executor, maintenance_settings) -> MaintenanceEngine:
    return MaintenanceEngine(executor, maintenance_settings)


@pytest.fixture
def transfer_settings(tmp_path: Path) -> TransferSettings:
    return TransferSettings(
        content_path=str(tmp_path / 'server'),
        allowed_roots=[str(tmp_path)],
        space_margin_gb=0,
        wsusutil_path=str(tmp_path / 'wsusutil.exe')
    )
