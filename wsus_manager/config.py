"""
WSUS Manager Configuration
Loads the YAML configuration with maintenance defaults and exposes it as typed
settings. The service table lives here as data so callers (and tests) can
substitute their own resource set.
"""

import copy
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

import yaml

from wsus_manager.models import ServiceRole

logger = logging.getLogger('wsus_manager.config')

DEFAULT_CONFIG_PATH = r"C:\WSUS\Config\wsus_manager.yaml"


def sql_service_name(server_instance: str) -> str:
    """Map a SQL Server instance (e.g. .\\SQLEXPRESS) to its Windows service name."""
    instance = server_instance.split('\\')[-1] if '\\' in server_instance else 'MSSQLSERVER'
    if instance.upper() == 'MSSQLSERVER':
        return 'MSSQLSERVER'
    return f"MSSQL${instance}"


def get_default_config() -> Dict[str, Any]:
    """Return default WSUS Manager configuration."""
    return {
        'sql': {
            'server_instance': '.\\SQLEXPRESS',
            'database': 'SUSDB',
            'driver': 'ODBC Driver 18 for SQL Server',
            'trusted_connection': True,
            'trust_server_certificate': True,
            'connect_timeout': 15,
            'command_timeout': 30,
            'max_size_gb': 10.0
        },
        'services': [
            {
                'key': 'database',
                'service_name': 'MSSQL$SQLEXPRESS',
                'display_name': 'SQL Server Express',
                'role': 'database',
                'start_timeout': 60,
                'stop_timeout': 60
            },
            {
                'key': 'web',
                'service_name': 'W3SVC',
                'display_name': 'IIS',
                'role': 'web',
                'start_timeout': 30,
                'stop_timeout': 60
            },
            {
                'key': 'update',
                'service_name': 'WSUSService',
                'display_name': 'WSUS Service',
                'role': 'update',
                'start_timeout': 60,
                'stop_timeout': 30
            }
        ],
        'service_control': {
            'poll_interval_seconds': 1.0,
            'settle_delay_seconds': 1.0,
            'kill_wait_seconds': 5.0,
            'repair_start_timeout': 10.0
        },
        'maintenance': {
            'batch_size': 10000,
            'batch_pause_seconds': 1.0,
            'progress_interval_rows': 50000,
            'fragmentation_threshold': 10,
            'rebuild_threshold': 30,
            'min_page_count': 1000,
            'shrink_target_free_percent': 10
        },
        'health': {
            'size_warning_percent': 90.0,
            'min_free_disk_gb': 5.0
        },
        'transfer': {
            'content_path': 'C:\\WSUS',
            'allowed_roots': ['C:\\', 'D:\\'],
            'content_folder': 'WsusContent',
            'manifest_name': 'transfer_manifest.json',
            'space_margin_gb': 1.0,
            'wsusutil_path': 'C:\\Program Files\\Update Services\\Tools\\wsusutil.exe'
        },
        'logging': {
            'level': 'INFO',
            'log_file': None
        }
    }


def _merge(base: Dict[str, Any], override: Dict[str, Any]) -> Dict[str, Any]:
    merged = copy.deepcopy(base)
    for key, value in (override or {}).items():
        if isinstance(value, dict) and isinstance(merged.get(key), dict):
            merged[key] = _merge(merged[key], value)
        else:
            merged[key] = value
    return merged


@dataclass
class ServiceDefinition:
    key: str
    service_name: str
    display_name: str
    role: ServiceRole
    start_timeout: float = 60.0
    stop_timeout: float = 60.0
    required: bool = True

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'ServiceDefinition':
        return cls(
            key=data['key'],
            service_name=data['service_name'],
            display_name=data.get('display_name', data['service_name']),
            role=ServiceRole(data.get('role', data['key'])),
            start_timeout=float(data.get('start_timeout', 60)),
            stop_timeout=float(data.get('stop_timeout', 60)),
            required=bool(data.get('required', True))
        )


@dataclass
class SqlSettings:
    server_instance: str = '.\\SQLEXPRESS'
    database: str = 'SUSDB'
    driver: str = 'ODBC Driver 18 for SQL Server'
    trusted_connection: bool = True
    trust_server_certificate: bool = True
    connect_timeout: int = 15
    command_timeout: int = 30
    max_size_gb: float = 10.0


@dataclass
class ServiceControlSettings:
    poll_interval_seconds: float = 1.0
    settle_delay_seconds: float = 1.0
    kill_wait_seconds: float = 5.0
    repair_start_timeout: float = 10.0


@dataclass
class MaintenanceSettings:
    batch_size: int = 10000
    batch_pause_seconds: float = 1.0
    progress_interval_rows: int = 50000
    fragmentation_threshold: float = 10
    rebuild_threshold: float = 30
    min_page_count: int = 1000
    shrink_target_free_percent: int = 10


@dataclass
class HealthSettings:
    size_warning_percent: float = 90.0
    min_free_disk_gb: float = 5.0


@dataclass
class TransferSettings:
    content_path: str = 'C:\\WSUS'
    allowed_roots: List[str] = field(default_factory=lambda: ['C:\\', 'D:\\'])
    content_folder: str = 'WsusContent'
    manifest_name: str = 'transfer_manifest.json'
    space_margin_gb: float = 1.0
    wsusutil_path: str = 'C:\\Program Files\\Update Services\\Tools\\wsusutil.exe'


@dataclass
class LoggingSettings:
    level: str = 'INFO'
    log_file: Optional[str] = None


@dataclass
class WsusConfig:
    sql: SqlSettings = field(default_factory=SqlSettings)
    services: List[ServiceDefinition] = field(default_factory=list)
    service_control: ServiceControlSettings = field(default_factory=ServiceControlSettings)
    maintenance: MaintenanceSettings = field(default_factory=MaintenanceSettings)
    health: HealthSettings = field(default_factory=HealthSettings)
    transfer: TransferSettings = field(default_factory=TransferSettings)
    logging: LoggingSettings = field(default_factory=LoggingSettings)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> 'WsusConfig':
        merged = _merge(get_default_config(), data)
        sql = SqlSettings(**merged['sql'])

        services = [ServiceDefinition.from_dict(s) for s in merged['services']]
        # Follow a non-default SQL instance unless the table was overridden explicitly
        if 'services' not in (data or {}):
            for service in services:
                if service.role == ServiceRole.DATABASE:
                    service.service_name = sql_service_name(sql.server_instance)

        return cls(
            sql=sql,
            services=services,
            service_control=ServiceControlSettings(**merged['service_control']),
            maintenance=MaintenanceSettings(**merged['maintenance']),
            health=HealthSettings(**merged['health']),
            transfer=TransferSettings(**merged['transfer']),
            logging=LoggingSettings(**merged['logging'])
        )

    def service(self, key: str) -> Optional[ServiceDefinition]:
        return next((s for s in self.services if s.key == key), None)


def load_config(config_path: Optional[Union[str, Path]] = None) -> WsusConfig:
    """Load configuration from a YAML file, falling back to defaults."""
    path = Path(config_path or DEFAULT_CONFIG_PATH)
    try:
        with open(path, 'r') as f:
            data = yaml.safe_load(f) or {}
            logger.info(f"Configuration loaded from {path}")
    except FileNotFoundError:
        logger.warning(f"Config file {path} not found, using defaults")
        data = {}
    except yaml.YAMLError as e:
        logger.error(f"Error parsing config {path}: {e}")
        data = {}

    if not isinstance(data, dict):
        logger.error(f"Config file {path} does not contain a mapping, using defaults")
        data = {}

    return WsusConfig.from_dict(data)
