"""
WSUS Manager Transfer Coordinator

Moves update content and a SUSDB backup between a connected WSUS server and
air-gapped ones through removable media.

Export writes:
    <destination>/WsusContent/...
    <destination>/SUSDB_<timestamp>.bak
    <destination>/transfer_manifest.json

Import copies the content back under the server's content path and, when the
media carries a backup, restores it with the update and web services stopped.
Every input is validated before anything is touched, and the manifest is only
marked complete once every step has succeeded.
"""

import asyncio
import json
import logging
from pathlib import Path
from typing import List, Optional

import aiofiles

from wsus_manager.config import TransferSettings, WsusConfig
from wsus_manager.exceptions import TransferCancelledError, TransferError, UnsafePathError
from wsus_manager.media_transfer.content_copier import ContentCopier, CopyStats
from wsus_manager.media_transfer.database_backup import DatabaseBackup, find_backup
from wsus_manager.media_transfer.path_validation import BYTES_PER_GB, available_space_gb, validate_path
from wsus_manager.media_transfer.wsusutil import WsusUtil
from wsus_manager.models import (
    ProgressEvent,
    ProgressSink,
    ServiceRole,
    TransferDirection,
    TransferManifest,
    TransferMode,
    TransferResult,
    report_progress,
)
from wsus_manager.services.service_orchestrator import ServiceOrchestrator
from wsus_manager.system_maintenance.maintenance_engine import MaintenanceEngine

logger = logging.getLogger('wsus_manager.transfer_coordinator')

# Services that hold SUSDB open and must be down while it is replaced
RESTORE_STOP_ROLES = (ServiceRole.UPDATE, ServiceRole.WEB)


class TransferCoordinator:
    """Export to and import from removable media."""

    def __init__(
        self,
        orchestrator: ServiceOrchestrator,
        engine: MaintenanceEngine,
        settings: Optional[TransferSettings] = None,
        backup: Optional[DatabaseBackup] = None,
        copier: Optional[ContentCopier] = None,
        wsusutil: Optional[WsusUtil] = None
    ):
        self.orchestrator = orchestrator
        self.engine = engine
        self.settings = settings or TransferSettings()
        self.backup = backup or DatabaseBackup(engine.executor, engine.database)
        self.copier = copier or ContentCopier()
        self.wsusutil = wsusutil or WsusUtil(self.settings.wsusutil_path)

    @classmethod
    def from_config(
        cls,
        config: WsusConfig,
        orchestrator: Optional[ServiceOrchestrator] = None,
        engine: Optional[MaintenanceEngine] = None
    ) -> 'TransferCoordinator':
        return cls(
            orchestrator or ServiceOrchestrator.from_config(config),
            engine or MaintenanceEngine.from_config(config),
            config.transfer
        )

    def _validate(self, *paths: str):
        for path in paths:
            validate_path(path, self.settings.allowed_roots)

    def _content_source(self, folder: Path) -> Path:
        content = folder / self.settings.content_folder
        return content if content.is_dir() else folder

    async def write_manifest(self, folder: Path, manifest: TransferManifest):
        async with aiofiles.open(Path(folder) / self.settings.manifest_name, 'w') as f:
            await f.write(json.dumps(manifest.to_dict(), indent=2))

    async def read_manifest(self, folder: Path) -> Optional[TransferManifest]:
        manifest_path = Path(folder) / self.settings.manifest_name
        if not manifest_path.exists():
            return None

        try:
            async with aiofiles.open(manifest_path, 'r') as f:
                return TransferManifest.from_dict(json.loads(await f.read()))
        except (ValueError, KeyError) as e:
            raise TransferError(f"Unreadable transfer manifest {manifest_path}: {e}") from e

    async def _require_database(self):
        if not await self.engine.test_connection():
            raise TransferError("Database is not reachable")

    async def _check_capacity(self, destination: Path, required_bytes: int):
        required_gb = required_bytes / BYTES_PER_GB + self.settings.space_margin_gb
        available = await asyncio.to_thread(available_space_gb, str(destination))
        if available is None:
            raise TransferError(f"Cannot determine free space at {destination}")
        if available < required_gb:
            raise TransferError(
                f"Insufficient space at {destination}: {available:.2f} GB free, {required_gb:.2f} GB required")

    def _backup_for_import(self, source: Path, exported: Optional[TransferManifest]) -> Optional[Path]:
        """The backup an export recorded in its manifest; the newest .bak only for media without one."""
        if exported is None:
            return find_backup(source)
        if not exported.database_backup:
            return None

        backup_file = source / Path(exported.database_backup).name
        if not backup_file.is_file():
            raise TransferError(f"Database backup {exported.database_backup} listed in the manifest is missing")
        return backup_file

    @staticmethod
    def _check_cancel(cancel_event: Optional[asyncio.Event]):
        if cancel_event is not None and cancel_event.is_set():
            raise TransferCancelledError("Transfer cancelled")

    def _fail(self, manifest: TransferManifest, error: Exception, progress: Optional[ProgressSink],
              files_copied: int = 0, bytes_copied: int = 0) -> TransferResult:
        verb = manifest.direction.value.capitalize()
        if isinstance(error, TransferCancelledError):
            message = f"{verb} cancelled: {error}"
            logger.warning(message)
        else:
            message = f"{verb} failed: {error}"
            logger.error(message)

        report_progress(progress, ProgressEvent(stage=manifest.direction.value, message=message))
        return TransferResult(
            success=False,
            manifest=manifest,
            files_copied=files_copied,
            bytes_copied=bytes_copied,
            message=message
        )

    async def export_to_media(
        self,
        source_content_path: str,
        destination_path: str,
        mode: TransferMode = TransferMode.FULL,
        max_age_days: Optional[int] = None,
        include_database: bool = True,
        progress: Optional[ProgressSink] = None,
        cancel_event: Optional[asyncio.Event] = None
    ) -> TransferResult:
        """Copy content (all, or only files changed within `max_age_days`) and a backup to media."""
        manifest = TransferManifest(
            direction=TransferDirection.EXPORT,
            source_path=source_content_path,
            destination_path=destination_path,
            mode=mode,
            max_age_days=max_age_days if mode == TransferMode.DIFFERENTIAL else None
        )

        try:
            self._validate(source_content_path, destination_path)
            if not Path(source_content_path).is_dir():
                raise TransferError(f"Source path does not exist: {source_content_path}")
            if mode == TransferMode.DIFFERENTIAL and (not max_age_days or max_age_days <= 0):
                raise TransferError("Differential export requires a positive max_age_days")
        except (UnsafePathError, TransferError) as e:
            return self._fail(manifest, e, progress)

        stats = CopyStats()
        try:
            destination = Path(destination_path)
            content_source = self._content_source(Path(source_content_path))
            content_target = destination / self.settings.content_folder

            logger.info(f"Starting {mode.value} export to {destination}")
            report_progress(progress, ProgressEvent(stage='export', message=f"Starting export to {destination}"))

            destination.mkdir(parents=True, exist_ok=True)

            files = await asyncio.to_thread(self.copier.plan, content_source, manifest.max_age_days)
            required_bytes = sum(size for _, size in files)

            if include_database:
                await self._require_database()
                required_bytes += int(await self.engine.get_size_gb() * BYTES_PER_GB)

            await self._check_capacity(destination, required_bytes)
            await self.write_manifest(destination, manifest)

            await self.copier.copy_tree(
                content_source, content_target, manifest.max_age_days, progress, cancel_event, stats)
            manifest.file_count = stats.files_copied + stats.files_skipped
            manifest.byte_count = sum(size for _, size in files)

            if include_database:
                self._check_cancel(cancel_event)
                backup_path = await self.backup.backup(destination, progress)
                manifest.database_backup = backup_path.name

            manifest.completed = True
            await self.write_manifest(destination, manifest)

        except Exception as e:
            return self._fail(manifest, e, progress, stats.files_copied, stats.bytes_copied)

        message = f"Export completed: {stats.files_copied} file(s) copied to {destination_path}"
        if manifest.database_backup:
            message += f", database backup {manifest.database_backup}"
        logger.info(message)
        report_progress(progress, ProgressEvent(stage='export', message=message))

        return TransferResult(
            success=True,
            manifest=manifest,
            files_copied=stats.files_copied,
            bytes_copied=stats.bytes_copied,
            message=message
        )

    async def import_from_media(
        self,
        source_path: str,
        destination_content_path: str,
        include_database: bool = True,
        progress: Optional[ProgressSink] = None,
        cancel_event: Optional[asyncio.Event] = None,
        reset_content: bool = False
    ) -> TransferResult:
        """Copy content from media and, when a backup is present, restore the database."""
        manifest = TransferManifest(
            direction=TransferDirection.IMPORT,
            source_path=source_path,
            destination_path=destination_content_path
        )

        try:
            self._validate(source_path, destination_content_path)
            if not Path(source_path).is_dir():
                raise TransferError(f"Import path does not exist: {source_path}")
        except (UnsafePathError, TransferError) as e:
            return self._fail(manifest, e, progress)

        stats = CopyStats()
        try:
            source = Path(source_path)
            destination = Path(destination_content_path)

            exported = await self.read_manifest(source)
            if exported is not None:
                if not exported.completed:
                    raise TransferError(f"Export at {source} is incomplete")
                manifest.mode = exported.mode
                manifest.max_age_days = exported.max_age_days

            logger.info(f"Starting import from {source}")
            report_progress(progress, ProgressEvent(stage='import', message=f"Starting import from {source}"))

            backup_file = self._backup_for_import(source, exported) if include_database else None
            content_source = self._content_source(source)
            content_target = destination / self.settings.content_folder

            files = await asyncio.to_thread(self.copier.plan, content_source)
            required_bytes = sum(size for _, size in files)
            if backup_file is not None:
                await self._require_database()
                required_bytes += backup_file.stat().st_size

            destination.mkdir(parents=True, exist_ok=True)
            await self._check_capacity(destination, required_bytes)

            await self.copier.copy_tree(content_source, content_target, None, progress, cancel_event, stats)
            manifest.file_count = stats.files_copied + stats.files_skipped
            manifest.byte_count = sum(size for _, size in files)

            if backup_file is not None:
                self._check_cancel(cancel_event)
                await self._restore_with_services_stopped(backup_file, progress)
                manifest.database_backup = backup_file.name

            if reset_content:
                self._check_cancel(cancel_event)
                report_progress(progress, ProgressEvent(stage='import', message="Running wsusutil reset..."))
                if not await self.wsusutil.reset(progress, cancel_event):
                    raise TransferError("wsusutil reset failed")

            manifest.completed = True

        except Exception as e:
            return self._fail(manifest, e, progress, stats.files_copied, stats.bytes_copied)

        message = f"Import completed: {stats.files_copied} file(s) copied to {destination_content_path}"
        if manifest.database_backup:
            message += f", database restored from {manifest.database_backup}"
        logger.info(message)
        report_progress(progress, ProgressEvent(stage='import', message=message))

        return TransferResult(
            success=True,
            manifest=manifest,
            files_copied=stats.files_copied,
            bytes_copied=stats.bytes_copied,
            message=message
        )

    def _restore_services(self) -> List[str]:
        return [d.key for d in self.orchestrator.stop_order() if d.role in RESTORE_STOP_ROLES]

    async def _restore_with_services_stopped(self, backup_file: Path, progress: Optional[ProgressSink]):
        keys = self._restore_services()

        for key in keys:
            report_progress(progress, ProgressEvent(stage='import', message=f"Stopping {key} service..."))
            if not await self.orchestrator.stop(key):
                await self._start_services(list(reversed(keys)))
                raise TransferError(f"Could not stop the {key} service before restore")

        try:
            await self.backup.restore(backup_file, progress)
        finally:
            started = await self._start_services(list(reversed(keys)))

        if not started:
            raise TransferError("Database restored but services failed to restart")

    async def _start_services(self, keys: List[str]) -> bool:
        ok = True
        for key in keys:
            if not await self.orchestrator.start(key):
                logger.error(f"Failed to restart {key} service after restore")
                ok = False
        return ok
