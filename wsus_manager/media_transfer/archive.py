"""
Browsing of the transfer archive kept on removable media. Exports are filed
as <root>/<YYYY>/<Month>/<backup folder>.
"""

import logging
import os
import re
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import List, Optional, Union

from wsus_manager.config import TransferSettings
from wsus_manager.media_transfer.database_backup import BACKUP_EXTENSION
from wsus_manager.media_transfer.path_validation import format_size

logger = logging.getLogger('wsus_manager.archive')

YEAR_PATTERN = re.compile(r'^\d{4}$')


@dataclass
class ArchiveBackup:
    name: str
    path: str
    size_bytes: int = 0
    has_database: bool = False
    has_content: bool = False

    @property
    def size_display(self) -> str:
        return format_size(self.size_bytes)


@dataclass
class ArchiveMonth:
    name: str
    path: str
    backups: List[ArchiveBackup] = field(default_factory=list)

    @property
    def backup_count(self) -> int:
        return len(self.backups)


@dataclass
class ArchiveYear:
    year: str
    path: str
    months: List[ArchiveMonth] = field(default_factory=list)


@dataclass
class BackupInfo:
    name: str
    full_path: str
    size_bytes: int
    created: datetime

    @property
    def size_display(self) -> str:
        return format_size(self.size_bytes)


def _directory_size(path: Path) -> int:
    total = 0
    for dirpath, _, filenames in os.walk(path):
        for filename in filenames:
            try:
                total += (Path(dirpath) / filename).stat().st_size
            except OSError:
                continue
    return total


def _subdirectories(path: Path) -> List[Path]:
    try:
        return [p for p in path.iterdir() if p.is_dir()]
    except OSError as e:
        logger.warning(f"Could not list {path}: {e}")
        return []


def list_archive(root: Union[str, Path], content_folder: Optional[str] = None) -> List[ArchiveYear]:
    """Years newest first, months by name, backups newest first."""
    content_folder = content_folder or TransferSettings.content_folder
    root = Path(root)
    if not root.is_dir():
        return []

    years = []
    year_dirs = sorted(
        (p for p in _subdirectories(root) if YEAR_PATTERN.match(p.name)),
        key=lambda p: p.name,
        reverse=True
    )

    for year_dir in year_dirs:
        year = ArchiveYear(year=year_dir.name, path=str(year_dir))

        for month_dir in sorted(_subdirectories(year_dir), key=lambda p: p.name):
            month = ArchiveMonth(name=month_dir.name, path=str(month_dir))

            for backup_dir in sorted(_subdirectories(month_dir), key=lambda p: p.name, reverse=True):
                month.backups.append(ArchiveBackup(
                    name=backup_dir.name,
                    path=str(backup_dir),
                    size_bytes=_directory_size(backup_dir),
                    has_database=any(backup_dir.glob(f'*{BACKUP_EXTENSION}')),
                    has_content=(backup_dir / content_folder).is_dir()
                ))

            year.months.append(month)

        years.append(year)

    return years


def list_backups(path: Union[str, Path]) -> List[BackupInfo]:
    """Every .bak file under `path`, newest first."""
    path = Path(path)
    if not path.is_dir():
        return []

    backups = []
    for backup in path.rglob(f'*{BACKUP_EXTENSION}'):
        if not backup.is_file():
            continue
        stat = backup.stat()
        backups.append(BackupInfo(
            name=backup.name,
            full_path=str(backup),
            size_bytes=stat.st_size,
            created=datetime.fromtimestamp(stat.st_mtime)
        ))

    backups.sort(key=lambda b: b.created, reverse=True)
    return backups
