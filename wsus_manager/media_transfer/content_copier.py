"""
Copies the WSUS content tree between the server and removable media.

Files are written under a temporary name and moved into place, so a copy
interrupted part-way never leaves a truncated file that a later run would
treat as complete. Files whose size and modification time already match at
the destination are skipped.
"""

import asyncio
import logging
import os
import shutil
import time
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Tuple

from wsus_manager.exceptions import TransferCancelledError, TransferError
from wsus_manager.models import ProgressEvent, ProgressSink, report_progress

logger = logging.getLogger('wsus_manager.content_copier')

PARTIAL_SUFFIX = '.partial'
PROGRESS_EVERY_FILES = 50


@dataclass
class CopyStats:
    files_copied: int = 0
    files_skipped: int = 0
    bytes_copied: int = 0


class ContentCopier:
    """Incremental, cancellable directory copy."""

    def __init__(self, stage: str = 'content'):
        self.stage = stage

    def plan(self, source: Path, max_age_days: Optional[int] = None) -> List[Tuple[Path, int]]:
        """Relative paths and sizes of the files to copy, oldest filtered out by `max_age_days`."""
        cutoff = time.time() - max_age_days * 86400 if max_age_days else None
        files = []

        for dirpath, _, filenames in os.walk(source):
            for filename in filenames:
                if filename.endswith(PARTIAL_SUFFIX):
                    continue
                full_path = Path(dirpath) / filename
                stat = full_path.stat()
                if cutoff is not None and stat.st_mtime < cutoff:
                    continue
                files.append((full_path.relative_to(source), stat.st_size))

        files.sort()
        return files

    @staticmethod
    def _unchanged(source_file: Path, target_file: Path) -> bool:
        if not target_file.exists():
            return False
        source_stat = source_file.stat()
        target_stat = target_file.stat()
        return (source_stat.st_size == target_stat.st_size
                and int(source_stat.st_mtime) == int(target_stat.st_mtime))

    @staticmethod
    def _copy_file(source_file: Path, target_file: Path):
        target_file.parent.mkdir(parents=True, exist_ok=True)
        partial = target_file.with_name(target_file.name + PARTIAL_SUFFIX)
        try:
            shutil.copy2(source_file, partial)
            os.replace(partial, target_file)
        except OSError:
            if partial.exists():
                partial.unlink()
            raise

    async def copy_tree(
        self,
        source: Path,
        destination: Path,
        max_age_days: Optional[int] = None,
        progress: Optional[ProgressSink] = None,
        cancel_event: Optional[asyncio.Event] = None,
        stats: Optional[CopyStats] = None
    ) -> CopyStats:
        """Copy `source` into `destination`, raising TransferCancelledError when cancelled.

        Counts accumulate in `stats` when given, so a caller still sees how far
        an interrupted copy got.
        """
        source = Path(source)
        destination = Path(destination)
        files = await asyncio.to_thread(self.plan, source, max_age_days)
        total_bytes = sum(size for _, size in files)
        stats = stats if stats is not None else CopyStats()

        logger.info(f"Copying {len(files)} file(s) ({total_bytes} bytes) from {source} to {destination}")
        destination.mkdir(parents=True, exist_ok=True)

        for index, (relative, size) in enumerate(files, start=1):
            if cancel_event is not None and cancel_event.is_set():
                raise TransferCancelledError(
                    f"Copy cancelled after {stats.files_copied} of {len(files)} file(s)")

            source_file = source / relative
            target_file = destination / relative

            try:
                if await asyncio.to_thread(self._unchanged, source_file, target_file):
                    stats.files_skipped += 1
                else:
                    await asyncio.to_thread(self._copy_file, source_file, target_file)
                    stats.files_copied += 1
                    stats.bytes_copied += size
            except OSError as e:
                raise TransferError(f"Failed to copy {relative}: {e}") from e

            if index % PROGRESS_EVERY_FILES == 0 or index == len(files):
                report_progress(progress, ProgressEvent(
                    stage=self.stage,
                    message=f"Copied {index} of {len(files)} file(s)",
                    completed=index,
                    total=len(files)
                ))

        logger.info(f"Copy finished: {stats.files_copied} copied, {stats.files_skipped} unchanged")
        return stats
