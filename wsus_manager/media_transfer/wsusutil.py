"""
Wrapper for wsusutil.exe, the WSUS command-line tool. Output is relayed
line by line as progress while the command runs.
"""

import asyncio
import logging
from typing import List, Optional

from wsus_manager.models import ProgressEvent, ProgressSink, report_progress

logger = logging.getLogger('wsus_manager.wsusutil')


class WsusUtil:
    def __init__(self, executable_path: str):
        self.executable_path = executable_path

    async def run(
        self,
        args: List[str],
        progress: Optional[ProgressSink] = None,
        cancel_event: Optional[asyncio.Event] = None
    ) -> bool:
        """Run wsusutil with `args`; True when it exits with code 0."""
        command = ' '.join(['wsusutil'] + args)
        try:
            process = await asyncio.create_subprocess_exec(
                self.executable_path, *args,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT
            )
        except OSError as e:
            logger.error(f"Could not run {self.executable_path}: {e}")
            return False

        logger.info(f"Running {command}")

        try:
            async for raw_line in process.stdout:
                line = raw_line.decode('utf-8', errors='replace').strip()
                if line:
                    report_progress(progress, ProgressEvent(stage='wsusutil', message=line))

                if cancel_event is not None and cancel_event.is_set():
                    logger.warning(f"{command} cancelled")
                    return False

            returncode = await process.wait()
        finally:
            # Cancelled, or the output stream failed: never leave the child running
            if process.returncode is None:
                process.kill()
                await process.wait()

        if returncode != 0:
            logger.error(f"{command} failed with exit code {returncode}")
            return False

        logger.info(f"{command} completed")
        return True

    async def reset(
        self,
        progress: Optional[ProgressSink] = None,
        cancel_event: Optional[asyncio.Event] = None
    ) -> bool:
        """Re-verify every content file against the database and requeue missing downloads."""
        return await self.run(['reset'], progress, cancel_event)
