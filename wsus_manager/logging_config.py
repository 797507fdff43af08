"""
WSUS Manager Logging
Installs the stdout/file handlers used by every wsus_manager.* logger.
"""

import logging
import sys
from pathlib import Path
from typing import Optional, Union

LOG_FORMAT = '%(asctime)s - %(name)s - %(levelname)s - %(message)s'


def configure_logging(log_file: Optional[Union[str, Path]] = None, level: Union[str, int] = logging.INFO):
    """Configure root logging with a stdout handler and an optional log file."""
    handlers = [logging.StreamHandler(sys.stdout)]

    if log_file:
        log_path = Path(log_file)
        try:
            log_path.parent.mkdir(parents=True, exist_ok=True)
            handlers.append(logging.FileHandler(log_path))
        except OSError as e:
            # Keep console logging when the log directory is not writable
            print(f"Could not open log file {log_path}: {e}", file=sys.stderr)

    if isinstance(level, str):
        level = getattr(logging, level.upper(), logging.INFO)

    logging.basicConfig(
        level=level,
        format=LOG_FORMAT,
        handlers=handlers,
        force=True
    )
