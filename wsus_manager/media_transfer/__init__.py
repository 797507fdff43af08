"""Export to and import from removable media for air-gapped servers."""

from .archive import list_archive, list_backups
from .path_validation import is_safe_path, validate_path
from .transfer_coordinator import TransferCoordinator

__all__ = ['TransferCoordinator', 'list_archive', 'list_backups', 'is_safe_path', 'validate_path']
