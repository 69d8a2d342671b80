"""
Filesystem preparation helpers.

Ensures the directories every later bootstrap step writes into exist before
they are needed: builds, logs, the store parent and the TLS cache.
"""

from pathlib import Path
from typing import List, Union

from core import constants
from .config import RuntimeConfig
from .errors import FilesystemError


def ensure_directory(path: Union[str, Path], mode: int = constants.DIRECTORY_MODE) -> bool:
    """
    Create a directory and any missing ancestors.

    Args:
        path: Directory to create
        mode: Permission bits for the new directory (masked by umask)

    Returns:
        True when the directory was created, False when it already existed

    Raises:
        FilesystemError: If the path exists as a non-directory or cannot be created
    """
    target = Path(path)
    if target.is_dir():
        return False
    if target.exists():
        raise FilesystemError(f"Cannot create directory {target}: path exists and is not a directory")

    try:
        target.mkdir(mode=mode, parents=True, exist_ok=True)
    except (OSError, PermissionError) as e:
        raise FilesystemError(f"Cannot create directory {target}: {e}") from e
    return True


def required_directories(config: RuntimeConfig) -> List[Path]:
    """Return the directories bootstrap needs, in creation order."""
    return [
        config.builds_dir,
        config.log_dir,
        config.store_path.parent,
        config.autotls_dir,
    ]


def prepare_filesystem(config: RuntimeConfig) -> List[Path]:
    """Ensure every required directory exists and return the ones created."""
    created = []
    for directory in required_directories(config):
        if ensure_directory(directory):
            created.append(directory)
    return created
