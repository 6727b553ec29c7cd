"""Shared helpers for the tabpilot core modules.

Corruption-safe JSON persistence (used for proxy health data) and
small filesystem utilities used by the session manager.
"""

import json
import logging
import os
import shutil
from typing import Any, Dict, Optional

logger = logging.getLogger(__name__)


def safe_json_read(
    filepath: str, max_backups: int = 3,
) -> Optional[Dict[str, Any]]:
    """Read JSON, falling back to ``<file>.backup.N`` when corrupted.

    Args:
        filepath: Path to the primary JSON file.
        max_backups: Number of backup generations to try.

    Returns:
        The parsed object, or ``None`` if nothing readable was found.
    """
    paths = [filepath] + [
        f"{filepath}.backup.{i}"
        for i in range(1, max_backups + 1)
    ]
    for path in paths:
        if not os.path.exists(path):
            continue
        try:
            with open(path, "r", encoding="utf-8") as fh:
                data = json.load(fh)
        except (OSError, ValueError) as exc:
            logger.debug("Unreadable JSON %s: %s", path, exc)
            continue
        if path != filepath:
            logger.warning(
                "[RECOVERY] %s was unreadable, using %s", filepath, path,
            )
        return data
    return None


def safe_json_write(
    filepath: str,
    data: Dict[str, Any],
    max_backups: int = 3,
) -> bool:
    """Atomically write JSON while keeping rotated backups.

    The current file becomes ``backup.1`` (older generations shift
    up), the payload goes to a ``.tmp`` file which is re-read for
    validation and then moved over the target.

    Returns:
        ``True`` when the new file is in place.
    """
    try:
        dirpath = os.path.dirname(filepath)
        if dirpath:
            os.makedirs(dirpath, exist_ok=True)

        if os.path.exists(filepath):
            backup_base = filepath + ".backup"
            for i in range(max_backups - 1, 0, -1):
                old = f"{backup_base}.{i}"
                new = f"{backup_base}.{i + 1}"
                if os.path.exists(old):
                    os.replace(old, new)
            shutil.copy2(filepath, f"{backup_base}.1")

        temp_file = filepath + ".tmp"
        with open(temp_file, "w", encoding="utf-8") as fh:
            json.dump(data, fh, indent=2, ensure_ascii=False)

        with open(temp_file, "r", encoding="utf-8") as fh:
            json.load(fh)

        os.replace(temp_file, filepath)
        return True
    except (OSError, TypeError, ValueError) as e:
        logger.warning(
            "Could not safely write JSON to %s: %s",
            filepath, e,
        )
        return False


def directory_size(path: str) -> int:
    """Total size in bytes of the regular files below *path*.

    Files that vanish or cannot be stat'ed while walking are skipped.
    """
    total = 0
    if not os.path.isdir(path):
        return 0
    for root, _dirs, files in os.walk(path):
        for name in files:
            try:
                total += os.path.getsize(os.path.join(root, name))
            except OSError:
                continue
    return total


def clear_directory(path: str) -> bool:
    """Delete everything inside *path*, keeping the directory itself.

    Returns:
        ``True`` if every entry was removed.
    """
    if not os.path.isdir(path):
        return True
    ok = True
    for entry in os.listdir(path):
        target = os.path.join(path, entry)
        try:
            if os.path.isdir(target) and not os.path.islink(target):
                shutil.rmtree(target)
            else:
                os.remove(target)
        except OSError as exc:
            logger.warning("Could not remove %s: %s", target, exc)
            ok = False
    return ok
