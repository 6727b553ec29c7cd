"""Machine identity and instance slots for tabpilot.

Several copies of the application can run on one machine.  Each copy
claims a numbered *instance slot* so that their browser profiles never
share a directory::

    <BrowserData>/PC_<fingerprint>/Instance_<NN>/

A slot is held through two files in its directory:

* ``instance.lock`` -- kept open with an OS-level exclusive lock for the
  life of the process (``fcntl.flock`` on Unix, ``msvcrt.locking`` on
  Windows);
* ``instance.pid`` -- the owner's process id as decimal text, so other
  processes can report who holds the slot.

A marker whose process is gone, or belongs to a differently named
process, is stale and the slot is reused.
"""

import atexit
import getpass
import hashlib
import logging
import os
import platform
import re
import socket
import subprocess
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import IO, List, Optional

import psutil

from core.utils import directory_size

logger = logging.getLogger(__name__)

LOCK_FILE = "instance.lock"
PID_FILE = "instance.pid"
SLOT_PREFIX = "Instance_"
FINGERPRINT_LENGTH = 16


class InstanceSlotError(RuntimeError):
    """Raised when no instance slot can be claimed."""


# ---------------------------------------------------------------------------
# Fingerprint
# ---------------------------------------------------------------------------

def _machine_name() -> str:
    return platform.node() or socket.gethostname() or "unknown-host"


def _user_name() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return os.environ.get("USERNAME") or os.environ.get("USER") or "unknown-user"


def _hardware_id() -> str:
    """Best-effort stable hardware identifier (may raise)."""
    if sys.platform == "win32":
        out = subprocess.run(
            ["wmic", "csproduct", "get", "uuid"],
            capture_output=True, text=True, timeout=5, check=True,
        ).stdout
        lines = [ln.strip() for ln in out.splitlines() if ln.strip()]
        return lines[1] if len(lines) > 1 else ""
    if sys.platform == "darwin":
        out = subprocess.run(
            ["ioreg", "-rd1", "-c", "IOPlatformExpertDevice"],
            capture_output=True, text=True, timeout=5, check=True,
        ).stdout
        match = re.search(r'"IOPlatformUUID"\s*=\s*"([^"]+)"', out)
        return match.group(1) if match else ""
    for candidate in ("/etc/machine-id", "/var/lib/dbus/machine-id"):
        if os.path.exists(candidate):
            with open(candidate, "r", encoding="utf-8") as fh:
                return fh.read().strip()
    return ""


def machine_fingerprint() -> str:
    """Short stable token for this machine and OS user.

    Hashes machine name, hardware id and user name.  When the
    hardware id cannot be read the token is derived from machine name
    and user name only.
    """
    machine = _machine_name()
    user = _user_name()
    try:
        hardware = _hardware_id()
    except Exception as e:
        logger.warning(
            "[FINGERPRINT] Hardware id unavailable, using host+user: %s", e,
        )
        hardware = ""

    parts = [machine, hardware, user] if hardware else [machine, user]
    digest = hashlib.sha256("|".join(parts).encode("utf-8")).hexdigest()
    return digest[:FINGERPRINT_LENGTH].upper()


# ---------------------------------------------------------------------------
# Process liveness
# ---------------------------------------------------------------------------

def _current_process_name() -> str:
    try:
        return psutil.Process().name()
    except psutil.Error:
        return ""


def _read_pid(slot_dir: Path) -> Optional[int]:
    try:
        text = (slot_dir / PID_FILE).read_text(encoding="utf-8").strip()
    except OSError:
        return None
    try:
        return int(text)
    except ValueError:
        return None


def is_owner_alive(pid: Optional[int], process_name: Optional[str] = None) -> bool:
    """True when *pid* runs and, if given, has *process_name*."""
    if not pid or pid <= 0:
        return False
    try:
        proc = psutil.Process(pid)
        if not proc.is_running() or proc.status() == psutil.STATUS_ZOMBIE:
            return False
        if process_name is None:
            return True
        return proc.name() == process_name
    except psutil.NoSuchProcess:
        return False
    except psutil.AccessDenied:
        # Exists but belongs to someone else; treat the slot as taken
        return True


# ---------------------------------------------------------------------------
# OS locks
# ---------------------------------------------------------------------------

def _try_lock(fh: IO) -> bool:
    try:
        if sys.platform == "win32":
            import msvcrt
            fh.seek(0)
            msvcrt.locking(fh.fileno(), msvcrt.LK_NBLCK, 1)
        else:
            import fcntl
            fcntl.flock(fh.fileno(), fcntl.LOCK_EX | fcntl.LOCK_NB)
        return True
    except (IOError, OSError):
        return False


def _unlock(fh: IO) -> None:
    try:
        if sys.platform == "win32":
            import msvcrt
            fh.seek(0)
            msvcrt.locking(fh.fileno(), msvcrt.LK_UNLCK, 1)
        else:
            import fcntl
            fcntl.flock(fh.fileno(), fcntl.LOCK_UN)
    except (IOError, OSError) as e:
        logger.debug("Unlock failed: %s", e)


# ---------------------------------------------------------------------------
# Slots
# ---------------------------------------------------------------------------

def slot_dir_name(number: int) -> str:
    return f"{SLOT_PREFIX}{number:02d}"


@dataclass
class InstanceInfo:
    """Snapshot of one slot directory."""

    number: int
    path: str
    pid: Optional[int]
    is_active: bool
    cache_size: int
    is_current: bool = False


class InstanceSlot:
    """An instance slot held by this process.

    Use :meth:`claim`; the slot is released by :meth:`release` or at
    interpreter exit.
    """

    def __init__(self, number: int, path: Path, lock_handle: IO) -> None:
        self.number = number
        self.path = path
        self._lock_handle: Optional[IO] = lock_handle
        self.pid = os.getpid()

    @property
    def held(self) -> bool:
        return self._lock_handle is not None

    @classmethod
    def claim(cls, base_path: Path, max_slots: int = 99) -> "InstanceSlot":
        """Claim the lowest free slot under *base_path*, starting at 1.

        Raises:
            InstanceSlotError: If every slot up to *max_slots* is busy.
        """
        base_path = Path(base_path)
        base_path.mkdir(parents=True, exist_ok=True)
        process_name = _current_process_name()

        for number in range(1, max_slots + 1):
            slot_dir = base_path / slot_dir_name(number)
            pid = _read_pid(slot_dir)
            if is_owner_alive(pid, process_name or None):
                continue

            try:
                slot_dir.mkdir(parents=True, exist_ok=True)
                handle = open(slot_dir / LOCK_FILE, "a+", encoding="utf-8")
            except OSError as e:
                logger.warning("[SLOT] Cannot open slot %d: %s", number, e)
                continue

            if not _try_lock(handle):
                handle.close()
                continue

            slot = cls(number, slot_dir, handle)
            try:
                (slot_dir / PID_FILE).write_text(str(slot.pid), encoding="utf-8")
            except OSError as e:
                logger.warning("[SLOT] Could not write marker for slot %d: %s", number, e)
            atexit.register(slot.release)
            logger.info("[SLOT] Claimed instance slot %d (%s)", number, slot_dir)
            return slot

        raise InstanceSlotError(
            f"No free instance slot under {base_path} (max {max_slots})"
        )

    def release(self) -> None:
        """Drop the OS lock and remove our marker (idempotent)."""
        handle = self._lock_handle
        if handle is None:
            return
        self._lock_handle = None
        try:
            if _read_pid(self.path) == self.pid:
                (self.path / PID_FILE).unlink()
        except OSError as e:
            logger.debug("Could not remove marker for slot %d: %s", self.number, e)
        _unlock(handle)
        handle.close()
        atexit.unregister(self.release)
        logger.debug("[SLOT] Released instance slot %d", self.number)


def list_instances(
    base_path: Path, current: Optional[InstanceSlot] = None,
) -> List[InstanceInfo]:
    """Describe every slot directory under *base_path*, ordered by number."""
    base_path = Path(base_path)
    if not base_path.is_dir():
        return []

    infos: List[InstanceInfo] = []
    for entry in base_path.iterdir():
        if not entry.is_dir() or not entry.name.startswith(SLOT_PREFIX):
            continue
        try:
            number = int(entry.name[len(SLOT_PREFIX):])
        except ValueError:
            continue
        pid = _read_pid(entry)
        active = is_owner_alive(pid)
        infos.append(InstanceInfo(
            number=number,
            path=str(entry),
            pid=pid if active else None,
            is_active=active,
            cache_size=directory_size(str(entry)),
            is_current=current is not None and current.number == number,
        ))
    infos.sort(key=lambda info: info.number)
    return infos
