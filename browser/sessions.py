"""Named, isolated browsing sessions.

A session is one engine context with its own persistent profile
directory::

    <app_data_root>/<product>/BrowserData/PC_<fingerprint>/Instance_<NN>/Contexts/<name>/

The registry is guarded by one coarse lock; lookup, insert and removal
are each atomic.
"""

import logging
import re
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from browser.instance import (
    InstanceInfo,
    InstanceSlot,
    list_instances,
    machine_fingerprint,
)
from core.config import AppSettings
from core.utils import clear_directory, directory_size
from engine.base import EngineContext, EngineHost

logger = logging.getLogger(__name__)

DEFAULT_SESSION = "Default"
CONTEXTS_DIR = "Contexts"
_UNSAFE_CHARS = re.compile(r'[<>:"/\\|?*\x00-\x1f]')


def safe_session_dir(name: str) -> str:
    """Filesystem-safe directory name for a session."""
    cleaned = _UNSAFE_CHARS.sub("_", name).strip().strip(".")
    return cleaned or DEFAULT_SESSION


@dataclass(eq=False)
class Session:
    """A browsing context and its storage directory.

    Compared by identity: one manager hands out one object per name.
    """

    name: str
    storage_path: str
    context: EngineContext
    created_at: float = field(default_factory=time.time)

    @property
    def is_closed(self) -> bool:
        return self.context.is_closed


class SessionManager:
    """Create, look up and release sessions for one application instance.

    Construction resolves the machine fingerprint and claims an instance
    slot (see :mod:`browser.instance`); pass *slot* to reuse one.
    """

    def __init__(
        self,
        engine: EngineHost,
        settings: AppSettings,
        slot: Optional[InstanceSlot] = None,
    ) -> None:
        self._engine = engine
        self.settings = settings
        self._sessions: Dict[str, Session] = {}
        self._releasing: List[Session] = []
        self._lock = threading.RLock()

        self.fingerprint = machine_fingerprint()
        self.base_path: Path = settings.browser_data_dir / f"PC_{self.fingerprint}"
        self.slot = slot or InstanceSlot.claim(
            self.base_path, settings.max_instance_slots,
        )
        self.contexts_path: Path = self.slot.path / CONTEXTS_DIR

    @property
    def instance_number(self) -> int:
        return self.slot.number

    # ------------------------------------------------------------------
    # Registry
    # ------------------------------------------------------------------

    def create_or_get(self, name: Optional[str] = None) -> Session:
        """Return the session called *name*, creating it on first use.

        ``None`` or an empty name means the default session.
        """
        name = name or DEFAULT_SESSION
        with self._lock:
            existing = self._sessions.get(name)
            if existing is not None:
                return existing

            dir_name = safe_session_dir(name)
            path = self.contexts_path / dir_name
            # Case-folded: the default data roots live on case-insensitive
            # filesystems on Windows and macOS
            taken = {p.casefold() for p in self._taken_paths()}
            suffix = 2
            while str(path).casefold() in taken:
                path = self.contexts_path / f"{dir_name}_{suffix}"
                suffix += 1
            try:
                path.mkdir(parents=True, exist_ok=True)
            except OSError as e:
                logger.error("[SESSION] Cannot create %s: %s", path, e)

            context = self._engine.create_context(
                name, str(path), self.settings.accept_language,
            )
            session = Session(name=name, storage_path=str(path), context=context)
            self._sessions[name] = session
            logger.info("[SESSION] Created session %s at %s", name, path)
            return session

    def _taken_paths(self) -> List[str]:
        """Directories held by open sessions or by contexts not yet released."""
        paths = [s.storage_path for s in self._sessions.values()]
        paths.extend(s.storage_path for s in self._releasing)
        return paths

    def get(self, name: Optional[str] = None) -> Optional[Session]:
        with self._lock:
            return self._sessions.get(name or DEFAULT_SESSION)

    def names(self) -> List[str]:
        with self._lock:
            return list(self._sessions)

    def _begin_release(self, name: str) -> Optional[Session]:
        with self._lock:
            session = self._sessions.pop(name, None)
            if session is not None:
                self._releasing.append(session)
            return session

    def _end_release(self, session: Session) -> None:
        with self._lock:
            self._releasing.remove(session)

    def remove(self, name: str) -> bool:
        """Release the session's engine context and forget it.

        Blocks until the engine has closed the profile so the directory
        can be reused.  On-disk data is kept.  Must not be called from
        the engine thread.  If the engine fails to close the context its
        directory stays reserved, and a new session of the same name gets
        a fresh one.
        """
        if self._engine.thread.is_current():
            logger.error(
                "[SESSION] remove(%s) called on the engine thread", name,
            )
            return False

        session = self._begin_release(name)
        if session is None:
            return False

        try:
            self._engine.thread.run_sync(
                session.context.close(),
                timeout=self.settings.engine_timeout / 1000,
            )
        except Exception as e:
            logger.error("[SESSION] Failed to release %s: %s", name, e)
            return False
        self._end_release(session)
        logger.info("[SESSION] Removed session %s", name)
        return True

    async def aremove(self, name: str) -> bool:
        """Awaitable :meth:`remove` for callers running on a loop."""
        session = self._begin_release(name)
        if session is None:
            return False
        try:
            await self._engine.thread.run(session.context.close())
        except Exception as e:
            logger.error("[SESSION] Failed to release %s: %s", name, e)
            return False
        self._end_release(session)
        logger.info("[SESSION] Removed session %s", name)
        return True

    # ------------------------------------------------------------------
    # Storage
    # ------------------------------------------------------------------

    def list_instances(self) -> List[InstanceInfo]:
        return list_instances(self.base_path, self.slot)

    def cache_path(self, name: Optional[str] = None) -> Path:
        """Profile directory of *name*, or the whole instance when ``None``."""
        if name is None:
            return self.slot.path
        session = self.get(name)
        if session is not None:
            return Path(session.storage_path)
        return self.contexts_path / safe_session_dir(name)

    def cache_size(self, name: Optional[str] = None) -> int:
        return directory_size(str(self.cache_path(name)))

    def clear_cache(self, name: Optional[str] = None) -> bool:
        """Delete stored profile data.

        Only sessions that are not open can be cleared; with no name,
        every closed session directory of this instance is cleared.
        """
        with self._lock:
            held = {p.casefold() for p in self._taken_paths()}
            if name is not None:
                target = self.cache_path(name)
                if name in self._sessions or str(target).casefold() in held:
                    logger.warning(
                        "[SESSION] Cannot clear %s while it is open", name,
                    )
                    return False
                targets = [target]
            else:
                targets = [
                    p for p in self.contexts_path.glob("*")
                    if p.is_dir() and str(p).casefold() not in held
                ] if self.contexts_path.is_dir() else []

        ok = True
        for target in targets:
            ok = clear_directory(str(target)) and ok
        logger.info("[SESSION] Cleared cache for %s", name or "all closed sessions")
        return ok

    def close(self) -> None:
        """Release every session, then the instance slot."""
        for name in self.names():
            self.remove(name)
        self.slot.release()

    async def aclose(self) -> None:
        for name in self.names():
            await self.aremove(name)
        self.slot.release()
