"""Abstract interface to the embedded rendering engine.

Everything in this module is engine-agnostic.  An :class:`EngineHost`
owns a dedicated :class:`~core.dispatch.LoopThread`; every coroutine
declared here must be awaited on that thread, and every listener
registered with :meth:`EngineView.add_listener` is invoked on it.

Objects:
    EngineHost: Process-wide engine entry point (contexts, views, cookies).
    EngineContext: One isolated browsing profile with its own storage.
    EngineView: One navigable page bound to a context.
    CookieManager / CookieVisitor: Visitor-style cookie enumeration.
    AuthHandler: Credential callback for authentication challenges.
"""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from core.dispatch import LoopThread

logger = logging.getLogger(__name__)


class EngineEvent(str, Enum):
    """Lifecycle notifications raised by a view.

    Listener payloads: ``LOADING_STATE_CHANGED`` -> ``bool`` (is loading),
    ``ADDRESS_CHANGED`` -> url, ``TITLE_CHANGED`` -> title,
    ``FRAME_LOAD_END`` -> url of the main frame, ``DOWNLOAD_STARTED`` and
    ``DOWNLOAD_UPDATED`` -> :class:`DownloadItem`.
    """

    LOADING_STATE_CHANGED = "loading_state_changed"
    ADDRESS_CHANGED = "address_changed"
    TITLE_CHANGED = "title_changed"
    FRAME_LOAD_END = "frame_load_end"
    DOWNLOAD_STARTED = "download_started"
    DOWNLOAD_UPDATED = "download_updated"


class MouseButton(str, Enum):
    LEFT = "left"
    RIGHT = "right"
    MIDDLE = "middle"


@dataclass(frozen=True)
class EvaluateResponse:
    """Raw outcome of a script evaluation as reported by the engine."""

    success: bool
    result: Any = None
    message: str = ""


@dataclass
class Cookie:
    """A browser cookie.

    ``expires`` is ``None`` for session cookies.
    """

    name: str
    value: str
    domain: str = ""
    path: str = "/"
    http_only: bool = False
    secure: bool = False
    expires: Optional[datetime] = None
    same_site: Optional[str] = None


class DownloadState(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETE = "complete"
    FAILED = "failed"


@dataclass(frozen=True)
class DownloadItem:
    """A file download started by a page.

    ``full_path`` is set once the file has been saved.
    """

    id: int
    url: str
    suggested_filename: str
    state: DownloadState = DownloadState.IN_PROGRESS
    full_path: str = ""
    error: str = ""

    @property
    def is_complete(self) -> bool:
        return self.state is DownloadState.COMPLETE


@dataclass(frozen=True)
class AuthChallenge:
    """An authentication challenge raised while loading a resource."""

    is_proxy: bool
    host: str
    port: int
    realm: str = ""
    scheme: str = ""


class AuthHandler(ABC):
    """Answers authentication challenges for a view."""

    @abstractmethod
    def get_credentials(
        self, challenge: AuthChallenge,
    ) -> Optional[Tuple[str, str]]:
        """Return ``(username, password)`` to answer, or ``None`` to decline."""


class CookieVisitor(ABC):
    """Receives cookies one at a time from a :class:`CookieManager`.

    ``index`` counts from 1, so the last cookie arrives with
    ``index == total``.  An empty store may never call :meth:`visit`;
    engines that can tell call :meth:`complete` instead.
    """

    @abstractmethod
    def visit(self, cookie: Cookie, index: int, total: int) -> bool:
        """Handle one cookie.  Return ``False`` to stop the enumeration."""

    def complete(self) -> None:
        """Called once the engine has no more cookies to report."""


class CookieManager(ABC):
    """Cookie store of one engine context.  Call on the engine thread."""

    @abstractmethod
    def visit_all_cookies(self, visitor: CookieVisitor) -> bool:
        """Start visiting every cookie.

        Returns:
            ``False`` if the store is unavailable and nothing will be visited.
        """

    @abstractmethod
    def visit_url_cookies(
        self, url: str, include_http_only: bool, visitor: CookieVisitor,
    ) -> bool:
        """Start visiting the cookies that would be sent to *url*."""

    @abstractmethod
    async def set_cookie(self, url: str, cookie: Cookie) -> bool:
        """Create or overwrite *cookie* as if set by *url*."""


Listener = Callable[[Any], None]


class EngineContext(ABC):
    """An isolated browsing profile (cache, cookies, preferences)."""

    def __init__(self, name: str, cache_path: str) -> None:
        self.name = name
        self.cache_path = cache_path

    @property
    @abstractmethod
    def is_closed(self) -> bool:
        """True once :meth:`close` has released the profile."""

    @abstractmethod
    def can_set_preference(self, name: str) -> bool:
        """False when *name* is missing or read-only for this context."""

    @abstractmethod
    def get_preference(self, name: str) -> Optional[Dict[str, Any]]:
        """Current value of preference *name*, if any."""

    @abstractmethod
    async def set_preference(
        self, name: str, value: Dict[str, Any],
    ) -> Tuple[bool, str]:
        """Set a preference.  Returns ``(success, error message)``."""

    @abstractmethod
    async def close(self) -> None:
        """Release the profile's storage handle."""


class EngineView(ABC):
    """A page hosted by the engine.

    Listener bookkeeping is shared by all engines; subclasses call
    :meth:`_fire` from the engine thread.
    """

    def __init__(self, context: EngineContext) -> None:
        self.context = context
        self._listeners: Dict[EngineEvent, List[Listener]] = {}
        self._auth_handler: Optional[AuthHandler] = None

    # -- events -----------------------------------------------------------

    def add_listener(self, event: EngineEvent, callback: Listener) -> None:
        self._listeners.setdefault(event, []).append(callback)

    def remove_listener(self, event: EngineEvent, callback: Listener) -> None:
        callbacks = self._listeners.get(event, [])
        if callback in callbacks:
            callbacks.remove(callback)

    def _fire(self, event: EngineEvent, value: Any) -> None:
        for callback in list(self._listeners.get(event, [])):
            try:
                callback(value)
            except Exception:
                logger.exception("[ENGINE] %s listener failed", event.value)

    # -- authentication ---------------------------------------------------

    @property
    def auth_handler(self) -> Optional[AuthHandler]:
        return self._auth_handler

    async def set_auth_handler(self, handler: Optional[AuthHandler]) -> None:
        """Install (or remove with ``None``) the challenge callback."""
        self._auth_handler = handler

    # -- state --------------------------------------------------------------

    @property
    @abstractmethod
    def is_initialized(self) -> bool:
        """True once the engine created the underlying browser view."""

    @property
    @abstractmethod
    def has_document(self) -> bool:
        """True when a main frame with a document is available."""

    @property
    @abstractmethod
    def is_closed(self) -> bool:
        pass

    @property
    @abstractmethod
    def address(self) -> str:
        pass

    @property
    @abstractmethod
    def title(self) -> str:
        pass

    @property
    @abstractmethod
    def is_loading(self) -> bool:
        pass

    # -- commands -----------------------------------------------------------

    @abstractmethod
    async def evaluate(self, script: str) -> EvaluateResponse:
        """Evaluate *script* in the main frame."""

    @abstractmethod
    async def load_url(self, url: str) -> None:
        """Start navigating to *url*.  Does not wait for the load."""

    @abstractmethod
    async def reload(self) -> None:
        pass

    @abstractmethod
    async def focus(self) -> None:
        """Give the view input focus."""

    @abstractmethod
    async def mouse_move(self, x: float, y: float) -> None:
        pass

    @abstractmethod
    async def mouse_down(
        self, x: float, y: float, button: MouseButton = MouseButton.LEFT,
    ) -> None:
        pass

    @abstractmethod
    async def mouse_up(
        self, x: float, y: float, button: MouseButton = MouseButton.LEFT,
    ) -> None:
        pass

    @abstractmethod
    async def send_char(self, char: str) -> None:
        """Deliver a single character-input event."""

    @abstractmethod
    async def key_event(self, key: str, is_down: bool) -> None:
        """Deliver a raw key down/up for a named key (e.g. ``"Enter"``)."""

    @abstractmethod
    async def close(self) -> None:
        """Release the engine view."""


class EngineHost(ABC):
    """Entry point to a running engine.

    Attributes:
        thread: The engine's own loop.  All engine coroutines run here.
    """

    def __init__(self, thread: LoopThread) -> None:
        self.thread = thread

    @abstractmethod
    def create_context(
        self, name: str, cache_path: str, accept_language: str,
    ) -> EngineContext:
        """Create a context handle.  Storage is opened lazily."""

    @abstractmethod
    async def create_view(self, context: EngineContext) -> EngineView:
        """Open a blank view in *context*."""

    @abstractmethod
    def cookie_manager(
        self, context: Optional[EngineContext] = None,
    ) -> CookieManager:
        """Cookie store of *context*, or the global store when ``None``."""

    @abstractmethod
    async def shutdown(self) -> None:
        """Close every context and stop the driver."""
