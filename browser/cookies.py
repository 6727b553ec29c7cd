"""Cookie bridge.

Turns the engine's visitor-style cookie enumeration into a single
awaitable list and upserts individual cookies.
"""

import asyncio
import concurrent.futures
import logging
import threading
from datetime import datetime, timedelta
from typing import List, Optional
from urllib.parse import urlparse

from core.config import AppSettings
from engine.base import Cookie, CookieVisitor, EngineContext, EngineHost

logger = logging.getLogger(__name__)

DEFAULT_COOKIE_LIFETIME = timedelta(days=365)


class CollectingVisitor(CookieVisitor):
    """Collects visited cookies and resolves :attr:`done` at the end.

    The enumeration ends when ``index`` reaches ``total`` (``index``
    counts from 1), when the engine calls :meth:`complete`, or when a
    visit reports ``total == 0``.
    """

    def __init__(self, name: Optional[str] = None) -> None:
        self._name = name.lower() if name else None
        self._lock = threading.Lock()
        self._cookies: List[Cookie] = []
        self.done: "concurrent.futures.Future[List[Cookie]]" = concurrent.futures.Future()

    @property
    def cookies(self) -> List[Cookie]:
        with self._lock:
            return list(self._cookies)

    def visit(self, cookie: Cookie, index: int, total: int) -> bool:
        if self._name is None or cookie.name.lower() == self._name:
            with self._lock:
                self._cookies.append(cookie)
        if index >= total:
            self._finish()
            return False
        return True

    def complete(self) -> None:
        self._finish()

    def _finish(self) -> None:
        with self._lock:
            if self.done.done():
                return
            self.done.set_result(list(self._cookies))


class CookieBridge:
    """Read and write cookies of one context, or of the global store.

    Args:
        engine: Engine host.
        settings: Provides ``cookie_visit_timeout_seconds``.
        context: Context whose store to use; ``None`` for the global store.
    """

    def __init__(
        self,
        engine: EngineHost,
        settings: AppSettings,
        context: Optional[EngineContext] = None,
    ) -> None:
        self._engine = engine
        self.settings = settings
        self._context = context

    async def get_cookies(
        self, url: Optional[str] = None, name: Optional[str] = None,
    ) -> List[Cookie]:
        """Collect cookies.

        Without *name* every cookie in the store is visited.  With a
        *name* (and a *url*) only cookies sent to *url*, http-only ones
        included, are visited and matched case-insensitively.

        Never hangs: if the engine does not signal the end of the
        enumeration within ``cookie_visit_timeout_seconds``, whatever
        was visited so far is returned.
        """
        visitor = CollectingVisitor(name)

        def _start() -> bool:
            manager = self._engine.cookie_manager(self._context)
            if name and url:
                return manager.visit_url_cookies(url, True, visitor)
            return manager.visit_all_cookies(visitor)

        try:
            started = await self._engine.thread.ainvoke(_start)
        except Exception as e:
            logger.error("[COOKIES] Enumeration could not start: %s", e)
            return []
        if not started:
            logger.debug("[COOKIES] Cookie store unavailable")
            return []

        timeout = self.settings.cookie_visit_timeout_seconds
        try:
            return await asyncio.wait_for(
                asyncio.wrap_future(visitor.done), timeout,
            )
        except asyncio.TimeoutError:
            collected = visitor.cookies
            if collected:
                logger.warning(
                    "[COOKIES] Enumeration incomplete after %.1fs, "
                    "returning %d cookies", timeout, len(collected),
                )
            else:
                logger.debug(
                    "[COOKIES] No cookies visited within %.1fs", timeout,
                )
            return collected

    async def upsert_cookie(
        self,
        url: str,
        name: str,
        value: str,
        domain: Optional[str] = None,
        path: str = "/",
        http_only: bool = False,
        secure: bool = False,
        expires: Optional[datetime] = None,
    ) -> bool:
        """Create or overwrite a cookie.

        *domain* defaults to the host of *url*; *expires* to one year
        from now.
        """
        if not name:
            return False
        try:
            host = urlparse(url).hostname or ""
        except ValueError:
            host = ""
        domain = domain or host
        if not domain:
            logger.warning("[COOKIES] No domain for cookie %s (url %r)", name, url)
            return False

        cookie = Cookie(
            name=name,
            value=value,
            domain=domain,
            path=path or "/",
            http_only=http_only,
            secure=secure,
            expires=expires or datetime.now() + DEFAULT_COOKIE_LIFETIME,
        )

        async def _set() -> bool:
            return await self._engine.cookie_manager(self._context).set_cookie(url, cookie)

        try:
            ok = await self._engine.thread.run(_set())
        except Exception as e:
            logger.error("[COOKIES] Failed to set %s: %s", name, e)
            return False
        if not ok:
            logger.warning("[COOKIES] Engine refused cookie %s for %s", name, domain)
        return bool(ok)
