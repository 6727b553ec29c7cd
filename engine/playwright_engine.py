"""Playwright-driven Chromium implementation of the engine port.

Every session maps to a persistent Chromium context
(``launch_persistent_context``) rooted in the session's profile
directory.  The context is launched lazily when its first view opens.

Chromium fixes a context's proxy at launch, so changing the ``proxy``
preference relaunches the context and rebinds its views to fresh pages
at their previous addresses.  Authentication challenges are answered
through a Chrome DevTools Protocol session per page (``Fetch`` domain).

All coroutines here run on the engine thread (``PlaywrightEngine.thread``).
"""

import asyncio
import itertools
import logging
from dataclasses import replace
from datetime import datetime
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlparse

from playwright.async_api import (
    BrowserContext,
    CDPSession,
    Download,
    Error as PlaywrightError,
    Frame,
    Page,
    Playwright,
    Request,
    async_playwright,
)

from core.config import AppSettings
from core.dispatch import LoopThread
from core.proxy_manager import PROXY_PREFERENCE, READ_ONLY_MESSAGE, ProxyConfig
from engine.base import (
    AuthChallenge,
    Cookie,
    CookieManager,
    CookieVisitor,
    DownloadItem,
    DownloadState,
    EngineContext,
    EngineEvent,
    EngineHost,
    EngineView,
    EvaluateResponse,
    MouseButton,
)

logger = logging.getLogger(__name__)

_SUPPORTED_PREFERENCES = (PROXY_PREFERENCE,)
_download_ids = itertools.count(1)


def _launch_proxy(settings: AppSettings, preference: Optional[Dict[str, Any]]) -> Optional[Dict[str, str]]:
    """Playwright ``proxy`` launch option for the current preference."""
    if settings.launch_proxy:
        config = ProxyConfig.from_url(settings.launch_proxy)
        if config is not None and config.is_valid:
            option = {
                "server": f"{config.scheme}://{config.host}:{config.port}",
                "bypass": ",".join(settings.proxy_bypass_list),
            }
            if config.username:
                option["username"] = config.username
                option["password"] = config.password or ""
            return option
        logger.warning("[ENGINE] Ignoring invalid launch proxy %r", settings.launch_proxy)

    if not preference or preference.get("mode") != "fixed_servers":
        return None
    server = preference.get("server") or ""
    if not server:
        return None
    if "://" not in server:
        server = f"http://{server}"
    return {"server": server, "bypass": ",".join(settings.proxy_bypass_list)}


def _download_target(directory: Path, suggested_filename: str) -> Path:
    """Free path in *directory* for a download, ``name (2).ext`` on clashes."""
    name = Path(suggested_filename).name or "download"
    target = directory / name
    stem, suffix = target.stem, target.suffix
    counter = 2
    while target.exists():
        target = directory / f"{stem} ({counter}){suffix}"
        counter += 1
    return target


class PlaywrightContext(EngineContext):
    """A persistent Chromium context for one session."""

    def __init__(
        self,
        host: "PlaywrightEngine",
        name: str,
        cache_path: str,
        accept_language: str,
    ) -> None:
        super().__init__(name, cache_path)
        self._host = host
        self.accept_language = accept_language
        self._context: Optional[BrowserContext] = None
        self._preferences: Dict[str, Dict[str, Any]] = {}
        self._views: List["PlaywrightView"] = []
        self._closed = False
        self._start_lock: Optional[asyncio.Lock] = None

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def browser_context(self) -> Optional[BrowserContext]:
        return self._context

    @property
    def downloads_dir(self) -> Path:
        return self._host.settings.downloads_dir

    def _lock(self) -> asyncio.Lock:
        # Created lazily so it binds to the engine loop
        if self._start_lock is None:
            self._start_lock = asyncio.Lock()
        return self._start_lock

    async def ensure_started(self) -> BrowserContext:
        async with self._lock():
            if self._closed:
                raise RuntimeError(f"Context {self.name} is closed")
            if self._context is None:
                self._context = await self._launch()
            return self._context

    async def _launch(self) -> BrowserContext:
        playwright = await self._host.ensure_playwright()
        settings = self._host.settings
        languages = [lang.strip() for lang in self.accept_language.split(",") if lang.strip()]
        options: Dict[str, Any] = {
            "user_data_dir": self.cache_path,
            "headless": settings.headless,
            "timeout": settings.engine_timeout,
            "locale": languages[0] if languages else None,
            "extra_http_headers": {"Accept-Language": self.accept_language},
        }
        if settings.browser_channel:
            options["channel"] = settings.browser_channel
        proxy = _launch_proxy(settings, self._preferences.get(PROXY_PREFERENCE))
        if proxy:
            options["proxy"] = proxy
        options = {k: v for k, v in options.items() if v is not None}

        context = await playwright.chromium.launch_persistent_context(**options)
        context.set_default_navigation_timeout(settings.engine_timeout)
        logger.info("[ENGINE] Context %s launched (%s)", self.name, self.cache_path)
        return context

    async def new_page(self) -> Page:
        context = await self.ensure_started()
        # The persistent context opens with one blank page; use it first
        for page in context.pages:
            if not any(view.page is page for view in self._views) and page.url == "about:blank":
                return page
        return await context.new_page()

    def attach_view(self, view: "PlaywrightView") -> None:
        self._views.append(view)

    def detach_view(self, view: "PlaywrightView") -> None:
        if view in self._views:
            self._views.remove(view)

    # -- preferences --------------------------------------------------------

    def can_set_preference(self, name: str) -> bool:
        if name not in _SUPPORTED_PREFERENCES or self._closed:
            return False
        if name == PROXY_PREFERENCE and self._host.settings.launch_proxy:
            return False
        return True

    def get_preference(self, name: str) -> Optional[Dict[str, Any]]:
        return self._preferences.get(name)

    async def set_preference(self, name: str, value: Dict[str, Any]) -> Tuple[bool, str]:
        if not self.can_set_preference(name):
            if name == PROXY_PREFERENCE:
                return False, READ_ONLY_MESSAGE
            return False, f"Unknown preference: {name}"

        previous = self._preferences.get(name)
        self._preferences[name] = dict(value)
        if self._context is None:
            return True, ""

        try:
            await self._relaunch()
        except PlaywrightError as e:
            logger.error("[ENGINE] Relaunch of %s failed: %s", self.name, e)
            if previous is None:
                self._preferences.pop(name, None)
            else:
                self._preferences[name] = previous
            return False, str(e)
        return True, ""

    async def _relaunch(self) -> None:
        async with self._lock():
            old = self._context
            addresses = [view.address for view in self._views]
            for view in self._views:
                view.unbind()
            self._context = None
            if old is not None:
                await old.close()
            try:
                self._context = await self._launch()
            except PlaywrightError:
                # The old pages are gone with the old context
                for view in self._views:
                    view.mark_closed()
                raise
            for view, address in zip(list(self._views), addresses):
                page = await self._fresh_page()
                await view.rebind(page, address)

    async def _fresh_page(self) -> Page:
        context = self._context
        for page in context.pages:
            if not any(view.page is page for view in self._views):
                return page
        return await context.new_page()

    async def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._host.forget_context(self)
        for view in list(self._views):
            view.mark_closed()
        self._views.clear()
        context = self._context
        self._context = None
        if context is not None:
            try:
                await context.close()
            except PlaywrightError as e:
                logger.warning("[ENGINE] Closing context %s: %s", self.name, e)
        logger.info("[ENGINE] Context %s closed", self.name)


class PlaywrightView(EngineView):
    """One Chromium page."""

    def __init__(self, context: PlaywrightContext) -> None:
        super().__init__(context)
        self.page: Optional[Page] = None
        self._bound_page: Optional[Page] = None
        self._cdp: Optional[CDPSession] = None
        self._title = ""
        self._loading = False
        self._has_document = False
        self._closed = False
        self._tasks: set = set()

    # -- binding ------------------------------------------------------------

    def _page_handlers(self) -> List[Tuple[str, Any]]:
        return [
            ("request", self._on_request),
            ("framenavigated", self._on_frame_navigated),
            ("domcontentloaded", self._on_dom_content_loaded),
            ("load", self._on_load),
            ("close", self._on_page_close),
            ("download", self._on_download),
        ]

    async def bind(self, page: Page) -> None:
        self.page = page
        self._bound_page = page
        self._has_document = page.url not in ("", None)
        for event, handler in self._page_handlers():
            page.on(event, handler)
        if self._auth_handler is not None:
            await self._enable_auth()

    def unbind(self) -> None:
        """Stop listening to the bound page; safe to call twice."""
        page, self._bound_page = self._bound_page, None
        if page is None:
            return
        for event, handler in self._page_handlers():
            page.remove_listener(event, handler)

    async def rebind(self, page: Page, address: str) -> None:
        """Move to *page* after a context relaunch and restore *address*."""
        self.unbind()
        self._cdp = None
        self._closed = False
        self._loading = False
        await self.bind(page)
        if address and address != "about:blank":
            try:
                await page.goto(address, wait_until="commit")
            except PlaywrightError as e:
                logger.warning("[ENGINE] Could not restore %s: %s", address, e)

    def mark_closed(self) -> None:
        self._closed = True
        self._has_document = False

    def _spawn(self, coro: Any) -> None:
        task = asyncio.ensure_future(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: "asyncio.Task[Any]") -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.warning("[ENGINE] Background page task failed: %s", task.exception())

    # -- page events ----------------------------------------------------------

    def _on_request(self, request: Request) -> None:
        if (
            request.is_navigation_request()
            and self.page is not None
            and request.frame == self.page.main_frame
            and not self._loading
        ):
            self._loading = True
            self._fire(EngineEvent.LOADING_STATE_CHANGED, True)

    def _on_frame_navigated(self, frame: Frame) -> None:
        if self.page is None or frame != self.page.main_frame:
            return
        self._has_document = True
        self._fire(EngineEvent.ADDRESS_CHANGED, frame.url)

    def _on_dom_content_loaded(self, page: Page) -> None:
        if page is self.page:
            self._spawn(self._refresh_title())

    def _on_page_close(self, page: Page) -> None:
        # Pages replaced by a relaunch close after the view has moved on
        if page is self.page:
            self.mark_closed()

    def _on_load(self, page: Page) -> None:
        if page is not self.page:
            return
        self._has_document = True
        if self._loading:
            self._loading = False
            self._fire(EngineEvent.LOADING_STATE_CHANGED, False)
        self._fire(EngineEvent.FRAME_LOAD_END, page.url)
        self._spawn(self._refresh_title())

    async def _refresh_title(self) -> None:
        if self.page is None or self._closed:
            return
        title = await self.page.title()
        if title != self._title:
            self._title = title
            self._fire(EngineEvent.TITLE_CHANGED, title)

    # -- downloads ------------------------------------------------------------

    def _on_download(self, download: Download) -> None:
        item = DownloadItem(
            id=next(_download_ids),
            url=download.url,
            suggested_filename=download.suggested_filename,
        )
        logger.info("[ENGINE] Download started: %s", item.suggested_filename)
        self._fire(EngineEvent.DOWNLOAD_STARTED, item)
        self._spawn(self._save_download(download, item))

    async def _save_download(self, download: Download, item: DownloadItem) -> None:
        directory = self.context.downloads_dir
        try:
            directory.mkdir(parents=True, exist_ok=True)
            target = _download_target(directory, item.suggested_filename)
            await download.save_as(str(target))
        except (PlaywrightError, OSError) as e:
            logger.warning("[ENGINE] Download %s failed: %s", item.suggested_filename, e)
            self._fire(EngineEvent.DOWNLOAD_UPDATED, replace(
                item, state=DownloadState.FAILED, error=str(e),
            ))
            return
        logger.info("[ENGINE] Download saved: %s", target)
        self._fire(EngineEvent.DOWNLOAD_UPDATED, replace(
            item, state=DownloadState.COMPLETE, full_path=str(target),
        ))

    # -- authentication -------------------------------------------------------

    async def set_auth_handler(self, handler: Any) -> None:
        await super().set_auth_handler(handler)
        if handler is not None and self.page is not None and self._cdp is None:
            await self._enable_auth()

    async def _enable_auth(self) -> None:
        context = self.context.browser_context
        if context is None or self.page is None:
            return
        cdp = await context.new_cdp_session(self.page)
        cdp.on("Fetch.requestPaused", lambda event: self._spawn(self._continue_request(cdp, event)))
        cdp.on("Fetch.authRequired", lambda event: self._spawn(self._answer_auth(cdp, event)))
        await cdp.send("Fetch.enable", {
            "handleAuthRequests": True,
            "patterns": [{"urlPattern": "*"}],
        })
        self._cdp = cdp
        logger.debug("[ENGINE] Auth interception enabled for %s", self.context.name)

    async def _continue_request(self, cdp: CDPSession, event: Dict[str, Any]) -> None:
        await cdp.send("Fetch.continueRequest", {"requestId": event["requestId"]})

    async def _answer_auth(self, cdp: CDPSession, event: Dict[str, Any]) -> None:
        raw = event.get("authChallenge", {})
        origin = urlparse(raw.get("origin", ""))
        challenge = AuthChallenge(
            is_proxy=raw.get("source") == "Proxy",
            host=origin.hostname or "",
            port=origin.port or 0,
            realm=raw.get("realm", ""),
            scheme=raw.get("scheme", ""),
        )
        credentials = None
        handler = self._auth_handler
        if handler is not None:
            credentials = handler.get_credentials(challenge)
        if credentials:
            response = {
                "response": "ProvideCredentials",
                "username": credentials[0],
                "password": credentials[1],
            }
        else:
            response = {"response": "Default"}
        await cdp.send("Fetch.continueWithAuth", {
            "requestId": event["requestId"],
            "authChallengeResponse": response,
        })

    # -- state ------------------------------------------------------------------

    @property
    def is_initialized(self) -> bool:
        return self.page is not None and not self._closed

    @property
    def has_document(self) -> bool:
        return self.is_initialized and self._has_document

    @property
    def is_closed(self) -> bool:
        return self._closed

    @property
    def address(self) -> str:
        return self.page.url if self.page is not None else ""

    @property
    def title(self) -> str:
        return self._title

    @property
    def is_loading(self) -> bool:
        return self._loading

    # -- commands -----------------------------------------------------------------

    async def evaluate(self, script: str) -> EvaluateResponse:
        if not self.is_initialized:
            return EvaluateResponse(False, None, "Page is not available")
        try:
            result = await self.page.evaluate(script)
        except PlaywrightError as e:
            return EvaluateResponse(False, None, e.message)
        return EvaluateResponse(True, result)

    async def load_url(self, url: str) -> None:
        if not self.is_initialized:
            return
        self._spawn(self._goto(url))

    async def _goto(self, url: str) -> None:
        try:
            await self.page.goto(url)
        except PlaywrightError as e:
            logger.warning("[ENGINE] Navigation to %s failed: %s", url, e.message)
            if self._loading:
                self._loading = False
                self._fire(EngineEvent.LOADING_STATE_CHANGED, False)

    async def reload(self) -> None:
        if not self.is_initialized:
            return
        self._spawn(self._reload())

    async def _reload(self) -> None:
        try:
            await self.page.reload()
        except PlaywrightError as e:
            logger.warning("[ENGINE] Reload failed: %s", e.message)

    async def focus(self) -> None:
        if self.is_initialized:
            await self.page.bring_to_front()

    async def mouse_move(self, x: float, y: float) -> None:
        await self.page.mouse.move(x, y)

    async def mouse_down(self, x: float, y: float, button: MouseButton = MouseButton.LEFT) -> None:
        await self.page.mouse.down(button=button.value)

    async def mouse_up(self, x: float, y: float, button: MouseButton = MouseButton.LEFT) -> None:
        await self.page.mouse.up(button=button.value)

    async def send_char(self, char: str) -> None:
        await self.page.keyboard.type(char)

    async def key_event(self, key: str, is_down: bool) -> None:
        if is_down:
            await self.page.keyboard.down(key)
        else:
            await self.page.keyboard.up(key)

    async def close(self) -> None:
        if self._closed:
            return
        page = self.page
        self.mark_closed()
        self.context.detach_view(self)
        for task in list(self._tasks):
            task.cancel()
        if page is not None and not page.is_closed():
            try:
                await page.close()
            except PlaywrightError as e:
                logger.debug("[ENGINE] Page close: %s", e.message)


class PlaywrightCookieManager(CookieManager):
    """Cookie store backed by a context's ``BrowserContext``."""

    def __init__(self, host: "PlaywrightEngine", context: Optional[PlaywrightContext]) -> None:
        self._host = host
        self._context = context

    def _browser_context(self) -> Optional[BrowserContext]:
        context = self._context or self._host.first_started_context()
        return context.browser_context if context is not None else None

    def visit_all_cookies(self, visitor: CookieVisitor) -> bool:
        browser_context = self._browser_context()
        if browser_context is None:
            return False
        self._host.thread.loop.create_task(self._visit(browser_context, None, True, visitor))
        return True

    def visit_url_cookies(self, url: str, include_http_only: bool, visitor: CookieVisitor) -> bool:
        browser_context = self._browser_context()
        if browser_context is None or not url:
            return False
        self._host.thread.loop.create_task(
            self._visit(browser_context, url, include_http_only, visitor)
        )
        return True

    async def _visit(
        self,
        browser_context: BrowserContext,
        url: Optional[str],
        include_http_only: bool,
        visitor: CookieVisitor,
    ) -> None:
        try:
            raw = await (browser_context.cookies([url]) if url else browser_context.cookies())
        except PlaywrightError as e:
            logger.warning("[ENGINE] Cookie enumeration failed: %s", e.message)
            visitor.complete()
            return
        cookies = [
            _to_cookie(item) for item in raw
            if include_http_only or not item.get("httpOnly")
        ]
        total = len(cookies)
        for index, cookie in enumerate(cookies, 1):
            if not visitor.visit(cookie, index, total):
                break
        visitor.complete()

    async def set_cookie(self, url: str, cookie: Cookie) -> bool:
        context = self._context or self._host.first_started_context()
        if context is None:
            return False
        browser_context = await context.ensure_started()
        item: Dict[str, Any] = {
            "name": cookie.name,
            "value": cookie.value,
            "domain": cookie.domain,
            "path": cookie.path or "/",
            "httpOnly": cookie.http_only,
            "secure": cookie.secure,
        }
        if cookie.expires is not None:
            item["expires"] = cookie.expires.timestamp()
        if cookie.same_site:
            item["sameSite"] = cookie.same_site
        try:
            await browser_context.add_cookies([item])
        except PlaywrightError as e:
            logger.warning("[ENGINE] add_cookies failed: %s", e.message)
            return False
        return True


def _to_cookie(item: Dict[str, Any]) -> Cookie:
    expires = item.get("expires")
    return Cookie(
        name=item.get("name", ""),
        value=item.get("value", ""),
        domain=item.get("domain", ""),
        path=item.get("path", "/"),
        http_only=bool(item.get("httpOnly")),
        secure=bool(item.get("secure")),
        expires=datetime.fromtimestamp(expires) if expires and expires > 0 else None,
        same_site=item.get("sameSite"),
    )


class PlaywrightEngine(EngineHost):
    """Engine host that owns the Playwright driver.

    Example::

        engine = PlaywrightEngine(settings).start()
        ...
        engine.stop()
    """

    def __init__(self, settings: AppSettings, thread: Optional[LoopThread] = None) -> None:
        super().__init__(thread or LoopThread("engine"))
        self.settings = settings
        self._playwright: Optional[Playwright] = None
        self._contexts: List[PlaywrightContext] = []

    def start(self) -> "PlaywrightEngine":
        self.thread.start()
        return self

    def stop(self, timeout: float = 30.0) -> None:
        if self.thread.running:
            try:
                self.thread.run_sync(self.shutdown(), timeout=timeout)
            except Exception as e:
                logger.error("[ENGINE] Shutdown failed: %s", e)
        self.thread.stop()

    async def ensure_playwright(self) -> Playwright:
        if self._playwright is None:
            self._playwright = await async_playwright().start()
            logger.info("[ENGINE] Playwright driver started")
        return self._playwright

    def create_context(self, name: str, cache_path: str, accept_language: str) -> PlaywrightContext:
        context = PlaywrightContext(self, name, cache_path, accept_language)
        self._contexts.append(context)
        return context

    def forget_context(self, context: PlaywrightContext) -> None:
        if context in self._contexts:
            self._contexts.remove(context)

    def first_started_context(self) -> Optional[PlaywrightContext]:
        for context in self._contexts:
            if context.browser_context is not None and not context.is_closed:
                return context
        return None

    async def create_view(self, context: EngineContext) -> PlaywrightView:
        if not isinstance(context, PlaywrightContext):
            raise TypeError("context was not created by this engine")
        page = await context.new_page()
        view = PlaywrightView(context)
        await view.bind(page)
        context.attach_view(view)
        return view

    def cookie_manager(self, context: Optional[EngineContext] = None) -> PlaywrightCookieManager:
        if context is not None and not isinstance(context, PlaywrightContext):
            raise TypeError("context was not created by this engine")
        return PlaywrightCookieManager(self, context)

    async def shutdown(self) -> None:
        for context in list(self._contexts):
            await context.close()
        self._contexts.clear()
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None
            logger.info("[ENGINE] Playwright driver stopped")
