"""Tab / view lifecycle management.

:class:`TabManager` owns the open tabs.  The tab list, the current
selection and every field a UI would bind to are only mutated on the
owner loop; engine callbacks arrive on the engine thread and are posted
to the owner before they touch anything.

Each tab runs a two-state machine::

    created -> LOADING --load complete--> READY --navigation--> LOADING

Every transition into READY makes sure the tab has a script bridge.
"""

import concurrent.futures
import itertools
import logging
import threading
from dataclasses import dataclass, field
from enum import Enum
from typing import (
    Any, Awaitable, Callable, Dict, Iterable, List, Optional, Tuple, TypeVar, Union,
)

from browser import extraction
from browser.extraction import ExtractKind, HtmlData, ImageInfo, LinkInfo
from browser.script_bridge import (
    ScriptBridge,
    ScriptCallback,
    ScriptFailure,
    ScriptResult,
    by_selector,
    click_script,
    deliver_on_owner,
    exists_script,
    set_value_script,
    text_script,
)
from browser.sessions import Session, SessionManager
from core.config import AppSettings
from core.dispatch import Event, LoopThread
from core.proxy_manager import ProxyManager
from engine.base import DownloadItem, EngineEvent, EngineHost, EngineView

T = TypeVar("T")

logger = logging.getLogger(__name__)

DEFAULT_TAB_TITLE = "New Tab"
_tab_ids = itertools.count(1)


class TabState(str, Enum):
    LOADING = "loading"
    READY = "ready"


@dataclass(eq=False)
class Tab:
    """One open view and the state mirrored from it."""

    session: Session
    title: str = DEFAULT_TAB_TITLE
    url: str = ""
    id: int = field(default_factory=lambda: next(_tab_ids))
    view: Optional[EngineView] = None
    state: TabState = TabState.LOADING
    is_loading: bool = True
    bridge: Optional[ScriptBridge] = None
    favicon_url: str = ""
    closing: bool = False

    def __repr__(self) -> str:
        return f"Tab(id={self.id}, title={self.title!r}, state={self.state.value})"


class TabManager:
    """Open, select and close tabs; run scripts against the current one.

    Events (delivered on the owner loop):
        current_address_changed(url): the selected tab's address changed,
            or another tab became current (``""`` when none is left).
        data_extracted(HtmlData): an extraction from the selected tab.
        title_changed(tab, title)
        tab_state_changed(tab, TabState)
        download_started(tab, DownloadItem)
        download_updated(tab, DownloadItem): saved or failed.
    """

    def __init__(
        self,
        engine: EngineHost,
        owner: LoopThread,
        sessions: SessionManager,
        settings: AppSettings,
        proxy_manager: Optional[ProxyManager] = None,
    ) -> None:
        self._engine = engine
        self._owner = owner
        self.sessions = sessions
        self.settings = settings
        self.proxy_manager = proxy_manager

        self._tabs: List[Tab] = []
        self._current: Optional[Tab] = None
        self._lock = threading.RLock()

        self.current_address_changed = Event("current_address_changed", owner)
        self.data_extracted = Event("data_extracted", owner)
        self.title_changed = Event("title_changed", owner)
        self.tab_state_changed = Event("tab_state_changed", owner)
        self.download_started = Event("download_started", owner)
        self.download_updated = Event("download_updated", owner)

    @property
    def engine(self) -> EngineHost:
        return self._engine

    # ------------------------------------------------------------------
    # Collection (read from any thread)
    # ------------------------------------------------------------------

    def all_tabs(self) -> List[Tab]:
        with self._lock:
            return list(self._tabs)

    @property
    def tab_count(self) -> int:
        with self._lock:
            return len(self._tabs)

    def current(self) -> Optional[Tab]:
        """The selected tab, or ``None``.

        Off the owner thread this blocks briefly on the owner loop.
        """
        if self._owner.is_current():
            return self._current
        return self._owner.invoke(lambda: self._current)

    def current_view(self) -> Optional[EngineView]:
        tab = self.current()
        return tab.view if tab is not None else None

    def find(self, view: EngineView) -> Optional[Tab]:
        with self._lock:
            for tab in self._tabs:
                if tab.view is view:
                    return tab
        return None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def create_tab(
        self,
        title: str = DEFAULT_TAB_TITLE,
        url: Optional[str] = None,
        session: Union[Session, str, None] = None,
    ) -> Optional[Tab]:
        """Open a view in *session* (name or object), select it and load *url*.

        Returns:
            The new tab, or ``None`` if the engine could not open a view.
        """
        if not isinstance(session, Session):
            session = self.sessions.create_or_get(session)

        tab = Tab(session=session, title=title or DEFAULT_TAB_TITLE, url=url or "")
        try:
            await self._engine.thread.run(self._open_view(tab, url))
        except Exception as e:
            logger.error("[TAB] Tab creation failed: %s", e)
            return None

        await self._owner.ainvoke(self._add_tab, tab)
        logger.info("[TAB] Tab created: %s (%s)", tab.title, session.name)
        return tab

    async def _open_view(self, tab: Tab, url: Optional[str]) -> None:
        # Engine thread: register listeners before the first navigation
        view = await self._engine.create_view(tab.session.context)
        tab.view = view
        view.add_listener(
            EngineEvent.LOADING_STATE_CHANGED,
            lambda loading: self._owner.post(self._on_loading_state_changed, tab, loading),
        )
        view.add_listener(
            EngineEvent.ADDRESS_CHANGED,
            lambda address: self._owner.post(self._on_address_changed, tab, address),
        )
        view.add_listener(
            EngineEvent.TITLE_CHANGED,
            lambda title: self._owner.post(self._on_title_changed, tab, title),
        )
        view.add_listener(
            EngineEvent.FRAME_LOAD_END,
            lambda frame_url: self._owner.post(self._on_frame_load_end, tab, frame_url),
        )
        view.add_listener(
            EngineEvent.DOWNLOAD_STARTED,
            lambda item: self._owner.post(self._on_download, self.download_started, tab, item),
        )
        view.add_listener(
            EngineEvent.DOWNLOAD_UPDATED,
            lambda item: self._owner.post(self._on_download, self.download_updated, tab, item),
        )
        target = url or self.settings.default_url
        if target:
            await view.load_url(target)

    def _add_tab(self, tab: Tab) -> None:
        with self._lock:
            self._tabs.append(tab)
            self._current = tab
        if tab.view is not None and tab.view.address:
            tab.url = tab.view.address
        self.current_address_changed.emit(tab.url)

    def select(self, tab: Optional[Tab]) -> bool:
        """Make *tab* the current tab.  Runs on the owner loop."""
        if not self._owner.is_current():
            return self._owner.invoke(self.select, tab)
        with self._lock:
            if tab is None or tab not in self._tabs or tab.closing:
                return False
            if self._current is tab:
                return True
            self._current = tab
        self.current_address_changed.emit(tab.url)
        return True

    def update_title(self, tab: Tab, title: str) -> None:
        if not self._owner.is_current():
            self._owner.post(self.update_title, tab, title)
            return
        self._on_title_changed(tab, title)

    async def close_tab(self, tab: Optional[Tab]) -> bool:
        """Release *tab*'s view, then drop it from the list.

        If it was current, the neighbour that takes its position (or the
        previous tab) becomes current, or ``None`` when it was the last.
        """
        if tab is None:
            return False
        if not await self._owner.ainvoke(self._begin_close, tab):
            return False

        view = tab.view
        if view is not None:
            try:
                await self._engine.thread.run(view.close())
            except Exception as e:
                logger.error("[TAB] Closing view failed: %s", e)
            if self.proxy_manager is not None:
                self.proxy_manager.forget(view)

        await self._owner.ainvoke(self._remove_tab, tab)
        logger.info("[TAB] Tab closed: %s", tab.title)
        return True

    def _begin_close(self, tab: Tab) -> bool:
        with self._lock:
            if tab not in self._tabs or tab.closing:
                return False
            tab.closing = True
            return True

    def _remove_tab(self, tab: Tab) -> None:
        with self._lock:
            index = self._tabs.index(tab)
            self._tabs.remove(tab)
            was_current = self._current is tab
            if was_current:
                if self._tabs:
                    self._current = self._tabs[min(index, len(self._tabs) - 1)]
                else:
                    self._current = None
            replacement = self._current
        tab.bridge = None
        if was_current:
            self.current_address_changed.emit(
                replacement.url if replacement is not None else ""
            )

    async def close_all(self) -> None:
        for tab in self.all_tabs():
            await self.close_tab(tab)

    # ------------------------------------------------------------------
    # Engine notifications (owner loop)
    # ------------------------------------------------------------------

    def _live(self, tab: Tab) -> bool:
        return not tab.closing

    def _set_state(self, tab: Tab, state: TabState) -> None:
        if tab.state is state:
            return
        tab.state = state
        if state is TabState.READY:
            self.ensure_bridge(tab)
        self.tab_state_changed.emit(tab, state)

    def _on_loading_state_changed(self, tab: Tab, is_loading: bool) -> None:
        if not self._live(tab):
            return
        tab.is_loading = bool(is_loading)
        self._set_state(tab, TabState.LOADING if is_loading else TabState.READY)

    def _on_frame_load_end(self, tab: Tab, frame_url: str) -> None:
        if not self._live(tab):
            return
        logger.debug("[TAB] Main frame loaded: %s", frame_url)
        tab.is_loading = False
        self._set_state(tab, TabState.READY)
        self._owner.submit(self._refresh_favicon(tab))
        if self._current is tab and frame_url and frame_url != tab.url:
            tab.url = frame_url
            self.current_address_changed.emit(frame_url)

    def _on_address_changed(self, tab: Tab, address: str) -> None:
        if not self._live(tab):
            return
        tab.url = address or ""
        tab.favicon_url = ""
        if self._current is tab:
            self.current_address_changed.emit(tab.url)

    def _on_title_changed(self, tab: Tab, title: str) -> None:
        if not self._live(tab) or not title or not title.strip():
            return
        tab.title = title
        self.title_changed.emit(tab, title)

    def _on_download(self, event: Event, tab: Tab, item: DownloadItem) -> None:
        if not self._live(tab):
            return
        event.emit(tab, item)

    async def _refresh_favicon(self, tab: Tab) -> None:
        bridge = tab.bridge
        if bridge is None:
            return
        result = await bridge.evaluate(FAVICON_SCRIPT, timeout=5.0)
        if result.success and result.result:
            tab.favicon_url = str(result.result)

    def ensure_bridge(self, tab: Tab) -> Optional[ScriptBridge]:
        if tab.bridge is None and tab.view is not None:
            tab.bridge = ScriptBridge(
                self._engine, tab.view, self._owner,
                self.settings.script_timeout_seconds,
            )
            logger.debug("[TAB] Script bridge ready for tab %s", tab.id)
        return tab.bridge

    def _bridge_for(self, tab: Optional[Tab]) -> Optional[ScriptBridge]:
        if tab is None or tab.view is None or tab.closing:
            return None
        if tab.bridge is not None:
            return tab.bridge
        # Not READY yet: a throwaway bridge reports not-ready by itself
        return ScriptBridge(
            self._engine, tab.view, self._owner,
            self.settings.script_timeout_seconds,
        )

    # ------------------------------------------------------------------
    # Scripts against the current tab
    # ------------------------------------------------------------------

    def execute_javascript(
        self,
        script: str,
        callback: Optional[ScriptCallback] = None,
        timeout: Optional[float] = None,
    ) -> "concurrent.futures.Future[ScriptResult]":
        """Evaluate on the current tab; *callback* runs on the owner loop."""
        return self._owner.submit(
            deliver_on_owner(self.execute_javascript_sync(script, timeout), callback)
        )

    async def execute_javascript_sync(
        self, script: str, timeout: Optional[float] = None,
    ) -> ScriptResult:
        """Evaluate on the current tab and return the result."""
        tab = await self._owner.ainvoke(lambda: self._current)
        bridge = self._bridge_for(tab)
        if bridge is None:
            return ScriptResult.failed(
                script, ScriptFailure.NOT_READY, "No active tab",
            )
        return await bridge.evaluate(script, timeout)

    def _map_result(
        self,
        script: str,
        callback: Optional[Callable[[Any], None]],
        convert: Callable[[ScriptResult], Any],
    ) -> "concurrent.futures.Future[ScriptResult]":
        def _deliver(result: ScriptResult) -> None:
            if callback is not None:
                callback(convert(result))
        return self.execute_javascript(script, _deliver)

    def check_element_exists(
        self, selector: str, callback: Optional[Callable[[bool], None]] = None,
    ) -> "concurrent.futures.Future[ScriptResult]":
        return self._map_result(
            exists_script(by_selector(selector)), callback,
            lambda r: bool(r.success and r.result is True),
        )

    def get_element_text(
        self, selector: str, callback: Optional[Callable[[str], None]] = None,
    ) -> "concurrent.futures.Future[ScriptResult]":
        return self._map_result(
            text_script(by_selector(selector)), callback,
            lambda r: str(r.result) if r.success and r.result is not None else "",
        )

    def click_element(
        self, selector: str, callback: Optional[Callable[[bool], None]] = None,
    ) -> "concurrent.futures.Future[ScriptResult]":
        return self._map_result(
            click_script(by_selector(selector)), callback,
            lambda r: bool(r.success and r.result is True),
        )

    def set_element_value(
        self,
        selector: str,
        value: str,
        callback: Optional[Callable[[bool], None]] = None,
    ) -> "concurrent.futures.Future[ScriptResult]":
        return self._map_result(
            set_value_script(by_selector(selector), value), callback,
            lambda r: bool(r.success and r.result is True),
        )

    # ------------------------------------------------------------------
    # Extraction from the current tab
    # ------------------------------------------------------------------

    async def _current_bridge(self) -> Tuple[Optional[Tab], Optional[ScriptBridge]]:
        tab = await self._owner.ainvoke(lambda: self._current)
        return tab, self._bridge_for(tab)

    async def extract_html(
        self,
        kind: ExtractKind = ExtractKind.FULL_PAGE,
        selector: Optional[str] = None,
    ) -> Optional[HtmlData]:
        """Extract markup or text from the current tab.

        Emits ``data_extracted`` when the tab is still current once the
        extraction finishes.
        """
        tab, bridge = await self._current_bridge()
        if bridge is None:
            logger.warning("[EXTRACT] No active tab")
            return None

        data = await extraction.extract_html(bridge, kind, selector)
        if data is None:
            return None

        def _publish() -> None:
            if self._current is tab:
                self.data_extracted.emit(data)
        await self._owner.ainvoke(_publish)
        return data

    async def extract_multiple_html(
        self, kinds: Iterable[ExtractKind], selector: Optional[str] = None,
    ) -> List[HtmlData]:
        """Run :meth:`extract_html` per kind; failed kinds are left out."""
        results = []
        for kind in kinds:
            data = await self.extract_html(kind, selector)
            if data is not None:
                results.append(data)
            else:
                logger.info("[EXTRACT] Skipped %s", kind.value)
        return results

    async def _extract(
        self, default: T, extract: Callable[..., Awaitable[T]], *args: Any,
    ) -> T:
        _tab, bridge = await self._current_bridge()
        if bridge is None:
            logger.warning("[EXTRACT] No active tab")
            return default
        return await extract(bridge, *args)

    async def extract_links(self, selector: str = "a[href]") -> List[LinkInfo]:
        return await self._extract([], extraction.extract_links, selector)

    async def extract_images(self, selector: str = "img") -> List[ImageInfo]:
        return await self._extract([], extraction.extract_images, selector)

    async def extract_table_data(self, selector: str = "table") -> List[List[str]]:
        return await self._extract([], extraction.extract_table_data, selector)

    async def extract_meta_tags(self) -> Dict[str, str]:
        return await self._extract({}, extraction.extract_meta_tags)

    async def get_form_parameters(self, form_selector: Optional[str] = None) -> Dict[str, str]:
        return await self._extract({}, extraction.get_form_parameters, form_selector)

    async def get_element_inner_html(self, selector: str) -> str:
        return await self._extract("", extraction.get_element_inner_html, selector)


FAVICON_SCRIPT = """(function() {
    var link = document.querySelector("link[rel~='icon']");
    if (link && link.href) { return link.href; }
    return location.origin && location.origin !== 'null'
        ? location.origin + '/favicon.ico' : '';
})()"""
