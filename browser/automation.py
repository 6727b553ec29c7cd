"""Page-level automation on top of the tab manager.

:class:`AutomationService` combines script evaluation and synthetic input
against the current tab into the operations a UI exposes: waiting for a
page or element, filling forms, reading and writing the page's cookies,
logging in and walking a ticket purchase flow.  Every operation reports
success as a plain return value.
"""

import asyncio
import logging
import time
from typing import Dict, Iterable, List, Optional
from urllib.parse import urlparse

from browser.cookies import CookieBridge
from browser.input_injector import VK_ENTER, VK_TAB, InputInjector, MouseFlags
from browser.script_bridge import (
    ScriptResult,
    by_id,
    by_selector,
    click_script,
    exists_script,
    set_value_script,
    text_script,
    value_script,
)
from browser.tabs import TabManager
from engine.base import Cookie

logger = logging.getLogger(__name__)

DEFAULT_LOGIN_BUTTON = "input[type='submit'], button[type='submit'], .login-btn"
DEFAULT_USER_ID_FIELD = "input[name='loginId'], input[name='userId'], input[name='email']"
DEFAULT_PASSWORD_FIELD = "input[name='password'], input[type='password']"
DEFAULT_PURCHASE_BUTTON = ".purchase-btn, .buy-btn, input[value*='購入']"


def _is_true(result: ScriptResult) -> bool:
    return result.success and result.result is True


def _as_text(result: ScriptResult) -> str:
    return str(result.result) if result.success and result.result is not None else ""


class AutomationService:
    """Automation facade for the current tab."""

    FIELD_DELAY = 0.1
    LOGIN_STEP_DELAY = 0.3
    TICKET_CLICK_DELAY = 0.5
    POLL_INTERVAL = 0.5

    def __init__(self, tabs: TabManager, injector: InputInjector) -> None:
        self.tabs = tabs
        self.injector = injector

    async def _run(self, script: str, timeout: Optional[float] = None) -> ScriptResult:
        return await self.tabs.execute_javascript_sync(script, timeout)

    # ------------------------------------------------------------------
    # Element operations
    # ------------------------------------------------------------------

    async def click_element_by_id(self, element_id: str) -> bool:
        return _is_true(await self._run(click_script(by_id(element_id))))

    async def click_element_by_selector(self, selector: str) -> bool:
        return _is_true(await self._run(click_script(by_selector(selector))))

    async def set_text_by_id(self, element_id: str, text: str) -> bool:
        """Set an input's value and fire ``input`` / ``change`` events."""
        return _is_true(await self._run(set_value_script(by_id(element_id), text)))

    async def set_text_by_selector(self, selector: str, text: str) -> bool:
        return _is_true(await self._run(set_value_script(by_selector(selector), text)))

    async def fill_form(self, fields: Dict[str, str]) -> int:
        """Fill inputs by element id.

        Returns:
            Number of fields that were found and set.
        """
        filled = 0
        for element_id, value in fields.items():
            if await self.set_text_by_id(element_id, value):
                filled += 1
            else:
                logger.debug("[AUTO] Field not found: %s", element_id)
            await asyncio.sleep(self.FIELD_DELAY)
        logger.info("[AUTO] Filled %d/%d fields", filled, len(fields))
        return filled

    # ------------------------------------------------------------------
    # Waiting
    # ------------------------------------------------------------------

    async def wait_for_page_load(self, timeout_seconds: float = 30) -> bool:
        """Poll ``document.readyState`` until it is ``complete``."""
        deadline = time.monotonic() + timeout_seconds
        while time.monotonic() < deadline:
            result = await self._run("document.readyState", timeout=self.POLL_INTERVAL * 4)
            if result.success and result.result == "complete":
                return True
            await asyncio.sleep(self.POLL_INTERVAL)
        logger.warning("[AUTO] Page not loaded after %ss", timeout_seconds)
        return False

    async def wait_for_element(self, selector: str, timeout_seconds: float = 10) -> bool:
        """Poll until *selector* matches an element."""
        script = exists_script(by_selector(selector))
        deadline = time.monotonic() + timeout_seconds
        while time.monotonic() < deadline:
            if _is_true(await self._run(script, timeout=self.POLL_INTERVAL * 4)):
                return True
            await asyncio.sleep(self.POLL_INTERVAL)
        logger.debug("[AUTO] Element %s not found after %ss", selector, timeout_seconds)
        return False

    # ------------------------------------------------------------------
    # Synthetic input
    # ------------------------------------------------------------------

    async def click_coordinate(self, x: float, y: float, right_click: bool = False) -> bool:
        flags = MouseFlags.CLICK | MouseFlags.RIGHT if right_click else MouseFlags.CLICK
        return await self.injector.click(self.tabs.current_view(), x, y, flags)

    async def type_at(self, x: float, y: float, text: str) -> bool:
        return await self.injector.type_text(self.tabs.current_view(), x, y, text)

    async def send_text(self, text: str) -> bool:
        return await self.injector.send_text(self.tabs.current_view(), text)

    async def send_key(self, key_code: int, is_down: bool = True) -> bool:
        return await self.injector.send_key(
            self.tabs.current_view(), None, None, key_code, is_down,
        )

    async def send_enter(self) -> bool:
        return await self.injector.press_key(self.tabs.current_view(), VK_ENTER)

    async def send_tab(self) -> bool:
        return await self.injector.press_key(self.tabs.current_view(), VK_TAB)

    # ------------------------------------------------------------------
    # Reading the page
    # ------------------------------------------------------------------

    def get_current_url(self) -> str:
        tab = self.tabs.current()
        return tab.url if tab is not None else ""

    async def get_page_title(self) -> str:
        return _as_text(await self._run("document.title"))

    async def get_page_source(self) -> str:
        return _as_text(await self._run(
            "document.documentElement ? document.documentElement.outerHTML : ''"
        ))

    async def get_element_text(self, selector: str) -> str:
        return _as_text(await self._run(text_script(by_selector(selector))))

    async def get_element_value(self, selector: str) -> str:
        return _as_text(await self._run(value_script(by_selector(selector))))

    # ------------------------------------------------------------------
    # Cookies of the current page
    # ------------------------------------------------------------------

    def _cookie_bridge(self) -> Optional[CookieBridge]:
        tab = self.tabs.current()
        if tab is None or not tab.url:
            return None
        return CookieBridge(self.tabs.engine, self.tabs.settings, tab.session.context)

    async def get_current_page_cookies(self, name: Optional[str] = None) -> List[Cookie]:
        """Cookies of the current tab's session; by *name* those sent to its page."""
        bridge = self._cookie_bridge()
        if bridge is None:
            logger.debug("[COOKIES] No current page")
            return []
        return await bridge.get_cookies(self.get_current_url(), name)

    async def set_current_page_cookie(
        self,
        name: str,
        value: str,
        http_only: bool = False,
        secure: bool = True,
    ) -> bool:
        """Set a cookie for the current page's host, path ``/``."""
        bridge = self._cookie_bridge()
        if bridge is None:
            logger.warning("[COOKIES] No current page for cookie %s", name)
            return False
        url = self.get_current_url()
        host = urlparse(url).hostname or ""
        return await bridge.upsert_cookie(
            url, name, value, host, "/", http_only, secure,
        )

    # ------------------------------------------------------------------
    # Flows
    # ------------------------------------------------------------------

    async def auto_login(
        self,
        login_id: str,
        password: str,
        login_button_selector: str = DEFAULT_LOGIN_BUTTON,
        user_id_selector: str = DEFAULT_USER_ID_FIELD,
        password_selector: str = DEFAULT_PASSWORD_FIELD,
    ) -> bool:
        """Fill the id and password fields, then click the login button."""
        if not await self.set_text_by_selector(user_id_selector, login_id):
            logger.warning("[LOGIN] User id field not found: %s", user_id_selector)
        await asyncio.sleep(self.LOGIN_STEP_DELAY)

        if not await self.set_text_by_selector(password_selector, password):
            logger.warning("[LOGIN] Password field not found: %s", password_selector)
        await asyncio.sleep(self.LOGIN_STEP_DELAY)

        clicked = await self.click_element_by_selector(login_button_selector)
        if clicked:
            logger.info("[LOGIN] Login submitted")
        else:
            logger.warning("[LOGIN] Login button not found: %s", login_button_selector)
        return clicked

    async def auto_purchase_tickets(
        self,
        ticket_selectors: Iterable[str],
        purchase_button_selector: str = DEFAULT_PURCHASE_BUTTON,
    ) -> bool:
        """Select each ticket that appears, then press the purchase button.

        Tickets that do not show up within 5 seconds are skipped.

        Returns:
            ``True`` if the purchase button was clicked.
        """
        for selector in ticket_selectors:
            if await self.wait_for_element(selector, 5):
                await self.click_element_by_selector(selector)
                await asyncio.sleep(self.TICKET_CLICK_DELAY)
            else:
                logger.info("[PURCHASE] Ticket not available: %s", selector)

        if await self.wait_for_element(purchase_button_selector, 10):
            clicked = await self.click_element_by_selector(purchase_button_selector)
            logger.info("[PURCHASE] Purchase button clicked: %s", clicked)
            return clicked
        logger.warning("[PURCHASE] Purchase button not found")
        return False
