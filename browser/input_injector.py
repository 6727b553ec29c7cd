"""Synthetic mouse and keyboard input.

Events go straight into the engine's input pipeline (not through page
script), so pages see trusted events.  Coordinates are view-local client
coordinates.

Every public method returns ``False`` instead of raising when the view is
missing, closed or not initialised.  Once dispatched, an input sequence
runs to completion on the engine thread even if the awaiting caller is
cancelled; repeated calls are not idempotent.
"""

import asyncio
import logging
from enum import IntFlag
from typing import Awaitable, Dict, Optional

from core.config import AppSettings
from engine.base import EngineHost, EngineView, MouseButton

logger = logging.getLogger(__name__)


class MouseFlags(IntFlag):
    NONE = 0
    DOWN = 1
    UP = 2
    RIGHT = 4
    CLICK = DOWN | UP


def _build_virtual_keys() -> Dict[int, str]:
    keys: Dict[int, str] = {
        8: "Backspace",
        9: "Tab",
        13: "Enter",
        16: "Shift",
        17: "Control",
        18: "Alt",
        19: "Pause",
        20: "CapsLock",
        27: "Escape",
        32: "Space",
        33: "PageUp",
        34: "PageDown",
        35: "End",
        36: "Home",
        37: "ArrowLeft",
        38: "ArrowUp",
        39: "ArrowRight",
        40: "ArrowDown",
        45: "Insert",
        46: "Delete",
        106: "NumpadMultiply",
        107: "NumpadAdd",
        109: "NumpadSubtract",
        110: "NumpadDecimal",
        111: "NumpadDivide",
        186: "Semicolon",
        187: "Equal",
        188: "Comma",
        189: "Minus",
        190: "Period",
        191: "Slash",
        192: "Backquote",
        219: "BracketLeft",
        220: "Backslash",
        221: "BracketRight",
        222: "Quote",
    }
    for digit in range(10):
        keys[48 + digit] = f"Digit{digit}"
        keys[96 + digit] = f"Numpad{digit}"
    for offset in range(26):
        keys[65 + offset] = f"Key{chr(65 + offset)}"
    for n in range(1, 13):
        keys[111 + n] = f"F{n}"
    return keys


VIRTUAL_KEYS: Dict[int, str] = _build_virtual_keys()
"""Windows virtual-key code -> engine key name."""

VK_TAB = 9
VK_ENTER = 13


def key_name(key_code: int) -> Optional[str]:
    return VIRTUAL_KEYS.get(key_code)


class InputInjector:
    """Send pointer and key events to a view.

    Pacing comes from :class:`~core.config.AppSettings`
    (``input_move_settle``, ``input_press_settle``,
    ``input_focus_settle``, ``input_char_delay``).
    """

    def __init__(self, engine: EngineHost, settings: AppSettings) -> None:
        self._engine = engine
        self.settings = settings

    @staticmethod
    def _ready(view: Optional[EngineView]) -> bool:
        return view is not None and not view.is_closed and view.is_initialized

    async def _dispatch(self, sequence: Awaitable[None], what: str) -> bool:
        thread = self._engine.thread
        try:
            if thread.is_current():
                await sequence
            else:
                await asyncio.shield(asyncio.wrap_future(thread.submit(sequence)))
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("[INPUT] %s failed: %s", what, e)
            return False
        return True

    # ------------------------------------------------------------------
    # Pointer
    # ------------------------------------------------------------------

    async def click(
        self,
        view: Optional[EngineView],
        x: float,
        y: float,
        flags: MouseFlags = MouseFlags.CLICK,
    ) -> bool:
        """Move to (x, y), then press and/or release per *flags*."""
        if not self._ready(view):
            return False
        return await self._dispatch(self._click(view, x, y, flags), "click")

    async def _click(
        self, view: EngineView, x: float, y: float, flags: MouseFlags,
    ) -> None:
        button = MouseButton.RIGHT if flags & MouseFlags.RIGHT else MouseButton.LEFT
        await view.mouse_move(x, y)
        await asyncio.sleep(self.settings.input_move_settle)
        if flags & MouseFlags.DOWN:
            await view.mouse_down(x, y, button)
        await asyncio.sleep(self.settings.input_press_settle)
        if flags & MouseFlags.UP:
            await view.mouse_up(x, y, button)

    # ------------------------------------------------------------------
    # Keyboard
    # ------------------------------------------------------------------

    async def type_text(
        self, view: Optional[EngineView], x: float, y: float, text: str,
    ) -> bool:
        """Focus the element at (x, y) and type *text* one character at a time."""
        if not self._ready(view):
            return False
        return await self._dispatch(self._type(view, x, y, text or ""), "type_text")

    async def _type(self, view: EngineView, x: float, y: float, text: str) -> None:
        await view.focus()
        await self._click(view, x, y, MouseFlags.CLICK)
        await asyncio.sleep(self.settings.input_focus_settle)
        for char in text:
            await view.send_char(char)
            await asyncio.sleep(self.settings.input_char_delay)

    async def send_text(self, view: Optional[EngineView], text: str) -> bool:
        """Type *text* into whatever currently has focus."""
        if not self._ready(view):
            return False
        return await self._dispatch(self._chars(view, text or ""), "send_text")

    async def _chars(self, view: EngineView, text: str) -> None:
        for char in text:
            await view.send_char(char)
            await asyncio.sleep(self.settings.input_char_delay)

    async def send_key(
        self,
        view: Optional[EngineView],
        x: Optional[float],
        y: Optional[float],
        key_code: int,
        is_down: bool = True,
    ) -> bool:
        """Send a raw key down or up for a Windows virtual-key code.

        When (x, y) is given the pointer is moved there first.
        """
        if not self._ready(view):
            return False
        key = key_name(key_code)
        if key is None:
            logger.warning("[INPUT] Unknown virtual key code %s", key_code)
            return False
        return await self._dispatch(
            self._key(view, x, y, key, is_down), f"send_key({key})",
        )

    async def _key(
        self,
        view: EngineView,
        x: Optional[float],
        y: Optional[float],
        key: str,
        is_down: bool,
    ) -> None:
        if x is not None and y is not None:
            await view.mouse_move(x, y)
            await asyncio.sleep(self.settings.input_move_settle)
        await view.key_event(key, is_down)

    async def press_key(self, view: Optional[EngineView], key_code: int) -> bool:
        """Key down followed by key up."""
        if not await self.send_key(view, None, None, key_code, True):
            return False
        await asyncio.sleep(self.settings.input_char_delay)
        return await self.send_key(view, None, None, key_code, False)
