import asyncio

import pytest

from browser.input_injector import (
    VIRTUAL_KEYS,
    VK_ENTER,
    InputInjector,
    MouseFlags,
    key_name,
)
from engine.base import MouseButton


@pytest.fixture
async def view(engine):
    context = engine.create_context("Default", "/tmp/unused", "en-US")
    view = await engine.thread.run(engine.create_view(context))
    await engine.thread.run(view.load_url("https://example.com/"))
    return view


@pytest.fixture
def injector(engine, settings):
    return InputInjector(engine, settings)


class TestVirtualKeys:
    def test_common_keys(self):
        assert key_name(VK_ENTER) == "Enter"
        assert key_name(9) == "Tab"
        assert key_name(65) == "KeyA"
        assert key_name(48) == "Digit0"
        assert key_name(112) == "F1"
        assert key_name(123) == "F12"
        assert key_name(37) == "ArrowLeft"

    def test_unknown_code(self):
        assert key_name(0xFFFF) is None
        assert 0xFFFF not in VIRTUAL_KEYS


class TestMouse:
    @pytest.mark.asyncio
    async def test_left_click(self, injector, view):
        assert await injector.click(view, 10, 20) is True
        assert view.input_log == [
            ("move", 10, 20),
            ("down", 10, 20, MouseButton.LEFT),
            ("up", 10, 20, MouseButton.LEFT),
        ]

    @pytest.mark.asyncio
    async def test_right_press_only(self, injector, view):
        await injector.click(view, 1, 2, MouseFlags.DOWN | MouseFlags.RIGHT)
        assert view.input_log == [("move", 1, 2), ("down", 1, 2, MouseButton.RIGHT)]

    @pytest.mark.asyncio
    async def test_move_only(self, injector, view):
        await injector.click(view, 5, 5, MouseFlags.NONE)
        assert view.input_log == [("move", 5, 5)]

    @pytest.mark.asyncio
    async def test_not_ready_views(self, injector, view, engine):
        assert await injector.click(None, 1, 1) is False
        view.initialized = False
        assert await injector.click(view, 1, 1) is False
        view.initialized = True
        await engine.thread.run(view.close())
        assert await injector.click(view, 1, 1) is False
        assert view.input_log == []


class TestKeyboard:
    @pytest.mark.asyncio
    async def test_type_text_focuses_clicks_then_types(self, injector, view):
        assert await injector.type_text(view, 3, 4, "ab") is True
        assert view.input_log[0] == ("focus",)
        assert view.input_log[1:4] == [
            ("move", 3, 4),
            ("down", 3, 4, MouseButton.LEFT),
            ("up", 3, 4, MouseButton.LEFT),
        ]
        assert view.input_log[4:] == [("char", "a"), ("char", "b")]

    @pytest.mark.asyncio
    async def test_send_text_handles_unicode(self, injector, view):
        await injector.send_text(view, "日本")
        assert view.input_log == [("char", "日"), ("char", "本")]

    @pytest.mark.asyncio
    async def test_send_key_moves_pointer_first(self, injector, view):
        await injector.send_key(view, 7, 8, 13, True)
        assert view.input_log == [("move", 7, 8), ("key", "Enter", True)]

    @pytest.mark.asyncio
    async def test_send_key_unknown_code(self, injector, view):
        assert await injector.send_key(view, None, None, 0xFFFF) is False
        assert view.input_log == []

    @pytest.mark.asyncio
    async def test_press_key(self, injector, view):
        assert await injector.press_key(view, 9) is True
        assert view.input_log == [("key", "Tab", True), ("key", "Tab", False)]


class TestCancellation:
    @pytest.mark.asyncio
    async def test_sequence_completes_after_caller_is_cancelled(self, injector, view, settings):
        settings.input_char_delay = 0.02
        task = asyncio.ensure_future(injector.send_text(view, "abcde"))
        await asyncio.sleep(0.03)
        task.cancel()
        with pytest.raises(asyncio.CancelledError):
            await task
        await asyncio.sleep(0.3)
        assert [entry[1] for entry in view.input_log] == list("abcde")
