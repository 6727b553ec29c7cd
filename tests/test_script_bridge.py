import asyncio

import pytest

from browser.script_bridge import ScriptBridge, ScriptFailure, ScriptResult, js_string
from engine.base import EvaluateResponse
from tests.fakes import wait_until


@pytest.fixture
async def view(engine):
    context = engine.create_context("Default", "/tmp/unused", "en-US")
    view = await engine.thread.run(engine.create_view(context))
    await engine.thread.run(view.load_url("https://example.com/"))
    return view


@pytest.fixture
def bridge(engine, view, owner):
    return ScriptBridge(engine, view, owner, default_timeout=2.0)


class TestEvaluate:
    @pytest.mark.asyncio
    async def test_success(self, bridge, engine):
        engine.on_script("6 * 7", 42)
        result = await bridge.evaluate("6 * 7")
        assert result.success
        assert result.result == 42
        assert result.script == "6 * 7"
        assert result.failure is None

    @pytest.mark.asyncio
    async def test_empty_script(self, bridge, engine):
        result = await bridge.evaluate("   ")
        assert result.failure is ScriptFailure.ERROR
        assert engine.evaluated == []

    @pytest.mark.asyncio
    async def test_engine_rejection(self, bridge, engine):
        engine.on_script("throw", EvaluateResponse(False, None, "ReferenceError: x"))
        result = await bridge.evaluate("throw x")
        assert result.failure is ScriptFailure.ENGINE_REJECTED
        assert result.error_message == "ReferenceError: x"

    @pytest.mark.asyncio
    async def test_engine_exception(self, bridge, engine):
        def explode(_script):
            raise RuntimeError("renderer crashed")

        engine.on_script("boom", explode)
        result = await bridge.evaluate("boom()")
        assert result.failure is ScriptFailure.ERROR
        assert "renderer crashed" in result.error_message

    @pytest.mark.asyncio
    async def test_timeout(self, bridge, engine):
        engine.script_delay = 1.0
        result = await bridge.evaluate("slow()", timeout=0.1)
        assert result.timed_out
        assert not result.success

    @pytest.mark.asyncio
    async def test_closed_view(self, bridge, engine, view):
        await engine.thread.run(view.close())
        result = await bridge.evaluate("1")
        assert result.failure is ScriptFailure.NOT_READY
        assert result.error_message == "View is closed"

    @pytest.mark.asyncio
    async def test_uninitialized_view(self, bridge, view):
        view.initialized = False
        result = await bridge.evaluate("1")
        assert result.error_message == "Browser not initialized"


class TestCallbacks:
    @pytest.mark.asyncio
    async def test_callback_delivered_on_owner(self, bridge, engine, owner):
        engine.on_script("answer", 1)
        seen = []
        future = bridge.evaluate_with_callback(
            "answer", lambda r: seen.append((r.result, owner.is_current())),
        )
        await asyncio.wrap_future(future)
        assert seen == [(1, True)]

    @pytest.mark.asyncio
    async def test_failing_callback_still_returns_result(self, bridge, engine, caplog):
        engine.on_script("answer", 1)

        def bad(_result):
            raise ValueError("callback broke")

        result = await asyncio.wrap_future(bridge.evaluate_with_callback("answer", bad))
        assert result.success
        assert await wait_until(lambda: "callback broke" in caplog.text)


def test_result_constructors():
    ok = ScriptResult.ok("x", 1)
    assert ok.success and ok.result == 1
    failed = ScriptResult.failed("x", ScriptFailure.TIMEOUT, "late")
    assert failed.timed_out and failed.error_message == "late"


def test_js_string_escapes_quotes_and_keeps_unicode():
    assert js_string('a"b') == '"a\\"b"'
    assert js_string("購入") == '"購入"'
