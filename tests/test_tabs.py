import asyncio
import json

import pytest

from browser.extraction import ExtractKind, ImageInfo, LinkInfo
from browser.script_bridge import ScriptFailure
from browser.tabs import DEFAULT_TAB_TITLE, TabState
from core.proxy_manager import ProxyConfig
from engine.base import DownloadState, EvaluateResponse
from tests.fakes import wait_until


class TestTabLifecycle:
    @pytest.mark.asyncio
    async def test_create_tab_selects_and_loads(self, tabs, engine):
        addresses = []
        tabs.current_address_changed += addresses.append

        tab = await tabs.create_tab(url="https://example.com/")
        assert tab is not None
        assert tabs.current() is tab
        assert tabs.tab_count == 1
        assert tab.view.loaded_urls == ["https://example.com/"]
        assert tab.session.name == "Default"
        assert await wait_until(lambda: "https://example.com/" in addresses)
        assert await wait_until(lambda: tab.state is TabState.READY)
        assert tab.bridge is not None
        assert not tab.is_loading

    @pytest.mark.asyncio
    async def test_default_url_is_loaded(self, tabs, settings):
        tab = await tabs.create_tab()
        assert tab.view.loaded_urls == [settings.default_url]
        assert tab.title == DEFAULT_TAB_TITLE

    @pytest.mark.asyncio
    async def test_named_session_is_shared(self, tabs):
        a = await tabs.create_tab(session="Work")
        b = await tabs.create_tab(session="Work")
        assert a.session is b.session
        assert a.view is not b.view

    @pytest.mark.asyncio
    async def test_view_failure_returns_none(self, tabs, engine):
        engine.fail_views = True
        assert await tabs.create_tab(url="https://example.com/") is None
        assert tabs.tab_count == 0
        assert tabs.current() is None

    @pytest.mark.asyncio
    async def test_title_changes_are_published(self, tabs, engine):
        engine.titles["https://example.com/"] = "Example Domain"
        titles = []
        tabs.title_changed += lambda tab, title: titles.append(title)

        tab = await tabs.create_tab(url="https://example.com/")
        assert await wait_until(lambda: titles == ["Example Domain"])
        assert tab.title == "Example Domain"

    @pytest.mark.asyncio
    async def test_blank_titles_are_ignored(self, tabs, engine):
        tab = await tabs.create_tab(title="Start", url="https://example.com/")
        engine.thread.invoke(tab.view.navigate, "https://example.com/2", "   ")
        assert await wait_until(lambda: tab.url == "https://example.com/2")
        assert tab.title == "Start"

    @pytest.mark.asyncio
    async def test_address_of_background_tab_is_not_announced(self, tabs, engine):
        first = await tabs.create_tab(url="https://one.example/")
        second = await tabs.create_tab(url="https://two.example/")
        addresses = []
        tabs.current_address_changed += addresses.append

        engine.thread.invoke(first.view.navigate, "https://one.example/next")
        assert await wait_until(lambda: first.url == "https://one.example/next")
        await asyncio.sleep(0.05)
        assert addresses == []
        assert tabs.current() is second

    @pytest.mark.asyncio
    async def test_select(self, tabs):
        first = await tabs.create_tab(url="https://one.example/")
        await tabs.create_tab(url="https://two.example/")
        addresses = []
        tabs.current_address_changed += addresses.append

        assert tabs.select(first) is True
        assert tabs.current() is first
        assert await wait_until(lambda: addresses == ["https://one.example/"])
        assert tabs.select(None) is False

    @pytest.mark.asyncio
    async def test_tab_state_follows_navigation(self, tabs, engine):
        tab = await tabs.create_tab(url="https://example.com/")
        states = []
        tabs.tab_state_changed += lambda t, state: states.append(state)

        engine.thread.invoke(tab.view.navigate, "https://example.com/next")
        assert await wait_until(lambda: states == [TabState.LOADING, TabState.READY])

    @pytest.mark.asyncio
    async def test_favicon_is_resolved_after_load(self, tabs, engine):
        engine.on_script("favicon.ico", "https://example.com/favicon.ico")
        tab = await tabs.create_tab(url="https://example.com/")
        assert await wait_until(lambda: tab.favicon_url == "https://example.com/favicon.ico")


class TestClosing:
    @pytest.mark.asyncio
    async def test_closing_current_selects_neighbour(self, tabs):
        a = await tabs.create_tab(url="https://a.example/")
        b = await tabs.create_tab(url="https://b.example/")
        c = await tabs.create_tab(url="https://c.example/")
        tabs.select(b)

        assert await tabs.close_tab(b) is True
        assert tabs.current() is c
        assert b.view.is_closed
        assert tabs.all_tabs() == [a, c]

        assert await tabs.close_tab(c) is True
        assert tabs.current() is a

    @pytest.mark.asyncio
    async def test_closing_last_tab_clears_address(self, tabs):
        tab = await tabs.create_tab(url="https://a.example/")
        addresses = []
        tabs.current_address_changed += addresses.append

        await tabs.close_tab(tab)
        assert tabs.current() is None
        assert await wait_until(lambda: addresses == [""])

    @pytest.mark.asyncio
    async def test_close_twice(self, tabs):
        tab = await tabs.create_tab(url="https://a.example/")
        assert await tabs.close_tab(tab) is True
        assert await tabs.close_tab(tab) is False
        assert await tabs.close_tab(None) is False

    @pytest.mark.asyncio
    async def test_events_after_close_are_ignored(self, tabs, owner):
        tab = await tabs.create_tab(url="https://a.example/")
        await tabs.close_tab(tab)
        titles = []
        tabs.title_changed += lambda t, title: titles.append(title)

        owner.invoke(tabs._on_title_changed, tab, "Late")
        assert titles == []

    @pytest.mark.asyncio
    async def test_close_forgets_proxy(self, tabs, proxy_manager):
        tab = await tabs.create_tab(url="https://a.example/")
        view = tab.view
        await proxy_manager.set_proxy(view, ProxyConfig.parse("h:8080"))
        await tabs.close_tab(tab)
        assert proxy_manager.get_proxy_config(view) is None

    @pytest.mark.asyncio
    async def test_close_all(self, tabs):
        await tabs.create_tab(url="https://a.example/")
        await tabs.create_tab(url="https://b.example/")
        await tabs.close_all()
        assert tabs.tab_count == 0


class TestScripts:
    @pytest.mark.asyncio
    async def test_no_active_tab(self, tabs):
        result = await tabs.execute_javascript_sync("1 + 1")
        assert not result.success
        assert result.failure is ScriptFailure.NOT_READY
        assert result.error_message == "No active tab"

    @pytest.mark.asyncio
    async def test_execute_on_current_tab(self, tabs, engine):
        engine.on_script("1 + 1", 2)
        await tabs.create_tab(url="https://a.example/")
        result = await tabs.execute_javascript_sync("1 + 1")
        assert result.success
        assert result.result == 2

    @pytest.mark.asyncio
    async def test_callback_runs_on_owner(self, tabs, engine, owner):
        engine.on_script("document.title", "Hello")
        await tabs.create_tab(url="https://a.example/")
        seen = []

        future = tabs.execute_javascript(
            "document.title", lambda r: seen.append((r.result, owner.is_current())),
        )
        result = await asyncio.wrap_future(future)
        assert result.result == "Hello"
        assert seen == [("Hello", True)]

    @pytest.mark.asyncio
    async def test_not_ready_before_first_document(self, tabs, engine):
        engine.auto_navigate = False
        await tabs.create_tab(url="https://a.example/")
        result = await tabs.execute_javascript_sync("1 + 1")
        assert result.failure is ScriptFailure.NOT_READY

    @pytest.mark.asyncio
    async def test_element_helpers(self, tabs, engine):
        engine.on_script("!== null", True)
        engine.on_script("innerText", "Buy now")
        engine.on_script("el.click()", False)
        engine.on_script("dispatchEvent", True)
        await tabs.create_tab(url="https://a.example/")
        results = {}

        await asyncio.wrap_future(tabs.check_element_exists("#buy", lambda v: results.setdefault("exists", v)))
        await asyncio.wrap_future(tabs.get_element_text("#buy", lambda v: results.setdefault("text", v)))
        await asyncio.wrap_future(tabs.click_element("#missing", lambda v: results.setdefault("click", v)))
        await asyncio.wrap_future(tabs.set_element_value("#q", "x", lambda v: results.setdefault("set", v)))
        assert results == {"exists": True, "text": "Buy now", "click": False, "set": True}

    @pytest.mark.asyncio
    async def test_selectors_are_escaped(self, tabs, engine):
        await tabs.create_tab(url="https://a.example/")
        await asyncio.wrap_future(tabs.check_element_exists("a[href='x\"y']"))
        expected = 'document.querySelector("a[href=\'x\\"y\']")'
        assert any(expected in script for script in engine.evaluated)


class TestExtraction:
    @pytest.mark.asyncio
    async def test_extract_publishes_data(self, tabs, engine):
        engine.on_script("outerHTML", "<html><body>日本語</body></html>")
        engine.on_script(
            "JSON.stringify",
            '{"url": "https://a.example/", "title": "A", "links": 3, "forms": 1}',
        )
        await tabs.create_tab(url="https://a.example/")
        published = []
        tabs.data_extracted += published.append

        data = await tabs.extract_html(ExtractKind.FULL_PAGE)
        assert data.content.startswith("<html>")
        assert data.size == len(data.content.encode("utf-8"))
        assert data.page_info.title == "A"
        assert data.page_info.host == "a.example"
        assert data.page_info.link_count == 3
        assert await wait_until(lambda: published == [data])

    @pytest.mark.asyncio
    async def test_extract_element_requires_selector(self, tabs):
        await tabs.create_tab(url="https://a.example/")
        assert await tabs.extract_html(ExtractKind.ELEMENT) is None

    @pytest.mark.asyncio
    async def test_extract_failure(self, tabs, engine):
        engine.on_script("outerHTML", EvaluateResponse(False, None, "boom"))
        await tabs.create_tab(url="https://a.example/")
        assert await tabs.extract_html() is None

    @pytest.mark.asyncio
    async def test_extract_without_tab(self, tabs):
        assert await tabs.extract_html() is None

    @pytest.mark.asyncio
    async def test_extract_multiple_skips_failures(self, tabs, engine):
        engine.on_script("outerHTML", "<body>x</body>")
        engine.on_script("innerText", EvaluateResponse(False, None, "boom"))
        engine.on_script("JSON.stringify", '{"title": "A"}')
        await tabs.create_tab(url="https://a.example/")

        results = await tabs.extract_multiple_html(
            [ExtractKind.BODY_ONLY, ExtractKind.TEXT_ONLY, ExtractKind.ELEMENT],
        )
        assert [d.kind for d in results] == [ExtractKind.BODY_ONLY]

        results = await tabs.extract_multiple_html(
            [ExtractKind.FULL_PAGE, ExtractKind.ELEMENT], selector="#main",
        )
        assert [(d.kind, d.selector) for d in results] == [
            (ExtractKind.FULL_PAGE, "#main"), (ExtractKind.ELEMENT, "#main"),
        ]


class TestStructuredExtraction:
    @pytest.mark.asyncio
    async def test_links_and_images(self, tabs, engine):
        engine.on_script("getAttribute('href')", json.dumps([
            {"url": "/cart", "text": "Cart", "title": "Your cart"},
            {"url": "", "text": "empty"},
        ]))
        engine.on_script("getAttribute('src')", json.dumps([
            {"src": "/logo.png", "alt": "Logo"},
        ]))
        await tabs.create_tab(url="https://a.example/")

        assert await tabs.extract_links() == [LinkInfo("/cart", "Cart", "Your cart")]
        assert await tabs.extract_images() == [ImageInfo("/logo.png", "Logo", "")]

    @pytest.mark.asyncio
    async def test_table_rows(self, tabs, engine):
        engine.on_script("querySelectorAll('tr')", json.dumps([["Seat", "Price"], ["A1", "1200"], []]))
        await tabs.create_tab(url="https://a.example/")
        assert await tabs.extract_table_data("#prices") == [["Seat", "Price"], ["A1", "1200"]]
        assert any('"#prices"' in script for script in engine.evaluated)

    @pytest.mark.asyncio
    async def test_meta_tags_and_form_parameters(self, tabs, engine):
        engine.on_script("querySelectorAll('meta')", json.dumps({
            "name:description": "Tickets", "property:og:title": "Shop",
        }))
        engine.on_script("getAttribute('value')", json.dumps({"token": "t0k", "loginId": ""}))
        await tabs.create_tab(url="https://a.example/")

        assert await tabs.extract_meta_tags() == {
            "name:description": "Tickets", "property:og:title": "Shop",
        }
        assert await tabs.get_form_parameters("#login") == {"token": "t0k", "loginId": ""}

    @pytest.mark.asyncio
    async def test_inner_html(self, tabs, engine):
        engine.on_script("el.innerHTML", "<b>1200</b>")
        await tabs.create_tab(url="https://a.example/")
        assert await tabs.get_element_inner_html("#price") == "<b>1200</b>"
        assert await tabs.get_element_inner_html("") == ""

    @pytest.mark.asyncio
    async def test_failures_give_empty_results(self, tabs, engine):
        engine.on_script("JSON.stringify", EvaluateResponse(False, None, "boom"))
        engine.on_script("el.innerHTML", EvaluateResponse(False, None, "boom"))
        await tabs.create_tab(url="https://a.example/")
        assert await tabs.extract_links() == []
        assert await tabs.extract_meta_tags() == {}
        assert await tabs.get_element_inner_html("#x") == ""

    @pytest.mark.asyncio
    async def test_without_tab(self, tabs):
        assert await tabs.extract_links() == []
        assert await tabs.extract_images() == []
        assert await tabs.extract_table_data() == []
        assert await tabs.extract_meta_tags() == {}
        assert await tabs.get_form_parameters() == {}
        assert await tabs.get_element_inner_html("#x") == ""
        assert await tabs.extract_multiple_html([ExtractKind.FULL_PAGE]) == []


class TestDownloads:
    @pytest.mark.asyncio
    async def test_download_events_are_published(self, tabs, engine):
        tab = await tabs.create_tab(url="https://files.example/")
        started, updated = [], []
        tabs.download_started += lambda t, item: started.append((t, item))
        tabs.download_updated += lambda t, item: updated.append((t, item))

        engine.thread.invoke(tab.view.download, "https://files.example/a.pdf", "a.pdf")
        engine.thread.invoke(tab.view.download, "https://files.example/b.zip", "b.zip", False)

        assert await wait_until(lambda: len(updated) == 2)
        assert [item.suggested_filename for _, item in started] == ["a.pdf", "b.zip"]
        (t1, done), (t2, failed) = updated
        assert t1 is tab and t2 is tab
        assert done.state is DownloadState.COMPLETE
        assert done.full_path.endswith("a.pdf")
        assert failed.state is DownloadState.FAILED

    @pytest.mark.asyncio
    async def test_downloads_of_closed_tab_are_dropped(self, tabs, engine):
        tab = await tabs.create_tab(url="https://files.example/")
        view = tab.view
        updated = []
        tabs.download_updated += lambda t, item: updated.append(item)
        await tabs.close_tab(tab)

        engine.thread.invoke(view.download, "https://files.example/a.pdf", "a.pdf")
        await asyncio.sleep(0.05)
        assert updated == []
