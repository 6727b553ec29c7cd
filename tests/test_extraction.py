import json

import pytest

from browser.extraction import (
    ExtractKind,
    HtmlData,
    PageInfo,
    content_script,
    form_parameters_script,
    images_script,
    inner_html_script,
    links_script,
    parse_json_result,
    parse_page_info,
    table_script,
)


class TestContentScript:
    def test_kinds(self):
        assert "outerHTML" in content_script(ExtractKind.FULL_PAGE)
        assert "document.body" in content_script(ExtractKind.BODY_ONLY)
        assert "innerText" in content_script(ExtractKind.TEXT_ONLY)
        assert '"#main"' in content_script(ExtractKind.ELEMENT, "#main")

    def test_element_without_selector(self):
        with pytest.raises(ValueError):
            content_script(ExtractKind.ELEMENT)


class TestPageInfo:
    def test_parse_json_string(self):
        raw = json.dumps({
            "url": "https://example.com/a", "title": "A", "charset": "UTF-8",
            "host": "example.com", "language": "ja", "links": 4, "forms": 1, "images": 2,
        })
        info = parse_page_info(raw)
        assert info.title == "A"
        assert info.language == "ja"
        assert (info.link_count, info.form_count, info.image_count) == (4, 1, 2)
        assert str(info) == "PageInfo: A - https://example.com/a (4 links, 1 forms)"

    def test_fallback_url(self):
        info = parse_page_info("not json", "https://fallback.example/x")
        assert info.url == "https://fallback.example/x"
        assert info.host == "fallback.example"
        assert info.link_count == 0

    def test_dict_input(self):
        assert parse_page_info({"title": "T"}).title == "T"


def test_html_data_size_counts_utf8_bytes():
    data = HtmlData(ExtractKind.TEXT_ONLY, "購入", PageInfo())
    assert data.size == 6


class TestStructuredScripts:
    def test_selectors_are_escaped(self):
        assert 'querySelectorAll("a[title=\\"x\\"]")' in links_script('a[title="x"]')
        assert 'querySelector("#grid")' in table_script("#grid")
        assert '"img.thumb"' in images_script("img.thumb")
        assert '"#main"' in inner_html_script("#main")

    def test_form_parameters_scope(self):
        assert 'querySelectorAll("#login input")' in form_parameters_script("#login")
        assert 'querySelectorAll("input")' in form_parameters_script()

    def test_parse_json_result(self):
        assert parse_json_result('[{"url": "/a"}]', []) == [{"url": "/a"}]
        assert parse_json_result('{"a": "1"}', {}) == {"a": "1"}
        assert parse_json_result([1], []) == [1]
        assert parse_json_result("not json", []) == []
        assert parse_json_result('{"a": 1}', []) == []
        assert parse_json_result(None, {}) == {}
