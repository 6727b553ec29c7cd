"""HTML extraction.

Builds the scripts that pull markup, text or structured data (links,
images, tables, meta tags, form parameters) out of the current page.
Markup extractions are packed into :class:`HtmlData` records for the
``data_extracted`` event.
"""

import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from urllib.parse import urlparse

from browser.script_bridge import ScriptBridge, js_string

logger = logging.getLogger(__name__)


class ExtractKind(str, Enum):
    FULL_PAGE = "full_page"
    BODY_ONLY = "body_only"
    ELEMENT = "element"
    TEXT_ONLY = "text_only"


@dataclass
class PageInfo:
    """Summary of the page an extraction came from."""

    url: str = ""
    title: str = ""
    charset: str = ""
    host: str = ""
    language: str = ""
    link_count: int = 0
    form_count: int = 0
    image_count: int = 0
    analyzed_at: datetime = field(default_factory=datetime.now)

    def __str__(self) -> str:
        return (
            f"PageInfo: {self.title} - {self.url} "
            f"({self.link_count} links, {self.form_count} forms)"
        )


@dataclass
class HtmlData:
    kind: ExtractKind
    content: str
    page_info: PageInfo
    selector: str = ""
    captured_at: datetime = field(default_factory=datetime.now)

    @property
    def size(self) -> int:
        """Content size in UTF-8 bytes."""
        return len(self.content.encode("utf-8"))


PAGE_INFO_SCRIPT = """(function() {
    return JSON.stringify({
        url: location.href,
        title: document.title || '',
        charset: document.characterSet || '',
        host: location.host || '',
        language: document.documentElement ? (document.documentElement.lang || '') : '',
        links: document.links ? document.links.length : 0,
        forms: document.forms ? document.forms.length : 0,
        images: document.images ? document.images.length : 0
    });
})()"""


def content_script(kind: ExtractKind, selector: Optional[str] = None) -> str:
    """Script returning the content for *kind* as a string."""
    if kind is ExtractKind.FULL_PAGE:
        return (
            "document.documentElement"
            " ? document.documentElement.outerHTML : ''"
        )
    if kind is ExtractKind.BODY_ONLY:
        return "document.body ? document.body.outerHTML : ''"
    if kind is ExtractKind.TEXT_ONLY:
        return "document.body ? document.body.innerText : ''"
    if kind is ExtractKind.ELEMENT:
        if not selector:
            raise ValueError("An element extraction needs a selector")
        return (
            "(function() {"
            f" var el = document.querySelector({js_string(selector)});"
            " return el ? el.outerHTML : '';"
            " })()"
        )
    raise ValueError(f"Unsupported extraction kind: {kind}")


def parse_page_info(raw: Any, fallback_url: str = "") -> PageInfo:
    """Build a :class:`PageInfo` from the page-info script result."""
    data: Dict[str, Any] = {}
    if isinstance(raw, str) and raw:
        try:
            data = json.loads(raw)
        except ValueError:
            logger.debug("Unparseable page info: %r", raw[:200])
    elif isinstance(raw, dict):
        data = raw

    url = str(data.get("url") or fallback_url)
    host = str(data.get("host") or urlparse(url).netloc)
    return PageInfo(
        url=url,
        title=str(data.get("title") or ""),
        charset=str(data.get("charset") or ""),
        host=host,
        language=str(data.get("language") or ""),
        link_count=int(data.get("links") or 0),
        form_count=int(data.get("forms") or 0),
        image_count=int(data.get("images") or 0),
    )


async def extract_html(
    bridge: ScriptBridge,
    kind: ExtractKind = ExtractKind.FULL_PAGE,
    selector: Optional[str] = None,
    timeout: Optional[float] = None,
) -> Optional[HtmlData]:
    """Run the content and page-info scripts through *bridge*.

    Returns:
        The payload, or ``None`` when either script failed.
    """
    try:
        script = content_script(kind, selector)
    except ValueError as e:
        logger.warning("[EXTRACT] %s", e)
        return None

    content = await bridge.evaluate(script, timeout)
    if not content.success:
        logger.warning(
            "[EXTRACT] %s extraction failed: %s", kind.value, content.error_message,
        )
        return None

    info = await bridge.evaluate(PAGE_INFO_SCRIPT, timeout)
    if not info.success:
        logger.warning("[EXTRACT] Page info failed: %s", info.error_message)
        return None

    data = HtmlData(
        kind=kind,
        content="" if content.result is None else str(content.result),
        page_info=parse_page_info(info.result, bridge.view.address),
        selector=selector or "",
    )
    logger.info("[EXTRACT] %s extracted, %d bytes", kind.value, data.size)
    return data


# ----------------------------------------------------------------------
# Structured extraction
# ----------------------------------------------------------------------


@dataclass
class LinkInfo:
    url: str
    text: str = ""
    title: str = ""


@dataclass
class ImageInfo:
    src: str
    alt: str = ""
    title: str = ""


def links_script(selector: str = "a[href]") -> str:
    return (
        "(function() { var out = [];"
        f" document.querySelectorAll({js_string(selector)}).forEach(function(a) {{"
        " var href = a.getAttribute('href');"
        " if (href) { out.push({url: href,"
        " text: (a.textContent || '').trim(),"
        " title: a.getAttribute('title') || ''}); }"
        " }); return JSON.stringify(out); })()"
    )


def images_script(selector: str = "img") -> str:
    return (
        "(function() { var out = [];"
        f" document.querySelectorAll({js_string(selector)}).forEach(function(img) {{"
        " var src = img.getAttribute('src');"
        " if (src) { out.push({src: src,"
        " alt: img.getAttribute('alt') || '',"
        " title: img.getAttribute('title') || ''}); }"
        " }); return JSON.stringify(out); })()"
    )


def table_script(selector: str = "table") -> str:
    return (
        "(function() {"
        f" var table = document.querySelector({js_string(selector)});"
        " if (!table) { return '[]'; }"
        " var rows = [];"
        " table.querySelectorAll('tr').forEach(function(tr) {"
        " var cells = [];"
        " tr.querySelectorAll('td, th').forEach(function(cell) {"
        " cells.push((cell.textContent || '').trim()); });"
        " if (cells.length) { rows.push(cells); }"
        " }); return JSON.stringify(rows); })()"
    )


META_TAGS_SCRIPT = """(function() {
    var out = {};
    document.querySelectorAll('meta').forEach(function(meta) {
        var content = meta.getAttribute('content');
        if (!content) { return; }
        var name = meta.getAttribute('name');
        var property = meta.getAttribute('property');
        if (name) { out['name:' + name] = content; }
        else if (property) { out['property:' + property] = content; }
    });
    return JSON.stringify(out);
})()"""


def form_parameters_script(form_selector: Optional[str] = None) -> str:
    """Script mapping input ``name`` to its markup ``value`` attribute."""
    selector = f"{form_selector} input" if form_selector else "input"
    return (
        "(function() { var out = {};"
        f" document.querySelectorAll({js_string(selector)}).forEach(function(input) {{"
        " var name = input.getAttribute('name');"
        " if (name) { out[name] = input.getAttribute('value') || ''; }"
        " }); return JSON.stringify(out); })()"
    )


def inner_html_script(selector: str) -> str:
    return (
        "(function() {"
        f" var el = document.querySelector({js_string(selector)});"
        " return el ? el.innerHTML : '';"
        " })()"
    )


def parse_json_result(raw: Any, default: Any) -> Any:
    """Decode a ``JSON.stringify`` script result; *default* if unusable."""
    if isinstance(raw, str):
        try:
            raw = json.loads(raw)
        except ValueError:
            logger.debug("Unparseable script result: %r", raw[:200])
            return default
    if not isinstance(raw, type(default)):
        return default
    return raw


async def _evaluate_json(
    bridge: ScriptBridge, script: str, default: Any, what: str,
    timeout: Optional[float] = None,
) -> Any:
    result = await bridge.evaluate(script, timeout)
    if not result.success:
        logger.warning("[EXTRACT] %s failed: %s", what, result.error_message)
        return default
    return parse_json_result(result.result, default)


async def extract_links(
    bridge: ScriptBridge, selector: str = "a[href]", timeout: Optional[float] = None,
) -> List[LinkInfo]:
    items = await _evaluate_json(bridge, links_script(selector), [], "Links", timeout)
    return [
        LinkInfo(str(i.get("url", "")), str(i.get("text", "")), str(i.get("title", "")))
        for i in items if isinstance(i, dict) and i.get("url")
    ]


async def extract_images(
    bridge: ScriptBridge, selector: str = "img", timeout: Optional[float] = None,
) -> List[ImageInfo]:
    items = await _evaluate_json(bridge, images_script(selector), [], "Images", timeout)
    return [
        ImageInfo(str(i.get("src", "")), str(i.get("alt", "")), str(i.get("title", "")))
        for i in items if isinstance(i, dict) and i.get("src")
    ]


async def extract_table_data(
    bridge: ScriptBridge, selector: str = "table", timeout: Optional[float] = None,
) -> List[List[str]]:
    """Rows of cell texts (``td`` and ``th``); empty rows are skipped."""
    rows = await _evaluate_json(bridge, table_script(selector), [], "Table", timeout)
    return [[str(cell) for cell in row] for row in rows if isinstance(row, list) and row]


async def extract_meta_tags(
    bridge: ScriptBridge, timeout: Optional[float] = None,
) -> Dict[str, str]:
    """``name:<name>`` / ``property:<property>`` to ``content``."""
    tags = await _evaluate_json(bridge, META_TAGS_SCRIPT, {}, "Meta tags", timeout)
    return {str(k): str(v) for k, v in tags.items()}


async def get_form_parameters(
    bridge: ScriptBridge, form_selector: Optional[str] = None,
    timeout: Optional[float] = None,
) -> Dict[str, str]:
    params = await _evaluate_json(
        bridge, form_parameters_script(form_selector), {}, "Form parameters", timeout,
    )
    return {str(k): str(v) for k, v in params.items()}


async def get_element_inner_html(
    bridge: ScriptBridge, selector: str, timeout: Optional[float] = None,
) -> str:
    if not selector:
        logger.warning("[EXTRACT] Inner HTML needs a selector")
        return ""
    result = await bridge.evaluate(inner_html_script(selector), timeout)
    if not result.success or result.result is None:
        return ""
    return str(result.result)
