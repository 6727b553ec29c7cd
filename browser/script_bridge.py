"""Script evaluation bridge.

Runs script text in a view's main frame on the engine thread and turns
the outcome into an immutable :class:`ScriptResult`.  Every call yields
exactly one result; nothing is retried here.
"""

import asyncio
import concurrent.futures
import json
import logging
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Awaitable, Callable, Optional

from core.dispatch import LoopThread
from engine.base import EngineHost, EngineView

logger = logging.getLogger(__name__)


class ScriptFailure(str, Enum):
    """Why an evaluation did not succeed."""

    NOT_READY = "not_ready"
    TIMEOUT = "timeout"
    ENGINE_REJECTED = "engine_rejected"
    ERROR = "error"


@dataclass(frozen=True)
class ScriptResult:
    success: bool
    result: Any = None
    error_message: str = ""
    script: str = ""
    executed_at: datetime = field(default_factory=datetime.now)
    failure: Optional[ScriptFailure] = None

    @classmethod
    def ok(cls, script: str, result: Any) -> "ScriptResult":
        return cls(success=True, result=result, script=script)

    @classmethod
    def failed(
        cls, script: str, failure: ScriptFailure, message: str,
    ) -> "ScriptResult":
        return cls(
            success=False, error_message=message, script=script, failure=failure,
        )

    @property
    def timed_out(self) -> bool:
        return self.failure is ScriptFailure.TIMEOUT


ScriptCallback = Callable[[ScriptResult], None]


def js_string(value: Any) -> str:
    """Encode *value* as a JavaScript literal."""
    return json.dumps(value, ensure_ascii=False)


class ScriptBridge:
    """Evaluate scripts against one view.

    Args:
        engine: Engine host whose thread runs the evaluation.
        view: The bound view.
        owner: Loop on which callback-style results are delivered.
        default_timeout: Seconds allowed when a call gives no timeout.
    """

    def __init__(
        self,
        engine: EngineHost,
        view: EngineView,
        owner: LoopThread,
        default_timeout: float = 30.0,
    ) -> None:
        self._engine = engine
        self.view = view
        self._owner = owner
        self.default_timeout = default_timeout

    def _not_ready_reason(self) -> Optional[str]:
        view = self.view
        if view is None or view.is_closed:
            return "View is closed"
        if not view.is_initialized:
            return "Browser not initialized"
        if not view.has_document:
            return "Main frame not available"
        return None

    async def evaluate(
        self, script: str, timeout: Optional[float] = None,
    ) -> ScriptResult:
        """Evaluate *script*, waiting at most *timeout* seconds.

        A timeout cancels the pending engine call and is reported as
        :attr:`ScriptFailure.TIMEOUT`; a script exception inside the
        page is :attr:`ScriptFailure.ENGINE_REJECTED`.
        """
        if not script or not script.strip():
            return ScriptResult.failed(script, ScriptFailure.ERROR, "Empty script")

        reason = self._not_ready_reason()
        if reason is not None:
            logger.debug("[SCRIPT] Not evaluated: %s", reason)
            return ScriptResult.failed(script, ScriptFailure.NOT_READY, reason)

        limit = timeout if timeout is not None else self.default_timeout
        try:
            response = await asyncio.wait_for(
                self._engine.thread.run(self.view.evaluate(script)), limit,
            )
        except asyncio.TimeoutError:
            logger.warning("[SCRIPT] Evaluation timed out after %.1fs", limit)
            return ScriptResult.failed(
                script, ScriptFailure.TIMEOUT,
                f"Script timed out after {limit:.1f}s",
            )
        except asyncio.CancelledError:
            raise
        except Exception as e:
            logger.error("[SCRIPT] Evaluation failed: %s", e)
            return ScriptResult.failed(script, ScriptFailure.ERROR, str(e))

        if not response.success:
            logger.debug("[SCRIPT] Engine rejected script: %s", response.message)
            return ScriptResult.failed(
                script, ScriptFailure.ENGINE_REJECTED,
                response.message or "Script evaluation failed",
            )
        return ScriptResult.ok(script, response.result)

    def evaluate_with_callback(
        self,
        script: str,
        callback: Optional[ScriptCallback],
        timeout: Optional[float] = None,
    ) -> "concurrent.futures.Future[ScriptResult]":
        """Evaluate from any thread; *callback* runs on the owner thread."""
        return self._owner.submit(
            deliver_on_owner(self.evaluate(script, timeout), callback)
        )


async def deliver_on_owner(
    pending: Awaitable[ScriptResult],
    callback: Optional[ScriptCallback],
) -> ScriptResult:
    """Await *pending* and hand its result to *callback*.

    Scheduled on the owner loop, so the callback runs there.  A failing
    callback is logged and the result is still returned.
    """
    result = await pending
    if callback is not None:
        try:
            callback(result)
        except Exception:
            logger.exception("[SCRIPT] Result callback failed")
    return result


# ----------------------------------------------------------------------
# Element script builders
# ----------------------------------------------------------------------
#
# A *lookup* is a JavaScript expression yielding one element or null,
# built with :func:`by_selector` or :func:`by_id`.


def by_selector(selector: str) -> str:
    return f"document.querySelector({js_string(selector)})"


def by_id(element_id: str) -> str:
    return f"document.getElementById({js_string(element_id)})"


def exists_script(lookup: str) -> str:
    return f"{lookup} !== null"


def click_script(lookup: str) -> str:
    return (
        "(function() {"
        f" var el = {lookup};"
        " if (el) { el.click(); return true; }"
        " return false;"
        " })()"
    )


def set_value_script(lookup: str, value: str) -> str:
    """Set ``value`` and fire ``input`` / ``change`` so frameworks notice."""
    return (
        "(function() {"
        f" var el = {lookup};"
        " if (!el) { return false; }"
        f" el.value = {js_string(value)};"
        " el.dispatchEvent(new Event('input', { bubbles: true }));"
        " el.dispatchEvent(new Event('change', { bubbles: true }));"
        " return true;"
        " })()"
    )


def text_script(lookup: str) -> str:
    return (
        "(function() {"
        f" var el = {lookup};"
        " return el ? (el.innerText || el.textContent || '') : '';"
        " })()"
    )


def value_script(lookup: str) -> str:
    return (
        "(function() {"
        f" var el = {lookup};"
        " return el && el.value != null ? String(el.value) : '';"
        " })()"
    )
