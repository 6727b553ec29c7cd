"""Rendering engine port.

``engine.base`` defines what the browser layer needs from an embedded
rendering engine.  ``engine.playwright_engine`` implements it on top of
Playwright-driven Chromium and is imported explicitly where needed.
"""

from engine.base import (
    AuthChallenge,
    AuthHandler,
    Cookie,
    CookieManager,
    CookieVisitor,
    EngineContext,
    EngineEvent,
    EngineHost,
    EngineView,
    EvaluateResponse,
    MouseButton,
)

__all__ = [
    "AuthChallenge",
    "AuthHandler",
    "Cookie",
    "CookieManager",
    "CookieVisitor",
    "EngineContext",
    "EngineEvent",
    "EngineHost",
    "EngineView",
    "EvaluateResponse",
    "MouseButton",
]
