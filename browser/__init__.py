"""
Browser module for tabpilot.

Session, tab and page automation built on the engine port
(:mod:`engine.base`).  Key capabilities:

- **SessionManager** – named, isolated browsing contexts inside a claimed
  per-process instance slot.
- **TabManager** – tab lifecycle, current-tab tracking and events
  marshalled onto the owner loop.
- **ScriptBridge** – script evaluation with readiness checks and timeouts.
- **InputInjector** – trusted mouse and keyboard events.
- **CookieBridge** – visitor-based cookie listing and upserts.
- **AutomationService** – form filling, waits, login and purchase flows.

Submodules are imported directly (``from browser.tabs import TabManager``);
this package does not re-export them.
"""
