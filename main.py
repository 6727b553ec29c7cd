"""
tabpilot - Main Entry Point

Opens a browsing session in a Playwright-driven Chromium, loads a page in a
new tab and (optionally) routes it through a proxy.  Also exposes the
instance slot housekeeping commands.

Usage:
    python main.py --url https://example.com          # Open a page headless
    python main.py --visible --session Work           # Keep a visible window
    python main.py --proxy 1.2.3.4:8080:user:pass     # Route through a proxy
    python main.py --instances                        # List instance slots
    python main.py --clear-cache                      # Wipe closed sessions
"""
from dotenv import load_dotenv

# Load environment variables from .env file into os.environ
load_dotenv()

import asyncio
import argparse
import logging
import signal
import sys
from typing import Optional

from rich.console import Console
from rich.table import Table

from core.config import AppSettings
from core.dispatch import OwnerDispatcher
from core.logging_setup import setup_logging
from core.proxy_manager import ProxyConfig, ProxyManager
from core.proxy_pool import ProxyPool
from browser.automation import AutomationService
from browser.input_injector import InputInjector
from browser.instance import list_instances, machine_fingerprint
from browser.sessions import DEFAULT_SESSION, SessionManager
from browser.tabs import TabManager
from engine.playwright_engine import PlaywrightEngine

logger = logging.getLogger(__name__)


def parse_args(argv=None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="tabpilot - tabbed browser automation")
    parser.add_argument("--url", type=str, help="Page to open in the first tab")
    parser.add_argument("--session", type=str, default=DEFAULT_SESSION, help="Session (profile) name")
    parser.add_argument("--proxy", type=str, help="host:port[:user:pass] or scheme://host:port")
    parser.add_argument("--visible", action="store_true", help="Show the browser and stay open")
    parser.add_argument("--instances", action="store_true", help="List instance slots and exit")
    parser.add_argument("--clear-cache", action="store_true", help="Clear closed session caches and exit")
    return parser.parse_args(argv)


def show_instances(settings: AppSettings) -> None:
    """Print a table of this machine's instance slots."""
    base_path = settings.browser_data_dir / f"PC_{machine_fingerprint()}"
    table = Table(title=f"Instances ({base_path})")
    table.add_column("Slot", justify="right")
    table.add_column("Status")
    table.add_column("PID", justify="right")
    table.add_column("Cache", justify="right")
    for info in list_instances(base_path):
        table.add_row(
            f"{info.number:02d}",
            "[green]active[/green]" if info.is_active else "[dim]free[/dim]",
            str(info.pid or "-"),
            f"{info.cache_size / (1024 * 1024):.1f} MiB",
        )
    Console().print(table)


def resolve_proxy(args: argparse.Namespace, settings: AppSettings) -> Optional[ProxyConfig]:
    """Proxy from ``--proxy``, else the sticky pick from the proxy list."""
    if args.proxy:
        return ProxyConfig.from_url(args.proxy)
    if settings.proxy_list_file:
        pool = ProxyPool(settings)
        if pool.load_from_file():
            return pool.assign(args.session)
    return None


async def main(argv=None) -> int:
    """
    Main execution flow.

    1. Parses command line arguments and loads settings.
    2. Handles the one-shot housekeeping commands.
    3. Starts the engine thread and adopts this loop as the owner loop.
    4. Opens the session and a tab, applies a proxy if requested.
    5. Stays open until SIGTERM / Ctrl+C when visible, then cleans up.
    """
    args = parse_args(argv)

    settings = AppSettings()
    if args.visible:
        settings.headless = False

    setup_logging(settings.log_level)

    if args.instances:
        show_instances(settings)
        return 0

    engine = PlaywrightEngine(settings).start()
    owner = OwnerDispatcher.attach(asyncio.get_running_loop())
    sessions = SessionManager(engine, settings)
    logger.info("🚀 Instance %02d ready (%s)", sessions.instance_number, sessions.slot.path)

    if args.clear_cache:
        ok = sessions.clear_cache()
        await sessions.aclose()
        await asyncio.to_thread(engine.stop)
        return 0 if ok else 1

    proxy_manager = ProxyManager(engine, settings, owner)
    proxy_manager.proxy_status_changed += lambda text: logger.info("🔒 %s", text)
    tabs = TabManager(engine, owner, sessions, settings, proxy_manager)
    tabs.title_changed += lambda tab, title: logger.info("📄 %s", title)
    tabs.download_updated += lambda tab, item: logger.info(
        "📥 %s: %s", item.suggested_filename, item.full_path or item.error,
    )
    automation = AutomationService(tabs, InputInjector(engine, settings))

    stop_signal = asyncio.Event()

    def handle_sigterm():
        logger.info("🛑 Received SIGTERM. Initiating graceful shutdown...")
        stop_signal.set()

    loop = asyncio.get_running_loop()
    if sys.platform != "win32":
        loop.add_signal_handler(signal.SIGTERM, handle_sigterm)

    exit_code = 0
    try:
        tab = await tabs.create_tab(url=args.url, session=args.session)
        if tab is None:
            logger.error("❌ Could not open a tab")
            return 1

        proxy = resolve_proxy(args, settings)
        if proxy is not None:
            if not await proxy_manager.set_proxy(tab.view, proxy):
                logger.warning("⚠️ Proxy %s not applied, using a direct connection", proxy)

        if await automation.wait_for_page_load(settings.engine_timeout / 1000):
            logger.info("✅ Loaded %s - %s", tab.url, await automation.get_page_title())

        if args.visible:
            await stop_signal.wait()
    except KeyboardInterrupt:
        logger.info("👋 Stopping (KeyboardInterrupt)...")
    except Exception as e:
        logger.error("❌ Unexpected error: %s", e, exc_info=True)
        exit_code = 1
    finally:
        logger.info("🧹 Cleaning up resources...")
        await tabs.close_all()
        await sessions.aclose()
        await asyncio.to_thread(engine.stop)

    return exit_code


def run() -> None:
    sys.exit(asyncio.run(main()))


if __name__ == "__main__":
    run()
