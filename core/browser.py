#!/usr/bin/env python3
"""
Browser session factories for the automation pool.

Two backends:
1. LOCAL: one Playwright Chromium process; every session is a fresh browser
   context with a single page (cookies and storage never leak between jobs).
2. BROWSERBASE: every session is a remote BrowserBase browser driven over CDP.

The pool (core.browser_pool) decides when sessions are created, reused and
thrown away; factories only know how to build, reset and close one.
"""

import asyncio
import logging
import random
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Optional

from browserbase import Browserbase
from playwright.async_api import async_playwright

logger = logging.getLogger(__name__)

LAUNCH_ARGS = [
    "--no-sandbox",
    "--disable-setuid-sandbox",
    "--disable-dev-shm-usage",
    "--disable-gpu",
    "--disable-background-networking",
    "--disable-extensions",
    "--mute-audio",
    "--no-first-run",
]

VIEWPORT = {"width": 1280, "height": 800}


@dataclass
class BrowserSession:
    """Represents an active browser session."""
    session_id: str
    page: Any  # Playwright page
    context: Optional[Any] = None
    browser: Optional[Any] = None
    created_at: datetime = field(default_factory=datetime.now)
    metadata: Dict[str, Any] = field(default_factory=dict)


class SessionFactory(ABC):
    """Builds and tears down browser sessions for the pool."""

    async def start(self):
        """Prepare shared resources (browser process, SDK clients)."""

    async def stop(self):
        """Release shared resources."""

    @abstractmethod
    async def create_session(self) -> BrowserSession:
        pass

    @abstractmethod
    async def close_session(self, session: BrowserSession):
        pass

    async def reset_session(self, session: BrowserSession, timeout: float = 5.0) -> bool:
        """Blank the page between jobs. False means the session should be discarded."""
        try:
            await asyncio.wait_for(session.page.goto("about:blank"), timeout=timeout)
            return True
        except Exception as e:
            logger.debug(f"[Browser] Reset failed for {session.session_id}: {e}")
            return False

    async def is_healthy(self, session: BrowserSession) -> bool:
        """Check if session is still valid."""
        try:
            if session.page.is_closed():
                return False
            return await asyncio.wait_for(session.page.evaluate("1 + 1"), timeout=5.0) == 2
        except Exception as e:
            logger.debug(f"[Browser] Health check failed for {session.session_id}: {e}")
            return False


class LocalBrowserFactory(SessionFactory):
    """Playwright Chromium on this host; one context per session."""

    def __init__(self, headless: bool = True, timeout_ms: int = 30000, user_agents: Optional[list] = None):
        self.headless = headless
        self.timeout_ms = timeout_ms
        self.user_agents = user_agents or []
        self._playwright = None
        self._browser = None
        self._start_lock = asyncio.Lock()

    async def start(self):
        async with self._start_lock:
            if self._browser is not None and self._browser.is_connected():
                return
            if self._playwright is None:
                self._playwright = await async_playwright().start()
            self._browser = await self._playwright.chromium.launch(headless=self.headless, args=LAUNCH_ARGS)
            logger.info(f"Local Chromium launched (headless={self.headless})")

    async def create_session(self) -> BrowserSession:
        if self._browser is None or not self._browser.is_connected():
            await self.start()

        options: Dict[str, Any] = {"viewport": VIEWPORT}
        if self.user_agents:
            options["user_agent"] = random.choice(self.user_agents)
        context = await self._browser.new_context(**options)
        context.set_default_timeout(self.timeout_ms)
        page = await context.new_page()

        return BrowserSession(
            session_id=f"local_{uuid.uuid4().hex[:10]}",
            page=page,
            context=context,
            browser=self._browser,
            metadata={"mode": "local"},
        )

    async def close_session(self, session: BrowserSession):
        try:
            if session.context is not None:
                await session.context.close()
        except Exception as e:
            logger.debug(f"[Browser] Error closing context {session.session_id}: {e}")

    async def stop(self):
        if self._browser is not None:
            try:
                await self._browser.close()
            except Exception as e:
                logger.debug(f"[Browser] Error closing Chromium: {e}")
            self._browser = None
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None
        logger.info("Local Chromium stopped")


class BrowserbaseFactory(SessionFactory):
    """Remote BrowserBase browsers; one BrowserBase session per pool session."""

    def __init__(self, api_key: Optional[str], project_id: Optional[str], timeout_ms: int = 30000):
        if not api_key or not project_id:
            raise ValueError("BROWSERBASE_API_KEY and BROWSERBASE_PROJECT_ID are required in BROWSERBASE mode")
        self.project_id = project_id
        self.timeout_ms = timeout_ms
        self._bb = Browserbase(api_key=api_key)
        self._playwright = None

    async def start(self):
        if self._playwright is None:
            self._playwright = await async_playwright().start()
        logger.info("Browser factory initialized (BROWSERBASE mode)")

    async def create_session(self) -> BrowserSession:
        if self._playwright is None:
            await self.start()

        # SDK call is blocking
        bb_session = await asyncio.to_thread(self._bb.sessions.create, project_id=self.project_id)
        browser = await self._playwright.chromium.connect_over_cdp(bb_session.connect_url)
        context = browser.contexts[0] if browser.contexts else await browser.new_context()
        context.set_default_timeout(self.timeout_ms)
        page = context.pages[0] if context.pages else await context.new_page()

        return BrowserSession(
            session_id=bb_session.id,
            page=page,
            context=context,
            browser=browser,
            metadata={"mode": "browserbase"},
        )

    async def close_session(self, session: BrowserSession):
        try:
            if session.browser is not None:
                await session.browser.close()
        except Exception as e:
            logger.debug(f"[Browser] Error closing BrowserBase session {session.session_id}: {e}")

    async def stop(self):
        if self._playwright is not None:
            await self._playwright.stop()
            self._playwright = None


def create_session_factory(app_config) -> SessionFactory:
    """Pick the factory for BROWSER_ENV."""
    if app_config.BROWSER_ENV.upper() == "BROWSERBASE":
        return BrowserbaseFactory(
            api_key=app_config.BROWSERBASE_API_KEY,
            project_id=app_config.BROWSERBASE_PROJECT_ID,
            timeout_ms=app_config.BROWSER_TIMEOUT_MS,
        )
    from api.config import USER_AGENTS
    return LocalBrowserFactory(
        headless=app_config.BROWSER_HEADLESS,
        timeout_ms=app_config.BROWSER_TIMEOUT_MS,
        user_agents=USER_AGENTS,
    )
