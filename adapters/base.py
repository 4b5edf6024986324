"""
Base strategy interface for provider portals.
Every portal-specific strategy inherits from this.

A strategy is stateless between jobs: the queue worker hands it a leased page
and the job, and gets a ScrapeResult back. Portal URLs and selector overrides
come from ProviderConfigStore so admins can fix a broken selector without a
deploy.
"""

import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Dict, List, Optional, Tuple

from playwright.async_api import Error as PlaywrightError

from api.provider_config import ProviderConfig, ProviderConfigStore, get_provider_config_store
from core.exceptions import AutomationFailure
from core.models import Job, ScrapeResult

logger = logging.getLogger(__name__)


class ProviderStrategy(ABC):
    """
    Abstract base class for provider portal strategies.
    Each provider (JAMB, WAEC, NIBSS...) implements navigate() and extract().
    """

    provider: str
    service_types: Tuple[str, ...] = ()
    DEFAULT_SELECTORS: Dict[str, str] = {}

    # Seconds to wait for the results page after submitting
    settle_timeout_ms: int = 15000

    def __init__(self, config_store: Optional[ProviderConfigStore] = None):
        self.config_store = config_store or get_provider_config_store()

    def selectors_for(self, provider_config: ProviderConfig) -> Dict[str, str]:
        """Defaults overlaid with the admin-configured selectors."""
        return {**self.DEFAULT_SELECTORS, **provider_config.selectors}

    @abstractmethod
    async def navigate(self, page, portal_url: str, selectors: Dict[str, str], job: Job):
        """Open the portal, fill the lookup form and submit it."""
        pass

    @abstractmethod
    async def extract(self, page, selectors: Dict[str, str], job: Job) -> ScrapeResult:
        """Read the result page into a ScrapeResult."""
        pass

    async def run(self, page, job: Job) -> ScrapeResult:
        """
        Drive the portal for one job.

        Raises:
            AutomationFailure: the browser or the portal misbehaved (retryable)
        """
        provider_config = await self.config_store.get(self.provider)
        if not provider_config.configured:
            return ScrapeResult.failure(
                f"{self.provider.upper()} portal URL not configured. Please configure in admin settings.",
                permanent=True,
            )

        selectors = self.selectors_for(provider_config)
        logger.info(f"[{self.provider}] Job {job.id}: navigating to {provider_config.portal_url}")
        try:
            await self.navigate(page, provider_config.portal_url, selectors, job)
            return await self.extract(page, selectors, job)
        except PlaywrightError as e:
            raise AutomationFailure(f"{self.provider} portal error: {e}") from e

    # ============== Page helpers ==============

    async def fill_first(self, page, selector: str, value: Any, timeout_ms: int = 10000):
        """Fill the first element matching selector; required fields raise if it never appears."""
        locator = page.locator(selector).first
        await locator.wait_for(state="visible", timeout=timeout_ms)
        await locator.fill(str(value))

    async def fill_optional(self, page, selector: Optional[str], value: Any) -> bool:
        if not selector or value in (None, ""):
            return False
        locator = page.locator(selector).first
        if await locator.count() == 0:
            logger.debug(f"[{self.provider}] Optional field not present: {selector}")
            return False
        await locator.fill(str(value))
        return True

    async def select_optional(self, page, selector: Optional[str], value: Any) -> bool:
        """Select an option by value, falling back to its visible label."""
        if not selector or value in (None, ""):
            return False
        locator = page.locator(selector).first
        if await locator.count() == 0:
            return False
        try:
            await locator.select_option(value=str(value))
        except PlaywrightError:
            try:
                await locator.select_option(label=str(value))
            except PlaywrightError:
                logger.warning(f"[{self.provider}] Could not select {value!r}, continuing without it")
                return False
        return True

    async def text_of(self, page, selector: Optional[str]) -> Optional[str]:
        if not selector:
            return None
        locator = page.locator(selector).first
        if await locator.count() == 0:
            return None
        text = (await locator.inner_text()).strip()
        return text or None

    async def error_message(self, page, selector: Optional[str]) -> Optional[str]:
        """Visible portal error text, if any."""
        if not selector:
            return None
        locator = page.locator(selector).first
        if await locator.count() == 0 or not await locator.is_visible():
            return None
        return (await locator.inner_text()).strip() or "Unknown error"

    async def table_rows(self, page, selector: Optional[str]) -> List[Dict[str, str]]:
        """Rows of the first matching table as header -> cell dicts."""
        if not selector or await page.locator(selector).count() == 0:
            return []
        return await page.locator(selector).first.evaluate(
            """(table) => {
                const headers = Array.from(table.querySelectorAll('th')).map(th => th.textContent.trim());
                return Array.from(table.querySelectorAll('tbody tr, tr')).map(tr => {
                    const cells = Array.from(tr.querySelectorAll('td')).map(td => td.textContent.trim());
                    if (!cells.length) return null;
                    const row = {};
                    cells.forEach((cell, i) => { row[headers[i] || `col${i}`] = cell; });
                    return row;
                }).filter(Boolean);
            }"""
        )


def parse_score(text: Optional[str]) -> Optional[int]:
    """'Aggregate: 254' -> 254."""
    if not text:
        return None
    digits = re.sub(r"\D", "", text)
    return int(digits) if digits else None
