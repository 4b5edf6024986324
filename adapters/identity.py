"""
Identity portals: BVN (NIBSS), NIN (NIMC) and birth attestation (NPC).

These portals are simple lookup forms that render a details panel, so one
form-driven strategy covers them; which inputs get filled follows the payload.
"""

import logging
from typing import Dict

from core.exceptions import AutomationFailure
from core.models import Job, ScrapeResult, ServiceType

from .base import ProviderStrategy

logger = logging.getLogger(__name__)

# payload key -> selector name
FORM_FIELDS = {
    "phone": "phoneInput",
    "bvn": "bvnInput",
    "nin": "ninInput",
    "full_name": "fullNameInput",
    "date_of_birth": "dateOfBirthInput",
    "state_of_origin": "stateInput",
}


class IdentityPortalStrategy(ProviderStrategy):
    DEFAULT_SELECTORS = {
        "serviceSelect": 'select[name="service"], select#service',
        "phoneInput": 'input[name="phone"], input[name="phoneNumber"], input[type="tel"]',
        "bvnInput": 'input[name="bvn"], input#bvn',
        "ninInput": 'input[name="nin"], input#nin',
        "fullNameInput": 'input[name="fullName"], input[name="full_name"], input#fullName',
        "dateOfBirthInput": 'input[name="dob"], input[name="dateOfBirth"], input[type="date"]',
        "stateInput": 'input[name="state"], select[name="state"]',
        "submitButton": 'button[type="submit"], input[type="submit"]',
        "resultContainer": ".result, #result, .details, table.details",
        "errorMessage": ".error, .alert-danger, .error-message",
    }

    def __init__(self, provider: str, service_types, config_store=None):
        super().__init__(config_store)
        self.provider = provider
        self.service_types = tuple(service_types)

    async def navigate(self, page, portal_url: str, selectors: Dict[str, str], job: Job):
        await page.goto(portal_url, wait_until="domcontentloaded")
        await self.select_optional(page, selectors.get("serviceSelect"), job.service_type)

        filled = 0
        for key, selector_name in FORM_FIELDS.items():
            if await self.fill_optional(page, selectors.get(selector_name), job.payload.get(key)):
                filled += 1
        if filled == 0:
            raise AutomationFailure(f"{self.provider.upper()} portal shows none of the lookup fields")

        await page.locator(selectors["submitButton"]).first.click()
        await page.wait_for_load_state("domcontentloaded", timeout=self.settle_timeout_ms)

    async def extract(self, page, selectors: Dict[str, str], job: Job) -> ScrapeResult:
        error = await self.error_message(page, selectors.get("errorMessage"))
        if error:
            return ScrapeResult.success({
                "service_type": job.service_type,
                "verification_status": "not_found",
                "message": error,
            })

        container = page.locator(selectors["resultContainer"]).first
        if await container.count() == 0:
            return ScrapeResult.failure(f"{self.provider.upper()} result panel not found")

        details = await container.evaluate(
            """(root) => {
                const out = {};
                root.querySelectorAll('tr').forEach(tr => {
                    const cells = tr.querySelectorAll('th, td');
                    if (cells.length >= 2) out[cells[0].textContent.trim()] = cells[1].textContent.trim();
                });
                root.querySelectorAll('dt').forEach(dt => {
                    const dd = dt.nextElementSibling;
                    if (dd) out[dt.textContent.trim()] = dd.textContent.trim();
                });
                return out;
            }"""
        )
        if not details:
            return ScrapeResult.failure(f"{self.provider.upper()} result panel was empty")

        return ScrapeResult.success({
            "service_type": job.service_type,
            "details": details,
            "verification_status": "verified",
            "message": "Lookup completed successfully",
        })


def identity_strategies(config_store=None):
    return [
        IdentityPortalStrategy(
            "bvn",
            (
                ServiceType.BVN_RETRIEVAL.value,
                ServiceType.BVN_DIGITAL_CARD.value,
                ServiceType.BVN_MODIFY.value,
            ),
            config_store,
        ),
        IdentityPortalStrategy(
            "nin",
            (
                ServiceType.NIN_LOOKUP.value,
                ServiceType.NIN_PHONE.value,
                ServiceType.LOST_NIN.value,
            ),
            config_store,
        ),
        IdentityPortalStrategy("npc", (ServiceType.BIRTH_ATTESTATION.value,), config_store),
    ]
