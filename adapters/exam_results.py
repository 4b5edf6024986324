"""
Exam result portals: JAMB, WAEC, NECO, NABTEB, NBAIS.

A candidate the portal does not know is a valid answer (verification_status
"not_found"); a page that matches neither a result nor an error is treated as
a transient layout mismatch and retried.
"""

import logging
from typing import Dict

from core.models import Job, ScrapeResult, ServiceType

from .base import ProviderStrategy, parse_score

logger = logging.getLogger(__name__)


def _subjects(rows) -> list:
    subjects = []
    for row in rows:
        subject = row.get("Subject") or row.get("subject") or row.get("Course") or row.get("col0") or ""
        grade = row.get("Grade") or row.get("grade") or row.get("Score") or row.get("score") or row.get("col1") or ""
        if subject and grade:
            subjects.append({"subject": subject, "grade": grade})
    return subjects


class JambStrategy(ProviderStrategy):
    """JAMB UTME score lookup."""

    provider = "jamb"
    service_types = (ServiceType.JAMB_SCORE.value,)

    DEFAULT_SELECTORS = {
        "registrationInput": '#registration-number, input[name="regNumber"], input[name="registrationNumber"]',
        "yearSelect": '#exam-year, select[name="examYear"], select[name="year"]',
        "searchButton": '#search-btn, button[type="submit"], input[type="submit"]',
        "resultTable": ".result-table, table.results, #result-container table",
        "candidateName": ".candidate-name, #candidate-name, .name",
        "errorMessage": ".error-message, .alert-danger, .error",
        "totalScore": ".total-score, #total-score, .aggregate-score",
    }

    async def navigate(self, page, portal_url: str, selectors: Dict[str, str], job: Job):
        await page.goto(portal_url, wait_until="domcontentloaded")
        await self.fill_first(page, selectors["registrationInput"], job.payload["registration_number"])
        await self.select_optional(page, selectors.get("yearSelect"), job.payload.get("exam_year"))
        await page.locator(selectors["searchButton"]).first.click()
        await page.wait_for_load_state("domcontentloaded", timeout=self.settle_timeout_ms)

    async def extract(self, page, selectors: Dict[str, str], job: Job) -> ScrapeResult:
        registration_number = job.payload["registration_number"]

        error = await self.error_message(page, selectors.get("errorMessage"))
        if error:
            return ScrapeResult.success({
                "registration_number": registration_number,
                "verification_status": "not_found",
                "message": error,
            })

        candidate_name = await self.text_of(page, selectors.get("candidateName"))
        total_score = parse_score(await self.text_of(page, selectors.get("totalScore")))
        rows = await self.table_rows(page, selectors.get("resultTable"))
        subjects = []
        for row in rows:
            score = parse_score(row.get("Score") or row.get("score") or row.get("Mark"))
            subject = row.get("Subject") or row.get("subject") or row.get("Course")
            if subject and score is not None:
                subjects.append({"subject": subject, "score": score})

        if not candidate_name and total_score is None and not subjects:
            return ScrapeResult.failure("JAMB result page did not match the expected layout")

        return ScrapeResult.success({
            "registration_number": registration_number,
            "candidate_name": candidate_name,
            "exam_type": job.payload.get("exam_type", "UTME"),
            "exam_year": job.payload.get("exam_year"),
            "subjects": subjects,
            "total_score": total_score if total_score is not None else sum(s["score"] for s in subjects) or None,
            "verification_status": "verified",
            "message": "JAMB result verification completed successfully",
        })


class ExamResultStrategy(ProviderStrategy):
    """
    Scratch-card result checkers (WAEC, NECO, NABTEB, NBAIS).

    Payload: registration_number, exam_year, optional exam_type,
    card_serial and card_pin.
    """

    DEFAULT_SELECTORS = {
        "examYearSelect": 'select[name="ExamYear"], select[name="examYear"], select#ExamYear, select[name="exam_year"]',
        "examTypeSelect": 'select[name="ExamType"], select[name="examType"], select#ExamType',
        "examNumberInput": 'input[name="ExamNumber"], input[name="examNumber"], input#ExamNumber, input[name="CandNo"], input[name="registrationNumber"], input[placeholder*="Registration"]',
        "cardSerialInput": 'input[name="SerialNumber"], input#SerialNumber, input[name="Serial"], input[name="serial"]',
        "cardPinInput": 'input[name="Pin"], input[name="pin"], input#Pin, input[name="PIN"]',
        "submitButton": 'button[type="submit"], input[type="submit"], #btnSubmit',
        "resultTable": "table.resultTable, table#resultTable, .result-table, table",
        "candidateName": ".candidate-name, .name, #candidateName",
        "errorMessage": ".error, .alert-danger, .error-message, #lblError",
    }

    DEFAULT_EXAM_TYPES = {
        "waec": "WASSCE",
        "neco": "school_candidate",
        "nabteb": "NBC/NTC",
        "nbais": "SSCE",
    }

    def __init__(self, provider: str, service_type: str, config_store=None):
        super().__init__(config_store)
        self.provider = provider
        self.service_types = (service_type,)

    async def navigate(self, page, portal_url: str, selectors: Dict[str, str], job: Job):
        payload = job.payload
        await page.goto(portal_url, wait_until="domcontentloaded")
        await self.select_optional(page, selectors.get("examYearSelect"), payload.get("exam_year"))
        await self.select_optional(
            page,
            selectors.get("examTypeSelect"),
            payload.get("exam_type") or self.DEFAULT_EXAM_TYPES.get(self.provider),
        )
        await self.fill_first(page, selectors["examNumberInput"], payload["registration_number"])
        await self.fill_optional(page, selectors.get("cardSerialInput"), payload.get("card_serial"))
        await self.fill_optional(page, selectors.get("cardPinInput"), payload.get("card_pin"))
        await page.locator(selectors["submitButton"]).first.click()
        await page.wait_for_load_state("domcontentloaded", timeout=self.settle_timeout_ms)

    async def extract(self, page, selectors: Dict[str, str], job: Job) -> ScrapeResult:
        payload = job.payload

        error = await self.error_message(page, selectors.get("errorMessage"))
        if error:
            card_error = any(word in error.lower() for word in ("pin", "serial", "card"))
            return ScrapeResult.success({
                "registration_number": payload["registration_number"],
                "exam_year": payload.get("exam_year"),
                "verification_status": "error" if card_error else "not_found",
                "message": error,
            })

        subjects = _subjects(await self.table_rows(page, selectors.get("resultTable")))
        if not subjects:
            return ScrapeResult.failure(f"{self.provider.upper()} result page did not match the expected layout")

        return ScrapeResult.success({
            "registration_number": payload["registration_number"],
            "candidate_name": await self.text_of(page, selectors.get("candidateName")),
            "exam_type": payload.get("exam_type") or self.DEFAULT_EXAM_TYPES.get(self.provider),
            "exam_year": payload.get("exam_year"),
            "subjects": subjects,
            "verification_status": "verified",
            "message": "Verification completed successfully",
        })
