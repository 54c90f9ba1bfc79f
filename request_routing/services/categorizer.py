"""Request categorizer.

Two paths produce the same ``CategorizationResult``:
- ``quick_categorize``: keyword heuristics, no I/O, always available
- ``RequestCategorizer.categorize_with_ai``: Google Gemini classification, may fail

``RequestCategorizer.categorize`` degrades from the AI path to the heuristic
path on any failure or timeout, so categorization never blocks routing.
"""

import asyncio
import json
import logging
import re
from dataclasses import dataclass
from typing import Any, Iterable

import httpx

from ..core.config import Settings, get_settings
from ..models import UrgencyLevel

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CategorizationResult:
    """Categories (lower-cased, de-duplicated, in detection order) and urgency."""
    categories: tuple[str, ...]
    urgency_level: UrgencyLevel = UrgencyLevel.NORMAL
    confidence: float = 0.5
    source: str = "heuristic"  # "heuristic", "ai" or "provided"

    def to_dict(self) -> dict:
        return {
            "categories": list(self.categories),
            "urgency_level": self.urgency_level.value,
            "confidence": self.confidence,
            "source": self.source,
        }


def normalize_categories(categories: Iterable[str]) -> tuple[str, ...]:
    """Lower-case, strip and de-duplicate while keeping first-seen order."""
    seen: dict[str, None] = {}
    for category in categories:
        tag = str(category).strip().lower()
        if tag:
            seen.setdefault(tag, None)
    return tuple(seen)


# =============================================================================
# HEURISTIC CATEGORIZATION
# =============================================================================


CATEGORY_KEYWORDS: dict[str, list[str]] = {
    # Finance
    "billing": ["billing", "bill", "charged", "overcharged", "refund", "subscription"],
    "invoice": ["invoice", "invoices", "rechnung"],
    "payment": ["payment", "paid", "wire transfer", "bank transfer", "remittance"],
    "budget": ["budget", "forecast", "cost center"],
    "expense": ["expense", "expenses", "reimbursement", "receipt"],
    "tax": ["tax", "vat", "withholding"],
    "audit": ["audit", "auditor"],
    # Sales
    "sales": ["sales", "lead", "prospect", "deal"],
    "quote": ["quote", "quotation", "estimate"],
    "contract": ["contract", "agreement", "renewal", "terms"],
    "pricing": ["pricing", "price", "discount"],
    # Support
    "support": ["help", "support", "not working", "how do i", "problem"],
    "complaint": ["complaint", "unhappy", "disappointed", "unacceptable"],
    "issue": ["bug", "error", "broken", "crash", "issue"],
    "feature_request": ["feature request", "would be nice", "could you add"],
    # HR
    "hr": ["hr", "human resources", "employee", "payroll"],
    "leave": ["vacation", "leave", "sick day", "time off", "holiday"],
    "recruitment": ["hiring", "candidate", "job opening", "interview", "recruit"],
    "onboarding": ["onboarding", "new hire", "first day"],
    "training": ["training", "course", "workshop"],
    # IT
    "it": ["it support", "helpdesk", "computer", "laptop"],
    "access": ["access", "password", "login", "permission", "account locked"],
    "software": ["software", "application", "install", "license"],
    "hardware": ["hardware", "printer", "monitor", "keyboard"],
    "security": ["security", "phishing", "malware", "breach", "vulnerability"],
    "infrastructure": ["server", "database", "network", "vpn", "outage", "deployment"],
    # Legal
    "legal": ["legal", "lawyer", "lawsuit", "liability"],
    "compliance": ["compliance", "regulation", "regulatory"],
    "gdpr": ["gdpr", "dsgvo", "personal data", "data deletion", "privacy"],
    "nda": ["nda", "non-disclosure", "confidentiality"],
    # Operations
    "logistics": ["delivery", "logistics", "tracking number"],
    "shipping": ["shipping", "shipment", "customs"],
    "inventory": ["inventory", "stock", "warehouse"],
    "procurement": ["procurement", "purchase order", "vendor", "supplier"],
    # Project
    "project": ["project", "milestone", "sprint"],
    "deadline": ["deadline", "due date", "overdue"],
    "meeting": ["meeting", "call", "agenda"],
    "scheduling": ["schedule", "reschedule", "calendar", "appointment"],
}

URGENCY_KEYWORDS: dict[UrgencyLevel, list[str]] = {
    UrgencyLevel.CRITICAL: [
        "critical",
        "emergency",
        "outage",
        "production down",
        "system down",
        "data breach",
        "security incident",
    ],
    UrgencyLevel.HIGH: [
        "urgent",
        "asap",
        "immediately",
        "as soon as possible",
        "blocking",
        "blocker",
        "escalate",
        "high priority",
    ],
    UrgencyLevel.LOW: [
        "no rush",
        "whenever",
        "low priority",
        "when you have time",
        "fyi",
    ],
}

_URGENCY_ORDER = [UrgencyLevel.CRITICAL, UrgencyLevel.HIGH, UrgencyLevel.LOW]

_PATTERN_CACHE: dict[str, re.Pattern] = {}


def _keyword_pattern(keyword: str) -> re.Pattern:
    pattern = _PATTERN_CACHE.get(keyword)
    if pattern is None:
        pattern = re.compile(rf"\b{re.escape(keyword)}\b")
        _PATTERN_CACHE[keyword] = pattern
    return pattern


def quick_categorize(content: str, subject: str | None = None) -> CategorizationResult:
    """Categorize a request with keyword heuristics."""
    text = f"{subject or ''}\n{content or ''}".lower()

    categories: list[str] = []
    hits = 0
    for category, keywords in CATEGORY_KEYWORDS.items():
        matched = sum(1 for kw in keywords if _keyword_pattern(kw).search(text))
        if matched:
            categories.append(category)
            hits += matched

    urgency = UrgencyLevel.NORMAL
    for level in _URGENCY_ORDER:
        if any(_keyword_pattern(kw).search(text) for kw in URGENCY_KEYWORDS[level]):
            urgency = level
            break

    if not categories:
        return CategorizationResult(
            categories=("general",),
            urgency_level=urgency,
            confidence=0.3,
        )

    return CategorizationResult(
        categories=normalize_categories(categories),
        urgency_level=urgency,
        confidence=min(0.9, 0.4 + 0.1 * hits),
    )


# =============================================================================
# AI CATEGORIZATION
# =============================================================================


class RequestCategorizer:
    """
    Categorizer that prefers Google Gemini and falls back to heuristics.

    The AI path is bounded by ``ai_categorization_timeout_seconds``.
    """

    SYSTEM_PROMPT = """You classify incoming organizational requests (support tickets, emails, task descriptions) for routing.

Return ONLY JSON with this shape:
{
    "categories": ["short lower-case domain tags, e.g. billing, invoice, access, legal, hr"],
    "urgency_level": "low|normal|high|critical",
    "confidence": 0.0-1.0
}

URGENCY GUIDELINES:
- "critical": outages, security incidents, anything blocking many people right now
- "high": explicit urgency, blocked work, near deadlines
- "normal": ordinary requests
- "low": informational, explicitly not time-sensitive

Use at most 5 categories. Prefer existing business domains over inventing new ones."""

    def __init__(
        self,
        settings: Settings | None = None,
        client: httpx.AsyncClient | None = None,
    ):
        settings = settings or get_settings()
        self.api_key = settings.gemini_api_key
        self.api_url = settings.gemini_api_url
        self.timeout = settings.ai_categorization_timeout_seconds
        self._client = client

    @property
    def is_configured(self) -> bool:
        """Check if Gemini API is configured."""
        return bool(self.api_key)

    async def categorize(
        self,
        content: str,
        subject: str | None = None,
        use_ai: bool = False,
    ) -> CategorizationResult:
        """Categorize a request, degrading to heuristics when AI is unavailable."""
        if use_ai and self.is_configured:
            try:
                return await asyncio.wait_for(
                    self.categorize_with_ai(content, subject),
                    timeout=self.timeout,
                )
            except asyncio.TimeoutError:
                logger.warning(
                    f"AI categorization timed out after {self.timeout}s, using heuristics"
                )
            except Exception as e:
                logger.warning(f"AI categorization failed, using heuristics: {e}")
        elif use_ai:
            logger.debug("AI categorization requested but Gemini is not configured")

        return quick_categorize(content, subject)

    async def categorize_with_ai(
        self,
        content: str,
        subject: str | None = None,
    ) -> CategorizationResult:
        """Categorize with Gemini. Raises on any API or parsing failure."""
        if not self.is_configured:
            raise ValueError("Gemini API key not configured")

        request_text = f"Subject: {subject}\n\n{content}" if subject else content
        response = await self._call_gemini(request_text)
        return self._parse_response(response)

    async def _call_gemini(self, request_text: str) -> dict[str, Any]:
        """Call Gemini API with the request text."""
        url = f"{self.api_url}?key={self.api_key}"

        payload = {
            "contents": [
                {
                    "parts": [
                        {"text": self.SYSTEM_PROMPT},
                        {"text": f"\n\nClassify this request:\n\n{request_text}"},
                    ]
                }
            ],
            "generationConfig": {
                "temperature": 0.1,
                "maxOutputTokens": 256,
                "responseMimeType": "application/json",
            },
        }

        if self._client is not None:
            response = await self._client.post(url, json=payload)
        else:
            async with httpx.AsyncClient(timeout=self.timeout) as client:
                response = await client.post(
                    url,
                    json=payload,
                    headers={"Content-Type": "application/json"},
                )

        if response.status_code != 200:
            logger.error(f"Gemini API error: {response.status_code} - {response.text}")
            raise RuntimeError(f"Gemini API error: {response.status_code}")

        return response.json()

    def _parse_response(self, response: dict[str, Any]) -> CategorizationResult:
        """Parse Gemini response into a CategorizationResult."""
        candidates = response.get("candidates", [])
        if not candidates:
            raise ValueError("No candidates in response")

        parts = candidates[0].get("content", {}).get("parts", [])
        if not parts:
            raise ValueError("No parts in response")

        text = parts[0].get("text", "")

        # Handle potential markdown code blocks
        if "```json" in text:
            text = text.split("```json")[1].split("```")[0]
        elif "```" in text:
            text = text.split("```")[1].split("```")[0]

        data = json.loads(text.strip())

        categories = normalize_categories(data.get("categories") or [])
        if not categories:
            raise ValueError("AI returned no categories")

        return CategorizationResult(
            categories=categories,
            urgency_level=self._validate_urgency(data.get("urgency_level", "normal")),
            confidence=min(1.0, max(0.0, float(data.get("confidence", 0.5)))),
            source="ai",
        )

    def _validate_urgency(self, urgency: str) -> UrgencyLevel:
        """Validate and normalize urgency value."""
        try:
            return UrgencyLevel(str(urgency).lower().strip())
        except ValueError:
            return UrgencyLevel.NORMAL
