"""Pattern-based PII detection for Australian / NZ insurance documents.

Finds spans for every PIICategory except DOCUMENT. Overlapping matches are
resolved in favour of the higher-confidence category (then the longer
span). Confidence is fixed per category.

Usage:
    from src.security.pii_detector import PIIDetector

    matches = PIIDetector().detect("Contact Jane Smith on 0412 345 678")
"""

from __future__ import annotations

import bisect
import logging
import re
from dataclasses import dataclass

from src.models.enums import PIICategory

logger = logging.getLogger(__name__)

CATEGORY_CONFIDENCE: dict[PIICategory, float] = {
    PIICategory.EMAIL: 0.95,
    PIICategory.MEDICARE_NUMBER: 0.95,
    PIICategory.TAX_FILE_NUMBER: 0.95,
    PIICategory.PHONE: 0.90,
    PIICategory.POLICY_NUMBER: 0.85,
    PIICategory.BANK_ACCOUNT: 0.85,
    PIICategory.PREMIUM: 0.80,
    PIICategory.DATE_OF_BIRTH: 0.75,
    PIICategory.MEDICAL_CONDITION: 0.70,
    PIICategory.ADDRESS: 0.70,
    PIICategory.NAME: 0.60,
}

_PERIOD = r"(?:month|monthly|week|weekly|fortnight|fortnightly|year|yearly|annum|annual|annually)"

# (category, compiled pattern, capture group holding the PII value)
_PATTERNS: list[tuple[PIICategory, re.Pattern[str], int]] = [
    (PIICategory.EMAIL, re.compile(r"\b[A-Za-z0-9._%+-]+@[A-Za-z0-9.-]+\.[A-Za-z]{2,}\b"), 0),
    (PIICategory.PHONE, re.compile(r"(?:\+61\s?|\+64\s?|\b0)[2-9](?:[ -]?\d){7,8}\b"), 0),
    (PIICategory.PHONE, re.compile(r"\(0?\d\)\s?\d{4}[ -]?\d{4}\b"), 0),
    (PIICategory.MEDICARE_NUMBER, re.compile(r"\bMedicare(?:\s*(?:No\.?|Number|#))?\s*:?\s*\d{4}\s?\d{5}\s?\d(?:[ /-]?\d)?\b", re.I), 0),
    (PIICategory.MEDICARE_NUMBER, re.compile(r"\b\d{4}\s?\d{4}\s?\d{2}\s?\d\b"), 0),
    (PIICategory.TAX_FILE_NUMBER, re.compile(r"\b(?:TFN|Tax File Number)\s*:?\s*\d{3}\s?\d{3}\s?\d{3}\b", re.I), 0),
    (PIICategory.BANK_ACCOUNT, re.compile(r"\bBSB\s*:?\s*\d{3}-?\d{3}\b", re.I), 0),
    (PIICategory.BANK_ACCOUNT, re.compile(r"\b(?:Account|Acct)(?:\s*(?:No\.?|Number|#))?\s*:?\s*\d{6,10}\b", re.I), 0),
    (
        PIICategory.POLICY_NUMBER,
        re.compile(r"\bPOL(?:ICY)?\s*(?:#|No\.?|Number)?\s*:?\s*(?=[A-Z0-9-]*\d)[A-Z0-9-]{6,20}\b", re.I),
        0,
    ),
    (PIICategory.POLICY_NUMBER, re.compile(r"\b(?:MBR|Member(?:ship)?\s*(?:No\.?|Number|#)?)\s*:?\s*\d{6,12}\b", re.I), 0),
    (PIICategory.POLICY_NUMBER, re.compile(r"\b[A-Z]{2,4}\d{6,12}\b"), 0),
    (
        PIICategory.DATE_OF_BIRTH,
        re.compile(r"\b(?:DOB|D\.O\.B\.?|Date of Birth)\s*:?\s*\d{1,2}[/.-]\d{1,2}[/.-]\d{2,4}\b", re.I),
        0,
    ),
    (PIICategory.DATE_OF_BIRTH, re.compile(r"\b\d{1,2}[/.-]\d{1,2}[/.-](?:19|20)\d{2}\b"), 0),
    (
        PIICategory.PREMIUM,
        re.compile(rf"\$\s?\d{{1,3}}(?:,\d{{3}})*(?:\.\d{{2}})?(?:\s*(?:per\s+|a\s+|/\s*)?(?i:{_PERIOD})\b)?"),
        0,
    ),
    (PIICategory.PREMIUM, re.compile(rf"\b\d{{1,3}}(?:,\d{{3}})*\s*dollars?(?:\s*(?:per\s+|a\s+)?{_PERIOD}\b)?", re.I), 0),
    (
        PIICategory.ADDRESS,
        re.compile(
            r"\b\d{1,5}[A-Za-z]?\s+(?:[A-Z][a-z]+\s+){1,3}"
            r"(?:Street|St|Road|Rd|Avenue|Ave|Drive|Dr|Lane|Ln|Court|Ct|Parade|Pde|Highway|Hwy"
            r"|Place|Pl|Crescent|Cres|Terrace|Tce|Boulevard|Blvd|Way)\b\.?"
        ),
        0,
    ),
    (PIICategory.ADDRESS, re.compile(r"\b(?:NSW|VIC|QLD|SA|WA|TAS|NT|ACT)\s+\d{4}\b"), 0),
    (
        PIICategory.MEDICAL_CONDITION,
        re.compile(
            r"\b(?:diagnosed with|suffers? from|history of|treated for|(?:pre-existing |medical )?condition\s*:)"
            r"\s*([A-Za-z][A-Za-z0-9' -]{2,40}?)(?=\s*(?:[.,;\n]|$))",
            re.I | re.M,
        ),
        1,
    ),
    (PIICategory.NAME, re.compile(r"\b(?:Mr|Mrs|Ms|Miss|Dr|Prof)\.?\s+[A-Z][a-z]+(?:\s+[A-Z][a-z'-]+)?\b"), 0),
]

# Capitalized words that appear in policy documents but are not names.
_NAME_STOPWORDS: frozenset[str] = frozenset({
    "Account", "Address", "Adelaide", "Ambulance", "Annual", "Auckland", "Australia", "Basic",
    "Benefit", "Benefits", "Birth", "Brisbane", "Bronze", "Bupa", "Canberra", "Care", "Certificate",
    "Combined", "Contact", "Couple", "Cover", "Customer", "Darwin", "Date", "Day", "Dear", "Dental",
    "Effective", "Email", "End", "Excess", "Extras", "Family", "Fund", "General", "Gold", "Health",
    "Hobart", "Hospital", "Insurance", "Insured", "Limit", "Limits", "Major", "Medibank",
    "Medicare", "Melbourne", "Member", "Membership", "Monthly", "Name", "New", "Number", "Optical",
    "Our", "Perth", "Phone", "Physiotherapy", "Plan", "Plus", "Policy", "Policyholder", "Premium",
    "Private", "Product", "Psychology", "Renewal", "Schedule", "Services", "Silver", "Single",
    "South", "Start", "Statement", "Summary", "Surgery", "Sydney", "Table", "Thank", "The", "This",
    "Tier", "Top", "Total", "Victoria", "Waiting", "Wales", "Wellington", "Welcome", "Your", "Zealand",
    "January", "February", "March", "April", "May", "June", "July", "August", "September",
    "October", "November", "December", "Monday", "Tuesday", "Wednesday", "Thursday", "Friday",
})

_CAPITALIZED_RUN = re.compile(r"\b[A-Z][a-z'-]+(?:[ \t]+[A-Z][a-z'-]+)+\b")
_WORD = re.compile(r"[A-Z][a-z'-]+")

# Categories re-checked after anonymization; any hit means the pass leaked.
RESIDUAL_CATEGORIES: frozenset[PIICategory] = frozenset({
    PIICategory.EMAIL,
    PIICategory.PHONE,
    PIICategory.MEDICARE_NUMBER,
    PIICategory.TAX_FILE_NUMBER,
})


_TOKEN = re.compile(r"\[([A-Z_]+)_(\d+)\]")


def make_token(category: PIICategory, index: int) -> str:
    """`[EMAIL_1]`-style placeholder."""
    return f"[{category.value.upper()}_{index}]"


def token_category(token: str) -> PIICategory | None:
    """Inverse of make_token. None for anything that is not a token."""
    m = _TOKEN.fullmatch(token)
    if m is None:
        return None
    try:
        return PIICategory(m.group(1).lower())
    except ValueError:
        return None


def find_tokens(text: str) -> list[str]:
    return [m.group() for m in _TOKEN.finditer(text)]


@dataclass(frozen=True)
class PIIMatch:
    """One detected span. `value` is the original text, never logged."""

    category: PIICategory
    value: str
    start: int
    end: int
    confidence: float


class PIIDetector:
    """Regex + heuristic detector. Stateless and safe to share."""

    def detect(self, text: str) -> list[PIIMatch]:
        """Return non-overlapping matches ordered by position."""
        candidates = self._pattern_matches(text, None)
        candidates.extend(self._name_matches(text))
        matches = _resolve_overlaps(candidates)
        logger.debug("PII scan: %d candidates, %d kept", len(candidates), len(matches))
        return matches

    def find_residual(self, anonymized_text: str) -> list[PIIMatch]:
        """High-confidence identifiers still present after replacement."""
        return _resolve_overlaps(self._pattern_matches(anonymized_text, RESIDUAL_CATEGORIES))

    # ── Internals ────────────────────────────────────────────────────

    def _pattern_matches(self, text: str, only: frozenset[PIICategory] | None) -> list[PIIMatch]:
        found: list[PIIMatch] = []
        for category, pattern, group in _PATTERNS:
            if only is not None and category not in only:
                continue
            for m in pattern.finditer(text):
                value = m.group(group)
                if not value or not value.strip():
                    continue
                found.append(PIIMatch(
                    category=category,
                    value=value,
                    start=m.start(group),
                    end=m.end(group),
                    confidence=CATEGORY_CONFIDENCE[category],
                ))
        return found

    def _name_matches(self, text: str) -> list[PIIMatch]:
        """Runs of 2-3 capitalized words that are not insurance vocabulary."""
        found: list[PIIMatch] = []
        for run in _CAPITALIZED_RUN.finditer(text):
            words = [(w.group(), run.start() + w.start(), run.start() + w.end()) for w in _WORD.finditer(run.group())]
            segment: list[tuple[str, int, int]] = []
            for word in [*words, None]:
                if word is not None and word[0] not in _NAME_STOPWORDS:
                    segment.append(word)
                    continue
                if 2 <= len(segment) <= 3:
                    start, end = segment[0][1], segment[-1][2]
                    found.append(PIIMatch(
                        category=PIICategory.NAME,
                        value=text[start:end],
                        start=start,
                        end=end,
                        confidence=CATEGORY_CONFIDENCE[PIICategory.NAME],
                    ))
                segment = []
        return found


def _resolve_overlaps(candidates: list[PIIMatch]) -> list[PIIMatch]:
    """Keep the highest-confidence (then longest) span among overlapping matches.

    Accepted spans never overlap, so kept in start order each candidate only
    has to be checked against its two neighbours.
    """
    ranked = sorted(candidates, key=lambda m: (-m.confidence, -(m.end - m.start), m.start))
    starts: list[int] = []
    kept: list[PIIMatch] = []
    for match in ranked:
        i = bisect.bisect_left(starts, match.start)
        if i > 0 and kept[i - 1].end > match.start:
            continue
        if i < len(kept) and kept[i].start < match.end:
            continue
        starts.insert(i, match.start)
        kept.insert(i, match)
    return kept
